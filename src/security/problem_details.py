"""Helpers for generating RFC 7807 compliant error responses."""

from __future__ import annotations

from typing import Any, Mapping
from uuid import uuid4

from fastapi.responses import JSONResponse

from src.domain.errors import ServiceError

DEFAULT_TYPE = "about:blank"


def problem_response(
    *,
    status: int,
    title: str,
    detail: str,
    type_: str = DEFAULT_TYPE,
    instance: str | None = None,
    extras: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """
    Produce an RFC 7807 compliant JSON response.

    The correlation id is mirrored in the `X-Correlation-ID` header so that
    clients can trace the error end-to-end.
    """
    cid = correlation_id or str(uuid4())
    payload: dict[str, Any] = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "correlation_id": cid,
    }
    if instance:
        payload["instance"] = instance
    if extras:
        payload.update(extras)

    response_headers = dict(headers or {})
    response_headers.setdefault("X-Correlation-ID", cid)
    return JSONResponse(
        status_code=status,
        content=payload,
        headers=response_headers,
        media_type="application/problem+json",
    )


def service_error_response(
    exc: ServiceError,
    *,
    instance: str | None = None,
    headers: Mapping[str, str] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """Render a domain exception using its own code, title and status."""
    return problem_response(
        status=exc.status,
        title=exc.title,
        detail=exc.message,
        instance=instance,
        extras={"code": exc.code},
        headers=headers,
        correlation_id=correlation_id,
    )
