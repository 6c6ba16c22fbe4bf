"""FastAPI application for the multi-tenant file service."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import get_route_path

from src.adapters.blob_store import BlobStore
from src.adapters.database import ClientRegistry
from src.config import Settings
from src.domain.errors import Expired, InvalidSignature, ServiceError, TokenError, ValidationError
from src.domain.models import MessageResponse, PresignResponse, UploadResponse
from src.security.gates import API_KEY_HEADER, AuthGate, GateRejected, OriginGate
from src.security.presign import UPLOAD_PATH, PresignIssuer, PresignVerifier
from src.security.problem_details import problem_response, service_error_response
from src.security.sanitize import sanitize_client, sanitize_filename
from src.services import image_service
from src.services.security_service import SecurityService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()


def _ensure_correlation_id(request: Request) -> str:
    """Return existing correlation id or generate a new one."""
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        correlation_id = SecurityService.generate_correlation_id()
        request.state.correlation_id = correlation_id
    return correlation_id


def _problem_response(
    request: Request,
    *,
    status_code: int,
    title: str,
    detail: str,
    code: str,
    headers: Optional[Mapping[str, str]] = None,
    extras: Optional[Dict[str, Any]] = None,
):
    """Produce a RFC 7807 response with a stable correlation id."""
    payload = {"code": code}
    if extras:
        payload.update(extras)
    return problem_response(
        status=status_code,
        title=title,
        detail=detail,
        headers=headers,
        extras=payload,
        correlation_id=_ensure_correlation_id(request),
        instance=str(request.url.path),
    )


def _require_target(client: str, filename: Optional[str] = None) -> tuple[str, str]:
    client_id = sanitize_client(client)
    if filename is None:
        if not client_id:
            raise ValidationError("client required")
        return client_id, ""
    name = sanitize_filename(filename)
    if not client_id or not name:
        raise ValidationError("client and filename required")
    return client_id, name


def _gate_key(request: Request) -> str:
    """Path as the router sees it, without any mount prefix or trailing slash."""
    return get_route_path(request.scope).rstrip("/") or "/"


async def _call_guarded(request: Request, call_next):
    """Render unexpected handler failures inside the middleware stack."""
    try:
        return await call_next(request)
    except Exception as exc:
        return await general_exception_handler(request, exc)


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_security_service(request: Request) -> SecurityService:
    return request.app.state.security_service


def get_presign_issuer(request: Request) -> PresignIssuer:
    return request.app.state.presign_issuer


def get_presign_verifier(request: Request) -> PresignVerifier:
    return request.app.state.presign_verifier


# Middleware
async def gate_middleware(request: Request, call_next):
    """Run the Auth/Origin gate registered for the path, if any."""
    gate = request.app.state.gates.get(_gate_key(request))
    if gate is None:
        return await _call_guarded(request, call_next)

    try:
        decision = await run_in_threadpool(
            gate.evaluate,
            request.method,
            request.query_params.get("client"),
            request.headers.get("origin"),
            request.headers.get(API_KEY_HEADER),
        )
    except GateRejected as exc:
        request.app.state.security_service.log_event(
            "auth_failed",
            sanitize_client(request.query_params.get("client")) or None,
            path=str(request.url.path),
            method=request.method,
            reason=exc.message,
        )
        return _problem_response(
            request,
            status_code=exc.status,
            title=exc.title,
            detail=exc.message,
            code=exc.code,
            headers=exc.headers,
        )

    if decision.preflight:
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers=decision.headers)

    request.state.client_id = decision.client_id
    response = await _call_guarded(request, call_next)
    for header, value in decision.headers.items():
        response.headers[header] = value
    return response


async def request_context_middleware(request: Request, call_next):
    """Correlation id, request logging and security headers for every response."""
    correlation_id = _ensure_correlation_id(request)
    started = time.perf_counter()

    response = await _call_guarded(request, call_next)

    security_headers = request.app.state.security_service.get_security_headers()
    for header, value in security_headers.items():
        response.headers.setdefault(header, value)
    response.headers.setdefault("X-Correlation-ID", correlation_id)
    logger.info(
        "%s %s -> %s (%.1f ms) [%s]",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        correlation_id,
    )
    return response


# Exception handlers
async def service_error_handler(request: Request, exc: ServiceError):
    """Handle domain errors raised by handlers."""
    if exc.status >= 500:
        logger.error("Service error %s: %s for %s", exc.code, exc.message, request.url.path)
    else:
        logger.warning("Service error %s: %s for %s", exc.code, exc.message, request.url.path)
    return service_error_response(
        exc,
        instance=str(request.url.path),
        correlation_id=_ensure_correlation_id(request),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed query parameters are client errors (400)."""
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    logger.warning("Request validation failed for %s: %s", request.url.path, fields)
    return _problem_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        title="Invalid request",
        detail="Invalid request parameters",
        code="validation_error",
        extras={"fields": fields},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Normalize routing errors (404, 405) to RFC 7807."""
    detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
    title = "HTTP error"
    code = "http_error"
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        title = "Resource not found"
        detail = "Requested resource was not found"
        code = "not_found"
    elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        title = "Method not allowed"
        code = "method_not_allowed"
    logger.warning("HTTPException (%s): %s", exc.status_code, detail)
    return _problem_response(
        request,
        status_code=exc.status_code,
        title=title,
        detail=detail,
        code=code,
        headers=exc.headers,
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return _problem_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Internal server error",
        detail="Internal server error",
        code="internal_error",
    )


# File endpoints
@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    request: Request,
    client: str = Query(""),
    filename: str = Query(""),
    blob_store: BlobStore = Depends(get_blob_store),
    security: SecurityService = Depends(get_security_service),
):
    """Store the raw request body as <client>/<filename>."""
    client_id, name = _require_target(client, filename)
    data = await request.body()
    path = await run_in_threadpool(blob_store.save, client_id, name, data)

    security.log_event("upload", client_id, filename=name, size=len(data))
    logger.info("Upload: %s to %s", name, path.parent)
    return UploadResponse(message="uploaded", path=str(path))


@router.get("/download")
def download_file(
    client: str = Query(""),
    filename: str = Query(""),
    width: Optional[int] = Query(None, ge=0),
    height: Optional[int] = Query(None, ge=0),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Serve a blob, optionally resized to width/height."""
    client_id, name = _require_target(client, filename)
    data = blob_store.read(client_id, name)
    rendered = image_service.render(data, name, width=width, height=height)
    if width or height:
        logger.info("Download: %s in changed dimensions -> %sx%s", name, width, height)
    else:
        logger.info("Download: %s in original dimensions", name)
    return Response(content=rendered.content, media_type=rendered.media_type)


@router.delete("/delete", response_model=MessageResponse)
def delete_file(
    client: str = Query(""),
    filename: str = Query(""),
    blob_store: BlobStore = Depends(get_blob_store),
    security: SecurityService = Depends(get_security_service),
):
    client_id, name = _require_target(client, filename)
    blob_store.delete(client_id, name)
    security.log_event("delete", client_id, filename=name)
    logger.info("Delete: %s", name)
    return MessageResponse(message="deleted")


@router.get("/list", response_model=List[str])
def list_files(client: str = Query(""), blob_store: BlobStore = Depends(get_blob_store)):
    client_id, _ = _require_target(client)
    return blob_store.list(client_id)


# Presigned uploads
@router.get("/presignurl", response_model=PresignResponse)
def issue_presigned_url(
    client: str = Query(""),
    filename: str = Query(""),
    issuer: PresignIssuer = Depends(get_presign_issuer),
    security: SecurityService = Depends(get_security_service),
):
    """Mint a short-lived URL that accepts one unauthenticated upload."""
    client_id, name = _require_target(client, filename)
    url = issuer.issue_url(client_id, name)
    security.log_event("presign_issued", client_id, filename=name, ttl=issuer.ttl_seconds)
    return PresignResponse(url=url)


@router.api_route(
    UPLOAD_PATH,
    methods=["PUT", "POST"],
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def consume_presigned_upload(
    request: Request,
    client: str = Query(""),
    q: str = Query(""),
    verifier: PresignVerifier = Depends(get_presign_verifier),
    security: SecurityService = Depends(get_security_service),
):
    """Store the body at the path granted by the token in ``q``."""
    client_id = sanitize_client(client)
    data = await request.body()
    try:
        path = await run_in_threadpool(verifier.consume, q, data, client_id or None)
    except TokenError as exc:
        if isinstance(exc, (Expired, InvalidSignature)):
            security.log_event("presign_rejected", client_id or None, reason=exc.code)
        raise

    security.log_event("presign_consumed", client_id or None, path=str(path), size=len(data))
    logger.info("Upload: %s to %s", path.name, path.parent)
    return UploadResponse(message="uploaded", path=str(path))


# Audit trail
@router.get("/audit")
def read_audit_trail(
    client: str = Query(""),
    limit: int = Query(100, ge=1, le=1000),
    security: SecurityService = Depends(get_security_service),
):
    """Recent security events recorded for the calling client."""
    client_id, _ = _require_target(client)
    return {"audit_logs": security.get_audit_logs(limit, client_id=client_id)}


@router.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Build the application from explicit settings.

    Fails fast with ConfigurationError when no presign secret is configured.
    The registry connection is acquired on startup and released on shutdown.
    """
    settings = settings or Settings.from_env()
    secret = settings.require_presign_secret()

    registry = ClientRegistry(settings.database_url)
    blob_store = BlobStore(settings.storage_root)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.open()
        logger.info("File server ready, storage root %s", blob_store.root)
        try:
            yield
        finally:
            registry.close()

    app = FastAPI(
        title="Handradi",
        description="Multi-tenant file storage with presigned uploads",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.blob_store = blob_store
    app.state.security_service = SecurityService()
    app.state.presign_issuer = PresignIssuer(secret, blob_store, clock)
    app.state.presign_verifier = PresignVerifier(secret, blob_store, clock)

    auth_gate = AuthGate(registry)
    app.state.gates = {
        "/upload": auth_gate,
        "/delete": auth_gate,
        "/list": auth_gate,
        "/presignurl": auth_gate,
        "/audit": auth_gate,
        "/download": OriginGate(registry),
        UPLOAD_PATH: OriginGate(registry, allowed_methods=("GET", "PUT", "POST", "OPTIONS")),
    }

    # Registered last runs first: context wraps the gate.
    app.middleware("http")(gate_middleware)
    app.middleware("http")(request_context_middleware)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)
    return app
