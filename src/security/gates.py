"""
Request gates: API key + CORS (AuthGate) and CORS only (OriginGate).

A gate never touches the HTTP layer. It takes what it needs from the request,
does a single registry lookup and returns a ``GateDecision`` holding the CORS
headers to send, whether the request is a preflight that must be answered
without reaching the handler, and the authenticated client id. Failures raise
``AuthError`` carrying the same CORS headers so browsers can read the error.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Sequence

from src.domain.errors import AuthError
from src.domain.models import ClientRecord
from src.security.sanitize import sanitize_client

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
ANY_ORIGIN = "*"


class ClientLookup(Protocol):
    def get(self, client_id: str) -> Optional[ClientRecord]: ...


class GateRejected(AuthError):
    """AuthError that knows which CORS headers were already decided."""

    def __init__(self, message: str, headers: Dict[str, str]):
        super().__init__(message)
        self.headers = headers


@dataclass(slots=True)
class GateDecision:
    client_id: str
    headers: Dict[str, str] = field(default_factory=dict)
    preflight: bool = False


class OriginGate:
    """Admits requests for known clients whose Origin (if any) matches."""

    def __init__(
        self,
        registry: ClientLookup,
        allowed_methods: Sequence[str] = ("GET", "OPTIONS"),
        allowed_headers: Sequence[str] = ("Content-Type",),
    ):
        self.registry = registry
        self.allowed_methods = tuple(allowed_methods)
        self.allowed_headers = tuple(allowed_headers)

    def cors_headers(self, record: Optional[ClientRecord]) -> Dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ", ".join(self.allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allowed_headers),
            "Vary": "Origin",
        }
        if record is not None and record.allowed_origin:
            headers["Access-Control-Allow-Origin"] = record.allowed_origin
        return headers

    def evaluate(
        self,
        method: str,
        client: Optional[str],
        origin: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> GateDecision:
        client_id = sanitize_client(client)
        record = self.registry.get(client_id) if client_id else None
        headers = self.cors_headers(record)

        if record is None:
            logger.warning("Rejected request for unknown client %r", client_id)
            raise GateRejected("Unknown client", headers)

        if origin and record.allowed_origin != ANY_ORIGIN and origin != record.allowed_origin:
            logger.warning("Origin %s not allowed for client %s", origin, client_id)
            raise GateRejected("Origin not allowed", headers)

        if method.upper() == "OPTIONS":
            return GateDecision(client_id=client_id, headers=headers, preflight=True)

        self._authorize(record, api_key, headers)
        return GateDecision(client_id=client_id, headers=headers)

    def _authorize(
        self, record: ClientRecord, api_key: Optional[str], headers: Dict[str, str]
    ) -> None:
        """Origin-only gate: nothing beyond the registry lookup."""


class AuthGate(OriginGate):
    """OriginGate plus a constant-time API key check."""

    def __init__(self, registry: ClientLookup):
        super().__init__(
            registry,
            allowed_methods=("GET", "POST", "DELETE", "OPTIONS"),
            allowed_headers=("Content-Type", API_KEY_HEADER),
        )

    def _authorize(
        self, record: ClientRecord, api_key: Optional[str], headers: Dict[str, str]
    ) -> None:
        if not api_key:
            logger.warning("Missing API key for client %s", record.client_id)
            raise GateRejected("Missing client or API key", headers)
        if not hmac.compare_digest(api_key.encode("utf-8"), record.api_key.encode("utf-8")):
            logger.warning("Invalid API key for client %s", record.client_id)
            raise GateRejected("Unauthorized", headers)
