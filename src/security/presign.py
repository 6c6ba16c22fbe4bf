"""
Presigned upload tokens.

A token is ``base64url("<path>|<expires_at>|<hex hmac>")`` where the HMAC is
SHA-256 over ``"<path>|<expires_at>"`` keyed by the process secret. Nothing is
stored server side: a token is valid while its signature matches and the
clock is before ``expires_at``. Tokens can be replayed until they expire.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Final, Optional
from urllib.parse import urlencode

from src.adapters.blob_store import BlobStore
from src.domain.errors import (
    AuthError,
    ConfigurationError,
    Expired,
    InvalidSignature,
    MalformedToken,
    StorageError,
    ValidationError,
)
from src.security.sanitize import sanitize_client, sanitize_filename

logger = logging.getLogger(__name__)

PRESIGN_TTL_SECONDS: Final = 300
SEPARATOR: Final = "|"
UPLOAD_PATH: Final = "/presignedupload"


@dataclass(frozen=True, slots=True)
class PresignedTarget:
    """Decoded and verified token contents."""

    client_id: str
    filename: str
    path: Path
    expires_at: int


def _sign(secret: bytes, resource_path: str, expires_at: int) -> str:
    message = f"{resource_path}{SEPARATOR}{expires_at}".encode("utf-8")
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def encode_token(resource_path: str, expires_at: int, signature: str) -> str:
    payload = SEPARATOR.join((resource_path, str(expires_at), signature))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_token(token: str) -> tuple[str, str, str]:
    """Split a token into its raw (path, expires_at, signature) fields."""
    try:
        raw = base64.b64decode(token.encode("ascii"), altchars=b"-_", validate=True)
        payload = raw.decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise MalformedToken("Could not decode upload token") from exc
    parts = payload.split(SEPARATOR)
    if len(parts) != 3:
        raise MalformedToken("Upload token must contain path, expiry and signature")
    return parts[0], parts[1], parts[2]


class _Signer:
    def __init__(
        self,
        secret: str | None,
        blob_store: BlobStore,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("A non-empty presign secret is required")
        if SEPARATOR in str(blob_store.root):
            raise ConfigurationError(
                f"Storage root must not contain '{SEPARATOR}': {blob_store.root}"
            )
        self._secret = secret.encode("utf-8")
        self.blob_store = blob_store
        self.clock = clock


class PresignIssuer(_Signer):
    """Mints upload URLs for one (client, filename) pair."""

    ttl_seconds = PRESIGN_TTL_SECONDS

    def issue_token(self, client_id: str, filename: str) -> str:
        client = sanitize_client(client_id)
        name = sanitize_filename(filename)
        if not client or not name:
            raise ValidationError("client and filename required")
        if SEPARATOR in name:
            raise ValidationError(f"filename must not contain '{SEPARATOR}'")

        resource_path = str(self.blob_store.path_for(client, name))
        expires_at = int(self.clock()) + self.ttl_seconds
        signature = _sign(self._secret, resource_path, expires_at)
        return encode_token(resource_path, expires_at, signature)

    def issue_url(self, client_id: str, filename: str) -> str:
        """Relative URL embedding the token as the ``q`` query parameter."""
        token = self.issue_token(client_id, filename)
        query = urlencode({"client": sanitize_client(client_id), "q": token})
        return f"{UPLOAD_PATH}?{query}"


class PresignVerifier(_Signer):
    """Validates tokens presented on unauthenticated uploads."""

    def verify(self, token: str) -> PresignedTarget:
        if not token:
            raise MalformedToken("Upload token is missing")
        resource_path, expires_raw, signature = decode_token(token)

        try:
            expires_at = int(expires_raw)
        except ValueError as exc:
            raise MalformedToken("Upload token expiry is not a timestamp") from exc

        if self.clock() >= expires_at:
            logger.warning("Rejected expired upload token (expired at %d)", expires_at)
            raise Expired("URL expired")

        expected = _sign(self._secret, resource_path, expires_at)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            logger.warning("Rejected upload token with invalid signature")
            raise InvalidSignature("Invalid signature")

        try:
            client_id, filename = self.blob_store.locate(resource_path)
        except StorageError as exc:
            raise MalformedToken("Upload token path is not a valid blob location") from exc
        return PresignedTarget(
            client_id=client_id,
            filename=filename,
            path=Path(resource_path),
            expires_at=expires_at,
        )

    def consume(self, token: str, data: bytes, client_id: Optional[str] = None) -> Path:
        """
        Verify ``token`` and store ``data`` at the path it grants.

        When ``client_id`` is given (the client named on the request) the
        token must have been issued for that client.
        """
        target = self.verify(token)
        if client_id is not None and client_id != target.client_id:
            logger.warning(
                "Upload token for %s presented as client %s", target.client_id, client_id
            )
            raise AuthError("Upload token was not issued for this client")
        return self.blob_store.save(target.client_id, target.filename, data)
