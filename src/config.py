"""
Runtime configuration sourced from the environment.

Settings are read once at startup and handed to every component explicitly.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from src.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8888
DEFAULT_STORAGE_ROOT = "./storage"
DEFAULT_DATABASE_URL = "sqlite:///./clients/clients.db"


def _load_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid value '%s' for %s. Falling back to %s.", raw, name, default)
        return default


@dataclass(frozen=True, slots=True)
class Settings:
    """Process-wide settings."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    storage_root: Path = Path(DEFAULT_STORAGE_ROOT)
    database_url: str = DEFAULT_DATABASE_URL
    presign_secret: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        storage_root = os.getenv("HANDRADI_STORAGE_ROOT", DEFAULT_STORAGE_ROOT)
        if "|" in storage_root:
            raise ConfigurationError(
                f"HANDRADI_STORAGE_ROOT must not contain '|': {storage_root!r}"
            )
        return cls(
            host=os.getenv("HANDRADI_HOST", "0.0.0.0"),
            port=_load_int_env("HANDRADI_PORT", DEFAULT_PORT),
            storage_root=Path(storage_root),
            database_url=os.getenv("HANDRADI_DATABASE_URL", DEFAULT_DATABASE_URL),
            presign_secret=os.getenv("PRESIGN_SECRET") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require_presign_secret(self) -> str:
        """Return the signing secret or fail fast when it is not configured."""
        if not self.presign_secret:
            raise ConfigurationError(
                "PRESIGN_SECRET is not set; refusing to sign upload URLs with an empty key"
            )
        return self.presign_secret
