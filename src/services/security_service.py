"""
Security service: audit trail, correlation ids and response hardening headers.
"""

import logging
import secrets
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """Bounded in-memory trail of security-relevant events."""

    def __init__(self, max_entries: int = 1000):
        self.logs: Deque[Dict[str, Any]] = deque(maxlen=max_entries)

    def log_event(self, event_type: str, client_id: Optional[str], **details: Any):
        """Log a security-relevant event."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "client_id": client_id,
            **details,
        }
        self.logs.append(log_entry)
        logger.info("Audit log: %s", log_entry)

    def get_logs(self, limit: int = 100, client_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent audit logs, optionally only those of one client."""
        entries = list(self.logs)
        if client_id is not None:
            entries = [entry for entry in entries if entry["client_id"] == client_id]
        return entries[-limit:]


class SecurityService:
    """Aggregates the cross-cutting security controls."""

    def __init__(self, audit_max_entries: int = 1000):
        self.audit_logger = AuditLogger(max_entries=audit_max_entries)
        self.security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "no-referrer",
            "Content-Security-Policy": "default-src 'none'",
        }

    @staticmethod
    def generate_correlation_id() -> str:
        return secrets.token_urlsafe(16)

    def get_security_headers(self) -> Dict[str, str]:
        return dict(self.security_headers)

    def log_event(self, event_type: str, client_id: Optional[str], **details: Any):
        self.audit_logger.log_event(event_type, client_id, **details)

    def get_audit_logs(
        self, limit: int = 100, client_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self.audit_logger.get_logs(limit, client_id)
