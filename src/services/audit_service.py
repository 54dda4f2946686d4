"""
Audit trail for upload decisions.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from src.security.uploads import IngestOutcome

logger = logging.getLogger(__name__)


class AuditLogger:
    """Keeps recent upload decisions for operators."""

    def __init__(self, max_entries: int = 1000):
        self.logs: Deque[Dict[str, Any]] = deque(maxlen=max_entries)

    def log_event(self, event_type: str, correlation_id: Optional[str] = None, **kwargs):
        """Record a security-relevant event."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "correlation_id": correlation_id,
            **kwargs,
        }
        self.logs.append(log_entry)
        logger.info("Audit log: %s", log_entry)

    def log_outcome(
        self, outcome: IngestOutcome, *, content_class: str, correlation_id: Optional[str] = None
    ):
        """Record the terminal state of an upload with its internal reason."""
        if outcome.accepted and outcome.trusted is not None:
            self.log_event(
                "upload_accepted",
                correlation_id,
                content_class=content_class,
                storage_name=outcome.trusted.assigned_name,
                detected_type=outcome.trusted.detected_type,
                size_bytes=outcome.trusted.size_bytes,
                original_name=outcome.original_name,
            )
            return

        self.log_event(
            "upload_rejected",
            correlation_id,
            content_class=content_class,
            reason=outcome.reason.value if outcome.reason else None,
            rejected_at=outcome.trail[-2].value if len(outcome.trail) > 1 else None,
            detected_type=outcome.detected_type,
            original_name=outcome.original_name,
        )

    def get_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent audit logs."""
        return list(self.logs)[-limit:]

    def reset(self) -> None:
        """Clear stored entries (useful for tests)."""
        self.logs.clear()


SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}
