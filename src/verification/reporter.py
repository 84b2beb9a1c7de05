"""
Status and error reporting.

StatusReporter is the verifier's single notification sink: it logs each
event, counts it, keeps fatal records for the surrounding process and
publishes the event onto the status channel.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.utils.metrics import VerificationMetrics

from .events import Fatal, RowCopyCompleted, StatusChannel, StatusEvent, Verified
from .models import format_primary_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorRecord:
    """Machine-readable form of a fatal verification error."""

    message: str
    mismatches: dict[str, list[Any]]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ErrMessage": self.message,
            "mismatches": {
                table: [format_primary_key(pk) for pk in pks]
                for table, pks in sorted(self.mismatches.items())
            },
            "timestamp": self.timestamp.isoformat(),
        }


class StatusReporter:
    """Notification sink for verifier status events."""

    def __init__(
        self,
        channel: StatusChannel | None = None,
        metrics: VerificationMetrics | None = None,
    ):
        self.channel = channel or StatusChannel()
        self.metrics = metrics or VerificationMetrics()
        self.errors: list[ErrorRecord] = []
        self._lock = threading.Lock()

    @property
    def last_error(self) -> ErrorRecord | None:
        with self._lock:
            return self.errors[-1] if self.errors else None

    def emit(self, event: StatusEvent) -> None:
        """Log, count and publish one status event."""
        if isinstance(event, Fatal):
            record = ErrorRecord(
                message=event.message,
                mismatches={table: list(pks) for table, pks in event.mismatches.items()},
                timestamp=event.timestamp,
            )
            with self._lock:
                self.errors.append(record)
            logger.error(
                event.message,
                extra={"status": event.kind.value, "mismatches": record.to_dict()["mismatches"]},
            )
        elif isinstance(event, Verified):
            if event.passed:
                logger.info("Cutover verification passed", extra={"status": event.kind.value})
            else:
                logger.error(
                    f"Cutover verification found mismatches in {', '.join(event.failing_tables)}",
                    extra={"status": event.kind.value, "failing_tables": list(event.failing_tables)},
                )
        elif isinstance(event, RowCopyCompleted):
            logger.info(
                "Row copy completed",
                extra={"status": event.kind.value, "tables": list(event.tables)},
            )
        else:
            raise TypeError(f"Unknown status event: {event!r}")

        self.metrics.record_status_event(event.kind.value)
        self.channel.publish(event)
