"""Run record for one library scan or library-wide match."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ScanType(str, Enum):
    SCAN = "scan"
    MATCH = "match"


class ScanState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class EventEmitter(Protocol):
    """Receives scan lifecycle and entity events."""

    async def emit(self, event: str, data: Any) -> None: ...


class NullEmitter:
    """Emitter that drops every event."""

    async def emit(self, event: str, data: Any) -> None:
        return None


class ScanLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    level: LogLevel
    message: str


class LibraryScan(BaseModel):
    """
    State of one scan session.

    Created when a scan starts and discarded when it ends; only ``emit_data``
    leaves the process (through the event emitter).
    """

    id: UUID = Field(default_factory=uuid4)
    library_id: UUID
    library_name: str
    type: ScanType = ScanType.SCAN
    state: ScanState = ScanState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None

    results_added: int = 0
    results_updated: int = 0
    results_missing: int = 0
    results_unchanged: int = 0

    authors_removed_from_books: list[UUID] = Field(default_factory=list)
    series_removed_from_books: list[UUID] = Field(default_factory=list)

    logs: list[ScanLogEntry] = Field(default_factory=list)

    def add_log(self, level: LogLevel | str, message: str) -> ScanLogEntry:
        """Append to the scan log and forward to the module logger."""
        level = LogLevel(level)
        entry = ScanLogEntry(level=level, message=message)
        self.logs.append(entry)
        logger.log(_LOGGING_LEVELS[level], "[%s] %s", self.library_name, message)
        return entry

    def start(self) -> None:
        self.state = ScanState.RUNNING
        self.started_at = datetime.utcnow()

    def finish(self, canceled: bool = False) -> None:
        self.state = ScanState.CANCELED if canceled else ScanState.COMPLETED
        self.finished_at = datetime.utcnow()

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def has_results(self) -> bool:
        return bool(self.results_added or self.results_updated or self.results_missing)

    def results(self) -> dict[str, int]:
        return {
            "added": self.results_added,
            "updated": self.results_updated,
            "missing": self.results_missing,
            "unchanged": self.results_unchanged,
        }

    @property
    def emit_data(self) -> dict[str, Any]:
        """Payload for scan_start / scan_complete events."""
        return {
            "id": str(self.id),
            "library_id": str(self.library_id),
            "library_name": self.library_name,
            "type": self.type.value,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "results": self.results(),
        }
