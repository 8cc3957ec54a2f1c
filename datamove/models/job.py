"""Transfer job models: engine choices, progress and per-record results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ApiEngine(str, Enum):
    """Transport used for a single query or write."""
    REST = "REST"
    BULK = "Bulk"
    FILE = "File"


class JobState(str, Enum):
    """States of an ingest job, including the client-side bookkeeping states."""
    INITIALIZING = "Initializing"
    OPEN = "Open"
    UPLOADING = "Uploading"
    UPLOAD_COMPLETE = "UploadComplete"
    IN_PROGRESS = "InProgress"
    CREATING_REPORTS = "CreatingReports"
    JOB_COMPLETE = "JobComplete"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.JOB_COMPLETE, JobState.FAILED, JobState.ABORTED)


class WriteOperation(str, Enum):
    """Write operation sent to an endpoint. Upserts are routed into inserts and updates."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    HARD_DELETE = "hardDelete"

    @property
    def is_delete(self) -> bool:
        return self in (WriteOperation.DELETE, WriteOperation.HARD_DELETE)


class ReportLevel(str, Enum):
    """Which per-record results are written to the status file."""
    NONE = "None"
    ERRORS = "Errors"
    INSERTS = "Inserts"
    ALL = "All"


@dataclass
class EngineChoice:
    """Outcome of an engine selection."""
    skip_api_call: bool = False
    use_bulk: bool = False
    query_all: bool = False

    @property
    def engine(self) -> ApiEngine:
        return ApiEngine.BULK if self.use_bulk else ApiEngine.REST


@dataclass
class PollingChoice:
    """Poll interval and overall timeout for a bulk job, in seconds."""
    poll_interval: float
    poll_timeout: float


@dataclass
class QueryProgress:
    """Snapshot handed to query progress callbacks."""
    record_count: int = 0
    filtered_record_count: int = 0
    engine: ApiEngine = ApiEngine.REST


@dataclass
class IngestJobInfo:
    """State and counters of a write job."""
    operation: str
    engine: ApiEngine = ApiEngine.REST
    job_id: str = ""
    state: JobState = JobState.INITIALIZING
    number_records_processed: int = 0
    number_records_failed: int = 0
    record_count: int = -1
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: List["RecordResult"] = field(default_factory=list, repr=False)  # Filled by the transfer layer

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.JOB_COMPLETE

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.created_at and self.completed_at:
            return (self.completed_at - self.created_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "operation": self.operation,
            "engine": self.engine.value,
            "job_id": self.job_id,
            "state": self.state.value,
            "number_records_processed": self.number_records_processed,
            "number_records_failed": self.number_records_failed,
            "record_count": self.record_count,
            "error_message": self.error_message,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class RecordResult:
    """Outcome of writing one record."""
    id: Optional[str] = None
    success: bool = False
    created: bool = False
    error: str = ""
    record: Dict[str, Any] = field(default_factory=dict)  # Payload as sent

    @property
    def status(self) -> str:
        return "Success" if self.success else "Error"

    def to_status_row(self) -> Dict[str, str]:
        """Row for the status CSV."""
        return {
            "Id": self.id or "",
            "Created": "true" if self.created else "false",
            "Error": self.error,
            "Status": self.status,
        }
