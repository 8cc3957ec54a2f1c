"""Run report models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


class RunStatus(str, Enum):
    """Status of a data-move run or one of its steps."""
    PENDING = "pending"
    LOADING = "loading"
    PREPARING = "preparing"
    COUNTING = "counting"
    DELETING = "deleting"
    QUERYING = "querying"
    UPDATING = "updating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DataMoveStep:
    """A single stage applied to one object (or to a whole object set)."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    object_set_index: int = 0
    object_name: str = ""
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "object_set_index": self.object_set_index,
            "object_name": self.object_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "errors": self.errors,
            "warnings": self.warnings,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class DataMoveRun:
    """A complete data-move run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    config_path: Optional[str] = None
    status: RunStatus = RunStatus.PENDING

    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    steps: List[DataMoveStep] = field(default_factory=list)
    current_step: Optional[str] = None

    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0

    errors: List[Dict[str, Any]] = field(default_factory=list)
    report_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "config_path": self.config_path,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step,
            "total_records_processed": self.total_records_processed,
            "total_records_succeeded": self.total_records_succeeded,
            "total_records_failed": self.total_records_failed,
            "errors": self.errors,
            "report_path": self.report_path,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_step(self, name: str, object_set_index: int = 0, object_name: str = "") -> DataMoveStep:
        """Add a new step to the run and make it current."""
        step = DataMoveStep(name=name, object_set_index=object_set_index, object_name=object_name)
        self.steps.append(step)
        self.current_step = step.id
        return step

    def get_step(self, step_id: str) -> Optional[DataMoveStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def update_totals(self) -> None:
        """Update total statistics from steps."""
        self.total_records_processed = sum(s.records_processed for s in self.steps)
        self.total_records_succeeded = sum(s.records_succeeded for s in self.steps)
        self.total_records_failed = sum(s.records_failed for s in self.steps)
