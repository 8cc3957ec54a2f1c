"""Run configuration models."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .job import ReportLevel
from .. import constants


@dataclass
class EngineSettings:
    """Tunable limits and cost weights used by engine selection and clause splitting."""
    rest_max_records_per_call: int = constants.REST_API_MAX_RECORDS_PER_CALL
    rest_max_records_per_batch: int = constants.REST_API_MAX_RECORDS_PER_BATCH
    bulk_max_records_per_batch: int = constants.BULK_API_MAX_RECORDS_PER_BATCH
    rest_base_cost_per_call: float = constants.REST_API_BASE_COST_PER_CALL
    rest_cost_per_record: float = constants.REST_API_COST_PER_RECORD
    bulk_base_cost_per_job: float = constants.BULK_API_BASE_COST_PER_JOB
    bulk_cost_per_record: float = constants.BULK_API_COST_PER_RECORD
    poll_min_interval: float = constants.BULK_API_POLL_MIN_INTERVAL
    poll_max_interval: float = constants.BULK_API_POLL_MAX_INTERVAL
    poll_max_timeout: float = constants.BULK_API_POLL_MAX_TIMEOUT
    poll_record_scale_factor: int = constants.BULK_API_POLL_RECORD_SCALE_FACTOR
    progress_interval: float = constants.PROGRESS_REPORT_INTERVAL
    max_where_clause_length: int = constants.MAX_WHERE_CLAUSE_LENGTH
    max_query_length: int = constants.MAX_QUERY_LENGTH

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineSettings":
        """Create from a partial dictionary; unknown keys are ignored."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class EndpointConfig:
    """Connection settings for one side of the move."""
    label: str
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    csv_dir: Optional[str] = None  # Set when the endpoint is a CSV directory
    api_version: str = constants.DEFAULT_API_VERSION

    @property
    def is_csv(self) -> bool:
        return self.csv_dir is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (the access token is never exported)."""
        return {
            "label": self.label,
            "instance_url": self.instance_url,
            "csv_dir": self.csv_dir,
            "api_version": self.api_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], label: str, env_prefix: str) -> "EndpointConfig":
        """Create from a dictionary, falling back to DATAMOVE_<PREFIX>_* environment variables."""
        return cls(
            label=data.get("label") or label,
            instance_url=data.get("instance_url") or os.environ.get(f"DATAMOVE_{env_prefix}_INSTANCE_URL"),
            access_token=data.get("access_token") or os.environ.get(f"DATAMOVE_{env_prefix}_ACCESS_TOKEN"),
            csv_dir=data.get("csv_dir"),
            api_version=data.get("api_version", constants.DEFAULT_API_VERSION),
        )


@dataclass
class DataMoveConfig:
    """Configuration for a data-move run."""
    config_path: str = constants.DEFAULT_CONFIG_PATH
    work_dir: Optional[str] = None

    source: EndpointConfig = field(default_factory=lambda: EndpointConfig(label="source"))
    target: EndpointConfig = field(default_factory=lambda: EndpointConfig(label="target"))

    # Execution options
    child_query_rounds: int = constants.CHILD_QUERY_RETRY_ROUNDS
    report_level: ReportLevel = ReportLevel.ERRORS
    continue_on_error: bool = False
    engine: EngineSettings = field(default_factory=EngineSettings)

    @property
    def resolved_config_path(self) -> Path:
        return Path(self.config_path).expanduser().resolve()

    @property
    def resolved_work_dir(self) -> Path:
        """Working directory, computed once from the script location unless set explicitly."""
        if self.work_dir:
            return Path(self.work_dir).expanduser().resolve()
        return self.resolved_config_path.parent / constants.DEFAULT_WORK_SUB_DIRECTORY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "config_path": self.config_path,
            "work_dir": self.work_dir,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "child_query_rounds": self.child_query_rounds,
            "report_level": self.report_level.value,
            "continue_on_error": self.continue_on_error,
            "engine": self.engine.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataMoveConfig":
        """Create from dictionary representation."""
        return cls(
            config_path=data.get("config_path", constants.DEFAULT_CONFIG_PATH),
            work_dir=data.get("work_dir"),
            source=EndpointConfig.from_dict(data.get("source") or {}, "source", "SOURCE"),
            target=EndpointConfig.from_dict(data.get("target") or {}, "target", "TARGET"),
            child_query_rounds=data.get("child_query_rounds", constants.CHILD_QUERY_RETRY_ROUNDS),
            report_level=ReportLevel(data.get("report_level", ReportLevel.ERRORS.value)),
            continue_on_error=data.get("continue_on_error", False),
            engine=EngineSettings.from_dict(data.get("engine")),
        )
