"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime

from .. import constants


class RunStatusEnum(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    PREPARING = "preparing"
    COUNTING = "counting"
    DELETING = "deleting"
    QUERYING = "querying"
    UPDATING = "updating"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportLevelEnum(str, Enum):
    NONE = "None"
    ERRORS = "Errors"
    INSERTS = "Inserts"
    ALL = "All"


# Request Models
class EndpointSettings(BaseModel):
    label: Optional[str] = None
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    csv_dir: Optional[str] = None
    api_version: str = constants.DEFAULT_API_VERSION


class DataMoveCreate(BaseModel):
    config_path: str = constants.DEFAULT_CONFIG_PATH
    work_dir: Optional[str] = None
    source: EndpointSettings = Field(default_factory=EndpointSettings)
    target: EndpointSettings = Field(default_factory=EndpointSettings)
    child_query_rounds: int = constants.CHILD_QUERY_RETRY_ROUNDS
    report_level: ReportLevelEnum = ReportLevelEnum.ERRORS
    continue_on_error: bool = False
    engine: Dict[str, Any] = Field(default_factory=dict)


# Response Models
class DataMoveStepResponse(BaseModel):
    id: str
    name: str
    object_set_index: int = 0
    object_name: str = ""
    status: RunStatusEnum
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class DataMoveResponse(BaseModel):
    id: str
    config_path: Optional[str] = None
    status: RunStatusEnum
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[DataMoveStepResponse] = Field(default_factory=list)
    current_step: Optional[str] = None
    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    report_path: Optional[str] = None


class DataMoveListResponse(BaseModel):
    data_moves: List[DataMoveResponse]
    total: int
