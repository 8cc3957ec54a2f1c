"""Data models for the data-move engine."""

from .describe import FieldDescribe, SObjectDescribe
from .script import (
    Operation,
    FieldMappingItem,
    ParsedQuery,
    ExtraData,
    ScriptObject,
    ObjectSet,
    Script,
    split_external_id,
    create_readonly_object,
)
from .job import (
    ApiEngine,
    JobState,
    WriteOperation,
    ReportLevel,
    EngineChoice,
    PollingChoice,
    QueryProgress,
    IngestJobInfo,
    RecordResult,
)
from .config import EngineSettings, EndpointConfig, DataMoveConfig
from .run import RunStatus, DataMoveStep, DataMoveRun

__all__ = [
    "FieldDescribe",
    "SObjectDescribe",
    "Operation",
    "FieldMappingItem",
    "ParsedQuery",
    "ExtraData",
    "ScriptObject",
    "ObjectSet",
    "Script",
    "split_external_id",
    "create_readonly_object",
    "ApiEngine",
    "JobState",
    "WriteOperation",
    "ReportLevel",
    "EngineChoice",
    "PollingChoice",
    "QueryProgress",
    "IngestJobInfo",
    "RecordResult",
    "EngineSettings",
    "EndpointConfig",
    "DataMoveConfig",
    "RunStatus",
    "DataMoveStep",
    "DataMoveRun",
]
