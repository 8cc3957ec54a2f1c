"""Data-move execution endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException

from ..models import (
    DataMoveCreate,
    DataMoveListResponse,
    DataMoveResponse,
    EndpointSettings,
)
from ..storage import data_move_storage
from ...models.config import DataMoveConfig, EndpointConfig, EngineSettings
from ...models.job import ReportLevel
from ...models.run import DataMoveRun
from ...orchestrator import DataMoveOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def _endpoint_config(settings: EndpointSettings, label: str, env_prefix: str) -> EndpointConfig:
    return EndpointConfig.from_dict(settings.model_dump(exclude_none=True), label, env_prefix)


def build_config(data: DataMoveCreate) -> DataMoveConfig:
    """Convert an API request into a run configuration."""
    return DataMoveConfig(
        config_path=data.config_path,
        work_dir=data.work_dir,
        source=_endpoint_config(data.source, "source", "SOURCE"),
        target=_endpoint_config(data.target, "target", "TARGET"),
        child_query_rounds=data.child_query_rounds,
        report_level=ReportLevel(data.report_level.value),
        continue_on_error=data.continue_on_error,
        engine=EngineSettings.from_dict(data.engine),
    )


def to_response(run: DataMoveRun) -> DataMoveResponse:
    return DataMoveResponse(**run.to_dict())


@router.post("", response_model=DataMoveResponse, status_code=202)
async def start_data_move(data: DataMoveCreate, background_tasks: BackgroundTasks):
    """Start a data move in the background."""
    config = build_config(data)
    run = data_move_storage.create(config_path=str(config.resolved_config_path))

    background_tasks.add_task(run_data_move_task, run.id, config)
    return to_response(run)


@router.get("", response_model=DataMoveListResponse)
async def list_data_moves():
    """List all data moves."""
    runs = data_move_storage.list_all()
    return DataMoveListResponse(data_moves=[to_response(r) for r in runs], total=len(runs))


@router.get("/{run_id}", response_model=DataMoveResponse)
async def get_data_move(run_id: str):
    """Get a specific data move with its step report."""
    run = data_move_storage.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Data move not found")
    return to_response(run)


async def run_data_move_task(run_id: str, config: DataMoveConfig):
    """Background task running a data move; progress is visible on the stored run."""
    run = data_move_storage.get(run_id)
    if not run:
        return

    orchestrator = DataMoveOrchestrator(config)
    await orchestrator.run_data_move(run=run)
    logger.info(f"Data move {run_id} finished with status {run.status.value}")
