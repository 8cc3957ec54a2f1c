"""In-memory storage of data-move runs for the life of the process."""

from typing import Dict, List, Optional

from ..models.run import DataMoveRun


class DataMoveStorage:
    """Keeps every run started through the API, keyed by run id."""

    def __init__(self):
        self._runs: Dict[str, DataMoveRun] = {}

    def create(self, config_path: Optional[str] = None) -> DataMoveRun:
        run = DataMoveRun(config_path=config_path)
        self._runs[run.id] = run
        return run

    def get(self, run_id: str) -> Optional[DataMoveRun]:
        return self._runs.get(run_id)

    def list_all(self) -> List[DataMoveRun]:
        return sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)

    def clear(self) -> None:
        self._runs.clear()


data_move_storage = DataMoveStorage()
