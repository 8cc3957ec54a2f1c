"""Base endpoint interface."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List
import logging

from ..models.describe import SObjectDescribe
from ..models.job import IngestJobInfo, RecordResult, WriteOperation

logger = logging.getLogger(__name__)


class BaseIngestJob(ABC):
    """
    A bulk write job.

    Lifecycle: ``open`` -> ``upload_data`` -> ``close`` -> ``check`` until a
    terminal state -> ``get_successful_results`` / ``get_failed_results``.
    """

    def __init__(self, object_name: str, operation: WriteOperation):
        self.object_name = object_name
        self.operation = operation
        self.job_id = ""

    @abstractmethod
    async def open(self) -> None:
        pass

    @abstractmethod
    async def upload_data(self, file_path: Path) -> None:
        """Upload a CSV payload file whose header holds target field names."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Mark the upload complete so the endpoint starts processing."""
        pass

    @abstractmethod
    async def check(self) -> IngestJobInfo:
        pass

    @abstractmethod
    async def get_successful_results(self) -> List[RecordResult]:
        pass

    @abstractmethod
    async def get_failed_results(self) -> List[RecordResult]:
        pass

    async def abort(self) -> None:
        """Abort the job. Endpoints without server-side jobs have nothing to abort."""
        logger.debug(f"Abort requested for {self.object_name} job {self.job_id}")


class BaseEndpoint(ABC):
    """
    Base class for the two sides of a data move.

    An endpoint describes entities, streams query results as flat rows
    (relationship values under dotted keys such as ``Account.Name``) and
    writes records either row-limited or through an ingest job.
    """

    is_file_based = False
    supports_describe = True

    def __init__(self, label: str):
        """
        Initialize the endpoint.

        Args:
            label: Name used in logs and error messages
        """
        self.label = label

    @property
    @abstractmethod
    def endpoint_id(self) -> str:
        """Identity of the underlying data store; equal ids mean the same store."""
        pass

    @abstractmethod
    async def describe(self, object_name: str) -> SObjectDescribe:
        pass

    @abstractmethod
    def query_rows(self, query: str, use_bulk: bool = False) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream the rows returned by a query.

        Args:
            query: Query string
            use_bulk: Run the query as a bulk job instead of paging

        Yields:
            Flat record dicts
        """
        pass

    @abstractmethod
    async def count(self, query: str) -> int:
        """Run a count query and return the number of matching records."""
        pass

    @abstractmethod
    def create_ingest_job(self, object_name: str, operation: WriteOperation) -> BaseIngestJob:
        pass

    @abstractmethod
    async def update_records(
        self,
        object_name: str,
        operation: WriteOperation,
        records: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        """
        Write a small batch of records synchronously.

        Returns one result per input record, in input order.
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the endpoint."""
        pass


def expand_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten nested relationship records to dotted keys, dropping ``attributes``."""
    flat: Dict[str, Any] = {}

    def walk(value: Dict[str, Any], prefix: str) -> None:
        for key, item in value.items():
            if key == "attributes":
                continue
            path = f"{prefix}.{key}" if prefix else key
            if isinstance(item, dict):
                walk(item, path)
            else:
                flat[path] = item

    walk(record, "")
    return flat
