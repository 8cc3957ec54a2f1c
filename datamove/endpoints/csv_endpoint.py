"""Flat-file endpoint backed by a directory of ``<Entity>.csv`` files."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from .base import BaseEndpoint, BaseIngestJob
from ..constants import DEFAULT_ENCODING, ID_FIELD
from ..errors import SchemaError, StreamError
from ..models.describe import SObjectDescribe
from ..models.job import ApiEngine, IngestJobInfo, JobState, RecordResult, WriteOperation
from ..services.csv_files import iter_csv_rows, read_csv_header, read_csv_rows, write_csv_rows
from ..services.query_builder import parse_query_string

logger = logging.getLogger(__name__)


class CsvFileEndpoint(BaseEndpoint):
    """
    Endpoint that reads and writes one CSV file per entity.

    It has no schema of its own, so callers describe entities on the
    counterpart endpoint. Queries return every row of the entity file
    projected onto the selected fields; filters are not evaluated.
    """

    is_file_based = True
    supports_describe = False

    def __init__(self, label: str, directory: str, encoding: str = DEFAULT_ENCODING):
        super().__init__(label)
        self.directory = Path(directory).expanduser().resolve()
        self.encoding = encoding
        self.directory.mkdir(parents=True, exist_ok=True)

    @property
    def endpoint_id(self) -> str:
        return f"csv:{self.directory}"

    def get_file_path(self, object_name: str) -> Path:
        return self.directory / f"{object_name}.csv"

    async def describe(self, object_name: str) -> SObjectDescribe:
        raise SchemaError(
            "CSV endpoints carry no schema", object_name=object_name, endpoint_label=self.label
        )

    async def query_rows(self, query: str, use_bulk: bool = False) -> AsyncIterator[Dict[str, Any]]:
        parsed = parse_query_string(query)
        path = self.get_file_path(parsed.object_name)
        if not path.exists():
            logger.debug(f"No file for {parsed.object_name} in {self.directory}")
            return

        skipped = 0
        returned = 0
        async for row in read_csv_rows(path, self.encoding):
            if skipped < parsed.offset:
                skipped += 1
                continue
            if parsed.limit and returned >= parsed.limit:
                break
            returned += 1
            if parsed.fields:
                yield {f: row.get(f, "") for f in parsed.fields}
            else:
                yield dict(row)

    async def count(self, query: str) -> int:
        parsed = parse_query_string(query)
        path = self.get_file_path(parsed.object_name)
        if not path.exists():
            return 0
        loop = asyncio.get_running_loop()
        total = await loop.run_in_executor(None, lambda: sum(1 for _ in iter_csv_rows(path, self.encoding)))
        total = max(total - parsed.offset, 0)
        return min(total, parsed.limit) if parsed.limit else total

    def create_ingest_job(self, object_name: str, operation: WriteOperation) -> BaseIngestJob:
        return CsvIngestJob(self, object_name, operation)

    async def update_records(
        self,
        object_name: str,
        operation: WriteOperation,
        records: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._apply, object_name, operation, records)
        except OSError as e:
            raise StreamError(
                f"Failed to write {object_name} file: {e}", object_name=object_name, endpoint_label=self.label
            ) from e

    def _apply(
        self,
        object_name: str,
        operation: WriteOperation,
        records: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        """Rewrite the entity file with the records applied."""
        path = self.get_file_path(object_name)
        fieldnames: List[str] = read_csv_header(path, self.encoding) if path.exists() else []
        rows = list(iter_csv_rows(path, self.encoding)) if path.exists() else []
        index = {row.get(ID_FIELD): row for row in rows if row.get(ID_FIELD)}

        if ID_FIELD not in fieldnames:
            fieldnames.insert(0, ID_FIELD)
        for record in records:
            for key in record:
                if key not in fieldnames:
                    fieldnames.append(key)

        results = []
        deleted = set()
        for record in records:
            record_id = record.get(ID_FIELD)
            if operation == WriteOperation.INSERT:
                new_id = uuid.uuid4().hex[:18]
                rows.append({**record, ID_FIELD: new_id})
                results.append(RecordResult(id=new_id, success=True, created=True, record=record))
            elif record_id not in index:
                results.append(RecordResult(
                    id=record_id, success=False, error=f"Record {record_id} not found", record=record
                ))
            elif operation.is_delete:
                deleted.add(record_id)
                results.append(RecordResult(id=record_id, success=True, record=record))
            else:
                index[record_id].update(record)
                results.append(RecordResult(id=record_id, success=True, record=record))

        rows = [row for row in rows if row.get(ID_FIELD) not in deleted]
        write_csv_rows(path, rows, fieldnames, self.encoding)
        return results


class CsvIngestJob(BaseIngestJob):
    """Ingest job that applies the uploaded file immediately."""

    def __init__(self, endpoint: CsvFileEndpoint, object_name: str, operation: WriteOperation):
        super().__init__(object_name, operation)
        self.endpoint = endpoint
        self.state = JobState.INITIALIZING
        self._results: List[RecordResult] = []
        self._file_path: Optional[Path] = None

    async def open(self) -> None:
        self.job_id = uuid.uuid4().hex
        self.state = JobState.OPEN

    async def upload_data(self, file_path: Path) -> None:
        self._file_path = Path(file_path)
        self.state = JobState.UPLOAD_COMPLETE

    async def close(self) -> None:
        records = [dict(row) for row in iter_csv_rows(self._file_path, self.endpoint.encoding)]
        self._results = await self.endpoint.update_records(self.object_name, self.operation, records)
        self.state = JobState.JOB_COMPLETE

    async def check(self) -> IngestJobInfo:
        failed = sum(1 for r in self._results if not r.success)
        return IngestJobInfo(
            operation=self.operation.value,
            engine=ApiEngine.FILE,
            job_id=self.job_id,
            state=self.state,
            number_records_processed=len(self._results),
            number_records_failed=failed,
        )

    async def get_successful_results(self) -> List[RecordResult]:
        return [r for r in self._results if r.success]

    async def get_failed_results(self) -> List[RecordResult]:
        return [r for r in self._results if not r.success]
