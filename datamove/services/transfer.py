"""
Streaming transfer layer.

Moves query results into CSV working files and CSV payload files into
write jobs. Each transfer is a single cooperative task: rows are pulled from
the endpoint, passed through an optional record callback and pushed into a
``CsvFileSink``, suspending on the sink's drain signal. Progress callbacks
fire on a timer independent of record arrival.
"""

import asyncio
import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .csv_files import CsvFileSink, count_csv_rows, read_csv_rows, write_csv_rows
from .engine_selector import suggest_polling_settings, suggest_update_engine
from ..constants import STATUS_FILE_COLUMNS
from ..endpoints.base import BaseEndpoint
from ..errors import DataMoveError, StreamError, TransportError
from ..models.config import EngineSettings
from ..models.job import (
    ApiEngine,
    IngestJobInfo,
    JobState,
    QueryProgress,
    RecordResult,
    ReportLevel,
    WriteOperation,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
RecordCallback = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
QueryProgressCallback = Callable[[QueryProgress], None]
JobProgressCallback = Callable[[IngestJobInfo], None]


class DataTransfer:
    """Executes queries and writes against an endpoint through working files."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        report_level: ReportLevel = ReportLevel.ERRORS,
    ):
        self.settings = settings or EngineSettings()
        self.report_level = report_level

    async def _tick(self, callback: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self.settings.progress_interval)
            callback()

    # Queries -----------------------------------------------------------------

    async def query_to_file(
        self,
        endpoint: BaseEndpoint,
        query: str,
        file_path: PathLike,
        use_bulk: bool = False,
        append: bool = False,
        fieldnames: Optional[List[str]] = None,
        record_callback: Optional[RecordCallback] = None,
        progress_callback: Optional[QueryProgressCallback] = None,
    ) -> QueryProgress:
        """
        Stream the rows of a query into a CSV file.

        Args:
            endpoint: Endpoint to query
            query: Query string
            file_path: Destination CSV file
            use_bulk: Query through the bulk transport
            append: Append to an existing file, reusing its header
            fieldnames: Header to use; defaults to the keys of the first row
            record_callback: Transforms a row, or returns None to drop it
            progress_callback: Called every progress interval when the count changed

        Returns:
            Final QueryProgress with the fetched and written record counts
        """
        engine = ApiEngine.FILE if endpoint.is_file_based else (ApiEngine.BULK if use_bulk else ApiEngine.REST)
        progress = QueryProgress(engine=engine)
        last_reported = -1

        def report() -> None:
            nonlocal last_reported
            if progress_callback and progress.record_count != last_reported:
                last_reported = progress.record_count
                progress_callback(QueryProgress(progress.record_count, progress.filtered_record_count, engine))

        logger.info(f"Querying {endpoint.label} via {engine.value}: {query}")

        ticker = None
        sink = None
        rows = None
        try:
            if progress_callback:
                ticker = asyncio.create_task(self._tick(report))
            report()

            sink = CsvFileSink(file_path, fieldnames=fieldnames, append=append)
            rows = endpoint.query_rows(query, use_bulk)
            async for row in rows:
                progress.record_count += 1
                if record_callback:
                    row = record_callback(row)
                    if row is None:
                        continue
                progress.filtered_record_count += 1
                if not sink.write(row):
                    await sink.drain()
            sink.write_header()
            await sink.close()
        except DataMoveError:
            raise
        except (OSError, csv.Error) as e:
            raise StreamError(f"Query stream to {Path(file_path).name} failed: {e}", endpoint_label=endpoint.label) from e
        finally:
            if ticker:
                ticker.cancel()
            if rows is not None:
                await rows.aclose()
            if sink is not None:
                await sink.close()

        report()
        logger.info(
            f"Fetched {progress.record_count} records from {endpoint.label}, "
            f"kept {progress.filtered_record_count}"
        )
        return progress

    # Writes ------------------------------------------------------------------

    async def update_from_file(
        self,
        endpoint: BaseEndpoint,
        object_name: str,
        operation: WriteOperation,
        file_path: PathLike,
        status_file_path: Optional[PathLike] = None,
        use_bulk: Optional[bool] = None,
        projected_record_count: Optional[int] = None,
        progress_callback: Optional[JobProgressCallback] = None,
    ) -> IngestJobInfo:
        """
        Write the records of a CSV payload file.

        The transport is chosen by cost unless ``use_bulk`` is given. A job
        that ends Failed or Aborted is returned with its last known counts,
        not raised.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise StreamError(f"File not found: {file_path}", object_name=object_name, endpoint_label=endpoint.label)

        record_count = projected_record_count
        if record_count is None:
            record_count = count_csv_rows(file_path)

        if use_bulk is None:
            choice = suggest_update_engine(record_count, self.settings)
            if choice.skip_api_call:
                self._write_status_file(status_file_path, operation, [])
                return IngestJobInfo(operation=operation.value, state=JobState.JOB_COMPLETE, record_count=0)
            use_bulk = choice.use_bulk

        if operation == WriteOperation.HARD_DELETE and not endpoint.is_file_based and not use_bulk:
            # Row-limited deletes go to the recycle bin
            logger.info(f"Hard delete of {object_name} routed to {ApiEngine.BULK.value}")
            use_bulk = True

        logger.info(
            f"{operation.value.capitalize()} {record_count} {object_name} records on {endpoint.label} "
            f"via {ApiEngine.BULK.value if use_bulk else ApiEngine.REST.value} from {file_path.name}"
        )

        try:
            if use_bulk:
                info = await self._update_bulk(endpoint, object_name, operation, file_path, record_count, progress_callback)
            else:
                # Blank cells leave fields untouched, as they do in bulk jobs
                records = [{k: v for k, v in row.items() if v != ""} async for row in read_csv_rows(file_path)]
                info = await self._update_rest(endpoint, object_name, operation, records, progress_callback)
        except DataMoveError as e:
            raise e.with_context(object_name=object_name, endpoint_label=endpoint.label)
        except Exception as e:
            raise TransportError(
                f"{operation.value} failed: {e}", object_name=object_name, endpoint_label=endpoint.label
            ) from e

        self._write_status_file(status_file_path, operation, info.results)
        return info

    async def _update_rest(
        self,
        endpoint: BaseEndpoint,
        object_name: str,
        operation: WriteOperation,
        records: List[Dict[str, Any]],
        progress_callback: Optional[JobProgressCallback],
    ) -> IngestJobInfo:
        info = IngestJobInfo(
            operation=operation.value,
            engine=ApiEngine.FILE if endpoint.is_file_based else ApiEngine.REST,
            state=JobState.IN_PROGRESS,
            record_count=len(records),
            created_at=datetime.utcnow(),
        )
        batch_size = self.settings.rest_max_records_per_batch

        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            results = await endpoint.update_records(object_name, operation, batch)
            info.results.extend(results)
            info.number_records_processed += len(results)
            info.number_records_failed += sum(1 for r in results if not r.success)
            if progress_callback:
                progress_callback(info)

        info.state = JobState.JOB_COMPLETE
        info.completed_at = datetime.utcnow()
        if progress_callback:
            progress_callback(info)
        return info

    async def _update_bulk(
        self,
        endpoint: BaseEndpoint,
        object_name: str,
        operation: WriteOperation,
        file_path: Path,
        record_count: int,
        progress_callback: Optional[JobProgressCallback],
    ) -> IngestJobInfo:
        polling = suggest_polling_settings(record_count, self.settings)
        job = endpoint.create_ingest_job(object_name, operation)
        info = IngestJobInfo(
            operation=operation.value,
            engine=ApiEngine.BULK,
            record_count=record_count,
            created_at=datetime.utcnow(),
        )
        last_state: Optional[JobState] = None
        last_processed = -1

        def report() -> None:
            nonlocal last_state, last_processed
            if progress_callback and (info.state != last_state or info.number_records_processed > last_processed):
                last_state = info.state
                last_processed = info.number_records_processed
                progress_callback(info)

        report()
        await job.open()
        info.job_id = job.job_id
        info.state = JobState.UPLOADING
        report()

        await job.upload_data(file_path)
        await job.close()
        info.state = JobState.IN_PROGRESS
        report()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + polling.poll_timeout
        while True:
            await asyncio.sleep(polling.poll_interval)
            checked = await job.check()
            info.state = checked.state
            info.number_records_processed = checked.number_records_processed
            info.number_records_failed = checked.number_records_failed
            info.error_message = checked.error_message
            report()
            if info.state.is_terminal:
                break
            if loop.time() >= deadline:
                logger.error(f"Ingest job {info.job_id} timed out after {polling.poll_timeout}s, aborting")
                await job.abort()
                info.state = JobState.ABORTED
                info.error_message = f"Timed out after {polling.poll_timeout} seconds"
                break

        info.completed_at = datetime.utcnow()
        if info.state != JobState.JOB_COMPLETE:
            logger.error(f"Ingest job {info.job_id} ended as {info.state.value}: {info.error_message or ''}")
            return info

        final_state = info.state
        info.state = JobState.CREATING_REPORTS
        report()
        info.results = await job.get_successful_results() + await job.get_failed_results()
        info.state = final_state
        report()
        return info

    # Status files ------------------------------------------------------------

    def should_report_success(self, operation: WriteOperation) -> bool:
        if self.report_level == ReportLevel.ALL:
            return True
        return self.report_level == ReportLevel.INSERTS and operation == WriteOperation.INSERT

    def _write_status_file(
        self,
        status_file_path: Optional[PathLike],
        operation: WriteOperation,
        results: List[RecordResult],
    ) -> None:
        """Write per-record outcomes filtered by the report level."""
        if not status_file_path or self.report_level == ReportLevel.NONE:
            return
        report_success = self.should_report_success(operation)
        rows = [r.to_status_row() for r in results if not r.success or report_success]
        write_csv_rows(status_file_path, rows, STATUS_FILE_COLUMNS)
        logger.debug(f"Wrote {len(rows)} status rows to {Path(status_file_path).name}")
