"""Salesforce endpoint using the REST and Bulk 2.0 APIs."""

import asyncio
import csv
import functools
import io
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import requests
from dateutil import parser as date_parser
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseEndpoint, BaseIngestJob, expand_record
from ..constants import DEFAULT_API_VERSION, REST_API_MAX_RECORDS_PER_BATCH, SFORCE_CALL_OPTIONS_HEADER
from ..errors import ConfigurationError, SchemaError, TransportError
from ..models.describe import SObjectDescribe
from ..models.job import ApiEngine, IngestJobInfo, JobState, RecordResult, WriteOperation

logger = logging.getLogger(__name__)

BULK_QUERY_POLL_INTERVAL = 2.0
BULK_QUERY_MAX_RECORDS = 50_000


class SalesforceEndpoint(BaseEndpoint):
    """
    Endpoint for a Salesforce org.

    Authentication is handled elsewhere; the endpoint is given an instance
    URL and an access token. Blocking HTTP calls run on the event loop's
    default executor.
    """

    def __init__(
        self,
        label: str,
        instance_url: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        batch_size: int = REST_API_MAX_RECORDS_PER_BATCH,
    ):
        super().__init__(label)
        if not instance_url or not access_token:
            raise ConfigurationError("Instance URL and access token are required", endpoint_label=label)
        self.instance_url = instance_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.batch_size = batch_size
        self._session = session or self._create_session(max_retries, backoff_factor)

    def _create_session(self, max_retries: int, backoff_factor: float) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    @property
    def endpoint_id(self) -> str:
        return self.instance_url

    @property
    def base_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": content_type,
            "Accept": "application/json",
        }
        headers.update(SFORCE_CALL_OPTIONS_HEADER)
        return headers

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request; ``path`` is relative to the versioned base URL unless it starts with /services."""
        url = f"{self.instance_url}{path}" if path.startswith("/services") else f"{self.base_url}{path}"
        headers = self._headers(kwargs.pop("content_type", "application/json"))
        headers.update(kwargs.pop("headers", {}))

        try:
            response = self._session.request(method, url, headers=headers, timeout=120, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}", endpoint_label=self.label) from e

        if response.status_code >= 400:
            raise TransportError(
                f"{method} {path} failed with HTTP {response.status_code}: {response.text[:500]}",
                endpoint_label=self.label,
            )
        return response

    async def _call(self, method: str, path: str, **kwargs) -> requests.Response:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._request, method, path, **kwargs))

    # Schema ------------------------------------------------------------------

    async def describe(self, object_name: str) -> SObjectDescribe:
        try:
            response = await self._call("GET", f"/sobjects/{object_name}/describe")
        except TransportError as e:
            if "HTTP 404" in e.message:
                raise SchemaError(
                    f"Entity {object_name} does not exist", object_name=object_name, endpoint_label=self.label
                ) from e
            raise e.with_context(object_name=object_name)

        describe = SObjectDescribe.from_dict(response.json())
        logger.debug(f"Described {object_name} on {self.label}: {len(describe.fields)} fields")
        return describe

    # Queries -----------------------------------------------------------------

    async def query_rows(self, query: str, use_bulk: bool = False) -> AsyncIterator[Dict[str, Any]]:
        logger.debug(f"Querying {self.label} via {ApiEngine.BULK.value if use_bulk else ApiEngine.REST.value}: {query}")
        if use_bulk:
            async for row in self._query_bulk(query):
                yield row
        else:
            async for row in self._query_rest(query):
                yield row

    async def _query_rest(self, query: str) -> AsyncIterator[Dict[str, Any]]:
        response = await self._call("GET", "/query", params={"q": query})
        while True:
            data = response.json()
            for record in data.get("records", []):
                yield expand_record(record)

            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                break
            response = await self._call("GET", next_url)

    async def _query_bulk(self, query: str) -> AsyncIterator[Dict[str, Any]]:
        response = await self._call("POST", "/jobs/query", json={"operation": "query", "query": query})
        job_id = response.json()["id"]

        while True:
            info = (await self._call("GET", f"/jobs/query/{job_id}")).json()
            state = JobState(info.get("state", JobState.IN_PROGRESS.value))
            if state == JobState.JOB_COMPLETE:
                break
            if state in (JobState.FAILED, JobState.ABORTED):
                raise TransportError(
                    f"Bulk query job {job_id} ended as {state.value}: {info.get('errorMessage', '')}",
                    endpoint_label=self.label,
                )
            await asyncio.sleep(BULK_QUERY_POLL_INTERVAL)

        locator = None
        while True:
            params = {"maxRecords": BULK_QUERY_MAX_RECORDS}
            if locator:
                params["locator"] = locator
            response = await self._call(
                "GET", f"/jobs/query/{job_id}/results", params=params, headers={"Accept": "text/csv"}
            )
            for row in csv.DictReader(io.StringIO(response.text)):
                yield row

            locator = response.headers.get("Sforce-Locator")
            if not locator or locator == "null":
                break

    async def count(self, query: str) -> int:
        response = await self._call("GET", "/query", params={"q": query})
        data = response.json()
        records = data.get("records") or []
        if records and "expr0" in records[0]:
            return int(records[0]["expr0"] or 0)
        return int(data.get("totalSize", 0))

    # Writes ------------------------------------------------------------------

    def create_ingest_job(self, object_name: str, operation: WriteOperation) -> BaseIngestJob:
        return SalesforceIngestJob(self, object_name, operation)

    async def update_records(
        self,
        object_name: str,
        operation: WriteOperation,
        records: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        """Write records through the sObject Collections API, one batch at a time."""
        results: List[RecordResult] = []
        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            results.extend(await self._update_batch(object_name, operation, batch))
        return results

    async def _update_batch(
        self,
        object_name: str,
        operation: WriteOperation,
        batch: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        if operation == WriteOperation.HARD_DELETE:
            raise TransportError(
                f"Hard delete of {object_name} requires an ingest job", endpoint_label=self.label
            )
        if operation.is_delete:
            # REST deletes go to the recycle bin
            ids = ",".join(str(r.get("Id")) for r in batch)
            response = await self._call(
                "DELETE", "/composite/sobjects", params={"ids": ids, "allOrNone": "false"}
            )
        else:
            payload = {
                "allOrNone": False,
                "records": [{"attributes": {"type": object_name}, **r} for r in batch],
            }
            method = "POST" if operation == WriteOperation.INSERT else "PATCH"
            response = await self._call(method, "/composite/sobjects", json=payload)

        results = []
        for record, item in zip(batch, response.json()):
            success = bool(item.get("success"))
            errors = item.get("errors") or []
            results.append(RecordResult(
                id=item.get("id") or record.get("Id"),
                success=success,
                created=success and operation == WriteOperation.INSERT,
                error="; ".join(f"{e.get('statusCode', '')}: {e.get('message', '')}" for e in errors),
                record=record,
            ))
        return results

    async def close(self) -> None:
        self._session.close()


class SalesforceIngestJob(BaseIngestJob):
    """Bulk 2.0 ingest job."""

    def __init__(self, endpoint: SalesforceEndpoint, object_name: str, operation: WriteOperation):
        super().__init__(object_name, operation)
        self.endpoint = endpoint

    async def open(self) -> None:
        response = await self.endpoint._call("POST", "/jobs/ingest", json={
            "object": self.object_name,
            "operation": self.operation.value,
            "contentType": "CSV",
            "lineEnding": "LF",
        })
        self.job_id = response.json()["id"]
        logger.debug(f"Opened ingest job {self.job_id} ({self.operation.value} {self.object_name})")

    async def upload_data(self, file_path: Path) -> None:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, Path(file_path).read_bytes)
        # Bulk 2.0 expects LF line endings as declared on open
        data = data.replace(b"\r\n", b"\n")
        await self.endpoint._call(
            "PUT", f"/jobs/ingest/{self.job_id}/batches", data=data, content_type="text/csv"
        )

    async def close(self) -> None:
        await self.endpoint._call("PATCH", f"/jobs/ingest/{self.job_id}", json={"state": "UploadComplete"})

    async def abort(self) -> None:
        await self.endpoint._call("PATCH", f"/jobs/ingest/{self.job_id}", json={"state": "Aborted"})

    async def check(self) -> IngestJobInfo:
        data = (await self.endpoint._call("GET", f"/jobs/ingest/{self.job_id}")).json()
        state = JobState(data.get("state", JobState.IN_PROGRESS.value))
        return IngestJobInfo(
            operation=self.operation.value,
            engine=ApiEngine.BULK,
            job_id=self.job_id,
            state=state,
            number_records_processed=int(data.get("numberRecordsProcessed", 0)),
            number_records_failed=int(data.get("numberRecordsFailed", 0)),
            error_message=data.get("errorMessage"),
            created_at=date_parser.parse(data["createdDate"]) if data.get("createdDate") else None,
            completed_at=(
                date_parser.parse(data["systemModstamp"])
                if state.is_terminal and data.get("systemModstamp") else None
            ),
        )

    async def _get_results(self, kind: str) -> List[Dict[str, str]]:
        response = await self.endpoint._call(
            "GET", f"/jobs/ingest/{self.job_id}/{kind}/", headers={"Accept": "text/csv"}
        )
        return list(csv.DictReader(io.StringIO(response.text)))

    async def get_successful_results(self) -> List[RecordResult]:
        results = []
        for row in await self._get_results("successfulResults"):
            results.append(RecordResult(
                id=row.get("sf__Id") or row.get("Id"),
                success=True,
                created=str(row.get("sf__Created", "")).lower() == "true",
                record={k: v for k, v in row.items() if not k.startswith("sf__")},
            ))
        return results

    async def get_failed_results(self) -> List[RecordResult]:
        results = []
        for row in await self._get_results("failedResults"):
            results.append(RecordResult(
                id=row.get("sf__Id") or row.get("Id"),
                success=False,
                error=row.get("sf__Error", ""),
                record={k: v for k, v in row.items() if not k.startswith("sf__")},
            ))
        return results
