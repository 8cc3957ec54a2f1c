"""Tests for the Salesforce endpoint with a mocked HTTP session."""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from datamove.endpoints.salesforce import SalesforceEndpoint
from datamove.errors import ConfigurationError, SchemaError, TransportError
from datamove.models.job import JobState, WriteOperation


def make_response(status_code=200, json_data=None, text="", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.text = text
    response.headers = headers or {}
    return response


def make_endpoint(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    endpoint = SalesforceEndpoint(
        "target", "https://example.my.salesforce.com/", "token", api_version="59.0", session=session
    )
    return endpoint, session


async def collect(iterator):
    return [row async for row in iterator]


class TestRequests:
    """Tests for request handling."""

    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            SalesforceEndpoint("target", "", "token")

    def test_builds_versioned_url_and_headers(self):
        endpoint, session = make_endpoint(make_response(json_data={"totalSize": 0, "records": []}))

        asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account"))

        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == "https://example.my.salesforce.com/services/data/v59.0/query"
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    def test_http_error_raises_transport_error(self):
        endpoint, _ = make_endpoint(make_response(status_code=500, text="boom"))

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account"))

        assert "HTTP 500" in exc_info.value.message
        assert exc_info.value.endpoint_label == "target"

    def test_connection_error_raises_transport_error(self):
        endpoint, _ = make_endpoint(requests.ConnectionError("refused"))

        with pytest.raises(TransportError):
            asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account"))


class TestDescribe:
    """Tests for describe."""

    def test_describe(self):
        endpoint, _ = make_endpoint(make_response(json_data={
            "name": "Account",
            "fields": [{"name": "Id", "type": "id"}, {"name": "Name", "nameField": True}],
        }))

        describe = asyncio.run(endpoint.describe("Account"))

        assert describe.name == "Account"
        assert list(describe.fields) == ["Id", "Name"]

    def test_unknown_entity(self):
        endpoint, _ = make_endpoint(make_response(status_code=404, text="NOT_FOUND"))

        with pytest.raises(SchemaError) as exc_info:
            asyncio.run(endpoint.describe("Widget__c"))

        assert exc_info.value.object_name == "Widget__c"


class TestQueries:
    """Tests for REST paging and counts."""

    def test_follows_next_records_url(self):
        endpoint, session = make_endpoint(
            make_response(json_data={
                "done": False,
                "nextRecordsUrl": "/services/data/v59.0/query/01g-2000",
                "records": [{"attributes": {"type": "Contact"}, "Id": "C1", "Account": {"Name": "Acme"}}],
            }),
            make_response(json_data={"done": True, "records": [{"Id": "C2", "Account": None}]}),
        )

        rows = asyncio.run(collect(endpoint.query_rows("SELECT Id, Account.Name FROM Contact")))

        assert rows == [{"Id": "C1", "Account.Name": "Acme"}, {"Id": "C2", "Account": None}]
        assert session.request.call_args.args[1] == (
            "https://example.my.salesforce.com/services/data/v59.0/query/01g-2000"
        )

    def test_count_reads_aggregate(self):
        endpoint, _ = make_endpoint(make_response(json_data={"totalSize": 1, "records": [{"expr0": 42}]}))
        assert asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account")) == 42

    def test_bulk_query_reads_result_pages(self):
        endpoint, _ = make_endpoint(
            make_response(json_data={"id": "750q"}),
            make_response(json_data={"state": "JobComplete"}),
            make_response(text="Id,Name\nA1,Acme\n", headers={"Sforce-Locator": "abc"}),
            make_response(text="Id,Name\nA2,Globex\n", headers={"Sforce-Locator": "null"}),
        )

        rows = asyncio.run(collect(endpoint.query_rows("SELECT Id, Name FROM Account", use_bulk=True)))

        assert [row["Id"] for row in rows] == ["A1", "A2"]

    def test_failed_bulk_query(self):
        endpoint, _ = make_endpoint(
            make_response(json_data={"id": "750q"}),
            make_response(json_data={"state": "Failed", "errorMessage": "INVALID_FIELD"}),
        )

        with pytest.raises(TransportError):
            asyncio.run(collect(endpoint.query_rows("SELECT Id FROM Account", use_bulk=True)))


class TestWrites:
    """Tests for REST writes and bulk ingest jobs."""

    def test_update_records_maps_results(self):
        endpoint, session = make_endpoint(make_response(json_data=[
            {"id": "001A", "success": True, "errors": []},
            {"success": False, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Name"}]},
        ]))

        results = asyncio.run(endpoint.update_records(
            "Account", WriteOperation.INSERT, [{"Name": "Acme"}, {"Industry": "Tech"}]
        ))

        assert results[0].id == "001A" and results[0].created
        assert not results[1].success
        assert results[1].error == "REQUIRED_FIELD_MISSING: Name"
        payload = session.request.call_args.kwargs["json"]
        assert payload["records"][0]["attributes"] == {"type": "Account"}
        assert session.request.call_args.args[0] == "POST"

    def test_update_records_in_batches(self):
        endpoint, session = make_endpoint(
            make_response(json_data=[{"id": "1", "success": True}, {"id": "2", "success": True}]),
            make_response(json_data=[{"id": "3", "success": True}]),
        )
        endpoint.batch_size = 2

        results = asyncio.run(endpoint.update_records(
            "Account", WriteOperation.UPDATE, [{"Id": "1"}, {"Id": "2"}, {"Id": "3"}]
        ))

        assert [r.id for r in results] == ["1", "2", "3"]
        assert session.request.call_count == 2
        assert session.request.call_args.args[0] == "PATCH"

    def test_delete_sends_ids(self):
        endpoint, session = make_endpoint(make_response(json_data=[{"id": "1", "success": True}]))

        asyncio.run(endpoint.update_records("Account", WriteOperation.DELETE, [{"Id": "1"}]))

        assert session.request.call_args.args[0] == "DELETE"
        assert session.request.call_args.kwargs["params"]["ids"] == "1"

    def test_hard_delete_is_refused_by_row_api(self):
        endpoint, session = make_endpoint(make_response(json_data=[{"id": "1", "success": True}]))

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(endpoint.update_records("Account", WriteOperation.HARD_DELETE, [{"Id": "1"}]))

        assert "ingest job" in exc_info.value.message
        session.request.assert_not_called()

    def test_ingest_job(self, tmp_path):
        payload = tmp_path / "payload.csv"
        payload.write_bytes(b"Name\r\nAcme\r\n")
        endpoint, session = make_endpoint(
            make_response(json_data={"id": "750i"}),
            make_response(),
            make_response(),
            make_response(json_data={
                "state": "JobComplete",
                "numberRecordsProcessed": 1,
                "numberRecordsFailed": 0,
                "createdDate": "2024-01-01T00:00:00.000+0000",
                "systemModstamp": "2024-01-01T00:01:00.000+0000",
            }),
            make_response(text='"sf__Id","sf__Created",Name\n001A,true,Acme\n'),
        )

        async def run():
            job = endpoint.create_ingest_job("Account", WriteOperation.INSERT)
            await job.open()
            await job.upload_data(payload)
            await job.close()
            return await job.check(), await job.get_successful_results()

        info, successful = asyncio.run(run())

        assert info.state == JobState.JOB_COMPLETE
        assert info.duration_seconds == 60
        assert successful[0].id == "001A"
        assert successful[0].created
        assert successful[0].record == {"Name": "Acme"}
        upload_call = session.request.call_args_list[1]
        assert upload_call.kwargs["data"] == b"Name\nAcme\n"
        assert upload_call.kwargs["headers"]["Content-Type"] == "text/csv"
