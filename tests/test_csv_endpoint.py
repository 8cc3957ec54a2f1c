"""Tests for the CSV file endpoint."""

import asyncio

import pytest

from conftest import read_csv, write_csv
from datamove.endpoints.csv_endpoint import CsvFileEndpoint
from datamove.errors import SchemaError
from datamove.models.job import JobState, WriteOperation


async def collect(iterator):
    return [row async for row in iterator]


@pytest.fixture
def endpoint(tmp_path):
    write_csv(tmp_path / "store" / "Account.csv", [
        {"Id": "A1", "Name": "Acme", "Industry": "Tech"},
        {"Id": "A2", "Name": "Globex", "Industry": "Energy"},
        {"Id": "A3", "Name": "Initech", "Industry": "Tech"},
    ], ["Id", "Name", "Industry"])
    return CsvFileEndpoint("store", str(tmp_path / "store"))


class TestQueries:
    """Tests for reading entity files."""

    def test_projects_selected_fields(self, endpoint):
        rows = asyncio.run(collect(endpoint.query_rows("SELECT Name, Phone FROM Account")))
        assert rows[0] == {"Name": "Acme", "Phone": ""}
        assert len(rows) == 3

    def test_offset_and_limit(self, endpoint):
        rows = asyncio.run(collect(endpoint.query_rows("SELECT Id FROM Account LIMIT 1 OFFSET 1")))
        assert rows == [{"Id": "A2"}]

    def test_missing_entity_file_is_empty(self, endpoint):
        assert asyncio.run(collect(endpoint.query_rows("SELECT Id FROM Lead"))) == []

    def test_count(self, endpoint):
        assert asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account")) == 3
        assert asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Account LIMIT 2")) == 2
        assert asyncio.run(endpoint.count("SELECT COUNT(Id) FROM Lead")) == 0

    def test_describe_is_unsupported(self, endpoint):
        assert not endpoint.supports_describe
        with pytest.raises(SchemaError):
            asyncio.run(endpoint.describe("Account"))

    def test_endpoint_id_is_directory(self, endpoint, tmp_path):
        assert endpoint.endpoint_id == f"csv:{(tmp_path / 'store').resolve()}"


class TestWrites:
    """Tests for update_records and ingest jobs."""

    def test_insert_assigns_ids(self, endpoint):
        results = asyncio.run(endpoint.update_records(
            "Account", WriteOperation.INSERT, [{"Name": "Umbrella", "Website": "umbrella.test"}]
        ))

        assert results[0].success and results[0].created
        rows = read_csv(endpoint.get_file_path("Account"))
        assert rows[-1]["Id"] == results[0].id
        assert rows[-1]["Website"] == "umbrella.test"
        assert rows[0]["Website"] == ""

    def test_update_and_unknown_id(self, endpoint):
        results = asyncio.run(endpoint.update_records("Account", WriteOperation.UPDATE, [
            {"Id": "A2", "Industry": "Retail"},
            {"Id": "A9", "Industry": "Retail"},
        ]))

        assert [r.success for r in results] == [True, False]
        assert "A9" in results[1].error
        rows = {row["Id"]: row for row in read_csv(endpoint.get_file_path("Account"))}
        assert rows["A2"]["Industry"] == "Retail"

    def test_delete(self, endpoint):
        asyncio.run(endpoint.update_records("Account", WriteOperation.HARD_DELETE, [{"Id": "A1"}, {"Id": "A3"}]))
        assert [row["Id"] for row in read_csv(endpoint.get_file_path("Account"))] == ["A2"]

    def test_insert_creates_new_entity_file(self, endpoint):
        asyncio.run(endpoint.update_records("Lead", WriteOperation.INSERT, [{"LastName": "Doe"}]))
        rows = read_csv(endpoint.get_file_path("Lead"))
        assert list(rows[0]) == ["Id", "LastName"]

    def test_ingest_job(self, endpoint, tmp_path):
        payload = write_csv(tmp_path / "payload.csv", [{"Id": "A1", "Name": "Acme Corp"}], ["Id", "Name"])

        async def run():
            job = endpoint.create_ingest_job("Account", WriteOperation.UPDATE)
            await job.open()
            await job.upload_data(payload)
            await job.close()
            return job, await job.check(), await job.get_successful_results()

        job, info, successful = asyncio.run(run())

        assert job.job_id
        assert info.state == JobState.JOB_COMPLETE
        assert info.number_records_processed == 1
        assert info.number_records_failed == 0
        assert [r.id for r in successful] == ["A1"]
