"""Tests for CSV working files."""

import asyncio

import pytest

from conftest import read_csv, write_csv
from datamove.errors import StreamError
from datamove.services.csv_files import (
    CsvFileSink,
    count_csv_rows,
    format_csv_value,
    read_csv_rows,
    write_csv_rows,
)


async def collect(iterator):
    return [row async for row in iterator]


class TestCsvFileSink:
    """Tests for the buffered CSV sink."""

    def test_writes_rows_with_header(self, tmp_path):
        path = tmp_path / "out.csv"

        async def run():
            async with CsvFileSink(path, fieldnames=["Id", "Name"]) as sink:
                sink.write({"Id": "1", "Name": "Acme"})
                sink.write({"Id": "2", "Name": None, "Extra": "x"})

        asyncio.run(run())

        assert read_csv(path) == [{"Id": "1", "Name": "Acme"}, {"Id": "2", "Name": ""}]

    def test_signals_drain_at_high_water_mark(self, tmp_path):
        path = tmp_path / "out.csv"

        async def run():
            sink = CsvFileSink(path, fieldnames=["Id"], high_water_mark=10)
            assert sink.write({"Id": "1"}) is True
            assert sink.write({"Id": "123456789"}) is False
            await sink.drain()
            assert sink.buffered == 0
            await sink.close()

        asyncio.run(run())

        assert [row["Id"] for row in read_csv(path)] == ["1", "123456789"]

    def test_header_only(self, tmp_path):
        path = tmp_path / "out.csv"

        async def run():
            sink = CsvFileSink(path, fieldnames=["Id", "Name"])
            sink.write_header()
            await sink.close()

        asyncio.run(run())

        assert path.read_text().strip() == "Id,Name"

    def test_append_reuses_existing_header(self, tmp_path):
        path = write_csv(tmp_path / "out.csv", [{"Id": "1", "Name": "Acme"}], ["Id", "Name"])

        async def run():
            sink = CsvFileSink(path, fieldnames=["Name", "Id"], append=True)
            sink.write({"Id": "2", "Name": "Globex"})
            await sink.close()

        asyncio.run(run())

        assert read_csv(path) == [{"Id": "1", "Name": "Acme"}, {"Id": "2", "Name": "Globex"}]

    def test_close_is_idempotent(self, tmp_path):
        path = tmp_path / "out.csv"

        async def run():
            sink = CsvFileSink(path, fieldnames=["Id"])
            sink.write({"Id": "1"})
            await sink.close()
            await sink.close()

        asyncio.run(run())

        assert read_csv(path) == [{"Id": "1"}]


class TestReaders:
    """Tests for the CSV readers and the one-shot writer."""

    def test_read_rows_in_batches(self, tmp_path):
        rows = [{"Id": str(i)} for i in range(5)]
        path = write_csv(tmp_path / "in.csv", rows, ["Id"])

        assert asyncio.run(collect(read_csv_rows(path, batch_size=2))) == rows

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(StreamError):
            asyncio.run(collect(read_csv_rows(tmp_path / "missing.csv")))

    def test_count_rows(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [{"Id": "1"}, {"Id": "2"}], ["Id"])
        assert count_csv_rows(path) == 2
        assert count_csv_rows(tmp_path / "missing.csv") == 0

    def test_write_rows(self, tmp_path):
        path = tmp_path / "nested" / "out.csv"
        count = write_csv_rows(path, [{"Id": "1", "Active": True}, {"Id": "2"}], ["Id", "Active"])

        assert count == 2
        assert read_csv(path) == [{"Id": "1", "Active": "true"}, {"Id": "2", "Active": ""}]

    def test_format_value(self):
        assert format_csv_value(None) == ""
        assert format_csv_value(False) == "false"
        assert format_csv_value(3) == 3
