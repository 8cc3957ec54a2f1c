"""CSV working files: a backpressure-aware sink and streaming readers."""

import asyncio
import csv
import io
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Union

from ..constants import DEFAULT_ENCODING, FILE_WRITE_HIGH_WATER_MARK
from ..errors import StreamError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

READ_BATCH_SIZE = 1000


def format_csv_value(value: Any) -> Any:
    """Cell value as written to a working file: blanks for None, lower-case booleans."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class CsvFileSink:
    """
    Buffered CSV writer with an explicit drain signal.

    ``write`` serializes a row into an in-memory buffer and returns ``False``
    once the buffer passes the high-water mark; the producer then awaits
    ``drain``, which flushes the buffer to disk off the event loop.

    When appending to a non-empty file the existing header is reused and not
    written again.
    """

    def __init__(
        self,
        path: PathLike,
        fieldnames: Optional[List[str]] = None,
        append: bool = False,
        encoding: str = DEFAULT_ENCODING,
        high_water_mark: int = FILE_WRITE_HIGH_WATER_MARK,
    ):
        self.path = Path(path)
        self.fieldnames = list(fieldnames) if fieldnames else None
        self.append = append
        self.encoding = encoding
        self.high_water_mark = high_water_mark
        self.rows_written = 0

        self._buffer = io.StringIO()
        self._writer: Optional[csv.DictWriter] = None
        self._file = None
        self._header_pending = True
        self._mode = "w"
        self._closed = False

        if append and self.path.exists() and self.path.stat().st_size > 0:
            existing_header = read_csv_header(self.path, encoding)
            if existing_header:
                self.fieldnames = existing_header
                self._header_pending = False
                self._mode = "a"

    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, self._mode, encoding=self.encoding, newline="")

    def _ensure_writer(self, row: Dict[str, Any]) -> csv.DictWriter:
        if self._writer is None:
            if self.fieldnames is None:
                self.fieldnames = list(row.keys())
            self._writer = csv.DictWriter(
                self._buffer, fieldnames=self.fieldnames, extrasaction="ignore", restval=""
            )
            if self._header_pending:
                self._writer.writeheader()
                self._header_pending = False
        return self._writer

    @property
    def buffered(self) -> int:
        return self._buffer.tell()

    @property
    def needs_drain(self) -> bool:
        return self.buffered >= self.high_water_mark

    def write(self, row: Dict[str, Any]) -> bool:
        """Buffer a row. Returns False when the caller should await ``drain``."""
        writer = self._ensure_writer(row)
        writer.writerow({k: format_csv_value(v) for k, v in row.items()})
        self.rows_written += 1
        return not self.needs_drain

    def write_header(self) -> None:
        """Write the header even if no row follows."""
        if self._writer is None and self.fieldnames is not None:
            self._ensure_writer({})

    def _flush(self, data: str) -> None:
        if self._file is None:
            self._open()
        self._file.write(data)
        self._file.flush()

    async def drain(self) -> None:
        data = self._buffer.getvalue()
        if self._closed or (not data and self._file is not None):
            return
        self._buffer.seek(0)
        self._buffer.truncate(0)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._flush, data)
        except OSError as e:
            raise StreamError(f"Failed to write {self.path.name}: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        try:
            await self.drain()
        finally:
            self._closed = True
            if self._file is not None:
                self._file.close()
                self._file = None
                logger.debug(f"Wrote {self.rows_written} rows to {self.path.name}")

    async def __aenter__(self) -> "CsvFileSink":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def read_csv_header(path: PathLike, encoding: str = DEFAULT_ENCODING) -> List[str]:
    with open(path, "r", encoding=encoding, newline="") as f:
        reader = csv.reader(f)
        return next(reader, [])


def iter_csv_rows(path: PathLike, encoding: str = DEFAULT_ENCODING) -> Iterator[Dict[str, str]]:
    """Iterate the rows of a CSV file as dicts."""
    with open(path, "r", encoding=encoding, newline="") as f:
        yield from csv.DictReader(f)


async def read_csv_rows(
    path: PathLike,
    encoding: str = DEFAULT_ENCODING,
    batch_size: int = READ_BATCH_SIZE,
) -> AsyncIterator[Dict[str, str]]:
    """Stream the rows of a CSV file, reading batches off the event loop."""
    path = Path(path)
    if not path.exists():
        raise StreamError(f"File not found: {path}")

    loop = asyncio.get_running_loop()
    rows = iter_csv_rows(path, encoding)

    def next_batch() -> List[Dict[str, str]]:
        batch = []
        for row in rows:
            batch.append(row)
            if len(batch) >= batch_size:
                break
        return batch

    try:
        while True:
            try:
                batch = await loop.run_in_executor(None, next_batch)
            except (OSError, csv.Error) as e:
                raise StreamError(f"Failed to read {path.name}: {e}") from e
            if not batch:
                break
            for row in batch:
                yield row
    finally:
        rows.close()


def count_csv_rows(path: PathLike, encoding: str = DEFAULT_ENCODING) -> int:
    path = Path(path)
    if not path.exists():
        return 0
    return sum(1 for _ in iter_csv_rows(path, encoding))


def write_csv_rows(
    path: PathLike,
    rows: Iterable[Dict[str, Any]],
    fieldnames: List[str],
    encoding: str = DEFAULT_ENCODING,
) -> int:
    """Write a small file in one go. Returns the number of rows written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", encoding=encoding, newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore", restval="")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: format_csv_value(v) for k, v in row.items()})
            count += 1
    return count
