# Standard library
import csv
import logging
import os
import re

# Standard library "from" statements
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

# 3rd party library "from" statements
from pydantic import BaseModel, Field

from errors import LogWriteError


LOGGER = logging.getLogger("uptime.samples")

HEADER = ("Timestamp", "Latency(ms)")

# e.g. 2023-05-31 17:10:38.662942 -05:00:00. Up to nine fractional digits are read back.
TIMESTAMP_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))? ([+-])(\d{2}):(\d{2}):(\d{2})$"
)


# One row of a sample log. A missing latency means the probe timed out or failed.
class SampleRecord(BaseModel):
    timestamp: datetime
    latency_ms: Optional[int] = Field(None, ge=0)

    @classmethod
    def from_outcome(cls, outcome) -> "SampleRecord":
        return cls(timestamp=outcome.timestamp, latency_ms=outcome.latency_ms)

    @property
    def succeeded(self) -> bool:
        return self.latency_ms is not None


# Formats a timestamp with microseconds and its UTC offset down to the second
def format_timestamp(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.astimezone()
    offset = int(timestamp.utcoffset().total_seconds())
    sign = "-" if offset < 0 else "+"
    hours, remainder = divmod(abs(offset), 60 * 60)
    minutes, seconds = divmod(remainder, 60)
    return f"{timestamp:%Y-%m-%d %H:%M:%S.%f} {sign}{hours:02}:{minutes:02}:{seconds:02}"

def parse_timestamp(text: str) -> datetime:
    match = TIMESTAMP_PATTERN.match(text.strip())
    if match is None:
        raise ValueError(f"{text!r} is not a sample timestamp")
    wall, fraction, sign, hours, minutes, seconds = match.groups()

    offset = timedelta(hours=int(hours), minutes=int(minutes), seconds=int(seconds))
    if sign == "-":
        offset = -offset
    # datetime only holds microseconds
    microseconds = int((fraction or "0")[:6].ljust(6, "0"))
    parsed = datetime.strptime(wall, "%Y-%m-%d %H:%M:%S")
    return parsed.replace(microsecond=microseconds, tzinfo=timezone(offset))

# The log file samples taken at the given moment belong in. One file per local day.
def sample_path(output_dir: Path, when: datetime) -> Path:
    return Path(output_dir) / f"result_{when:%Y-%m-%d}.csv"


# Raises LogWriteError unless the existing file at path starts with our header
def check_header(path: Path) -> None:
    with open(path, "r", newline="", errors="replace") as f:
        first_line = f.readline().rstrip("\r\n")
    if first_line != ",".join(HEADER):
        raise LogWriteError(f"{path} exists but is not a sample log (header {first_line!r}), refusing to append")

# True if the file does not end in a newline, as left behind by a write cut short
def ends_mid_line(path: Path) -> bool:
    with open(path, "rb") as f:
        f.seek(-1, os.SEEK_END)
        return f.read(1) != b"\n"


# Append-only CSV log of samples. Each row is flushed to disk before append() returns.
class SampleLog:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None
        self._writer = None

    def __enter__(self) -> "SampleLog":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> "SampleLog":
        if self._file is not None:
            return self

        try:
            fresh = not self.path.exists() or self.path.stat().st_size == 0
            broken_line = False
            if not fresh:
                check_header(self.path)
                broken_line = ends_mid_line(self.path)

            self._file = open(self.path, "a", newline="")
            self._writer = csv.writer(self._file, lineterminator="\n")
            if fresh:
                self._writer.writerow(HEADER)
            elif broken_line:
                LOGGER.warning(f"{self.path} ends with an incomplete row, starting a new line")
                self._file.write("\n")
            self._sync()
        except OSError as e:
            self.close()
            raise LogWriteError(f"Could not open sample log {self.path}: {e}") from e

        return self

    def append(self, record: SampleRecord) -> None:
        if self._file is None:
            self.open()

        latency = "" if record.latency_ms is None else str(record.latency_ms)
        try:
            self._writer.writerow((format_timestamp(record.timestamp), latency))
            self._sync()
        except OSError as e:
            raise LogWriteError(f"Could not write to sample log {self.path}: {e}") from e

    def _sync(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            finally:
                self._file = None
                self._writer = None


# Appends a single record to the log at path, opening and closing it around the write
def append(path: Path, record: SampleRecord) -> None:
    with SampleLog(path) as log:
        log.append(record)

# Yields every well formed row of the sample log at path
def read_samples(path: Path) -> Iterator[SampleRecord]:
    with open(path, "r", newline="") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            return
        if tuple(header) != HEADER:
            raise ValueError(f"{path} is not a sample log")

        for line_number, row in enumerate(reader, start=2):
            try:
                timestamp_text, latency_text = row
                latency = int(latency_text) if latency_text else None
                yield SampleRecord(timestamp=parse_timestamp(timestamp_text), latency_ms=latency)
            except ValueError as e:
                # Also catches pydantic's ValidationError
                LOGGER.warning(f"Skipping malformed row {line_number} of {path}: {e}")
