# Standard library
import logging
import os
import re

# Standard library "from" statements
from datetime import datetime, timedelta
from pathlib import Path
from statistics import mean
from typing import List, Optional, Tuple

# 3rd party libraries
import pygal

# 3rd party library "from" statements
from fastapi import FastAPI, Query, Response
from fastapi.exceptions import HTTPException
from pydantic import BaseModel, Field

import runconfig
import samplelog
from errors import ConfigError


LOGGER = logging.getLogger("uptime.api")

# Directory containing the result_<date>.csv sample logs and the config file
OUTPUT_DIR = os.getenv("NUM_OUTPUT_DIR", ".")

SAMPLE_LOG_PATTERN = re.compile(r"result_[0-9]{4}-[01][0-9]-[0-3][0-9]\.csv")

# The FastAPI app used to serve this API
app = FastAPI()


# Returns every sample log in the output directory, oldest first
def sample_logs() -> List[Path]:
    output_dir = Path(OUTPUT_DIR).expanduser()
    if not output_dir.is_dir():
        raise HTTPException(status_code=404, detail=f"Output directory {OUTPUT_DIR} does not exist")
    return sorted(output_dir / f for f in os.listdir(output_dir) if SAMPLE_LOG_PATTERN.fullmatch(f))

# Reads the samples taken at or after start from every log that could hold them
def samples_since(start: datetime) -> List[samplelog.SampleRecord]:
    samples = []
    for log_path in sample_logs():
        # Logs are per local day, so anything from before the start date can be skipped unread
        if log_path.name < f"result_{start.astimezone():%Y-%m-%d}.csv":
            continue
        try:
            samples += [s for s in samplelog.read_samples(log_path) if s.timestamp >= start]
        except ValueError as e:
            LOGGER.warning(f"Skipping {log_path}: {e}")
    return samples


# Raw samples between now and {period} seconds ago, up to 31 days in the past
class SampleHistory(BaseModel):
    samples: List[samplelog.SampleRecord] = []

@app.get("/samples")
def samples(period: int = Query(ge=0, le=31*24*60*60)) -> SampleHistory:
    start = datetime.now().astimezone() - timedelta(seconds=period)
    return SampleHistory(samples=samples_since(start))


# A record of overall uptime for a given time period, [0,100], and the mean latency of the replies
class UptimeReport(BaseModel):
    uptime: float = Field(100, ge=0, le=100)
    samples: int = Field(0, ge=0)
    mean_latency_ms: Optional[float] = Field(None, ge=0)

# Summarises samples into an UptimeReport. No samples means no recorded downtime.
def summarise(records: List[samplelog.SampleRecord]) -> UptimeReport:
    if not records:
        return UptimeReport()

    latencies = [r.latency_ms for r in records if r.succeeded]
    return UptimeReport(
        uptime=100 * len(latencies) / len(records),
        samples=len(records),
        mean_latency_ms=mean(latencies) if latencies else None,
    )

@app.get("/uptime")
def uptime(period: int = Query(24*60*60, ge=1, le=31*24*60*60)) -> UptimeReport:
    start = datetime.now().astimezone() - timedelta(seconds=period)
    return summarise(samples_since(start))


# Gap, in hours, between samples past which the graph line is broken. Three missed pings.
def graph_gap_hours() -> float:
    try:
        config = runconfig.load(Path(OUTPUT_DIR) / runconfig.DEFAULT_CONFIG_NAME)
        delay = config.delay
    except ConfigError:
        delay = runconfig.DEFAULT_DELAY
    return 3 * delay.total_seconds() / (60 * 60)

# Inserts gaps of None in the provided graph data,
# to separate lines in the event of large time gaps
def insert_none_at_gaps(data: List[Tuple[float, Optional[float]]], gap: float) -> List[Tuple[float, Optional[float]]]:
    i = 1
    while i < len(data):
        left = data[i - 1]
        right = data[i]
        if right[0] - left[0] > gap:
            data.insert(i, (left[0] + gap/3, None))
            data.insert(i + 1, (right[0] - gap/3, None))
            i += 2
        i += 1

    return data

# Latency against hours before now. Timed out and failed pings are None, which breaks the line.
def latency_graph_data(records: List[samplelog.SampleRecord], now: datetime) -> List[Tuple[float, Optional[float]]]:
    return [((r.timestamp - now).total_seconds() / (60 * 60), r.latency_ms) for r in records]

# Shows past 24hrs of latency on a graph
@app.get("/latency_graph.svg", response_class=Response)
def latency_graph() -> Response:
    graph = pygal.XY(
        x_label_rotation=30,
        x_value_formatter=lambda x: f"{x:.1f}hrs",
        y_value_formatter=lambda y: f"{y}ms",
        show_dots=False,
        show_x_guides=True,
        width=1500,
        legend_at_bottom=True,
    )
    graph.x_labels = [0, -6, -12, -18, -24]

    now = datetime.now().astimezone()
    data = latency_graph_data(samples_since(now - timedelta(hours=24)), now)
    data = insert_none_at_gaps(data, graph_gap_hours())
    graph.add("Latency (ms)", data, allow_interruptions=True)

    return Response(graph.render(), 200, {"Content-Type" : "image/svg+xml"})
