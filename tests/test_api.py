from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

import api
import runconfig
import samplelog
from samplelog import SampleRecord


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "OUTPUT_DIR", str(tmp_path))
    return TestClient(api.app)


def write_samples(output_dir, *samples):
    """samples: (seconds ago, latency or None) pairs, written to the log of the day they fall on."""
    now = datetime.now().astimezone()
    for seconds_ago, latency in samples:
        when = now - timedelta(seconds=seconds_ago)
        samplelog.append(samplelog.sample_path(output_dir, when), SampleRecord(timestamp=when, latency_ms=latency))


def test_samples_within_period(client, tmp_path):
    write_samples(tmp_path, (7200, 20), (60, 10), (30, None))

    response = client.get("/samples", params={"period": 3600})
    assert response.status_code == 200
    assert [s["latency_ms"] for s in response.json()["samples"]] == [10, None]


def test_uptime_report(client, tmp_path):
    write_samples(tmp_path, (90, 10), (60, 30), (30, None), (0, None))

    report = client.get("/uptime", params={"period": 3600}).json()
    assert report == {"uptime": 50.0, "samples": 4, "mean_latency_ms": 20.0}


def test_uptime_without_samples_is_full(client):
    assert client.get("/uptime").json() == {"uptime": 100.0, "samples": 0, "mean_latency_ms": None}


def test_foreign_file_named_like_a_log_is_skipped(client, tmp_path, caplog):
    write_samples(tmp_path, (30, 10))
    foreign = tmp_path / f"result_{datetime.now().astimezone() - timedelta(days=1):%Y-%m-%d}.csv"
    foreign.write_text("name,value\nfoo,1\n")

    response = client.get("/samples", params={"period": 2 * 24 * 60 * 60})
    assert response.status_code == 200
    assert [s["latency_ms"] for s in response.json()["samples"]] == [10]
    assert any("is not a sample log" in message for message in caplog.messages)


def test_period_is_bounded(client):
    assert client.get("/samples", params={"period": -1}).status_code == 422
    assert client.get("/samples", params={"period": 32 * 24 * 60 * 60}).status_code == 422


def test_missing_output_directory(client, tmp_path, monkeypatch):
    monkeypatch.setattr(api, "OUTPUT_DIR", str(tmp_path / "missing"))
    assert client.get("/samples", params={"period": 60}).status_code == 404


def test_latency_graph_is_svg(client, tmp_path):
    write_samples(tmp_path, (3600, 15), (1800, None), (60, 12))

    response = client.get("/latency_graph.svg")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert b"<svg" in response.content


def test_graph_gap_follows_configured_delay(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "OUTPUT_DIR", str(tmp_path))
    assert api.graph_gap_hours() == pytest.approx(3 * 120 / 3600)

    runconfig.save(tmp_path / runconfig.DEFAULT_CONFIG_NAME, runconfig.build(address="127.0.0.1", delay="20m"))
    assert api.graph_gap_hours() == pytest.approx(1.0)


def test_gaps_break_the_line():
    data = api.insert_none_at_gaps([(-30.0, 10), (-29.0, 11), (-10.0, 12)], 3.0)
    assert data == [(-30.0, 10), (-29.0, 11), (-28.0, None), (-11.0, None), (-10.0, 12)]
