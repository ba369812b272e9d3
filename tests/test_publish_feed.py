import json
import sys
from pathlib import Path

import pytest
import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))

import publish_feed
from publish_feed import FeedConfig, FeedDownloadError, download_csv, main


CSV_TEXT = "\n".join(
    [
        "Date/Time,InstId,Deployment,Parameter,ResultMean",
        "01/06/2024 12:00,353,Cardigan Bay,Hm0,\"1,5\"",
        "01/06/2024 12:00,353,Cardigan Bay,Tp,6.2",
        "01/06/2024 12:30,353,Cardigan Bay,Hm0,1.7",
        "",
    ]
)

ENV_VARS = (
    "CEFAS_RECORDSET_ID",
    "STATION_CODE",
    "PLATFORM_ID",
    "INST_ID",
    "SITE_NAME",
    "WAVES_OUT_DIR",
    "WAVES_KEEP_RAW",
)


class _FakeResponse:
    def __init__(self, status_code=200, reason="OK", content=b""):
        self.status_code = status_code
        self.reason = reason
        self.content = content

    @property
    def ok(self):
        return self.status_code < 400


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _serve(monkeypatch, response):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        return response

    monkeypatch.setattr(publish_feed.requests, "get", fake_get)
    return calls


def test_config_defaults_and_overrides():
    defaults = FeedConfig.from_env({})
    assert defaults.recordset_id == "12651"
    assert defaults.station_code == "EXT"
    assert defaults.platform_id == "353~EXT"
    assert defaults.instrument_id == "353"
    assert defaults.csv_url == "https://data-api.cefas.co.uk/api/export/12651?format=csv"

    config = FeedConfig.from_env(
        {"STATION_CODE": "wbay", "PLATFORM_ID": "12~wbay", "INST_ID": " 12 ", "WAVES_KEEP_RAW": "1"}
    )
    assert config.station_code == "WBAY"
    assert config.platform_id == "12~WBAY"
    assert config.instrument_id == "12"
    assert config.keep_raw is True
    assert config.identity.location_names == ("cardigan",)
    assert config.recordset_id == FeedConfig().recordset_id
    assert config.out_dir == FeedConfig().out_dir


def test_config_from_empty_env_matches_field_defaults():
    assert FeedConfig.from_env({}) == FeedConfig()


def test_download_csv_raises_on_error_status(monkeypatch):
    _serve(monkeypatch, _FakeResponse(503, "Service Unavailable"))

    with pytest.raises(FeedDownloadError) as excinfo:
        download_csv("https://example.invalid/export")

    assert excinfo.value.status_code == 503
    assert str(excinfo.value) == "Download failed 503 Service Unavailable"


def test_download_csv_wraps_transport_errors(monkeypatch):
    def broken_get(url, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(publish_feed.requests, "get", broken_get)

    with pytest.raises(FeedDownloadError) as excinfo:
        download_csv("https://example.invalid/export")

    assert excinfo.value.status_code is None
    assert "connection refused" in str(excinfo.value)


def test_main_aborts_without_output_on_failed_fetch(monkeypatch, tmp_path, capsys):
    _serve(monkeypatch, _FakeResponse(404, "Not Found"))
    out_dir = tmp_path / "public"

    assert main(["--out-dir", str(out_dir)]) == 1

    assert not out_dir.exists()
    assert "Download failed 404 Not Found" in capsys.readouterr().err


def test_main_publishes_all_documents(monkeypatch, tmp_path, capsys):
    calls = _serve(monkeypatch, _FakeResponse(content=CSV_TEXT.encode("utf-8")))
    monkeypatch.setenv("WAVES_OUT_DIR", str(tmp_path / "public"))

    assert main([]) == 0

    assert calls == ["https://data-api.cefas.co.uk/api/export/12651?format=csv"]
    out_dir = tmp_path / "public"
    history = json.loads((out_dir / "history.json").read_text(encoding="utf-8"))
    latest = json.loads((out_dir / "latest.json").read_text(encoding="utf-8"))
    diagnostics = json.loads((out_dir / "diagnostics.json").read_text(encoding="utf-8"))
    index = (out_dir / "index.html").read_text(encoding="utf-8")

    assert history == [
        {"timestamp": "2024-06-01T12:00:00.000Z", "hm0": 1.5, "tp": 6.2},
        {"timestamp": "2024-06-01T12:30:00.000Z", "hm0": 1.7},
    ]
    assert latest["site"] == "cardigan"
    assert latest["station"] == "EXT"
    assert latest["platform"] == "353~EXT"
    assert latest["latest"] == history[-1]
    assert diagnostics["shape"] == "long"
    assert diagnostics["matched_rows"] == 3
    assert diagnostics["recordset"] == "12651"
    assert 'href="./history.json"' in index
    assert "Built 2 records" in capsys.readouterr().out


def test_main_with_empty_payload_writes_empty_documents(monkeypatch, tmp_path):
    _serve(monkeypatch, _FakeResponse(content=b""))
    out_dir = tmp_path / "public"

    assert main(["--out-dir", str(out_dir)]) == 0

    assert json.loads((out_dir / "history.json").read_text(encoding="utf-8")) == []
    assert json.loads((out_dir / "latest.json").read_text(encoding="utf-8"))["latest"] is None
    diagnostics = json.loads((out_dir / "diagnostics.json").read_text(encoding="utf-8"))
    assert diagnostics["note"] == "CSV empty"


def test_main_from_local_file_is_byte_identical_across_runs(tmp_path):
    csv_path = tmp_path / "export.csv"
    csv_path.write_text(CSV_TEXT, encoding="utf-8")

    first, second = tmp_path / "first", tmp_path / "second"
    assert main(["--csv-file", str(csv_path), "--out-dir", str(first)]) == 0
    assert main(["--csv-file", str(csv_path), "--out-dir", str(second)]) == 0

    for name in ("history.json", "latest.json"):
        assert (first / name).read_bytes() == (second / name).read_bytes()
