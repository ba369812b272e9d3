"""Fetch the Cefas WaveNet export and publish static JSON/HTML artifacts."""

import argparse
import html
import json
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

import requests

from wave_ingest import IngestResult, decode_csv_bytes, ingest_wave_csv
from wave_processing import StationIdentity

CSV_URL_TEMPLATE = "https://data-api.cefas.co.uk/api/export/{recordset_id}?format=csv"
DOWNLOAD_TIMEOUT_SECONDS = 60


class FeedDownloadError(RuntimeError):
    """Raised when the upstream export cannot be retrieved."""

    def __init__(self, status_code: Optional[int], reason: str):
        self.status_code = status_code
        self.reason = reason
        if status_code is None:
            message = f"Download failed: {reason}"
        else:
            message = f"Download failed {status_code} {reason}"
        super().__init__(message)


@dataclass(frozen=True)
class FeedConfig:
    recordset_id: str = "12651"
    station_code: str = "EXT"
    platform_id: str = "353~EXT"
    instrument_id: str = "353"
    site_name: str = "cardigan"
    out_dir: Path = Path("public")
    keep_raw: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeedConfig":
        env = os.environ if environ is None else environ
        return cls(
            recordset_id=env.get("CEFAS_RECORDSET_ID") or cls.recordset_id,
            station_code=(env.get("STATION_CODE") or cls.station_code).strip().upper(),
            platform_id=(env.get("PLATFORM_ID") or cls.platform_id).strip().upper(),
            instrument_id=(env.get("INST_ID") or cls.instrument_id).strip(),
            site_name=(env.get("SITE_NAME") or cls.site_name).strip(),
            out_dir=Path(env.get("WAVES_OUT_DIR") or cls.out_dir),
            keep_raw=env.get("WAVES_KEEP_RAW", "0") == "1",
        )

    @property
    def csv_url(self) -> str:
        return CSV_URL_TEMPLATE.format(recordset_id=self.recordset_id)

    @property
    def identity(self) -> StationIdentity:
        names = (self.site_name,) if self.site_name else ()
        return StationIdentity(
            station_code=self.station_code,
            platform_id=self.platform_id,
            instrument_id=self.instrument_id,
            location_names=names,
        )


def download_csv(url: str) -> str:
    """Return the export body as text, raising ``FeedDownloadError`` on failure."""

    try:
        resp = requests.get(
            url, headers={"Cache-Control": "no-store"}, timeout=DOWNLOAD_TIMEOUT_SECONDS
        )
    except requests.RequestException as exc:
        raise FeedDownloadError(None, str(exc)) from exc

    if not resp.ok:
        raise FeedDownloadError(resp.status_code, resp.reason or "")
    return decode_csv_bytes(resp.content)


def _dump(data: object) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def latest_document(result: IngestResult, config: FeedConfig) -> Dict[str, object]:
    return {
        "site": config.site_name,
        "station": config.station_code,
        "platform": config.platform_id,
        "instrument": config.instrument_id,
        "recordset": config.recordset_id,
        "latest": result.latest,
    }


def render_index(config: FeedConfig) -> str:
    title = html.escape(f"{config.site_name.title()} ({config.station_code})")
    return (
        "<!doctype html><meta charset=\"utf-8\">"
        f"<title>{title}</title>\n"
        f"<h1>{title} – WaveNet feed</h1>\n"
        "<ul>\n"
        "  <li><a href=\"./latest.json\">latest.json</a></li>\n"
        "  <li><a href=\"./history.json\">history.json</a></li>\n"
        "  <li><a href=\"./diagnostics.json\">diagnostics.json</a></li>\n"
        "</ul>\n"
        "<p>Source: Cefas Data Hub recordset "
        f"{html.escape(config.recordset_id)}. "
        f"Station {html.escape(config.station_code)}, "
        f"Platform {html.escape(config.platform_id)}, "
        f"InstId {html.escape(config.instrument_id)}.</p>\n"
    )


def write_outputs(result: IngestResult, config: FeedConfig) -> Path:
    """Write history, latest, diagnostics and index files; return the directory."""

    out_dir = Path(config.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    (out_dir / "history.json").write_text(_dump(result.series), encoding="utf-8")
    (out_dir / "latest.json").write_text(
        _dump(latest_document(result, config)), encoding="utf-8"
    )
    diagnostics = dict(result.diagnostics)
    diagnostics["recordset"] = config.recordset_id
    diagnostics["source_url"] = config.csv_url
    (out_dir / "diagnostics.json").write_text(_dump(diagnostics), encoding="utf-8")
    (out_dir / "index.html").write_text(render_index(config), encoding="utf-8")
    return out_dir


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=None,
        help="Output directory (defaults to $WAVES_OUT_DIR or ./public)",
    )
    parser.add_argument(
        "--csv-file",
        type=Path,
        default=None,
        help="Publish from a local CSV export instead of downloading it",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = FeedConfig.from_env()
    if args.out_dir is not None:
        config = replace(config, out_dir=args.out_dir)

    if args.csv_file is not None:
        text = decode_csv_bytes(args.csv_file.read_bytes())
    else:
        try:
            text = download_csv(config.csv_url)
        except FeedDownloadError as exc:
            print(str(exc), file=sys.stderr)
            return 1

    result = ingest_wave_csv(text, config.identity, keep_raw=config.keep_raw)
    write_outputs(result, config)
    print(f"Built {len(result.series)} records; latest = {result.latest}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
