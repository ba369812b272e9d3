"""WaveNet CSV ingestion.

This module turns one Cefas Data Hub CSV export into a canonical wave time
series (``hm0``, ``tp``, ``tz``, ``dir``) for a single station. Column names,
row layout (wide or long) and the fields identifying the station all drift
between export snapshots, so every structural decision is made once per
payload from the header row and then applied to each data row.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import pandas as pd

from wave_processing import (
    SHAPE_LONG,
    SchemaResolutionError,
    StationIdentity,
    classify_parameter,
    detect_shape,
    dprint,
    extract_observations,
    latest_record,
    reduce_observations,
    require_columns,
    resolve_column_roles,
    row_matches_station,
)


@dataclass
class IngestResult:
    series: List[Dict[str, object]] = field(default_factory=list)
    latest: Optional[Dict[str, object]] = None
    diagnostics: Dict[str, object] = field(default_factory=dict)


def decode_csv_bytes(raw: bytes) -> str:
    """Decode a CSV payload handling BOMs and stray null bytes."""

    cleaned = raw.replace(b"\x00", b"")
    return cleaned.decode("utf-8-sig", errors="replace")


def read_csv_rows(text: str) -> List[Dict[str, str]]:
    """Parse CSV text into ordered row mappings of stripped strings."""

    if not text.strip():
        return []

    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            index_col=False,
        )
    except pd.errors.EmptyDataError:
        return []
    except Exception as exc:
        raise ValueError("Failed to read WaveNet CSV") from exc

    df.columns = [str(col).strip() for col in df.columns]
    return df.to_dict(orient="records")


def _identity_diagnostics(identity: StationIdentity) -> Dict[str, object]:
    return {
        "station_code": identity.station_code,
        "platform_id": identity.platform_id,
        "instrument_id": identity.instrument_id,
        "location_names": list(identity.location_names),
    }


def _parameter_labels(
    rows: Sequence[Mapping[str, object]], roles: Mapping[str, Optional[str]], shape: str
) -> List[str]:
    if shape != SHAPE_LONG or not roles.get("parameter"):
        return []
    labels = {str(row.get(roles["parameter"]) or "").strip() for row in rows}
    labels.discard("")
    return sorted(labels)


def build_time_series(
    rows: Sequence[Mapping[str, object]],
    identity: StationIdentity,
    keep_raw: bool = False,
) -> IngestResult:
    """Select the target station's rows and reduce them to a time series.

    Parameters
    ----------
    rows:
        Parsed CSV rows, each an ordered mapping of column name to cell text.
    identity:
        Station code, platform id, instrument id and location names used to
        pick the target station's rows.
    keep_raw:
        When True each record carries a ``raw`` mapping of the original
        parameter labels (or wide headers) to their cell text.

    Returns
    -------
    IngestResult
        The ascending series, its latest record and a diagnostics mapping.
        Schema problems and empty payloads give an empty series instead of an
        exception.
    """

    diagnostics: Dict[str, object] = {
        "target": _identity_diagnostics(identity),
        "row_count": len(rows),
    }
    if not rows:
        diagnostics["note"] = "CSV empty"
        return IngestResult(diagnostics=diagnostics)

    headers = [str(h) for h in rows[0].keys()]
    roles = resolve_column_roles(headers)
    shape, wide_columns = detect_shape(headers, roles)

    diagnostics.update(
        {
            "headers": headers,
            "roles": roles,
            "shape": shape,
            "wide_columns": wide_columns,
            "header_classification": {
                h: key for h, key in zip(headers, map(classify_parameter, headers)) if key
            },
            "parameter_labels": _parameter_labels(rows, roles, shape),
            "sample_first": dict(rows[0]),
        }
    )

    try:
        require_columns(roles, shape, wide_columns)
    except SchemaResolutionError as exc:
        dprint(f"[ingest] schema error: {exc}")
        diagnostics.update(
            {
                "schema_error": str(exc),
                "matched_rows": 0,
                "observation_count": 0,
                "series_length": 0,
                "sample_match": None,
                "note": "Required columns could not be resolved",
            }
        )
        return IngestResult(diagnostics=diagnostics)

    matched = [row for row in rows if row_matches_station(row, roles, identity)]
    observations = extract_observations(matched, roles, shape, wide_columns)
    series = reduce_observations(observations, keep_raw=keep_raw)

    diagnostics.update(
        {
            "schema_error": None,
            "matched_rows": len(matched),
            "observation_count": len(observations),
            "series_length": len(series),
            "sample_match": dict(matched[0]) if matched else None,
            "note": f"Shape: {shape}. Matched by station code, platform, InstId or site name.",
        }
    )
    return IngestResult(series=series, latest=latest_record(series), diagnostics=diagnostics)


def ingest_wave_csv(
    text: str, identity: StationIdentity, keep_raw: bool = False
) -> IngestResult:
    """Parse CSV text and build the station's time series."""

    return build_time_series(read_csv_rows(text), identity, keep_raw=keep_raw)


__all__ = [
    "IngestResult",
    "build_time_series",
    "decode_csv_bytes",
    "ingest_wave_csv",
    "read_csv_rows",
]
