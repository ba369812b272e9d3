import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import os

import numpy as np
import pandas as pd
from dateutil import parser as date_parser

# Debug toggler: set WAVES_DEBUG=1 to enable verbose classification logs
DEBUG = os.getenv("WAVES_DEBUG", "0") == "1"


def dprint(*args, **kwargs):
    if DEBUG:
        print(*args, **kwargs)


CANONICAL_KEYS: Tuple[str, ...] = ("hm0", "tp", "tz", "dir")

SHAPE_WIDE = "wide"
SHAPE_LONG = "long"

# Exact candidates are tried (case-insensitively) before any substring needle.
COLUMN_ROLE_RULES: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "time": (
        ("Date/Time", "DateTime", "SampleDateTime", "Timestamp", "Time", "Datetime"),
        ("date", "time"),
    ),
    "station": (
        ("Station", "StationCode", "Station Code", "StationId", "SiteCode"),
        ("station",),
    ),
    "platform": (
        ("Platform", "PlatformId", "PlatformID", "Platform Id"),
        ("platform",),
    ),
    "deployment": (
        ("Deployment", "DeploymentName"),
        ("deployment", "location", "site", "name"),
    ),
    "parameter": (
        ("Parameter", "ParameterCode", "ParamCode"),
        ("parameter", "param", "variable", "observed", "property", "name"),
    ),
    "value": (
        ("ResultMean", "Value", "Result", "Reading", "DataValue", "NumericValue"),
        ("value", "result", "reading"),
    ),
    "instrument": (
        ("InstId", "InstID", "InstrumentID", "InstrumentId"),
        ("inst", "instrument"),
    ),
}

IDENTITY_ROLES: Tuple[str, ...] = ("station", "platform", "deployment", "instrument")


class SchemaResolutionError(ValueError):
    """Raised when the columns needed to build a series cannot be resolved."""


@dataclass(frozen=True)
class StationIdentity:
    """Identity signals used to pick the target station's rows."""

    station_code: str = ""
    platform_id: str = ""
    instrument_id: str = ""
    location_names: Tuple[str, ...] = ()


def _norm(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _lc(value: object) -> str:
    return _norm(value).lower()


def _digits(value: object) -> str:
    return re.sub(r"\D", "", _norm(value))


# Normalize parameter labels and headers to a compact alphanumeric form so
# that variants like ``W_PDIR`` and ``w pdir`` compare equal.
def normalize_label(value: object) -> str:
    return re.sub(r"[^a-z0-9]", "", _lc(value))


def classify_parameter(label: object) -> Optional[str]:
    """Return the canonical wave key for a parameter label or column header."""

    t = normalize_label(label)
    if not t:
        return None

    if "hm0" in t or "hs" in t or "significantwaveheight" in t:
        return "hm0"
    if t in {"tpeak", "tp", "tpp"} or "peakperiod" in t:
        return "tp"
    if t in {"tz", "t02"} or "zerocross" in t:
        return "tz"
    if (
        "wpdir" in t
        or t == "dp"
        or "peakdirection" in t
        or t == "mwd"
        or "meandirection" in t
        or t == "direction"
    ):
        return "dir"

    dprint(f"[classify] '{label}' -> None (normalized '{t}')")
    return None


def pick_exact(headers: Sequence[str], names: Iterable[str]) -> Optional[str]:
    """Return the first header equal (ignoring case) to one of ``names``."""

    lowered = [_lc(h) for h in headers]
    for name in names:
        wanted = _lc(name)
        if wanted in lowered:
            return headers[lowered.index(wanted)]
    return None


def pick_loose(headers: Sequence[str], needles: Iterable[str]) -> Optional[str]:
    """Return the first header containing any needle, needles in priority order."""

    lowered = [_lc(h) for h in headers]
    for needle in needles:
        wanted = _lc(needle)
        for header, low in zip(headers, lowered):
            if wanted in low:
                return header
    return None


def resolve_column_roles(headers: Sequence[str]) -> Dict[str, Optional[str]]:
    """Map each logical role to at most one concrete column name."""

    headers = [str(h) for h in headers]
    roles: Dict[str, Optional[str]] = {}
    for role, (exact, needles) in COLUMN_ROLE_RULES.items():
        roles[role] = pick_exact(headers, exact) or pick_loose(headers, needles)
        dprint(f"[roles] {role} -> {roles[role]!r}")
    return roles


def detect_shape(
    headers: Sequence[str], roles: Optional[Mapping[str, Optional[str]]] = None
) -> Tuple[str, Dict[str, str]]:
    """Return ``(shape, wide_columns)`` for a header list.

    Headers already claimed by the time or identity roles are never treated as
    measurements. ``wide_columns`` maps each canonical key to the first header
    classified as that key; the dataset is wide when it holds two or more.
    """

    reserved = set()
    if roles:
        for role in ("time",) + IDENTITY_ROLES:
            if roles.get(role):
                reserved.add(roles[role])

    wide_columns: Dict[str, str] = {}
    for header in headers:
        if header in reserved:
            continue
        key = classify_parameter(header)
        if key and key not in wide_columns:
            wide_columns[key] = header

    shape = SHAPE_WIDE if len(wide_columns) >= 2 else SHAPE_LONG
    dprint(f"[shape] {shape} ({wide_columns})")
    return shape, wide_columns


def require_columns(
    roles: Mapping[str, Optional[str]], shape: str, wide_columns: Mapping[str, str]
) -> None:
    """Raise ``SchemaResolutionError`` when the dataset cannot produce values."""

    if not roles.get("time"):
        raise SchemaResolutionError("No timestamp column could be resolved")
    if shape == SHAPE_WIDE:
        return
    missing = [role for role in ("parameter", "value") if not roles.get(role)]
    if missing:
        raise SchemaResolutionError(
            "Long layout is missing required columns: " + ", ".join(missing)
        )


def row_matches_station(
    row: Mapping[str, object],
    roles: Mapping[str, Optional[str]],
    identity: StationIdentity,
) -> bool:
    """Return True when any identity signal ties the row to the target station."""

    columns = {role: roles.get(role) for role in IDENTITY_ROLES}
    if not any(columns.values()):
        return False

    text_cells = [
        _lc(row.get(columns[role]))
        for role in ("station", "platform", "deployment")
        if columns[role]
    ]

    # 1) Exact station code / platform id.
    codes = {_lc(code) for code in (identity.station_code, identity.platform_id) if _lc(code)}
    if codes and any(cell in codes for cell in text_cells if cell):
        return True

    # 2) Digit-stripped instrument id.
    target_inst = _digits(identity.instrument_id)
    if target_inst and columns["instrument"]:
        if _digits(row.get(columns["instrument"])) == target_inst:
            return True

    # 3) Location name text anywhere in the identity cells.
    for name in identity.location_names:
        needle = _lc(name)
        if needle and any(needle in cell for cell in text_cells):
            return True

    # Deployment text carrying the station code, e.g. "Cardigan Bay EXT".
    station_code = _lc(identity.station_code)
    if station_code and columns["deployment"]:
        if station_code in _lc(row.get(columns["deployment"])):
            return True

    return False


_NUMBER_RE = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def parse_numeric_value(text: object) -> Optional[float]:
    """Return a float from a cell, accepting a decimal comma.

    Only the leading numeric literal is used, so ``"1,5 m"`` gives 1.5.
    """

    cleaned = _norm(text).replace(",", ".", 1)
    if not cleaned:
        return None
    match = _NUMBER_RE.match(cleaned)
    if not match:
        return None
    value = float(match.group(0))
    if not np.isfinite(value):
        return None
    return value


_ISO_T_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T")
_DMY_RE = re.compile(
    r"^(\d{2})/(\d{2})/(\d{4})(?:[ T](\d{2}):(\d{2})(?::(\d{2}))?)?$"
)
_YMD_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{2}):(\d{2})(?::(\d{2}))?)?$"
)


def _format_utc(ts: pd.Timestamp) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def _as_utc(ts: pd.Timestamp) -> pd.Timestamp:
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def _from_parts(year, month, day, hour, minute, second) -> Optional[pd.Timestamp]:
    try:
        return pd.Timestamp(
            year=int(year),
            month=int(month),
            day=int(day),
            hour=int(hour or 0),
            minute=int(minute or 0),
            second=int(second or 0),
            tz="UTC",
        )
    except (ValueError, OverflowError):
        return None


# Two defaults differing in every date part; a parse that changes with the
# default was completed from it (e.g. "12:00") and is rejected.
_DEFAULT_A = pd.Timestamp(2000, 1, 1).to_pydatetime()
_DEFAULT_B = pd.Timestamp(2001, 2, 2).to_pydatetime()


def _parse_generic(text: str) -> Optional[pd.Timestamp]:
    """Parse free-form date text, reading naive values as UTC."""

    try:
        first = date_parser.parse(text, default=_DEFAULT_A)
        second = date_parser.parse(text, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        return None
    if first != second:
        return None
    try:
        return _as_utc(pd.Timestamp(first))
    except (ValueError, OverflowError):
        return None


def normalize_timestamp(value: object) -> Optional[str]:
    """Return an ISO-8601 UTC string with millisecond precision, or None."""

    text = _norm(value)
    if not text:
        return None

    # A matched shape is final: an impossible date there is invalid, not
    # handed on to the generic parser.
    dmy = _DMY_RE.match(text)
    ymd = _YMD_RE.match(text)

    ts: Optional[pd.Timestamp]
    if _ISO_T_RE.match(text):
        try:
            ts = _as_utc(pd.Timestamp(text))
        except (ValueError, OverflowError):
            return None
    elif dmy:
        dd, mm, yyyy, hh, mi, ss = dmy.groups()
        ts = _from_parts(yyyy, mm, dd, hh, mi, ss)
    elif ymd:
        yyyy, mm, dd, hh, mi, ss = ymd.groups()
        ts = _from_parts(yyyy, mm, dd, hh, mi, ss)
    else:
        ts = _parse_generic(text)

    if ts is None or pd.isna(ts):
        return None
    return _format_utc(ts)


@dataclass(frozen=True)
class Observation:
    timestamp: str
    key: str
    value: float
    label: str = ""
    raw_value: str = ""


def extract_observations(
    rows: Iterable[Mapping[str, object]],
    roles: Mapping[str, Optional[str]],
    shape: str,
    wide_columns: Mapping[str, str],
) -> List[Observation]:
    """Turn selected rows into (timestamp, key, value) observations."""

    time_col = roles["time"]
    observations: List[Observation] = []

    for row in rows:
        ts_text = _norm(row.get(time_col))
        if shape == SHAPE_WIDE:
            for key, column in wide_columns.items():
                raw = _norm(row.get(column))
                value = parse_numeric_value(raw)
                if value is None:
                    continue
                observations.append(Observation(ts_text, key, value, column, raw))
            continue

        label = _norm(row.get(roles["parameter"]))
        key = classify_parameter(label)
        if not key:
            continue
        raw = _norm(row.get(roles["value"]))
        value = parse_numeric_value(raw)
        if value is None:
            continue
        observations.append(Observation(ts_text, key, value, label, raw))

    return observations


def reduce_observations(
    observations: Iterable[Observation], keep_raw: bool = False
) -> List[Dict[str, object]]:
    """Fold observations into records keyed by timestamp, sorted ascending.

    A later observation for the same timestamp and key replaces the earlier
    value. Observations whose timestamp cannot be normalized are dropped.
    """

    by_ts: Dict[str, Dict[str, object]] = {}
    raw_by_ts: Dict[str, Dict[str, str]] = {}

    for obs in observations:
        ts = normalize_timestamp(obs.timestamp)
        if ts is None:
            continue
        by_ts.setdefault(ts, {})[obs.key] = obs.value
        if keep_raw and obs.label:
            raw_by_ts.setdefault(ts, {})[obs.label] = obs.raw_value

    series: List[Dict[str, object]] = []
    for ts in sorted(by_ts):
        fields = by_ts[ts]
        record: Dict[str, object] = {"timestamp": ts}
        for key in CANONICAL_KEYS:
            if key in fields:
                record[key] = fields[key]
        if keep_raw:
            record["raw"] = raw_by_ts.get(ts, {})
        series.append(record)
    return series


def latest_record(series: Sequence[Dict[str, object]]) -> Optional[Dict[str, object]]:
    return series[-1] if series else None
