import json
from pathlib import Path
import os
import sys
from typing import Dict, List, Optional

import streamlit as st
import pandas as pd
import altair as alt

# Ensure imports work whether the app is executed as a module or as a script
# where the repository directory might not already be on ``sys.path``.
CURRENT_DIR = Path(__file__).resolve().parent

if __package__:
    from .wave_ingest import decode_csv_bytes, ingest_wave_csv
    from .wave_processing import CANONICAL_KEYS, StationIdentity
else:
    if str(CURRENT_DIR) not in sys.path:
        sys.path.insert(0, str(CURRENT_DIR))
    from wave_ingest import decode_csv_bytes, ingest_wave_csv
    from wave_processing import CANONICAL_KEYS, StationIdentity


FIELD_LABELS: Dict[str, str] = {
    "hm0": "Hm0 (m)",
    "tp": "Tp (s)",
    "tz": "Tz (s)",
    "dir": "Direction (°)",
}


def _load_json(path: Path) -> Optional[object]:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def _series_frame(series: List[Dict[str, object]]) -> pd.DataFrame:
    """Return a long dataframe (DateTime, Field, Value) for charting."""

    if not series:
        return pd.DataFrame(columns=["DateTime", "Field", "Value"])
    df = pd.DataFrame(series)
    df["DateTime"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    value_cols = [key for key in CANONICAL_KEYS if key in df.columns]
    long_df = df.melt(
        id_vars=["DateTime"], value_vars=value_cols, var_name="Field", value_name="Value"
    )
    long_df = long_df.dropna(subset=["DateTime", "Value"])
    long_df["Field"] = long_df["Field"].map(FIELD_LABELS)
    return long_df


st.set_page_config(page_title="WaveNet Feed", layout="wide", page_icon="🌊")

public_dir = Path(os.getenv("WAVES_OUT_DIR", "public"))

st.sidebar.header("🌊 Source & Station")
uploaded = st.sidebar.file_uploader(
    "Upload a Cefas CSV export (optional)", key="csv_uploader"
)
station_code = st.sidebar.text_input("Station code", os.getenv("STATION_CODE", "EXT"))
platform_id = st.sidebar.text_input("Platform ID", os.getenv("PLATFORM_ID", "353~EXT"))
instrument_id = st.sidebar.text_input("Instrument ID", os.getenv("INST_ID", "353"))
site_name = st.sidebar.text_input("Site name", os.getenv("SITE_NAME", "cardigan"))

if uploaded is not None:
    identity = StationIdentity(
        station_code=station_code.strip().upper(),
        platform_id=platform_id.strip().upper(),
        instrument_id=instrument_id.strip(),
        location_names=(site_name.strip(),) if site_name.strip() else (),
    )
    result = ingest_wave_csv(decode_csv_bytes(uploaded.read()), identity)
    series = result.series
    latest = result.latest
    diagnostics = result.diagnostics
    st.caption(f"Ingested {uploaded.name}")
else:
    series = _load_json(public_dir / "history.json") or []
    latest_doc = _load_json(public_dir / "latest.json") or {}
    latest = latest_doc.get("latest")
    diagnostics = _load_json(public_dir / "diagnostics.json") or {}
    st.caption(f"Published artifacts from {public_dir}")

st.title(f"{site_name.title()} ({station_code.upper()}) – WaveNet feed")

if latest:
    st.subheader(f"Latest: {latest['timestamp']}")
    cols = st.columns(len(CANONICAL_KEYS))
    for col, key in zip(cols, CANONICAL_KEYS):
        value = latest.get(key)
        col.metric(FIELD_LABELS[key], "–" if value is None else f"{value:g}")
else:
    st.info("No records matched the target station.")

chart_df = _series_frame(series)
if not chart_df.empty:
    chart = (
        alt.Chart(chart_df)
        .mark_line(point=True)
        .encode(
            x=alt.X("DateTime:T", title="Time (UTC)"),
            y=alt.Y("Value:Q"),
            color=alt.Color("Field:N", title=""),
            tooltip=["DateTime:T", "Field:N", "Value:Q"],
        )
        .properties(height=360)
        .interactive()
    )
    st.altair_chart(chart, use_container_width=True)
    st.dataframe(pd.DataFrame(series), use_container_width=True)

with st.expander("Diagnostics"):
    if diagnostics.get("schema_error"):
        st.warning(diagnostics["schema_error"])
    st.json(diagnostics)
