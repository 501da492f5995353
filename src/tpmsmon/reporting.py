"""Summaries and report writers for TPMS reading logs."""
from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .receiver.sensors import DEFAULT_SIGNAL_TIMEOUT_SEC, SensorRecord, effective_status, is_alarm_condition

REQUIRED_COLUMNS = {"received_at", "sensor_id", "pressure_psi", "temperature_f", "status"}


def load_readings_csv(path: str | Path) -> pd.DataFrame:
    """Load a reading log written by the host and sort it chronologically.

    Parameters
    ----------
    path:
        CSV produced by ``CsvLogger``; at least `received_at`, `sensor_id`,
        `pressure_psi`, `temperature_f` and `status` are required.
    """

    df = pd.read_csv(path)
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    df = df.copy()
    if "position" not in df.columns:
        df["position"] = "---"
    if "alarm" not in df.columns:
        df["alarm"] = 0
    df["position"] = df["position"].fillna("---").astype(str)
    df = df.sort_values(["received_at", "sensor_id"], kind="mergesort")
    df.reset_index(drop=True, inplace=True)
    return df


def summarize_readings(df: pd.DataFrame) -> pd.DataFrame:
    """Per-sensor statistics: sample count, pressure/temperature spread, alarm share."""

    if df.empty:
        return pd.DataFrame(
            columns=[
                "sensor_id",
                "position",
                "samples",
                "first_seen",
                "last_seen",
                "pressure_min",
                "pressure_mean",
                "pressure_max",
                "pressure_std",
                "temperature_min",
                "temperature_mean",
                "temperature_max",
                "alarm_fraction",
                "last_status",
            ]
        )
    rows: list[dict[str, object]] = []
    for sensor_id, group in df.groupby("sensor_id", sort=True):
        pressure = group["pressure_psi"].to_numpy(dtype=float)
        temperature = group["temperature_f"].to_numpy(dtype=float)
        alarm = group["alarm"].to_numpy(dtype=float)
        rows.append(
            {
                "sensor_id": int(sensor_id),
                "position": group["position"].iloc[-1],
                "samples": int(pressure.size),
                "first_seen": float(group["received_at"].iloc[0]),
                "last_seen": float(group["received_at"].iloc[-1]),
                "pressure_min": float(np.min(pressure)),
                "pressure_mean": float(np.mean(pressure)),
                "pressure_max": float(np.max(pressure)),
                "pressure_std": float(np.std(pressure)),
                "temperature_min": float(np.min(temperature)),
                "temperature_mean": float(np.mean(temperature)),
                "temperature_max": float(np.max(temperature)),
                "alarm_fraction": float(np.mean(alarm)),
                "last_status": group["status"].iloc[-1],
            }
        )
    return pd.DataFrame(rows)


def snapshot_frame(
    records: Iterable[SensorRecord],
    *,
    timeout: float = DEFAULT_SIGNAL_TIMEOUT_SEC,
    now: Optional[float] = None,
) -> pd.DataFrame:
    """Tabulate live sensor records, flagging the ones without a recent signal."""

    current = time.time() if now is None else now
    rows = []
    for record in sorted(records, key=lambda item: item.sensor_id):
        status = effective_status(record, timeout, current)
        rows.append(
            {
                "sensor_id": record.sensor_id,
                "position": record.assigned_position.short_name,
                "pressure_psi": record.pressure_psi,
                "temperature_f": record.temperature_f,
                "status": status.value,
                "alarm": int(is_alarm_condition(status)),
                "age_sec": current - record.last_signal_at,
                "pressure_band": f"{record.thresholds.pressure_min:.1f}-{record.thresholds.pressure_max:.1f}",
                "temperature_band": f"{record.thresholds.temperature_min:.1f}-{record.thresholds.temperature_max:.1f}",
            }
        )
    return pd.DataFrame(rows, columns=[
        "sensor_id",
        "position",
        "pressure_psi",
        "temperature_f",
        "status",
        "alarm",
        "age_sec",
        "pressure_band",
        "temperature_band",
    ])


def export_report(
    summary: pd.DataFrame,
    output_dir: Path,
    *,
    input_path: Path | None = None,
    decoder_stats: dict[str, int] | None = None,
) -> None:
    """Persist the per-sensor summary and a markdown report to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    summary.to_csv(output_dir / "summary.csv", index=False)

    lines: list[str] = []
    lines.append("# TPMS Reading Report")
    if input_path is not None:
        lines.append(f"*Input file:* `{input_path}`  ")
    lines.append(f"*Sensors:* {len(summary)}  ")
    lines.append(f"*Readings:* {int(summary['samples'].sum()) if not summary.empty else 0}  ")
    lines.append("")

    lines.append("## Sensors")
    lines.append("| Sensor | Position | Samples | Pressure (min/mean/max PSI) | Temperature (min/mean/max °F) | Alarm % | Last status |")
    lines.append("| ---: | --- | ---: | --- | --- | ---: | --- |")
    for row in summary.itertuples(index=False):
        lines.append(
            f"| {row.sensor_id} | {row.position} | {row.samples} "
            f"| {row.pressure_min:.0f} / {row.pressure_mean:.1f} / {row.pressure_max:.0f} "
            f"| {row.temperature_min:.0f} / {row.temperature_mean:.1f} / {row.temperature_max:.0f} "
            f"| {100.0 * row.alarm_fraction:.1f} | {row.last_status} |"
        )
    lines.append("")

    if decoder_stats:
        lines.append("## Decoder")
        lines.append("| Counter | Value |")
        lines.append("| --- | ---: |")
        for key, value in decoder_stats.items():
            lines.append(f"| {key} | {value} |")
        lines.append("")

    lines.append("### Notes")
    lines.append("- Alarm % counts low pressure, very high pressure and overheating readings.")

    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
