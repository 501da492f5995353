"""Command line interface for the tpmsmon package."""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer

from .demo import run_demo
from .receiver.config import load_config
from .receiver.frames import FRAME_LENGTH, FrameDecoder, iterate_binary_stream, max_chunk_size
from .receiver.processing import ReadingPipeline
from .receiver.runner import app as host_app
from .receiver.sensors import SensorStateEngine
from .reporting import export_report, load_readings_csv, snapshot_frame, summarize_readings

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
app.add_typer(host_app, name="host")


@app.command()
def decode(
    input_path: Path = typer.Option(..., "--in", help="Raw receiver capture.", exists=True, readable=True),
    out: Optional[Path] = typer.Option(None, "--out", help="Write every reading to this CSV."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Monitor config JSON."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
    chunk_size: int = typer.Option(FRAME_LENGTH * 2, "--chunk-size", help="Bytes fed to the decoder per read."),
) -> None:
    """Decode a captured byte stream and print the resulting sensor table."""

    try:
        cfg = load_config(config_path, override or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    capacity = FRAME_LENGTH * cfg.decoder.buffer_frames
    if not 1 <= chunk_size <= max_chunk_size(capacity):
        raise typer.BadParameter(
            f"must be between 1 and {max_chunk_size(capacity)} for a {capacity}-byte decoder buffer",
            param_hint="--chunk-size",
        )
    engine = SensorStateEngine(cfg.thresholds.to_thresholds())
    pipeline = ReadingPipeline(engine, out)
    decoder = FrameDecoder(capacity=capacity)
    try:
        with input_path.open("rb") as handle:
            updates = pipeline.process(decoder.iter_frames(iterate_binary_stream(handle, chunk_size)))
    finally:
        pipeline.close()

    for position, sensor_id in cfg.positions.items():
        if engine.get(sensor_id) is not None:
            engine.assign(sensor_id, position)

    records = engine.get_all().values()
    latest = max((record.last_signal_at for record in records), default=None)
    table = snapshot_frame(records, timeout=cfg.signal_timeout_sec, now=latest)
    if table.empty:
        typer.echo("No valid frames found")
    else:
        typer.echo(table.to_string(index=False))
    stats = decoder.stats()
    typer.echo(
        f"readings={len(updates)} checksum_errors={stats['checksum_errors']} "
        f"overflows={stats['overflows']} noise_bytes={stats['noise_bytes']}"
    )


@app.command()
def report(
    input_path: Path = typer.Option(..., "--in", help="Reading log CSV written by the host."),
    report_dir: Path = typer.Option(..., "--report", help="Output directory for reports."),
) -> None:
    """Summarize a reading log per sensor."""

    try:
        df = load_readings_csv(input_path)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc
    export_report(summarize_readings(df), report_dir, input_path=input_path)
    typer.echo(f"Report written to {report_dir}")


@app.command()
def demo(
    out_dir: Path = typer.Option(Path("demo_output"), "--out", help="Target directory for demo report."),
) -> None:
    """Generate a synthetic receiver capture, decode it and report."""

    stats = run_demo(out_dir)
    typer.echo(
        f"Demo capture and report written to {out_dir} "
        f"(frames={stats['frames']} checksum_errors={stats['checksum_errors']})"
    )


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
