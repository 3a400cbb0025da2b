"""Command line interface for the pmsread package."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer

from . import __version__
from .config import load_config
from .frames import SensorVariant
from .runner import DeviceError, EmptyWindowError, SensorHost, SerialSettings

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="PMS5003 particulate-matter sensor reader.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pmsread {__version__}")
        raise typer.Exit()


@app.command()
def read(
    device: str = typer.Argument(..., help="Serial device. Use '-' to read a recorded stream from stdin."),
    average_sec: Optional[int] = typer.Argument(
        None,
        min=0,
        help="Average over this many seconds and print a single record.",
    ),
    variant: Optional[SensorVariant] = typer.Option(
        None,
        "--variant",
        case_sensitive=False,
        help="Sensor variant: standard (counts in channels 11/12) or t (temperature/humidity).",
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", exists=True, dir_okay=False, help="JSON configuration file."
    ),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set serial.timeout=0.5",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr."),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """Print PMS5003 measurements from DEVICE as JSON lines."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = list(override or [])
    if variant is not None:
        overrides.append(f"variant={variant.value}")
    try:
        cfg = load_config(config_path, overrides or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if average_sec is not None:
        cfg.average_sec = float(average_sec)

    settings = SerialSettings(port=device, baudrate=cfg.serial.baudrate, timeout=cfg.serial.timeout)
    host = SensorHost(settings=settings, config=cfg)
    try:
        host.run()
    except EmptyWindowError as exc:
        typer.echo(f"warning: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except DeviceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt as exc:
        logger.info("Stopping (Ctrl+C)")
        raise typer.Exit(code=130) from exc


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
