"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from cgmctl.core.detection import serial_number
from cgmctl.core.errors import CgmctlError
from cgmctl.core.model import SensorType, TaskRequest
from cgmctl.core.service import SensorService, subcommand_names

app = typer.Typer(help="Reverse-engineered NFC protocol tooling for CGM sensors")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _build_service() -> SensorService:
    service = SensorService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    for warning in getattr(service, "runtime_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _parse_hex(value: str, *, option: str) -> bytes:
    try:
        return bytes.fromhex(value.replace(":", "").replace(" ", ""))
    except ValueError:
        raise typer.BadParameter(f"{option} must be hex, got '{value}'") from None


def _parse_int(value: str, *, option: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"{option} must be an integer (decimal or 0x-prefixed), got '{value}'") from None


@app.command("run")
def run_task(
    task: TaskRequest = typer.Argument(..., help="Task to run against the tag"),
    image: Path = typer.Option(..., "--image", help="YAML tag image of an emulated sensor"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traces"),
) -> None:
    """Run a task against an emulated tag image and print the outcome."""
    _configure_logging(verbose)
    try:
        service = _build_service()
        outcome = service.run_image(image, task)
        sensor = outcome.sensor
        typer.echo(f"Sensor: {sensor.type} (generation {sensor.security_generation})")
        typer.echo(f"UID: {sensor.uid.hex()}  serial: {serial_number(sensor) or '<unknown>'}")
        typer.echo(f"Patch info: {sensor.patch_info.hex() or '<none>'}")
        typer.echo(f"State: {sensor.state.description}")
        typer.echo(f"FRAM: {len(sensor.fram)} bytes ({len(sensor.fram) // 8} blocks)")
        if outcome.canceled:
            typer.echo("Session canceled")
            return
        if outcome.error:
            typer.echo(f"Error: {outcome.error}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Task '{task.value}' completed")
    except CgmctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("command")
def show_command(
    subcommand: str = typer.Argument(..., help=f"One of {', '.join(subcommand_names())}, or a hex code"),
    uid: str = typer.Option(..., "--uid", help="Sensor UID (8 bytes hex)"),
    patch_info: str = typer.Option("", "--patch-info", help="Patch info hex"),
    unlock_code: str | None = typer.Option(None, "--unlock-code", help="Streaming unlock code"),
    sensor_type: SensorType | None = typer.Option(None, "--type", help="Override the detected sensor type"),
) -> None:
    """Print the custom command bytes the catalog builds for a sensor."""
    uid_bytes = _parse_hex(uid, option="--uid")
    patch_bytes = _parse_hex(patch_info, option="--patch-info")
    code = _parse_int(unlock_code, option="--unlock-code") if unlock_code is not None else None
    try:
        service = _build_service()
        command = service.build_command(
            subcommand,
            uid_bytes,
            patch_info=patch_bytes,
            unlock_code=code,
            sensor_type=sensor_type,
        )
    except CgmctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None

    if command.is_sentinel:
        typer.echo("Not supported by this sensor type (sentinel command 00)")
        raise typer.Exit(code=1)
    typer.echo(f"{command.code:02x} {command.parameters.hex()}")
    if command.description:
        typer.echo(f"  {command.description}")


@app.command("cipher")
def show_cipher(
    uid: str = typer.Argument(..., help="Sensor UID hex"),
    code: str = typer.Argument(..., help="Subcommand code, e.g. 0x1a"),
    seed: str = typer.Option("0x1b6a", "--seed", help="16-bit seed"),
) -> None:
    """Print the 4-byte authentication suffix for a subcommand."""
    uid_bytes = _parse_hex(uid, option="UID")
    try:
        suffix = SensorService.unlock_suffix(
            uid_bytes,
            _parse_int(code, option="CODE"),
            _parse_int(seed, option="--seed"),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None
    typer.echo(suffix.hex())


@app.command("error")
def show_error(code: str = typer.Argument(..., help="ISO 15693 status code, e.g. 0x10")) -> None:
    """Describe an ISO 15693 status code."""
    value = _parse_int(code, option="CODE")
    typer.echo(f"0x{value & 0xFF:02x}: {SensorService.describe_status(value)}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
