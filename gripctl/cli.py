"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer

from gripctl.core.device_match import best_descriptor_for_device
from gripctl.core.errors import GripctlError
from gripctl.core.model import ForceMeasurement
from gripctl.core.service import GripService
from gripctl.core.session import DeviceSession
from gripctl.core.units import validate_unit
from gripctl.protocols.peak_force import PeakForceOptions

app = typer.Typer(help="Bluetooth grip-strength sensors via YAML device descriptors")

T = TypeVar("T")

DEVICE_OPTION = typer.Option(None, "--device", help="Address or partial name")
TYPE_OPTION = typer.Option(None, "--type", help="Descriptor ID")
UNIT_OPTION = typer.Option(None, "--unit", help="Display unit: kg, lbs or n")
JSON_OPTION = typer.Option(False, "--json", help="Print one JSON object per line")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def _build_service() -> GripService:
    service = GripService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _check_unit(unit: str | None) -> str | None:
    if unit is None:
        return None
    try:
        return validate_unit(unit.lower())
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--unit") from exc


def _run_with_session(
    service: GripService,
    descriptor_id: str | None,
    device_hint: str | None,
    unit: str | None,
    action: Callable[[DeviceSession], Awaitable[T]],
) -> T:
    async def _run() -> T:
        session = await service.connect(descriptor_id, device_hint, unit=unit)
        try:
            return await action(session)
        finally:
            await session.disconnect()

    return asyncio.run(_run())


def _format_measurement(measurement: ForceMeasurement) -> str:
    line = (
        f"{measurement.timestamp:10.1f} ms  {measurement.current:8.2f} {measurement.unit}"
        f"  peak={measurement.peak:.2f} mean={measurement.mean:.2f}"
    )
    if measurement.distribution:
        parts = " ".join(f"{channel}={block.current:.2f}" for channel, block in measurement.distribution.items())
        line = f"{line}  {parts}"
    return line


@app.command("list")
def list_descriptors() -> None:
    """List available device descriptors and their commands."""
    try:
        service = _build_service()
        descriptors = service.list_descriptors()
        if not descriptors:
            typer.echo("No descriptors loaded")
            raise typer.Exit(code=1)

        for descriptor in descriptors:
            typer.echo(f"{descriptor.id}: {descriptor.name} ({descriptor.family})")
            if descriptor.commands:
                typer.echo(f"  commands: {', '.join(sorted(descriptor.commands))}")
    except GripctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    timeout: float = typer.Option(5.0, "--timeout", help="Scan duration in seconds"),
) -> None:
    """Scan for nearby Bluetooth devices and show the matched descriptor."""
    try:
        service = _build_service()
        devices = asyncio.run(service.list_devices(timeout))
        if not devices:
            typer.echo("No Bluetooth devices found")
            return

        for device in devices:
            descriptor = best_descriptor_for_device(device, service.descriptors)
            matched = descriptor.id if descriptor else "<no-match>"
            typer.echo(f"{device.address} {device.name} -> {matched}")
    except GripctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("stream")
def stream(
    device: str | None = DEVICE_OPTION,
    descriptor_id: str | None = TYPE_OPTION,
    unit: str | None = UNIT_OPTION,
    duration: int = typer.Option(10000, "--duration", help="Stream duration in milliseconds"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Stream force measurements for a fixed duration."""
    try:
        service = _build_service()

        def _print(measurement: ForceMeasurement) -> None:
            if as_json:
                typer.echo(json.dumps(measurement.to_dict()))
            else:
                typer.echo(_format_measurement(measurement))

        _run_with_session(
            service,
            descriptor_id,
            device,
            _check_unit(unit),
            lambda session: session.stream(_print, duration_ms=duration),
        )
    except GripctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("tare")
def tare(
    device: str | None = DEVICE_OPTION,
    descriptor_id: str | None = TYPE_OPTION,
    duration: int = typer.Option(5000, "--duration", help="Tare duration in milliseconds"),
) -> None:
    """Measure the zero offset of the connected device."""
    try:
        service = _build_service()
        state = _run_with_session(service, descriptor_id, device, None, lambda session: session.tare(duration))
        offsets = ", ".join(f"{channel}={offset:.3f}" for channel, offset in sorted(state.offsets.items()))
        typer.echo(f"Tare complete over {state.sample_count} samples: {offsets}")
    except GripctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("peak-force")
def peak_force(
    device: str | None = DEVICE_OPTION,
    descriptor_id: str | None = TYPE_OPTION,
    unit: str | None = UNIT_OPTION,
    duration: int = typer.Option(5000, "--duration", help="Capture duration in milliseconds"),
    countdown: int = typer.Option(3000, "--countdown", help="Countdown before capture in milliseconds"),
    left_right: bool = typer.Option(False, "--left-right", help="Report left and right channels separately"),
    moment_arm: float | None = typer.Option(None, "--moment-arm", help="Moment arm in centimetres"),
    body_weight: float | None = typer.Option(None, "--body-weight", help="Body weight in kg (lbs with --unit lbs)"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Run a peak force / MVC test."""
    options = PeakForceOptions(
        duration_ms=duration,
        countdown_ms=countdown,
        left_right=left_right,
        moment_arm_cm=moment_arm,
        body_weight=body_weight,
    )
    try:
        service = _build_service()
        result = _run_with_session(
            service,
            descriptor_id,
            device,
            _check_unit(unit),
            lambda session: session.run_peak_force_mvc(options),
        )
        for channel, channel_result in result.channels.items():
            if as_json:
                payload = {
                    "channel": channel,
                    "unit": result.unit,
                    "peak": channel_result.peak,
                    "timestamp": channel_result.timestamp,
                    "torqueNm": channel_result.torque_nm,
                    "bodyWeightPct": channel_result.body_weight_pct,
                    "outcome": result.outcome.value,
                }
                typer.echo(json.dumps(payload))
                continue
            line = f"{channel}: peak={channel_result.peak:.2f} {result.unit}"
            if channel_result.torque_nm is not None:
                line += f" torque={channel_result.torque_nm:.2f} Nm"
            if channel_result.body_weight_pct is not None:
                line += f" bodyweight={channel_result.body_weight_pct:.1f}%"
            typer.echo(line)
    except GripctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
