"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer

from deckctl.core.actions import color_to_hex
from deckctl.core.errors import DeckctlError
from deckctl.core.service import DeckService

app = typer.Typer(help="Configure BLE macro decks over their binary command protocol")

@app.callback()
def main(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="Device profile ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"profile": profile}


def _build_service(ctx: typer.Context) -> DeckService:
    service = DeckService(profile_id=(ctx.obj or {}).get("profile"))
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _fail(exc: DeckctlError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@app.command("profiles")
def list_profiles(ctx: typer.Context) -> None:
    """List available device profiles."""
    try:
        service = _build_service(ctx)
        for profile in service.list_profiles():
            gatt = profile.gatt
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  service: {gatt.service_uuid}")
            typer.echo(f"  buttons: {profile.protocol.default_button_count}")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("scan")
def scan(
    ctx: typer.Context,
    timeout: float | None = typer.Option(None, "--timeout", help="Scan duration in seconds"),
) -> None:
    """List nearby devices matching the active profile."""
    try:
        service = _build_service(ctx)
        devices = asyncio.run(service.scan(timeout))
        if not devices:
            typer.echo("No matching devices found")
            return
        for device in devices:
            rssi = f" rssi={device.rssi}" if device.rssi is not None else ""
            typer.echo(f"{device.address} {device.name}{rssi}")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("info")
def info(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Device address; scans if omitted"),
) -> None:
    """Show device metadata."""
    try:
        service = _build_service(ctx)
        device = asyncio.run(service.read_info(address))
        typer.echo(f"Name: {device.device_name}")
        typer.echo(f"Firmware: {device.firmware}")
        typer.echo(f"Protocol: {device.protocol_version}")
        typer.echo(f"Buttons: {device.num_buttons}")
        typer.echo(f"Battery: {device.battery_level}%")
        typer.echo(f"Uptime: {device.uptime_seconds}s")
        typer.echo(f"Free heap: {device.free_heap_bytes} bytes")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("buttons")
def buttons(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Device address; scans if omitted"),
) -> None:
    """Show every button slot."""
    try:
        service = _build_service(ctx)
        device, slots = asyncio.run(service.read_buttons(address))
        typer.echo(f"{device.device_name}: {len(slots)} buttons")
        for button, action in slots:
            typer.echo(
                f"  [{button.slot:2d}] {button.label or '-':<7} {color_to_hex(button.color)} {action or '-'}"
            )
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("set")
def set_button(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Device address"),
    slot: int = typer.Argument(..., help="Button index, starting at 0"),
    label: str | None = typer.Option(None, "--label", help="Label, up to 7 characters"),
    action: str | None = typer.Option(None, "--action", help="e.g. KEY_A, VOLUME_UP, MACRO"),
    color: str | None = typer.Option(None, "--color", help="RGB hex, e.g. #ff8800"),
) -> None:
    """Change one button slot and save it to the device."""
    try:
        service = _build_service(ctx)
        button, action_name = asyncio.run(
            service.set_button(address, slot, label=label, action=action, color=color)
        )
        typer.echo(
            f"Saved button {button.slot}: {button.label or '-'} {color_to_hex(button.color)} {action_name or '-'}"
        )
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("reset")
def reset(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Device address"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
) -> None:
    """Restore the device's factory button configuration."""
    if not yes:
        typer.confirm("Reset every button to factory defaults?", abort=True)
    try:
        service = _build_service(ctx)
        slots = asyncio.run(service.reset(address))
        typer.echo(f"Reset complete, {len(slots)} buttons reloaded")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("test-button")
def test_button(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Device address"),
    slot: int = typer.Argument(..., help="Button index, starting at 0"),
) -> None:
    """Simulate a press of one button on the device."""
    try:
        service = _build_service(ctx)
        asyncio.run(service.test_button(address, slot))
        typer.echo(f"Button {slot} test sent")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("restart")
def restart(ctx: typer.Context, address: str = typer.Argument(..., help="Device address")) -> None:
    """Reboot the device."""
    try:
        service = _build_service(ctx)
        asyncio.run(service.restart(address))
        typer.echo("Restart requested")
    except DeckctlError as exc:
        raise _fail(exc) from None


@app.command("keymap")
def send_keymap(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Device address"),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON keymap file"),
) -> None:
    """Upload a JSON keymap through the bulk configuration endpoint."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        typer.echo(f"Error: cannot read keymap {path}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    try:
        service = _build_service(ctx)
        chunks = asyncio.run(service.send_keymap(address, document))
        typer.echo(f"Keymap sent in {chunks} chunk(s)")
    except DeckctlError as exc:
        raise _fail(exc) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
