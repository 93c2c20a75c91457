"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace

import typer

from idmctl.core.device_loader import load_device_filters
from idmctl.core.device_match import filter_supported
from idmctl.core.errors import IdmctlError, NFCError
from idmctl.core.model import ReaderOptions
from idmctl.core.reader import ReaderSession
from idmctl.transports.usb_bulk import PyUSBBackend, PyUSBDevice

app = typer.Typer(help="Read FeliCa IDm values from Sony RC-S300 NFC readers")


def _describe(exc: IdmctlError) -> str:
    if isinstance(exc, NFCError):
        text = f"[{exc.code.value}] {exc.message}"
        if exc.cause is not None:
            text = f"{text} ({exc.cause.describe()})"
        return text
    return str(exc)


def _choose_device(candidates: Sequence[PyUSBDevice]) -> PyUSBDevice | None:
    if len(candidates) == 1:
        return candidates[0]
    for index, device in enumerate(candidates, start=1):
        typer.echo(f"  {index}) {device.description}", err=True)
    choice = typer.prompt("Select reader", type=int, default=1, err=True)
    if 1 <= choice <= len(candidates):
        return candidates[choice - 1]
    return None


def _build_reader(interval: float | None = None, timeout: float | None = None) -> ReaderSession:
    options = ReaderOptions()
    if interval is not None:
        options = replace(options, polling_interval_s=interval)
    if timeout is not None:
        options = replace(options, transfer_timeout_s=timeout)
    reader = ReaderSession(PyUSBBackend(chooser=_choose_device), options=options)
    for warning in reader.load_warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return reader


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log frames and session events"),
) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@app.command("devices")
def list_devices() -> None:
    """List supported reader models and attached matching readers."""
    try:
        loaded = load_device_filters()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        for table in loaded.tables.values():
            typer.echo(f"{table.id}: {table.name} (model {table.model})")
            for device_filter in table.filters:
                typer.echo(
                    f"  {device_filter.vendor_id:04x}:{device_filter.product_id:04x} {device_filter.name}"
                )

        attached = filter_supported(PyUSBBackend().list_authorized_devices(), loaded.filters)
        if not attached:
            typer.echo("No supported readers attached")
            return
        for device in attached:
            typer.echo(f"attached: {device.description}")
    except IdmctlError as exc:
        typer.echo(f"Error: {_describe(exc)}", err=True)
        raise typer.Exit(code=1) from None


async def _read_once(reader: ReaderSession) -> str:
    await reader.connect()
    try:
        return await reader.read_idm()
    finally:
        await reader.disconnect()


@app.command("read")
def read(
    timeout: float | None = typer.Option(None, "--timeout", help="Per-transfer timeout in seconds"),
) -> None:
    """Connect, read one card IDm and print it."""
    try:
        reader = _build_reader(timeout=timeout)
        idm = asyncio.run(_read_once(reader))
        typer.echo(idm)
    except IdmctlError as exc:
        typer.echo(f"Error: {_describe(exc)}", err=True)
        raise typer.Exit(code=1) from None


async def _poll(reader: ReaderSession, count: int | None) -> None:
    reads = 0

    def on_success(idm: str) -> None:
        nonlocal reads
        reads += 1
        typer.echo(idm)
        if count is not None and reads >= count:
            reader.stop_polling()

    def on_error(error: NFCError) -> None:
        typer.echo(f"Error: {_describe(error)}", err=True)

    await reader.connect()
    try:
        reader.start_polling(on_success, on_error)
        await reader.wait_polling_closed()
    finally:
        await reader.disconnect()


@app.command("poll")
def poll(
    interval: float | None = typer.Option(None, "--interval", help="Seconds between reads"),
    count: int | None = typer.Option(None, "--count", min=1, help="Stop after this many successful reads"),
    timeout: float | None = typer.Option(None, "--timeout", help="Per-transfer timeout in seconds"),
) -> None:
    """Read cards repeatedly until interrupted.

    Read failures are reported on stderr and polling continues.
    """
    try:
        reader = _build_reader(interval=interval, timeout=timeout)
        asyncio.run(_poll(reader, count))
    except KeyboardInterrupt:
        typer.echo("Stopped", err=True)
    except IdmctlError as exc:
        typer.echo(f"Error: {_describe(exc)}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
