"""
PX4 Uploader CLI

Command-line interface for identifying PX4 boards and flashing firmware
through their bootloader.
"""

import sys
import json
import logging
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn, DownloadColumn

from px4_uploader import __version__
from px4_uploader.core.actions import (
    build_package as core_build_package,
    flash_firmware as core_flash_firmware,
    inspect_package as core_inspect_package,
    monitor_port as core_monitor_port,
    query_board as core_query_board,
    reset_board as core_reset_board,
)
from px4_uploader.core.events import Event, EventBus, EventKind
from px4_uploader.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
)
from px4_uploader.core.results import OperationResult
from px4_uploader.core.settings import LinkSettings, SettingsStore
from px4_uploader.errors import InvalidConfiguration
from px4_uploader.protocol.bootloader import UploaderConfig
from px4_uploader.protocol.serial_link import PortConfiguration, SUPPORTED_BAUD_RATES

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("px4_uploader")

# Setup Rich console
console = Console()

app = typer.Typer(help="PX4 Uploader - flash firmware through the PX4 bootloader")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation and (verbose or warning.level == MessageLevel.ERROR):
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def finish(result: OperationResult, output_json: bool = False) -> None:
    """Print the outcome and exit non-zero on failure."""
    if output_json:
        data = result.to_dict()
        data.pop("logs", None)
        console.print_json(json.dumps(data, default=str))
    elif result.cancelled:
        print_warning("Operation cancelled, no further data was sent")
    else:
        print_warnings_from_result(result)

    if not result.ok:
        sys.exit(1)


def _settings_store(ctx: typer.Context) -> SettingsStore:
    return (ctx.obj or {}).get("settings") or SettingsStore()


def _port_configuration(
    ctx: typer.Context,
    port: Optional[str],
    baud: Optional[int],
    parity: Optional[str],
    data_bits: Optional[int],
    stop_bits: Optional[int],
    flow: Optional[str],
):
    """Merge command-line options over the saved link settings."""
    saved = _settings_store(ctx).load()
    memory = saved.baud_memory()
    port_name = port or saved.port
    if not port_name:
        print_error("No port given and none saved; pass --port")
        sys.exit(1)

    if baud is None:
        baud = memory.recall(port_name) or saved.baud
    config = PortConfiguration(
        port_name=port_name,
        baud_rate=baud,
        data_bits=data_bits if data_bits is not None else saved.data_bits,
        parity=parity or saved.parity,
        stop_bits=stop_bits if stop_bits is not None else saved.stop_bits,
        flow_control=flow or saved.flow_control,
    )
    try:
        config.validate()
    except InvalidConfiguration as exc:
        print_error(str(exc))
        console.print(f"Supported baud rates: {', '.join(map(str, SUPPORTED_BAUD_RATES))}", style="dim")
        sys.exit(1)
    return config, memory


def _save_link_settings(ctx: typer.Context, config, memory) -> None:
    memory.remember(config.port_name, config.baud_rate)
    try:
        _settings_store(ctx).save(LinkSettings.from_configuration(config, memory))
    except OSError as exc:
        print_warning(f"Could not save settings: {exc}")


class SessionPrinter:
    """Render uploader events on the console."""

    def __init__(self, progress: Optional[Progress] = None, verbose: bool = False):
        self.progress = progress
        self.verbose = verbose
        self.task = None

    def __call__(self, event: Event) -> None:
        if event.kind is EventKind.STATUS:
            console.print(f"  {event.message}", style="dim")
        elif event.kind is EventKind.STATE and self.verbose:
            console.print(f"  [state] {event.message}", style="dim cyan")
        elif event.kind is EventKind.DEVICE_INFO:
            if event.data.get("field") == "otp":
                if event.data.get("value") and self.verbose:
                    console.print(Panel(event.data["value"], title="OTP", expand=False))
            elif event.data.get("value") not in (None, ""):
                console.print(f"  {event.message}", style="cyan")
        elif event.kind is EventKind.PROGRESS and self.progress is not None:
            total = event.data["total"]
            if self.task is None:
                self.task = self.progress.add_task("Flashing", total=total)
            self.progress.update(self.task, completed=event.data["done"], total=total)
        elif event.kind is EventKind.ERROR:
            print_error(event.message)
        elif event.kind is EventKind.DONE:
            print_success(event.message)


def _uploader_config(
    port: Optional[str],
    timeout: Optional[float],
    allow_v4: bool,
    reboot: bool,
    board_check: bool = True,
) -> UploaderConfig:
    return UploaderConfig(
        port_name=port,
        discovery_timeout=timeout,
        allow_v4_bootloader=allow_v4,
        reboot_on_sync_failure=reboot,
        check_board_id=board_check,
    )


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging and wire traffic"),
    settings: Optional[Path] = typer.Option(
        None,
        "--settings",
        envvar="PX4_UPLOADER_SETTINGS",
        help="Settings file (default: per-user app directory)",
    ),
) -> None:
    """PX4 Uploader."""
    if verbose:
        logger.setLevel(logging.DEBUG)
    ctx.obj = {"verbose": verbose, "settings": SettingsStore(settings)}


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"px4-uploader {__version__}")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())

    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("Hardware ID", style="magenta")

    for port in ports_list:
        table.add_row(port.device, port.description or "-", port.hwid or "-")

    console.print(table)


@app.command()
def inspect(
    package: Path = typer.Argument(..., help="Firmware package (.px4)"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Show what a firmware package contains, without contacting a board."""
    result = core_inspect_package(package)
    if output_json or not result.ok:
        finish(result, output_json)
        return

    print_header(f"Firmware Package: {package.name}")
    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    meta = result.metadata
    table.add_row("Board ID", str(meta["board_id"]))
    table.add_row("Description", meta["description"] or "-")
    if meta["version"]:
        table.add_row("Version", meta["version"])
    if meta["git_identity"]:
        table.add_row("Git identity", meta["git_identity"])
    if meta["summary"]:
        table.add_row("Summary", meta["summary"])
    table.add_row("Image size", f"{meta['declared_size']:,} bytes")
    table.add_row("Padded size", f"{result.bytes_len:,} bytes")
    if meta["image_maxsize"]:
        table.add_row("Max size", f"{meta['image_maxsize']:,} bytes")
    table.add_row("SHA-256", result.hashes["sha256"])
    console.print(table)
    finish(result)


@app.command()
def package(
    binary: Path = typer.Argument(..., help="Raw firmware binary"),
    board_id: int = typer.Option(..., "--board-id", "-b", help="Target board ID"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output .px4 file (default: BINARY.px4)"),
    description: str = typer.Option("", "--description", "-d", help="Package description"),
    version: str = typer.Option("", "--version", help="Firmware version string"),
    summary: str = typer.Option("", "--summary", help="Short summary"),
    git_identity: str = typer.Option("", "--git-identity", help="Source revision"),
    image_maxsize: Optional[int] = typer.Option(None, "--image-maxsize", help="Largest allowed image"),
) -> None:
    """Build a .px4 package from a raw binary."""
    print_header("Build Firmware Package")
    out = out or binary.with_suffix(".px4")
    result = core_build_package(
        binary,
        out,
        board_id=board_id,
        description=description,
        version=version,
        summary=summary,
        git_identity=git_identity,
        image_maxsize=image_maxsize,
    )
    if result.ok:
        print_success(f"Wrote {out} ({result.bytes_len:,} bytes, board {board_id})")
    finish(result)


@app.command()
def info(
    ctx: typer.Context,
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Bootloader port (default: wait for a new device)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Seconds to wait for a device"),
    allow_v4: bool = typer.Option(False, "--allow-v4", help="Accept bootloader rev >= 4 and read OTP/serial"),
    reboot: bool = typer.Option(False, "--reboot", help="Send reboot commands when sync fails"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Identify a board without erasing or flashing it."""
    verbose = (ctx.obj or {}).get("verbose", False)
    if not output_json:
        print_header("Query Board")
        if port is None:
            console.print("Plug in the board now (Ctrl+C to cancel)")

    events = EventBus()
    if not output_json:
        events.subscribe(SessionPrinter(verbose=verbose))
    result = core_query_board(
        config=_uploader_config(port, timeout, allow_v4, reboot),
        events=events,
    )
    finish(result, output_json)


@app.command()
def flash(
    ctx: typer.Context,
    package: Path = typer.Argument(..., help="Firmware package (.px4)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Bootloader port (default: wait for a new device)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Seconds to wait for a device"),
    allow_v4: bool = typer.Option(False, "--allow-v4", help="Accept bootloader rev >= 4"),
    board_check: bool = typer.Option(True, "--board-check/--no-board-check", help="Refuse firmware for another board"),
    reboot: bool = typer.Option(False, "--reboot", help="Send reboot commands when sync fails"),
) -> None:
    """Flash a firmware package to the next board that appears."""
    verbose = (ctx.obj or {}).get("verbose", False)
    print_header(f"Flash {package.name}")
    if port is None:
        console.print("Plug in the board now (Ctrl+C to cancel)")

    events = EventBus()
    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        DownloadColumn(),
        console=console,
    ) as progress:
        events.subscribe(SessionPrinter(progress, verbose=verbose))
        result = core_flash_firmware(
            package,
            config=_uploader_config(port, timeout, allow_v4, reboot, board_check),
            events=events,
        )

    if verbose:
        console.print(result.to_summary())
    finish(result)


@app.command()
def reset(
    ctx: typer.Context,
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port (default: last used)"),
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Baud rate (default: last used for this port)"),
    bootloader: bool = typer.Option(False, "--bootloader", help="Also send NSH/MAVLink reboot-into-bootloader commands"),
    dtr: bool = typer.Option(True, "--dtr/--no-dtr", help="Pulse DTR"),
) -> None:
    """Reset a board over its serial port."""
    print_header("Reset Board")
    config, memory = _port_configuration(ctx, port, baud, None, None, None, None)
    result = core_reset_board(config, bootloader=bootloader, dtr=dtr, baud_memory=memory)
    if result.ok:
        _save_link_settings(ctx, config, memory)
        print_success(f"Reset sent on {config.port_name}")
    finish(result)


@app.command()
def monitor(
    ctx: typer.Context,
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port (default: last used)"),
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Baud rate (default: last used for this port)"),
    parity: Optional[str] = typer.Option(None, "--parity", help="none, odd or even"),
    data_bits: Optional[int] = typer.Option(None, "--data-bits", help="5, 6, 7 or 8"),
    stop_bits: Optional[int] = typer.Option(None, "--stop-bits", help="1 or 2"),
    flow: Optional[str] = typer.Option(None, "--flow", help="none, hardware or software"),
    duration: Optional[float] = typer.Option(None, "--duration", "-d", help="Stop after this many seconds"),
    hex_output: bool = typer.Option(False, "--hex", help="Show received bytes as hex"),
) -> None:
    """Show bytes received on a port (read-only) until Ctrl+C."""
    print_header("Serial Monitor")
    config, memory = _port_configuration(ctx, port, baud, parity, data_bits, stop_bits, flow)
    console.print(
        f"{config.port_name} @ {config.baud_rate} "
        f"{config.data_bits}{config.parity[0].upper()}{config.stop_bits} flow={config.flow_control}",
        style="dim",
    )

    events = EventBus()
    stop_event = threading.Event()

    def _show(event: Event) -> None:
        if event.kind is EventKind.BYTES_RECEIVED:
            payload = event.data["payload"]
            if hex_output:
                console.print(payload.hex(" ").upper(), highlight=False)
            else:
                console.print(payload.decode("utf-8", errors="replace"), end="", highlight=False, markup=False)
        elif event.kind is EventKind.COMM_ERROR:
            print_error(event.message)
        elif event.kind is EventKind.COMM_UPDATE:
            console.print(event.message, style="dim")

    events.subscribe(_show)
    try:
        result = core_monitor_port(
            config,
            duration=duration,
            events=events,
            baud_memory=memory,
            stop_event=stop_event,
        )
    except KeyboardInterrupt:
        stop_event.set()
        raise

    if result.ok:
        _save_link_settings(ctx, config, memory)
        stats = result.metadata["statistics"]
        console.print()
        table = Table(title="Link Statistics")
        table.add_column("Received", style="green")
        table.add_column("Sent", style="cyan")
        table.add_column("Elapsed", style="dim")
        table.add_column("Downstream", style="magenta")
        table.add_row(
            f"{stats['bits_received'] // 8:,} bytes",
            f"{stats['bits_sent'] // 8:,} bytes",
            f"{stats['elapsed']:.1f} s",
            f"{stats['downstream_bps']:.0f} bit/s",
        )
        console.print(table)
    finish(result)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
