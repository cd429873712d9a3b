"""zmkctl command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import shutil
import signal
import sys
from typing import Any, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from zmkctl.bluetoothctl import BluetoothCtl
from zmkctl.cancel import CancelToken
from zmkctl.capture import CapturePreflight, LogCapture
from zmkctl.config import CaptureConfig, ConnectConfig
from zmkctl.errors import ToolNotFoundError
from zmkctl.orchestrator import ConnectionOrchestrator
from zmkctl.serial_reader import SerialReader

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def _configure_logging(verbose: bool) -> None:
	logging.basicConfig(
		level=logging.DEBUG if verbose else logging.WARNING,
		format="%(message)s",
		handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
		force=True,
	)


async def _run_connect(config: ConnectConfig, console: Console) -> int:
	orchestrator = ConnectionOrchestrator(BluetoothCtl(), config, console=console)
	result = await orchestrator.run()
	return result.exit_code


def _cmd_connect(args: argparse.Namespace) -> int:
	console = Console()
	config = ConnectConfig()
	if shutil.which("bluetoothctl") is None:
		console.print("[red]Error: bluetoothctl not found. Install bluez and try again.[/red]")
		return 1
	# no cleanup on Ctrl+C here: whatever bluetoothctl call is running just dies with us
	try:
		return asyncio.run(_run_connect(config, console))
	except KeyboardInterrupt:
		console.print("\nInterrupted.")
		return EXIT_INTERRUPTED


async def _run_capture(config: CaptureConfig, tool: str, console: Console) -> int:
	token = CancelToken()

	def _signal_handler(*_: Any) -> None:
		if not token.cancelled:
			console.print("\n[yellow]Stopping log capture...[/yellow]")
		token.cancel()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	capture = LogCapture(config, console=console, token=token)
	result = await capture.run(SerialReader(config.device, tool))
	logger.debug("captured %d lines into %d file(s)", capture.lines_written, len(capture.files))
	return result.exit_code


def _cmd_capture(args: argparse.Namespace) -> int:
	console = Console()
	config = CaptureConfig()
	console.print("=== ZMK USB Logging Capture ===\n")
	# preflight prompts run before the capture loop installs its signal handlers
	try:
		result, tool = CapturePreflight(config, console=console).run()
	except KeyboardInterrupt:
		console.print("\n[yellow]Stopping log capture...[/yellow]")
		return 0
	if not result.should_continue:
		return result.exit_code
	return asyncio.run(_run_capture(config, tool, console))


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="ZMK keyboard Bluetooth and logging utilities")
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command", required=True)

	connect = sub.add_parser("connect", help="Pair, bond, trust and connect the keyboard")
	connect.set_defaults(handler=_cmd_connect)

	capture = sub.add_parser("capture", help="Capture USB serial logs to rotating files")
	capture.set_defaults(handler=_cmd_capture)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.verbose)
	try:
		return args.handler(args)
	except ToolNotFoundError as exc:
		Console(stderr=True).print(f"[red]Error: {exc}[/red]")
		return 1
	except ValueError as exc:
		Console(stderr=True).print(f"[red]Error: {escape(str(exc))}[/red]")
		return 1


def connect_main() -> int:
	return main(["connect", *sys.argv[1:]])


def capture_main() -> int:
	return main(["capture", *sys.argv[1:]])


if __name__ == "__main__":
	sys.exit(main())
