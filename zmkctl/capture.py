"""Serial log capture with size-based rotation."""
from __future__ import annotations

import getpass
import logging
import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import AsyncIterable, Callable, List, Optional, Sequence, Union

from rich.console import Console
from rich.prompt import Confirm

from zmkctl.cancel import CancelToken
from zmkctl.config import CaptureConfig
from zmkctl.models.log_session import LogSession
from zmkctl.models.step_result import StepResult
from zmkctl.serial_reader import SerialReader

logger = logging.getLogger(__name__)

ConfirmFunc = Callable[[str], bool]
Runner = Callable[[Sequence[str]], int]
Which = Callable[[str], Optional[str]]


def _run_command(argv: Sequence[str]) -> int:
    return subprocess.run(list(argv), check=False).returncode


def format_line(moment: datetime, text: str) -> str:
    return f"[{moment:%Y-%m-%d %H:%M:%S}.{moment.microsecond // 1000:03d}] {text}"


class CapturePreflight:
    """Environment checks that run before any serial data is read.

    Missing reader tools degrade to the fallback reader; a missing or
    inaccessible device is fatal unless the operator fixes permissions
    through the offered ``sudo`` commands.
    """

    def __init__(
        self,
        config: CaptureConfig,
        *,
        console: Optional[Console] = None,
        confirm: Optional[ConfirmFunc] = None,
        runner: Optional[Runner] = None,
        which: Optional[Which] = None,
        user: Optional[str] = None,
    ) -> None:
        self.config = config
        self.console = console or Console()
        self._confirm = confirm or (lambda text: Confirm.ask(text, default=False, console=self.console))
        self._run = runner or _run_command
        self._which = which or shutil.which
        self.user = user or os.environ.get("USER") or getpass.getuser()

    def ask(self, text: str) -> bool:
        try:
            return bool(self._confirm(text))
        except EOFError:
            return False

    def prepare_log_dir(self) -> Path:
        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        return self.config.log_dir

    def ensure_reader_tool(self) -> str:
        preferred = self.config.preferred_reader
        fallback = self.config.fallback_reader
        if self._which(preferred):
            return preferred

        self.console.print(f"[yellow]⚠ '{preferred}' is not installed[/yellow]\n")
        self.console.print(f"'{preferred}' is a modern serial device tool with better features than {fallback}.")
        self.console.print("It provides:")
        for feature in ("Proper terminal handling", "Auto-reconnect on disconnect", "Built-in timestamping", "Color output"):
            self.console.print(f"  - {feature}")
        self.console.print()

        if self.ask(f"Would you like to install {preferred}?"):
            self.console.print(f"Installing {preferred} (requires sudo)...")
            status = self._run(["sudo", "apt-get", "update", "-qq"])
            if status == 0:
                status = self._run(["sudo", "apt-get", "install", "-y", preferred])
            if status == 0 and self._which(preferred):
                self.console.print(f"[green]✓ {preferred} installed successfully[/green]\n")
                return preferred
            self.console.print(f"[red]✗ Failed to install {preferred}[/red]")
            logger.warning("installing %s failed with status %s", preferred, status)

        self.console.print(f"Continuing with '{fallback}' fallback...\n")
        return fallback

    def check_device(self) -> StepResult:
        device = self.config.device
        if not os.path.exists(device):
            self.console.print(f"[red]Error: {device} not found[/red]\n")
            self.console.print("Troubleshooting:")
            self.console.print("1. Is the keyboard (right half) connected via USB?")
            self.console.print("2. Did you flash the logging firmware (dactyl_right_logging)?")
            self.console.print(f"3. Check for other serial devices: ls -la {Path(device).parent}/ttyACM*")
            return StepResult.fail(f"{device} not found")

        self.console.print(f"[green]✓ Found device: {device}[/green]")
        if os.access(device, os.R_OK) and os.access(device, os.W_OK):
            return StepResult.proceed()
        return self._fix_permissions()

    def _fix_permissions(self) -> StepResult:
        device = self.config.device
        self.console.print(f"[yellow]⚠ No permission to access {device}[/yellow]\n")
        self.console.print("Options:")
        self.console.print("1. Add your user to the 'dialout' group (recommended, permanent):")
        self.console.print(f"   sudo usermod -a -G dialout {self.user}")
        self.console.print("   Then log out and log back in\n")
        self.console.print("2. Use sudo for this session (temporary):")
        self.console.print(f"   sudo chmod 666 {device}\n")

        if self.ask("Would you like to add yourself to the dialout group?"):
            if self._run(["sudo", "usermod", "-a", "-G", "dialout", self.user]) == 0:
                self.console.print("[green]✓ Added to dialout group[/green]\n")
                self.console.print("[yellow]⚠ You must log out and log back in for this to take effect[/yellow]\n")
            else:
                self.console.print("[red]✗ Could not add you to the dialout group[/red]")
            if self.ask("Use sudo for this session?"):
                return self._chmod_device()
            self.console.print("Please log out and log back in, then run this script again.")
            return StepResult.ok("re-login required for dialout group")

        if self.ask("Use sudo for this session?"):
            return self._chmod_device()
        self.console.print("Cannot continue without device access. Exiting.")
        return StepResult.fail(f"no permission to access {device}")

    def _chmod_device(self) -> StepResult:
        device = self.config.device
        if self._run(["sudo", "chmod", "666", device]) != 0:
            self.console.print(f"[red]✗ Could not change permissions on {device}[/red]")
            return StepResult.fail(f"chmod {device} failed")
        self.console.print("[green]✓ Device permissions updated for this session[/green]\n")
        return StepResult.proceed()

    def run(self) -> tuple[StepResult, str]:
        """Run every check in order; returns the result and the reader tool to use."""
        self.prepare_log_dir()
        tool = self.ensure_reader_tool()
        return self.check_device(), tool


class LogCapture:
    """Timestamp serial lines, echo them, and append them to rotating files."""

    def __init__(
        self,
        config: CaptureConfig,
        *,
        console: Optional[Console] = None,
        token: Optional[CancelToken] = None,
        clock: Callable[[], datetime] = datetime.now,
        session: Optional[LogSession] = None,
    ) -> None:
        self.config = config
        self.console = console or Console()
        self.token = token or CancelToken()
        self._clock = clock
        self.session = session or LogSession.with_limit_mb(
            config.log_dir,
            config.max_log_size_mb,
            prefix=config.log_prefix,
            clock=clock,
        )
        self.lines_written = 0
        self.files: List[Path] = [self.session.current_file_path]

    def write_line(self, text: str) -> None:
        if self.session.should_rotate():
            self._rotate()
        entry = format_line(self._clock(), text)
        self.console.out(entry, highlight=False)
        self.session.write(entry)
        self.lines_written += 1

    def _rotate(self) -> None:
        new_path = self.session.rotate()
        self.files.append(new_path)
        self.console.print(
            f"\n[blue]↻ Rotating log file (reached {self.config.max_log_size_mb}MB limit)[/blue]"
        )
        self.console.print(f"[blue]  New file: {new_path}[/blue]\n")

    async def consume(self, lines: AsyncIterable[Union[bytes, str]]) -> int:
        """Write every line from ``lines`` until it ends or the token is cancelled."""
        start = self.lines_written
        async for raw in lines:
            if self.token.cancelled:
                break
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            self.write_line(text.rstrip("\r\n"))
        return self.lines_written - start

    def announce(self, reader: SerialReader) -> None:
        self.console.print(f"Log file: {self.session.current_file_path}")
        self.console.print(f"Device: {self.config.device}")
        self.console.print(f"Max log size: {self.config.max_log_size_mb}MB (will auto-rotate)\n")
        if reader.tool != self.config.preferred_reader:
            self.console.print(f"[yellow]Using '{reader.tool}' fallback (timestamps may be less accurate)[/yellow]")
        self.console.print("[green]Starting log capture...[/green]")
        self.console.print("Press Ctrl+C to stop")
        self.console.print("---\n")

    async def run(self, reader: SerialReader) -> StepResult:
        self.announce(reader)
        await reader.start()
        self.token.add_teardown(reader.terminate)
        try:
            await self.consume(reader.lines())
        finally:
            self.token.discard_teardown(reader.terminate)
            await reader.close()
            self.session.close()

        if self.token.cancelled:
            return StepResult.ok("interrupted")
        self.console.print(f"[yellow]Serial stream from {self.config.device} ended[/yellow]")
        return StepResult.ok("serial stream ended")


__all__ = ["CapturePreflight", "LogCapture", "format_line"]
