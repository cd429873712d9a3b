"""Interactive pair/bond/trust/connect workflow for the keyboard."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from zmkctl.bluetoothctl import ALREADY_EXISTS, PAIRING_SUCCESS, DeviceController
from zmkctl.cancel import CancelToken
from zmkctl.config import ConnectConfig
from zmkctl.models.device_state import DeviceState
from zmkctl.models.step_result import StepResult

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
PromptFunc = Callable[[str], str]

FIRMWARE_RESET_STEPS = (
    "Flash settings_reset firmware to BOTH keyboard halves",
    "OR disconnect battery from both halves for 10 seconds",
    "Then run this script again",
)


class MenuKind(Enum):
    CONNECTED = "connected"
    KNOWN = "known"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MenuOption:
    label: str
    action: str


MENUS = {
    MenuKind.CONNECTED: (
        MenuOption("Keep connected (do nothing)", "keep"),
        MenuOption("Disconnect", "disconnect"),
        MenuOption("Remove device and re-pair fresh", "remove_connected"),
        MenuOption("Exit", "exit"),
    ),
    MenuKind.KNOWN: (
        MenuOption("Connect to keyboard", "connect"),
        MenuOption("Remove device and re-pair fresh", "remove"),
        MenuOption("Exit", "exit"),
    ),
    MenuKind.UNKNOWN: (
        MenuOption("Search for keyboard and pair", "search"),
        MenuOption("Exit", "exit"),
    ),
}


def menu_kind(state: DeviceState) -> MenuKind:
    if state.exists and state.connected:
        return MenuKind.CONNECTED
    if state.exists:
        return MenuKind.KNOWN
    return MenuKind.UNKNOWN


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


class ConnectionOrchestrator:
    """Drive the keyboard to paired + bonded + trusted + connected.

    Each phase is a bounded loop returning a :class:`StepResult`; nothing in
    here exits the process. A device left half-paired (``paired`` or
    ``bonded`` false) is removed and re-discovered before any further
    trust/pair attempt.
    """

    def __init__(
        self,
        controller: DeviceController,
        config: Optional[ConnectConfig] = None,
        *,
        console: Optional[Console] = None,
        prompt: Optional[PromptFunc] = None,
        token: Optional[CancelToken] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self.controller = controller
        self.config = config or ConnectConfig()
        self.console = console or Console()
        self.token = token or CancelToken()
        self._prompt = prompt or (lambda text: Prompt.ask(text, console=self.console))
        self._sleep: SleepFunc = sleep or self.token.sleep

    @property
    def address(self) -> str:
        return self.config.address

    @property
    def name(self) -> str:
        return self.config.name

    async def run(self) -> StepResult:
        self.console.print(f"=== {self.name} Bluetooth Connection ===\n")
        state = await self.controller.query_device_state(self.address)
        if state.exists:
            self.console.print("Current status:")
            self.show_status(state)

        result = await self.menu(state)
        if not result.should_continue:
            return self._finish(result)

        for phase in (self.scan_loop, self.pair_loop, self.connect_loop):
            result = await phase()
            if not result.should_continue:
                break
        return self._finish(result)

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------
    async def menu(self, state: DeviceState) -> StepResult:
        kind = menu_kind(state)
        options = MENUS[kind]
        self.console.print("What would you like to do?")
        for index, option in enumerate(options, start=1):
            self.console.print(f"  {index}) {option.label}")
        self.console.print()

        choice = self._read_choice(f"Choose an option (1-{len(options)})")
        self.console.print()
        if not choice.isdigit() or not 1 <= int(choice) <= len(options):
            self.console.print("[red]Invalid choice. Exiting.[/red]")
            return StepResult.fail(f"invalid menu choice {choice!r}")

        action = options[int(choice) - 1].action
        logger.debug("menu %s -> %s", kind.value, action)
        if action == "keep":
            self.console.print("Keyboard is already connected. Exiting.")
            return StepResult.ok("already connected")
        if action == "disconnect":
            return await self._disconnect()
        if action == "remove_connected":
            return await self._remove(disconnect_first=True)
        if action == "remove":
            return await self._remove(disconnect_first=False)
        if action == "connect":
            self.console.print("Will attempt to connect...")
            return StepResult.proceed()
        if action == "search":
            self.console.print("Will search for keyboard...")
            return StepResult.proceed()
        self.console.print("Exiting.")
        return StepResult.ok("user exit")

    def _read_choice(self, text: str) -> str:
        try:
            return (self._prompt(text) or "").strip()
        except EOFError:
            return ""

    async def _disconnect(self) -> StepResult:
        self.console.print(f"Disconnecting {self.name}...")
        if await self.controller.disconnect(self.address):
            self.console.print(f"[green]✓ Disconnected from {self.name}[/green]")
        else:
            self.console.print("Device was not connected or disconnect failed")
        return StepResult.ok("disconnected")

    async def _remove(self, *, disconnect_first: bool) -> StepResult:
        self.console.print(f"Removing {self.name}...")
        if disconnect_first:
            await self.controller.disconnect(self.address)
        if not await self.controller.remove(self.address):
            self.console.print("[red]Remove failed[/red]")
            return StepResult.fail("remove failed")
        self.console.print(f"[green]✓ Removed {self.name}[/green]\n")
        self.console.print("Will now attempt to re-pair...")
        await self._sleep(self.config.settle)
        return StepResult.proceed()

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    async def scan_loop(self) -> StepResult:
        cfg = self.config
        self.console.print(f"Scanning for {self.name}...")
        self.console.print("Make sure the keyboard is in pairing mode if this is a fresh pairing.")
        self.console.print(f"Will wait up to {cfg.max_scan_seconds:g} seconds for keyboard to appear...")

        for attempt in range(1, cfg.max_scan_attempts + 1):
            if self.token.cancelled:
                return StepResult.fail("cancelled")
            await self.controller.scan(cfg.scan_timeout)
            found = await self.controller.is_visible(self.address)
            logger.debug("scan attempt %d: %s %s", attempt, self.address, "found" if found else "missing")
            if found:
                self.console.print(f"[green]Found {self.name}![/green]")
                return StepResult.proceed()
            if attempt < cfg.max_scan_attempts:
                self.console.print(
                    f"Scan attempt {attempt}/{cfg.max_scan_attempts}: Device not found, waiting {cfg.scan_wait:g}s..."
                )
                await self._sleep(cfg.scan_wait)

        self.console.print(f"\n[red]Device not found after {cfg.max_scan_attempts} attempts.[/red] Please ensure:")
        for index, step in enumerate(
            (
                "Keyboard is powered on",
                "Keyboard is in pairing mode (if not previously paired)",
                "Keyboard is within range",
                "Battery is not depleted",
            ),
            start=1,
        ):
            self.console.print(f"  {index}. {step}")
        return StepResult.fail(f"device not found after {cfg.max_scan_attempts} scan attempts")

    # ------------------------------------------------------------------
    # Pair / bond / trust
    # ------------------------------------------------------------------
    async def pair_loop(self) -> StepResult:
        cfg = self.config
        self.console.print("Ensuring proper pairing and bonding...")
        for attempt in range(1, cfg.max_pair_attempts + 1):
            if self.token.cancelled:
                return StepResult.fail("cancelled")
            state = await self.controller.query_device_state(self.address)
            self.console.print(
                f"Attempt {attempt}/{cfg.max_pair_attempts} - Current state: "
                f"Paired={_yes_no(state.paired)}, Bonded={_yes_no(state.bonded)}, "
                f"Trusted={_yes_no(state.trusted)}"
            )
            logger.debug("pair attempt %d: state %s", attempt, state)

            if state.paired and state.bonded and state.trusted:
                self.console.print("[green]✓ Device is properly paired, bonded, and trusted![/green]")
                break

            if not state.bonded_pair:
                self.console.print("[yellow]Detected corrupted pairing state, removing device...[/yellow]")
                await self.controller.remove(self.address)
                await self._sleep(cfg.settle)
                self.console.print("Re-scanning for device...")
                await self.controller.scan(cfg.scan_timeout)
                await self._sleep(cfg.short_settle)

            if not state.trusted:
                self.console.print("Trusting device...")
                await self.controller.trust(self.address)
                await self._sleep(cfg.short_settle)

            self.console.print("Attempting to pair...")
            output = await self.controller.pair(self.address)
            if PAIRING_SUCCESS in output:
                self.console.print("[green]✓ Pairing successful![/green]")
                await self._sleep(cfg.settle)
                if (await self.controller.query_device_state(self.address)).bonded:
                    self.console.print("[green]✓ Bonding confirmed![/green]")
                    break
                self.console.print("[yellow]⚠ Paired but not bonded, retrying...[/yellow]")
            elif ALREADY_EXISTS in output:
                self.console.print(
                    "Device reports AlreadyExists but is not properly paired - this is a corrupted state"
                )
            else:
                self.console.print(f"Pairing attempt failed: {escape(output.strip())}")
                logger.debug("pair attempt %d failed: %s", attempt, output.strip())

            if attempt < cfg.max_pair_attempts:
                self.console.print(f"Waiting {cfg.pair_retry_wait:g} seconds before retry...")
                await self._sleep(cfg.pair_retry_wait)

        final = await self.controller.query_device_state(self.address)
        if not final.paired:
            self.console.print(
                f"\n[bold red]❌ FAILED: Could not establish proper pairing after "
                f"{cfg.max_pair_attempts} attempts[/bold red]"
            )
            self.console.print("The keyboard is likely in a corrupted BLE state.\n")
            self._print_steps("REQUIRED ACTIONS:", FIRMWARE_RESET_STEPS)
            return StepResult.fail(f"pairing failed after {cfg.max_pair_attempts} attempts")
        return StepResult.proceed()

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    async def connect_loop(self) -> StepResult:
        cfg = self.config
        self.console.print(f"\nConnecting to {self.name}...")
        for attempt in range(1, cfg.max_connect_attempts + 1):
            if self.token.cancelled:
                return StepResult.fail("cancelled")
            if await self.controller.connect(self.address):
                await self._sleep(cfg.short_settle)
                state = await self.controller.query_device_state(self.address)
                self.console.print("\n=== Connection Status ===")
                self.show_status(state)
                if state.ready:
                    self.console.print(
                        "[bold green]✅ SUCCESS: Keyboard is fully paired, bonded, trusted, and connected![/bold green]\n"
                    )
                    self.console.print("You can now use your keyboard normally.")
                    return StepResult.ok("connected")
                # the peripheral's BLE state is corrupted; retrying connect cannot fix it
                self._report_inconsistent(state)
                return StepResult.fail("connected but missing " + ", ".join(state.missing()))

            logger.debug("connect attempt %d failed", attempt)
            if attempt < cfg.max_connect_attempts:
                self.console.print(
                    f"Connection attempt {attempt} failed, retrying in {cfg.connect_retry_wait:g} seconds..."
                )
                await self._sleep(cfg.connect_retry_wait)

        self.console.print(f"[red]Connection failed after {cfg.max_connect_attempts} attempts.[/red] Try the following:")
        self._print_steps(
            None,
            (
                "Restart bluetooth: sudo systemctl restart bluetooth",
                f"Remove and re-pair: bluetoothctl remove {self.address}",
                "Put keyboard in pairing mode and run this script again",
            ),
        )
        return StepResult.fail(f"connection failed after {cfg.max_connect_attempts} attempts")

    def _report_inconsistent(self, state: DeviceState) -> None:
        self.console.print("[bold red]❌ WARNING: Connected but missing required states:[/bold red]")
        for label, flag in (
            ("Paired", state.paired),
            ("Bonded", state.bonded),
            ("Trusted", state.trusted),
            ("Connected", state.connected),
        ):
            self.console.print(f"   {label}: {_yes_no(flag)} (need: yes)")
        self.console.print("\nThis indicates a corrupted BLE stack state on the keyboard.")
        self._print_steps("REQUIRED ACTIONS:", FIRMWARE_RESET_STEPS)

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------
    def show_status(self, state: DeviceState) -> None:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("field", style="bold")
        table.add_column("value")
        rows: List[tuple[str, str]] = []
        if state.name:
            rows.append(("Name", state.name))
        rows.extend(
            [
                ("Paired", _yes_no(state.paired)),
                ("Bonded", _yes_no(state.bonded)),
                ("Trusted", _yes_no(state.trusted)),
                ("Connected", _yes_no(state.connected)),
            ]
        )
        if state.battery:
            rows.append(("Battery", state.battery))
        for key, value in rows:
            table.add_row(key, escape(value))
        self.console.print(table)
        self.console.print()

    def _print_steps(self, heading: Optional[str], steps: tuple[str, ...]) -> None:
        if heading:
            self.console.print(heading)
        for index, step in enumerate(steps, start=1):
            self.console.print(f"  {index}. {escape(step)}")

    def _finish(self, result: StepResult) -> StepResult:
        if result.failed:
            logger.warning("connection workflow failed: %s", result.reason)
        return result


__all__ = [
    "ConnectionOrchestrator",
    "MENUS",
    "MenuKind",
    "MenuOption",
    "menu_kind",
]
