"""Async wrapper around the ``bluetoothctl`` command line tool."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from zmkctl.config import COMMAND_TIMEOUT, SCAN_TIMEOUT
from zmkctl.errors import ToolNotFoundError
from zmkctl.models.device_state import DeviceState, parse_device_state

logger = logging.getLogger(__name__)

PAIRING_SUCCESS = "Pairing successful"
ALREADY_EXISTS = "AlreadyExists"


@dataclass(slots=True)
class CommandResult:
	returncode: Optional[int]
	output: str = ""
	timed_out: bool = False

	@property
	def ok(self) -> bool:
		return self.returncode == 0 and not self.timed_out


class StateProvider(Protocol):
	async def query_device_state(self, address: str) -> DeviceState: ...


class DeviceController(StateProvider, Protocol):
	"""Everything the connection workflow asks of the Bluetooth stack."""

	async def info(self, address: str) -> str: ...

	async def is_visible(self, address: str) -> bool: ...

	async def scan(self, timeout: float = SCAN_TIMEOUT) -> None: ...

	async def trust(self, address: str) -> bool: ...

	async def pair(self, address: str) -> str: ...

	async def connect(self, address: str) -> bool: ...

	async def disconnect(self, address: str) -> bool: ...

	async def remove(self, address: str) -> bool: ...


class BluetoothCtl:
	"""Runs one ``bluetoothctl`` invocation per operation.

	All state comes from scraping the tool's text output; see
	:func:`zmkctl.models.device_state.parse_device_state` for the markers.
	"""

	def __init__(self, executable: str = "bluetoothctl", *, timeout: float = COMMAND_TIMEOUT) -> None:
		self.executable = executable
		self.timeout = timeout

	async def run(
		self,
		args: Sequence[str],
		*,
		timeout: Optional[float] = None,
		merge_stderr: bool = False,
	) -> CommandResult:
		argv: List[str] = [self.executable, *args]
		limit = self.timeout if timeout is None else timeout
		logger.debug("running %s", " ".join(argv))
		try:
			proc = await asyncio.create_subprocess_exec(
				*argv,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.DEVNULL,
			)
		except FileNotFoundError as exc:
			raise ToolNotFoundError(f"{self.executable} is not installed or not on PATH") from exc

		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=limit)
		except asyncio.TimeoutError:
			with contextlib.suppress(ProcessLookupError):
				proc.kill()
			await proc.wait()
			logger.debug("%s timed out after %ss", " ".join(argv), limit)
			return CommandResult(returncode=proc.returncode, timed_out=True)

		output = (stdout or b"").decode("utf-8", errors="replace")
		return CommandResult(returncode=proc.returncode, output=output)

	async def info(self, address: str) -> str:
		return (await self.run(["info", address])).output

	async def query_device_state(self, address: str) -> DeviceState:
		return parse_device_state(await self.info(address))

	async def is_visible(self, address: str) -> bool:
		result = await self.run(["devices"])
		return address.upper() in result.output.upper()

	async def scan(self, timeout: float = SCAN_TIMEOUT) -> None:
		# bluetoothctl's own --timeout is not always honoured; bound it here too
		seconds = max(1, int(timeout))
		await self.run(["--timeout", str(seconds), "scan", "on"], timeout=timeout)

	async def trust(self, address: str) -> bool:
		return (await self.run(["trust", address])).ok

	async def pair(self, address: str) -> str:
		result = await self.run(["pair", address], merge_stderr=True)
		if result.timed_out:
			return f"pair timed out after {self.timeout:g}s"
		return result.output

	async def connect(self, address: str) -> bool:
		return (await self.run(["connect", address])).ok

	async def disconnect(self, address: str) -> bool:
		return (await self.run(["disconnect", address])).ok

	async def remove(self, address: str) -> bool:
		return (await self.run(["remove", address])).ok


__all__ = [
	"ALREADY_EXISTS",
	"BluetoothCtl",
	"CommandResult",
	"DeviceController",
	"PAIRING_SUCCESS",
	"StateProvider",
	"ToolNotFoundError",
]
