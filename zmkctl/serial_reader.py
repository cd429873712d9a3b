"""Line source backed by a ``tio`` or ``cat`` subprocess on a serial device."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, List, Optional

from zmkctl.errors import ToolNotFoundError

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024


def reader_command(tool: str, device: str) -> List[str]:
    if tool == "tio":
        return ["tio", "-t", device]
    return [tool, device]


class SerialReader:
    """Owns the reader subprocess; iterate :meth:`lines` to consume output.

    stderr is merged into stdout so tool diagnostics land in the log too.
    The line sequence ends when the subprocess exits, which is what
    happens when the device is unplugged or :meth:`terminate` is called.
    """

    def __init__(self, device: str, tool: str = "tio") -> None:
        self.device = device
        self.tool = tool
        self._proc: Optional[asyncio.subprocess.Process] = None

    @property
    def argv(self) -> List[str]:
        return reader_command(self.tool, self.device)

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(f"{self.tool} is not installed or not on PATH") from exc
        logger.debug("started %s (pid %s)", " ".join(self.argv), self._proc.pid)

    async def lines(self) -> AsyncIterator[bytes]:
        if self._proc is None or self._proc.stdout is None:
            raise RuntimeError("SerialReader has not been started")
        stream = self._proc.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning("dropped a serial line longer than %d bytes", STREAM_LIMIT)
                continue
            if not line:
                return
            yield line

    def terminate(self) -> None:
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()

    async def close(self, timeout: float = 5.0) -> None:
        if self._proc is None:
            return
        self.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._proc.wait()
        logger.debug("%s exited with %s", self.tool, self._proc.returncode)


__all__ = ["SerialReader", "reader_command", "STREAM_LIMIT"]
