"""Cooperative cancellation shared by the long-running loops."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

TeardownAction = Callable[[], None]


class CancelToken:
	"""Flag checked once per loop iteration, plus teardown actions.

	Teardown actions (typically "terminate this subprocess") run once, in
	reverse registration order, the first time :meth:`cancel` is called.
	"""

	def __init__(self) -> None:
		self._event = asyncio.Event()
		self._teardown: List[TeardownAction] = []

	@property
	def cancelled(self) -> bool:
		return self._event.is_set()

	def add_teardown(self, action: TeardownAction) -> None:
		self._teardown.append(action)

	def discard_teardown(self, action: TeardownAction) -> None:
		if action in self._teardown:
			self._teardown.remove(action)

	def cancel(self) -> None:
		if self._event.is_set():
			return
		self._event.set()
		while self._teardown:
			action = self._teardown.pop()
			try:
				action()
			except Exception:  # pragma: no cover - teardown must reach every action
				logger.exception("teardown action %r failed", action)

	async def wait(self) -> None:
		await self._event.wait()

	async def sleep(self, duration: float) -> bool:
		"""Sleep up to ``duration`` seconds; return ``True`` if cancelled meanwhile."""
		if duration <= 0:
			await asyncio.sleep(0)
			return self.cancelled
		try:
			await asyncio.wait_for(self._event.wait(), timeout=duration)
		except asyncio.TimeoutError:
			pass
		return self.cancelled
