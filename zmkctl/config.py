"""Environment-driven defaults for the connect and capture commands."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeVar

T = TypeVar("T")

SCAN_TIMEOUT = 5.0
COMMAND_TIMEOUT = 30.0


def _env(name: str, default: str, cast: Callable[[str], T] = str) -> Callable[[], T]:
	"""Default factory reading ``name`` when a config is built, not at import."""

	def read() -> T:
		raw = os.getenv(name) or default
		try:
			return cast(raw)
		except ValueError:
			raise ValueError(f"{name} is not a valid {cast.__name__}: {raw!r}") from None

	return read


@dataclass(slots=True)
class ConnectConfig:
	"""Retry budget and settle delays for the connection workflow."""

	address: str = field(default_factory=_env("ZMKCTL_DEVICE_MAC", "E0:65:35:C3:FD:33"))
	name: str = field(default_factory=_env("ZMKCTL_DEVICE_NAME", "Dactyl Right"))
	max_scan_attempts: int = field(default_factory=_env("ZMKCTL_MAX_SCAN_ATTEMPTS", "20", int))
	scan_wait: float = field(default_factory=_env("ZMKCTL_SCAN_WAIT", "6.0", float))
	scan_timeout: float = SCAN_TIMEOUT
	max_pair_attempts: int = field(default_factory=_env("ZMKCTL_MAX_PAIR_ATTEMPTS", "10", int))
	pair_retry_wait: float = 3.0
	max_connect_attempts: int = field(default_factory=_env("ZMKCTL_MAX_CONNECT_ATTEMPTS", "3", int))
	connect_retry_wait: float = 2.0
	settle: float = 2.0
	short_settle: float = 1.0

	def __post_init__(self) -> None:
		for field_name in ("max_scan_attempts", "max_pair_attempts", "max_connect_attempts"):
			if getattr(self, field_name) <= 0:
				raise ValueError(f"{field_name} must be positive")
		for field_name in ("scan_wait", "scan_timeout", "pair_retry_wait", "connect_retry_wait", "settle", "short_settle"):
			if getattr(self, field_name) < 0:
				raise ValueError(f"{field_name} cannot be negative")

	@property
	def max_scan_seconds(self) -> float:
		return self.max_scan_attempts * self.scan_wait


@dataclass(slots=True)
class CaptureConfig:
	"""Serial source and rotation settings for the capture daemon."""

	device: str = field(default_factory=_env("ZMKCTL_SERIAL_DEVICE", "/dev/ttyACM0"))
	log_dir: Path = field(default_factory=_env("ZMKCTL_LOG_DIR", "logs", Path))
	max_log_size_mb: int = field(default_factory=_env("ZMKCTL_MAX_LOG_SIZE_MB", "10", int))
	log_prefix: str = "zmk"
	preferred_reader: str = "tio"
	fallback_reader: str = "cat"

	def __post_init__(self) -> None:
		self.log_dir = Path(self.log_dir)
		if self.max_log_size_mb <= 0:
			raise ValueError("max_log_size_mb must be positive")
