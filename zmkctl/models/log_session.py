from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, IO, Optional

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024


def log_file_name(prefix: str, moment: datetime) -> str:
    return f"{prefix}_{moment:%Y%m%d_%H%M%S}.log"


@dataclass
class LogSession:
    """Active log file of a capture run.

    ``byte_count`` mirrors the size of ``current_file_path`` (existing
    content included) so rotation does not need to stat the file per line.
    """

    log_dir: Path
    max_bytes: int
    prefix: str = "zmk"
    clock: Callable[[], datetime] = datetime.now
    start_time: datetime = field(init=False)
    current_file_path: Path = field(init=False)
    byte_count: int = field(init=False, default=0)
    rotations: int = field(init=False, default=0)
    _handle: Optional[IO[str]] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.log_dir = Path(self.log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.start_time = self.clock()
        self.current_file_path = self._next_path(self.start_time)

    @classmethod
    def with_limit_mb(cls, log_dir: Path, max_mb: int, **kwargs) -> "LogSession":
        return cls(log_dir, max_mb * MEGABYTE, **kwargs)

    @property
    def size_mb(self) -> int:
        return self.byte_count // MEGABYTE

    def should_rotate(self) -> bool:
        return self.byte_count >= self.max_bytes

    def rotate(self) -> Path:
        """Stop writing to the current file and switch to a freshly named one."""
        previous = self.current_file_path
        self.close()
        self.current_file_path = self._next_path(self.clock())
        self.byte_count = 0
        self.rotations += 1
        logger.info("rotated %s -> %s", previous, self.current_file_path)
        return self.current_file_path

    def write(self, line: str) -> None:
        handle = self._ensure_open()
        data = line if line.endswith("\n") else line + "\n"
        handle.write(data)
        handle.flush()
        self.byte_count += len(data.encode("utf-8"))

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _ensure_open(self) -> IO[str]:
        if self._handle is None:
            self._handle = self.current_file_path.open("a", encoding="utf-8")
            self.byte_count = self.current_file_path.stat().st_size
        return self._handle

    def _next_path(self, moment: datetime) -> Path:
        name = log_file_name(self.prefix, moment)
        candidate = self.log_dir / name
        suffix = 0
        # same-second rotations must not reopen the file just left
        while candidate.exists() or candidate == getattr(self, "current_file_path", None):
            suffix += 1
            candidate = self.log_dir / f"{name[:-len('.log')]}_{suffix}.log"
        return candidate
