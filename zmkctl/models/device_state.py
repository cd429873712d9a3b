from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceState:
    """Snapshot of a peripheral as reported by ``bluetoothctl info``.

    Rebuilt on every poll, never updated in place. Flags whose marker is
    missing from the tool output are ``False``.
    """
    exists: bool = False
    paired: bool = False
    bonded: bool = False
    trusted: bool = False
    connected: bool = False
    name: Optional[str] = None
    battery: Optional[str] = None

    @property
    def ready(self) -> bool:
        """Paired, bonded, trusted and connected."""
        return self.paired and self.bonded and self.trusted and self.connected

    @property
    def bonded_pair(self) -> bool:
        return self.paired and self.bonded

    def missing(self) -> List[str]:
        flags = {
            "Paired": self.paired,
            "Bonded": self.bonded,
            "Trusted": self.trusted,
            "Connected": self.connected,
        }
        return [key for key, value in flags.items() if not value]


def _field(line: str, key: str) -> Optional[str]:
    prefix = f"{key}:"
    if not line.startswith(prefix):
        return None
    return line[len(prefix):].strip() or None


def parse_device_state(output: Optional[str]) -> DeviceState:
    """Build a :class:`DeviceState` from raw ``bluetoothctl info`` text.

    Never raises: anything it cannot recognise reads as ``False``/``None``.
    """
    text = output or ""
    exists = False
    name: Optional[str] = None
    battery: Optional[str] = None
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("Device ") and not line.endswith("not available"):
            exists = True
            continue
        name = name or _field(line, "Name")
        battery = battery or _field(line, "Battery Percentage")
    state = DeviceState(
        exists=exists,
        paired="Paired: yes" in text,
        bonded="Bonded: yes" in text,
        trusted="Trusted: yes" in text,
        connected="Connected: yes" in text,
        name=name,
        battery=battery,
    )
    logger.debug("parsed device state: %s", state)
    return state

