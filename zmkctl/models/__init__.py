"""Value types shared by the connection and capture workflows."""
from .device_state import DeviceState, parse_device_state
from .step_result import Outcome, StepResult
from .log_session import LogSession

__all__ = [
    "DeviceState",
    "parse_device_state",
    "Outcome",
    "StepResult",
    "LogSession",
]
