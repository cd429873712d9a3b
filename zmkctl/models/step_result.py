from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Outcome(Enum):
    CONTINUE = "continue"
    EXIT_OK = "exit_ok"
    EXIT_FAIL = "exit_fail"


@dataclass(frozen=True)
class StepResult:
    """What a workflow step wants the caller to do next.

    Steps never exit the process themselves; the CLI maps the outcome to an
    exit status with :attr:`exit_code`.
    """
    outcome: Outcome
    reason: Optional[str] = None

    @classmethod
    def proceed(cls) -> "StepResult":
        return cls(Outcome.CONTINUE)

    @classmethod
    def ok(cls, reason: Optional[str] = None) -> "StepResult":
        return cls(Outcome.EXIT_OK, reason)

    @classmethod
    def fail(cls, reason: str) -> "StepResult":
        return cls(Outcome.EXIT_FAIL, reason)

    @property
    def should_continue(self) -> bool:
        return self.outcome is Outcome.CONTINUE

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.EXIT_FAIL

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0
