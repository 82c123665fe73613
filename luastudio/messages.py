"""
Lua Studio Message Types

Defines the types that flow from the sandbox to the host:
- OutputMessage: one line of terminal output with a classification
- Outcome: terminal classification of a run
- RunResult: what LuaRunner returns after a run

These types are the contract between the sandbox and whatever renders the
terminal pane. The sandbox produces them and never reads them back.
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from luastudio.errors import SandboxError


class MessageKind(str, Enum):
    """How the terminal should present a message."""
    INFO = "info"
    ERROR = "error"
    SUCCESS = "success"
    INPUT = "input"


class OutputMessage(BaseModel):
    """A single unit of terminal output."""
    text: str = Field(..., description="Message text, untransformed")
    kind: MessageKind = Field(default=MessageKind.INFO, description="Presentation class")
    timestamp: float = Field(default_factory=time.time, description="Seconds since epoch")

    model_config = ConfigDict(frozen=True)  # Messages are immutable once created


class Outcome(str, Enum):
    """Terminal classification of one run."""
    COMPLETED = "completed"
    PARSE_FAILED = "parse_failed"
    RUNTIME_FAILED = "runtime_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    INTERNAL_FAULT = "internal_fault"
    REJECTED = "rejected"         # Never started (queue full, runner closed)


# SandboxError.kind -> Outcome
OUTCOME_BY_KIND = {
    'parse': Outcome.PARSE_FAILED,
    'runtime': Outcome.RUNTIME_FAILED,
    'timeout': Outcome.TIMED_OUT,
    'cancelled': Outcome.CANCELLED,
    'internal': Outcome.INTERNAL_FAULT,
    'busy': Outcome.REJECTED,
}


class RunResult(BaseModel):
    """
    Result of one run, returned by LuaRunner.run().

    The host only needs the diagnostic text; the classified error is kept
    for tests and logging.
    """
    outcome: Outcome
    diagnostic: Optional[str] = Field(default=None, description="Text sent to on_error, if any")
    error: Optional[SandboxError] = Field(default=None, exclude=True)
    output_count: int = Field(default=0, ge=0, description="Messages forwarded to on_output")
    duration: float = Field(default=0.0, ge=0, description="Wall time in seconds")

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.COMPLETED

    @classmethod
    def failed(cls, error: SandboxError, output_count: int = 0, duration: float = 0.0) -> 'RunResult':
        """Build a failed result from a classified error."""
        return cls(
            outcome=OUTCOME_BY_KIND.get(error.kind, Outcome.INTERNAL_FAULT),
            diagnostic=error.diagnostic(),
            error=error,
            output_count=output_count,
            duration=duration,
        )
