"""
Sandbox error taxonomy.

Every failure of a script run is one of these. They are terminal for the run,
normalized to a single diagnostic string for the host, and never re-raised
out of LuaRunner.run().
"""

import re
from typing import Optional

# Lua prefixes errors with "<chunk>:<line>:" (load errors too)
_LOCATION_RE = re.compile(r'^(?:\[string "[^"]*"\]|[^:\n]+):(\d+):\s?(.*)$', re.DOTALL)


def split_location(raw: str) -> tuple[Optional[int], str]:
    """Split Lua's "chunk:line: message" prefix off an error string.

    >>> split_location('main:3: boom')
    (3, 'boom')
    >>> split_location('boom')
    (None, 'boom')
    """
    match = _LOCATION_RE.match(raw.strip())
    if match:
        return int(match.group(1)), match.group(2).strip()
    return None, raw.strip()


class SandboxError(Exception):
    """Base class for classified run failures."""

    kind = 'sandbox'

    def __init__(self, message: str, line: Optional[int] = None, chunk_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.chunk_name = chunk_name

    def diagnostic(self) -> str:
        """Human-readable one-line description for the terminal."""
        if self.line is not None:
            return f"{self.chunk_name or 'main'}:{self.line}: {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, line={self.line!r})"


class ParseError(SandboxError):
    """Source failed to compile; nothing was executed."""
    kind = 'parse'


class ScriptRuntimeError(SandboxError):
    """Script raised while executing (error(), bad arithmetic, stack overflow...)."""
    kind = 'runtime'


class ScriptTimeout(SandboxError):
    """Script exceeded its execution deadline and was aborted."""
    kind = 'timeout'

    def __init__(self, seconds: float):
        super().__init__(f"Execution timed out after {seconds:g}s")
        self.seconds = seconds


class ScriptCancelled(SandboxError):
    """Run was cancelled from outside the execution stream."""
    kind = 'cancelled'

    def __init__(self, message: str = "Execution cancelled"):
        super().__init__(message)


class InternalFault(SandboxError):
    """Anything raised outside the documented error surface."""
    kind = 'internal'

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RunnerBusy(SandboxError):
    """Run rejected before starting (queue full, re-entrant call, closed runner)."""
    kind = 'busy'


class SandboxViolation(RuntimeError):
    """A freshly built environment still exposes an escape hatch."""
