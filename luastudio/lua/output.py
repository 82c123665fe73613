"""
Output Channel - routes the script's print/io.write calls to a host sink.

Installed on an environment for the length of one run:

    channel = OutputChannel(lambda text, kind: terminal.add(text, kind))
    channel.install(env)
    ...                       # every print() call reaches the sink synchronously
    channel.uninstall(env)    # previous print/io restored

ChannelQueue is a bounded sink for hosts that consume output from another
thread (LuaRunner.stream). A full queue blocks the script until the consumer
catches up, the run is aborted, or the consumer goes away.
"""

import queue
import time
from typing import Any, Callable, Optional

from luastudio.lua.binding import LuaEnvironment
from luastudio.logging import get_logger
from luastudio.messages import MessageKind, OutputMessage

log = get_logger('output')

Sink = Callable[[str, MessageKind], None]

# Lua-side print/io.write. Mirrors the stock semantics: print tostring()s each
# argument and joins with tabs, io.write concatenates strings and numbers
# (floats in %.14g form, so 1.0 is written as 1).
_PRINT_FACTORY = """
function(emit, tostring, select, type, error, concat, format, math_type)
    local function print(...)
        local n = select('#', ...)
        local parts = {}
        for i = 1, n do
            parts[i] = tostring((select(i, ...)))
        end
        emit(concat(parts, "\\t"))
    end

    local function write(...)
        local n = select('#', ...)
        local parts = {}
        for i = 1, n do
            local value = (select(i, ...))
            local kind = type(value)
            if kind ~= "string" and kind ~= "number" then
                error("bad argument #" .. i .. " to 'write' (string expected, got " .. kind .. ")", 2)
            end
            if kind == "number" and math_type(value) == "float" then
                value = format("%.14g", value)
            end
            parts[i] = value
        end
        emit(concat(parts))
    end

    return print, write
end
"""


class ChannelClosed(Exception):
    """Raised into the script when a bounded consumer stops accepting output."""


class OutputChannel:
    """
    Intercepts script output for one run and forwards it to a sink.

    One message per print/io.write call, kind INFO, content untouched.
    install() is idempotent per environment; uninstall() restores whatever
    print/io the environment had before. Hooks a script stashed away stop
    forwarding once the channel is uninstalled.
    """

    def __init__(self, sink: Sink):
        self._sink = sink
        self._saved: Optional[tuple[Any, Any]] = None
        self.emitted = 0
        # Exception raised by the sink, if any (the run is then an internal fault)
        self.failure: Optional[BaseException] = None

    @property
    def installed(self) -> bool:
        return self._saved is not None

    def _emit(self, text: str) -> None:
        if self._saved is None:
            # A print kept by a script after its run ended
            log.debug("Dropped output from uninstalled channel")
            return
        if self.failure is not None:
            # The script swallowed the first failure with pcall
            raise self.failure
        try:
            self._sink(text, MessageKind.INFO)
        except Exception as e:
            self.failure = e
            raise
        self.emitted += 1

    def install(self, env: LuaEnvironment) -> None:
        """Replace the script-visible print and io.write with forwarding hooks."""
        if env.channel is self:
            return
        if env.channel is not None:
            env.channel.uninstall(env)

        lua = env.lua
        g = env.globals()
        self._saved = (g.print, g.io)

        p = env.primitives
        make_print = lua.eval(_PRINT_FACTORY)
        print_fn, write_fn = make_print(
            self._emit, p['tostring'], p['select'], p['type'], p['error'],
            p['concat'], p['format'], p['math_type'],
        )

        io_table = lua.table()
        io_table.write = write_fn
        g.print = print_fn
        g.io = io_table

        self.emitted = 0
        self.failure = None
        env.channel = self

    def uninstall(self, env: LuaEnvironment) -> None:
        """Restore the environment's previous print/io."""
        if env.channel is not self or self._saved is None:
            return
        if not env.discarded:
            g = env.globals()
            g.print, g.io = self._saved
        self._saved = None
        env.channel = None


class ChannelQueue:
    """
    Bounded FIFO between a running script and a consumer thread.

    put_output() is used as an OutputChannel sink; it blocks while the queue
    is full, polling the bound abort check so a stalled consumer still
    respects the run's deadline and cancellation.
    """

    POLL_INTERVAL = 0.05

    def __init__(self, capacity: int):
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._abort_check: Optional[Callable[[], Optional[str]]] = None
        self.closed = False

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def bind(self, abort_check: Callable[[], Optional[str]]) -> None:
        """Poll abort_check while blocked on a full queue."""
        self._abort_check = abort_check

    def _put(self, item: Any) -> None:
        while True:
            if self.closed:
                raise ChannelClosed("Output consumer closed")
            if self._abort_check is not None and self._abort_check():
                raise ChannelClosed("Run aborted while output was blocked")
            try:
                self._queue.put(item, timeout=self.POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def put_output(self, text: str, kind: MessageKind) -> None:
        self._put(OutputMessage(text=text, kind=kind))

    def put_error(self, text: str, timeout: Optional[float] = None) -> bool:
        """Terminal error line; dropped (False) once the consumer is gone."""
        return self.put_final(OutputMessage(text=text, kind=MessageKind.ERROR), timeout=timeout)

    def put_final(self, item: Any, timeout: Optional[float] = None) -> bool:
        """Enqueue after the script stopped; no abort polling.

        Gives up (returns False) when the consumer closed or, with a timeout,
        when nobody drained the queue in time. The run never waits forever
        on an abandoned consumer.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.closed:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            try:
                self._queue.put(item, timeout=self.POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def get(self, timeout: Optional[float] = None) -> Any:
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        self.closed = True
