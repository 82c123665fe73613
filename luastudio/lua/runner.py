"""
Runner Facade - the host's single entry point into the sandbox.

The host constructs one LuaRunner at startup and passes it to whatever issues
runs (editor run button, CLI, tests). There is no global instance.

    runner = LuaRunner(SandboxConfig(timeout=2.0))
    result = runner.run(source, on_output, on_error)   # never raises

    for message in runner.stream(source):              # bounded, from a worker thread
        terminal.add(message.text, message.kind)

Runs are serialized: one session holds the environment at a time, other
threads queue FIFO behind it (up to config.max_pending, then rejected).
"""

import queue
import threading
import time
from collections import deque
from typing import Callable, Optional

from luastudio.config import SandboxConfig
from luastudio.errors import InternalFault, RunnerBusy, SandboxError
from luastudio.lua.binding import InterpreterBinding
from luastudio.lua.output import ChannelQueue
from luastudio.lua.session import (
    EnvironmentPolicy,
    ErrorCallback,
    ExecutionSession,
    OutputCallback,
)
from luastudio.logging import get_logger
from luastudio.messages import MessageKind, OutputMessage, RunResult

log = get_logger('runner')

_END = object()


class LuaRunner:
    """
    Serializes run requests and owns the interpreter environment across calls.

    Attributes:
        config: Effective sandbox configuration
        binding: Interpreter binding used to build environments
        policy: Environment reuse/recreate policy
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        binding: Optional[InterpreterBinding] = None,
    ):
        self.config = config or SandboxConfig()
        self.binding = binding or InterpreterBinding(self.config)
        self.policy = EnvironmentPolicy(self.binding, reuse=self.config.reuse_environment)

        self._cond = threading.Condition()
        self._waiting: deque = deque()
        self._active: Optional[ExecutionSession] = None
        self._active_thread: Optional[int] = None
        self._closed = False
        self.completed_runs = 0

    def __enter__(self) -> 'LuaRunner':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def busy(self) -> bool:
        """True while a run holds the environment."""
        with self._cond:
            return self._active_thread is not None

    @property
    def pending(self) -> int:
        """Number of runs queued behind the active one."""
        with self._cond:
            return len(self._waiting)

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Public API
    # =========================================================================

    def run(
        self,
        source: str,
        on_output: OutputCallback,
        on_error: ErrorCallback,
        chunk_name: Optional[str] = None,
    ) -> RunResult:
        """Run source to completion, delivering output and at most one error.

        Synchronous: every callback has fired before this returns. Never
        raises; every failure is reported through on_error and reflected in
        the returned RunResult. chunk_name is the file name Lua reports in
        error positions (default: config.chunk_name).
        """
        return self._run(source, on_output, on_error, chunk_name=chunk_name)

    def stream(
        self,
        source: str,
        capacity: Optional[int] = None,
        chunk_name: Optional[str] = None,
    ) -> 'RunStream':
        """Run source on a worker thread, yielding OutputMessages as produced.

        Output passes through a bounded queue; a slow consumer blocks the
        script rather than growing a buffer. A failure arrives as a final
        ERROR message. Close the stream to cancel an unfinished run.
        """
        return RunStream(self, source, capacity or self.config.stream_capacity, chunk_name)

    def cancel(self) -> bool:
        """Cancel the in-flight run, if any. Safe from any thread."""
        with self._cond:
            session = self._active
        if session is None:
            return False
        return session.cancel()

    def reset(self) -> None:
        """Discard a kept environment so the next run starts clean.

        Waits for the active run (if any) to finish first.

        Raises:
            RunnerBusy: runner closed, queue full, or called from inside a run
        """
        self._enter()
        try:
            self.policy.reset()
        finally:
            self._leave()

    def close(self) -> None:
        """Reject further runs, cancel the active one and drop the environment."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            session = self._active
            self._cond.notify_all()
        if session is not None:
            session.cancel()
        else:
            self.policy.reset()
        log.debug("Runner closed")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _enter(self) -> None:
        """Wait for this thread's FIFO turn.

        Raises:
            RunnerBusy: runner closed, queue full, or re-entrant call
        """
        me = threading.get_ident()
        with self._cond:
            if self._closed:
                raise RunnerBusy("Runner is closed")
            # Output callbacks run on the session's worker thread
            if self._active_thread == me or (self._active is not None and self._active.owns_thread(me)):
                raise RunnerBusy("A run is already executing on this thread")
            occupied = self._active_thread is not None or self._waiting
            if occupied and len(self._waiting) >= self.config.max_pending:
                raise RunnerBusy(f"Runner busy: {len(self._waiting)} run(s) already queued")

            ticket = object()
            self._waiting.append(ticket)
            if occupied:
                log.debug("Run queued at position %d", len(self._waiting))
            while self._active_thread is not None or self._waiting[0] is not ticket:
                self._cond.wait()
                if self._closed:
                    self._waiting.remove(ticket)
                    self._cond.notify_all()
                    raise RunnerBusy("Runner closed while the run was queued")
            self._waiting.popleft()
            self._active_thread = me

    def _leave(self) -> None:
        with self._cond:
            self._active = None
            self._active_thread = None
            closed = self._closed
            self._cond.notify_all()
        if closed:
            self.policy.reset()

    def _run(
        self,
        source: str,
        on_output: OutputCallback,
        on_error: ErrorCallback,
        chunk_name: Optional[str] = None,
        on_session: Optional[Callable[[ExecutionSession], None]] = None,
    ) -> RunResult:
        try:
            self._enter()
        except RunnerBusy as e:
            log.warning("Run rejected: %s", e.message)
            _report(on_error, e)
            return RunResult.failed(e)

        started = time.monotonic()
        try:
            session = ExecutionSession(
                self.binding,
                self.policy,
                source,
                on_output,
                on_error,
                timeout=self.config.timeout,
                chunk_name=chunk_name,
            )
            with self._cond:
                self._active = session
            if on_session is not None:
                on_session(session)
            result = session.run()
            if result.succeeded:
                self.completed_runs += 1
            return result
        except Exception as e:
            log.exception("Runner failed outside the session", exc=e)
            fault = InternalFault(f"Internal error: {e}", cause=e)
            _report(on_error, fault)
            return RunResult.failed(fault, duration=time.monotonic() - started)
        finally:
            self._leave()


def _report(on_error: ErrorCallback, error: SandboxError) -> None:
    try:
        on_error(error.diagnostic())
    except Exception as e:
        log.exception("Error callback raised", exc=e)


class RunStream:
    """
    Iterator over the output of one run executing on a worker thread.

    Yields OutputMessages in production order. After the iterator is
    exhausted, result holds the RunResult. close() (or leaving a with block)
    cancels a run that is still executing.

    A consumer that stalls past the run's deadline still gets the failure:
    if the final ERROR message could not be queued in time, it is rebuilt
    from the result once the worker has exited.
    """

    POLL_INTERVAL = 0.05

    def __init__(self, runner: LuaRunner, source: str, capacity: int, chunk_name: Optional[str] = None):
        self._queue = ChannelQueue(capacity)
        self._final_wait = runner.config.timeout
        self._lock = threading.Lock()
        self._session: Optional[ExecutionSession] = None
        self._finished = False
        self._error_queued = False
        self.result: Optional[RunResult] = None
        self._thread = threading.Thread(
            target=self._work, args=(runner, source, chunk_name), name='luastudio-stream', daemon=True,
        )
        self._thread.start()

    def _bind(self, session: ExecutionSession) -> None:
        with self._lock:
            self._session = session
        self._queue.bind(session.abort_reason)
        if self._queue.closed:
            session.cancel()

    def _put_error(self, text: str) -> None:
        if self._queue.put_error(text, timeout=self._final_wait):
            self._error_queued = True
        else:
            log.debug("Error line not queued, consumer is not draining")

    def _work(self, runner: LuaRunner, source: str, chunk_name: Optional[str]) -> None:
        try:
            self.result = runner._run(
                source, self._queue.put_output, self._put_error,
                chunk_name=chunk_name, on_session=self._bind,
            )
        finally:
            self._queue.put_final(_END, timeout=self._final_wait)

    def __iter__(self) -> 'RunStream':
        return self

    def __next__(self) -> OutputMessage:
        if self._finished:
            raise StopIteration
        while True:
            try:
                item = self._queue.get(timeout=self.POLL_INTERVAL)
                break
            except queue.Empty:
                if not self._thread.is_alive():
                    item = self._after_exit()
                    break
        if item is _END:
            self._finished = True
            self._thread.join()
            raise StopIteration
        return item

    def _after_exit(self):
        """Next item once the worker is gone: leftovers, then a dropped error, then the end."""
        try:
            return self._queue.get(timeout=0)
        except queue.Empty:
            pass
        result = self.result
        if result is not None and result.diagnostic and not self._error_queued:
            self._error_queued = True
            return OutputMessage(text=result.diagnostic, kind=MessageKind.ERROR)
        return _END

    def __enter__(self) -> 'RunStream':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        """Block until the worker finished; returns the result (None on timeout)."""
        self._thread.join(timeout)
        return self.result

    def close(self) -> None:
        """Stop consuming; cancels the run if it has not finished."""
        self._queue.close()
        with self._lock:
            session = self._session
        if session is not None:
            session.cancel()
        self._finished = True
