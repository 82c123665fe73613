"""
Execution Session - one run of one script, start to finish.

State machine:

    idle -> loading -> executing -> completed -> closed
                 \\           \\
                  -> failed <-+-> closed

- loading:   environment obtained from the EnvironmentPolicy, source compiled.
             A parse error goes straight to failed; nothing executes.
- executing: output channel installed, abort hook armed, deadline running.
- failed:    error classified and delivered to on_error exactly once.
- closed:    always reached (finally path): hook cleared, channel
             uninstalled, environment kept or discarded by the policy.

Timeouts and cancellation are enforced by the count hook installed by the
binding: it polls ExecutionSession.abort_reason() every few VM instructions.
The program itself runs on a worker thread. A C function (a pathological
string pattern, say) never reaches the hook, so once an abort is pending the
session waits at most abort_grace more seconds, then abandons the worker and
discards its environment.
"""

import threading
import time
from enum import Enum
from typing import Callable, Optional

from luastudio.errors import (
    InternalFault,
    SandboxError,
    ScriptCancelled,
    ScriptRuntimeError,
    ScriptTimeout,
)
from luastudio.lua.binding import InterpreterBinding, LuaEnvironment
from luastudio.lua.output import ChannelClosed, OutputChannel
from luastudio.logging import get_logger
from luastudio.messages import MessageKind, Outcome, RunResult

log = get_logger('session')

OutputCallback = Callable[[str, MessageKind], None]
ErrorCallback = Callable[[str], None]

ABORT_TIMEOUT = 'timeout'
ABORT_CANCELLED = 'cancelled'


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.LOADING},
    SessionState.LOADING: {SessionState.EXECUTING, SessionState.FAILED, SessionState.CLOSED},
    SessionState.EXECUTING: {SessionState.COMPLETED, SessionState.FAILED, SessionState.CLOSED},
    SessionState.COMPLETED: {SessionState.CLOSED},
    SessionState.FAILED: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class EnvironmentPolicy:
    """
    Decides which environment a run gets and what happens to it afterwards.

    recreate (reuse=False): every run gets a fresh environment, discarded
        when the run closes. No state leaks between runs.
    reuse (reuse=True): one environment is kept while runs complete. Globals
        set by one run are visible to the next. Any failed run discards it,
        so the next run never inherits state from a crashed or aborted script.
    """

    def __init__(self, binding: InterpreterBinding, reuse: bool = False):
        self._binding = binding
        self.reuse = reuse
        self._env: Optional[LuaEnvironment] = None

    @property
    def current(self) -> Optional[LuaEnvironment]:
        """The environment kept for the next run, if any."""
        return self._env

    def acquire(self) -> LuaEnvironment:
        if self.reuse and self._env is not None and not self._env.discarded:
            return self._env
        self._env = self._binding.new_environment()
        return self._env

    def release(self, env: LuaEnvironment, clean: bool) -> None:
        if self.reuse and clean and not env.discarded:
            return
        env.discard()
        if self._env is env:
            self._env = None

    def reset(self) -> None:
        """Discard the kept environment."""
        if self._env is not None:
            self._env.discard()
            self._env = None


class ExecutionSession:
    """
    Orchestrates a single run. Not reusable: create one per run.

    run() delivers every output message and then at most one error before
    returning a RunResult; it does not raise for script or engine failures.
    cancel() may be called from any thread. The sinks are called from the
    session's worker thread, never after run() returned.
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        binding: InterpreterBinding,
        policy: EnvironmentPolicy,
        source: str,
        on_output: OutputCallback,
        on_error: ErrorCallback,
        timeout: float,
        chunk_name: Optional[str] = None,
    ):
        self._binding = binding
        self._policy = policy
        self.source = source
        self._on_output = on_output
        self._on_error = on_error
        self.timeout = timeout
        self.chunk_name = chunk_name or binding.config.chunk_name
        self._grace = binding.config.abort_grace

        self.state = SessionState.IDLE
        self.result: Optional[RunResult] = None
        self._state_lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._deadline: Optional[float] = None
        self._abort: Optional[str] = None
        self._abort_lock = threading.Lock()

        self._worker: Optional[threading.Thread] = None
        self._output_lock = threading.Lock()
        self._abandoned = False

    # =========================================================================
    # Abort control
    # =========================================================================

    def abort_reason(self) -> Optional[str]:
        """Polled by the abort hook and the session thread. Latches the first reason."""
        with self._abort_lock:
            if self._abort is None:
                if self._cancel_requested.is_set():
                    self._abort = ABORT_CANCELLED
                elif self._deadline is not None and time.monotonic() >= self._deadline:
                    self._abort = ABORT_TIMEOUT
            return self._abort

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the run already finished."""
        with self._state_lock:
            if self.state in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CLOSED):
                return False
            self._cancel_requested.set()
        log.debug("Cancellation requested for %s", self.chunk_name)
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    def owns_thread(self, ident: Optional[int]) -> bool:
        """True if ident is this session's worker thread."""
        worker = self._worker
        return worker is not None and worker.ident == ident

    # =========================================================================
    # Run
    # =========================================================================

    def _transition(self, new_state: SessionState) -> None:
        with self._state_lock:
            if new_state not in _TRANSITIONS[self.state]:
                raise InternalFault(f"Invalid session transition {self.state.value} -> {new_state.value}")
            self.state = new_state
        log.lua_script(self.chunk_name, new_state.value)

    def _forward_output(self, text: str, kind: MessageKind) -> None:
        with self._output_lock:
            if self._abandoned:
                raise ChannelClosed("Run abandoned")
            self._on_output(text, kind)

    def run(self) -> RunResult:
        if self.state is not SessionState.IDLE:
            raise InternalFault("ExecutionSession.run() called twice")

        started = time.monotonic()
        channel = OutputChannel(self._forward_output)
        env: Optional[LuaEnvironment] = None
        error: Optional[SandboxError] = None

        try:
            self._transition(SessionState.LOADING)
            env = self._policy.acquire()
            program = self._binding.load(env, self.source, self.chunk_name)

            if self._cancel_requested.is_set():
                raise ScriptCancelled()

            channel.install(env)
            env.set_abort_check(self.abort_reason)
            self._deadline = time.monotonic() + self.timeout
            self._transition(SessionState.EXECUTING)

            self._execute_bounded(env, program)
            if channel.failure is not None:
                # The script caught the sink's exception (pcall) and went on
                raise ScriptRuntimeError(str(channel.failure))
            self._transition(SessionState.COMPLETED)
        except SandboxError as e:
            error = self._classify(e, channel)
        except Exception as e:
            log.exception("Unexpected failure while running %s", self.chunk_name, exc=e)
            error = InternalFault(f"Internal error: {e}", cause=e)

        if error is not None:
            self._fail(error)

        self._close(env, channel, clean=error is None)

        duration = time.monotonic() - started
        if error is None:
            self.result = RunResult(
                outcome=Outcome.COMPLETED,
                output_count=channel.emitted,
                duration=duration,
            )
            log.debug("%s completed in %.3fs (%d messages)", self.chunk_name, duration, channel.emitted)
        else:
            self.result = RunResult.failed(error, output_count=channel.emitted, duration=duration)
        return self.result

    def _execute_bounded(self, env: LuaEnvironment, program) -> None:
        """Execute on a worker thread; abandon it if an abort goes unheeded.

        Raises whatever execute() raised. An abandoned run raises
        ScriptRuntimeError carrying the abort reason.
        """
        outcome: dict = {}

        def work():
            try:
                self._binding.execute(env, program)
            except BaseException as e:
                outcome['error'] = e

        worker = threading.Thread(target=work, name='luastudio-exec', daemon=True)
        self._worker = worker
        worker.start()

        abort_seen: Optional[float] = None
        while True:
            worker.join(self.POLL_INTERVAL)
            if not worker.is_alive():
                break
            if self.abort_reason() is None:
                continue
            now = time.monotonic()
            if abort_seen is None:
                abort_seen = now
            elif now - abort_seen >= self._grace:
                self._abandon(env)
                raise ScriptRuntimeError(self._abort)

        error = outcome.get('error')
        if error is not None:
            raise error

    def _abandon(self, env: LuaEnvironment) -> None:
        """Stop forwarding output and drop an environment stuck inside a C call."""
        if not self._output_lock.acquire(timeout=max(self._grace, self.POLL_INTERVAL)):
            log.warning("Output handler of %s still busy while abandoning the run", self.chunk_name)
            self._abandoned = True
        else:
            try:
                self._abandoned = True
            finally:
                self._output_lock.release()
        log.warning(
            "%s ignored %s for %gs, abandoning its environment",
            self.chunk_name, self._abort, self._grace,
        )
        self._policy.release(env, clean=False)

    def _classify(self, error: SandboxError, channel: OutputChannel) -> SandboxError:
        """Refine an engine error using what the session knows about the run."""
        if self._abort == ABORT_TIMEOUT:
            return ScriptTimeout(self.timeout)
        if self._abort == ABORT_CANCELLED or isinstance(error, ScriptCancelled):
            return ScriptCancelled()
        if channel.failure is not None:
            if isinstance(channel.failure, ChannelClosed):
                return ScriptCancelled(str(channel.failure))
            return InternalFault(f"Output handler failed: {channel.failure}", cause=channel.failure)
        return error

    def _fail(self, error: SandboxError) -> None:
        with self._state_lock:
            self.state = SessionState.FAILED
        log.lua_script(self.chunk_name, SessionState.FAILED.value)

        if isinstance(error, InternalFault):
            log.warning("%s faulted: %s", self.chunk_name, error.message)
        else:
            log.debug("%s failed (%s): %s", self.chunk_name, error.kind, error.diagnostic())

        try:
            self._on_error(error.diagnostic())
        except Exception as e:
            log.exception("Error callback raised while reporting %s", error.kind, exc=e)

    def _close(self, env: Optional[LuaEnvironment], channel: OutputChannel, clean: bool) -> None:
        try:
            if env is not None:
                if not env.discarded:
                    env.clear_abort_check()
                channel.uninstall(env)
                self._policy.release(env, clean)
        except Exception as e:
            log.exception("Cleanup failed, discarding environment", exc=e)
            if env is not None:
                self._policy.release(env, clean=False)
        finally:
            with self._state_lock:
                self.state = SessionState.CLOSED
            log.lua_script(self.chunk_name, SessionState.CLOSED.value)
