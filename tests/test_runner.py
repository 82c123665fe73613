"""
Runner facade tests.

Covers the host-visible contract: run() never raises, output arrives in
order before at most one error, runaway scripts are bounded by the deadline,
and concurrent callers are queued FIFO or rejected when the queue is full.
"""

import threading
import time

import pytest

from luastudio.config import SandboxConfig
from luastudio.errors import RunnerBusy
from luastudio.lua.runner import LuaRunner
from luastudio.messages import MessageKind, Outcome

from conftest import Recorder


def run(runner, source, **kwargs):
    recorder = Recorder()
    result = runner.run(source, recorder.on_output, recorder.on_error, **kwargs)
    return result, recorder


class TestScenarios:
    """Host-observable behavior of single runs."""

    def test_prints_then_error(self, runner):
        result, rec = run(runner, 'print("a") print("b") error("boom")')

        assert rec.events == [
            ('output', 'a', MessageKind.INFO),
            ('output', 'b', MessageKind.INFO),
            ('error', 'main:1: boom', None),
        ]
        assert result.outcome is Outcome.RUNTIME_FAILED
        assert result.output_count == 2

    def test_unmatched_end_is_parse_error(self, runner):
        result, rec = run(runner, 'print("hello")\nend')

        assert rec.outputs == []
        assert len(rec.errors) == 1
        assert '<eof>' in rec.errors[0]
        assert rec.errors[0].startswith('main:2: ')
        assert result.outcome is Outcome.PARSE_FAILED

    @pytest.mark.parametrize("source", [
        'print(',
        'x = = 1',
        'function f() return 1',
        'local 1x = 2',
        'for i = 1 do end',
    ])
    def test_invalid_source_never_outputs(self, runner, source):
        result, rec = run(runner, 'print("before")\n' + source)
        assert rec.outputs == []
        assert len(rec.errors) == 1
        assert result.outcome is Outcome.PARSE_FAILED

    def test_literal_prints_in_order(self, runner):
        lines = [f"line {i}" for i in range(50)]
        source = '\n'.join(f'print("{line}")' for line in lines)
        result, rec = run(runner, source)

        assert rec.outputs == lines
        assert set(rec.kinds) == {MessageKind.INFO}
        assert rec.errors == []
        assert result.succeeded

    @pytest.mark.parametrize("n", [0, 1, 5])
    def test_n_prints_then_runtime_error(self, runner, n):
        source = 'for i = 1, %d do print(i) end\nlocal t = nil\nprint(t.x)\nprint("unreachable")' % n
        result, rec = run(runner, source)

        assert rec.outputs == [str(i) for i in range(1, n + 1)]
        assert len(rec.errors) == 1
        assert rec.events[-1][0] == 'error'
        assert result.outcome is Outcome.RUNTIME_FAILED

    def test_chunk_name_in_diagnostic(self, runner):
        result, rec = run(runner, 'error("boom")', chunk_name='main.lua')
        assert rec.errors == ['main.lua:1: boom']

    def test_stack_overflow(self):
        with LuaRunner(SandboxConfig(max_memory=0)) as runner:
            result, rec = run(runner, 'local function f() return 1 + f() end\nf()')
        assert result.outcome is Outcome.RUNTIME_FAILED
        assert 'stack overflow' in rec.errors[0]

    def test_memory_limit(self):
        config = SandboxConfig(timeout=5.0, max_memory=4 * 1024 * 1024)
        with LuaRunner(config) as runner:
            result, rec = run(runner, 'local t = {}\nfor i = 1, 1e8 do t[i] = tostring(i) .. "padding" end')
            assert result.outcome is Outcome.RUNTIME_FAILED
            assert 'not enough memory' in rec.errors[0]

            after, _ = run(runner, 'print("still fine")')
            assert after.succeeded

    def test_completed_runs_counter(self, runner):
        run(runner, 'x = 1')
        run(runner, 'error("no")')
        run(runner, 'y = 2')
        assert runner.completed_runs == 2


class TestTimeout:
    """Runaway scripts are aborted and the runner stays usable."""

    @pytest.fixture
    def fast_runner(self):
        with LuaRunner(SandboxConfig(timeout=0.3)) as runner:
            yield runner

    @pytest.mark.parametrize("source", [
        'while true do end',
        'while true do pcall(function() while true do end end) end',
        'while true do xpcall(function() while true do end end, function(e) return e end) end',
        'local co = coroutine.create(function() while true do end end)\ncoroutine.resume(co)',
        'coroutine.wrap(function() while true do end end)()',
        'local function spin() while true do local ok = pcall(error, "x") end end\nspin()',
    ])
    def test_infinite_loop_times_out(self, fast_runner, source):
        started = time.monotonic()
        result, rec = run(fast_runner, source)
        elapsed = time.monotonic() - started

        assert result.outcome is Outcome.TIMED_OUT
        assert rec.errors == ['Execution timed out after 0.3s']
        assert elapsed < 3.0

        after, rec_after = run(fast_runner, 'print("next")')
        assert after.succeeded
        assert rec_after.outputs == ['next']

    def test_output_before_timeout_is_kept(self, fast_runner):
        result, rec = run(fast_runner, 'print("started")\nwhile true do end')
        assert rec.events[0] == ('output', 'started', MessageKind.INFO)
        assert rec.events[-1][0] == 'error'
        assert len(rec.events) == 2

    def test_long_c_call_is_abandoned(self):
        """A pattern match never reaches the instruction hook; the deadline still holds."""
        with LuaRunner(SandboxConfig(timeout=0.3, abort_grace=0.2)) as runner:
            started = time.monotonic()
            result, rec = run(runner, 'local s = string.rep("a", 2000)\nprint(s:find(".-.-b"))')
            elapsed = time.monotonic() - started

            assert result.outcome is Outcome.TIMED_OUT
            assert rec.events == [('error', 'Execution timed out after 0.3s', None)]
            assert elapsed < 3.0

            after, rec_after = run(runner, 'print("next")')
            assert after.succeeded
            assert rec_after.outputs == ['next']


class TestEnvironmentPolicy:

    def test_recreate_gives_identical_output(self, runner):
        source = 'counter = (counter or 0) + 1\nprint(counter)'
        _, first = run(runner, source)
        _, second = run(runner, source)
        assert first.outputs == second.outputs == ['1']

    def test_recreate_does_not_leak_globals(self, runner):
        run(runner, 'shared = "set"')
        _, rec = run(runner, 'print(shared)')
        assert rec.outputs == ['nil']

    def test_reuse_keeps_globals_after_completed_run(self, reuse_runner):
        run(reuse_runner, 'shared = "set"')
        _, rec = run(reuse_runner, 'print(shared)')
        assert rec.outputs == ['set']

    def test_reuse_drops_globals_after_failed_run(self, reuse_runner):
        run(reuse_runner, 'shared = "set"\nerror("crash")')
        _, rec = run(reuse_runner, 'print(shared)')
        assert rec.outputs == ['nil']

    def test_reuse_drops_globals_after_timeout(self):
        with LuaRunner(SandboxConfig(timeout=0.2, reuse_environment=True)) as runner:
            run(runner, 'shared = "set"')
            run(runner, 'while true do end')
            _, rec = run(runner, 'print(shared)')
            assert rec.outputs == ['nil']

    def test_reset_clears_kept_environment(self, reuse_runner):
        run(reuse_runner, 'shared = "set"')
        reuse_runner.reset()
        _, rec = run(reuse_runner, 'print(shared)')
        assert rec.outputs == ['nil']

    def test_print_is_not_leaked_between_reused_runs(self, reuse_runner):
        """Each run's output goes to its own callbacks only."""
        _, first = run(reuse_runner, 'saved_print = print')
        _, second = run(reuse_runner, 'saved_print("via old print")\nprint("via new print")')
        assert first.outputs == []
        assert second.outputs == ['via new print']


class TestCancel:

    def test_cancel_from_another_thread(self, runner):
        started = threading.Event()
        rec = Recorder()

        def on_output(text, kind):
            rec.on_output(text, kind)
            started.set()

        holder = {}

        def worker():
            holder['result'] = runner.run('print("go")\nwhile true do end', on_output, rec.on_error)

        thread = threading.Thread(target=worker)
        thread.start()
        assert started.wait(2)
        assert runner.cancel() is True
        thread.join(5)

        assert holder['result'].outcome is Outcome.CANCELLED
        assert rec.errors == ['Execution cancelled']
        assert not runner.busy

    def test_cancel_when_idle(self, runner):
        assert runner.cancel() is False


class TestConcurrency:

    @pytest.fixture
    def slow_runner(self):
        with LuaRunner(SandboxConfig(timeout=5.0, max_pending=2)) as runner:
            yield runner

    def _hold(self, runner, release):
        """Start a run that blocks inside on_output until release is set."""
        entered = threading.Event()
        holder = {}

        def on_output(text, kind):
            entered.set()
            release.wait(5)

        def worker():
            holder['result'] = runner.run('print("hold")', on_output, lambda text: None)

        thread = threading.Thread(target=worker)
        thread.start()
        assert entered.wait(2)
        return thread, holder

    @staticmethod
    def _wait_pending(runner, count):
        deadline = time.monotonic() + 2
        while runner.pending < count:
            assert time.monotonic() < deadline, "run never queued"
            time.sleep(0.01)

    def test_queued_runs_execute_fifo(self, slow_runner):
        release = threading.Event()
        holder_thread, _ = self._hold(slow_runner, release)
        order = []

        def submit(label):
            slow_runner.run(f'print("{label}")', lambda text, kind: order.append(text), lambda text: None)

        first = threading.Thread(target=submit, args=('first',))
        first.start()
        self._wait_pending(slow_runner, 1)
        second = threading.Thread(target=submit, args=('second',))
        second.start()
        self._wait_pending(slow_runner, 2)

        release.set()
        for thread in (holder_thread, first, second):
            thread.join(5)
        assert order == ['first', 'second']

    def test_full_queue_rejects(self):
        with LuaRunner(SandboxConfig(timeout=5.0, max_pending=0)) as runner:
            release = threading.Event()
            thread, holder = self._hold(runner, release)

            result, rec = run(runner, 'print("rejected")')

            release.set()
            thread.join(5)
            assert result.outcome is Outcome.REJECTED
            assert rec.outputs == []
            assert rec.errors == ['Runner busy: 0 run(s) already queued']
            assert holder['result'].succeeded

    def test_reentrant_run_rejected(self, runner):
        inner = {}

        def on_output(text, kind):
            inner['result'], inner['recorder'] = run(runner, 'print("inner")')

        outer = runner.run('print("outer")', on_output, lambda text: None)

        assert outer.succeeded
        assert inner['result'].outcome is Outcome.REJECTED
        assert inner['recorder'].errors == ['A run is already executing on this thread']

    def test_reset_from_inside_run_raises(self, runner):
        errors = []

        def on_output(text, kind):
            try:
                runner.reset()
            except RunnerBusy as e:
                errors.append(e)

        runner.run('print("x")', on_output, lambda text: None)
        assert len(errors) == 1


class TestCallbacks:

    def test_output_callback_exception_is_internal_fault(self, runner):
        errors = []

        def on_output(text, kind):
            raise ValueError("render failed")

        result = runner.run('print("x")\nprint("y")', on_output, errors.append)

        assert result.outcome is Outcome.INTERNAL_FAULT
        assert errors == ['Output handler failed: render failed']

    def test_output_failure_swallowed_by_pcall(self, runner):
        delivered = []
        errors = []

        def on_output(text, kind):
            if text == 'x':
                raise ValueError("render failed")
            delivered.append(text)

        result = runner.run('pcall(print, "x")\nprint("after")', on_output, errors.append)

        assert delivered == []
        assert result.outcome is Outcome.INTERNAL_FAULT
        assert errors == ['Output handler failed: render failed']

    def test_output_failure_fully_swallowed_still_faults(self, runner):
        def on_output(text, kind):
            raise ValueError("render failed")

        result = runner.run('pcall(print, "x")\npcall(print, "y")', on_output, lambda text: None)
        assert result.outcome is Outcome.INTERNAL_FAULT

    def test_output_runs_before_run_returns(self, runner):
        calls = []

        def on_output(text, kind):
            time.sleep(0.05)
            calls.append(text)

        runner.run('print("a")\nprint("b")', on_output, lambda text: None)
        assert calls == ['a', 'b']

    def test_error_callback_exception_does_not_escape(self, runner):
        def on_error(text):
            raise RuntimeError("host broke")

        result = runner.run('error("boom")', lambda text, kind: None, on_error)
        assert result.outcome is Outcome.RUNTIME_FAILED

        after, _ = run(runner, 'print("ok")')
        assert after.succeeded


class TestLifecycle:

    def test_closed_runner_rejects(self, config):
        runner = LuaRunner(config)
        runner.close()
        assert runner.closed

        result, rec = run(runner, 'print("x")')
        assert result.outcome is Outcome.REJECTED
        assert rec.errors == ['Runner is closed']

    def test_close_is_idempotent(self, config):
        runner = LuaRunner(config)
        runner.close()
        runner.close()

    def test_reset_on_closed_runner_raises(self, config):
        runner = LuaRunner(config)
        runner.close()
        with pytest.raises(RunnerBusy):
            runner.reset()

    def test_context_manager_closes(self, config):
        with LuaRunner(config) as runner:
            run(runner, 'x = 1')
        assert runner.closed


class TestStream:

    def test_yields_messages_in_order(self, runner):
        with runner.stream('print("a")\nprint("b")\nprint("c")') as stream:
            messages = list(stream)
        assert [m.text for m in messages] == ['a', 'b', 'c']
        assert all(m.kind is MessageKind.INFO for m in messages)
        assert stream.result.succeeded

    def test_error_is_last_message(self, runner):
        stream = runner.stream('print("a")\nerror("boom")')
        messages = list(stream)
        assert [(m.text, m.kind) for m in messages] == [
            ('a', MessageKind.INFO),
            ('main:2: boom', MessageKind.ERROR),
        ]
        assert stream.result.outcome is Outcome.RUNTIME_FAILED

    def test_small_capacity_applies_backpressure(self, runner):
        source = 'for i = 1, 20 do print(i) end'
        stream = runner.stream(source, capacity=1)
        texts = []
        for message in stream:
            texts.append(message.text)
            time.sleep(0.005)
        assert texts == [str(i) for i in range(1, 21)]
        assert stream.result.succeeded

    def test_close_cancels_running_script(self, runner):
        stream = runner.stream('print("start")\nwhile true do end')
        first = next(stream)
        assert first.text == 'start'
        stream.close()

        result = stream.wait(5)
        assert result.outcome is Outcome.CANCELLED
        assert list(stream) == []

        after, _ = run(runner, 'print("ok")')
        assert after.succeeded

    def test_stream_timeout(self):
        with LuaRunner(SandboxConfig(timeout=0.2)) as runner:
            messages = list(runner.stream('while true do end'))
        assert [(m.text, m.kind) for m in messages] == [
            ('Execution timed out after 0.2s', MessageKind.ERROR),
        ]

    def test_stalled_consumer_still_gets_error(self):
        """The final error is rebuilt from the result when the queue had no room for it."""
        with LuaRunner(SandboxConfig(timeout=0.3, stream_capacity=2)) as runner:
            stream = runner.stream('for i = 1, 10 do print(i) end')
            time.sleep(1.5)
            messages = list(stream)

        assert [(m.text, m.kind) for m in messages] == [
            ('1', MessageKind.INFO),
            ('2', MessageKind.INFO),
            ('Execution timed out after 0.3s', MessageKind.ERROR),
        ]
        assert stream.result.outcome is Outcome.TIMED_OUT
