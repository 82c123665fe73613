"""
Interpreter Binding - thin adapter over the embedded Lua engine (lupa).

The binding:
1. Builds sandboxed Lua environments (opt-in globals only, validated)
2. Compiles source text without running it (load)
3. Runs a compiled program to completion (execute)
4. Converts every engine failure into the sandbox error taxonomy

All Lua semantics are delegated to lupa's bundled Lua. Nothing here buffers
script output; output only becomes visible through hooks installed on the
environment beforehand (see luastudio.lua.output).
"""

from typing import Any, Callable, Optional

from lupa import LuaError, LuaRuntime

from luastudio.config import SandboxConfig
from luastudio.errors import (
    InternalFault,
    ParseError,
    SandboxViolation,
    ScriptRuntimeError,
    split_location,
)
from luastudio.logging import get_logger

log = get_logger('binding')

# Callable polled by the abort hook; returns a reason string to abort.
AbortCheck = Callable[[], Optional[str]]

ABORT_DISCARDED = 'environment discarded'


def _lua_attribute_filter(obj, attr_name, is_setting):
    """Attribute filter for Python objects reachable from Lua.

    Blocks dunder and private attributes, and reading callable attributes,
    so a leaked Python object cannot be used to climb into the interpreter.
    """
    if attr_name.startswith('__'):
        raise AttributeError(f'Access to {attr_name} is blocked')
    if attr_name.startswith('_'):
        raise AttributeError(f'Access to private attribute {attr_name} is blocked')

    if not is_setting:
        attr = getattr(obj, attr_name, None)
        if attr is not None and callable(attr) and not isinstance(attr, type):
            raise AttributeError(f'Access to callable {attr_name} is blocked')

    return attr_name


# Builds the abort machinery. Receives the raw primitives captured before the
# globals are cleared and returns the sandboxed replacements plus a setter for
# the abort check. The count hook runs on the main thread and on every
# coroutine created through the sandboxed coroutine library.
_CONTROL_FACTORY = """
function(sethook, raw_pcall, raw_xpcall, raw_create, raw_resume, raw_status,
         raw_yield, raw_running, raw_isyieldable, raw_close, error, interval)
    local check = nil

    local function pending()
        if check == nil then return nil end
        return check()
    end

    local function hook()
        local reason = pending()
        if reason then error(reason, 0) end
    end

    local function rethrow(ok, ...)
        if not ok then
            local reason = pending()
            if reason then error(reason, 0) end
        end
        return ok, ...
    end

    local function create(f)
        local co = raw_create(f)
        sethook(co, hook, "", interval)
        return co
    end

    local function resume(co, ...)
        return rethrow(raw_resume(co, ...))
    end

    local function unwrap(ok, ...)
        if not ok then error((...), 0) end
        return ...
    end

    local control = {}

    control.pcall = function(f, ...)
        return rethrow(raw_pcall(f, ...))
    end

    control.xpcall = function(f, handler, ...)
        return rethrow(raw_xpcall(f, handler, ...))
    end

    control.coroutine = {
        create = create,
        resume = resume,
        status = raw_status,
        yield = raw_yield,
        running = raw_running,
        isyieldable = raw_isyieldable,
        close = raw_close,
        wrap = function(f)
            local co = create(f)
            return function(...)
                return unwrap(resume(co, ...))
            end
        end,
    }

    control.set_check = function(fn)
        check = fn
    end

    control.arm = function()
        sethook(hook, "", interval)
    end

    -- Runs a compiled chunk and reports (ok, message) instead of raising, so
    -- non-string error values are rendered with Lua's own tostring.
    control.run = function(fn, tostring, type)
        return raw_xpcall(fn, function(err)
            if type(err) == "string" then return err end
            return tostring(err)
        end)
    end

    return control
end
"""

_REQUIRE_FACTORY = """
function(libs, error, tostring)
    return function(name)
        local lib = libs[name]
        if lib == nil then
            error("module '" .. tostring(name) .. "' not found", 2)
        end
        return lib
    end
end
"""


def _split_results(result: Any) -> tuple[Any, Any]:
    """First two values of a Lua multi-return (lupa unpacks them into a tuple)."""
    if isinstance(result, tuple):
        first = result[0] if result else None
        second = result[1] if len(result) > 1 else None
        return first, second
    return result, None


class Program:
    """A compiled chunk, ready to execute in the environment that loaded it."""

    def __init__(self, function: Any, chunk_name: str, environment: 'LuaEnvironment'):
        self.function = function
        self.chunk_name = chunk_name
        self.environment = environment

    def __repr__(self) -> str:
        return f"Program(chunk_name={self.chunk_name!r})"


class LuaEnvironment:
    """
    Opaque handle over one sandboxed Lua global state.

    Owns the LuaRuntime, the captured raw primitives needed by the binding,
    and the abort hook controls. Created by InterpreterBinding.new_environment().
    """

    def __init__(self, runtime: LuaRuntime, raw_load: Any, control: Any, primitives: dict[str, Any]):
        self._lua = runtime
        self._raw_load = raw_load
        self._control = control
        # Stock functions captured at creation; scripts may rebind the globals
        self.primitives = primitives
        self.discarded = False
        # Output channel currently installed (managed by OutputChannel)
        self.channel = None
        # The hook always polls _poll; swapping the check never calls into Lua
        self._abort_check: Optional[AbortCheck] = None
        control.set_check(self._poll)

    def _poll(self) -> Optional[str]:
        # Code still running in a discarded environment (an abandoned run
        # leaving a long C call) stops at its next instruction check
        if self.discarded:
            return ABORT_DISCARDED
        check = self._abort_check
        if check is None:
            return None
        return check()

    @property
    def lua(self) -> LuaRuntime:
        """The underlying lupa runtime."""
        return self._lua

    def globals(self):
        """The Lua global table."""
        return self._lua.globals()

    def get_global(self, name: str) -> Any:
        """Read a global from Python (None when nil)."""
        return self.globals()[name]

    def set_abort_check(self, check: Optional[AbortCheck]) -> None:
        """Install (or clear with None) the callable polled by the abort hook."""
        self._abort_check = check

    def clear_abort_check(self) -> None:
        self._abort_check = None

    def discard(self) -> None:
        """Drop references so the runtime can be collected.

        Never calls into Lua, so it is safe while another thread still holds
        the runtime.
        """
        if self.discarded:
            return
        self.discarded = True
        self._abort_check = None
        self.channel = None
        self._control = None
        self._raw_load = None
        self._lua = None


class InterpreterBinding:
    """
    Adapter exposing load/execute over lupa with sandbox protections.

    Usage:
        binding = InterpreterBinding(SandboxConfig())
        env = binding.new_environment()
        program = binding.load(env, 'print("hi")')   # ParseError on bad syntax
        binding.execute(env, program)                 # ScriptRuntimeError on raise
    """

    # Globals kept from the stock Lua state, everything else is removed.
    SAFE_GLOBALS = (
        'assert', 'error', 'select', 'type', 'tostring', 'tonumber',
        'pairs', 'ipairs', 'next', 'math', 'string', 'table', 'utf8',
    )
    SAFE_OS = ('time', 'clock', 'date', 'difftime')
    REQUIRABLE = ('math', 'string', 'table', 'utf8', 'os', 'coroutine')

    CRITICAL_ESCAPES = (
        # Lupa-injected (most dangerous)
        ('python', 'python bridge gives full interpreter access'),
        ('_python', 'alternate python accessor'),
        # LuaJIT specific
        ('ffi', 'FFI gives raw memory access'),
        ('jit', 'JIT library'),
        # Code loading
        ('load', 'can compile arbitrary bytecode'),
        ('loadstring', 'same as load'),
        ('loadfile', 'load from filesystem'),
        ('dofile', 'execute from filesystem'),
        # Module system
        ('package', 'package system'),
        ('module', 'legacy module creation'),
        # Debug/introspection
        ('debug', 'full introspection'),
        ('getfenv', 'environment access'),
        ('setfenv', 'environment manipulation'),
        ('getmetatable', 'metatable access'),
        ('setmetatable', 'metatable manipulation'),
        # Raw table access (metatable bypass)
        ('rawget', 'bypass __index'),
        ('rawset', 'bypass __newindex'),
        ('rawequal', 'bypass __eq'),
        ('rawlen', 'bypass __len'),
        # Misc dangerous
        ('_G', 'global table reference'),
        ('collectgarbage', 'GC manipulation'),
        ('newproxy', 'userdata creation'),
        # Libraries
        ('io', 'filesystem access'),
        ('os.execute', 'shell commands'),
        ('os.exit', 'process exit'),
        ('os.getenv', 'environment variables'),
        ('os.remove', 'file deletion'),
        ('os.rename', 'file renaming'),
        ('string.dump', 'function bytecode'),
    )

    def __init__(self, config: Optional[SandboxConfig] = None):
        self.config = config or SandboxConfig()

    # =========================================================================
    # Environment construction
    # =========================================================================

    def new_environment(self) -> LuaEnvironment:
        """Build a fresh, validated sandbox environment.

        Raises:
            SandboxViolation: if the environment still exposes an escape
        """
        runtime = LuaRuntime(
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
            attribute_filter=_lua_attribute_filter,
            max_memory=self.config.max_memory,
        )
        g = runtime.globals()

        # string.dump serializes functions to bytecode; the string metatable
        # indexes the same table, so this also covers ("").dump
        runtime.execute('string.dump = nil')

        safe = {name: g[name] for name in self.SAFE_GLOBALS}
        safe['unpack'] = g.table.unpack
        raw_load = g.load

        make_control = runtime.eval(_CONTROL_FACTORY)
        control = make_control(
            g.debug.sethook,
            g.pcall,
            g.xpcall,
            g.coroutine.create,
            g.coroutine.resume,
            g.coroutine.status,
            g.coroutine['yield'],
            g.coroutine.running,
            g.coroutine.isyieldable,
            g.coroutine.close,
            g.error,
            self.config.hook_interval,
        )

        os_table = runtime.table()
        for name in self.SAFE_OS:
            os_table[name] = g.os[name]

        make_require = runtime.eval(_REQUIRE_FACTORY)

        # Nuclear option: clear ALL globals, then reinstall the safe subset
        for key in list(g.keys()):
            g[key] = None

        for key, value in safe.items():
            g[key] = value
        g.os = os_table
        g.pcall = control.pcall
        g.xpcall = control.xpcall
        g.coroutine = control.coroutine

        libs = runtime.table()
        for name in self.REQUIRABLE:
            libs[name] = g[name]
        g.require = make_require(libs, g.error, g.tostring)

        control.arm()

        primitives = {
            name: g[name] for name in ('tostring', 'select', 'type', 'error')
        }
        primitives['concat'] = g.table.concat
        primitives['format'] = g.string.format
        primitives['math_type'] = g.math.type

        env = LuaEnvironment(runtime, raw_load, control, primitives)
        self.validate(env)
        log.debug("Created Lua environment")
        return env

    def validate(self, env: LuaEnvironment) -> None:
        """Check that the environment is properly locked down.

        Raises:
            SandboxViolation: listing every exposed escape
        """
        lua = env.lua
        failures = []
        for name, risk in self.CRITICAL_ESCAPES:
            try:
                if lua.eval(f'{name} ~= nil'):
                    failures.append(f'EXPOSED: {name} - {risk}')
            except LuaError:
                pass  # eval failed = parent table missing = not accessible

        try:
            if lua.eval('("").dump') is not None:
                failures.append('EXPOSED: string.dump accessible via method syntax')
        except LuaError:
            pass

        if failures:
            for failure in failures:
                log.error('SANDBOX FAILURE: %s', failure)
            raise SandboxViolation(
                f'Lua sandbox validation failed with {len(failures)} issue(s). '
                'This is a security risk - refusing to continue.'
            )

    # =========================================================================
    # load / execute
    # =========================================================================

    def load(self, env: LuaEnvironment, source: str, chunk_name: Optional[str] = None) -> Program:
        """Compile source text without running any of it.

        Raises:
            ParseError: on syntax errors (with line when Lua reports one)
            InternalFault: if the engine fails outside its error surface
        """
        chunk_name = chunk_name or self.config.chunk_name
        try:
            loaded = env._raw_load(source, '=' + chunk_name, 't')
        except LuaError as e:
            # Memory exhaustion while compiling
            line, text = split_location(str(e))
            raise ParseError(text, line, chunk_name) from e
        except Exception as e:
            raise InternalFault(f"Interpreter failed while compiling: {e}", cause=e) from e

        # load() returns the chunk alone, or (nil, message)
        function, message = _split_results(loaded)
        if function is None:
            line, text = split_location(message or 'syntax error')
            raise ParseError(text, line, chunk_name)

        return Program(function, chunk_name, env)

    def execute(self, env: LuaEnvironment, program: Program) -> None:
        """Run a compiled program until its top-level code returns.

        Raises:
            ScriptRuntimeError: when the script raises (error(), stack overflow,
                out of memory, or an abort raised by the hook)
            InternalFault: for anything outside the documented error surface
        """
        if program.environment is not env:
            raise InternalFault("Program was compiled in a different environment")

        try:
            result = env._control.run(
                program.function, env.primitives['tostring'], env.primitives['type'],
            )
        except LuaError as e:
            line, text = split_location(str(e))
            raise ScriptRuntimeError(text, line, program.chunk_name) from e
        except Exception as e:
            raise InternalFault(f"Interpreter fault: {e}", cause=e) from e

        ok, message = _split_results(result)
        if not ok:
            if message is None:
                message = 'nil'
            line, text = split_location(str(message))
            raise ScriptRuntimeError(text, line, program.chunk_name)
