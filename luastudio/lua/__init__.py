"""
Lua script sandbox.

Provides a repeatable, isolated way to run user-authored Lua source:
- InterpreterBinding: sandboxed lupa environments, load/execute
- OutputChannel: print/io.write interception
- ExecutionSession: one run's state machine, deadline and cancellation
- LuaRunner: serialized entry point owned by the host application
"""

from luastudio.lua.binding import InterpreterBinding, LuaEnvironment, Program
from luastudio.lua.output import ChannelQueue, OutputChannel
from luastudio.lua.session import EnvironmentPolicy, ExecutionSession, SessionState
from luastudio.lua.runner import LuaRunner, RunStream

__all__ = [
    'InterpreterBinding', 'LuaEnvironment', 'Program',
    'OutputChannel', 'ChannelQueue',
    'ExecutionSession', 'EnvironmentPolicy', 'SessionState',
    'LuaRunner', 'RunStream',
]
