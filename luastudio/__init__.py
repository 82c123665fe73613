"""
Lua Studio - a small editor shell around a Lua script sandbox.

The sandbox (luastudio.lua) runs Lua source against an embedded interpreter
and streams typed messages back to the host. The workspace, editor state and
terminal (luastudio.workspace, luastudio.editor) are the host side.
"""

from luastudio.config import SandboxConfig, load_config
from luastudio.messages import MessageKind, Outcome, OutputMessage, RunResult
from luastudio.lua import LuaRunner

__version__ = '0.1.0'

__all__ = [
    'LuaRunner', 'SandboxConfig', 'load_config',
    'MessageKind', 'Outcome', 'OutputMessage', 'RunResult',
]
