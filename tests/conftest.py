"""Shared fixtures for sandbox tests."""

from typing import List, Tuple

import pytest

from luastudio.config import SandboxConfig
from luastudio.lua.binding import InterpreterBinding
from luastudio.lua.runner import LuaRunner
from luastudio.messages import MessageKind


class Recorder:
    """Collects runner callbacks in the order they fire."""

    def __init__(self):
        self.events: List[Tuple[str, str, object]] = []

    def on_output(self, text: str, kind: MessageKind) -> None:
        self.events.append(('output', text, kind))

    def on_error(self, text: str) -> None:
        self.events.append(('error', text, None))

    @property
    def outputs(self) -> List[str]:
        return [text for event, text, _ in self.events if event == 'output']

    @property
    def kinds(self) -> List[MessageKind]:
        return [kind for event, _, kind in self.events if event == 'output']

    @property
    def errors(self) -> List[str]:
        return [text for event, text, _ in self.events if event == 'error']


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep LUASTUDIO_* settings from the developer's shell out of tests."""
    import os
    for key in list(os.environ):
        if key.startswith('LUASTUDIO_'):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config():
    """Short deadline so runaway scripts fail fast."""
    return SandboxConfig(timeout=1.0)


@pytest.fixture
def binding(config):
    return InterpreterBinding(config)


@pytest.fixture
def env(binding):
    """A fresh sandboxed environment."""
    environment = binding.new_environment()
    yield environment
    environment.discard()


@pytest.fixture
def runner(config):
    with LuaRunner(config) as lua_runner:
        yield lua_runner


@pytest.fixture
def reuse_runner():
    with LuaRunner(SandboxConfig(timeout=1.0, reuse_environment=True)) as lua_runner:
        yield lua_runner


@pytest.fixture
def recorder():
    return Recorder()
