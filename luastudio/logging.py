"""
Lua Studio Logging

Console logging with per-module levels and optional tracing of sandbox runs.

Usage:
    from luastudio.logging import get_logger

    log = get_logger('runner')
    log.debug("Queued run")
    log.info("Runner ready")
    log.lua_script('main', 'executing')  # Only shown with script tracing on

Configuration:
    Environment variables:
        LUASTUDIO_LOG_LEVEL=DEBUG         # Global default level
        LUASTUDIO_LOG_SESSION=DEBUG       # Module-specific level
        LUASTUDIO_LOG_LUA_SCRIPTS=1       # Trace session state transitions

    Or programmatically:
        from luastudio.logging import configure_logging
        configure_logging(level='DEBUG', modules={'runner': 'INFO'})
"""

import os
import sys
from enum import IntEnum
from functools import lru_cache
from typing import Any, Dict, Optional

ENV_PREFIX = 'LUASTUDIO_LOG_'


class LogLevel(IntEnum):
    """Log levels matching Python's logging module."""
    TRACE = 5      # Even more verbose than DEBUG
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50
    OFF = 100      # Disable logging


_config: Dict[str, Any] = {
    'default_level': LogLevel.INFO,
    'module_levels': {},
    'lua_scripts': False,    # Trace session transitions per run
    'stream': None,          # None = sys.stderr at call time
}


def _format_message(module: str, level: str, msg: str) -> str:
    """Format a log message."""
    return f"[{module}] {level}: {msg}"


def _level_from_string(level_str: str) -> LogLevel:
    """Convert string to LogLevel."""
    mapping = {
        'TRACE': LogLevel.TRACE,
        'DEBUG': LogLevel.DEBUG,
        'INFO': LogLevel.INFO,
        'WARNING': LogLevel.WARNING,
        'WARN': LogLevel.WARNING,
        'ERROR': LogLevel.ERROR,
        'CRITICAL': LogLevel.CRITICAL,
        'OFF': LogLevel.OFF,
    }
    return mapping.get(level_str.upper(), LogLevel.INFO)


def _is_truthy(value: str) -> bool:
    return value.lower() in ('1', 'true', 'yes', 'on')


def configure_logging(
    level: str = 'INFO',
    modules: Optional[Dict[str, str]] = None,
    lua_scripts: bool = False,
    stream=None,
) -> None:
    """
    Configure the logging system.

    Args:
        level: Default log level for all modules
        modules: Dict of module_name -> level for per-module configuration
        lua_scripts: Trace session transitions for every run
        stream: File-like object to write to (default: sys.stderr)
    """
    _config['default_level'] = _level_from_string(level)

    if modules:
        for mod, mod_level in modules.items():
            _config['module_levels'][mod.lower()] = _level_from_string(mod_level)

    _config['lua_scripts'] = lua_scripts
    _config['stream'] = stream


def _load_env_config() -> None:
    """Load configuration from LUASTUDIO_LOG_* environment variables.

    LUASTUDIO_LOG_LEVEL sets the default, LUASTUDIO_LOG_LUA_SCRIPTS toggles
    script tracing, and any other LUASTUDIO_LOG_<MODULE> sets that module's
    level (LUASTUDIO_LOG_RUNNER=DEBUG -> runner: DEBUG).
    """
    level_key = ENV_PREFIX + 'LEVEL'
    scripts_key = ENV_PREFIX + 'LUA_SCRIPTS'

    if level_key in os.environ:
        _config['default_level'] = _level_from_string(os.environ[level_key])

    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX) and key not in (level_key, scripts_key):
            module_name = key[len(ENV_PREFIX):].lower()
            _config['module_levels'][module_name] = _level_from_string(value)

    _config['lua_scripts'] = _is_truthy(os.environ.get(scripts_key, ''))


# Load env config on import
_load_env_config()


class StudioLogger:
    """
    Logger for a specific module.

    Provides standard log levels plus tracing of Lua script runs.
    """

    def __init__(self, module: str):
        self.module = module
        self._module_key = module.lower().replace('.', '_').replace('/', '_')

    @property
    def level(self) -> LogLevel:
        """Get effective log level for this module."""
        if self._module_key in _config['module_levels']:
            return _config['module_levels'][self._module_key]
        return _config['default_level']

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check if message at given level would be logged."""
        return level >= self.level

    def _log(self, level: LogLevel, level_name: str, msg: str, *args) -> None:
        if not self.is_enabled_for(level):
            return

        if args:
            try:
                msg = msg % args
            except (TypeError, ValueError):
                msg = f"{msg} {args}"

        stream = _config['stream'] or sys.stderr
        print(_format_message(self.module, level_name, msg), file=stream)

    def debug(self, msg: str, *args) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, 'DEBUG', msg, *args)

    def info(self, msg: str, *args) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, 'INFO', msg, *args)

    def warning(self, msg: str, *args) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, 'WARN', msg, *args)

    def error(self, msg: str, *args) -> None:
        """Log at ERROR level."""
        self._log(LogLevel.ERROR, 'ERROR', msg, *args)

    def exception(self, msg: str, *args, exc: Optional[BaseException] = None) -> None:
        """
        Log an error followed by a traceback.

        Args:
            msg: Message describing what failed
            exc: Exception to format (uses the one being handled if None)
        """
        import traceback

        self._log(LogLevel.ERROR, 'ERROR', msg, *args)

        if exc is not None:
            tb_lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
        else:
            tb_lines = traceback.format_exc().split('\n')

        for chunk in tb_lines:
            for line in chunk.rstrip().split('\n'):
                if line.strip() and line.strip() != 'NoneType: None':
                    self._log(LogLevel.ERROR, 'TRACE', line)

    def lua_script(self, name: str, action: str = 'execute') -> None:
        """
        Log a Lua script transition.

        Only logs if lua_scripts tracing is enabled.

        Args:
            name: Chunk name of the script
            action: What's happening (loading, executing, closed, etc.)
        """
        if not _config['lua_scripts']:
            return

        self._log(LogLevel.DEBUG, 'LUA', f"{action} {name}")


@lru_cache(maxsize=64)
def get_logger(module: str) -> StudioLogger:
    """
    Get a logger for the specified module.

    Loggers are cached, so calling get_logger('foo') multiple times
    returns the same logger instance.
    """
    return StudioLogger(module)
