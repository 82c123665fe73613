"""
Sandbox configuration.

Values come from (lowest to highest priority):
1. Field defaults below
2. A YAML file (SandboxConfig.from_yaml)
3. LUASTUDIO_* environment variables, after .env is loaded
4. Explicit keyword overrides

Environment variables:
    LUASTUDIO_TIMEOUT=5.0              # Seconds before a script is aborted
    LUASTUDIO_HOOK_INTERVAL=1000       # VM instructions between abort checks
    LUASTUDIO_ABORT_GRACE=0.5          # Seconds before a stuck aborted run is abandoned
    LUASTUDIO_REUSE_ENVIRONMENT=false  # Keep globals between completed runs
    LUASTUDIO_MAX_MEMORY=67108864      # Bytes; 0 disables the limit
    LUASTUDIO_MAX_PENDING=16           # Queued runs before rejecting
    LUASTUDIO_STREAM_CAPACITY=256      # Bounded queue size for stream()
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = 'LUASTUDIO_'

DEFAULT_TIMEOUT = 5.0
DEFAULT_MAX_MEMORY = 64 * 1024 * 1024


class SandboxConfig(BaseModel):
    """Tunables for the Lua sandbox and the runner that owns it."""

    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, description="Execution deadline in seconds")
    hook_interval: int = Field(default=1000, ge=1, description="VM instructions between abort checks")
    abort_grace: float = Field(default=0.5, ge=0, description="Seconds an aborted run gets to stop before it is abandoned")
    reuse_environment: bool = Field(default=False, description="Keep the environment across completed runs")
    max_memory: Optional[int] = Field(default=DEFAULT_MAX_MEMORY, description="Lua heap limit in bytes (None = unlimited)")
    max_pending: int = Field(default=16, ge=0, description="Runs allowed to wait behind the active one")
    stream_capacity: int = Field(default=256, ge=1, description="Bounded queue size used by stream()")
    chunk_name: str = Field(default="main", min_length=1, description="Name Lua uses in error positions")

    model_config = ConfigDict(frozen=True)

    @field_validator('max_memory')
    @classmethod
    def _zero_means_unlimited(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            return None
        return value

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> 'SandboxConfig':
        """Load from a YAML mapping. A top-level 'sandbox' key is unwrapped."""
        try:
            data = yaml.safe_load(Path(path).read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{path}: invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping, got {type(data).__name__}")
        data = data.get('sandbox', data)
        return cls(**{**data, **overrides})

    @classmethod
    def from_env(cls, base: Optional['SandboxConfig'] = None, dotenv_path: Optional[Path] = None) -> 'SandboxConfig':
        """Apply LUASTUDIO_* environment variables on top of base."""
        load_dotenv(dotenv_path)
        values = (base or cls()).model_dump()
        values.update(_env_overrides())
        return cls(**values)


def _env_overrides() -> Dict[str, Any]:
    """Collect LUASTUDIO_<FIELD> variables; pydantic does the type coercion."""
    overrides = {}
    for name in SandboxConfig.model_fields:
        value = os.getenv(ENV_PREFIX + name.upper())
        if value is not None and value != '':
            overrides[name] = value
    return overrides


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> SandboxConfig:
    """Build the effective configuration from file, environment and overrides."""
    base = SandboxConfig.from_yaml(path) if path else SandboxConfig()
    config = SandboxConfig.from_env(base)
    if overrides:
        config = SandboxConfig(**{**config.model_dump(), **overrides})
    return config
