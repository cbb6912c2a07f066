"""
Client configuration.

Settings are layered, later layers winning:

1. ClientSettings defaults
2. Module-level names in ~/.mcplink/config.py, if present, e.g.

       request_timeout = 120.0
       forward_stderr = False

3. MCPLINK_<FIELD> environment variables (a .env file is honoured)
4. Keyword overrides passed to load_settings()
"""

from __future__ import annotations

import dataclasses
import importlib.util
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv

from .codec import MAX_BUFFER_SIZE
from .process import PROCESS_TERMINATE_TIMEOUT
from .transport import SEND_TIMEOUT

ENV_PREFIX = "MCPLINK_"

_CONFIG_NOT_FOUND = object()
_user_config = None


def user_config_path() -> Path:
    return Path.home() / ".mcplink" / "config.py"


def get_user_config():
    """Load ~/.mcplink/config.py once. Returns the module, or None."""
    global _user_config

    if _user_config is not None:
        return None if _user_config is _CONFIG_NOT_FOUND else _user_config

    config_path = user_config_path()
    if not config_path.exists():
        _user_config = _CONFIG_NOT_FOUND
        return None

    try:
        spec = importlib.util.spec_from_file_location("mcplink_user_config", config_path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        _user_config = module
        return module
    except Exception as e:
        print(f"Warning: Failed to load user config from {config_path}: {e}", file=sys.stderr)
        _user_config = _CONFIG_NOT_FOUND
        return None


def reset_user_config() -> None:
    """Forget the cached user config so the next load re-reads it."""
    global _user_config
    _user_config = None


@dataclass
class ClientSettings:
    client_name: str = "mcplink"
    client_version: str = "0.1.0"
    protocol_version: str = "2024-11-05"
    request_timeout: Optional[float] = 300.0
    init_timeout: Optional[float] = 60.0
    send_timeout: Optional[float] = SEND_TIMEOUT
    terminate_timeout: float = PROCESS_TERMINATE_TIMEOUT
    max_buffer_size: int = MAX_BUFFER_SIZE
    forward_stderr: bool = True

    def __post_init__(self) -> None:
        # close() needs a real grace period to bound its waits
        if isinstance(self.terminate_timeout, bool) or not isinstance(self.terminate_timeout, (int, float)):
            raise ValueError(f"terminate_timeout must be a number, got {self.terminate_timeout!r}")
        if self.terminate_timeout < 0:
            raise ValueError(f"terminate_timeout must not be negative, got {self.terminate_timeout!r}")


_TRUE = {'1', 'true', 'yes', 'on'}
_FALSE = {'0', 'false', 'no', 'off'}

# Timeouts that may be disabled with an empty value or "none"
_OPTIONAL_TIMEOUTS = {'request_timeout', 'init_timeout', 'send_timeout'}


def _coerce(name: str, default: Any, raw: str) -> Any:
    env_var = ENV_PREFIX + name.upper()
    value = raw.strip()
    if isinstance(default, bool):
        if value.lower() in _TRUE:
            return True
        if value.lower() in _FALSE:
            return False
        raise ValueError(f"{env_var} must be a boolean, got {raw!r}")
    if value.lower() in ('', 'none'):
        if name in _OPTIONAL_TIMEOUTS:
            return None
        if name.endswith('_timeout'):
            raise ValueError(f"{env_var} cannot be disabled, got {raw!r}")
    try:
        if isinstance(default, float) or name.endswith('_timeout'):
            return float(value)
        if isinstance(default, int):
            return int(value)
    except ValueError as e:
        raise ValueError(f"{env_var} must be a number, got {raw!r}") from e
    return raw


def load_settings(use_env: bool = True, use_user_config: bool = True, **overrides: Any) -> ClientSettings:
    """
    Build ClientSettings from defaults, user config, environment and overrides.

    Raises:
        ValueError: If an environment variable cannot be parsed, or an
                    override names an unknown setting.
    """
    fields = {f.name: f.default for f in dataclasses.fields(ClientSettings)}
    values = dict(fields)

    if use_user_config:
        module = get_user_config()
        if module is not None:
            for name in fields:
                if hasattr(module, name):
                    values[name] = getattr(module, name)

    if use_env:
        load_dotenv(find_dotenv(usecwd=True))
        for name, default in fields.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = _coerce(name, default, raw)

    unknown = set(overrides) - set(fields)
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    values.update(overrides)
    return ClientSettings(**values)
