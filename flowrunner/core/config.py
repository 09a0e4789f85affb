"""Engine configuration.

Settings resolve in three layers, later layers winning:
1. Built-in defaults
2. ``.flowrunner/config.yaml`` (or an explicit path)
3. ``FLOWRUNNER_<FIELD>`` environment variables

Provider credentials are never read from the YAML file; adapters pull them
from the environment directly.
"""

import logging
import os
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".flowrunner") / "config.yaml"
ENV_PREFIX = "FLOWRUNNER_"


class ConfigError(Exception):
    """Configuration file or value is invalid."""

    pass


class EngineSettings(BaseModel):
    """Tunables for executors, collaborators and storage"""

    delay_cap_seconds: float = Field(default=60.0, ge=0)  # Hard upper bound for delay nodes
    default_delay_seconds: float = Field(default=5.0, ge=0)
    webhook_timeout_seconds: float = Field(default=30.0, gt=0)
    default_model: str = "claude-sonnet"
    default_temperature: float = 0.7
    default_max_tokens: int = Field(default=2048, gt=0)
    condition_preview_chars: int = Field(default=200, ge=0)
    email_from: str = "workflows@yourfellow.com"
    email_subject: str = "Workflow Output"
    database_path: Path = Path(".flowrunner") / "state.db"
    detect_cycles: bool = True


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with proper error handling."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid config in {path}: expected a mapping, got {type(data).__name__}"
        )
    return data


def _env_overrides(environ: dict[str, str]) -> dict[str, str]:
    overrides = {}
    for name in EngineSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


def load_settings(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> EngineSettings:
    """Build settings from defaults, the config file and the environment.

    Args:
        path: Explicit config file; must exist when given. Defaults to
            ``.flowrunner/config.yaml`` in the working directory, if present.
        environ: Environment mapping (defaults to ``os.environ``)

    Raises:
        ConfigError: If the file is missing/invalid or a value fails validation
    """
    values: dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        values.update(_load_yaml(config_path))
    elif DEFAULT_CONFIG_PATH.exists():
        values.update(_load_yaml(DEFAULT_CONFIG_PATH))

    unknown = sorted(set(values) - set(EngineSettings.model_fields))
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {unknown}")
        for key in unknown:
            values.pop(key)

    values.update(_env_overrides(dict(os.environ) if environ is None else environ))

    try:
        return EngineSettings(**values)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}")
