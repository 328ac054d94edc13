"""Engine configuration, read once at startup.

Loads configuration from:
1. refactor-engine.toml (defaults)
2. REFACTOR_ENGINE_* environment variables (overrides)
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from refactor_engine.agents.validation_runner import (
    DEFAULT_TIMEOUT,
    detect_validation_plan,
    parse_command_spec,
)
from refactor_engine.models import RequestConstraints, ValidationPlan

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
MAX_ITERATIONS_LIMIT = 10
CONFIG_FILENAME = "refactor-engine.toml"
ENV_PREFIX = "REFACTOR_ENGINE_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class LLMSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Literal["auto", "anthropic", "openai"] = "auto"
    fallback_provider: Literal["anthropic", "openai"] | None = None
    allow_fallback: bool = False
    model: str = "claude-sonnet-4-5-20250929"


class EngineConfig(BaseModel):
    """Immutable project conventions threaded through every phase."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    module_system: Literal["esm", "cjs"] = "esm"
    replan_on_conflict: bool = True
    command_timeout_seconds: float = DEFAULT_TIMEOUT
    plan_timeout_seconds: float | None = None
    # "category[!]:command" specs; empty means detect from package.json
    validation_commands: tuple[str, ...] = ()
    constraints: RequestConstraints = Field(default_factory=RequestConstraints)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    log_level: str = "INFO"

    @field_validator("max_iterations")
    @classmethod
    def _clamp_iterations(cls, value: int) -> int:
        return clamp_iterations(value)

    @field_validator("command_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("command_timeout_seconds must be positive")
        return value

    def validation_plan(self, repo_path: str | Path) -> ValidationPlan:
        """Configured commands in order, or the plan detected for ``repo_path``.

        Raises:
            ValidationRunnerError: If a configured command spec is invalid.
        """
        if not self.validation_commands:
            return detect_validation_plan(repo_path)
        return ValidationPlan(
            commands=tuple(parse_command_spec(spec) for spec in self.validation_commands)
        )


def clamp_iterations(max_iterations: int) -> int:
    return max(1, min(max_iterations, MAX_ITERATIONS_LIMIT))


def find_config_file(start: str | Path | None = None) -> Path | None:
    """Look for refactor-engine.toml in ``start`` (or the cwd) and its parents."""
    directory = Path(start or Path.cwd()).resolve()
    for candidate in (directory, *directory.parents):
        path = candidate / CONFIG_FILENAME
        if path.is_file():
            return path
    return None


def _bool_or_none(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _int_or_none(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _float_or_none(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


def _env(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def load_config(
    config_path: str | Path | None = None,
    search_from: str | Path | None = None,
) -> EngineConfig:
    """Load configuration from file and environment.

    Args:
        config_path: Optional explicit path to refactor-engine.toml.
        search_from: Directory to start the config file search from when no
            explicit path is given.

    Returns:
        EngineConfig with merged settings.

    Raises:
        FileNotFoundError: If ``config_path`` is given but does not exist.
        ValueError: If the file or an environment override is invalid.
    """
    data: dict[str, Any] = {}
    path = Path(config_path) if config_path is not None else find_config_file(search_from)
    if config_path is not None and not path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if path is not None:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        logger.debug("loaded config from %s", path)
        data.update(raw.get("engine", {}))
        validation = raw.get("validation", {})
        if "commands" in validation:
            data["validation_commands"] = tuple(validation["commands"])
        for key in ("command_timeout_seconds", "plan_timeout_seconds"):
            if key in validation:
                data[key] = validation[key]
        if "constraints" in raw:
            data["constraints"] = raw["constraints"]
        if "llm" in raw:
            data["llm"] = raw["llm"]

    env_overrides = {
        "max_iterations": _int_or_none(_env("MAX_ITERATIONS")),
        "module_system": _env("MODULE_SYSTEM"),
        "replan_on_conflict": _bool_or_none(_env("REPLAN_ON_CONFLICT")),
        "command_timeout_seconds": _float_or_none(_env("COMMAND_TIMEOUT")),
        "plan_timeout_seconds": _float_or_none(_env("PLAN_TIMEOUT")),
        "log_level": _env("LOG_LEVEL"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            data[key] = value

    commands = _env("VALIDATION_COMMANDS")
    if commands:
        data["validation_commands"] = tuple(
            spec.strip() for spec in commands.split(";") if spec.strip()
        )

    llm_overrides = {
        "provider": _env("LLM_PROVIDER"),
        "fallback_provider": _env("LLM_FALLBACK_PROVIDER"),
        "model": _env("MODEL"),
    }
    llm = dict(data.get("llm", {}))
    for key, value in llm_overrides.items():
        if value is not None:
            llm[key] = value
    if llm:
        data["llm"] = llm

    return EngineConfig.model_validate(data)
