import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .utils import CX_REPLAY_HOME

logger = structlog.get_logger(__name__)

CONFIG_FILE_NAME = "replay.yaml"
ENV_PREFIX = "CX_REPLAY_"

# Environment variable suffix -> (config section, field name).
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "RESOLVER_TIMEOUT": ("resolver", "timeout"),
    "RETRY_INTERVAL": ("resolver", "retry_interval"),
    "MIN_CONFIDENCE": ("resolver", "min_confidence"),
    "EARLY_EXIT_CONFIDENCE": ("resolver", "early_exit_confidence"),
    "ENABLE_RETRY": ("resolver", "enable_retry"),
    "EXECUTOR_TIMEOUT": ("executor", "timeout"),
    "WAIT_FOR_STABLE": ("executor", "wait_for_stable"),
    "DELAY_AFTER": ("executor", "delay_after"),
    "STEP_TIMEOUT": ("replay", "step_timeout"),
    "RETRY_ATTEMPTS": ("replay", "retry_attempts"),
    "RETRY_DELAY": ("replay", "retry_delay"),
    "WAIT_BETWEEN_STEPS": ("replay", "wait_between_steps"),
    "CONTINUE_ON_FAILURE": ("replay", "continue_on_failure"),
    "SLOW_MOTION": ("replay", "slow_motion"),
}


class ResolverConfig(BaseModel):
    """Tuning knobs for one locator resolution."""

    timeout: float = Field(2000, ge=0, description="Overall deadline in ms.")
    retry_interval: float = Field(
        150, ge=0, description="Sleep between resolution cycles in ms."
    )
    min_confidence: float = Field(
        0.0, ge=0, le=1, description="Lowest confidence accepted as a match."
    )
    early_exit_confidence: float = Field(
        0.85,
        ge=0,
        le=1,
        description="A result at or above this ends the cycle immediately.",
    )
    skip_strategies: list[str] = Field(
        default_factory=list, description="Strategy names never to run."
    )
    only_strategies: list[str] = Field(
        default_factory=list,
        description="When non-empty, only these strategy names run.",
    )
    enable_retry: bool = Field(True, description="Run more than one cycle.")
    max_retries: int = Field(50, ge=0, description="Upper bound on retry cycles.")
    resolve_frames: bool = Field(
        True,
        description="Descend the bundle's iframe chain and shadow hosts first.",
    )


class StepExecutorOptions(BaseModel):
    """Options for executing a single recorded step."""

    timeout: float = Field(5000, ge=0, description="Locate budget in ms.")
    wait_for_stable: bool = Field(
        True, description="Wait for the element's position to settle."
    )
    stability_interval: float = Field(
        100, ge=0, description="Interval between position samples in ms."
    )
    stability_checks: int = Field(
        3, ge=1, description="Maximum number of position samples."
    )
    scroll_into_view: bool = Field(True, description="Scroll before acting.")
    verify_interactable: bool = Field(
        True, description="Reject hidden or disabled elements."
    )
    injected_value: str = Field(
        "", description="Value that overrides every other input source."
    )
    csv_row: dict[str, str] | None = Field(
        None, description="Current data row for data-driven runs."
    )
    field_mappings: dict[str, str] = Field(
        default_factory=dict,
        description="CSV column name -> step label.",
    )
    delay_after: float = Field(100, ge=0, description="Pause after acting in ms.")
    search_iframes: bool = Field(True, description="Follow recorded iframe chains.")
    search_shadow_dom: bool = Field(
        True, description="Follow recorded shadow hosts."
    )
    press_enter_after_input: bool = Field(
        False, description="Input the value before pressing Enter on enter steps."
    )


class ReplayOptions(BaseModel):
    """Session-level replay behaviour."""

    step_timeout: float = Field(30000, gt=0, description="Per-attempt budget in ms.")
    retry_attempts: int = Field(
        3, ge=1, description="Total attempts per step, including the first."
    )
    retry_delay: float = Field(1000, ge=0, description="Base backoff delay in ms.")
    backoff_multiplier: float = Field(1.5, ge=1, description="Backoff growth factor.")
    max_retry_delay: float = Field(
        30000, ge=0, description="Ceiling for a single backoff delay in ms."
    )
    wait_between_steps: float = Field(100, ge=0, description="Inter-step delay in ms.")
    continue_on_failure: bool = Field(
        False, description="Record failed steps and keep going."
    )
    slow_motion: bool = Field(False, description="Add slow_motion_delay per step.")
    slow_motion_delay: float = Field(500, ge=0, description="Slow-motion delay in ms.")


class ReplayConfig(BaseModel):
    """All configuration sections read from replay.yaml."""

    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    executor: StepExecutorOptions = Field(default_factory=StepExecutorOptions)
    replay: ReplayOptions = Field(default_factory=ReplayOptions)


def _collect_env_overrides(env: dict[str, Any]) -> dict[str, dict[str, Any]]:
    overrides: dict[str, dict[str, Any]] = {}
    for suffix, (section, field) in ENV_OVERRIDES.items():
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value is None or value == "":
            continue
        overrides.setdefault(section, {})[field] = value
    return overrides


def load_replay_config(
    path: Path | None = None, env_file: Path | None = None
) -> ReplayConfig:
    """
    Builds the effective configuration.

    Precedence, lowest to highest: model defaults, the YAML file, values from
    `env_file`, then the process environment.

    Args:
        path: Explicit YAML file. When omitted, `replay.yaml` in the
              cx-replay home directory is used if it exists.
        env_file: Optional dotenv file with CX_REPLAY_* keys.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(f"Configuration file not found: {path}")
    else:
        candidate = CX_REPLAY_HOME / CONFIG_FILE_NAME
        path = candidate if candidate.is_file() else None

    if path is not None:
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Expected a mapping at the top of {path}.")
        logger.debug("Loaded replay configuration file.", path=str(path))

    env: dict[str, Any] = {}
    if env_file is not None:
        env.update(dotenv_values(env_file))
    env.update(os.environ)

    for section, values in _collect_env_overrides(env).items():
        raw.setdefault(section, {})
        if raw[section] is None:
            raw[section] = {}
        raw[section].update(values)
        logger.debug(
            "Applied environment overrides.", section=section, fields=list(values)
        )

    try:
        return ReplayConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid replay configuration: {e}") from e


def write_default_config(path: Path) -> Path:
    """Writes a replay.yaml populated with the defaults and returns its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(ReplayConfig().model_dump(), sort_keys=False),
        encoding="utf-8",
    )
    return path
