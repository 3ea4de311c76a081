import logging
import os
import sys
from enum import StrEnum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from exprdiag.errors import ConfigError, format_validation_error

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "EXPRDIAG_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"


class SamplingDistribution(StrEnum):
    Uniform = "uniform"
    Gaussian = "gaussian"


class SimulationSettings(BaseModel):
    sample_count: int = Field(default=10000, ge=1, description="Number of Monte Carlo draws per run.")
    confidence_level: float = Field(default=0.95, gt=0, lt=1, description="Nominal coverage of the trigger-rate interval.")
    distribution: SamplingDistribution = Field(default=SamplingDistribution.Uniform)
    seed: Optional[int] = Field(default=None, description="Seed for the sampler; None draws fresh entropy.")
    regime_bounded_sampling: bool = Field(default=False, description="Narrow regime axes while sampling instead of only filtering.")
    store_contexts: bool = Field(default=True)
    max_witnesses: int = Field(default=5, ge=0)


class BlockerSettings(BaseModel):
    near_miss_epsilon: float = Field(default=0.05, gt=0, description="Near-miss band in normalized units.")
    max_blockers: int = Field(default=10, ge=1)
    high_tunability_rate: float = Field(default=0.1, ge=0, le=1, description="Near-miss share of failures above which a threshold nudge is the cheap fix.")
    moderate_tunability_rate: float = Field(default=0.02, ge=0, le=1)


class FitSettings(BaseModel):
    default_threshold: float = Field(default=0.3, ge=0, le=1)
    leaderboard_size: int = Field(default=10, ge=1)
    implied_top_k: int = Field(default=5, ge=1)
    gap_neighbors: int = Field(default=5, ge=1)
    gap_distance_threshold: float = Field(default=0.5, ge=0)
    gap_intensity_threshold: float = Field(default=0.3, ge=0, le=1)


class SensitivitySettings(BaseModel):
    steps: int = Field(default=9, ge=1)
    step_size: float = Field(default=0.05, gt=0, description="Threshold step in normalized units.")


class LoggingSettings(BaseModel):
    log_dir: str = "./logs"
    log_filename: str = "exprdiag.log"
    level: str = "INFO"
    console: bool = True


class DiagnosticsConfig(BaseModel):
    simulation: SimulationSettings = Field(default_factory=SimulationSettings)
    blockers: BlockerSettings = Field(default_factory=BlockerSettings)
    fit: FitSettings = Field(default_factory=FitSettings)
    sensitivity: SensitivitySettings = Field(default_factory=SensitivitySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def with_simulation_overrides(self, **overrides) -> "DiagnosticsConfig":
        """Copy with simulation fields replaced; None values are ignored. Overrides go through validation."""
        data = self.simulation.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            simulation = SimulationSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Configuration validation failed:\n{format_validation_error(e)}") from e
        return self.model_copy(update={"simulation": simulation})


def _find_config_in_argv(argv=None) -> str | None:
    """Return a user-provided config path if -exprdiag_config or --exprdiag_config is present."""
    if argv is None:
        argv = getattr(sys, "argv", [])
    for i, arg in enumerate(argv):
        if arg in ("-exprdiag_config", "--exprdiag_config"):
            # next argument exists and isn't another flag
            if i + 1 < len(argv) and not argv[i + 1].startswith("-"):
                return argv[i + 1]
    return None


def find_config_path(argv=None) -> tuple[str, bool]:
    """
    Resolve the config path. Returns (path, explicit) where explicit is True when the
    path came from the environment or argv rather than the working-directory default.
    """
    path = DEFAULT_CONFIG_PATH
    explicit = False
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path).expanduser().resolve().as_posix()
        explicit = True
    argv_path = _find_config_in_argv(argv)
    if argv_path is not None:
        path = argv_path
        explicit = True
    return path, explicit


def read_config_file(file_path: str) -> DiagnosticsConfig:
    path = Path(file_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {file_path}")

    with open(path, "r", encoding="utf-8") as file:
        try:
            config_data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in configuration file: {e}") from e

    if config_data is None:
        config_data = {}
    if not isinstance(config_data, dict):
        raise ConfigError(f"Configuration root must be a mapping, got {type(config_data).__name__}")

    try:
        return DiagnosticsConfig(**config_data)
    except ValidationError as e:
        formatted_error = format_validation_error(e)
        raise ConfigError(f"Configuration validation failed:\n{formatted_error}") from e


def load_config(path: str | None = None, argv=None) -> DiagnosticsConfig:
    if path is not None:
        return read_config_file(path)

    resolved, explicit = find_config_path(argv)
    if not os.path.exists(resolved):
        if explicit:
            raise ConfigError(f"Configuration file not found: {resolved}. Check ${CONFIG_ENV_VAR} or --exprdiag_config.")
        logger.info(f"No {DEFAULT_CONFIG_PATH} found, using built-in defaults")
        return DiagnosticsConfig()
    return read_config_file(resolved)
