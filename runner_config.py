# runner_config.py
"""
Layered runner configuration.

Layers, lowest precedence first:

    1. built-in defaults
    2. project config file   journeyrunner.config.json|yaml|yml, found by walking
                             up from the journey's directory, or named by
                             JOURNEYRUNNER_CONFIG_FILE
    3. environment file      <name>.env.json|yaml|yml in an environments
                             directory, or a direct path
    4. explicit overrides    usually from the command line

Layers are deep-merged; later layers win key by key. Files and overrides
use the camelCase keys (`virtualUsers`, `baseUrl`, ...).
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from engine_errors import ConfigurationError
from engine_logging import get_logger
from interpolation import deep_merge
from journey_loader import load_document

logger = get_logger("config")

__all__ = [
    "RunnerConfig", "EnvironmentConfig", "TargetConfig", "JourneySettings",
    "ProfileSettings", "ExecutionSettings", "ApiSettings", "load_runner_config",
    "find_project_config", "load_environment", "PROJECT_CONFIG_NAMES",
]

CONFIG_FILE_ENV_VAR = "JOURNEYRUNNER_CONFIG_FILE"
PROJECT_CONFIG_NAMES = ("journeyrunner.config.json", "journeyrunner.config.yaml", "journeyrunner.config.yml")
ENV_FILE_SUFFIXES = (".env.json", ".env.yaml", ".env.yml")
DEFAULT_BASE_URL = "http://localhost:3000"


def _friendly_names(mapping: Dict[str, str]):
    return lambda field_name: mapping.get(field_name, field_name)


class TargetConfig(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=_friendly_names({'base_url': 'baseUrl'}),
    )

    base_url: str = Field(DEFAULT_BASE_URL, description="Base URL used when the journey declares none")


class EnvironmentConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = "default"
    target: TargetConfig = Field(default_factory=TargetConfig)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Exposed to templates as {{env.NAME}}")

    def namespace(self) -> Dict[str, Any]:
        """The `env` namespace seen by templates; includes API_BASE_URL."""
        namespace = dict(self.variables)
        namespace["API_BASE_URL"] = self.target.base_url
        return namespace


class JourneySettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: Optional[str] = None


class ProfileSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: Optional[str] = None
    seed: Optional[int] = Field(None, description="Seed for reproducible profile sampling")


class ExecutionSettings(BaseModel):
    """Settings for local simulation runs."""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=_friendly_names({
            'virtual_users': 'virtualUsers',
            'max_steps': 'maxSteps',
            'think_time_scale': 'thinkTimeScale',
            'dry_run': 'dryRun',
        }),
    )

    virtual_users: int = Field(default=1, ge=1, description="Number of simulated users")
    max_steps: int = Field(default=100, ge=1, description="Step limit per user, guards against cyclic journeys")
    think_time_scale: float = Field(default=0.0, ge=0, description="Multiplier applied to think times (0 disables waiting)")
    dry_run: bool = False
    debug: bool = Field(default=False, description="Enable debug logging for the journey engine")


class ApiSettings(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=_friendly_names({'log_level': 'logLevel'}),
    )

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"), validate_default=True)

    @field_validator('log_level')
    def normalize_log_level(cls, v):
        level = str(v).upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown log level '{v}'")
        return level


class RunnerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    journey: JourneySettings = Field(default_factory=JourneySettings)
    profiles: ProfileSettings = Field(default_factory=ProfileSettings)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


def find_project_config(start: Union[str, Path]) -> Optional[Path]:
    """Walks up from `start` looking for a project config file."""
    override = os.getenv(CONFIG_FILE_ENV_VAR)
    if override:
        path = Path(override)
        if not path.is_file():
            raise ConfigurationError(f"{CONFIG_FILE_ENV_VAR} points to a missing file: {path}")
        return path

    current = Path(start).resolve()
    if current.is_file():
        current = current.parent
    for directory in (current, *current.parents):
        for name in PROJECT_CONFIG_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def load_environment(
    name: Optional[str] = None,
    environments_dir: Optional[Union[str, Path]] = None,
    path: Optional[Union[str, Path]] = None,
) -> Dict[str, Any]:
    """Returns the raw environment layer; {} when neither a path nor a name is given."""
    if path is not None:
        data = load_document(path)
    elif name and environments_dir is not None:
        directory = Path(environments_dir)
        candidates = [directory / f"{name}{suffix}" for suffix in ENV_FILE_SUFFIXES]
        found = next((c for c in candidates if c.is_file()), None)
        if found is None:
            raise ConfigurationError(f"Environment file not found: {candidates[0]}")
        data = load_document(found)
    else:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Environment file must contain an object")
    data.setdefault("name", name or "default")
    return data


def load_runner_config(
    journey_path: Optional[Union[str, Path]] = None,
    project_config_path: Optional[Union[str, Path]] = None,
    environment_name: Optional[str] = None,
    environments_dir: Optional[Union[str, Path]] = None,
    environment_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> RunnerConfig:
    merged: Dict[str, Any] = {}

    if project_config_path is None:
        project_config_path = find_project_config(Path(journey_path).parent if journey_path else Path.cwd())
    if project_config_path is not None:
        project = load_document(project_config_path)
        if not isinstance(project, dict):
            raise ConfigurationError(f"Project config {project_config_path} must contain an object")
        logger.info(f"Using project config {project_config_path}")
        deep_merge(merged, project)

    environment = load_environment(environment_name, environments_dir, environment_path)
    if environment:
        logger.info(f"Using environment '{environment.get('name')}'")
        deep_merge(merged, {"environment": environment})

    if journey_path is not None:
        deep_merge(merged, {"journey": {"path": str(journey_path)}})
    if overrides:
        deep_merge(merged, overrides)

    return RunnerConfig.model_validate(merged)
