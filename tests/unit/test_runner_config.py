import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import json

import pytest
from pydantic import ValidationError

from engine_errors import ConfigurationError
from runner_config import (
    CONFIG_FILE_ENV_VAR,
    ApiSettings,
    RunnerConfig,
    find_project_config,
    load_environment,
    load_runner_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(CONFIG_FILE_ENV_VAR, raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


@pytest.fixture
def project(tmp_path):
    """A project with a config file at the root and a journey two levels down."""
    (tmp_path / "journeyrunner.config.yaml").write_text(
        "execution:\n"
        "  virtualUsers: 5\n"
        "  thinkTimeScale: 0.5\n"
        "profiles:\n"
        "  path: profiles.json\n"
        "  seed: 42\n"
        "environment:\n"
        "  variables:\n"
        "    REGION: eu\n",
        encoding="utf-8",
    )
    journeys = tmp_path / "journeys" / "shop"
    journeys.mkdir(parents=True)
    journey = journeys / "checkout.journey.json"
    journey.write_text("{}", encoding="utf-8")
    environments = tmp_path / "environments"
    environments.mkdir()
    (environments / "staging.env.json").write_text(json.dumps({
        "target": {"baseUrl": "https://staging.test"},
        "variables": {"API_KEY": "k-staging"},
    }), encoding="utf-8")
    return tmp_path, journey, environments


def test_defaults():
    config = RunnerConfig()
    assert config.environment.target.base_url == "http://localhost:3000"
    assert config.execution.virtual_users == 1
    assert config.execution.max_steps == 100
    assert config.execution.think_time_scale == 0.0
    assert config.api.port == 8080
    assert config.api.log_level == "INFO"


def test_find_project_config_walks_up(project):
    root, journey, _ = project
    assert find_project_config(journey) == root / "journeyrunner.config.yaml"


def test_find_project_config_env_override(tmp_path, monkeypatch):
    explicit = tmp_path / "custom.json"
    explicit.write_text("{}", encoding="utf-8")
    monkeypatch.setenv(CONFIG_FILE_ENV_VAR, str(explicit))
    assert find_project_config(tmp_path) == explicit

    monkeypatch.setenv(CONFIG_FILE_ENV_VAR, str(tmp_path / "gone.json"))
    with pytest.raises(ConfigurationError):
        find_project_config(tmp_path)


def test_layers_merge_in_order(project):
    _, journey, environments = project
    config = load_runner_config(
        journey_path=journey,
        environment_name="staging",
        environments_dir=environments,
        overrides={"execution": {"virtualUsers": 9}},
    )

    assert config.journey.path == str(journey)
    assert config.profiles.seed == 42
    assert config.execution.virtual_users == 9
    assert config.execution.think_time_scale == 0.5
    assert config.environment.name == "staging"
    assert config.environment.target.base_url == "https://staging.test"
    # environment variables from the project file and the env file are merged
    assert config.environment.variables == {"REGION": "eu", "API_KEY": "k-staging"}
    assert config.environment.namespace() == {
        "REGION": "eu",
        "API_KEY": "k-staging",
        "API_BASE_URL": "https://staging.test",
    }


def test_explicit_environment_path(tmp_path):
    env_file = tmp_path / "local.env.yaml"
    env_file.write_text("target:\n  baseUrl: http://127.0.0.1:9000\n", encoding="utf-8")
    config = load_runner_config(project_config_path=None, environment_path=env_file)
    assert config.environment.name == "default"
    assert config.environment.target.base_url == "http://127.0.0.1:9000"


def test_missing_environment_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Environment file not found"):
        load_environment("prod", environments_dir=tmp_path)


def test_no_environment_requested():
    assert load_environment() == {}


def test_environment_must_be_an_object(tmp_path):
    env_file = tmp_path / "bad.env.json"
    env_file.write_text("[1]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_environment(path=env_file)


def test_invalid_values_are_rejected(project):
    _, journey, _ = project
    with pytest.raises(ValidationError):
        load_runner_config(journey_path=journey, overrides={"execution": {"virtualUsers": 0}})


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert ApiSettings().log_level == "DEBUG"
    with pytest.raises(ValidationError):
        ApiSettings(log_level="LOUD")
