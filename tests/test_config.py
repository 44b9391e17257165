import os
from pathlib import Path

import pytest
import yaml

from cx_replay.config import (
    CONFIG_FILE_NAME,
    ReplayConfig,
    load_replay_config,
    write_default_config,
)
from cx_replay.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keeps CX_REPLAY_* variables from the developer's shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("CX_REPLAY_"):
            monkeypatch.delenv(key)


def test_defaults_without_any_file(isolated_replay_home: Path):
    config = load_replay_config()

    assert config == ReplayConfig()
    assert config.resolver.timeout == 2000
    assert config.resolver.early_exit_confidence == 0.85
    assert config.executor.stability_checks == 3
    assert config.replay.retry_attempts == 3
    assert config.replay.backoff_multiplier == 1.5


def test_home_directory_file_is_picked_up(isolated_replay_home: Path):
    (isolated_replay_home / CONFIG_FILE_NAME).write_text(
        yaml.safe_dump({"replay": {"continue_on_failure": True, "retry_attempts": 5}})
    )

    config = load_replay_config()

    assert config.replay.continue_on_failure is True
    assert config.replay.retry_attempts == 5
    assert config.resolver.timeout == 2000


def test_explicit_path_must_exist(tmp_path: Path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_replay_config(tmp_path / "missing.yaml")


def test_invalid_values_raise_configuration_error(tmp_path: Path):
    path = tmp_path / "replay.yaml"
    path.write_text(yaml.safe_dump({"replay": {"retry_attempts": 0}}))

    with pytest.raises(ConfigurationError, match="Invalid replay configuration"):
        load_replay_config(path)


def test_non_mapping_document_is_rejected(tmp_path: Path):
    path = tmp_path / "replay.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError, match="Expected a mapping"):
        load_replay_config(path)


def test_env_file_and_environment_override_the_file(tmp_path: Path, monkeypatch):
    # Arrange
    path = tmp_path / "replay.yaml"
    path.write_text(yaml.safe_dump({"resolver": {"timeout": 1000}, "replay": {"retry_delay": 10}}))
    env_file = tmp_path / ".env"
    env_file.write_text("CX_REPLAY_RESOLVER_TIMEOUT=3000\nCX_REPLAY_RETRY_DELAY=20\n")
    monkeypatch.setenv("CX_REPLAY_RETRY_DELAY", "50")

    # Act
    config = load_replay_config(path, env_file=env_file)

    # Assert
    assert config.resolver.timeout == 3000
    assert config.replay.retry_delay == 50


def test_boolean_environment_override(isolated_replay_home: Path, monkeypatch):
    monkeypatch.setenv("CX_REPLAY_CONTINUE_ON_FAILURE", "true")
    monkeypatch.setenv("CX_REPLAY_WAIT_FOR_STABLE", "false")

    config = load_replay_config()

    assert config.replay.continue_on_failure is True
    assert config.executor.wait_for_stable is False


def test_write_default_config_round_trips(tmp_path: Path):
    path = write_default_config(tmp_path / "nested" / CONFIG_FILE_NAME)

    assert path.is_file()
    assert load_replay_config(path) == ReplayConfig()
