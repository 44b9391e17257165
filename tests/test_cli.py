import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from cx_replay.cli import app
from cx_replay.config import CONFIG_FILE_NAME

runner = CliRunner()


@pytest.fixture
def snapshot_file(tmp_path: Path, login_page) -> Path:
    path = tmp_path / "login-page.json"
    path.write_text(json.dumps(login_page.to_dict()))
    return path


@pytest.fixture
def fast_config(tmp_path: Path) -> Path:
    """A replay.yaml with every delay switched off."""
    path = tmp_path / "replay.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "resolver": {"timeout": 100, "retry_interval": 10},
                "executor": {"timeout": 100, "stability_interval": 0, "delay_after": 0},
                "replay": {"retry_attempts": 1, "retry_delay": 0, "wait_between_steps": 0},
            }
        )
    )
    return path


def write_json(path: Path, payload) -> Path:
    path.write_text(json.dumps(payload))
    return path


def test_version_flag():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "cx-replay version" in result.output


def test_strategies_lists_every_strategy(isolated_replay_home):
    result = runner.invoke(app, ["strategies"])

    assert result.exit_code == 0
    for name in ("xpath", "id", "aria-label", "fuzzy-text", "css-selector", "form-label"):
        assert name in result.output


def test_resolve_against_a_snapshot(isolated_replay_home, tmp_path, snapshot_file, email_bundle):
    # Arrange
    bundle_file = write_json(tmp_path / "bundle.json", email_bundle.model_dump(by_alias=True))

    # Act
    result = runner.invoke(app, ["resolve", str(bundle_file), "--snapshot", str(snapshot_file)])

    # Assert
    assert result.exit_code == 0, result.output
    assert "Strategy attempts" in result.output
    assert "Found" in result.output


def test_resolve_with_single_strategy(isolated_replay_home, tmp_path, snapshot_file):
    bundle_file = write_json(tmp_path / "bundle.json", {"bundle": {"tag": "input", "id": "email"}})

    result = runner.invoke(
        app, ["resolve", str(bundle_file), "--snapshot", str(snapshot_file), "--strategy", "id"]
    )

    assert result.exit_code == 0, result.output
    assert "Found" in result.output


def test_resolve_reports_a_miss(isolated_replay_home, tmp_path, snapshot_file, fast_config):
    bundle_file = write_json(tmp_path / "bundle.json", {"tag": "video", "id": "missing"})

    result = runner.invoke(
        app,
        ["resolve", str(bundle_file), "--snapshot", str(snapshot_file), "--config", str(fast_config)],
    )

    assert result.exit_code == 1
    assert "Not found" in result.output


def test_resolve_needs_exactly_one_source(isolated_replay_home, tmp_path, snapshot_file):
    bundle_file = write_json(tmp_path / "bundle.json", {"tag": "input", "id": "email"})

    neither = runner.invoke(app, ["resolve", str(bundle_file)])
    both = runner.invoke(
        app,
        ["resolve", str(bundle_file), "--snapshot", str(snapshot_file), "--url", "https://example.com"],
    )

    assert neither.exit_code == 1
    assert "exactly one of --snapshot or --url" in neither.output
    assert both.exit_code == 1


def test_run_against_a_snapshot_writes_a_report(
    isolated_replay_home, tmp_path, snapshot_file, fast_config
):
    # Arrange
    steps_file = write_json(
        tmp_path / "login.json",
        {
            "steps": [
                {"id": "type-email", "event": "input", "value": "ada@example.com",
                 "bundle": {"tag": "input", "id": "email"}},
                {"id": "submit", "event": "click",
                 "bundle": {"tag": "button", "aria": "Sign in", "text": "Sign in"}},
            ]
        },
    )
    report = tmp_path / "reports" / "run.json"

    # Act
    result = runner.invoke(
        app,
        [
            "run", str(steps_file),
            "--snapshot", str(snapshot_file),
            "--config", str(fast_config),
            "--report", str(report),
            "--project", "proj-7",
        ],
    )

    # Assert
    assert result.exit_code == 0, result.output
    assert "PASSED" in result.output
    test_run = json.loads(report.read_text())
    assert test_run["status"] == "passed"
    assert test_run["project_id"] == "proj-7"
    assert test_run["passed_steps"] == 2
    assert [r["step_id"] for r in test_run["test_results"]] == ["type-email", "submit"]


def test_run_exits_non_zero_on_failure(isolated_replay_home, tmp_path, snapshot_file, fast_config):
    steps_file = write_json(
        tmp_path / "broken.json",
        [{"id": "missing", "event": "click", "bundle": {"tag": "video", "id": "missing"}}],
    )

    result = runner.invoke(
        app,
        ["run", str(steps_file), "--snapshot", str(snapshot_file), "--config", str(fast_config)],
    )

    assert result.exit_code == 1
    assert "FAILED" in result.output


def test_run_with_invalid_steps_file(isolated_replay_home, tmp_path, snapshot_file):
    steps_file = tmp_path / "steps.yaml"
    steps_file.write_text("not: [a, list]\nsteps: 12\n")

    result = runner.invoke(app, ["run", str(steps_file), "--snapshot", str(snapshot_file)])

    assert result.exit_code == 1
    assert "Error" in result.output


def test_init_writes_default_config(isolated_replay_home):
    first = runner.invoke(app, ["init"])
    second = runner.invoke(app, ["init"])

    assert first.exit_code == 0
    assert (isolated_replay_home / CONFIG_FILE_NAME).is_file()
    assert "already exists" in second.output


def test_global_env_file_applies_overrides(isolated_replay_home, tmp_path, snapshot_file, fast_config):
    # Arrange
    env_file = tmp_path / ".env"
    env_file.write_text("CX_REPLAY_CONTINUE_ON_FAILURE=true\n")
    steps_file = write_json(
        tmp_path / "steps.json",
        [
            {"id": "missing", "event": "click", "bundle": {"tag": "video", "id": "missing"}},
            {"id": "email", "event": "click", "bundle": {"tag": "input", "id": "email"}},
        ],
    )

    # Act
    result = runner.invoke(
        app,
        [
            "--env-file", str(env_file),
            "run", str(steps_file),
            "--snapshot", str(snapshot_file),
            "--config", str(fast_config),
        ],
    )

    # Assert
    assert result.exit_code == 1
    assert "FAILED" in result.output
    assert "PASSED" in result.output
