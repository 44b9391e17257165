import json
from pathlib import Path

import pytest
import yaml

from cx_replay.errors import BundleValidationError
from cx_replay.replay.models import ReplayResult, StepResult
from cx_replay.replay.reporting import (
    ExecutionSummary,
    TestRun,
    append_log,
    build_test_run,
    load_bundle,
    load_steps,
)


def step_result(index: int, status: str, error: str | None = None) -> StepResult:
    return StepResult(
        step_id=f"s{index + 1}",
        step_index=index,
        status=status,
        start_time=1_700_000_000_000,
        end_time=1_700_000_000_100,
        duration=100,
        attempts=1,
        error=error,
    )


@pytest.fixture
def halted_result() -> ReplayResult:
    """Three of five steps attempted; the third failed and stopped the replay."""
    return ReplayResult(
        session_id="replay-1",
        success=False,
        total_steps=5,
        passed_steps=2,
        failed_steps=1,
        skipped_steps=0,
        start_time=1_700_000_000_000,
        end_time=1_700_000_000_450,
        duration=450,
        step_results=[
            step_result(0, "passed"),
            step_result(1, "passed"),
            step_result(2, "failed", "Could not find element on page"),
        ],
        error_message="Could not find element on page",
    )


def test_execution_summary_detects_early_stop(halted_result):
    summary = ExecutionSummary.from_result(halted_result)

    assert summary.stopped_early is True
    assert summary.stopped_at_index == 3
    assert summary.success is False
    assert summary.first_error == "Could not find element on page"


def test_build_test_run(halted_result):
    # Act
    run = build_test_run(halted_result, project_id="proj-1")

    # Assert
    assert run.id == "replay-1"
    assert run.project_id == "proj-1"
    assert run.status == "failed"
    assert run.total_steps == 5
    assert run.passed_steps == 2
    assert run.failed_steps == 1
    assert run.start_time.startswith("2023-11-14T22:13:20")
    assert len(run.test_results) == 3
    assert run.logs.split("\n") == [
        "Replay replay-1 started: 5 steps",
        "[1] s1: passed",
        "[2] s2: passed",
        "[3] s3: failed (Could not find element on page)",
        "Finished with status failed in 450ms",
    ]


def test_build_test_run_stopped(halted_result):
    run = build_test_run(halted_result, stopped=True, run_id="run-9")

    assert run.status == "stopped"
    assert run.id == "run-9"


def test_append_log_returns_a_new_run():
    run = TestRun()

    first = append_log(run, "one")
    second = append_log(first, "two")

    assert run.logs == ""
    assert first.logs == "one"
    assert second.logs == "one\ntwo"
    assert run.status == "pending"


def test_load_steps_from_recorder_export(tmp_path: Path):
    # Arrange
    path = tmp_path / "login.json"
    path.write_text(
        json.dumps(
            {
                "name": "Login",
                "recorded_steps": [
                    {"event": "open", "value": "https://app.example.com/login"},
                    {
                        "id": "email",
                        "event": "input",
                        "value": "ada@example.com",
                        "bundle": {"tag": "input", "id": "email", "dataAttrs": {"testid": "email"}},
                    },
                ],
            }
        )
    )

    # Act
    steps = load_steps(path)

    # Assert
    assert [s.id for s in steps] == ["step-1", "email"]
    assert steps[0].bundle is None
    assert steps[1].bundle.data_attrs == {"testid": "email"}


def test_load_steps_from_yaml_list(tmp_path: Path):
    path = tmp_path / "steps.yaml"
    path.write_text(yaml.safe_dump([{"event": "click", "bundle": {"tag": "button", "id": "go"}}]))

    steps = load_steps(path)

    assert steps[0].id == "step-1"
    assert steps[0].bundle.id == "go"


def test_load_steps_rejects_invalid_documents(tmp_path: Path):
    not_a_list = tmp_path / "bad.yaml"
    not_a_list.write_text("just a string\n")
    missing_event = tmp_path / "missing.yaml"
    missing_event.write_text(yaml.safe_dump([{"value": "x"}]))

    with pytest.raises(BundleValidationError, match="list of steps"):
        load_steps(not_a_list)
    with pytest.raises(BundleValidationError, match="Step 1"):
        load_steps(missing_event)


def test_load_bundle_unwraps_bundle_key(tmp_path: Path):
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"bundle": {"tag": "input", "id": "email"}}))
    bare = tmp_path / "bare.yaml"
    bare.write_text(yaml.safe_dump({"tag": "a", "text": "Home"}))
    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"bounding": "not a box"}))

    assert load_bundle(wrapped).id == "email"
    assert load_bundle(bare).text == "Home"
    with pytest.raises(BundleValidationError):
        load_bundle(invalid)
