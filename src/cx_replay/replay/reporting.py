"""
Summaries of finished replays and the persisted test-run record shape, plus
loaders for recorder step and bundle files.
"""

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from ..errors import BundleValidationError
from ..locators.bundle import LocatorBundle
from ..utils import load_document
from .models import ReplayResult, Step

logger = structlog.get_logger(__name__)

TestRunStatus = Literal["pending", "running", "passed", "failed", "stopped"]


class ExecutionSummary(BaseModel):
    total_steps: int
    passed_steps: int
    failed_steps: int
    skipped_steps: int
    duration: float
    success: bool
    first_error: str | None = None
    stopped_early: bool = False
    stopped_at_index: int | None = None

    @classmethod
    def from_result(cls, result: ReplayResult) -> "ExecutionSummary":
        attempted = len(result.step_results)
        stopped_early = attempted < result.total_steps
        return cls(
            total_steps=result.total_steps,
            passed_steps=result.passed_steps,
            failed_steps=result.failed_steps,
            skipped_steps=result.skipped_steps,
            duration=result.duration,
            success=result.success and not stopped_early,
            first_error=result.error_message,
            stopped_early=stopped_early,
            stopped_at_index=attempted if stopped_early else None,
        )


class TestRun(BaseModel):
    """The record a storage collaborator persists for one replay."""

    __test__ = False  # keep pytest from collecting this model

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str | None = None
    status: TestRunStatus = "pending"
    start_time: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    end_time: str | None = None
    total_steps: int = 0
    passed_steps: int = 0
    failed_steps: int = 0
    # Newline-joined, not a list.
    logs: str = ""
    test_results: list[dict[str, Any]] = Field(default_factory=list)


def _iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def append_log(run: TestRun, line: str) -> TestRun:
    logs = f"{run.logs}\n{line}" if run.logs else line
    return run.model_copy(update={"logs": logs})


def build_test_run(
    result: ReplayResult,
    project_id: str | None = None,
    stopped: bool = False,
    run_id: str | None = None,
) -> TestRun:
    if stopped:
        status: TestRunStatus = "stopped"
    else:
        status = "passed" if result.success else "failed"

    run = TestRun(
        id=run_id or result.session_id,
        project_id=project_id,
        status=status,
        start_time=_iso(result.start_time),
        end_time=_iso(result.end_time),
        total_steps=result.total_steps,
        passed_steps=result.passed_steps,
        failed_steps=result.failed_steps,
        test_results=[r.model_dump() for r in result.step_results],
    )
    run = append_log(run, f"Replay {result.session_id} started: {result.total_steps} steps")
    for step_result in result.step_results:
        line = f"[{step_result.step_index + 1}] {step_result.step_id}: {step_result.status}"
        if step_result.error:
            line += f" ({step_result.error})"
        run = append_log(run, line)
    return append_log(
        run,
        f"Finished with status {status} in {round(result.duration)}ms",
    )


def _steps_payload(document: Any) -> list[Any]:
    # Recorder exports wrap steps in a test-case object.
    if isinstance(document, dict):
        document = document.get("steps") or document.get("recorded_steps") or []
    if not isinstance(document, list):
        raise BundleValidationError("Expected a list of steps.")
    return document


def load_steps(path: Path) -> list[Step]:
    """Loads recorded steps from a JSON or YAML file."""
    document = load_document(path)
    steps = []
    for index, raw in enumerate(_steps_payload(document)):
        if isinstance(raw, dict) and "id" not in raw:
            raw = {**raw, "id": f"step-{index + 1}"}
        try:
            steps.append(Step.model_validate(raw))
        except ValidationError as e:
            raise BundleValidationError(f"Step {index + 1} in {path} is invalid: {e}") from e
    logger.debug("Loaded steps.", path=str(path), count=len(steps))
    return steps


def load_bundle(path: Path) -> LocatorBundle:
    document = load_document(path)
    if isinstance(document, dict) and isinstance(document.get("bundle"), dict):
        document = document["bundle"]
    try:
        return LocatorBundle.model_validate(document)
    except ValidationError as e:
        raise BundleValidationError(f"Invalid locator bundle in {path}: {e}") from e
