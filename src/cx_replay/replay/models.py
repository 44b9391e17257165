"""
Record types shared by the step executor, the replay controller and the
reporting layer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..locators.bundle import LocatorBundle

StepEvent = Literal["open", "click", "input", "enter"]
StepStatus = Literal["passed", "failed", "skipped"]
ReplayState = Literal["idle", "running", "paused", "completed", "failed"]

STEP_EVENTS: tuple[str, ...] = ("open", "click", "input", "enter")


class Step(BaseModel):
    """One recorded user action. Steps are immutable once constructed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Stable identifier of the step.")
    # Left as a plain string so unknown events reach validation instead of
    # failing at load time.
    event: str = Field(..., description="One of open, click, input, enter.")
    bundle: LocatorBundle | None = Field(
        None, description="Locator bundle; absent only for open steps."
    )
    value: str = Field("", description="Recorded value or URL.")
    label: str = Field("", description="Human label, also the CSV column key.")
    x: float | None = Field(None, description="Recorded pointer x.")
    y: float | None = Field(None, description="Recorded pointer y.")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Per-step overrides such as retry_attempts and timeout.",
    )


class StepResult(BaseModel):
    """Outcome of one step after all of its attempts."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    step_index: int
    status: StepStatus
    start_time: float
    end_time: float
    duration: float
    attempts: int
    error: str | None = None
    actual_value: str | None = None
    element_found: bool | None = None
    locator_used: str | None = None
    confidence: float | None = None
    metadata: dict[str, Any] | None = None


class ReplayResult(BaseModel):
    session_id: str
    test_case_id: str | None = None
    test_case_name: str = ""
    success: bool
    total_steps: int
    passed_steps: int
    failed_steps: int
    skipped_steps: int
    start_time: float
    end_time: float
    duration: float
    step_results: list[StepResult] = Field(default_factory=list)
    error_message: str | None = None


class ReplayStats(BaseModel):
    """Counters accumulated across sessions until reset."""

    replays_started: int = 0
    replays_completed: int = 0
    replays_failed: int = 0
    steps_passed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    total_duration: float = 0
    errors: int = 0


class ReplayProgress(BaseModel):
    current_step_index: int
    total_steps: int
    completed_steps: int
    failed_steps: int
    skipped_steps: int
    percentage: int
    current_step: Step | None = None
    elapsed_time: float
    estimated_remaining: float
    state: ReplayState


@dataclass
class ReplaySession:
    id: str
    test_case_name: str
    start_time: float
    steps: list[Step]
    state: ReplayState = "running"
    test_case_id: str | None = None
    end_time: float | None = None
    results: list[StepResult] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Breakpoint:
    """
    Pauses replay before a matching step. A breakpoint matches on the step id,
    the step index or an arbitrary predicate; it never alters step data.
    """

    step_id: str | None = None
    step_index: int | None = None
    condition: Callable[[Step, int], bool] | None = None
    enabled: bool = True

    def matches(self, step: Step, index: int) -> bool:
        if not self.enabled:
            return False
        if self.step_id and self.step_id == step.id:
            return True
        if self.step_index is not None and self.step_index == index:
            return True
        return bool(self.condition and self.condition(step, index))


@dataclass
class StepExecutionContext:
    """What the controller hands an injected step function for one attempt."""

    attempt: int
    max_attempts: int
    timeout: float
    cancel_event: asyncio.Event
    previous_result: StepResult | None = None
    session_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class StepExecutionResult:
    success: bool
    duration: float = 0.0
    error: str | None = None
    element_found: bool = False
    actual_value: str | None = None
    locator_used: str | None = None
    confidence: float | None = None
    metadata: dict[str, Any] | None = None


StepFunction = Callable[[Step, StepExecutionContext], Awaitable[StepExecutionResult]]
