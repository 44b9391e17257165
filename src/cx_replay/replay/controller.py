"""
Session-level replay state machine.

`ReplayController` sequences steps through an injected step function (see
`StepExecutor.as_step_function`), retrying each step with exponential backoff
under a per-attempt timeout. It supports pause/resume, single-stepping while
paused, breakpoints and cooperative cancellation, and keeps statistics that
survive across sessions until `reset_stats()` is called.
"""

import asyncio
import random
import string
from typing import Any, Callable

import structlog

from ..config import ReplayOptions
from ..errors import InvalidStateTransitionError, ReplayCancelledError, ReplayStateError
from ..utils import cancellable_sleep, now_ms
from .backoff import compute_backoff_delay
from .models import (
    Breakpoint,
    ReplayProgress,
    ReplayResult,
    ReplaySession,
    ReplayState,
    ReplayStats,
    Step,
    StepExecutionContext,
    StepExecutionResult,
    StepFunction,
    StepResult,
)

logger = structlog.get_logger(__name__)

STATE_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "idle": ("running",),
    "running": ("paused", "completed", "failed", "idle"),
    "paused": ("running", "idle", "completed"),
    "completed": ("idle",),
    "failed": ("idle", "running"),
}

MAX_RETRY_ATTEMPTS = 10
DEFAULT_STEP_DURATION = 1000
DEFAULT_TEST_CASE_NAME = "Unnamed Test"


def _random_suffix(length: int = 7) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_session_id() -> str:
    return f"replay-{int(now_ms())}-{_random_suffix()}"


def generate_breakpoint_id() -> str:
    return f"bp-{int(now_ms())}-{_random_suffix()}"


def can_transition(current: str, requested: str) -> bool:
    return requested in STATE_TRANSITIONS.get(current, ())


class PauseGate:
    """
    One-shot gate: `release()` lets exactly one pending or future `wait()`
    through, after which the gate closes again.
    """

    def __init__(self):
        self._event = asyncio.Event()

    async def wait(self):
        await self._event.wait()
        self._event.clear()

    def release(self):
        self._event.set()

    def close(self):
        self._event.clear()


async def simulated_step(step: Step, context: StepExecutionContext) -> StepExecutionResult:
    """Stand-in used when no step function is injected; always succeeds."""
    await asyncio.sleep(0.05)
    bundle = step.bundle
    return StepExecutionResult(
        success=True,
        duration=50,
        element_found=True,
        locator_used=(bundle.css or bundle.xpath) if bundle else None,
    )


class ReplayController:
    def __init__(
        self,
        options: ReplayOptions | None = None,
        step_function: StepFunction | None = None,
        on_progress: Callable[[ReplayProgress], None] | None = None,
        on_step_complete: Callable[[StepResult], None] | None = None,
        on_state_change: Callable[[ReplayState, ReplayState], None] | None = None,
        on_error: Callable[[str, Step], None] | None = None,
        on_complete: Callable[[ReplayResult], None] | None = None,
    ):
        self._options = options or ReplayOptions()
        self.step_function = step_function or simulated_step
        self.on_progress = on_progress
        self.on_step_complete = on_step_complete
        self.on_state_change = on_state_change
        self.on_error = on_error
        self.on_complete = on_complete

        self._state: ReplayState = "idle"
        self._session: ReplaySession | None = None
        self._steps: list[Step] = []
        self._current_index = 0
        self._results: list[StepResult] = []
        self._step_timings: list[float] = []
        self._start_time = 0.0
        self._breakpoints: dict[str, Breakpoint] = {}
        self._released_breakpoint_index: int | None = None
        self._gate = PauseGate()
        self._cancel = asyncio.Event()
        self._run_active = False
        self._stats = ReplayStats()

    # --- Properties ---

    @property
    def state(self) -> ReplayState:
        return self._state

    @property
    def session(self) -> ReplaySession | None:
        return self._session

    @property
    def options(self) -> ReplayOptions:
        return self._options

    @property
    def current_step_index(self) -> int:
        return self._current_index

    @property
    def is_running(self) -> bool:
        return self._state == "running"

    @property
    def is_paused(self) -> bool:
        return self._state == "paused"

    @property
    def is_idle(self) -> bool:
        return self._state == "idle"

    @property
    def is_completed(self) -> bool:
        return self._state == "completed"

    @property
    def is_active(self) -> bool:
        """True while a `start()` call has not returned, even after `stop()`."""
        return self._run_active

    @property
    def progress(self) -> ReplayProgress:
        return self._calculate_progress()

    # --- State machine ---

    def _transition(self, requested: ReplayState):
        previous = self._state
        if not can_transition(previous, requested):
            raise InvalidStateTransitionError(previous, requested)
        self._state = requested
        if self._session is not None:
            self._session.state = requested
        logger.debug("Replay state changed.", previous=previous, current=requested)
        if self.on_state_change:
            self.on_state_change(requested, previous)

    # --- Lifecycle ---

    async def start(
        self,
        steps: list[Step],
        session_id: str | None = None,
        test_case_id: str | None = None,
        test_case_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReplayResult:
        """
        Replays `steps` in order and returns the session result.

        Raises:
            ReplayStateError: If `steps` is empty, a previous replay is still
                              finishing, or a replay cannot start from the
                              current state.
        """
        if self._run_active:
            raise ReplayStateError("A previous replay is still finishing")
        if not can_transition(self._state, "running"):
            raise ReplayStateError(f"Cannot start replay from state '{self._state}'")
        if not steps:
            raise ReplayStateError("No steps to replay")

        self._start_time = now_ms()
        self._steps = list(steps)
        self._current_index = 0
        self._results = []
        self._step_timings = []
        self._released_breakpoint_index = None
        cancel = asyncio.Event()
        self._cancel = cancel
        self._gate = PauseGate()
        self._session = ReplaySession(
            id=session_id or generate_session_id(),
            test_case_name=test_case_name or DEFAULT_TEST_CASE_NAME,
            test_case_id=test_case_id,
            start_time=self._start_time,
            steps=self._steps,
            metadata=dict(metadata or {}),
        )
        self._transition("running")
        self._stats.replays_started += 1
        self._run_active = True
        try:
            return await self._run(cancel)
        finally:
            self._run_active = False

    async def _run(self, cancel: asyncio.Event) -> ReplayResult:
        log = logger.bind(session_id=self._session.id)
        log.info("Replay started.", steps=len(self._steps))

        halted = False
        try:
            halted = await self._run_loop(cancel)
        except ReplayCancelledError:
            log.info("Replay cancelled.", step_index=self._current_index)
        except Exception as e:
            self._stats.errors += 1
            log.error("Replay loop raised an unexpected error.", error=str(e), exc_info=True)
            halted = True

        aborted = cancel.is_set()
        if not aborted:
            if self._state == "paused":
                # Paused while the last step was in flight.
                self._transition("running")
                self._gate.release()
            failed = halted or any(r.status == "failed" for r in self._results)
            if failed and not (self._options.continue_on_failure and not halted):
                self._transition("failed")
            else:
                self._transition("completed")

        result = self._build_result()
        self._session.end_time = result.end_time
        self._session.results = list(self._results)
        self._stats.total_duration += result.duration
        if not aborted:
            if result.success:
                self._stats.replays_completed += 1
            else:
                self._stats.replays_failed += 1
        log.info(
            "Replay finished.",
            state=self._state,
            passed=result.passed_steps,
            failed=result.failed_steps,
            skipped=result.skipped_steps,
            duration=round(result.duration),
        )
        if self.on_complete:
            self.on_complete(result)
        return result

    async def _run_loop(self, cancel: asyncio.Event) -> bool:
        """Drives the queue. Returns True when a failure halted the session."""
        while self._current_index < len(self._steps):
            if cancel.is_set():
                raise ReplayCancelledError("Replay cancelled")

            if self._state == "paused":
                await self._gate.wait()
                continue

            index = self._current_index
            step = self._steps[index]
            if self._released_breakpoint_index != index and self._should_break(step, index):
                logger.info("Breakpoint hit.", step_id=step.id, step_index=index)
                self._released_breakpoint_index = index
                self.pause()
                continue

            result = await self._execute_step(step, index, cancel)
            if cancel.is_set():
                raise ReplayCancelledError("Replay cancelled")
            if result.status == "failed" and not self._options.continue_on_failure:
                return True

            if await cancellable_sleep(self._options.wait_between_steps, cancel):
                raise ReplayCancelledError("Replay cancelled")
            if self._options.slow_motion and await cancellable_sleep(
                self._options.slow_motion_delay, cancel
            ):
                raise ReplayCancelledError("Replay cancelled")

            self._advance()
        return False

    def _advance(self):
        self._current_index += 1
        self._released_breakpoint_index = None
        self._report_progress()

    def stop(self):
        """Cancels the replay. Completed step results are kept."""
        if self._state == "idle":
            return
        self._cancel.set()
        self._transition("idle")
        # Wake a loop parked on the pause gate so it can observe cancellation.
        self._gate.release()
        logger.info("Replay stopped.", step_index=self._current_index)

    def pause(self):
        if self._state != "running":
            raise ReplayStateError(f"Cannot pause replay from state '{self._state}'")
        self._gate.close()
        self._transition("paused")

    def resume(self):
        if self._state != "paused":
            raise ReplayStateError(f"Cannot resume replay from state '{self._state}'")
        self._transition("running")
        self._gate.release()

    async def step_once(self) -> StepResult | None:
        """Executes the current step while paused and advances past it."""
        if self._state != "paused":
            raise ReplayStateError("Can only step when paused")
        if self._current_index >= len(self._steps):
            return None
        result = await self._execute_step(
            self._steps[self._current_index], self._current_index, self._cancel
        )
        self._advance()
        return result

    def skip_current_step(self):
        if self._current_index >= len(self._steps):
            return
        now = now_ms()
        self._results.append(
            StepResult(
                step_id=self._steps[self._current_index].id,
                step_index=self._current_index,
                status="skipped",
                start_time=now,
                end_time=now,
                duration=0,
                attempts=0,
            )
        )
        self._stats.steps_skipped += 1
        self._advance()

    def destroy(self):
        self.stop()
        self._breakpoints.clear()
        self.on_progress = None
        self.on_step_complete = None
        self.on_state_change = None
        self.on_error = None
        self.on_complete = None

    # --- Step execution ---

    def _max_attempts(self, step: Step) -> int:
        attempts = step.metadata.get("retry_attempts", self._options.retry_attempts)
        return max(1, min(MAX_RETRY_ATTEMPTS, int(attempts)))

    async def _execute_step(self, step: Step, index: int, cancel: asyncio.Event) -> StepResult:
        max_attempts = self._max_attempts(step)
        timeout = float(step.metadata.get("timeout", self._options.step_timeout))
        started = now_ms()
        log = logger.bind(step_id=step.id, step_index=index)

        last: StepExecutionResult | None = None
        previous: StepResult | None = self._results[-1] if self._results else None
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            if cancel.is_set():
                break
            context = StepExecutionContext(
                attempt=attempt,
                max_attempts=max_attempts,
                timeout=timeout,
                cancel_event=cancel,
                previous_result=previous,
                session_metadata=self._session.metadata if self._session else {},
            )
            try:
                last = await asyncio.wait_for(
                    self.step_function(step, context), timeout=timeout / 1000
                )
            except asyncio.TimeoutError:
                last = StepExecutionResult(success=False, error=f"Step timeout after {timeout:g}ms")
            except Exception as e:
                last = StepExecutionResult(success=False, error=str(e))

            if last.success:
                ended = now_ms()
                result = StepResult(
                    step_id=step.id,
                    step_index=index,
                    status="passed",
                    start_time=started,
                    end_time=ended,
                    duration=ended - started,
                    attempts=attempt,
                    actual_value=last.actual_value,
                    element_found=last.element_found,
                    locator_used=last.locator_used,
                    confidence=last.confidence,
                    metadata=last.metadata,
                )
                self._step_timings.append(result.duration)
                self._record(result)
                self._stats.steps_passed += 1
                log.debug("Step passed.", attempts=attempt)
                return result

            log.debug("Step attempt failed.", attempt=attempt, error=last.error)
            if attempt < max_attempts and not cancel.is_set():
                delay = compute_backoff_delay(
                    attempt,
                    self._options.retry_delay,
                    self._options.backoff_multiplier,
                    self._options.max_retry_delay,
                )
                if await cancellable_sleep(delay, cancel):
                    break

        ended = now_ms()
        error = (last.error if last else None) or "Unknown error"
        result = StepResult(
            step_id=step.id,
            step_index=index,
            status="failed",
            start_time=started,
            end_time=ended,
            duration=ended - started,
            attempts=attempt,
            error=error,
            element_found=last.element_found if last else None,
            locator_used=last.locator_used if last else None,
            metadata=last.metadata if last else None,
        )
        self._record(result)
        self._stats.steps_failed += 1
        log.warning("Step failed after all attempts.", attempts=attempt, error=error)
        if self.on_error:
            self.on_error(error, step)
        return result

    def _record(self, result: StepResult):
        self._results.append(result)
        if self.on_step_complete:
            self.on_step_complete(result)

    # --- Breakpoints ---

    def add_breakpoint(
        self,
        step_id: str | None = None,
        step_index: int | None = None,
        condition: Callable[[Step, int], bool] | None = None,
    ) -> str:
        if step_id is None and step_index is None and condition is None:
            raise ValueError("A breakpoint needs a step id, a step index or a condition.")
        breakpoint_id = generate_breakpoint_id()
        self._breakpoints[breakpoint_id] = Breakpoint(
            step_id=step_id, step_index=step_index, condition=condition, enabled=True
        )
        return breakpoint_id

    def remove_breakpoint(self, breakpoint_id: str) -> bool:
        return self._breakpoints.pop(breakpoint_id, None) is not None

    def set_breakpoint_enabled(self, breakpoint_id: str, enabled: bool) -> bool:
        breakpoint = self._breakpoints.get(breakpoint_id)
        if breakpoint is None:
            return False
        breakpoint.enabled = enabled
        return True

    def clear_breakpoints(self):
        self._breakpoints.clear()

    def get_breakpoints(self) -> dict[str, Breakpoint]:
        return dict(self._breakpoints)

    def _should_break(self, step: Step, index: int) -> bool:
        return any(bp.matches(step, index) for bp in self._breakpoints.values())

    # --- Progress, results and stats ---

    def _calculate_progress(self) -> ReplayProgress:
        total = len(self._steps)
        timings = self._step_timings
        average = sum(timings) / len(timings) if timings else DEFAULT_STEP_DURATION
        return ReplayProgress(
            current_step_index=self._current_index,
            total_steps=total,
            completed_steps=sum(1 for r in self._results if r.status == "passed"),
            failed_steps=sum(1 for r in self._results if r.status == "failed"),
            skipped_steps=sum(1 for r in self._results if r.status == "skipped"),
            percentage=round(self._current_index / total * 100) if total else 0,
            current_step=self._steps[self._current_index] if self._current_index < total else None,
            elapsed_time=now_ms() - self._start_time if self._start_time > 0 else 0,
            estimated_remaining=(total - self._current_index) * average,
            state=self._state,
        )

    def _report_progress(self):
        if self.on_progress:
            self.on_progress(self._calculate_progress())

    def _build_result(self) -> ReplayResult:
        passed = sum(1 for r in self._results if r.status == "passed")
        failed = [r for r in self._results if r.status == "failed"]
        skipped = sum(1 for r in self._results if r.status == "skipped")
        ended = now_ms()
        return ReplayResult(
            session_id=self._session.id if self._session else "",
            test_case_id=self._session.test_case_id if self._session else None,
            test_case_name=self._session.test_case_name if self._session else "",
            success=not failed,
            total_steps=len(self._steps),
            passed_steps=passed,
            failed_steps=len(failed),
            skipped_steps=skipped,
            start_time=self._start_time,
            end_time=ended,
            duration=ended - self._start_time,
            step_results=list(self._results),
            error_message=failed[0].error if failed else None,
        )

    def get_step_results(self) -> list[StepResult]:
        return list(self._results)

    def get_stats(self) -> ReplayStats:
        return self._stats.model_copy()

    def reset_stats(self):
        self._stats = ReplayStats()

    def update_options(self, **changes: Any):
        self._options = self._options.model_copy(update=changes)
