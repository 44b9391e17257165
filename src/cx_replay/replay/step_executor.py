"""
Executes a single recorded step in phases: validate, pre-execute, locate,
verify, stabilize, act and post-execute. Each phase is timed and recorded.
A failing phase stops the step and yields a structured error; `execute`
never raises to its caller.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

import structlog

from ..config import StepExecutorOptions
from ..errors import ActionFailedError, FrameResolutionError, NavigationError, StepExecutionError
from ..locators.bundle import is_navigation_ready
from ..locators.dom import ElementNode, SearchRoot, is_interactable, is_visible, resolve_search_root
from ..locators.resolver import LocatorResolver
from ..utils import cancellable_sleep
from .actuators import Actuator, input_value
from .models import STEP_EVENTS, Step, StepExecutionContext, StepExecutionResult, StepFunction

logger = structlog.get_logger(__name__)

ErrorCode = Literal[
    "VALIDATION_FAILED",
    "ELEMENT_NOT_FOUND",
    "ELEMENT_NOT_VISIBLE",
    "ELEMENT_NOT_INTERACTABLE",
    "ELEMENT_NOT_STABLE",
    "CLICK_FAILED",
    "INPUT_FAILED",
    "ENTER_FAILED",
    "NAVIGATION_FAILED",
    "TIMEOUT",
    "UNKNOWN_EVENT",
    "CANCELLED",
    "UNKNOWN_ERROR",
]
ValueSource = Literal["injected", "csv-direct", "csv-mapped", "recorded", "none"]

ERROR_MESSAGES: dict[str, str] = {
    "VALIDATION_FAILED": "Step validation failed",
    "ELEMENT_NOT_FOUND": "Could not find element on page",
    "ELEMENT_NOT_VISIBLE": "Element exists but is not visible",
    "ELEMENT_NOT_INTERACTABLE": "Element is not interactable (disabled or hidden)",
    "ELEMENT_NOT_STABLE": "Element position is not stable",
    "CLICK_FAILED": "Failed to click element",
    "INPUT_FAILED": "Failed to input value into element",
    "ENTER_FAILED": "Failed to press Enter on element",
    "NAVIGATION_FAILED": "Navigation to URL failed",
    "TIMEOUT": "Operation timed out",
    "UNKNOWN_EVENT": "Unknown step event type",
    "CANCELLED": "Step was cancelled",
    "UNKNOWN_ERROR": "An unknown error occurred",
}

ERROR_SUGGESTIONS: dict[str, list[str]] = {
    "VALIDATION_FAILED": ["Check step has valid event type", "Ensure bundle is present"],
    "ELEMENT_NOT_FOUND": [
        "Verify the page is fully loaded",
        "Check if element is dynamically generated",
        "Try increasing timeout",
        "Re-record the step with updated locators",
    ],
    "ELEMENT_NOT_VISIBLE": [
        "Check if element is hidden by CSS",
        "Scroll the page to reveal element",
        "Wait for animations to complete",
    ],
    "ELEMENT_NOT_INTERACTABLE": [
        "Check if element is disabled",
        "Verify no overlay is blocking the element",
        "Wait for element to become enabled",
    ],
    "ELEMENT_NOT_STABLE": [
        "Wait for page animations to complete",
        "Increase stability check interval",
    ],
    "CLICK_FAILED": ["Verify element is clickable", "Check for overlaying elements"],
    "INPUT_FAILED": ["Verify element accepts input", "Check if element is readonly"],
    "ENTER_FAILED": [
        "Verify element can receive keyboard events",
        "Try focusing the element first",
    ],
    "NAVIGATION_FAILED": ["Check if URL is correct", "Verify network connectivity"],
    "TIMEOUT": ["Increase timeout value", "Check page load speed"],
    "UNKNOWN_EVENT": ["Check step event is one of: open, click, input, enter"],
    "CANCELLED": ["The replay was stopped while this step was running"],
    "UNKNOWN_ERROR": ["Check browser console for errors", "Try re-recording the step"],
}

# Failure code for the act phase of each event.
ACT_ERROR_CODES = {
    "open": "NAVIGATION_FAILED",
    "click": "CLICK_FAILED",
    "input": "INPUT_FAILED",
    "enter": "ENTER_FAILED",
}


@dataclass
class ExecutionPhase:
    name: str
    success: bool
    duration: float
    error: str | None = None


@dataclass
class StepError:
    code: str
    message: str
    phase: str
    details: str | None = None
    suggestions: list[str] = field(default_factory=list)

    @classmethod
    def from_exception(cls, error: StepExecutionError) -> "StepError":
        return cls(
            code=error.code,
            message=error.message,
            phase=error.phase or "unknown",
            details=error.details,
            suggestions=list(error.suggestions),
        )


@dataclass
class ExecutionContext:
    """Mutable state threaded through the phases and handed to hooks."""

    step: Step
    options: StepExecutorOptions
    start_time: float
    element: ElementNode | None = None
    strategy: str | None = None
    confidence: float = 0.0
    error: Exception | None = None
    cancel_event: asyncio.Event | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepExecutionOutcome:
    success: bool
    step: Step
    duration: float = 0.0
    error: StepError | None = None
    element: ElementNode | None = None
    used_value: str | None = None
    value_source: ValueSource | None = None
    locator_strategy: str | None = None
    locator_confidence: float | None = None
    phases: list[ExecutionPhase] = field(default_factory=list)


PreExecuteHook = Callable[[ExecutionContext], bool | Awaitable[bool]]
PostExecuteHook = Callable[[ExecutionContext, StepExecutionOutcome], None | Awaitable[None]]
RootProvider = Callable[[], SearchRoot | Awaitable[SearchRoot]]


def step_failure(code: str, phase: str, details: str | None = None) -> StepExecutionError:
    return StepExecutionError(
        code=code,
        message=ERROR_MESSAGES[code],
        phase=phase,
        details=details,
        suggestions=ERROR_SUGGESTIONS[code],
    )


def resolve_input_value(step: Step, options: StepExecutorOptions) -> tuple[str, ValueSource]:
    """
    The value to type for `step`: an injected value, then the CSV column named
    after the step label, then a CSV column mapped onto the label, then the
    recorded value.
    """
    if options.injected_value:
        return options.injected_value, "injected"
    row = options.csv_row
    if row is not None and step.label:
        if step.label in row:
            return row[step.label], "csv-direct"
        for column, label in options.field_mappings.items():
            if label == step.label and column in row:
                return row[column], "csv-mapped"
    if step.value:
        return step.value, "recorded"
    return "", "none"


def validation_problems(step: Step) -> list[str]:
    problems = []
    if not step.event:
        problems.append("Step is missing event type")
    elif step.event not in STEP_EVENTS:
        problems.append(f"Invalid event type: {step.event}")
    if step.event != "open":
        if step.bundle is None:
            problems.append("Step is missing bundle")
        elif not step.bundle.tag:
            problems.append("Bundle is missing tag for non-open step")
    return problems


def validate_step(step: Step) -> tuple[bool, list[str]]:
    """Static check of a step before replay, including locator quality."""
    problems = validation_problems(step)
    if step.event != "open" and step.bundle is not None and not is_navigation_ready(step.bundle):
        problems.append("Bundle has no reliable locator")
    return not problems, problems


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class StepExecutor:
    def __init__(
        self,
        resolver: LocatorResolver,
        actuator: Actuator,
        options: StepExecutorOptions | None = None,
    ):
        self.resolver = resolver
        self.actuator = actuator
        self.options = options or StepExecutorOptions()
        self._pre_hooks: list[PreExecuteHook] = []
        self._post_hooks: list[PostExecuteHook] = []

    def add_pre_hook(self, hook: PreExecuteHook):
        self._pre_hooks.append(hook)

    def add_post_hook(self, hook: PostExecuteHook):
        self._post_hooks.append(hook)

    def clear_hooks(self):
        self._pre_hooks.clear()
        self._post_hooks.clear()

    async def _phase(
        self,
        name: str,
        phases: list[ExecutionPhase],
        action: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Runs `action` as a recorded phase. Failures are recorded, then re-raised."""
        started = time.perf_counter()
        try:
            result = await action()
        except Exception as e:
            detail = e.details or e.message if isinstance(e, StepExecutionError) else str(e)
            phases.append(ExecutionPhase(name, False, _elapsed(started), detail))
            raise
        phases.append(ExecutionPhase(name, True, _elapsed(started)))
        return result

    async def execute(
        self,
        step: Step,
        root: SearchRoot,
        cancel_event: asyncio.Event | None = None,
        **option_overrides: Any,
    ) -> StepExecutionOutcome:
        """
        Runs every phase of `step` against `root`. Setting `cancel_event` stops
        the locator search and fails the step with `CANCELLED` after locate.
        """
        options = (
            self.options.model_copy(update=option_overrides) if option_overrides else self.options
        )
        started = time.perf_counter()
        context = ExecutionContext(
            step=step, options=options, start_time=started, cancel_event=cancel_event
        )
        phases: list[ExecutionPhase] = []
        log = logger.bind(step_id=step.id, event=step.event)

        try:
            await self._phase("validate", phases, lambda: self._validate(step))
            await self._phase("pre-execute", phases, lambda: self._run_pre_hooks(context))
            outcome = await self._dispatch(step, root, context, phases)
            await self._phase(
                "post-execute", phases, lambda: self._run_post_hooks(context, outcome)
            )
        except StepExecutionError as e:
            context.error = e
            log.info("Step failed.", code=e.code, phase=e.phase, details=e.details)
            return StepExecutionOutcome(
                success=False,
                step=step,
                duration=_elapsed(started),
                error=StepError.from_exception(e),
                element=context.element,
                locator_strategy=context.strategy,
                locator_confidence=context.confidence or None,
                phases=phases,
            )
        except Exception as e:
            context.error = e
            log.error("Step raised an unexpected error.", error=str(e), exc_info=True)
            return StepExecutionOutcome(
                success=False,
                step=step,
                duration=_elapsed(started),
                error=StepError.from_exception(step_failure("UNKNOWN_ERROR", "unknown", str(e))),
                phases=phases,
            )

        await cancellable_sleep(options.delay_after, cancel_event)
        outcome.duration = _elapsed(started)
        outcome.phases = phases
        log.info(
            "Step passed.",
            strategy=outcome.locator_strategy,
            confidence=outcome.locator_confidence,
        )
        return outcome

    async def execute_steps(
        self, steps: list[Step], root: SearchRoot, stop_on_failure: bool = True
    ) -> list[StepExecutionOutcome]:
        outcomes = []
        for step in steps:
            outcome = await self.execute(step, root)
            outcomes.append(outcome)
            if not outcome.success and stop_on_failure:
                break
        return outcomes

    # --- Phases ---

    async def _validate(self, step: Step):
        if step.event and step.event not in STEP_EVENTS:
            raise step_failure("UNKNOWN_EVENT", "validate", f"Unknown event type: {step.event}")
        problems = validation_problems(step)
        if problems:
            raise step_failure("VALIDATION_FAILED", "validate", "; ".join(problems))

    async def _run_pre_hooks(self, context: ExecutionContext):
        for hook in self._pre_hooks:
            if not await _maybe_await(hook(context)):
                raise step_failure(
                    "VALIDATION_FAILED", "pre-execute", "Pre-execution hook returned false"
                )

    async def _run_post_hooks(self, context: ExecutionContext, outcome: StepExecutionOutcome):
        for hook in self._post_hooks:
            try:
                await _maybe_await(hook(context, outcome))
            except StepExecutionError:
                raise
            except Exception as e:
                raise step_failure(
                    "UNKNOWN_ERROR", "post-execute", f"Post-execution hook failed: {e}"
                ) from e

    async def _dispatch(
        self,
        step: Step,
        root: SearchRoot,
        context: ExecutionContext,
        phases: list[ExecutionPhase],
    ) -> StepExecutionOutcome:
        if step.event == "open":
            return await self._execute_open(step, context, phases)

        element = await self._phase("locate", phases, lambda: self._locate(step, root, context))
        options = context.options
        if options.verify_interactable:
            await self._phase("verify", phases, lambda: self._verify(element))
        if options.wait_for_stable:
            await self._phase("stabilize", phases, lambda: self._stabilize(element, options))

        used_value, source = None, None
        if step.event == "input" or (
            step.event == "enter" and options.press_enter_after_input
        ):
            used_value, source = resolve_input_value(step, options)
        await self._phase(
            "act", phases, lambda: self._act(step.event, element, used_value, options)
        )
        return StepExecutionOutcome(
            success=True,
            step=step,
            element=element,
            used_value=used_value,
            value_source=source,
            locator_strategy=context.strategy,
            locator_confidence=context.confidence,
        )

    async def _execute_open(
        self, step: Step, context: ExecutionContext, phases: list[ExecutionPhase]
    ) -> StepExecutionOutcome:
        url = step.value or (step.bundle.page_url if step.bundle else "")
        if not url:
            raise step_failure("NAVIGATION_FAILED", "act", "No URL specified")

        async def navigate():
            try:
                await self.actuator.navigate(url)
            except (NavigationError, ActionFailedError) as e:
                raise step_failure("NAVIGATION_FAILED", "act", str(e)) from e

        await self._phase("act", phases, navigate)
        return StepExecutionOutcome(
            success=True, step=step, used_value=url, value_source="recorded"
        )

    async def _locate(
        self, step: Step, root: SearchRoot, context: ExecutionContext
    ) -> ElementNode:
        options = context.options
        try:
            scoped = resolve_search_root(
                root, step.bundle, options.search_iframes, options.search_shadow_dom
            )
        except FrameResolutionError as e:
            raise step_failure("ELEMENT_NOT_FOUND", "locate", str(e)) from e

        resolution = await self.resolver.resolve(
            step.bundle,
            scoped,
            cancel_event=context.cancel_event,
            timeout=options.timeout,
            resolve_frames=False,
        )
        if context.cancel_event is not None and context.cancel_event.is_set():
            raise step_failure("CANCELLED", "locate", "Replay stopped during locate")
        if not resolution.success or resolution.element is None:
            raise step_failure("ELEMENT_NOT_FOUND", "locate", resolution.error)
        context.element = resolution.element
        context.strategy = resolution.strategy
        context.confidence = resolution.confidence
        return resolution.element

    async def _verify(self, element: ElementNode):
        if not is_visible(element):
            raise step_failure("ELEMENT_NOT_VISIBLE", "verify", "Element is not visible")
        if not is_interactable(element):
            raise step_failure("ELEMENT_NOT_INTERACTABLE", "verify", "Element is not interactable")

    async def _stabilize(self, element: ElementNode, options: StepExecutorOptions):
        """Samples the element's rectangle until two consecutive samples agree."""
        previous = await self.actuator.bounding_rect(element)
        for _ in range(options.stability_checks):
            await asyncio.sleep(options.stability_interval / 1000)
            current = await self.actuator.bounding_rect(element)
            if current == previous:
                return
            previous = current
        raise step_failure(
            "ELEMENT_NOT_STABLE",
            "stabilize",
            f"Position still changing after {options.stability_checks} checks",
        )

    async def _act(
        self,
        event: str,
        element: ElementNode,
        value: str | None,
        options: StepExecutorOptions,
    ):
        code = ACT_ERROR_CODES[event]
        try:
            if options.scroll_into_view:
                await self.actuator.scroll_into_view(element)
            if event == "click":
                await self.actuator.click(element)
            elif event == "input":
                await input_value(self.actuator, element, value or "")
            elif event == "enter":
                if value:
                    await input_value(self.actuator, element, value)
                await self.actuator.press_enter(element)
        except (ActionFailedError, NavigationError) as e:
            raise step_failure(code, "act", str(e)) from e

    # --- Controller integration ---

    def as_step_function(self, root_provider: RootProvider) -> StepFunction:
        """
        Adapts this executor to the controller's injected step function. The
        root is fetched afresh for every attempt so retries see the current page.
        """

        async def run(step: Step, context: StepExecutionContext) -> StepExecutionResult:
            root = await _maybe_await(root_provider())
            outcome = await self.execute(step, root, cancel_event=context.cancel_event)
            return StepExecutionResult(
                success=outcome.success,
                duration=outcome.duration,
                error=get_error_summary(outcome),
                element_found=outcome.element is not None,
                actual_value=outcome.used_value,
                locator_used=outcome.locator_strategy,
                confidence=outcome.locator_confidence,
                metadata={
                    "error_code": outcome.error.code if outcome.error else None,
                    "phases": [p.name for p in outcome.phases],
                    "attempt": context.attempt,
                },
            )

        return run


def _elapsed(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def describe_step(step: Step) -> str:
    bundle = step.bundle
    target = (bundle.id or bundle.name or bundle.tag) if bundle else ""
    target = target or "element"
    if step.event == "open":
        return f"Navigate to {step.value or (bundle.page_url if bundle else '') or 'URL'}"
    if step.event == "click":
        return f"Click on {target}"
    if step.event == "input":
        return f'Enter "{step.value}" into {target}'
    if step.event == "enter":
        return f"Press Enter on {target}"
    return f"Unknown action on {target}"


def get_error_summary(outcome: StepExecutionOutcome) -> str | None:
    if outcome.success:
        return None
    if outcome.error is None:
        return "Unknown error"
    if outcome.error.details:
        return f"{outcome.error.message}: {outcome.error.details}"
    return outcome.error.message


def create_execution_report(outcomes: list[StepExecutionOutcome]) -> dict[str, Any]:
    total = len(outcomes)
    passed = sum(1 for o in outcomes if o.success)
    failed = total - passed
    total_duration = sum(o.duration for o in outcomes)
    return {
        "total_steps": total,
        "passed_steps": passed,
        "failed_steps": failed,
        "total_duration": round(total_duration),
        "average_duration": round(total_duration / total) if total else 0,
        "errors": [
            {"step": index + 1, "error": get_error_summary(o) or "Unknown error"}
            for index, o in enumerate(outcomes)
            if not o.success
        ],
        "summary": (
            f"All {total} steps passed in {round(total_duration)}ms"
            if failed == 0
            else f"{failed}/{total} steps failed"
        ),
    }
