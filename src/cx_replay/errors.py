"""
Custom exceptions used by the locator resolution and replay engine.
"""


class ReplayCoreError(Exception):
    """Base exception for all replay-related errors."""

    pass


class ConfigurationError(ReplayCoreError):
    """Error related to resolver, executor or replay configuration."""

    pass


class BundleValidationError(ReplayCoreError):
    """A locator bundle or recorded step is malformed."""

    pass


class SelectorSyntaxError(ReplayCoreError):
    """A CSS or XPath expression could not be parsed."""

    pass


class FrameResolutionError(ReplayCoreError):
    """An iframe or shadow-host hop recorded in a bundle could not be followed."""

    pass


class InvalidStateTransitionError(ReplayCoreError):
    """The replay state machine was asked to move along an edge it does not have."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid replay state transition: {current} -> {requested}"
        )


class ReplayStateError(ReplayCoreError):
    """An operation was invoked while the controller was in the wrong state."""

    pass


class ReplayCancelledError(ReplayCoreError):
    """The replay was stopped by the caller."""

    pass


class StepTimeoutError(ReplayCoreError):
    """A single step attempt exceeded its time budget."""

    pass


class ActionFailedError(ReplayCoreError):
    """An action (click, input, enter) failed against a located element."""

    pass


class NavigationError(ReplayCoreError):
    """Navigating to a recorded URL failed."""

    pass


class BrowserSnapshotError(ReplayCoreError):
    """Capturing the live page into a searchable tree failed."""

    pass


class StepExecutionError(ReplayCoreError):
    """
    A phase of step execution failed. Carries the error code from the fixed
    taxonomy, the failing phase and canned remediation suggestions.
    """

    def __init__(
        self,
        code: str,
        message: str,
        phase: str | None = None,
        details: str | None = None,
        suggestions: list[str] | None = None,
    ):
        self.code = code
        self.message = message
        self.phase = phase
        self.details = details
        self.suggestions = suggestions or []
        super().__init__(message)
