"""
Drives the registered strategies against a bundle until one of them finds
the recorded element with enough confidence, retrying on an interval until
the deadline passes.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from ..config import ResolverConfig
from ..errors import FrameResolutionError
from ..utils import cancellable_sleep
from .bundle import LocatorBundle
from .dom import ElementNode, SearchRoot, resolve_search_root
from .registry import StrategyRegistry
from .strategies.base import LocatorResult, LocatorStrategy, elapsed_ms

logger = structlog.get_logger(__name__)

NO_STRATEGIES = "No strategies available"
TIMED_OUT = "Resolution timed out"
NO_MATCH = "No matching element found"
CANCELLED = "Resolution cancelled"


@dataclass
class StrategyAttempt:
    strategy: str
    can_handle: bool
    result: LocatorResult | None
    duration: float
    error: str | None = None


@dataclass
class ResolutionResult:
    element: ElementNode | None
    confidence: float
    strategy: str | None
    duration: float
    retry_cycles: int = 0
    attempts: list[StrategyAttempt] = field(default_factory=list)
    timed_out: bool = False
    success: bool = False
    best_result: LocatorResult | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.success and self.element is not None and self.confidence > 0


def meets_confidence_threshold(result: LocatorResult | None, min_confidence: float) -> bool:
    return result is not None and result.element is not None and result.confidence >= min_confidence


def compare_best_result(
    current: LocatorResult | None, challenger: LocatorResult | None
) -> LocatorResult | None:
    """
    A result with an element beats one without; otherwise higher confidence
    wins and ties keep `current`.
    """
    if current is None:
        return challenger
    if challenger is None:
        return current
    if current.element is not None and challenger.element is None:
        return current
    if current.element is None and challenger.element is not None:
        return challenger
    return current if current.confidence >= challenger.confidence else challenger


class LocatorResolver:
    def __init__(self, registry: StrategyRegistry, config: ResolverConfig | None = None):
        self.registry = registry
        self.config = config or ResolverConfig()

    def _effective_config(self, overrides: dict[str, Any]) -> ResolverConfig:
        if not overrides:
            return self.config
        return self.config.model_copy(update=overrides)

    def update_config(self, **overrides: Any):
        self.config = self.config.model_copy(update=overrides)

    def filtered_strategies(self, config: ResolverConfig) -> list[LocatorStrategy]:
        strategies = self.registry.get_strategies()
        if config.only_strategies:
            allowed = set(config.only_strategies)
            strategies = [s for s in strategies if s.name in allowed]
        if config.skip_strategies:
            skipped = set(config.skip_strategies)
            strategies = [s for s in strategies if s.name not in skipped]
        return strategies

    def _search_root(self, bundle: LocatorBundle, root: SearchRoot, config: ResolverConfig) -> SearchRoot:
        if not config.resolve_frames or not (bundle.iframe_chain or bundle.shadow_hosts):
            return root
        return resolve_search_root(root, bundle)

    # --- Execution ---

    def execute_strategy(
        self, strategy: LocatorStrategy, bundle: LocatorBundle, root: SearchRoot
    ) -> StrategyAttempt:
        started = time.perf_counter()
        try:
            if not strategy.can_handle(bundle):
                return StrategyAttempt(strategy.name, False, None, elapsed_ms(started))
            result = strategy.find(bundle, root)
            return StrategyAttempt(strategy.name, True, result, elapsed_ms(started))
        except Exception as e:
            logger.warning("Strategy raised while searching.", strategy=strategy.name, error=str(e))
            return StrategyAttempt(strategy.name, True, None, elapsed_ms(started), error=str(e))

    def _run_cycle(
        self,
        bundle: LocatorBundle,
        root: SearchRoot,
        strategies: list[LocatorStrategy],
        config: ResolverConfig,
        attempts: list[StrategyAttempt],
    ) -> LocatorResult | None:
        """One pass over `strategies`; stops early on a high-confidence hit."""
        best = None
        for strategy in strategies:
            attempt = self.execute_strategy(strategy, bundle, root)
            attempts.append(attempt)
            if attempt.result is None:
                continue
            best = compare_best_result(best, attempt.result)
            if (
                attempt.result.element is not None
                and attempt.result.confidence >= config.early_exit_confidence
            ):
                return attempt.result
        return best

    async def resolve(
        self,
        bundle: LocatorBundle,
        root: SearchRoot,
        cancel_event: asyncio.Event | None = None,
        **overrides: Any,
    ) -> ResolutionResult:
        """
        Runs strategy cycles until a result meets `min_confidence`, retries run
        out or the deadline passes. Setting `cancel_event` ends the search
        before the next cycle with a `CANCELLED` failure.
        """
        started = time.perf_counter()
        config = self._effective_config(overrides)
        attempts: list[StrategyAttempt] = []
        strategies = self.filtered_strategies(config)
        if not strategies:
            return _failure(started, attempts, NO_STRATEGIES, None)
        try:
            root = self._search_root(bundle, root, config)
        except FrameResolutionError as e:
            return _failure(started, attempts, str(e), None)

        best: LocatorResult | None = None
        retry_cycles = 0
        timed_out = False
        cancelled = False
        deadline = started + config.timeout / 1000
        while time.perf_counter() < deadline:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            cycle_best = self._run_cycle(bundle, root, strategies, config, attempts)
            best = compare_best_result(best, cycle_best)
            if meets_confidence_threshold(cycle_best, config.min_confidence):
                logger.debug(
                    "Element resolved.",
                    strategy=cycle_best.strategy,
                    confidence=cycle_best.confidence,
                    retry_cycles=retry_cycles,
                )
                return _success(started, attempts, cycle_best, retry_cycles)
            if not config.enable_retry or retry_cycles >= config.max_retries:
                break
            remaining_ms = (deadline - time.perf_counter()) * 1000
            if remaining_ms <= config.retry_interval:
                timed_out = True
                break
            retry_cycles += 1
            if await cancellable_sleep(config.retry_interval, cancel_event):
                cancelled = True
                break

        if cancelled:
            logger.debug("Resolution cancelled.", retry_cycles=retry_cycles)
            return _failure(started, attempts, CANCELLED, best, retry_cycles)
        if time.perf_counter() >= deadline:
            timed_out = True
        if meets_confidence_threshold(best, config.min_confidence):
            return _success(started, attempts, best, retry_cycles, timed_out)
        logger.debug(
            "No element resolved.",
            timed_out=timed_out,
            retry_cycles=retry_cycles,
            attempts=len(attempts),
        )
        return _failure(
            started,
            attempts,
            TIMED_OUT if timed_out else NO_MATCH,
            best,
            retry_cycles,
            timed_out,
        )

    def resolve_sync(
        self, bundle: LocatorBundle, root: SearchRoot, **overrides: Any
    ) -> ResolutionResult:
        """A single cycle with retry disabled, for callers that cannot await."""
        started = time.perf_counter()
        config = self._effective_config({**overrides, "enable_retry": False})
        attempts: list[StrategyAttempt] = []
        strategies = self.filtered_strategies(config)
        if not strategies:
            return _failure(started, attempts, NO_STRATEGIES, None)
        try:
            root = self._search_root(bundle, root, config)
        except FrameResolutionError as e:
            return _failure(started, attempts, str(e), None)

        best = self._run_cycle(bundle, root, strategies, config, attempts)
        if meets_confidence_threshold(best, config.min_confidence):
            return _success(started, attempts, best, 0)
        return _failure(started, attempts, NO_MATCH, best)

    def resolve_with(
        self, strategy_name: str, bundle: LocatorBundle, root: SearchRoot
    ) -> LocatorResult:
        """Runs exactly one named strategy, bypassing the retry loop."""
        strategy = self.registry.get(strategy_name)
        if strategy is None:
            return LocatorResult(
                element=None,
                confidence=0.0,
                strategy=strategy_name,
                error=f"Strategy '{strategy_name}' not found",
            )
        attempt = self.execute_strategy(strategy, bundle, root)
        if attempt.result is not None:
            return attempt.result
        return LocatorResult(
            element=None,
            confidence=0.0,
            strategy=strategy_name,
            duration=attempt.duration,
            error=attempt.error or "Strategy could not handle bundle",
        )

    def find_all(self, bundle: LocatorBundle, root: SearchRoot) -> list[LocatorResult]:
        """Every eligible strategy's result, most confident first."""
        results = []
        for strategy in self.filtered_strategies(self.config):
            attempt = self.execute_strategy(strategy, bundle, root)
            if attempt.result is not None:
                results.append(attempt.result)
        return sorted(results, key=lambda r: (r.element is not None, r.confidence), reverse=True)

    def test_handlers(self, bundle: LocatorBundle) -> list[str]:
        return [s.name for s in self.registry.get_strategies() if s.can_handle(bundle)]

    def available_strategies(self) -> list[str]:
        return self.registry.names()


def _success(
    started: float,
    attempts: list[StrategyAttempt],
    result: LocatorResult,
    retry_cycles: int,
    timed_out: bool = False,
) -> ResolutionResult:
    return ResolutionResult(
        element=result.element,
        confidence=result.confidence,
        strategy=result.strategy,
        duration=elapsed_ms(started),
        retry_cycles=retry_cycles,
        attempts=attempts,
        timed_out=timed_out,
        success=True,
        best_result=result,
    )


def _failure(
    started: float,
    attempts: list[StrategyAttempt],
    error: str,
    best: LocatorResult | None,
    retry_cycles: int = 0,
    timed_out: bool = False,
) -> ResolutionResult:
    return ResolutionResult(
        element=None,
        confidence=best.confidence if best else 0.0,
        strategy=best.strategy if best else None,
        duration=elapsed_ms(started),
        retry_cycles=retry_cycles,
        attempts=attempts,
        timed_out=timed_out,
        success=False,
        best_result=best,
        error=error,
    )
