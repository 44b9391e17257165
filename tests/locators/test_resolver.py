import asyncio
import time

import pytest

from cx_replay.config import ResolverConfig
from cx_replay.locators.bundle import LocatorBundle
from cx_replay.locators.dom import ElementNode, PageTree, SearchRoot
from cx_replay.locators.registry import RegistryConfig, StrategyRegistry
from cx_replay.locators.resolver import (
    CANCELLED,
    NO_MATCH,
    NO_STRATEGIES,
    TIMED_OUT,
    LocatorResolver,
    compare_best_result,
)
from cx_replay.locators.strategies.base import LocatorResult, LocatorStrategy

STALE_XPATH = "/html[1]/body[1]/div[1]/input[1]"


class FlakyStrategy(LocatorStrategy):
    """Misses a fixed number of times before finding the element by id."""

    name = "flaky"
    priority = 1
    base_confidence = 0.9

    def __init__(self, misses: int):
        self.misses = misses
        self.calls = 0

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.id)

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        self.calls += 1
        if self.calls <= self.misses:
            return LocatorResult(element=None, confidence=0.0, strategy=self.name)
        return LocatorResult(
            element=root.get_element_by_id(bundle.id), confidence=0.9, strategy=self.name
        )

    def generate_selector(self, element: ElementNode) -> str | None:
        return element.id or None


class ExplodingStrategy(FlakyStrategy):
    name = "exploding"

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        raise RuntimeError("boom")


def single_strategy_resolver(strategy: LocatorStrategy, **config) -> LocatorResolver:
    registry = StrategyRegistry(RegistryConfig(auto_register_defaults=False))
    registry.register(strategy)
    return LocatorResolver(registry, ResolverConfig(**config))


@pytest.fixture
def resolver() -> LocatorResolver:
    return LocatorResolver(StrategyRegistry(), ResolverConfig(retry_interval=10))


@pytest.mark.asyncio
async def test_resolve_exits_early_on_high_confidence_xpath(resolver, login_page, email_bundle):
    result = await resolver.resolve(email_bundle, login_page)

    assert result.success is True
    assert result.element.id == "email"
    assert result.strategy == "xpath"
    assert result.confidence == 1.0
    assert len(result.attempts) == 1
    assert result.retry_cycles == 0


@pytest.mark.asyncio
async def test_resolve_falls_back_when_xpath_is_stale(resolver, login_page, email_bundle):
    # Arrange
    bundle = email_bundle.model_copy(update={"xpath": STALE_XPATH})

    # Act
    result = await resolver.resolve(bundle, login_page)

    # Assert
    assert result.success is True
    assert result.element.id == "email"
    assert result.strategy == "id"
    assert result.confidence == pytest.approx(0.9)
    assert [a.strategy for a in result.attempts] == ["xpath", "id"]
    assert result.attempts[0].result.found is False


@pytest.mark.asyncio
async def test_resolve_keeps_best_result_below_early_exit(resolver, login_page):
    bundle = LocatorBundle(tag="input", name="email")

    result = await resolver.resolve(bundle, login_page, only_strategies=["name", "bounding-box"])

    assert result.success is True
    assert result.strategy == "name"
    assert result.confidence == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_resolve_retries_until_the_element_appears(login_page):
    # Arrange
    flaky = FlakyStrategy(misses=2)
    resolver = single_strategy_resolver(flaky, timeout=2000, retry_interval=10)

    # Act
    result = await resolver.resolve(LocatorBundle(id="email"), login_page)

    # Assert
    assert result.success is True
    assert result.retry_cycles == 2
    assert flaky.calls == 3
    assert len(result.attempts) == 3


@pytest.mark.asyncio
async def test_resolve_without_retry_runs_a_single_cycle(login_page):
    flaky = FlakyStrategy(misses=2)
    resolver = single_strategy_resolver(flaky, enable_retry=False)

    result = await resolver.resolve(LocatorBundle(id="email"), login_page)

    assert result.success is False
    assert result.error == NO_MATCH
    assert result.retry_cycles == 0
    assert flaky.calls == 1
    assert result.timed_out is False


@pytest.mark.asyncio
async def test_resolve_times_out(login_page):
    resolver = single_strategy_resolver(FlakyStrategy(misses=10_000), timeout=60, retry_interval=10)

    result = await resolver.resolve(LocatorBundle(id="email"), login_page)

    assert result.success is False
    assert result.timed_out is True
    assert result.error == TIMED_OUT
    assert result.retry_cycles >= 1


@pytest.mark.asyncio
async def test_resolve_honours_max_retries(login_page):
    flaky = FlakyStrategy(misses=10_000)
    resolver = single_strategy_resolver(flaky, timeout=5000, retry_interval=1, max_retries=2)

    result = await resolver.resolve(LocatorBundle(id="email"), login_page)

    assert result.success is False
    assert flaky.calls == 3
    assert result.retry_cycles == 2


@pytest.mark.asyncio
async def test_resolve_with_cancel_already_set_runs_no_cycle(login_page):
    flaky = FlakyStrategy(misses=0)
    resolver = single_strategy_resolver(flaky)
    cancel_event = asyncio.Event()
    cancel_event.set()

    result = await resolver.resolve(LocatorBundle(id="email"), login_page, cancel_event=cancel_event)

    assert result.success is False
    assert result.error == CANCELLED
    assert flaky.calls == 0
    assert result.attempts == []


@pytest.mark.asyncio
async def test_cancel_during_retry_interval_ends_resolution(login_page):
    # Arrange
    flaky = FlakyStrategy(misses=10_000)
    resolver = single_strategy_resolver(flaky, timeout=10_000, retry_interval=2000)
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel_event.set)
    started = time.perf_counter()

    # Act
    result = await resolver.resolve(LocatorBundle(id="email"), login_page, cancel_event=cancel_event)

    # Assert
    assert time.perf_counter() - started < 0.5
    assert result.error == CANCELLED
    assert result.timed_out is False
    assert flaky.calls == 1
    assert result.retry_cycles == 1


@pytest.mark.asyncio
async def test_resolve_empty_bundle_fails(resolver, login_page):
    result = await resolver.resolve(LocatorBundle(), login_page, enable_retry=False)

    assert result.success is False
    assert result.found is False
    assert result.element is None
    assert result.strategy is None
    assert all(not a.can_handle for a in result.attempts)


@pytest.mark.asyncio
async def test_resolve_without_strategies(login_page, email_bundle):
    resolver = LocatorResolver(StrategyRegistry(RegistryConfig(auto_register_defaults=False)))

    result = await resolver.resolve(email_bundle, login_page)

    assert result.success is False
    assert result.error == NO_STRATEGIES
    assert result.attempts == []


@pytest.mark.asyncio
async def test_skip_strategies_filters_everything(resolver, login_page, email_bundle):
    result = await resolver.resolve(
        email_bundle, login_page, only_strategies=["xpath"], skip_strategies=["xpath"]
    )

    assert result.error == NO_STRATEGIES


@pytest.mark.asyncio
async def test_min_confidence_rejects_weak_matches(resolver, login_page):
    bundle = LocatorBundle(tag="input", name="email")

    result = await resolver.resolve(
        bundle, login_page, only_strategies=["name"], min_confidence=0.95, enable_retry=False
    )

    assert result.success is False
    assert result.element is None
    assert result.best_result.element.id == "email"
    assert result.confidence == pytest.approx(0.8)
    assert result.strategy == "name"


@pytest.mark.asyncio
async def test_strategy_exceptions_are_recorded_and_skipped(login_page):
    registry = StrategyRegistry(RegistryConfig(auto_register_defaults=False))
    registry.register(ExplodingStrategy(misses=0))
    registry.register(FlakyStrategy(misses=0), priority=2)
    resolver = LocatorResolver(registry)

    result = await resolver.resolve(LocatorBundle(id="email"), login_page)

    assert result.success is True
    assert result.strategy == "flaky"
    assert result.attempts[0].error == "boom"


@pytest.mark.asyncio
async def test_resolve_is_idempotent(resolver, login_page, email_bundle):
    first = await resolver.resolve(email_bundle, login_page)
    second = await resolver.resolve(email_bundle, login_page)

    assert first.element is second.element
    assert first.strategy == second.strategy
    assert first.confidence == second.confidence


@pytest.mark.asyncio
async def test_resolve_descends_recorded_frames(resolver):
    inner = PageTree([ElementNode("input", {"id": "card-number"})])
    page = PageTree([ElementNode("iframe", {"id": "payment"}, content_document=inner)])

    found = await resolver.resolve(LocatorBundle(id="card-number", iframe_chain=["payment"]), page)
    missing = await resolver.resolve(LocatorBundle(id="card-number", iframe_chain=["nope"]), page)

    assert found.success is True
    assert found.element.owner is inner
    assert missing.success is False
    assert "nope" in missing.error


def test_resolve_sync_runs_one_cycle(resolver, login_page, email_bundle):
    bundle = email_bundle.model_copy(update={"xpath": STALE_XPATH})

    result = resolver.resolve_sync(bundle, login_page)

    assert result.success is True
    assert result.strategy == "id"


def test_resolve_with_named_strategy(resolver, login_page, email_bundle):
    result = resolver.resolve_with("placeholder", email_bundle, login_page)
    unknown = resolver.resolve_with("nope", email_bundle, login_page)
    unable = resolver.resolve_with("aria-label", email_bundle, login_page)

    assert result.element.id == "email"
    assert unknown.error == "Strategy 'nope' not found"
    assert unable.error == "Strategy could not handle bundle"


def test_find_all_sorts_by_confidence(resolver, login_page, email_bundle):
    results = resolver.find_all(email_bundle, login_page)

    confidences = [r.confidence for r in results]
    assert confidences == sorted(confidences, reverse=True)
    assert results[0].strategy == "xpath"
    assert all(r.element.id == "email" for r in results if r.element is not None)


def test_test_handlers(resolver, email_bundle):
    assert resolver.test_handlers(email_bundle) == [
        "xpath",
        "id",
        "name",
        "placeholder",
        "bounding-box",
        "css-selector",
        "form-label",
    ]
    assert resolver.available_strategies()[0] == "xpath"


def test_compare_best_result_prefers_found_then_confidence():
    element = ElementNode("a")
    miss = LocatorResult(element=None, confidence=0.0, strategy="a")
    weak = LocatorResult(element=element, confidence=0.4, strategy="b")
    strong = LocatorResult(element=element, confidence=0.8, strategy="c")
    tie = LocatorResult(element=element, confidence=0.8, strategy="d")

    assert compare_best_result(None, miss) is miss
    assert compare_best_result(miss, weak) is weak
    assert compare_best_result(weak, miss) is weak
    assert compare_best_result(weak, strong) is strong
    assert compare_best_result(strong, tie) is strong
