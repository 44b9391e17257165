import time

import structlog

from ...errors import SelectorSyntaxError
from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot, generate_xpath
from .base import ExactMatchStrategy, LocatorResult

logger = structlog.get_logger(__name__)

STRATEGY_NAME = "xpath"
STRATEGY_PRIORITY = 1
BASE_CONFIDENCE = 1.0
AMBIGUITY_PENALTY = 0.2


class XPathStrategy(ExactMatchStrategy):
    """Evaluates the recorded XPath. The most precise and most brittle tier."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE
    ambiguity_penalty = AMBIGUITY_PENALTY
    missing_message = "Bundle has no xpath"

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.xpath and bundle.xpath.strip())

    def candidates(self, bundle: LocatorBundle, root: SearchRoot) -> list[ElementNode]:
        return root.evaluate_xpath(bundle.xpath)

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, self.missing_message)
        try:
            candidates = self.candidates(bundle, root)
        except SelectorSyntaxError as e:
            logger.debug("Recorded xpath is not evaluable.", xpath=bundle.xpath, error=str(e))
            return self._miss(started, str(e))
        return self.settle(started, bundle, candidates, expression=bundle.xpath)

    def generate_selector(self, element: ElementNode) -> str | None:
        return generate_xpath(element)

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        if element.owner is None:
            return False
        try:
            return element in element.owner.evaluate_xpath(expected_value)
        except SelectorSyntaxError:
            return False
