import time

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot, css_escape
from .base import (
    LocatorResult,
    LocatorStrategy,
    ScoredCandidate,
    clamp_confidence,
    distance_bonus,
    distance_to_bounding,
    pick_best,
)

STRATEGY_NAME = "data-attribute"
STRATEGY_PRIORITY = 6
BASE_CONFIDENCE = 0.65
TESTING_ATTR_BONUS = 0.10
AMBIGUITY_PENALTY = 0.15
PARTIAL_MATCH_PENALTY = 0.10
TAG_MATCH_BONUS = 0.03
MIN_PARTIAL_SCORE = 0.3
DISAMBIGUATION_MARGIN = 0.15

# Attributes written for test automation, in order of preference.
TESTING_DATA_ATTRIBUTES = (
    "data-testid",
    "data-test-id",
    "data-cy",
    "data-qa",
    "data-test",
    "data-automation",
    "data-e2e",
    "data-selenium",
)

# Framework bookkeeping and transient UI state; never stable across loads.
IGNORED_DATA_ATTRIBUTES = (
    "data-reactid",
    "data-reactroot",
    "data-react-checksum",
    "data-v-",
    "data-emotion",
    "data-styled",
    "data-radix",
    "data-state",
    "data-open",
    "data-closed",
    "data-highlighted",
    "data-disabled",
)


def attribute_name(key: str) -> str:
    return key if key.startswith("data-") else f"data-{key}"


def is_testing_attribute(name: str) -> bool:
    lower = name.lower()
    return any(lower == t or lower.startswith(t + "-") for t in TESTING_DATA_ATTRIBUTES)


def should_ignore_attribute(name: str) -> bool:
    lower = name.lower()
    return any(lower == i or lower.startswith(i) for i in IGNORED_DATA_ATTRIBUTES)


def attribute_priority(name: str) -> int:
    lower = name.lower()
    for index, testing in enumerate(TESTING_DATA_ATTRIBUTES):
        if lower == testing or lower.startswith(testing + "-"):
            return index
    return len(TESTING_DATA_ATTRIBUTES) + 1


def scan_data_attributes(element: ElementNode) -> list[tuple[str, str]]:
    """Stable data attributes of an element, testing attributes first."""
    found = [
        (name, value)
        for name, value in element.attributes.items()
        if name.startswith("data-") and not should_ignore_attribute(name) and value.strip()
    ]
    return sorted(found, key=lambda item: attribute_priority(item[0]))


def extract_data_attrs(element: ElementNode) -> dict[str, str]:
    """Data attributes keyed both with and without the 'data-' prefix."""
    attrs: dict[str, str] = {}
    for name, value in element.attributes.items():
        if not name.startswith("data-") or should_ignore_attribute(name):
            continue
        attrs[name] = value
        attrs[name[len("data-"):]] = value
    return attrs


def build_data_attr_selector(name: str, value: str, tag: str | None = None) -> str:
    prefix = (tag or "").lower()
    return f'{prefix}[{name}="{css_escape(value)}"]'


def build_multi_attr_selector(
    data_attrs: dict[str, str], tag: str | None = None
) -> str | None:
    """The most trustworthy single-attribute selector for a bundle's data attrs."""
    selectors: list[str] = []
    for testing in TESTING_DATA_ATTRIBUTES:
        short = testing[len("data-"):]
        value = data_attrs.get(short) or data_attrs.get(testing)
        if value:
            selectors.append(build_data_attr_selector(testing, value, tag))
    for key, value in data_attrs.items():
        if not value:
            continue
        name = attribute_name(key)
        if should_ignore_attribute(name):
            continue
        selector = build_data_attr_selector(name, value, tag)
        if selector not in selectors:
            selectors.append(selector)
    return selectors[0] if selectors else None


def compare_data_attributes(recorded: dict[str, str], actual: dict[str, str]) -> float:
    """Share of recorded attributes matched exactly, with substring matches at half weight."""
    keys = [k for k, v in recorded.items() if v]
    if not keys:
        return 0.0
    full = partial = 0
    for key in keys:
        expected = recorded[key]
        value = actual.get(key)
        if value == expected:
            full += 1
        elif value and (expected in value or value in expected):
            partial += 1
    return min(1.0, full / len(keys) + partial / len(keys) * 0.5)


def has_testing_attribute(element: ElementNode) -> bool:
    return any(is_testing_attribute(name) for name in element.attributes)


class DataAttributeStrategy(LocatorStrategy):
    """Finds elements by their data-* attributes, preferring test ids."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return any(
            value
            and value.strip()
            and not should_ignore_attribute(attribute_name(key))
            for key, value in bundle.data_attrs.items()
        )

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle has no usable data attributes")

        selector = build_multi_attr_selector(bundle.data_attrs, bundle.tag)
        if selector is None:
            return self._miss(started, "Could not build selector from data attributes")

        candidates = root.query_selector_all(selector)
        if not candidates:
            return self._find_partial(started, bundle, root)
        if len(candidates) == 1:
            element = candidates[0]
            return self._result(
                started,
                element,
                self.calculate_confidence(element, bundle, 1),
                match_type="exact",
                matched_by=selector,
                has_testing_attr=has_testing_attribute(element),
            )

        best, decisive = pick_best(
            [self.score_candidate(e, bundle) for e in candidates], DISAMBIGUATION_MARGIN
        )
        confidence = self.calculate_confidence(best.element, bundle, len(candidates))
        if not decisive:
            confidence -= AMBIGUITY_PENALTY
        return self._result(
            started,
            best.element,
            confidence,
            match_type="exact",
            matched_by=selector,
            candidate_count=len(candidates),
            best_score=round(best.score, 3),
            is_ambiguous=not decisive,
        )

    def _find_partial(
        self, started: float, bundle: LocatorBundle, root: SearchRoot
    ) -> LocatorResult:
        best_element = None
        best_score = 0.0
        matched_attr = ""
        for key, value in bundle.data_attrs.items():
            if not value:
                continue
            name = attribute_name(key)
            if should_ignore_attribute(name):
                continue
            for element in root.find_by_attribute(name, value):
                score = compare_data_attributes(bundle.data_attrs, extract_data_attrs(element))
                if score > best_score:
                    best_score, best_element, matched_attr = score, element, name
        if best_element is None or best_score < MIN_PARTIAL_SCORE:
            return self._miss(started, "No matching data attributes found")
        return self._result(
            started,
            best_element,
            BASE_CONFIDENCE * best_score - PARTIAL_MATCH_PENALTY,
            match_type="partial",
            matched_by=matched_attr,
            similarity=round(best_score, 3),
        )

    def score_candidate(self, element: ElementNode, bundle: LocatorBundle) -> ScoredCandidate:
        score = 0.4
        score += compare_data_attributes(bundle.data_attrs, extract_data_attrs(element)) * 0.3
        if has_testing_attribute(element):
            score += 0.1
        if bundle.tag and element.tag == bundle.tag.lower():
            score += 0.1
        score += distance_bonus(
            distance_to_bounding(element, bundle.bounding), bonuses=(0.1, 0.05, 0.05)
        )
        return ScoredCandidate(element, min(1.0, score))

    def calculate_confidence(
        self, element: ElementNode, bundle: LocatorBundle, candidate_count: int
    ) -> float:
        confidence = BASE_CONFIDENCE
        if has_testing_attribute(element):
            confidence += TESTING_ATTR_BONUS
        if candidate_count > 1:
            confidence -= AMBIGUITY_PENALTY * min(candidate_count - 1, 3) * 0.25
        if bundle.tag and element.tag == bundle.tag.lower():
            confidence += TAG_MATCH_BONUS
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        attributes = scan_data_attributes(element)
        if not attributes:
            return None
        name, value = attributes[0]
        return build_data_attr_selector(name, value, element.tag)

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        if element.owner is None:
            return False
        return element.owner.query_selector(expected_value) is element
