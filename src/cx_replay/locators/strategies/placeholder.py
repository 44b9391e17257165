import time
import unicodedata

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot, css_escape
from .base import (
    LocatorResult,
    LocatorStrategy,
    ScoredCandidate,
    class_overlap,
    clamp_confidence,
    distance_bonus,
    distance_to_bounding,
    pick_best,
)

STRATEGY_NAME = "placeholder"
STRATEGY_PRIORITY = 5
BASE_CONFIDENCE = 0.70
PARTIAL_MATCH_PENALTY = 0.15
AMBIGUITY_PENALTY = 0.20
TAG_MATCH_BONUS = 0.05
MIN_PARTIAL_SIMILARITY = 0.5
DISAMBIGUATION_MARGIN = 0.2

PLACEHOLDER_ELEMENTS = ("input", "textarea")
PLACEHOLDER_INPUT_TYPES = ("text", "email", "password", "search", "tel", "url", "number")


def normalize_placeholder(text: str | None) -> str:
    if not text:
        return ""
    return unicodedata.normalize("NFKC", text.strip().lower())


def supports_placeholder(element: ElementNode) -> bool:
    if element.tag == "textarea":
        return True
    return element.tag == "input" and element.input_type in PLACEHOLDER_INPUT_TYPES


def get_placeholder(element: ElementNode) -> str | None:
    if not supports_placeholder(element):
        return None
    return element.get_attribute("placeholder") or None


def build_placeholder_selector(placeholder: str, tag: str | None = None) -> str:
    escaped = css_escape(placeholder)
    tag = (tag or "").lower()
    if tag in PLACEHOLDER_ELEMENTS:
        return f'{tag}[placeholder="{escaped}"]'
    return f'input[placeholder="{escaped}"], textarea[placeholder="{escaped}"]'


def placeholder_similarity(a: str, b: str) -> float:
    """1.0 for equal text, length ratio when one contains the other, else 0."""
    norm_a, norm_b = normalize_placeholder(a), normalize_placeholder(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if norm_a in norm_b or norm_b in norm_a:
        shorter, longer = sorted((norm_a, norm_b), key=len)
        return len(shorter) / len(longer)
    return 0.0


class PlaceholderStrategy(LocatorStrategy):
    """Finds inputs and textareas by their placeholder text."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.placeholder and bundle.placeholder.strip())

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle has no placeholder attribute")

        selector = build_placeholder_selector(bundle.placeholder, bundle.tag)
        candidates = [e for e in root.query_selector_all(selector) if supports_placeholder(e)]
        if not candidates:
            return self._find_partial(started, bundle, root)
        if len(candidates) == 1:
            return self._result(
                started,
                candidates[0],
                self.calculate_confidence(candidates[0], bundle, 1),
                match_type="exact",
                candidate_count=1,
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
            candidate_count=len(candidates),
            best_score=round(best.score, 3),
            is_ambiguous=not decisive,
        )

    def _find_partial(
        self, started: float, bundle: LocatorBundle, root: SearchRoot
    ) -> LocatorResult:
        best_element = None
        best_similarity = 0.0
        for element in root.query_selector_all("input[placeholder], textarea[placeholder]"):
            placeholder = get_placeholder(element)
            if not placeholder:
                continue
            similarity = placeholder_similarity(bundle.placeholder, placeholder)
            if similarity > best_similarity and similarity >= MIN_PARTIAL_SIMILARITY:
                best_similarity = similarity
                best_element = element
        if best_element is None:
            return self._miss(started, "No matching placeholder found")
        # Partial matches are scored on their own formula; the ambiguity
        # penalty never applies on this path.
        confidence = BASE_CONFIDENCE * best_similarity - PARTIAL_MATCH_PENALTY
        return self._result(
            started,
            best_element,
            confidence,
            match_type="partial",
            similarity=round(best_similarity, 3),
        )

    def score_candidate(self, element: ElementNode, bundle: LocatorBundle) -> ScoredCandidate:
        score = 0.5
        if bundle.tag and element.tag == bundle.tag.lower():
            score += 0.15
        if bundle.id and element.id == bundle.id:
            score += 0.2
        if bundle.name and element.get_attribute("name") == bundle.name:
            score += 0.1
        score += distance_bonus(distance_to_bounding(element, bundle.bounding))
        score += class_overlap(bundle.classes, element.classes) * 0.1
        return ScoredCandidate(element, min(1.0, score))

    def calculate_confidence(
        self, element: ElementNode, bundle: LocatorBundle, candidate_count: int
    ) -> float:
        confidence = BASE_CONFIDENCE
        if candidate_count > 1:
            confidence -= AMBIGUITY_PENALTY * min(candidate_count - 1, 3) * 0.33
        if bundle.tag and element.tag == bundle.tag.lower():
            confidence += TAG_MATCH_BONUS
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        placeholder = get_placeholder(element)
        if not placeholder:
            return None
        return build_placeholder_selector(placeholder, element.tag)

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        actual = get_placeholder(element)
        if not actual:
            return False
        return normalize_placeholder(actual) == normalize_placeholder(expected_value)
