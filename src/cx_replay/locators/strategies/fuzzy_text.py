import re
import time
from dataclasses import dataclass
from functools import cmp_to_key

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot
from .base import (
    LocatorResult,
    LocatorStrategy,
    clamp_confidence,
    distance_bonus,
    distance_to_bounding,
)

STRATEGY_NAME = "fuzzy-text"
STRATEGY_PRIORITY = 7
BASE_CONFIDENCE = 0.40
SIMILARITY_THRESHOLD = 0.40
HIGH_SIMILARITY_THRESHOLD = 0.80
EXACT_MATCH_THRESHOLD = 0.95
HIGH_SIMILARITY_BONUS = 0.15
EXACT_MATCH_BONUS = 0.25
AMBIGUITY_PENALTY = 0.10
PRIORITY_TAG_BONUS = 0.03
AMBIGUITY_MARGIN = 0.1
MAX_TEXT_LENGTH = 500
MIN_TEXT_LENGTH = 2
# Below this length a character-bigram score is blended into the word score.
SHORT_TEXT_LENGTH = 20

SKIP_TAGS = frozenset(
    {"script", "style", "noscript", "template", "iframe", "svg", "head", "meta", "link"}
)
PRIORITY_TAGS = (
    "button", "a", "label", "span", "p",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "li", "td", "th", "option",
)

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class TextCandidate:
    element: ElementNode
    text: str
    similarity: float
    is_priority_tag: bool


def normalize_text(text: str | None, remove_punctuation: bool = False) -> str:
    if not text:
        return ""
    normalized = " ".join(text.split()).lower()[:MAX_TEXT_LENGTH]
    if remove_punctuation:
        normalized = _NON_WORD.sub("", normalized)
    return normalized


def extract_words(text: str) -> list[str]:
    words = _NON_WORD.sub(" ", text.lower()).split()
    return list(dict.fromkeys(w for w in words if len(w) >= MIN_TEXT_LENGTH))


def dice_coefficient(words_a: list[str], words_b: list[str]) -> float:
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    set_a, set_b = set(words_a), set(words_b)
    return 2 * len(set_a & set_b) / (len(set_a) + len(set_b))


def bigram_similarity(a: str, b: str) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    bigrams_a = {a.lower()[i : i + 2] for i in range(len(a) - 1)}
    bigrams_b = {b.lower()[i : i + 2] for i in range(len(b) - 1)}
    if not bigrams_a and not bigrams_b:
        return 1.0
    if not bigrams_a or not bigrams_b:
        return 0.0
    return 2 * len(bigrams_a & bigrams_b) / (len(bigrams_a) + len(bigrams_b))


def compare_text(target: str, candidate: str) -> float:
    """Similarity in [0, 1] between two visible strings."""
    norm_target, norm_candidate = normalize_text(target), normalize_text(candidate)
    if not norm_target or not norm_candidate:
        return 0.0
    if norm_target == norm_candidate:
        return 1.0
    score = dice_coefficient(extract_words(norm_target), extract_words(norm_candidate))
    if len(norm_target) < SHORT_TEXT_LENGTH or len(norm_candidate) < SHORT_TEXT_LENGTH:
        score = score * 0.6 + bigram_similarity(norm_target, norm_candidate) * 0.4
    return score


def visible_text(element: ElementNode) -> str:
    if element.style.get("display") == "none" or element.style.get("visibility") == "hidden":
        return ""
    if element.tag in SKIP_TAGS:
        return ""
    if element.tag == "input":
        return element.value or element.get_attribute("placeholder") or ""
    if element.tag == "textarea":
        return element.value
    return element.text_content


def _candidate_order(a: TextCandidate, b: TextCandidate) -> int:
    if abs(a.similarity - b.similarity) > 0.05:
        return -1 if a.similarity > b.similarity else 1
    if a.is_priority_tag != b.is_priority_tag:
        return -1 if a.is_priority_tag else 1
    return 0


def find_text_candidates(
    target: str, root: SearchRoot, tag: str | None = None
) -> list[TextCandidate]:
    normalized_target = normalize_text(target)
    if len(normalized_target) < MIN_TEXT_LENGTH:
        return []
    if tag:
        elements = root.find_by_tag(tag)
    else:
        elements = root.find_by_tag(*PRIORITY_TAGS) or list(root.iter_elements())

    candidates = []
    for element in elements:
        text = visible_text(element)
        if len(text) < MIN_TEXT_LENGTH:
            continue
        similarity = compare_text(normalized_target, text)
        if similarity >= SIMILARITY_THRESHOLD:
            candidates.append(
                TextCandidate(element, text, similarity, element.tag in PRIORITY_TAGS)
            )
    # sorted() is stable, so equal candidates keep document order.
    return sorted(candidates, key=cmp_to_key(_candidate_order))


class FuzzyTextStrategy(LocatorStrategy):
    """Finds elements whose visible text resembles the recorded text."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return len(normalize_text(bundle.text)) >= MIN_TEXT_LENGTH

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle has insufficient text content")

        candidates = find_text_candidates(bundle.text, root, bundle.tag or None)
        if not candidates and bundle.tag:
            candidates = find_text_candidates(bundle.text, root)
        if not candidates:
            return self._miss(started, "No elements with matching text found")

        scored = sorted(
            ((self.score_candidate(c, bundle), c) for c in candidates),
            key=lambda pair: pair[0],
            reverse=True,
        )
        best_score, best = scored[0]
        is_ambiguous = len(scored) > 1 and abs(best_score - scored[1][0]) < AMBIGUITY_MARGIN
        confidence = self.calculate_confidence(
            best.similarity, len(candidates), is_ambiguous, best.is_priority_tag
        )
        return self._result(
            started,
            best.element,
            confidence,
            similarity=round(best.similarity, 3),
            candidate_count=len(candidates),
            is_ambiguous=is_ambiguous,
            matched_text=best.text[:100],
        )

    def score_candidate(self, candidate: TextCandidate, bundle: LocatorBundle) -> float:
        score = candidate.similarity * 0.6
        if bundle.tag and candidate.element.tag == bundle.tag.lower():
            score += 0.15
        if candidate.is_priority_tag:
            score += 0.05
        score += distance_bonus(distance_to_bounding(candidate.element, bundle.bounding))
        if bundle.classes:
            overlap = len(set(bundle.classes) & set(candidate.element.classes))
            if overlap:
                score += min(0.1, overlap * 0.03)
        return min(1.0, score)

    def calculate_confidence(
        self,
        similarity: float,
        candidate_count: int,
        is_ambiguous: bool,
        is_priority_tag: bool,
    ) -> float:
        confidence = BASE_CONFIDENCE
        if similarity >= EXACT_MATCH_THRESHOLD:
            confidence += EXACT_MATCH_BONUS
        elif similarity >= HIGH_SIMILARITY_THRESHOLD:
            confidence += HIGH_SIMILARITY_BONUS
        else:
            scale = (similarity - SIMILARITY_THRESHOLD) / (
                HIGH_SIMILARITY_THRESHOLD - SIMILARITY_THRESHOLD
            )
            confidence += HIGH_SIMILARITY_BONUS * max(0.0, scale)
        if candidate_count > 1:
            confidence -= AMBIGUITY_PENALTY * min(candidate_count - 1, 3) * 0.33
        if is_ambiguous:
            confidence -= AMBIGUITY_PENALTY
        if is_priority_tag:
            confidence += PRIORITY_TAG_BONUS
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        text = visible_text(element)
        if len(text) < MIN_TEXT_LENGTH:
            return None
        return normalize_text(text)[:100]

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        return compare_text(expected_value, visible_text(element)) >= SIMILARITY_THRESHOLD
