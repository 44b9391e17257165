"""
The strategy contract and the scoring helpers the strategies share.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..bundle import BoundingBox, LocatorBundle
from ..dom import ElementNode, SearchRoot

# Distance bands (px) shared by the strategies that use recorded position as
# a tie-breaker.
NEAR_DISTANCE = 50
MID_DISTANCE = 100
FAR_DISTANCE = 200

# Default margin by which the best candidate must beat the runner-up before a
# match is considered unambiguous.
DEFAULT_DISAMBIGUATION_MARGIN = 0.2


@dataclass
class LocatorResult:
    """Outcome of one strategy's `find`."""

    element: ElementNode | None
    confidence: float
    strategy: str
    duration: float = 0.0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.element is not None and self.confidence > 0


@dataclass
class ScoredCandidate:
    element: ElementNode
    score: float
    details: dict[str, Any] = field(default_factory=dict)


class LocatorStrategy(ABC):
    """
    One heuristic for re-finding a recorded element.

    `find` must not raise for an ordinary miss; it returns a result with no
    element and zero confidence. Unexpected failures may be reported through
    the result's `error` field; anything that does escape is caught by the
    resolver and recorded against the attempt.
    """

    name: str = ""
    priority: int = 100
    base_confidence: float = 0.0

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"

    @abstractmethod
    def can_handle(self, bundle: LocatorBundle) -> bool:
        """Cheap check that the bundle carries what this strategy needs."""
        raise NotImplementedError

    @abstractmethod
    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        raise NotImplementedError

    @abstractmethod
    def generate_selector(self, element: ElementNode) -> str | None:
        """The selector this strategy would record for `element`."""
        raise NotImplementedError

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        """True when `expected_value` (a generated selector) still identifies `element`."""
        return self.generate_selector(element) == expected_value

    # --- Result helpers ---

    def _result(
        self,
        started: float,
        element: ElementNode | None,
        confidence: float,
        **metadata: Any,
    ) -> LocatorResult:
        return LocatorResult(
            element=element,
            confidence=clamp_confidence(confidence) if element is not None else 0.0,
            strategy=self.name,
            duration=elapsed_ms(started),
            metadata=metadata,
        )

    def _miss(self, started: float, error: str | None = None, **metadata: Any) -> LocatorResult:
        return LocatorResult(
            element=None,
            confidence=0.0,
            strategy=self.name,
            duration=elapsed_ms(started),
            error=error,
            metadata=metadata,
        )


def elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalize_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(value.split())


def distance_to_bounding(element: ElementNode, bounding: BoundingBox | None) -> float | None:
    """Centre-to-centre distance between an element and the recorded box."""
    if bounding is None or element.rect is None:
        return None
    return element.rect.center_distance(bounding)


def distance_bonus(
    distance: float | None, bonuses: tuple[float, float, float] = (0.15, 0.1, 0.05)
) -> float:
    """Bonus for candidates near the recorded position (near, mid, far bands)."""
    if distance is None:
        return 0.0
    near, mid, far = bonuses
    if distance < NEAR_DISTANCE:
        return near
    if distance < MID_DISTANCE:
        return mid
    if distance < FAR_DISTANCE:
        return far
    return 0.0


def class_overlap(recorded: list[str], actual: list[str]) -> float:
    """Fraction of the recorded classes still present on the candidate."""
    if not recorded:
        return 0.0
    actual_set = set(actual)
    return sum(1 for c in recorded if c in actual_set) / len(recorded)


def pick_best(
    candidates: list[ScoredCandidate], margin: float = DEFAULT_DISAMBIGUATION_MARGIN
) -> tuple[ScoredCandidate, bool]:
    """
    Returns the highest-scoring candidate and whether it beat the runner-up
    by more than `margin`.
    """
    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    best = ranked[0]
    if len(ranked) == 1:
        return best, True
    return best, (best.score - ranked[1].score) > margin


def score_by_signals(
    element: ElementNode,
    bundle: LocatorBundle,
    base: float = 0.5,
) -> ScoredCandidate:
    """
    Generic secondary-signal score used by the exact-match strategies when
    several elements share the recorded attribute.
    """
    score = base
    details: dict[str, Any] = {}
    if bundle.tag and element.tag == bundle.tag.lower():
        score += 0.15
        details["tag_match"] = True
    if bundle.id and element.id == bundle.id:
        score += 0.2
        details["id_match"] = True
    if bundle.name and element.get_attribute("name") == bundle.name:
        score += 0.1
        details["name_match"] = True
    distance = distance_to_bounding(element, bundle.bounding)
    score += distance_bonus(distance)
    if distance is not None:
        details["distance"] = round(distance, 1)
    overlap = class_overlap(bundle.classes, element.classes)
    score += overlap * 0.1
    return ScoredCandidate(element, score, details)


def euclidean(a: tuple[float, float], b: tuple[float, float]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class ExactMatchStrategy(LocatorStrategy):
    """
    Shared `find` for strategies that look up elements by an exact recorded
    value (xpath, id, name, aria label). A single match earns the base
    confidence; several matches are ranked with `score_by_signals`.
    """

    ambiguity_penalty: float = 0.2
    margin: float = DEFAULT_DISAMBIGUATION_MARGIN
    missing_message: str = "Bundle lacks the attribute this strategy needs"

    @abstractmethod
    def candidates(self, bundle: LocatorBundle, root: SearchRoot) -> list[ElementNode]:
        raise NotImplementedError

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, self.missing_message)
        return self.settle(started, bundle, self.candidates(bundle, root))

    def settle(
        self,
        started: float,
        bundle: LocatorBundle,
        candidates: list[ElementNode],
        base: float | None = None,
        **metadata: Any,
    ) -> LocatorResult:
        base = self.base_confidence if base is None else base
        if not candidates:
            return self._miss(started, candidate_count=0, **metadata)
        if len(candidates) == 1:
            return self._result(
                started, candidates[0], base, match_type="exact", candidate_count=1, **metadata
            )
        best, decisive = pick_best(
            [score_by_signals(c, bundle) for c in candidates], self.margin
        )
        confidence = base
        if not decisive:
            confidence -= self.ambiguity_penalty * min(len(candidates) - 1, 3) / 3
        return self._result(
            started,
            best.element,
            confidence,
            match_type="disambiguated" if decisive else "ambiguous",
            candidate_count=len(candidates),
            score=round(best.score, 3),
            **metadata,
        )
