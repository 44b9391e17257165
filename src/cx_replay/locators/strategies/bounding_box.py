import json
import time
from dataclasses import dataclass
from functools import cmp_to_key

from ..bundle import BoundingBox, LocatorBundle
from ..dom import ElementNode, SearchRoot, is_visible
from .base import LocatorResult, LocatorStrategy, clamp_confidence, euclidean

STRATEGY_NAME = "bounding-box"
STRATEGY_PRIORITY = 8
BASE_CONFIDENCE = 0.35
MAX_DISTANCE_THRESHOLD = 200
HIGH_CONFIDENCE_DISTANCE = 50
MEDIUM_CONFIDENCE_DISTANCE = 100
CLOSE_MATCH_BONUS = 0.20
MEDIUM_MATCH_BONUS = 0.10
TAG_MATCH_BONUS = 0.10
SIZE_MATCH_BONUS = 0.05
AMBIGUITY_PENALTY = 0.10
FAR_DISTANCE_PENALTY = 0.15
MIN_ELEMENT_SIZE = 5
MAX_CANDIDATES = 100
SIZE_TOLERANCE = 0.3
# Two candidates closer than this (px) to each other's distance are ambiguous.
AMBIGUITY_DISTANCE = 20
MIN_COORDINATE = -1000


@dataclass
class SpatialCandidate:
    element: ElementNode
    distance: float
    center_distance: float
    tag_match: bool
    size_match: bool
    score: float


def box_distance(a: BoundingBox, b: BoundingBox) -> float:
    """Gap between two boxes' edges; 0 when they touch or overlap."""
    dx = 0.0
    if b.right < a.x:
        dx = a.x - b.right
    elif a.right < b.x:
        dx = b.x - a.right
    dy = 0.0
    if b.bottom < a.y:
        dy = a.y - b.bottom
    elif a.bottom < b.y:
        dy = b.y - a.bottom
    return (dx * dx + dy * dy) ** 0.5


def sizes_match(a: BoundingBox, b: BoundingBox, tolerance: float = SIZE_TOLERANCE) -> bool:
    if max(a.width, b.width) <= 0 or max(a.height, b.height) <= 0:
        return False
    width_ratio = min(a.width, b.width) / max(a.width, b.width)
    height_ratio = min(a.height, b.height) / max(a.height, b.height)
    return width_ratio >= 1 - tolerance and height_ratio >= 1 - tolerance


def _spatial_order(a: SpatialCandidate, b: SpatialCandidate) -> int:
    if abs(a.score - b.score) > 5:
        return -1 if a.score < b.score else 1
    if a.distance != b.distance:
        return -1 if a.distance < b.distance else 1
    return 0


def find_nearby_elements(
    target: BoundingBox,
    root: SearchRoot,
    tag: str | None = None,
    max_distance: float = MAX_DISTANCE_THRESHOLD,
) -> list[SpatialCandidate]:
    elements = root.find_by_tag(tag) if tag else list(root.iter_elements())
    visible = [e for e in elements if e.rect is not None and is_visible(e)]
    candidates = []
    for element in visible[: MAX_CANDIDATES * 2]:
        rect = element.rect
        if rect.width < MIN_ELEMENT_SIZE or rect.height < MIN_ELEMENT_SIZE:
            continue
        distance = box_distance(target, rect)
        if distance > max_distance:
            continue
        tag_match = element.tag == tag.lower() if tag else True
        size_match = sizes_match(target, rect)
        score = distance - (20 if tag_match else 0) - (10 if size_match else 0)
        candidates.append(
            SpatialCandidate(
                element=element,
                distance=distance,
                center_distance=euclidean(target.center, rect.center),
                tag_match=tag_match,
                size_match=size_match,
                score=score,
            )
        )
    return sorted(candidates, key=cmp_to_key(_spatial_order))[:MAX_CANDIDATES]


def _is_ambiguous(candidates: list[SpatialCandidate]) -> bool:
    return (
        len(candidates) > 1
        and candidates[1].distance - candidates[0].distance < AMBIGUITY_DISTANCE
    )


class BoundingBoxStrategy(LocatorStrategy):
    """Last-resort spatial lookup around the recorded position."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        box = bundle.bounding
        if box is None:
            return False
        if box.width < MIN_ELEMENT_SIZE or box.height < MIN_ELEMENT_SIZE:
            return False
        return box.x >= MIN_COORDINATE and box.y >= MIN_COORDINATE

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle has invalid or missing bounding box data")

        candidates = find_nearby_elements(bundle.bounding, root, bundle.tag or None)
        if not candidates and bundle.tag:
            candidates = find_nearby_elements(bundle.bounding, root)
        if not candidates:
            return self._miss(
                started, f"No elements found within {MAX_DISTANCE_THRESHOLD}px of target"
            )

        best = candidates[0]
        is_ambiguous = _is_ambiguous(candidates)
        return self._result(
            started,
            best.element,
            self.calculate_confidence(best, len(candidates), is_ambiguous),
            distance=round(best.distance),
            center_distance=round(best.center_distance),
            tag_match=best.tag_match,
            size_match=best.size_match,
            candidate_count=len(candidates),
            is_ambiguous=is_ambiguous,
        )

    def calculate_confidence(
        self, candidate: SpatialCandidate, candidate_count: int, is_ambiguous: bool
    ) -> float:
        confidence = BASE_CONFIDENCE
        if candidate.distance < HIGH_CONFIDENCE_DISTANCE:
            confidence += CLOSE_MATCH_BONUS
        elif candidate.distance < MEDIUM_CONFIDENCE_DISTANCE:
            confidence += MEDIUM_MATCH_BONUS
        else:
            confidence -= (
                (candidate.distance - MEDIUM_CONFIDENCE_DISTANCE)
                / (MAX_DISTANCE_THRESHOLD - MEDIUM_CONFIDENCE_DISTANCE)
                * FAR_DISTANCE_PENALTY
            )
        if candidate.tag_match:
            confidence += TAG_MATCH_BONUS
        if candidate.size_match:
            confidence += SIZE_MATCH_BONUS
        if is_ambiguous:
            confidence -= AMBIGUITY_PENALTY
        if candidate_count > 3:
            confidence -= min(0.1, (candidate_count - 3) * 0.02)
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        rect = element.rect
        if rect is None or rect.width < MIN_ELEMENT_SIZE or rect.height < MIN_ELEMENT_SIZE:
            return None
        return json.dumps(
            {
                "x": round(rect.x),
                "y": round(rect.y),
                "width": round(rect.width),
                "height": round(rect.height),
            }
        )

    def validate(
        self,
        element: ElementNode,
        expected_value: str,
        tolerance: float = MAX_DISTANCE_THRESHOLD,
    ) -> bool:
        if element.rect is None:
            return False
        expected = BoundingBox(**json.loads(expected_value))
        return box_distance(expected, element.rect) <= tolerance
