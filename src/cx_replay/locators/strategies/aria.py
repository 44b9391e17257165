import time

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot
from .base import ExactMatchStrategy, LocatorResult, normalize_whitespace

STRATEGY_NAME = "aria-label"
STRATEGY_PRIORITY = 4
BASE_CONFIDENCE = 0.75
AMBIGUITY_PENALTY = 0.15
# Label text reached through an id reference is slightly weaker evidence.
LABELLEDBY_PENALTY = 0.05
DESCRIBEDBY_PENALTY = 0.10


def _referenced_text(element: ElementNode, attribute: str, root: SearchRoot) -> str:
    ids = (element.get_attribute(attribute) or "").split()
    parts = []
    for ref in ids:
        target = root.get_element_by_id(ref)
        if target is not None:
            parts.append(target.text_content)
    return normalize_whitespace(" ".join(parts))


class AriaLabelStrategy(ExactMatchStrategy):
    """
    Matches the recorded accessible name, trying in turn `aria-label`,
    `aria-labelledby` and `aria-describedby`.
    """

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE
    ambiguity_penalty = AMBIGUITY_PENALTY
    missing_message = "Bundle has no aria label"

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.aria and bundle.aria.strip())

    def candidates(self, bundle: LocatorBundle, root: SearchRoot) -> list[ElementNode]:
        return root.find_by_attribute("aria-label", bundle.aria)

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, self.missing_message)
        target = normalize_whitespace(bundle.aria)

        direct = self.candidates(bundle, root)
        if direct:
            return self.settle(started, bundle, direct, source="aria-label")

        for attribute, penalty in (
            ("aria-labelledby", LABELLEDBY_PENALTY),
            ("aria-describedby", DESCRIBEDBY_PENALTY),
        ):
            referenced = [
                e
                for e in root.find_by_attribute(attribute)
                if _referenced_text(e, attribute, root) == target
            ]
            if referenced:
                return self.settle(
                    started,
                    bundle,
                    referenced,
                    base=self.base_confidence - penalty,
                    source=attribute,
                )
        return self._miss(started, candidate_count=0)

    def generate_selector(self, element: ElementNode) -> str | None:
        label = element.get_attribute("aria-label")
        if label:
            return label
        if element.owner is not None:
            referenced = _referenced_text(element, "aria-labelledby", element.owner)
            return referenced or None
        return None
