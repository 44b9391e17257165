"""Strategies keyed on the element's own identifying attributes: id and name."""

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot
from .base import ExactMatchStrategy

ID_STRATEGY_NAME = "id"
ID_PRIORITY = 2
ID_BASE_CONFIDENCE = 0.9
ID_AMBIGUITY_PENALTY = 0.2

NAME_STRATEGY_NAME = "name"
NAME_PRIORITY = 3
NAME_BASE_CONFIDENCE = 0.8
NAME_AMBIGUITY_PENALTY = 0.15


class IdStrategy(ExactMatchStrategy):
    name = ID_STRATEGY_NAME
    priority = ID_PRIORITY
    base_confidence = ID_BASE_CONFIDENCE
    ambiguity_penalty = ID_AMBIGUITY_PENALTY
    missing_message = "Bundle has no id"

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.id and bundle.id.strip())

    def candidates(self, bundle: LocatorBundle, root: SearchRoot) -> list[ElementNode]:
        # Duplicate ids are invalid HTML but common; collect them all.
        return root.find_by_attribute("id", bundle.id)

    def generate_selector(self, element: ElementNode) -> str | None:
        return element.id or None


class NameStrategy(ExactMatchStrategy):
    name = NAME_STRATEGY_NAME
    priority = NAME_PRIORITY
    base_confidence = NAME_BASE_CONFIDENCE
    ambiguity_penalty = NAME_AMBIGUITY_PENALTY
    missing_message = "Bundle has no name"

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(bundle.name and bundle.name.strip())

    def candidates(self, bundle: LocatorBundle, root: SearchRoot) -> list[ElementNode]:
        matches = root.find_by_attribute("name", bundle.name)
        if bundle.tag:
            same_tag = [e for e in matches if e.tag == bundle.tag.lower()]
            if same_tag:
                return same_tag
        return matches

    def generate_selector(self, element: ElementNode) -> str | None:
        return element.get_attribute("name") or None
