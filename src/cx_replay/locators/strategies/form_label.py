import time
from dataclasses import dataclass
from typing import Literal

from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot, css_escape
from .base import LocatorResult, LocatorStrategy, clamp_confidence

STRATEGY_NAME = "form-label"
STRATEGY_PRIORITY = 10
BASE_CONFIDENCE = 0.72
EXPLICIT_LABEL_BONUS = 0.10
IMPLICIT_LABEL_BONUS = 0.08
ARIA_LABEL_BONUS = 0.05
PROXIMITY_PENALTY = 0.10
AMBIGUITY_PENALTY = 0.15
TAG_MATCH_BONUS = 0.05
LABEL_SIMILARITY_THRESHOLD = 0.7
MAX_PROXIMITY_DISTANCE = 5

LABELABLE_ELEMENTS = ("input", "select", "textarea", "button", "meter", "output", "progress")
UNLABELED_INPUT_TYPES = ("hidden", "submit", "reset")
FORM_CONTROLS = ("input", "select", "textarea")

AssociationType = Literal["explicit", "implicit", "aria", "proximity", "none"]

# Ranking adjustments applied to label similarity when ordering candidates.
ASSOCIATION_SCORE = {
    "explicit": 0.1,
    "implicit": 0.08,
    "aria": 0.05,
    "proximity": -0.05,
    "none": 0.0,
}
ASSOCIATION_CONFIDENCE = {
    "explicit": EXPLICIT_LABEL_BONUS,
    "implicit": IMPLICIT_LABEL_BONUS,
    "aria": ARIA_LABEL_BONUS,
    "proximity": -PROXIMITY_PENALTY,
    "none": 0.0,
}


@dataclass
class LabelAssociation:
    label: ElementNode
    text: str
    type: AssociationType


@dataclass
class LabeledInputCandidate:
    element: ElementNode
    label_text: str
    association_type: AssociationType
    similarity: float
    score: float


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    return " ".join(text.lower().split()).replace(":", "").replace("*", "").strip()


def text_similarity(a: str, b: str) -> float:
    """Containment ratio when one label contains the other, else word-level Dice."""
    norm_a, norm_b = normalize_text(a), normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if norm_a in norm_b or norm_b in norm_a:
        shorter, longer = sorted((norm_a, norm_b), key=len)
        return len(shorter) / len(longer)
    words_a = {w for w in norm_a.split(" ") if len(w) > 1}
    words_b = {w for w in norm_b.split(" ") if len(w) > 1}
    if not words_a or not words_b:
        return 0.0
    return 2 * len(words_a & words_b) / (len(words_a) + len(words_b))


def is_labelable(element: ElementNode) -> bool:
    if element.tag not in LABELABLE_ELEMENTS:
        return False
    return not (element.tag == "input" and element.input_type in UNLABELED_INPUT_TYPES)


def label_text(label: ElementNode) -> str:
    """Text of a label without the text of form controls nested in it."""
    if label.tag in FORM_CONTROLS:
        return ""
    parts = [label.text.strip()] if label.text.strip() else []
    for child in label.children:
        child_text = label_text(child)
        if child_text:
            parts.append(child_text)
    return " ".join(parts)


def explicit_label(element: ElementNode, root: SearchRoot) -> ElementNode | None:
    if not element.id:
        return None
    return root.query_selector(f'label[for="{css_escape(element.id)}"]')


def implicit_label(element: ElementNode) -> ElementNode | None:
    return next((a for a in element.ancestors() if a.tag == "label"), None)


def aria_label_element(element: ElementNode, root: SearchRoot) -> ElementNode | None:
    ids = (element.get_attribute("aria-labelledby") or "").split()
    if not ids:
        return None
    return root.get_element_by_id(ids[0])


def proximity_label(
    element: ElementNode, max_distance: int = MAX_PROXIMITY_DISTANCE
) -> ElementNode | None:
    """Nearest preceding label, walking back through siblings and then parents."""
    current: ElementNode | None = element
    distance = 0
    while current is not None and distance < max_distance:
        for sibling in current.previous_siblings():
            if sibling.tag == "label":
                return sibling
            nested = next((d for d in sibling.iter_descendants() if d.tag == "label"), None)
            if nested is not None:
                return nested
            distance += 1
            if distance >= max_distance:
                break
        current = current.parent
        distance += 1
    return None


def label_associations(element: ElementNode, root: SearchRoot) -> list[LabelAssociation]:
    associations = []
    explicit = explicit_label(element, root)
    if explicit is not None:
        associations.append(LabelAssociation(explicit, explicit.text_content, "explicit"))
    implicit = implicit_label(element)
    if implicit is not None and implicit is not explicit:
        associations.append(LabelAssociation(implicit, label_text(implicit), "implicit"))
    aria = aria_label_element(element, root)
    if aria is not None:
        associations.append(LabelAssociation(aria, aria.text_content, "aria"))
    if not associations:
        nearby = proximity_label(element)
        if nearby is not None:
            associations.append(LabelAssociation(nearby, nearby.text_content, "proximity"))
    return associations


def input_label_text(element: ElementNode, root: SearchRoot) -> tuple[str, AssociationType]:
    associations = label_associations(element, root)
    if associations:
        return associations[0].text, associations[0].type
    aria = element.get_attribute("aria-label")
    if aria:
        return aria, "aria"
    placeholder = element.get_attribute("placeholder")
    if placeholder:
        return placeholder, "none"
    return "", "none"


def find_labeled_inputs(
    root: SearchRoot, tag: str | None = None
) -> list[tuple[ElementNode, str, AssociationType]]:
    elements = root.find_by_tag(tag) if tag else root.find_by_tag(*LABELABLE_ELEMENTS)
    labeled = []
    for element in elements:
        if not is_labelable(element):
            continue
        text, kind = input_label_text(element, root)
        if text:
            labeled.append((element, text, kind))
    return labeled


def find_inputs_by_label_text(
    target: str, root: SearchRoot, tag: str | None = None
) -> list[LabeledInputCandidate]:
    if not normalize_text(target):
        return []
    candidates = []
    for element, text, kind in find_labeled_inputs(root, tag):
        similarity = text_similarity(target, text)
        if similarity >= LABEL_SIMILARITY_THRESHOLD:
            candidates.append(
                LabeledInputCandidate(
                    element=element,
                    label_text=text,
                    association_type=kind,
                    similarity=similarity,
                    score=similarity + ASSOCIATION_SCORE[kind],
                )
            )
    return sorted(candidates, key=lambda c: c.score, reverse=True)


class FormLabelStrategy(LocatorStrategy):
    """Finds form controls through the label text associated with them."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        if bundle.tag and bundle.tag.lower() not in LABELABLE_ELEMENTS:
            return False
        return any(v and v.strip() for v in (bundle.aria, bundle.text, bundle.placeholder))

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle does not contain label-related data")

        target = bundle.aria or bundle.text or bundle.placeholder
        if not target.strip():
            return self._miss(started, "No label text to search for")

        candidates = find_inputs_by_label_text(target, root, bundle.tag or None)
        if not candidates:
            return self._miss(started, f'No inputs found with label matching "{target[:50]}"')

        best = candidates[0]
        return self._result(
            started,
            best.element,
            self.calculate_confidence(best, len(candidates), bundle),
            matched_label=best.label_text,
            association_type=best.association_type,
            similarity=best.similarity,
            candidate_count=len(candidates),
        )

    def calculate_confidence(
        self, candidate: LabeledInputCandidate, candidate_count: int, bundle: LocatorBundle
    ) -> float:
        confidence = BASE_CONFIDENCE + ASSOCIATION_CONFIDENCE[candidate.association_type]
        if candidate.similarity >= 0.95:
            confidence += 0.05
        elif candidate.similarity < 0.8:
            confidence -= 0.05
        if candidate_count > 1:
            confidence -= min(AMBIGUITY_PENALTY, AMBIGUITY_PENALTY * (candidate_count - 1) * 0.4)
        if bundle.tag and candidate.element.tag == bundle.tag.lower():
            confidence += TAG_MATCH_BONUS
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        if not is_labelable(element) or element.owner is None:
            return None
        text, kind = input_label_text(element, element.owner)
        if not text or kind == "none":
            return None
        return text.strip()

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        if not is_labelable(element) or element.owner is None:
            return False
        text, _ = input_label_text(element, element.owner)
        return text_similarity(text, expected_value) >= LABEL_SIMILARITY_THRESHOLD

    def association_type(self, element: ElementNode) -> AssociationType:
        if element.owner is None:
            return "none"
        return input_label_text(element, element.owner)[1]

    def find_by_label(self, text: str, root: SearchRoot) -> list[ElementNode]:
        return [c.element for c in find_inputs_by_label_text(text, root)]
