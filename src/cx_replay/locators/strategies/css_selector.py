import re
import time
from dataclasses import dataclass
from typing import Literal

from ...errors import SelectorSyntaxError
from ..bundle import LocatorBundle
from ..dom import ElementNode, SearchRoot, css_escape
from .base import LocatorResult, LocatorStrategy, clamp_confidence

STRATEGY_NAME = "css-selector"
STRATEGY_PRIORITY = 9
BASE_CONFIDENCE = 0.60
UNIQUE_SELECTOR_BONUS = 0.15
ID_SELECTOR_BONUS = 0.10
AMBIGUITY_PENALTY = 0.15
CLASS_ONLY_PENALTY = 0.05
TAG_ONLY_PENALTY = 0.20
MAX_CLASSES_IN_SELECTOR = 3

# Utility, state and generated class names that do not survive a rebuild.
IGNORED_CLASS_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"^hover:",
        r"^focus:",
        r"^active:",
        r"^disabled$",
        r"^hidden$",
        r"^visible$",
        r"^is-",
        r"^has-",
        r"^js-",
        r"^ng-",
        r"^v-",
        r"^_",
        r"^css-",
        r"^sc-",
        r"^chakra-",
        r"^Mui[A-Z]",
        r"^[a-z0-9]{6,}$",
        r"^[A-Z][a-z0-9]{5,}$",
    )
)

SelectorType = Literal["recorded", "id", "class", "attribute", "combined", "tag-only"]

_ID_PART = re.compile(r"#[^.\[\s]+")
_CLASS_PART = re.compile(r"\.[^.\[\s#]+")
_ATTR_PART = re.compile(r"\[[^\]]+\]")
_TAG_PART = re.compile(r"^[a-z]+", re.IGNORECASE)


@dataclass
class GeneratedSelector:
    selector: str
    type: SelectorType
    specificity: int
    match_count: int

    @property
    def is_unique(self) -> bool:
        return self.match_count == 1


def should_ignore_class(class_name: str) -> bool:
    if not class_name or not class_name.strip():
        return True
    return any(p.search(class_name) for p in IGNORED_CLASS_PATTERNS)


def filter_stable_classes(classes: list[str]) -> list[str]:
    return [c for c in classes if not should_ignore_class(c)][:MAX_CLASSES_IN_SELECTOR]


def build_id_selector(element_id: str, tag: str | None = None) -> str:
    return f"{(tag or '').lower()}#{css_escape(element_id)}"


def build_class_selector(classes: list[str], tag: str | None = None) -> str:
    stable = filter_stable_classes(classes)
    if not stable:
        return ""
    return (tag or "").lower() + "".join(f".{css_escape(c)}" for c in stable)


def build_attribute_selector(name: str, value: str, tag: str | None = None) -> str:
    return f'{(tag or "").lower()}[{name}="{css_escape(value)}"]'


def build_combined_selector(bundle: LocatorBundle) -> str:
    """Tag plus id, or tag plus stable classes and identifying attributes."""
    parts = [bundle.tag.lower()] if bundle.tag else []
    if bundle.id:
        parts.append(f"#{css_escape(bundle.id)}")
        return "".join(parts)
    parts.extend(f".{css_escape(c)}" for c in filter_stable_classes(bundle.classes))
    for attribute, value in (
        ("name", bundle.name),
        ("placeholder", bundle.placeholder),
        ("aria-label", bundle.aria),
    ):
        if value:
            parts.append(f'[{attribute}="{css_escape(value)}"]')
    return "".join(parts)


def calculate_specificity(selector: str) -> int:
    """Rough CSS specificity: ids 100, classes and attributes 10, leading tag 1."""
    return (
        len(_ID_PART.findall(selector)) * 100
        + len(_CLASS_PART.findall(selector)) * 10
        + len(_ATTR_PART.findall(selector)) * 10
        + (1 if _TAG_PART.match(selector) else 0)
    )


def count_matches(selector: str, root: SearchRoot) -> int:
    try:
        return len(root.query_selector_all(selector))
    except SelectorSyntaxError:
        return 0


def generate_selector_variants(bundle: LocatorBundle, root: SearchRoot) -> list[GeneratedSelector]:
    """
    Every selector that can be built from the bundle, best first: unique
    selectors, then fewer matches, then higher specificity.
    """
    candidates: list[tuple[str, SelectorType]] = []
    if bundle.css:
        candidates.append((bundle.css, "recorded"))
    if bundle.id:
        candidates.append((build_id_selector(bundle.id, bundle.tag), "id"))
    combined = build_combined_selector(bundle)
    if combined:
        candidates.append((combined, "combined"))
    class_selector = build_class_selector(bundle.classes, bundle.tag)
    if class_selector and class_selector != combined:
        candidates.append((class_selector, "class"))
    if bundle.name:
        candidates.append((build_attribute_selector("name", bundle.name, bundle.tag), "attribute"))
    if bundle.placeholder:
        candidates.append(
            (build_attribute_selector("placeholder", bundle.placeholder, bundle.tag), "attribute")
        )
    if bundle.tag:
        candidates.append((bundle.tag.lower(), "tag-only"))

    variants = [
        GeneratedSelector(
            selector=selector,
            type=kind,
            specificity=calculate_specificity(selector),
            match_count=count_matches(selector, root),
        )
        for selector, kind in candidates
    ]
    variants.sort(key=lambda v: (not v.is_unique, v.match_count, -v.specificity))
    return variants


def select_best_selector(variants: list[GeneratedSelector]) -> GeneratedSelector | None:
    for variant in variants:
        if variant.is_unique:
            return variant
    matching = [v for v in variants if v.match_count > 0]
    return matching[0] if matching else None


class CssSelectorStrategy(LocatorStrategy):
    """Builds CSS selectors from the bundle and keeps the most selective one."""

    name = STRATEGY_NAME
    priority = STRATEGY_PRIORITY
    base_confidence = BASE_CONFIDENCE

    def can_handle(self, bundle: LocatorBundle) -> bool:
        return bool(
            bundle.id
            or bundle.tag
            or filter_stable_classes(bundle.classes)
            or bundle.name
            or bundle.placeholder
            or bundle.aria
        )

    def find(self, bundle: LocatorBundle, root: SearchRoot) -> LocatorResult:
        started = time.perf_counter()
        if not self.can_handle(bundle):
            return self._miss(started, "Bundle has insufficient properties for CSS selector")

        variants = generate_selector_variants(bundle, root)
        if not variants:
            return self._miss(started, "Could not generate any valid selectors")
        best = select_best_selector(variants)
        if best is None:
            return self._miss(
                started,
                "No selectors matched any elements",
                variants_generated=len(variants),
                selectors=[v.selector for v in variants],
            )

        element = root.query_selector(best.selector)
        return self._result(
            started,
            element,
            self.calculate_confidence(best),
            used_selector=best.selector,
            selector_type=best.type,
            specificity=best.specificity,
            is_unique=best.is_unique,
            match_count=best.match_count,
            variants_generated=len(variants),
        )

    def calculate_confidence(self, variant: GeneratedSelector) -> float:
        confidence = BASE_CONFIDENCE
        if variant.is_unique:
            confidence += UNIQUE_SELECTOR_BONUS
        if variant.type == "id":
            confidence += ID_SELECTOR_BONUS
        if variant.match_count > 1:
            confidence -= min(
                AMBIGUITY_PENALTY, AMBIGUITY_PENALTY * (variant.match_count - 1) * 0.5
            )
        if variant.type == "class":
            confidence -= CLASS_ONLY_PENALTY
        elif variant.type == "tag-only":
            confidence -= TAG_ONLY_PENALTY
        confidence += min(0.05, variant.specificity / 1000)
        return clamp_confidence(confidence)

    def generate_selector(self, element: ElementNode) -> str | None:
        if element.owner is None:
            return None
        bundle = LocatorBundle(
            tag=element.tag,
            id=element.id,
            name=element.get_attribute("name") or "",
            placeholder=element.get_attribute("placeholder") or "",
            aria=element.get_attribute("aria-label") or "",
            classes=element.classes,
        )
        best = select_best_selector(generate_selector_variants(bundle, element.owner))
        return best.selector if best else None

    def validate(self, element: ElementNode, expected_value: str) -> bool:
        if element.owner is None:
            return False
        try:
            return element.owner.query_selector(expected_value) is element
        except SelectorSyntaxError:
            return False

    def test_selectors(self, selectors: list[str], root: SearchRoot) -> GeneratedSelector | None:
        """Best of an arbitrary list of selectors against `root`."""
        return select_best_selector(
            [
                GeneratedSelector(s, "combined", calculate_specificity(s), count_matches(s, root))
                for s in selectors
            ]
        )
