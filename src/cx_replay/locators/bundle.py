"""
The locator bundle: an immutable snapshot of the attributes that identified an
element at record time, plus helpers to merge, score and validate bundles.
"""

import math
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .dom import ElementNode

# Weights used by bundle_quality_score. They sum to 100.
QUALITY_WEIGHTS: dict[str, int] = {
    "xpath": 25,
    "id": 20,
    "name": 15,
    "aria": 10,
    "placeholder": 10,
    "data_attrs": 8,
    "text": 7,
    "bounding": 5,
}

DEFAULT_POINT_RADIUS = 200


class BoundingBox(BaseModel):
    """Viewport rectangle of an element, in CSS pixels."""

    model_config = ConfigDict(frozen=True)

    x: float = Field(0, description="Left edge.")
    y: float = Field(0, description="Top edge.")
    width: float = Field(0, description="Width.")
    height: float = Field(0, description="Height.")

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def center_distance(self, other: "BoundingBox") -> float:
        """Euclidean distance between the centres of two boxes."""
        (ax, ay), (bx, by) = self.center, other.center
        return math.hypot(ax - bx, ay - by)


class LocatorBundle(BaseModel):
    """
    Recorded identifying attributes of one element. Instances are frozen;
    use `merge_bundles` or `clone_bundle` to derive new ones.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tag: str = Field("", description="Lower-case tag name.")
    id: str = Field("", description="The element's id attribute.")
    name: str = Field("", description="The element's name attribute.")
    placeholder: str = Field("", description="Placeholder text.")
    aria: str = Field("", description="Accessible label (aria-label).")
    data_attrs: dict[str, str] = Field(
        default_factory=dict,
        alias="dataAttrs",
        description="data-* attributes; keys may omit the 'data-' prefix.",
    )
    text: str = Field("", description="Visible text content.")
    css: str = Field("", description="Recorded CSS selector.")
    xpath: str = Field("", description="Recorded absolute XPath.")
    classes: list[str] = Field(default_factory=list, description="Class list.")
    page_url: str = Field("", alias="pageUrl", description="URL at record time.")
    bounding: BoundingBox | None = Field(
        None, description="Viewport rectangle at record time."
    )
    iframe_chain: list[int | str] | None = Field(
        None,
        alias="iframeChain",
        description="Frames to descend: an int is the n-th iframe, a str its id or name.",
    )
    shadow_hosts: list[str] | None = Field(
        None,
        alias="shadowHosts",
        description="CSS selectors of the shadow hosts to descend, outermost first.",
    )


def create_bundle(**fields: Any) -> LocatorBundle:
    """Creates a bundle, filling every unspecified field with its empty default."""
    return LocatorBundle(**fields)


def clone_bundle(bundle: LocatorBundle) -> LocatorBundle:
    return bundle.model_copy(deep=True)


def merge_bundles(base: LocatorBundle, override: LocatorBundle) -> LocatorBundle:
    """
    Combines two bundles into a new one. Scalar fields from `override` win when
    non-empty, data attributes are unioned (override keys win), classes are
    replaced only by a non-empty list and the structural fields (bounding,
    iframe chain, shadow hosts) are replaced when the override carries them.
    """
    update: dict[str, Any] = {}
    for field in ("tag", "id", "name", "placeholder", "aria", "text", "css", "xpath", "page_url"):
        value = getattr(override, field)
        if value:
            update[field] = value
    update["data_attrs"] = {**base.data_attrs, **override.data_attrs}
    if override.classes:
        update["classes"] = list(override.classes)
    for field in ("bounding", "iframe_chain", "shadow_hosts"):
        value = getattr(override, field)
        if value is not None:
            update[field] = value
    return base.model_copy(update=update, deep=True)


def bundle_quality_score(bundle: LocatorBundle) -> int:
    """Scores how well a bundle is likely to survive page changes (0-100)."""
    score = 0
    for field, weight in QUALITY_WEIGHTS.items():
        value = getattr(bundle, field)
        if field == "data_attrs":
            present = any(v for v in value.values())
        elif field == "bounding":
            present = value is not None
        else:
            present = bool(value and str(value).strip())
        if present:
            score += weight
    return min(score, 100)


def validate_bundle(bundle: LocatorBundle) -> list[str]:
    """Returns a list of problems with a bundle; an empty list means it is usable."""
    problems: list[str] = []
    if not (bundle.xpath or bundle.id or bundle.name or bundle.css or bundle.bounding):
        problems.append(
            "Bundle needs at least one of xpath, id, name, css or bounding."
        )
    if bundle.bounding is not None and (
        bundle.bounding.width < 0 or bundle.bounding.height < 0
    ):
        problems.append("Bounding box has a negative size.")
    if bundle.iframe_chain is not None and any(
        isinstance(hop, int) and hop < 0 for hop in bundle.iframe_chain
    ):
        problems.append("Iframe chain contains a negative index.")
    return problems


def is_navigation_ready(bundle: LocatorBundle) -> bool:
    """True when the bundle carries one of the strong locators (xpath, id, css)."""
    return bool(bundle.xpath or bundle.id or bundle.css)


def bundle_matches_element(bundle: LocatorBundle, element: "ElementNode") -> bool:
    """
    Checks that every identifying attribute recorded in the bundle is still
    present on the element. Empty bundle fields are ignored.
    """
    if bundle.tag and element.tag != bundle.tag.lower():
        return False
    if bundle.id and element.get_attribute("id") != bundle.id:
        return False
    if bundle.name and element.get_attribute("name") != bundle.name:
        return False
    if bundle.placeholder and element.get_attribute("placeholder") != bundle.placeholder:
        return False
    if bundle.aria and element.get_attribute("aria-label") != bundle.aria:
        return False
    for key, value in bundle.data_attrs.items():
        attr = key if key.startswith("data-") else f"data-{key}"
        if element.get_attribute(attr) != value:
            return False
    return True


def is_point_in_bounding(
    bundle: LocatorBundle, x: float, y: float, radius: float = DEFAULT_POINT_RADIUS
) -> bool:
    """True when (x, y) lies within `radius` px of the recorded box centre."""
    if bundle.bounding is None:
        return False
    cx, cy = bundle.bounding.center
    return math.hypot(cx - x, cy - y) <= radius
