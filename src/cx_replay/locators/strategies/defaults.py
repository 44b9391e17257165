from .aria import AriaLabelStrategy
from .base import LocatorStrategy
from .bounding_box import BoundingBoxStrategy
from .css_selector import CssSelectorStrategy
from .data_attribute import DataAttributeStrategy
from .form_label import FormLabelStrategy
from .fuzzy_text import FuzzyTextStrategy
from .identity import IdStrategy, NameStrategy
from .placeholder import PlaceholderStrategy
from .xpath import XPathStrategy

DEFAULT_STRATEGY_CLASSES: tuple[type[LocatorStrategy], ...] = (
    XPathStrategy,
    IdStrategy,
    NameStrategy,
    AriaLabelStrategy,
    PlaceholderStrategy,
    DataAttributeStrategy,
    FuzzyTextStrategy,
    BoundingBoxStrategy,
    CssSelectorStrategy,
    FormLabelStrategy,
)


def create_default_strategies() -> list[LocatorStrategy]:
    """Fresh instances of every built-in strategy, in priority order."""
    return [cls() for cls in DEFAULT_STRATEGY_CLASSES]
