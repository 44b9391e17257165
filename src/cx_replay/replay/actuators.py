"""
Acting on located elements.

An element's interaction kind is classified once, and text input is then
dispatched through `ACT_TABLE` rather than branching on element type at
every call site. `Actuator` is the seam between the replay core and the
surface being driven: `TreeActuator` drives an in-memory page tree, and the
Playwright actuator in `cx_replay.browser.actuator` drives a live page.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable

import structlog

from ..errors import ActionFailedError, NavigationError
from ..locators.bundle import BoundingBox
from ..locators.dom import ElementNode, PageTree

logger = structlog.get_logger(__name__)

NATIVE_INPUT_TAGS = ("input", "textarea")


class InteractionKind(str, Enum):
    NATIVE_INPUT = "native_input"
    CONTENT_EDITABLE = "content_editable"
    SELECT = "select"
    GENERIC = "generic"


def classify_element(element: ElementNode) -> InteractionKind:
    if element.tag == "select":
        return InteractionKind.SELECT
    if element.tag in NATIVE_INPUT_TAGS:
        return InteractionKind.NATIVE_INPUT
    if element.is_content_editable:
        return InteractionKind.CONTENT_EDITABLE
    return InteractionKind.GENERIC


class Actuator(ABC):
    """Performs the concrete browser-level actions a step needs."""

    @abstractmethod
    async def navigate(self, url: str):
        raise NotImplementedError

    @abstractmethod
    async def scroll_into_view(self, element: ElementNode):
        raise NotImplementedError

    @abstractmethod
    async def click(self, element: ElementNode):
        raise NotImplementedError

    @abstractmethod
    async def fill_native(self, element: ElementNode, value: str):
        """Sets the value of an input or textarea and fires input/change."""
        raise NotImplementedError

    @abstractmethod
    async def fill_content_editable(self, element: ElementNode, value: str):
        raise NotImplementedError

    @abstractmethod
    async def choose_option(self, element: ElementNode, value: str):
        """Selects the option whose value or label equals `value`."""
        raise NotImplementedError

    @abstractmethod
    async def press_enter(self, element: ElementNode):
        raise NotImplementedError

    @abstractmethod
    async def bounding_rect(self, element: ElementNode) -> BoundingBox | None:
        """Current on-screen rectangle, used for stability checks."""
        raise NotImplementedError


async def _act_native(actuator: Actuator, element: ElementNode, value: str):
    await actuator.fill_native(element, value)


async def _act_content_editable(actuator: Actuator, element: ElementNode, value: str):
    await actuator.fill_content_editable(element, value)


async def _act_select(actuator: Actuator, element: ElementNode, value: str):
    await actuator.choose_option(element, value)


async def _act_generic(actuator: Actuator, element: ElementNode, value: str):
    raise ActionFailedError(f"<{element.tag}> does not accept text input")


ActFunction = Callable[[Actuator, ElementNode, str], Awaitable[None]]

ACT_TABLE: dict[InteractionKind, ActFunction] = {
    InteractionKind.NATIVE_INPUT: _act_native,
    InteractionKind.CONTENT_EDITABLE: _act_content_editable,
    InteractionKind.SELECT: _act_select,
    InteractionKind.GENERIC: _act_generic,
}


async def input_value(actuator: Actuator, element: ElementNode, value: str) -> InteractionKind:
    """Puts `value` into `element` the way its interaction kind requires."""
    kind = classify_element(element)
    await ACT_TABLE[kind](actuator, element, value)
    return kind


def find_option(element: ElementNode, value: str) -> tuple[int, ElementNode] | None:
    options = element.options()
    for index, option in enumerate(options):
        if option.get_attribute("value") == value:
            return index, option
    for index, option in enumerate(options):
        if option.text_content == value.strip():
            return index, option
    return None


class TreeActuator(Actuator):
    """
    Acts on an in-memory `PageTree`. Every action is appended to the target
    node's `events` journal so callers can assert on what happened.
    """

    def __init__(
        self,
        tree: PageTree | None = None,
        on_navigate: Callable[[str], PageTree | None] | None = None,
    ):
        self.tree = tree
        self.on_navigate = on_navigate
        self.history: list[str] = []

    async def navigate(self, url: str):
        if not url:
            raise NavigationError("No URL to navigate to")
        self.history.append(url)
        if self.on_navigate is not None:
            loaded = self.on_navigate(url)
            if loaded is not None:
                self.tree = loaded
        if self.tree is not None:
            self.tree.url = url
        logger.debug("Navigating in-memory page.", url=url)

    async def scroll_into_view(self, element: ElementNode):
        element.events.append(("scroll", None))

    async def click(self, element: ElementNode):
        if element.disabled:
            raise ActionFailedError(f"Cannot click disabled <{element.tag}>")
        element.focused = True
        element.events.append(("click", None))
        if element.tag == "input" and element.input_type in ("checkbox", "radio"):
            element.checked = not element.checked if element.input_type == "checkbox" else True
        href = element.get_attribute("href")
        if element.tag == "a" and href and not href.startswith("#"):
            await self.navigate(href)

    async def fill_native(self, element: ElementNode, value: str):
        if "readonly" in element.attributes:
            raise ActionFailedError(f"<{element.tag}> is read-only")
        element.focused = True
        element.value = value
        element.events.append(("input", value))
        element.events.append(("change", value))

    async def fill_content_editable(self, element: ElementNode, value: str):
        element.focused = True
        element.children = []
        element.text = value
        element.events.append(("input", value))

    async def choose_option(self, element: ElementNode, value: str):
        match = find_option(element, value)
        if match is None:
            raise ActionFailedError(f"No option matching {value!r}")
        index, option = match
        element.selected_index = index
        element.value = option.get_attribute("value") or option.text_content
        element.events.append(("change", element.value))

    async def press_enter(self, element: ElementNode):
        element.events.append(("keydown", "Enter"))
        element.events.append(("keyup", "Enter"))
        form = next((a for a in element.ancestors() if a.tag == "form"), None)
        if form is not None and element.tag == "input":
            form.events.append(("submit", None))

    async def bounding_rect(self, element: ElementNode) -> BoundingBox | None:
        return element.rect
