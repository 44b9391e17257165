"""
Drives a live Playwright page. Located elements come from a snapshot
(`snapshot_page`), so each node is mapped back onto a Playwright locator by
its structural path within its scope, descending recorded iframes with
`frame_locator` and shadow hosts with a chained CSS locator.
"""

from typing import Union

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import FrameLocator, Locator, Page

from ..errors import ActionFailedError, NavigationError
from ..locators.bundle import BoundingBox
from ..locators.dom import ElementNode, ShadowRoot
from ..replay.actuators import Actuator

logger = structlog.get_logger(__name__)

DEFAULT_ACTION_TIMEOUT = 5000
FRAME_TAGS = ("iframe", "frame")

Scope = Union[Page, FrameLocator, Locator]


def node_selector(node: ElementNode) -> str:
    """
    Playwright selector for `node` within its own scope. XPath does not
    pierce shadow roots, so nodes inside one are addressed by CSS path.
    """
    if isinstance(node.owner, ShadowRoot):
        return f"css={node.css_path()}"
    return f"xpath={node.absolute_xpath()}"


def build_locator(page: Page, element: ElementNode) -> Locator:
    scope: Scope = page
    for host in element.scope_chain():
        if host.tag in FRAME_TAGS:
            scope = scope.frame_locator(node_selector(host))
        else:
            scope = scope.locator(node_selector(host))
    return scope.locator(node_selector(element)).first


class PlaywrightActuator(Actuator):
    def __init__(self, page: Page, timeout: float = DEFAULT_ACTION_TIMEOUT):
        self.page = page
        self.timeout = timeout

    def locator(self, element: ElementNode) -> Locator:
        return build_locator(self.page, element)

    async def navigate(self, url: str):
        logger.info("Navigating.", url=url)
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=self.timeout * 6)
        except PlaywrightError as e:
            raise NavigationError(f"Navigation to {url} failed: {e}") from e

    async def scroll_into_view(self, element: ElementNode):
        try:
            await self.locator(element).scroll_into_view_if_needed(timeout=self.timeout)
        except PlaywrightError as e:
            # Best effort; the action itself reports failures.
            logger.debug("Scroll into view failed; continuing.", error=str(e))

    async def click(self, element: ElementNode):
        try:
            await self.locator(element).click(timeout=self.timeout)
        except PlaywrightError as e:
            raise ActionFailedError(f"Click on <{element.tag}> failed: {e}") from e

    async def fill_native(self, element: ElementNode, value: str):
        try:
            await self.locator(element).fill(value, timeout=self.timeout)
        except PlaywrightError as e:
            raise ActionFailedError(f"Filling <{element.tag}> failed: {e}") from e

    async def fill_content_editable(self, element: ElementNode, value: str):
        try:
            await self.locator(element).fill(value, timeout=self.timeout)
        except PlaywrightError as e:
            raise ActionFailedError(f"Editing <{element.tag}> failed: {e}") from e

    async def choose_option(self, element: ElementNode, value: str):
        locator = self.locator(element)
        try:
            selected = await locator.select_option(value, timeout=self.timeout)
        except PlaywrightError:
            try:
                selected = await locator.select_option(label=value, timeout=self.timeout)
            except PlaywrightError as e:
                raise ActionFailedError(f"No option matching {value!r}: {e}") from e
        if not selected:
            raise ActionFailedError(f"No option matching {value!r}")

    async def press_enter(self, element: ElementNode):
        try:
            await self.locator(element).press("Enter", timeout=self.timeout)
        except PlaywrightError as e:
            raise ActionFailedError(f"Pressing Enter on <{element.tag}> failed: {e}") from e

    async def bounding_rect(self, element: ElementNode) -> BoundingBox | None:
        try:
            box = await self.locator(element).bounding_box(timeout=self.timeout)
        except PlaywrightError:
            return None
        return BoundingBox(**box) if box else None
