from abc import ABC, abstractmethod

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from ..errors import ConfigurationError

logger = structlog.get_logger(__name__)

SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")


class BrowserProvider(ABC):
    """Supplies the Playwright page a replay runs against."""

    @abstractmethod
    async def open_page(self) -> Page:
        raise NotImplementedError

    @abstractmethod
    async def close(self):
        raise NotImplementedError

    async def __aenter__(self) -> Page:
        return await self.open_page()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class LocalBrowserProvider(BrowserProvider):
    """Launches a local browser with Playwright and opens a single page in it."""

    def __init__(
        self,
        browser_type: str = "chromium",
        headless: bool = True,
        viewport: dict[str, int] | None = None,
    ):
        if browser_type not in SUPPORTED_BROWSERS:
            raise ConfigurationError(
                f"Unsupported browser_type '{browser_type}'. "
                f"Choose one of: {', '.join(SUPPORTED_BROWSERS)}."
            )
        self.browser_type = browser_type
        self.headless = headless
        self.viewport = viewport
        self.playwright: Playwright | None = None
        self.browser: Browser | None = None
        self.context: BrowserContext | None = None

    async def open_page(self) -> Page:
        logger.info(
            "Launching local browser...",
            browser_type=self.browser_type,
            headless=self.headless,
        )
        self.playwright = await async_playwright().start()
        launcher = getattr(self.playwright, self.browser_type)
        try:
            self.browser = await launcher.launch(headless=self.headless)
        except PlaywrightError:
            await self.playwright.stop()
            self.playwright = None
            raise
        if self.viewport:
            self.context = await self.browser.new_context(viewport=self.viewport)
        else:
            self.context = await self.browser.new_context()
        page = await self.context.new_page()
        logger.info("Local browser launched.")
        return page

    async def close(self):
        if self.browser and self.browser.is_connected():
            logger.info("Closing local browser...")
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()
        self.browser = None
        self.context = None
        self.playwright = None
