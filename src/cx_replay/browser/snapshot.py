"""
Captures a live Playwright page into a `PageTree` so the locator strategies
can run against it without further browser round-trips.

The capture walks the DOM in the page itself, descending open shadow roots
and same-origin iframes. Cross-origin frames are recorded without content.
"""

from typing import Any

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..errors import BrowserSnapshotError
from ..locators.dom import PageTree, build_tree

logger = structlog.get_logger(__name__)

SNAPSHOT_SCRIPT = """
() => {
  const STYLE_KEYS = ["display", "visibility", "opacity", "pointer-events"];
  const VALUE_TAGS = new Set(["INPUT", "TEXTAREA", "SELECT"]);

  const serializeElement = (el) => {
    const node = { tag: el.tagName.toLowerCase(), attrs: {}, children: [] };
    for (const attr of el.attributes) {
      node.attrs[attr.name] = attr.value;
    }
    let text = "";
    for (const child of el.childNodes) {
      if (child.nodeType === Node.TEXT_NODE) text += child.textContent;
    }
    if (text.trim()) node.text = text;

    const rect = el.getBoundingClientRect();
    node.rect = { x: rect.x, y: rect.y, width: rect.width, height: rect.height };
    const view = el.ownerDocument.defaultView;
    if (view) {
      const computed = view.getComputedStyle(el);
      node.style = {};
      for (const key of STYLE_KEYS) node.style[key] = computed.getPropertyValue(key);
    }
    if (VALUE_TAGS.has(el.tagName) && typeof el.value === "string") node.value = el.value;
    if (el.checked === true) node.checked = true;

    for (const child of el.children) node.children.push(serializeElement(child));
    if (el.shadowRoot) {
      node.shadow = Array.from(el.shadowRoot.children).map(serializeElement);
    }
    if (el.tagName === "IFRAME" || el.tagName === "FRAME") {
      try {
        const doc = el.contentDocument;
        if (doc && doc.documentElement) node.frame = serializeDocument(doc);
      } catch (e) {
        // Cross-origin frame.
      }
    }
    return node;
  };

  const serializeDocument = (doc) => ({
    url: doc.location ? doc.location.href : "",
    title: doc.title || "",
    children: doc.documentElement ? [serializeElement(doc.documentElement)] : [],
  });

  return serializeDocument(document);
}
"""


async def capture_page_data(page: Page) -> dict[str, Any]:
    """Runs the capture script and returns the raw serialized document."""
    try:
        data = await page.evaluate(SNAPSHOT_SCRIPT)
    except PlaywrightError as e:
        raise BrowserSnapshotError(f"Failed to capture page snapshot: {e}") from e
    if not isinstance(data, dict):
        raise BrowserSnapshotError("Snapshot script returned no document.")
    return data


async def snapshot_page(page: Page) -> PageTree:
    data = await capture_page_data(page)
    tree = build_tree(data)
    logger.debug(
        "Page snapshot captured.",
        url=tree.url,
        elements=sum(1 for _ in tree.iter_elements()),
    )
    return tree
