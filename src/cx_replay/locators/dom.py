"""
A searchable element tree.

Strategies never talk to a browser directly; they query a `SearchRoot`. The
concrete model here is an in-memory tree of `ElementNode`s, either built by
hand (tests, offline snapshots) or captured from a live page by
`cx_replay.browser.snapshot`. Nested documents are modelled explicitly:
an iframe element carries a `content_document` (a `PageTree`) and a shadow host
carries a `shadow_root` (a `ShadowRoot`). Queries never cross those
boundaries on their own; `resolve_search_root` descends them on request.
"""

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Callable, Iterable, Iterator

import structlog

from ..errors import FrameResolutionError, SelectorSyntaxError
from .bundle import BoundingBox, LocatorBundle

logger = structlog.get_logger(__name__)

HIDDEN_TEXT_TAGS = frozenset({"script", "style", "noscript", "template", "head"})


def _coerce_rect(rect: Any) -> BoundingBox | None:
    if rect is None or isinstance(rect, BoundingBox):
        return rect
    if isinstance(rect, dict):
        return BoundingBox(**rect)
    x, y, width, height = rect
    return BoundingBox(x=x, y=y, width=width, height=height)


class SearchRoot(ABC):
    """A queryable scope: a document, an iframe's document or a shadow root."""

    @property
    @abstractmethod
    def children(self) -> list["ElementNode"]:
        raise NotImplementedError

    @property
    def host(self) -> "ElementNode | None":
        """The element that owns this scope (iframe or shadow host), if any."""
        return None

    def iter_elements(self) -> Iterator["ElementNode"]:
        """All elements of this scope in document order."""
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def get_element_by_id(self, element_id: str) -> "ElementNode | None":
        for element in self.iter_elements():
            if element.attributes.get("id") == element_id:
                return element
        return None

    def find_by_attribute(
        self, name: str, value: str | None = None
    ) -> list["ElementNode"]:
        """Elements carrying attribute `name`, optionally with an exact value."""
        return [
            e
            for e in self.iter_elements()
            if name in e.attributes and (value is None or e.attributes[name] == value)
        ]

    def find_by_tag(self, *tags: str) -> list["ElementNode"]:
        wanted = {t.lower() for t in tags}
        return [e for e in self.iter_elements() if e.tag in wanted]

    def query_selector_all(self, selector: str) -> list["ElementNode"]:
        selectors = parse_css(selector)
        return [
            e for e in self.iter_elements() if any(s.matches(e) for s in selectors)
        ]

    def query_selector(self, selector: str) -> "ElementNode | None":
        selectors = parse_css(selector)
        for element in self.iter_elements():
            if any(s.matches(element) for s in selectors):
                return element
        return None

    def evaluate_xpath(self, expression: str) -> list["ElementNode"]:
        return compile_xpath(expression).evaluate(self)

    def elements_at_point(self, x: float, y: float) -> list["ElementNode"]:
        """Elements whose rectangle contains the point, innermost last."""
        return [
            e
            for e in self.iter_elements()
            if e.rect is not None
            and e.rect.x <= x <= e.rect.right
            and e.rect.y <= y <= e.rect.bottom
        ]

    def iframes(self) -> list["ElementNode"]:
        return self.find_by_tag("iframe", "frame")


class ElementNode:
    """One element of a page tree."""

    def __init__(
        self,
        tag: str,
        attributes: dict[str, str] | None = None,
        children: Iterable["ElementNode"] | None = None,
        text: str = "",
        rect: BoundingBox | dict | tuple | None = None,
        style: dict[str, str] | None = None,
        shadow_children: Iterable["ElementNode"] | None = None,
        content_document: "PageTree | None" = None,
        value: str | None = None,
        checked: bool = False,
    ):
        self.tag = tag.lower()
        self.attributes: dict[str, str] = dict(attributes or {})
        self.text = text
        self.rect = _coerce_rect(rect)
        self.style: dict[str, str] = dict(style or {})
        self.parent: ElementNode | None = None
        self.owner: SearchRoot | None = None
        self.children: list[ElementNode] = []
        for child in children or []:
            self.append(child)
        self.shadow_root: ShadowRoot | None = None
        if shadow_children is not None:
            self.shadow_root = ShadowRoot(self, shadow_children)
        self.content_document = content_document
        if content_document is not None:
            content_document.frame_element = self

        # Runtime state mutated by actuators.
        self.value: str = value if value is not None else self.attributes.get("value", "")
        self.checked = checked
        self.focused = False
        self.selected_index = -1
        self.events: list[tuple[str, Any]] = []
        if self.tag == "select":
            self.selected_index = self._initial_selected_index()

    def __repr__(self) -> str:
        ident = f"#{self.attributes['id']}" if self.attributes.get("id") else ""
        return f"<ElementNode {self.tag}{ident}>"

    # --- Tree structure ---

    def append(self, child: "ElementNode") -> "ElementNode":
        child.parent = self
        self.children.append(child)
        if self.owner is not None:
            child._set_owner(self.owner)
        return child

    def _set_owner(self, owner: SearchRoot):
        self.owner = owner
        for child in self.children:
            child._set_owner(owner)

    def iter_descendants(self) -> Iterator["ElementNode"]:
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def ancestors(self) -> Iterator["ElementNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    @property
    def siblings(self) -> list["ElementNode"]:
        if self.parent is not None:
            return self.parent.children
        if self.owner is not None:
            return self.owner.children
        return [self]

    def previous_siblings(self) -> list["ElementNode"]:
        """Preceding siblings, nearest first."""
        siblings = self.siblings
        index = next(i for i, s in enumerate(siblings) if s is self)
        return list(reversed(siblings[:index]))

    # --- Attribute access ---

    def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    @property
    def id(self) -> str:
        return self.attributes.get("id", "")

    @property
    def classes(self) -> list[str]:
        return self.attributes.get("class", "").split()

    @property
    def input_type(self) -> str:
        return self.attributes.get("type", "text").lower()

    @property
    def disabled(self) -> bool:
        return "disabled" in self.attributes or self.attributes.get(
            "aria-disabled"
        ) == "true"

    @property
    def is_content_editable(self) -> bool:
        value = self.attributes.get("contenteditable")
        if value is None:
            return False
        return value.lower() in ("", "true", "plaintext-only")

    @property
    def text_content(self) -> str:
        """Own and descendant text, whitespace-separated, skipping non-rendered tags."""
        if self.tag in HIDDEN_TEXT_TAGS:
            return ""
        parts = [self.text.strip()] if self.text.strip() else []
        for child in self.children:
            child_text = child.text_content
            if child_text:
                parts.append(child_text)
        return " ".join(parts)

    # --- Select options ---

    def options(self) -> list["ElementNode"]:
        return [e for e in self.iter_descendants() if e.tag == "option"]

    def _initial_selected_index(self) -> int:
        options = self.options()
        for i, option in enumerate(options):
            if "selected" in option.attributes:
                return i
        return 0 if options else -1

    # --- Paths ---

    def absolute_xpath(self) -> str:
        """Fully indexed XPath from the top of this element's scope."""
        parts = []
        node: ElementNode | None = self
        while node is not None:
            same_tag = [s for s in node.siblings if s.tag == node.tag]
            index = next(i for i, s in enumerate(same_tag) if s is node) + 1
            parts.append(f"{node.tag}[{index}]")
            node = node.parent
        return "/" + "/".join(reversed(parts))

    def css_path(self) -> str:
        """An nth-child CSS path from the top of this element's scope."""
        parts = []
        node: ElementNode | None = self
        while node is not None:
            index = next(i for i, s in enumerate(node.siblings) if s is node) + 1
            parts.append(f"{node.tag}:nth-child({index})")
            node = node.parent
        return " > ".join(reversed(parts))

    def scope_chain(self) -> list["ElementNode"]:
        """Iframe and shadow host elements enclosing this element, outermost first."""
        chain = []
        owner = self.owner
        while owner is not None and owner.host is not None:
            chain.append(owner.host)
            owner = owner.host.owner
        return list(reversed(chain))

    # --- Serialization ---

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tag": self.tag}
        if self.attributes:
            data["attrs"] = dict(self.attributes)
        if self.text:
            data["text"] = self.text
        if self.rect is not None:
            data["rect"] = self.rect.model_dump()
        if self.style:
            data["style"] = dict(self.style)
        if self.children:
            data["children"] = [c.to_dict() for c in self.children]
        if self.shadow_root is not None:
            data["shadow"] = [c.to_dict() for c in self.shadow_root.children]
        if self.content_document is not None:
            data["frame"] = self.content_document.to_dict()
        if self.value and self.value != self.attributes.get("value", ""):
            data["value"] = self.value
        if self.checked:
            data["checked"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementNode":
        frame = data.get("frame")
        shadow = data.get("shadow")
        return cls(
            tag=data["tag"],
            attributes=data.get("attrs") or data.get("attributes"),
            children=[cls.from_dict(c) for c in data.get("children", [])],
            text=data.get("text", ""),
            rect=data.get("rect"),
            style=data.get("style"),
            shadow_children=(
                [cls.from_dict(c) for c in shadow] if shadow is not None else None
            ),
            content_document=PageTree.from_dict(frame) if frame else None,
            value=data.get("value"),
            checked=bool(data.get("checked", False)),
        )


class _Container(SearchRoot):
    def __init__(self, children: Iterable[ElementNode] | None = None):
        self._children: list[ElementNode] = []
        for child in children or []:
            self.append(child)

    @property
    def children(self) -> list[ElementNode]:
        return self._children

    def append(self, child: ElementNode) -> ElementNode:
        child.parent = None
        child._set_owner(self)
        self._children.append(child)
        return child


class ShadowRoot(_Container):
    """The open shadow tree attached to a host element."""

    def __init__(self, host: ElementNode, children: Iterable[ElementNode] | None = None):
        self._host = host
        super().__init__(children)

    @property
    def host(self) -> ElementNode:
        return self._host


class PageTree(_Container):
    """A document: the top-level page or the document inside an iframe."""

    def __init__(
        self,
        children: Iterable[ElementNode] | None = None,
        url: str = "",
        title: str = "",
    ):
        self.url = url
        self.title = title
        self.frame_element: ElementNode | None = None
        super().__init__(children)

    @property
    def host(self) -> ElementNode | None:
        return self.frame_element

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "children": [c.to_dict() for c in self.children],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageTree":
        return cls(
            children=[ElementNode.from_dict(c) for c in data.get("children", [])],
            url=data.get("url", ""),
            title=data.get("title", ""),
        )


def build_tree(data: dict[str, Any]) -> PageTree:
    """Builds a PageTree from its serialized snapshot form."""
    return PageTree.from_dict(data)


# --- Visibility ---


def is_visible(element: ElementNode) -> bool:
    style = element.style
    if style.get("display") == "none" or style.get("visibility") == "hidden":
        return False
    try:
        if float(style.get("opacity", "1")) == 0:
            return False
    except ValueError:
        pass
    if element.rect is not None and (element.rect.width <= 0 or element.rect.height <= 0):
        return False
    return not any(a.style.get("display") == "none" for a in element.ancestors())


def is_interactable(element: ElementNode) -> bool:
    if not is_visible(element) or element.disabled:
        return False
    return element.style.get("pointer-events") != "none"


# --- Frame and shadow descent ---


def resolve_search_root(
    root: SearchRoot,
    bundle: LocatorBundle,
    search_iframes: bool = True,
    search_shadow_dom: bool = True,
) -> SearchRoot:
    """
    Narrows `root` to the scope the bundle was recorded in by following its
    iframe chain and then its shadow hosts.
    """
    current = root
    if search_iframes and bundle.iframe_chain:
        for hop in bundle.iframe_chain:
            frames = current.iframes()
            if isinstance(hop, int):
                frame = frames[hop] if 0 <= hop < len(frames) else None
            else:
                frame = next(
                    (
                        f
                        for f in frames
                        if f.get_attribute("id") == hop or f.get_attribute("name") == hop
                    ),
                    None,
                )
            if frame is None or frame.content_document is None:
                raise FrameResolutionError(f"Iframe '{hop}' not found or not loaded.")
            current = frame.content_document
    if search_shadow_dom and bundle.shadow_hosts:
        for selector in bundle.shadow_hosts:
            host = current.query_selector(selector)
            if host is None or host.shadow_root is None:
                raise FrameResolutionError(f"Shadow host '{selector}' not found.")
            current = host.shadow_root
    return current


# --- CSS selector subset ---

_CSS_IDENT_EXTRA = "-_"
_ATTR_OPERATORS = ("~=", "|=", "^=", "$=", "*=", "=")


def css_escape(value: str) -> str:
    """Escapes a string for use as a CSS identifier."""
    out = []
    for i, ch in enumerate(value):
        code = ord(ch)
        if code == 0:
            out.append("�")
        elif (
            1 <= code <= 0x1F
            or code == 0x7F
            or (i == 0 and "0" <= ch <= "9")
            or (i == 1 and "0" <= ch <= "9" and value[0] == "-")
        ):
            out.append(f"\\{code:x} ")
        elif i == 0 and ch == "-" and len(value) == 1:
            out.append("\\-")
        elif code >= 0x80 or ch in _CSS_IDENT_EXTRA or ch.isascii() and ch.isalnum():
            out.append(ch)
        else:
            out.append("\\" + ch)
    return "".join(out)


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in _CSS_IDENT_EXTRA or ord(ch) >= 0x80


class _CssCompound:
    def __init__(self):
        self.tag: str | None = None
        self.ids: list[str] = []
        self.classes: list[str] = []
        self.attrs: list[tuple[str, str | None, str | None, bool]] = []

    def matches(self, element: ElementNode) -> bool:
        if self.tag and self.tag != "*" and element.tag != self.tag:
            return False
        if any(element.attributes.get("id") != i for i in self.ids):
            return False
        if self.classes:
            element_classes = set(element.classes)
            if any(c not in element_classes for c in self.classes):
                return False
        for name, op, expected, insensitive in self.attrs:
            actual = element.attributes.get(name)
            if actual is None:
                return False
            if op is None:
                continue
            if insensitive:
                actual, expected = actual.lower(), expected.lower()
            if not _attr_op_matches(op, actual, expected):
                return False
        return True


def _attr_op_matches(op: str, actual: str, expected: str) -> bool:
    if op == "=":
        return actual == expected
    if op == "~=":
        return expected in actual.split()
    if op == "|=":
        return actual == expected or actual.startswith(expected + "-")
    if not expected:
        return False
    if op == "^=":
        return actual.startswith(expected)
    if op == "$=":
        return actual.endswith(expected)
    return expected in actual


class _CssComplex:
    """Compounds joined by combinators, stored right-to-left for matching."""

    def __init__(self, parts: list[tuple[str | None, _CssCompound]]):
        self.parts = parts

    def matches(self, element: ElementNode) -> bool:
        return self._match_from(len(self.parts) - 1, element)

    def _match_from(self, index: int, element: ElementNode) -> bool:
        combinator, compound = self.parts[index]
        if not compound.matches(element):
            return False
        if index == 0:
            return True
        if combinator == ">":
            return element.parent is not None and self._match_from(
                index - 1, element.parent
            )
        return any(self._match_from(index - 1, a) for a in element.ancestors())


class _CssParser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str) -> SelectorSyntaxError:
        return SelectorSyntaxError(f"{message} at {self.pos} in selector {self.text!r}")

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def skip_ws(self) -> bool:
        start = self.pos
        while self.peek() and self.peek().isspace():
            self.pos += 1
        return self.pos > start

    def read_escape(self) -> str:
        # Positioned just after the backslash.
        hex_digits = ""
        while len(hex_digits) < 6 and self.peek() and self.peek() in "0123456789abcdefABCDEF":
            hex_digits += self.peek()
            self.pos += 1
        if hex_digits:
            if self.peek() and self.peek().isspace():
                self.pos += 1
            code = int(hex_digits, 16)
            return chr(code) if 0 < code <= 0x10FFFF else "�"
        ch = self.peek()
        if not ch:
            raise self.error("Dangling escape")
        self.pos += 1
        return ch

    def read_ident(self) -> str:
        out = []
        while self.peek():
            ch = self.peek()
            if ch == "\\":
                self.pos += 1
                out.append(self.read_escape())
            elif _is_ident_char(ch):
                out.append(ch)
                self.pos += 1
            else:
                break
        if not out:
            raise self.error("Expected identifier")
        return "".join(out)

    def read_string(self) -> str:
        quote = self.peek()
        self.pos += 1
        out = []
        while True:
            ch = self.peek()
            if not ch:
                raise self.error("Unterminated string")
            self.pos += 1
            if ch == quote:
                return "".join(out)
            if ch == "\\":
                if self.peek() == "\n":
                    self.pos += 1
                    continue
                out.append(self.read_escape())
            else:
                out.append(ch)

    def parse_list(self) -> list[_CssComplex]:
        selectors = [self.parse_complex()]
        while self.peek() == ",":
            self.pos += 1
            selectors.append(self.parse_complex())
        if self.pos != len(self.text):
            raise self.error("Unexpected character")
        return selectors

    def parse_complex(self) -> _CssComplex:
        self.skip_ws()
        parts: list[tuple[str | None, _CssCompound]] = [(None, self.parse_compound())]
        while True:
            had_ws = self.skip_ws()
            ch = self.peek()
            if not ch or ch == ",":
                break
            if ch == ">":
                self.pos += 1
                self.skip_ws()
                parts.append((">", self.parse_compound()))
            elif ch in "+~":
                raise self.error("Sibling combinators are not supported")
            elif had_ws:
                parts.append((" ", self.parse_compound()))
            else:
                raise self.error("Unexpected character")
        return _CssComplex(parts)

    def parse_compound(self) -> _CssCompound:
        compound = _CssCompound()
        start = self.pos
        if self.peek() == "*":
            compound.tag = "*"
            self.pos += 1
        elif self.peek() and (_is_ident_char(self.peek()) or self.peek() == "\\"):
            compound.tag = self.read_ident().lower()
        while True:
            ch = self.peek()
            if ch == "#":
                self.pos += 1
                compound.ids.append(self.read_ident())
            elif ch == ".":
                self.pos += 1
                compound.classes.append(self.read_ident())
            elif ch == "[":
                self.pos += 1
                compound.attrs.append(self.parse_attribute())
            elif ch == ":":
                raise self.error("Pseudo-classes are not supported")
            else:
                break
        if self.pos == start:
            raise self.error("Expected selector")
        return compound

    def parse_attribute(self) -> tuple[str, str | None, str | None, bool]:
        self.skip_ws()
        name = self.read_ident().lower()
        self.skip_ws()
        op = None
        value = None
        insensitive = False
        for candidate in _ATTR_OPERATORS:
            if self.text.startswith(candidate, self.pos):
                op = candidate
                self.pos += len(candidate)
                break
        if op is not None:
            self.skip_ws()
            value = self.read_string() if self.peek() in "\"'" else self.read_ident()
            self.skip_ws()
            if self.peek() in ("i", "I"):
                insensitive = True
                self.pos += 1
                self.skip_ws()
        if self.peek() != "]":
            raise self.error("Expected ']'")
        self.pos += 1
        return name, op, value, insensitive


@lru_cache(maxsize=512)
def parse_css(selector: str) -> tuple[_CssComplex, ...]:
    """Parses a selector list. Raises SelectorSyntaxError on unsupported input."""
    if not selector or not selector.strip():
        raise SelectorSyntaxError("Empty selector")
    return tuple(_CssParser(selector.strip()).parse_list())


def matches_selector(element: ElementNode, selector: str) -> bool:
    return any(s.matches(element) for s in parse_css(selector))


# --- XPath subset ---


def _xpath_tokens(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    i = 0
    text = expression
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            i += 1
        elif text.startswith("//", i):
            tokens.append(("op", "//"))
            i += 2
        elif text.startswith("..", i):
            tokens.append(("op", ".."))
            i += 2
        elif text.startswith("!=", i):
            tokens.append(("op", "!="))
            i += 2
        elif ch in "/[]()@,=*.":
            tokens.append(("op", ch))
            i += 1
        elif ch in "\"'":
            end = text.find(ch, i + 1)
            if end < 0:
                raise SelectorSyntaxError(f"Unterminated literal in XPath {expression!r}")
            tokens.append(("lit", text[i + 1 : end]))
            i = end + 1
        elif ch.isdigit():
            start = i
            while i < len(text) and text[i].isdigit():
                i += 1
            tokens.append(("num", text[start:i]))
        elif ch.isalpha() or ch == "_":
            start = i
            while i < len(text) and (text[i].isalnum() or text[i] in "-_:"):
                i += 1
            tokens.append(("name", text[start:i]))
        else:
            raise SelectorSyntaxError(f"Unexpected {ch!r} in XPath {expression!r}")
    return tokens


# A predicate is a callable of (node, position, size) -> bool.
_Predicate = Callable[[ElementNode, int, int], bool]
# A value expression is a callable of node -> str.
_ValueFn = Callable[[ElementNode], str]


class _XPathStep:
    def __init__(self, axis: str, name: str, predicates: list[_Predicate]):
        self.axis = axis  # "child", "descendant", "self" or "parent"
        self.name = name
        self.predicates = predicates

    def _name_matches(self, node: ElementNode) -> bool:
        return self.name == "*" or node.tag == self.name

    def apply(self, context: Any) -> list[ElementNode]:
        if self.axis == "self":
            return [context] if isinstance(context, ElementNode) else []
        if self.axis == "parent":
            return [context.parent] if isinstance(context, ElementNode) and context.parent else []
        if self.axis == "child":
            groups = [context.children]
        else:
            # descendant-or-self::node()/child::name, evaluated per parent so
            # positional predicates count siblings the way XPath does.
            holders = [context] + list(
                context.iter_descendants()
                if isinstance(context, ElementNode)
                else context.iter_elements()
            )
            groups = [h.children for h in holders]
        results: list[ElementNode] = []
        for group in groups:
            candidates = [n for n in group if self._name_matches(n)]
            for predicate in self.predicates:
                size = len(candidates)
                candidates = [
                    n for pos, n in enumerate(candidates, start=1) if predicate(n, pos, size)
                ]
            results.extend(candidates)
        return results


class _XPath:
    def __init__(self, steps: list[_XPathStep]):
        self.steps = steps

    def evaluate(self, root: SearchRoot) -> list[ElementNode]:
        contexts: list[Any] = [root]
        for step in self.steps:
            seen: set[int] = set()
            next_contexts = []
            for context in contexts:
                for node in step.apply(context):
                    if id(node) not in seen:
                        seen.add(id(node))
                        next_contexts.append(node)
            contexts = next_contexts
        return [c for c in contexts if isinstance(c, ElementNode)]


class _XPathParser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _xpath_tokens(expression)
        self.pos = 0
        self._last_attribute = ""

    def error(self, message: str) -> SelectorSyntaxError:
        return SelectorSyntaxError(f"{message} in XPath {self.expression!r}")

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, value: str) -> bool:
        token = self.peek()
        if token and token[0] == "op" and token[1] == value:
            self.pos += 1
            return True
        return False

    def expect(self, value: str):
        if not self.accept(value):
            raise self.error(f"Expected '{value}'")

    def take(self, kind: str) -> str:
        token = self.peek()
        if token is None or token[0] != kind:
            raise self.error(f"Expected {kind}")
        self.pos += 1
        return token[1]

    def parse(self) -> _XPath:
        if not self.tokens:
            raise self.error("Empty expression")
        steps: list[_XPathStep] = []
        axis = "child"
        if self.accept("//"):
            axis = "descendant"
        elif self.accept("/"):
            axis = "child"
        steps.append(self.parse_step(axis))
        while self.peek() is not None:
            if self.accept("//"):
                steps.append(self.parse_step("descendant"))
            elif self.accept("/"):
                steps.append(self.parse_step("child"))
            else:
                raise self.error("Unexpected token")
        return _XPath(steps)

    def parse_step(self, axis: str) -> _XPathStep:
        if self.accept(".."):
            return _XPathStep("parent", "*", [])
        if self.accept("."):
            return _XPathStep("self", "*", [])
        if self.accept("*"):
            name = "*"
        else:
            name = self.take("name").lower()
        predicates = []
        while self.accept("["):
            predicates.append(self.parse_or())
            self.expect("]")
        return _XPathStep(axis, name, predicates)

    def _keyword(self, word: str) -> bool:
        token = self.peek()
        if token and token[0] == "name" and token[1] == word:
            self.pos += 1
            return True
        return False

    def parse_or(self) -> _Predicate:
        left = self.parse_and()
        while self._keyword("or"):
            right = self.parse_and()
            left = (lambda a, b: lambda n, p, s: a(n, p, s) or b(n, p, s))(left, right)
        return left

    def parse_and(self) -> _Predicate:
        left = self.parse_condition()
        while self._keyword("and"):
            right = self.parse_condition()
            left = (lambda a, b: lambda n, p, s: a(n, p, s) and b(n, p, s))(left, right)
        return left

    def parse_condition(self) -> _Predicate:
        token = self.peek()
        if token is None:
            raise self.error("Unexpected end")
        if token[0] == "num":
            self.pos += 1
            index = int(token[1])
            return lambda n, p, s: p == index
        if token == ("name", "last") and self._is_call():
            self.pos += 1
            self.expect("(")
            self.expect(")")
            return lambda n, p, s: p == s
        if token == ("name", "not") and self._is_call():
            self.pos += 1
            self.expect("(")
            inner = self.parse_or()
            self.expect(")")
            return lambda n, p, s: not inner(n, p, s)
        if token[0] == "name" and token[1] in ("contains", "starts-with") and self._is_call():
            function = token[1]
            self.pos += 1
            self.expect("(")
            value_fn = self.parse_value()
            self.expect(",")
            literal = self.take("lit")
            self.expect(")")
            if function == "contains":
                return lambda n, p, s: literal in value_fn(n)
            return lambda n, p, s: value_fn(n).startswith(literal)
        is_attribute = token == ("op", "@")
        value_fn = self.parse_value()
        if self.accept("="):
            literal = self.take("lit")
            return lambda n, p, s: value_fn(n) == literal
        if self.accept("!="):
            literal = self.take("lit")
            return lambda n, p, s: value_fn(n) != literal
        if is_attribute:
            name = self._last_attribute
            return lambda n, p, s: name in n.attributes
        return lambda n, p, s: bool(value_fn(n))

    def _is_call(self) -> bool:
        following = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        return following == ("op", "(")

    def parse_value(self) -> _ValueFn:
        if self.accept("@"):
            name = self.take("name").lower()
            self._last_attribute = name
            return lambda n: n.attributes.get(name, "")
        if self.accept("."):
            return lambda n: n.text_content
        token = self.peek()
        if token == ("name", "text") and self._is_call():
            self.pos += 1
            self.expect("(")
            self.expect(")")
            return lambda n: n.text.strip()
        if token == ("name", "normalize-space") and self._is_call():
            self.pos += 1
            self.expect("(")
            if self.accept(")"):
                inner: _ValueFn = lambda n: n.text_content
            else:
                inner = self.parse_value()
                self.expect(")")
            return lambda n: " ".join(inner(n).split())
        raise self.error("Unsupported expression")


@lru_cache(maxsize=512)
def compile_xpath(expression: str) -> _XPath:
    """Compiles an XPath expression. Raises SelectorSyntaxError on unsupported input."""
    if not expression or not expression.strip():
        raise SelectorSyntaxError("Empty XPath expression")
    return _XPathParser(expression.strip()).parse()


def generate_xpath(element: ElementNode) -> str:
    """
    The XPath a recorder would emit for an element: an id shortcut when the
    element has an id, otherwise a path indexed only where siblings share a tag.
    """
    if element.id:
        return f'//*[@id="{element.id}"]'
    parts = []
    node: ElementNode | None = element
    while node is not None:
        same_tag = [s for s in node.siblings if s.tag == node.tag]
        if len(same_tag) > 1:
            index = next(i for i, s in enumerate(same_tag) if s is node) + 1
            parts.append(f"{node.tag}[{index}]")
        else:
            parts.append(node.tag)
        node = node.parent
    return "/" + "/".join(reversed(parts))
