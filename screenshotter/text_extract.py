"""Visible-text extraction over a DOM tree that includes shadow roots.

The live browser serializes its DOM once (slots flattened, shadow roots
attached to their hosts) and the walk happens here, so the same visibility
rules apply to live pages and to saved HTML snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag
from playwright.async_api import Error as PlaywrightError, Page

LOGGER = logging.getLogger(__name__)

ELEMENT = "element"
TEXT = "text"
FRAGMENT = "fragment"

MAX_DEPTH = 50
MAX_SETTLE_MS = 10_000
LAZY_RENDER_MS = 1_000

SKIPPED_TAGS = frozenset({"script", "style", "noscript", "template", "meta", "head", "title", "link"})

_WHITESPACE = re.compile(r"\s+")

# Serializes one level deeper than the walk so depth-limit behavior is decided in Python.
DOM_TREE_SCRIPT = """
() => {
  const MAX_DEPTH = %d;
  const SKIPPED = new Set(%s);
  const seen = new WeakSet();
  const collect = (nodes, depth) => {
    const out = [];
    for (const node of nodes) {
      const item = serialize(node, depth);
      if (item) out.push(item);
    }
    return out;
  };
  const serialize = (node, depth) => {
    if (!node || depth > MAX_DEPTH) return null;
    if (node.nodeType === Node.TEXT_NODE) {
      return { kind: 'text', text: node.textContent || '' };
    }
    if (node.nodeType === Node.ELEMENT_NODE) {
      if (seen.has(node)) return null;
      seen.add(node);
      const tag = node.tagName.toLowerCase();
      if (SKIPPED.has(tag)) return { kind: 'element', tag, children: [] };
      const style = window.getComputedStyle(node);
      const rect = node.getBoundingClientRect();
      let childNodes = Array.from(node.childNodes);
      if (tag === 'slot' && typeof node.assignedNodes === 'function') {
        const assigned = node.assignedNodes({ flatten: true });
        if (assigned.length > 0) childNodes = assigned;
      }
      return {
        kind: 'element',
        tag,
        hidden: !!node.hidden,
        ariaHidden: node.getAttribute('aria-hidden'),
        display: style ? style.display : 'none',
        visibility: style ? style.visibility : 'visible',
        opacity: style ? parseFloat(style.opacity) : 1,
        width: rect.width,
        height: rect.height,
        children: collect(childNodes, depth + 1),
        shadow: node.shadowRoot ? collect(Array.from(node.shadowRoot.childNodes), depth + 1) : [],
      };
    }
    if (node.nodeType === Node.DOCUMENT_FRAGMENT_NODE || node.nodeType === Node.DOCUMENT_NODE) {
      return { kind: 'fragment', children: collect(Array.from(node.childNodes), depth + 1) };
    }
    return null;
  };
  return serialize(document.body || document.documentElement, 0);
}
""" % (MAX_DEPTH + 1, sorted(SKIPPED_TAGS))


@dataclass(slots=True, eq=False)
class DomNode:
    """One node of an abstract DOM.

    ``width``/``height`` are layout sizes when known; ``None`` disables the
    zero-size rule (saved HTML has no layout). Shadow children use the host
    element as their ``parent``.
    """

    kind: str
    tag: str = ""
    text: str = ""
    hidden: bool = False
    aria_hidden: str | None = None
    display: str = ""
    visibility: str = ""
    opacity: float = 1.0
    width: float | None = None
    height: float | None = None
    children: List[DomNode] = field(default_factory=list)
    shadow_children: List[DomNode] = field(default_factory=list)
    parent: DomNode | None = field(default=None, repr=False)

    def append(self, child: DomNode) -> DomNode:
        child.parent = self
        self.children.append(child)
        return child

    def attach_shadow(self, child: DomNode) -> DomNode:
        child.parent = self
        self.shadow_children.append(child)
        return child


def element(tag: str, *children: DomNode, **attrs: Any) -> DomNode:
    node = DomNode(kind=ELEMENT, tag=tag.lower(), **attrs)
    for child in children:
        node.append(child)
    return node


def text_node(value: str) -> DomNode:
    return DomNode(kind=TEXT, text=value)


def is_visible(node: DomNode) -> bool:
    """Return False when ``node`` or any ancestor (across shadow hosts) is hidden."""

    current: DomNode | None = node
    while current is not None:
        if current.kind == ELEMENT and not _element_shown(current):
            return False
        current = current.parent
    return True


def _element_shown(node: DomNode) -> bool:
    if node.hidden:
        return False
    if node.aria_hidden and node.aria_hidden != "false":
        return False
    if node.display == "none":
        return False
    if node.visibility in ("hidden", "collapse"):
        return False
    if node.opacity == 0:
        return False
    if node.width == 0 and node.height == 0:
        if not node.children and not node.shadow_children:
            return False
    return True


def extract_text(root: DomNode | None, *, max_depth: int = MAX_DEPTH) -> str:
    """Collect visible text in document order, shadow trees after light children."""

    chunks: List[str] = []

    def walk(node: DomNode, depth: int) -> None:
        if depth > max_depth:
            return
        if node.kind == TEXT:
            if node.parent is None or not is_visible(node.parent):
                return
            collapsed = _WHITESPACE.sub(" ", node.text).strip()
            if collapsed:
                chunks.append(collapsed)
            return
        if node.kind == ELEMENT:
            if node.tag in SKIPPED_TAGS or not is_visible(node):
                return
            for child in node.children:
                walk(child, depth + 1)
            for child in node.shadow_children:
                walk(child, depth + 1)
            return
        for child in node.children:
            walk(child, depth + 1)

    if root is not None:
        walk(root, 0)
    return "\n".join(chunks)


def build_tree(payload: Mapping[str, Any], parent: DomNode | None = None) -> DomNode:
    """Convert the JSON produced by ``DOM_TREE_SCRIPT`` into ``DomNode``s."""

    kind = payload.get("kind", ELEMENT)
    if kind == TEXT:
        node = DomNode(kind=TEXT, text=str(payload.get("text") or ""))
    elif kind == FRAGMENT:
        node = DomNode(kind=FRAGMENT)
    else:
        node = DomNode(
            kind=ELEMENT,
            tag=str(payload.get("tag") or "").lower(),
            hidden=bool(payload.get("hidden", False)),
            aria_hidden=payload.get("ariaHidden"),
            display=str(payload.get("display") or ""),
            visibility=str(payload.get("visibility") or ""),
            opacity=_as_opacity(payload.get("opacity")),
            width=payload.get("width"),
            height=payload.get("height"),
        )
    node.parent = parent
    for child in payload.get("children") or ():
        node.children.append(build_tree(child, node))
    for child in payload.get("shadow") or ():
        node.shadow_children.append(build_tree(child, node))
    return node


async def extract_visible_text(
    page: Page,
    *,
    settle_ms: int = 2_000,
    timeout_s: float = 5.0,
    settle_selectors: Sequence[str] = (),
) -> str:
    """Wait for the page to settle, then return its visible text.

    Never raises: timeouts and browser errors produce ``""`` so the caller
    falls back to the text sentinel.
    """

    settle_ms = max(0, min(settle_ms, MAX_SETTLE_MS))
    try:
        await _settle(page, settle_ms, settle_selectors)
        payload = await asyncio.wait_for(page.evaluate(DOM_TREE_SCRIPT), timeout=timeout_s)
    except asyncio.TimeoutError:
        LOGGER.warning("Text extraction timed out after %.1fs", timeout_s)
        return ""
    except PlaywrightError as exc:
        LOGGER.warning("Text extraction failed: %s", exc)
        return ""

    if not isinstance(payload, Mapping):
        return ""
    try:
        root = build_tree(payload)
    except (TypeError, ValueError, AttributeError) as exc:
        LOGGER.warning("Unexpected DOM payload from page: %s", exc)
        return ""
    text = extract_text(root)
    LOGGER.debug("Extracted %d characters of visible text", len(text))
    return text


async def _settle(page: Page, settle_ms: int, selectors: Sequence[str]) -> None:
    if not selectors:
        if settle_ms:
            await page.wait_for_timeout(settle_ms)
        return
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        await page.wait_for_selector(", ".join(selectors), state="attached", timeout=settle_ms)
    except PlaywrightError:
        LOGGER.debug("None of %s appeared within %dms", ", ".join(selectors), settle_ms)
        return
    remaining = settle_ms - int((loop.time() - started) * 1000)
    pause = min(remaining, LAZY_RENDER_MS)
    if pause > 0:
        await page.wait_for_timeout(pause)


def tree_from_html(html: str) -> DomNode:
    """Build a ``DomNode`` tree from saved HTML using inline attributes only.

    Declarative shadow roots (``<template shadowrootmode=...>``) become
    shadow children of their host.
    """

    soup = BeautifulSoup(html, "html.parser")
    body = soup.body or soup
    if isinstance(body, Tag) and body.name != "[document]":
        return _html_element(body, None, 0)
    root = DomNode(kind=FRAGMENT)
    _html_children(body.children, root, 0)
    return root


def _html_element(tag: Tag, parent: DomNode | None, depth: int) -> DomNode:
    style = _parse_style(tag.get("style"))
    aria = tag.get("aria-hidden")
    node = DomNode(
        kind=ELEMENT,
        tag=tag.name.lower(),
        hidden=tag.has_attr("hidden"),
        aria_hidden=aria if isinstance(aria, str) else None,
        display=style.get("display", ""),
        visibility=style.get("visibility", ""),
        opacity=_as_opacity(style.get("opacity")),
        parent=parent,
    )
    if depth <= MAX_DEPTH:
        _html_children(tag.children, node, depth + 1)
    return node


def _html_children(children: Iterable[Any], node: DomNode, depth: int) -> None:
    for child in children:
        if isinstance(child, Tag):
            if child.name == "template" and (
                child.has_attr("shadowrootmode") or child.has_attr("shadowroot")
            ):
                holder = DomNode(kind=FRAGMENT)
                _html_children(child.children, holder, depth + 1)
                for shadow_child in holder.children:
                    node.attach_shadow(shadow_child)
                continue
            node.children.append(_html_element(child, node, depth))
        elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
            node.append(DomNode(kind=TEXT, text=str(child)))


def _parse_style(value: Any) -> dict[str, str]:
    if not isinstance(value, str):
        return {}
    declarations: dict[str, str] = {}
    for part in value.split(";"):
        name, sep, raw = part.partition(":")
        if sep:
            declarations[name.strip().lower()] = raw.replace("!important", "").strip().lower()
    return declarations


def _as_opacity(value: Any) -> float:
    if value is None or value == "":
        return 1.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 1.0
