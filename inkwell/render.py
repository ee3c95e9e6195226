from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set

from markupsafe import Markup

from inkwell.assets import resolve_image_src
from inkwell.schema import GeneratedUISchema, coerce_element, normalize_style
from inkwell.templating import env, render_template

log = logging.getLogger(__name__)

ActionHandler = Callable[[str], None]

RENDER_MAX_DEPTH = int(os.getenv("RENDER_MAX_DEPTH", "64") or 64)
TAILWIND_CDN_URL = os.getenv("TAILWIND_CDN_URL", "https://cdn.tailwindcss.com").strip()

CARD_CLASS = "rounded-xl border border-black/10 dark:border-white/15 bg-white dark:bg-neutral-900 p-6 shadow-sm"
BUTTON_CLASS = (
    "inline-flex items-center justify-center rounded-md bg-black text-white dark:bg-white "
    "dark:text-black px-4 py-2 text-sm font-medium hover:opacity-90"
)
INPUT_CLASS = "w-full rounded-md border border-black/10 dark:border-white/15 bg-transparent px-3 py-2 text-sm"

_TAGS = {"container": "div", "card": "div", "button": "button", "image": "img", "input": "input"}


@dataclass
class RenderedNode:
    """One concrete interface element produced from a UIElement."""

    kind: str
    key: str
    class_name: Optional[str] = None
    style: Optional[Dict[str, Any]] = None
    text: Optional[str] = None
    href: Optional[str] = None
    placeholder: Optional[str] = None
    src: Optional[str] = None
    alt: Optional[str] = None
    action_id: Optional[str] = None
    children: List["RenderedNode"] = field(default_factory=list)
    on_click: Optional[Callable[[], None]] = field(default=None, repr=False, compare=False)

    @property
    def tag(self) -> str:
        if self.kind == "text":
            return "a" if self.href else "p"
        return _TAGS[self.kind]

    def click(self) -> None:
        if self.on_click is not None:
            self.on_click()

    def walk(self) -> Iterator["RenderedNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def find_all(self, kind: str) -> List["RenderedNode"]:
        return [n for n in self.walk() if n.kind == kind]


def _key_for(node: Mapping[str, Any]) -> str:
    # Random fallback only affects re-render identity, never semantics
    ident = node.get("id")
    if ident is not None:
        return str(ident)
    return uuid.uuid4().hex[:10]


def _text_of(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


_SCRIPT_HREF_RE = re.compile(r"^\s*(javascript|vbscript|data):", re.IGNORECASE)


def _safe_href(value: Any) -> str:
    href = str(value)
    if _SCRIPT_HREF_RE.match(href):
        log.debug("render: neutralized scripted href")
        return "#"
    return href


def _class_of(node: Mapping[str, Any], default: Optional[str] = None) -> Optional[str]:
    value = node.get("className")
    if value is None:
        return default
    return str(value)


class _Walker:
    def __init__(self, on_action: Optional[ActionHandler], max_depth: int) -> None:
        self.on_action = on_action
        self.max_depth = max_depth
        self._path: Set[int] = set()

    def render(self, raw: Any, depth: int) -> Optional[RenderedNode]:
        if not isinstance(raw, Mapping):
            return None
        if depth > self.max_depth:
            log.debug("render: depth limit %d reached; dropping subtree", self.max_depth)
            return None
        marker = id(raw)
        if marker in self._path:
            log.warning("render: self-referential element skipped (id=%r)", raw.get("id"))
            return None
        node = coerce_element(raw)
        kind = node.get("type")
        builder = _BUILDERS.get(kind) if isinstance(kind, str) else None
        if builder is None:
            return None
        self._path.add(marker)
        try:
            return builder(self, node, depth)
        finally:
            self._path.discard(marker)

    def children(self, node: Mapping[str, Any], depth: int) -> List[RenderedNode]:
        raw_children = node.get("children")
        if not isinstance(raw_children, (list, tuple)):
            return []
        rendered = (self.render(child, depth + 1) for child in raw_children)
        return [child for child in rendered if child is not None]

    def block(self, node: Mapping[str, Any], depth: int, kind: str, default_class: Optional[str] = None) -> RenderedNode:
        return RenderedNode(
            kind=kind,
            key=_key_for(node),
            class_name=_class_of(node, default_class),
            style=normalize_style(node.get("style")),
            children=self.children(node, depth),
        )


def _container(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    return walker.block(node, depth, "container")


def _card(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    return walker.block(node, depth, "card", CARD_CLASS)


def _text(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    href = node.get("href")
    return RenderedNode(
        kind="text",
        key=_key_for(node),
        class_name=_class_of(node),
        style=normalize_style(node.get("style")),
        text=_text_of(node.get("text")),
        href=_safe_href(href) if href else None,
    )


def _button(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    ident = node.get("id")
    action_id = str(ident) if ident is not None else "button"
    label = _text_of(node.get("text"))
    # The only side effect of rendering: one synchronous call into the caller's handler
    on_click = partial(walker.on_action, action_id) if walker.on_action is not None else None
    return RenderedNode(
        kind="button",
        key=_key_for(node),
        class_name=_class_of(node, BUTTON_CLASS),
        style=normalize_style(node.get("style")),
        text=label if label is not None else "Button",
        action_id=action_id,
        on_click=on_click,
    )


def _image(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    return RenderedNode(
        kind="image",
        key=_key_for(node),
        class_name=_class_of(node),
        style=normalize_style(node.get("style")),
        src=resolve_image_src(node.get("src")),
        alt=_text_of(node.get("text")) or "image",
    )


def _input(walker: _Walker, node: Mapping[str, Any], depth: int) -> RenderedNode:
    return RenderedNode(
        kind="input",
        key=_key_for(node),
        class_name=_class_of(node, INPUT_CLASS),
        style=normalize_style(node.get("style")),
        placeholder=_text_of(node.get("placeholder")) or "",
    )


_BUILDERS: Dict[Any, Callable[[_Walker, Mapping[str, Any], int], RenderedNode]] = {
    "container": _container,
    "card": _card,
    "text": _text,
    "button": _button,
    "image": _image,
    "input": _input,
}


def render_element(
    element: Any,
    on_action: Optional[ActionHandler] = None,
    *,
    max_depth: Optional[int] = None,
) -> Optional[RenderedNode]:
    """Render one UIElement tree; ``None`` means "renders nothing", never an error."""
    walker = _Walker(on_action, RENDER_MAX_DEPTH if max_depth is None else max_depth)
    return walker.render(element, 0)


def _root_of(ui: Any) -> Any:
    if ui is None:
        return None
    if isinstance(ui, GeneratedUISchema):
        return ui.root
    if isinstance(ui, Mapping):
        return ui.get("root")
    return None


def render_ui(ui: Any, on_action: Optional[ActionHandler] = None) -> Optional[RenderedNode]:
    return render_element(_root_of(ui), on_action)


# React-style unitless properties; every other bare number gets "px"
_UNITLESS = {
    "animationIterationCount", "aspectRatio", "columnCount", "columns", "flex", "flexGrow",
    "flexShrink", "fontWeight", "gridArea", "gridColumn", "gridColumnEnd", "gridColumnStart",
    "gridRow", "gridRowEnd", "gridRowStart", "lineClamp", "lineHeight", "opacity", "order",
    "orphans", "scale", "tabSize", "widows", "zIndex", "zoom", "fillOpacity", "strokeOpacity",
    "strokeWidth",
}
_UNSAFE_CSS_RE = re.compile(r"[;{}<>]")
_UPPER_RE = re.compile(r"([A-Z])")


def css_property(name: str) -> str:
    if name.startswith("--"):
        return name
    prop = _UPPER_RE.sub(lambda m: "-" + m.group(1).lower(), name)
    if prop.startswith("ms-"):
        prop = "-" + prop
    return prop


def style_to_css(style: Optional[Mapping[str, Any]]) -> str:
    if not style:
        return ""
    parts: List[str] = []
    for name, value in style.items():
        if value is None or isinstance(value, (bool, dict, list)):
            continue
        if isinstance(value, (int, float)):
            text = f"{value}px" if value != 0 and name not in _UNITLESS and not name.startswith("--") else str(value)
        else:
            text = str(value).strip()
        if not text or _UNSAFE_CSS_RE.search(text):
            log.debug("render.style: dropping unsafe value for %s", name)
            continue
        parts.append(f"{css_property(name)}: {text}")
    return "; ".join(parts)


env.filters["css"] = style_to_css


def to_html(node: Optional[RenderedNode]) -> Markup:
    """Serialize a rendered tree through the per-type partial templates."""
    if node is None:
        return Markup("")
    children = Markup("").join(to_html(child) for child in node.children)
    tpl = env.get_template(f"elements/{node.kind}.html")
    return Markup(tpl.render(node=node, children=children))


def render_page_html(ui: Any, *, title: str = "Generated UI") -> str:
    """Full document for a schema, with the action bridge to the embedding page."""
    root = render_ui(ui)
    return render_template(
        "page.html",
        title=title,
        body=to_html(root),
        empty=ui is None,
        tailwind_url=TAILWIND_CDN_URL,
    )
