"""
Turn untrusted generator output into a document that renders inside an
isolated boundary (a sandboxed iframe, or a response carrying the same
sandbox policy as a CSP header).

Pipeline for a code string:
  1. shape detection      complete document / HTML fragment / JSX component
  2. sanitization         fences, BOM, zero-width and no-break spaces
  3. module neutralization (JSX only) import/export statements rewritten or dropped
  4. document assembly    error channel, Babel transpile, entry lookup, mount
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from markupsafe import Markup

from inkwell.templating import render_template

log = logging.getLogger(__name__)

# no allow-top-navigation: the boundary may never drive the parent frame
SANDBOX_POLICY: Tuple[str, ...] = (
    "allow-forms",
    "allow-modals",
    "allow-popups",
    "allow-presentation",
    "allow-same-origin",
    "allow-scripts",
)

ENTRY_BINDING = "__inkwell_entry__"
ENTRY_NAME = "App"
ERROR_SOURCE = "inkwell-boundary"
MISSING_ENTRY_MESSAGE = "No default export / component found. Export a default component named App."
EMPTY_CODE = '<div style="padding:16px;font-family:system-ui">No code yet.</div>'

SANDBOX_REACT_URL = os.getenv(
    "SANDBOX_REACT_URL", "https://unpkg.com/react@18/umd/react.production.min.js"
).strip()
SANDBOX_REACT_DOM_URL = os.getenv(
    "SANDBOX_REACT_DOM_URL", "https://unpkg.com/react-dom@18/umd/react-dom.production.min.js"
).strip()
SANDBOX_BABEL_URL = os.getenv("SANDBOX_BABEL_URL", "https://unpkg.com/@babel/standalone/babel.min.js").strip()
SANDBOX_TAILWIND_URL = os.getenv("TAILWIND_CDN_URL", "https://cdn.tailwindcss.com").strip()
SANDBOX_NORMALIZE_PUNCTUATION = os.getenv("SANDBOX_NORMALIZE_PUNCTUATION", "0").lower() in {"1", "true", "yes", "on"}


class CodeShape(str, Enum):
    DOCUMENT = "document"
    HTML = "html"
    JSX = "jsx"
    TEXT = "text"


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------

# A fence plus its language tag; the tag only counts when the line ends right after it
_FENCE_RE = re.compile(r"```(?:[\w+#.-]+(?=[ \t]*(?:\r?\n|$)))?[ \t]*\r?\n?")
_INVISIBLE_RE = re.compile("[\u200b-\u200d\u2060\u00a0]")
_PUNCTUATION = {
    "\u2018": "'", "\u2019": "'", "\u201a": "'", "\u201b": "'",
    "\u201c": '"', "\u201d": '"', "\u201e": '"', "\u201f": '"',
    "\u2026": "...", "\u2013": "-", "\u2014": "-", "\u2212": "-",
}
_PUNCTUATION_RE = re.compile("|".join(map(re.escape, _PUNCTUATION)))


def sanitize(code: Optional[str], *, punctuation: bool = False) -> str:
    """Remove language-model artifacts. Idempotent: sanitize(sanitize(x)) == sanitize(x)."""
    if not code:
        return ""
    s = code.replace("\ufeff", "")
    s = _FENCE_RE.sub("", s)
    s = _INVISIBLE_RE.sub(" ", s)
    if punctuation:
        s = _PUNCTUATION_RE.sub(lambda m: _PUNCTUATION[m.group(0)], s)
    return s.strip()


# ---------------------------------------------------------------------------
# Shape detection
# ---------------------------------------------------------------------------

_HTML_TAG_RE = re.compile(r"<html[\s>]", re.IGNORECASE)
_BLOCK_TAG_RE = re.compile(r"<(?:div|main|section|header|footer|body|html)[\s>]", re.IGNORECASE)
_MODULE_KEYWORD_RE = re.compile(r"\b(?:export|import)\b")
_JSX_SIGNAL_RES = (
    re.compile(r"export\s+default\s+(?:async\s+)?(?:function|class)?\s*[A-Z]"),
    re.compile(r"export\s+default\b"),
    re.compile(r"\bReact\b"),
    re.compile(r"\buse[A-Z]\w*\s*\("),
    re.compile(r"<[A-Za-z][\w.]*(?:[\s/>]|$)"),
)


def is_document(code: Optional[str]) -> bool:
    return bool(code) and bool(_HTML_TAG_RE.search(code))


def looks_like_html_fragment(source: str) -> bool:
    return bool(_BLOCK_TAG_RE.search(source)) and not _MODULE_KEYWORD_RE.search(source)


def looks_like_jsx(source: str) -> bool:
    return any(rx.search(source) for rx in _JSX_SIGNAL_RES)


def classify(code: Optional[str]) -> CodeShape:
    """Ordered shape rules; the order is the contract.

    1. a top-level <html> tag            -> DOCUMENT (checked on the raw string)
    2. block markup without import/export -> HTML
    3. component-authoring signals        -> JSX
    4. anything else                      -> TEXT (wrapped statically)
    """
    if is_document(code):
        return CodeShape.DOCUMENT
    source = sanitize(code)
    if looks_like_html_fragment(source):
        return CodeShape.HTML
    if looks_like_jsx(source):
        return CodeShape.JSX
    return CodeShape.TEXT


# ---------------------------------------------------------------------------
# import/export neutralization
# ---------------------------------------------------------------------------

_IDENT = r"[A-Za-z_$][\w$]*"

# import x from 'y';  import {a,\n b} from "y";  import './side-effect.css';  import type {T} from 'y'
_IMPORT_RE = re.compile(
    r"""^[ \t]*import\b(?![ \t]*\()(?:[^'";]*?\bfrom)?[ \t]*(['"])[^'"\n]*\1[ \t]*;?[ \t]*(?:\r?\n)?""",
    re.MULTILINE,
)
_DEFAULT_FUNCTION_RE = re.compile(
    rf"^([ \t]*)export[ \t]+default[ \t]+((?:async[ \t]+)?function\b[ \t]*\*?[ \t]*)({_IDENT})",
    re.MULTILINE,
)
_DEFAULT_CLASS_RE = re.compile(rf"^([ \t]*)export[ \t]+default[ \t]+(class[ \t]+)({_IDENT})", re.MULTILINE)
_DEFAULT_EXPR_RE = re.compile(r"^([ \t]*)export[ \t]+default[ \t]+", re.MULTILINE)
# export { a, b as c };  export * from 'x';  export { x } from 'y'
_EXPORT_LIST_RE = re.compile(
    r"""^[ \t]*export[ \t]*(?:type[ \t]*)?(?:\*(?:[ \t]+as[ \t]+[\w$]+)?|\{[^}]*\})[ \t]*(?:from[ \t]*(['"])[^'"\n]*\1)?[ \t]*;?[ \t]*(?:\r?\n)?""",
    re.MULTILINE,
)
_EXPORT_DECL_RE = re.compile(
    r"^([ \t]*)export[ \t]+(?=(?:async[ \t]+)?function\b|class\b|const\b|let\b|var\b|type\b|interface\b|enum\b|abstract\b|declare\b)",
    re.MULTILINE,
)
_ENTRY_DECL_RE = re.compile(
    rf"^[ \t]*(?:(?:async[ \t]+)?function\b[ \t]*\*?[ \t]*|class[ \t]+|(?:const|let|var)[ \t]+){ENTRY_NAME}\b",
    re.MULTILINE,
)
_COMPONENT_DECL_RE = re.compile(
    r"^(?:(?:async[ \t]+)?function[ \t]*\*?[ \t]*|class[ \t]+|(?:const|let|var)[ \t]+)([A-Z][\w$]*)\b",
    re.MULTILINE,
)
_MODULE_LINE_RE = re.compile(r"^[ \t]*(?:import|export)\b.*(?:\r?\n|$)", re.MULTILINE)


@dataclass
class Neutralized:
    source: str
    bound: List[str]
    candidates: List[str]
    stripped_lines: int


def _bind(name: str) -> str:
    return f"{ENTRY_BINDING}.current = {name};"


def neutralize_modules(source: str) -> Neutralized:
    """Rewrite every import/export so the code runs without a module loader.

    Rules, applied in this order:
      - whole import statements (including multi-line braces) are dropped
      - ``export default function Name`` / ``export default class Name`` keep
        the declaration and bind ``Name`` to the entry slot afterwards
      - ``export default <expr>`` assigns the expression to the entry slot
      - export lists / re-exports are dropped, ``export`` on declarations removed
      - an unbound ``App`` declaration is bound automatically
      - last resort: any line still starting with import/export is removed.
        This is lossy.
    """
    bound: List[str] = []
    s = _IMPORT_RE.sub("", source)

    def _keep_function(m: "re.Match[str]") -> str:
        bound.append(m.group(3))
        return f"{m.group(1)}{m.group(2)}{m.group(3)}"

    s = _DEFAULT_FUNCTION_RE.sub(_keep_function, s)
    s = _DEFAULT_CLASS_RE.sub(_keep_function, s)
    expr_count = len(_DEFAULT_EXPR_RE.findall(s))
    s = _DEFAULT_EXPR_RE.sub(lambda m: f"{m.group(1)}{ENTRY_BINDING}.current = ", s)
    s = _EXPORT_LIST_RE.sub("", s)
    s = _EXPORT_DECL_RE.sub(lambda m: m.group(1), s)

    stripped = len(_MODULE_LINE_RE.findall(s))
    if stripped:
        log.warning("sandbox.neutralize: stripping %d residual import/export line(s)", stripped)
        s = _MODULE_LINE_RE.sub("", s)

    tail: List[str] = [_bind(name) for name in bound]
    if not bound and not expr_count and _ENTRY_DECL_RE.search(s):
        bound.append(ENTRY_NAME)
        tail.append(_bind(ENTRY_NAME))

    # Fallback: first capitalized top-level declaration that looks like a component
    candidates = [name for name in dict.fromkeys(_COMPONENT_DECL_RE.findall(s)) if name not in bound]
    for name in candidates:
        tail.append(f'if (!{ENTRY_BINDING}.current && typeof {name} !== "undefined") {_bind(name)}')

    if tail:
        s = s.rstrip() + "\n" + "\n".join(tail) + "\n"
    return Neutralized(source=s, bound=bound, candidates=candidates, stripped_lines=stripped)


# ---------------------------------------------------------------------------
# Document assembly
# ---------------------------------------------------------------------------

_VIEWPORT_RE = re.compile(r"<meta\b[^>]*\bname\s*=\s*[\"']?viewport\b", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_HEAD_OPEN_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
_HTML_OPEN_RE = re.compile(r"<html\b[^>]*>", re.IGNORECASE)
_BASE_MARKER = "data-inkwell-base"


def _boundary_context(boundary_id: str) -> Dict[str, Any]:
    return {
        "boundary_id": boundary_id,
        "error_source": ERROR_SOURCE,
        "tailwind_url": SANDBOX_TAILWIND_URL,
    }


def wrap_document(html: str, *, boundary_id: str = "") -> str:
    """Complete documents pass through with only the viewport and base layer injected."""
    if _BASE_MARKER in html:
        return html
    head = render_template(
        "sandbox/inject.html",
        needs_viewport=not _VIEWPORT_RE.search(html),
        **_boundary_context(boundary_id),
    )
    close = _HEAD_CLOSE_RE.search(html)
    if close:
        return html[: close.start()] + head + html[close.start():]
    opened = _HEAD_OPEN_RE.search(html)
    if opened:
        return html[: opened.end()] + head + html[opened.end():]
    root = _HTML_OPEN_RE.search(html)
    if root:
        return html[: root.end()] + "<head>" + head + "</head>" + html[root.end():]
    return "<head>" + head + "</head>" + html


def static_document(fragment: str, *, boundary_id: str = "") -> str:
    return render_template("sandbox/static.html", body=Markup(fragment), **_boundary_context(boundary_id))


def component_document(source: str, *, boundary_id: str = "") -> str:
    return render_template(
        "sandbox/component.html",
        source=source,
        entry_binding=ENTRY_BINDING,
        missing_entry_message=MISSING_ENTRY_MESSAGE,
        react_url=SANDBOX_REACT_URL,
        react_dom_url=SANDBOX_REACT_DOM_URL,
        babel_url=SANDBOX_BABEL_URL,
        **_boundary_context(boundary_id),
    )


@dataclass
class NormalizedCode:
    shape: CodeShape
    source: str
    document: str


def normalize(code: Optional[str], *, boundary_id: str = "") -> NormalizedCode:
    """Never raises and never returns an empty document."""
    if not code or not code.strip():
        return NormalizedCode(CodeShape.HTML, EMPTY_CODE, static_document(EMPTY_CODE, boundary_id=boundary_id))
    shape = classify(code)
    log.debug("sandbox.classify: shape=%s len=%d", shape.value, len(code))
    if shape is CodeShape.DOCUMENT:
        return NormalizedCode(shape, code, wrap_document(code, boundary_id=boundary_id))
    source = sanitize(code, punctuation=SANDBOX_NORMALIZE_PUNCTUATION)
    if not source:
        return NormalizedCode(CodeShape.HTML, EMPTY_CODE, static_document(EMPTY_CODE, boundary_id=boundary_id))
    if shape is not CodeShape.JSX:
        return NormalizedCode(shape, source, static_document(source, boundary_id=boundary_id))
    neutral = neutralize_modules(source)
    return NormalizedCode(shape, neutral.source, component_document(neutral.source, boundary_id=boundary_id))


def build_document(code: Optional[str], *, boundary_id: str = "") -> str:
    return normalize(code, boundary_id=boundary_id).document


def csp_sandbox_header() -> str:
    return "sandbox " + " ".join(SANDBOX_POLICY)


# ---------------------------------------------------------------------------
# Host side of one boundary
# ---------------------------------------------------------------------------

ErrorListener = Callable[[str], None]


class Boundary:
    """One isolated evaluation of generated code, as seen from the host.

    Owns the boundary document, the error listeners registered for it and
    their teardown. The entry-point slot lives inside the document and is
    created fresh for every evaluation, so a previous component can never
    reappear in a new boundary.
    """

    def __init__(self, code: Optional[str]) -> None:
        self.id = uuid.uuid4().hex
        self.normalized = normalize(code, boundary_id=self.id)
        self.errors: List[str] = []
        self.closed = False
        self._listeners: List[ErrorListener] = []

    @property
    def document(self) -> str:
        return self.normalized.document

    @property
    def shape(self) -> CodeShape:
        return self.normalized.shape

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def iframe_html(self, class_name: str = "w-full h-full") -> str:
        return render_template(
            "sandbox/iframe.html",
            boundary_id=self.id,
            class_name=class_name,
            policy=" ".join(SANDBOX_POLICY),
            document=self.document,
        )

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        if self.closed:
            raise RuntimeError("boundary is closed")
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def receive(self, message: Any) -> bool:
        """Accept an error report posted by this boundary; anything else is ignored."""
        if self.closed or not isinstance(message, Mapping):
            return False
        if message.get("source") != ERROR_SOURCE or message.get("boundary") != self.id:
            return False
        if message.get("type") != "error":
            return False
        text = str(message.get("message") or "Unknown error")
        self.errors.append(text)
        for listener in list(self._listeners):
            try:
                listener(text)
            except Exception:
                # a faulty host listener must not take the host down with it
                log.exception("sandbox.boundary: error listener failed boundary=%s", self.id)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self._listeners.clear()
        self.closed = True
        log.debug("sandbox.boundary: closed boundary=%s errors=%d", self.id, len(self.errors))
