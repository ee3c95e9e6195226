from __future__ import annotations

import json
import re
from typing import Any, Optional

from inkwell.schema import CodeOutput, GeneratedOutput, coerce_output

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[\w+-]*\s*([\s\S]*?)```")
_CODE_START_RE = re.compile(
    r"""^\s*(?:<|import\b|export\b|function\b|const\b|class\b|["']use client["'])"""
)
_MARKUP_RE = re.compile(r"<\s*(?:!doctype|html|body|main|header|section|footer|div)\b", re.IGNORECASE)


def _balanced_json_slice(s: str) -> Optional[str]:
    """First balanced {...} or [...] in s, ignoring brackets inside strings."""
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    opener = ""
    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[" and (depth == 0 or ch == opener):
            if depth == 0:
                start_idx = i
                opener = ch
            depth += 1
        elif depth and ch == ("}" if opener == "{" else "]"):
            depth -= 1
            if depth == 0:
                return s[start_idx : i + 1]
    return None


def _repair(candidate: str) -> str:
    s = re.sub(r",\s*([}\]])", r"\1", candidate)
    return s.replace("\u201c", '"').replace("\u201d", '"').replace("\u2019", "'")


def _json_from_text(text: str) -> Any:
    """Extract a JSON value from a model reply; raise ValueError when there is none.

    Strategy:
    - ```json fenced block first, then any fenced block.
    - First balanced object/array (string-aware).
    - Repair: drop trailing commas, straighten smart quotes.
    """
    t = (text or "").strip()
    m = _JSON_FENCE_RE.search(t) or _ANY_FENCE_RE.search(t)
    candidates = []
    if m:
        candidates.append(m.group(1).strip())
    sliced = _balanced_json_slice(t)
    if sliced:
        candidates.append(sliced)
    for candidate in candidates:
        for attempt in (candidate, _repair(candidate)):
            try:
                return json.loads(attempt)
            except ValueError:
                continue
    raise ValueError("No JSON content found")


def _code_from_text(text: str) -> str:
    m = _ANY_FENCE_RE.search(text)
    if m and m.group(1).strip():
        return m.group(1).strip()
    return text.strip()


def looks_like_code(text: str) -> bool:
    return bool(_CODE_START_RE.match(text) or _MARKUP_RE.search(text))


def parse_generation_text(text: Optional[str]) -> GeneratedOutput:
    """Turn one provider reply into a GeneratedOutput.

    Replies that open with markup or component source are code; otherwise
    the embedded JSON is coerced into an output. Raises ValueError when
    neither reading works.
    """
    t = (text or "").strip()
    if not t:
        raise ValueError("Empty model reply")
    code = _code_from_text(t)
    if _CODE_START_RE.match(code):
        return CodeOutput(code=code)
    try:
        return coerce_output(_json_from_text(t))
    except ValueError:
        pass
    if _MARKUP_RE.search(code):
        return CodeOutput(code=code)
    raise ValueError("Model reply is neither a UI schema nor code")
