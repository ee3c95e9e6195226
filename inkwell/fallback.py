"""Rule-based offline generator.

Used by the generation collaborator when offline generation is allowed and
no provider is configured. Layout selection is keyword driven and
deterministic for a fixed keyword set.
"""

from __future__ import annotations

import re
from typing import Any, Dict

from inkwell.schema import GeneratedUISchema, UIOutput

_FORM_RE = re.compile(r"form|input|field", re.IGNORECASE)
_CARDS_RE = re.compile(r"card|list|items?", re.IGNORECASE)
_EMPHASIS_RE = re.compile(r"highlight|emphasize|bigger|bold", re.IGNORECASE)


def _form() -> Dict[str, Any]:
    return {
        "type": "container",
        "className": "mx-auto max-w-xl flex flex-col gap-4",
        "children": [
            {"type": "text", "className": "text-2xl font-semibold", "text": "Generated Form"},
            {"type": "input", "placeholder": "Name"},
            {"type": "input", "placeholder": "Email"},
            {"type": "button", "id": "submit", "text": "Submit"},
        ],
    }


def _cards(count: int = 6) -> Dict[str, Any]:
    return {
        "type": "container",
        "className": "grid grid-cols-1 sm:grid-cols-2 lg:grid-cols-3 gap-4",
        "children": [
            {
                "type": "card",
                "id": f"card-{i}",
                "children": [
                    {"type": "text", "className": "text-lg font-medium", "text": f"Card {i}"},
                    {"type": "text", "className": "text-sm text-gray-500", "text": "This is a generated card."},
                    {"type": "button", "id": f"open-{i}", "text": "Open"},
                ],
            }
            for i in range(1, count + 1)
        ],
    }


def _hero() -> Dict[str, Any]:
    return {
        "type": "container",
        "className": "flex flex-col items-center gap-4",
        "children": [
            {"type": "text", "className": "text-3xl font-bold", "text": "Generated UI"},
            {
                "type": "text",
                "className": "text-sm text-gray-500",
                "text": "Describe what you want on the left and regenerate.",
            },
            {"type": "button", "id": "primary", "text": "Primary action"},
        ],
    }


def generate_offline(prompt: str) -> UIOutput:
    text = prompt or ""
    if _FORM_RE.search(text):
        root = _form()
    elif _CARDS_RE.search(text):
        root = _cards()
    else:
        root = _hero()
    return UIOutput(ui=GeneratedUISchema(root=root))


def reprompt_offline(prompt: str) -> UIOutput:
    suffix = " (Large)" if _EMPHASIS_RE.search(prompt or "") else ""
    root = {
        "type": "container",
        "className": "mx-auto max-w-2xl flex flex-col gap-4",
        "children": [
            {"type": "text", "className": "text-2xl font-semibold", "text": "Updated UI from Sketch"},
            {"type": "input", "placeholder": "Search..."},
            {
                "type": "container",
                "className": "grid grid-cols-2 gap-3",
                "children": [
                    {"type": "button", "id": "primary", "text": "Primary" + suffix},
                    {"type": "button", "id": "secondary", "text": "Secondary" + suffix},
                ],
            },
            {
                "type": "card",
                "children": [
                    {"type": "text", "className": "text-lg font-medium", "text": "Card title"},
                    {"type": "text", "className": "text-sm text-gray-500", "text": "Tweaked from your sketch overlay."},
                    {"type": "button", "id": "continue", "text": "Continue"},
                ],
            },
        ],
    }
    return UIOutput(ui=GeneratedUISchema(root=root))
