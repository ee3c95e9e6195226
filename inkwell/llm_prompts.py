from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

UI_ELEMENT_TYPE = (
    "type UIElement = { id?: string; type: 'container'|'text'|'button'|'image'|'input'|'card'; "
    "className?: string; style?: Record<string,string|number>; text?: string; href?: string; "
    "placeholder?: string; src?: string; children?: UIElement[] };"
)


def build_system_prompt(mode: str = "ui") -> str:
    if mode == "code":
        return "\n".join(
            [
                "You generate production-ready UI code.",
                "Rules:",
                "- Output either one HTML document/fragment styled with Tailwind CSS, or one React component",
                "  written as `export default function App() { ... }`.",
                "- Output only code (no markdown, no code fences, no explanations).",
                "- React, ReactDOM and Tailwind are already loaded globally; do not import other packages.",
                "- Do not reference external URLs; use /images/<name> for any image.",
            ]
        )
    return "\n".join(
        [
            "You are a UI generator that outputs a strict JSON object.",
            "Always return only valid minified JSON matching this TypeScript type:",
            UI_ELEMENT_TYPE,
            "type GeneratedUISchema = { root: UIElement };",
            "- Use tailwind utility classes in className for layout and styling.",
            "- Prefer semantic structure and concise content strings.",
            "- Reference images as /images/<name>; they are served as placeholders.",
        ]
    )


def closing_instruction(mode: str = "ui", refine: bool = False) -> str:
    if mode == "code":
        return "Return only the updated code." if refine else "Return only the code."
    if refine:
        return "Return only JSON for GeneratedUISchema reflecting the edits."
    return "Return only JSON for GeneratedUISchema with a useful UI."


def build_refine_instruction(previous_ui: Optional[Dict[str, Any]], sketch_note: str = "") -> str:
    """Instruction block for a reprompt; the previous output is embedded verbatim."""
    lines = [
        "Refine the previous UI based on the user's sketch and prompt.",
        "Preserve overall structure but apply the indicated changes (layout, emphasis, components).",
    ]
    if previous_ui:
        lines.append("Previous UI JSON: " + json.dumps(previous_ui, ensure_ascii=False, separators=(",", ":")))
    if sketch_note:
        lines.append("Sketch description: " + sketch_note)
    return "\n".join(lines)


SKETCH_DESCRIBER_SYSTEM = (
    "You analyze UI sketches drawn over an existing page. "
    "Describe the requested changes as a detailed UI prompt. Output only the prompt text, no code."
)
SKETCH_DESCRIBER_DEFAULT = "Analyze and describe the UI changes in this sketch."


def _ecommerce(brand: str = "Your Brand") -> str:
    return "\n".join(
        [
            f"Build a professional e-commerce landing page for {brand}.",
            "Sections:",
            "- Sticky header with logo and nav (Home, Shop, About, Contact)",
            "- Hero with headline, subcopy, CTAs",
            "- Product grid (6 items) with image, name, price, and Add to Cart",
            "- Benefits (3 columns) with icons",
            "- Testimonials (2 cards)",
            "- Footer with links and copyright",
            "Constraints:",
            "- Semantic structure, responsive (sm/md/lg)",
            "- No external URLs; if image not provided, use /images/[name]",
        ]
    )


def _product_card() -> str:
    return "\n".join(
        [
            "Create a modern product card component with Tailwind.",
            "Includes: image, product name, short description, price, primary CTA",
            "Constraints: semantic markup, hover/focus-visible states",
        ]
    )


def _dashboard() -> str:
    return "\n".join(
        [
            "Generate a clean dashboard layout with a sidebar, header, and main content area.",
            "Include: stats cards (4), recent activity list, and a simple table",
            "Constraints: responsive, keyboard-accessible",
        ]
    )


TEMPLATES: Dict[str, Callable[..., str]] = {
    "ecommerce": _ecommerce,
    "product_card": _product_card,
    "dashboard": _dashboard,
}


def expand_template(name: Optional[str], prompt: str) -> str:
    """Prefix the named template's brief to the user prompt; unknown names raise KeyError."""
    if not name:
        return prompt
    brief = TEMPLATES[name]()
    return f"{brief}\n\nUser Requirements:\n{prompt}" if prompt.strip() else brief
