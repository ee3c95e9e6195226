from __future__ import annotations

import os
import re
from typing import Any
from urllib.parse import quote

from inkwell.templating import render_template

IMAGES_PREFIX = "/images/"
PLACEHOLDER_PATH = os.getenv("IMAGE_PLACEHOLDER_PATH", "/images/placeholder").strip() or "/images/placeholder"

_ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]+$")


def strip_extension(name: str) -> str:
    return _EXTENSION_RE.sub("", name)


def resolve_image_src(src: Any) -> str:
    """Rewrite a generated image reference onto the placeholder image route.

    Generated schemas name images speculatively (``hero.jpg``,
    ``assets/img/team.png``); only absolute http(s) URLs are trusted as-is.
    Everything else collapses to ``/images/<basename without extension>``.
    """
    if not isinstance(src, str) or not src.strip():
        return PLACEHOLDER_PATH
    value = src.strip()
    if _ABSOLUTE_URL_RE.match(value):
        return value
    path = re.split(r"[?#]", value, maxsplit=1)[0]
    segment = path.rstrip("/").rsplit("/", 1)[-1]
    name = strip_extension(segment)
    if not name:
        return PLACEHOLDER_PATH
    return IMAGES_PREFIX + quote(name, safe="-_.~()")


def placeholder_label(name: str) -> str:
    return strip_extension(name or "").strip() or "image"


def placeholder_svg(name: str) -> str:
    """Deterministic placeholder artwork; the label is the only varying part."""
    return render_template("placeholder.svg", label=placeholder_label(name))
