"""
Freehand annotation layer drawn over a rendered result.

The overlay owns a transparent raster surface that always matches its
container's bounding box. While enabled, pointer input appends connected
segments in the current stroke colour and width; export encodes the
surface as PNG. Stroke history is never kept, only pixels.
"""

from __future__ import annotations

import io
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from PIL import Image, ImageColor, ImageDraw, UnidentifiedImageError

log = logging.getLogger(__name__)

DEFAULT_COLOR = "#ff3b30"
DEFAULT_WIDTH = 3
MIN_WIDTH = 1
MAX_WIDTH = 12

try:
    SKETCH_MAX_SIDE = int(os.getenv("SKETCH_MAX_SIDE", "4096"))
except Exception:
    SKETCH_MAX_SIDE = 4096

Point = Tuple[float, float]


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    width: float
    height: float


class Observation:
    """Handle returned by Container.observe; disconnect() is idempotent."""

    def __init__(self, container: "Container", callback: Callable[[Rect], None]) -> None:
        self._container = container
        self.callback = callback
        self.connected = True

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self._container._observers.remove(self)


class Container:
    """The box the overlay covers. Bounding-box changes notify observers synchronously."""

    def __init__(self, width: float, height: float, left: float = 0, top: float = 0) -> None:
        self.rect = Rect(left, top, width, height)
        self._observers: List[Observation] = []

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def observe(self, callback: Callable[[Rect], None]) -> Observation:
        handle = Observation(self, callback)
        self._observers.append(handle)
        return handle

    def set_rect(self, width: float, height: float, left: Optional[float] = None, top: Optional[float] = None) -> None:
        rect = Rect(
            self.rect.left if left is None else left,
            self.rect.top if top is None else top,
            width,
            height,
        )
        if rect == self.rect:
            return
        self.rect = rect
        for handle in list(self._observers):
            handle.callback(rect)


def _blank(size: Tuple[int, int]) -> Image.Image:
    return Image.new("RGBA", size, (0, 0, 0, 0))


def _surface_size(rect: Rect) -> Tuple[int, int]:
    # a raster needs at least one pixel; a collapsed container still gets a 1x1 surface
    return max(1, math.floor(rect.width)), max(1, math.floor(rect.height))


def clamp_width(value: Any) -> int:
    try:
        width = float(value)
    except (TypeError, ValueError):
        return DEFAULT_WIDTH
    if math.isnan(width):
        return DEFAULT_WIDTH
    if math.isinf(width):
        return MAX_WIDTH if width > 0 else MIN_WIDTH
    width = int(round(width))
    return max(MIN_WIDTH, min(MAX_WIDTH, width))


class SketchOverlay:
    def __init__(
        self,
        container: Container,
        *,
        enabled: bool = False,
        color: str = DEFAULT_COLOR,
        stroke_width: Any = DEFAULT_WIDTH,
    ) -> None:
        self.container = container
        self._enabled = bool(enabled)
        self._color = DEFAULT_COLOR
        self.color = color
        self.stroke_width = clamp_width(stroke_width)
        self._drawing = False
        self._last: Optional[Point] = None
        self.closed = False
        self.image = _blank(_surface_size(container.rect))
        self._observation = container.observe(self._resize)

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        if not self._enabled:
            self.pointer_up()

    @property
    def pointer_events(self) -> str:
        """CSS pointer-events of the surface; "none" lets input reach the content underneath."""
        return "auto" if self._enabled else "none"

    @property
    def color(self) -> str:
        return self._color

    @color.setter
    def color(self, value: str) -> None:
        ImageColor.getrgb(value)  # raises ValueError on unknown colours
        self._color = value

    def set_stroke_width(self, value: Any) -> int:
        self.stroke_width = clamp_width(value)
        return self.stroke_width

    def _resize(self, rect: Rect) -> None:
        # same as assigning canvas.width/height: the surface is reallocated blank
        self.image = _blank(_surface_size(rect))
        self._drawing = False
        self._last = None
        log.debug("sketch.resize: %sx%s", *self.image.size)

    def relative_point(self, client_x: float, client_y: float) -> Point:
        rect = self.container.rect
        return client_x - rect.left, client_y - rect.top

    def pointer_down(self, client_x: float, client_y: float) -> bool:
        if not self._enabled or self.closed:
            return False
        self._drawing = True
        self._last = self.relative_point(client_x, client_y)
        return True

    def pointer_move(self, client_x: float, client_y: float) -> bool:
        if not self._enabled or not self._drawing or self._last is None:
            return False
        point = self.relative_point(client_x, client_y)
        self._segment(self._last, point)
        self._last = point
        return True

    def pointer_up(self) -> None:
        self._drawing = False
        self._last = None

    def _segment(self, start: Point, end: Point) -> None:
        draw = ImageDraw.Draw(self.image)
        width = self.stroke_width
        draw.line([start, end], fill=self._color, width=width, joint="curve")
        # round caps
        r = width / 2.0
        for x, y in (start, end):
            draw.ellipse([x - r, y - r, x + r, y + r], fill=self._color)

    def clear(self) -> None:
        """Erase every stroke; the surface keeps its size."""
        self.image = _blank(self.image.size)

    def is_blank(self) -> bool:
        return self.image.getchannel("A").getbbox() is None

    def export_png(self) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()

    def export(self, callback: Callable[[bytes], None]) -> None:
        callback(self.export_png())

    def close(self) -> None:
        if self.closed:
            return
        self._observation.disconnect()
        self._drawing = False
        self.closed = True


def _points_of(stroke: Any) -> List[Point]:
    raw = stroke.get("points") if isinstance(stroke, Mapping) else stroke
    points: List[Point] = []
    for item in raw or []:
        if isinstance(item, Mapping):
            points.append((float(item["x"]), float(item["y"])))
        else:
            x, y = item
            points.append((float(x), float(y)))
    return points


def _check_side(name: str, value: Any) -> int:
    side = int(value)
    if side < 1 or side > SKETCH_MAX_SIDE:
        raise ValueError(f"{name} must be between 1 and {SKETCH_MAX_SIDE}")
    return side


def render_strokes(
    width: Any,
    height: Any,
    strokes: Iterable[Any],
    *,
    color: str = DEFAULT_COLOR,
    stroke_width: Any = DEFAULT_WIDTH,
) -> bytes:
    """Replay strokes (lists of points, or {points, color, width}) onto a fresh surface as PNG."""
    container = Container(_check_side("width", width), _check_side("height", height))
    overlay = SketchOverlay(container, enabled=True, color=color, stroke_width=stroke_width)
    try:
        for stroke in strokes:
            if isinstance(stroke, Mapping):
                overlay.color = stroke.get("color") or color
                overlay.set_stroke_width(stroke.get("width", stroke_width))
            points = _points_of(stroke)
            if not points:
                continue
            overlay.pointer_down(*points[0])
            for point in points[1:]:
                overlay.pointer_move(*point)
            overlay.pointer_up()
        return overlay.export_png()
    finally:
        overlay.close()


def load_overlay(data: bytes, *, max_side: Optional[int] = None) -> bytes:
    """Validate an uploaded overlay and re-encode it as PNG; ValueError when it is not an image."""
    if not data:
        raise ValueError("empty image")
    limit = max_side or SKETCH_MAX_SIDE
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ValueError("image is not a decodable raster") from e
    if img.mode not in ("RGBA", "RGB", "L", "LA"):
        img = img.convert("RGBA")
    w, h = img.size
    if max(w, h) > limit:
        scale = limit / float(max(w, h))
        img = img.resize((max(1, int(w * scale)), max(1, int(h * scale))), Image.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
