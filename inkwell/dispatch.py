from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from inkwell.llm_client import GenerationError
from inkwell.render import ActionHandler, RenderedNode, render_page_html, render_ui, to_html
from inkwell.sandbox import Boundary, build_document
from inkwell.schema import CodeOutput, GeneratedOutput, UIOutput, coerce_output

log = logging.getLogger(__name__)


def render_output(output: Any, *, title: str = "Generated UI") -> str:
    """HTML for one generation result: UI schemas go through the renderer, code through the boundary."""
    value = coerce_output(output)
    if isinstance(value, CodeOutput):
        return build_document(value.code)
    return render_page_html(value.ui, title=title)


class PreviewHost:
    """The shell's single preview slot.

    Holds exactly one output at a time and swaps it wholesale. A code
    output owns one Boundary; showing anything else closes it first so
    no listener outlives the evaluation that registered it.
    """

    def __init__(
        self,
        on_action: Optional[ActionHandler] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.on_action = on_action
        self.on_error = on_error
        self.output: Optional[GeneratedOutput] = None
        self.tree: Optional[RenderedNode] = None
        self.boundary: Optional[Boundary] = None
        self.failures: List[str] = []

    def show(self, output: Any) -> GeneratedOutput:
        value = coerce_output(output)
        self._teardown()
        if isinstance(value, UIOutput):
            self.tree = render_ui(value.ui, self.on_action)
        else:
            boundary = Boundary(value.code)
            if self.on_error is not None:
                boundary.on_error(self.on_error)
            self.boundary = boundary
        self.output = value
        return value

    def update(self, produce: Callable[[], Any]) -> bool:
        """Run one generation round; a failed round leaves the current output untouched."""
        try:
            result = produce()
        except GenerationError as e:
            log.warning("preview.update: generation failed reason=%s: %s", e.reason, e)
            self.failures.append(e.reason)
            return False
        self.show(result)
        return True

    def html(self) -> str:
        if self.boundary is not None:
            return self.boundary.iframe_html()
        if self.output is None:
            return render_page_html(None)
        return str(to_html(self.tree))

    def close(self) -> None:
        self._teardown()
        self.output = None

    def _teardown(self) -> None:
        if self.boundary is not None:
            self.boundary.close()
            self.boundary = None
        self.tree = None
