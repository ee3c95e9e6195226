import pytest

from inkwell.dispatch import PreviewHost, render_output
from inkwell.llm_client import GenerationError
from inkwell.schema import CodeOutput, UIOutput

UI = {"ui": {"root": {"type": "button", "id": "go", "text": "Go"}}}
CODE = {"code": "export default function App(){ return <p>hi</p> }"}


def test_render_output_dispatches_on_kind():
    page = render_output(UI)
    assert 'data-action-id="go"' in page
    doc = render_output(CODE)
    assert "Babel.transform" in doc
    assert "data-action-id" not in doc


def test_render_output_rejects_unknown_payloads():
    with pytest.raises(ValueError):
        render_output(42)


def test_ui_output_renders_tree_and_routes_clicks():
    clicks = []
    host = PreviewHost(on_action=clicks.append)
    value = host.show(UI)
    assert isinstance(value, UIOutput)
    assert host.boundary is None
    host.tree.find_all("button")[0].click()
    assert clicks == ["go"]
    assert "Go" in host.html()


def test_swapping_code_for_ui_closes_the_boundary():
    errors = []
    host = PreviewHost(on_error=errors.append)
    host.show(CODE)
    boundary = host.boundary
    assert isinstance(host.output, CodeOutput)
    assert boundary.listener_count == 1
    assert "<iframe" in host.html()

    host.show(UI)
    assert host.boundary is None
    assert boundary.closed
    assert boundary.listener_count == 0


def test_each_code_output_gets_a_new_boundary():
    host = PreviewHost()
    host.show(CODE)
    first = host.boundary
    host.show({"code": "export default function Other(){ return null }"})
    assert host.boundary is not first
    assert first.closed
    assert "function App" not in host.boundary.document


def test_failed_round_keeps_the_previous_output():
    host = PreviewHost()
    host.show(UI)
    before = host.output

    def failing():
        raise GenerationError("quota_exceeded", "slow down")

    assert host.update(failing) is False
    assert host.output is before
    assert host.failures == ["quota_exceeded"]

    assert host.update(lambda: CODE) is True
    assert isinstance(host.output, CodeOutput)


def test_empty_host_shows_empty_state():
    host = PreviewHost()
    assert "Nothing generated yet." in host.html()
    host.show(CODE)
    host.close()
    assert host.output is None
    assert "Nothing generated yet." in host.html()
