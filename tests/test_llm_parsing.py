import pytest

from inkwell.llm_parsing import looks_like_code, parse_generation_text
from inkwell.schema import CodeOutput, UIOutput


def test_fenced_json_reply():
    text = 'Here you go:\n```json\n{"ui": {"root": {"type": "text", "text": "Hi"}}}\n```\nEnjoy!'
    out = parse_generation_text(text)
    assert isinstance(out, UIOutput)
    assert out.ui.root["text"] == "Hi"


def test_json_with_trailing_commas_and_smart_quotes():
    text = '{\u201cui\u201d: {"root": {"type": "button", "text": "Go",},},}'
    out = parse_generation_text(text)
    assert isinstance(out, UIOutput)
    assert out.ui.root["type"] == "button"


def test_braces_inside_strings_do_not_end_the_object():
    text = 'Result: {"ui": {"root": {"type": "text", "text": "a } b"}}} - done'
    out = parse_generation_text(text)
    assert out.ui.root["text"] == "a } b"


def test_explicit_code_kind_in_json():
    out = parse_generation_text('{"kind": "code", "code": "<div>x</div>"}')
    assert isinstance(out, CodeOutput)
    assert out.code == "<div>x</div>"


def test_fenced_component_reply_is_code():
    out = parse_generation_text("```jsx\nexport default function App() { return <p>{1}</p> }\n```")
    assert isinstance(out, CodeOutput)
    assert out.code.startswith("export default function App()")


def test_markup_after_prose_is_code():
    out = parse_generation_text("Sure, here it is: <main><h1>Hi</h1></main>")
    assert isinstance(out, CodeOutput)


@pytest.mark.parametrize("text", [None, "", "   ", "I cannot help with that request."])
def test_unusable_reply_raises(text):
    with pytest.raises(ValueError):
        parse_generation_text(text)


def test_looks_like_code():
    assert looks_like_code("const x = 1")
    assert looks_like_code('"use client"\nexport default X')
    assert not looks_like_code('{"ui": {}}')
