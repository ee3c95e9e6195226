import re

import pytest

from inkwell.sandbox import (
    ENTRY_BINDING,
    MISSING_ENTRY_MESSAGE,
    SANDBOX_POLICY,
    Boundary,
    CodeShape,
    build_document,
    classify,
    csp_sandbox_header,
    neutralize_modules,
    normalize,
    sanitize,
    wrap_document,
)

IMPORT_LINE = re.compile(r"^\s*import\b", re.MULTILINE)
VIEWPORT = re.compile(r'<meta[^>]+name="viewport"', re.IGNORECASE)


@pytest.mark.parametrize(
    "raw",
    [
        "```tsx\nconst a = 1\n```",
        "\ufeff<div>\u200bhi\u00a0</div>",
        "  ```\n<p>x</p>```  ",
        "``\ufeff`x",
        "`\ufeff`\ufeff`js\nconst a = 1",
        "````\n`x",
        "plain text",
        "",
    ],
)
def test_sanitize_is_idempotent(raw):
    once = sanitize(raw)
    assert sanitize(once) == once


def test_sanitize_strips_fences_bom_and_invisible_spaces():
    assert sanitize("```jsx\n<div>ok</div>\n```") == "<div>ok</div>"
    assert sanitize("\ufeff<p>a\u200bb\u00a0c</p>") == "<p>a b c</p>"


def test_punctuation_hardening_is_opt_in():
    text = "\u201cHi\u201d\u2026 \u2014"
    assert sanitize(text) == text
    assert sanitize(text, punctuation=True) == '"Hi"... -'


@pytest.mark.parametrize(
    "code, shape",
    [
        ("<!DOCTYPE html><HTML lang='en'><body>x</body></HTML>", CodeShape.DOCUMENT),
        ("<div class='p-4'>Hi</div>", CodeShape.HTML),
        ("export default function App() { return <div/> }", CodeShape.JSX),
        ("const [n, setN] = useState(0)", CodeShape.JSX),
        ("```jsx\nexport default function App(){return <p/>}\n```", CodeShape.JSX),
        ("Just some words", CodeShape.TEXT),
    ],
)
def test_shape_rules(code, shape):
    assert classify(code) == shape


def test_module_keywords_keep_markup_on_the_jsx_path():
    code = "import React from 'react'\nexport default () => <section>hi</section>"
    assert classify(code) == CodeShape.JSX


def test_import_statements_are_removed():
    code = "\n".join(
        [
            "import {x} from 'y'",
            "import React, { useState } from \"react\";",
            "import {",
            "  Card,",
            "  Button,",
            "} from '@/components/ui';",
            "import './styles.css';",
            "export default function App() { return <div>{x}</div> }",
        ]
    )
    out = neutralize_modules(code).source
    assert not IMPORT_LINE.search(out)
    assert "function App()" in out


def test_export_default_function_is_bound_to_entry():
    result = neutralize_modules("export default function App(){ return <p>hi</p> }")
    assert "export" not in result.source
    assert f"{ENTRY_BINDING}.current = App;" in result.source
    assert result.bound == ["App"]


def test_export_default_class_keeps_declaration():
    result = neutralize_modules("export default class Board extends React.Component { render() { return null } }")
    assert result.source.startswith("class Board extends")
    assert f"{ENTRY_BINDING}.current = Board;" in result.source


def test_export_default_expression_is_assigned():
    result = neutralize_modules("const Page = () => <main/>;\nexport default Page;")
    assert f"{ENTRY_BINDING}.current = Page;" in result.source
    assert "export" not in result.source


def test_unbound_app_is_bound_automatically():
    result = neutralize_modules("function App() { return <div/> }")
    assert result.bound == ["App"]
    assert result.source.rstrip().endswith(f"{ENTRY_BINDING}.current = App;")


def test_named_exports_lose_the_keyword_and_lists_are_dropped():
    code = "export const Title = () => <h1/>;\nexport function Helper() {}\nexport { Title as Heading };\nexport * from './x';"
    out = neutralize_modules(code).source
    assert "export" not in out
    assert "const Title" in out
    assert "function Helper" in out


def test_first_capitalized_declaration_is_a_fallback_candidate():
    result = neutralize_modules("function helper() {}\nfunction Dashboard() { return <div/> }")
    assert result.bound == []
    assert result.candidates == ["Dashboard"]
    assert 'typeof Dashboard !== "undefined"' in result.source


def test_residual_module_lines_are_stripped_as_last_resort():
    result = neutralize_modules("import fs = require('fs');\nfunction App() { return null }")
    assert result.stripped_lines == 1
    assert "require" not in result.source
    assert not IMPORT_LINE.search(result.source)


def test_document_gets_exactly_one_viewport():
    doc = wrap_document("<html><head><title>x</title></head><body>hi</body></html>")
    assert len(VIEWPORT.findall(doc)) == 1
    assert doc.index("data-inkwell-base") < doc.index("</head>")


def test_document_with_viewport_is_not_given_another():
    html = '<html><head><meta name="viewport" content="width=device-width"></head><body></body></html>'
    assert len(VIEWPORT.findall(wrap_document(html))) == 1


def test_document_without_head_gets_one():
    doc = wrap_document("<html><body>x</body></html>")
    assert doc.startswith("<html><head>")
    assert len(VIEWPORT.findall(doc)) == 1


def test_document_wrapping_is_idempotent():
    once = wrap_document("<html><head></head><body></body></html>")
    assert wrap_document(once) == once


@pytest.mark.parametrize("code", [None, "", "   ", "```\n```"])
def test_empty_code_still_produces_a_document(code):
    doc = build_document(code)
    assert doc.strip()
    assert "No code yet." in doc
    assert "<html" in doc


def test_fragment_is_wrapped_statically_without_runtime():
    doc = build_document("<section><h1>Hi</h1></section>")
    assert "<section><h1>Hi</h1></section>" in doc
    assert "Babel" not in doc
    assert "inkwell-errors" in doc


def test_component_document_has_runtime_and_error_channel():
    norm = normalize("export default function App(){ return <p>hi</p> }", boundary_id="b1")
    doc = norm.document
    assert norm.shape == CodeShape.JSX
    assert "Babel.transform" in doc
    assert "createRoot" in doc and "ReactDOM.render" in doc
    assert "unhandledrejection" in doc
    assert MISSING_ENTRY_MESSAGE in doc
    assert '"b1"' in doc
    assert "var slot = { current: null };" in doc
    # embedded source cannot close the surrounding script element
    assert "</p>" not in doc


def test_policy_never_allows_top_navigation():
    assert "allow-scripts" in SANDBOX_POLICY
    assert not any("top-navigation" in p for p in SANDBOX_POLICY)
    assert csp_sandbox_header().startswith("sandbox allow-forms")


def _report(boundary, /, message="boom", **overrides):
    msg = {"source": "inkwell-boundary", "boundary": boundary.id, "type": "error", "message": message}
    msg.update(overrides)
    return msg


def test_boundary_routes_its_own_errors_to_listeners():
    boundary = Boundary("export default function App(){ throw new Error('x') }")
    seen = []
    boundary.on_error(seen.append)
    assert boundary.receive(_report(boundary)) is True
    assert boundary.receive(_report(boundary, boundary="someone-else")) is False
    assert boundary.receive({"type": "error"}) is False
    assert boundary.receive("not a message") is False
    assert seen == ["boom"]
    assert boundary.errors == ["boom"]


def test_failing_listener_does_not_break_the_host():
    boundary = Boundary("<div>x</div>")
    seen = []

    def broken(_):
        raise RuntimeError("listener bug")

    boundary.on_error(broken)
    boundary.on_error(seen.append)
    assert boundary.receive(_report(boundary)) is True
    assert seen == ["boom"]


def test_unsubscribe_and_close_release_listeners():
    boundary = Boundary("<div>x</div>")
    unsubscribe = boundary.on_error(lambda _: None)
    boundary.on_error(lambda _: None)
    unsubscribe()
    unsubscribe()
    assert boundary.listener_count == 1
    boundary.close()
    assert boundary.listener_count == 0
    assert boundary.receive(_report(boundary)) is False
    with pytest.raises(RuntimeError):
        boundary.on_error(lambda _: None)


def test_iframe_markup_carries_policy_and_escaped_document():
    boundary = Boundary("<div>x</div>")
    markup = boundary.iframe_html()
    assert 'sandbox="' + " ".join(SANDBOX_POLICY) + '"' in markup
    assert 'srcdoc="&lt;!doctype html&gt;' in markup
    assert f'data-boundary="{boundary.id}"' in markup


def test_each_boundary_gets_a_fresh_identity():
    first = Boundary("export default function OldApp(){ return null }")
    second = Boundary("export default function NewApp(){ return null }")
    assert first.id != second.id
    assert "OldApp" not in second.document
