import io
import json

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from inkwell import history, llm_client, ratelimit
from inkwell.llm_client import GenerationError
from inkwell.main import app
from inkwell.schema import CodeOutput

client = TestClient(app)


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    monkeypatch.setattr(history, "_HISTORY_FILE", tmp_path / "generations.json")
    monkeypatch.setattr(history, "_REDIS_CLIENT", None)
    monkeypatch.setattr(ratelimit, "REDIS_URL", "")
    ratelimit._reset()
    for name in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY", "OLLAMA_BASE_URL"):
        monkeypatch.setattr(llm_client, name, "")
    monkeypatch.setattr(llm_client, "ALLOW_OFFLINE_GENERATION", False)
    yield
    ratelimit._reset()


@pytest.fixture
def offline(monkeypatch):
    monkeypatch.setattr(llm_client, "ALLOW_OFFLINE_GENERATION", True)


def _png_bytes():
    buf = io.BytesIO()
    Image.new("RGBA", (4, 4), (0, 0, 0, 255)).save(buf, format="PNG")
    return buf.getvalue()


def _walk(node):
    yield node
    for child in node.get("children") or []:
        yield from _walk(child)


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": "   "}])
def test_generate_requires_prompt(body):
    r = client.post("/generate", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": "Missing prompt"}


def test_generate_rejects_unknown_template():
    r = client.post("/generate", json={"prompt": "x", "template": "spaceship"})
    assert r.status_code == 400
    assert "dashboard" in r.json()["templates"]


def test_generate_not_configured():
    r = client.post("/generate", json={"prompt": "a login form"})
    assert r.status_code == 503
    body = r.json()
    assert body["reason"] == "not_configured"
    assert "OPENAI_API_KEY" in body["error"]


def test_generate_provider_failure_has_reason(monkeypatch):
    def failing(prompt, template=None):
        raise GenerationError("quota_exceeded", "All providers failed")

    monkeypatch.setattr(llm_client, "generate", failing)
    r = client.post("/generate", json={"prompt": "anything"})
    assert r.status_code == 502
    assert r.json()["reason"] == "quota_exceeded"


def test_generate_unexpected_failure_is_internal(monkeypatch):
    def broken(prompt, template=None):
        raise RuntimeError("bug")

    monkeypatch.setattr(llm_client, "generate", broken)
    r = client.post("/generate", json={"prompt": "anything"})
    assert r.status_code == 500
    assert r.json() == {"error": "Internal error"}


def test_offline_form_generation(offline):
    r = client.post("/generate", json={"prompt": "a signup form please"})
    assert r.status_code == 200
    nodes = list(_walk(r.json()["ui"]["root"]))
    assert len([n for n in nodes if n.get("type") == "input"]) == 2
    buttons = [n for n in nodes if n.get("type") == "button"]
    assert [b["text"] for b in buttons] == ["Submit"]
    assert r.headers["X-Generation-Id"]
    assert "X-RateLimit-Remaining" in r.headers


def test_code_output_wire_shape(monkeypatch):
    monkeypatch.setattr(llm_client, "generate", lambda prompt, template=None: CodeOutput(code="<div>hi</div>"))
    r = client.post("/generate", json={"prompt": "raw html"})
    assert r.status_code == 200
    assert r.json() == {"code": "<div>hi</div>"}


def test_reprompt_with_emphasis(offline):
    previous = json.dumps({"root": {"type": "text", "text": "old"}})
    r = client.post(
        "/reprompt",
        data={"prompt": "make the buttons bigger", "previousUI": previous},
        files={"image": ("sketch.png", _png_bytes(), "image/png")},
    )
    assert r.status_code == 200
    texts = [n.get("text") for n in _walk(r.json()["ui"]["root"])]
    assert "Primary (Large)" in texts
    assert "Secondary (Large)" in texts


def test_reprompt_image_only(offline):
    r = client.post("/reprompt", files={"image": ("sketch.png", _png_bytes(), "image/png")})
    assert r.status_code == 200
    texts = [n.get("text") for n in _walk(r.json()["ui"]["root"])]
    assert "Primary" in texts


def test_reprompt_rejects_bad_previous_ui(offline):
    r = client.post("/reprompt", data={"prompt": "x", "previousUI": "{not json"})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Invalid previousUI")

    r = client.post("/reprompt", data={"prompt": "x", "previousUI": json.dumps({"code": "<div/>"})})
    assert r.status_code == 400


def test_reprompt_rejects_bad_image(offline):
    r = client.post(
        "/reprompt",
        data={"prompt": "x"},
        files={"image": ("sketch.png", b"not a png", "image/png")},
    )
    assert r.status_code == 400
    assert r.json()["error"].startswith("Invalid image")


def test_reprompt_requires_prompt_or_image(offline):
    r = client.post("/reprompt", data={"prompt": "  "})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing prompt or image"}


def test_reprompt_not_configured():
    r = client.post("/reprompt", data={"prompt": "tweak"})
    assert r.status_code == 503
    assert r.json()["reason"] == "not_configured"


def test_placeholder_image():
    r = client.get("/images/hero-banner.png")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("image/svg+xml")
    assert r.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert "hero-banner" in r.text
    assert "<svg" in r.text


def test_recent_generations_newest_first(offline):
    client.post("/generate", json={"prompt": "first form"})
    client.post("/generate", json={"prompt": "second list"})
    r = client.get("/generations/recent", params={"limit": 2})
    assert r.status_code == 200
    prompts = [g["prompt"] for g in r.json()["generations"]]
    assert prompts == ["second list", "first form"]


def test_persistence_failure_does_not_fail_generation(offline, monkeypatch):
    def disk_full(entry):
        raise OSError("disk full")

    monkeypatch.setattr(history, "_file_record", disk_full)
    r = client.post("/generate", json={"prompt": "a form"})
    assert r.status_code == 200
    assert "X-Generation-Id" not in r.headers
    assert "ui" in r.json()


def test_generation_preview(monkeypatch):
    monkeypatch.setattr(llm_client, "generate", lambda prompt, template=None: CodeOutput(code="<div>hi</div>"))
    rid = client.post("/generate", json={"prompt": "html"}).headers["X-Generation-Id"]
    r = client.get(f"/generations/{rid}/preview")
    assert r.status_code == 200
    assert "<div>hi</div>" in r.text
    assert r.headers["content-security-policy"].startswith("sandbox ")


def test_generation_preview_missing():
    r = client.get("/generations/does-not-exist/preview")
    assert r.status_code == 404
    assert r.json() == {"error": "Generation not found"}


def test_render_ui_page():
    r = client.post("/render", json={"ui": {"root": {"type": "button", "id": "buy", "text": "Buy"}}})
    assert r.status_code == 200
    assert 'data-action-id="buy"' in r.text

    r = client.post("/render", json={})
    assert "Nothing generated yet." in r.text

    r = client.post("/render", json={"ui": {"code": "<div/>"}})
    assert r.status_code == 400


@pytest.mark.parametrize("bad_type", [["button"], {"k": 1}])
def test_render_survives_non_string_types(bad_type):
    r = client.post("/render", json={"ui": {"root": {"type": "container", "children": [{"type": bad_type}]}}})
    assert r.status_code == 200

    r = client.post("/render", json={"ui": {"root": {"type": bad_type}}})
    assert r.status_code == 200


def test_preview_document_carries_sandbox_policy():
    r = client.post("/preview", json={"code": "export default function App(){ return <p>hi</p> }"})
    assert r.status_code == 200
    csp = r.headers["content-security-policy"]
    assert "allow-scripts" in csp
    assert "allow-top-navigation" not in csp
    assert "Babel.transform" in r.text

    r = client.post("/preview", json={})
    assert "No code yet." in r.text


def test_sketch_render():
    r = client.post(
        "/sketch/render",
        json={"width": 32, "height": 16, "strokes": [[[1, 1], [20, 10]]], "strokeWidth": 4},
    )
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")

    r = client.post("/sketch/render", json={"width": 0, "height": 16})
    assert r.status_code == 400

    r = client.post("/sketch/render", json={"width": 8, "height": 8, "strokes": [[["a", "b"]]]})
    assert r.status_code == 400


def test_sketch_render_clamps_overflowing_width():
    # 1e400 overflows to inf when the body is decoded
    body = '{"width": 20, "height": 20, "strokes": [{"points": [[0, 0], [5, 5]], "width": 1e400}]}'
    r = client.post("/sketch/render", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 200
    assert r.content.startswith(b"\x89PNG")


def test_validate_endpoint():
    ok = {"kind": "ui", "ui": {"root": {"type": "container", "children": [{"text": "inferred"}]}}}
    r = client.post("/validate", json={"output": ok})
    assert r.status_code == 200
    assert r.json() == {"detail": {"valid": True}}

    bad = {"kind": "ui", "ui": {"root": {"type": "spaceship"}}}
    r = client.post("/validate", json={"output": bad})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["valid"] is False
    assert detail["errors"]


def test_rate_limit(offline, monkeypatch):
    monkeypatch.setattr(ratelimit, "MAX_REQUESTS", 1)
    assert client.post("/generate", json={"prompt": "a form"}).status_code == 200
    r = client.post("/generate", json={"prompt": "a form"})
    assert r.status_code == 429
    assert "Retry-After" in r.headers
    assert r.json()["error"] == "rate limit exceeded"


def test_rate_limiter_failure_fails_open(offline, monkeypatch):
    def broken(bucket, key, now=None):
        raise RuntimeError("limiter down")

    monkeypatch.setattr(ratelimit, "check_and_increment", broken)
    assert client.post("/generate", json={"prompt": "a form"}).status_code == 200


def test_llm_status():
    r = client.get("/llm/status")
    assert r.status_code == 200
    assert r.json()["has_token"] is False
