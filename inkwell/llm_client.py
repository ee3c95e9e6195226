from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from inkwell import fallback
from inkwell.llm_parsing import parse_generation_text
from inkwell.llm_prompts import (
    SKETCH_DESCRIBER_DEFAULT,
    SKETCH_DESCRIBER_SYSTEM,
    build_refine_instruction,
    build_system_prompt,
    closing_instruction,
    expand_template,
)
from inkwell.schema import GeneratedOutput, GeneratedUISchema, UIOutput

log = logging.getLogger(__name__)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()
OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest").strip()
ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-pro").strip()

# Sketch describer (local Ollama vision model); disabled unless a base URL is set
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "").strip().rstrip("/")
SKETCH_MODEL = os.getenv("SKETCH_MODEL", "llava:latest").strip()

OUTPUT_MODE = os.getenv("OUTPUT_MODE", "ui").strip().lower()
if OUTPUT_MODE not in {"ui", "code"}:
    OUTPUT_MODE = "ui"
ALLOW_OFFLINE_GENERATION = os.getenv("ALLOW_OFFLINE_GENERATION", "0").lower() in {"1", "true", "yes", "on"}

try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "60"))
except Exception:
    LLM_TIMEOUT_SECS = 60
try:
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2048"))
except Exception:
    LLM_MAX_TOKENS = 2048

REASONS = ("not_configured", "unreachable", "quota_exceeded", "invalid_credentials", "bad_output")
# When every provider fails, the most actionable reason is reported
_REASON_PRIORITY = {"invalid_credentials": 4, "quota_exceeded": 3, "unreachable": 2, "bad_output": 1}


class GenerationError(Exception):
    """Generation failed for a reason the shell can show to the user."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason if reason in REASONS else "unreachable"


@dataclass
class _Request:
    system: str
    prompt: str
    closing: str
    mode: str
    image: Optional[bytes] = None

    @property
    def image_b64(self) -> Optional[str]:
        if not self.image:
            return None
        return base64.b64encode(self.image).decode("ascii")


def _gemini_endpoint() -> str:
    return f"https://generativelanguage.googleapis.com/v1beta/models/{GEMINI_MODEL}:generateContent"


def _providers() -> List[str]:
    providers: List[str] = []
    if OPENAI_API_KEY:
        providers.append("openai")
    if ANTHROPIC_API_KEY:
        providers.append("anthropic")
    if GEMINI_API_KEY:
        providers.append("gemini")
    return providers


def _reason_for(status_code: int, body: str) -> str:
    if status_code in (401, 403):
        return "invalid_credentials"
    if status_code == 429 or "quota" in body.lower():
        return "quota_exceeded"
    return "unreachable"


def _post(provider: str, url: str, **kwargs: Any) -> Dict[str, Any]:
    try:
        resp = requests.post(url, timeout=LLM_TIMEOUT_SECS, **kwargs)
    except requests.RequestException as e:
        log.warning("llm %s request error: %r", provider, e)
        raise GenerationError("unreachable", f"{provider} is unreachable") from e
    if resp.status_code != 200:
        try:
            msg = resp.text[:400]
        except Exception:
            msg = str(resp.status_code)
        log.warning("llm %s HTTP %s: %s", provider, resp.status_code, msg)
        raise GenerationError(_reason_for(resp.status_code, msg), f"{provider} returned HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise GenerationError("bad_output", f"{provider} returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise GenerationError("bad_output", f"{provider} returned an unexpected body")
    return data


def _call_openai(req: _Request) -> str:
    content: Any = req.prompt
    if req.image_b64:
        content = [
            {"type": "text", "text": req.prompt},
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{req.image_b64}"}},
        ]
    body: Dict[str, Any] = {
        "model": OPENAI_MODEL,
        "max_tokens": LLM_MAX_TOKENS,
        "messages": [
            {"role": "system", "content": req.system},
            {"role": "user", "content": content},
            {"role": "user", "content": req.closing},
        ],
    }
    if req.mode == "ui":
        body["response_format"] = {"type": "json_object"}
    headers = {"Authorization": f"Bearer {OPENAI_API_KEY}", "Content-Type": "application/json"}
    data = _post("openai", OPENAI_ENDPOINT, headers=headers, json=body)
    try:
        return data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        raise GenerationError("bad_output", "openai reply had no message content") from e


def _call_anthropic(req: _Request) -> str:
    blocks: List[Dict[str, Any]] = []
    if req.image_b64:
        blocks.append(
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": req.image_b64}}
        )
    blocks.append({"type": "text", "text": f"{req.prompt}\n{req.closing}"})
    body = {
        "model": ANTHROPIC_MODEL,
        "max_tokens": LLM_MAX_TOKENS,
        "system": req.system,
        "messages": [{"role": "user", "content": blocks}],
    }
    headers = {
        "x-api-key": ANTHROPIC_API_KEY,
        "anthropic-version": ANTHROPIC_VERSION,
        "Content-Type": "application/json",
    }
    data = _post("anthropic", ANTHROPIC_ENDPOINT, headers=headers, json=body)
    texts = [b.get("text") for b in data.get("content") or [] if isinstance(b, dict) and b.get("type") == "text"]
    return "".join(t for t in texts if isinstance(t, str))


def _extract_gemini_text(payload: Dict[str, Any]) -> Optional[str]:
    for cand in payload.get("candidates") or []:
        content = cand.get("content") or {}
        for part in content.get("parts") or []:
            txt = part.get("text")
            if isinstance(txt, str) and txt.strip():
                return txt
    return None


def _call_gemini(req: _Request) -> str:
    parts: List[Dict[str, Any]] = [{"text": f"{req.system}\n\n{req.prompt}\n{req.closing}"}]
    if req.image_b64:
        parts.append({"inlineData": {"mimeType": "image/png", "data": req.image_b64}})
    config: Dict[str, Any] = {"maxOutputTokens": LLM_MAX_TOKENS}
    if req.mode == "ui":
        config["responseMimeType"] = "application/json"
    body = {"contents": [{"parts": parts}], "generationConfig": config}
    data = _post("gemini", _gemini_endpoint(), params={"key": GEMINI_API_KEY}, json=body)
    return _extract_gemini_text(data) or ""


def _run(req: _Request, providers: List[str]) -> GeneratedOutput:
    failures: List[GenerationError] = []
    log.info("llm providers_order=%s mode=%s", providers, req.mode)
    for provider in providers:
        try:
            if provider == "openai":
                text = _call_openai(req)
            elif provider == "anthropic":
                text = _call_anthropic(req)
            else:
                text = _call_gemini(req)
            try:
                output = parse_generation_text(text)
            except ValueError as e:
                raise GenerationError("bad_output", f"{provider} reply could not be parsed: {e}") from e
        except GenerationError as e:
            log.warning("llm provider=%s failed reason=%s", provider, e.reason)
            failures.append(e)
            continue
        log.info("llm chosen provider=%s kind=%s", provider, output.kind)
        return output
    worst = max(failures, key=lambda e: _REASON_PRIORITY.get(e.reason, 0))
    raise GenerationError(worst.reason, f"All providers failed ({worst})")


def _not_configured() -> GenerationError:
    return GenerationError(
        "not_configured",
        "No AI provider configured. Set OPENAI_API_KEY, ANTHROPIC_API_KEY or GEMINI_API_KEY.",
    )


def generate(prompt: str, template: Optional[str] = None) -> GeneratedOutput:
    providers = _providers()
    if not providers:
        if ALLOW_OFFLINE_GENERATION:
            log.info("llm offline generation prompt_len=%d", len(prompt or ""))
            return fallback.generate_offline(prompt)
        raise _not_configured()
    req = _Request(
        system=build_system_prompt(OUTPUT_MODE),
        prompt=expand_template(template, prompt),
        closing=closing_instruction(OUTPUT_MODE),
        mode=OUTPUT_MODE,
    )
    return _run(req, providers)


def _previous_dict(previous_ui: Any) -> Optional[Dict[str, Any]]:
    if previous_ui is None:
        return None
    if isinstance(previous_ui, UIOutput):
        return previous_ui.ui.model_dump()
    if isinstance(previous_ui, GeneratedUISchema):
        return previous_ui.model_dump()
    if isinstance(previous_ui, dict):
        return previous_ui
    return None


def describe_sketch(image: bytes, prompt: str = "") -> str:
    """Ask the local vision model to describe a sketch; empty string when unavailable."""
    if not OLLAMA_BASE_URL or not image:
        return ""
    body = {
        "model": SKETCH_MODEL,
        "stream": False,
        "messages": [
            {"role": "system", "content": SKETCH_DESCRIBER_SYSTEM},
            {
                "role": "user",
                "content": prompt or SKETCH_DESCRIBER_DEFAULT,
                "images": [base64.b64encode(image).decode("ascii")],
            },
        ],
    }
    try:
        resp = requests.post(f"{OLLAMA_BASE_URL}/api/chat", json=body, timeout=LLM_TIMEOUT_SECS)
        resp.raise_for_status()
        content = (resp.json().get("message") or {}).get("content") or ""
    except Exception as e:
        log.warning("llm sketch describer failed: %r", e)
        return ""
    return str(content).strip()


def reprompt(prompt: str, previous_ui: Any = None, overlay_image: Optional[bytes] = None) -> GeneratedOutput:
    providers = _providers()
    if not providers:
        if ALLOW_OFFLINE_GENERATION:
            log.info("llm offline reprompt has_image=%s", bool(overlay_image))
            return fallback.reprompt_offline(prompt)
        raise _not_configured()
    note = describe_sketch(overlay_image, prompt) if overlay_image else ""
    refine = build_refine_instruction(_previous_dict(previous_ui), note)
    req = _Request(
        system=build_system_prompt(OUTPUT_MODE),
        prompt=f"{prompt}\n{refine}" if prompt else refine,
        closing=closing_instruction(OUTPUT_MODE, refine=True),
        mode=OUTPUT_MODE,
        image=overlay_image,
    )
    return _run(req, providers)


def _model_for(provider: str) -> str:
    return {"openai": OPENAI_MODEL, "anthropic": ANTHROPIC_MODEL, "gemini": GEMINI_MODEL}[provider]


def status() -> Dict[str, Any]:
    providers = _providers()
    if providers:
        return {
            "provider": providers[0],
            "model": _model_for(providers[0]),
            "has_token": True,
            "using": providers[0],
            "providers": providers,
            "mode": OUTPUT_MODE,
            "sketch_describer": bool(OLLAMA_BASE_URL),
        }
    return {
        "provider": None,
        "model": None,
        "has_token": False,
        "using": "offline" if ALLOW_OFFLINE_GENERATION else None,
        "providers": [],
        "mode": OUTPUT_MODE,
        "sketch_describer": bool(OLLAMA_BASE_URL),
    }


def probe() -> Dict[str, Any]:
    providers = _providers()
    if providers:
        return {"ok": True, "using": providers[0]}
    return {"ok": ALLOW_OFFLINE_GENERATION, "using": "offline" if ALLOW_OFFLINE_GENERATION else None}
