import json
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field

from inkwell import history, llm_client, ratelimit
from inkwell.assets import placeholder_svg
from inkwell.dispatch import render_output
from inkwell.llm_client import GenerationError
from inkwell.llm_prompts import TEMPLATES
from inkwell.render import render_page_html
from inkwell.sandbox import build_document, csp_sandbox_header
from inkwell.schema import CodeOutput, UIOutput, coerce_output, to_response
from inkwell.sketch import DEFAULT_COLOR, DEFAULT_WIDTH, load_overlay, render_strokes
from inkwell.validators import collect_errors

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"
try:
    RECENT_MAX = int(os.getenv("RECENT_MAX", "50"))
except Exception:
    RECENT_MAX = 50

app = FastAPI(title="inkwell")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class GenerateRequest(BaseModel):
    prompt: Optional[str] = Field(default=None, description="Natural-language description of the UI")
    template: Optional[str] = Field(default=None, description="Optional named prompt template")


class RenderRequest(BaseModel):
    ui: Any = None


class PreviewRequest(BaseModel):
    code: Optional[str] = None


class SketchRequest(BaseModel):
    width: int
    height: int
    strokes: List[Any] = Field(default_factory=list)
    color: str = DEFAULT_COLOR
    strokeWidth: float = DEFAULT_WIDTH


class ValidateRequest(BaseModel):
    output: Any = None


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "anon"


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        wait_seconds = max(0, reset_ts - int(time.time()))
        headers["Retry-After"] = str(wait_seconds)
    return headers


def _rate_limit_payload(reset_ts: int) -> Dict[str, Any]:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return {
        "error": "rate limit exceeded",
        "reset": reset_ts,
        "retry_after_seconds": wait_seconds,
        "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
    }


def _safe_rate_check(bucket: str, key: str) -> Tuple[bool, int, int]:
    """Return (allowed, remaining, reset_ts); fails open if the limiter itself breaks."""
    try:
        return ratelimit.check_and_increment(bucket, key)
    except Exception:
        log.exception("rate_limit: limiter failed; allowing request")
        return True, 9999, int(time.time()) + 60


def _error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra}, headers=headers)


def _generation_failure(event: str, e: GenerationError, headers: Dict[str, str]) -> JSONResponse:
    log.warning("%s: generation failed reason=%s: %s", event, e.reason, e)
    status_code = 503 if e.reason == "not_configured" else 502
    return _error(status_code, str(e), headers, reason=e.reason)


def _success(prompt: str, output: Any, headers: Dict[str, str]) -> JSONResponse:
    record_id = history.record(prompt, output)
    if record_id:
        headers = {**headers, "X-Generation-Id": record_id}
    return JSONResponse(to_response(output), headers=headers)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    return llm_client.status()


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return llm_client.probe()


@app.post("/generate")
def generate_endpoint(req: GenerateRequest, request: Request):
    prompt = (req.prompt or "").strip()
    if not prompt:
        return _error(400, "Missing prompt")
    if req.template and req.template not in TEMPLATES:
        return _error(400, f"Unknown template '{req.template}'", templates=sorted(TEMPLATES))

    allowed, remaining, reset_ts = _safe_rate_check("gen", _client_key(request))
    log.info("rate_limit check allowed=%s remaining=%s", allowed, remaining)
    if not allowed:
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    headers = _rate_limit_headers(remaining, reset_ts)

    try:
        output = llm_client.generate(prompt, template=req.template)
    except GenerationError as e:
        return _generation_failure("generate", e, headers)
    except Exception:
        log.exception("generate: unexpected failure")
        return _error(500, "Internal error", headers)
    log.info("generate: kind=%s prompt_len=%d", output.kind, len(prompt))
    return _success(prompt, output, headers)


def _parse_previous_ui(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None or not raw.strip() or raw.strip() == "null":
        return None
    value = coerce_output(json.loads(raw))
    if not isinstance(value, UIOutput):
        raise ValueError("previousUI must be a UI schema")
    return value.ui.model_dump()


@app.post("/reprompt")
async def reprompt_endpoint(
    request: Request,
    prompt: str = Form(""),
    previousUI: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
):
    prompt = (prompt or "").strip()
    try:
        previous = _parse_previous_ui(previousUI)
    except ValueError as e:
        return _error(400, f"Invalid previousUI: {e}")

    overlay: Optional[bytes] = None
    if image is not None:
        raw = await image.read()
        if raw:
            try:
                overlay = load_overlay(raw)
            except ValueError as e:
                return _error(400, f"Invalid image: {e}")
    if not prompt and overlay is None:
        return _error(400, "Missing prompt or image")

    allowed, remaining, reset_ts = _safe_rate_check("reprompt", _client_key(request))
    if not allowed:
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    headers = _rate_limit_headers(remaining, reset_ts)

    try:
        output = llm_client.reprompt(prompt, previous, overlay)
    except GenerationError as e:
        return _generation_failure("reprompt", e, headers)
    except Exception:
        log.exception("reprompt: unexpected failure")
        return _error(500, "Internal error", headers)
    log.info("reprompt: kind=%s has_image=%s has_previous=%s", output.kind, overlay is not None, previous is not None)
    return _success(prompt, output, headers)


@app.get("/images/{name}")
def image_placeholder(name: str) -> Response:
    return Response(
        content=placeholder_svg(name),
        media_type="image/svg+xml",
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )


@app.get("/generations/recent")
def recent_generations(limit: int = 2) -> Dict[str, Any]:
    limit = max(1, min(int(limit), RECENT_MAX))
    return {"generations": history.recent(limit)}


def _boundary_headers() -> Dict[str, str]:
    return {"Content-Security-Policy": csp_sandbox_header()}


@app.get("/generations/{record_id}/preview", response_class=HTMLResponse)
def generation_preview(record_id: str):
    entry = history.get(record_id)
    if entry is None:
        return _error(404, "Generation not found")
    try:
        output = coerce_output(entry.get("output"))
    except ValueError:
        log.warning("generations.preview: stored output unreadable id=%s", record_id)
        return _error(404, "Generation not found")
    headers = _boundary_headers() if isinstance(output, CodeOutput) else None
    return HTMLResponse(render_output(output), headers=headers)


@app.post("/render", response_class=HTMLResponse)
def render_endpoint(req: RenderRequest):
    if req.ui is None:
        return HTMLResponse(render_page_html(None))
    try:
        output = coerce_output(req.ui)
    except ValueError as e:
        return _error(400, f"Invalid ui: {e}")
    if isinstance(output, CodeOutput):
        return _error(400, "Code output must be rendered through /preview")
    return HTMLResponse(render_page_html(output.ui))


@app.post("/preview", response_class=HTMLResponse)
def preview_endpoint(req: PreviewRequest):
    return HTMLResponse(build_document(req.code), headers=_boundary_headers())


@app.post("/sketch/render")
def sketch_render(req: SketchRequest) -> Response:
    try:
        png = render_strokes(req.width, req.height, req.strokes, color=req.color, stroke_width=req.strokeWidth)
    except (ValueError, TypeError, KeyError) as e:
        return _error(400, f"Invalid sketch: {e}")
    return Response(content=png, media_type="image/png")


@app.post("/validate")
def validate_endpoint(req: ValidateRequest):
    """
    Validate a generated output against the UI models and the shipped JSON schema.
    Returns 200 and {"detail":{"valid":true}} on success,
            422 and {"detail":{"valid":false,"errors":[...]}} on failure.
    """
    errors = collect_errors(req.output)
    detail: Dict[str, Any] = {"valid": not errors}
    if errors:
        detail["errors"] = errors
        return JSONResponse(status_code=422, content={"detail": detail})
    return {"detail": detail}
