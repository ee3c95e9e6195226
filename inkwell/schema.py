from __future__ import annotations

import json
import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

log = logging.getLogger(__name__)

ELEMENT_TYPES = ("container", "text", "button", "image", "input", "card")

ElementType = Literal["container", "text", "button", "image", "input", "card"]
StyleValue = Union[str, int, float]


class UIElement(BaseModel):
    """Strict shape of one node; only used to report drift, never to gate rendering."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: ElementType
    className: Optional[str] = None
    style: Optional[Dict[str, StyleValue]] = None
    text: Optional[str] = None
    href: Optional[str] = None
    placeholder: Optional[str] = None
    src: Optional[str] = None
    children: Optional[List["UIElement"]] = None


UIElement.model_rebuild()


class GeneratedUISchema(BaseModel):
    # Loose: the renderer recovers from drift node by node
    root: Dict[str, Any]


class UIOutput(BaseModel):
    kind: Literal["ui"] = "ui"
    ui: GeneratedUISchema


class CodeOutput(BaseModel):
    kind: Literal["code"] = "code"
    code: str


GeneratedOutput = Annotated[Union[UIOutput, CodeOutput], Field(discriminator="kind")]
OUTPUT_ADAPTER: TypeAdapter = TypeAdapter(GeneratedOutput)


def coerce_element(node: Any) -> Any:
    """Infer a missing ``type`` from the fields that are present.

    Rule order is part of the contract:
      1. string ``text`` plus ``href``  -> text (rendered as a link)
      2. string ``text``                -> text
      3. ``children`` present           -> container
      4. otherwise the type stays unset and the node renders nothing
    Returns a new dict when a type was inferred; the input is not mutated.
    """
    if not isinstance(node, Mapping) or node.get("type"):
        return node
    if isinstance(node.get("text"), str) and node.get("href"):
        return {**node, "type": "text"}
    if isinstance(node.get("text"), str):
        return {**node, "type": "text"}
    if node.get("children") is not None:
        return {**node, "type": "container"}
    return node


_HYPHEN_RE = re.compile(r"-+([a-zA-Z0-9])")


def camel_case(name: str) -> str:
    # CSS custom properties are case sensitive and keep their dashes
    if name.startswith("--") or "-" not in name:
        return name
    out = _HYPHEN_RE.sub(lambda m: m.group(1).upper(), name.lstrip("-"))
    if name.startswith("-"):
        # vendor prefix: -webkit-transition -> WebkitTransition
        return out[:1].upper() + out[1:]
    return out


def normalize_style(style: Any) -> Optional[Dict[str, Any]]:
    """Canonicalize style keys to camelCase; non-mapping styles are dropped."""
    if not isinstance(style, Mapping):
        if style is not None:
            log.debug("schema.normalize_style: ignoring non-mapping style %r", type(style).__name__)
        return None
    out: Dict[str, Any] = {}
    for key, value in style.items():
        if not isinstance(key, str):
            continue
        out[camel_case(key.strip())] = value
    return out


def _looks_like_element(raw: Mapping[str, Any]) -> bool:
    return any(k in raw for k in ("type", "text", "children"))


def _schema_from(value: Any) -> GeneratedUISchema:
    if isinstance(value, Mapping) and isinstance(value.get("root"), Mapping):
        return GeneratedUISchema(root=dict(value["root"]))
    if isinstance(value, Mapping):
        return GeneratedUISchema(root=dict(value))
    if isinstance(value, list):
        return GeneratedUISchema(root={"type": "container", "children": list(value)})
    raise ValueError("ui payload must be an object or a list of elements")


def coerce_output(raw: Any) -> Union[UIOutput, CodeOutput]:
    """Map whatever crossed the generation boundary onto a tagged output.

    A bare UI tree (no ``kind``) is accepted as ``{"kind": "ui"}`` so older
    payloads and persisted records keep rendering.
    """
    if isinstance(raw, (UIOutput, CodeOutput)):
        return raw
    if isinstance(raw, list):
        return UIOutput(ui=_schema_from(raw))
    if not isinstance(raw, Mapping):
        raise ValueError(f"unsupported output type: {type(raw).__name__}")

    kind = raw.get("kind")
    if kind == "ui" and raw.get("ui") is not None:
        return UIOutput(ui=_schema_from(raw["ui"]))
    if kind == "code" and isinstance(raw.get("code"), str):
        return CodeOutput(code=raw["code"])
    if isinstance(raw.get("root"), Mapping):
        return UIOutput(ui=_schema_from(raw))
    if raw.get("ui") is not None:
        return UIOutput(ui=_schema_from(raw["ui"]))
    if isinstance(raw.get("code"), str):
        code = raw["code"]
        trimmed = code.strip()
        # Models sometimes return a schema inside the code field
        if trimmed.startswith("{") or trimmed.startswith("["):
            try:
                return coerce_output(json.loads(trimmed))
            except ValueError:
                log.debug("schema.coerce_output: code looked like JSON but did not parse")
        return CodeOutput(code=code)
    if _looks_like_element(raw):
        return UIOutput(ui=GeneratedUISchema(root=dict(raw)))
    raise ValueError("output is neither a UI schema nor code")


def to_response(output: Union[UIOutput, CodeOutput]) -> Dict[str, Any]:
    if isinstance(output, CodeOutput):
        return {"code": output.code}
    return {"ui": output.ui.model_dump()}


def to_record(output: Union[UIOutput, CodeOutput]) -> Dict[str, Any]:
    return output.model_dump()
