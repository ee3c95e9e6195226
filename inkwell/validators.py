from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
from pydantic import TypeAdapter, ValidationError

from inkwell.schema import OUTPUT_ADAPTER, UIElement, UIOutput, coerce_element, coerce_output, to_record

log = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "ui_schema.json"

_ELEMENT_ADAPTER: TypeAdapter = TypeAdapter(UIElement)
_validator: Optional[jsonschema.Draft202012Validator] = None


def _schema_validator() -> jsonschema.Draft202012Validator:
    global _validator
    if _validator is None:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        _validator = jsonschema.Draft202012Validator(schema)
    return _validator


def _recover_types(node: Any) -> Any:
    # apply the renderer's type inference so only unrecoverable drift is reported
    node = coerce_element(node)
    if isinstance(node, dict) and isinstance(node.get("children"), list):
        return {**node, "children": [_recover_types(child) for child in node["children"]]}
    return node


def _loc(parts: Any) -> str:
    return ".".join(str(p) for p in parts) or "(root)"


def collect_errors(payload: Any) -> List[Dict[str, str]]:
    """
    Return a list of {"path": "...", "message": "..."} error dicts for one
    generated output. A bare UI tree is accepted the same way the renderer
    accepts it; an empty list means the output renders without drift.
    """
    try:
        output = coerce_output(payload)
    except ValueError as e:
        return [{"path": "(root)", "message": str(e)}]

    record = to_record(output)
    if isinstance(output, UIOutput):
        record["ui"]["root"] = _recover_types(record["ui"]["root"])

    errors: List[Dict[str, str]] = []
    try:
        OUTPUT_ADAPTER.validate_python(record)
        if isinstance(output, UIOutput):
            _ELEMENT_ADAPTER.validate_python(record["ui"]["root"])
    except ValidationError as ve:
        for e in ve.errors():
            errors.append({"path": _loc(e.get("loc", [])), "message": e.get("msg", "invalid")})

    for err in _schema_validator().iter_errors(record):
        errors.append({"path": _loc(err.path), "message": str(err.message)})

    if errors:
        log.debug("validators: %d problem(s) in generated output", len(errors))
    return errors
