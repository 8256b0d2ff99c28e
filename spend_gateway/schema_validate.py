"""JSON Schema validation for gateway documents.

Validates permission descriptors, spend requests and policy configuration
blobs against the schemas shipped in ``spend_gateway/schemas``.

Design notes:
- Uses jsonschema Draft 2020-12.
- Fails closed: schema load errors are treated as validation failures.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema


@dataclass
class SchemaMessage:
    ok: bool
    code: str
    detail: str


SCHEMA_FILES: Dict[str, str] = {
    "permission": "permission.schema.json",
    "spend_request": "spend_request.schema.json",
    "allowed_target_config": "allowed_target_config.schema.json",
}

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=None)
def _get_validator(schema_name: str, schemas_dir: Path = SCHEMAS_DIR) -> jsonschema.Draft202012Validator:
    schema_file = SCHEMA_FILES.get(schema_name)
    if not schema_file:
        raise ValueError(f"Unknown schema: {schema_name}")
    schema = _load_json(schemas_dir / schema_file)
    jsonschema.Draft202012Validator.check_schema(schema)
    return jsonschema.Draft202012Validator(schema)


def validate_instance(
    obj: Any,
    *,
    schema_name: str,
    schemas_dir: Path = SCHEMAS_DIR,
) -> Tuple[bool, List[SchemaMessage]]:
    try:
        validator = _get_validator(schema_name, schemas_dir)
    except FileNotFoundError as e:
        return False, [SchemaMessage(False, "SCHEMA_MISSING", str(e))]
    except (ValueError, jsonschema.SchemaError) as e:
        return False, [SchemaMessage(False, "SCHEMA_INVALID", str(e))]

    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, [SchemaMessage(True, "SCHEMA_OK", f"{schema_name}: valid")]

    msgs: List[SchemaMessage] = []
    for e in errors[:50]:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{schema_name} {loc}: {e.message}"))
    if len(errors) > 50:
        msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{schema_name}: {len(errors) - 50} more errors..."))
    return False, msgs


def _detect_schema_name(path: Path) -> Optional[str]:
    name = path.name.lower()
    if not name.endswith(".json"):
        return None
    if name.startswith("permission"):
        return "permission"
    if name.startswith("spend_request") or name.startswith("request"):
        return "spend_request"
    if "policy" in name or "allowed_target" in name:
        return "allowed_target_config"
    return None


def validate_file(path: Path, *, schema_name: Optional[str] = None) -> Tuple[bool, List[SchemaMessage]]:
    schema_name = schema_name or _detect_schema_name(path)
    if not schema_name:
        return False, [SchemaMessage(False, "SCHEMA_UNDETECTED", f"Cannot infer schema for {path.name}. Use --schema.")]
    try:
        obj = _load_json(path)
    except (OSError, ValueError) as e:
        return False, [SchemaMessage(False, "JSON_PARSE_ERROR", f"{path.name}: {e}")]
    return validate_instance(obj, schema_name=schema_name)
