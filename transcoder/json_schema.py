"""Convert generic JSON Schema into the Cloud Code (GenAI) schema dialect.

The dialect has an enumerated upper-case ``type``, no ``null`` type (it uses
``nullable: true`` instead), and no ``additionalProperties``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from .errors import SchemaConflictError


class SchemaType(str, Enum):
    TYPE_UNSPECIFIED = "TYPE_UNSPECIFIED"
    STRING = "STRING"
    NUMBER = "NUMBER"
    INTEGER = "INTEGER"
    BOOLEAN = "BOOLEAN"
    ARRAY = "ARRAY"
    OBJECT = "OBJECT"
    NULL = "NULL"


_SCHEMA_FIELDS = ("items",)
_LIST_SCHEMA_FIELDS = ("anyOf",)
_DICT_SCHEMA_FIELDS = ("properties",)
_DROPPED_FIELDS = ("additionalProperties",)


def _enum_type(value: Any) -> str:
    upper = str(value).upper()
    if upper in SchemaType.__members__:
        return upper
    return SchemaType.TYPE_UNSPECIFIED.value


def _is_null_schema(schema: Any) -> bool:
    return isinstance(schema, dict) and schema.get("type") == "null"


def _flatten_type_list(types: List[Any], out: Dict[str, Any]) -> None:
    if "null" in types:
        out["nullable"] = True
    remaining = [t for t in types if t != "null"]
    if not remaining:
        raise SchemaConflictError("type: null can not be the only possible type for the field.")
    if len(remaining) == 1:
        out["type"] = _enum_type(remaining[0])
    else:
        out["anyOf"] = [{"type": _enum_type(t)} for t in remaining]


def _check_conflict(schema: Dict[str, Any]) -> None:
    if schema.get("type") is not None and schema.get("anyOf") is not None:
        raise SchemaConflictError("type and anyOf cannot be both populated.")


def process_json_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a converted copy of ``schema``; the input is not modified.

    Raises SchemaConflictError when a fragment has both ``type`` and ``anyOf``
    or when ``null`` is the only type a field may take.
    """
    out: Dict[str, Any] = {}
    _check_conflict(schema)

    # {anyOf: [{type: null}, X]} is just a nullable X
    any_of = schema.get("anyOf")
    if isinstance(any_of, list) and len(any_of) == 2:
        first_null, second_null = _is_null_schema(any_of[0]), _is_null_schema(any_of[1])
        if first_null != second_null:
            out["nullable"] = True
            schema = any_of[1] if first_null else any_of[0]
            if not isinstance(schema, dict):
                schema = {}
            _check_conflict(schema)

    if isinstance(schema.get("type"), list):
        _flatten_type_list(schema["type"], out)

    for name, value in schema.items():
        if value is None:
            continue
        if name == "type":
            if isinstance(value, list):
                continue
            if value == "null":
                raise SchemaConflictError("type: null can not be the only possible type for the field.")
            out["type"] = _enum_type(value)
        elif name in _SCHEMA_FIELDS:
            if isinstance(value, list):
                out[name] = [process_json_schema(v) if isinstance(v, dict) else v for v in value]
            elif isinstance(value, dict):
                out[name] = process_json_schema(value)
            else:
                out[name] = value
        elif name in _LIST_SCHEMA_FIELDS:
            items: List[Any] = []
            for item in value:
                if _is_null_schema(item):
                    out["nullable"] = True
                    continue
                items.append(process_json_schema(item) if isinstance(item, dict) else item)
            out[name] = items
        elif name in _DICT_SCHEMA_FIELDS:
            out[name] = {
                key: process_json_schema(sub) if isinstance(sub, dict) else sub
                for key, sub in (value or {}).items()
            }
        elif name in _DROPPED_FIELDS:
            continue
        else:
            out[name] = value
    return out


def _convert_slot(declaration: Dict[str, Any], slot: str, raw_slot: str) -> None:
    schema = declaration.get(slot)
    if not isinstance(schema, dict):
        return
    if "$schema" in schema:
        # Callers that declare a JSON Schema dialect get it forwarded untouched
        if not declaration.get(raw_slot):
            declaration[raw_slot] = declaration.pop(slot)
        return
    declaration[slot] = process_json_schema(schema)


def transform_tool(tool: Dict[str, Any]) -> Dict[str, Any]:
    """Convert every function declaration's ``parameters``/``response`` in place."""
    for declaration in tool.get("functionDeclarations") or []:
        _convert_slot(declaration, "parameters", "parametersJsonSchema")
        _convert_slot(declaration, "response", "responseJsonSchema")
    return tool
