"""Form schema document validation.

The snapshot builder treats validation as an opaque collaborator with a
``validate(document) -> list[str]`` contract (empty list means valid).
The default implementation checks the document structure with a JSON
Schema and rejects duplicate data keys.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Protocol

from jsonschema import Draft7Validator

from app.services.form_schema import parse_schema, field_paths


FORM_DOCUMENT_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["components"],
    "properties": {
        "display": {"type": "string", "enum": ["form", "wizard", "pdf"]},
        "components": {"$ref": "#/definitions/components"},
    },
    "definitions": {
        "components": {
            "type": "array",
            "items": {"$ref": "#/definitions/component"},
        },
        "component": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"type": "string", "minLength": 1},
                "key": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_\\-]*$"},
                "label": {"type": "string"},
                "input": {"type": "boolean"},
                "components": {"$ref": "#/definitions/components"},
                "columns": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {"components": {"$ref": "#/definitions/components"}},
                    },
                },
                "rows": {"type": "array"},
                "values": {
                    "type": "array",
                    "items": {"type": "object", "required": ["value"]},
                },
                "questions": {
                    "type": "array",
                    "items": {"type": "object", "required": ["value"]},
                },
            },
            "if": {"properties": {"input": {"const": True}}, "required": ["input"]},
            "then": {"required": ["key"]},
        },
    },
}


class SchemaValidator(Protocol):
    def validate(self, document: Any) -> list[str]: ...


class FormSchemaValidator:
    """Default validator: structural JSON Schema check plus duplicate keys."""

    def __init__(self, schema: dict[str, Any] | None = None):
        self._validator = Draft7Validator(schema or FORM_DOCUMENT_SCHEMA)

    def validate(self, document: Any) -> list[str]:
        errors = sorted(self._validator.iter_errors(document), key=lambda e: [str(p) for p in e.path])
        messages = [
            f"{'.'.join(str(x) for x in err.path) or '<root>'}: {err.message}"
            for err in errors
        ]
        if messages:
            return messages

        counts = Counter(field_paths(parse_schema(document), dedupe=False, grid_children=True))
        return [f"{path}: duplicate field key" for path, n in counts.items() if n > 1]


def validate(document: Any) -> list[str]:
    return FormSchemaValidator().validate(document)
