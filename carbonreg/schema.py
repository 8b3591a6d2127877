"""JSON Schema validation for registry input documents.

Schemas ship inside the package under ``carbonreg/schemas`` and may refer to
each other by ``$id``; every schema found there is loaded into one
``referencing`` registry so cross-file ``$ref`` resolves offline.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"

REPLAY_SCHEMA = "replay.schema.json"
ATTRIBUTES_SCHEMA = "credit-attributes.schema.json"


def load_schema(name: str) -> Any:
    with open(SCHEMAS_DIR / name, encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of every packaged schema, keyed by its ``$id``."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = load_schema(schema_path.name)
        schema_id = schema.get("$id") or f"https://schemas.carbonreg.org/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


def schema_validator(name: str) -> Draft202012Validator:
    return Draft202012Validator(load_schema(name), registry=_schema_registry())


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """
    Validate an object against a packaged schema.

    Returns:
        Error messages prefixed with the JSON path of the offending value,
        empty if valid
    """
    validator = schema_validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
