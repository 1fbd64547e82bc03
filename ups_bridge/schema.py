from __future__ import annotations

from functools import lru_cache
from importlib import resources
import json
from typing import Any

from jsonschema import Draft202012Validator

DISCOVERY_SCHEMA = "schemas/discovery.schema.json"


def load_schema(name: str = DISCOVERY_SCHEMA) -> dict[str, Any]:
    schema_path = resources.files("ups_bridge").joinpath(name)
    return json.loads(schema_path.read_text(encoding="utf-8"))


@lru_cache(maxsize=None)
def get_validator(name: str = DISCOVERY_SCHEMA) -> Draft202012Validator:
    return Draft202012Validator(schema=load_schema(name))


def validate_discovery(payload: dict[str, Any]) -> list[str]:
    validator = get_validator()
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(part) for part in e.path])
    return [error.message for error in errors]
