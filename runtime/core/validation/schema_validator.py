"""JSON Schema validation for gate configuration and command payloads.

Every schema is a YAML file under `schemas/` holding a Draft 2020-12
document. All of them are loaded and checked when the validator is built, so
a broken schema fails startup instead of the first request that needs it.

Request schemas may declare top-level `default` values; `normalize` validates
a payload and returns a copy with those defaults filled in, which is what the
HTTP layer hands to the server.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import SchemaError

from errors import ConfigurationError, SchemaValidationError, SchemaViolation

SCHEMA_FILES: Mapping[str, str] = {
    "GammaConfig": "gamma_config.schema.yaml",
    "CostConfig": "cost_config.schema.yaml",
    "ChatRequest": "chat_request.schema.yaml",
    "DirectRequest": "direct_request.schema.yaml",
    "PasteRequest": "paste_request.schema.yaml",
}

DEFAULT_SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


def _read_schema(path: Path, kind: str) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing schema file for {kind}: {path}")
    try:
        schema = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Schema for {kind} is not valid YAML: {path}: {e}") from e
    if not isinstance(schema, dict):
        raise ConfigurationError(f"Schema for {kind} must be a mapping: {path}")
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        raise ConfigurationError(f"Invalid schema for {kind} in {path}: {e.message}") from e
    return schema


def _pointer(path: Iterable[Any]) -> str:
    # RFC 6901: "~" -> "~0", "/" -> "~1".
    tokens = [str(p).replace("~", "~0").replace("/", "~1") for p in path]
    return "/" + "/".join(tokens)


def _top_level_defaults(schema: Mapping[str, Any]) -> dict[str, Any]:
    props = schema.get("properties") or {}
    return {name: prop["default"] for name, prop in props.items() if isinstance(prop, dict) and "default" in prop}


class SchemaValidator:
    def __init__(self, schemas: Mapping[str, dict[str, Any]], *, check_formats: bool = True):
        checker = FormatChecker() if check_formats else None
        self._validators = {kind: Draft202012Validator(s, format_checker=checker) for kind, s in schemas.items()}
        self._defaults = {kind: _top_level_defaults(s) for kind, s in schemas.items()}

    @classmethod
    def load_from_dir(cls, schemas_dir: Path = DEFAULT_SCHEMAS_DIR) -> "SchemaValidator":
        schemas_dir = schemas_dir.resolve()
        if not schemas_dir.is_dir():
            raise ConfigurationError(f"Schemas directory not found: {schemas_dir}")
        return cls({kind: _read_schema(schemas_dir / name, kind) for kind, name in SCHEMA_FILES.items()})

    def kinds(self) -> list[str]:
        return sorted(self._validators)

    def violations(self, kind: str, document: Any) -> list[SchemaViolation]:
        validator = self._validators.get(kind)
        if validator is None:
            raise ConfigurationError(f"Unknown schema kind: {kind}")
        found = [SchemaViolation(path=_pointer(e.absolute_path), message=e.message) for e in validator.iter_errors(document)]
        return sorted(found, key=lambda v: (v.path, v.message))

    def validate(self, kind: str, document: Any) -> None:
        """Raise SchemaValidationError listing every violation, sorted by path."""
        found = self.violations(kind, document)
        if found:
            raise SchemaValidationError(kind=kind, violations=found)

    def normalize(self, kind: str, document: Any) -> dict[str, Any]:
        self.validate(kind, document)
        out = copy.deepcopy(self._defaults[kind])
        out.update(document)
        return out
