"""
JSON Schema checks for story and checkpoint documents.

Both document types are validated when read and again before every write,
so an invalid story never reaches disk. A failure names the schema, the
offending field path and, for writes, the file that was left untouched.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema

# Schemas ship inside the package so installed copies can find them
SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(Exception):
    """Document does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        location = f" at {path}" if path else ""
        super().__init__(f"[{schema_name}] {message}{location}")


@lru_cache(maxsize=None)
def _validator(schema_name: str):
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
    schema = json.loads(schema_path.read_text())
    return jsonschema.validators.validator_for(schema)(schema)


def validate(data: dict, schema_name: str) -> None:
    """Check data against the "story" or "checkpoint" schema.

    Raises:
        ValidationError: for the most relevant error found
    """
    error = jsonschema.exceptions.best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise ValidationError(schema_name, error.message, path)


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """validate() for a pending write to filepath."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e}"
        ) from None
