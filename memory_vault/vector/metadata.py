"""
Metadata (de)serialization for primitives-only vector backends.
Restoration on read is driven by the collection's fixed schema.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from .types import MetadataSchema, MetadataValue


def date_to_metadata(value: datetime) -> str:
    """Convert a datetime to its metadata string."""
    return value.isoformat()


def metadata_to_date(value: str) -> datetime:
    """Convert a metadata string back to a datetime."""
    return datetime.fromisoformat(value)


def serialize_metadata(data: Dict[str, Any], schema: Optional[MetadataSchema] = None) -> Dict[str, MetadataValue]:
    """
    Flatten metadata into backend-storable primitives.

    None values are dropped. Dates become ISO strings and arrays/objects become
    JSON strings. Schema fields are converted by their declared kind; anything
    else that is not already a primitive is converted by its Python type.
    """
    result: Dict[str, MetadataValue] = {}
    schema = schema or MetadataSchema()

    for key, value in data.items():
        if value is None:
            continue

        if key in schema.dates and isinstance(value, datetime):
            result[key] = date_to_metadata(value)
        elif key in schema.arrays or key in schema.objects:
            result[key] = value if isinstance(value, str) else json.dumps(value)
        elif isinstance(value, (str, bool, int, float)):
            result[key] = value
        elif isinstance(value, datetime):
            result[key] = date_to_metadata(value)
        elif isinstance(value, (list, tuple, dict)):
            result[key] = json.dumps(list(value) if isinstance(value, tuple) else value)
        else:
            raise TypeError(f"Unsupported metadata value for '{key}': {type(value).__name__}")

    return result


def deserialize_metadata(data: Dict[str, MetadataValue], schema: Optional[MetadataSchema] = None) -> Dict[str, Any]:
    """Restore schema-declared dates, arrays and objects from their stored strings."""
    result: Dict[str, Any] = {}
    schema = schema or MetadataSchema()

    for key, value in data.items():
        if key in schema.dates and isinstance(value, str):
            try:
                result[key] = metadata_to_date(value)
            except ValueError:
                result[key] = value
        elif (key in schema.arrays or key in schema.objects) and isinstance(value, str):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            result[key] = value

    return result
