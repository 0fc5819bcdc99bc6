"""
JSON utilities for turning memory records into tool-safe payloads.
"""

import dataclasses
from datetime import datetime
from typing import Any, Collection


def to_jsonable(value: Any, exclude: Collection[str] = ()) -> Any:
    """Recursively convert dataclasses, datetimes and containers into JSON-safe values.

    Args:
        value: Arbitrary value, usually a model dataclass or a list of them
        exclude: Dataclass field names to leave out at any depth

    Returns:
        Structure made of dicts, lists, strings and numbers
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name), exclude)
            for f in dataclasses.fields(value)
            if f.name not in exclude
        }
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v, exclude) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v, exclude) for v in value]
    return value
