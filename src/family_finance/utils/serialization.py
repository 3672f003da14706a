"""Helpers for returning MongoDB documents from routes."""

from dataclasses import asdict, is_dataclass
from typing import Any


def to_public(value: Any) -> Any:
    """Drop Mongo ``_id`` keys recursively so documents can be JSON-encoded."""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, list):
        return [to_public(item) for item in value]
    if isinstance(value, dict):
        return {key: to_public(item) for key, item in value.items() if key != "_id"}
    return value
