"""JSON-safe conversion of engine dataclasses for push events and HTTP responses.

Decimals become strings so no precision is lost on the wire.
"""

import dataclasses
from decimal import Decimal
from enum import Enum
from typing import Any


def to_payload(value: Any) -> Any:
    """Recursively convert dataclasses, enums and Decimals to JSON-safe values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_payload(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_payload(v) for v in value]
    return value
