"""
Time and payload helpers shared by the store and the workers.
"""

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from taskqueue.constants import (
    DEFAULT_PAYLOAD_TYPE,
    PAYLOAD_TYPE_KEY,
    PAYLOAD_TYPE_MAX_LENGTH,
)
from taskqueue.exceptions import EncodingError


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def encode_payload(payload: Any) -> str:
    """
    Serialize a payload to JSON text.

    Raises:
        EncodingError: If the payload is not JSON-serializable.
    """
    try:
        return json.dumps(payload, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Payload could not be encoded: {e}") from e


def decode_payload(raw: str | bytes) -> Any:
    """
    Deserialize stored payload text.

    Raises:
        EncodingError: If the stored text is not valid JSON.
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Payload could not be decoded: {e}") from e


def extract_payload_type(payload: Any) -> str:
    """
    Return the payload's ``type`` field as a string, or the default type.

    Scalar values are stringified so numeric types can be filtered on;
    empty strings, nulls and containers fall back to the default.
    """
    if isinstance(payload, Mapping):
        value = payload.get(PAYLOAD_TYPE_KEY)
        if isinstance(value, (str, int, float)):
            value = str(value)[:PAYLOAD_TYPE_MAX_LENGTH]
            if value:
                return value
    return DEFAULT_PAYLOAD_TYPE
