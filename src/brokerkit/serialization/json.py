"""
JSON serialization utilities for message payloads.

This module provides utilities for JSON serialization of common types
that are not natively JSON-serializable, such as UUIDs, datetimes and
decimals, and the body codec used by the publisher and consumer registry.

Example:
    >>> from brokerkit.serialization import encode_body, decode_body
    >>> from uuid import uuid4
    >>>
    >>> body = encode_body({"order_id": uuid4(), "amount": Decimal("19.90")})
    >>> payload = decode_body(body)
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from brokerkit.exceptions import SerializationError

JSON_CONTENT_TYPE = "application/json"


class BrokerJSONEncoder(json.JSONEncoder):
    """
    Custom JSON encoder that handles UUID, datetime, Decimal and Enum objects.

    - UUID objects: Converted to string representation
    - datetime/date objects: Converted to ISO 8601 format string
    - Decimal objects: Converted to string to preserve precision
    - Enum members: Converted to their value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to JSON string with UUID, datetime and Decimal support.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=BrokerJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON string to Python object.

    UUID and datetime strings are NOT converted back to their original
    types - that's the application's responsibility.
    """
    return json.loads(s)


def encode_body(message: Any) -> bytes:
    """
    Encode a message payload as a UTF-8 JSON body.

    Raises:
        SerializationError: If the payload contains unsupported types
    """
    try:
        return json_dumps(message).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(JSON_CONTENT_TYPE, str(e)) from e


def decode_body(body: bytes, content_type: str | None = JSON_CONTENT_TYPE) -> Any:
    """
    Decode a message body into a Python object.

    Bodies are always treated as JSON; the content type is only used in
    the error message so malformed payloads can be traced to their producer.

    Raises:
        SerializationError: If the body is not valid UTF-8 JSON
    """
    try:
        return json_loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise SerializationError(content_type, str(e)) from e


__all__ = [
    "BrokerJSONEncoder",
    "JSON_CONTENT_TYPE",
    "decode_body",
    "encode_body",
    "json_dumps",
    "json_loads",
]
