"""
Serialization utilities for brokerkit.

This module provides the JSON codec used for message bodies, with support
for UUIDs, datetimes and decimals.

Example:
    >>> from brokerkit.serialization import json_dumps, BrokerJSONEncoder
    >>> from uuid import uuid4
    >>>
    >>> data = {"id": uuid4()}
    >>> json_str = json_dumps(data)
"""

from brokerkit.serialization.json import (
    JSON_CONTENT_TYPE,
    BrokerJSONEncoder,
    decode_body,
    encode_body,
    json_dumps,
    json_loads,
)

__all__ = [
    "BrokerJSONEncoder",
    "JSON_CONTENT_TYPE",
    "decode_body",
    "encode_body",
    "json_dumps",
    "json_loads",
]
