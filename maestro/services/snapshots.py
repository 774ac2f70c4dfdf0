from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import inspect

from maestro.services.crypto.utils import b64encode_bytes


def row_to_dict(row: Any) -> dict[str, Any]:
    # JSON-safe column snapshot; binary columns are base64, timestamps ISO-8601.
    payload: dict[str, Any] = {"__table__": row.__tablename__}
    for attr in inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, (bytes, bytearray, memoryview)):
            value = b64encode_bytes(bytes(value))
        payload[attr.key] = value
    return payload
