"""JSON serialization helpers for log records and message bodies."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID


def json_serializer(obj: Any) -> Any:
    """
    ``default=`` hook for json.dumps.

    Keeps numbers numeric and timestamps in ISO 8601 so downstream log
    aggregation sees stable column types:
    - datetime/date → ISO 8601 string
    - Decimal → float
    - Enum → value
    - UUID, Path → string
    - Everything else → string (fallback)
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (UUID, Path)):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


__all__ = ["json_serializer"]
