### exportqueue/exports/serializer.py

"""
Delimited text serialization for export files.

Quoting follows RFC 4180: a value is wrapped in double quotes when it contains
the separator, a double quote or a line break, and embedded quotes are doubled.
Records end with CRLF whatever the platform.
"""

import csv
import io
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Sequence

QUOTE_CHAR = '"'
LINE_TERMINATOR = "\r\n"
FORBIDDEN_SEPARATORS = {QUOTE_CHAR, "\r", "\n"}


def format_value(value: Any) -> str:
    """
    Serialize value for export (handle dates, decimals, None, etc.)
    """
    if value is None:
        return ""
    elif isinstance(value, bool):
        return "1" if value else "0"
    elif isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, Enum):
        return str(value.value)
    elif isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    else:
        return str(value)


class DelimitedSerializer:
    """Turns rows of strings into delimited text lines."""

    def __init__(self, separator: str = ","):
        if not isinstance(separator, str) or len(separator) != 1:
            raise ValueError("Separator must be exactly one character")
        if separator in FORBIDDEN_SEPARATORS:
            raise ValueError(f"Separator {separator!r} cannot be used")
        self.separator = separator

    def _writer(self, buffer: io.StringIO):
        return csv.writer(
            buffer,
            delimiter=self.separator,
            quotechar=QUOTE_CHAR,
            doublequote=True,
            quoting=csv.QUOTE_MINIMAL,
            lineterminator=LINE_TERMINATOR,
        )

    def serialize_row(self, values: Sequence[str]) -> str:
        buffer = io.StringIO()
        self._writer(buffer).writerow(["" if v is None else str(v) for v in values])
        return buffer.getvalue()

    def serialize_header(self, titles: Sequence[str]) -> str:
        return self.serialize_row(titles)

    def serialize_rows(self, rows: Iterable[Sequence[str]]) -> str:
        return "".join(self.serialize_row(row) for row in rows)
