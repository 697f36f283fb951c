"""
CSV contact-list parsing.

The first row is a header. A column resolvable to ``email`` is mandatory;
``name``, ``tags``, ``source`` and ``allow_snowball`` are understood, and any
other column is kept as row metadata. Structural problems raise
``ValidationError`` and fail the whole job; per-row problems do not.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Any

from snowball_worker.config import settings
from snowball_worker.jobs.errors import ValidationError

EMAIL_COLUMN_ALIASES = ("email", "e-mail", "e_mail", "email_address", "mail")
MAX_NAME_LENGTH = 100
MAX_TAGS = 10
TRUTHY = {"true", "yes", "1", "y", "on"}
FALSY = {"false", "no", "0", "n", "off"}

_TAG_SPLIT = re.compile(r"[,;|]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class ParsedRow:
    row_number: int
    email: str
    name: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def normalize_header(header: str) -> str:
    return _WHITESPACE.sub("_", header.strip().lower())


def parse_tags(value: str | None) -> list[str]:
    if not value:
        return []
    tags = [tag.strip() for tag in _TAG_SPLIT.split(value)]
    return [tag for tag in tags if tag][:MAX_TAGS]


def parse_boolean(value: str | None) -> bool | None:
    """Tri-state: None when the cell is empty or unrecognised."""
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in FALSY:
        return False
    return None


def _decode(payload: str | bytes) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return payload.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValidationError("CSV payload is not valid UTF-8") from e


def resolve_email_column(headers: list[str]) -> int:
    for alias in EMAIL_COLUMN_ALIASES:
        if alias in headers:
            return headers.index(alias)
    raise ValidationError(
        "Missing required column: email",
        context={"headers": headers},
    )


def parse_contact_csv(
    payload: str | bytes,
    *,
    max_rows: int | None = None,
    max_bytes: int | None = None,
) -> list[ParsedRow]:
    """
    Parse raw CSV into rows. Emails are lowercased and trimmed but not yet
    validated; an empty email cell yields a row with ``email == ""``.

    Raises:
        ValidationError: oversize or undecodable payload, malformed CSV,
            no header, no email column, too many rows.
    """
    max_rows = max_rows or settings.CSV_MAX_ROWS
    max_bytes = max_bytes or settings.CSV_MAX_BYTES

    size = len(payload.encode("utf-8")) if isinstance(payload, str) else len(payload)
    if size > max_bytes:
        raise ValidationError(f"CSV payload of {size} bytes exceeds limit of {max_bytes}")

    text = _decode(payload).lstrip("\ufeff")
    if not text.strip():
        raise ValidationError("CSV file is empty")

    reader = csv.reader(io.StringIO(text, newline=""))
    try:
        raw_headers = next(reader)
    except StopIteration:
        raise ValidationError("CSV file is empty") from None
    except csv.Error as e:
        raise ValidationError(f"Malformed CSV header: {e}") from e

    headers = [normalize_header(h) for h in raw_headers]
    email_index = resolve_email_column(headers)

    rows: list[ParsedRow] = []
    try:
        for line_number, cells in enumerate(reader, start=2):
            if not any(cell.strip() for cell in cells):
                continue
            if len(rows) >= max_rows:
                raise ValidationError(f"CSV exceeds maximum of {max_rows} rows")
            rows.append(_build_row(line_number, headers, cells, email_index))
    except csv.Error as e:
        raise ValidationError(f"Malformed CSV at line {reader.line_num}: {e}") from e

    return rows


def _build_row(
    line_number: int, headers: list[str], cells: list[str], email_index: int
) -> ParsedRow:
    values = {
        header: cells[i].strip() if i < len(cells) else ""
        for i, header in enumerate(headers)
        if header
    }
    email = cells[email_index].strip().lower() if email_index < len(cells) else ""

    name = values.pop("name", "") or None
    if name:
        name = name[:MAX_NAME_LENGTH]
    tags = parse_tags(values.pop("tags", ""))

    metadata: dict[str, Any] = {}
    for header, value in values.items():
        if header == headers[email_index] or value == "":
            continue
        if header == "allow_snowball":
            flag = parse_boolean(value)
            if flag is not None:
                metadata[header] = flag
            continue
        metadata[header] = value

    return ParsedRow(row_number=line_number, email=email, name=name, tags=tags, metadata=metadata)
