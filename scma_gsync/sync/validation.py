"""
Validation helpers for source records.

Source snapshots are validated before any remote call is made. A failure
here aborts the whole run, so nothing is mutated on the remote side.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

# Deliberately loose: one "@", no whitespace, a dot in the domain
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationError(Exception):
    """Raised when source records are malformed or ambiguous."""

    pass


def normalize_email(value: Any) -> str:
    """
    Normalize and validate an email address.

    Args:
        value: Raw email value from a source record

    Returns:
        Lowercased, stripped email address

    Raises:
        ValidationError: If the value is not a syntactically valid email
    """
    if not isinstance(value, str):
        raise ValidationError(f"Malformed email: {value!r}")

    email = value.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError(f"Malformed email: {value!r}")
    return email


def parse_date(value: Any, field_name: str = "date") -> date:
    """
    Parse a source date, discarding any time-of-day component.

    Accepts ``date`` and ``datetime`` objects as well as ISO 8601 strings
    (``2024-06-01`` or ``2024-06-01T18:30:00``).

    Args:
        value: Raw date value
        field_name: Field name used in error messages

    Returns:
        The calendar date

    Raises:
        ValidationError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as e:
            raise ValidationError(f"Malformed {field_name}: {value!r}") from e
    raise ValidationError(f"Malformed {field_name}: {value!r}")


def find_duplicates(keys: Iterable[str]) -> list[str]:
    """Return the keys that occur more than once, in sorted order."""
    counts = Counter(keys)
    return sorted(key for key, count in counts.items() if count > 1)


def ensure_unique(keys: Iterable[str], kind: str) -> None:
    """
    Ensure identity keys are unique within one source snapshot.

    Raises:
        ValidationError: If any identity key is duplicated
    """
    duplicates = find_duplicates(keys)
    if duplicates:
        raise ValidationError(
            f"Duplicate {kind} identity keys in source: {', '.join(duplicates)}"
        )
