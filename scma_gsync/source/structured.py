"""
Structured source file support.

Reads and writes the YAML document used as a persisted source snapshot:

    events:
      - title: Hike
        start_date: 2024-06-01
        end_date: 2024-06-01
        description: ...
        location: ...
        url: https://...
        attendees:
          - {name: J Doe, count: 2, comment: driving}
        comments:
          - {author: J Doe, date: 2024-05-20, text: Bring water}
    members:
      - email: jdoe@example.com
        display_name: J Doe
        phone: 555-1234
        member_status: Active
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import IO, Any

import yaml

from scma_gsync.sync.event import Event
from scma_gsync.sync.member import Member
from scma_gsync.sync.validation import ValidationError

EVENTS_KEY = "events"
MEMBERS_KEY = "members"

logger = logging.getLogger(__name__)


def load_document(path: Path | str) -> dict[str, Any]:
    """
    Load a structured source file.

    An empty file is an empty document.

    Raises:
        ValidationError: If the file cannot be read or is not a YAML mapping
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Failed to parse source file {path}: {e}") from e
    except OSError as e:
        raise ValidationError(f"Failed to read source file {path}: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValidationError(
            f"Source file {path} must contain a YAML mapping, "
            f"got {type(document).__name__}"
        )
    logger.debug(f"Loaded source file {path}")
    return document


def _records(document: dict[str, Any], key: str) -> list[dict[str, Any]]:
    records = document.get(key) or []
    if not isinstance(records, list):
        raise ValidationError(f"'{key}' must be a list, got {type(records).__name__}")
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValidationError(f"{key}[{index}] must be a mapping, got {record!r}")
    return records


def events_from_records(records: Iterable[dict[str, Any]]) -> list[Event]:
    """Build Events from raw records, failing on the first invalid one."""
    return [Event.from_record(record) for record in records]


def members_from_records(records: Iterable[dict[str, Any]]) -> list[Member]:
    """Build Members from raw records, failing on the first invalid one."""
    return [Member.from_record(record) for record in records]


def load_events(path: Path | str) -> list[Event]:
    """
    Load the events of a structured source file.

    Raises:
        ValidationError: If the file or any event record is invalid
    """
    events = events_from_records(_records(load_document(path), EVENTS_KEY))
    logger.info(f"Loaded {len(events)} events from {path}")
    return events


def load_members(path: Path | str) -> list[Member]:
    """
    Load the members of a structured source file.

    Raises:
        ValidationError: If the file or any member record is invalid
    """
    members = members_from_records(_records(load_document(path), MEMBERS_KEY))
    logger.info(f"Loaded {len(members)} members from {path}")
    return members


def dump_events(events: Iterable[Event], stream: IO[str] | None = None) -> None:
    """Write events as a structured source document."""
    _dump({EVENTS_KEY: [event.to_record() for event in events]}, stream)


def dump_members(members: Iterable[Member], stream: IO[str] | None = None) -> None:
    """Write members as a structured source document."""
    _dump({MEMBERS_KEY: [member.to_record() for member in members]}, stream)


def _dump(document: dict[str, Any], stream: IO[str] | None) -> None:
    yaml.safe_dump(
        document,
        stream or sys.stdout,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )
