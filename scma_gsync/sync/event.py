"""
Event data model for Google Calendar synchronization.

Provides an immutable Event representation, with its attendee list and
comment thread, and methods for:
- Building events from source records with date validation
- Converting to/from Google Calendar API format
- Comparing the fields that are synchronized
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Optional

from scma_gsync.sync.validation import ValidationError, parse_date

# Private extended property used to carry the identity key on remote events
IDENTITY_PROPERTY = "scmaIdentityKey"

# Separator between title and start date in the identity key
IDENTITY_SEPARATOR = "|"


def event_identity_key(title: str, start_date: date) -> str:
    """
    Derive the identity key of an event.

    The source provides no persistent identifier, so events are joined on
    their title and start date, e.g. ``Hike|2024-06-01``.
    """
    return f"{title}{IDENTITY_SEPARATOR}{start_date.isoformat()}"


@dataclass(frozen=True)
class Attendee:
    """A member signed up for an event, with the size of their party."""

    name: str
    count: int = 1
    comment: str = ""

    @classmethod
    def from_record(cls, record: Any) -> Attendee:
        if not isinstance(record, dict) or not str(record.get("name") or "").strip():
            raise ValidationError(f"Attendee without a name: {record!r}")

        count = record.get("count", 1)
        if isinstance(count, str) and count.strip().isdigit():
            count = int(count)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValidationError(f"Malformed attendee count: {record!r}")

        return cls(
            name=str(record["name"]).strip(),
            count=count,
            comment=str(record.get("comment") or "").strip(),
        )

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {"name": self.name, "count": self.count}
        if self.comment:
            record["comment"] = self.comment
        return record

    def __str__(self) -> str:
        return f"{self.name} ({self.count}) {self.comment}".rstrip()


@dataclass(frozen=True)
class Comment:
    """A comment posted on an event page."""

    author: str
    text: str
    date: str = ""

    @classmethod
    def from_record(cls, record: Any) -> Comment:
        if not isinstance(record, dict) or not str(record.get("text") or "").strip():
            raise ValidationError(f"Comment without text: {record!r}")
        return cls(
            author=str(record.get("author") or "").strip(),
            text=str(record["text"]).strip(),
            date=str(record.get("date") or "").strip(),
        )

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {"author": self.author}
        if self.date:
            record["date"] = self.date
        record["text"] = self.text
        return record

    def __str__(self) -> str:
        posted = f"({self.date})" if self.date else ""
        return " ".join(part for part in (self.author, posted, self.text) if part)


def _records(record: dict[str, Any], key: str, title: str) -> list[Any]:
    value = record.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Event '{title}': {key} must be a list")
    return value


@dataclass(frozen=True)
class Event:
    """
    Normalized calendar event.

    Attributes:
        title: Event title (Calendar summary)
        start_date: First day of the event
        end_date: Last day of the event (inclusive)
        description: Free-form description
        location: Free-form location
        url: Link to the event on the club web site, if known
        attendees: Members signed up, in sign-up order
        comments: Comments posted on the event page, oldest first
        identity_key: Join key across syncs, derived from title and start date
        remote_ref: Calendar event id, only set on remote events

    Usage:
        event = Event.from_record({"title": "Hike", "start_date": "2024-06-01",
                                   "end_date": "2024-06-01"})
        body = event.to_api_format()
        remote = Event.from_api_response(item)
        event.same_content(remote)
    """

    title: str
    start_date: date
    end_date: date
    description: str = ""
    location: str = ""
    url: str = ""
    attendees: tuple[Attendee, ...] = ()
    comments: tuple[Comment, ...] = ()
    identity_key: str = ""
    remote_ref: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValidationError(
                f"Event '{self.title}' ends ({self.end_date}) "
                f"before it starts ({self.start_date})"
            )
        if not self.identity_key:
            object.__setattr__(
                self, "identity_key", event_identity_key(self.title, self.start_date)
            )

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Event:
        """
        Create an Event from a source record.

        Timestamps carrying a time of day are truncated to their date. A
        missing end date means a single-day event.

        Raises:
            ValidationError: If the title or dates are missing or malformed
        """
        title = str(record.get("title") or "").strip()
        if not title:
            raise ValidationError(f"Event without a title: {record!r}")

        if record.get("start_date") is None:
            raise ValidationError(f"Event '{title}' has no start_date")
        start_date = parse_date(record["start_date"], "start_date")

        end_value = record.get("end_date")
        end_date = start_date if end_value is None else parse_date(end_value, "end_date")

        return cls(
            title=title,
            start_date=start_date,
            end_date=end_date,
            description=str(record.get("description") or ""),
            location=str(record.get("location") or ""),
            url=str(record.get("url") or ""),
            attendees=tuple(
                Attendee.from_record(item) for item in _records(record, "attendees", title)
            ),
            comments=tuple(
                Comment.from_record(item) for item in _records(record, "comments", title)
            ),
        )

    @classmethod
    def from_api_response(cls, item: dict[str, Any], summary_prefix: str = "") -> Event:
        """
        Create an Event from a Google Calendar API event resource.

        All-day events use an exclusive end date, which is converted back
        to the inclusive end date. Timed events are truncated to dates.
        A leading summary_prefix is removed from the title.

        Example API response structure::

            {
                'id': 'abc123',
                'summary': 'Hike',
                'start': {'date': '2024-06-01'},
                'end': {'date': '2024-06-02'},
                'description': '...',
                'location': '...',
                'extendedProperties': {'private': {'scmaIdentityKey': 'Hike|2024-06-01'}}
            }
        """
        start = item.get("start", {})
        end = item.get("end", {})

        if start.get("date"):
            start_date = parse_date(start["date"], "start")
        else:
            start_date = parse_date(start.get("dateTime"), "start")

        if end.get("date"):
            end_date = parse_date(end["date"], "end") - timedelta(days=1)
        elif end.get("dateTime"):
            end_date = parse_date(end["dateTime"], "end")
        else:
            end_date = start_date
        end_date = max(end_date, start_date)

        title = item.get("summary", "")
        if summary_prefix and title.startswith(summary_prefix):
            title = title[len(summary_prefix):]

        private = item.get("extendedProperties", {}).get("private", {})

        return cls(
            title=title,
            start_date=start_date,
            end_date=end_date,
            description=item.get("description", ""),
            location=item.get("location", ""),
            identity_key=private.get(IDENTITY_PROPERTY, ""),
            remote_ref=item.get("id"),
        )

    def to_record(self) -> dict[str, Any]:
        """Convert the Event back to a structured source record."""
        record: dict[str, Any] = {
            "title": self.title,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "description": self.description,
            "location": self.location,
        }
        if self.url:
            record["url"] = self.url
        if self.attendees:
            record["attendees"] = [attendee.to_record() for attendee in self.attendees]
        if self.comments:
            record["comments"] = [comment.to_record() for comment in self.comments]
        return record

    def rendered_description(self) -> str:
        """
        Description as written to the calendar.

        The source link comes first, then the description, then the
        attendee and comment sections when the event has any.
        """
        sections = [self.url, self.description]
        if self.attendees:
            lines = [f"{n}. {a}" for n, a in enumerate(self.attendees, start=1)]
            sections.append("Attendees:\n" + "\n".join(lines))
        if self.comments:
            sections.append("Comments:\n" + "\n".join(f"- {c}" for c in self.comments))
        return "\n\n".join(section for section in sections if section)

    def to_api_format(self, summary_prefix: str = "") -> dict[str, Any]:
        """
        Convert the Event to Google Calendar API format for insert/patch.

        Args:
            summary_prefix: Text shown before the title, e.g. "SCMA: "

        Note:
            - Does not include the event id (assigned by Google on insert)
            - End date is exclusive, as Calendar requires for all-day events
        """
        return {
            "summary": f"{summary_prefix}{self.title}",
            "start": {"date": self.start_date.isoformat()},
            "end": {"date": (self.end_date + timedelta(days=1)).isoformat()},
            "description": self.rendered_description(),
            "location": self.location,
            "extendedProperties": {
                "private": {IDENTITY_PROPERTY: self.identity_key},
            },
        }

    def content(self) -> tuple[str, date, date, str, str]:
        """The synchronized fields, in comparison order."""
        return (
            self.title,
            self.start_date,
            self.end_date,
            self.rendered_description(),
            self.location,
        )

    def same_content(self, other: Event) -> bool:
        """Check whether two events agree on every synchronized field."""
        return self.content() == other.content()

    def with_remote_ref(self, remote_ref: str) -> Event:
        """Return a copy of this event bound to a remote event id."""
        return replace(self, remote_ref=remote_ref)

    def __str__(self) -> str:
        if self.start_date == self.end_date:
            return f"{self.title} ({self.start_date})"
        return f"{self.title} ({self.start_date} - {self.end_date})"
