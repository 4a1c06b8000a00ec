"""
Club web site source.

Logs in to the club web site with a form post, fetches the event list and
member roster pages and parses their HTML tables into raw records, ready
for Event.from_record / Member.from_record. Only the first page of each
listing is read. Optionally each event page is read too, for its attendee
list and comment thread.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from scma_gsync.sync.member import normalize_attribute_key

DEFAULT_BASE_URL = "https://www.rockclimbing.org"
LOGIN_PATH = "/index.php/component/comprofiler/login"
EVENTS_PATH = "/index.php/event-list/events-list"
MEMBERS_PATH = "/index.php/component/comprofiler/userslist"

USER_AGENT = "Mozilla/5.0"
DEFAULT_TIMEOUT = 30  # seconds

# Date formats used on the web site, tried in order
WEB_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%a, %b %d %Y",
    "%a, %B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %B %Y",
)

# Column headings mapped to record keys; other headings keep their
# normalized name and end up as member attributes
EVENT_COLUMNS = {
    "event": "title",
    "title": "title",
    "name": "title",
    "date": "start_date",
    "start": "start_date",
    "start_date": "start_date",
    "end": "end_date",
    "end_date": "end_date",
    "location": "location",
    "where": "location",
    "description": "description",
    "details": "description",
}

MEMBER_COLUMNS = {
    "name": "display_name",
    "full_name": "display_name",
    "member": "display_name",
    "email": "email",
    "e_mail": "email",
    "email_address": "email",
    "phone": "phone",
    "phone_number": "phone",
    "telephone": "phone",
    "address": "address",
    "status": "member_status",
    "member_status": "member_status",
    "trip_leader": "trip_leader_status",
    "trip_leader_status": "trip_leader_status",
    "position": "position",
}

# Event page tables: attendee list and comment thread
ATTENDEE_COLUMNS = {
    "name": "name",
    "attendee": "name",
    "member": "name",
    "count": "count",
    "guests": "count",
    "party_size": "count",
    "comment": "comment",
    "comments": "comment",
    "notes": "comment",
}

COMMENT_COLUMNS = {
    "author": "author",
    "posted_by": "author",
    "by": "author",
    "date": "date",
    "posted": "date",
    "comment": "text",
    "text": "text",
    "message": "text",
}

logger = logging.getLogger(__name__)


class WebSourceError(Exception):
    """Raised when the web site cannot be read."""

    pass


class WebLoginError(WebSourceError):
    """Raised when the web site rejects the login."""

    pass


def normalize_web_date(value: str) -> str:
    """
    Convert a date as shown on the web site to ISO format.

    Text that matches no known format is returned unchanged, so that
    record validation reports it.
    """
    text = " ".join(value.replace(",", ", ").split()).replace(" ,", ",")
    for fmt in WEB_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return value


def _split_date_range(value: str) -> tuple[str, str | None]:
    """Split "start - end" ranges shown in a single column."""
    for separator in (" - ", " – ", " to "):
        if separator in value:
            start, end = value.split(separator, 1)
            return start.strip(), end.strip()
    return value, None


def parse_tables(
    html: str, base_url: str = DEFAULT_BASE_URL
) -> list[list[dict[str, str]]]:
    """
    Parse every table with a header row into lists of records.

    Keys are the normalized column headings. The first link in a row is
    kept as ``url``.
    """
    soup = BeautifulSoup(html, "html.parser")
    tables = []

    for table in soup.find_all("table"):
        header_row = table.find("tr")
        if header_row is None:
            continue
        header_cells = header_row.find_all("th")
        if not header_cells:
            continue
        headings = [
            normalize_attribute_key(cell.get_text(separator=" ", strip=True))
            for cell in header_cells
        ]

        records = []
        for tr in header_row.find_next_siblings("tr") or table.find_all("tr")[1:]:
            cells = tr.find_all("td")
            if not cells:
                continue
            record = {
                heading: cell.get_text(separator=" ", strip=True)
                for heading, cell in zip(headings, cells)
                if heading
            }
            link = tr.find("a", href=True)
            if link is not None and not link["href"].startswith("mailto:"):
                record["url"] = urljoin(base_url, link["href"])
            records.append(record)
        tables.append(records)
    return tables


def parse_table(html: str, base_url: str = DEFAULT_BASE_URL) -> list[dict[str, str]]:
    """Parse the first table with a header row into a list of records."""
    tables = parse_tables(html, base_url)
    if not tables:
        logger.warning("No table with a header row found on page")
        return []
    return tables[0]


def _rename(record: dict[str, str], columns: dict[str, str]) -> dict[str, str]:
    renamed: dict[str, str] = {}
    for key, value in record.items():
        target = columns.get(key, key)
        if target not in renamed or not renamed[target]:
            renamed[target] = value
    return renamed


def event_records(html: str, base_url: str = DEFAULT_BASE_URL) -> list[dict[str, Any]]:
    """Parse the event list page into event records."""
    records = []
    for row in parse_table(html, base_url):
        record: dict[str, Any] = _rename(row, EVENT_COLUMNS)
        start = record.get("start_date", "")
        if start and "end_date" not in record:
            start, end = _split_date_range(start)
            if end:
                record["end_date"] = normalize_web_date(end)
        if start:
            record["start_date"] = normalize_web_date(start)
        elif "start_date" in record:
            del record["start_date"]
        if "end_date" in record:
            record["end_date"] = normalize_web_date(record["end_date"])
        records.append(record)
    return records


def _select(record: dict[str, str], columns: dict[str, str]) -> dict[str, str]:
    selected: dict[str, str] = {}
    for key, value in record.items():
        if key in columns and not selected.get(columns[key]):
            selected[columns[key]] = value
    return selected


def event_page_details(html: str, base_url: str = DEFAULT_BASE_URL) -> dict[str, list]:
    """
    Parse an event page into its attendee list and comment thread.

    A table with an author column holds comments. A table with a name and
    a count column holds attendees. Other tables are ignored.
    """
    details: dict[str, list] = {"attendees": [], "comments": []}
    for rows in parse_tables(html, base_url):
        headings = set().union(*rows)
        if any(COMMENT_COLUMNS.get(h) == "author" for h in headings):
            for row in rows:
                comment = _select(row, COMMENT_COLUMNS)
                if comment.get("date"):
                    comment["date"] = normalize_web_date(comment["date"])
                if comment.get("text"):
                    details["comments"].append(comment)
        elif {ATTENDEE_COLUMNS.get(h) for h in headings} >= {"name", "count"}:
            for row in rows:
                attendee = _select(row, ATTENDEE_COLUMNS)
                if not attendee.get("name"):
                    continue
                if not attendee.get("count"):
                    attendee.pop("count", None)
                details["attendees"].append(attendee)
    return details


def member_records(html: str, base_url: str = DEFAULT_BASE_URL) -> list[dict[str, Any]]:
    """
    Parse the member roster page into member records.

    Rows without an email cannot be matched and are skipped.
    """
    records = []
    for row in parse_table(html, base_url):
        record: dict[str, Any] = _rename(row, MEMBER_COLUMNS)
        record.pop("url", None)
        if not record.get("email"):
            logger.warning(
                f"Skipping roster entry without email: {record.get('display_name', '')}"
            )
            continue
        records.append(record)
    return records


class WebSource:
    """
    Authenticated reader for the club web site.

    Attributes:
        base_url: Root URL of the web site
        event_details: Also read each event page for attendees and comments
        session: Cookie-keeping HTTP session

    Usage:
        source = WebSource(username, password)
        source.login()
        events = source.read_events()
        members = source.read_members()
    """

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        event_details: bool = False,
    ):
        self.username = username
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.event_details = event_details
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        self._logged_in = False

    def _url(self, path: str) -> str:
        if urlparse(path).scheme:
            return path
        return f"{self.base_url}{path}"

    def login(self) -> None:
        """
        Log in with the member credentials.

        A successful login redirects to the home page.

        Raises:
            WebLoginError: If the credentials are rejected
            WebSourceError: If the web site cannot be reached
        """
        logger.info(f"Logging in to {self.base_url} as {self.username}")
        try:
            response = self.session.post(
                self._url(LOGIN_PATH),
                data={"username": self.username, "passwd": self.password},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise WebSourceError(f"Login request failed: {e}") from e

        if not response.ok:
            raise WebLoginError(f"Login failed with status {response.status_code}")
        if urlparse(response.url).path not in ("", "/"):
            raise WebLoginError("Login failed: bad username or password")

        self._logged_in = True
        logger.debug("Logged in")

    def fetch(self, path: str) -> str:
        """
        Fetch a page, logging in first if needed.

        Raises:
            WebSourceError: If the page cannot be fetched
        """
        if not self._logged_in:
            self.login()

        url = self._url(path)
        logger.debug(f"Fetching {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise WebSourceError(f"Failed to fetch {url}: {e}") from e
        return response.text

    def read_events(self) -> list[dict[str, Any]]:
        """Read the raw event records from the event list page."""
        records = event_records(self.fetch(EVENTS_PATH), self.base_url)
        if self.event_details:
            for record in records:
                if record.get("url"):
                    record.update(self.read_event_details(record["url"]))
        logger.info(f"Read {len(records)} events from {self.base_url}")
        return records

    def read_event_details(self, url: str) -> dict[str, list]:
        """Read the attendees and comments from one event page."""
        details = event_page_details(self.fetch(url), self.base_url)
        logger.debug(
            f"Read {len(details['attendees'])} attendees and "
            f"{len(details['comments'])} comments from {url}"
        )
        return details

    def read_members(self) -> list[dict[str, Any]]:
        """Read the raw member records from the roster page."""
        records = member_records(self.fetch(MEMBERS_PATH), self.base_url)
        logger.info(f"Read {len(records)} members from {self.base_url}")
        return records
