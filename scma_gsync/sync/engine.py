"""
Sync engine for one-way club roster synchronization.

Orchestrates a run: validate the source, list a frozen snapshot of the
remote service, diff, and execute the resulting actions. Remote records
without a source counterpart are never touched.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from scma_gsync.api.base import RemoteAdapter
from scma_gsync.sync.acl import DEFAULT_ROLE
from scma_gsync.sync.diff import ActionSet, diff, diff_acl
from scma_gsync.sync.event import Event
from scma_gsync.sync.executor import DEFAULT_CONCURRENCY, ExecutionCoordinator, RunReport
from scma_gsync.sync.member import Member
from scma_gsync.sync.validation import ensure_unique

logger = logging.getLogger(__name__)


def upcoming_events(events: Iterable[Event], today: Optional[date] = None) -> list[Event]:
    """Drop events which ended before today."""
    today = today or date.today()
    selected = []
    skipped = 0
    for event in events:
        if event.end_date < today:
            skipped += 1
        else:
            selected.append(event)
    if skipped:
        logger.info(f"Excluding {skipped} past events")
    return selected


def validate_source(source: Iterable[Any], kind: str) -> None:
    """
    Reject a source snapshot that cannot be synced safely.

    Callers run this before building any remote client, so an invalid
    snapshot leaves the remote services untouched.

    Raises:
        ValidationError: If two entities share an identity key
    """
    ensure_unique((entity.identity_key for entity in source), kind)


@dataclass
class SyncResult:
    """
    Result of a sync run.

    Contains the planned actions and the report of their execution.
    """

    actions: ActionSet = field(default_factory=ActionSet)
    report: RunReport = field(default_factory=RunReport)

    def has_changes(self) -> bool:
        """Check if the run planned any remote mutation."""
        return self.actions.has_changes()


class SyncEngine:
    """
    One-way sync engine from the club roster to a Google service.

    Features:
    - Identity-key matching against a single snapshot listed per run
    - Create / update only; remote-only records are left alone
    - Bounded concurrency with per-action failure isolation
    - Dry-run mode for previewing changes

    Usage:
        engine = SyncEngine(EventsAdapter(calendar_api, calendar_id))
        result = engine.sync(events)
        print(result.report.summary())

        engine = SyncEngine(AclAdapter(calendar_api, calendar_id), dry_run=True)
        result = engine.sync_acl(members)
    """

    def __init__(
        self,
        adapter: RemoteAdapter,
        concurrency: int = DEFAULT_CONCURRENCY,
        dry_run: bool = False,
    ):
        """
        Initialize the sync engine.

        Args:
            adapter: Remote adapter for the target service
            concurrency: Worker pool size for executing actions
            dry_run: If True, plan actions without executing them
        """
        self.adapter = adapter
        self.concurrency = concurrency
        self.dry_run = dry_run

    @property
    def kind(self) -> str:
        return self.adapter.kind

    def _snapshot(self) -> list[Any]:
        logger.info(f"Listing remote {self.kind} records")
        snapshot = self.adapter.list()
        logger.info(f"Remote snapshot holds {len(snapshot)} {self.kind} records")
        return snapshot

    def analyze(self, source: Sequence[Any]) -> ActionSet:
        """
        Validate the source and diff it against a fresh remote snapshot.

        Raises:
            ValidationError: If the source holds duplicate identity keys;
                raised before any remote call
            RemoteCallError: If the snapshot cannot be listed
        """
        validate_source(source, self.kind)
        return diff(source, self._snapshot(), kind=self.kind)

    def analyze_acl(self, members: Sequence[Member], role: str = DEFAULT_ROLE) -> ActionSet:
        """
        Validate the roster and diff it against the calendar ACL.

        Raises:
            ValidationError: If the roster holds duplicate identity keys
            RemoteCallError: If the ACL cannot be listed
        """
        validate_source(members, "member")
        return diff_acl(members, self._snapshot(), role=role)

    def execute(self, actions: ActionSet) -> RunReport:
        """Apply planned actions, or only count them in dry-run mode."""
        if self.dry_run:
            counts = actions.counts()
            logger.info(f"Dry run, not applying {self.kind} changes")
            return RunReport(
                kind=self.kind,
                created=counts["create"],
                updated=counts["update"],
                unchanged=counts["noop"],
                dry_run=True,
            )

        coordinator = ExecutionCoordinator(self.adapter, concurrency=self.concurrency)
        return coordinator.execute(actions)

    def sync(self, source: Sequence[Any]) -> SyncResult:
        """
        Perform a complete sync run for events or members.

        Returns:
            SyncResult with the planned actions and their outcome
        """
        logger.info(
            f"Starting {self.kind} sync of {len(source)} records "
            f"(dry_run={self.dry_run})"
        )
        actions = self.analyze(source)
        return SyncResult(actions=actions, report=self.execute(actions))

    def sync_acl(self, members: Sequence[Member], role: str = DEFAULT_ROLE) -> SyncResult:
        """
        Perform a complete calendar sharing run for a member roster.

        Returns:
            SyncResult with the planned grants and their outcome
        """
        logger.info(
            f"Starting calendar sharing sync for {len(members)} members "
            f"(dry_run={self.dry_run})"
        )
        actions = self.analyze_acl(members, role=role)
        return SyncResult(actions=actions, report=self.execute(actions))
