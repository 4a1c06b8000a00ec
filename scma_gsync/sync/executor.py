"""
Execution coordinator for planned sync actions.

Runs an ActionSet against a remote adapter with a bounded worker pool.
Each action is independent: a failing action is recorded and the others
carry on. Revoked or rejected credentials are the exception, since no later
call could succeed either; they stop the dispatch of further actions. A
token endpoint outage only fails the action that hit it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional

from scma_gsync.api.base import RemoteAdapter, RemoteAuthError, TransientRemoteError
from scma_gsync.auth.google_auth import (
    AuthExpiredError,
    AuthTransientError,
    ConsentRequiredError,
)
from scma_gsync.sync.diff import Action, ActionSet, Operation

# Worker pool size; Google rate limits favour a small number
DEFAULT_CONCURRENCY = 3

# Errors after which no further remote call can succeed
FATAL_ERRORS = (AuthExpiredError, ConsentRequiredError, RemoteAuthError)

# Errors worth retrying in a later run
TRANSIENT_ERRORS = (TransientRemoteError, AuthTransientError)

logger = logging.getLogger(__name__)


class NotAttemptedError(Exception):
    """Raised for actions skipped because the run was aborted."""

    pass


@dataclass
class ActionFailure:
    """A failed action and its cause."""

    action: Action
    cause: str
    error_type: str
    transient: bool = False

    def __str__(self) -> str:
        return f"{self.action}: {self.error_type}: {self.cause}"


@dataclass
class RunReport:
    """
    Outcome of executing an ActionSet.

    Attributes:
        kind: Entity kind the report covers
        created: Number of remote records created
        updated: Number of remote records updated
        unchanged: Number of entities needing no change
        failures: Failed actions, in ActionSet order
        aborted: Cause of a fatal error that stopped dispatch, if any
        dry_run: True if actions were planned but not executed
    """

    kind: str = "entity"
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failures: list[ActionFailure] = field(default_factory=list)
    aborted: Optional[str] = None
    dry_run: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> bool:
        """True when every action succeeded."""
        return not self.failures and self.aborted is None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def merge(self, other: RunReport) -> RunReport:
        """Combine two reports, e.g. of consecutive runs in one command."""
        return RunReport(
            kind=self.kind if self.kind == other.kind else f"{self.kind}+{other.kind}",
            created=self.created + other.created,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
            failures=self.failures + other.failures,
            aborted=self.aborted or other.aborted,
            dry_run=self.dry_run and other.dry_run,
        )

    def summary(self) -> str:
        """Generate a human-readable summary of the run."""
        verb = "planned" if self.dry_run else "done"
        lines = [
            f"Sync {verb} ({self.kind}): created {self.created}, "
            f"updated {self.updated}, unchanged {self.unchanged}, "
            f"failed {self.failed}",
        ]
        if self.aborted:
            lines.append(f"  Aborted: {self.aborted}")
        for failure in self.failures:
            lines.append(f"  FAILED {failure}")
        return "\n".join(lines)


class ExecutionCoordinator:
    """
    Executes ActionSets through a remote adapter.

    Usage:
        coordinator = ExecutionCoordinator(adapter, concurrency=3)
        report = coordinator.execute(action_set)
        sys.exit(report.exit_code)
    """

    def __init__(self, adapter: RemoteAdapter, concurrency: int = DEFAULT_CONCURRENCY):
        self.adapter = adapter
        self.concurrency = max(1, concurrency)

    def _run(self, action: Action, abort: threading.Event) -> None:
        if abort.is_set():
            raise NotAttemptedError("not attempted, run aborted")

        try:
            if action.operation is Operation.CREATE:
                self.adapter.create(action.entity)
            elif action.operation is Operation.UPDATE:
                if not action.remote_ref:
                    raise ValueError(f"Update without remote reference: {action}")
                self.adapter.update(action.remote_ref, action.entity)
        except FATAL_ERRORS:
            # Stop queued actions before the worker picks up the next one
            abort.set()
            raise

    def execute(self, actions: ActionSet) -> RunReport:
        """
        Execute every action and report the outcome.

        NOOP actions are counted without a remote call. The others run on
        a pool of ``concurrency`` workers, each doing one call at a time.

        Returns:
            RunReport covering every action in the set
        """
        report = RunReport(kind=self.adapter.kind)
        pending = []
        for action in actions:
            if action.operation is Operation.NOOP:
                report.unchanged += 1
            else:
                pending.append(action)

        if not pending:
            logger.info(f"No {self.adapter.kind} changes to apply")
            return report

        logger.info(
            f"Applying {len(pending)} {self.adapter.kind} changes "
            f"with {self.concurrency} workers"
        )

        order = {id(action): index for index, action in enumerate(pending)}
        abort = threading.Event()

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"sync-{self.adapter.kind}"
        ) as executor:
            futures = {
                executor.submit(self._run, action, abort): action for action in pending
            }

            for future in as_completed(futures):
                action = futures[future]
                try:
                    future.result()
                except NotAttemptedError as e:
                    report.failures.append(
                        ActionFailure(action, str(e), type(e).__name__)
                    )
                    continue
                except FATAL_ERRORS as e:
                    logger.error(f"{action} failed, aborting run: {e}")
                    report.failures.append(ActionFailure(action, str(e), type(e).__name__))
                    if report.aborted is None:
                        report.aborted = str(e)
                    abort.set()
                    continue
                except Exception as e:
                    logger.error(f"{action} failed: {e}")
                    report.failures.append(
                        ActionFailure(
                            action,
                            str(e),
                            type(e).__name__,
                            transient=isinstance(e, TRANSIENT_ERRORS),
                        )
                    )
                    continue

                if action.operation is Operation.CREATE:
                    report.created += 1
                else:
                    report.updated += 1

        report.failures.sort(key=lambda failure: order[id(failure.action)])

        logger.info(
            f"Applied {self.adapter.kind} changes: created {report.created}, "
            f"updated {report.updated}, unchanged {report.unchanged}, "
            f"failed {report.failed}"
        )
        return report
