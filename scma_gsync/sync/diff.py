"""
Matching and diff engine.

Pairs source entities with a frozen snapshot of remote entities by
identity key and classifies each source entity:

- no remote entity with the same key      -> CREATE
- remote entity with different content    -> UPDATE (targets the remote ref)
- remote entity with identical content    -> NOOP

Remote entities without a source counterpart never produce an action.
The remote side may hold entries curated by hand, so nothing is deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from scma_gsync.sync.acl import DEFAULT_ROLE, AclGrant
from scma_gsync.sync.member import Member
from scma_gsync.sync.validation import ensure_unique

logger = logging.getLogger(__name__)


class Operation(Enum):
    """Remote mutation required for an entity. There is no delete."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"


@dataclass(frozen=True)
class Action:
    """A single planned mutation for one source entity."""

    entity: Any
    operation: Operation
    remote_ref: Optional[str] = None

    @property
    def identity_key(self) -> str:
        return self.entity.identity_key

    def __str__(self) -> str:
        return f"{self.operation.value} {self.entity}"


@dataclass
class ActionSet:
    """
    Ordered collection of actions, at most one per identity key.

    Actions appear in source order.
    """

    actions: list[Action] = field(default_factory=list)

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def by_operation(self, operation: Operation) -> list[Action]:
        return [action for action in self.actions if action.operation is operation]

    @property
    def creates(self) -> list[Action]:
        return self.by_operation(Operation.CREATE)

    @property
    def updates(self) -> list[Action]:
        return self.by_operation(Operation.UPDATE)

    @property
    def noops(self) -> list[Action]:
        return self.by_operation(Operation.NOOP)

    def has_changes(self) -> bool:
        """Check if any action mutates the remote service."""
        return any(action.operation is not Operation.NOOP for action in self.actions)

    def counts(self) -> dict[str, int]:
        return {
            "create": len(self.creates),
            "update": len(self.updates),
            "noop": len(self.noops),
        }


def index_remote(remote: Iterable[Any]) -> dict[str, Any]:
    """
    Index a remote snapshot by identity key.

    When the remote service holds several entries with the same key the
    first one listed wins, and the others are left alone.
    """
    index: dict[str, Any] = {}
    for entity in remote:
        key = entity.identity_key
        if key in index:
            logger.warning(
                f"Remote holds more than one entry for {key}; "
                f"using {index[key].remote_ref}, ignoring {entity.remote_ref}"
            )
            continue
        index[key] = entity
    return index


def diff(source: Sequence[Any], remote: Iterable[Any], kind: str = "entity") -> ActionSet:
    """
    Compute the actions that bring the remote service in line with the source.

    Pure function of its inputs: the same source and snapshot always give
    the same ActionSet.

    Args:
        source: Source entities, already alias-resolved
        remote: Frozen remote snapshot
        kind: Entity kind used in messages ("event", "member", ...)

    Returns:
        ActionSet with one action per source entity

    Raises:
        ValidationError: If two source entities share an identity key
    """
    ensure_unique((entity.identity_key for entity in source), kind)

    remote_index = index_remote(remote)
    result: ActionSet = ActionSet()

    for entity in source:
        match = remote_index.get(entity.identity_key)
        if match is None:
            result.actions.append(Action(entity, Operation.CREATE))
        elif entity.same_content(match):
            result.actions.append(Action(entity, Operation.NOOP, match.remote_ref))
        else:
            result.actions.append(Action(entity, Operation.UPDATE, match.remote_ref))

    unmatched = len(remote_index.keys() - {entity.identity_key for entity in source})
    counts = result.counts()
    logger.info(
        f"Determined {kind} sync operations: "
        f"create={counts['create']}, update={counts['update']}, "
        f"unchanged={counts['noop']}, ignored remote-only={unmatched}"
    )
    return result


def acl_grants_for(members: Iterable[Member], role: str = DEFAULT_ROLE) -> list[AclGrant]:
    """Calendar grants wanted for a member roster."""
    return [AclGrant(identity_key=member.identity_key, role=role) for member in members]


def diff_acl(
    members: Sequence[Member],
    remote: Iterable[AclGrant],
    role: str = DEFAULT_ROLE,
) -> ActionSet:
    """
    Diff the calendar ACL against the member roster.

    Structurally identical to diff(); every member should hold at least
    ``role`` on the calendar.

    Raises:
        ValidationError: If two members share an identity key
    """
    ensure_unique((member.identity_key for member in members), "member")
    return diff(acl_grants_for(members, role), remote, kind="acl")
