"""
Email alias resolution.

Members may register on the club roster with one address but hold their
Google account under another. The alias file maps roster addresses to
canonical addresses:

    jdoe@old.example.com: jdoe@example.com
    rdoe@work.example.com: rdoe@example.com

Resolution is a single lookup. An alias target is never looked up again,
so chains (A -> B, B -> C) resolve A to B.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

import yaml

from scma_gsync.sync.member import Member
from scma_gsync.sync.validation import ValidationError, normalize_email

logger = logging.getLogger(__name__)


class AliasResolver:
    """
    Maps source-observed emails to canonical emails.

    Usage:
        resolver = AliasResolver.from_file("email-aliases.yml")
        resolver.resolve("jdoe@old.example.com")  # "jdoe@example.com"
        members = resolver.resolve_members(members)
    """

    def __init__(self, aliases: Mapping[str, str] | None = None):
        self._aliases: dict[str, str] = {}
        for source, canonical in (aliases or {}).items():
            self._aliases[normalize_email(source)] = normalize_email(canonical)

    @classmethod
    def from_file(cls, path: Path | str | None) -> AliasResolver:
        """
        Load the alias map from a YAML mapping document.

        A missing path yields an empty resolver.

        Raises:
            ValidationError: If the file cannot be read, is not a mapping,
                or contains malformed emails
        """
        if path is None:
            return cls()

        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Failed to load email aliases from {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError(
                f"Email aliases file {path} must contain a mapping, "
                f"got {type(data).__name__}"
            )

        resolver = cls(data)
        logger.info(f"Loaded {len(resolver)} email aliases from {path}")
        return resolver

    def resolve(self, identity_key: str) -> str:
        """Return the canonical email for identity_key, or identity_key unchanged."""
        return self._aliases.get(identity_key.strip().lower(), identity_key)

    def resolve_members(self, members: Iterable[Member]) -> list[Member]:
        """Apply alias resolution to the identity key of every member."""
        resolved = []
        for member in members:
            canonical = self.resolve(member.identity_key)
            if canonical != member.identity_key:
                logger.debug(f"Alias {member.identity_key} -> {canonical}")
                member = member.with_identity(canonical)
            resolved.append(member)
        return resolved

    def __len__(self) -> int:
        return len(self._aliases)

    def __contains__(self, identity_key: object) -> bool:
        return isinstance(identity_key, str) and identity_key.lower() in self._aliases
