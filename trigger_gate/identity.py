"""Exact, anchored identity matching against allow/deny rosters.

Every roster is a set of whole identifier strings. Membership is decided by
full-string equality only; there is no pattern, prefix or substring form.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal, Mapping

from trigger_gate.errors import MalformedIdentity, PolicyConfigInvalid
from trigger_gate.models import as_utc, parse_timestamp, utc_now

MAX_IDENTIFIER_LENGTH = 100
ALLOWED_IDENTIFIER_CHARS = frozenset(string.ascii_letters + string.digits + "-_.[]")

LookupResult = Literal["denied", "allowed"]


def validate_identifier(identifier: Any) -> str:
    if not isinstance(identifier, str):
        raise MalformedIdentity(identifier, "not_a_string")
    if not identifier:
        raise MalformedIdentity(identifier, "empty")
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise MalformedIdentity(identifier, "too_long")
    for char in identifier:
        if char not in ALLOWED_IDENTIFIER_CHARS:
            raise MalformedIdentity(identifier, f"forbidden_char=U+{ord(char):04X}")
    return identifier


@dataclass(frozen=True)
class RegistryEntry:
    identifier: str
    expires_at: datetime | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        return as_utc(now or utc_now()) < as_utc(self.expires_at)


def matches(identifier: str, entry: RegistryEntry, now: datetime | None = None) -> bool:
    """True iff ``identifier`` is the whole of ``entry.identifier`` and the entry is live."""
    validate_identifier(identifier)
    if identifier != entry.identifier:
        return False
    return entry.is_active(now)


@dataclass(frozen=True)
class IdentityList:
    name: str
    entries: Mapping[str, RegistryEntry] = field(default_factory=dict)

    def contains(self, identifier: str, now: datetime | None = None) -> bool:
        entry = self.entries.get(identifier)
        if entry is None:
            return False
        return matches(identifier, entry, now)

    def __len__(self) -> int:
        return len(self.entries)

    def identifiers(self) -> list[str]:
        return sorted(self.entries)


@dataclass(frozen=True)
class IdentityRegistry:
    internal: IdentityList = field(default_factory=lambda: IdentityList("internal"))
    denylist: IdentityList = field(default_factory=lambda: IdentityList("denylist"))
    approvers: IdentityList = field(default_factory=lambda: IdentityList("approvers"))


def lookup(
    identifier: str,
    registry: IdentityRegistry,
    now: datetime | None = None,
) -> LookupResult | None:
    """Resolve an identifier against the rosters; the denylist always wins."""
    validate_identifier(identifier)
    if registry.denylist.contains(identifier, now):
        return "denied"
    if registry.internal.contains(identifier, now):
        return "allowed"
    return None


def is_approver(identifier: str, registry: IdentityRegistry, now: datetime | None = None) -> bool:
    validate_identifier(identifier)
    if registry.denylist.contains(identifier, now):
        return False
    return registry.approvers.contains(identifier, now)


def build_identity_list(name: str, raw_entries: Iterable[Any] | None) -> IdentityList:
    entries: dict[str, RegistryEntry] = {}
    for raw in raw_entries or ():
        if isinstance(raw, Mapping):
            identifier = raw.get("identifier")
            expires_raw = raw.get("expires_at")
        else:
            identifier = raw
            expires_raw = None
        try:
            validate_identifier(identifier)
        except MalformedIdentity as exc:
            raise PolicyConfigInvalid(
                f"identities.{name} entry {identifier!r} is malformed: {exc.reason}"
            ) from exc
        expires_at = None
        if expires_raw is not None:
            try:
                expires_at = parse_timestamp(expires_raw)
            except ValueError as exc:
                raise PolicyConfigInvalid(
                    f"identities.{name} entry {identifier!r} has invalid expires_at"
                ) from exc
        if identifier in entries:
            raise PolicyConfigInvalid(f"identities.{name} lists {identifier!r} twice")
        entries[identifier] = RegistryEntry(identifier=identifier, expires_at=expires_at)
    return IdentityList(name=name, entries=entries)


def build_registry(config: Mapping[str, Any] | None) -> IdentityRegistry:
    config = config or {}
    if not isinstance(config, Mapping):
        raise PolicyConfigInvalid("identities must be a mapping")
    return IdentityRegistry(
        internal=build_identity_list("internal", config.get("internal")),
        denylist=build_identity_list("denylist", config.get("denylist")),
        approvers=build_identity_list("approvers", config.get("approvers")),
    )
