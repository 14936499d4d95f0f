"""Frozen records shared by the trigger gate components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Literal, Mapping

from trigger_gate.audit.canonical_hash import domain_hash
from trigger_gate.errors import UnknownEventType

TrustTier = Literal["revoked", "first_time_external", "recurring_external", "internal"]
Outcome = Literal["admit", "admit_with_approval", "deny"]
EventType = Literal["push", "pull_request", "pull_request_target"]
NetworkMode = Literal["none", "isolated", "full"]
FilesystemMode = Literal["read_only", "read_write"]
ApprovalState = Literal["pending", "approved", "rejected", "expired"]
ReasonCode = Literal[
    "actor_revoked",
    "unrecognized_event",
    "malformed_identity",
    "dependency_or_ci_change",
    "trusted_internal",
    "trusted_recurring",
    "manual_review_required",
    "no_matching_policy",
    "approved_after_review",
    "approval_rejected",
    "approval_expired",
]

# Ordered most restrictive first.
TRUST_TIERS: tuple[TrustTier, ...] = (
    "revoked",
    "first_time_external",
    "recurring_external",
    "internal",
)
EXTERNAL_TIERS: tuple[TrustTier, ...] = ("first_time_external", "recurring_external")
OUTCOMES: tuple[Outcome, ...] = ("admit", "admit_with_approval", "deny")
EVENT_TYPES: tuple[EventType, ...] = ("push", "pull_request", "pull_request_target")
NETWORK_MODES: tuple[NetworkMode, ...] = ("none", "isolated", "full")
FILESYSTEM_MODES: tuple[FilesystemMode, ...] = ("read_only", "read_write")
TERMINAL_APPROVAL_STATES = frozenset({"approved", "rejected", "expired"})
INTERNAL_ASSOCIATION = "member"

_TIER_RANK = {tier: index for index, tier in enumerate(TRUST_TIERS)}
_EVENT_REF_DOMAIN = "trigger_gate.event_ref.v1"


def tier_rank(tier: str) -> int:
    if tier not in _TIER_RANK:
        raise ValueError(f"trigger_gate.tier.invalid tier={tier!r}")
    return _TIER_RANK[tier]


def most_restrictive(*tiers: TrustTier) -> TrustTier:
    if not tiers:
        raise ValueError("trigger_gate.tier.invalid empty")
    return min(tiers, key=tier_rank)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        raise ValueError(f"trigger_gate.timestamp.invalid value={value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


@dataclass(frozen=True)
class Actor:
    identifier: str
    account_created_at: datetime
    is_app: bool = False
    association: str = "none"

    def account_age(self, now: datetime) -> timedelta:
        return as_utc(now) - as_utc(self.account_created_at)


@dataclass(frozen=True)
class ContributorHistory:
    merged_contributions: int = 0
    prior_denials: int = 0


@dataclass(frozen=True)
class Event:
    event_type: str
    source_branch: str
    target_branch: str
    is_fork: bool
    changed_paths: frozenset[str]
    actor: Actor
    repository: str = ""
    delivery_id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.changed_paths, frozenset):
            object.__setattr__(self, "changed_paths", frozenset(self.changed_paths))


def validate_event_type(event_type: Any) -> EventType:
    if event_type not in EVENT_TYPES:
        raise UnknownEventType(event_type)
    return event_type


def event_ref(event: Event) -> str:
    return domain_hash(
        _EVENT_REF_DOMAIN,
        {
            "repository": event.repository,
            "delivery_id": event.delivery_id,
            "event_type": str(event.event_type),
            "source_branch": event.source_branch,
            "target_branch": event.target_branch,
            "is_fork": bool(event.is_fork),
            "changed_paths": sorted(event.changed_paths),
            "actor": str(event.actor.identifier),
        },
    )


def event_from_mapping(data: Mapping[str, Any]) -> Event:
    """Build an Event from an already-normalized mapping.

    The event type is carried through unchecked so that an unknown type still
    reaches the policy engine and is denied with an auditable reason.
    """
    actor_data = data.get("actor") or {}
    actor = Actor(
        identifier=actor_data.get("identifier"),
        account_created_at=parse_timestamp(actor_data.get("account_created_at")),
        is_app=bool(actor_data.get("is_app", False)),
        association=str(actor_data.get("association") or "none"),
    )
    return Event(
        event_type=str(data.get("event_type") or ""),
        source_branch=str(data.get("source_branch") or ""),
        target_branch=str(data.get("target_branch") or ""),
        is_fork=bool(data.get("is_fork", False)),
        changed_paths=frozenset(str(p) for p in data.get("changed_paths") or ()),
        actor=actor,
        repository=str(data.get("repository") or ""),
        delivery_id=str(data.get("delivery_id") or ""),
    )


@dataclass(frozen=True)
class SandboxProfile:
    network_mode: NetworkMode
    filesystem_mode: FilesystemMode
    cpu_millicores: int
    memory_limit_mb: int
    credential_scope: frozenset[str] = field(default_factory=frozenset)
    token_ttl_seconds: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.credential_scope, frozenset):
            object.__setattr__(self, "credential_scope", frozenset(self.credential_scope))

    def as_dict(self) -> dict[str, Any]:
        return {
            "network_mode": self.network_mode,
            "filesystem_mode": self.filesystem_mode,
            "cpu_millicores": self.cpu_millicores,
            "memory_limit_mb": self.memory_limit_mb,
            "credential_scope": sorted(self.credential_scope),
            "token_ttl_seconds": self.token_ttl_seconds,
        }


@dataclass(frozen=True)
class Decision:
    decision_id: str
    event_ref: str
    actor_identifier: str
    outcome: Outcome
    tier: TrustTier
    sandbox_profile: SandboxProfile
    reason_code: ReasonCode
    timestamp: datetime
    policy_hash: str = ""
    supersedes: str | None = None

    @property
    def admitted(self) -> bool:
        return self.outcome == "admit"

    def as_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "event_ref": self.event_ref,
            "actor_identifier": self.actor_identifier,
            "outcome": self.outcome,
            "tier": self.tier,
            "sandbox_profile": self.sandbox_profile.as_dict(),
            "reason_code": self.reason_code,
            "timestamp": isoformat_utc(self.timestamp),
            "policy_hash": self.policy_hash,
            "supersedes": self.supersedes,
        }


@dataclass(frozen=True)
class ApprovalRequest:
    request_id: str
    event_ref: str
    actor_identifier: str
    requested_at: datetime
    expiry_deadline: datetime
    required_approvals: int
    state: ApprovalState = "pending"
    approvers: frozenset[str] = field(default_factory=frozenset)
    decided_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_APPROVAL_STATES

    def is_overdue(self, now: datetime) -> bool:
        return self.state == "pending" and as_utc(now) > as_utc(self.expiry_deadline)

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "event_ref": self.event_ref,
            "actor_identifier": self.actor_identifier,
            "requested_at": isoformat_utc(self.requested_at),
            "expiry_deadline": isoformat_utc(self.expiry_deadline),
            "required_approvals": self.required_approvals,
            "state": self.state,
            "approvers": sorted(self.approvers),
            "decided_at": isoformat_utc(self.decided_at),
        }
