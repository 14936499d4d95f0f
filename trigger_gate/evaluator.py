from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from trigger_gate.audit.canonical_hash import build_decision_id_input, domain_hash
from trigger_gate.errors import UnknownEventType
from trigger_gate.models import (
    ApprovalRequest,
    Decision,
    Event,
    Outcome,
    ReasonCode,
    TrustTier,
    event_ref,
    isoformat_utc,
    utc_now,
    validate_event_type,
)
from trigger_gate.policy_loader import GatePolicy, normalize_path
from trigger_gate.sandbox import resolve

_DECISION_DOMAIN = "trigger_gate.decision_id.v1"


@dataclass(frozen=True)
class RuleContext:
    event: Event
    tier: TrustTier
    policy: GatePolicy
    sensitive_hits: tuple


@dataclass(frozen=True)
class PolicyRule:
    reason_code: ReasonCode
    outcome: Outcome
    applies: Callable[[RuleContext], bool]


def _recognized_event(event):
    try:
        validate_event_type(event.event_type)
    except UnknownEventType:
        return False
    return True


def touched_sensitive_paths(changed_paths, sensitive_paths):
    hits = set()
    for raw in changed_paths:
        path = normalize_path(raw)
        if not path:
            continue
        basename = path.rsplit("/", 1)[-1]
        for entry in sensitive_paths:
            if entry.endswith("/"):
                if path.startswith(entry):
                    hits.add(path)
            elif path == entry or basename == entry:
                hits.add(path)
    return tuple(sorted(hits))


# Ordered; the first rule that applies decides.
RULES: tuple[PolicyRule, ...] = (
    PolicyRule("actor_revoked", "deny", lambda ctx: ctx.tier == "revoked"),
    PolicyRule("unrecognized_event", "deny", lambda ctx: not _recognized_event(ctx.event)),
    PolicyRule(
        "dependency_or_ci_change",
        "admit_with_approval",
        lambda ctx: bool(ctx.event.is_fork and ctx.sensitive_hits),
    ),
    PolicyRule(
        "trusted_internal",
        "admit",
        lambda ctx: ctx.tier == "internal"
        and ctx.event.target_branch in ctx.policy.trusted_branches,
    ),
    PolicyRule(
        "trusted_recurring",
        "admit",
        lambda ctx: ctx.tier == "recurring_external" and not ctx.event.is_fork,
    ),
    PolicyRule(
        "manual_review_required",
        "admit_with_approval",
        lambda ctx: ctx.tier == "first_time_external"
        or (ctx.event.is_fork and ctx.tier != "internal"),
    ),
)

DEFAULT_RULE = PolicyRule("no_matching_policy", "deny", lambda ctx: True)


def evaluate_rules(event: Event, tier: TrustTier, policy: GatePolicy) -> tuple[PolicyRule, tuple]:
    ctx = RuleContext(
        event=event,
        tier=tier,
        policy=policy,
        sensitive_hits=touched_sensitive_paths(event.changed_paths, policy.sensitive_paths),
    )
    for rule in RULES:
        if rule.applies(ctx):
            return rule, ctx.sensitive_hits
    return DEFAULT_RULE, ctx.sensitive_hits


def build_decision(
    *,
    event: Event,
    tier: TrustTier,
    outcome: Outcome,
    reason_code: ReasonCode,
    policy: GatePolicy,
    now: datetime,
    policy_hash: str = "",
    supersedes: str | None = None,
    profile_outcome: Outcome | None = None,
) -> Decision:
    ref = event_ref(event)
    timestamp = isoformat_utc(now)
    decision_id = domain_hash(
        _DECISION_DOMAIN,
        build_decision_id_input(
            event_ref=ref,
            outcome=outcome,
            reason_code=reason_code,
            tier=tier,
            timestamp=timestamp,
            policy_hash=policy_hash,
            supersedes=supersedes,
        ),
    )
    sandbox = resolve(tier, profile_outcome or outcome, policy.sandbox_profiles)
    return Decision(
        decision_id=decision_id,
        event_ref=ref,
        actor_identifier=str(event.actor.identifier),
        outcome=outcome,
        tier=tier,
        sandbox_profile=sandbox,
        reason_code=reason_code,
        timestamp=now,
        policy_hash=policy_hash,
        supersedes=supersedes,
    )


def decide(
    event: Event,
    tier: TrustTier,
    policy: GatePolicy,
    now: datetime | None = None,
    policy_hash: str = "",
) -> Decision:
    rule, _ = evaluate_rules(event, tier, policy)
    return build_decision(
        event=event,
        tier=tier,
        outcome=rule.outcome,
        reason_code=rule.reason_code,
        policy=policy,
        now=now or utc_now(),
        policy_hash=policy_hash,
    )


def finalize_decision(
    prior: Decision,
    request: ApprovalRequest,
    event: Event,
    tier: TrustTier,
    policy: GatePolicy,
    now: datetime | None = None,
    policy_hash: str = "",
) -> Decision:
    """Close out an approval-gated decision with a new, superseding Decision.

    An approved request is re-evaluated against ``policy`` so a policy change
    or a ban issued while the request was pending still takes effect.
    """
    now = now or utc_now()
    if request.state == "pending":
        raise ValueError(f"trigger_gate.approval.invalid not_terminal request_id={request.request_id}")
    if request.event_ref != prior.event_ref:
        raise ValueError(f"trigger_gate.approval.invalid event_ref_mismatch request_id={request.request_id}")

    common = dict(
        event=event,
        tier=tier,
        policy=policy,
        now=now,
        policy_hash=policy_hash,
        supersedes=prior.decision_id,
    )
    if request.state == "rejected":
        return build_decision(outcome="deny", reason_code="approval_rejected", **common)
    if request.state == "expired":
        return build_decision(outcome="deny", reason_code="approval_expired", **common)

    rule, _ = evaluate_rules(event, tier, policy)
    if rule.outcome == "deny":
        return build_decision(outcome="deny", reason_code=rule.reason_code, **common)
    if rule.outcome == "admit":
        return build_decision(outcome="admit", reason_code=rule.reason_code, **common)
    return build_decision(
        outcome="admit",
        reason_code="approved_after_review",
        profile_outcome="admit_with_approval",
        **common,
    )
