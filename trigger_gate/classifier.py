"""Contributor classification into trust tiers.

Pure function of the actor, its contribution history and the policy. The
result is recomputed for every event so a new denylist entry applies on the
very next trigger.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from trigger_gate.identity import lookup, validate_identifier
from trigger_gate.models import (
    INTERNAL_ASSOCIATION,
    Actor,
    ContributorHistory,
    TrustTier,
    utc_now,
)
from trigger_gate.policy_loader import GatePolicy


def classify(
    actor: Actor,
    history: ContributorHistory | None,
    policy: GatePolicy,
    now: datetime | None = None,
) -> TrustTier:
    identifier = validate_identifier(actor.identifier)
    now = now or utc_now()
    history = history or ContributorHistory()

    roster_status = lookup(identifier, policy.identities, now)
    if roster_status == "denied":
        return "revoked"

    # Young accounts stay first-time regardless of roster or history.
    if actor.account_age(now) < timedelta(days=policy.min_account_age_days):
        return "first_time_external"

    if actor.association == INTERNAL_ASSOCIATION and roster_status == "allowed":
        return "internal"

    if (
        history.merged_contributions >= policy.recurring_min_contributions
        and history.prior_denials == 0
    ):
        return "recurring_external"

    return "first_time_external"
