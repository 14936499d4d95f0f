"""Anomaly scan over the audit trail for the monitoring collaborator."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Literal

from trigger_gate.audit.taxonomy import AuditEntry
from trigger_gate.models import parse_timestamp

AnomalyKind = Literal["repeated_deny", "young_account_admit"]


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    actor_identifier: str
    sequences: tuple[int, ...]
    detail: str


def scan_anomalies(
    entries: Iterable[AuditEntry],
    *,
    min_account_age_days: int,
    repeat_deny_threshold: int = 3,
) -> list[Anomaly]:
    """Flag actors denied repeatedly and admits of accounts below the age floor."""
    denies: dict[str, list[int]] = defaultdict(list)
    anomalies: list[Anomaly] = []

    for entry in entries:
        if entry.entry_type != "decision.recorded":
            continue
        decision = entry.payload.get("decision") or {}
        actor = (entry.payload.get("inputs") or {}).get("actor") or {}
        identifier = str(decision.get("actor_identifier") or actor.get("identifier") or "")
        outcome = decision.get("outcome")

        if outcome == "deny":
            denies[identifier].append(entry.sequence)
            continue
        if outcome != "admit":
            continue

        created_raw = actor.get("account_created_at")
        decided_raw = decision.get("timestamp")
        if not created_raw or not decided_raw:
            continue
        age = parse_timestamp(decided_raw) - parse_timestamp(created_raw)
        if age < timedelta(days=min_account_age_days):
            anomalies.append(
                Anomaly(
                    kind="young_account_admit",
                    actor_identifier=identifier,
                    sequences=(entry.sequence,),
                    detail=f"account_age_days={age.days} min={min_account_age_days}",
                )
            )

    for identifier, sequences in sorted(denies.items()):
        if len(sequences) >= repeat_deny_threshold:
            anomalies.append(
                Anomaly(
                    kind="repeated_deny",
                    actor_identifier=identifier,
                    sequences=tuple(sequences),
                    detail=f"denies={len(sequences)} threshold={repeat_deny_threshold}",
                )
            )
    return anomalies
