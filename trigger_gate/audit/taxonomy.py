"""Audit entry taxonomy.

Pure helpers only: no I/O, no clock access, no sink coupling.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from trigger_gate.audit.canonical_hash import (
    build_audit_entry_body_input,
    build_audit_entry_identity_input,
    domain_hash,
)

AuditEntryType = Literal[
    "decision.recorded",
    "approval.requested",
    "approval.progressed",
    "approval.approved",
    "approval.rejected",
    "approval.expired",
]

AUDIT_ENTRY_TYPES: tuple[str, ...] = (
    "decision.recorded",
    "approval.requested",
    "approval.progressed",
    "approval.approved",
    "approval.rejected",
    "approval.expired",
)

_ENTRY_DOMAIN = "trigger_gate.audit_entry.v1"


@dataclass(frozen=True)
class AuditEntry:
    entry_type: AuditEntryType
    subject_id: str
    policy_hash: str
    sequence: int
    stream_id: str
    prev_entry_hash: str | None
    payload: Mapping[str, Any]


def validate_audit_entry(entry: AuditEntry) -> None:
    if entry.entry_type not in AUDIT_ENTRY_TYPES:
        raise ValueError("trigger_gate.audit.invalid entry_type")
    if not entry.subject_id:
        raise ValueError("trigger_gate.audit.invalid subject_id")
    if not entry.stream_id:
        raise ValueError("trigger_gate.audit.invalid stream_id")
    if not isinstance(entry.sequence, int) or isinstance(entry.sequence, bool) or entry.sequence < 0:
        raise ValueError("trigger_gate.audit.invalid sequence")
    if entry.sequence == 0 and entry.prev_entry_hash:
        raise ValueError("trigger_gate.audit.invalid genesis_has_prev")
    if entry.sequence > 0 and not entry.prev_entry_hash:
        raise ValueError("trigger_gate.audit.invalid prev_entry_hash required")


def entry_fingerprint(entry: AuditEntry) -> str:
    identity_input = build_audit_entry_identity_input(
        entry_type=entry.entry_type,
        subject_id=entry.subject_id,
        policy_hash=entry.policy_hash,
        sequence=entry.sequence,
        stream_id=entry.stream_id,
        prev_entry_hash=entry.prev_entry_hash,
    )
    body_input = build_audit_entry_body_input(payload=entry.payload)
    return domain_hash(_ENTRY_DOMAIN, {"identity": identity_input, "body": body_input})


def entry_from_mapping(data: Mapping[str, Any]) -> AuditEntry:
    try:
        return AuditEntry(
            entry_type=data["entry_type"],
            subject_id=str(data["subject_id"]),
            policy_hash=str(data.get("policy_hash") or ""),
            sequence=int(data["sequence"]),
            stream_id=str(data["stream_id"]),
            prev_entry_hash=data.get("prev_entry_hash"),
            payload=data["payload"],
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("trigger_gate.audit.invalid entry_payload") from exc


def entry_to_mapping(entry: AuditEntry) -> dict[str, Any]:
    return {
        "entry_type": entry.entry_type,
        "subject_id": entry.subject_id,
        "policy_hash": entry.policy_hash,
        "sequence": entry.sequence,
        "stream_id": entry.stream_id,
        "prev_entry_hash": entry.prev_entry_hash,
        "payload": entry.payload,
    }
