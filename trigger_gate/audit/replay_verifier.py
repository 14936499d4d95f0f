"""Pure replay verification helpers for audit streams."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from trigger_gate.audit.taxonomy import AuditEntry, entry_fingerprint, validate_audit_entry


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    error: str | None = None
    failed_index: int | None = None
    entries_checked: int = 0


def verify_audit_chain(
    entries: Iterable[tuple[AuditEntry, str]],
    stream_id: str,
) -> VerificationResult:
    """Check sequence contiguity, hash links and stored hashes of a stream.

    ``entries`` yields ``(entry, stored_entry_hash)`` pairs in sequence order.
    """
    if not stream_id:
        return VerificationResult(ok=False, error="trigger_gate.replay.invalid stream_id")

    previous_hash: str | None = None
    expected_sequence = 0
    index = -1

    for index, (entry, stored_hash) in enumerate(entries):
        if entry.stream_id != stream_id:
            return VerificationResult(
                ok=False, error="trigger_gate.replay.invalid stream_id_mismatch", failed_index=index
            )
        try:
            validate_audit_entry(entry)
        except ValueError as exc:
            return VerificationResult(ok=False, error=str(exc), failed_index=index)
        if entry.sequence != expected_sequence:
            return VerificationResult(
                ok=False, error="trigger_gate.replay.invalid sequence", failed_index=index
            )
        if (entry.prev_entry_hash or "") != (previous_hash or ""):
            return VerificationResult(
                ok=False, error="trigger_gate.replay.invalid prev_entry_hash", failed_index=index
            )

        computed_hash = entry_fingerprint(entry)
        if stored_hash != computed_hash:
            return VerificationResult(
                ok=False, error="trigger_gate.replay.invalid entry_hash_mismatch", failed_index=index
            )

        previous_hash = computed_hash
        expected_sequence += 1

    return VerificationResult(ok=True, entries_checked=index + 1)
