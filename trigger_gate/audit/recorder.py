"""Append-only audit recorder for admission decisions and approvals."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Iterator, Mapping

from trigger_gate.audit.replay_verifier import verify_audit_chain
from trigger_gate.audit.sink import AuditSink
from trigger_gate.audit.taxonomy import AuditEntry, AuditEntryType, entry_fingerprint
from trigger_gate.errors import AuditAppendViolation, AuditWriteFailure
from trigger_gate.logger import log_event
from trigger_gate.models import ApprovalRequest, Decision


class AuditRecorder:
    """Serializes appends to a sink and hash-chains every entry.

    ``record`` returns only after the sink has persisted the entry. Readers
    use ``iter_entries`` which reads straight from the sink and never waits
    on the writer lock.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("trigger_gate.audit.invalid retry_attempts")
        self._sink = sink
        self._retry_attempts = retry_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_sequence = 0
        self._last_hash: str | None = None
        self._open = False

    @property
    def stream_id(self) -> str:
        return self._sink.stream_id

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    def open(self) -> "AuditRecorder":
        with self._lock:
            if self._open:
                return self
            existing = list(self._scan(0))
            result = verify_audit_chain(existing, self._sink.stream_id)
            if not result.ok:
                log_event(
                    "audit",
                    f"open_failed stream={self._sink.stream_id} error={result.error} index={result.failed_index}",
                )
                raise ValueError(result.error)
            self._next_sequence = len(existing)
            self._last_hash = existing[-1][1] if existing else None
            self._open = True
        log_event("audit", f"opened stream={self._sink.stream_id} next_sequence={self._next_sequence}")
        return self

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False
        log_event("audit", f"closed stream={self._sink.stream_id} entries={self._next_sequence}")

    def record(self, decision: Decision, inputs: Mapping[str, Any]) -> AuditEntry:
        payload = {
            "decision": decision.as_dict(),
            "inputs": dict(inputs),
        }
        return self._append("decision.recorded", decision.decision_id, decision.policy_hash, payload)

    def record_approval(
        self,
        request: ApprovalRequest,
        entry_type: AuditEntryType,
        *,
        policy_hash: str = "",
        approver: str | None = None,
    ) -> AuditEntry:
        payload: dict[str, Any] = {"request": request.as_dict()}
        if approver is not None:
            payload["approver"] = approver
        return self._append(entry_type, request.request_id, policy_hash, payload)

    def iter_entries(self, start: int = 0) -> Iterator[AuditEntry]:
        """Lazily yield persisted entries from ``start``; safe to restart."""
        for entry, _ in self._scan(start):
            yield entry

    def _scan(self, start: int) -> Iterator[tuple[AuditEntry, str]]:
        sequence = max(0, start)
        while True:
            item = self._sink.read_entry(sequence)
            if item is None:
                return
            yield item
            sequence += 1

    def _append(
        self,
        entry_type: AuditEntryType,
        subject_id: str,
        policy_hash: str,
        payload: Mapping[str, Any],
    ) -> AuditEntry:
        with self._lock:
            if not self._open:
                raise AuditWriteFailure("trigger_gate.audit.closed")
            entry = AuditEntry(
                entry_type=entry_type,
                subject_id=subject_id,
                policy_hash=policy_hash or "",
                sequence=self._next_sequence,
                stream_id=self._sink.stream_id,
                prev_entry_hash=self._last_hash,
                payload=payload,
            )
            entry_hash = entry_fingerprint(entry)

            last_error: Exception | None = None
            for attempt in range(self._retry_attempts):
                try:
                    self._sink.write_entry(entry, entry_hash)
                    break
                except AuditAppendViolation:
                    log_event("audit", f"append_violation stream={entry.stream_id} sequence={entry.sequence}")
                    raise
                except Exception as exc:
                    last_error = exc
                    log_event(
                        "audit",
                        f"write_failed stream={entry.stream_id} sequence={entry.sequence} "
                        f"attempt={attempt + 1} error={exc}",
                    )
                    if attempt + 1 < self._retry_attempts:
                        self._sleep(self._retry_backoff_seconds * (2 ** attempt))
            else:
                raise AuditWriteFailure(
                    f"trigger_gate.audit.write_failed sequence={entry.sequence} error={last_error}"
                ) from last_error

            self._next_sequence += 1
            self._last_hash = entry_hash
        return entry
