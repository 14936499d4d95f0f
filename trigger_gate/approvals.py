"""Manual approval workflow for admit-with-approval decisions.

Requests move only from ``pending`` to one of ``approved``, ``rejected`` or
``expired``. Each request carries its own lock, so approvers working on
different requests never contend, and concurrent approvals on the same
request accumulate without lost updates.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timedelta
from typing import Callable, Container, Iterable, Protocol

from trigger_gate.audit.canonical_hash import build_request_id_input, domain_hash
from trigger_gate.errors import ApprovalNotFound, ApproverNotAuthorized, MalformedIdentity
from trigger_gate.identity import is_approver, validate_identifier
from trigger_gate.logger import log_event
from trigger_gate.models import ApprovalRequest, as_utc, isoformat_utc, utc_now
from trigger_gate.policy_loader import GatePolicy

_REQUEST_DOMAIN = "trigger_gate.approval_request.v1"

# Called with the new snapshot before it is committed; raising aborts the
# transition and leaves the stored request unchanged.
TransitionHook = Callable[[ApprovalRequest, str, "str | None"], None]


class ApprovalNotifier(Protocol):
    def notify_pending(self, request: ApprovalRequest) -> None: ...


class LogApprovalNotifier:
    def notify_pending(self, request: ApprovalRequest) -> None:
        log_event(
            "approval",
            (
                f"pending request_id={request.request_id} actor={request.actor_identifier} "
                f"required={request.required_approvals} deadline={isoformat_utc(request.expiry_deadline)}"
            ),
        )


@dataclasses.dataclass
class _Slot:
    request: ApprovalRequest
    lock: threading.Lock = dataclasses.field(default_factory=threading.Lock)


class ApprovalWorkflow:
    def __init__(
        self,
        policy_provider: Callable[[], GatePolicy],
        *,
        notifier: ApprovalNotifier | None = None,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self._policy_provider = policy_provider
        self._notifier = notifier or LogApprovalNotifier()
        self._on_transition = on_transition
        self._slots: dict[str, _Slot] = {}
        self._by_event: dict[str, str] = {}
        # Guards slot creation only; transitions take the per-request lock.
        self._index_lock = threading.Lock()

    def open(self, event_ref: str, actor_identifier: str, now: datetime | None = None) -> ApprovalRequest:
        now = as_utc(now or utc_now())
        while True:
            slot, created, previous_id = self._reserve(event_ref, actor_identifier, now)
            if created:
                break
            # Another caller is still auditing this request; wait for it.
            with slot.lock:
                if self._slots.get(slot.request.request_id) is slot:
                    return slot.request

        request = slot.request
        try:
            if self._on_transition is not None:
                self._on_transition(request, "approval.requested", None)
        except Exception:
            with self._index_lock:
                self._slots.pop(request.request_id, None)
                if self._by_event.get(event_ref) == request.request_id:
                    if previous_id is None:
                        del self._by_event[event_ref]
                    else:
                        self._by_event[event_ref] = previous_id
            raise
        finally:
            slot.lock.release()

        try:
            self._notifier.notify_pending(request)
        except Exception as exc:
            log_event("approval", f"notify_failed request_id={request.request_id} error={exc}")
        return request

    def _reserve(self, event_ref: str, actor_identifier: str, now: datetime) -> tuple[_Slot, bool, str | None]:
        """Return the live slot for ``event_ref`` or register a new one.

        A new slot is returned with its lock held; the caller releases it once
        the ``approval.requested`` entry is written.
        """
        policy = self._policy_provider()
        with self._index_lock:
            existing_id = self._by_event.get(event_ref)
            if existing_id is not None:
                existing = self._slots[existing_id]
                if not existing.request.is_terminal:
                    return existing, False, existing_id

            attempt = 0
            while True:
                request_id = domain_hash(
                    _REQUEST_DOMAIN,
                    build_request_id_input(
                        event_ref=event_ref,
                        actor_identifier=actor_identifier,
                        requested_at=isoformat_utc(now),
                        attempt=attempt,
                    ),
                )
                if request_id not in self._slots:
                    break
                attempt += 1

            slot = _Slot(
                request=ApprovalRequest(
                    request_id=request_id,
                    event_ref=event_ref,
                    actor_identifier=actor_identifier,
                    requested_at=now,
                    expiry_deadline=now + timedelta(hours=policy.approval_ttl_hours),
                    required_approvals=policy.min_approvers,
                )
            )
            slot.lock.acquire()
            self._slots[request_id] = slot
            self._by_event[event_ref] = request_id
        return slot, True, existing_id

    def get(self, request_id: str) -> ApprovalRequest:
        return self._slot(request_id).request

    def for_event(self, event_ref: str) -> ApprovalRequest | None:
        slot = self._slots.get(self._by_event.get(event_ref, ""))
        if slot is None:
            return None
        return slot.request

    def pending(self) -> list[ApprovalRequest]:
        return [slot.request for slot in list(self._slots.values()) if slot.request.state == "pending"]

    def approve(self, request_id: str, approver: str, now: datetime | None = None) -> ApprovalRequest:
        now = as_utc(now or utc_now())
        slot = self._slot(request_id)
        with slot.lock:
            current = slot.request
            if current.is_terminal:
                log_event("approval", f"noop request_id={request_id} state={current.state} approver={approver}")
                return current
            self._authorize(current, approver, now)
            if current.is_overdue(now):
                return self._commit(slot, _expired(current, now), "approval.expired", None)
            if approver in current.approvers:
                log_event("approval", f"duplicate request_id={request_id} approver={approver}")
                return current

            approvers = current.approvers | {approver}
            if len(approvers) >= current.required_approvals:
                updated = dataclasses.replace(current, approvers=approvers, state="approved", decided_at=now)
                return self._commit(slot, updated, "approval.approved", approver)
            updated = dataclasses.replace(current, approvers=approvers)
            return self._commit(slot, updated, "approval.progressed", approver)

    def reject(self, request_id: str, approver: str, now: datetime | None = None) -> ApprovalRequest:
        now = as_utc(now or utc_now())
        slot = self._slot(request_id)
        with slot.lock:
            current = slot.request
            if current.is_terminal:
                log_event("approval", f"noop request_id={request_id} state={current.state} approver={approver}")
                return current
            self._authorize(current, approver, now)
            if current.is_overdue(now):
                return self._commit(slot, _expired(current, now), "approval.expired", None)
            updated = dataclasses.replace(current, state="rejected", decided_at=now)
            return self._commit(slot, updated, "approval.rejected", approver)

    def expire(self, request_id: str, now: datetime | None = None) -> ApprovalRequest:
        now = as_utc(now or utc_now())
        slot = self._slot(request_id)
        with slot.lock:
            current = slot.request
            if not current.is_overdue(now):
                return current
            return self._commit(slot, _expired(current, now), "approval.expired", None)

    def sweep_expired(self, now: datetime | None = None) -> list[ApprovalRequest]:
        now = as_utc(now or utc_now())
        expired = []
        for request_id in self._overdue_ids(self._slots.values(), now):
            request = self.expire(request_id, now)
            if request.state == "expired" and request.decided_at == now:
                expired.append(request)
        return expired

    def prune_terminal(self, decided_before: datetime, keep: Container[str] = ()) -> int:
        """Forget terminal requests decided before ``decided_before``.

        Requests named in ``keep`` stay regardless of age.
        """
        decided_before = as_utc(decided_before)
        removed = 0
        with self._index_lock:
            for request_id, slot in list(self._slots.items()):
                request = slot.request
                if not request.is_terminal or request_id in keep:
                    continue
                if request.decided_at is None or as_utc(request.decided_at) >= decided_before:
                    continue
                del self._slots[request_id]
                if self._by_event.get(request.event_ref) == request_id:
                    del self._by_event[request.event_ref]
                removed += 1
        if removed:
            log_event("approval", f"pruned terminal={removed}")
        return removed

    def _overdue_ids(self, slots: Iterable[_Slot], now: datetime) -> list[str]:
        return [slot.request.request_id for slot in list(slots) if slot.request.is_overdue(now)]

    def _slot(self, request_id: str) -> _Slot:
        slot = self._slots.get(request_id)
        if slot is None:
            raise ApprovalNotFound(request_id)
        return slot

    def _authorize(self, request: ApprovalRequest, approver: str, now: datetime) -> None:
        try:
            validate_identifier(approver)
        except MalformedIdentity as exc:
            raise ApproverNotAuthorized(request.request_id, str(approver), "malformed_identity") from exc
        if approver == request.actor_identifier:
            log_event("approval", f"self_approval_forbidden request_id={request.request_id} approver={approver}")
            raise ApproverNotAuthorized(request.request_id, approver, "self_approval_forbidden")
        if not is_approver(approver, self._policy_provider().identities, now):
            log_event("approval", f"not_on_roster request_id={request.request_id} approver={approver}")
            raise ApproverNotAuthorized(request.request_id, approver, "not_on_approver_roster")

    def _commit(self, slot: _Slot, updated: ApprovalRequest, entry_type: str, approver: str | None) -> ApprovalRequest:
        if self._on_transition is not None:
            self._on_transition(updated, entry_type, approver)
        slot.request = updated
        log_event(
            "approval",
            (
                f"{entry_type} request_id={updated.request_id} state={updated.state} "
                f"approvals={len(updated.approvers)}/{updated.required_approvals}"
            ),
        )
        return updated


def _expired(request: ApprovalRequest, now: datetime) -> ApprovalRequest:
    return dataclasses.replace(request, state="expired", decided_at=now)


class ExpirySweeper:
    """Runs ``sweep`` on a background thread every ``interval_seconds``."""

    def __init__(
        self,
        sweep: Callable[[], object],
        interval_seconds: float = 60.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("trigger_gate.sweeper.invalid interval_seconds")
        self._sweep = sweep
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="trigger-gate-expiry-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._sweep()
            except Exception as exc:
                # The next tick retries; requests stay pending until then.
                log_event("sweeper", f"sweep_failed error={exc}")
