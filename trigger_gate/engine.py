"""Build trigger authorization engine.

Ties the pure components (identity matching, classification, policy
evaluation, sandbox resolution) to the two stateful ones (approval workflow
and audit recorder). A decision is returned to the caller only after its
audit entry has been persisted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from trigger_gate.approvals import ApprovalNotifier, ApprovalWorkflow, ExpirySweeper
from trigger_gate.audit.recorder import AuditRecorder
from trigger_gate.audit.sink import AuditSink, MemoryAuditSink
from trigger_gate.classifier import classify
from trigger_gate.errors import EngineBusy, MalformedIdentity, TriggerGateError
from trigger_gate.evaluator import build_decision, decide, finalize_decision
from trigger_gate.logger import log_event
from trigger_gate.models import (
    ApprovalRequest,
    ContributorHistory,
    Decision,
    Event,
    as_utc,
    isoformat_utc,
    utc_now,
)
from trigger_gate.policy_loader import GatePolicy, load_policy


@dataclass(frozen=True)
class Evaluation:
    decision: Decision
    approval: ApprovalRequest | None = None


@dataclass(frozen=True)
class _PendingContext:
    event: Event
    history: ContributorHistory
    decision: Decision


class TriggerGateEngine:
    def __init__(
        self,
        policy: GatePolicy,
        policy_hash: str = "",
        *,
        sink: AuditSink | None = None,
        notifier: ApprovalNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_seconds: float = 0.5,
        sweep_interval_seconds: float | None = None,
        approval_retention_seconds: float = 86400.0,
    ) -> None:
        self._policy = policy
        self._policy_hash = policy_hash
        self._clock = clock
        self._busy_timeout = busy_timeout_seconds
        # Finalized requests are kept this long so replayed approvals stay no-ops.
        self._approval_retention = timedelta(seconds=approval_retention_seconds)
        self._in_flight = threading.BoundedSemaphore(policy.max_in_flight)
        self._recorder = AuditRecorder(sink or MemoryAuditSink(), retry_attempts=policy.audit_retry_attempts)
        self._approvals = ApprovalWorkflow(
            lambda: self._policy,
            notifier=notifier,
            on_transition=self._audit_transition,
        )
        self._pending: dict[str, _PendingContext] = {}
        self._pending_lock = threading.Lock()
        self._sweeper = (
            ExpirySweeper(self.sweep, sweep_interval_seconds) if sweep_interval_seconds else None
        )

    @classmethod
    def from_policy_file(cls, path: str | None = None, **kwargs: Any) -> "TriggerGateEngine":
        policy, policy_hash = load_policy(path)
        return cls(policy, policy_hash, **kwargs)

    @property
    def policy(self) -> GatePolicy:
        return self._policy

    @property
    def policy_hash(self) -> str:
        return self._policy_hash

    @property
    def recorder(self) -> AuditRecorder:
        return self._recorder

    @property
    def approvals(self) -> ApprovalWorkflow:
        return self._approvals

    def start(self) -> "TriggerGateEngine":
        self._recorder.open()
        if self._sweeper is not None:
            self._sweeper.start()
        log_event("engine", f"started policy_version={self._policy.version} policy_hash={self._policy_hash}")
        return self

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
        self._recorder.close()
        log_event("engine", "closed")

    def __enter__(self) -> "TriggerGateEngine":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def reload_policy(self, policy: GatePolicy, policy_hash: str = "") -> None:
        # Pending approvals are re-evaluated against the new policy on finalize.
        self._policy = policy
        self._policy_hash = policy_hash
        log_event("engine", f"policy_reloaded version={policy.version} policy_hash={policy_hash}")

    def evaluate(self, event: Event, history: ContributorHistory | None = None) -> Evaluation:
        if not self._in_flight.acquire(timeout=self._busy_timeout):
            log_event("engine", f"busy actor={event.actor.identifier} delivery={event.delivery_id}")
            raise EngineBusy("trigger_gate.engine.busy retry later")
        try:
            return self._evaluate(event, history or ContributorHistory())
        finally:
            self._in_flight.release()

    def _evaluate(self, event: Event, history: ContributorHistory) -> Evaluation:
        now = as_utc(self._clock())
        policy = self._policy
        policy_hash = self._policy_hash
        try:
            tier = classify(event.actor, history, policy, now)
            decision = decide(event, tier, policy, now, policy_hash)
        except MalformedIdentity as exc:
            log_event("engine", f"malformed_identity reason={exc.reason} delivery={event.delivery_id}")
            decision = build_decision(
                event=event,
                tier="revoked",
                outcome="deny",
                reason_code="malformed_identity",
                policy=policy,
                now=now,
                policy_hash=policy_hash,
            )

        self._recorder.record(decision, _decision_inputs(event, history))
        log_event(
            "engine",
            (
                f"decision outcome={decision.outcome} tier={decision.tier} reason={decision.reason_code} "
                f"actor={decision.actor_identifier} event_ref={decision.event_ref}"
            ),
        )

        if decision.outcome != "admit_with_approval":
            return Evaluation(decision=decision)

        request = self._approvals.open(decision.event_ref, decision.actor_identifier, now)
        with self._pending_lock:
            self._pending[request.request_id] = _PendingContext(event=event, history=history, decision=decision)
        return Evaluation(decision=decision, approval=request)

    def approve(self, request_id: str, approver: str) -> ApprovalRequest:
        return self._approvals.approve(request_id, approver, self._clock())

    def reject(self, request_id: str, approver: str) -> ApprovalRequest:
        return self._approvals.reject(request_id, approver, self._clock())

    def sweep(self) -> list[ApprovalRequest]:
        """Expire overdue requests and append their superseding deny decisions."""
        now = as_utc(self._clock())
        expired = self._approvals.sweep_expired(now)
        with self._pending_lock:
            waiting = list(self._pending)
        for request_id in waiting:
            request = self._approvals.get(request_id)
            if request.state == "expired":
                self._finalize_terminal(request)
        with self._pending_lock:
            keep = set(self._pending)
        self._approvals.prune_terminal(now - self._approval_retention, keep=keep)
        if expired:
            log_event("engine", f"sweep expired={len(expired)}")
        return expired

    def finalize(self, request_id: str) -> Decision | None:
        """Append the superseding decision for a terminal approval request.

        Returns None while the request is still pending. Classification and
        policy evaluation are re-run with the current policy.
        """
        request = self._approvals.expire(request_id, self._clock())
        if request.state == "pending":
            return None
        decision = self._finalize_terminal(request)
        if decision is None:
            raise TriggerGateError(f"trigger_gate.approval.already_finalized request_id={request_id}")
        return decision

    def _finalize_terminal(self, request: ApprovalRequest) -> Decision | None:
        request_id = request.request_id
        # Claiming the context makes this caller the only finalizer.
        with self._pending_lock:
            context = self._pending.pop(request_id, None)
        if context is None:
            return None

        try:
            now = as_utc(self._clock())
            policy = self._policy
            policy_hash = self._policy_hash
            try:
                tier = classify(context.event.actor, context.history, policy, now)
            except MalformedIdentity:
                tier = "revoked"
            decision = finalize_decision(
                context.decision, request, context.event, tier, policy, now, policy_hash
            )
            inputs = _decision_inputs(context.event, context.history)
            inputs["approval"] = request.as_dict()
            self._recorder.record(decision, inputs)
        except Exception:
            with self._pending_lock:
                self._pending.setdefault(request_id, context)
            raise

        log_event(
            "engine",
            (
                f"finalized request_id={request_id} state={request.state} outcome={decision.outcome} "
                f"reason={decision.reason_code} supersedes={decision.supersedes}"
            ),
        )
        return decision

    def _audit_transition(self, request: ApprovalRequest, entry_type: str, approver: str | None) -> None:
        self._recorder.record_approval(
            request, entry_type, policy_hash=self._policy_hash, approver=approver
        )


def _decision_inputs(event: Event, history: ContributorHistory) -> dict[str, Any]:
    actor = event.actor
    return {
        "event": {
            "event_type": str(event.event_type),
            "source_branch": event.source_branch,
            "target_branch": event.target_branch,
            "is_fork": bool(event.is_fork),
            "changed_paths": sorted(event.changed_paths),
            "repository": event.repository,
            "delivery_id": event.delivery_id,
        },
        "actor": {
            "identifier": str(actor.identifier),
            "account_created_at": isoformat_utc(actor.account_created_at),
            "is_app": bool(actor.is_app),
            "association": actor.association,
        },
        "history": {
            "merged_contributions": history.merged_contributions,
            "prior_denials": history.prior_denials,
        },
    }
