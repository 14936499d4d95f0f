import dataclasses
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from trigger_gate.approvals import ApprovalWorkflow, ExpirySweeper
from trigger_gate.errors import ApprovalNotFound, ApproverNotAuthorized
from trigger_gate.identity import build_registry
from trigger_gate.policy_loader import load_policy

POLICY_PATH = Path(__file__).resolve().parents[1] / "governance" / "policy" / "trigger-gate.v1.yaml"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class _RecordingNotifier:
    def __init__(self):
        self.notified = []

    def notify_pending(self, request):
        self.notified.append(request.request_id)


def _workflow(transitions=None, notifier=None):
    policy, _ = load_policy(str(POLICY_PATH))

    def on_transition(request, entry_type, approver):
        if transitions is not None:
            transitions.append((entry_type, request.state, approver))

    return ApprovalWorkflow(lambda: policy, notifier=notifier, on_transition=on_transition)


def test_open_creates_pending_request_and_notifies():
    notifier = _RecordingNotifier()
    workflow = _workflow(notifier=notifier)
    request = workflow.open("ref-1", "newcomer", NOW)
    assert request.state == "pending"
    assert request.required_approvals == 2
    assert request.expiry_deadline == NOW + timedelta(hours=72)
    assert notifier.notified == [request.request_id]
    assert workflow.pending() == [request]


def test_open_is_idempotent_per_event_while_pending():
    workflow = _workflow()
    first = workflow.open("ref-1", "newcomer", NOW)
    second = workflow.open("ref-1", "newcomer", NOW + timedelta(minutes=5))
    assert first.request_id == second.request_id


def test_partial_approval_stays_pending_until_threshold():
    transitions = []
    workflow = _workflow(transitions)
    request = workflow.open("ref-1", "newcomer", NOW)

    after_one = workflow.approve(request.request_id, "bob", NOW)
    assert after_one.state == "pending"
    assert after_one.approvers == frozenset({"bob"})

    after_two = workflow.approve(request.request_id, "carol", NOW)
    assert after_two.state == "approved"
    assert after_two.decided_at == NOW
    assert [t[0] for t in transitions] == ["approval.requested", "approval.progressed", "approval.approved"]


def test_repeat_approval_by_same_approver_does_not_double_count():
    transitions = []
    workflow = _workflow(transitions)
    request = workflow.open("ref-1", "newcomer", NOW)
    workflow.approve(request.request_id, "bob", NOW)
    again = workflow.approve(request.request_id, "bob", NOW)
    assert again.state == "pending"
    assert again.approvers == frozenset({"bob"})
    assert len(transitions) == 2


def test_approving_an_approved_request_is_a_noop():
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    workflow.approve(request.request_id, "bob", NOW)
    approved = workflow.approve(request.request_id, "carol", NOW)
    assert workflow.approve(request.request_id, "carol", NOW) == approved
    assert workflow.approve(request.request_id, "alice", NOW) == approved


def test_self_approval_forbidden():
    workflow = _workflow()
    request = workflow.open("ref-1", "bob", NOW)
    with pytest.raises(ApproverNotAuthorized) as excinfo:
        workflow.approve(request.request_id, "bob", NOW)
    assert excinfo.value.reason == "self_approval_forbidden"
    assert workflow.get(request.request_id).approvers == frozenset()


@pytest.mark.parametrize("approver", ["bobby", "bo", "xbob", "mallory", "bob\u200b"])
def test_approver_must_match_roster_exactly(approver):
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    with pytest.raises(ApproverNotAuthorized):
        workflow.approve(request.request_id, approver, NOW)
    assert workflow.get(request.request_id).state == "pending"


def test_expired_roster_entry_cannot_approve():
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    later = datetime(2027, 7, 1, tzinfo=timezone.utc)
    with pytest.raises(ApproverNotAuthorized):
        workflow.approve(request.request_id, "dave", later)
    assert workflow.approve(request.request_id, "dave", NOW).approvers == frozenset({"dave"})


def test_unknown_request_reports_not_found():
    workflow = _workflow()
    with pytest.raises(ApprovalNotFound):
        workflow.approve("missing", "bob", NOW)
    with pytest.raises(ApprovalNotFound):
        workflow.reject("missing", "bob", NOW)
    with pytest.raises(ApprovalNotFound):
        workflow.get("missing")


def test_reject_is_terminal():
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    rejected = workflow.reject(request.request_id, "bob", NOW)
    assert rejected.state == "rejected"
    assert workflow.approve(request.request_id, "carol", NOW).state == "rejected"
    assert workflow.expire(request.request_id, NOW + timedelta(days=30)).state == "rejected"


def test_sweep_expires_overdue_pending_requests():
    workflow = _workflow()
    overdue = workflow.open("ref-1", "newcomer", NOW - timedelta(hours=80))
    fresh = workflow.open("ref-2", "newcomer", NOW)

    expired = workflow.sweep_expired(NOW)
    assert [r.request_id for r in expired] == [overdue.request_id]
    assert workflow.get(overdue.request_id).state == "expired"
    assert workflow.get(fresh.request_id).state == "pending"
    assert workflow.sweep_expired(NOW) == []


def test_approval_after_deadline_expires_instead():
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    late = NOW + timedelta(hours=73)
    result = workflow.approve(request.request_id, "bob", late)
    assert result.state == "expired"
    assert result.approvers == frozenset()


def test_expire_before_deadline_is_noop():
    workflow = _workflow()
    request = workflow.open("ref-1", "newcomer", NOW)
    assert workflow.expire(request.request_id, NOW + timedelta(hours=1)).state == "pending"


def test_failed_transition_hook_leaves_request_unchanged():
    policy, _ = load_policy(str(POLICY_PATH))
    calls = []

    def on_transition(request, entry_type, approver):
        calls.append(entry_type)
        if entry_type == "approval.progressed":
            raise OSError("audit store offline")

    workflow = ApprovalWorkflow(lambda: policy, on_transition=on_transition)
    request = workflow.open("ref-1", "newcomer", NOW)
    with pytest.raises(OSError):
        workflow.approve(request.request_id, "bob", NOW)
    assert workflow.get(request.request_id).approvers == frozenset()


def test_concurrent_approvers_reach_approved_exactly_once():
    for round_number in range(25):
        transitions = []
        lock = threading.Lock()
        policy, _ = load_policy(str(POLICY_PATH))

        def on_transition(request, entry_type, approver):
            with lock:
                transitions.append(entry_type)

        workflow = ApprovalWorkflow(lambda: policy, on_transition=on_transition)
        request = workflow.open(f"ref-{round_number}", "newcomer", NOW)
        barrier = threading.Barrier(2)

        def run(approver):
            barrier.wait()
            workflow.approve(request.request_id, approver, NOW)

        threads = [threading.Thread(target=run, args=(name,)) for name in ("bob", "carol")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = workflow.get(request.request_id)
        assert final.state == "approved"
        assert final.approvers == frozenset({"bob", "carol"})
        assert transitions.count("approval.approved") == 1
        assert transitions.count("approval.progressed") == 1


def test_expiry_sweeper_runs_in_background():
    ran = threading.Event()
    sweeper = ExpirySweeper(ran.set, interval_seconds=0.01)
    sweeper.start()
    try:
        assert ran.wait(2.0)
        assert sweeper.running
    finally:
        sweeper.stop()
    assert not sweeper.running


def test_expiry_sweeper_rejects_bad_interval():
    with pytest.raises(ValueError):
        ExpirySweeper(lambda: None, interval_seconds=0)


def test_replayed_approval_after_roster_change_is_a_noop():
    policy, _ = load_policy(str(POLICY_PATH))
    current = {"policy": policy}
    workflow = ApprovalWorkflow(lambda: current["policy"])
    request = workflow.open("ref-1", "newcomer", NOW)
    workflow.approve(request.request_id, "bob", NOW)
    approved = workflow.approve(request.request_id, "carol", NOW)

    current["policy"] = dataclasses.replace(
        policy,
        identities=build_registry({"approvers": ["alice", "bob"], "denylist": ["mallory"]}),
    )
    assert workflow.approve(request.request_id, "carol", NOW) == approved
    assert workflow.reject(request.request_id, "carol", NOW) == approved


def test_slow_audit_on_open_does_not_block_other_requests():
    policy, _ = load_policy(str(POLICY_PATH))
    entered = threading.Event()
    release = threading.Event()

    def on_transition(request, entry_type, approver):
        if request.event_ref == "ref-slow":
            entered.set()
            release.wait(5.0)

    workflow = ApprovalWorkflow(lambda: policy, on_transition=on_transition)
    slow = threading.Thread(target=workflow.open, args=("ref-slow", "newcomer", NOW))
    slow.start()
    try:
        assert entered.wait(2.0)
        fast = workflow.open("ref-fast", "newcomer", NOW)
        assert fast.state == "pending"
    finally:
        release.set()
        slow.join(5.0)
    assert workflow.for_event("ref-slow") is not None


def test_failed_audit_on_open_leaves_no_request():
    policy, _ = load_policy(str(POLICY_PATH))

    def on_transition(request, entry_type, approver):
        raise OSError("audit store offline")

    workflow = ApprovalWorkflow(lambda: policy, on_transition=on_transition)
    with pytest.raises(OSError):
        workflow.open("ref-1", "newcomer", NOW)
    assert workflow.for_event("ref-1") is None
    assert workflow.pending() == []


def test_reopening_a_terminal_request_in_the_same_second_keeps_both():
    workflow = _workflow()
    first = workflow.open("ref-1", "newcomer", NOW)
    workflow.reject(first.request_id, "bob", NOW)
    second = workflow.open("ref-1", "newcomer", NOW)

    assert second.request_id != first.request_id
    assert workflow.get(first.request_id).state == "rejected"
    assert workflow.get(second.request_id).state == "pending"
    assert workflow.for_event("ref-1") == second


def test_prune_forgets_old_terminal_requests_only():
    workflow = _workflow()
    rejected = workflow.open("ref-1", "newcomer", NOW)
    workflow.reject(rejected.request_id, "bob", NOW)
    kept = workflow.open("ref-2", "newcomer", NOW)
    workflow.reject(kept.request_id, "bob", NOW)
    pending = workflow.open("ref-3", "newcomer", NOW)

    later = NOW + timedelta(hours=1)
    assert workflow.prune_terminal(later, keep={kept.request_id}) == 1
    with pytest.raises(ApprovalNotFound):
        workflow.get(rejected.request_id)
    assert workflow.for_event("ref-1") is None
    assert workflow.get(kept.request_id).state == "rejected"
    assert workflow.get(pending.request_id).state == "pending"
