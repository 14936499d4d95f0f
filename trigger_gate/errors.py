"""Error kinds raised by the trigger gate.

Classification and policy errors fail closed (the engine turns them into a
Deny decision). Configuration errors are fatal at load time. Audit and
capacity errors are retryable and never leave a decision un-audited.
"""

from __future__ import annotations


class TriggerGateError(Exception):
    """Base class for all trigger gate errors."""

    retryable = False


class MalformedIdentity(TriggerGateError, ValueError):
    """An identifier failed charset or length validation."""

    def __init__(self, identifier: object, reason: str) -> None:
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"trigger_gate.identity.invalid {reason}")


class PolicyConfigInvalid(TriggerGateError):
    """The policy configuration cannot be used; the engine must not start."""


class UnknownEventType(TriggerGateError, ValueError):
    def __init__(self, event_type: object) -> None:
        self.event_type = event_type
        super().__init__(f"trigger_gate.event.invalid event_type={event_type!r}")


class ApprovalNotFound(TriggerGateError, KeyError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"trigger_gate.approval.not_found request_id={request_id}")

    def __str__(self) -> str:
        return self.args[0]


class ApproverNotAuthorized(TriggerGateError):
    def __init__(self, request_id: str, approver: str, reason: str) -> None:
        self.request_id = request_id
        self.approver = approver
        self.reason = reason
        super().__init__(
            f"trigger_gate.approval.unauthorized request_id={request_id} reason={reason}"
        )


class AuditWriteFailure(TriggerGateError):
    """The audit store did not persist an entry; the decision is not final."""

    retryable = True


class AuditAppendViolation(TriggerGateError):
    """An attempt was made to overwrite an already persisted audit entry."""


class EngineBusy(TriggerGateError):
    """Too many evaluations in flight; the caller should retry later."""

    retryable = True
