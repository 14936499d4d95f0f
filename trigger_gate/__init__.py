from trigger_gate.approvals import (
    ApprovalNotifier,
    ApprovalWorkflow,
    ExpirySweeper,
    LogApprovalNotifier,
)
from trigger_gate.audit.recorder import (
    AuditRecorder,
)
from trigger_gate.audit.sink import (
    FileAuditSink,
    MemoryAuditSink,
)
from trigger_gate.classifier import (
    classify,
)
from trigger_gate.engine import (
    Evaluation,
    TriggerGateEngine,
)
from trigger_gate.errors import (
    ApprovalNotFound,
    ApproverNotAuthorized,
    AuditAppendViolation,
    AuditWriteFailure,
    EngineBusy,
    MalformedIdentity,
    PolicyConfigInvalid,
    TriggerGateError,
    UnknownEventType,
)
from trigger_gate.evaluator import (
    decide,
    finalize_decision,
    touched_sensitive_paths,
)
from trigger_gate.identity import (
    IdentityRegistry,
    RegistryEntry,
    lookup,
    matches,
    validate_identifier,
)
from trigger_gate.models import (
    Actor,
    ApprovalRequest,
    ContributorHistory,
    Decision,
    Event,
    SandboxProfile,
    event_from_mapping,
    event_ref,
)
from trigger_gate.monitor import (
    scan_anomalies,
)
from trigger_gate.policy_loader import (
    GatePolicy,
    PolicyLoadError,
    build_policy,
    load_policy,
)
from trigger_gate.report import (
    decision_report,
    write_decision_artifact,
)
from trigger_gate.sandbox import (
    DENY_PROFILE,
    resolve,
    validate_sandbox_mapping,
)

__all__ = [
    "Actor",
    "ApprovalNotFound",
    "ApprovalNotifier",
    "ApprovalRequest",
    "ApprovalWorkflow",
    "ApproverNotAuthorized",
    "AuditAppendViolation",
    "AuditRecorder",
    "AuditWriteFailure",
    "ContributorHistory",
    "DENY_PROFILE",
    "Decision",
    "EngineBusy",
    "Evaluation",
    "Event",
    "ExpirySweeper",
    "FileAuditSink",
    "GatePolicy",
    "IdentityRegistry",
    "LogApprovalNotifier",
    "MalformedIdentity",
    "MemoryAuditSink",
    "PolicyConfigInvalid",
    "PolicyLoadError",
    "RegistryEntry",
    "SandboxProfile",
    "TriggerGateEngine",
    "TriggerGateError",
    "UnknownEventType",
    "build_policy",
    "classify",
    "decide",
    "decision_report",
    "event_from_mapping",
    "event_ref",
    "finalize_decision",
    "load_policy",
    "lookup",
    "matches",
    "resolve",
    "scan_anomalies",
    "touched_sensitive_paths",
    "validate_identifier",
    "validate_sandbox_mapping",
    "write_decision_artifact",
]
