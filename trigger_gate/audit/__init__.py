"""Append-only, hash-chained audit trail for admission decisions.

``trigger_gate.audit.recorder`` depends on the gate's record types and is
imported directly rather than re-exported here.
"""

from trigger_gate.audit.canonical_hash import (
    build_audit_entry_body_input,
    build_audit_entry_identity_input,
    build_decision_id_input,
    build_request_id_input,
    canon_json_bytes_v1,
    domain_hash,
)
from trigger_gate.audit.replay_verifier import (
    VerificationResult,
    verify_audit_chain,
)
from trigger_gate.audit.sink import (
    AuditSink,
    FileAuditSink,
    MemoryAuditSink,
    build_audit_artifact_bytes,
    build_audit_artifact_path,
    load_audit_stream,
    parse_audit_artifact,
    verify_audit_stream,
)
from trigger_gate.audit.taxonomy import (
    AUDIT_ENTRY_TYPES,
    AuditEntry,
    AuditEntryType,
    entry_fingerprint,
    entry_from_mapping,
    entry_to_mapping,
    validate_audit_entry,
)

__all__ = [
    "AUDIT_ENTRY_TYPES",
    "AuditEntry",
    "AuditEntryType",
    "AuditSink",
    "FileAuditSink",
    "MemoryAuditSink",
    "VerificationResult",
    "build_audit_artifact_bytes",
    "build_audit_artifact_path",
    "build_audit_entry_body_input",
    "build_audit_entry_identity_input",
    "build_decision_id_input",
    "build_request_id_input",
    "canon_json_bytes_v1",
    "domain_hash",
    "entry_fingerprint",
    "entry_from_mapping",
    "entry_to_mapping",
    "load_audit_stream",
    "parse_audit_artifact",
    "validate_audit_entry",
    "verify_audit_chain",
    "verify_audit_stream",
]
