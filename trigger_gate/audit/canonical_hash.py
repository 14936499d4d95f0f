"""Canonical hash and identity input builders for the audit trail.

Pure deterministic helpers:
- canonical JSON bytes
- domain-separated hashing
- typed canonical input builders
"""

from __future__ import annotations

import json
import math
from hashlib import sha256
from typing import Any, Mapping


def canon_json_bytes_v1(obj: Mapping[str, Any], *, allow_floats: bool = False) -> bytes:
    _ensure_mapping(obj)
    _validate_json_value(obj, allow_floats=allow_floats)
    rendered = json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return rendered.encode("utf-8")


def domain_hash(domain: str, obj: Mapping[str, Any]) -> str:
    if not domain:
        raise ValueError("trigger_gate.hash.invalid domain")
    digest_input = domain.encode("utf-8") + b"\n" + canon_json_bytes_v1(obj)
    return sha256(digest_input).hexdigest()


def build_decision_id_input(
    *,
    event_ref: str,
    outcome: str,
    reason_code: str,
    tier: str,
    timestamp: str,
    policy_hash: str,
    supersedes: str | None,
) -> Mapping[str, Any]:
    return {
        "event_ref": _require_non_empty(event_ref, "event_ref"),
        "outcome": _require_non_empty(outcome, "outcome"),
        "reason_code": _require_non_empty(reason_code, "reason_code"),
        "tier": _require_non_empty(tier, "tier"),
        "timestamp": _require_non_empty(timestamp, "timestamp"),
        "policy_hash": policy_hash or "",
        "supersedes": supersedes or "",
    }


def build_request_id_input(
    *,
    event_ref: str,
    actor_identifier: str,
    requested_at: str,
    attempt: int = 0,
) -> Mapping[str, Any]:
    if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 0:
        raise ValueError("trigger_gate.hash.invalid attempt")
    return {
        "event_ref": _require_non_empty(event_ref, "event_ref"),
        "actor_identifier": _require_non_empty(actor_identifier, "actor_identifier"),
        "requested_at": _require_non_empty(requested_at, "requested_at"),
        "attempt": attempt,
    }


def build_audit_entry_identity_input(
    *,
    entry_type: str,
    subject_id: str,
    policy_hash: str,
    sequence: int,
    stream_id: str,
    prev_entry_hash: str | None,
) -> Mapping[str, Any]:
    if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence < 0:
        raise ValueError("trigger_gate.hash.invalid sequence")
    return {
        "entry_type": _require_non_empty(entry_type, "entry_type"),
        "subject_id": _require_non_empty(subject_id, "subject_id"),
        "policy_hash": policy_hash or "",
        "sequence": sequence,
        "stream_id": _require_non_empty(stream_id, "stream_id"),
        "prev_entry_hash": prev_entry_hash or "",
    }


def build_audit_entry_body_input(
    *,
    payload: Mapping[str, Any],
) -> Mapping[str, Any]:
    _ensure_mapping(payload)
    _validate_json_value(payload, allow_floats=False)
    return {"payload": payload}


def _require_non_empty(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"trigger_gate.hash.invalid {field_name}")
    return value


def _ensure_mapping(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValueError("trigger_gate.hash.invalid mapping_required")


def _validate_json_value(value: Any, *, allow_floats: bool) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not allow_floats:
            raise ValueError("trigger_gate.hash.invalid float_forbidden")
        if not math.isfinite(value):
            raise ValueError("trigger_gate.hash.invalid non_finite_float")
        return
    if isinstance(value, list):
        for item in value:
            _validate_json_value(item, allow_floats=allow_floats)
        return
    if isinstance(value, Mapping):
        for key in value.keys():
            if not isinstance(key, str):
                raise ValueError("trigger_gate.hash.invalid key_type")
        for item in value.values():
            _validate_json_value(item, allow_floats=allow_floats)
        return
    raise ValueError("trigger_gate.hash.invalid value_type")
