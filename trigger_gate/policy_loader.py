import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from trigger_gate.errors import PolicyConfigInvalid
from trigger_gate.identity import IdentityRegistry, build_registry
from trigger_gate.logger import log_event
from trigger_gate.sandbox import (
    DEFAULT_MAX_TOKEN_TTL_SECONDS,
    SandboxMapping,
    build_sandbox_mapping,
    validate_sandbox_mapping,
)


class PolicyLoadError(PolicyConfigInvalid):
    pass


DEFAULT_POLICY_PATH = "governance/policy/trigger-gate.v1.yaml"

REQUIRED_KEYS = {
    "version",
    "sensitive_paths",
    "trusted_branches",
    "min_account_age_days",
    "min_approvers",
    "identities",
    "sandbox_profiles",
}

OPTIONAL_DEFAULTS = {
    "recurring_min_contributions": 3,
    "approval_ttl_hours": 72,
    "max_token_ttl_seconds": DEFAULT_MAX_TOKEN_TTL_SECONDS,
    "audit_retry_attempts": 3,
    "max_in_flight": 64,
}


@dataclass(frozen=True)
class GatePolicy:
    version: str
    sensitive_paths: frozenset
    trusted_branches: frozenset
    min_account_age_days: int
    min_approvers: int
    recurring_min_contributions: int = 3
    approval_ttl_hours: int = 72
    max_token_ttl_seconds: int = DEFAULT_MAX_TOKEN_TTL_SECONDS
    audit_retry_attempts: int = 3
    max_in_flight: int = 64
    identities: IdentityRegistry = field(default_factory=IdentityRegistry)
    sandbox_profiles: SandboxMapping = field(default_factory=dict)


def policy_path():
    return os.environ.get("TRIGGER_GATE_POLICY_PATH", DEFAULT_POLICY_PATH)


def normalize_path(path):
    value = str(path).replace("\\", "/").strip()
    is_dir = value.endswith("/")
    parts = []
    for part in value.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    normalized = "/".join(parts)
    if is_dir and normalized:
        normalized += "/"
    return normalized


def _positive_int(policy, key, minimum=0):
    value = policy.get(key, OPTIONAL_DEFAULTS.get(key))
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise PolicyConfigInvalid(f"{key} must be an integer >= {minimum}")
    return value


def _string_set(policy, key):
    values = policy.get(key)
    if not isinstance(values, list) or not all(isinstance(v, str) and v.strip() for v in values):
        raise PolicyConfigInvalid(f"{key} must be a list of non-empty strings")
    return values


def build_policy(policy: Mapping[str, Any]) -> GatePolicy:
    if not isinstance(policy, Mapping):
        raise PolicyConfigInvalid("Policy must be a mapping")

    missing = sorted(REQUIRED_KEYS - set(policy.keys()))
    if missing:
        raise PolicyConfigInvalid(f"Policy missing required keys: {', '.join(missing)}")

    sensitive_paths = frozenset(normalize_path(p) for p in _string_set(policy, "sensitive_paths"))
    if "" in sensitive_paths:
        raise PolicyConfigInvalid("sensitive_paths entries must name a file or directory")
    trusted_branches = frozenset(b.strip() for b in _string_set(policy, "trusted_branches"))

    max_token_ttl_seconds = _positive_int(policy, "max_token_ttl_seconds")
    sandbox_profiles = build_sandbox_mapping(policy.get("sandbox_profiles"))
    validate_sandbox_mapping(sandbox_profiles, max_token_ttl_seconds)

    return GatePolicy(
        version=str(policy.get("version")),
        sensitive_paths=sensitive_paths,
        trusted_branches=trusted_branches,
        min_account_age_days=_positive_int(policy, "min_account_age_days"),
        min_approvers=_positive_int(policy, "min_approvers", minimum=1),
        recurring_min_contributions=_positive_int(policy, "recurring_min_contributions", minimum=1),
        approval_ttl_hours=_positive_int(policy, "approval_ttl_hours", minimum=1),
        max_token_ttl_seconds=max_token_ttl_seconds,
        audit_retry_attempts=_positive_int(policy, "audit_retry_attempts", minimum=1),
        max_in_flight=_positive_int(policy, "max_in_flight", minimum=1),
        identities=build_registry(policy.get("identities")),
        sandbox_profiles=sandbox_profiles,
    )


def load_policy(path=None):
    path = Path(path or policy_path())
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        log_event("policy_loader", f"load_failed path={path} error={exc}")
        raise PolicyLoadError(f"Failed to read policy: {exc}") from exc

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        log_event("policy_loader", f"parse_failed path={path} error={exc}")
        raise PolicyLoadError(f"Failed to parse policy YAML: {exc}") from exc

    if not isinstance(document, dict):
        log_event("policy_loader", f"invalid_mapping path={path}")
        raise PolicyLoadError("Policy YAML must be a mapping")

    try:
        policy = build_policy(document)
    except PolicyConfigInvalid as exc:
        log_event("policy_loader", f"invalid_policy path={path} error={exc}")
        raise

    policy_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    log_event(
        "policy_loader",
        (
            f"loaded path={path} version={policy.version} "
            f"internal={len(policy.identities.internal)} denylist={len(policy.identities.denylist)} "
            f"approvers={len(policy.identities.approvers)} policy_hash={policy_hash}"
        ),
    )
    return policy, policy_hash


def enforce_policy_hash_lockdown(policy_hash_baseline, path=None):
    policy, current_hash = load_policy(path)
    if current_hash != policy_hash_baseline:
        log_event(
            "policy_loader",
            f"POLICY_LOCKDOWN policy_hash_changed baseline={policy_hash_baseline} current={current_hash}",
        )
        raise PolicyConfigInvalid(
            f"POLICY_LOCKDOWN baseline={policy_hash_baseline} current={current_hash}"
        )
    return policy, current_hash
