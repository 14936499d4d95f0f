"""Trust tier to sandbox profile mapping.

Deny outcomes and revoked actors always resolve to ``DENY_PROFILE``. Every
other tier/outcome pair must be configured; the mapping is checked once at
load time so a decision never falls back to a permissive default.
"""

from __future__ import annotations

from typing import Any, Mapping

from trigger_gate.errors import PolicyConfigInvalid
from trigger_gate.models import (
    EXTERNAL_TIERS,
    FILESYSTEM_MODES,
    NETWORK_MODES,
    OUTCOMES,
    Outcome,
    SandboxProfile,
    TrustTier,
    tier_rank,
)

DEFAULT_MAX_TOKEN_TTL_SECONDS = 7200

DENY_PROFILE = SandboxProfile(
    network_mode="none",
    filesystem_mode="read_only",
    cpu_millicores=0,
    memory_limit_mb=0,
    credential_scope=frozenset(),
    token_ttl_seconds=0,
)

CONFIGURED_TIERS: tuple[TrustTier, ...] = ("first_time_external", "recurring_external", "internal")
CONFIGURED_OUTCOMES: tuple[Outcome, ...] = ("admit", "admit_with_approval")

SandboxMapping = Mapping[tuple[str, str], SandboxProfile]

_NETWORK_RANK = {mode: index for index, mode in enumerate(NETWORK_MODES)}
_FILESYSTEM_RANK = {mode: index for index, mode in enumerate(FILESYSTEM_MODES)}


def resolve(tier: TrustTier, outcome: Outcome, mapping: SandboxMapping) -> SandboxProfile:
    tier_rank(tier)
    if outcome not in OUTCOMES:
        raise ValueError(f"trigger_gate.sandbox.invalid outcome={outcome!r}")
    if outcome == "deny" or tier == "revoked":
        return DENY_PROFILE
    profile = mapping.get((tier, outcome))
    if profile is None:
        raise PolicyConfigInvalid(f"sandbox_profiles.{tier}.{outcome} is not configured")
    return profile


def build_profile(raw: Any, where: str) -> SandboxProfile:
    if not isinstance(raw, Mapping):
        raise PolicyConfigInvalid(f"{where} must be a mapping")
    network_mode = raw.get("network_mode")
    filesystem_mode = raw.get("filesystem_mode")
    if network_mode not in NETWORK_MODES:
        raise PolicyConfigInvalid(f"{where}.network_mode must be one of {', '.join(NETWORK_MODES)}")
    if filesystem_mode not in FILESYSTEM_MODES:
        raise PolicyConfigInvalid(
            f"{where}.filesystem_mode must be one of {', '.join(FILESYSTEM_MODES)}"
        )
    scope = raw.get("credential_scope") or []
    if not isinstance(scope, (list, tuple)) or not all(isinstance(s, str) and s for s in scope):
        raise PolicyConfigInvalid(f"{where}.credential_scope must be a list of capability names")
    return SandboxProfile(
        network_mode=network_mode,
        filesystem_mode=filesystem_mode,
        cpu_millicores=_non_negative_int(raw.get("cpu_millicores"), f"{where}.cpu_millicores"),
        memory_limit_mb=_non_negative_int(raw.get("memory_limit_mb"), f"{where}.memory_limit_mb"),
        credential_scope=frozenset(scope),
        token_ttl_seconds=_non_negative_int(
            raw.get("token_ttl_seconds", 0), f"{where}.token_ttl_seconds"
        ),
    )


def build_sandbox_mapping(config: Any) -> dict[tuple[str, str], SandboxProfile]:
    if not isinstance(config, Mapping):
        raise PolicyConfigInvalid("sandbox_profiles must be a mapping")
    unknown = sorted(set(config) - set(CONFIGURED_TIERS))
    if unknown:
        raise PolicyConfigInvalid(f"sandbox_profiles has unknown tiers: {', '.join(map(str, unknown))}")
    mapping: dict[tuple[str, str], SandboxProfile] = {}
    for tier in CONFIGURED_TIERS:
        per_tier = config.get(tier)
        if not isinstance(per_tier, Mapping):
            raise PolicyConfigInvalid(f"sandbox_profiles.{tier} is not configured")
        for outcome in CONFIGURED_OUTCOMES:
            if outcome not in per_tier:
                raise PolicyConfigInvalid(f"sandbox_profiles.{tier}.{outcome} is not configured")
            mapping[(tier, outcome)] = build_profile(
                per_tier[outcome], f"sandbox_profiles.{tier}.{outcome}"
            )
    return mapping


def validate_sandbox_mapping(
    mapping: SandboxMapping,
    max_token_ttl_seconds: int = DEFAULT_MAX_TOKEN_TTL_SECONDS,
) -> None:
    """Reject mappings that hand more capability to a less trusted tier."""
    for tier in CONFIGURED_TIERS:
        for outcome in CONFIGURED_OUTCOMES:
            if (tier, outcome) not in mapping:
                raise PolicyConfigInvalid(f"sandbox_profiles.{tier}.{outcome} is not configured")

    for (tier, outcome), profile in sorted(mapping.items()):
        where = f"sandbox_profiles.{tier}.{outcome}"
        if profile.token_ttl_seconds > max_token_ttl_seconds:
            raise PolicyConfigInvalid(
                f"{where}.token_ttl_seconds={profile.token_ttl_seconds} exceeds {max_token_ttl_seconds}"
            )
        if tier in EXTERNAL_TIERS:
            if profile.credential_scope:
                raise PolicyConfigInvalid(f"{where} grants credentials to an external tier")
            if profile.token_ttl_seconds:
                raise PolicyConfigInvalid(f"{where} issues a token to an external tier")
            if profile.network_mode == "full":
                raise PolicyConfigInvalid(f"{where} grants full network to an external tier")
            if profile.filesystem_mode != "read_only":
                raise PolicyConfigInvalid(f"{where} grants a writable filesystem to an external tier")

    for outcome in CONFIGURED_OUTCOMES:
        for lower, higher in zip(CONFIGURED_TIERS, CONFIGURED_TIERS[1:]):
            violation = _more_permissive_field(mapping[(lower, outcome)], mapping[(higher, outcome)])
            if violation:
                raise PolicyConfigInvalid(
                    f"sandbox_profiles.{lower}.{outcome} is more permissive than "
                    f"sandbox_profiles.{higher}.{outcome} ({violation})"
                )


def _more_permissive_field(lower: SandboxProfile, higher: SandboxProfile) -> str | None:
    if _NETWORK_RANK[lower.network_mode] > _NETWORK_RANK[higher.network_mode]:
        return "network_mode"
    if _FILESYSTEM_RANK[lower.filesystem_mode] > _FILESYSTEM_RANK[higher.filesystem_mode]:
        return "filesystem_mode"
    if lower.cpu_millicores > higher.cpu_millicores:
        return "cpu_millicores"
    if lower.memory_limit_mb > higher.memory_limit_mb:
        return "memory_limit_mb"
    if not lower.credential_scope <= higher.credential_scope:
        return "credential_scope"
    if lower.token_ttl_seconds > higher.token_ttl_seconds:
        return "token_ttl_seconds"
    return None


def _non_negative_int(value: Any, where: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise PolicyConfigInvalid(f"{where} must be a non-negative integer")
    return value
