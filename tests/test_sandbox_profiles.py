import copy
from pathlib import Path

import pytest
import yaml

from trigger_gate.errors import PolicyConfigInvalid
from trigger_gate.models import EXTERNAL_TIERS, OUTCOMES, TRUST_TIERS
from trigger_gate.sandbox import (
    DENY_PROFILE,
    build_sandbox_mapping,
    resolve,
    validate_sandbox_mapping,
)

POLICY_PATH = Path(__file__).resolve().parents[1] / "governance" / "policy" / "trigger-gate.v1.yaml"


def _profiles():
    document = yaml.safe_load(POLICY_PATH.read_text(encoding="utf-8"))
    return copy.deepcopy(document["sandbox_profiles"])


def _mapping(profiles=None):
    return build_sandbox_mapping(profiles if profiles is not None else _profiles())


def test_shipped_mapping_is_valid():
    validate_sandbox_mapping(_mapping())


@pytest.mark.parametrize("tier", TRUST_TIERS)
@pytest.mark.parametrize("outcome", OUTCOMES)
def test_resolution_is_total(tier, outcome):
    profile = resolve(tier, outcome, _mapping())
    assert profile.network_mode in ("none", "isolated", "full")


@pytest.mark.parametrize("tier", TRUST_TIERS)
def test_deny_always_resolves_to_locked_down_profile(tier):
    assert resolve(tier, "deny", _mapping()) == DENY_PROFILE


@pytest.mark.parametrize("outcome", OUTCOMES)
def test_revoked_always_resolves_to_locked_down_profile(outcome):
    assert resolve("revoked", outcome, _mapping()) == DENY_PROFILE


@pytest.mark.parametrize("tier", EXTERNAL_TIERS)
@pytest.mark.parametrize("outcome", ["admit", "admit_with_approval"])
def test_external_profiles_have_no_credentials_and_restricted_network(tier, outcome):
    profile = resolve(tier, outcome, _mapping())
    assert profile.credential_scope == frozenset()
    assert profile.network_mode in ("none", "isolated")
    assert profile.filesystem_mode == "read_only"
    assert profile.token_ttl_seconds == 0


def test_unknown_tier_or_outcome_is_rejected():
    with pytest.raises(ValueError):
        resolve("admin", "admit", _mapping())
    with pytest.raises(ValueError):
        resolve("internal", "maybe", _mapping())


def test_credentials_for_first_time_external_rejected_at_load():
    profiles = _profiles()
    profiles["first_time_external"]["admit_with_approval"]["credential_scope"] = ["deploy:prod"]
    with pytest.raises(PolicyConfigInvalid, match="credentials"):
        validate_sandbox_mapping(_mapping(profiles))


def test_full_network_for_external_rejected_at_load():
    profiles = _profiles()
    profiles["recurring_external"]["admit"]["network_mode"] = "full"
    with pytest.raises(PolicyConfigInvalid, match="full network"):
        validate_sandbox_mapping(_mapping(profiles))


def test_writable_filesystem_for_external_rejected_at_load():
    profiles = _profiles()
    profiles["recurring_external"]["admit"]["filesystem_mode"] = "read_write"
    with pytest.raises(PolicyConfigInvalid, match="writable"):
        validate_sandbox_mapping(_mapping(profiles))


def test_token_ttl_above_cap_rejected():
    profiles = _profiles()
    profiles["internal"]["admit"]["token_ttl_seconds"] = 7201
    with pytest.raises(PolicyConfigInvalid, match="token_ttl_seconds"):
        validate_sandbox_mapping(_mapping(profiles))
    validate_sandbox_mapping(_mapping(profiles), max_token_ttl_seconds=8000)


def test_lower_tier_more_permissive_than_higher_rejected():
    profiles = _profiles()
    profiles["first_time_external"]["admit"]["memory_limit_mb"] = 999999
    with pytest.raises(PolicyConfigInvalid, match="more permissive"):
        validate_sandbox_mapping(_mapping(profiles))


def test_missing_pair_rejected():
    profiles = _profiles()
    del profiles["internal"]["admit_with_approval"]
    with pytest.raises(PolicyConfigInvalid, match="not configured"):
        _mapping(profiles)


def test_revoked_profile_cannot_be_configured():
    profiles = _profiles()
    profiles["revoked"] = profiles["internal"]
    with pytest.raises(PolicyConfigInvalid, match="unknown tiers"):
        _mapping(profiles)


def test_bad_network_mode_rejected():
    profiles = _profiles()
    profiles["internal"]["admit"]["network_mode"] = "open"
    with pytest.raises(PolicyConfigInvalid, match="network_mode"):
        _mapping(profiles)
