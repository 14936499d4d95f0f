import textwrap
from pathlib import Path

import pytest

from trigger_gate.errors import PolicyConfigInvalid
from trigger_gate.policy_loader import (
    PolicyLoadError,
    enforce_policy_hash_lockdown,
    load_policy,
)

POLICY_PATH = Path(__file__).resolve().parents[1] / "governance" / "policy" / "trigger-gate.v1.yaml"


def _write(tmp_path, text):
    policy_file = tmp_path / "policy.yaml"
    policy_file.write_text(textwrap.dedent(text).strip() + "\n", encoding="utf-8")
    return policy_file


def test_shipped_policy_loads():
    policy, policy_hash = load_policy(str(POLICY_PATH))
    assert policy.version == "v1"
    assert policy.min_approvers == 2
    assert "package.json" in policy.sensitive_paths
    assert ".github/workflows/" in policy.sensitive_paths
    assert policy.identities.internal.contains("123456")
    assert len(policy_hash) == 64


def test_policy_path_from_environment(monkeypatch):
    monkeypatch.setenv("TRIGGER_GATE_POLICY_PATH", str(POLICY_PATH))
    policy, _ = load_policy()
    assert policy.version == "v1"


def test_missing_keys(tmp_path):
    policy_file = _write(tmp_path, "version: v1\n")
    with pytest.raises(PolicyConfigInvalid, match="missing required keys"):
        load_policy(str(policy_file))


def test_unreadable_file(tmp_path):
    with pytest.raises(PolicyLoadError):
        load_policy(str(tmp_path / "nope.yaml"))


def test_invalid_yaml(tmp_path):
    policy_file = _write(tmp_path, "version: [v1\n")
    with pytest.raises(PolicyLoadError):
        load_policy(str(policy_file))


def test_non_mapping_yaml(tmp_path):
    policy_file = _write(tmp_path, "- a\n- b\n")
    with pytest.raises(PolicyLoadError):
        load_policy(str(policy_file))


def test_zero_approvers_rejected(tmp_path):
    raw = POLICY_PATH.read_text(encoding="utf-8").replace("min_approvers: 2", "min_approvers: 0")
    policy_file = tmp_path / "policy.yaml"
    policy_file.write_text(raw, encoding="utf-8")
    with pytest.raises(PolicyConfigInvalid, match="min_approvers"):
        load_policy(str(policy_file))


def test_external_credentials_make_policy_unloadable(tmp_path):
    raw = POLICY_PATH.read_text(encoding="utf-8").replace(
        "  first_time_external:\n    admit:\n      network_mode: none\n",
        "  first_time_external:\n    admit:\n      credential_scope: [deploy:prod]\n      network_mode: none\n",
    )
    assert "deploy:prod" in raw
    policy_file = tmp_path / "policy.yaml"
    policy_file.write_text(raw, encoding="utf-8")
    with pytest.raises(PolicyConfigInvalid, match="credentials"):
        load_policy(str(policy_file))


def test_hash_stable_then_changes(tmp_path):
    policy_file = tmp_path / "policy.yaml"
    raw = POLICY_PATH.read_text(encoding="utf-8")
    policy_file.write_text(raw, encoding="utf-8")
    _, hash1 = load_policy(str(policy_file))
    _, hash2 = load_policy(str(policy_file))
    assert hash1 == hash2

    policy_file.write_text(raw.replace("min_account_age_days: 30", "min_account_age_days: 60"), encoding="utf-8")
    _, hash3 = load_policy(str(policy_file))
    assert hash3 != hash1


def test_lockdown_refuses_changed_policy(tmp_path):
    policy_file = tmp_path / "policy.yaml"
    raw = POLICY_PATH.read_text(encoding="utf-8")
    policy_file.write_text(raw, encoding="utf-8")
    _, baseline = load_policy(str(policy_file))
    enforce_policy_hash_lockdown(baseline, str(policy_file))

    policy_file.write_text(raw + "\n# edited\n", encoding="utf-8")
    with pytest.raises(PolicyConfigInvalid, match="POLICY_LOCKDOWN"):
        enforce_policy_hash_lockdown(baseline, str(policy_file))


def test_load_failures_are_logged(tmp_path):
    load_policy_log = Path(tmp_path / "trigger-gate.log")
    with pytest.raises(PolicyConfigInvalid):
        load_policy(str(_write(tmp_path, "version: v1\n")))
    assert "invalid_policy" in load_policy_log.read_text(encoding="utf-8")
