import pytest


@pytest.fixture(autouse=True)
def _isolated_gate_log(tmp_path, monkeypatch):
    monkeypatch.setenv("TRIGGER_GATE_LOG_PATH", str(tmp_path / "trigger-gate.log"))
