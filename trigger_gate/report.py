import json
import os

from trigger_gate.logger import log_event


def decision_report(decision):
    payload = {
        "decision_id": decision.decision_id,
        "event_ref": decision.event_ref,
        "actor": decision.actor_identifier,
        "outcome": decision.outcome,
        "tier": decision.tier,
        "reason_code": decision.reason_code,
        "policy_hash": decision.policy_hash,
        "sandbox_profile": decision.sandbox_profile.as_dict(),
    }
    return "TRIGGER_GATE_DECISION " + json.dumps(payload, sort_keys=True)


def write_decision_artifact(decision, root="artifacts/trigger-gate"):
    os.makedirs(root, exist_ok=True)
    path = os.path.join(root, f"decision-{decision.event_ref[:16]}-{decision.decision_id[:16]}.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(decision.as_dict(), f, sort_keys=True, indent=2)
        f.write("\n")
    log_event(
        "artifact",
        f"wrote {os.path.basename(path)} outcome={decision.outcome} reason={decision.reason_code}",
    )
    return path
