import os
import re
from datetime import datetime, timezone


DEFAULT_LOG_PATH = "governance/logs/trigger-gate.log"


def _log_path():
    return os.environ.get("TRIGGER_GATE_LOG_PATH", DEFAULT_LOG_PATH)


def _sanitize(text):
    value = str(text)
    value = re.sub(r"(?i)authorization\s*[:=]\s*(?:(?:bearer|token|basic)\s+)?[^\s,;]+", "Authorization=[REDACTED]", value)
    value = re.sub(r"(?i)\b(token|bearer)\s+[A-Za-z0-9._\-]+", r"\1 [REDACTED]", value)
    value = re.sub(r"(?i)\b(gh[pousr]_[A-Za-z0-9]{16,})", "[REDACTED]", value)
    value = re.sub(r"\s+", " ", value).strip()
    return value


def log_event(component: str, message: str) -> None:
    path = _log_path()
    line = (
        f"{datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')} "
        f"[{_sanitize(component)}] {_sanitize(message)}"
    )
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except Exception:
        return
