"""Append-only audit sinks.

A sink stores one artifact per sequence number and refuses to overwrite an
existing sequence. Reads never take the writer's lock.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

from trigger_gate.audit.canonical_hash import canon_json_bytes_v1
from trigger_gate.audit.replay_verifier import VerificationResult, verify_audit_chain
from trigger_gate.audit.taxonomy import (
    AuditEntry,
    entry_fingerprint,
    entry_from_mapping,
    entry_to_mapping,
)
from trigger_gate.errors import AuditAppendViolation

_ARTIFACT_SUFFIX = ".audit.json"


def build_audit_artifact_path(stream_id: str, sequence: int) -> str:
    if not isinstance(stream_id, str) or not stream_id:
        raise ValueError("trigger_gate.audit.invalid stream_id")
    if os.sep in stream_id or "/" in stream_id or stream_id in (".", ".."):
        raise ValueError("trigger_gate.audit.invalid stream_id")
    if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence < 0:
        raise ValueError("trigger_gate.audit.invalid sequence")
    return f"audit/streams/{stream_id}/{sequence}{_ARTIFACT_SUFFIX}"


def build_audit_artifact_bytes(
    entry: AuditEntry,
    entry_hash: str,
    *,
    written_by: str = "trigger_gate",
) -> bytes:
    if not isinstance(written_by, str) or not written_by:
        raise ValueError("trigger_gate.audit.invalid written_by")
    artifact = {
        "entry": entry_to_mapping(entry),
        "entry_hash": entry_hash,
        "written_by": written_by,
        "version": 1,
    }
    return canon_json_bytes_v1(artifact)


def parse_audit_artifact(raw: bytes | str) -> tuple[AuditEntry, str]:
    data = json.loads(raw)
    entry_data = data.get("entry") if isinstance(data, Mapping) else None
    if not isinstance(entry_data, Mapping):
        raise ValueError("trigger_gate.replay.invalid entry_payload")
    return entry_from_mapping(entry_data), str(data.get("entry_hash", ""))


class AuditSink(Protocol):
    stream_id: str

    def write_entry(self, entry: AuditEntry, entry_hash: str) -> str: ...

    def read_entry(self, sequence: int) -> tuple[AuditEntry, str] | None: ...


@dataclass
class MemoryAuditSink:
    stream_id: str = "default"
    _entries: list = field(default_factory=list, repr=False)

    def write_entry(self, entry: AuditEntry, entry_hash: str) -> str:
        if entry.sequence == len(self._entries) - 1 and self._entries[-1] == (entry, entry_hash):
            return f"memory://{self.stream_id}/{entry.sequence}"
        if entry.sequence != len(self._entries):
            raise AuditAppendViolation("trigger_gate.audit.append_violation")
        self._entries.append((entry, entry_hash))
        return f"memory://{self.stream_id}/{entry.sequence}"

    def read_entry(self, sequence: int) -> tuple[AuditEntry, str] | None:
        if 0 <= sequence < len(self._entries):
            return self._entries[sequence]
        return None


@dataclass(frozen=True)
class FileAuditSink:
    root: str
    stream_id: str = "default"

    def _path(self, sequence: int) -> Path:
        return Path(self.root) / build_audit_artifact_path(self.stream_id, sequence)

    def write_entry(self, entry: AuditEntry, entry_hash: str) -> str:
        rel_path = build_audit_artifact_path(entry.stream_id, entry.sequence)
        full_path = Path(self.root) / rel_path
        data = build_audit_artifact_bytes(entry, entry_hash)
        if full_path.exists():
            # A retry after a failed directory fsync finds its own artifact.
            _require_same_artifact(full_path, data)
            _fsync_directory(full_path.parent)
            return rel_path
        full_path.parent.mkdir(parents=True, exist_ok=True)

        # Written under a temporary name and linked into place so readers never
        # observe a partial artifact and an existing sequence is never replaced.
        tmp_path = full_path.with_name(f".{full_path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(tmp_path, full_path)
            except FileExistsError:
                _require_same_artifact(full_path, data)
        finally:
            tmp_path.unlink(missing_ok=True)
        _fsync_directory(full_path.parent)
        return rel_path

    def read_entry(self, sequence: int) -> tuple[AuditEntry, str] | None:
        path = self._path(sequence)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        return parse_audit_artifact(raw)


def _require_same_artifact(path: Path, data: bytes) -> None:
    if path.read_bytes() != data:
        raise AuditAppendViolation("trigger_gate.audit.append_violation")


def _fsync_directory(path: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def load_audit_stream(root: str, stream_id: str) -> list[tuple[AuditEntry, str]]:
    if not isinstance(stream_id, str) or not stream_id:
        raise ValueError("trigger_gate.replay.invalid stream_id")
    stream_dir = Path(root) / "audit" / "streams" / stream_id
    if not stream_dir.exists() or not stream_dir.is_dir():
        raise ValueError("trigger_gate.replay.invalid stream_missing")

    entries = []
    for child in stream_dir.iterdir():
        if child.is_file() and child.name.endswith(_ARTIFACT_SUFFIX) and not child.name.startswith("."):
            seq_str = child.name[: -len(_ARTIFACT_SUFFIX)]
            if not seq_str.isdigit():
                raise ValueError("trigger_gate.replay.invalid sequence_file")
            entries.append((int(seq_str), child))

    entries.sort(key=lambda item: item[0])
    expected = 0
    loaded: list[tuple[AuditEntry, str]] = []
    for sequence, path in entries:
        if sequence != expected:
            raise ValueError("trigger_gate.replay.invalid missing_sequence")
        expected += 1
        entry, stored_hash = parse_audit_artifact(path.read_bytes())
        if stored_hash != entry_fingerprint(entry):
            raise ValueError("trigger_gate.replay.invalid entry_hash_mismatch")
        loaded.append((entry, stored_hash))
    return loaded


def verify_audit_stream(root: str, stream_id: str) -> VerificationResult:
    return verify_audit_chain(load_audit_stream(root, stream_id), stream_id)
