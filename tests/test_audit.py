"""Tests for the hash-chained audit log."""

from __future__ import annotations

import json
from datetime import datetime

from mailsync.audit import AuditEvent, AuditLogger


def _event(action: str = "sync_pass", **kwargs) -> AuditEvent:
    return AuditEvent(
        account_id="acct-1",
        source="sync_executor",
        action=action,
        status="success",
        timestamp=datetime(2024, 1, 2, 3, 4, 5),
        **kwargs,
    )


def test_events_are_chained(tmp_path):
    audit = AuditLogger(tmp_path / "audit")

    audit.record(_event(folder="INBOX", metadata={"inserted": 3}))
    audit.record(_event("consistency_repair"))

    events = list(audit.iter_events())
    assert [e["action"] for e in events] == ["sync_pass", "consistency_repair"]
    assert events[0]["chain_prev"] is None
    assert events[1]["chain_prev"] == events[0]["chain_hash"]
    assert events[0]["metadata"] == {"inserted": 3}
    assert audit.verify()


def test_tampering_is_detected(tmp_path):
    audit = AuditLogger(tmp_path / "audit")
    audit.record(_event(metadata={"inserted": 3}))
    audit.record(_event())

    lines = audit.path.read_text().splitlines()
    first = json.loads(lines[0])
    first["metadata"]["inserted"] = 300
    lines[0] = json.dumps(first, separators=(",", ":"))
    audit.path.write_text("\n".join(lines) + "\n")

    assert not audit.verify()


def test_removed_entry_is_detected(tmp_path):
    audit = AuditLogger(tmp_path / "audit")
    for _ in range(3):
        audit.record(_event())

    lines = audit.path.read_text().splitlines()
    audit.path.write_text("\n".join([lines[0], lines[2]]) + "\n")

    assert not audit.verify()


def test_rotation_continues_the_chain(tmp_path):
    audit = AuditLogger(tmp_path / "audit", max_bytes=1)

    audit.record(_event("first"))
    audit.record(_event("second"))

    rotated = sorted((tmp_path / "audit").glob("audit-*.log"))
    assert len(rotated) == 2
    assert not audit.path.exists()

    first = json.loads(rotated[0].read_text())
    second = json.loads(rotated[1].read_text())
    assert second["chain_prev"] == first["chain_hash"]

    manifest = json.loads((tmp_path / "audit" / "audit_manifest.json").read_text())
    assert [r["hash"] for r in manifest["rotated"]] == [first["chain_hash"], second["chain_hash"]]


def test_old_rotated_files_are_pruned(tmp_path):
    output_dir = tmp_path / "audit"
    output_dir.mkdir()
    stale = output_dir / "audit-20000101000000000000.log"
    stale.write_text("{}\n")

    AuditLogger(output_dir, retention_days=30).record(_event())

    assert not stale.exists()


def test_try_record_swallows_io_errors(tmp_path, monkeypatch):
    audit = AuditLogger(tmp_path / "audit")

    def broken(event):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "record", broken)

    audit.try_record(_event())
