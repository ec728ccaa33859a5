"""Append-only, hash-chained audit log for sync activity.

Each JSON line carries the hash of the previous entry so that edits or
removals are detectable with :meth:`AuditLogger.verify`. Payloads carry
identifiers and counts only, never credentials or message content.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from hashlib import sha256
from pathlib import Path
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """Represents a structured audit event."""

    account_id: str
    source: str
    action: str
    status: str
    timestamp: datetime
    folder: Optional[str] = None
    operator_action: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "account_id": self.account_id,
            "source": self.source,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.folder:
            payload["folder"] = self.folder
        if self.operator_action:
            payload["operator_action"] = self.operator_action
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass
class AuditLogger:
    """Writes append-only tamper-evident audit logs.

    Attributes:
        output_dir: Directory for audit log files
        filename: Name of the active audit log file
        max_bytes: Size at which the active file is rotated
        retention_days: Days to keep rotated files
        manifest_name: File holding the chain head and rotation history
    """

    output_dir: Path
    filename: str = "audit.log"
    max_bytes: int = 5 * 1024 * 1024
    retention_days: int = 30
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        self._lock = threading.Lock()
        if not self._manifest_path.exists():
            self._save_manifest({"last_hash": None, "previous_hash": None, "rotated": []})

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            payload = self._augment_with_chain(event.to_payload())
            with self._path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(payload, separators=(",", ":")) + "\n")
            self._rotate_if_needed()
            self._prune_old_logs()

    def try_record(self, event: AuditEvent) -> None:
        """Record an event, logging instead of raising on I/O failure."""
        try:
            self.record(event)
        except OSError as exc:
            logger.warning(
                "Audit write failed",
                extra={"account_id": event.account_id, "action": event.action, "error": str(exc)},
            )

    def verify(self, *, path: Optional[Path] = None) -> bool:
        """Verify the integrity of the audit log chain.

        Returns:
            True if chain is valid, False if tampered
        """
        target = path or self._path
        if not target.exists():
            return True
        previous_hash = self._load_manifest().get("previous_hash")
        for entry in _iter_json_lines(target):
            if entry.get("chain_prev") != previous_hash:
                return False
            current_hash = entry.get("chain_hash")
            if current_hash != _compute_chain_hash(entry):
                return False
            previous_hash = current_hash
        return True

    def iter_events(self, *, path: Optional[Path] = None) -> Iterable[Dict[str, object]]:
        target = path or self._path
        if not target.exists():
            return
        yield from _iter_json_lines(target)

    def _augment_with_chain(self, payload: Dict[str, object]) -> Dict[str, object]:
        manifest = self._load_manifest()
        augmented = dict(payload)
        augmented["chain_prev"] = manifest.get("last_hash")
        augmented["chain_hash"] = _compute_chain_hash(augmented)
        manifest["last_hash"] = augmented["chain_hash"]
        if manifest.get("previous_hash") is None and not self._path.exists():
            # first entry of a fresh file anchors on the previous file's head
            manifest["previous_hash"] = augmented["chain_prev"]
        self._save_manifest(manifest)
        return augmented

    def _rotate_if_needed(self) -> None:
        if not self._path.exists() or self._path.stat().st_size < self.max_bytes:
            return
        timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
        rotated_name = self.output_dir / f"audit-{timestamp}.log"
        os.replace(self._path, rotated_name)
        manifest = self._load_manifest()
        rotated = list(manifest.get("rotated", []))
        rotated.append(
            {
                "path": rotated_name.name,
                "closed_at": datetime.utcnow().isoformat(),
                "hash": manifest.get("last_hash"),
            }
        )
        manifest["rotated"] = rotated
        manifest["previous_hash"] = manifest.get("last_hash")
        self._save_manifest(manifest)

    def _prune_old_logs(self) -> None:
        cutoff = datetime.utcnow() - timedelta(days=self.retention_days)
        for file_path in self.output_dir.glob("audit-*.log"):
            timestamp = _extract_timestamp(file_path.name)
            if timestamp and timestamp < cutoff:
                file_path.unlink(missing_ok=True)

    def _load_manifest(self) -> Dict[str, object]:
        return json.loads(self._manifest_path.read_text())

    def _save_manifest(self, manifest: Dict[str, object]) -> None:
        self._manifest_path.write_text(json.dumps(manifest, indent=2))


def _compute_chain_hash(payload: Dict[str, object]) -> str:
    canonical = json.dumps(
        {k: payload[k] for k in sorted(payload) if k != "chain_hash"},
        separators=(",", ":"),
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


def _iter_json_lines(path: Path) -> Iterable[Dict[str, object]]:
    with path.open("r", encoding="utf-8") as fp:
        for line in fp:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


def _extract_timestamp(filename: str) -> Optional[datetime]:
    try:
        stamp = filename.split("-")[1].split(".")[0]
        return datetime.strptime(stamp, "%Y%m%d%H%M%S%f")
    except (IndexError, ValueError):
        return None


__all__ = ["AuditEvent", "AuditLogger"]
