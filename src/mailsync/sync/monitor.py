"""In-memory sync log and metrics per account.

Keeps the most recent log entries for each account and running pass
metrics, for status endpoints and the CLI report.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100
ACTIVE_WINDOW = timedelta(minutes=5)


class SyncLogAction(str, Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"
    SKIP = "skip"


@dataclass
class SyncLogEntry:
    account_id: str
    action: SyncLogAction
    message: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    duration_seconds: Optional[float] = None
    messages_processed: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class AccountSyncMetrics:
    """Running metrics for one account."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    average_sync_seconds: float = 0.0
    messages_processed: int = 0
    last_sync_time: Optional[datetime] = None

    def record_success(self, duration: float, messages: int) -> None:
        self.successful_syncs += 1
        # incremental mean over successful passes
        self.average_sync_seconds += (duration - self.average_sync_seconds) / self.successful_syncs
        self.messages_processed += messages
        self.last_sync_time = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_sync_time"] = self.last_sync_time.isoformat() if self.last_sync_time else None
        return data


class SyncMonitor:
    """Thread-safe collector of per-account sync logs and metrics."""

    def __init__(self, max_entries: int = MAX_LOG_ENTRIES) -> None:
        self._max_entries = max_entries
        self._logs: Dict[str, Deque[SyncLogEntry]] = {}
        self._metrics: Dict[str, AccountSyncMetrics] = {}
        self._lock = Lock()

    def log_start(self, account_id: str) -> None:
        with self._lock:
            self._append(SyncLogEntry(account_id, SyncLogAction.START, "Sync started"))
            self._metrics_for(account_id).total_syncs += 1

    def log_success(self, account_id: str, duration: float, messages_processed: int) -> None:
        with self._lock:
            self._append(
                SyncLogEntry(
                    account_id,
                    SyncLogAction.SUCCESS,
                    f"Sync finished: {messages_processed} messages in {duration:.2f}s",
                    duration_seconds=duration,
                    messages_processed=messages_processed,
                )
            )
            self._metrics_for(account_id).record_success(duration, messages_processed)

    def log_error(self, account_id: str, error: str, duration: Optional[float] = None) -> None:
        with self._lock:
            self._append(
                SyncLogEntry(
                    account_id,
                    SyncLogAction.ERROR,
                    f"Sync failed: {error}",
                    duration_seconds=duration,
                    error=error,
                )
            )
            self._metrics_for(account_id).failed_syncs += 1

    def log_skip(self, account_id: str, reason: str) -> None:
        with self._lock:
            self._append(SyncLogEntry(account_id, SyncLogAction.SKIP, f"Sync skipped: {reason}"))

    def get_logs(self, account_id: str, limit: Optional[int] = None) -> List[SyncLogEntry]:
        with self._lock:
            logs = list(self._logs.get(account_id, ()))
        return logs[-limit:] if limit else logs

    def get_metrics(self, account_id: str) -> Optional[AccountSyncMetrics]:
        with self._lock:
            return self._metrics.get(account_id)

    def global_metrics(self) -> Dict[str, Any]:
        now = datetime.utcnow()
        with self._lock:
            metrics = list(self._metrics.values())
        total_syncs = sum(m.total_syncs for m in metrics)
        successful = sum(m.successful_syncs for m in metrics)
        return {
            "total_configs": len(metrics),
            "active_configs": sum(
                1 for m in metrics if m.last_sync_time and now - m.last_sync_time < ACTIVE_WINDOW
            ),
            "total_syncs": total_syncs,
            "success_rate": (successful / total_syncs) * 100 if total_syncs else 0.0,
            "average_sync_seconds": (
                sum(m.average_sync_seconds for m in metrics) / len(metrics) if metrics else 0.0
            ),
        }

    def clear_old_logs(self, older_than_hours: int = 24) -> int:
        """Drop log entries older than the cutoff; return how many were removed."""
        cutoff = datetime.utcnow() - timedelta(hours=older_than_hours)
        removed = 0
        with self._lock:
            for account_id, entries in self._logs.items():
                kept = deque((e for e in entries if e.timestamp > cutoff), maxlen=self._max_entries)
                removed += len(entries) - len(kept)
                self._logs[account_id] = kept
        logger.debug("Old sync logs cleared", extra={"removed": removed, "older_than_hours": older_than_hours})
        return removed

    def generate_report(self) -> Dict[str, Any]:
        with self._lock:
            account_ids = sorted(self._metrics)
        return {
            "summary": self.global_metrics(),
            "accounts": [
                {
                    "account_id": account_id,
                    "metrics": self._metrics[account_id].to_dict(),
                    "recent_logs": [e.to_dict() for e in self.get_logs(account_id, 5)],
                }
                for account_id in account_ids
            ],
        }

    def _append(self, entry: SyncLogEntry) -> None:
        entries = self._logs.get(entry.account_id)
        if entries is None:
            entries = deque(maxlen=self._max_entries)
            self._logs[entry.account_id] = entries
        entries.append(entry)

    def _metrics_for(self, account_id: str) -> AccountSyncMetrics:
        metrics = self._metrics.get(account_id)
        if metrics is None:
            metrics = AccountSyncMetrics()
            self._metrics[account_id] = metrics
        return metrics


__all__ = ["AccountSyncMetrics", "SyncLogAction", "SyncLogEntry", "SyncMonitor"]
