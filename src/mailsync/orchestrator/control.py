"""Control surface exposed to outer layers (HTTP handlers, CLI).

Job control returns immediately; the work happens in the scheduler's
background tasks. Consistency calls block until the check or repair
finished, so async callers should run them on a worker thread.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..audit import AuditEvent, AuditLogger
from ..errors import FolderDeletionError, FolderNotFoundError
from ..imap.client import MailboxClient
from ..models import ConsistencyReport, FixSummary, PassResult, SweepSummary
from ..storage.repository import AccountRepository, MailRepository
from ..sync.locks import RunLocks
from ..sync.reconciler import FolderReconciler, run_consistency_sweep
from .job_state import GlobalStatus, JobStatus
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class SyncControlService:
    """Facade over the scheduler, the reconciler and folder management."""

    def __init__(
        self,
        scheduler: SyncScheduler,
        reconciler: FolderReconciler,
        accounts: AccountRepository,
        mail: MailRepository,
        client: MailboxClient,
        *,
        run_locks: Optional[RunLocks] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.accounts = accounts
        self.mail = mail
        self.client = client
        self.run_locks = run_locks or reconciler.run_locks
        self._audit = audit_logger

    # -- jobs -------------------------------------------------------------

    def start(self, account_id: str, interval_seconds: Optional[int] = None) -> JobStatus:
        return self.scheduler.start_sync_for_account(account_id, interval_seconds)

    def stop(self, account_id: str) -> bool:
        return self.scheduler.stop_sync_for_account(account_id)

    def restart(self, account_id: str) -> JobStatus:
        return self.scheduler.restart_sync_for_account(account_id)

    def status(self, account_id: str) -> Optional[JobStatus]:
        return self.scheduler.get_sync_status(account_id)

    def global_status(self) -> GlobalStatus:
        return self.scheduler.get_global_status()

    def enable_global(self) -> None:
        self.scheduler.enable_global_sync()

    def disable_global(self) -> None:
        self.scheduler.disable_global_sync()

    def stop_all(self) -> int:
        return self.scheduler.stop_all_syncs()

    async def sync_now(self, account_id: str) -> PassResult:
        return await self.scheduler.sync_now(account_id)

    # -- consistency ------------------------------------------------------

    def run_consistency_check(self, account_id: str) -> ConsistencyReport:
        return self.reconciler.check_consistency(account_id)

    def run_consistency_repair(self, account_id: str) -> FixSummary:
        summary = self.reconciler.maintain_consistency(account_id)
        self._log_action(account_id, "consistency_repair", "success" if not summary.errors else "partial_success")
        return summary

    def run_global_consistency_sweep(self) -> SweepSummary:
        summary = run_consistency_sweep(self.accounts, self.reconciler)
        self._log_action(
            "*",
            "consistency_sweep",
            "success" if not summary.errors else "partial_success",
            {"total_configs": summary.total_configs, "successful_configs": summary.successful_configs},
        )
        return summary

    # -- folders ----------------------------------------------------------

    def delete_folder(self, account_id: str, folder_path: str, *, remote: bool = True) -> None:
        """Delete an empty user folder locally and, by default, on the server.

        Raises:
            FolderNotFoundError: Unknown folder
            FolderDeletionError: System folder, or folder still holds messages
        """
        folder = self.mail.get_folder(account_id, folder_path)
        if folder is None:
            raise FolderNotFoundError(f"{account_id}:{folder_path}")
        if folder.is_system:
            raise FolderDeletionError(f"System folder {folder_path!r} cannot be deleted")
        if self.mail.count_messages(account_id, folder_path).total_messages > 0:
            raise FolderDeletionError(f"Folder {folder_path!r} is not empty")

        if remote:
            account = self.accounts.get_account(account_id)
            with self.run_locks.hold(account_id):
                session = self.client.connect(account)
                try:
                    # mail delivered since the last pass lives only on the server
                    status = self.client.folder_status(session, folder_path)
                    if status.total_messages > 0:
                        raise FolderDeletionError(
                            f"Folder {folder_path!r} still holds {status.total_messages} messages on the server"
                        )
                    self.client.delete_folder(session, folder_path)
                finally:
                    self.client.disconnect(session)

        self.mail.delete_folder(account_id, folder_path)
        logger.info("Folder deleted", extra={"account_id": account_id, "folder": folder_path})
        self._log_action(account_id, "delete_folder", "success", {"folder": folder_path})

    def _log_action(self, account_id: str, action: str, status: str, metadata: Optional[dict] = None) -> None:
        if not self._audit:
            return
        self._audit.try_record(
            AuditEvent(
                account_id=account_id,
                source="control",
                action=action,
                status=status,
                timestamp=datetime.utcnow(),
                operator_action=action,
                metadata=metadata or {},
            )
        )


__all__ = ["SyncControlService"]
