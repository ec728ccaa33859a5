"""Sync Executor: one synchronization pass for one account.

A pass holds the account's run lock, opens one mailbox session, discovers
new folders, then synchronizes subscribed folders one after the other,
least recently synced first. Failures are scoped to the folder they
happen in; the session is always closed and the account status is always
written back.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..audit import AuditEvent, AuditLogger
from ..config import SyncSettings
from ..errors import AuthError, MailSyncError
from ..imap.client import MailboxClient, MailboxSession
from ..models import (
    AccountStatus,
    Folder,
    FolderSyncResult,
    PassOutcome,
    PassResult,
    SyncCheckpoint,
)
from ..storage.repository import AccountRepository, ChangeKind, MailRepository
from .locks import RunLocks
from .monitor import SyncMonitor
from .reconciler import FolderReconciler

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Runs single passes; safe to call from many threads at once."""

    def __init__(
        self,
        accounts: AccountRepository,
        mail: MailRepository,
        client: MailboxClient,
        *,
        settings: Optional[SyncSettings] = None,
        run_locks: Optional[RunLocks] = None,
        reconciler: Optional[FolderReconciler] = None,
        monitor: Optional[SyncMonitor] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.accounts = accounts
        self.mail = mail
        self.client = client
        self.settings = settings or SyncSettings()
        self.run_locks = run_locks or RunLocks()
        self.reconciler = reconciler or FolderReconciler(
            accounts,
            mail,
            client,
            run_locks=self.run_locks,
            max_resync_messages=self.settings.max_resync_messages,
            fetch_bodies=self.settings.fetch_bodies,
            audit_logger=audit_logger,
        )
        self.monitor = monitor
        self.audit_logger = audit_logger
        self._pass_counts: Dict[str, int] = {}
        self._pass_counts_lock = threading.Lock()

    def run_pass(
        self,
        account_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        force_consistency: bool = False,
    ) -> PassResult:
        """Perform one pass for ``account_id``.

        Returns a ``SKIPPED`` result immediately when another pass for the
        same account is still running.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        if not self.run_locks.acquire(account_id):
            logger.info("Previous pass still active, skipping", extra={"account_id": account_id})
            if self.monitor:
                self.monitor.log_skip(account_id, "previous pass still active")
            now = datetime.utcnow()
            return PassResult(
                account_id=account_id,
                outcome=PassOutcome.SKIPPED,
                started_at=now,
                finished_at=now,
            )
        try:
            return self._run_locked(account_id, cancel_event, force_consistency)
        finally:
            self.run_locks.release(account_id)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def _run_locked(
        self,
        account_id: str,
        cancel_event: Optional[threading.Event],
        force_consistency: bool,
    ) -> PassResult:
        account = self.accounts.get_account(account_id)
        result = PassResult(account_id=account_id, outcome=PassOutcome.OK, started_at=datetime.utcnow())
        if self.monitor:
            self.monitor.log_start(account_id)

        try:
            session = self.client.connect(account)
        except MailSyncError as exc:
            result.outcome = PassOutcome.AUTH_FAILED if isinstance(exc, AuthError) else PassOutcome.FAILED
            result.error = str(exc)
            return self._finish(result)

        try:
            self._sync_session(account_id, session, result, cancel_event, force_consistency)
        finally:
            self.client.disconnect(session)

        return self._finish(result)

    def _sync_session(
        self,
        account_id: str,
        session: MailboxSession,
        result: PassResult,
        cancel_event: Optional[threading.Event],
        force_consistency: bool,
    ) -> None:
        try:
            result.folders_created = self._discover_folders(account_id, session)
        except MailSyncError as exc:
            result.outcome = PassOutcome.FAILED
            result.error = f"list_folders: {exc}"
            return

        for folder in self._folders_in_sync_order(account_id):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info(
                    "Pass cancelled between folders",
                    extra={"account_id": account_id, "next_folder": folder.path},
                )
                break
            result.folders.append(self.sync_folder(account_id, session, folder))

        if result.failed_folders:
            result.outcome = PassOutcome.PARTIAL
            result.error = "; ".join(f"{f.folder_path}: {f.error}" for f in result.folders if not f.ok)

        if result.cancelled:
            return
        if force_consistency or self._consistency_due(account_id):
            try:
                result.consistency = self.reconciler.maintain_consistency(account_id, session=session)
            except MailSyncError as exc:
                logger.warning(
                    "Periodic consistency check failed",
                    extra={"account_id": account_id, "error": str(exc)},
                )

    def _discover_folders(self, account_id: str, session: MailboxSession) -> List[str]:
        known = {f.path for f in self.mail.list_folders(account_id)}
        created: List[str] = []
        for descriptor in self.client.list_folders(session):
            if descriptor.path in known:
                continue
            self.mail.upsert_folder(Folder.from_descriptor(account_id, descriptor))
            created.append(descriptor.path)
        if created:
            logger.info("New folders discovered", extra={"account_id": account_id, "folders": created})
        return created

    def _folders_in_sync_order(self, account_id: str) -> List[Folder]:
        folders = [f for f in self.mail.list_folders(account_id) if f.subscribed]
        # never-synced folders first, then oldest sync first
        return sorted(folders, key=lambda f: (f.last_synced_at is not None, f.last_synced_at or datetime.min, f.path))

    def _consistency_due(self, account_id: str) -> bool:
        with self._pass_counts_lock:
            count = self._pass_counts.get(account_id, 0) + 1
            self._pass_counts[account_id] = count
        return count % self.settings.consistency_every_n_passes == 0

    # ------------------------------------------------------------------
    # Folder
    # ------------------------------------------------------------------

    def sync_folder(self, account_id: str, session: MailboxSession, folder: Folder) -> FolderSyncResult:
        """Synchronize one folder.

        The checkpoint is written only after the whole folder went through;
        counters are adjusted for every row written, including rows stored
        before a failure.
        """
        path = folder.path
        result = FolderSyncResult(folder_path=path)
        total_delta = 0
        unread_delta = 0
        finished_at: Optional[datetime] = None

        try:
            status = self.client.folder_status(session, path)
            checkpoint = self.mail.get_checkpoint(account_id, path) or SyncCheckpoint(
                account_id=account_id, folder_path=path
            )

            if status.uid_validity is not None and checkpoint.uid_validity != status.uid_validity:
                if checkpoint.uid_validity:
                    logger.warning(
                        "UIDVALIDITY changed, resetting checkpoint",
                        extra={
                            "account_id": account_id,
                            "folder": path,
                            "old_uidvalidity": checkpoint.uid_validity,
                            "new_uidvalidity": status.uid_validity,
                        },
                    )
                    stale = self.mail.message_uids(account_id, path)
                    deleted, unread_deleted = self.mail.soft_delete_messages(account_id, path, stale)
                    total_delta -= deleted
                    unread_delta -= unread_deleted
                    checkpoint = SyncCheckpoint(
                        account_id=account_id, folder_path=path, uid_validity=status.uid_validity
                    )
                    self.mail.save_checkpoint(checkpoint)
                else:
                    checkpoint = checkpoint.model_copy(update={"uid_validity": status.uid_validity})

            working = checkpoint
            for snapshot in self.client.fetch_since(
                session,
                path,
                checkpoint,
                include_bodies=self.settings.fetch_bodies,
                batch_size=self.settings.fetch_batch_size,
            ):
                change = self.mail.upsert_message(account_id, path, snapshot)
                total_delta += change.total_delta
                unread_delta += change.unread_delta
                if change.kind == ChangeKind.INSERTED:
                    result.inserted += 1
                    if change.is_unread:
                        result.new_unread += 1
                elif change.kind == ChangeKind.UPDATED:
                    result.updated += 1
                working = working.advanced(snapshot.uid, snapshot.modseq)

            deleted, unread_deleted = self._expire_vanished(account_id, session, path)
            result.soft_deleted = deleted
            total_delta -= deleted
            unread_delta -= unread_deleted

            finished_at = datetime.utcnow()
            working = working.advanced(0, status.highest_modseq).model_copy(update={"updated_at": finished_at})
            self.mail.save_checkpoint(working)
            result.checkpoint_uid = working.last_uid
        except Exception as exc:  # noqa: BLE001
            result.error = str(exc)
            log = logger.warning if isinstance(exc, MailSyncError) else logger.error
            log(
                "Folder sync failed",
                exc_info=not isinstance(exc, MailSyncError),
                extra={"account_id": account_id, "folder": path, "error": str(exc)},
            )
        finally:
            self.mail.adjust_folder_counters(account_id, path, total_delta, unread_delta, synced_at=finished_at)

        if result.new_unread:
            logger.info(
                "New unread messages",
                extra={"account_id": account_id, "folder": path, "count": result.new_unread},
            )
        return result

    def _expire_vanished(self, account_id: str, session: MailboxSession, path: str) -> Tuple[int, int]:
        """Soft-delete messages missing from the server for enough passes."""
        remote = self.client.list_uids(session, path)
        local = self.mail.message_uids(account_id, path)
        self.mail.clear_missing(account_id, path, local & remote)
        misses = self.mail.note_missing(account_id, path, local - remote)
        expired = [uid for uid, count in misses.items() if count >= self.settings.deletion_grace_passes]
        if not expired:
            return 0, 0
        logger.info(
            "Soft-deleting vanished messages",
            extra={"account_id": account_id, "folder": path, "count": len(expired)},
        )
        return self.mail.soft_delete_messages(account_id, path, expired)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _finish(self, result: PassResult) -> PassResult:
        result.finished_at = datetime.utcnow()
        account_id = result.account_id

        if result.outcome == PassOutcome.OK:
            self.accounts.update_account_status(
                account_id, AccountStatus.OK, last_sync=result.finished_at
            )
        elif result.outcome == PassOutcome.PARTIAL:
            self.accounts.update_account_status(
                account_id, AccountStatus.PARTIAL, last_sync=result.finished_at, error=result.error
            )
        else:
            # connect or folder listing failed: no successful sync to record
            self.accounts.update_account_status(account_id, AccountStatus.ERROR, error=result.error)

        if self.monitor:
            if result.outcome in (PassOutcome.OK, PassOutcome.PARTIAL):
                self.monitor.log_success(account_id, result.duration_seconds, result.messages_processed)
            else:
                self.monitor.log_error(account_id, result.error or result.outcome.value, result.duration_seconds)

        logger.info(
            "Pass finished",
            extra={
                "account_id": account_id,
                "outcome": result.outcome.value,
                "folders": len(result.folders),
                "failed_folders": len(result.failed_folders),
                "messages_processed": result.messages_processed,
                "new_unread": result.new_unread,
                "duration_seconds": round(result.duration_seconds, 2),
            },
        )
        self._log_event(result)
        return result

    def _log_event(self, result: PassResult) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.try_record(
            AuditEvent(
                account_id=result.account_id,
                source="sync_executor",
                action="sync_pass",
                status=result.outcome.value,
                timestamp=result.finished_at or datetime.utcnow(),
                metadata={
                    "folders": len(result.folders),
                    "failed_folders": result.failed_folders,
                    "folders_created": len(result.folders_created),
                    "inserted": sum(f.inserted for f in result.folders),
                    "updated": sum(f.updated for f in result.folders),
                    "soft_deleted": sum(f.soft_deleted for f in result.folders),
                    "new_unread": result.new_unread,
                    "cancelled": result.cancelled,
                    "duration_seconds": round(result.duration_seconds, 2),
                },
            )
        )


__all__ = ["SyncExecutor"]
