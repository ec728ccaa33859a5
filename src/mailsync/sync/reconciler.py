"""Folder Consistency Reconciler.

Detects drift between the locally cached folder counters, the locally
stored messages and the server, and repairs it:

1. recount the cached counters from the stored messages;
2. if the server still holds a different number of messages, backfill the
   missing UIDs (newest first, bounded by ``max_resync_messages``) and
   soft-delete local rows whose UID no longer exists remotely;
3. if the unread counts still disagree, refresh the flags of the folder.

Folders are repaired independently; a failure is reported in the summary
and never stops the remaining folders.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from ..audit import AuditEvent, AuditLogger
from ..errors import ConsistencyError, MailSyncError
from ..imap.client import MailboxClient, MailboxSession
from ..models import (
    ConsistencyReport,
    FixSummary,
    FolderCounters,
    FolderDiscrepancy,
    SweepSummary,
    SyncCheckpoint,
)
from ..storage.repository import AccountRepository, MailRepository
from .locks import RunLocks

logger = logging.getLogger(__name__)


class FolderReconciler:
    """Consistency check and repair for one account at a time."""

    def __init__(
        self,
        accounts: AccountRepository,
        mail: MailRepository,
        client: MailboxClient,
        *,
        run_locks: Optional[RunLocks] = None,
        max_resync_messages: int = 500,
        fetch_bodies: bool = True,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.accounts = accounts
        self.mail = mail
        self.client = client
        self.run_locks = run_locks or RunLocks()
        self.max_resync_messages = max_resync_messages
        self.fetch_bodies = fetch_bodies
        self.audit_logger = audit_logger

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    def check_consistency(
        self, account_id: str, session: Optional[MailboxSession] = None
    ) -> ConsistencyReport:
        """Compare every local folder against the server.

        Unsubscribed folders are reported too, although the repair and the
        executor leave them alone. Nothing is written. Folders are
        reported in path order so that two checks with no remote change in
        between produce equal reports.

        Args:
            account_id: Account to check
            session: Open session to reuse; when omitted one is opened under
                the account's run lock and closed afterwards
        """
        with self._session(account_id, session) as active:
            return self._check(account_id, active, subscribed_only=False)

    def _check(self, account_id: str, session: MailboxSession, *, subscribed_only: bool) -> ConsistencyReport:
        report = ConsistencyReport(account_id=account_id)
        folders = sorted(
            (f for f in self.mail.list_folders(account_id) if f.subscribed or not subscribed_only),
            key=lambda f: f.path,
        )
        for folder in folders:
            report.folders.append(
                FolderCounters(
                    folder_path=folder.path,
                    total_messages=folder.total_messages,
                    unread_messages=folder.unread_messages,
                )
            )
            try:
                remote = self.client.folder_status(session, folder.path)
            except MailSyncError as exc:
                report.errors.append(f"{folder.path}: {exc}")
                continue
            local = self.mail.count_messages(account_id, folder.path)
            discrepancy = FolderDiscrepancy(
                folder_path=folder.path,
                local_count=local.total_messages,
                remote_count=remote.total_messages,
                local_unread=local.unread_messages,
                remote_unread=remote.unread_messages,
                recorded_total=folder.total_messages,
                recorded_unread=folder.unread_messages,
            )
            if (
                discrepancy.counters_stale
                or discrepancy.messages_missing
                or local.unread_messages != remote.unread_messages
            ):
                report.discrepancies.append(discrepancy)
        return report

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def maintain_consistency(
        self, account_id: str, session: Optional[MailboxSession] = None
    ) -> FixSummary:
        """Check the account and repair every discrepancy found."""
        with self._session(account_id, session) as active:
            report = self._check(account_id, active, subscribed_only=True)
            summary = FixSummary(
                account_id=account_id,
                folders_checked=len(report.folders),
                discrepancies_found=len(report.discrepancies),
                errors=list(report.errors),
            )
            for discrepancy in report.discrepancies:
                try:
                    summary.emails_resynced += self._repair_folder(account_id, active, discrepancy)
                    summary.folders_fixed += 1
                except ConsistencyError as exc:
                    summary.emails_resynced += exc.resynced
                    logger.warning(
                        "Consistency repair failed",
                        extra={"account_id": account_id, "folder": exc.folder_path, "error": str(exc)},
                    )
                    summary.errors.append(str(exc))

        if summary.discrepancies_found:
            logger.info(
                "Consistency repair finished",
                extra={
                    "account_id": account_id,
                    "folders_fixed": summary.folders_fixed,
                    "emails_resynced": summary.emails_resynced,
                    "errors": len(summary.errors),
                },
            )
        self._log_event(summary)
        return summary

    def _repair_folder(self, account_id: str, session: MailboxSession, discrepancy: FolderDiscrepancy) -> int:
        path = discrepancy.folder_path
        resynced = 0
        try:
            local = self._recount(account_id, path)

            if local.total_messages != discrepancy.remote_count:
                resynced = self._backfill(account_id, session, path)
                local = self._recount(account_id, path)

            if local.unread_messages != discrepancy.remote_unread:
                for snapshot in self.client.fetch_flags(session, path):
                    self.mail.upsert_message(account_id, path, snapshot)
                local = self._recount(account_id, path)
        except ConsistencyError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ConsistencyError(path, str(exc), resynced=resynced) from exc

        if local.total_messages != discrepancy.remote_count:
            raise ConsistencyError(
                path,
                f"{discrepancy.remote_count - local.total_messages} messages still differ after resync",
                resynced=resynced,
            )
        return resynced

    def _recount(self, account_id: str, folder_path: str) -> FolderCounters:
        counters = self.mail.count_messages(account_id, folder_path)
        self.mail.set_folder_counters(
            account_id, folder_path, counters.total_messages, counters.unread_messages
        )
        return counters

    def _backfill(self, account_id: str, session: MailboxSession, folder_path: str) -> int:
        remote_uids = self.client.list_uids(session, folder_path)
        local_uids = self.mail.message_uids(account_id, folder_path)

        vanished = local_uids - remote_uids
        if vanished:
            # a complete remote listing leaves no room for a transient miss
            self.mail.soft_delete_messages(account_id, folder_path, vanished)

        missing = sorted(remote_uids - local_uids)[-self.max_resync_messages :]
        if not missing:
            return 0

        logger.info(
            "Backfilling missing messages",
            extra={"account_id": account_id, "folder": folder_path, "count": len(missing)},
        )
        resynced = 0
        highest = 0
        for snapshot in self.client.fetch_uids(
            session, folder_path, missing, include_bodies=self.fetch_bodies
        ):
            self.mail.upsert_message(account_id, folder_path, snapshot)
            highest = max(highest, snapshot.uid)
            resynced += 1

        checkpoint = self.mail.get_checkpoint(account_id, folder_path)
        if checkpoint is not None and highest > checkpoint.last_uid:
            self.mail.save_checkpoint(
                checkpoint.advanced(highest, None).model_copy(update={"updated_at": datetime.utcnow()})
            )
        elif checkpoint is None and highest:
            self.mail.save_checkpoint(
                SyncCheckpoint(account_id=account_id, folder_path=folder_path, last_uid=highest)
            )
        return resynced

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, account_id: str, session: Optional[MailboxSession]) -> Iterator[MailboxSession]:
        if session is not None:
            yield session
            return
        account = self.accounts.get_account(account_id)
        with self.run_locks.hold(account_id):
            opened = self.client.connect(account)
            try:
                yield opened
            finally:
                self.client.disconnect(opened)

    def _log_event(self, summary: FixSummary) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.try_record(
            AuditEvent(
                account_id=summary.account_id,
                source="reconciler",
                action="consistency_repair",
                status="success" if not summary.errors else "partial_success",
                timestamp=datetime.utcnow(),
                metadata={
                    "folders_checked": summary.folders_checked,
                    "discrepancies_found": summary.discrepancies_found,
                    "folders_fixed": summary.folders_fixed,
                    "emails_resynced": summary.emails_resynced,
                    "errors": len(summary.errors),
                },
            )
        )


def run_consistency_sweep(accounts: AccountRepository, reconciler: FolderReconciler) -> SweepSummary:
    """Run ``maintain_consistency`` on every enabled account with sync enabled.

    An account counts as successful when its repair finished without errors.
    """
    summary = SweepSummary()
    errors: List[str] = []
    for account in accounts.list_accounts():
        if not (account.enabled and account.sync_enabled):
            continue
        summary.total_configs += 1
        try:
            fix = reconciler.maintain_consistency(account.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Consistency sweep failed for account",
                extra={"account_id": account.id, "error": str(exc)},
            )
            errors.append(f"{account.id}: {exc}")
            continue
        if fix.errors:
            errors.extend(f"{account.id}: {err}" for err in fix.errors)
        else:
            summary.successful_configs += 1
    summary.errors = errors
    logger.info(
        "Consistency sweep finished",
        extra={
            "total_configs": summary.total_configs,
            "successful_configs": summary.successful_configs,
            "errors": len(errors),
        },
    )
    return summary


__all__ = ["FolderReconciler", "run_consistency_sweep"]
