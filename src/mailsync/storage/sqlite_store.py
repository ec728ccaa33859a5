"""SQLite implementation of the account and mail repositories.

A single connection is shared between the scheduler's worker threads and
serialized with a lock; each account only ever touches its own rows.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..config import SecretsManager
from ..errors import AccountNotFoundError
from ..models import (
    Account,
    AccountStatus,
    AttachmentRef,
    EmailAddress,
    Folder,
    FolderCounters,
    Message,
    MessageSnapshot,
    SyncCheckpoint,
    TransportSecurity,
)
from .repository import AccountRepository, ChangeKind, MailRepository, MessageChange

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    host TEXT NOT NULL,
    port INTEGER NOT NULL,
    security TEXT NOT NULL,
    username TEXT NOT NULL,
    secret_ref TEXT NOT NULL,
    enabled BOOLEAN DEFAULT 1,
    sync_enabled BOOLEAN DEFAULT 1,
    sync_interval_seconds INTEGER NOT NULL,
    last_sync TEXT,
    status TEXT NOT NULL DEFAULT 'never',
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS folders (
    account_id TEXT NOT NULL,
    path TEXT NOT NULL,
    name TEXT NOT NULL,
    delimiter TEXT,
    special_use TEXT,
    subscribed BOOLEAN DEFAULT 1,
    total_messages INTEGER DEFAULT 0,
    unread_messages INTEGER DEFAULT 0,
    last_synced_at TEXT,
    PRIMARY KEY (account_id, path)
);

CREATE TABLE IF NOT EXISTS messages (
    account_id TEXT NOT NULL,
    folder_path TEXT NOT NULL,
    uid INTEGER NOT NULL,
    message_id TEXT,
    subject TEXT,
    from_addresses TEXT,
    to_addresses TEXT,
    cc_addresses TEXT,
    bcc_addresses TEXT,
    date TEXT,
    size_bytes INTEGER DEFAULT 0,
    body_text TEXT,
    body_html TEXT,
    attachments TEXT,
    flags TEXT,
    is_read BOOLEAN DEFAULT 0,
    is_starred BOOLEAN DEFAULT 0,
    is_important BOOLEAN DEFAULT 0,
    is_deleted BOOLEAN DEFAULT 0,
    missing_passes INTEGER DEFAULT 0,
    PRIMARY KEY (account_id, folder_path, uid)
);

CREATE TABLE IF NOT EXISTS checkpoints (
    account_id TEXT NOT NULL,
    folder_path TEXT NOT NULL,
    uid_validity INTEGER DEFAULT 0,
    last_uid INTEGER DEFAULT 0,
    highest_modseq INTEGER,
    updated_at TEXT,
    PRIMARY KEY (account_id, folder_path)
);

CREATE INDEX IF NOT EXISTS idx_messages_live ON messages(account_id, folder_path, is_deleted);
"""

MESSAGE_COLUMNS = (
    "account_id, folder_path, uid, message_id, subject, from_addresses, to_addresses, "
    "cc_addresses, bcc_addresses, date, size_bytes, body_text, body_html, attachments, "
    "flags, is_read, is_starred, is_important, is_deleted, missing_passes"
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump_addresses(addresses: List[EmailAddress]) -> str:
    return json.dumps([a.model_dump() for a in addresses])


def _load_addresses(raw: Optional[str]) -> List[EmailAddress]:
    return [EmailAddress(**item) for item in json.loads(raw or "[]")]


class SqliteMailStore(AccountRepository, MailRepository):
    """SQLite-backed store for accounts, folders, messages and checkpoints."""

    def __init__(self, path: Path, *, secrets: Optional[SecretsManager] = None) -> None:
        """Open (and create if needed) the database.

        Args:
            path: Path to SQLite database file
            secrets: Resolver for account secret references
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._secrets = secrets or SecretsManager()
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Account:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, host, port, security, username, secret_ref, enabled, sync_enabled,
                       sync_interval_seconds, last_sync, status, last_error
                FROM accounts WHERE id = ?
                """,
                (account_id,),
            ).fetchone()
        if not row:
            raise AccountNotFoundError(account_id)
        return self._row_to_account(row)

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, host, port, security, username, secret_ref, enabled, sync_enabled,
                       sync_interval_seconds, last_sync, status, last_error
                FROM accounts ORDER BY id
                """
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def save_account(self, account: Account) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO accounts(
                    id, host, port, security, username, secret_ref, enabled, sync_enabled,
                    sync_interval_seconds, last_sync, status, last_error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    host=excluded.host,
                    port=excluded.port,
                    security=excluded.security,
                    username=excluded.username,
                    secret_ref=excluded.secret_ref,
                    enabled=excluded.enabled,
                    sync_enabled=excluded.sync_enabled,
                    sync_interval_seconds=excluded.sync_interval_seconds
                """,
                (
                    account.id,
                    account.host,
                    account.port,
                    account.security.value,
                    account.username,
                    account.secret_ref,
                    int(account.enabled),
                    int(account.sync_enabled),
                    account.sync_interval_seconds,
                    _iso(account.last_sync),
                    account.status.value,
                    account.last_error,
                ),
            )

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        last_sync: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE accounts
                SET status = ?, last_error = ?, last_sync = COALESCE(?, last_sync)
                WHERE id = ?
                """,
                (status.value, error, _iso(last_sync), account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(account_id)

    def set_sync_enabled(self, account_id: str, enabled: bool) -> None:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE accounts SET sync_enabled = ? WHERE id = ?",
                (int(enabled), account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(account_id)

    def resolve_secret(self, ref: str) -> str:
        return self._secrets.resolve(ref)

    @staticmethod
    def _row_to_account(row: Tuple) -> Account:
        return Account(
            id=row[0],
            host=row[1],
            port=row[2],
            security=TransportSecurity(row[3]),
            username=row[4],
            secret_ref=row[5],
            enabled=bool(row[6]),
            sync_enabled=bool(row[7]),
            sync_interval_seconds=row[8],
            last_sync=_parse_dt(row[9]),
            status=AccountStatus(row[10]),
            last_error=row[11],
        )

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def list_folders(self, account_id: str) -> List[Folder]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT account_id, path, name, delimiter, special_use, subscribed,
                       total_messages, unread_messages, last_synced_at
                FROM folders WHERE account_id = ? ORDER BY path
                """,
                (account_id,),
            ).fetchall()
        return [self._row_to_folder(row) for row in rows]

    def get_folder(self, account_id: str, folder_path: str) -> Optional[Folder]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT account_id, path, name, delimiter, special_use, subscribed,
                       total_messages, unread_messages, last_synced_at
                FROM folders WHERE account_id = ? AND path = ?
                """,
                (account_id, folder_path),
            ).fetchone()
        return self._row_to_folder(row) if row else None

    def upsert_folder(self, folder: Folder) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO folders(
                    account_id, path, name, delimiter, special_use, subscribed,
                    total_messages, unread_messages, last_synced_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, path) DO UPDATE SET
                    name=excluded.name,
                    delimiter=excluded.delimiter,
                    special_use=excluded.special_use,
                    subscribed=excluded.subscribed
                """,
                (
                    folder.account_id,
                    folder.path,
                    folder.name,
                    folder.delimiter,
                    folder.special_use,
                    int(folder.subscribed),
                    folder.total_messages,
                    folder.unread_messages,
                    _iso(folder.last_synced_at),
                ),
            )

    def delete_folder(self, account_id: str, folder_path: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM messages WHERE account_id = ? AND folder_path = ? AND is_deleted = 1",
                (account_id, folder_path),
            )
            self._conn.execute(
                "DELETE FROM checkpoints WHERE account_id = ? AND folder_path = ?",
                (account_id, folder_path),
            )
            self._conn.execute(
                "DELETE FROM folders WHERE account_id = ? AND path = ?",
                (account_id, folder_path),
            )

    def set_folder_counters(
        self,
        account_id: str,
        folder_path: str,
        total_messages: int,
        unread_messages: int,
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE folders SET total_messages = ?, unread_messages = ?
                WHERE account_id = ? AND path = ?
                """,
                (total_messages, unread_messages, account_id, folder_path),
            )

    def adjust_folder_counters(
        self,
        account_id: str,
        folder_path: str,
        total_delta: int,
        unread_delta: int,
        synced_at: Optional[datetime] = None,
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE folders
                SET total_messages = MAX(0, total_messages + ?),
                    unread_messages = MAX(0, unread_messages + ?),
                    last_synced_at = COALESCE(?, last_synced_at)
                WHERE account_id = ? AND path = ?
                """,
                (total_delta, unread_delta, _iso(synced_at), account_id, folder_path),
            )

    @staticmethod
    def _row_to_folder(row: Tuple) -> Folder:
        return Folder(
            account_id=row[0],
            path=row[1],
            name=row[2],
            delimiter=row[3],
            special_use=row[4],
            subscribed=bool(row[5]),
            total_messages=row[6],
            unread_messages=row[7],
            last_synced_at=_parse_dt(row[8]),
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def get_checkpoint(self, account_id: str, folder_path: str) -> Optional[SyncCheckpoint]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT account_id, folder_path, uid_validity, last_uid, highest_modseq, updated_at
                FROM checkpoints WHERE account_id = ? AND folder_path = ?
                """,
                (account_id, folder_path),
            ).fetchone()
        if not row:
            return None
        return SyncCheckpoint(
            account_id=row[0],
            folder_path=row[1],
            uid_validity=row[2],
            last_uid=row[3],
            highest_modseq=row[4],
            updated_at=_parse_dt(row[5]),
        )

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO checkpoints(account_id, folder_path, uid_validity, last_uid, highest_modseq, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder_path) DO UPDATE SET
                    uid_validity=excluded.uid_validity,
                    last_uid=excluded.last_uid,
                    highest_modseq=excluded.highest_modseq,
                    updated_at=excluded.updated_at
                """,
                (
                    checkpoint.account_id,
                    checkpoint.folder_path,
                    checkpoint.uid_validity,
                    checkpoint.last_uid,
                    checkpoint.highest_modseq,
                    _iso(checkpoint.updated_at or datetime.utcnow()),
                ),
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def upsert_message(self, account_id: str, folder_path: str, snapshot: MessageSnapshot) -> MessageChange:
        key = (account_id, folder_path, snapshot.uid)
        is_unread = not snapshot.is_read
        flags_json = json.dumps(sorted(snapshot.flags))

        with self._lock, self._conn:
            row = self._conn.execute(
                """
                SELECT is_read, is_deleted, flags, body_text IS NOT NULL OR body_html IS NOT NULL
                FROM messages WHERE account_id = ? AND folder_path = ? AND uid = ?
                """,
                key,
            ).fetchone()

            if row is None:
                if snapshot.flags_only:
                    return MessageChange(ChangeKind.IGNORED)
                self._conn.execute(
                    f"INSERT INTO messages({MESSAGE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0)",
                    (
                        *key,
                        snapshot.message_id,
                        snapshot.subject,
                        _dump_addresses(snapshot.from_addresses),
                        _dump_addresses(snapshot.to_addresses),
                        _dump_addresses(snapshot.cc_addresses),
                        _dump_addresses(snapshot.bcc_addresses),
                        _iso(snapshot.date),
                        snapshot.size_bytes,
                        snapshot.body_text,
                        snapshot.body_html,
                        json.dumps([a.model_dump() for a in snapshot.attachments]),
                        flags_json,
                        int(snapshot.is_read),
                        int(snapshot.is_starred),
                        int(snapshot.is_important),
                    ),
                )
                return MessageChange(ChangeKind.INSERTED, was_unread=False, is_unread=is_unread)

            was_read, was_deleted, old_flags, had_body = bool(row[0]), bool(row[1]), row[2], bool(row[3])
            self._conn.execute(
                """
                UPDATE messages
                SET flags = ?, is_read = ?, is_starred = ?, is_important = ?,
                    is_deleted = 0, missing_passes = 0
                WHERE account_id = ? AND folder_path = ? AND uid = ?
                """,
                (flags_json, int(snapshot.is_read), int(snapshot.is_starred), int(snapshot.is_important), *key),
            )
            gained_body = False
            if not snapshot.flags_only:
                self._conn.execute(
                    """
                    UPDATE messages
                    SET message_id = ?, subject = ?, from_addresses = ?, to_addresses = ?,
                        cc_addresses = ?, bcc_addresses = ?, date = ?, size_bytes = ?
                    WHERE account_id = ? AND folder_path = ? AND uid = ?
                    """,
                    (
                        snapshot.message_id,
                        snapshot.subject,
                        _dump_addresses(snapshot.from_addresses),
                        _dump_addresses(snapshot.to_addresses),
                        _dump_addresses(snapshot.cc_addresses),
                        _dump_addresses(snapshot.bcc_addresses),
                        _iso(snapshot.date),
                        snapshot.size_bytes,
                        *key,
                    ),
                )
                if snapshot.has_body:
                    gained_body = not had_body
                    self._conn.execute(
                        """
                        UPDATE messages SET body_text = ?, body_html = ?, attachments = ?
                        WHERE account_id = ? AND folder_path = ? AND uid = ?
                        """,
                        (
                            snapshot.body_text,
                            snapshot.body_html,
                            json.dumps([a.model_dump() for a in snapshot.attachments]),
                            *key,
                        ),
                    )

        if was_deleted:
            return MessageChange(ChangeKind.INSERTED, was_unread=False, is_unread=is_unread)
        if old_flags != flags_json or gained_body:
            return MessageChange(ChangeKind.UPDATED, was_unread=not was_read, is_unread=is_unread)
        return MessageChange(ChangeKind.UNCHANGED, was_unread=not was_read, is_unread=is_unread)

    def get_message(self, account_id: str, folder_path: str, uid: int) -> Optional[Message]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE account_id = ? AND folder_path = ? AND uid = ?",
                (account_id, folder_path, uid),
            ).fetchone()
        if not row:
            return None
        return Message(
            account_id=row[0],
            folder_path=row[1],
            uid=row[2],
            message_id=row[3],
            subject=row[4] or "",
            from_addresses=_load_addresses(row[5]),
            to_addresses=_load_addresses(row[6]),
            cc_addresses=_load_addresses(row[7]),
            bcc_addresses=_load_addresses(row[8]),
            date=_parse_dt(row[9]),
            size_bytes=row[10] or 0,
            body_text=row[11],
            body_html=row[12],
            attachments=[AttachmentRef(**a) for a in json.loads(row[13] or "[]")],
            flags=json.loads(row[14] or "[]"),
            is_read=bool(row[15]),
            is_starred=bool(row[16]),
            is_important=bool(row[17]),
            is_deleted=bool(row[18]),
            missing_passes=row[19],
        )

    def message_uids(self, account_id: str, folder_path: str) -> Set[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT uid FROM messages WHERE account_id = ? AND folder_path = ? AND is_deleted = 0",
                (account_id, folder_path),
            ).fetchall()
        return {row[0] for row in rows}

    def note_missing(self, account_id: str, folder_path: str, uids: Iterable[int]) -> Dict[int, int]:
        uid_list = list(uids)
        if not uid_list:
            return {}
        result: Dict[int, int] = {}
        with self._lock, self._conn:
            for uid in uid_list:
                self._conn.execute(
                    """
                    UPDATE messages SET missing_passes = missing_passes + 1
                    WHERE account_id = ? AND folder_path = ? AND uid = ? AND is_deleted = 0
                    """,
                    (account_id, folder_path, uid),
                )
                row = self._conn.execute(
                    "SELECT missing_passes FROM messages WHERE account_id = ? AND folder_path = ? AND uid = ?",
                    (account_id, folder_path, uid),
                ).fetchone()
                if row:
                    result[uid] = row[0]
        return result

    def clear_missing(self, account_id: str, folder_path: str, uids: Iterable[int]) -> None:
        with self._lock, self._conn:
            self._conn.executemany(
                """
                UPDATE messages SET missing_passes = 0
                WHERE account_id = ? AND folder_path = ? AND uid = ? AND missing_passes > 0
                """,
                [(account_id, folder_path, uid) for uid in uids],
            )

    def soft_delete_messages(self, account_id: str, folder_path: str, uids: Iterable[int]) -> Tuple[int, int]:
        deleted = 0
        unread = 0
        with self._lock, self._conn:
            for uid in uids:
                row = self._conn.execute(
                    """
                    SELECT is_read FROM messages
                    WHERE account_id = ? AND folder_path = ? AND uid = ? AND is_deleted = 0
                    """,
                    (account_id, folder_path, uid),
                ).fetchone()
                if row is None:
                    continue
                self._conn.execute(
                    """
                    UPDATE messages SET is_deleted = 1
                    WHERE account_id = ? AND folder_path = ? AND uid = ?
                    """,
                    (account_id, folder_path, uid),
                )
                deleted += 1
                unread += 0 if row[0] else 1
        return deleted, unread

    def count_messages(self, account_id: str, folder_path: str) -> FolderCounters:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0)
                FROM messages WHERE account_id = ? AND folder_path = ? AND is_deleted = 0
                """,
                (account_id, folder_path),
            ).fetchone()
        return FolderCounters(folder_path=folder_path, total_messages=row[0], unread_messages=row[1])


__all__ = ["SCHEMA", "SqliteMailStore"]
