"""Shared fixtures and an in-memory mail server for sync tests."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

import pytest

from mailsync.config import SecretsManager, SyncSettings
from mailsync.errors import AuthError
from mailsync.models import (
    Account,
    FolderDescriptor,
    FolderStatus,
    MessageSnapshot,
    SyncCheckpoint,
)
from mailsync.storage.sqlite_store import SqliteMailStore
from mailsync.sync.executor import SyncExecutor
from mailsync.sync.locks import RunLocks
from mailsync.sync.monitor import SyncMonitor


# ============================================================================
# Fake mail server
# ============================================================================


@dataclass
class FakeMessage:
    uid: int
    flags: List[str]
    modseq: int


@dataclass
class FakeFolder:
    path: str
    special_use: Optional[str] = None
    subscribed: bool = True
    uid_validity: int = 1
    next_uid: int = 1
    messages: Dict[int, FakeMessage] = field(default_factory=dict)

    @property
    def unread(self) -> int:
        return sum(1 for m in self.messages.values() if "\\Seen" not in m.flags)


class FakeMailServer:
    """Scripted IMAP server state shared by every session of a fake client.

    Modification sequences grow globally so that flag changes can be
    detected through the checkpoint watermark like a CONDSTORE server.
    """

    def __init__(self) -> None:
        self.folders: Dict[str, FakeFolder] = {}
        self._modseq = itertools.count(1)

    def add_folder(self, path: str, **kwargs) -> FakeFolder:
        folder = FakeFolder(path=path, **kwargs)
        self.folders[path] = folder
        return folder

    def deliver(self, path: str, count: int = 1, *, unread: bool = True) -> List[int]:
        folder = self.folders[path]
        uids = []
        for _ in range(count):
            uid = folder.next_uid
            folder.next_uid += 1
            flags = [] if unread else ["\\Seen"]
            folder.messages[uid] = FakeMessage(uid=uid, flags=flags, modseq=next(self._modseq))
            uids.append(uid)
        return uids

    def expunge(self, path: str, *uids: int) -> None:
        for uid in uids:
            self.folders[path].messages.pop(uid, None)

    def set_flags(self, path: str, uid: int, flags: Sequence[str]) -> None:
        message = self.folders[path].messages[uid]
        message.flags = list(flags)
        message.modseq = next(self._modseq)

    def renumber(self, path: str, uid_validity: int) -> None:
        """Simulate a UIDVALIDITY change: same messages, fresh UIDs."""
        folder = self.folders[path]
        old = sorted(folder.messages.values(), key=lambda m: m.uid)
        folder.uid_validity = uid_validity
        folder.messages = {}
        for message in old:
            uid = folder.next_uid
            folder.next_uid += 1
            folder.messages[uid] = FakeMessage(uid=uid, flags=message.flags, modseq=next(self._modseq))

    def highest_modseq(self, path: str) -> int:
        return max((m.modseq for m in self.folders[path].messages.values()), default=0)


class FakeSession:
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        self.closed = False


class FakeMailboxClient:
    """Implements the mailbox adapter contract against a :class:`FakeMailServer`.

    Failures are injected per operation; ``fetch_failures`` may raise after a
    number of snapshots have already been yielded.
    """

    def __init__(self, server: FakeMailServer) -> None:
        self.server = server
        self.connect_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.status_errors: Dict[str, Exception] = {}
        self.fetch_failures: Dict[str, Tuple[int, Exception]] = {}
        self.fetch_uids_errors: Dict[str, Exception] = {}
        self.sessions: List[FakeSession] = []
        self.deleted_folders: List[str] = []

    def fail_fetch(self, path: str, exc: Exception, *, after: int = 0) -> None:
        self.fetch_failures[path] = (after, exc)

    @property
    def open_sessions(self) -> int:
        return sum(1 for s in self.sessions if not s.closed)

    # -- adapter contract -------------------------------------------------

    def connect(self, account: Account) -> FakeSession:
        if self.connect_error is not None:
            raise self.connect_error
        session = FakeSession(account.id)
        self.sessions.append(session)
        return session

    def disconnect(self, session: FakeSession) -> None:
        session.closed = True

    def list_folders(self, session: FakeSession) -> List[FolderDescriptor]:
        if self.list_error is not None:
            raise self.list_error
        return [
            FolderDescriptor(
                name=folder.path.rsplit("/", 1)[-1],
                path=folder.path,
                delimiter="/",
                special_use=folder.special_use,
                subscribed=folder.subscribed,
            )
            for folder in self.server.folders.values()
        ]

    def folder_status(self, session: FakeSession, folder_path: str) -> FolderStatus:
        if folder_path in self.status_errors:
            raise self.status_errors[folder_path]
        folder = self.server.folders[folder_path]
        return FolderStatus(
            total_messages=len(folder.messages),
            unread_messages=folder.unread,
            uid_validity=folder.uid_validity,
            uid_next=folder.next_uid,
            highest_modseq=self.server.highest_modseq(folder_path),
        )

    def fetch_since(
        self,
        session: FakeSession,
        folder_path: str,
        checkpoint: SyncCheckpoint,
        *,
        include_bodies: bool = True,
        batch_size: int = 50,
    ) -> Iterator[MessageSnapshot]:
        folder = self.server.folders[folder_path]
        after, exc = self.fetch_failures.get(folder_path, (None, None))
        yielded = 0

        if checkpoint.last_uid and checkpoint.highest_modseq:
            for message in sorted(folder.messages.values(), key=lambda m: m.uid):
                if message.uid <= checkpoint.last_uid and message.modseq > checkpoint.highest_modseq:
                    yield MessageSnapshot(
                        uid=message.uid, flags=list(message.flags), modseq=message.modseq, flags_only=True
                    )

        for uid in sorted(folder.messages):
            if uid <= checkpoint.last_uid:
                continue
            if exc is not None and yielded >= after:
                raise exc
            yield self._snapshot(folder_path, folder.messages[uid], include_bodies)
            yielded += 1
        if exc is not None and yielded >= after:
            raise exc

    def fetch_uids(
        self,
        session: FakeSession,
        folder_path: str,
        uids: Sequence[int],
        *,
        include_bodies: bool = True,
        batch_size: int = 50,
    ) -> Iterator[MessageSnapshot]:
        if folder_path in self.fetch_uids_errors:
            raise self.fetch_uids_errors[folder_path]
        folder = self.server.folders[folder_path]
        for uid in sorted(uids):
            if uid in folder.messages:
                yield self._snapshot(folder_path, folder.messages[uid], include_bodies)

    def list_uids(self, session: FakeSession, folder_path: str) -> Set[int]:
        return set(self.server.folders[folder_path].messages)

    def fetch_flags(self, session: FakeSession, folder_path: str) -> List[MessageSnapshot]:
        folder = self.server.folders[folder_path]
        return [
            MessageSnapshot(uid=m.uid, flags=list(m.flags), flags_only=True)
            for m in sorted(folder.messages.values(), key=lambda m: m.uid)
        ]

    def fetch_body(self, session: FakeSession, folder_path: str, uid: int) -> Optional[MessageSnapshot]:
        message = self.server.folders[folder_path].messages.get(uid)
        return self._snapshot(folder_path, message, True) if message else None

    def create_folder(self, session: FakeSession, folder_path: str) -> None:
        self.server.add_folder(folder_path)

    def delete_folder(self, session: FakeSession, folder_path: str) -> None:
        self.server.folders.pop(folder_path, None)
        self.deleted_folders.append(folder_path)

    @staticmethod
    def _snapshot(folder_path: str, message: FakeMessage, include_bodies: bool) -> MessageSnapshot:
        return MessageSnapshot(
            uid=message.uid,
            modseq=message.modseq,
            flags=list(message.flags),
            message_id=f"{folder_path.lower()}-{message.uid}@example.com",
            subject=f"Message {message.uid}",
            size_bytes=512,
            body_text=f"Body of message {message.uid}" if include_bodies else None,
        )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqliteMailStore]:
    db = SqliteMailStore(tmp_path / "mailsync.db", secrets=SecretsManager())
    yield db
    db.close()


def _make_account(account_id: str = "acct-1", **overrides) -> Account:
    values = dict(
        id=account_id,
        host="imap.example.com",
        username=f"{account_id}@example.com",
        secret_ref=account_id,
    )
    values.update(overrides)
    return Account(**values)


@pytest.fixture
def account(store: SqliteMailStore) -> Account:
    acct = _make_account()
    store.save_account(acct)
    return acct


@pytest.fixture
def server() -> FakeMailServer:
    mail_server = FakeMailServer()
    mail_server.add_folder("INBOX")
    mail_server.add_folder("Sent", special_use="\\SENT")
    return mail_server


@pytest.fixture
def fake_client(server: FakeMailServer) -> FakeMailboxClient:
    return FakeMailboxClient(server)


@pytest.fixture
def settings() -> SyncSettings:
    # consistency checks only when a test asks for them
    return SyncSettings(consistency_every_n_passes=1000)


@pytest.fixture
def run_locks() -> RunLocks:
    return RunLocks()


@pytest.fixture
def monitor() -> SyncMonitor:
    return SyncMonitor()


@pytest.fixture
def executor(
    store: SqliteMailStore,
    fake_client: FakeMailboxClient,
    settings: SyncSettings,
    run_locks: RunLocks,
    monitor: SyncMonitor,
) -> SyncExecutor:
    return SyncExecutor(
        store,
        store,
        fake_client,
        settings=settings,
        run_locks=run_locks,
        monitor=monitor,
    )


@pytest.fixture
def auth_error() -> AuthError:
    return AuthError("login: credentials rejected")


@pytest.fixture
def make_account():
    """Factory for additional accounts; the caller saves them."""
    return _make_account
