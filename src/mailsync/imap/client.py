"""Mailbox Client Adapter.

Wraps one stateful ``imapclient`` session per connected account. The adapter
holds no state between calls beyond the :class:`MailboxSession` it hands out;
a session owns exactly one network connection and must never be shared
between concurrent callers.

Library exceptions are translated to the sync error taxonomy:

* ``LoginError`` / ``AUTHENTICATIONFAILED`` -> :class:`AuthError`
* socket errors, timeouts and ``AbortError`` -> :class:`NetworkError`
* any other ``IMAPClient.Error`` or malformed response -> :class:`ProtocolError`
"""

from __future__ import annotations

import logging
import random
import socket
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Set

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from ..errors import AuthError, MailSyncError, NetworkError, ProtocolError
from ..models import (
    Account,
    FolderDescriptor,
    FolderStatus,
    MessageSnapshot,
    SyncCheckpoint,
    TransportSecurity,
)
from .parser import MessageParser

logger = logging.getLogger(__name__)

SPECIAL_USE_FLAGS = frozenset(
    {"\\ALL", "\\ARCHIVE", "\\DRAFTS", "\\FLAGGED", "\\JUNK", "\\SENT", "\\TRASH", "\\IMPORTANT"}
)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map ``imapclient`` and socket exceptions onto the sync taxonomy."""
    try:
        yield
    except MailSyncError:
        raise
    except LoginError as exc:
        raise AuthError(f"{action}: credentials rejected") from exc
    except IMAPClient.AbortError as exc:
        raise NetworkError(f"{action}: connection aborted: {exc}") from exc
    except IMAPClient.Error as exc:
        if "AUTHENTICATIONFAILED" in str(exc).upper():
            raise AuthError(f"{action}: credentials rejected") from exc
        raise ProtocolError(f"{action}: {exc}") from exc
    except (socket.timeout, OSError) as exc:
        raise NetworkError(f"{action}: {exc}") from exc
    except (KeyError, ValueError, TypeError) as exc:
        raise ProtocolError(f"{action}: malformed server response: {exc!r}") from exc


# ---------------------------------------------------------------------------
# Retry strategy
# ---------------------------------------------------------------------------


@dataclass
class RetryStrategy:
    """Exponential backoff with jitter for ``connect``.

    ``max_retries=0`` (the default) disables retrying: a failed connect is
    left to the next scheduled tick.
    """

    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, retry_count: int, exc: Exception) -> bool:
        if retry_count >= self.max_retries:
            return False
        # credentials need operator action, never retry them
        return isinstance(exc, NetworkError)


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class MailboxSession:
    """An authenticated connection for one account.

    Usable as a context manager; leaving the block always closes the
    connection.
    """

    def __init__(self, account_id: str, imap: IMAPClient, capabilities: FrozenSet[str]) -> None:
        self.account_id = account_id
        self.imap = imap
        self.capabilities = capabilities
        self.selected_folder: Optional[str] = None
        self.selected_readonly = True
        self.closed = False

    def supports(self, capability: str) -> bool:
        return capability.upper() in self.capabilities

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.selected_folder = None
        try:
            self.imap.logout()
        except Exception as exc:  # noqa: BLE001 - logout failures never mask the caller's outcome
            logger.warning(
                "Error during logout",
                extra={"account_id": self.account_id, "error": str(exc)},
            )
            try:
                self.imap.shutdown()
            except OSError:
                pass

    def __enter__(self) -> "MailboxSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MailboxClient:
    """Stateless adapter producing and driving :class:`MailboxSession` objects."""

    def __init__(
        self,
        resolve_secret: Callable[[str], str],
        *,
        timeout: int = 30,
        retry_strategy: Optional[RetryStrategy] = None,
        parser: Optional[MessageParser] = None,
    ) -> None:
        self._resolve_secret = resolve_secret
        self.timeout = timeout
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.parser = parser or MessageParser()

    # -- connection -------------------------------------------------------

    def connect(self, account: Account) -> MailboxSession:
        """Open and authenticate a session.

        Raises:
            AuthError: Credentials missing or rejected
            NetworkError: Host unreachable, TLS failure or timeout
        """
        retry_count = 0
        while True:
            try:
                return self._open(account)
            except NetworkError as exc:
                if not self.retry_strategy.should_retry(retry_count, exc):
                    raise
                delay = self.retry_strategy.calculate_delay(retry_count)
                retry_count += 1
                logger.info(
                    "Connect failed, retrying",
                    extra={
                        "account_id": account.id,
                        "retry": retry_count,
                        "delay_seconds": round(delay, 2),
                    },
                )
                time.sleep(delay)

    def _open(self, account: Account) -> MailboxSession:
        password = self._resolve_secret(account.secret_ref)
        ssl_context = create_ssl_context() if account.security != TransportSecurity.NONE else None

        with translate_errors("connect"):
            imap = IMAPClient(
                host=account.host,
                port=account.port,
                ssl=account.security == TransportSecurity.SSL,
                ssl_context=ssl_context,
                timeout=self.timeout,
                use_uid=True,
            )
        try:
            with translate_errors("login"):
                if account.security == TransportSecurity.STARTTLS:
                    imap.starttls(ssl_context)
                imap.login(account.username, password)
                capabilities = frozenset(_text(c).upper() for c in imap.capabilities())
        except MailSyncError:
            try:
                imap.shutdown()
            except OSError:
                pass
            raise

        logger.debug(
            "Session opened",
            extra={"account_id": account.id, "host": account.host, "port": account.port},
        )
        return MailboxSession(account.id, imap, capabilities)

    def disconnect(self, session: MailboxSession) -> None:
        session.close()

    # -- folders ----------------------------------------------------------

    def list_folders(self, session: MailboxSession) -> List[FolderDescriptor]:
        with translate_errors("list_folders"):
            listed = session.imap.list_folders()
            subscribed = {_text(name) for _flags, _delim, name in session.imap.list_sub_folders()}

        descriptors: List[FolderDescriptor] = []
        for flags, delimiter, name in listed:
            flag_names = {_text(f).upper() for f in flags}
            if "\\NOSELECT" in flag_names or "\\NONEXISTENT" in flag_names:
                continue
            path = _text(name)
            delim = _text(delimiter) if delimiter else None
            special = sorted(flag_names & SPECIAL_USE_FLAGS)
            descriptors.append(
                FolderDescriptor(
                    name=path.rsplit(delim, 1)[-1] if delim else path,
                    path=path,
                    delimiter=delim,
                    special_use=special[0] if special else None,
                    subscribed=path in subscribed or path.upper() == "INBOX",
                )
            )
        return descriptors

    def folder_status(self, session: MailboxSession, folder_path: str) -> FolderStatus:
        """Return remote counters without touching message contents."""
        items = ["MESSAGES", "UNSEEN", "UIDVALIDITY", "UIDNEXT"]
        if session.supports("CONDSTORE"):
            items.append("HIGHESTMODSEQ")
        with translate_errors(f"folder_status {folder_path}"):
            data = session.imap.folder_status(folder_path, items)
            return FolderStatus(
                total_messages=int(data[b"MESSAGES"]),
                unread_messages=int(data[b"UNSEEN"]),
                uid_validity=_optional_int(data.get(b"UIDVALIDITY")),
                uid_next=_optional_int(data.get(b"UIDNEXT")),
                highest_modseq=_optional_int(data.get(b"HIGHESTMODSEQ")),
            )

    def create_folder(self, session: MailboxSession, folder_path: str) -> None:
        with translate_errors(f"create_folder {folder_path}"):
            session.imap.create_folder(folder_path)

    def delete_folder(self, session: MailboxSession, folder_path: str) -> None:
        with translate_errors(f"delete_folder {folder_path}"):
            if session.selected_folder == folder_path:
                session.imap.unselect_folder()
                session.selected_folder = None
            session.imap.delete_folder(folder_path)

    # -- messages ---------------------------------------------------------

    def fetch_since(
        self,
        session: MailboxSession,
        folder_path: str,
        checkpoint: SyncCheckpoint,
        *,
        include_bodies: bool = True,
        batch_size: int = 50,
    ) -> Iterator[MessageSnapshot]:
        """Yield snapshots of messages past the checkpoint.

        Flag-only snapshots are produced first for known messages changed
        since the MODSEQ watermark (CONDSTORE servers only), followed by full
        snapshots of messages with a UID above the watermark, oldest first.

        Each FETCH completes before any snapshot from it is yielded, so the
        caller may abandon the generator at any point and keep using the
        session.
        """
        select_info = self._select(session, folder_path)
        try:
            if int(select_info.get(b"EXISTS", 0)) == 0:
                return

            if checkpoint.last_uid and checkpoint.highest_modseq and session.supports("CONDSTORE"):
                yield from self._changed_flags(session, folder_path, checkpoint)

            with translate_errors(f"search {folder_path}"):
                found = session.imap.search(["UID", f"{checkpoint.last_uid + 1}:*"])
            # "N:*" always matches the highest UID, even when it is below N
            new_uids = sorted(uid for uid in found if uid > checkpoint.last_uid)
            yield from self._fetch_snapshots(
                session, folder_path, new_uids, include_bodies=include_bodies, batch_size=batch_size
            )
        finally:
            logger.debug(
                "Fetch sequence closed",
                extra={"account_id": session.account_id, "folder": folder_path},
            )

    def fetch_uids(
        self,
        session: MailboxSession,
        folder_path: str,
        uids: Sequence[int],
        *,
        include_bodies: bool = True,
        batch_size: int = 50,
    ) -> Iterator[MessageSnapshot]:
        self._select(session, folder_path)
        yield from self._fetch_snapshots(
            session, folder_path, sorted(uids), include_bodies=include_bodies, batch_size=batch_size
        )

    def list_uids(self, session: MailboxSession, folder_path: str) -> Set[int]:
        """All UIDs currently present in the remote folder."""
        select_info = self._select(session, folder_path)
        if int(select_info.get(b"EXISTS", 0)) == 0:
            return set()
        with translate_errors(f"search {folder_path}"):
            return {int(uid) for uid in session.imap.search(["ALL"])}

    def fetch_flags(self, session: MailboxSession, folder_path: str) -> List[MessageSnapshot]:
        """Flags of every message in the folder as flags-only snapshots."""
        select_info = self._select(session, folder_path)
        if int(select_info.get(b"EXISTS", 0)) == 0:
            return []
        with translate_errors(f"fetch flags {folder_path}"):
            response = session.imap.fetch("1:*", ["FLAGS"])
            return [
                MessageSnapshot(
                    uid=uid,
                    flags=[_text(f) for f in data.get(b"FLAGS", ())],
                    flags_only=True,
                )
                for uid, data in sorted(response.items())
            ]

    def fetch_body(self, session: MailboxSession, folder_path: str, uid: int) -> Optional[MessageSnapshot]:
        """Fetch one complete message, or ``None`` if it no longer exists."""
        for snapshot in self.fetch_uids(session, folder_path, [uid], include_bodies=True):
            return snapshot
        return None

    def apply_flags(
        self, session: MailboxSession, folder_path: str, uid: int, flags: Sequence[str]
    ) -> None:
        """Replace the flags of one message."""
        self._select(session, folder_path, readonly=False)
        with translate_errors(f"store {folder_path}"):
            session.imap.set_flags([uid], list(flags), silent=True)

    def move_message(
        self, session: MailboxSession, folder_path: str, uid: int, dest_folder_path: str
    ) -> None:
        self._select(session, folder_path, readonly=False)
        with translate_errors(f"move {folder_path} -> {dest_folder_path}"):
            if session.supports("MOVE"):
                session.imap.move([uid], dest_folder_path)
            else:
                session.imap.copy([uid], dest_folder_path)
                session.imap.add_flags([uid], [b"\\Deleted"], silent=True)
                session.imap.expunge([uid])

    def delete_message(self, session: MailboxSession, folder_path: str, uid: int) -> None:
        self._select(session, folder_path, readonly=False)
        with translate_errors(f"delete {folder_path}"):
            session.imap.add_flags([uid], [b"\\Deleted"], silent=True)
            session.imap.expunge([uid])

    # -- internals --------------------------------------------------------

    def _select(self, session: MailboxSession, folder_path: str, *, readonly: bool = True) -> Dict[bytes, Any]:
        with translate_errors(f"select {folder_path}"):
            info = session.imap.select_folder(folder_path, readonly=readonly)
        session.selected_folder = folder_path
        session.selected_readonly = readonly
        return info

    def _changed_flags(
        self, session: MailboxSession, folder_path: str, checkpoint: SyncCheckpoint
    ) -> Iterator[MessageSnapshot]:
        with translate_errors(f"fetch flags {folder_path}"):
            response = session.imap.fetch(
                f"1:{checkpoint.last_uid}",
                ["FLAGS"],
                modifiers=[f"CHANGEDSINCE {checkpoint.highest_modseq}"],
            )
            snapshots = [
                MessageSnapshot(
                    uid=uid,
                    flags=[_text(f) for f in data.get(b"FLAGS", ())],
                    modseq=_modseq(data),
                    flags_only=True,
                )
                for uid, data in sorted(response.items())
                if uid <= checkpoint.last_uid
            ]
        yield from snapshots

    def _fetch_snapshots(
        self,
        session: MailboxSession,
        folder_path: str,
        uids: List[int],
        *,
        include_bodies: bool,
        batch_size: int,
    ) -> Iterator[MessageSnapshot]:
        body_item = "BODY.PEEK[]" if include_bodies else "BODY.PEEK[HEADER]"
        body_key = b"BODY[]" if include_bodies else b"BODY[HEADER]"
        items = ["FLAGS", "RFC822.SIZE", body_item]
        if session.supports("CONDSTORE"):
            items.append("MODSEQ")

        for start in range(0, len(uids), batch_size):
            batch = uids[start : start + batch_size]
            with translate_errors(f"fetch {folder_path}"):
                response = session.imap.fetch(batch, items)
                snapshots = []
                for uid in batch:
                    data = response.get(uid)
                    if data is None:
                        # expunged between SEARCH and FETCH
                        continue
                    snapshots.append(
                        self.parser.parse(
                            data[body_key],
                            uid=uid,
                            flags=[_text(f) for f in data.get(b"FLAGS", ())],
                            modseq=_modseq(data),
                            size_bytes=_optional_int(data.get(b"RFC822.SIZE")),
                            headers_only=not include_bodies,
                        )
                    )
            yield from snapshots


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _modseq(data: Dict[bytes, Any]) -> Optional[int]:
    value = data.get(b"MODSEQ")
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    return _optional_int(value)


__all__ = [
    "MailboxClient",
    "MailboxSession",
    "RetryStrategy",
    "SPECIAL_USE_FLAGS",
    "create_ssl_context",
    "translate_errors",
]
