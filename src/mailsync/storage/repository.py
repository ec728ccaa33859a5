"""Collaborator interfaces consumed by the sync core.

The core never talks to a database directly. Accounts and secrets are read
through :class:`AccountRepository`; folders, messages and checkpoints through
:class:`MailRepository`. Implementations must provide atomic upsert by
unique key, ``(account_id, folder_path)`` for folders and
``(account_id, folder_path, uid)`` for messages, plus count queries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models import (
    Account,
    AccountStatus,
    Folder,
    FolderCounters,
    Message,
    MessageSnapshot,
    SyncCheckpoint,
)


class ChangeKind(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


@dataclass(frozen=True)
class MessageChange:
    """What an upsert did to one message row.

    Used by the executor to maintain folder counters incrementally.
    A soft-deleted row that reappears counts as ``INSERTED``.
    """

    kind: ChangeKind
    was_unread: bool = False
    is_unread: bool = False

    @property
    def total_delta(self) -> int:
        return 1 if self.kind == ChangeKind.INSERTED else 0

    @property
    def unread_delta(self) -> int:
        if self.kind == ChangeKind.IGNORED:
            return 0
        return int(self.is_unread) - int(self.was_unread)


class AccountRepository(ABC):
    """Read access to accounts plus the few fields the core writes back."""

    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        """Return the account or raise ``AccountNotFoundError``."""

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        ...

    @abstractmethod
    def save_account(self, account: Account) -> None:
        ...

    @abstractmethod
    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        last_sync: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """Persist the pass outcome; ``last_sync`` is left untouched when ``None``."""

    @abstractmethod
    def set_sync_enabled(self, account_id: str, enabled: bool) -> None:
        ...

    @abstractmethod
    def resolve_secret(self, ref: str) -> str:
        """Return the plaintext credential or raise ``AuthError``."""


class MailRepository(ABC):
    """Folders, messages and checkpoints of every account."""

    # -- folders ----------------------------------------------------------

    @abstractmethod
    def list_folders(self, account_id: str) -> List[Folder]:
        ...

    @abstractmethod
    def get_folder(self, account_id: str, folder_path: str) -> Optional[Folder]:
        ...

    @abstractmethod
    def upsert_folder(self, folder: Folder) -> None:
        """Create the folder or refresh its descriptive fields; counters are kept."""

    @abstractmethod
    def delete_folder(self, account_id: str, folder_path: str) -> None:
        """Remove the folder, its checkpoint and its soft-deleted messages."""

    @abstractmethod
    def set_folder_counters(
        self,
        account_id: str,
        folder_path: str,
        total_messages: int,
        unread_messages: int,
    ) -> None:
        ...

    @abstractmethod
    def adjust_folder_counters(
        self,
        account_id: str,
        folder_path: str,
        total_delta: int,
        unread_delta: int,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Apply counter deltas, clamped at zero."""

    # -- checkpoints ------------------------------------------------------

    @abstractmethod
    def get_checkpoint(self, account_id: str, folder_path: str) -> Optional[SyncCheckpoint]:
        ...

    @abstractmethod
    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        ...

    # -- messages ---------------------------------------------------------

    @abstractmethod
    def upsert_message(self, account_id: str, folder_path: str, snapshot: MessageSnapshot) -> MessageChange:
        """Insert or update one message by ``(account, folder, uid)``.

        A flags-only snapshot for an unknown UID is ignored. A snapshot
        without a body never clears a body already stored.
        """

    @abstractmethod
    def get_message(self, account_id: str, folder_path: str, uid: int) -> Optional[Message]:
        ...

    @abstractmethod
    def message_uids(self, account_id: str, folder_path: str) -> Set[int]:
        """UIDs of non-deleted messages."""

    @abstractmethod
    def note_missing(self, account_id: str, folder_path: str, uids: Iterable[int]) -> Dict[int, int]:
        """Increment the missed-pass counter; return the new value per UID."""

    @abstractmethod
    def clear_missing(self, account_id: str, folder_path: str, uids: Iterable[int]) -> None:
        ...

    @abstractmethod
    def soft_delete_messages(self, account_id: str, folder_path: str, uids: Iterable[int]) -> Tuple[int, int]:
        """Mark messages deleted; return ``(deleted, unread_deleted)``."""

    @abstractmethod
    def count_messages(self, account_id: str, folder_path: str) -> FolderCounters:
        """Authoritative local counts over non-deleted messages."""


__all__ = [
    "AccountRepository",
    "ChangeKind",
    "MailRepository",
    "MessageChange",
]
