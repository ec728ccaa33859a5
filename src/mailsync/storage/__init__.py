"""Persistence collaborators for accounts, folders, messages and checkpoints."""

from .repository import AccountRepository, ChangeKind, MailRepository, MessageChange
from .sqlite_store import SqliteMailStore

__all__ = [
    "AccountRepository",
    "ChangeKind",
    "MailRepository",
    "MessageChange",
    "SqliteMailStore",
]
