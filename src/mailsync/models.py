"""Domain models for mailbox synchronization.

Accounts, folders and messages mirror the rows held by the repository
collaborators. Snapshots, reports and results are transient values passed
between the adapter, the executor, the reconciler and the control surface.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransportSecurity(str, Enum):
    """How the IMAP transport is secured."""

    SSL = "ssl"
    STARTTLS = "starttls"
    NONE = "none"


class AccountStatus(str, Enum):
    """Outcome of the most recent pass, persisted on the account."""

    NEVER = "never"
    OK = "ok"
    PARTIAL = "partial"
    ERROR = "error"


class PassOutcome(str, Enum):
    """Result classification of one Sync Executor pass."""

    OK = "ok"
    PARTIAL = "partial"
    AUTH_FAILED = "auth_failed"
    FAILED = "failed"
    SKIPPED = "skipped"


SYSTEM_FOLDER_NAMES = frozenset({"INBOX", "Sent", "Drafts", "Trash", "Spam"})


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """A remote mailbox credential set under synchronization."""

    id: str = Field(..., description="Account identifier")
    host: str = Field(..., description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    security: TransportSecurity = Field(
        default=TransportSecurity.SSL, description="Transport security mode"
    )
    username: str = Field(..., description="Login name")
    secret_ref: str = Field(..., description="Opaque reference to the credential")
    enabled: bool = Field(default=True, description="Account is active")
    sync_enabled: bool = Field(default=True, description="Periodic sync requested")
    sync_interval_seconds: int = Field(
        default=180, ge=60, description="Delay between passes"
    )
    last_sync: Optional[datetime] = Field(default=None)
    status: AccountStatus = Field(default=AccountStatus.NEVER)
    last_error: Optional[str] = Field(default=None)

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:  # type: ignore[override]
        if not value or " " in value:
            raise ValueError("host must be a valid hostname")
        return value


class FolderDescriptor(BaseModel):
    """A folder as listed by the server."""

    name: str
    path: str
    delimiter: Optional[str] = None
    special_use: Optional[str] = None
    subscribed: bool = True


class Folder(BaseModel):
    """Local record of a remote folder with cached counters."""

    account_id: str
    path: str
    name: str
    delimiter: Optional[str] = None
    special_use: Optional[str] = None
    subscribed: bool = True
    total_messages: int = Field(default=0, ge=0)
    unread_messages: int = Field(default=0, ge=0)
    last_synced_at: Optional[datetime] = None

    @property
    def is_system(self) -> bool:
        """True for folders the server or the product treats as built in."""
        return bool(self.special_use) or self.name in SYSTEM_FOLDER_NAMES or self.path.upper() == "INBOX"

    @classmethod
    def from_descriptor(cls, account_id: str, descriptor: FolderDescriptor) -> "Folder":
        return cls(
            account_id=account_id,
            path=descriptor.path,
            name=descriptor.name,
            delimiter=descriptor.delimiter,
            special_use=descriptor.special_use,
            subscribed=True,
        )


class EmailAddress(BaseModel):
    """One mailbox participant."""

    address: str
    name: Optional[str] = None


class AttachmentRef(BaseModel):
    """Reference to an attachment part; content is not stored here."""

    filename: str
    content_type: str
    size_bytes: int = Field(default=0, ge=0)


class MessageSnapshot(BaseModel):
    """Envelope, flags and (optionally) body of one remote message."""

    uid: int = Field(..., ge=1)
    modseq: Optional[int] = Field(default=None, ge=0)
    flags: List[str] = Field(default_factory=list)
    message_id: Optional[str] = None
    subject: str = ""
    from_addresses: List[EmailAddress] = Field(default_factory=list)
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    bcc_addresses: List[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = None
    size_bytes: int = Field(default=0, ge=0)
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentRef] = Field(default_factory=list)
    flags_only: bool = Field(
        default=False, description="Only flags changed; envelope fields are not populated"
    )

    @property
    def is_read(self) -> bool:
        return "\\Seen" in self.flags

    @property
    def is_starred(self) -> bool:
        return "\\Flagged" in self.flags

    @property
    def is_important(self) -> bool:
        return "$Important" in self.flags or "\\Important" in self.flags

    @property
    def has_body(self) -> bool:
        return self.body_text is not None or self.body_html is not None


class Message(BaseModel):
    """Locally stored message, unique by (account, folder, uid)."""

    account_id: str
    folder_path: str
    uid: int = Field(..., ge=1)
    message_id: Optional[str] = None
    subject: str = ""
    from_addresses: List[EmailAddress] = Field(default_factory=list)
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    bcc_addresses: List[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = None
    size_bytes: int = 0
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentRef] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    is_deleted: bool = False
    missing_passes: int = Field(default=0, ge=0)


class SyncCheckpoint(BaseModel):
    """Per-folder cursor: highest imported UID and MODSEQ watermark."""

    account_id: str
    folder_path: str
    uid_validity: int = Field(default=0, ge=0)
    last_uid: int = Field(default=0, ge=0)
    highest_modseq: Optional[int] = Field(default=None, ge=0)
    updated_at: Optional[datetime] = None

    def advanced(self, uid: int, modseq: Optional[int]) -> "SyncCheckpoint":
        """Return a copy moved forward; never moves backwards."""
        new_modseq = self.highest_modseq
        if modseq is not None and (new_modseq is None or modseq > new_modseq):
            new_modseq = modseq
        return self.model_copy(
            update={
                "last_uid": max(self.last_uid, uid),
                "highest_modseq": new_modseq,
            }
        )


# ---------------------------------------------------------------------------
# Transient values
# ---------------------------------------------------------------------------


class FolderStatus(BaseModel):
    """Lightweight remote counters for one folder."""

    total_messages: int = Field(default=0, ge=0)
    unread_messages: int = Field(default=0, ge=0)
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None
    highest_modseq: Optional[int] = None


class FolderCounters(BaseModel):
    """Locally recorded counters of one folder, as reported by the reconciler."""

    folder_path: str
    total_messages: int
    unread_messages: int


class FolderDiscrepancy(BaseModel):
    """A folder whose local state disagrees with the server."""

    folder_path: str
    local_count: int = Field(..., description="Non-deleted messages stored locally")
    remote_count: int
    local_unread: int
    remote_unread: int
    recorded_total: int = Field(..., description="Cached folder counter")
    recorded_unread: int

    @property
    def counters_stale(self) -> bool:
        return self.recorded_total != self.local_count or self.recorded_unread != self.local_unread

    @property
    def messages_missing(self) -> bool:
        return self.local_count != self.remote_count


class ConsistencyReport(BaseModel):
    """Result of a consistency check. Never persisted."""

    account_id: str
    folders: List[FolderCounters] = Field(default_factory=list)
    discrepancies: List[FolderDiscrepancy] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies


class FixSummary(BaseModel):
    """Outcome of ``maintain_consistency`` for one account."""

    account_id: str
    folders_checked: int = 0
    discrepancies_found: int = 0
    folders_fixed: int = 0
    emails_resynced: int = 0
    errors: List[str] = Field(default_factory=list)


class SweepSummary(BaseModel):
    """Aggregated outcome of a consistency sweep over all enabled accounts."""

    total_configs: int = 0
    successful_configs: int = 0
    errors: List[str] = Field(default_factory=list)


class FolderSyncResult(BaseModel):
    """Per-folder outcome inside one pass."""

    folder_path: str
    inserted: int = 0
    updated: int = 0
    soft_deleted: int = 0
    new_unread: int = 0
    checkpoint_uid: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PassResult(BaseModel):
    """Outcome of one Sync Executor pass for one account."""

    account_id: str
    outcome: PassOutcome
    started_at: datetime
    finished_at: Optional[datetime] = None
    folders: List[FolderSyncResult] = Field(default_factory=list)
    folders_created: List[str] = Field(default_factory=list)
    consistency: Optional[FixSummary] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    @property
    def messages_processed(self) -> int:
        return sum(f.inserted + f.updated for f in self.folders)

    @property
    def new_unread(self) -> int:
        return sum(f.new_unread for f in self.folders)

    @property
    def failed_folders(self) -> List[str]:
        return [f.folder_path for f in self.folders if not f.ok]


__all__ = [
    "Account",
    "AccountStatus",
    "AttachmentRef",
    "ConsistencyReport",
    "EmailAddress",
    "FixSummary",
    "Folder",
    "FolderCounters",
    "FolderDescriptor",
    "FolderDiscrepancy",
    "FolderStatus",
    "FolderSyncResult",
    "Message",
    "MessageSnapshot",
    "PassOutcome",
    "PassResult",
    "SYSTEM_FOLDER_NAMES",
    "SweepSummary",
    "SyncCheckpoint",
    "TransportSecurity",
]
