"""Tests for the mailbox client adapter against a stub IMAPClient."""

from __future__ import annotations

import socket
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
from imapclient import IMAPClient as RealIMAPClient
from imapclient.exceptions import LoginError

import mailsync.imap.client as client_module
from mailsync.errors import AuthError, NetworkError, ProtocolError
from mailsync.imap.client import MailboxClient, MailboxSession, RetryStrategy, translate_errors
from mailsync.models import Account, SyncCheckpoint, TransportSecurity


def _raw(uid: int, subject: Optional[str] = None) -> bytes:
    return (
        f"From: Alice <alice@example.com>\r\n"
        f"To: bob@example.com\r\n"
        f"Subject: {subject or f'Message {uid}'}\r\n"
        f"Message-ID: <msg-{uid}@example.com>\r\n"
        f"Date: Mon, 01 Jan 2024 10:00:00 +0000\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"\r\n"
        f"Hello {uid}\r\n"
    ).encode()


class StubIMAPClient:
    """Minimal IMAPClient-compatible stub recording the calls it receives."""

    def __init__(self) -> None:
        self.capability_list = [b"IMAP4REV1", b"CONDSTORE", b"MOVE"]
        self.login_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.login_calls: List[tuple] = []
        self.starttls_calls = 0
        self.logged_out = False
        self.shut_down = False
        self.selected: List[tuple] = []
        self.search_calls: List[list] = []
        self.fetch_calls: List[tuple] = []
        self.exists = 0
        self.messages: Dict[int, Dict[bytes, object]] = {}
        self.calls: List[tuple] = []
        self.search_result: Optional[List[int]] = None

    def add_message(self, uid: int, flags=(), modseq: int = 1) -> None:
        raw = _raw(uid)
        header = raw.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
        self.messages[uid] = {
            b"FLAGS": tuple(flags),
            b"RFC822.SIZE": len(raw),
            b"BODY[]": raw,
            b"BODY[HEADER]": header,
            b"MODSEQ": (modseq,),
        }
        self.exists = len(self.messages)

    # -- connection -------------------------------------------------------

    def starttls(self, ssl_context=None) -> None:
        self.starttls_calls += 1

    def login(self, username: str, password: str) -> None:
        self.login_calls.append((username, password))
        if self.login_error is not None:
            raise self.login_error

    def capabilities(self):
        return tuple(self.capability_list)

    def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    def shutdown(self) -> None:
        self.shut_down = True

    # -- folders ----------------------------------------------------------

    def list_folders(self):
        return [
            ((b"\\HasNoChildren",), b"/", "INBOX"),
            ((b"\\Noselect", b"\\HasChildren"), b"/", "[Gmail]"),
            ((b"\\HasNoChildren", b"\\Sent"), b"/", "Sent"),
            ((b"\\HasNoChildren",), b"/", "Work/Projects"),
        ]

    def list_sub_folders(self):
        return [((b"\\HasNoChildren", b"\\Sent"), b"/", "Sent")]

    def folder_status(self, folder, what):
        self.calls.append(("folder_status", folder, list(what)))
        data = {b"MESSAGES": 12, b"UNSEEN": 3, b"UIDVALIDITY": 77, b"UIDNEXT": 13}
        if "HIGHESTMODSEQ" in what:
            data[b"HIGHESTMODSEQ"] = 900
        return data

    def select_folder(self, folder, readonly=False):
        self.selected.append((folder, readonly))
        return {b"EXISTS": self.exists, b"UIDVALIDITY": 77}

    def unselect_folder(self) -> None:
        self.calls.append(("unselect_folder",))

    def create_folder(self, folder) -> None:
        self.calls.append(("create_folder", folder))

    def delete_folder(self, folder) -> None:
        self.calls.append(("delete_folder", folder))

    # -- messages ---------------------------------------------------------

    def search(self, criteria):
        self.search_calls.append(criteria)
        if self.search_result is not None:
            return list(self.search_result)
        if criteria == ["ALL"]:
            return sorted(self.messages)
        low = int(criteria[1].split(":")[0])
        found = [uid for uid in sorted(self.messages) if uid >= low]
        # "N:*" always includes the highest UID
        return found or sorted(self.messages)[-1:]

    def fetch(self, messages, data, modifiers=None):
        self.fetch_calls.append((messages, list(data), modifiers))
        if isinstance(messages, str):
            upper = messages.split(":")[1]
            uids = [uid for uid in self.messages if upper == "*" or uid <= int(upper)]
        else:
            uids = [uid for uid in messages if uid in self.messages]
        wanted = {b"FLAGS", b"MODSEQ"}
        if "BODY.PEEK[]" in data:
            wanted |= {b"BODY[]", b"RFC822.SIZE"}
        if "BODY.PEEK[HEADER]" in data:
            wanted |= {b"BODY[HEADER]", b"RFC822.SIZE"}
        return {uid: {k: v for k, v in self.messages[uid].items() if k in wanted} for uid in uids}

    def set_flags(self, messages, flags, silent=False):
        self.calls.append(("set_flags", list(messages), list(flags)))

    def add_flags(self, messages, flags, silent=False):
        self.calls.append(("add_flags", list(messages), list(flags)))

    def move(self, messages, folder):
        self.calls.append(("move", list(messages), folder))

    def copy(self, messages, folder):
        self.calls.append(("copy", list(messages), folder))

    def expunge(self, messages=None):
        self.calls.append(("expunge", list(messages or [])))


@pytest.fixture
def imap() -> StubIMAPClient:
    return StubIMAPClient()


@pytest.fixture
def factory(monkeypatch: pytest.MonkeyPatch, imap: StubIMAPClient) -> Mock:
    stub_factory = Mock(return_value=imap)
    stub_factory.Error = RealIMAPClient.Error
    stub_factory.AbortError = RealIMAPClient.AbortError
    monkeypatch.setattr(client_module, "IMAPClient", stub_factory)
    return stub_factory


@pytest.fixture
def adapter() -> MailboxClient:
    return MailboxClient(lambda ref: f"secret-for-{ref}", timeout=15)


@pytest.fixture
def mail_account() -> Account:
    return Account(
        id="acct-1",
        host="imap.example.com",
        username="user@example.com",
        secret_ref="acct-1",
    )


@pytest.fixture
def session(adapter, factory, mail_account) -> MailboxSession:
    return adapter.connect(mail_account)


class TestConnect:
    def test_ssl_connect(self, adapter, factory, imap, mail_account):
        session = adapter.connect(mail_account)

        kwargs = factory.call_args.kwargs
        assert kwargs["host"] == "imap.example.com"
        assert kwargs["port"] == 993
        assert kwargs["ssl"] is True
        assert kwargs["timeout"] == 15
        assert kwargs["use_uid"] is True
        assert imap.login_calls == [("user@example.com", "secret-for-acct-1")]
        assert session.supports("condstore")
        assert imap.starttls_calls == 0

    def test_starttls_connect(self, adapter, factory, imap, mail_account):
        account = mail_account.model_copy(update={"security": TransportSecurity.STARTTLS, "port": 143})

        adapter.connect(account)

        assert factory.call_args.kwargs["ssl"] is False
        assert imap.starttls_calls == 1

    def test_login_error_maps_to_auth_error(self, adapter, factory, imap, mail_account):
        imap.login_error = LoginError("[AUTHENTICATIONFAILED] Invalid credentials")

        with pytest.raises(AuthError):
            adapter.connect(mail_account)
        assert imap.shut_down

    def test_authenticationfailed_response(self, adapter, factory, imap, mail_account):
        imap.login_error = RealIMAPClient.Error("NO [AUTHENTICATIONFAILED] nope")

        with pytest.raises(AuthError):
            adapter.connect(mail_account)

    def test_timeout_maps_to_network_error(self, adapter, factory, mail_account):
        factory.side_effect = socket.timeout("timed out")

        with pytest.raises(NetworkError):
            adapter.connect(mail_account)

    def test_missing_secret_is_auth_error(self, factory, mail_account):
        def resolve(ref: str) -> str:
            raise AuthError(f"No secret stored for reference {ref!r}")

        with pytest.raises(AuthError):
            MailboxClient(resolve).connect(mail_account)
        factory.assert_not_called()

    def test_no_retry_by_default(self, adapter, factory, mail_account):
        factory.side_effect = OSError("connection refused")

        with pytest.raises(NetworkError):
            adapter.connect(mail_account)
        assert factory.call_count == 1

    def test_retries_network_errors_when_enabled(self, factory, imap, mail_account, monkeypatch):
        monkeypatch.setattr(client_module.time, "sleep", lambda _delay: None)
        factory.side_effect = [OSError("connection refused"), imap]
        adapter = MailboxClient(
            lambda ref: "pw", retry_strategy=RetryStrategy(max_retries=2, base_delay=0.0, jitter=False)
        )

        session = adapter.connect(mail_account)

        assert session.imap is imap
        assert factory.call_count == 2

    def test_auth_errors_never_retried(self, factory, imap, mail_account, monkeypatch):
        monkeypatch.setattr(client_module.time, "sleep", lambda _delay: None)
        imap.login_error = LoginError("bad password")
        adapter = MailboxClient(lambda ref: "pw", retry_strategy=RetryStrategy(max_retries=3))

        with pytest.raises(AuthError):
            adapter.connect(mail_account)
        assert factory.call_count == 1


class TestSession:
    def test_close_logs_out(self, session, imap):
        session.close()

        assert imap.logged_out
        assert session.closed

    def test_close_falls_back_to_shutdown(self, session, imap):
        imap.logout_error = RealIMAPClient.AbortError("socket gone")

        session.close()

        assert imap.shut_down
        assert session.closed

    def test_context_manager(self, session, imap):
        with session:
            pass

        assert imap.logged_out


class TestFolders:
    def test_list_folders(self, adapter, session):
        folders = {f.path: f for f in adapter.list_folders(session)}

        assert sorted(folders) == ["INBOX", "Sent", "Work/Projects"]
        assert folders["INBOX"].subscribed
        assert folders["Sent"].special_use == "\\SENT"
        assert folders["Sent"].subscribed
        assert folders["Work/Projects"].name == "Projects"
        assert folders["Work/Projects"].delimiter == "/"
        assert not folders["Work/Projects"].subscribed

    def test_folder_status(self, adapter, session, imap):
        status = adapter.folder_status(session, "INBOX")

        assert status.total_messages == 12
        assert status.unread_messages == 3
        assert status.uid_validity == 77
        assert status.highest_modseq == 900

    def test_folder_status_without_condstore(self, adapter, session, imap):
        session.capabilities = frozenset({"IMAP4REV1"})

        status = adapter.folder_status(session, "INBOX")

        assert status.highest_modseq is None
        assert "HIGHESTMODSEQ" not in imap.calls[-1][2]

    def test_delete_selected_folder_unselects_first(self, adapter, session, imap):
        adapter.list_uids(session, "Old")

        adapter.delete_folder(session, "Old")

        assert imap.calls[-2:] == [("unselect_folder",), ("delete_folder", "Old")]

    def test_protocol_error_translation(self, adapter, session, imap, monkeypatch):
        def broken_status(folder, what):
            raise RealIMAPClient.Error("STATUS failed")

        monkeypatch.setattr(imap, "folder_status", broken_status)

        with pytest.raises(ProtocolError):
            adapter.folder_status(session, "INBOX")


class TestFetch:
    def test_first_sync_fetches_everything(self, adapter, session, imap):
        for uid in (1, 2, 3):
            imap.add_message(uid, flags=(b"\\Seen",) if uid == 1 else (), modseq=uid * 10)

        snapshots = list(
            adapter.fetch_since(session, "INBOX", SyncCheckpoint(account_id="acct-1", folder_path="INBOX"))
        )

        assert [s.uid for s in snapshots] == [1, 2, 3]
        assert snapshots[0].is_read
        assert snapshots[1].subject == "Message 2"
        assert snapshots[1].modseq == 20
        assert snapshots[1].body_text.strip() == "Hello 2"
        assert imap.search_calls == [["UID", "1:*"]]
        assert imap.selected[-1] == ("INBOX", True)

    def test_empty_folder(self, adapter, session, imap):
        snapshots = list(
            adapter.fetch_since(session, "INBOX", SyncCheckpoint(account_id="acct-1", folder_path="INBOX"))
        )

        assert snapshots == []
        assert imap.search_calls == []

    def test_star_range_below_watermark_is_filtered(self, adapter, session, imap):
        for uid in (1, 2, 3):
            imap.add_message(uid)
        checkpoint = SyncCheckpoint(account_id="acct-1", folder_path="INBOX", last_uid=3)
        session.capabilities = frozenset({"IMAP4REV1"})

        assert list(adapter.fetch_since(session, "INBOX", checkpoint)) == []

    def test_changed_flags_come_first(self, adapter, session, imap):
        imap.add_message(1, flags=(b"\\Seen",), modseq=50)
        imap.add_message(2, modseq=5)
        imap.add_message(3, modseq=60)
        checkpoint = SyncCheckpoint(
            account_id="acct-1", folder_path="INBOX", last_uid=2, highest_modseq=10
        )

        snapshots = list(adapter.fetch_since(session, "INBOX", checkpoint))

        assert imap.fetch_calls[0][0] == "1:2"
        assert imap.fetch_calls[0][2] == ["CHANGEDSINCE 10"]
        assert snapshots[0].flags_only
        assert snapshots[-1].uid == 3
        assert not snapshots[-1].flags_only

    def test_headers_only_fetch(self, adapter, session, imap):
        imap.add_message(1)

        snapshots = list(
            adapter.fetch_since(
                session,
                "INBOX",
                SyncCheckpoint(account_id="acct-1", folder_path="INBOX"),
                include_bodies=False,
            )
        )

        assert "BODY.PEEK[HEADER]" in imap.fetch_calls[-1][1]
        assert snapshots[0].subject == "Message 1"
        assert snapshots[0].body_text is None

    def test_batches(self, adapter, session, imap):
        for uid in range(1, 8):
            imap.add_message(uid)

        snapshots = list(
            adapter.fetch_since(
                session, "INBOX", SyncCheckpoint(account_id="acct-1", folder_path="INBOX"), batch_size=3
            )
        )

        assert len(snapshots) == 7
        assert [call[0] for call in imap.fetch_calls] == [[1, 2, 3], [4, 5, 6], [7]]

    def test_expunged_between_search_and_fetch(self, adapter, session, imap):
        imap.add_message(1)
        imap.add_message(2)
        imap.search_result = [1, 2, 3]

        snapshots = list(adapter.fetch_uids(session, "INBOX", [1, 2, 3]))

        assert [s.uid for s in snapshots] == [1, 2]

    def test_list_uids(self, adapter, session, imap):
        for uid in (4, 9):
            imap.add_message(uid)

        assert adapter.list_uids(session, "INBOX") == {4, 9}

    def test_fetch_flags(self, adapter, session, imap):
        imap.add_message(1, flags=(b"\\Seen", b"\\Flagged"))
        imap.add_message(2)

        snapshots = adapter.fetch_flags(session, "INBOX")

        assert [s.uid for s in snapshots] == [1, 2]
        assert snapshots[0].is_starred
        assert all(s.flags_only for s in snapshots)

    def test_fetch_body(self, adapter, session, imap):
        imap.add_message(5)

        assert adapter.fetch_body(session, "INBOX", 5).message_id == "msg-5@example.com"
        assert adapter.fetch_body(session, "INBOX", 6) is None

    def test_abort_during_fetch_is_network_error(self, adapter, session, imap, monkeypatch):
        imap.add_message(1)

        def aborted(*args, **kwargs):
            raise RealIMAPClient.AbortError("connection lost")

        monkeypatch.setattr(imap, "fetch", aborted)

        with pytest.raises(NetworkError):
            list(adapter.fetch_uids(session, "INBOX", [1]))


class TestMutations:
    def test_apply_flags_selects_read_write(self, adapter, session, imap):
        adapter.apply_flags(session, "INBOX", 3, ["\\Seen"])

        assert imap.selected[-1] == ("INBOX", False)
        assert imap.calls[-1] == ("set_flags", [3], ["\\Seen"])

    def test_move_with_move_extension(self, adapter, session, imap):
        adapter.move_message(session, "INBOX", 3, "Archive")

        assert imap.calls[-1] == ("move", [3], "Archive")

    def test_move_without_move_extension(self, adapter, session, imap):
        session.capabilities = frozenset({"IMAP4REV1"})

        adapter.move_message(session, "INBOX", 3, "Archive")

        assert [c[0] for c in imap.calls[-3:]] == ["copy", "add_flags", "expunge"]

    def test_delete_message(self, adapter, session, imap):
        adapter.delete_message(session, "INBOX", 8)

        assert imap.calls[-2:] == [("add_flags", [8], [b"\\Deleted"]), ("expunge", [8])]


class TestTranslateErrors:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (RealIMAPClient.AbortError("bye"), NetworkError),
            (ConnectionResetError("reset"), NetworkError),
            (RealIMAPClient.Error("BAD command"), ProtocolError),
            (KeyError(b"MESSAGES"), ProtocolError),
        ],
    )
    def test_mapping(self, exc, expected):
        with pytest.raises(expected):
            with translate_errors("test"):
                raise exc

    def test_sync_errors_pass_through(self):
        original = AuthError("already mapped")

        with pytest.raises(AuthError) as info:
            with translate_errors("test"):
                raise original
        assert info.value is original
