"""RFC822/MIME parsing into :class:`~mailsync.models.MessageSnapshot`.

Uses the standard library ``email`` package for headers and MIME structure
and ``html2text`` to derive a text body from HTML-only messages. Attachment
parts are described by reference only; their content is never kept.
"""

from __future__ import annotations

import logging
from datetime import datetime
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Sequence, Tuple

import html2text

from ..errors import ProtocolError
from ..models import AttachmentRef, EmailAddress, MessageSnapshot

logger = logging.getLogger(__name__)


class MessageParser:
    """Parse raw messages fetched from the server into snapshots."""

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0

    def parse(
        self,
        raw_message: bytes,
        *,
        uid: int,
        flags: Sequence[str] = (),
        modseq: Optional[int] = None,
        size_bytes: Optional[int] = None,
        headers_only: bool = False,
    ) -> MessageSnapshot:
        """Parse raw RFC822 bytes (or only the header block) into a snapshot.

        Args:
            raw_message: Message bytes as returned by ``BODY.PEEK[]`` or
                ``BODY.PEEK[HEADER]``
            uid: Server UID of the message
            flags: IMAP flags, already decoded to ``str``
            modseq: MODSEQ reported with the fetch, if any
            size_bytes: ``RFC822.SIZE``; defaults to the length of ``raw_message``
            headers_only: Skip body and attachment extraction

        Raises:
            ProtocolError: If the bytes cannot be parsed as a message
        """
        try:
            msg = message_from_bytes(raw_message, policy=email_policy)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Unparsable message uid={uid}: {exc}") from exc

        body_text: Optional[str] = None
        body_html: Optional[str] = None
        attachments: List[AttachmentRef] = []
        if not headers_only:
            body_text, body_html = self._extract_body(msg)
            if body_text is None and body_html is not None:
                body_text = self.html_to_text(body_html)
            attachments = self._extract_attachments(msg)

        return MessageSnapshot(
            uid=uid,
            modseq=modseq,
            flags=list(flags),
            message_id=self._extract_message_id(msg),
            subject=self._header_text(msg, "Subject"),
            from_addresses=self._addresses(msg, "From"),
            to_addresses=self._addresses(msg, "To"),
            cc_addresses=self._addresses(msg, "Cc"),
            bcc_addresses=self._addresses(msg, "Bcc"),
            date=self._extract_date(msg),
            size_bytes=size_bytes if size_bytes is not None else len(raw_message),
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
        )

    def html_to_text(self, html: str) -> str:
        return self.html_converter.handle(html).strip()

    @staticmethod
    def _extract_message_id(msg: StdEmailMessage) -> Optional[str]:
        value = str(msg.get("Message-ID", "") or "").strip().strip("<>").strip()
        return value or None

    @staticmethod
    def _header_text(msg: StdEmailMessage, name: str) -> str:
        # the default policy already decodes RFC 2047 encoded words
        value = msg.get(name)
        return str(value).strip() if value else ""

    @staticmethod
    def _addresses(msg: StdEmailMessage, name: str) -> List[EmailAddress]:
        values = msg.get_all(name) or []
        result: List[EmailAddress] = []
        for display_name, addr in getaddresses([str(v) for v in values]):
            if not addr or "@" not in addr:
                continue
            result.append(
                EmailAddress(address=addr.strip().lower(), name=display_name.strip() or None)
            )
        return result

    @staticmethod
    def _extract_date(msg: StdEmailMessage) -> Optional[datetime]:
        try:
            date_header = msg.get("Date")
            if not date_header:
                return None
            return parsedate_to_datetime(str(date_header))
        except (TypeError, ValueError):
            logger.debug("Unparsable Date header")
            return None

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        body_text = None
        body_html = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_text is None:
                body_text = self._part_content(part)
            elif content_type == "text/html" and body_html is None:
                body_html = self._part_content(part)

        return body_text, body_html

    @staticmethod
    def _part_content(part: StdEmailMessage) -> Optional[str]:
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError, KeyError) as exc:
            logger.warning("Failed to decode body part", extra={"error": str(exc)})
            payload = part.get_payload(decode=True)
            return payload.decode("utf-8", errors="replace") if payload else None

    @staticmethod
    def _extract_attachments(msg: StdEmailMessage) -> List[AttachmentRef]:
        attachments: List[AttachmentRef] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            if part.get_content_disposition() not in ("attachment", "inline"):
                continue
            filename = part.get_filename()
            if not filename:
                continue
            payload = part.get_payload(decode=True)
            attachments.append(
                AttachmentRef(
                    filename=filename,
                    content_type=part.get_content_type(),
                    size_bytes=len(payload) if payload else 0,
                )
            )
        return attachments


__all__ = ["MessageParser"]
