"""Mailbox Client Adapter over ``imapclient``."""

from .client import MailboxClient, MailboxSession, RetryStrategy
from .parser import MessageParser

__all__ = ["MailboxClient", "MailboxSession", "MessageParser", "RetryStrategy"]
