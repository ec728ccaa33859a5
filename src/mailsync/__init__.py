"""Poll-based IMAP mailbox mirroring."""

__version__ = "0.1.0"

__all__ = ["__version__"]
