from __future__ import annotations


class MailPrintError(RuntimeError):
    """Base for failures that are contained to a single message."""


class TransportError(MailPrintError):
    pass


class AttachmentDecodeError(MailPrintError):
    pass


class StorageError(MailPrintError):
    pass


class PrintError(MailPrintError):
    pass


class FinalizeError(MailPrintError):
    """Removing the unread label failed."""
