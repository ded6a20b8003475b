from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class Header:
    name: str
    value: str


@dataclass(frozen=True)
class MessagePart:
    filename: str
    attachment_id: str = ""
    mime_type: str = ""
    size: int = 0
    has_body: bool = False

    @property
    def is_attachment(self) -> bool:
        return bool(self.attachment_id)


@dataclass(frozen=True)
class Message:
    message_id: str
    thread_id: Optional[str]
    headers: tuple[Header, ...]
    labels: frozenset[str]
    parts: tuple[MessagePart, ...] = ()

    def header(self, name: str) -> Optional[str]:
        """First value for an exact header name, or None."""
        for h in self.headers:
            if h.name == name:
                return h.value
        return None

    @property
    def subject(self) -> str:
        return self.header("Subject") or ""

    @property
    def sender(self) -> str:
        return self.header("From") or ""


@dataclass(frozen=True)
class AuthorizedUser:
    name: str
    emails: tuple[str, ...]


class Intent(str, Enum):
    PRINT = "print"
    SAVE = "save"
    NONE = "none"


class ProcessStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    PLANNED = "planned"
    FAILED = "failed"
    # action done but the unread label could not be removed
    FINALIZE_FAILED = "finalize_failed"


@dataclass(frozen=True)
class ProcessResult:
    message_id: str
    status: ProcessStatus
    intent: Intent = Intent.NONE
    reason: str = ""
    saved: tuple[Path, ...] = ()
    printed: tuple[Path, ...] = ()
    errors: tuple[str, ...] = ()
    finalized: bool = False


@dataclass
class CycleSummary:
    results: list[ProcessResult] = field(default_factory=list)
    # cycle-level failures, e.g. the message list could not be fetched
    errors: list[str] = field(default_factory=list)

    def count(self, status: ProcessStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def has_failures(self) -> bool:
        return bool(self.errors) or any(
            r.status in (ProcessStatus.FAILED, ProcessStatus.FINALIZE_FAILED)
            for r in self.results
        )

    def describe(self) -> str:
        return (
            f"{len(self.results)} messages: "
            f"{self.count(ProcessStatus.PROCESSED)} processed, "
            f"{self.count(ProcessStatus.SKIPPED)} skipped, "
            f"{self.count(ProcessStatus.PLANNED)} planned, "
            f"{self.count(ProcessStatus.FAILED)} failed, "
            f"{self.count(ProcessStatus.FINALIZE_FAILED)} finalize-failed"
        )
