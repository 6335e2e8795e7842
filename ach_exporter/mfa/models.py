"""Value types shared by the 2FA code acquisition layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, Optional

from ach_exporter.config import MfaSettings
from ach_exporter.json_logger import mask_code


class SourceField(str, Enum):
    TEXT = "text"
    HTML = "html"
    SUBJECT = "subject"
    RAW = "raw"


@dataclass(frozen=True)
class MessageRef:
    mailbox: str
    uid: int
    message_id: str | None = None

    def same_message(self, other: "MessageRef") -> bool:
        if self.mailbox == other.mailbox and self.uid == other.uid:
            return True
        return bool(self.message_id) and self.message_id == other.message_id


@dataclass(frozen=True)
class SearchSpec:
    """Filters for one poll attempt. Rebuilt on every attempt so ``since`` slides forward."""

    since: datetime
    sender_pattern: str | None = None
    subject_pattern: str | None = None
    unseen_only: bool = False
    code_length: int = 6
    code_pattern: str | None = None
    skew: timedelta = timedelta(0)
    max_scan: int = 60
    exclude: FrozenSet[MessageRef] = frozenset()

    @property
    def cutoff(self) -> datetime:
        return self.since - self.skew

    def is_excluded(self, ref: MessageRef) -> bool:
        return any(ref.same_message(rejected) for rejected in self.exclude)

    @classmethod
    def from_settings(
        cls,
        settings: MfaSettings,
        *,
        now: datetime,
        exclude: FrozenSet[MessageRef] = frozenset(),
    ) -> "SearchSpec":
        return cls(
            since=now - timedelta(minutes=settings.lookback_minutes),
            sender_pattern=settings.sender_filter,
            subject_pattern=settings.subject_filter,
            unseen_only=settings.only_unseen,
            code_length=settings.code_length,
            code_pattern=settings.code_regex,
            skew=timedelta(seconds=settings.skew_seconds),
            max_scan=settings.max_scan,
            exclude=exclude,
        )


@dataclass
class CandidateMessage:
    mailbox: str
    uid: int
    message_id: str | None
    received_at: datetime | None
    sender: str
    subject: str
    text_body: str
    html_body: str
    raw_source: bytes
    seen: bool

    @property
    def ref(self) -> MessageRef:
        return MessageRef(mailbox=self.mailbox, uid=self.uid, message_id=self.message_id)


@dataclass(frozen=True)
class ExtractionResult:
    code: str | None
    source_field: SourceField | None = None


@dataclass(frozen=True)
class CodeMatch:
    code: str
    ref: MessageRef
    received_at: datetime | None
    source_field: SourceField

    def describe(self) -> dict:
        return {
            "code_masked": mask_code(self.code),
            "mailbox": self.ref.mailbox,
            "uid": self.ref.uid,
            "where": self.source_field.value,
            "received_at": self.received_at.isoformat() if self.received_at else None,
        }


@dataclass
class PollOutcome:
    match: Optional[CodeMatch] = None
    timed_out: bool = False
    attempts: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class SubmissionAttempt:
    attempt_number: int
    code: str
    cleared: bool
    error_hint: str | None = None


@dataclass
class ChallengeResult:
    cleared: bool
    attempts: list[SubmissionAttempt] = field(default_factory=list)
