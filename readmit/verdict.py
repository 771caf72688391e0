"""Validation verdicts and notices.

Every validator returns a ValidationVerdict: either ALLOWED or a
Rejected verdict carrying a reason code and ordered diagnostic detail.
Reason codes and detail ordering are consumed by operator tooling and
must stay stable.

Key types:
- RejectReason: Stable reason codes
- Allowed / Rejected: The two verdict shapes (ALLOWED is a singleton)
- Notice: A NOTE or WARNING emitted alongside a verdict
- ValidationError: Exception form of a Rejected verdict
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union


class RejectReason(Enum):
    """Why a candidate was refused. Values are the wire-stable codes."""
    ASYNC_CHANNELS_PRESENT = "AsyncChannelsPresent"
    ERRANT_TRANSACTIONS = "ErrantTransactions"
    EMPTY_GTID_SET = "EmptyGTIDSet"
    MISSING_PURGED_TRANSACTIONS = "MissingPurgedTransactions"
    UNSUPPORTED_ADDRESS_FAMILY = "UnsupportedAddressFamily"
    UNSUPPORTED_CONFIG_OPTION = "UnsupportedConfigOption"
    COMMUNICATION_FAILURE = "CommunicationFailure"


@dataclass(frozen=True)
class Allowed:
    """Candidate passed a validation step."""

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """Candidate was refused.

    Attributes:
        reason: Stable reason code
        detail: Ordered diagnostic lines captured at decision time
        message: One-line summary for the caller
    """
    reason: RejectReason
    detail: Tuple[str, ...] = ()
    message: str = ""

    @property
    def allowed(self) -> bool:
        return False

    def to_error(self) -> ValidationError:
        return ValidationError(self)


ALLOWED = Allowed()

ValidationVerdict = Union[Allowed, Rejected]


class NoticeLevel(Enum):
    NOTE = "NOTE"
    WARNING = "WARNING"


@dataclass(frozen=True)
class Notice:
    """Advisory message emitted during a rejoin. Never blocks the join."""
    level: NoticeLevel
    text: str

    @classmethod
    def note(cls, text: str) -> Notice:
        return cls(NoticeLevel.NOTE, text)

    @classmethod
    def warning(cls, text: str) -> Notice:
        return cls(NoticeLevel.WARNING, text)

    def __str__(self) -> str:
        return f"{self.level.value}: {self.text}"


class ValidationError(Exception):
    """A deterministic rejection. Never retried."""

    def __init__(self, verdict: Rejected):
        self.verdict = verdict
        self.reason = verdict.reason
        self.detail = verdict.detail
        super().__init__(verdict.message or verdict.reason.value)
