from dataclasses import dataclass
from enum import StrEnum

from helm.session.models import Message, TextPart, ToolPart


@dataclass(frozen=True)
class MessageUpdated:
    message: Message


@dataclass(frozen=True)
class PartUpdated:
    part: TextPart | ToolPart
    delta: str | None = None


class SessionStatusType(StrEnum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    type: SessionStatusType
    attempt: int = 0
    message: str = ""
    next_delay: float = 0.0


@dataclass(frozen=True)
class SessionCompacted:
    session_id: str
    summary_id: str
    compacted_ids: tuple[str, ...]
