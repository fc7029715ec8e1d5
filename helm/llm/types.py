from dataclasses import dataclass, field

from helm.session.models import FinishReason
from helm.usage import TokenUsage


@dataclass(frozen=True)
class StreamStart:
    pass


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolInputStart:
    call_id: str
    name: str


@dataclass(frozen=True)
class ToolCallStart:
    call_id: str
    name: str
    input: dict = field(default_factory=dict)
    provider_executed: bool = False


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    output: str
    title: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallError:
    call_id: str
    error: str


@dataclass(frozen=True)
class StreamFinish:
    reason: FinishReason
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class StreamError:
    message: str
    status_code: int | None = None
    retry_after: float | None = None
    retryable: bool | None = None


type StreamEvent = (
    StreamStart
    | TextDelta
    | ToolInputStart
    | ToolCallStart
    | ToolCallResult
    | ToolCallError
    | StreamFinish
    | StreamError
)
