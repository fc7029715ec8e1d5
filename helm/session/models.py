from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from helm.usage import TokenUsage
from helm.utils import ascending_id, ms_now


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool-calls"
    CONTENT_FILTER = "content-filter"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self not in (FinishReason.TOOL_CALLS, FinishReason.UNKNOWN)

    @classmethod
    def normalize(cls, value: str | None) -> "FinishReason":
        if not value:
            return cls.UNKNOWN
        key = value.strip().lower().replace("_", "-")
        return _FINISH_ALIASES.get(key, cls.UNKNOWN)


_FINISH_ALIASES = {
    "stop": FinishReason.STOP,
    "end-turn": FinishReason.STOP,
    "stop-sequence": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max-tokens": FinishReason.LENGTH,
    "tool-calls": FinishReason.TOOL_CALLS,
    "tool-use": FinishReason.TOOL_CALLS,
    "function-call": FinishReason.TOOL_CALLS,
    "content-filter": FinishReason.CONTENT_FILTER,
    "error": FinishReason.ERROR,
}


class ToolStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ToolPending(BaseModel):
    status: Literal[ToolStatus.PENDING] = ToolStatus.PENDING


class ToolRunning(BaseModel):
    status: Literal[ToolStatus.RUNNING] = ToolStatus.RUNNING
    started_at: int = Field(default_factory=ms_now)


class ToolCompleted(BaseModel):
    status: Literal[ToolStatus.COMPLETED] = ToolStatus.COMPLETED
    output: str
    title: str = ""
    metadata: dict = Field(default_factory=dict)
    started_at: int | None = None
    ended_at: int = Field(default_factory=ms_now)
    pruned_at: int | None = None


class ToolError(BaseModel):
    status: Literal[ToolStatus.ERROR] = ToolStatus.ERROR
    error: str
    started_at: int | None = None
    ended_at: int = Field(default_factory=ms_now)


ToolState = Annotated[ToolPending | ToolRunning | ToolCompleted | ToolError, Field(discriminator="status")]

_FORWARD: dict[ToolStatus, frozenset[ToolStatus]] = {
    ToolStatus.PENDING: frozenset({ToolStatus.RUNNING, ToolStatus.ERROR}),
    ToolStatus.RUNNING: frozenset({ToolStatus.COMPLETED, ToolStatus.ERROR}),
    ToolStatus.COMPLETED: frozenset(),
    ToolStatus.ERROR: frozenset(),
}


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    id: str = Field(default_factory=lambda: ascending_id("prt"))
    session_id: str
    message_id: str
    text: str = ""
    synthetic: bool = False


class ToolPart(BaseModel):
    type: Literal["tool"] = "tool"
    id: str = Field(default_factory=lambda: ascending_id("prt"))
    session_id: str
    message_id: str
    call_id: str
    name: str
    input: dict = Field(default_factory=dict)
    state: ToolState = Field(default_factory=ToolPending)
    provider_executed: bool = False

    @property
    def status(self) -> ToolStatus:
        return self.state.status

    @property
    def is_finished(self) -> bool:
        return self.status in (ToolStatus.COMPLETED, ToolStatus.ERROR)

    def transition(self, state: ToolPending | ToolRunning | ToolCompleted | ToolError) -> None:
        if state.status not in _FORWARD[self.status]:
            raise ValueError(f"Tool call {self.call_id}: cannot move from {self.status} to {state.status}")
        if isinstance(state, ToolCompleted | ToolError) and isinstance(self.state, ToolRunning):
            state.started_at = self.state.started_at
        self.state = state

    def fail(self, error: str) -> None:
        self.transition(ToolError(error=error))

    def prune(self, placeholder: str) -> None:
        if not isinstance(self.state, ToolCompleted):
            raise ValueError(f"Tool call {self.call_id}: only completed output can be pruned")
        self.state = self.state.model_copy(update={"output": placeholder, "pruned_at": ms_now()})


Part = Annotated[TextPart | ToolPart, Field(discriminator="type")]


class ErrorKind(StrEnum):
    PERMISSION_DENIED = "permission_denied"
    API = "api"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ABORTED = "aborted"


class MessageError(BaseModel):
    kind: ErrorKind
    message: str
    status_code: int | None = None


class Message(BaseModel):
    id: str = Field(default_factory=lambda: ascending_id("msg"))
    session_id: str
    role: Role
    parts: list[Part] = Field(default_factory=list)
    parent_id: str | None = None
    finish_reason: FinishReason | None = None
    tokens: TokenUsage | None = None
    error: MessageError | None = None
    is_summary: bool = False
    compacted: bool = False
    created_at: int = Field(default_factory=ms_now)
    completed_at: int | None = None

    @classmethod
    def user(cls, session_id: str, text: str, synthetic: bool = False) -> "Message":
        message = cls(session_id=session_id, role=Role.USER, completed_at=ms_now())
        message.parts.append(TextPart(session_id=session_id, message_id=message.id, text=text, synthetic=synthetic))
        return message

    @classmethod
    def assistant(cls, session_id: str, parent_id: str | None = None, is_summary: bool = False) -> "Message":
        return cls(session_id=session_id, role=Role.ASSISTANT, parent_id=parent_id, is_summary=is_summary)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_parts(self) -> list[ToolPart]:
        return [p for p in self.parts if isinstance(p, ToolPart)]

    @property
    def finished(self) -> bool:
        return self.finish_reason is not None

    @property
    def blocked(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.PERMISSION_DENIED
