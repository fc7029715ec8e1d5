import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel

from helm import database
from helm.channel import Channel
from helm.config import CompactionPolicy, RetryPolicy
from helm.context.compaction import Compactor
from helm.core.cancel import CancellationToken
from helm.core.loop import SessionLoop
from helm.core.processor import StreamProcessor
from helm.llm.base import StreamingClient
from helm.llm.types import StreamEvent, StreamFinish, StreamStart, TextDelta, ToolCallStart, ToolInputStart
from helm.permission import ApprovalStore, PermissionEvaluator, PermissionReply, PermissionRequest
from helm.session.models import FinishReason, Message, TextPart
from helm.session.store import InMemoryMessageStore
from helm.tools.base import Tool, ToolContext, ToolOutput
from helm.tools.registry import ToolRegistry
from helm.usage import TokenUsage

SESSION = "ses_test"
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0.0)

HANG = object()


class HTTPError(Exception):
    def __init__(self, status_code: int, headers: dict | None = None):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.headers = headers or {}


class FakeStreamingClient(StreamingClient):
    """Replays one scripted event list per stream() call.

    Items may be stream events, exceptions (raised at that point) or HANG, which blocks
    until the consumer stops iterating.
    """

    def __init__(self, *turns: list[Any]):
        self.turns = list(turns)
        self.calls: list[dict] = []
        self.closed = False

    async def stream(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        tools: list[dict],
        cancel: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append({"model": model, "system": system, "messages": messages, "tools": tools})
        if not self.turns:
            raise AssertionError("unexpected model call")
        script = self.turns.pop(0)
        for item in script:
            await asyncio.sleep(0)
            if item is HANG:
                await asyncio.Event().wait()
            elif isinstance(item, BaseException):
                raise item
            else:
                yield item

    async def close(self) -> None:
        self.closed = True


def text_turn(text: str, reason: FinishReason = FinishReason.STOP, usage: TokenUsage | None = None) -> list:
    return [StreamStart(), TextDelta(text=text), StreamFinish(reason=reason, usage=usage or TokenUsage(input=10, output=5))]


def tool_turn(name: str, args: dict, call_id: str = "call_1", usage: TokenUsage | None = None) -> list:
    return [
        StreamStart(),
        ToolInputStart(call_id=call_id, name=name),
        ToolCallStart(call_id=call_id, name=name, input=args),
        StreamFinish(reason=FinishReason.TOOL_CALLS, usage=usage or TokenUsage(input=10, output=5)),
    ]


class PathArgs(BaseModel):
    path: str = "."


class CommandArgs(BaseModel):
    command: str


class ListFilesTool(Tool):
    name = "list_files"
    description = "List files in a directory"
    permission = "read"
    input_model = PathArgs

    def __init__(self, files: list[str] | None = None):
        self.files = files or ["README.md", "pyproject.toml", "src"]
        self.calls: list[dict] = []

    def patterns(self, args: dict) -> list[str]:
        return [args.get("path", ".")]

    async def execute(self, ctx: ToolContext, path: str = ".") -> ToolOutput:
        self.calls.append({"path": path})
        return ToolOutput(output="\n".join(self.files), title=path, metadata={"count": len(self.files)})


class BashTool(Tool):
    name = "bash"
    description = "Run a shell command"
    input_model = CommandArgs

    def __init__(self):
        self.calls: list[str] = []

    def patterns(self, args: dict) -> list[str]:
        return [args.get("command", "")]

    async def execute(self, ctx: ToolContext, command: str) -> ToolOutput:
        self.calls.append(command)
        return ToolOutput(output=f"ran {command}", title=command)


class SlowTool(Tool):
    name = "slow"
    description = "Blocks until cancelled"

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, ctx: ToolContext) -> ToolOutput:
        self.started.set()
        await asyncio.Event().wait()
        return ToolOutput(output="never")


class FailingTool(Tool):
    name = "explode"
    description = "Always fails"

    async def execute(self, ctx: ToolContext) -> ToolOutput:
        raise RuntimeError("kaboom")


class ScriptedPrompt:
    """Prompt callback answering from a fixed reply, recording every request."""

    def __init__(self, reply: PermissionReply = PermissionReply.ONCE):
        self.reply = reply
        self.requests: list[PermissionRequest] = []

    async def __call__(self, request: PermissionRequest) -> PermissionReply:
        self.requests.append(request)
        return self.reply


@pytest.fixture
def channel() -> Channel:
    return Channel()


@pytest.fixture
def store(channel: Channel) -> InMemoryMessageStore:
    return InMemoryMessageStore(channel)


@pytest.fixture
def tools() -> ToolRegistry:
    return ToolRegistry([ListFilesTool(), BashTool(), SlowTool(), FailingTool()])


@pytest.fixture
def prompt() -> ScriptedPrompt:
    return ScriptedPrompt()


@pytest.fixture
def permissions(prompt: ScriptedPrompt) -> PermissionEvaluator:
    return PermissionEvaluator(ApprovalStore(), prompt)


@pytest.fixture
def compaction() -> CompactionPolicy:
    return CompactionPolicy(context_limit=1000, keep_recent=2, prune_protect=40, prune_minimum=20)


def make_processor(
    client: StreamingClient,
    store: InMemoryMessageStore,
    tools: ToolRegistry,
    permissions: PermissionEvaluator,
    compaction: CompactionPolicy | None = None,
    channel: Channel | None = None,
) -> StreamProcessor:
    return StreamProcessor(
        client,
        store,
        tools,
        permissions,
        model="test-model",
        compaction=compaction or CompactionPolicy(),
        retry=FAST_RETRY,
        channel=channel,
    )


def make_loop(
    client: StreamingClient,
    store: InMemoryMessageStore,
    tools: ToolRegistry,
    permissions: PermissionEvaluator,
    compaction: CompactionPolicy | None = None,
    channel: Channel | None = None,
    **kwargs: Any,
) -> SessionLoop:
    policy = compaction or CompactionPolicy()
    processor = make_processor(client, store, tools, permissions, policy, channel)
    return SessionLoop(store, processor, Compactor(store, policy, channel), tools, channel=channel, **kwargs)


async def add_user(store: InMemoryMessageStore, text: str, session_id: str = SESSION) -> Message:
    return await store.add_message(Message.user(session_id, text))


async def add_assistant(
    store: InMemoryMessageStore,
    text: str,
    session_id: str = SESSION,
    parent_id: str | None = None,
    reason: FinishReason = FinishReason.STOP,
    tokens: TokenUsage | None = None,
) -> Message:
    message = Message.assistant(session_id, parent_id=parent_id)
    message.finish_reason = reason
    message.tokens = tokens
    await store.add_message(message)
    part = TextPart(session_id=message.session_id, message_id=message.id, text=text)
    await store.update_part(part)
    message.parts.append(part)
    return message


@pytest_asyncio.fixture
async def sqlite_conn(tmp_path: Path) -> AsyncGenerator:
    conn = await database.connect(tmp_path / "sessions.db")
    yield conn
    await conn.close()
