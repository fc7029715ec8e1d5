import asyncio
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from typing import assert_never

from tenacity import RetryCallState

from helm.channel import Channel
from helm.config import CompactionPolicy, RetryPolicy
from helm.constants import DOOM_LOOP_PERMISSION, DOOM_LOOP_THRESHOLD, ERROR_PREVIEW_CHARS
from helm.context.compaction import is_overflowing
from helm.core.cancel import CancellationToken, Cancelled
from helm.llm.base import StreamingClient
from helm.llm.retry import ModelError, is_retryable, retrying, status_code_of
from helm.llm.types import (
    StreamError,
    StreamEvent,
    StreamFinish,
    StreamStart,
    TextDelta,
    ToolCallError,
    ToolCallResult,
    ToolCallStart,
    ToolInputStart,
)
from helm.logging import get_logger
from helm.permission import PermissionDenied, PermissionEvaluator, PermissionRule
from helm.session.convert import INTERRUPTED_OUTPUT, to_model_messages
from helm.session.events import SessionStatus, SessionStatusType
from helm.session.models import (
    ErrorKind,
    FinishReason,
    Message,
    MessageError,
    TextPart,
    ToolCompleted,
    ToolPart,
    ToolRunning,
    ToolStatus,
)
from helm.session.store import MessageStore
from helm.tools.base import ToolContext, ToolExecutor, ToolSpec
from helm.utils import ms_now, stable_json, truncate

_logger = get_logger(__name__)


class ControlSignal(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"
    COMPACT = "compact"


@dataclass
class _Turn:
    assistant: Message
    cancel: CancellationToken
    ruleset: Sequence[PermissionRule]
    tools: dict[str, ToolSpec]
    text: TextPart | None = None
    parts: dict[str, ToolPart] = field(default_factory=dict)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    finish: StreamFinish | None = None
    needs_compaction: bool = False
    denial: PermissionDenied | None = None

    @property
    def blocked(self) -> bool:
        return self.denial is not None


class StreamProcessor:
    """Consumes one model call's event stream into an assistant message.

    Tool calls are gated by the permission evaluator and executed as tasks; the returned
    signal tells the session loop whether to continue, stop, or compact first.
    """

    def __init__(
        self,
        client: StreamingClient,
        store: MessageStore,
        executor: ToolExecutor,
        permissions: PermissionEvaluator,
        *,
        model: str,
        compaction: CompactionPolicy,
        retry: RetryPolicy | None = None,
        doom_loop_threshold: int = DOOM_LOOP_THRESHOLD,
        channel: Channel | None = None,
    ):
        self.client = client
        self.store = store
        self.executor = executor
        self.permissions = permissions
        self.model = model
        self.compaction = compaction
        self.retry = retry or RetryPolicy()
        self.doom_loop_threshold = doom_loop_threshold
        self.channel = channel

    async def process(
        self,
        messages: list[Message],
        tools: Sequence[ToolSpec],
        assistant: Message,
        cancel: CancellationToken,
        *,
        ruleset: Sequence[PermissionRule] = (),
        system: Sequence[str] = (),
    ) -> ControlSignal:
        turn = _Turn(assistant=assistant, cancel=cancel, ruleset=ruleset, tools={t.id: t for t in tools})
        model_messages = to_model_messages(messages)
        tool_schemas = [t.to_dict() for t in tools]

        try:
            async for attempt in retrying(self.retry, cancel.sleep, self._before_retry(turn)):
                with attempt:
                    await self._consume(turn, list(system), model_messages, tool_schemas)
        except Cancelled as exc:
            _logger.info("Turn %s cancelled: %s", assistant.id, exc.reason)
            await self._record_error(turn, MessageError(kind=ErrorKind.ABORTED, message=exc.reason), None)
            return ControlSignal.STOP
        except Exception as exc:
            kind = ErrorKind.RETRIES_EXHAUSTED if is_retryable(exc) else ErrorKind.API
            _logger.warning("Model stream failed for %s (%s): %s", assistant.id, kind.value, exc)
            error = MessageError(
                kind=kind,
                message=truncate(str(exc) or type(exc).__name__, ERROR_PREVIEW_CHARS),
                status_code=status_code_of(exc),
            )
            await self._record_error(turn, error, FinishReason.ERROR)
            return ControlSignal.STOP

        return await self._complete(turn)

    async def _consume(
        self,
        turn: _Turn,
        system: list[str],
        messages: list[dict],
        tools: list[dict],
    ) -> None:
        turn.text = None
        turn.finish = None
        turn.needs_compaction = False
        turn.denial = None
        turn.parts.clear()
        turn.tasks.clear()
        await self._discard_text(turn)

        stream = self.client.stream(
            model=self.model,
            system=system,
            messages=messages,
            tools=tools,
            cancel=turn.cancel,
        )
        try:
            async for event in turn.cancel.iterate(stream):
                await self._handle(turn, event)
            if turn.tasks:
                await asyncio.gather(*turn.tasks.values())
            turn.cancel.raise_if_cancelled()
        except BaseException:
            await self._interrupt_tools(turn)
            raise

    async def _handle(self, turn: _Turn, event: StreamEvent) -> None:
        match event:
            case StreamStart():
                pass
            case TextDelta(text=text):
                await self._append_text(turn, text)
            case ToolInputStart(call_id=call_id, name=name):
                await self._tool_part(turn, call_id, name)
            case ToolCallStart():
                await self._start_tool(turn, event)
            case ToolCallResult() | ToolCallError():
                await self._provider_outcome(turn, event)
            case StreamFinish(reason=reason, usage=usage):
                turn.finish = event
                turn.needs_compaction = is_overflowing(
                    usage, self.compaction.context_limit, self.compaction.overflow_ratio
                )
                _logger.debug("Turn %s finished: %s, %d context tokens", turn.assistant.id, reason, usage.context_tokens)
            case StreamError():
                raise ModelError(
                    event.message,
                    status_code=event.status_code,
                    retry_after=event.retry_after,
                    retryable=event.retryable,
                )
            case _:
                assert_never(event)

    async def _append_text(self, turn: _Turn, text: str) -> None:
        if not text:
            return
        if turn.text is None:
            turn.text = TextPart(session_id=turn.assistant.session_id, message_id=turn.assistant.id)
            turn.assistant.parts.append(turn.text)
        turn.text.text += text
        await self.store.update_part(turn.text, delta=text)

    async def _discard_text(self, turn: _Turn) -> None:
        """Blank text streamed by a failed attempt so the retry does not repeat it."""
        for part in turn.assistant.parts:
            if isinstance(part, TextPart) and part.text:
                part.text = ""
                await self.store.update_part(part)

    async def _tool_part(self, turn: _Turn, call_id: str, name: str) -> ToolPart:
        if part := turn.parts.get(call_id):
            return part
        part = ToolPart(
            session_id=turn.assistant.session_id,
            message_id=turn.assistant.id,
            call_id=call_id,
            name=name,
        )
        turn.parts[call_id] = part
        turn.assistant.parts.append(part)
        turn.text = None
        await self.store.update_part(part)
        return part

    async def _start_tool(self, turn: _Turn, event: ToolCallStart) -> None:
        part = await self._tool_part(turn, event.call_id, event.name)
        if part.status != ToolStatus.PENDING:
            _logger.warning("Ignoring duplicate start for tool call %s", event.call_id)
            return

        part.input = dict(event.input)
        part.provider_executed = event.provider_executed
        part.transition(ToolRunning())
        await self.store.update_part(part)

        if event.provider_executed:
            return

        repeated = self._is_doom_loop(turn, part)
        turn.tasks[part.call_id] = asyncio.create_task(self._run_tool(turn, part, repeated))

    def _is_doom_loop(self, turn: _Turn, part: ToolPart) -> bool:
        recent = turn.assistant.tool_parts[-self.doom_loop_threshold :]
        if len(recent) < self.doom_loop_threshold:
            return False
        signature = stable_json(part.input)
        return all(p.name == part.name and stable_json(p.input) == signature for p in recent)

    async def _ask(
        self,
        turn: _Turn,
        part: ToolPart,
        permission: str,
        patterns: Sequence[str],
        metadata: dict | None = None,
    ) -> None:
        await turn.cancel.race(
            self.permissions.ask(
                turn.assistant.session_id,
                permission,
                patterns,
                turn.ruleset,
                metadata={"tool": part.name, "input": part.input, **(metadata or {})},
                call_id=part.call_id,
            )
        )

    async def _run_tool(self, turn: _Turn, part: ToolPart, repeated: bool) -> None:
        spec = turn.tools.get(part.name)
        if spec is None:
            available = ", ".join(sorted(turn.tools)) or "none"
            await self._fail_tool(part, f"Unknown tool: {part.name}. Available tools: {available}")
            return

        ctx = ToolContext(
            session_id=turn.assistant.session_id,
            message_id=turn.assistant.id,
            call_id=part.call_id,
            cancel=turn.cancel,
            ask_hook=partial(self._ask, turn, part),
        )
        try:
            if repeated:
                _logger.warning("Tool %s called %d times with identical input", part.name, self.doom_loop_threshold)
                await self._ask(turn, part, DOOM_LOOP_PERMISSION, [part.name])
            await self._ask(turn, part, spec.permission_id, spec.patterns_for(part.input))
            output = await turn.cancel.race(self.executor.execute(part.name, part.input, ctx))
        except PermissionDenied as exc:
            if turn.denial is None:
                turn.denial = exc
            await self._fail_tool(part, str(exc))
            return
        except Cancelled:
            await self._fail_tool(part, INTERRUPTED_OUTPUT)
            return
        except Exception as exc:
            _logger.info("Tool %s (%s) failed: %s", part.name, part.call_id, exc)
            await self._fail_tool(part, f"{type(exc).__name__}: {exc}")
            return

        part.transition(ToolCompleted(output=output.output, title=output.title, metadata=output.metadata))
        await self.store.update_part(part)

    async def _provider_outcome(self, turn: _Turn, event: ToolCallResult | ToolCallError) -> None:
        part = turn.parts.get(event.call_id)
        if part is None or not part.provider_executed or part.is_finished:
            _logger.debug("Ignoring provider outcome for tool call %s", event.call_id)
            return
        if part.status == ToolStatus.PENDING:
            part.transition(ToolRunning())
        match event:
            case ToolCallResult(output=output, title=title, metadata=metadata):
                part.transition(ToolCompleted(output=output, title=title, metadata=metadata))
            case ToolCallError(error=error):
                part.fail(error)
        await self.store.update_part(part)

    async def _fail_tool(self, part: ToolPart, error: str) -> None:
        if part.is_finished:
            return
        part.fail(error)
        await self.store.update_part(part)

    async def _interrupt_tools(self, turn: _Turn) -> None:
        pending = [t for t in turn.tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError, Exception):
                await task
        for part in turn.parts.values():
            await self._fail_tool(part, INTERRUPTED_OUTPUT)

    def _before_retry(self, turn: _Turn) -> Callable[[RetryCallState], None]:
        def notify(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            _logger.warning(
                "Model stream failed (attempt %d/%d), retrying in %.1fs: %s",
                state.attempt_number,
                self.retry.max_attempts,
                delay,
                exc,
            )
            if self.channel:
                self.channel.publish(
                    SessionStatus(
                        session_id=turn.assistant.session_id,
                        type=SessionStatusType.RETRY,
                        attempt=state.attempt_number,
                        message=str(exc),
                        next_delay=delay,
                    )
                )

        return notify

    async def _complete(self, turn: _Turn) -> ControlSignal:
        assistant = turn.assistant
        assistant.finish_reason = turn.finish.reason if turn.finish else FinishReason.UNKNOWN
        assistant.tokens = turn.finish.usage if turn.finish else None
        if turn.denial is not None:
            assistant.error = MessageError(kind=ErrorKind.PERMISSION_DENIED, message=str(turn.denial))
        assistant.completed_at = ms_now()
        await self.store.update_message(assistant)

        if turn.blocked:
            return ControlSignal.STOP
        if turn.needs_compaction:
            return ControlSignal.COMPACT
        return ControlSignal.CONTINUE

    async def _record_error(self, turn: _Turn, error: MessageError, finish_reason: FinishReason | None) -> None:
        assistant = turn.assistant
        assistant.error = error
        assistant.finish_reason = finish_reason
        if turn.finish is not None:
            assistant.tokens = turn.finish.usage
        assistant.completed_at = ms_now()
        await self.store.update_message(assistant)
