from collections.abc import Sequence
from dataclasses import dataclass
from functools import partial

from helm.channel import Channel
from helm.constants import MAX_STEPS
from helm.context.compaction import Compactor
from helm.context.prompts import SUMMARIZE_INSTRUCTION, SUMMARIZE_PROMPT
from helm.core.cancel import CancellationToken
from helm.core.processor import ControlSignal, StreamProcessor
from helm.core.registry import SessionRegistry
from helm.logging import get_logger
from helm.permission import PermissionRule, disabled
from helm.session.events import SessionStatus, SessionStatusType
from helm.session.models import Message, Role
from helm.session.store import MessageStore
from helm.tools.base import ToolSpec
from helm.tools.registry import ToolRegistry

_logger = get_logger(__name__)


@dataclass
class _Scan:
    user: Message | None = None
    assistant: Message | None = None
    finished: Message | None = None


def _scan(messages: list[Message]) -> _Scan:
    """Latest user message, latest regular assistant and latest finished assistant, in one pass."""
    scan = _Scan()
    for message in reversed(messages):
        if message.role == Role.USER:
            if scan.user is None:
                scan.user = message
        else:
            if scan.assistant is None and not message.is_summary:
                scan.assistant = message
            if scan.finished is None and message.finished:
                scan.finished = message
        if scan.user and scan.assistant and scan.finished:
            break
    return scan


class SessionLoop:
    def __init__(
        self,
        store: MessageStore,
        processor: StreamProcessor,
        compactor: Compactor,
        tools: ToolRegistry,
        *,
        registry: SessionRegistry | None = None,
        ruleset: Sequence[PermissionRule] = (),
        system: Sequence[str] = (),
        max_steps: int | None = MAX_STEPS,
        channel: Channel | None = None,
    ):
        self.store = store
        self.processor = processor
        self.compactor = compactor
        self.tools = tools
        self.registry = registry or SessionRegistry()
        self.ruleset = list(ruleset)
        self.system = list(system)
        self.max_steps = max_steps
        self.channel = channel

    async def prompt(
        self,
        session_id: str,
        text: str,
        ruleset: Sequence[PermissionRule] | None = None,
    ) -> Message | None:
        await self.store.add_message(Message.user(session_id, text))
        return await self.run(session_id, ruleset)

    async def run(self, session_id: str, ruleset: Sequence[PermissionRule] | None = None) -> Message | None:
        """Drive the session until the model is done, the run is blocked, or it is cancelled.

        Concurrent calls for a session share the in-flight run and get its result.
        """
        control = self.registry.acquire(session_id)
        if control is None:
            _logger.debug("Session %s busy, waiting for in-flight run", session_id)
            return await self.registry.wait(session_id)

        self._status(session_id, SessionStatusType.BUSY)
        result: Message | None = None
        error: BaseException | None = None
        try:
            result = await self._loop(session_id, control.cancel, self.ruleset if ruleset is None else list(ruleset))
            return result
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.registry.release(session_id, result, error)
            self._status(session_id, SessionStatusType.IDLE)

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        cancelled = self.registry.cancel(session_id, reason)
        if cancelled:
            _logger.info("Cancelling session %s: %s", session_id, reason)
        return cancelled

    def is_busy(self, session_id: str) -> bool:
        return self.registry.is_busy(session_id)

    def active_tools(self, ruleset: Sequence[PermissionRule]) -> list[ToolSpec]:
        specs = self.tools.specs()
        hidden = disabled({spec.permission_id for spec in specs}, ruleset)
        return [spec for spec in specs if spec.permission_id not in hidden]

    async def _loop(
        self,
        session_id: str,
        cancel: CancellationToken,
        ruleset: list[PermissionRule],
    ) -> Message | None:
        produced: Message | None = None
        compacted_for: str | None = None
        user_id: str | None = None
        steps = 0

        while True:
            messages = await self.store.list_messages(session_id)
            scan = _scan(messages)
            if scan.user is not None:
                user_id = scan.user.id
            if user_id is None:
                raise ValueError(f"Session {session_id} has no user message")

            latest = scan.assistant
            if latest and latest.finish_reason and latest.finish_reason.is_terminal and latest.id > user_id:
                return latest

            if cancel.cancelled:
                return produced or latest

            if self.max_steps is not None and steps >= self.max_steps:
                _logger.warning("Session %s reached max steps (%d)", session_id, self.max_steps)
                return produced or latest

            finished = scan.finished
            if (
                finished is not None
                and not finished.is_summary
                and finished.id != compacted_for
                and self.compactor.is_overflowing(finished.tokens)
            ):
                compacted_for = finished.id
                await self._compact(session_id, cancel)
                continue

            assistant = Message.assistant(session_id, parent_id=user_id)
            await self.store.add_message(assistant)
            produced = assistant
            steps += 1

            signal = await self.processor.process(
                messages,
                self.active_tools(ruleset),
                assistant,
                cancel,
                ruleset=ruleset,
                system=self.system,
            )
            _logger.debug("Session %s step %d: %s", session_id, steps, signal.value)

            match signal:
                case ControlSignal.STOP:
                    return assistant
                case ControlSignal.COMPACT:
                    compacted_for = assistant.id
                    await self._compact(session_id, cancel)
                case ControlSignal.CONTINUE:
                    pass

    async def _compact(self, session_id: str, cancel: CancellationToken) -> None:
        messages = await self.store.list_messages(session_id)
        if await self.compactor.prune(session_id, messages):
            return
        await self.compactor.compact(session_id, messages, partial(self._summarize, cancel=cancel))

    async def _summarize(self, to_summarize: list[Message], summary: Message, *, cancel: CancellationToken) -> None:
        instruction = Message.user(summary.session_id, SUMMARIZE_INSTRUCTION, synthetic=True)
        await self.processor.process(
            [*to_summarize, instruction],
            [],
            summary,
            cancel,
            system=[SUMMARIZE_PROMPT],
        )

    def _status(self, session_id: str, status: SessionStatusType) -> None:
        if self.channel:
            self.channel.publish(SessionStatus(session_id=session_id, type=status))
