import math
from collections.abc import Awaitable, Callable

from helm.channel import Channel
from helm.config import CompactionPolicy
from helm.constants import OVERFLOW_RATIO, PRUNE_PROTECT_TURNS
from helm.context.prompts import PRUNED_OUTPUT
from helm.context.tokens import estimate
from helm.logging import get_logger
from helm.session.events import SessionCompacted
from helm.session.models import Message, Role, ToolCompleted, ToolPart
from helm.session.store import MessageStore
from helm.usage import TokenUsage

type Summarize = Callable[[list[Message], Message], Awaitable[None]]

_logger = get_logger(__name__)


def is_overflowing(usage: TokenUsage | None, context_limit: int, ratio: float = OVERFLOW_RATIO) -> bool:
    """True once the last call's context usage reaches `ratio` of the window. 0 = no limit."""
    if usage is None or context_limit <= 0:
        return False
    return usage.context_tokens >= math.ceil(round(context_limit * ratio, 6))


def find_prunable(messages: list[Message], protect_tokens: int) -> tuple[list[ToolPart], int]:
    """Completed tool outputs older than the newest `protect_tokens` of tool output.

    The two most recent user turns are never touched, and the walk stops at a summary or
    at output that was already pruned, since everything older has been handled before.
    """
    seen = 0
    freed = 0
    turns = 0
    prunable: list[ToolPart] = []

    for message in reversed(messages):
        if message.role == Role.USER:
            turns += 1
        if turns < PRUNE_PROTECT_TURNS:
            continue
        if message.is_summary:
            break
        for part in reversed(message.tool_parts):
            if not isinstance(part.state, ToolCompleted):
                continue
            if part.state.pruned_at is not None:
                return prunable, freed
            tokens = estimate(part.state.output)
            seen += tokens
            if seen > protect_tokens:
                freed += tokens
                prunable.append(part)

    return prunable, freed


class Compactor:
    def __init__(self, store: MessageStore, policy: CompactionPolicy, channel: Channel | None = None):
        self.store = store
        self.policy = policy
        self.channel = channel

    def is_overflowing(self, usage: TokenUsage | None) -> bool:
        return is_overflowing(usage, self.policy.context_limit, self.policy.overflow_ratio)

    async def prune(self, session_id: str, messages: list[Message]) -> int:
        prunable, freed = find_prunable(messages, self.policy.prune_protect)
        if freed < self.policy.prune_minimum:
            return 0

        for part in prunable:
            original = part.state.output if isinstance(part.state, ToolCompleted) else ""
            part.prune(PRUNED_OUTPUT.format(tokens=estimate(original)))
            await self.store.update_part(part)

        _logger.info("Pruned %d tool outputs (~%d tokens) in session %s", len(prunable), freed, session_id)
        return freed

    async def compact(self, session_id: str, messages: list[Message], summarize: Summarize) -> bool:
        keep = self.policy.keep_recent
        if len(messages) < keep + 1 or messages[-1].is_summary:
            return False

        regular = [m for m in messages if not m.is_summary]
        if len(regular) <= keep:
            return False
        cutoff = regular[-keep].id
        to_summarize = [m for m in messages if m.is_summary or m.id < cutoff]

        parent = next((m.id for m in reversed(messages) if m.role == Role.USER), None)
        summary = Message.assistant(session_id, parent_id=parent, is_summary=True)
        await self.store.add_message(summary)

        try:
            await summarize(to_summarize, summary)
        except Exception:
            _logger.exception("Summarization raised for session %s", session_id)
            await self.store.mark_compacted(session_id, [summary.id])
            return False

        written = await self.store.get_message(session_id, summary.id)
        if written is None or written.error is not None or not written.text.strip():
            reason = written.error.message if written and written.error else "empty summary"
            _logger.warning("Compaction of session %s failed: %s", session_id, reason)
            await self.store.mark_compacted(session_id, [summary.id])
            return False

        compacted_ids = [m.id for m in to_summarize]
        await self.store.mark_compacted(session_id, compacted_ids)
        _logger.info("Compacted %d messages in session %s", len(compacted_ids), session_id)
        if self.channel:
            self.channel.publish(
                SessionCompacted(session_id=session_id, summary_id=summary.id, compacted_ids=tuple(compacted_ids))
            )
        return True
