import pytest

from helm.session.models import (
    FinishReason,
    Message,
    ToolCompleted,
    ToolError,
    ToolPart,
    ToolPending,
    ToolRunning,
    ToolStatus,
)
from helm.usage import TokenUsage
from helm.utils import ascending_id
from tests.conftest import SESSION


def part() -> ToolPart:
    return ToolPart(session_id=SESSION, message_id="msg_1", call_id="c1", name="read")


class TestToolStateMachine:
    def test_happy_path(self):
        p = part()
        assert p.status == ToolStatus.PENDING
        p.transition(ToolRunning(started_at=10))
        p.transition(ToolCompleted(output="ok"))
        assert p.is_finished
        assert p.state.started_at == 10

    def test_pending_can_fail(self):
        p = part()
        p.fail("interrupted")
        assert p.status == ToolStatus.ERROR

    def test_pending_cannot_complete(self):
        with pytest.raises(ValueError):
            part().transition(ToolCompleted(output="ok"))

    @pytest.mark.parametrize("final", [ToolCompleted(output="ok"), ToolError(error="no")])
    def test_finished_states_are_final(self, final):
        p = part()
        p.transition(ToolRunning())
        p.transition(final)
        for state in (ToolPending(), ToolRunning(), ToolCompleted(output="again"), ToolError(error="again")):
            with pytest.raises(ValueError):
                p.transition(state)

    def test_running_cannot_restart(self):
        p = part()
        p.transition(ToolRunning())
        with pytest.raises(ValueError):
            p.transition(ToolRunning())

    def test_prune_only_completed(self):
        p = part()
        p.transition(ToolRunning())
        with pytest.raises(ValueError):
            p.prune("gone")
        p.transition(ToolCompleted(output="long output"))
        p.prune("gone")
        assert p.state.output == "gone"
        assert p.state.pruned_at is not None

    def test_state_serialization(self):
        p = part()
        p.transition(ToolRunning())
        p.transition(ToolError(error="boom"))
        restored = ToolPart.model_validate_json(p.model_dump_json())
        assert isinstance(restored.state, ToolError)
        assert restored == p


class TestFinishReason:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("stop", FinishReason.STOP),
            ("end_turn", FinishReason.STOP),
            ("tool_calls", FinishReason.TOOL_CALLS),
            ("tool_use", FinishReason.TOOL_CALLS),
            ("length", FinishReason.LENGTH),
            ("max_tokens", FinishReason.LENGTH),
            ("content_filter", FinishReason.CONTENT_FILTER),
            ("something-new", FinishReason.UNKNOWN),
            (None, FinishReason.UNKNOWN),
        ],
    )
    def test_normalize(self, raw, expected):
        assert FinishReason.normalize(raw) == expected

    def test_terminal(self):
        terminal = {r for r in FinishReason if r.is_terminal}
        assert terminal == {FinishReason.STOP, FinishReason.LENGTH, FinishReason.CONTENT_FILTER, FinishReason.ERROR}


class TestMessage:
    def test_ids_ascend(self):
        ids = [ascending_id("msg") for _ in range(1000)]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)
        assert len({len(i) for i in ids}) == 1

    def test_user_factory(self):
        message = Message.user(SESSION, "hello")
        assert message.text == "hello"
        assert message.finished is False
        assert message.parts[0].message_id == message.id

    def test_usage_context_tokens(self):
        usage = TokenUsage(input=10, output=5, cache_read=100, cache_write=7)
        assert usage.context_tokens == 115
