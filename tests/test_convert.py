import json

from helm.session.convert import INTERRUPTED_OUTPUT, to_model_messages
from helm.session.models import FinishReason, Message, TextPart, ToolCompleted, ToolPart, ToolRunning
from tests.conftest import SESSION


def assistant_with_tools(*states) -> Message:
    message = Message.assistant(SESSION)
    message.finish_reason = FinishReason.TOOL_CALLS
    for i, state in enumerate(states):
        part = ToolPart(session_id=SESSION, message_id=message.id, call_id=f"c{i}", name="read", input={"path": f"{i}.py"})
        if state == "completed":
            part.transition(ToolRunning())
            part.transition(ToolCompleted(output=f"contents {i}"))
        elif state == "error":
            part.fail("not found")
        elif state == "running":
            part.transition(ToolRunning())
        message.parts.append(part)
    return message


def summary(text: str) -> Message:
    message = Message.assistant(SESSION, is_summary=True)
    message.parts.append(TextPart(session_id=SESSION, message_id=message.id, text=text))
    return message


class TestToModelMessages:
    def test_user_and_text(self):
        reply = Message.assistant(SESSION)
        reply.parts.append(TextPart(session_id=SESSION, message_id=reply.id, text="hello"))
        result = to_model_messages([Message.user(SESSION, "hi"), reply])
        assert result == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

    def test_tool_calls_followed_by_results(self):
        result = to_model_messages([assistant_with_tools("completed", "error", "running", "pending")])

        call, *results = result
        assert call["content"] is None
        assert [tc["id"] for tc in call["tool_calls"]] == ["c0", "c1", "c2", "c3"]
        assert json.loads(call["tool_calls"][0]["function"]["arguments"]) == {"path": "0.py"}
        assert [r["content"] for r in results] == [
            "contents 0",
            "Error: not found",
            INTERRUPTED_OUTPUT,
            INTERRUPTED_OUTPUT,
        ]
        assert all(r["role"] == "tool" for r in results)

    def test_summary_hoisted_first(self):
        recent = Message.user(SESSION, "next step")
        result = to_model_messages([recent, summary("we did things")])
        assert result[0]["role"] == "assistant"
        assert result[0]["content"].endswith("we did things")
        assert result[1] == {"role": "user", "content": "next step"}

    def test_empty_messages_skipped(self):
        assert to_model_messages([Message.assistant(SESSION)]) == []
