import json

from helm.context.prompts import SUMMARY_HEADER
from helm.session.models import Message, Role, ToolCompleted, ToolError, ToolPart

INTERRUPTED_OUTPUT = "[Tool execution was interrupted]"


def _tool_result(part: ToolPart) -> str:
    match part.state:
        case ToolCompleted(output=output):
            return output
        case ToolError(error=error):
            return f"Error: {error}"
        case _:
            return INTERRUPTED_OUTPUT


def _tool_call(part: ToolPart) -> dict:
    return {
        "id": part.call_id,
        "type": "function",
        "function": {"name": part.name, "arguments": json.dumps(part.input)},
    }


def to_model_messages(messages: list[Message]) -> list[dict]:
    """Convert stored history to OpenAI-format chat messages.

    Summaries stand in for the compacted history that preceded the kept window, so they
    are placed first regardless of when they were written.
    """
    result: list[dict] = [
        {"role": "assistant", "content": f"{SUMMARY_HEADER}\n{m.text}"} for m in messages if m.is_summary and m.text
    ]

    for message in messages:
        if message.is_summary or not message.parts:
            continue

        if message.role == Role.USER:
            result.append({"role": "user", "content": message.text})
            continue

        tool_parts = message.tool_parts
        entry: dict = {"role": "assistant", "content": message.text or None}
        if tool_parts:
            entry["tool_calls"] = [_tool_call(p) for p in tool_parts]
        result.append(entry)
        for part in tool_parts:
            result.append({"role": "tool", "tool_call_id": part.call_id, "content": _tool_result(part)})

    return result
