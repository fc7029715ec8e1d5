import json

from helm.constants import CHARS_PER_TOKEN, MESSAGE_OVERHEAD_CHARS
from helm.session.models import Message, TextPart, ToolCompleted, ToolError, ToolPart


def estimate(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def _tool_chars(part: ToolPart) -> int:
    total = len(part.name) + len(json.dumps(part.input, default=str))
    match part.state:
        case ToolCompleted(output=output):
            total += len(output)
        case ToolError(error=error):
            total += len(error)
    return total


def estimate_message(message: Message) -> int:
    total_chars = MESSAGE_OVERHEAD_CHARS + len(message.role)
    for part in message.parts:
        match part:
            case TextPart(text=text):
                total_chars += len(text)
            case ToolPart():
                total_chars += _tool_chars(part)
    return total_chars // CHARS_PER_TOKEN
