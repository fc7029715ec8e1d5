import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import litellm

from helm.core.cancel import CancellationToken
from helm.llm.base import StreamingClient
from helm.llm.types import StreamEvent, StreamFinish, StreamStart, TextDelta, ToolCallStart, ToolInputStart
from helm.logging import get_logger
from helm.session.models import FinishReason
from helm.usage import TokenUsage

_logger = get_logger(__name__)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def parse_args(raw: str | dict | None) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_usage(usage: Any) -> TokenUsage:
    if usage is None:
        return TokenUsage()
    prompt = _get(usage, "prompt_tokens") or 0
    details = _get(usage, "prompt_tokens_details")
    cache_read = _get(details, "cached_tokens") or _get(usage, "cache_read_input_tokens") or 0
    return TokenUsage(
        input=max(0, prompt - cache_read),
        output=_get(usage, "completion_tokens") or 0,
        cache_read=cache_read,
        cache_write=_get(usage, "cache_creation_input_tokens") or 0,
    )


@dataclass
class _PendingCall:
    call_id: str = ""
    name: str = ""
    arguments: str = ""
    announced: bool = False


class ChunkDecoder:
    """Turns OpenAI-format streaming chunks into stream events.

    Tool call fragments are accumulated per index and emitted as ToolCallStart once the
    model reports a finish reason; StreamFinish is emitted by close(), after the trailing
    usage chunk.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}
        self._reason: FinishReason | None = None
        self._usage = TokenUsage()
        self._flushed = False

    def feed(self, chunk: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if (usage := _get(chunk, "usage")) is not None:
            self._usage = parse_usage(usage)

        for choice in _get(chunk, "choices") or []:
            delta = _get(choice, "delta")
            if text := _get(delta, "content"):
                events.append(TextDelta(text=text))
            for fragment in _get(delta, "tool_calls") or []:
                events.extend(self._accumulate(fragment))
            if reason := _get(choice, "finish_reason"):
                self._reason = FinishReason.normalize(reason)
                events.extend(self._flush())
        return events

    def close(self) -> list[StreamEvent]:
        events = self._flush()
        if self._reason is not None:
            events.append(StreamFinish(reason=self._reason, usage=self._usage))
        return events

    def _accumulate(self, fragment: Any) -> list[StreamEvent]:
        index = _get(fragment, "index") or 0
        call = self._calls.setdefault(index, _PendingCall())
        if call_id := _get(fragment, "id"):
            call.call_id = call_id
        function = _get(fragment, "function")
        if name := _get(function, "name"):
            call.name = name
        if arguments := _get(function, "arguments"):
            call.arguments += arguments

        if call.call_id and call.name and not call.announced:
            call.announced = True
            return [ToolInputStart(call_id=call.call_id, name=call.name)]
        return []

    def _flush(self) -> list[StreamEvent]:
        if self._flushed:
            return []
        self._flushed = True
        events: list[StreamEvent] = []
        for index in sorted(self._calls):
            call = self._calls[index]
            if not call.name:
                _logger.warning("Dropping tool call fragment without a name at index %d", index)
                continue
            events.append(
                ToolCallStart(
                    call_id=call.call_id or f"call_{index}",
                    name=call.name,
                    input=parse_args(call.arguments),
                )
            )
        return events


class LiteLLMClient(StreamingClient):
    def __init__(self, api_key: str | None = None, base_url: str | None = None, **params: Any):
        self.api_key = api_key
        self.base_url = base_url
        self.params = params

    async def stream(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        tools: list[dict],
        cancel: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        request: dict = {
            "model": model,
            "messages": self._with_system(system, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            **self.params,
        }
        optional = {"tools": tools or None, "api_key": self.api_key, "api_base": self.base_url}
        request.update({k: v for k, v in optional.items() if v is not None})

        response = await cancel.race(litellm.acompletion(**request))
        decoder = ChunkDecoder()
        yield StreamStart()
        async for chunk in response:
            for event in decoder.feed(chunk):
                yield event
        for event in decoder.close():
            yield event

    @staticmethod
    def _with_system(system: list[str], messages: list[dict]) -> list[dict]:
        prompt = "\n\n".join(s for s in system if s)
        if not prompt:
            return messages
        return [{"role": "system", "content": prompt}, *messages]
