from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from helm.core.cancel import CancellationToken
from helm.llm.types import StreamEvent


class StreamingClient(ABC):
    @abstractmethod
    def stream(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        tools: list[dict],
        cancel: CancellationToken,
    ) -> AsyncIterator[StreamEvent]: ...

    async def close(self) -> None:
        return None
