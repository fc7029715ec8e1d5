from dataclasses import dataclass


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window after the call."""
        return self.input + self.cache_read + self.output

