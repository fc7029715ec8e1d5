from helm.context.compaction import Compactor, Summarize, find_prunable, is_overflowing
from helm.context.tokens import estimate, estimate_message

__all__ = [
    "Compactor",
    "Summarize",
    "estimate",
    "estimate_message",
    "find_prunable",
    "is_overflowing",
]
