"""
Token counting and usage tracking.

Holds exact token counts reported by backends and a heuristic
estimate for backends that report none.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text at roughly four characters per token."""
    return len(text) // 4 + 1
