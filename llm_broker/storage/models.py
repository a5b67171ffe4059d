"""
Data models for storage layer.

Defines the persisted usage record.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one completed broker call.

    Append-only rows that make up the usage ledger. Once written,
    these records must never be modified.
    """
    timestamp: datetime
    call_type: str
    provider: str
    model: str
    input_tokens: int
    completion_tokens: int
    cost_usd: float
    source: str = "provider"
    retry_count: int = 0

    def __post_init__(self):
        if self.input_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be >= 0")
        if self.cost_usd < 0:
            raise ValueError("cost_usd must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens
