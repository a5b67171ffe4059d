"""
Usage ledger and budget tracking.

Append-only record of completed calls with per-call-type totals and a
soft budget. Records are optionally mirrored to the SQLite ledger table.
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from ..storage.models import UsageRecord
from ..storage.repository import initialize_schema, insert_usage_record

logger = logging.getLogger(__name__)


class BudgetStatus(Enum):
    """Spend relative to the configured limit, in order of severity."""
    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass
class UsageTotals:
    """Aggregated counts for a set of records."""
    calls: int = 0
    input_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens

    def add(self, record: UsageRecord) -> None:
        self.calls += 1
        self.input_tokens += record.input_tokens
        self.completion_tokens += record.completion_tokens
        self.cost_usd += record.cost_usd


@dataclass(frozen=True)
class BudgetState:
    """Current spend against the limit."""
    status: BudgetStatus
    amount_used: float
    limit_usd: Optional[float]

    @property
    def amount_remaining(self) -> Optional[float]:
        if self.limit_usd is None:
            return None
        return max(self.limit_usd - self.amount_used, 0.0)


class UsageLedger:
    """Thread-safe append-only usage ledger."""

    def __init__(
        self,
        limit_usd: Optional[float] = None,
        warn_fraction: float = 0.8,
        db_path: Optional[str] = None
    ):
        """Initialize ledger.

        Args:
            limit_usd: Optional spend limit; None disables budget tracking
            warn_fraction: Fraction of the limit at which status becomes WARNING
            db_path: Optional SQLite file to mirror records into

        Raises:
            ValueError: If limit or warn fraction is out of range
        """
        if limit_usd is not None and limit_usd <= 0:
            raise ValueError("limit_usd must be > 0")
        if not 0 < warn_fraction <= 1:
            raise ValueError("warn_fraction must be in (0, 1]")

        self.limit_usd = limit_usd
        self.warn_fraction = warn_fraction
        self.db_path = db_path
        self._records: List[UsageRecord] = []
        self._totals = UsageTotals()
        self._by_call_type: Dict[str, UsageTotals] = {}
        self._reported = BudgetStatus.OK
        self._lock = threading.Lock()

        if db_path:
            initialize_schema(db_path)

    def record(self, record: UsageRecord) -> None:
        """Append a record and update totals; logs once per budget threshold crossed."""
        with self._lock:
            self._records.append(record)
            self._totals.add(record)
            self._by_call_type.setdefault(record.call_type, UsageTotals()).add(record)
            status = self._status_locked()
            crossed = _SEVERITY[status] > _SEVERITY[self._reported]
            if crossed:
                self._reported = status
            spent = self._totals.cost_usd

        if crossed:
            logger.warning("Usage budget %s: $%.6f of $%.2f spent", status.value, spent, self.limit_usd)

        if self.db_path:
            insert_usage_record(record, self.db_path)

    def _status_locked(self) -> BudgetStatus:
        if self.limit_usd is None:
            return BudgetStatus.OK
        spent = self._totals.cost_usd
        if spent >= self.limit_usd:
            return BudgetStatus.EXCEEDED
        if spent >= self.limit_usd * self.warn_fraction:
            return BudgetStatus.WARNING
        return BudgetStatus.OK

    def budget_status(self) -> BudgetStatus:
        with self._lock:
            return self._status_locked()

    def budget_state(self) -> BudgetState:
        with self._lock:
            return BudgetState(
                status=self._status_locked(),
                amount_used=self._totals.cost_usd,
                limit_usd=self.limit_usd,
            )

    def totals(self) -> UsageTotals:
        with self._lock:
            return replace(self._totals)

    def by_call_type(self) -> Dict[str, UsageTotals]:
        with self._lock:
            return {name: replace(t) for name, t in self._by_call_type.items()}

    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        """Reset in-memory totals. Persisted rows are left untouched."""
        with self._lock:
            self._records.clear()
            self._totals = UsageTotals()
            self._by_call_type.clear()
            self._reported = BudgetStatus.OK
        logger.info("Usage ledger cleared")


_SEVERITY = {
    BudgetStatus.OK: 0,
    BudgetStatus.WARNING: 1,
    BudgetStatus.EXCEEDED: 2,
}
