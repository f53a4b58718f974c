"""Remote API quota accounting.

Remote catalogs charge an abstract number of "units" per call and enforce a
daily ceiling. YouTube's published costs are:

- light reads (list endpoints): 1 unit
- heavy reads (search): 100 units
- writes (insert/update): 50 units
- deletes: 50 units

The tracker keeps a time-stamped log of consumed units, counts only the
trailing 24 hours, and refuses operations that would push usage past
``daily_budget * safety_threshold`` so some headroom is always left.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)

DEFAULT_DAILY_BUDGET = 10_000
DEFAULT_SAFETY_THRESHOLD = 0.9
_WINDOW_SECONDS = 24 * 60 * 60


class OperationType(StrEnum):
    READ_LIGHT = "read_light"
    READ_HEAVY = "read_heavy"
    WRITE = "write"
    DELETE = "delete"


QUOTA_COSTS: dict[OperationType, int] = {
    OperationType.READ_LIGHT: 1,
    OperationType.READ_HEAVY: 100,
    OperationType.WRITE: 50,
    OperationType.DELETE: 50,
}


class QuotaExceeded(Exception):
    """Raised when an operation would exhaust (or has exhausted) the remote quota."""


@dataclass(frozen=True)
class QuotaEntry:
    timestamp: float
    units: int


@dataclass(frozen=True)
class QuotaStats:
    used: int
    remaining: int
    total: int
    percent_used: float

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "remaining": self.remaining,
            "total": self.total,
            "percent_used": round(self.percent_used, 2),
        }


class QuotaTracker:
    """Rolling 24h quota log for one remote API credential pool.

    Safe to share between concurrent reconciliation runs; every read and
    write of the log happens under a lock.
    """

    def __init__(
        self,
        daily_budget: int = DEFAULT_DAILY_BUDGET,
        safety_threshold: float = DEFAULT_SAFETY_THRESHOLD,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if daily_budget <= 0:
            msg = "daily_budget must be positive"
            raise ValueError(msg)
        if not 0.0 < safety_threshold <= 1.0:
            msg = "safety_threshold must be in (0, 1]"
            raise ValueError(msg)
        self.daily_budget = daily_budget
        self.safety_threshold = safety_threshold
        self._clock = clock
        self._entries: list[QuotaEntry] = []
        self._lock = threading.Lock()

    @property
    def safe_limit(self) -> float:
        return self.daily_budget * self.safety_threshold

    # -- mutations ------------------------------------------------------------

    def record_usage(self, op_type: OperationType, count: int = 1) -> int:
        """Append ``count * cost[op_type]`` units to the log and return them."""
        return self.record_units(QUOTA_COSTS[op_type] * count)

    def record_units(self, units: int) -> int:
        """Append a raw number of units (used for penalties)."""
        with self._lock:
            self._purge_locked()
            self._entries.append(QuotaEntry(timestamp=self._clock(), units=units))
        return units

    def purge_expired(self) -> int:
        """Drop entries older than 24 hours; return how many were dropped."""
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        cutoff = self._clock() - _WINDOW_SECONDS
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp >= cutoff]
        return before - len(self._entries)

    # -- queries --------------------------------------------------------------

    def quota_used(self) -> int:
        """Units consumed within the trailing 24 hours."""
        with self._lock:
            self._purge_locked()
            return sum(e.units for e in self._entries)

    def remaining(self) -> int:
        return max(0, self.daily_budget - self.quota_used())

    def would_exceed(self, op_type: OperationType, count: int = 1) -> bool:
        required = QUOTA_COSTS[op_type] * count
        return self.quota_used() + required > self.safe_limit

    def check_before_operation(self, op_type: OperationType, count: int = 1) -> None:
        """Raise :class:`QuotaExceeded` if the operation would cross the safe limit.

        Does not record anything; callers record usage only once the remote
        call has actually succeeded.
        """
        if self.would_exceed(op_type, count):
            stats = self.stats()
            log.warning(
                "quota_precheck_blocked",
                op_type=str(op_type),
                count=count,
                used=stats.used,
                total=stats.total,
            )
            raise QuotaExceeded(
                f"API quota limit reached ({stats.percent_used:.1f}% used). Please try again later."
            )

    def stats(self) -> QuotaStats:
        used = self.quota_used()
        return QuotaStats(
            used=used,
            remaining=max(0, self.daily_budget - used),
            total=self.daily_budget,
            percent_used=used / self.daily_budget * 100,
        )

    def batch_size_for(self, batch_size: int) -> int:
        """Shrink a batch size when the remaining budget runs low.

        Under 30% remaining the batch is halved, under 10% it drops to one
        item, so that at least some operations still fit in the budget.
        """
        stats = self.stats()
        percent_remaining = stats.remaining / stats.total * 100
        if percent_remaining < 10:
            return 1
        if percent_remaining < 30:
            return max(1, batch_size // 2)
        return batch_size
