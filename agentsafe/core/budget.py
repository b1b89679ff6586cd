"""
Budget ledger - caps autonomous spend per action and per accounting period.

The ledger is process-wide, one per operating account. It is read by the
safety pipeline (projection only) and mutated only by the governor after a
successful execution. All reads and writes roll the accounting period
lazily; there is no background timer.
"""

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from . import config
from .errors import LedgerInvariantError
from .schema import utcnow
from ..util.logging import logger


@dataclass(frozen=True)
class SpendCheck:
    """Outcome of a spend projection. A refusal is a verdict, not an error."""
    allowed: bool
    amount_usd: float
    remaining_usd: float
    runway_days: float
    runway_advisory: bool = False
    reason: Optional[str] = None


def estimate_runway(remaining_usd: float, daily_burn_usd: float) -> float:
    """Days until the treasury empties at the given burn rate (inf when nothing burns)."""
    if daily_burn_usd <= 0:
        return math.inf
    return max(remaining_usd, 0.0) / daily_burn_usd


def _period_floor(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class BudgetLedger:
    """
    Treasury, per-action cap and per-period spend for autonomous actions.

    ``daily_burn_usd`` is a hard cap on spend committed or held within one
    period, and the burn rate used for the runway projection.
    """

    def __init__(self,
                 treasury_usd: float = None,
                 per_action_cap_usd: float = None,
                 daily_burn_usd: float = None,
                 min_runway_days: float = None,
                 period_length: timedelta = timedelta(days=1),
                 clock: Callable[[], datetime] = utcnow):
        self.treasury_usd = float(config.TREASURY_USD if treasury_usd is None else treasury_usd)
        self.per_action_cap_usd = float(config.PER_ACTION_CAP_USD if per_action_cap_usd is None else per_action_cap_usd)
        self.daily_burn_usd = float(config.DAILY_BURN_USD if daily_burn_usd is None else daily_burn_usd)
        self.min_runway_days = float(config.MIN_RUNWAY_DAYS if min_runway_days is None else min_runway_days)
        self.period_length = period_length
        self.spent_today_usd = 0.0
        self._clock = clock
        self.period_start = _period_floor(clock())

        self._reservations: Dict[str, float] = {}
        self._committed: Set[str] = set()
        self._lock = threading.RLock()

    @property
    def reserved_usd(self) -> float:
        return sum(self._reservations.values())

    def roll_period(self, now: datetime = None) -> bool:
        """Settle and reset the period if ``now`` crossed its boundary. Returns True if rolled."""
        now = now or self._clock()
        with self._lock:
            if now < self.period_start + self.period_length:
                return False

            elapsed_periods = (now - self.period_start) // self.period_length
            settled = self.spent_today_usd
            self.treasury_usd -= settled
            self.spent_today_usd = 0.0
            self.period_start += elapsed_periods * self.period_length

            logger.log_spend("roll_period", settled, self.spent_today_usd, self.treasury_usd)
            return True

    def _check(self, amount_usd: float) -> SpendCheck:
        committed_and_held = self.spent_today_usd + self.reserved_usd
        remaining = self.treasury_usd - committed_and_held

        if amount_usd < 0:
            return SpendCheck(False, amount_usd, remaining, math.inf,
                              reason="Spend amount must be non-negative")

        if amount_usd > self.per_action_cap_usd:
            return SpendCheck(False, amount_usd, remaining, math.inf,
                              reason=f"Per-action cap exceeded ({amount_usd:.2f} > {self.per_action_cap_usd:.2f} USD)")

        if committed_and_held + amount_usd > self.treasury_usd:
            return SpendCheck(False, amount_usd, remaining, 0.0,
                              reason=f"Insufficient treasury ({amount_usd:.2f} requested, {remaining:.2f} USD remaining)")

        if committed_and_held + amount_usd > self.daily_burn_usd:
            return SpendCheck(False, amount_usd, remaining, math.inf,
                              reason=f"Daily burn limit exceeded ({committed_and_held + amount_usd:.2f} > {self.daily_burn_usd:.2f} USD)")

        runway = estimate_runway(remaining - amount_usd, self.daily_burn_usd)
        advisory = runway < self.min_runway_days
        reason = None
        if advisory:
            reason = f"Runway would fall to {runway:.1f} days (minimum {self.min_runway_days:g})"

        return SpendCheck(True, amount_usd, remaining, runway, advisory, reason)

    def can_spend(self, amount_usd: float) -> SpendCheck:
        """Project a spend against the caps without committing anything."""
        with self._lock:
            self.roll_period()
            return self._check(amount_usd)

    def reserve(self, action_id: str, amount_usd: float) -> SpendCheck:
        """Atomically check and hold budget for an in-flight execution."""
        with self._lock:
            self.roll_period()
            previous = self._reservations.pop(action_id, None)
            check = self._check(amount_usd)
            if check.allowed:
                self._reservations[action_id] = amount_usd
            elif previous is not None:
                self._reservations[action_id] = previous
            return check

    def release(self, action_id: str) -> float:
        """Drop the hold for an execution that did not complete."""
        with self._lock:
            return self._reservations.pop(action_id, 0.0)

    def commit_spend(self, amount_usd: float, action_id: str = None) -> None:
        """
        Record a spend for a successfully executed action.

        Compare-and-increment under the ledger lock; any hold for ``action_id``
        is consumed. A commit that would break the caps, or a second commit
        for the same action, raises LedgerInvariantError.
        """
        with self._lock:
            self.roll_period()

            if action_id is not None and action_id in self._committed:
                raise LedgerInvariantError("Spend already committed for this action", action_id)

            held = self._reservations.pop(action_id, None) if action_id is not None else None

            if amount_usd < 0 or amount_usd > self.per_action_cap_usd:
                if held is not None:
                    self._reservations[action_id] = held
                raise LedgerInvariantError(
                    f"Commit of {amount_usd:.2f} USD violates per-action cap {self.per_action_cap_usd:.2f}",
                    action_id)

            if self.spent_today_usd + self.reserved_usd + amount_usd > self.treasury_usd:
                if held is not None:
                    self._reservations[action_id] = held
                raise LedgerInvariantError(
                    f"Commit of {amount_usd:.2f} USD would exceed treasury {self.treasury_usd:.2f}",
                    action_id)

            if self.spent_today_usd + self.reserved_usd + amount_usd > self.daily_burn_usd:
                if held is not None:
                    self._reservations[action_id] = held
                raise LedgerInvariantError(
                    f"Commit of {amount_usd:.2f} USD would exceed daily burn limit {self.daily_burn_usd:.2f}",
                    action_id)

            self.spent_today_usd += amount_usd
            if action_id is not None:
                self._committed.add(action_id)

            logger.log_spend("commit", amount_usd, self.spent_today_usd, self.treasury_usd, action_id)

    def set_treasury(self, treasury_usd: float) -> None:
        """Refresh the treasury balance from an external source."""
        with self._lock:
            self.roll_period()
            if treasury_usd < self.spent_today_usd + self.reserved_usd:
                raise ValueError("Treasury cannot drop below spend already committed or held this period")
            self.treasury_usd = float(treasury_usd)
            logger.log_spend("set_treasury", 0.0, self.spent_today_usd, self.treasury_usd)

    def snapshot(self) -> Dict:
        """Serializable ledger state with the current runway projection."""
        with self._lock:
            self.roll_period()
            check = self._check(0.0)
            return {
                "treasury_usd": self.treasury_usd,
                "daily_burn_usd": self.daily_burn_usd,
                "per_action_cap_usd": self.per_action_cap_usd,
                "spent_today_usd": self.spent_today_usd,
                "reserved_usd": self.reserved_usd,
                "daily_remaining_usd": max(self.daily_burn_usd - self.spent_today_usd - self.reserved_usd, 0.0),
                "remaining_usd": check.remaining_usd,
                "period_start": self.period_start.isoformat(),
                "runway_days": None if math.isinf(check.runway_days) else round(check.runway_days, 2),
                "min_runway_days": self.min_runway_days,
                "runway_advisory": check.runway_advisory,
            }
