import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from strategy.execution_types import GraceState


logger = logging.getLogger(__name__)


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass
class CircuitBreakerStatus:
    tripped: bool
    remaining_ms: float = 0.0


@dataclass
class EntryStatus:
    at: Optional[str] = None
    eligible: bool = False
    blockers: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {'at': self.at, 'eligible': self.eligible, 'blockers': list(self.blockers)}


class TradingState:
    """Session-scoped risk bookkeeping owned by one TradingEngine."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or _wall_clock_ms
        self.last_loss_at_ms: Optional[float] = None
        self.last_win_at_ms: Optional[float] = None
        self.last_flip_at_ms: Optional[float] = None
        self.skip_market_until_next_slug: Optional[str] = None
        self.has_open_position = False
        self.last_entry_status = EntryStatus()

        self.today_realized_pnl = 0.0
        self._today_key = self._day_key(self.now_ms())

        self.consecutive_losses = 0
        self.circuit_breaker_tripped_at_ms: Optional[float] = None

        self._max_unrealized: Dict[str, float] = {}
        self._min_unrealized: Dict[str, float] = {}
        self._grace: Dict[str, GraceState] = {}

    def now_ms(self) -> float:
        return self._clock()

    @staticmethod
    def _day_key(now_ms: float) -> str:
        return datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).astimezone().strftime('%Y-%m-%d')

    def reset_day_if_needed(self) -> bool:
        key = self._day_key(self.now_ms())
        if key == self._today_key:
            return False
        logger.info(
            "New trading day %s (previous %s realized %.2f)",
            key, self._today_key, self.today_realized_pnl,
        )
        self._today_key = key
        self.today_realized_pnl = 0.0
        return True

    def track_mfe(self, position_id: str, pnl: float) -> None:
        prev = self._max_unrealized.get(position_id, pnl)
        self._max_unrealized[position_id] = max(prev, pnl)

    def track_mae(self, position_id: str, pnl: float) -> None:
        prev = self._min_unrealized.get(position_id, pnl)
        self._min_unrealized[position_id] = min(prev, pnl)

    def get_max_unrealized(self, position_id: str) -> Optional[float]:
        return self._max_unrealized.get(position_id)

    def get_min_unrealized(self, position_id: str) -> Optional[float]:
        return self._min_unrealized.get(position_id)

    def get_grace_state(self, position_id: str) -> GraceState:
        state = self._grace.get(position_id)
        if state is None:
            return GraceState()
        return GraceState(breach_at_ms=state.breach_at_ms, used=state.used)

    def start_grace(self, position_id: str) -> None:
        self._grace[position_id] = GraceState(breach_at_ms=self.now_ms(), used=True)

    def clear_grace(self, position_id: str) -> None:
        current = self._grace.get(position_id) or GraceState()
        self._grace[position_id] = GraceState(breach_at_ms=None, used=current.used)

    def clear_position(self, position_id: str) -> None:
        self._max_unrealized.pop(position_id, None)
        self._min_unrealized.pop(position_id, None)
        self._grace.pop(position_id, None)

    def record_exit(
        self,
        pnl: float,
        market_slug: Optional[str],
        reason: Optional[str],
        skip_after_max_loss: bool = False,
    ) -> None:
        now = self.now_ms()
        finite = pnl is not None and math.isfinite(pnl)
        if finite and pnl < 0:
            self.last_loss_at_ms = now
            self.consecutive_losses += 1
        elif finite:
            self.last_win_at_ms = now
            self.consecutive_losses = 0

        if skip_after_max_loss and market_slug and (reason or '').startswith('Max Loss'):
            self.skip_market_until_next_slug = market_slug

        self.reset_day_if_needed()
        if finite:
            self.today_realized_pnl += pnl

    def check_circuit_breaker(
        self,
        max_losses: int,
        cooldown_ms: float,
        now_ms: Optional[float] = None,
    ) -> CircuitBreakerStatus:
        now = self.now_ms() if now_ms is None else now_ms
        if self.circuit_breaker_tripped_at_ms is not None:
            elapsed = now - self.circuit_breaker_tripped_at_ms
            if elapsed < cooldown_ms:
                return CircuitBreakerStatus(tripped=True, remaining_ms=cooldown_ms - elapsed)
            logger.info("Circuit breaker cooldown elapsed; resetting loss streak")
            self.circuit_breaker_tripped_at_ms = None
            self.consecutive_losses = 0

        if max_losses > 0 and self.consecutive_losses >= max_losses:
            self.circuit_breaker_tripped_at_ms = now
            logger.warning(
                "Circuit breaker tripped after %s consecutive losses; pausing entries for %.0fs",
                self.consecutive_losses,
                cooldown_ms / 1000,
            )
            return CircuitBreakerStatus(tripped=True, remaining_ms=cooldown_ms)
        return CircuitBreakerStatus(tripped=False)

    def set_entry_status(self, eligible: bool, blockers: List[str]) -> EntryStatus:
        stamp = datetime.fromtimestamp(self.now_ms() / 1000.0, tz=timezone.utc).isoformat()
        self.last_entry_status = EntryStatus(at=stamp, eligible=eligible, blockers=list(blockers))
        return self.last_entry_status
