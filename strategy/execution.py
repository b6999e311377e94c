import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from api.metrics import metrics
from ingest.polymarket_rest import PolymarketAPIError
from strategy.execution_types import (
    BalanceSnapshot,
    CloseRequest,
    CloseResult,
    FetchResult,
    OrderRequest,
    OrderResult,
    PositionView,
)
from strategy.signals import SignalSnapshot


logger = logging.getLogger(__name__)

PAPER = 'paper'
LIVE = 'live'
MODES = (PAPER, LIVE)
PRODUCTION_GATE = 'production'


class OrderExecutor(ABC):
    """Execution backend shared by the paper simulator and the live venue.

    Methods returning ``FetchResult`` never raise for venue trouble: a failed
    call comes back with ``error`` set so the engine can take its fallback path.
    """

    mode: str = PAPER

    def get_mode(self) -> str:
        return self.mode

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def open_position(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def close_position(self, request: CloseRequest) -> CloseResult:
        ...

    @abstractmethod
    async def get_open_positions(self, signals: SignalSnapshot) -> FetchResult[List[PositionView]]:
        ...

    @abstractmethod
    async def mark_positions(
        self, positions: List[PositionView], signals: SignalSnapshot
    ) -> FetchResult[List[PositionView]]:
        ...

    @abstractmethod
    async def get_balance(self) -> FetchResult[BalanceSnapshot]:
        ...

    async def cancel_all_orders(self) -> int:
        return 0

    async def close(self) -> None:
        return None

    def _log_transport_error(self, action: str, error: Exception) -> None:
        metrics.record_transport_error(action)
        if isinstance(error, PolymarketAPIError):
            logger.error(
                "Polymarket %s failed (status=%s, msg=%s)",
                action,
                error.status,
                error.message,
            )
        else:
            logger.error("%s failed: %s", action, error)


class ModeManager:
    """Holds the paper and (optional) live executors and tracks which one is active."""

    def __init__(
        self,
        paper_executor: OrderExecutor,
        live_executor: Optional[OrderExecutor] = None,
        initial_mode: str = PAPER,
        env_gate: Optional[str] = None,
    ):
        self._paper = paper_executor
        self._live = live_executor
        self.env_gate = env_gate
        self._mode = LIVE if initial_mode == LIVE and live_executor is not None else PAPER

    @property
    def mode(self) -> str:
        return self._mode

    def get_mode(self) -> str:
        return self._mode

    def is_live_available(self) -> bool:
        return self._live is not None

    def get_active_executor(self) -> OrderExecutor:
        if self._mode == LIVE and self._live is not None:
            return self._live
        return self._paper

    def executors(self) -> List[OrderExecutor]:
        return [ex for ex in (self._paper, self._live) if ex is not None]

    def switch_mode(self, mode: str) -> str:
        mode = (mode or '').strip().lower()
        if mode not in MODES:
            raise ValueError(f"Unknown execution mode {mode!r}; expected one of {MODES}")
        if mode == LIVE:
            if self._live is None:
                raise RuntimeError(
                    "Live trading is not configured. Set LIVE_TRADING_ENABLED=true and provide credentials."
                )
            if self.env_gate and self.env_gate != PRODUCTION_GATE:
                raise RuntimeError(
                    f"Live trading blocked: LIVE_ENV_GATE is {self.env_gate!r} (must be {PRODUCTION_GATE!r})."
                )
        if mode != self._mode:
            logger.warning("Execution mode switched %s -> %s", self._mode, mode)
        self._mode = mode
        return self._mode
