import logging
import math
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple

from api.metrics import metrics
from config.trading_config import TradingConfig
from orchestration.persistence import CLOSED, OPEN, PaperLedger
from risk.position_sizer import cap_pnl, compute_max_loss_usd
from strategy.execution import PAPER, OrderExecutor
from strategy.execution_types import (
    BalanceSnapshot,
    CloseRequest,
    CloseResult,
    FetchResult,
    OrderRequest,
    OrderResult,
    PositionNotFoundError,
    PositionView,
    Side,
)
from strategy.signals import SignalSnapshot, as_float, parse_time_ms


logger = logging.getLogger(__name__)

INVALID_ENTRY_REASON = 'Invalid Entry (sanity check)'


@dataclass
class FillEstimate:
    vwap_price: float
    total_shares: float
    levels_consumed: int


def simulate_fill(
    bids: Sequence[Tuple[float, float]],
    asks: Sequence[Tuple[float, float]],
    notional_usd: float,
    direction: str,
) -> Optional[FillEstimate]:
    """Walk the book for ``notional_usd`` of ``direction`` and return the VWAP fill.

    BUY consumes asks from the lowest price up, SELL consumes bids from the
    highest price down. Levels with a non-positive price or size are skipped.
    """
    buying = direction.upper() == 'BUY'
    levels = sorted(asks if buying else bids, key=lambda lvl: lvl[0], reverse=not buying)
    if not levels:
        return None

    remaining = notional_usd
    total_shares = 0.0
    total_cost = 0.0
    consumed = 0
    for price, size in levels:
        if remaining <= 0:
            break
        if not (math.isfinite(price) and price > 0 and math.isfinite(size) and size > 0):
            continue
        fill_usd = min(remaining, price * size)
        total_shares += fill_usd / price
        total_cost += fill_usd
        remaining -= fill_usd
        consumed += 1

    if total_shares <= 0 or total_cost <= 0:
        return None
    return FillEstimate(vwap_price=total_cost / total_shares, total_shares=total_shares, levels_consumed=consumed)


def _new_trade_id(now_ms: float) -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(now_ms)}-{suffix}"


def _iso(now_ms: float) -> str:
    return datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).isoformat()


def _valid_positive(value: Any) -> bool:
    number = as_float(value)
    return number is not None and number > 0


class PaperExecutor(OrderExecutor):
    """Simulated execution against the live orderbook, one open trade at a time."""

    mode = PAPER

    def __init__(
        self,
        config: TradingConfig,
        ledger: PaperLedger,
        transport=None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.transport = transport
        self._clock = clock or (lambda: time.time() * 1000.0)
        self.open_trade: Optional[dict] = None

    async def initialize(self) -> None:
        self.ledger.load()
        trade = self.ledger.get_open_trade()
        if trade is not None:
            shares = trade.get('shares')
            bad_price = not _valid_positive(trade.get('entryPrice'))
            bad_shares = shares is not None and not _valid_positive(shares)
            if bad_price or bad_shares:
                logger.warning("Invalid open paper trade %s found; force-closing", trade.get('id'))
                self.ledger.update_trade(trade['id'], {
                    'status': CLOSED,
                    'exitPrice': trade.get('exitPrice'),
                    'exitTime': _iso(self._clock()),
                    'pnl': 0.0,
                    'exitReason': INVALID_ENTRY_REASON,
                })
                trade = None
        self.open_trade = trade
        logger.info("Paper executor ready; open trade: %s", trade['id'] if trade else 'none')

    async def open_position(self, request: OrderRequest) -> OrderResult:
        fill_price = request.price
        fill_shares = request.size_usd / request.price if request.price and request.price > 0 else 0.0

        if request.token_id:
            estimate = await self._simulate_book_fill(request.token_id, request.size_usd, 'BUY')
            if estimate is not None:
                fill_price = estimate.vwap_price
                fill_shares = estimate.total_shares

        if not (_valid_positive(fill_price) and _valid_positive(fill_shares)):
            return OrderResult.rejected()

        now = self._clock()
        trade_id = _new_trade_id(now)
        fill_size_usd = fill_shares * fill_price
        trade = {
            'id': trade_id,
            'timestamp': _iso(now),
            'marketSlug': request.market_slug,
            'side': request.side.value,
            'instrument': 'POLY',
            'entryPrice': fill_price,
            'shares': fill_shares,
            'contractSize': fill_size_usd,
            'status': OPEN,
            'entryTime': _iso(now),
            'exitPrice': None,
            'exitTime': None,
            'pnl': 0.0,
            'entryPhase': request.phase,
            'entryReason': 'Inferred' if request.side_inferred else 'Rec',
            'tokenID': request.token_id,
            'metadata': dict(request.metadata),
        }
        self.ledger.add_trade(trade)
        self.open_trade = trade
        return OrderResult(
            filled=True,
            trade_id=trade_id,
            fill_price=fill_price,
            fill_shares=fill_shares,
            fill_size_usd=fill_size_usd,
        )

    async def close_position(self, request: CloseRequest) -> CloseResult:
        trade = self.open_trade
        if trade is None or (request.position_id and trade.get('id') != request.position_id):
            raise PositionNotFoundError(request.position_id)

        entry_price = as_float(trade.get('entryPrice')) or 0.0
        contract_size = as_float(trade.get('contractSize')) or 0.0
        shares = as_float(trade.get('shares'))
        if shares is None:
            shares = contract_size / entry_price if entry_price > 0 else 0.0

        exit_price = await self._exit_price(trade, request, shares, entry_price)

        raw_pnl = shares * exit_price - contract_size
        pnl, capped_exit = cap_pnl(raw_pnl, contract_size, shares, exit_price, self.config)

        reason = request.reason
        if pnl != raw_pnl:
            max_loss = abs(compute_max_loss_usd(contract_size, self.config) or 0.0)
            reason = f"Max Loss (${max_loss:.2f})"

        pnl = round(pnl, 2)
        self.ledger.update_trade(trade['id'], {
            'exitPrice': capped_exit,
            'exitTime': _iso(self._clock()),
            'pnl': pnl,
            'status': CLOSED,
            'exitReason': reason,
        })
        self.open_trade = None

        metrics.record_pnl(pnl)
        metrics.update_balance(self._balance_snapshot().balance)
        return CloseResult(closed=True, exit_price=capped_exit, pnl=pnl, reason=reason)

    async def get_open_positions(self, signals: SignalSnapshot) -> FetchResult[List[PositionView]]:
        # The ledger file is authoritative; it may have been edited between ticks.
        self.open_trade = self.ledger.get_open_trade()
        trade = self.open_trade
        if trade is None:
            return FetchResult.success([])
        side = Side.parse(trade.get('side')) or Side.UP
        position = PositionView(
            id=trade['id'],
            side=side,
            market_slug=trade.get('marketSlug'),
            entry_price=as_float(trade.get('entryPrice')) or 0.0,
            shares=as_float(trade.get('shares')) or 0.0,
            contract_size=as_float(trade.get('contractSize')) or 0.0,
            entry_time_ms=parse_time_ms(trade.get('entryTime')),
            token_id=trade.get('tokenID'),
        )
        return FetchResult.success([position])

    async def mark_positions(
        self, positions: List[PositionView], signals: SignalSnapshot
    ) -> FetchResult[List[PositionView]]:
        for position in positions:
            mark = signals.mark_price(position.side)
            position.mark = mark
            if mark is not None:
                position.unrealized_pnl = position.shares * mark - position.contract_size
            else:
                position.unrealized_pnl = None
        return FetchResult.success(positions)

    async def get_balance(self) -> FetchResult[BalanceSnapshot]:
        return FetchResult.success(self._balance_snapshot())

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()

    def _balance_snapshot(self) -> BalanceSnapshot:
        starting = self.config.starting_balance
        realized = self.ledger.realized_pnl()
        return BalanceSnapshot(balance=starting + realized, starting=starting, realized=realized)

    async def _exit_price(self, trade: dict, request: CloseRequest, shares: float, entry_price: float) -> float:
        token_id = request.token_id or trade.get('tokenID')
        if token_id:
            notional = (shares or request.shares) * (entry_price or 0.5)
            estimate = await self._simulate_book_fill(token_id, notional, 'SELL')
            if estimate is not None:
                return estimate.vwap_price
            if self.transport is not None:
                try:
                    quote = await self.transport.fetch_price(token_id, 'sell')
                except Exception as exc:
                    self._log_transport_error('paper exit quote', exc)
                    quote = None
                if quote is not None:
                    return quote
        return entry_price

    async def _simulate_book_fill(self, token_id: str, notional: float, direction: str) -> Optional[FillEstimate]:
        if self.transport is None:
            return None
        try:
            book = await self.transport.fetch_order_book(token_id)
        except Exception as exc:
            logger.debug("Orderbook fill simulation failed for %s; using reference price: %s", token_id, exc)
            return None
        if book is None:
            return None
        return simulate_fill(book.bids, book.asks, notional, direction)
