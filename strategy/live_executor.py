import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Set

from api.metrics import metrics
from config.trading_config import LiveSettings, TradingConfig
from orchestration.persistence import LiveTradeLog
from strategy.approvals import ApprovalService
from strategy.execution import LIVE, OrderExecutor
from strategy.execution_types import (
    BalanceSnapshot,
    CloseRequest,
    CloseResult,
    FetchResult,
    OrderRequest,
    OrderResult,
    PositionView,
    Side,
)
from strategy.fees import FeeService, compute_fee_impact
from strategy.live_positions import RealizedPnl, compute_positions_from_trades, compute_realized_pnl_avg_cost
from strategy.order_tracker import OrderTracker
from strategy.signals import SignalSnapshot


logger = logging.getLogger(__name__)

COLLATERAL_DECIMALS = 1e6


class LiveExecutor(OrderExecutor):
    """Real CLOB orders; positions are re-derived from venue trade history every tick."""

    mode = LIVE

    def __init__(
        self,
        config: TradingConfig,
        settings: LiveSettings,
        transport,
        trade_log: LiveTradeLog,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.settings = settings
        self.transport = transport
        self.trade_log = trade_log
        self._clock = clock or (lambda: time.time() * 1000.0)

        self.fees = FeeService(
            transport,
            cache_ttl_ms=settings.fee_cache_ttl_ms,
            alert_threshold_bps=settings.fee_alert_threshold_bps,
            clock=self._clock,
        )
        self.approvals = ApprovalService(transport, settings.approval_recheck_ms, clock=self._clock)
        self.orders = OrderTracker(transport, clock=self._clock)

        self._cached_trades: List[Dict[str, Any]] = []
        self._last_fetch_attempt_ms = 0.0
        self._last_fetch_success_ms = 0.0
        self._had_position_last_tick = False
        self._last_exit_attempt_ms: Dict[str, float] = {}
        self._background: Set[asyncio.Task] = set()

    async def initialize(self) -> None:
        self._spawn(self.approvals.run_startup_approvals())
        logger.info("Live executor initialized (host=%s)", self.settings.clob_host)

    async def open_position(self, request: OrderRequest) -> OrderResult:
        token_id = request.token_id
        if not token_id:
            logger.warning("No token id for %s on %s; skipping live entry", request.side.value, request.market_slug)
            return OrderResult.rejected()

        collateral = await self._collateral_usd()
        if not collateral.ok:
            return OrderResult.rejected()
        max_per = self.settings.max_per_trade_usd or request.size_usd
        usd = min(max_per, collateral.value, self.settings.max_open_exposure_usd or max_per)
        if not math.isfinite(usd) or usd <= 0:
            logger.warning("No spendable collateral for live entry (usd=%.2f)", usd)
            return OrderResult.rejected()

        price = request.price
        try:
            quote = await self.transport.fetch_price(token_id, 'buy')
            if quote is not None and quote > 0:
                price = quote
        except Exception as exc:
            self._log_transport_error('buy quote', exc)

        if price is None or not (self.settings.min_price <= price <= self.settings.max_price):
            logger.warning(
                "Order rejected: price %s outside [%s, %s]",
                price, self.settings.min_price, self.settings.max_price,
            )
            return OrderResult.rejected()

        min_shares = self.settings.min_order_shares
        size = max(min_shares, math.floor(usd / price))
        notional = size * price
        max_per_trade = self.settings.max_per_trade_usd
        if max_per_trade is not None and notional > max_per_trade:
            logger.warning("Order rejected: notional $%.2f > max per trade $%.2f", notional, max_per_trade)
            return OrderResult.rejected()

        fee_bps, fee_impact = await self._fee_estimate(token_id, notional, price)

        try:
            started = time.perf_counter()
            resp = await self.transport.place_limit_order(
                token_id, 'BUY', price, size, post_only=self.settings.post_only,
            )
            self._observe_send_latency(started)
        except Exception as exc:
            self._log_transport_error('open order', exc)
            self.trade_log.append(
                'OPEN_FAILED',
                marketSlug=request.market_slug,
                side=request.side.value,
                tokenID=token_id,
                error=str(exc),
            )
            return OrderResult.rejected()

        order_id = resp.get('orderID') or resp.get('orderId')
        self.orders.track(order_id, token_id, 'BUY', price, size,
                          market_slug=request.market_slug, phase=request.phase, type='OPEN')
        self.trade_log.append(
            'OPEN',
            marketSlug=request.market_slug,
            side=request.side.value,
            tokenID=token_id,
            price=price,
            size=size,
            usdNotional=notional,
            orderID=order_id,
            feeRateBps=fee_bps,
            feeImpact=fee_impact,
            resp=resp,
        )
        return OrderResult(
            filled=True,
            trade_id=token_id,
            fill_price=price,
            fill_shares=size,
            fill_size_usd=notional,
            order_id=order_id,
        )

    async def close_position(self, request: CloseRequest) -> CloseResult:
        token_id = request.token_id or request.position_id
        if not token_id:
            return CloseResult(closed=False, reason=request.reason)

        now = self._clock()
        last_attempt = self._last_exit_attempt_ms.get(token_id, 0.0)
        if now - last_attempt < self.settings.exit_cooldown_ms:
            return CloseResult(closed=False, reason='Exit cooldown')
        self._last_exit_attempt_ms[token_id] = now

        await self._refresh_trades(now)

        min_shares = self.settings.min_order_shares
        requested = max(min_shares, math.floor(request.shares))
        sellable = await self.approvals.get_sellable_qty(token_id)
        size = min(requested, sellable)
        if size < min_shares:
            status = self.approvals.conditional_status(token_id)
            self.trade_log.append(
                'EXIT_SELL_SKIPPED',
                tokenID=token_id,
                reason=request.reason,
                note=(
                    "Insufficient conditional balance/allowance "
                    f"(bal={status.balance if status else '?'}, allow={status.allowance if status else '?'})"
                ),
            )
            logger.warning("Exit for %s... skipped: sellable %s < %s", token_id[:12], size, min_shares)
            return CloseResult(closed=False, reason=request.reason)

        sell_price = None
        try:
            sell_price = await self.transport.fetch_price(token_id, 'sell')
        except Exception as exc:
            self._log_transport_error('sell quote', exc)
        if sell_price is None or sell_price <= 0:
            sell_price = self.settings.fallback_sell_price

        fee_bps, fee_impact = await self._fee_estimate(token_id, sell_price * size, sell_price)

        try:
            started = time.perf_counter()
            resp = await self.transport.place_limit_order(token_id, 'SELL', sell_price, size, post_only=False)
            self._observe_send_latency(started)
        except Exception as exc:
            self._log_transport_error('exit order', exc)
            self.trade_log.append(
                'EXIT_SELL_FAILED',
                tokenID=token_id,
                price=sell_price,
                size=size,
                reason=request.reason,
                error=str(exc),
            )
            return CloseResult(closed=False, reason=request.reason)

        order_id = resp.get('orderID') or resp.get('orderId')
        self.orders.track(order_id, token_id, 'SELL', sell_price, size, reason=request.reason, type='EXIT_SELL')
        self.trade_log.append(
            'EXIT_SELL',
            tokenID=token_id,
            price=sell_price,
            size=size,
            reason=request.reason,
            feeRateBps=fee_bps,
            feeImpact=fee_impact,
            resp=resp,
        )
        self._last_exit_attempt_ms.pop(token_id, None)
        # Realized PnL comes from trade history, not from the order ack.
        return CloseResult(closed=True, exit_price=sell_price, pnl=0.0, reason=request.reason)

    async def get_open_positions(self, signals: SignalSnapshot) -> FetchResult[List[PositionView]]:
        now = self._clock()
        if self._had_position_last_tick:
            interval = self.settings.trades_refresh_in_position_ms
        else:
            interval = self.settings.trades_refresh_flat_ms
        if now - self._last_fetch_attempt_ms >= interval:
            self._last_fetch_attempt_ms = now
            refreshed = await self._refresh_trades(now)
            if not refreshed.ok and self._last_fetch_success_ms == 0:
                return FetchResult(error=refreshed.error)

        raw = compute_positions_from_trades(self._cached_trades)
        self._had_position_last_tick = bool(raw)

        for pos in raw:
            self._spawn(self.approvals.check_and_approve_conditional(pos.token_id))

        slug = signals.market_slug or 'unknown'
        views = []
        for pos in raw:
            entry = pos.avg_entry
            side = Side.DOWN if str(pos.outcome or '').upper() == 'DOWN' else Side.UP
            views.append(PositionView(
                id=pos.token_id,
                side=side,
                market_slug=slug,
                entry_price=entry,
                shares=pos.qty,
                contract_size=entry * pos.qty if entry is not None else 0.0,
                last_trade_time_s=pos.last_trade_time,
                token_id=pos.token_id,
            ))
        return FetchResult.success(views)

    async def mark_positions(
        self, positions: List[PositionView], signals: SignalSnapshot
    ) -> FetchResult[List[PositionView]]:
        for position in positions:
            try:
                mark = await self.transport.fetch_price(position.token_id or position.id, 'sell')
            except Exception as exc:
                self._log_transport_error('mark quote', exc)
                continue
            if mark is None:
                position.tradable = False
                continue
            position.mark = mark
            if position.entry_price is None:
                # No buys in the history for this token, so no cost basis to mark against.
                position.unrealized_pnl = None
                continue
            position.unrealized_pnl = (mark - position.entry_price) * position.shares
        return FetchResult.success(positions)

    async def get_balance(self) -> FetchResult[BalanceSnapshot]:
        collateral = await self._collateral_usd()
        if not collateral.ok:
            return FetchResult(error=collateral.error)
        balance = collateral.value
        return FetchResult.success(BalanceSnapshot(balance=balance, starting=balance, realized=0.0))

    async def cancel_all_orders(self) -> int:
        return await self.orders.cancel_all()

    async def reconcile_orders(self) -> None:
        report = await self.orders.reconcile_pending(self.settings.order_reconcile_interval_ms)
        if report.filled or report.cancelled:
            logger.info("Order reconcile: filled=%s cancelled=%s", report.filled, report.cancelled)
        self.orders.prune_old()

    def realized_pnl(self) -> RealizedPnl:
        return compute_realized_pnl_avg_cost(self._cached_trades)

    def status(self) -> Dict[str, Any]:
        return {
            'fees': self.fees.snapshot(),
            'approvals': self.approvals.status(),
            'orders': self.orders.snapshot(),
            'cachedTrades': len(self._cached_trades),
        }

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.transport.close()

    async def _collateral_usd(self) -> FetchResult[float]:
        try:
            ba = await self.transport.fetch_balance_allowance()
        except Exception as exc:
            self._log_transport_error('collateral balance', exc)
            return FetchResult.failure('collateral balance', exc)
        return FetchResult.success(ba.balance / COLLATERAL_DECIMALS)

    async def _refresh_trades(self, now: float) -> FetchResult[int]:
        try:
            self._cached_trades = await self.transport.fetch_trades()
        except Exception as exc:
            self._log_transport_error('trade history', exc)
            return FetchResult.failure('trade history', exc)
        self._last_fetch_success_ms = now
        return FetchResult.success(len(self._cached_trades))

    async def _fee_estimate(self, token_id: str, notional: float, price: float):
        bps = await self.fees.get_fee_rate_bps(token_id)
        if bps is None:
            return None, None
        impact = compute_fee_impact(notional, price, bps)
        logger.info(
            "Fee: %s bps (%.2f%%) | est. $%.4f on $%.2f notional",
            bps, bps / 100, impact.fee_usd, notional,
        )
        return bps, impact.as_dict()

    def _observe_send_latency(self, started: float) -> None:
        metrics.record_order_send_latency(time.perf_counter() - started)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
