import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from api.alerts import AlertWebhook, alert_webhook
from api.metrics import metrics
from config.trading_config import TradingConfig
from monitoring.decision_auditor import DecisionAuditor
from orchestration.trading_state import EntryStatus, TradingState
from risk.position_sizer import compute_trade_size
from strategy.entry_gate import compute_entry_blockers
from strategy.execution import OrderExecutor
from strategy.execution_types import CloseRequest, GraceAction, OrderRequest, Phase, PositionView
from strategy.exit_evaluator import evaluate_exits
from strategy.signals import SignalSnapshot, pick_token_id


logger = logging.getLogger(__name__)

DAILY_LOSS_BLOCKER = 'Daily loss kill-switch'


@dataclass
class TickReport:
    mode: str
    actions: List[Dict[str, Any]] = field(default_factory=list)
    entry_status: Optional[EntryStatus] = None


class TradingEngine:
    """Runs one decision tick: exits for every open position first, then at most one entry."""

    def __init__(
        self,
        executor: OrderExecutor,
        config: TradingConfig,
        state: Optional[TradingState] = None,
        auditor: Optional[DecisionAuditor] = None,
        alerts: Optional[AlertWebhook] = None,
    ):
        self.executor = executor
        self.config = config
        self.state = state or TradingState()
        self.auditor = auditor
        self.alerts = alerts or alert_webhook
        self.trading_enabled = False
        self.entries_blocked: Optional[str] = None
        self._daily_loss_alerted = False

    @property
    def mode(self) -> str:
        return self.executor.get_mode()

    @property
    def last_entry_status(self) -> EntryStatus:
        return self.state.last_entry_status

    async def initialize(self) -> None:
        await self.executor.initialize()

    def enable(self) -> None:
        self.trading_enabled = True
        self.entries_blocked = None
        metrics.update_trading_enabled(True)
        logger.info("[%s] Trading enabled", self.mode)

    def disable(self, reason: str = 'manual') -> None:
        self.trading_enabled = False
        metrics.update_trading_enabled(False)
        logger.warning("[%s] Trading disabled (%s)", self.mode, reason)

    async def trigger_kill_switch(self, reason: str) -> int:
        """Stops entries from the next tick on and cancels resting venue orders.

        Open positions keep being exit-managed; ``enable`` lifts the block.
        """
        self.entries_blocked = reason
        metrics.update_trading_enabled(False)
        logger.warning("[%s] Kill switch: entries blocked (%s)", self.mode, reason)
        metrics.record_kill_switch(reason)
        cancelled = await self.executor.cancel_all_orders()
        await self.alerts.kill_switch_alert(reason)
        return cancelled

    async def process_signals(self, signals: SignalSnapshot, candle_count: Optional[int] = None) -> TickReport:
        started = time.perf_counter()
        report = TickReport(mode=self.mode)
        try:
            await self._run_tick(signals, candle_count, report)
        finally:
            report.entry_status = self.state.last_entry_status
            metrics.record_tick(report.mode, time.perf_counter() - started)
            metrics.update_daily_pnl(self.state.today_realized_pnl)
            if self.auditor is not None:
                self.auditor.record_tick(
                    report.mode,
                    signals.market_slug,
                    report.entry_status.as_dict(),
                    report.actions,
                    {
                        'modelUp': signals.model_up,
                        'modelDown': signals.model_down,
                        'rec': signals.rec.action if signals.rec else None,
                        'timeLeftMin': signals.time_left_min,
                    },
                )
        return report

    async def _run_tick(self, signals: SignalSnapshot, candle_count: Optional[int], report: TickReport) -> None:
        mode = report.mode
        rec = signals.rec
        logger.info(
            "%s engine: rec=%s, side=%s, timeLeft=%s",
            mode,
            (rec.action if rec else None) or 'NONE',
            rec.side.value if rec and rec.side else '-',
            f"{signals.time_left_min:.1f}m" if signals.time_left_min is not None else '-',
        )

        if self.state.reset_day_if_needed():
            self._daily_loss_alerted = False

        if not self.trading_enabled:
            self.state.set_entry_status(False, ['Trading disabled'])
            return

        fetched = await self.executor.get_open_positions(signals)
        if not fetched.ok:
            logger.error("[%s engine] Error fetching positions: %s", mode, fetched.error.message)
            return
        positions = fetched.value or []

        if positions:
            marked = await self.executor.mark_positions(positions, signals)
            if marked.ok:
                positions = marked.value
            else:
                # Rollover and pre-settlement exits do not need a mark.
                logger.error("[%s engine] Error marking positions: %s", mode, marked.error.message)

        self._track_excursions(positions)
        self.state.has_open_position = bool(positions)

        now_ms = self.state.now_ms()
        for position in positions:
            await self._evaluate_exit(position, signals, now_ms, report)

        refetched = await self.executor.get_open_positions(signals)
        if refetched.ok:
            positions = refetched.value or []
        metrics.update_open_positions(mode, len(positions))
        if self.entries_blocked is not None:
            self.state.has_open_position = bool(positions)
            self.state.set_entry_status(False, [f"Kill switch ({self.entries_blocked})"])
            return
        if positions:
            self.state.has_open_position = True
            self.state.set_entry_status(False, [f"Position open: {len(positions)}"])
            return
        self.state.has_open_position = False

        await self._evaluate_entry(signals, candle_count, now_ms, report)

    def _track_excursions(self, positions: List[PositionView]) -> None:
        for position in positions:
            if position.unrealized_pnl is None:
                continue
            key = position.key
            self.state.track_mfe(key, position.unrealized_pnl)
            self.state.track_mae(key, position.unrealized_pnl)
            position.max_unrealized_pnl = self.state.get_max_unrealized(key)
            position.min_unrealized_pnl = self.state.get_min_unrealized(key)

    async def _evaluate_exit(self, position: PositionView, signals: SignalSnapshot, now_ms: float, report: TickReport) -> None:
        key = position.key
        result = evaluate_exits(position, signals, self.config, self.state.get_grace_state(key), now_ms=now_ms)

        if result.grace_action is GraceAction.START_GRACE:
            self.state.start_grace(key)
            metrics.record_grace_start()
            logger.warning(
                "[%s] Max loss breached on %s (PnL %.2f); grace window started",
                self.mode, key, result.pnl_now or 0.0,
            )
        elif result.grace_action is GraceAction.CLEAR_GRACE:
            self.state.clear_grace(key)
            logger.info("[%s] PnL recovered on %s; grace cleared", self.mode, key)

        if result.decision is None:
            return

        reason = result.decision.reason
        closed = await self.executor.close_position(CloseRequest(
            position_id=position.id,
            side=position.side,
            shares=position.shares,
            reason=reason,
            token_id=position.token_id,
        ))
        if not closed.closed:
            logger.info("[%s] Exit '%s' on %s not completed (%s)", self.mode, reason, key, closed.reason)
            report.actions.append({'action': 'EXIT_PENDING', 'position': key, 'reason': closed.reason or reason})
            return

        final_reason = closed.reason or reason
        self.state.record_exit(
            closed.pnl,
            position.market_slug,
            final_reason,
            self.config.skip_market_after_max_loss,
        )
        self.state.clear_position(key)
        metrics.record_exit(self.mode, final_reason)
        logger.info(
            "[%s] CLOSED: %s | PnL: $%.2f | %s",
            self.mode, position.side.value, closed.pnl, final_reason,
        )
        report.actions.append({
            'action': 'EXIT',
            'position': key,
            'side': position.side.value,
            'reason': final_reason,
            'exitPrice': closed.exit_price,
            'pnl': closed.pnl,
        })

    async def _evaluate_entry(
        self,
        signals: SignalSnapshot,
        candle_count: Optional[int],
        now_ms: float,
        report: TickReport,
    ) -> None:
        mode = report.mode
        if candle_count is None:
            candle_count = signals.candle_count
        tripped_before = self.state.circuit_breaker_tripped_at_ms

        decision = compute_entry_blockers(signals, self.config, self.state, candle_count, now_ms=now_ms)
        self.state.set_entry_status(decision.eligible, decision.blockers)

        if tripped_before is None and self.state.circuit_breaker_tripped_at_ms is not None:
            metrics.record_circuit_breaker_trip()
            await self.alerts.circuit_breaker_alert(
                self.config.circuit_breaker_consecutive_losses,
                self.config.circuit_breaker_cooldown_ms,
            )
        if not self._daily_loss_alerted and any(b.startswith(DAILY_LOSS_BLOCKER) for b in decision.blockers):
            self._daily_loss_alerted = True
            await self.alerts.daily_loss_alert(self.state.today_realized_pnl, abs(self.config.max_daily_loss_usd or 0.0))

        if decision.blockers:
            metrics.record_blocked(decision.blockers)
            logger.debug("[%s] Entry blocked: %s", mode, '; '.join(decision.blockers))
            return

        balance = await self.executor.get_balance()
        if not balance.ok:
            logger.error("[%s engine] Error fetching balance: %s", mode, balance.error.message)
            return
        snapshot = balance.value
        metrics.update_balance(snapshot.balance)

        size_usd = compute_trade_size(snapshot.balance, self.config)
        if size_usd <= 0:
            logger.warning("[%s engine] Computed trade size is 0; skipping entry.", mode)
            return

        side = decision.effective_side
        entry_price = signals.entry_price(side)
        if entry_price is None:
            logger.warning("[%s engine] No valid entry price for %s; skipping.", mode, side.value)
            return

        rec = signals.rec
        indicators = signals.indicators
        request = OrderRequest(
            side=side,
            market_slug=signals.market_slug or 'unknown',
            size_usd=size_usd,
            price=entry_price,
            phase=(rec.phase if rec and rec.phase else Phase.MID.value),
            side_inferred=decision.side_inferred,
            token_id=pick_token_id(signals.trading_market, side),
            metadata={
                'modelUp': signals.model_up,
                'modelDown': signals.model_down,
                'edge': rec.edge if rec else None,
                'rsi': indicators.rsi_now,
                'vwapSlope': indicators.vwap_slope,
            },
        )
        result = await self.executor.open_position(request)
        if not result.filled:
            metrics.record_entry_rejected(mode)
            logger.info("[%s] Entry %s not filled", mode, side.value)
            report.actions.append({'action': 'ENTRY_REJECTED', 'side': side.value, 'sizeUsd': size_usd})
            return

        metrics.record_entry(mode, side.value)
        logger.info(
            "[%s] OPENED: %s @ %.2f¢ | $%.2f (%.0f shares) | balance ~$%.2f",
            mode,
            side.value,
            result.fill_price * 100,
            result.fill_size_usd,
            result.fill_shares,
            snapshot.balance,
        )
        report.actions.append({
            'action': 'ENTRY',
            'side': side.value,
            'inferred': decision.side_inferred,
            'price': result.fill_price,
            'shares': result.fill_shares,
            'sizeUsd': result.fill_size_usd,
            'tradeId': result.trade_id,
        })
