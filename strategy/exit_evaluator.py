"""Exit rules for one open position.

Rules run in priority order and the first match wins:

1. market rollover
2. pre-settlement exit
3. max loss, with an optional one-shot grace window
4. absolute take-profit price
5. trailing take-profit
6. immediate take-profit (only when trailing is off)
7. time stop for losers
8. stop loss confirmed by a model flip

``evaluate_exits`` does no I/O and never mutates its arguments; the caller
applies the returned grace action to its session state.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from config.trading_config import TradingConfig
from risk.position_sizer import compute_max_loss_usd
from strategy.execution_types import GraceAction, GraceState, PositionView, Side
from strategy.signals import SignalSnapshot

MODEL_SUPPORT_MIN_PROB = 0.55
GRACE_SETTLEMENT_BUFFER_MIN = 0.25


@dataclass(frozen=True)
class ExitDecision:
    reason: str


@dataclass
class ExitResult:
    decision: Optional[ExitDecision] = None
    grace_action: Optional[GraceAction] = None
    pnl_now: Optional[float] = None
    opposing_more_likely: bool = False


def _trade_age_seconds(position: PositionView, now_ms: float) -> Optional[float]:
    if position.entry_time_ms is not None and position.entry_time_ms > 0:
        return (now_ms - position.entry_time_ms) / 1000.0
    if position.last_trade_time_s is not None and position.last_trade_time_s > 0:
        return float(int(now_ms // 1000) - position.last_trade_time_s)
    return None


def evaluate_exits(
    position: Optional[PositionView],
    signals: SignalSnapshot,
    cfg: TradingConfig,
    grace: Optional[GraceState] = None,
    now_ms: Optional[float] = None,
) -> ExitResult:
    now_ms = time.time() * 1000.0 if now_ms is None else now_ms
    result = ExitResult()
    if position is None:
        return result

    grace = grace or GraceState()
    pnl = position.unrealized_pnl
    result.pnl_now = pnl
    age_s = _trade_age_seconds(position, now_ms)
    time_left = signals.time_left_minutes(now_ms)
    exit_before = cfg.exit_before_end_minutes

    up, down = signals.model_up, signals.model_down
    side_prob = signals.model_prob(position.side)
    opp_prob = signals.model_prob(position.side.opposite)

    hold_ok = age_s is None or age_s >= cfg.exit_flip_min_hold_seconds
    if hold_ok and up is not None and down is not None:
        if position.side is Side.UP:
            result.opposing_more_likely = down >= cfg.exit_flip_min_prob and down >= up + cfg.exit_flip_margin
        else:
            result.opposing_more_likely = up >= cfg.exit_flip_min_prob and up >= down + cfg.exit_flip_margin

    stop_loss_hit = False
    if pnl is not None and position.contract_size > 0:
        stop_loss_hit = pnl <= -abs(position.contract_size * cfg.stop_loss_pct)

    liquidity = signals.market.liquidity_num if signals.market else None
    low_liquidity = cfg.min_liquidity > 0 and not (liquidity is not None and liquidity >= cfg.min_liquidity)

    current_slug = signals.market_slug
    if position.market_slug and current_slug and position.market_slug != current_slug:
        result.decision = ExitDecision('Market Rollover')
        return result

    if time_left is not None and time_left < exit_before:
        result.decision = ExitDecision('Pre-settlement Exit')
        return result

    max_loss = compute_max_loss_usd(position.contract_size, cfg)
    if pnl is not None and max_loss is not None and max_loss > 0:
        max_loss_abs = abs(max_loss)
        max_loss_exit = ExitDecision(f"Max Loss (${max_loss_abs:.2f})")
        breached = pnl <= -max_loss_abs

        model_supports = (
            side_prob is not None
            and opp_prob is not None
            and side_prob >= MODEL_SUPPORT_MIN_PROB
            and side_prob >= opp_prob
        )
        grace_allowed = (
            cfg.max_loss_grace_enabled
            and cfg.max_loss_grace_seconds > 0
            and (time_left is None or time_left >= exit_before + GRACE_SETTLEMENT_BUFFER_MIN)
            and not low_liquidity
            and (not cfg.max_loss_grace_require_model_support or model_supports)
        )
        recover_usd = cfg.max_loss_recover_usd
        if recover_usd is not None and recover_usd > 0:
            recover_threshold = -abs(recover_usd)
        else:
            recover_threshold = -max_loss_abs + 1

        if grace.breach_at_ms and pnl > recover_threshold:
            result.grace_action = GraceAction.CLEAR_GRACE

        if breached:
            if not grace_allowed:
                result.decision = max_loss_exit
                return result
            if grace.breach_at_ms:
                if now_ms - grace.breach_at_ms >= cfg.max_loss_grace_seconds * 1000:
                    result.decision = max_loss_exit
                    return result
            elif grace.used:
                result.decision = max_loss_exit
                return result
            else:
                result.grace_action = GraceAction.START_GRACE

    mark = position.mark
    tp_price = cfg.take_profit_price
    if tp_price is not None and mark is not None and mark >= tp_price:
        result.decision = ExitDecision(f"Take Profit (mark >= {tp_price * 100:.0f}¢)")
        return result

    if pnl is not None and cfg.trailing_take_profit_enabled:
        start, drawdown = cfg.trailing_start_usd, cfg.trailing_drawdown_usd
        peak = position.max_unrealized_pnl
        if start > 0 and drawdown > 0 and peak is not None and peak >= start:
            if pnl <= peak - drawdown:
                result.decision = ExitDecision(f"Trailing TP (max ${peak:.2f}; dd ${drawdown:.2f})")
                return result

    if not cfg.trailing_take_profit_enabled and cfg.take_profit_immediate and pnl is not None:
        target = cfg.take_profit_pnl_usd
        if target >= 0 and pnl >= target:
            result.decision = ExitDecision('Take Profit')
            return result

    max_hold = cfg.loser_max_hold_seconds
    if pnl is not None and age_s is not None and max_hold > 0 and age_s >= max_hold and pnl <= 0:
        result.decision = ExitDecision('Time Stop')
        return result

    if cfg.stop_loss_enabled and stop_loss_hit and result.opposing_more_likely:
        result.decision = ExitDecision('Stop Loss')
        return result

    return result
