"""Entry eligibility rules.

``compute_entry_blockers`` returns every reason a new position may not be
opened this tick. An empty blocker list means the entry is allowed. Only a
missing recommendation under strict gating and an unresolvable side stop the
evaluation early; every other rule is checked and reported.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from config.trading_config import TradingConfig
from strategy.execution_types import Phase, Side
from strategy.signals import SignalSnapshot

PACIFIC = ZoneInfo('America/Los_Angeles')
_WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')


class CircuitBreakerStatusLike(Protocol):
    tripped: bool
    remaining_ms: float


class EntryStateView(Protocol):
    last_loss_at_ms: Optional[float]
    last_win_at_ms: Optional[float]
    skip_market_until_next_slug: Optional[str]
    has_open_position: bool
    today_realized_pnl: float

    def check_circuit_breaker(
        self, max_losses: int, cooldown_ms: float, now_ms: Optional[float] = None,
    ) -> CircuitBreakerStatusLike:
        ...


@dataclass
class PacificTimeInfo:
    weekday: str
    hour: int

    @property
    def is_weekend(self) -> bool:
        return self.weekday in ('Sat', 'Sun')


@dataclass
class EntryDecision:
    blockers: List[str] = field(default_factory=list)
    effective_side: Optional[Side] = None
    side_inferred: bool = False

    @property
    def eligible(self) -> bool:
        return not self.blockers


def pacific_time_info(now_ms: Optional[float] = None) -> PacificTimeInfo:
    now_ms = time.time() * 1000.0 if now_ms is None else now_ms
    local = datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).astimezone(PACIFIC)
    return PacificTimeInfo(weekday=_WEEKDAYS[local.weekday()], hour=local.hour)


def compute_effective_thresholds(
    cfg: TradingConfig,
    is_weekend: bool,
    phase: Optional[str],
    side_inferred: bool,
    strict_rec: bool,
) -> Tuple[float, float]:
    """Phase base (min probability, edge) plus any additive boosts."""
    if phase == Phase.EARLY.value:
        min_prob, edge = cfg.min_prob_early, cfg.edge_early
    elif phase == Phase.MID.value:
        min_prob, edge = cfg.min_prob_mid, cfg.edge_mid
    else:
        min_prob, edge = cfg.min_prob_late, cfg.edge_late

    if cfg.weekend_tightening_enabled and is_weekend:
        min_prob += cfg.weekend_prob_boost
        edge += cfg.weekend_edge_boost
    if phase == Phase.MID.value:
        min_prob += cfg.mid_prob_boost
        edge += cfg.mid_edge_boost
    if not strict_rec and side_inferred:
        min_prob += cfg.inferred_prob_boost
        edge += cfg.inferred_edge_boost
    return min_prob, edge


def _fmt(value: float) -> str:
    return f"{round(value, 6):g}"


def _cents(price: float) -> str:
    return f"{price * 100:.2f}"


def compute_entry_blockers(
    signals: SignalSnapshot,
    cfg: TradingConfig,
    state: EntryStateView,
    candle_count: int,
    now_ms: Optional[float] = None,
) -> EntryDecision:
    now_ms = time.time() * 1000.0 if now_ms is None else now_ms
    decision = EntryDecision()
    blockers = decision.blockers

    rec = signals.rec
    strict = cfg.strict_rec
    action = rec.action if rec else None
    if action != 'ENTER':
        blockers.append(f"Rec={action or 'NONE'} ({'strict' if strict else 'loose'})")
        if strict:
            return decision

    side = rec.side if rec else None
    if side is None and not strict:
        if signals.model_up is not None and signals.model_down is not None:
            side = Side.UP if signals.model_up >= signals.model_down else Side.DOWN
            decision.side_inferred = True
    if side is None:
        blockers.append('Missing side')
        return decision
    decision.effective_side = side

    prices = {s: signals.effective_price(s) for s in Side}
    price = prices[side]
    if price is None:
        blockers.append('Missing Polymarket price')
        return decision
    if prices[Side.UP] is None or prices[Side.DOWN] is None:
        blockers.append(
            'Market data sanity: invalid Polymarket prices (gamma 0/NaN and no valid orderbook quotes)'
        )

    time_left = signals.time_left_minutes(now_ms)
    if time_left is not None and time_left < cfg.no_entry_final_minutes:
        blockers.append(f"Too late (<{_fmt(cfg.no_entry_final_minutes)}m to settlement)")

    if candle_count < cfg.min_candles_for_entry:
        blockers.append(f"Warmup: candles {candle_count}/{cfg.min_candles_for_entry}")

    if not signals.indicators.ready:
        blockers.append('Indicators not ready')

    _check_cooldowns(cfg, state, now_ms, blockers)

    slug = signals.market_slug
    if (
        cfg.skip_market_after_max_loss
        and slug
        and state.skip_market_until_next_slug == slug
    ):
        blockers.append('Skip market after Max Loss (wait for next 5m)')

    if state.has_open_position:
        blockers.append('Trade already open')

    clock = pacific_time_info(now_ms)
    if cfg.weekdays_only and _outside_schedule(cfg, clock):
        blockers.append('Outside schedule (weekdays only / Friday cutoff)')

    tightened = cfg.weekend_tightening_enabled and clock.is_weekend
    _check_market_quality(signals, cfg, tightened, blockers)
    _check_model_and_momentum(signals, cfg, tightened, blockers)
    _check_prices(cfg, side, price, prices, signals, blockers)

    if rec is not None and rec.phase and rec.side is not None:
        min_prob, edge_threshold = compute_effective_thresholds(
            cfg, clock.is_weekend, rec.phase, decision.side_inferred, strict,
        )
        model_prob = signals.model_prob(side)
        edge = rec.edge or 0.0
        if model_prob is not None and model_prob < min_prob:
            blockers.append(f"Prob {model_prob:.3f} < {_fmt(min_prob)}")
        if edge < edge_threshold:
            blockers.append(f"Edge {edge:.3f} < {_fmt(edge_threshold)}")

    max_losses = cfg.circuit_breaker_consecutive_losses
    if max_losses > 0:
        status = state.check_circuit_breaker(max_losses, cfg.circuit_breaker_cooldown_ms, now_ms=now_ms)
        if status.tripped:
            blockers.append(
                f"Circuit breaker ({max_losses} losses, {status.remaining_ms / 1000:.0f}s left)"
            )

    max_daily = cfg.max_daily_loss_usd
    if max_daily is not None and max_daily > 0 and state.today_realized_pnl <= -abs(max_daily):
        blockers.append(
            f"Daily loss kill-switch hit (${state.today_realized_pnl:.2f} <= -${abs(max_daily):.2f})"
        )

    return decision


def _check_cooldowns(cfg: TradingConfig, state: EntryStateView, now_ms: float, blockers: List[str]) -> None:
    loss_s = cfg.loss_cooldown_seconds
    if loss_s > 0 and state.last_loss_at_ms and now_ms - state.last_loss_at_ms < loss_s * 1000:
        blockers.append(f"Loss cooldown ({_fmt(loss_s)}s)")
    win_s = cfg.win_cooldown_seconds
    if win_s > 0 and state.last_win_at_ms and now_ms - state.last_win_at_ms < win_s * 1000:
        blockers.append(f"Win cooldown ({_fmt(win_s)}s)")


def _outside_schedule(cfg: TradingConfig, clock: PacificTimeInfo) -> bool:
    sunday_hour = cfg.allow_sunday_after_hour
    sunday_allowed = (
        clock.weekday == 'Sun'
        and sunday_hour is not None
        and sunday_hour >= 0
        and clock.hour >= sunday_hour
    )
    friday_hour = cfg.no_entry_after_friday_hour
    friday_cutoff = (
        clock.weekday == 'Fri'
        and friday_hour is not None
        and friday_hour >= 0
        and clock.hour >= friday_hour
    )
    return (clock.is_weekend and not sunday_allowed) or friday_cutoff


def _check_market_quality(
    signals: SignalSnapshot, cfg: TradingConfig, tightened: bool, blockers: List[str],
) -> None:
    market = signals.market
    min_liquidity = cfg.min_liquidity
    if tightened and cfg.weekend_min_liquidity is not None:
        min_liquidity = cfg.weekend_min_liquidity
    liquidity = market.liquidity_num if market else None
    if liquidity is None or liquidity <= 0:
        blockers.append('Market data sanity: liquidity missing/0')
    elif liquidity < min_liquidity:
        blockers.append(f"Low liquidity (<{_fmt(min_liquidity)})")

    max_spread = cfg.max_spread
    if tightened and cfg.weekend_max_spread is not None:
        max_spread = cfg.weekend_max_spread
    if max_spread is not None:
        spreads = [signals.book(s).spread for s in Side]
        if any(spread is not None and spread > max_spread for spread in spreads):
            blockers.append('High spread')

    volume = market.volume_num if market else None
    if cfg.min_market_volume_num > 0 and volume is not None and volume < cfg.min_market_volume_num:
        blockers.append(f"Low market volume (<{_fmt(cfg.min_market_volume_num)})")

    recent = signals.indicators.volume_recent
    average = signals.indicators.volume_avg
    low_absolute = cfg.min_volume_recent > 0 and recent is not None and recent < cfg.min_volume_recent
    low_relative = (
        cfg.min_volume_ratio > 0
        and recent is not None
        and average is not None
        and recent < average * cfg.min_volume_ratio
    )
    if low_absolute or low_relative:
        blockers.append('Low volume')


def _check_model_and_momentum(
    signals: SignalSnapshot, cfg: TradingConfig, tightened: bool, blockers: List[str],
) -> None:
    min_conviction = cfg.min_model_max_prob
    if tightened and cfg.weekend_min_model_max_prob is not None:
        min_conviction = cfg.weekend_min_model_max_prob
    if min_conviction > 0 and signals.model_up is not None and signals.model_down is not None:
        best = max(signals.model_up, signals.model_down)
        if best < min_conviction:
            blockers.append(
                f"Low conviction (maxProb {best * 100:.1f}% < {min_conviction * 100:.1f}%)"
            )

    min_range = cfg.min_range_pct20
    if tightened and cfg.weekend_min_range_pct20 is not None:
        min_range = cfg.weekend_min_range_pct20
    range20 = signals.indicators.range_pct20
    if range20 is not None and min_range > 0 and range20 < min_range:
        blockers.append(f"Choppy (range20 {range20 * 100:.2f}% < {min_range * 100:.2f}%)")

    min_impulse = cfg.min_btc_impulse_pct_1m
    if min_impulse > 0:
        delta = signals.spot_delta_1m_pct
        if delta is None:
            blockers.append('Spot impulse unavailable')
        elif abs(delta) < min_impulse:
            blockers.append(
                f"Low impulse (spot1m {delta * 100:.3f}% < {min_impulse * 100:.3f}%)"
            )

    rsi = signals.indicators.rsi_now
    rsi_min, rsi_max = cfg.no_trade_rsi_min, cfg.no_trade_rsi_max
    if rsi is not None and rsi_min is not None and rsi_max is not None and rsi_min <= rsi < rsi_max:
        blockers.append(
            f"RSI in no-trade band ({rsi:.1f} in [{_fmt(rsi_min)},{_fmt(rsi_max)}))"
        )


def _check_prices(
    cfg: TradingConfig,
    side: Side,
    price: float,
    prices,
    signals: SignalSnapshot,
    blockers: List[str],
) -> None:
    if price < cfg.min_poly_price or price > cfg.max_poly_price:
        blockers.append(f"Poly price out of bounds ({_cents(price)}¢)")

    cap = cfg.max_entry_poly_price
    if cap is not None and price > cap:
        blockers.append(f"Entry price too high ({_cents(price)}¢ > {_cents(cap)}¢)")

    min_opposite = cfg.min_opposite_poly_price
    if min_opposite > 0:
        opposite = side.opposite
        opposite_price = prices.get(opposite)
        if opposite_price is None:
            opposite_price = signals.poly_prices.get(opposite)
        if opposite_price is not None and opposite_price < min_opposite:
            blockers.append(
                f"Opposite price too low ({opposite.value} {_cents(opposite_price)}¢ < {_cents(min_opposite)}¢)"
            )
