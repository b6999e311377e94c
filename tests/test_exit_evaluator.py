#!/usr/bin/env python
"""
Exit rule priority and the max-loss grace window
"""
import sys
sys.path.insert(0, '.')

from config.trading_config import TradingConfig
from orchestration.trading_state import TradingState
from strategy.execution_types import GraceAction, GraceState, PositionView, Side
from strategy.exit_evaluator import evaluate_exits
from fakes import NOW_MS, FakeClock, make_signals, signal_payload

SLUG = 'btc-updown-5m-1704909600'


def _position(**overrides):
    base = dict(
        id='t1',
        side=Side.UP,
        market_slug=SLUG,
        entry_price=0.5,
        shares=200.0,
        contract_size=100.0,
        mark=0.5,
        unrealized_pnl=0.0,
        entry_time_ms=NOW_MS - 30_000,
    )
    base.update(overrides)
    return PositionView(**base)


def _reason(result):
    return result.decision.reason if result.decision else None


def test_no_position_no_decision():
    result = evaluate_exits(None, make_signals(), TradingConfig(), now_ms=NOW_MS)
    assert result.decision is None
    assert result.grace_action is None


def test_flat_position_holds():
    result = evaluate_exits(_position(), make_signals(), TradingConfig(), now_ms=NOW_MS)
    assert result.decision is None


def test_market_rollover_wins_over_max_loss():
    cfg = TradingConfig(max_loss_usd_per_trade=15)
    position = _position(market_slug='btc-updown-5m-old', unrealized_pnl=-50.0)
    assert _reason(evaluate_exits(position, make_signals(), cfg, now_ms=NOW_MS)) == 'Market Rollover'


def test_pre_settlement_exit():
    signals = make_signals(minutes_left=0.4)
    assert _reason(evaluate_exits(_position(), signals, TradingConfig(), now_ms=NOW_MS)) == 'Pre-settlement Exit'


def test_max_loss_without_grace():
    cfg = TradingConfig(max_loss_usd_per_trade=15)
    result = evaluate_exits(_position(unrealized_pnl=-20.0), make_signals(), cfg, now_ms=NOW_MS)
    assert _reason(result) == 'Max Loss ($15.00)'


def test_dynamic_max_loss_label():
    cfg = TradingConfig(dynamic_stop_loss_enabled=True, dynamic_stop_loss_pct=0.2, min_max_loss_usd=8, max_max_loss_usd=40)
    result = evaluate_exits(_position(unrealized_pnl=-21.0), make_signals(), cfg, now_ms=NOW_MS)
    assert _reason(result) == 'Max Loss ($20.00)'


def _grace_cfg(**overrides):
    base = dict(max_loss_usd_per_trade=15, max_loss_grace_enabled=True, max_loss_grace_seconds=20)
    base.update(overrides)
    return TradingConfig(**base)


def test_grace_window_lifecycle():
    clock = FakeClock()
    state = TradingState(clock=clock)
    cfg = _grace_cfg()
    signals = make_signals()
    losing = _position(unrealized_pnl=-20.0)

    first = evaluate_exits(losing, signals, cfg, state.get_grace_state('t1'), now_ms=clock())
    assert first.decision is None
    assert first.grace_action is GraceAction.START_GRACE
    state.start_grace('t1')

    clock.advance(5)
    waiting = evaluate_exits(losing, signals, cfg, state.get_grace_state('t1'), now_ms=clock())
    assert waiting.decision is None
    assert waiting.grace_action is None

    clock.advance(16)
    expired = evaluate_exits(losing, signals, cfg, state.get_grace_state('t1'), now_ms=clock())
    assert _reason(expired) == 'Max Loss ($15.00)'


def test_grace_is_granted_once_per_position():
    clock = FakeClock()
    state = TradingState(clock=clock)
    cfg = _grace_cfg()
    signals = make_signals()
    state.start_grace('t1')

    recovered = evaluate_exits(_position(unrealized_pnl=-10.0), signals, cfg, state.get_grace_state('t1'), now_ms=clock())
    assert recovered.grace_action is GraceAction.CLEAR_GRACE
    assert recovered.decision is None
    state.clear_grace('t1')

    clock.advance(2)
    again = evaluate_exits(_position(unrealized_pnl=-20.0), signals, cfg, state.get_grace_state('t1'), now_ms=clock())
    assert _reason(again) == 'Max Loss ($15.00)'
    assert again.grace_action is None


def test_grace_denied_on_low_liquidity():
    cfg = _grace_cfg(min_liquidity=10000)
    result = evaluate_exits(_position(unrealized_pnl=-20.0), make_signals(), cfg, GraceState(), now_ms=NOW_MS)
    assert _reason(result) == 'Max Loss ($15.00)'


def test_grace_denied_near_settlement():
    cfg = _grace_cfg(exit_before_end_minutes=0.5)
    signals = make_signals(minutes_left=0.6)
    result = evaluate_exits(_position(unrealized_pnl=-20.0), signals, cfg, GraceState(), now_ms=NOW_MS)
    assert _reason(result) == 'Max Loss ($15.00)'


def test_grace_requires_model_support_when_configured():
    cfg = _grace_cfg(max_loss_grace_require_model_support=True)
    against = make_signals(modelUp=0.4, modelDown=0.6)
    assert _reason(evaluate_exits(_position(unrealized_pnl=-20.0), against, cfg, GraceState(), now_ms=NOW_MS)) == 'Max Loss ($15.00)'

    supportive = make_signals(modelUp=0.6, modelDown=0.4)
    result = evaluate_exits(_position(unrealized_pnl=-20.0), supportive, cfg, GraceState(), now_ms=NOW_MS)
    assert result.grace_action is GraceAction.START_GRACE


def test_take_profit_price():
    cfg = TradingConfig(take_profit_price=0.9)
    result = evaluate_exits(_position(mark=0.92, unrealized_pnl=84.0), make_signals(), cfg, now_ms=NOW_MS)
    assert _reason(result) == 'Take Profit (mark >= 90¢)'


def test_trailing_take_profit_suppresses_immediate():
    cfg = TradingConfig(
        trailing_take_profit_enabled=True,
        trailing_start_usd=20,
        trailing_drawdown_usd=10,
        take_profit_immediate=True,
        take_profit_pnl_usd=5,
    )
    holding = _position(unrealized_pnl=16.0, max_unrealized_pnl=25.0)
    assert evaluate_exits(holding, make_signals(), cfg, now_ms=NOW_MS).decision is None

    given_back = _position(unrealized_pnl=14.0, max_unrealized_pnl=25.0)
    assert _reason(evaluate_exits(given_back, make_signals(), cfg, now_ms=NOW_MS)) == 'Trailing TP (max $25.00; dd $10.00)'


def test_immediate_take_profit():
    cfg = TradingConfig(take_profit_immediate=True, take_profit_pnl_usd=10)
    assert _reason(evaluate_exits(_position(unrealized_pnl=12.0), make_signals(), cfg, now_ms=NOW_MS)) == 'Take Profit'
    assert evaluate_exits(_position(unrealized_pnl=9.0), make_signals(), cfg, now_ms=NOW_MS).decision is None


def test_time_stop_for_losers_only():
    cfg = TradingConfig(loser_max_hold_seconds=60)
    old = NOW_MS - 90_000
    assert _reason(evaluate_exits(_position(unrealized_pnl=-1.0, entry_time_ms=old), make_signals(), cfg, now_ms=NOW_MS)) == 'Time Stop'
    assert _reason(evaluate_exits(_position(unrealized_pnl=0.0, entry_time_ms=old), make_signals(), cfg, now_ms=NOW_MS)) == 'Time Stop'
    assert evaluate_exits(_position(unrealized_pnl=1.0, entry_time_ms=old), make_signals(), cfg, now_ms=NOW_MS).decision is None
    assert evaluate_exits(_position(unrealized_pnl=-1.0), make_signals(), cfg, now_ms=NOW_MS).decision is None


def test_time_stop_uses_last_trade_time_for_live_positions():
    cfg = TradingConfig(loser_max_hold_seconds=60)
    position = _position(unrealized_pnl=-1.0, entry_time_ms=None, last_trade_time_s=NOW_MS / 1000 - 120)
    assert _reason(evaluate_exits(position, make_signals(), cfg, now_ms=NOW_MS)) == 'Time Stop'


def test_time_stop_prefers_entry_time_over_last_trade_time():
    cfg = TradingConfig(loser_max_hold_seconds=60)
    position = _position(unrealized_pnl=-1.0, entry_time_ms=NOW_MS - 10_000, last_trade_time_s=NOW_MS / 1000 - 120)
    assert evaluate_exits(position, make_signals(), cfg, now_ms=NOW_MS).decision is None


def test_stop_loss_needs_model_flip():
    cfg = TradingConfig(stop_loss_enabled=True, stop_loss_pct=0.2, exit_flip_min_prob=0.55, exit_flip_margin=0.03)
    losing = _position(unrealized_pnl=-25.0)

    flipped = evaluate_exits(losing, make_signals(modelUp=0.3, modelDown=0.7), cfg, now_ms=NOW_MS)
    assert flipped.opposing_more_likely
    assert _reason(flipped) == 'Stop Loss'

    assert evaluate_exits(losing, make_signals(), cfg, now_ms=NOW_MS).decision is None


def test_missing_mark_only_time_based_rules_fire():
    cfg = TradingConfig(max_loss_usd_per_trade=15, take_profit_immediate=True, take_profit_pnl_usd=0)
    unmarked = _position(mark=None, unrealized_pnl=None)
    assert evaluate_exits(unmarked, make_signals(), cfg, now_ms=NOW_MS).decision is None

    payload = signal_payload()
    payload['market']['slug'] = 'btc-updown-5m-next'
    assert _reason(evaluate_exits(unmarked, make_signals(market=payload['market']), cfg, now_ms=NOW_MS)) == 'Market Rollover'


def test_evaluation_is_pure():
    cfg = _grace_cfg()
    position = _position(unrealized_pnl=-20.0)
    grace = GraceState()
    before = position.as_dict()
    first = evaluate_exits(position, make_signals(), cfg, grace, now_ms=NOW_MS)
    second = evaluate_exits(position, make_signals(), cfg, grace, now_ms=NOW_MS)
    assert first == second
    assert position.as_dict() == before
    assert grace == GraceState()
