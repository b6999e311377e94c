#!/usr/bin/env python
"""
Sizing, dynamic max-loss and realized PnL capping
"""
import math
import sys
sys.path.insert(0, '.')

import pytest

from config.trading_config import TradingConfig
from risk.position_sizer import cap_pnl, compute_max_loss_usd, compute_trade_size


def _cfg(**overrides):
    base = dict(stake_pct=0.08, min_trade_usd=25, max_trade_usd=250)
    base.update(overrides)
    return TradingConfig(**base)


@pytest.mark.parametrize('balance,expected', [
    (1000, 80.0),
    (100, 25.0),
    (10, 10.0),
    (10000, 250.0),
])
def test_stake_pct_is_clamped_and_capped_at_balance(balance, expected):
    assert compute_trade_size(balance, _cfg()) == expected


@pytest.mark.parametrize('balance', [0, -5, float('nan'), float('inf'), None])
def test_unusable_balance_sizes_to_zero(balance):
    assert compute_trade_size(balance, _cfg()) == 0.0


def test_fixed_contract_size_when_no_stake():
    cfg = TradingConfig(stake_pct=0, contract_size=100, max_trade_usd=50)
    assert compute_trade_size(1000, cfg) == 50.0


def test_size_floored_to_cent():
    cfg = TradingConfig(stake_pct=0.1)
    assert compute_trade_size(1000.129, cfg) == 100.01


def test_fixed_max_loss():
    assert compute_max_loss_usd(100, TradingConfig(max_loss_usd_per_trade=15)) == 15
    assert compute_max_loss_usd(100, TradingConfig()) is None


@pytest.mark.parametrize('contract_size,expected', [
    (100, 20.0),
    (10, 8.0),
    (1000, 40.0),
])
def test_dynamic_max_loss_is_clamped(contract_size, expected):
    cfg = TradingConfig(
        dynamic_stop_loss_enabled=True,
        dynamic_stop_loss_pct=0.2,
        min_max_loss_usd=8,
        max_max_loss_usd=40,
        max_loss_usd_per_trade=15,
    )
    assert compute_max_loss_usd(contract_size, cfg) == pytest.approx(expected)


def test_dynamic_max_loss_falls_back_without_contract_size():
    cfg = TradingConfig(dynamic_stop_loss_enabled=True, max_loss_usd_per_trade=12)
    assert compute_max_loss_usd(None, cfg) == 12


def test_cap_pnl_rewrites_exit_price():
    cfg = TradingConfig(max_loss_usd_per_trade=15)
    pnl, exit_price = cap_pnl(-30.0, 100.0, 200.0, 0.35, cfg)
    assert pnl == -15
    assert exit_price == pytest.approx(0.425)
    # ledger identity still holds after the rewrite
    assert 200.0 * exit_price == pytest.approx(100.0 + pnl)


def test_cap_pnl_leaves_small_losses_and_gains():
    cfg = TradingConfig(max_loss_usd_per_trade=15)
    assert cap_pnl(-10.0, 100.0, 200.0, 0.45, cfg) == (-10.0, 0.45)
    assert cap_pnl(12.0, 100.0, 200.0, 0.56, cfg) == (12.0, 0.56)


def test_cap_pnl_without_cap_configured():
    assert cap_pnl(-80.0, 100.0, 200.0, 0.1, TradingConfig()) == (-80.0, 0.1)


def test_cap_pnl_ignores_non_finite_pnl():
    cfg = TradingConfig(max_loss_usd_per_trade=15)
    pnl, exit_price = cap_pnl(float('nan'), 100.0, 200.0, 0.3, cfg)
    assert math.isnan(pnl)
    assert exit_price == 0.3
