#!/usr/bin/env python
"""
YAML loading and typed trading/live settings
"""
import sys
sys.path.insert(0, '.')

import pytest
from pydantic import ValidationError

from config.config_loader import Config
from config.trading_config import LiveSettings, TradingConfig, load_live_settings, load_trading_config


def test_shipped_config_parses():
    cfg = Config()
    trading = load_trading_config(cfg)
    live = load_live_settings(cfg)
    assert trading.rec_gating in ('strict', 'loose')
    assert trading.max_entry_poly_price == 0.80
    assert live.fee_cache_ttl_ms == 30000
    assert cfg.api['port'] == 8000


def test_env_placeholders_resolve(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "trading:\n"
        "  stake_pct: ${UPDOWN_TEST_STAKE}\n"
        "  max_entry_poly_price: ${UPDOWN_TEST_UNSET}\n"
        "live:\n"
        "  enabled: ${UPDOWN_TEST_LIVE}\n"
    )
    monkeypatch.setenv('UPDOWN_TEST_STAKE', '0.05')
    monkeypatch.setenv('UPDOWN_TEST_LIVE', 'true')
    monkeypatch.delenv('UPDOWN_TEST_UNSET', raising=False)

    cfg = Config(str(path))
    trading = load_trading_config(cfg)
    assert trading.stake_pct == 0.05
    assert trading.max_entry_poly_price is None
    assert load_live_settings(cfg).enabled is True


def test_missing_config_file(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'absent.yaml'))


def test_broken_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("trading: [unclosed\n")
    with pytest.raises(RuntimeError):
        Config(str(path))


def test_unknown_trading_key_is_rejected():
    with pytest.raises(ValidationError):
        TradingConfig.from_mapping({'stake_pcnt': 0.1})


def test_bad_value_is_rejected():
    with pytest.raises(ValidationError):
        TradingConfig.from_mapping({'stake_pct': 'lots'})


def test_rec_gating_values():
    assert TradingConfig.from_mapping({'rec_gating': 'strict'}).strict_rec
    assert not TradingConfig().strict_rec
    with pytest.raises(ValidationError):
        TradingConfig(rec_gating='medium')
    with pytest.raises(ValidationError):
        TradingConfig.from_mapping({'rec_gating': 'STRICT-ish'})


@pytest.mark.parametrize('raw,expected', [('true', True), ('0', False), (True, True), ('', False)])
def test_bool_coercion(raw, expected):
    assert TradingConfig.from_mapping({'weekdays_only': raw}).weekdays_only is expected


def test_live_daily_loss_override():
    trading = TradingConfig(max_daily_loss_usd=100)
    assert LiveSettings().apply_to(trading).max_daily_loss_usd == 100
    assert LiveSettings(max_daily_loss_usd=25).apply_to(trading).max_daily_loss_usd == 25
    assert trading.max_daily_loss_usd == 100


def test_sections_from_plain_dicts():
    trading = load_trading_config({'trading': {'min_candles_for_entry': '8'}})
    assert trading.min_candles_for_entry == 8
    assert load_live_settings({}).enabled is False


def test_placeholder_fallback(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "engine:\n"
        "  signal_source: ${UPDOWN_TEST_SOURCE:-data/signals.json}\n"
        "live:\n"
        "  chain_id: ${UPDOWN_TEST_CHAIN:-137}\n"
    )
    monkeypatch.delenv('UPDOWN_TEST_SOURCE', raising=False)
    monkeypatch.setenv('UPDOWN_TEST_CHAIN', '80002')

    cfg = Config(str(path))
    assert cfg.engine['signal_source'] == 'data/signals.json'
    assert load_live_settings(cfg).chain_id == 80002


def test_section_must_be_mapping(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("trading: 5\n")
    with pytest.raises(RuntimeError):
        Config(str(path))


@pytest.mark.parametrize('key,raw', [
    ('stop_loss_enabled', 'maybe'),
    ('weekdays_only', 'enabled'),
    ('min_candles_for_entry', 2.7),
    ('min_candles_for_entry', '12.5'),
    ('circuit_breaker_consecutive_losses', -1),
    ('stake_pct', -0.1),
    ('max_loss_usd_per_trade', 'fifteen'),
])
def test_invalid_trading_values_are_rejected(key, raw):
    with pytest.raises(ValidationError) as excinfo:
        TradingConfig.from_mapping({key: raw})
    assert key in str(excinfo.value)


def test_typo_in_flag_never_disables_stop_loss(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("trading:\n  stop_loss_enabled: maybe\n")
    with pytest.raises(ValidationError):
        load_trading_config(Config(str(path)))


@pytest.mark.parametrize('settings', [
    {'min_order_shares': 4.5},
    {'enabled': 'sometimes'},
    {'min_price': 0.5, 'max_price': 0.4},
    {'fee_cache_ttl': 1000},
])
def test_invalid_live_settings_are_rejected(settings):
    with pytest.raises(ValidationError):
        LiveSettings.from_mapping(settings)


def test_configs_are_immutable():
    trading = TradingConfig()
    with pytest.raises(ValidationError):
        trading.stake_pct = 0.5
    assert trading.with_overrides(stake_pct=0.5).stake_pct == 0.5
    with pytest.raises(ValidationError):
        trading.with_overrides(stake_pct='half')
