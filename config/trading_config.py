"""Typed trading configuration.

The YAML ``trading`` and ``live`` sections are validated once at startup into
the pydantic models below. Decision code only ever sees these typed objects, so
a typo in the YAML (an unknown key, ``maybe`` for a flag, ``2.7`` for a count)
surfaces as a ``ValidationError`` at load time instead of a knob silently
falling back to a default.
"""
from __future__ import annotations

import math
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config.utils import get_config_section


def _is_unset(value: Any) -> bool:
    # Unresolved ${ENV} placeholders and blanks mean "not configured".
    return value is None or (isinstance(value, str) and (value.strip() == '' or value.startswith('${')))


class _Section(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    @model_validator(mode='before')
    @classmethod
    def drop_unset_values(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return {key: value for key, value in data.items() if not _is_unset(value)}
        return data

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]):
        return cls.model_validate(dict(data or {}))

    def with_overrides(self, **overrides: Any):
        return type(self).model_validate({**self.model_dump(), **overrides})


class TradingConfig(_Section):
    # Sizing
    starting_balance: float = 1000.0
    stake_pct: float = Field(default=0.0, ge=0)
    contract_size: float = Field(default=100.0, ge=0)
    min_trade_usd: float = Field(default=0.0, ge=0)
    max_trade_usd: float = Field(default=math.inf, ge=0)

    # Phase thresholds and boosts
    min_prob_early: float = 0.52
    min_prob_mid: float = 0.53
    min_prob_late: float = 0.55
    edge_early: float = 0.02
    edge_mid: float = 0.03
    edge_late: float = 0.05
    mid_prob_boost: float = 0.0
    mid_edge_boost: float = 0.0
    inferred_prob_boost: float = 0.0
    inferred_edge_boost: float = 0.0
    weekend_prob_boost: float = 0.0
    weekend_edge_boost: float = 0.0

    # Entry gating
    rec_gating: Literal['strict', 'loose'] = 'loose'
    no_entry_final_minutes: float = 1.5
    min_candles_for_entry: int = Field(default=12, ge=0)
    loss_cooldown_seconds: float = 0.0
    win_cooldown_seconds: float = 0.0
    skip_market_after_max_loss: bool = False
    weekdays_only: bool = False
    allow_sunday_after_hour: Optional[int] = None
    no_entry_after_friday_hour: Optional[int] = None
    weekend_tightening_enabled: bool = True
    min_liquidity: float = 0.0
    weekend_min_liquidity: Optional[float] = None
    max_spread: Optional[float] = None
    weekend_max_spread: Optional[float] = None
    min_market_volume_num: float = 0.0
    min_volume_recent: float = 0.0
    min_volume_ratio: float = 0.0
    min_model_max_prob: float = 0.0
    weekend_min_model_max_prob: Optional[float] = None
    min_range_pct20: float = 0.0
    weekend_min_range_pct20: Optional[float] = None
    min_btc_impulse_pct_1m: float = 0.0
    no_trade_rsi_min: Optional[float] = None
    no_trade_rsi_max: Optional[float] = None
    min_poly_price: float = 0.002
    max_poly_price: float = 0.98
    max_entry_poly_price: Optional[float] = None
    min_opposite_poly_price: float = 0.0
    circuit_breaker_consecutive_losses: int = Field(default=0, ge=0)
    circuit_breaker_cooldown_ms: int = Field(default=300_000, ge=0)
    max_daily_loss_usd: Optional[float] = None

    # Exits
    exit_before_end_minutes: float = 0.5
    loser_max_hold_seconds: float = 0.0
    max_loss_usd_per_trade: Optional[float] = None
    dynamic_stop_loss_enabled: bool = False
    dynamic_stop_loss_pct: float = 0.20
    min_max_loss_usd: float = 8.0
    max_max_loss_usd: float = 40.0
    max_loss_grace_enabled: bool = False
    max_loss_grace_seconds: float = 0.0
    max_loss_recover_usd: Optional[float] = None
    max_loss_grace_require_model_support: bool = False
    take_profit_price: Optional[float] = None
    trailing_take_profit_enabled: bool = False
    trailing_start_usd: float = 0.0
    trailing_drawdown_usd: float = 0.0
    take_profit_immediate: bool = False
    take_profit_pnl_usd: float = 0.0
    stop_loss_enabled: bool = False
    stop_loss_pct: float = 0.25
    exit_flip_min_prob: float = 0.55
    exit_flip_margin: float = 0.03
    exit_flip_min_hold_seconds: float = 0.0

    @property
    def strict_rec(self) -> bool:
        return self.rec_gating == 'strict'


class LiveSettings(_Section):
    enabled: bool = False
    env_gate: Optional[str] = None
    max_per_trade_usd: Optional[float] = None
    max_open_exposure_usd: Optional[float] = None
    max_daily_loss_usd: Optional[float] = None
    post_only: bool = False
    fee_cache_ttl_ms: int = Field(default=30_000, ge=0)
    fee_alert_threshold_bps: float = 300.0
    exit_cooldown_ms: int = Field(default=30_000, ge=0)
    min_order_shares: int = Field(default=5, ge=0)
    min_price: float = 0.001
    max_price: float = 0.999
    fallback_sell_price: float = 0.01
    trades_refresh_in_position_ms: int = Field(default=1_500, ge=0)
    trades_refresh_flat_ms: int = Field(default=5_000, ge=0)
    approval_recheck_ms: int = Field(default=300_000, ge=0)
    order_reconcile_interval_ms: int = Field(default=5_000, ge=0)
    clob_host: str = 'https://clob.polymarket.com'
    chain_id: int = 137
    private_key: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    api_passphrase: Optional[str] = None
    signature_type: int = 0
    funder_address: Optional[str] = None

    @model_validator(mode='after')
    def check_price_band(self) -> 'LiveSettings':
        if not 0 < self.min_price < self.max_price < 1:
            raise ValueError(
                f"live price band must satisfy 0 < min_price < max_price < 1, "
                f"got {self.min_price}..{self.max_price}"
            )
        return self

    def apply_to(self, trading: TradingConfig) -> TradingConfig:
        """Return the trading config used in live mode."""
        if self.max_daily_loss_usd is None:
            return trading
        return trading.with_overrides(max_daily_loss_usd=self.max_daily_loss_usd)


def load_trading_config(source: Any) -> TradingConfig:
    return TradingConfig.from_mapping(get_config_section(source, 'trading'))


def load_live_settings(source: Any) -> LiveSettings:
    return LiveSettings.from_mapping(get_config_section(source, 'live'))

