"""Typed view of the per-tick signal snapshot produced by the market-data side.

The upstream payload is camelCase JSON; ``SignalSnapshot.from_dict`` maps it
once so the decision code never digs through raw dictionaries.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from strategy.execution_types import Side


def as_float(value: Any) -> Optional[float]:
    """Finite float or None (bools are not numbers here)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_time_ms(value: Any) -> Optional[float]:
    """Epoch milliseconds from an ISO string, a datetime or a numeric epoch."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp() * 1000.0
    number = as_float(value)
    if number is not None:
        # Seconds and milliseconds are both seen upstream.
        return number * 1000.0 if number < 1e11 else number
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp() * 1000.0
    return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return []


@dataclass
class MarketInfo:
    slug: Optional[str] = None
    end_date_ms: Optional[float] = None
    liquidity_num: Optional[float] = None
    volume_num: Optional[float] = None
    outcomes: List[str] = field(default_factory=list)
    clob_token_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['MarketInfo']:
        if not data:
            return None
        return cls(
            slug=data.get('slug') or None,
            end_date_ms=parse_time_ms(data.get('endDate')),
            liquidity_num=as_float(data.get('liquidityNum')),
            volume_num=as_float(data.get('volumeNum')),
            outcomes=_as_list(data.get('outcomes')),
            clob_token_ids=_as_list(data.get('clobTokenIds')),
        )


def pick_token_id(market: Optional[MarketInfo], side: Side) -> Optional[str]:
    """Token id whose outcome label matches ``side`` (case-insensitive)."""
    if market is None:
        return None
    wanted = side.value.lower()
    for index, outcome in enumerate(market.outcomes):
        if outcome.strip().lower() == wanted and index < len(market.clob_token_ids):
            return market.clob_token_ids[index]
    return None


@dataclass
class BookSummary:
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    spread: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'BookSummary':
        data = data or {}
        return cls(
            best_bid=as_float(data.get('bestBid')),
            best_ask=as_float(data.get('bestAsk')),
            spread=as_float(data.get('spread')),
        )


@dataclass
class Recommendation:
    action: Optional[str] = None
    side: Optional[Side] = None
    phase: Optional[str] = None
    edge: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['Recommendation']:
        if not data:
            return None
        return cls(
            action=data.get('action') or None,
            side=Side.parse(data.get('side')),
            phase=data.get('phase') or None,
            edge=as_float(data.get('edge')),
        )


@dataclass
class Indicators:
    rsi_now: Optional[float] = None
    vwap_now: Optional[float] = None
    vwap_slope: Optional[float] = None
    macd_hist: Optional[float] = None
    heiken_color: Optional[str] = None
    heiken_count: Optional[float] = None
    volume_recent: Optional[float] = None
    volume_avg: Optional[float] = None
    range_pct20: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'Indicators':
        data = data or {}
        macd = data.get('macd') or {}
        color = data.get('heikenColor')
        return cls(
            rsi_now=as_float(data.get('rsiNow')),
            vwap_now=as_float(data.get('vwapNow')),
            vwap_slope=as_float(data.get('vwapSlope')),
            macd_hist=as_float(macd.get('hist')) if isinstance(macd, Mapping) else None,
            heiken_color=color if isinstance(color, str) else None,
            heiken_count=as_float(data.get('heikenCount')),
            volume_recent=as_float(data.get('volumeRecent')),
            volume_avg=as_float(data.get('volumeAvg')),
            range_pct20=as_float(data.get('rangePct20')),
        )

    @property
    def ready(self) -> bool:
        return (
            self.rsi_now is not None
            and self.vwap_now is not None
            and self.vwap_slope is not None
            and self.macd_hist is not None
            and bool(self.heiken_color)
            and self.heiken_count is not None
        )


@dataclass
class SignalSnapshot:
    market: Optional[MarketInfo] = None
    poly_market: Optional[MarketInfo] = None
    model_up: Optional[float] = None
    model_down: Optional[float] = None
    rec: Optional[Recommendation] = None
    poly_prices_cents: Dict[Side, Optional[float]] = field(default_factory=dict)
    poly_prices: Dict[Side, Optional[float]] = field(default_factory=dict)
    orderbook: Dict[Side, BookSummary] = field(default_factory=dict)
    time_left_min: Optional[float] = None
    indicators: Indicators = field(default_factory=Indicators)
    spot_delta_1m_pct: Optional[float] = None
    candle_count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SignalSnapshot':
        poly = data.get('polyMarketSnapshot') or {}
        book = poly.get('orderbook') or {}
        cents = data.get('polyPricesCents') or {}
        prices = data.get('polyPrices') or {}
        spot = data.get('spot') or {}
        indicators = dict(data.get('indicators') or {})
        # Volume and range readouts sometimes arrive at the top level.
        for key in ('volumeRecent', 'volumeAvg', 'rangePct20'):
            if key not in indicators and key in data:
                indicators[key] = data[key]
        return cls(
            market=MarketInfo.from_dict(data.get('market')),
            poly_market=MarketInfo.from_dict(poly.get('market')),
            model_up=as_float(data.get('modelUp')),
            model_down=as_float(data.get('modelDown')),
            rec=Recommendation.from_dict(data.get('rec')),
            poly_prices_cents={side: as_float(cents.get(side.value)) for side in Side},
            poly_prices={side: as_float(prices.get(side.value)) for side in Side},
            orderbook={
                Side.UP: BookSummary.from_dict(book.get('up')),
                Side.DOWN: BookSummary.from_dict(book.get('down')),
            },
            time_left_min=as_float(data.get('timeLeftMin')),
            indicators=Indicators.from_dict(indicators),
            spot_delta_1m_pct=as_float(spot.get('delta1mPct')),
            candle_count=int(as_float(data.get('candleCount')) or 0),
        )

    @property
    def market_slug(self) -> Optional[str]:
        return self.market.slug if self.market else None

    @property
    def trading_market(self) -> Optional[MarketInfo]:
        return self.market or self.poly_market

    def book(self, side: Side) -> BookSummary:
        return self.orderbook.get(side) or BookSummary()

    def model_prob(self, side: Side) -> Optional[float]:
        return self.model_up if side is Side.UP else self.model_down

    def end_date_ms(self) -> Optional[float]:
        if self.market and self.market.end_date_ms is not None:
            return self.market.end_date_ms
        if self.poly_market and self.poly_market.end_date_ms is not None:
            return self.poly_market.end_date_ms
        return None

    def time_left_minutes(self, now_ms: float) -> Optional[float]:
        """Minutes to settlement, preferring the venue end date over the candle window."""
        end_ms = self.end_date_ms()
        if end_ms is not None:
            return (end_ms - now_ms) / 60000.0
        return self.time_left_min

    def effective_price(self, side: Side) -> Optional[float]:
        """Outcome price in dollars: quoted cents, else best ask, else best bid."""
        cents = self.poly_prices_cents.get(side)
        if cents is not None and cents > 0:
            return cents / 100.0
        summary = self.book(side)
        if summary.best_ask is not None and summary.best_ask > 0:
            return summary.best_ask
        if summary.best_bid is not None and summary.best_bid > 0:
            return summary.best_bid
        return None

    def entry_price(self, side: Side) -> Optional[float]:
        cents = self.poly_prices_cents.get(side)
        if cents is not None and cents > 0:
            return cents / 100.0
        ask = self.book(side).best_ask
        if ask is not None and ask > 0:
            return ask
        return None

    def mark_price(self, side: Side) -> Optional[float]:
        cents = self.poly_prices_cents.get(side)
        if cents is not None and cents > 0:
            return cents / 100.0
        bid = self.book(side).best_bid
        if bid is not None and bid > 0:
            return bid
        return None
