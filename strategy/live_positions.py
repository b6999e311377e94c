"""Positions and realized PnL derived from the venue's trade history.

The live executor keeps no local position book; everything here is recomputed
from the full trade list on each call.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from strategy.signals import as_float

QTY_EPSILON = 1e-9


@dataclass
class TradePosition:
    token_id: str
    outcome: Optional[str] = None
    qty: float = 0.0
    buy_qty: float = 0.0
    buy_notional: float = 0.0
    sell_qty: float = 0.0
    sell_notional: float = 0.0
    last_trade_time: Optional[float] = None

    @property
    def avg_entry(self) -> Optional[float]:
        return self.buy_notional / self.buy_qty if self.buy_qty > 0 else None

    @property
    def avg_exit(self) -> Optional[float]:
        return self.sell_notional / self.sell_qty if self.sell_qty > 0 else None


@dataclass
class RealizedPnl:
    total: float = 0.0
    by_token: Dict[str, float] = field(default_factory=dict)
    inventory_by_token: Dict[str, float] = field(default_factory=dict)


def _trade_fields(trade: Any):
    if not isinstance(trade, dict):
        return None
    token_id = trade.get('asset_id')
    size = as_float(trade.get('size'))
    price = as_float(trade.get('price'))
    if not token_id or not size or not price:
        return None
    return str(token_id), str(trade.get('side') or '').upper(), size, price


def compute_positions_from_trades(trades: Iterable[Dict[str, Any]]) -> List[TradePosition]:
    book: Dict[str, TradePosition] = {}
    for trade in trades or []:
        parsed = _trade_fields(trade)
        if parsed is None:
            continue
        token_id, side, size, price = parsed

        pos = book.get(token_id)
        if pos is None:
            pos = TradePosition(token_id=token_id, outcome=trade.get('outcome'))
            book[token_id] = pos

        match_time = as_float(trade.get('match_time'))
        if match_time is not None:
            pos.last_trade_time = match_time

        if side == 'BUY':
            pos.qty += size
            pos.buy_qty += size
            pos.buy_notional += size * price
            if pos.outcome is None:
                pos.outcome = trade.get('outcome')
        elif side == 'SELL':
            pos.qty -= size
            pos.sell_qty += size
            pos.sell_notional += size * price

    open_positions = [p for p in book.values() if abs(p.qty) > QTY_EPSILON]
    open_positions.sort(key=lambda p: abs(p.qty), reverse=True)
    return open_positions


def compute_realized_pnl_avg_cost(trades: Iterable[Dict[str, Any]]) -> RealizedPnl:
    """Average-cost realized PnL; sells without tracked inventory are ignored."""
    inventory: Dict[str, List[float]] = {}
    realized: Dict[str, float] = {}
    for trade in trades or []:
        parsed = _trade_fields(trade)
        if parsed is None:
            continue
        token_id, side, size, price = parsed
        qty, cost = inventory.get(token_id, [0.0, 0.0])

        if side == 'BUY':
            qty += size
            cost += size * price
        elif side == 'SELL':
            if qty <= 0:
                continue
            sell_qty = min(size, qty)
            avg_cost = cost / qty
            realized[token_id] = realized.get(token_id, 0.0) + (price - avg_cost) * sell_qty
            qty -= sell_qty
            cost = max(0.0, cost - avg_cost * sell_qty)

        inventory[token_id] = [qty, cost]

    return RealizedPnl(
        total=sum(realized.values()),
        by_token=realized,
        inventory_by_token={token: values[0] for token, values in inventory.items()},
    )
