"""Trade statistics reported on ``/api/status``.

Paper stats come from the closed trades in the paper ledger. Live stats come
from average-cost realized PnL per token (one token is one market position)
plus the exit orders recorded in the live trade log.
"""
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from strategy.live_positions import RealizedPnl
from strategy.signals import as_float


def _money(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 2)


def pnl_overview(pnl: pd.Series) -> Dict[str, Any]:
    total = len(pnl)
    winners = pnl[pnl > 0]
    losers = pnl[pnl < 0]
    gross_profit = winners.sum()
    gross_loss = abs(losers.sum())
    return {
        'closedTrades': total,
        'wins': len(winners),
        'losses': len(losers),
        'winRate': (len(winners) / total * 100.0) if total else 0.0,
        'totalPnL': _money(pnl.sum()) if total else 0.0,
        'avgWin': _money(winners.mean()) if len(winners) else None,
        'avgLoss': _money(losers.mean()) if len(losers) else None,
        'profitFactor': round(float(gross_profit / gross_loss), 3) if gross_loss > 0 else None,
    }


def _group_by(frame: pd.DataFrame, column: str) -> List[Dict[str, Any]]:
    if frame.empty:
        return []
    grouped = frame.groupby(column)['pnl'].agg(['count', 'sum'])
    groups = [
        {'key': str(key), 'count': int(row['count']), 'pnl': _money(row['sum'])}
        for key, row in grouped.iterrows()
    ]
    groups.sort(key=lambda g: abs(g['pnl']), reverse=True)
    return groups


def paper_trade_stats(trades: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    closed = [t for t in trades or [] if t.get('status') == 'CLOSED']
    frame = pd.DataFrame({
        'pnl': [as_float(t.get('pnl')) or 0.0 for t in closed],
        'exitReason': [t.get('exitReason') or 'unknown' for t in closed],
        'side': [t.get('side') or 'unknown' for t in closed],
    })
    stats = pnl_overview(frame['pnl'].astype(float))
    stats['byExitReason'] = _group_by(frame, 'exitReason')
    stats['bySide'] = _group_by(frame, 'side')
    return stats


def live_trade_stats(realized: RealizedPnl, log_entries: Iterable[Dict[str, Any]] = ()) -> Dict[str, Any]:
    pnl = pd.Series(list(realized.by_token.values()), index=list(realized.by_token.keys()), dtype=float)
    stats = pnl_overview(pnl)
    stats['realizedPnL'] = _money(realized.total)
    stats['byToken'] = sorted(
        ({'key': token, 'pnl': _money(value)} for token, value in realized.by_token.items()),
        key=lambda g: abs(g['pnl']),
        reverse=True,
    )
    exits: Dict[str, int] = {}
    for entry in log_entries or []:
        if entry.get('type') == 'EXIT_SELL':
            reason = entry.get('reason') or 'unknown'
            exits[reason] = exits.get(reason, 0) + 1
    stats['exitOrdersByReason'] = exits
    return stats
