#!/usr/bin/env python
"""
Trade statistics for the status endpoint
"""
import sys
sys.path.insert(0, '.')

import pytest

from monitoring.trade_stats import live_trade_stats, paper_trade_stats
from strategy.live_positions import RealizedPnl


def _closed(pnl, reason, side='UP'):
    return {'status': 'CLOSED', 'pnl': pnl, 'exitReason': reason, 'side': side}


def test_empty_ledger():
    stats = paper_trade_stats([])
    assert stats['closedTrades'] == 0
    assert stats['winRate'] == 0.0
    assert stats['totalPnL'] == 0.0
    assert stats['avgWin'] is None and stats['avgLoss'] is None
    assert stats['profitFactor'] is None
    assert stats['byExitReason'] == []


def test_paper_stats_skip_open_trades():
    trades = [
        _closed(30.0, 'Take Profit'),
        _closed(10.0, 'Take Profit', side='DOWN'),
        _closed(-20.0, 'Max Loss'),
        _closed(0.0, 'Time Stop'),
        {'status': 'OPEN', 'pnl': None, 'side': 'UP'},
    ]
    stats = paper_trade_stats(trades)
    assert stats['closedTrades'] == 4
    assert stats['wins'] == 2
    assert stats['losses'] == 1
    assert stats['winRate'] == pytest.approx(50.0)
    assert stats['totalPnL'] == pytest.approx(20.0)
    assert stats['avgWin'] == pytest.approx(20.0)
    assert stats['avgLoss'] == pytest.approx(-20.0)
    assert stats['profitFactor'] == pytest.approx(2.0)
    assert stats['byExitReason'] == [
        {'key': 'Take Profit', 'count': 2, 'pnl': 40.0},
        {'key': 'Max Loss', 'count': 1, 'pnl': -20.0},
        {'key': 'Time Stop', 'count': 1, 'pnl': 0.0},
    ]
    assert {g['key']: g['count'] for g in stats['bySide']} == {'UP': 3, 'DOWN': 1}


def test_missing_pnl_and_reason():
    stats = paper_trade_stats([{'status': 'CLOSED', 'pnl': 'n/a'}])
    assert stats['closedTrades'] == 1
    assert stats['totalPnL'] == 0.0
    assert stats['byExitReason'] == [{'key': 'unknown', 'count': 1, 'pnl': 0.0}]


def test_live_stats_from_realized_pnl_and_exit_orders():
    realized = RealizedPnl(total=4.5, by_token={'tok-up': 6.0, 'tok-down': -1.5})
    log = [
        {'type': 'OPEN', 'tokenID': 'tok-up'},
        {'type': 'EXIT_SELL', 'tokenID': 'tok-up', 'reason': 'Take Profit'},
        {'type': 'EXIT_SELL', 'tokenID': 'tok-down', 'reason': 'Max Loss'},
        {'type': 'EXIT_SELL_FAILED', 'tokenID': 'tok-down', 'reason': 'Max Loss'},
    ]
    stats = live_trade_stats(realized, log)
    assert stats['realizedPnL'] == 4.5
    assert stats['closedTrades'] == 2
    assert stats['profitFactor'] == pytest.approx(4.0)
    assert stats['byToken'] == [{'key': 'tok-up', 'pnl': 6.0}, {'key': 'tok-down', 'pnl': -1.5}]
    assert stats['exitOrdersByReason'] == {'Take Profit': 1, 'Max Loss': 1}
