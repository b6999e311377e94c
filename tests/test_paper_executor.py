#!/usr/bin/env python
"""
Paper executor: book-walk fills, ledger bookkeeping, loss capping
"""
import asyncio
import json
import sys
sys.path.insert(0, '.')

import pytest

from config.trading_config import TradingConfig
from orchestration.persistence import PaperLedger
from strategy.execution_types import CloseRequest, OrderRequest, PositionNotFoundError, Side
from strategy.simulators.paper import INVALID_ENTRY_REASON, PaperExecutor, simulate_fill
from strategy.transports.polymarket import OrderBookLevels
from fakes import FakeClock, FakeTransport, make_signals


def _executor(tmp_path, bids=None, asks=None, **cfg):
    transport = FakeTransport()
    transport.books['tok-up'] = OrderBookLevels('tok-up', bids=bids or [(0.6, 1000)], asks=asks or [(0.5, 1000)])
    executor = PaperExecutor(
        TradingConfig(**cfg),
        PaperLedger(str(tmp_path / 'ledger.json')),
        transport=transport,
        clock=FakeClock(),
    )
    asyncio.run(executor.initialize())
    return executor, transport


def _buy(size_usd=100.0, price=0.5, inferred=False):
    return OrderRequest(
        side=Side.UP,
        market_slug='btc-updown-5m-1704909600',
        size_usd=size_usd,
        price=price,
        phase='EARLY',
        side_inferred=inferred,
        token_id='tok-up',
    )


def _close(trade_id, reason='Take Profit'):
    return CloseRequest(position_id=trade_id, side=Side.UP, shares=200.0, reason=reason, token_id='tok-up')


def test_simulate_fill_walks_asks():
    estimate = simulate_fill([], [(0.6, 100), (0.5, 100)], 80.0, 'BUY')
    assert estimate.levels_consumed == 2
    assert estimate.total_shares == pytest.approx(150.0)
    assert estimate.vwap_price == pytest.approx(80.0 / 150.0)


def test_simulate_fill_sells_into_best_bid_first():
    estimate = simulate_fill([(0.4, 100), (0.45, 100)], [], 30.0, 'SELL')
    assert estimate.levels_consumed == 1
    assert estimate.vwap_price == pytest.approx(0.45)


def test_simulate_fill_empty_or_invalid_book():
    assert simulate_fill([], [], 10.0, 'BUY') is None
    assert simulate_fill([], [(0.0, 100), (0.5, 0)], 10.0, 'BUY') is None


def test_open_and_close_round_trip(tmp_path):
    executor, _ = _executor(tmp_path)
    opened = asyncio.run(executor.open_position(_buy()))
    assert opened.filled
    assert opened.fill_price == pytest.approx(0.5)
    assert opened.fill_shares == pytest.approx(200.0)

    trade = executor.ledger.get_open_trade()
    assert trade['id'] == opened.trade_id
    assert trade['entryReason'] == 'Rec'
    assert trade['tokenID'] == 'tok-up'
    assert trade['contractSize'] == pytest.approx(100.0)

    closed = asyncio.run(executor.close_position(_close(opened.trade_id)))
    assert closed.closed
    assert closed.exit_price == pytest.approx(0.6)
    assert closed.pnl == 20.0
    assert closed.reason == 'Take Profit'

    assert executor.ledger.get_open_trade() is None
    summary = executor.ledger.summary()
    assert summary['wins'] == 1
    assert summary['totalPnL'] == 20.0
    balance = asyncio.run(executor.get_balance())
    assert balance.ok
    assert balance.value.balance == pytest.approx(1020.0)


def test_inferred_entry_is_labelled(tmp_path):
    executor, _ = _executor(tmp_path)
    asyncio.run(executor.open_position(_buy(inferred=True)))
    assert executor.ledger.get_open_trade()['entryReason'] == 'Inferred'


def test_loss_is_capped_and_relabelled(tmp_path):
    executor, _ = _executor(tmp_path, bids=[(0.3, 1000)], max_loss_usd_per_trade=15)
    opened = asyncio.run(executor.open_position(_buy()))
    closed = asyncio.run(executor.close_position(_close(opened.trade_id, reason='Time Stop')))
    assert closed.pnl == -15.0
    assert closed.reason == 'Max Loss ($15.00)'
    assert closed.exit_price == pytest.approx(0.425)

    stored = executor.ledger.trades[-1]
    assert stored['status'] == 'CLOSED'
    assert stored['exitReason'] == 'Max Loss ($15.00)'


def test_exit_uses_quote_when_book_is_empty(tmp_path):
    executor, transport = _executor(tmp_path)
    opened = asyncio.run(executor.open_position(_buy()))
    transport.books['tok-up'] = OrderBookLevels('tok-up', bids=[], asks=[])
    transport.prices[('tok-up', 'sell')] = 0.55
    closed = asyncio.run(executor.close_position(_close(opened.trade_id)))
    assert closed.exit_price == pytest.approx(0.55)
    assert closed.pnl == 10.0


def test_fill_at_reference_price_without_book(tmp_path):
    executor = PaperExecutor(TradingConfig(), PaperLedger(str(tmp_path / 'ledger.json')), clock=FakeClock())
    asyncio.run(executor.initialize())
    opened = asyncio.run(executor.open_position(_buy(size_usd=55.0, price=0.55)))
    assert opened.fill_price == 0.55
    assert opened.fill_shares == pytest.approx(100.0)
    closed = asyncio.run(executor.close_position(_close(opened.trade_id)))
    assert closed.pnl == 0.0


def test_invalid_reference_price_is_rejected(tmp_path):
    executor = PaperExecutor(TradingConfig(), PaperLedger(str(tmp_path / 'ledger.json')), clock=FakeClock())
    asyncio.run(executor.initialize())
    result = asyncio.run(executor.open_position(OrderRequest(side=Side.UP, market_slug='m', size_usd=50.0, price=0.0)))
    assert not result.filled
    assert executor.ledger.trades == []


def test_closing_unknown_position_raises(tmp_path):
    executor, _ = _executor(tmp_path)
    with pytest.raises(PositionNotFoundError):
        asyncio.run(executor.close_position(_close('missing')))

    asyncio.run(executor.open_position(_buy()))
    with pytest.raises(PositionNotFoundError):
        asyncio.run(executor.close_position(_close('someone-else')))


def test_positions_are_marked_from_signals(tmp_path):
    executor, _ = _executor(tmp_path)
    asyncio.run(executor.open_position(_buy()))
    signals = make_signals()

    fetched = asyncio.run(executor.get_open_positions(signals))
    assert fetched.ok
    [position] = fetched.value
    assert position.side is Side.UP
    assert position.token_id == 'tok-up'
    assert position.entry_time_ms is not None

    marked = asyncio.run(executor.mark_positions(fetched.value, signals))
    assert marked.value[0].mark == pytest.approx(0.55)
    assert marked.value[0].unrealized_pnl == pytest.approx(10.0)


def test_initialize_force_closes_invalid_open_trade(tmp_path):
    path = tmp_path / 'ledger.json'
    path.write_text(json.dumps({
        'trades': [{
            'id': 'bad-1',
            'status': 'OPEN',
            'side': 'UP',
            'entryPrice': 0,
            'shares': 10,
            'contractSize': 0,
        }],
        'meta': {'realizedOffset': -12.5},
    }))
    executor = PaperExecutor(TradingConfig(starting_balance=500), PaperLedger(str(path)), clock=FakeClock())
    asyncio.run(executor.initialize())

    assert executor.open_trade is None
    stored = executor.ledger.trades[0]
    assert stored['status'] == 'CLOSED'
    assert stored['exitReason'] == INVALID_ENTRY_REASON
    assert stored['pnl'] == 0.0
    assert asyncio.run(executor.get_balance()).value.balance == pytest.approx(487.5)


def test_close_releases_transport(tmp_path):
    executor, transport = _executor(tmp_path)
    asyncio.run(executor.close())
    assert transport.closed
