#!/usr/bin/env python
"""
Collateral and conditional-token approvals
"""
import asyncio
import sys
sys.path.insert(0, '.')

from strategy.approvals import APPROVED, FAILED, UNKNOWN, ApprovalService
from strategy.transports.polymarket import BalanceAllowance
from fakes import FakeClock, FakeTransport


def test_zero_collateral_allowance_is_approved():
    transport = FakeTransport()
    transport.collateral = BalanceAllowance(balance=100e6, allowance=0.0)
    service = ApprovalService(transport, clock=FakeClock())

    status = asyncio.run(service.check_and_approve_collateral())
    assert status.state == APPROVED
    assert transport.allowance_updates == [None]


def test_collateral_failure_is_recorded():
    transport = FakeTransport()
    transport.fail['fetch_balance_allowance'] = RuntimeError('rpc down')
    service = ApprovalService(transport, clock=FakeClock())

    status = asyncio.run(service.check_and_approve_collateral())
    assert status.state == FAILED
    assert status.error == 'rpc down'
    assert service.status()['collateral']['state'] == FAILED


def test_conditional_approved_only_when_holding():
    transport = FakeTransport()
    transport.conditional['tok-up'] = BalanceAllowance(balance=12.7, allowance=0.0)
    service = ApprovalService(transport, clock=FakeClock())

    assert asyncio.run(service.get_sellable_qty('tok-up')) == 12
    assert transport.allowance_updates == ['tok-up']
    assert service.conditional_status('tok-up').state == APPROVED

    status = asyncio.run(service.check_and_approve_conditional('tok-empty'))
    assert status.state == UNKNOWN
    assert transport.allowance_updates == ['tok-up']
    assert asyncio.run(service.get_sellable_qty('tok-empty')) == 0


def test_conditional_recheck_cooldown():
    clock = FakeClock()
    transport = FakeTransport()
    transport.conditional['tok-up'] = BalanceAllowance(balance=10, allowance=10)
    service = ApprovalService(transport, recheck_cooldown_ms=60_000, clock=clock)

    asyncio.run(service.check_and_approve_conditional('tok-up'))
    asyncio.run(service.check_and_approve_conditional('tok-up'))
    assert transport.calls['fetch_balance_allowance'] == 1

    asyncio.run(service.check_and_approve_conditional('tok-up', force=True))
    assert transport.calls['fetch_balance_allowance'] == 2

    clock.advance(61)
    asyncio.run(service.check_and_approve_conditional('tok-up'))
    assert transport.calls['fetch_balance_allowance'] == 3


def test_missing_token_fails_fast():
    service = ApprovalService(FakeTransport(), clock=FakeClock())
    status = asyncio.run(service.check_and_approve_conditional(None))
    assert status.state == FAILED


def test_startup_approvals_cover_known_tokens():
    transport = FakeTransport()
    transport.conditional['tok-up'] = BalanceAllowance(balance=5, allowance=5)
    service = ApprovalService(transport, clock=FakeClock())

    asyncio.run(service.run_startup_approvals(['tok-up']))
    status = service.status()
    assert status['collateral']['state'] == APPROVED
    assert status['conditional']['tok-up']['state'] == APPROVED
    assert status['conditional']['tok-up']['lastCheckedAt'].startswith('2024-01-10')
