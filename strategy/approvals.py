import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional


logger = logging.getLogger(__name__)

APPROVED = 'approved'
PENDING = 'pending'
FAILED = 'failed'
UNKNOWN = 'unknown'


@dataclass
class ApprovalStatus:
    state: str = UNKNOWN
    balance: float = 0.0
    allowance: float = 0.0
    last_checked_ms: float = 0.0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        checked = None
        if self.last_checked_ms > 0:
            checked = datetime.fromtimestamp(self.last_checked_ms / 1000.0, tz=timezone.utc).isoformat()
        return {
            'state': self.state,
            'balance': self.balance,
            'allowance': self.allowance,
            'lastCheckedAt': checked,
            'error': self.error,
        }


class ApprovalService:
    """Collateral and conditional-token balance/allowance checks with re-approval."""

    def __init__(self, transport, recheck_cooldown_ms: int = 300_000, clock: Optional[Callable[[], float]] = None):
        self.transport = transport
        self.recheck_cooldown_ms = recheck_cooldown_ms
        self._clock = clock or (lambda: time.time() * 1000.0)
        self.collateral = ApprovalStatus()
        self._conditional: Dict[str, ApprovalStatus] = {}
        self._last_check_ms: Dict[str, float] = {}

    async def check_and_approve_collateral(self) -> ApprovalStatus:
        now = self._clock()
        try:
            ba = await self.transport.fetch_balance_allowance()
            if not ba.allowance > 0:
                logger.info("Approving COLLATERAL allowance")
                await self.transport.update_balance_allowance()
                ba = await self.transport.fetch_balance_allowance()
            state = APPROVED if ba.allowance > 0 else PENDING
            self.collateral = ApprovalStatus(state, ba.balance, ba.allowance, now)
        except Exception as exc:
            logger.error("Collateral approval check failed: %s", exc)
            self.collateral = ApprovalStatus(FAILED, 0.0, 0.0, now, str(exc))
        return self.collateral

    async def check_and_approve_conditional(self, token_id: Optional[str], force: bool = False) -> ApprovalStatus:
        now = self._clock()
        if not token_id:
            return ApprovalStatus(FAILED, 0.0, 0.0, now, 'No token id provided')

        cached = self._conditional.get(token_id)
        last = self._last_check_ms.get(token_id, 0.0)
        if not force and cached is not None and now - last < self.recheck_cooldown_ms:
            return cached
        self._last_check_ms[token_id] = now

        try:
            ba = await self.transport.fetch_balance_allowance(token_id)
            # Only approve when there is something to sell.
            if ba.balance > 0 and not ba.allowance > 0:
                logger.info("Approving CONDITIONAL allowance for %s...", token_id[:12])
                await self.transport.update_balance_allowance(token_id)
                ba = await self.transport.fetch_balance_allowance(token_id)
            if ba.allowance > 0:
                state = APPROVED
            else:
                state = PENDING if ba.balance > 0 else UNKNOWN
            status = ApprovalStatus(state, ba.balance, ba.allowance, now)
        except Exception as exc:
            logger.error("Conditional approval check failed for %s...: %s", token_id[:12], exc)
            status = ApprovalStatus(FAILED, 0.0, 0.0, now, str(exc))
        self._conditional[token_id] = status
        return status

    async def run_startup_approvals(self, known_token_ids: Iterable[str] = ()) -> None:
        logger.info("Running startup approvals")
        await self.check_and_approve_collateral()
        logger.info("Collateral approval state: %s", self.collateral.state)
        for token_id in known_token_ids:
            status = await self.check_and_approve_conditional(token_id, force=True)
            logger.info("Conditional %s... approval state: %s", token_id[:12], status.state)

    async def get_sellable_qty(self, token_id: str) -> int:
        status = await self.check_and_approve_conditional(token_id)
        return int(math.floor(min(status.balance, status.allowance)))

    def conditional_status(self, token_id: str) -> Optional[ApprovalStatus]:
        return self._conditional.get(token_id)

    def status(self) -> Dict[str, Any]:
        return {
            'collateral': self.collateral.as_dict(),
            'conditional': {token: st.as_dict() for token, st in self._conditional.items()},
        }
