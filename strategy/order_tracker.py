import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

_STATUS_MAP = {
    'filled': 'filled',
    'matched': 'filled',
    'cancelled': 'cancelled',
    'canceled': 'cancelled',
    'live': 'open',
    'open': 'open',
}
_ACTIVE = ('pending', 'open')
_DONE = ('filled', 'cancelled')


@dataclass
class TrackedOrder:
    order_id: str
    token_id: str
    side: str
    price: float
    size: float
    status: str = 'pending'
    created_ms: float = 0.0
    updated_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileReport:
    reconciled: int = 0
    filled: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)


class OrderTracker:
    """In-memory lifecycle of orders this process placed on the venue."""

    def __init__(self, transport, clock: Optional[Callable[[], float]] = None):
        self.transport = transport
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._orders: Dict[str, TrackedOrder] = {}
        self._last_reconcile_ms = 0.0

    def track(self, order_id: Optional[str], token_id: str, side: str, price: float, size: float, **extra: Any) -> None:
        if not order_id:
            return
        self._orders[order_id] = TrackedOrder(
            order_id=order_id,
            token_id=token_id,
            side=side,
            price=price,
            size=size,
            created_ms=self._clock(),
            metadata=extra,
        )

    def get(self, order_id: str) -> Optional[TrackedOrder]:
        return self._orders.get(order_id)

    def _set_status(self, order: TrackedOrder, status: str) -> None:
        order.status = status
        order.updated_ms = self._clock()

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self.transport.cancel_order(order_id)
        except Exception as exc:
            logger.error("Cancel order %s failed: %s", order_id, exc)
            return False
        order = self._orders.get(order_id)
        if order is not None:
            self._set_status(order, 'cancelled')
        return True

    async def cancel_all(self) -> int:
        try:
            await self.transport.cancel_all_orders()
        except Exception as exc:
            logger.error("Cancel-all failed: %s", exc)
            return 0
        cancelled = 0
        for order in self._orders.values():
            if order.status in _ACTIVE:
                self._set_status(order, 'cancelled')
                cancelled += 1
        logger.info("Cancel-all completed: %s tracked orders", cancelled)
        return cancelled

    async def reconcile_pending(self, min_interval_ms: float = 5_000) -> ReconcileReport:
        report = ReconcileReport()
        now = self._clock()
        if now - self._last_reconcile_ms < min_interval_ms:
            return report
        self._last_reconcile_ms = now

        for order_id, order in list(self._orders.items()):
            if order.status not in _ACTIVE:
                continue
            try:
                remote = await self.transport.fetch_order(order_id)
            except Exception as exc:
                logger.debug("Reconcile of %s deferred: %s", order_id, exc)
                continue
            report.reconciled += 1
            if not remote:
                self._set_status(order, 'unknown')
                continue
            raw_status = str(remote.get('status') or remote.get('order_status') or '').lower()
            status = _STATUS_MAP.get(raw_status)
            if status is None:
                continue
            self._set_status(order, status)
            if status == 'filled':
                report.filled.append(order_id)
            elif status == 'cancelled':
                report.cancelled.append(order_id)
        return report

    def orders(self, status: Optional[str] = None) -> List[TrackedOrder]:
        items = list(self._orders.values())
        if status:
            return [o for o in items if o.status == status]
        return items

    def snapshot(self) -> Dict[str, Any]:
        items = list(self._orders.values())
        counts = {name: sum(1 for o in items if o.status == name) for name in ('pending', 'open', 'filled', 'cancelled')}
        return {'total': len(items), **counts, 'orders': [asdict(o) for o in items]}

    def prune_old(self, max_age_ms: float = 30 * 60_000) -> int:
        cutoff = self._clock() - max_age_ms
        stale = [
            order_id for order_id, order in self._orders.items()
            if order.status in _DONE and (order.updated_ms or order.created_ms) < cutoff
        ]
        for order_id in stale:
            del self._orders[order_id]
        return len(stale)
