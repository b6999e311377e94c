import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)


@dataclass
class FeeImpact:
    fee_usd: float
    fee_share_equivalent: float
    effective_price_shift: float

    def as_dict(self) -> Dict[str, float]:
        return {
            'feeUsd': self.fee_usd,
            'feeShareEquivalent': self.fee_share_equivalent,
            'effectivePriceShift': self.effective_price_shift,
        }


def compute_fee_impact(size_usd: float, price: float, fee_rate_bps: float) -> FeeImpact:
    """Estimated fee cost of a trade, for logs only; the venue applies the real fee."""
    if size_usd is None or price is None or fee_rate_bps is None or price <= 0:
        return FeeImpact(0.0, 0.0, 0.0)
    fee_usd = size_usd * fee_rate_bps / 10_000
    shares = size_usd / price
    return FeeImpact(
        fee_usd=round(fee_usd, 4),
        fee_share_equivalent=round(fee_usd / price, 2),
        effective_price_shift=round(fee_usd / shares, 4) if shares > 0 else 0.0,
    )


class FeeService:
    """Caches per-token fee rates and warns when a rate looks unusually high."""

    def __init__(
        self,
        transport,
        cache_ttl_ms: int = 30_000,
        alert_threshold_bps: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.transport = transport
        self.cache_ttl_ms = cache_ttl_ms
        self.alert_threshold_bps = alert_threshold_bps
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._cache: Dict[str, Dict[str, float]] = {}

    async def get_fee_rate_bps(self, token_id: Optional[str]) -> Optional[float]:
        if not token_id:
            return None
        now = self._clock()
        cached = self._cache.get(token_id)
        if cached and now - cached['fetched_at'] < self.cache_ttl_ms:
            return cached['rate_bps']

        try:
            bps = await self.transport.fetch_fee_rate_bps(token_id)
        except Exception as exc:
            logger.debug("Fee rate lookup failed for %s: %s", token_id[:12], exc)
            return cached['rate_bps'] if cached else None
        if bps is None:
            return None

        self._cache[token_id] = {'rate_bps': bps, 'fetched_at': now}
        metrics.update_fee_rate(token_id, bps)
        if bps > self.alert_threshold_bps:
            logger.warning(
                "High fee rate for token %s...: %s bps (threshold %s bps)",
                token_id[:12], bps, self.alert_threshold_bps,
            )
        return bps

    def snapshot(self) -> Dict[str, Any]:
        tokens = {}
        for token_id, entry in self._cache.items():
            tokens[token_id] = {
                'rateBps': entry['rate_bps'],
                'ratePct': f"{entry['rate_bps'] / 100:.2f}%",
                'fetchedAt': datetime.fromtimestamp(entry['fetched_at'] / 1000.0, tz=timezone.utc).isoformat(),
            }
        return {'tokens': tokens, 'cacheSize': len(self._cache), 'cacheTtlMs': self.cache_ttl_ms}

    def clear_cache(self) -> None:
        self._cache.clear()
