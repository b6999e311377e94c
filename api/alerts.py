import asyncio
import logging
import time
import aiohttp
from typing import Dict, Optional
from config import config


logger = logging.getLogger(__name__)


def _configured_url() -> Optional[str]:
    section = config.get('monitoring') or {}
    url = section.get('alert_webhook')
    # Empty and unresolved ${ENV} placeholders mean disabled
    if not url or str(url).startswith('${'):
        return None
    return str(url)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else _configured_url()
        if url:
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def kill_switch_alert(self, reason: str):
        await self.send_alert(
            'kill_switch',
            f'Kill switch triggered: {reason}',
            'critical',
            {'reason': reason}
        )

    async def circuit_breaker_alert(self, consecutive_losses: int, cooldown_ms: float):
        await self.send_alert(
            'circuit_breaker',
            f'Circuit breaker tripped after {consecutive_losses} consecutive losses',
            'warning',
            {'consecutive_losses': consecutive_losses, 'cooldown_ms': cooldown_ms}
        )

    async def daily_loss_alert(self, realized_pnl: float, limit_usd: float):
        await self.send_alert(
            'daily_loss',
            f'Daily loss limit reached: {realized_pnl:.2f} <= -{limit_usd:.2f}',
            'critical',
            {'realized_pnl': realized_pnl, 'limit_usd': limit_usd}
        )

    async def mode_switch_alert(self, mode: str):
        await self.send_alert(
            'mode_switch',
            f'Execution mode switched to {mode}',
            'info',
            {'mode': mode}
        )


alert_webhook = AlertWebhook()
