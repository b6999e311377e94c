import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _monitoring_value(key: str, default=None):
    section = config.get('monitoring') or {}
    return section.get(key, default)


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_value('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_value('metrics_port_file')
    if not path_value or str(path_value).startswith('${'):
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.ticks = Counter('engine_ticks_total', 'Decision ticks processed', ['mode'])
        self.tick_latency = Histogram('engine_tick_latency_seconds', 'Wall time of one decision tick')

        self.entries = Counter('entries_total', 'Positions opened', ['mode', 'side'])
        self.entry_rejections = Counter('entry_rejections_total', 'Open attempts the executor did not fill', ['mode'])
        self.exits = Counter('exits_total', 'Positions closed', ['mode', 'reason'])
        self.blocked_ticks = Counter('entry_blocked_total', 'Ticks where entry was blocked', ['blocker'])

        self.grace_starts = Counter('max_loss_grace_started_total', 'Max-loss grace windows opened')
        self.circuit_breaker_trips = Counter('circuit_breaker_trips_total', 'Consecutive-loss circuit breaker trips')
        self.kill_switch_triggers = Counter('kill_switch_triggers_total', 'Total kill switch triggers', ['reason'])
        self.transport_errors = Counter('transport_errors_total', 'Venue calls that fell back', ['action'])

        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.daily_pnl = Gauge('pnl_daily_realized', 'Realized PnL since local midnight')
        self.balance = Gauge('account_balance_usd', 'Current account balance')
        self.open_positions = Gauge('open_positions', 'Open positions after the last tick', ['mode'])
        self.trading_enabled = Gauge('trading_enabled', 'Whether new entries are allowed')

        self.fee_rate_bps = Gauge('fee_rate_bps', 'Last fetched fee rate', ['token'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to return/ACK')

    def record_tick(self, mode: str, latency_seconds: Optional[float] = None):
        self.ticks.labels(mode=mode).inc()
        if latency_seconds is not None:
            self.tick_latency.observe(latency_seconds)

    def record_entry(self, mode: str, side: str):
        self.entries.labels(mode=mode, side=side).inc()

    def record_entry_rejected(self, mode: str):
        self.entry_rejections.labels(mode=mode).inc()

    def record_exit(self, mode: str, reason: str):
        # Max-loss reasons embed a dollar amount; collapse them to one label.
        label = 'Max Loss' if reason.startswith('Max Loss') else reason.split(' (')[0]
        self.exits.labels(mode=mode, reason=label).inc()

    def record_blocked(self, blockers):
        if not blockers:
            return
        self.blocked_ticks.labels(blocker=blockers[0].split(' ')[0].rstrip(':=')).inc()

    def record_grace_start(self):
        self.grace_starts.inc()

    def record_circuit_breaker_trip(self):
        self.circuit_breaker_trips.inc()

    def record_kill_switch(self, reason: str):
        self.kill_switch_triggers.labels(reason=reason).inc()

    def record_transport_error(self, action: str):
        self.transport_errors.labels(action=action).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_daily_pnl(self, pnl: float):
        self.daily_pnl.set(pnl)

    def update_balance(self, balance: float):
        self.balance.set(balance)

    def update_open_positions(self, mode: str, count: int):
        self.open_positions.labels(mode=mode).set(count)

    def update_trading_enabled(self, enabled: bool):
        self.trading_enabled.set(1 if enabled else 0)

    def update_fee_rate(self, token_id: str, bps: float):
        self.fee_rate_bps.labels(token=token_id[:12]).set(bps)

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


def get_metrics_port() -> Optional[int]:
    return _METRICS_PORT


metrics = MetricsCollector()
