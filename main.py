import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from api.alerts import alert_webhook
from api.metrics import get_metrics_port, metrics, start_metrics_server
from config import config, load_live_settings, load_trading_config
from config.utils import get_config_section
from ingest.signal_feed import SignalFeed
from monitoring.async_utils import run_periodic, run_tasks_with_cleanup
from monitoring.decision_auditor import DecisionAuditor
from monitoring.logging_utils import setup_logging
from monitoring.trade_stats import live_trade_stats, paper_trade_stats
from orchestration.persistence import LiveTradeLog, PaperLedger
from orchestration.trading_engine import TradingEngine
from orchestration.trading_state import TradingState
from strategy.execution import LIVE, PAPER, PRODUCTION_GATE, ModeManager
from strategy.execution_types import PositionNotFoundError
from strategy.live_executor import LiveExecutor
from strategy.simulators.paper import PaperExecutor
from strategy.transports.polymarket import PolymarketTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire configuration, executors, the decision engine and the poll loop together."""

    def __init__(
        self,
        config_obj=None,
        transport=None,
        signal_feed: Optional[SignalFeed] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config_obj or config
        self.clock = clock
        self.engine_cfg = get_config_section(self.config, 'engine')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.trading_config = load_trading_config(self.config)
        self.live_settings = load_live_settings(self.config)

        self.poll_interval_s = float(self.engine_cfg.get('poll_interval_s', 2.0))
        self.transport = transport or PolymarketTransport(self.live_settings)
        self.signal_feed = signal_feed or SignalFeed(self.engine_cfg.get('signal_source'))
        self.auditor = DecisionAuditor(self.engine_cfg.get('decision_audit_log'))

        paper = PaperExecutor(
            self.trading_config,
            PaperLedger(self.engine_cfg.get('paper_ledger_path', 'data/paper_ledger.json')),
            transport=self.transport,
            clock=clock,
        )
        live = None
        if self.live_settings.enabled:
            live = LiveExecutor(
                self.live_settings.apply_to(self.trading_config),
                self.live_settings,
                self.transport,
                LiveTradeLog(self.engine_cfg.get('live_trade_log_path', 'data/live_trades.jsonl')),
                clock=clock,
            )
        gate = self.live_settings.env_gate
        initial = LIVE if live is not None and (not gate or gate == PRODUCTION_GATE) else PAPER
        self.mode_manager = ModeManager(paper, live, initial_mode=initial, env_gate=gate)

        self.engine = self._build_engine()
        self.engine.trading_enabled = bool(self.engine_cfg.get('trading_enabled_on_start', False))
        self.last_signals = None
        self.running = False
        self._initialized = set()

    def _build_engine(self) -> TradingEngine:
        executor = self.mode_manager.get_active_executor()
        cfg = self.trading_config
        if executor.get_mode() == LIVE:
            cfg = self.live_settings.apply_to(cfg)
        return TradingEngine(
            executor, cfg, TradingState(clock=self.clock), auditor=self.auditor, alerts=alert_webhook
        )

    async def initialize(self):
        await self._ensure_initialized()
        metrics.update_trading_enabled(self.engine.trading_enabled)
        logger.info(
            "Trading system initialized in %s mode (live available: %s)",
            self.mode_manager.mode,
            self.mode_manager.is_live_available(),
        )

    async def _ensure_initialized(self):
        executor = self.engine.executor
        if id(executor) in self._initialized:
            return
        await self.engine.initialize()
        self._initialized.add(id(executor))

    async def tick(self):
        signals = await self.signal_feed.fetch()
        if signals is None:
            return
        self.last_signals = signals
        try:
            await self.engine.process_signals(signals)
        except PositionNotFoundError as exc:
            logger.critical("Engine state corrupted, disabling trading: %s", exc)
            self.engine.disable('state corruption')
        except Exception:
            logger.exception("Decision tick failed")

    async def reconcile_orders(self):
        executor = self.engine.executor
        if not isinstance(executor, LiveExecutor):
            return
        try:
            await executor.reconcile_orders()
        except Exception as exc:
            logger.error("Order reconcile loop error: %s", exc)

    def start_trading(self) -> bool:
        self.engine.enable()
        return self.engine.trading_enabled

    def stop_trading(self) -> bool:
        self.engine.disable('manual')
        return self.engine.trading_enabled

    async def switch_mode(self, mode: str) -> str:
        previous = self.mode_manager.mode
        new_mode = self.mode_manager.switch_mode(mode)
        if new_mode != previous:
            # Session state never carries across executors.
            self.engine = self._build_engine()
            metrics.update_trading_enabled(False)
            await self._ensure_initialized()
            await alert_webhook.mode_switch_alert(new_mode)
        return new_mode

    async def handle_kill_switch(self, reason: str) -> int:
        logger.error("Kill switch triggered: %s", reason)
        cancelled = await self.engine.trigger_kill_switch(reason)
        logger.info("Kill switch cancelled %s open orders", cancelled)
        return cancelled

    async def positions(self) -> List[Dict[str, Any]]:
        if self.last_signals is None:
            return []
        executor = self.engine.executor
        positions = (await executor.get_open_positions(self.last_signals)).unwrap_or([])
        if positions:
            marked = await executor.mark_positions(positions, self.last_signals)
            positions = marked.unwrap_or(positions)
        return [p.as_dict() for p in positions]

    async def status(self) -> Dict[str, Any]:
        engine = self.engine
        state = engine.state
        balance = await engine.executor.get_balance()
        payload: Dict[str, Any] = {
            'mode': self.mode_manager.mode,
            'liveAvailable': self.mode_manager.is_live_available(),
            'tradingEnabled': engine.trading_enabled,
            'entriesBlocked': engine.entries_blocked,
            'lastEntryStatus': engine.last_entry_status.as_dict(),
            'balance': balance.value.as_dict() if balance.ok else None,
            'todayRealizedPnl': state.today_realized_pnl,
            'consecutiveLosses': state.consecutive_losses,
            'circuitBreakerTrippedAtMs': state.circuit_breaker_tripped_at_ms,
            'market': self.last_signals.market_slug if self.last_signals else None,
            'metricsPort': get_metrics_port(),
        }
        executor = engine.executor
        if isinstance(executor, LiveExecutor):
            payload['live'] = executor.status()
            payload['tradeStats'] = live_trade_stats(executor.realized_pnl(), executor.trade_log.read())
        elif isinstance(executor, PaperExecutor):
            payload['tradeStats'] = paper_trade_stats(executor.ledger.trades)
        return payload

    async def start(self):
        self.running = True
        await self.initialize()

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))

        balance = await self.engine.executor.get_balance()
        if balance.ok:
            metrics.update_balance(balance.value.balance)

        tasks = [
            asyncio.create_task(run_periodic('tick', self.poll_interval_s, self.tick, lambda: self.running)),
        ]
        if self.mode_manager.is_live_available():
            interval_s = self.live_settings.order_reconcile_interval_ms / 1000.0
            tasks.append(asyncio.create_task(
                run_periodic('reconcile', interval_s, self.reconcile_orders, lambda: self.running)
            ))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running and not self._initialized:
            return
        self.running = False
        await self.signal_feed.close()
        for executor in self.mode_manager.executors():
            await executor.close()
        self._initialized.clear()


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), json_lines=bool(monitoring_cfg.get('json_logs')))
    asyncio.run(main())
