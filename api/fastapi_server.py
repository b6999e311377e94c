import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from config import config
from config.utils import get_config_section
from monitoring.logging_utils import setup_logging


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(system, run_system: bool = False) -> FastAPI:
    """Build the control API around a TradingSystem.

    With ``run_system`` the app lifespan also starts the poll loop and stops it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(system.start()) if run_system else None
        try:
            yield
        finally:
            if task is not None:
                await system.stop()
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Updown Trader API", version="1.0.0", lifespan=lifespan)

    api_cfg = get_config_section(system.config, 'api')
    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_cfg.get('cors_origins') or [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "system_running": system.running,
        }

    @app.get("/api/status")
    async def get_status():
        payload = await system.status()
        payload["timestamp"] = _now_iso()
        return payload

    @app.get("/api/positions")
    async def get_positions():
        positions = await system.positions()
        return {"positions": positions, "count": len(positions), "timestamp": _now_iso()}

    @app.post("/api/trading/start")
    async def start_trading():
        return {"tradingEnabled": system.start_trading(), "timestamp": _now_iso()}

    @app.post("/api/trading/stop")
    async def stop_trading():
        return {"tradingEnabled": system.stop_trading(), "timestamp": _now_iso()}

    @app.post("/api/mode/{mode}")
    async def switch_mode(mode: str):
        try:
            new_mode = await system.switch_mode(mode)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"mode": new_mode, "timestamp": _now_iso()}

    @app.post("/api/kill_switch")
    async def trigger_kill_switch(reason: str = 'manual'):
        cancelled = await system.handle_kill_switch(reason)
        return {
            "status": "Kill switch triggered",
            "cancelledOrders": cancelled,
            "timestamp": _now_iso(),
        }

    return app


if __name__ == "__main__":
    import uvicorn
    from main import TradingSystem

    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), json_lines=bool(monitoring_cfg.get('json_logs')))
    api_cfg = get_config_section(config, 'api')
    uvicorn.run(
        create_app(TradingSystem(config), run_system=True),
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
