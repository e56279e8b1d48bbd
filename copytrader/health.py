"""
Health and stats HTTP endpoints.

    GET /health        liveness, uptime, executor mode
    GET /api/health    database ping
    GET /api/stats     copy trade counts (optional ?follower_id=)
    GET /api/mirrors/{mirror_id}

Served by `python run.py serve`.
"""
import time
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import text

from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def create_health_app(runtime) -> FastAPI:
    app = FastAPI(title="Copy Trader Health")
    started = time.time()

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "uptime_seconds": int(time.time() - started),
            "executor": runtime.executor.mode,
            "in_flight": runtime.service.in_flight,
            "environment": runtime.config.environment,
        }

    @app.get("/api/health")
    async def api_health():
        try:
            with runtime.db.get_session() as session:
                session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("HEALTH_DB_PING_FAILED", error=str(e))
            return JSONResponse(
                content={"status": "unhealthy", "database": f"error: {str(e)[:80]}"},
                status_code=503,
            )
        return {"status": "healthy", "database": "connected"}

    @app.get("/api/stats")
    async def api_stats(follower_id: Optional[str] = None):
        return await runtime.service.get_stats(follower_id)

    @app.get("/api/mirrors/{mirror_id}")
    async def api_mirror(mirror_id: str):
        mirror = await runtime.mirrors.get(mirror_id)
        if mirror is None:
            raise HTTPException(status_code=404, detail="Copy trade not found")
        return {
            "id": mirror.id,
            "follower_id": mirror.follower_id,
            "pair": mirror.pair,
            "side": mirror.side.value,
            "status": mirror.status.value,
            "venue_order_id": mirror.venue_order_id,
            "executed_quantity": str(mirror.executed_quantity) if mirror.executed_quantity is not None else None,
            "executed_price": str(mirror.executed_price) if mirror.executed_price is not None else None,
            "error_message": mirror.error_message,
            "pnl": str(mirror.pnl) if mirror.pnl is not None else None,
            "exit_price": str(mirror.exit_price) if mirror.exit_price is not None else None,
        }

    return app
