"""
health_api.py — Health endpoint for the market simulator.

    GET /health, GET /  →  {status, uptime, feed, agents, timestamp}

Returns 200 with status "ok" while the price feed is running and ticked
within the staleness window (three feed intervals); otherwise 503 with
status "degraded". Any other path is a 404.

Usage:
    app = create_app(feed, scheduler, start_time=time.time())
    server = HealthServer(app, port=3001)
    task = server.start()
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger

from clock import Clock, SystemClock

if TYPE_CHECKING:
    from price_feed import PriceFeed
    from scheduler import AgentScheduler


STALE_INTERVALS = 3


def health_payload(
    feed: "PriceFeed",
    scheduler: Optional["AgentScheduler"],
    start_time: float,
    now: float,
) -> Dict[str, Any]:
    healthy = feed.running and feed.is_fresh(STALE_INTERVALS * feed.interval)
    return {
        "status": "ok" if healthy else "degraded",
        "uptime": round(now - start_time, 1),
        "feed": {
            "running": feed.running,
            "lastPrices": {s: p.to_dict() for s, p in feed.latest_prices.items()},
        },
        "agents": {
            "running": bool(scheduler and scheduler.running),
            "count": len(scheduler.agents) if scheduler else 0,
        },
        "timestamp": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
    }


def create_app(
    feed: "PriceFeed",
    scheduler: Optional["AgentScheduler"] = None,
    start_time: Optional[float] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    clock = clock or SystemClock()
    started = clock.now() if start_time is None else start_time

    app = FastAPI(title="Market Simulator Health", version="1.0.0")

    @app.get("/health")
    @app.get("/")
    async def health() -> JSONResponse:
        body = health_payload(feed, scheduler, started, clock.now())
        return JSONResponse(body, status_code=200 if body["status"] == "ok" else 503)

    return app


class _EmbeddedServer(uvicorn.Server):
    # The service owns SIGINT/SIGTERM; uvicorn must not install its own handlers.

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class HealthServer:
    """uvicorn server run as a task on the service's event loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 3001) -> None:
        self.port = port
        config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        self._server = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        logger.info(f"Health endpoint on :{self.port}/health")
        self._task = asyncio.create_task(self._server.serve(), name="health-server")
        return self._task

    async def stop(self) -> None:
        self._server.should_exit = True
        if self._task is not None:
            await self._task
