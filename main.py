from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from tracker.app import TrackerApp
from tracker.config import Config
from tracker.models import ProbeResult

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger(__name__)
config = Config()
tracker_app = TrackerApp(config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await tracker_app.start()
    logger.info("Service tracker started", port=config.server_port, services=len(tracker_app.registrations))
    yield
    await tracker_app.stop()
    logger.info("Service tracker stopped")


app = FastAPI(
    title="Service Tracker",
    description="Tracks reachability and population of remote services and syncs dashboards in real time",
    version="0.1.0",
    lifespan=lifespan,
)


class ProbeResultIn(BaseModel):
    address: str
    player_count: Optional[int] = Field(default=None, alias="playerCount", ge=0)
    error: Optional[str] = None


class ProbeRound(BaseModel):
    timestamp: Optional[int] = None
    results: List[ProbeResultIn]


@app.get("/metrics", response_class=Response)
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@app.get("/healthz")
async def health():
    """Liveness probe endpoint."""
    return {"status": "ok"}


@app.get("/readyz")
async def ready():
    """Readiness probe endpoint. Ready once history and records are loaded."""
    if not tracker_app.ready:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ready", "backend": config.database_backend if config.log_to_database else None}


@app.post("/pings")
async def ingest_round(probe_round: ProbeRound):
    """Accept one probing round from the prober and push it to connected dashboards."""
    results = [ProbeResult(r.address, r.player_count, r.error) for r in probe_round.results]
    message = await tracker_app.handle_round(results, probe_round.timestamp)
    return {"timestamp": message.timestamp, "updateHistoryGraph": message.update_history_graph}


@app.websocket("/")
async def sync(websocket: WebSocket):
    await tracker_app.sync_server.handle(websocket)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.server_host,
        port=config.server_port,
        log_config=None,  # Use structlog instead of uvicorn's default logger
    )
