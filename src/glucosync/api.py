"""glucosync HTTP surface — FastAPI application entry point.

Exposes the producer (reading ingest) and a read-only view of the consumer
for diagnostics.  Nothing here renders a reading.

Run locally:
    uvicorn glucosync.api:create_app --factory --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncGenerator

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from pydantic import Field

from glucosync.config import Settings, get_settings
from glucosync.config_loader import load_refresh_config
from glucosync.engine import SyncPair, build_pair
from glucosync.models import GlucoSyncBase, GlucoseReading
from glucosync.transport import ChannelReachability

logger = logging.getLogger("glucosync.api")

router = APIRouter(tags=["sync"])


# ---------- Response schemas ----------


class DispatchRead(GlucoSyncBase):
    snapshot: dict[str, Any]
    sent: list[str]
    failed: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)


class ComplicationRead(GlucoSyncBase):
    snapshot: dict[str, Any] | None
    tier: str
    minutes_ago: int | None
    time_string: str
    freshness: float
    urgent_cadence: bool
    refresh_instants: list[datetime]
    debug: str


# ---------- Dependencies ----------


def get_pair(request: Request) -> SyncPair:
    return request.app.state.pair


Pair = Annotated[SyncPair, Depends(get_pair)]


# ---------- Routes ----------


@router.get("/health")
async def health_check(request: Request, pair: Pair) -> dict:
    """Liveness probe.  Reports whether the consumer holds a reading."""
    settings: Settings = request.app.state.settings
    consumer = pair.consumer
    return {
        "status": "healthy" if consumer.running else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "has_snapshot": consumer.merger.current() is not None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/readings", response_model=DispatchRead, status_code=202)
async def publish_reading(
    reading: GlucoseReading,
    pair: Pair,
    consumer_live: bool = Query(default=True),
) -> Any:
    """Build a snapshot from ``reading`` and push it over the channels."""
    snapshot, outcome = pair.producer.publish(
        reading, ChannelReachability(consumer_live=consumer_live)
    )
    return DispatchRead(
        snapshot=snapshot.model_dump(mode="json", by_alias=True),
        sent=[k.value for k in outcome.sent],
        failed={k.value: msg for k, msg in outcome.failed.items()},
        skipped=[k.value for k in outcome.skipped],
    )


@router.get("/complication", response_model=ComplicationRead)
async def complication_status(pair: Pair) -> Any:
    """Consumer view: latest snapshot, freshness tier and upcoming refreshes."""
    status = pair.consumer.status()
    return ComplicationRead(
        snapshot=status.snapshot.model_dump(mode="json", by_alias=True) if status.snapshot else None,
        tier=status.tier.value,
        minutes_ago=status.minutes_ago,
        time_string=status.time_string,
        freshness=status.freshness,
        urgent_cadence=bool(status.plan and status.plan.urgent),
        refresh_instants=status.refresh_instants,
        debug=status.debug,
    )


# ---------- App factory ----------


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def create_app(pair: SyncPair | None = None, settings: Settings | None = None) -> FastAPI:
    s = settings or get_settings()
    configure_logging(s)

    if pair is None:
        config = load_refresh_config(s.refresh_config_path) if s.refresh_config_path else None
        pair = build_pair(config=config, settings=s)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the consumer with the app; the immediate channel is live while it runs."""
        logger.info("Starting %s v%s [%s]", s.app_name, s.app_version, s.environment)
        await pair.consumer.start()
        pair.immediate.live = True
        yield
        pair.immediate.live = False
        await pair.consumer.stop()
        logger.info("%s shut down", s.app_name)

    app = FastAPI(
        title="glucosync",
        description="Staleness-aware glucose snapshot sync and adaptive refresh engine.",
        version=s.app_version,
        lifespan=lifespan,
    )
    app.state.pair = pair
    app.state.settings = s
    app.include_router(router)
    return app
