"""
FastAPI Application — admission boundary and status endpoints.

Provides:
- POST /api/v1/produce        admit one work item (422 on a malformed item)
- GET  /api/v1/status         queue depth, dead-letter depth, store health
- GET  /api/v1/dead-letters   oldest quarantined records, for inspection
- GET  /health                liveness

The consumer runs inside the same process, started from the lifespan.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import get_settings
from job_queue.errors import StoreUnavailable, ValidationError
from job_queue.runtime import Runtime, open_runtime
from utils.log_config import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_format, settings.debug)

    async with open_runtime(settings) as runtime:
        app.state.runtime = runtime
        if getattr(app.state, "start_consumer", True):
            await runtime.consumer.start_background()
        logger.info("record_relay_started", queue=runtime.store.main_queue)
        yield
    logger.info("record_relay_stopped")


app = FastAPI(
    title="RecordRelay API",
    description="Reliable delivery of record updates to a downstream service",
    version="1.0.0",
    lifespan=lifespan,
)


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ProduceRequest(BaseModel):
    payload: dict[str, Any]
    actId: Optional[str] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    runtime = _runtime(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": runtime.store.connection_state.value,
        "consumer_running": runtime.consumer.running,
    }


# ══════════════════════════════════════════════════════════════
#  ADMISSION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/produce")
async def produce(req: ProduceRequest, request: Request):
    runtime = _runtime(request)
    try:
        message_id = await runtime.producer.submit(req.payload, owner_id=req.actId)
    except ValidationError as e:
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "invalid item", "problems": e.problems},
        )
    except StoreUnavailable as e:
        logger.error("produce_store_unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="queue store unavailable, try again")
    return {"success": True, "messageId": message_id}


# ══════════════════════════════════════════════════════════════
#  STATUS & DEAD LETTERS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/status")
async def queue_status(request: Request):
    status = await _runtime(request).reporter.status()
    return status.model_dump(mode="json")


@app.get("/api/v1/dead-letters")
async def dead_letters(request: Request, limit: int = Query(20, ge=1, le=500)):
    runtime = _runtime(request)
    try:
        records = await runtime.dead_letters.inspect(limit)
        total = await runtime.dead_letters.count()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "total": total,
        "records": [r.model_dump(mode="json", by_alias=True) for r in records],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
