import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from diabetify.errors import BusUnavailable

router = APIRouter()


@router.get("/")
def read_root():
    return {"status": "online", "message": "Diabetify Prediction API"}


@router.get("/health")
async def health_check(request: Request):
    """Readiness: worker state, bus reachability and a ping per shard."""
    state = request.app.state
    worker = state.worker.status()

    bus = {"ok": True}
    try:
        await state.transport.health_check()
    except BusUnavailable as e:
        bus = {"ok": False, "message": e.message}

    shards = await asyncio.to_thread(state.router.check_health)
    healthy = worker["running"] and bus["ok"] and all(shards.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "worker": worker,
            "bus": bus,
            "shards": shards,
        },
    )
