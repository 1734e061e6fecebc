from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .configs import BuildConfigStore
from .interfaces import JobQueue, KeyValueStore
from .jobs import cancel_build
from .reaper import TimeoutReaper
from .reporter import BuildStatusReporter
from .settings import Settings

# -------------------- Schemas --------------------

class GateState(BaseModel):
    job_id: str
    running_build: Optional[int]
    running_ttl: Optional[int]
    last_running_build: Optional[int]
    waiting: list[int]

class CancelResponse(BaseModel):
    job_id: str
    build_id: int
    stop_enqueued: bool

class SweepResponse(BaseModel):
    reaped: list[str]

# -------------------- App --------------------

def _as_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None

def create_app(
    store: KeyValueStore,
    queue: JobQueue,
    settings: Settings,
    reaper: Optional[TimeoutReaper] = None,
) -> FastAPI:
    app = FastAPI(title="buildgate control plane")
    keys = settings.keys
    configs = BuildConfigStore(store, keys)
    if reaper is None:
        reaper = TimeoutReaper(store, configs, BuildStatusReporter(configs), keys)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/jobs/{job_id}/gate", response_model=GateState)
    async def gate_state(job_id: str):
        running = await store.get(keys.running(job_id))
        last_running = await store.get(keys.last_running(job_id))
        waiting = await store.lrange(keys.waiting(job_id), 0, -1)
        ttl = await store.ttl(keys.running(job_id)) if running is not None else None
        return GateState(
            job_id=job_id,
            running_build=_as_int(running),
            running_ttl=ttl,
            last_running_build=_as_int(last_running),
            waiting=sorted(int(b) for b in waiting if b.isdigit()),
        )

    @app.post("/jobs/{job_id}/builds/{build_id}/cancel", response_model=CancelResponse)
    async def cancel(job_id: str, build_id: int):
        if not await cancel_build(settings, store, queue, job_id, build_id):
            raise HTTPException(status_code=404, detail="Build not found")
        return CancelResponse(job_id=job_id, build_id=build_id, stop_enqueued=True)

    @app.post("/reaper/sweep", response_model=SweepResponse)
    async def sweep():
        return SweepResponse(reaped=await reaper.sweep())

    return app
