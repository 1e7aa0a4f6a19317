"""
Diabetify prediction service.

create_app() wires the shard router, stores, feature assembler, ML
transport and prediction worker into a FastAPI app. Startup opens and
migrates every shard, connects the bus, starts the worker and schedules
the old-job sweeper; shutdown reverses that.
"""

from contextlib import asynccontextmanager
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from diabetify.api import health, predict
from diabetify.config import Settings, load_settings
from diabetify.database.database import ShardRouter, utcnow
from diabetify.database.migration import init_shards
from diabetify.errors import DiabetifyError
from diabetify.repositories.activities import ActivityRepo
from diabetify.repositories.jobs import JobStore
from diabetify.repositories.predictions import PredictionStore
from diabetify.repositories.profiles import UserProfileRepo
from diabetify.repositories.users import UserRepo
from diabetify.services.features import FeatureAssembler
from diabetify.services.ml_transport import AmqpTransport
from diabetify.services.prediction_worker import PredictionWorker
from diabetify.services.whatif_cache import WhatIfCache
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)

CACHE_PURGE_INTERVAL_MINUTES = 5


def sweep_old_jobs(jobs: JobStore, retention_days: int) -> int:
    cutoff = utcnow() - timedelta(days=retention_days)
    try:
        return jobs.cleanup_old_jobs(cutoff)
    except DiabetifyError as e:
        logger.error(f"Old job sweep failed: {e.message}")
        return 0


def purge_what_if_results(cache: WhatIfCache) -> int:
    purged = cache.purge_expired()
    if purged:
        logger.info(f"Evicted {purged} expired what-if results")
    return purged


def start_scheduler(settings: Settings, jobs: JobStore, cache: WhatIfCache = None):
    """
    Background housekeeping: the old-job sweep (JOB_SWEEP_INTERVAL_MINUTES,
    0 when an external sweeper owns it) and what-if cache eviction.
    """
    scheduler = BackgroundScheduler()
    if settings.job_sweep_interval_minutes > 0:
        scheduler.add_job(
            sweep_old_jobs,
            "interval",
            minutes=settings.job_sweep_interval_minutes,
            args=[jobs, settings.job_retention_days],
            id="sweep_old_jobs",
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            f"Old job sweeper every {settings.job_sweep_interval_minutes} min "
            f"(retention {settings.job_retention_days} days)"
        )
    else:
        logger.info("Old job sweeper disabled")

    if cache is not None:
        scheduler.add_job(
            purge_what_if_results,
            "interval",
            minutes=CACHE_PURGE_INTERVAL_MINUTES,
            args=[cache],
            id="purge_what_if_results",
            max_instances=1,
            coalesce=True,
        )

    if not scheduler.get_jobs():
        return None
    scheduler.start()
    return scheduler


def create_app(settings: Settings = None, router: ShardRouter = None, transport=None) -> FastAPI:
    """
    Builds the application. Tests inject their own router (SQLite shards)
    and an in-memory transport; production builds both from settings.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        shard_router = router or ShardRouter.from_settings(settings)
        init_shards(shard_router)
        bus = transport or AmqpTransport.from_settings(settings)

        users = UserRepo(shard_router)
        jobs = JobStore(shard_router)
        predictions = PredictionStore(shard_router)
        assembler = FeatureAssembler(users, UserProfileRepo(shard_router), ActivityRepo(shard_router))
        worker = PredictionWorker(settings, jobs, predictions, users, assembler, bus)

        app.state.router = shard_router
        app.state.transport = bus
        app.state.users = users
        app.state.jobs = jobs
        app.state.predictions = predictions
        app.state.worker = worker

        await worker.start()
        scheduler = start_scheduler(settings, jobs, worker.cache)
        logger.info(f"Application startup complete ({len(shard_router.shards())} shards)")
        try:
            yield
        finally:
            await worker.stop()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            if router is None:
                shard_router.dispose()
            logger.info("Application shutdown complete")

    app = FastAPI(title="Diabetify Prediction API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DiabetifyError)
    async def diabetify_error_handler(request: Request, exc: DiabetifyError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(health.router)
    app.include_router(predict.router)
    return app
