from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from audiocache.config import AppConfig
from audiocache.metadata import MetadataService
from audiocache.runner import SubprocessRunner
from audiocache.scheduler import RunnerFactory, Scheduler
from audiocache.store import JobStore
from audiocache.web.api import router as api_router

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None, runner_factory: RunnerFactory = SubprocessRunner) -> FastAPI:
    if config is None:
        try:
            load_dotenv()
        except OSError as exc:
            logger.warning("Could not load .env (%s)", exc)
        config = AppConfig.from_env()

    config.seed_directories()
    store = JobStore.from_config(config)
    store.rebuild()
    scheduler = Scheduler(config, store, runner_factory=runner_factory)
    metadata = MetadataService(store, api_key=config.metadata_api_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        scheduler.shutdown()

    app = FastAPI(title="Audiocache", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.scheduler = scheduler
    app.state.metadata = metadata

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router)
    return app
