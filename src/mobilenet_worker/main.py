"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mobilenet_worker.api.routes import router
from mobilenet_worker.config import get_settings
from mobilenet_worker.ml.inference import InferencePool
from mobilenet_worker.ml.model_manager import OnnxModelManager
from mobilenet_worker.worker import InferenceWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting MobileNet worker (model_dir=%s, top_k=%s, max_concurrent=%s)",
        settings.model_dir,
        settings.top_k,
        settings.max_concurrent,
    )

    model_manager = OnnxModelManager(settings)
    inference_pool = InferencePool(settings)
    worker = InferenceWorker(settings, model_manager, inference_pool)
    app.state.model_manager = model_manager
    app.state.inference_pool = inference_pool
    app.state.worker = worker

    if settings.load_on_startup:
        await worker.load()

    logger.info("MobileNet worker started (ready=%s)", worker.ready)
    yield

    logger.info("Shutting down MobileNet worker")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("MobileNet worker shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="MobileNet Worker",
        description="Image classification with a truncated MobileNet and a retrained classifier head",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
