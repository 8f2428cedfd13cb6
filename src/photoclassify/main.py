"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photoclassify.api.routes import router
from photoclassify.config import get_settings
from photoclassify.ml.image_classifier import OnnxImageClassifier
from photoclassify.ml.inference import InferencePool
from photoclassify.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


async def _evict_idle_models(manager: OnnxModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting photoclassify (device=%s, max_concurrent=%s, model=%s, target_size=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.target_size,
    )

    model_manager = OnnxModelManager(settings)
    classifier = OnnxImageClassifier(model_manager, settings.classification_model, top_k=settings.top_k)
    input_size = model_manager.get_spec(settings.classification_model).input_size
    if input_size != settings.target_size:
        logger.warning(
            "target_size=%s does not match %s input size %s; classification will fail",
            settings.target_size,
            settings.classification_model,
            input_size,
        )

    inference_pool = InferencePool(settings)
    app.state.model_manager = model_manager
    app.state.classifier = classifier
    app.state.inference_pool = inference_pool
    eviction = asyncio.create_task(_evict_idle_models(model_manager, settings.eviction_interval))

    logger.info("photoclassify ready")
    yield

    logger.info("Shutting down photoclassify")
    eviction.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("photoclassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="photoclassify",
        description="Photo classification API: centered square crop, resize, and ranked labels",
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


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("photoclassify.main:app", host=settings.host, port=settings.port)
