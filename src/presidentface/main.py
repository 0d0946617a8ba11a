"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from presidentface.ml.image_classifier import ImageClassifier
    from presidentface.ml.model_manager import ModelBundle, ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from presidentface.api.routes import router
from presidentface.config import Settings, build_categories, get_settings
from presidentface.errors import ModelLoadError
from presidentface.ml.gateway import ClassifierGateway
from presidentface.ml.image_classifier import OnnxImageClassifier
from presidentface.ml.inference import InferencePool
from presidentface.ml.model_manager import OnnxModelManager
from presidentface.ml.preprocessing import ImageDecoder
from presidentface.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


def init_state(
    app: FastAPI,
    settings: Settings,
    model_manager: ModelManager | None = None,
    classifier_factory: Callable[[ModelBundle], ImageClassifier] = OnnxImageClassifier,
) -> None:
    """Build the shared services and attach them to ``app.state``."""
    inference_pool = InferencePool(settings)
    gateway = ClassifierGateway(
        model_manager if model_manager is not None else OnnxModelManager(settings),
        inference_pool,
        classifier_factory=classifier_factory,
    )
    categories = build_categories(settings)

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.gateway = gateway
    app.state.categories = categories
    app.state.sessions = SessionRegistry(
        gateway=gateway,
        decoder=ImageDecoder.from_settings(settings),
        categories=categories,
        pool=inference_pool,
        max_sessions=settings.max_sessions,
        top_k=settings.top_k,
        commentary_seed=settings.commentary_seed,
    )


async def _preload(gateway: ClassifierGateway) -> None:
    try:
        await gateway.load()
    except ModelLoadError:
        # Sessions report the failure and can retry the load.
        logger.warning("Initial classifier load failed; sessions may retry")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PresidentFace (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.hub_repo_id,
    )

    init_state(app, settings)
    preload = asyncio.create_task(_preload(app.state.gateway))

    logger.info("PresidentFace ready")
    yield

    logger.info("Shutting down PresidentFace")
    preload.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await preload
    app.state.sessions.clear()
    app.state.inference_pool.shutdown()
    logger.info("PresidentFace shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PresidentFace",
        description="President look-alike scoring over a pre-trained image classifier",
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
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("presidentface.main:app", host=settings.host, port=settings.port)
