from contextlib import asynccontextmanager

from fastapi import FastAPI

from rapport.config import Settings, load_settings
from rapport.routes import router
from rapport.services import HttpImageService, HttpTurnService
from rapport.session import Conversation


def build_conversation(settings: Settings) -> Conversation:
    turn_service = HttpTurnService(
        settings.turn_service_url, settings.api_key, timeout=settings.service_timeout
    )
    image_service = HttpImageService(
        settings.image_service_url, settings.api_key, timeout=settings.service_timeout
    )
    return Conversation(turn_service, image_service, decay=settings.engagement_decay)


def create_app(conversation: Conversation | None = None) -> FastAPI:
    """Build the API app.

    Without an injected conversation the backends are configured from the
    environment; a missing API key raises ConfigError here, before serving.
    """
    if conversation is None:
        conversation = build_conversation(load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await conversation.aclose()

    app = FastAPI(title="Rapport", lifespan=lifespan)
    app.state.conversation = conversation
    app.include_router(router, prefix="/api")
    return app
