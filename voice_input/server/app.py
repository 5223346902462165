"""FastAPI application factory for the voice-input server.

``create_app()`` builds one explicit VoiceInputService (or accepts one),
attaches it to ``app.state.voice_input`` and manages its lifetime through
the lifespan hook.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from voice_input import __version__
from voice_input.server.routes import router
from voice_input.stt.errors import ConfigurationError
from voice_input.stt.types import load_recognition_config
from voice_input.stt.voice_input_service import VoiceInputService

logger = logging.getLogger(__name__)


def create_app(service: VoiceInputService | None = None) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    The returned app has:
    * ``app.state.voice_input`` — the :class:`VoiceInputService` instance
    * The ``/health``, ``/recognition/*``, ``/language`` and SSE routes
    * A lifespan that initialises the service from the environment (unless
      it is already initialised) and closes it on shutdown
    """
    voice_input = service or VoiceInputService()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Voice input server starting up")
        if not voice_input.is_initialized:
            try:
                await voice_input.initialize(load_recognition_config())
            except ConfigurationError as exc:
                logger.warning("Recognition disabled: %s", exc)
        try:
            yield
        finally:
            logger.info("Voice input server shutting down")
            await voice_input.aclose()

    app = FastAPI(title="Voice Input", version=__version__, lifespan=lifespan)
    app.state.voice_input = voice_input
    app.include_router(router)

    logger.info("FastAPI app created")
    return app
