"""HTTP routes for the voice-input server.

Endpoints
---------
GET  /health               Service state, mode, device availability,
                           permission state and subscriber counts.

POST /recognition/start    Start a session: ``{"mode": "push-to-talk"}``.

POST /recognition/stop     Stop the current session.

POST /language             Change the recognition language for the next
                           session: ``{"language": "de-DE"}``.

GET  /results              Recognition results as Server-Sent Events.
GET  /errors               Recognition errors as Server-Sent Events.
GET  /state                Recognition state changes as Server-Sent Events.
GET  /levels               Input levels (0-100) as Server-Sent Events.
"""

import asyncio
import json
import logging
from typing import Callable

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from voice_input import __version__
from voice_input.stt.types import RecognitionMode
from voice_input.stt.voice_input_service import VoiceInputService

logger = logging.getLogger(__name__)

router = APIRouter()

_SSE_QUEUE_SIZE = 256
_SSE_PING_INTERVAL = 15.0


class StartRequest(BaseModel):
    mode: RecognitionMode = RecognitionMode.PUSH_TO_TALK


class LanguageRequest(BaseModel):
    language: str = Field(min_length=1)


def _get_service(request: Request) -> VoiceInputService:
    """Retrieve the shared VoiceInputService from application state."""
    return request.app.state.voice_input


def _session_status(service: VoiceInputService) -> dict:
    return {
        "state": service.state.value,
        "mode": service.mode.value,
        "is_recognizing": service.is_recognizing,
    }


def subscribe_queue(
    subscribe: Callable[[Callable], Callable[[], None]],
    maxsize: int = _SSE_QUEUE_SIZE,
) -> tuple[asyncio.Queue, Callable[[], None]]:
    """Bridge a callback subscription into a bounded queue.

    Events that arrive while the queue is full are dropped for this
    consumer only.  Returns the queue and the unsubscribe function.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _enqueue(item) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("SSE client queue full — dropping event")

    return queue, subscribe(_enqueue)


def _event_stream(
    request: Request,
    subscribe: Callable[[Callable], Callable[[], None]],
    to_message: Callable[[object], dict],
    label: str,
) -> EventSourceResponse:
    async def _generate():
        queue, unsubscribe = subscribe_queue(subscribe)
        try:
            while True:
                if await request.is_disconnected():
                    logger.debug("%s SSE client disconnected", label)
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=_SSE_PING_INTERVAL)
                except asyncio.TimeoutError:
                    yield {"comment": "ping"}
                    continue
                yield to_message(item)
        except asyncio.CancelledError:
            logger.debug("%s SSE stream cancelled", label)
        finally:
            unsubscribe()
            logger.debug("%s SSE subscriber cleaned up", label)

    return EventSourceResponse(_generate())


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(request: Request) -> dict:
    """Return server and session health information."""
    service = _get_service(request)
    microphone = service.microphone
    return {
        "status": "ok",
        "version": __version__,
        **_session_status(service),
        "initialized": service.is_initialized,
        "language": service.config.language if service.config else None,
        "mic_available": microphone.is_available(),
        "mic_permission": microphone.check_permission().value,
        "preload_degraded": service.preload_degraded,
        "subscribers": service.subscriber_counts,
    }


# ---------------------------------------------------------------------------
# Session control
# ---------------------------------------------------------------------------


@router.post("/recognition/start")
async def start_recognition(request: Request, body: StartRequest) -> dict:
    """Start a recognition session.  Errors are reported on ``/errors``."""
    service = _get_service(request)
    if not service.is_initialized:
        return {"status": "error", "reason": "recognition not configured"}

    await service.start_recognition(body.mode)
    return {"status": "ok", **_session_status(service)}


@router.post("/recognition/stop")
async def stop_recognition(request: Request) -> dict:
    service = _get_service(request)
    await service.stop_recognition()
    return {"status": "ok", **_session_status(service)}


@router.post("/language")
async def update_language(request: Request, body: LanguageRequest) -> dict:
    service = _get_service(request)
    if not service.is_initialized:
        return {"status": "error", "reason": "recognition not configured"}

    service.update_language(body.language)
    return {"status": "ok", "language": body.language}


# ---------------------------------------------------------------------------
# Server-Sent Events
# ---------------------------------------------------------------------------


@router.get("/results")
async def result_stream(request: Request) -> EventSourceResponse:
    """Stream results; ``event`` is ``interim`` or ``final``."""
    service = _get_service(request)
    return _event_stream(
        request,
        service.subscribe_to_results,
        lambda result: {"event": result.type, "data": result.model_dump_json()},
        "Result",
    )


@router.get("/errors")
async def error_stream(request: Request) -> EventSourceResponse:
    """Stream errors; ``event`` is the error type."""
    service = _get_service(request)
    return _event_stream(
        request,
        service.subscribe_to_errors,
        lambda error: {"event": error.type, "data": error.model_dump_json()},
        "Error",
    )


@router.get("/state")
async def state_stream(request: Request) -> EventSourceResponse:
    service = _get_service(request)
    return _event_stream(
        request,
        service.subscribe_to_recognition_state,
        lambda is_recognizing: {
            "event": "state",
            "data": json.dumps({"is_recognizing": is_recognizing}),
        },
        "State",
    )


@router.get("/levels")
async def level_stream(request: Request) -> EventSourceResponse:
    service = _get_service(request)
    return _event_stream(
        request,
        service.subscribe_to_audio_levels,
        lambda level: {"event": "level", "data": str(level)},
        "Level",
    )
