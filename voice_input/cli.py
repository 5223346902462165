"""Command-line interface for voice input.

Provides ``voice-input listen``, ``devices``, ``serve`` and ``status``
commands.  The entry point is registered via ``pyproject.toml`` as
``voice-input = "voice_input.cli:cli"``.
"""

import asyncio
import logging

import click
import httpx

from voice_input.config import get_port
from voice_input.stt.errors import ConfigurationError
from voice_input.stt.types import RecognitionMode, load_recognition_config

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_MIN_PORT = 1024
_MAX_PORT = 65535


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_port(port: int | None) -> int:
    """Return the port to use, falling back to env var / default."""
    if port is not None:
        return port
    return get_port()


def _validate_port(port: int) -> None:
    """Raise ``click.BadParameter`` if *port* is out of range."""
    if not (_MIN_PORT <= port <= _MAX_PORT):
        raise click.BadParameter(
            f"Port must be between {_MIN_PORT} and {_MAX_PORT}, got {port}."
        )


def _list_input_devices() -> tuple[list[tuple[int, dict]], int]:
    """Return (index, device) pairs for every input device and the default index."""
    import sounddevice as sd

    inputs = [
        (index, device)
        for index, device in enumerate(sd.query_devices())
        if device.get("max_input_channels", 0) > 0
    ]
    return inputs, sd.default.device[0]


def _print_result(result) -> None:
    if result.type == "final":
        click.echo(click.style(f"> {result.text}", fg="green") + f"  ({result.confidence:.2f})")
    else:
        click.echo(click.style(f"… {result.text}", dim=True))


def _print_error(error) -> None:
    click.echo(click.style(f"[{error.type}] {error.message}", fg="red"), err=True)


async def _listen(mode: RecognitionMode, language: str | None, duration: float | None) -> None:
    """Run one recognition session, printing results until it ends."""
    from voice_input.stt.voice_input_service import VoiceInputService

    service = VoiceInputService()
    config = load_recognition_config()
    if language:
        config = config.with_language(language)
    await service.initialize(config)

    ended = asyncio.Event()
    service.subscribe_to_results(_print_result)
    service.subscribe_to_errors(_print_error)
    service.subscribe_to_recognition_state(
        lambda is_recognizing: None if is_recognizing else ended.set()
    )

    try:
        await service.start_recognition(mode)
        if not service.is_recognizing:
            return
        click.echo(f"Listening ({mode.value}). Press Ctrl-C to stop.")
        try:
            await asyncio.wait_for(ended.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
    finally:
        await service.aclose()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Voice input -- microphone capture and streaming speech recognition."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format=_LOG_FORMAT
    )


# ---------------------------------------------------------------------------
# listen
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in RecognitionMode]),
    default=RecognitionMode.PUSH_TO_TALK.value,
    show_default=True,
    help="Recognition mode",
)
@click.option("--language", default=None, help="Recognition language (e.g. de-DE)")
@click.option(
    "--duration",
    default=None,
    type=click.FloatRange(min=0.1),
    help="Stop after this many seconds",
)
def listen(mode: str, language: str | None, duration: float | None) -> None:
    """Transcribe speech from the default microphone."""
    try:
        asyncio.run(_listen(RecognitionMode(mode), language, duration))
    except ConfigurationError as exc:
        click.echo(click.style(f"Configuration error: {exc}", fg="red"))
        click.echo("  Set VOICE_INPUT_API_KEY and VOICE_INPUT_REGION.")
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("Stopped.")


# ---------------------------------------------------------------------------
# devices
# ---------------------------------------------------------------------------


@cli.command()
def devices() -> None:
    """List audio input devices."""
    try:
        inputs, default_input = _list_input_devices()
    except Exception as exc:
        click.echo(click.style(f"Failed to query audio devices: {exc}", fg="red"))
        raise SystemExit(1)

    if not inputs:
        click.echo(click.style("No input devices found.", fg="yellow"))
        raise SystemExit(1)

    for index, device in inputs:
        marker = "*" if index == default_input else " "
        click.echo(
            f"{marker} {index:>3}  {device['name']}  "
            f"({device['max_input_channels']} ch, "
            f"{device.get('default_samplerate', 0):.0f} Hz)"
        )


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--port", default=None, type=int, help="Server port (default: 7866)")
def serve(port: int | None) -> None:
    """Run the voice-input HTTP server in the foreground."""
    import uvicorn

    from voice_input.server.app import create_app

    port = _resolve_port(port)
    _validate_port(port)

    click.echo(f"Starting voice input server on port {port}...")
    try:
        uvicorn.run(create_app(), host="127.0.0.1", port=port, log_level="info")
    except OSError as exc:
        if "address already in use" in str(exc).lower():
            click.echo(
                click.style(
                    f"Port {port} is already in use. "
                    "Choose a different port with --port.",
                    fg="red",
                )
            )
            raise SystemExit(1)
        raise


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--port", default=None, type=int, help="Server port to check")
def status(port: int | None) -> None:
    """Show voice-input server status."""
    port = _resolve_port(port)

    try:
        resp = httpx.get(f"http://127.0.0.1:{port}/health", timeout=2.0)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, OSError, ValueError):
        click.echo(click.style(f"Server is not responding on port {port}.", fg="yellow"))
        raise SystemExit(1)

    click.echo(click.style("Server is healthy.", fg="green"))
    click.echo(f"  Version:     {data.get('version', '?')}")
    click.echo(f"  Port:        {port}")
    click.echo(f"  State:       {data.get('state', '?')} ({data.get('mode', '?')})")
    click.echo(f"  Language:    {data.get('language') or 'not configured'}")
    mic = "available" if data.get("mic_available") else "unavailable"
    click.echo(f"  Microphone:  {mic}, permission {data.get('mic_permission', '?')}")
    click.echo(f"  Subscribers: {data.get('subscribers', '?')}")
