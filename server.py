"""Call transcript relay server.

Handles:
- Twilio Media Streams (both call tracks) -> Google Cloud Speech, per track
- Dashboard WebSocket with live transcripts and call history
- Twilio call status and transcription webhooks
- Health checks
"""

import argparse
import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse, Response
from fastapi.staticfiles import StaticFiles

from config import Config, config as default_config
from transcript_relay.broadcast import Observer
from transcript_relay.logging_config import setup_logging
from transcript_relay.media_stream import serve_media_stream
from transcript_relay.speech_client import GoogleSpeechBackend, RecognitionBackend
from transcript_relay.state import RelayState
from transcript_relay.telephony import TwilioProvider, WebhookError

logger = structlog.get_logger()


def get_relay(connection) -> RelayState:
    return connection.app.state.relay


async def _pump_observer(websocket: WebSocket, relay: RelayState, observer: Observer):
    """Forward queued broadcast messages to one dashboard client."""
    try:
        while True:
            message = await observer.next_message()
            await websocket.send_json(message)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.info("dashboard.send_failed", observer_id=observer.observer_id, error=str(e))
        # No more writes are possible; stop queueing for this client
        relay.disconnect_observer(observer)


def create_app(
    settings: Optional[Config] = None,
    backend: Optional[RecognitionBackend] = None,
) -> FastAPI:
    settings = settings or default_config
    setup_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown."""
        missing = settings.validate()
        if missing:
            logger.info("relay.call_placement_unconfigured", missing=missing)

        app.state.relay = RelayState.from_config(settings, backend or GoogleSpeechBackend())
        app.state.provider = TwilioProvider.from_config(settings)

        logger.info("relay.starting",
                    host=settings.host,
                    port=settings.port,
                    language=settings.language_code,
                    media_stream_url=settings.media_stream_url)
        yield
        app.state.relay.shutdown()
        logger.info("relay.stopped")

    app = FastAPI(title="Call Transcript Relay", lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        relay = get_relay(request)
        return {
            "status": "ok",
            "active_calls": relay.active_calls,
            "observers": len(relay.broadcaster.observers),
            "language": relay.language_code,
        }

    @app.get("/api/history")
    async def history(request: Request):
        return get_relay(request).snapshot()

    @app.post("/status")
    async def status_webhook(request: Request):
        """Twilio call status callback."""
        form = await request.form()
        try:
            update = request.app.state.provider.parse_status_webhook(form)
        except WebhookError as e:
            logger.warning("webhook.status_rejected", error=str(e))
            raise HTTPException(status_code=400, detail=str(e))

        get_relay(request).record_call_status(
            call_sid=update.call_sid,
            status=update.status,
            from_=update.from_,
            to=update.to,
            direction=update.direction,
            duration=update.duration,
        )
        if update.call_status.is_terminal:
            logger.info("webhook.call_ended", call_sid=update.call_sid, status=update.status)
        return Response(status_code=200)

    @app.post("/transcription")
    async def transcription_webhook(request: Request):
        """Twilio post-call recording transcription callback."""
        form = await request.form()
        try:
            result = request.app.state.provider.parse_transcription_webhook(form)
        except WebhookError as e:
            logger.warning("webhook.transcription_rejected", error=str(e))
            raise HTTPException(status_code=400, detail=str(e))

        get_relay(request).record_transcription(
            call_sid=result.call_sid,
            text=result.text,
            status=result.status,
            recording_sid=result.recording_sid,
            recording_url=result.recording_url,
        )
        return Response(status_code=200)

    @app.websocket("/media-stream")
    async def media_stream(websocket: WebSocket):
        """Twilio Media Streams endpoint."""
        await websocket.accept()
        logger.info("media_stream.connected")
        await serve_media_stream(websocket, get_relay(websocket), settings.stream_idle_timeout)

    @app.websocket("/dashboard")
    async def dashboard(websocket: WebSocket):
        """Dashboard clients: init snapshot, then every broadcast event."""
        await websocket.accept()
        relay = get_relay(websocket)
        observer = relay.connect_observer()
        sender = asyncio.create_task(_pump_observer(websocket, relay, observer))

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("dashboard.receive_error", error=str(e))
        finally:
            relay.disconnect_observer(observer)
            sender.cancel()

    static_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")
    if os.path.isdir(static_dir):
        app.mount("/static", StaticFiles(directory=static_dir, html=True), name="static")

        @app.get("/")
        async def root_redirect():
            """Redirect root to the dashboard UI."""
            return RedirectResponse(url="/static/index.html")
    else:
        logger.warning("relay.static_dir_missing", path=static_dir)

    return app


app = create_app()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Call Transcript Relay")
    parser.add_argument("--host", default=default_config.host)
    parser.add_argument("--port", type=int, default=default_config.port)
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
