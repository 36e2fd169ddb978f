from __future__ import annotations
"""
Operator API for the check-in scanner
-------------------------------------
The browser dashboard (or any other front end) drives the scan session here
and renders whatever the session reports:

  GET  /healthz                 liveness
  GET  /scanner/status          session snapshot (phase, candidate, notice, counters)
  POST /scanner/start           open the camera and start scanning
  POST /scanner/stop            stop scanning, release the camera
  POST /scanner/confirm         commit the pending candidate
  POST /scanner/submit          manual token entry {"payload": "..."}
  POST /feedback/sound          mute/unmute tones {"enabled": bool}
  GET  /scanner/stream          SSE feed of feedback events
  GET  /stats                   latest check-in counts (poller cache)
  GET  /attendees               attendee list passthrough (?status=&search=)
  GET  /attendees/export.csv    attendee list as CSV download

Camera errors on start map to 409 (already_running / hardware_busy) or 503
(no_device / permission_denied) with the error kind in the body.
"""

import asyncio
import datetime
import json
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .api_client import ApiError
from .config_loader import CONFIG
from .export_csv import attendee_rows, csv_stream
from .feedback import FeedbackEvent
from .frame_source import CameraError
from .models import ATTENDEE_FIELDS
from .service import CheckinService

log = logging.getLogger("checkin.server")

FEED_BUFFER_SIZE = 50


class SubmitIn(BaseModel):
    payload: str


class SoundIn(BaseModel):
    enabled: bool


def create_app(service: Optional[CheckinService] = None, cfg: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the operator API. When `service` is None it is built from `cfg`
    (default: the loaded config file) at startup.
    """
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await open_service()
        try:
            yield
        finally:
            await close_service()

    app = FastAPI(title="Check-in Scanner", version="0.3.0", lifespan=lifespan)
    app.state.service = service
    app.state.feed_ring = deque(maxlen=FEED_BUFFER_SIZE)
    app.state.feed_subs = set()
    app.state.unsubscribe = None

    def _svc() -> CheckinService:
        svc = app.state.service
        if svc is None:
            raise HTTPException(status_code=503, detail="scanner service not initialized")
        return svc

    def _publish(evt: FeedbackEvent) -> None:
        """FeedbackBus subscriber: fan out to SSE listeners (runs on the loop thread)."""
        data = evt.as_dict()
        app.state.feed_ring.append(data)
        dead = []
        for q in app.state.feed_subs:
            try:
                q.put_nowait(data)
            except asyncio.QueueFull:
                try:
                    _ = q.get_nowait()
                    q.put_nowait(data)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    dead.append(q)
        for q in dead:
            app.state.feed_subs.discard(q)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    async def open_service() -> None:
        if app.state.service is None:
            app.state.service = CheckinService.from_config(cfg if cfg is not None else CONFIG)
        svc = app.state.service
        app.state.unsubscribe = svc.feedback.subscribe(_publish)
        await svc.open()
        log.info("operator_api_ready", extra={"event_id": svc.session.event_id})

    async def close_service() -> None:
        svc = app.state.service
        for q in list(app.state.feed_subs):
            try:
                q.put_nowait(None)
            except asyncio.QueueFull:
                pass
        if svc is None:
            return
        if app.state.unsubscribe is not None:
            app.state.unsubscribe()
            app.state.unsubscribe = None
        try:
            await svc.close()
        except Exception:
            log.exception("service_close_failed")

    # ------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------
    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "checkin-scanner"}

    # ------------------------------------------------------------
    # Scanner control
    # ------------------------------------------------------------
    @app.get("/scanner/status")
    async def scanner_status():
        return _svc().session.snapshot()

    @app.post("/scanner/start")
    async def scanner_start():
        session = _svc().session
        try:
            started = await session.start()
        except CameraError as err:
            code = 409 if err.kind in (CameraError.ALREADY_RUNNING, CameraError.HARDWARE_BUSY) else 503
            return JSONResponse(status_code=code, content={**err.as_dict(), "phase": session.phase})
        return {"ok": True, "started": started, **session.snapshot()}

    @app.post("/scanner/stop")
    async def scanner_stop():
        session = _svc().session
        session.stop()
        return {"ok": True, **session.snapshot()}

    @app.post("/scanner/confirm")
    async def scanner_confirm():
        session = _svc().session
        ok = await session.confirm()
        return {"ok": ok, **session.snapshot()}

    @app.post("/scanner/submit")
    async def scanner_submit(body: SubmitIn):
        session = _svc().session
        payload = body.payload.strip()
        if not payload:
            raise HTTPException(status_code=400, detail="Missing 'payload'")
        accepted = session.submit(payload)
        return {"ok": True, "accepted": accepted, "phase": session.phase}

    @app.post("/feedback/sound")
    async def feedback_sound(body: SoundIn):
        fb = _svc().feedback
        fb.sound_enabled = body.enabled
        return {"ok": True, "sound": fb.sound_enabled}

    @app.get("/scanner/stream")
    async def scanner_stream(request: Request):
        """EventSource stream of feedback events (replays the recent buffer first)."""
        q: asyncio.Queue = asyncio.Queue(maxsize=256)
        app.state.feed_subs.add(q)

        async def gen():
            try:
                for evt in list(app.state.feed_ring):
                    yield f"event: {evt['type']}\ndata: {json.dumps(evt, separators=(',', ':'))}\n\n"
                while not await request.is_disconnected():
                    try:
                        evt = await asyncio.wait_for(q.get(), timeout=15.0)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    if evt is None:
                        break
                    yield f"event: {evt['type']}\ndata: {json.dumps(evt, separators=(',', ':'))}\n\n"
            finally:
                app.state.feed_subs.discard(q)

        return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})

    # ------------------------------------------------------------
    # Read path (independent of the session)
    # ------------------------------------------------------------
    @app.get("/stats")
    async def stats(fresh: bool = False):
        poller = _svc().poller
        if fresh or poller.latest is None:
            await poller.refresh_once()
        if poller.latest is None:
            raise HTTPException(status_code=502, detail=poller.last_error or "stats unavailable")
        return {"stats": poller.latest.as_dict(), "error": poller.last_error}

    @app.get("/attendees")
    async def attendees(status: Optional[str] = None, search: Optional[str] = None):
        svc = _svc()
        try:
            rows = await svc.client.fetch_attendees(svc.session.event_id, status=status, search=search)
        except ApiError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {
            "attendees": [dict(zip(ATTENDEE_FIELDS, a.as_row())) for a in rows],
        }

    @app.get("/attendees/export.csv")
    async def attendees_export(status: Optional[str] = None):
        svc = _svc()
        try:
            rows = await svc.client.fetch_attendees(svc.session.event_id, status=status)
        except ApiError as e:
            raise HTTPException(status_code=502, detail=str(e))
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"attendees_{svc.session.event_id}_{timestamp}.csv"
        return StreamingResponse(
            csv_stream(attendee_rows(rows)),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


app = create_app()
