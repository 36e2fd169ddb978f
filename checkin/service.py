from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

import httpx

from .api_client import ValidationClient
from .config_loader import (
    get_api_cfg,
    get_event_id,
    get_feedback_cfg,
    get_scanner_cfg,
    get_stats_cfg,
)
from .feedback import FeedbackBus, LoggingFeedbackSink
from .frame_source import FrameSource, build_frame_source
from .session import ScannerConfig, ScannerSession
from .stats_poller import DEFAULT_POLL_INTERVAL_S, StatsPoller


class CheckinService:
    """
    Wires: FrameSource -> ScannerSession -> FeedbackBus, plus the StatsPoller
    read path, from one config dict.
    """
    def __init__(
        self,
        session: ScannerSession,
        poller: StatsPoller,
        *,
        heartbeat_s: float = 10.0,
    ):
        self.session = session
        self.poller = poller
        self.client = session.client
        self.feedback = session.feedback
        self.heartbeat_s = heartbeat_s
        self.log = logging.getLogger("checkin")
        self._poll_task: Optional[asyncio.Task] = None
        self._hb_task: Optional[asyncio.Task] = None
        self._poll_stop = asyncio.Event()

        session.add_refresh_hook(poller.request_refresh)

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        *,
        event_id: Optional[str] = None,
        source: Optional[str] = None,
        frame_source: Optional[FrameSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CheckinService":
        sc = dict(get_scanner_cfg(cfg))
        if source:
            sc["source"] = source
        api = get_api_cfg(cfg)
        event = (event_id or get_event_id(cfg)).strip()
        if not event:
            raise ValueError("No event configured. Set app.event.id or pass --event-id")

        client = ValidationClient.from_config(api, transport=transport)
        feedback = FeedbackBus.from_config(get_feedback_cfg(cfg))
        feedback.subscribe(LoggingFeedbackSink())

        session = ScannerSession(
            event,
            frame_source or build_frame_source(sc),
            client,
            feedback,
            ScannerConfig.from_dict(sc, check_in_by=str(api.get("check_in_by") or "staff")),
        )
        interval = float(get_stats_cfg(cfg).get("poll_interval_s", DEFAULT_POLL_INTERVAL_S))
        return cls(session, StatsPoller(client, event, interval))

    async def open(self) -> None:
        """Start the HTTP client, the stats poller and the heartbeat log."""
        await self.client.start()
        self._poll_stop.clear()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self.poller.run(self._poll_stop), name="stats_poller")
        if self.heartbeat_s > 0 and (self._hb_task is None or self._hb_task.done()):
            self._hb_task = asyncio.create_task(self._heartbeat(), name="checkin_heartbeat")
        self.log.info("checkin_open", extra={"event_id": self.session.event_id,
                                             "source": self.session.source.name})

    async def close(self) -> None:
        self.session.stop()
        self._poll_stop.set()
        for task in (self._poll_task, self._hb_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._poll_task = None
        self._hb_task = None
        await self.client.stop()
        self.log.info("checkin_closed", extra=dict(self.session.snapshot()["counters"]))

    async def run(self, stop_evt: asyncio.Event, ready: Optional[asyncio.Event] = None) -> None:
        """
        Headless loop: open, start scanning, keep the heartbeat going until
        stop_evt is set, then close. CameraError from start propagates after
        the service is closed. `ready` is set once the scanner is running.
        """
        await self.open()
        try:
            await self.session.start()
            if ready is not None:
                ready.set()
            await stop_evt.wait()
        finally:
            await self.close()

    async def _heartbeat(self):
        """Periodic log line so ops can see counters move without scraping metrics."""
        try:
            while True:
                await asyncio.sleep(self.heartbeat_s)
                snap = self.session.snapshot()
                payload = dict(snap["counters"])
                payload["phase"] = snap["phase"]
                if self.poller.latest is not None:
                    payload["checked_in"] = self.poller.latest.checked_in
                    payload["total"] = self.poller.latest.total_tickets
                logging.getLogger("checkin.hb").info("heartbeat", extra=payload)
        except asyncio.CancelledError:
            return
