from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .api_client import ApiError, ValidationClient
from .models import Attendee, CheckinStats

DEFAULT_POLL_INTERVAL_S = 5.0

log = logging.getLogger("checkin.stats")


class StatsPoller:
    """
    Independent read path for aggregate check-in counts and the attendee list.

    Polls every `interval_s`; request_refresh() wakes it early (the session
    calls it after each confirmed check-in). It never talks to the session, so
    a count may lag a commit by up to one poll.
    """
    def __init__(self, client: ValidationClient, event_id: str, interval_s: float = DEFAULT_POLL_INTERVAL_S,
                 *, track_attendees: bool = True):
        self.client = client
        self.event_id = event_id
        self.interval_s = max(0.01, float(interval_s))
        self.track_attendees = track_attendees

        self.latest: Optional[CheckinStats] = None
        self.attendees: List[Attendee] = []
        self.last_error: Optional[str] = None
        self.polls_total = 0
        self.polls_failed = 0

        self._wake = asyncio.Event()
        self._attendees_due = True

    def request_refresh(self) -> None:
        self._attendees_due = True
        self._wake.set()

    async def refresh_once(self) -> Optional[CheckinStats]:
        self.polls_total += 1
        try:
            stats = await self.client.fetch_stats(self.event_id)
        except ApiError as e:
            self.polls_failed += 1
            self.last_error = str(e)
            log.warning("stats_poll_failed", extra={"event_id": self.event_id, "err": str(e)})
            return self.latest
        self.latest = stats
        self.last_error = None

        if self.track_attendees and self._attendees_due:
            try:
                self.attendees = await self.client.fetch_attendees(self.event_id)
                self._attendees_due = False
            except ApiError as e:
                log.warning("attendees_refresh_failed", extra={"event_id": self.event_id, "err": str(e)})

        log.debug("stats_polled", extra={"checked_in": stats.checked_in, "total": stats.total_tickets})
        return stats

    async def run(self, stop_evt: asyncio.Event) -> None:
        log.info("stats_poller_start", extra={"event_id": self.event_id, "interval_s": self.interval_s})
        try:
            while not stop_evt.is_set():
                self._wake.clear()
                await self.refresh_once()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            log.info("stats_poller_cancelled")
            raise
