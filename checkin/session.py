from __future__ import annotations
"""
ScannerSession - the check-in state machine.

    idle/stopped/error --start()--> starting --> running
    running --valid scan--> awaiting_confirmation --confirm()--> confirming --> running
    confirming --commit failed--> awaiting_confirmation
    any --stop()--> stopped            any --camera failure--> error

Wires: FrameSource -> normalize -> in-flight guard -> DedupWindow ->
ValidationClient -> phase transitions -> FeedbackBus.

All state lives on the instance and is mutated only on the event loop thread;
the frame source's decode thread hands payloads over with call_soon_threadsafe.
Every async step captures the session generation and drops its result if
stop()/start() happened in between.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .api_client import ValidationClient
from .dedup import DEFAULT_COOLDOWN_MS, DEFAULT_MAX_ENTRIES, DedupWindow, now_ms
from .feedback import CHECKIN_CONFIRMED, SCAN_ERROR, SCAN_SUCCESS, FeedbackBus
from .frame_source import FACING_ENVIRONMENT, CameraError, FrameSource
from .models import ScanCandidate, ValidationOutcome
from .normalize import normalize_token

PHASE_IDLE                  = "idle"
PHASE_STARTING              = "starting"
PHASE_RUNNING               = "running"
PHASE_AWAITING_CONFIRMATION = "awaiting_confirmation"
PHASE_CONFIRMING            = "confirming"
PHASE_ERROR                 = "error"
PHASE_STOPPED               = "stopped"

ALLOWED_PHASES = {
    PHASE_IDLE, PHASE_STARTING, PHASE_RUNNING, PHASE_AWAITING_CONFIRMATION,
    PHASE_CONFIRMING, PHASE_ERROR, PHASE_STOPPED,
}
ACTIVE_PHASES = {PHASE_STARTING, PHASE_RUNNING, PHASE_AWAITING_CONFIRMATION, PHASE_CONFIRMING}
SCANNING_PHASES = {PHASE_RUNNING, PHASE_AWAITING_CONFIRMATION}

DEFAULT_OUTCOME_DISPLAY_MS = 5000

log = logging.getLogger("checkin.session")


@dataclass
class ScannerConfig:
    facing: str = FACING_ENVIRONMENT
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    outcome_display_ms: int = DEFAULT_OUTCOME_DISPLAY_MS
    dedup_max_entries: int = DEFAULT_MAX_ENTRIES
    check_in_by: str = "staff"

    @classmethod
    def from_dict(cls, sc: Optional[Dict[str, Any]], check_in_by: str = "staff") -> "ScannerConfig":
        sc = sc or {}
        return cls(
            facing=str(sc.get("facing") or FACING_ENVIRONMENT).lower(),
            cooldown_ms=int(sc.get("cooldown_ms", DEFAULT_COOLDOWN_MS)),
            outcome_display_ms=int(sc.get("outcome_display_ms", DEFAULT_OUTCOME_DISPLAY_MS)),
            dedup_max_entries=int(sc.get("dedup_max_entries", DEFAULT_MAX_ENTRIES)),
            check_in_by=check_in_by,
        )


RefreshHook = Callable[[], None]


class ScannerSession:
    def __init__(
        self,
        event_id: str,
        frame_source: FrameSource,
        client: ValidationClient,
        feedback: Optional[FeedbackBus] = None,
        cfg: Optional[ScannerConfig] = None,
    ):
        self.event_id = event_id
        self.source = frame_source
        self.client = client
        self.feedback = feedback or FeedbackBus()
        self.cfg = cfg or ScannerConfig()

        self._phase = PHASE_IDLE
        self._generation = 0
        self._scan_seq = 0          # launch order of validations
        self._candidate_seq = 0     # launch order of the newest accepted candidate
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dedup = DedupWindow(self.cfg.cooldown_ms, self.cfg.dedup_max_entries)
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._notice_timer: Optional[asyncio.TimerHandle] = None
        self._refresh_hooks: List[RefreshHook] = []

        self.last_candidate: Optional[ScanCandidate] = None
        self.last_outcome: Optional[ValidationOutcome] = None
        self.notice: Optional[ValidationOutcome] = None   # transient failure display
        self.last_error: Optional[str] = None
        self.camera_error: Optional[CameraError] = None

        # Observability counters
        self.scans_seen = 0
        self.scans_suppressed = 0
        self.validations = 0
        self.stale_discarded = 0
        self.checkins_confirmed = 0

    # ---------- read side ----------
    @property
    def phase(self) -> str:
        return self._phase

    def add_refresh_hook(self, fn: RefreshHook) -> None:
        """Called after every successful commit (stats / attendee refresh)."""
        self._refresh_hooks.append(fn)

    def snapshot(self) -> Dict[str, Any]:
        cand = self.last_candidate
        return {
            "phase": self._phase,
            "event_id": self.event_id,
            "last_candidate": {
                "raw_payload": cand.raw_payload,
                "token": cand.token,
                "detected_at": cand.detected_at.isoformat(timespec="milliseconds"),
                "source": cand.source,
            } if cand else None,
            "last_outcome": self.last_outcome.as_dict() if self.last_outcome else None,
            "notice": self.notice.as_dict() if self.notice else None,
            "last_error": self.last_error,
            "camera_error": self.camera_error.as_dict() if self.camera_error else None,
            "in_flight": sorted(self._in_flight),
            "source": self.source.status(),
            "counters": {
                "seen": self.scans_seen,
                "suppressed": self.scans_suppressed,
                "validations": self.validations,
                "stale_discarded": self.stale_discarded,
                "confirmed": self.checkins_confirmed,
            },
        }

    # ---------- lifecycle ----------
    async def start(self) -> bool:
        """
        Open the frame source and begin scanning. Returns False (no-op) when a
        session is already starting or active; raises CameraError after moving
        to `error` when the camera cannot be opened.
        """
        if self._phase in ACTIVE_PHASES:
            log.info("start_ignored", extra={"phase": self._phase})
            return False

        self._loop = asyncio.get_running_loop()
        self._generation += 1
        gen = self._generation
        self._reset_scan_state()
        self.camera_error = None
        self._phase = PHASE_STARTING

        try:
            handle = await asyncio.to_thread(self.source.start, self.cfg.facing)
        except CameraError as err:
            if gen == self._generation:
                self._phase = PHASE_ERROR
                self.camera_error = err
                self.last_error = err.message
            log.warning("start_failed", extra={"kind": err.kind, "err": err.message})
            raise

        if gen != self._generation:
            # stop() landed while the device was opening
            self.source.stop()
            log.info("start_superseded")
            return False

        self.source.on_frame_decoded(self._on_decoded_threadsafe)
        self.source.on_error(self._on_camera_error_threadsafe)
        self._phase = PHASE_RUNNING
        log.info("scanner_start", extra={
            "event_id": self.event_id,
            "device": handle.device.label,
            "cooldown_ms": self.cfg.cooldown_ms,
        })
        return True

    def stop(self) -> None:
        """Any phase -> stopped. Releases the camera before returning."""
        self._generation += 1
        self.source.on_frame_decoded(None)
        self.source.on_error(None)
        self.source.stop()
        for t in list(self._tasks):
            t.cancel()
        self._tasks.clear()
        self._reset_scan_state()
        prev = self._phase
        self._phase = PHASE_STOPPED
        log.info("scanner_stop", extra={"from_phase": prev, "seen": self.scans_seen,
                                        "confirmed": self.checkins_confirmed})

    def _reset_scan_state(self) -> None:
        self._candidate_seq = 0
        self._cancel_notice_timer()
        self._dedup.reset()
        self._in_flight.clear()
        self.last_candidate = None
        self.last_outcome = None
        self.notice = None
        self.last_error = None

    # ---------- decode path ----------
    def _on_decoded_threadsafe(self, payload: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.handle_payload, payload)

    def submit(self, raw_payload: str) -> bool:
        """Manual token entry; same path as a camera decode."""
        return self.handle_payload(raw_payload, source="manual")

    def handle_payload(self, raw_payload: str, source: str = "camera", now: Optional[int] = None) -> bool:
        """
        Feed one decoded payload. Returns True when a validation was launched.
        Must run on the event loop thread.
        """
        if self._phase not in SCANNING_PHASES:
            return False
        self.scans_seen += 1

        token = normalize_token(raw_payload).strip()
        if not token:
            return False

        if token in self._in_flight:
            log.debug("in_flight_skip", extra={"token": token})
            return False

        if not self._dedup.should_process(token, now_ms() if now is None else now):
            self.scans_suppressed += 1
            log.debug("suppressed", extra={"token": token, "cooldown_ms": self.cfg.cooldown_ms})
            return False

        candidate = ScanCandidate(raw_payload=raw_payload, token=token, source=source)
        self._in_flight.add(token)
        self.validations += 1
        self._scan_seq += 1
        task = asyncio.get_running_loop().create_task(
            self._validate(candidate, self._generation, self._scan_seq), name=f"validate[{token}]"
        )
        self._track_task(task)
        return True

    async def _validate(self, candidate: ScanCandidate, gen: int, seq: int) -> None:
        try:
            outcome = await self.client.validate(candidate.token, self.event_id)
        finally:
            if gen == self._generation:
                self._in_flight.discard(candidate.token)

        if gen != self._generation or self._phase not in SCANNING_PHASES:
            self.stale_discarded += 1
            log.info("stale_outcome_discarded", extra={"token": candidate.token,
                                                       "outcome": outcome.status, "phase": self._phase})
            return
        self._apply_outcome(candidate, outcome, seq)

    def _apply_outcome(self, candidate: ScanCandidate, outcome: ValidationOutcome, seq: int) -> None:
        if outcome.is_valid:
            if seq < self._candidate_seq:
                # a later scan already produced the pending (or just confirmed) candidate
                self.stale_discarded += 1
                log.info("superseded_outcome_discarded", extra={"token": candidate.token, "seq": seq,
                                                                "candidate_seq": self._candidate_seq})
                return
            self._candidate_seq = seq
            superseded = self.last_candidate
            self._cancel_notice_timer()
            self.notice = None
            self.last_error = None
            self.last_candidate = candidate
            self.last_outcome = outcome
            self._phase = PHASE_AWAITING_CONFIRMATION
            if superseded is not None and superseded.token != candidate.token:
                log.info("candidate_superseded", extra={"old": superseded.token, "new": candidate.token})
            meta = outcome.ticket_meta
            self.feedback.emit(
                SCAN_SUCCESS,
                token=candidate.token,
                status=outcome.status,
                message=outcome.message,
                buyer_name=meta.buyer_name if meta else None,
                tier_name=meta.tier_name if meta else None,
                serial=meta.serial if meta else None,
            )
            return

        # business rejection or network error: phase is unchanged
        self._show_notice(outcome)
        self.feedback.emit(
            SCAN_ERROR,
            token=candidate.token,
            status=outcome.status,
            message=outcome.message,
            meta=outcome.ticket_meta.as_dict() if outcome.ticket_meta else None,
        )

    def _show_notice(self, outcome: ValidationOutcome) -> None:
        self._cancel_notice_timer()
        self.notice = outcome
        loop = self._loop or asyncio.get_running_loop()
        self._notice_timer = loop.call_later(
            max(0, self.cfg.outcome_display_ms) / 1000.0, self._clear_notice, outcome
        )

    def _clear_notice(self, outcome: ValidationOutcome) -> None:
        if self.notice is outcome:
            self.notice = None
        self._notice_timer = None

    def _cancel_notice_timer(self) -> None:
        if self._notice_timer is not None:
            self._notice_timer.cancel()
            self._notice_timer = None

    # ---------- confirm ----------
    async def confirm(self) -> bool:
        """
        Commit the pending candidate. No-op (False, no network call) unless the
        session is awaiting confirmation. On failure the candidate is kept so
        the operator can retry without re-scanning.
        """
        if self._phase != PHASE_AWAITING_CONFIRMATION or self.last_outcome is None:
            log.info("confirm_ignored", extra={"phase": self._phase})
            return False

        gen = self._generation
        outcome = self.last_outcome
        candidate = self.last_candidate
        meta = outcome.ticket_meta
        qr_token = (meta.qr_token if meta and meta.qr_token else None) or (candidate.token if candidate else "")
        self._phase = PHASE_CONFIRMING

        result = await self.client.commit(qr_token, self.event_id, self.cfg.check_in_by)

        if gen != self._generation or self._phase != PHASE_CONFIRMING or self.last_outcome is not outcome:
            self.stale_discarded += 1
            log.info("stale_commit_discarded", extra={"token": qr_token, "ok": result.ok, "phase": self._phase})
            return False

        if not result.ok:
            self.last_error = result.error or "Failed to check in ticket"
            self._phase = PHASE_AWAITING_CONFIRMATION
            self.feedback.emit(SCAN_ERROR, token=qr_token, status="commit_failed", message=self.last_error)
            return False

        self.last_candidate = None
        self.last_outcome = None
        self.last_error = None
        self.checkins_confirmed += 1
        self._phase = PHASE_RUNNING
        self.feedback.emit(
            CHECKIN_CONFIRMED,
            token=qr_token,
            ticket_id=result.ticket_id,
            buyer_name=meta.buyer_name if meta else None,
        )
        for hook in list(self._refresh_hooks):
            try:
                hook()
            except Exception:
                log.exception("refresh_hook_failed")
        return True

    # ---------- camera failures ----------
    def _on_camera_error_threadsafe(self, err: CameraError) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        gen = self._generation
        loop.call_soon_threadsafe(self._handle_camera_error, err, gen)

    def _handle_camera_error(self, err: CameraError, gen: int) -> None:
        if gen != self._generation or self._phase not in ACTIVE_PHASES:
            return
        self._generation += 1
        self.source.on_frame_decoded(None)
        self.source.on_error(None)
        self.source.stop()
        for t in list(self._tasks):
            t.cancel()
        self._tasks.clear()
        self._reset_scan_state()
        self.camera_error = err
        self.last_error = err.message
        self._phase = PHASE_ERROR
        log.warning("scanner_camera_error", extra={"kind": err.kind, "err": err.message})

    # ---------- tasks ----------
    def _track_task(self, t: asyncio.Task) -> None:
        self._tasks.add(t)
        t.add_done_callback(self._task_done)

    def _task_done(self, t: asyncio.Task) -> None:
        self._tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.error("validation_task_failed", exc_info=exc, extra={"task": t.get_name()})
