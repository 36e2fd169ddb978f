from __future__ import annotations
"""
Feedback events for the operator surface.

The session emits one typed event per transition; rendering tones, vibration
and badges belongs to whoever subscribes (the operator web UI over SSE, the
terminal bell in headless mode, or just the log).
"""

import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO

SCAN_SUCCESS      = "scan_success"
SCAN_ERROR        = "scan_error"
CHECKIN_CONFIRMED = "checkin_confirmed"

FEEDBACK_TYPES = {SCAN_SUCCESS, SCAN_ERROR, CHECKIN_CONFIRMED}

# tone the UI should play for each event type
TONES = {
    SCAN_SUCCESS: "success",
    SCAN_ERROR: "error",
    CHECKIN_CONFIRMED: "checkin",
}

log = logging.getLogger("checkin.feedback")


@dataclass(frozen=True)
class FeedbackEvent:
    type: str
    detail: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "detail": dict(self.detail), "at": self.at}


Subscriber = Callable[[FeedbackEvent], None]


class FeedbackBus:
    """
    Synchronous fan-out. emit() returns only after every subscriber ran, so an
    event is observed at the moment of its transition, exactly once.
    """
    def __init__(self, *, sound: bool = True, haptic: bool = True):
        self.sound_enabled = bool(sound)
        self.haptic_enabled = bool(haptic)
        self._subs: List[Subscriber] = []
        self.emitted_total = 0

    @classmethod
    def from_config(cls, fb_cfg: Optional[Dict[str, Any]]) -> "FeedbackBus":
        fb_cfg = fb_cfg or {}
        return cls(sound=bool(fb_cfg.get("sound", True)), haptic=bool(fb_cfg.get("haptic", True)))

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        self._subs.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subs:
                self._subs.remove(fn)
        return _unsubscribe

    def emit(self, type_: str, **detail: Any) -> FeedbackEvent:
        if type_ not in FEEDBACK_TYPES:
            raise ValueError(f"unknown feedback type: {type_!r}")
        detail.setdefault("tone", TONES[type_] if self.sound_enabled else None)
        detail.setdefault("haptic", self.haptic_enabled)
        evt = FeedbackEvent(type=type_, detail=detail)
        self.emitted_total += 1
        for fn in list(self._subs):
            try:
                fn(evt)
            except Exception:
                log.exception("feedback_subscriber_failed", extra={"type": type_})
        return evt


class LoggingFeedbackSink:
    """Writes one structured line per event."""
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger("checkin.feedback.event")

    def __call__(self, evt: FeedbackEvent) -> None:
        level = logging.WARNING if evt.type == SCAN_ERROR else logging.INFO
        self.log.log(level, evt.type, extra={k: v for k, v in evt.detail.items() if k not in _RESERVED})


class BellFeedbackSink:
    """
    Terminal bell for headless scanning stations: one ring for a good scan,
    two for an error, three for a confirmed check-in. Silent when muted.
    """
    RINGS = {"success": 1, "error": 2, "checkin": 3}

    def __init__(self, stream: TextIO = sys.stdout):
        self.stream = stream

    def __call__(self, evt: FeedbackEvent) -> None:
        tone = evt.detail.get("tone")
        if not tone:
            return
        self.stream.write("\a" * self.RINGS.get(tone, 1))
        self.stream.flush()


# LogRecord attribute names that must not be passed through `extra`
_RESERVED = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "message",
    "asctime", "taskName",
}
