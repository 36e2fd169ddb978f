from __future__ import annotations
"""
Value types shared by the scan pipeline.

ScanCandidate      one decode event (raw payload + normalized token)
ValidationOutcome  classified result of validating a token against the server
CommitResult       result of the check-in commit call
CheckinStats       aggregate counts read by the stats poller
Attendee           one row of the organizer attendee list
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

STATUS_VALID         = "valid"
STATUS_USED          = "used"
STATUS_WRONG_EVENT   = "wrong_event"
STATUS_TOO_EARLY     = "too_early"
STATUS_NOT_FOUND     = "not_found"
STATUS_NETWORK_ERROR = "network_error"

ALLOWED_STATUS = {
    STATUS_VALID, STATUS_USED, STATUS_WRONG_EVENT,
    STATUS_TOO_EARLY, STATUS_NOT_FOUND, STATUS_NETWORK_ERROR,
}

# statuses whose semantics carry ticket context
META_STATUS = {STATUS_VALID, STATUS_USED, STATUS_WRONG_EVENT, STATUS_TOO_EARLY}

DEFAULT_MESSAGES = {
    STATUS_VALID:         "Ticket is valid",
    STATUS_USED:          "Ticket already used",
    STATUS_WRONG_EVENT:   "Ticket is for a different event",
    STATUS_TOO_EARLY:     "Check-in is not open yet",
    STATUS_NOT_FOUND:     "Invalid QR code",
    STATUS_NETWORK_ERROR: "Could not reach the ticketing server",
}


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


@dataclass(frozen=True)
class ScanCandidate:
    raw_payload: str
    token: str
    detected_at: dt.datetime = field(default_factory=utc_now)
    source: str = "camera"


@dataclass(frozen=True)
class TicketMeta:
    buyer_name: Optional[str] = None
    tier_name: Optional[str] = None
    serial: Optional[str] = None
    qr_token: Optional[str] = None
    checked_in_at: Optional[str] = None
    checked_in_by: Optional[str] = None
    earliest_checkin_at: Optional[str] = None
    actual_event_title: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any], fallback_token: Optional[str] = None) -> "TicketMeta":
        """Build from the server's camelCase `meta`/`ticket` object."""
        return cls(
            buyer_name=_opt_str(data.get("buyerName")),
            tier_name=_opt_str(data.get("tierName")),
            serial=_opt_str(data.get("serial")),
            qr_token=_opt_str(data.get("qrToken")) or fallback_token,
            checked_in_at=_opt_str(data.get("checkedInAt") or data.get("usedAt")),
            checked_in_by=_opt_str(data.get("checkedInBy") or data.get("scannedBy")),
            earliest_checkin_at=_opt_str(data.get("earliestCheckinAt")),
            actual_event_title=_opt_str(data.get("actualEventTitle")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "buyer_name": self.buyer_name,
            "tier_name": self.tier_name,
            "serial": self.serial,
            "qr_token": self.qr_token,
            "checked_in_at": self.checked_in_at,
            "checked_in_by": self.checked_in_by,
            "earliest_checkin_at": self.earliest_checkin_at,
            "actual_event_title": self.actual_event_title,
        }


@dataclass(frozen=True)
class ValidationOutcome:
    status: str
    message: str
    ticket_meta: Optional[TicketMeta] = None
    token: Optional[str] = None

    def __post_init__(self):
        if self.status not in ALLOWED_STATUS:
            raise ValueError(f"unknown validation status: {self.status!r}")
        if self.ticket_meta is not None and self.status not in META_STATUS:
            raise ValueError(f"status {self.status!r} does not carry ticket_meta")

    @property
    def is_valid(self) -> bool:
        return self.status == STATUS_VALID

    @classmethod
    def network_error(cls, token: Optional[str], detail: str = "") -> "ValidationOutcome":
        msg = DEFAULT_MESSAGES[STATUS_NETWORK_ERROR]
        if detail:
            msg = f"{msg}: {detail}"
        return cls(status=STATUS_NETWORK_ERROR, message=msg, token=token)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "token": self.token,
            "ticket_meta": self.ticket_meta.as_dict() if self.ticket_meta else None,
        }


@dataclass(frozen=True)
class CommitResult:
    ok: bool
    error: Optional[str] = None
    ticket_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class CheckinStats:
    total_tickets: int = 0
    checked_in: int = 0
    remaining: int = 0
    recent_checkins: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: dt.datetime = field(default_factory=utc_now)

    @classmethod
    def from_api(cls, body: Mapping[str, Any]) -> "CheckinStats":
        stats = body.get("stats", body) or {}
        total = int(stats.get("totalTickets") or 0)
        checked = int(stats.get("checkedIn") or 0)
        remaining = stats.get("remaining")
        return cls(
            total_tickets=total,
            checked_in=checked,
            remaining=int(remaining) if remaining is not None else max(0, total - checked),
            recent_checkins=list(stats.get("recentCheckIns") or []),
        )

    @property
    def progress_pct(self) -> float:
        if self.total_tickets <= 0:
            return 0.0
        return round(self.checked_in / self.total_tickets * 100.0, 1)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_tickets": self.total_tickets,
            "checked_in": self.checked_in,
            "remaining": self.remaining,
            "progress_pct": self.progress_pct,
            "recent_checkins": self.recent_checkins,
            "fetched_at": self.fetched_at.isoformat(timespec="seconds"),
        }


ATTENDEE_FIELDS = (
    "ticket_id", "serial", "qr_token", "status", "checked_in_at", "scanned_by",
    "tier_name", "buyer_name", "buyer_email", "buyer_phone", "placed_at",
)


@dataclass(frozen=True)
class Attendee:
    ticket_id: str
    serial: str = ""
    qr_token: str = ""
    status: str = ""
    checked_in_at: Optional[str] = None
    scanned_by: Optional[str] = None
    tier_name: str = ""
    buyer_name: str = ""
    buyer_email: str = ""
    buyer_phone: Optional[str] = None
    placed_at: Optional[str] = None

    @classmethod
    def from_api(cls, row: Mapping[str, Any]) -> "Attendee":
        return cls(
            ticket_id=str(row.get("ticketId") or ""),
            serial=str(row.get("serial") or ""),
            qr_token=str(row.get("qrToken") or ""),
            status=str(row.get("status") or ""),
            checked_in_at=_opt_str(row.get("checkedInAt")),
            scanned_by=_opt_str(row.get("scannedBy")),
            tier_name=str(row.get("tierName") or ""),
            buyer_name=str(row.get("buyerName") or ""),
            buyer_email=str(row.get("buyerEmail") or ""),
            buyer_phone=_opt_str(row.get("buyerPhone")),
            placed_at=_opt_str(row.get("placedAt")),
        )

    @property
    def checked_in(self) -> bool:
        return self.status == "used"

    def as_row(self) -> List[Any]:
        return [getattr(self, f) for f in ATTENDEE_FIELDS]
