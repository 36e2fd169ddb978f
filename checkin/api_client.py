from __future__ import annotations
"""
Ticketing API client.

  validate(token, event_id) -> ValidationOutcome   POST /api/tickets/validate-qr
  commit(qr_token, event_id) -> CommitResult       POST /api/tickets/check-in
  fetch_stats(event_id)     -> CheckinStats        GET  /api/tickets/events/{id}/checkin-stats
  fetch_attendees(...)      -> list[Attendee]      GET  /api/tickets/events/{id}/attendees

validate/commit never raise: transport failures, timeouts and non-JSON bodies
come back as typed results so the scan session keeps running. The read
endpoints raise ApiError and leave the policy to the caller.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from .models import (
    DEFAULT_MESSAGES,
    META_STATUS,
    STATUS_NOT_FOUND,
    STATUS_TOO_EARLY,
    STATUS_USED,
    STATUS_VALID,
    STATUS_WRONG_EVENT,
    Attendee,
    CheckinStats,
    CommitResult,
    TicketMeta,
    ValidationOutcome,
)

VALIDATE_PATH = "/api/tickets/validate-qr"
CHECKIN_PATH  = "/api/tickets/check-in"
STATS_PATH    = "/api/tickets/events/{event_id}/checkin-stats"
ATTENDEES_PATH = "/api/tickets/events/{event_id}/attendees"

# server status strings -> outcome status
STATUS_MAP = {
    "valid": STATUS_VALID,
    "used": STATUS_USED,
    "already_used": STATUS_USED,
    "wrong_event": STATUS_WRONG_EVENT,
    "too_early": STATUS_TOO_EARLY,
    "not_found": STATUS_NOT_FOUND,
    "invalid": STATUS_NOT_FOUND,
    "refunded": STATUS_NOT_FOUND,
}

log = logging.getLogger("checkin.api")


class ApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationClient:
    """
    One shared httpx.AsyncClient for every call; concurrent validate() calls
    for different tokens share nothing else.
    """
    def __init__(
        self,
        base_url: str,
        *,
        timeout_ms: int = 4000,
        check_in_by: str = "staff",
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = max(0.05, timeout_ms / 1000.0)
        self.check_in_by = check_in_by or "staff"
        self.headers = dict(headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Observability counters (simple integers; emit in logs)
        self.validations_sent = 0
        self.validations_failed = 0
        self.commits_sent = 0
        self.commits_failed = 0

    @classmethod
    def from_config(cls, api_cfg: Dict[str, Any], **kw: Any) -> "ValidationClient":
        base_url = api_cfg.get("base_url") or "http://127.0.0.1:5000"
        return cls(
            str(base_url),
            timeout_ms=int(api_cfg.get("timeout_ms", 4000)),
            check_in_by=str(api_cfg.get("check_in_by") or "staff"),
            headers=api_cfg.get("headers") or None,
            **kw,
        )

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "ValidationClient":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.start()
        assert self._client is not None
        return self._client

    # ---------- validate ----------
    async def validate(self, token: str, event_id: str) -> ValidationOutcome:
        self.validations_sent += 1
        t0 = time.perf_counter()
        try:
            client = await self._http()
            resp = await client.post(
                VALIDATE_PATH,
                json={"token": token, "qrToken": token, "eventId": event_id},
            )
        except httpx.HTTPError as e:
            self.validations_failed += 1
            log.warning("validate_transport_error", extra={"token": token, "err": str(e) or type(e).__name__})
            return ValidationOutcome.network_error(token, type(e).__name__)

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            self.validations_failed += 1
            log.warning("validate_bad_body", extra={"token": token, "status": resp.status_code})
            return ValidationOutcome.network_error(token, f"unexpected response (HTTP {resp.status_code})")

        outcome = self._outcome_from_body(token, resp.status_code, body)
        log.info(
            "validated",
            extra={
                "token": token,
                "outcome": outcome.status,
                "http_status": resp.status_code,
                "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
            },
        )
        return outcome

    @staticmethod
    def _outcome_from_body(token: str, http_status: int, body: Dict[str, Any]) -> ValidationOutcome:
        raw_status = str(body.get("status") or "").strip().lower()
        status = STATUS_MAP.get(raw_status)
        if status is None:
            if body.get("ok") is True and 200 <= http_status < 300:
                status = STATUS_VALID
            elif http_status >= 500 or http_status in (408, 429):
                # server-side failure without a business verdict: transient
                return ValidationOutcome.network_error(
                    token, str(body.get("error") or body.get("message") or f"HTTP {http_status}")
                )
            else:
                status = STATUS_NOT_FOUND

        message = str(body.get("message") or body.get("error") or DEFAULT_MESSAGES[status])
        meta = None
        if status in META_STATUS:
            raw_meta = body.get("meta") or body.get("ticket") or {}
            if not isinstance(raw_meta, dict):
                raw_meta = {}
            meta = TicketMeta.from_api(raw_meta, fallback_token=token)
        return ValidationOutcome(status=status, message=message, ticket_meta=meta, token=token)

    # ---------- commit ----------
    async def commit(self, qr_token: str, event_id: str, check_in_by: Optional[str] = None) -> CommitResult:
        self.commits_sent += 1
        payload = {"qrToken": qr_token, "eventId": event_id, "checkInBy": check_in_by or self.check_in_by}
        try:
            client = await self._http()
            resp = await client.post(CHECKIN_PATH, json=payload)
        except httpx.HTTPError as e:
            self.commits_failed += 1
            log.warning("commit_transport_error", extra={"token": qr_token, "err": str(e) or type(e).__name__})
            return CommitResult(ok=False, error=f"network error: {type(e).__name__}")

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            self.commits_failed += 1
            return CommitResult(ok=False, error=f"unexpected response (HTTP {resp.status_code})")

        ok = bool(body.get("ok")) and 200 <= resp.status_code < 300
        if not ok:
            self.commits_failed += 1
            err = str(body.get("error") or body.get("message") or "Failed to check in ticket")
            log.warning("commit_rejected", extra={"token": qr_token, "http_status": resp.status_code, "err": err})
            return CommitResult(ok=False, error=err)

        ticket_id = body.get("ticketId")
        log.info("committed", extra={"token": qr_token, "ticket_id": ticket_id})
        return CommitResult(
            ok=True,
            ticket_id=str(ticket_id) if ticket_id is not None else None,
            message=body.get("message"),
        )

    # ---------- reads ----------
    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            client = await self._http()
            resp = await client.get(path, params=params)
        except httpx.HTTPError as e:
            raise ApiError(f"GET {path} failed: {type(e).__name__}: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise ApiError(f"GET {path} returned HTTP {resp.status_code}", resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise ApiError(f"GET {path} returned a non-JSON body", resp.status_code) from e
        if not isinstance(body, dict):
            raise ApiError(f"GET {path} returned {type(body).__name__}, expected an object", resp.status_code)
        return body

    async def fetch_stats(self, event_id: str) -> CheckinStats:
        path = STATS_PATH.format(event_id=event_id)
        body = await self._get_json(path)
        try:
            return CheckinStats.from_api(body)
        except (ValueError, TypeError, AttributeError) as e:
            raise ApiError(f"GET {path} returned malformed stats: {e}") from e

    async def fetch_attendees(
        self,
        event_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Attendee]:
        params: Dict[str, str] = {}
        if status and status != "all":
            params["status"] = status
        if search:
            params["search"] = search
        path = ATTENDEES_PATH.format(event_id=event_id)
        body = await self._get_json(path, params or None)
        rows = body.get("attendees") or []
        if not isinstance(rows, list):
            raise ApiError(f"GET {path} returned malformed attendees: {type(rows).__name__}")
        return [Attendee.from_api(row) for row in rows if isinstance(row, dict)]
