"""
Ticketing API client against an in-process mock server (httpx.MockTransport).

Tests verify:
1. validate() maps server statuses onto the six outcome kinds
2. Ticket meta is attached only to outcomes that carry ticket context
3. Transport failures, timeouts and non-JSON bodies become network_error
4. commit() sends qrToken/eventId/checkInBy and never raises
5. Stats and attendee reads parse the server shapes and raise ApiError on failure
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from checkin.api_client import ApiError, ValidationClient
from checkin.models import ValidationOutcome


def _client(handler) -> ValidationClient:
    return ValidationClient("http://tickets.test", transport=httpx.MockTransport(handler))


def _validate(handler, token="ABC123", event_id="evt-1"):
    async def go():
        async with _client(handler) as c:
            return await c.validate(token, event_id)
    return asyncio.run(go())


def _reply(status_code=200, **body):
    return lambda request: httpx.Response(status_code, json=body)


# ---------- validate ----------

def test_validate_sends_token_and_event():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "status": "valid"})

    _validate(handler, token="T-1", event_id="E-9")
    assert seen["path"] == "/api/tickets/validate-qr"
    assert seen["body"] == {"token": "T-1", "qrToken": "T-1", "eventId": "E-9"}


def test_valid_with_ticket_meta():
    out = _validate(_reply(
        ok=True,
        status="valid",
        ticket={"id": "t1", "serial": "S-0001", "tierName": "GA", "buyerName": "Ana", "qrToken": "ABC123"},
    ))
    assert out.status == "valid"
    assert out.is_valid
    assert out.ticket_meta is not None
    assert out.ticket_meta.buyer_name == "Ana"
    assert out.ticket_meta.tier_name == "GA"
    assert out.ticket_meta.serial == "S-0001"
    assert out.ticket_meta.qr_token == "ABC123"


def test_ok_without_status_is_valid():
    out = _validate(_reply(ok=True))
    assert out.status == "valid"
    assert out.ticket_meta is not None
    assert out.ticket_meta.qr_token == "ABC123", "qr token falls back to the scanned token"


def test_used_keeps_checked_in_details():
    out = _validate(_reply(
        ok=False,
        status="used",
        error="Ticket already used",
        meta={"checkedInAt": "2026-05-01T19:02:00Z", "checkedInBy": "door-2"},
    ))
    assert out.status == "used"
    assert out.message == "Ticket already used"
    assert out.ticket_meta.checked_in_at == "2026-05-01T19:02:00Z"
    assert out.ticket_meta.checked_in_by == "door-2"


def test_wrong_event_and_too_early():
    out = _validate(_reply(ok=False, status="wrong_event", meta={"actualEventTitle": "Matinee"}))
    assert out.status == "wrong_event"
    assert out.ticket_meta.actual_event_title == "Matinee"

    out = _validate(_reply(ok=False, status="too_early", meta={"earliestCheckinAt": "2026-05-01T18:00:00Z"}))
    assert out.status == "too_early"
    assert out.ticket_meta.earliest_checkin_at == "2026-05-01T18:00:00Z"


@pytest.mark.parametrize("server_status", ["invalid", "refunded", "not_found"])
def test_unknown_ticket_statuses_are_not_found(server_status):
    out = _validate(_reply(404, ok=False, status=server_status, error="Invalid QR code"))
    assert out.status == "not_found"
    assert out.ticket_meta is None
    assert out.message == "Invalid QR code"


def test_client_error_without_status_is_not_found():
    out = _validate(_reply(400, ok=False, error="Missing qrToken"))
    assert out.status == "not_found"
    assert out.message == "Missing qrToken"


def test_server_error_without_status_is_network_error():
    out = _validate(_reply(500, ok=False, error="Failed to validate QR code"))
    assert out.status == "network_error"
    assert out.ticket_meta is None


def test_transport_failure_is_network_error():
    def handler(request: httpx.Request):
        raise httpx.ConnectError("connection refused", request=request)

    out = _validate(handler)
    assert out.status == "network_error"
    assert out.token == "ABC123"


def test_timeout_is_network_error():
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("timed out", request=request)

    assert _validate(handler).status == "network_error"


def test_non_json_body_is_network_error():
    out = _validate(lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"))
    assert out.status == "network_error"
    out = _validate(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    assert out.status == "network_error"


def test_outcome_rejects_meta_on_not_found():
    from checkin.models import TicketMeta

    with pytest.raises(ValueError):
        ValidationOutcome(status="not_found", message="x", ticket_meta=TicketMeta())
    with pytest.raises(ValueError):
        ValidationOutcome(status="maybe", message="x")


# ---------- commit ----------

def test_commit_success():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "message": "Ticket checked in", "ticketId": "t1"})

    async def go():
        async with _client(handler) as c:
            return await c.commit("QR-1", "E-1")

    res = asyncio.run(go())
    assert res.ok
    assert res.ticket_id == "t1"
    assert seen["path"] == "/api/tickets/check-in"
    assert seen["body"] == {"qrToken": "QR-1", "eventId": "E-1", "checkInBy": "staff"}


def test_commit_rejected_and_transport_failure():
    async def go(handler):
        async with _client(handler) as c:
            return await c.commit("QR-1", "E-1", check_in_by="door-3")

    res = asyncio.run(go(_reply(400, ok=False, error="Ticket already checked in")))
    assert not res.ok
    assert res.error == "Ticket already checked in"

    def boom(request: httpx.Request):
        raise httpx.ConnectError("down", request=request)

    res = asyncio.run(go(boom))
    assert not res.ok
    assert "network error" in res.error


# ---------- reads ----------

def test_fetch_stats_and_attendees():
    def handler(request: httpx.Request):
        if request.url.path.endswith("/checkin-stats"):
            return httpx.Response(200, json={"stats": {"totalTickets": 10, "checkedIn": 4, "remaining": 6,
                                                       "recentCheckIns": [{"serial": "S-1"}]}})
        assert request.url.params.get("status") == "used"
        assert "search" not in request.url.params
        return httpx.Response(200, json={"attendees": [
            {"ticketId": "t1", "serial": "S-1", "status": "used", "buyerName": "Ana", "checkedInAt": "x"},
        ]})

    async def go():
        async with _client(handler) as c:
            return await c.fetch_stats("E-1"), await c.fetch_attendees("E-1", status="used")

    stats, attendees = asyncio.run(go())
    assert (stats.total_tickets, stats.checked_in, stats.remaining) == (10, 4, 6)
    assert stats.progress_pct == 40.0
    assert len(attendees) == 1
    assert attendees[0].checked_in
    assert attendees[0].buyer_name == "Ana"


def test_status_all_is_not_sent():
    seen = {}

    def handler(request: httpx.Request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"attendees": []})

    async def go():
        async with _client(handler) as c:
            return await c.fetch_attendees("E-1", status="all", search="ana")

    assert asyncio.run(go()) == []
    assert seen["params"] == {"search": "ana"}


def test_read_failure_raises_api_error():
    async def go():
        async with _client(_reply(403, error="Forbidden")) as c:
            await c.fetch_stats("E-1")

    with pytest.raises(ApiError) as ei:
        asyncio.run(go())
    assert ei.value.status_code == 403


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
