"""
ScannerSession state machine, end to end with fake camera and fake server.

Tests verify:
1. Valid scan -> awaiting_confirmation -> confirm -> running, stats refresh requested
2. Rejections (used / not_found / network_error) leave the phase alone and show a notice
3. A ticket held under the camera is validated once per cooldown
4. confirm() outside awaiting_confirmation is a no-op with no network call
5. Only one session can own the camera; a second start fails with hardware_busy
6. Results that arrive after stop() are discarded
7. A failed commit keeps the candidate for retry
. A slower validation of an older scan never replaces a newer candidate
"""

import asyncio
import queue
import sys
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from checkin.feedback import CHECKIN_CONFIRMED, SCAN_ERROR, SCAN_SUCCESS, FeedbackBus, FeedbackEvent
from checkin.frame_source import CameraError, DeviceHandle, DeviceInfo, FrameSource, ManualFrameSource, active_source
from checkin.models import CommitResult, TicketMeta, ValidationOutcome
from checkin.session import (
    PHASE_AWAITING_CONFIRMATION,
    PHASE_ERROR,
    PHASE_IDLE,
    PHASE_RUNNING,
    PHASE_STOPPED,
    ScannerConfig,
    ScannerSession,
)


# ---------- fakes ----------

class FakeCamera(FrameSource):
    """Decode thread fed from a queue; tests push payloads as if read off the lens."""
    name = "fake"

    def __init__(self):
        super().__init__()
        self.frames: "queue.Queue" = queue.Queue()
        self.fail_with = None

    def _open(self, preferred_facing):
        return DeviceHandle(device=DeviceInfo(index=0, label="Fake Rear Camera"), facing=preferred_facing)

    def _read_payloads(self):
        if self.fail_with is not None:
            raise self.fail_with
        try:
            return [self.frames.get(timeout=0.02)]
        except queue.Empty:
            return []


class BrokenCamera(FrameSource):
    name = "broken"

    def _open(self, preferred_facing):
        raise CameraError(CameraError.PERMISSION_DENIED, "no access to /dev/video0")

    def _read_payloads(self):
        return []


def _valid(token, buyer="Ana"):
    meta = TicketMeta(buyer_name=buyer, tier_name="GA", serial="S-" + token, qr_token=token)
    return ValidationOutcome(status="valid", message="Ticket is valid", ticket_meta=meta, token=token)


class FakeClient:
    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.validate_calls: List[str] = []
        self.commit_calls: List[tuple] = []
        self.commit_results: List[CommitResult] = []
        self.validate_gate = None
        self.gates = {}
        self.commit_gate = None

    async def validate(self, token, event_id):
        self.validate_calls.append(token)
        gate = self.gates.get(token, self.validate_gate)
        if gate is not None:
            await gate.wait()
        out = self.outcomes.get(token)
        if out is None:
            return ValidationOutcome(status="not_found", message="Invalid QR code", token=token)
        return out

    async def commit(self, qr_token, event_id, check_in_by=None):
        self.commit_calls.append((qr_token, event_id, check_in_by))
        if self.commit_gate is not None:
            await self.commit_gate.wait()
        if self.commit_results:
            return self.commit_results.pop(0)
        return CommitResult(ok=True, ticket_id="t-" + qr_token, message="Ticket checked in")


def _session(client, source=None, **cfg):
    bus = FeedbackBus()
    events: List[FeedbackEvent] = []
    bus.subscribe(events.append)
    sc = ScannerConfig(**{"cooldown_ms": 2500, "outcome_display_ms": 5000, **cfg})
    s = ScannerSession("evt-1", source or ManualFrameSource(), client, bus, sc)
    return s, events


async def _until(pred, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ---------- happy path ----------

def test_valid_scan_then_confirm():
    async def go():
        client = FakeClient({"ABC123": _valid("ABC123")})
        s, events = _session(client)
        refreshed = []
        s.add_refresh_hook(lambda: refreshed.append(True))
        assert s.phase == PHASE_IDLE
        try:
            assert await s.start()
            assert s.phase == PHASE_RUNNING

            assert s.handle_payload("ABC123", now=0)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            assert s.last_candidate.token == "ABC123"
            assert s.last_outcome.ticket_meta.buyer_name == "Ana"
            assert [e.type for e in events] == [SCAN_SUCCESS]
            assert events[0].detail["tone"] == "success"

            assert await s.confirm()
            assert s.phase == PHASE_RUNNING
            assert s.last_candidate is None
            assert client.commit_calls == [("ABC123", "evt-1", "staff")]
            assert [e.type for e in events] == [SCAN_SUCCESS, CHECKIN_CONFIRMED]
            assert events[1].detail["ticket_id"] == "t-ABC123"
            assert refreshed == [True]
            assert s.checkins_confirmed == 1
        finally:
            s.stop()
        assert s.phase == PHASE_STOPPED
        assert not s.source.is_running()

    asyncio.run(go())


def test_json_payload_is_normalized_before_validation():
    async def go():
        client = FakeClient({"XYZ": _valid("XYZ")})
        s, _events = _session(client)
        try:
            await s.start()
            s.submit('{"qrToken":"XYZ"}')
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            assert client.validate_calls == ["XYZ"]
            assert s.last_candidate.raw_payload == '{"qrToken":"XYZ"}'
            assert s.last_candidate.source == "manual"
        finally:
            s.stop()

    asyncio.run(go())


# ---------- rejections ----------

def test_used_ticket_shows_notice_and_keeps_scanning():
    async def go():
        used = ValidationOutcome(
            status="used", message="Ticket already used",
            ticket_meta=TicketMeta(checked_in_at="2026-05-01T19:02:00Z"), token="USED1",
        )
        client = FakeClient({"USED1": used})
        s, events = _session(client)
        try:
            await s.start()
            s.handle_payload("USED1", now=0)
            await _until(lambda: s.notice is not None)
            assert s.phase == PHASE_RUNNING
            assert s.notice.status == "used"
            assert s.last_candidate is None
            assert [e.type for e in events] == [SCAN_ERROR]
            assert events[0].detail["meta"]["checked_in_at"] == "2026-05-01T19:02:00Z"
            assert not await s.confirm()
            assert client.commit_calls == []
        finally:
            s.stop()

    asyncio.run(go())


def test_network_error_allows_rescan_after_cooldown():
    async def go():
        client = FakeClient({"NET": ValidationOutcome.network_error("NET", "ConnectError")})
        s, events = _session(client, cooldown_ms=1000)
        try:
            await s.start()
            assert s.handle_payload("NET", now=0)
            await _until(lambda: s.notice is not None)
            assert s.phase == PHASE_RUNNING
            assert s.notice.status == "network_error"

            assert not s.handle_payload("NET", now=500)
            assert s.handle_payload("NET", now=1000)
            await _until(lambda: len(events) == 2)
            assert client.validate_calls == ["NET", "NET"]
        finally:
            s.stop()

    asyncio.run(go())


def test_notice_clears_after_display_time():
    async def go():
        client = FakeClient()
        s, _events = _session(client, outcome_display_ms=50)
        try:
            await s.start()
            s.handle_payload("NOPE", now=0)
            await _until(lambda: s.notice is not None)
            assert s.notice.status == "not_found"
            await _until(lambda: s.notice is None, timeout=1.0)
            assert s.phase == PHASE_RUNNING
        finally:
            s.stop()

    asyncio.run(go())


# ---------- duplicate suppression ----------

def test_held_ticket_is_validated_once():
    async def go():
        client = FakeClient({"HELD": _valid("HELD")})
        s, events = _session(client)
        try:
            await s.start()
            launched = [s.handle_payload("HELD", now=t) for t in range(0, 2000, 33)]
            assert launched.count(True) == 1
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            await _settle()
            assert client.validate_calls == ["HELD"]
            assert [e.type for e in events] == [SCAN_SUCCESS]
            assert s.scans_seen == len(launched)
            assert s.validations == 1

            # once the first validation has landed, repeats hit the cooldown
            assert not s.handle_payload("HELD", now=2100)
            assert s.scans_suppressed == 1
        finally:
            s.stop()

    asyncio.run(go())


def test_in_flight_token_not_revalidated_with_zero_cooldown():
    async def go():
        client = FakeClient({"SLOW": _valid("SLOW")})
        client.validate_gate = asyncio.Event()
        s, _events = _session(client, cooldown_ms=0)
        try:
            await s.start()
            assert s.handle_payload("SLOW", now=0)
            await _settle()
            assert not s.handle_payload("SLOW", now=10)
            assert s.handle_payload("OTHER", now=10), "different token is not held back"
            client.validate_gate.set()
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            assert sorted(client.validate_calls) == ["OTHER", "SLOW"]
        finally:
            s.stop()

    asyncio.run(go())


def test_new_valid_scan_supersedes_pending_candidate():
    async def go():
        client = FakeClient({"A": _valid("A", "Ana"), "B": _valid("B", "Ben")})
        s, events = _session(client)
        try:
            await s.start()
            s.handle_payload("A", now=0)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            s.handle_payload("B", now=10)
            await _until(lambda: s.last_candidate.token == "B")
            assert s.phase == PHASE_AWAITING_CONFIRMATION
            assert await s.confirm()
            assert client.commit_calls[0][0] == "B"
        finally:
            s.stop()

    asyncio.run(go())


def test_slow_older_scan_does_not_replace_newer_candidate():
    async def go():
        client = FakeClient({"OLD": _valid("OLD", "Olga"), "NEW": _valid("NEW", "Nina")})
        client.gates["OLD"] = asyncio.Event()
        s, events = _session(client)
        try:
            await s.start()
            assert s.handle_payload("OLD", now=0)
            assert s.handle_payload("NEW", now=10)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            assert s.last_candidate.token == "NEW"

            # the older validation lands after the newer one
            client.gates["OLD"].set()
            await _until(lambda: s.stale_discarded == 1)
            assert s.last_candidate.token == "NEW"
            assert s.last_outcome.ticket_meta.buyer_name == "Nina"
            assert [e.detail["token"] for e in events] == ["NEW"]

            assert await s.confirm()
            assert client.commit_calls == [("NEW", "evt-1", "staff")]
        finally:
            s.stop()

    asyncio.run(go())


def test_older_scan_landing_after_confirm_is_discarded():
    async def go():
        client = FakeClient({"OLD": _valid("OLD"), "NEW": _valid("NEW")})
        client.gates["OLD"] = asyncio.Event()
        s, _events = _session(client)
        try:
            await s.start()
            s.handle_payload("OLD", now=0)
            s.handle_payload("NEW", now=10)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            assert await s.confirm()
            client.gates["OLD"].set()
            await _until(lambda: s.stale_discarded == 1)
            assert s.phase == PHASE_RUNNING
            assert s.last_candidate is None
        finally:
            s.stop()

    asyncio.run(go())


# ---------- confirm safety ----------

def test_confirm_outside_awaiting_is_noop():
    async def go():
        client = FakeClient()
        s, events = _session(client)
        assert not await s.confirm()
        try:
            await s.start()
            assert not await s.confirm()
        finally:
            s.stop()
        assert not await s.confirm()
        assert client.commit_calls == []
        assert events == []

    asyncio.run(go())


def test_failed_commit_keeps_candidate_for_retry():
    async def go():
        client = FakeClient({"R1": _valid("R1")})
        client.commit_results = [CommitResult(ok=False, error="Failed to check in ticket")]
        s, events = _session(client)
        try:
            await s.start()
            s.handle_payload("R1", now=0)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)

            assert not await s.confirm()
            assert s.phase == PHASE_AWAITING_CONFIRMATION
            assert s.last_candidate.token == "R1"
            assert s.last_error == "Failed to check in ticket"
            assert events[-1].type == SCAN_ERROR
            assert events[-1].detail["status"] == "commit_failed"

            assert await s.confirm()
            assert s.phase == PHASE_RUNNING
            assert len(client.commit_calls) == 2
        finally:
            s.stop()

    asyncio.run(go())


# ---------- lifecycle ----------

def test_second_start_is_noop():
    async def go():
        s, _events = _session(FakeClient())
        try:
            assert await s.start()
            assert not await s.start()
            assert s.phase == PHASE_RUNNING
        finally:
            s.stop()

    asyncio.run(go())


def test_camera_is_exclusive_across_sessions():
    async def go():
        first, _ = _session(FakeClient())
        second, _ = _session(FakeClient())
        try:
            await first.start()
            with pytest.raises(CameraError) as ei:
                await second.start()
            assert ei.value.kind == CameraError.HARDWARE_BUSY
            assert second.phase == PHASE_ERROR
            assert second.camera_error.kind == CameraError.HARDWARE_BUSY
            assert first.phase == PHASE_RUNNING
            assert active_source() is first.source
        finally:
            first.stop()
            second.stop()
        assert active_source() is None

        # slot is free again once released
        try:
            assert await second.start()
        finally:
            second.stop()

    asyncio.run(go())


def test_open_failure_moves_to_error():
    async def go():
        s, _events = _session(FakeClient(), source=BrokenCamera())
        with pytest.raises(CameraError) as ei:
            await s.start()
        assert ei.value.kind == CameraError.PERMISSION_DENIED
        assert s.phase == PHASE_ERROR
        assert s.snapshot()["camera_error"]["error"] == "permission_denied"
        assert active_source() is None

        # nothing is wired to the failed source and scans are refused
        assert s.source._on_decoded is None
        assert s.source._on_error is None
        assert not s.handle_payload("AFTER", now=0)
        assert s.submit("AFTER") is False
        await _settle()
        assert s.client.validate_calls == []
        s.stop()
        assert s.phase == PHASE_STOPPED

    asyncio.run(go())


def test_validation_after_stop_is_discarded():
    async def go():
        client = FakeClient({"LATE": _valid("LATE")})
        client.validate_gate = asyncio.Event()
        s, events = _session(client)
        await s.start()
        s.handle_payload("LATE", now=0)
        await _settle()
        s.stop()
        client.validate_gate.set()
        await _settle()
        assert s.phase == PHASE_STOPPED
        assert s.last_outcome is None
        assert events == []

    asyncio.run(go())


def test_commit_after_stop_is_discarded():
    async def go():
        client = FakeClient({"C1": _valid("C1")})
        s, events = _session(client)
        await s.start()
        s.handle_payload("C1", now=0)
        await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)

        client.commit_gate = asyncio.Event()
        pending = asyncio.create_task(s.confirm())
        await _settle()
        s.stop()
        client.commit_gate.set()
        assert await pending is False
        assert s.phase == PHASE_STOPPED
        assert s.stale_discarded == 1
        assert [e.type for e in events] == [SCAN_SUCCESS]

    asyncio.run(go())


def test_restart_starts_clean():
    async def go():
        client = FakeClient({"A": _valid("A")})
        s, _events = _session(client)
        try:
            await s.start()
            s.handle_payload("A", now=0)
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            s.stop()
            assert s.last_candidate is None
            assert await s.start()
            assert s.phase == PHASE_RUNNING
            # dedup window was reset with the session
            assert s.handle_payload("A", now=1)
        finally:
            s.stop()

    asyncio.run(go())


# ---------- camera thread ----------

def test_decodes_from_camera_thread_reach_the_session():
    async def go():
        cam = FakeCamera()
        client = FakeClient({"CAM1": _valid("CAM1")})
        s, events = _session(client, source=cam)
        try:
            await s.start()
            for _ in range(10):
                cam.frames.put("CAM1")
            await _until(lambda: s.phase == PHASE_AWAITING_CONFIRMATION)
            await _until(lambda: cam.frames.empty())
            await asyncio.sleep(0.05)
            assert client.validate_calls == ["CAM1"]
            assert s.last_candidate.source == "camera"
        finally:
            s.stop()
        assert not cam.is_running()

    asyncio.run(go())


def test_camera_failure_while_scanning_moves_to_error():
    async def go():
        cam = FakeCamera()
        s, _events = _session(FakeClient(), source=cam)
        try:
            await s.start()
            cam.fail_with = CameraError(CameraError.NO_DEVICE, "camera stopped delivering frames")
            await _until(lambda: s.phase == PHASE_ERROR)
            assert s.camera_error.kind == CameraError.NO_DEVICE
            assert not cam.is_running()
            assert active_source() is None
            assert not s.handle_payload("ANY", now=0)
        finally:
            s.stop()

    asyncio.run(go())


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
