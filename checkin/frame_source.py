from __future__ import annotations
"""
Frame sources: own a camera (or stand-in) and report decoded QR payloads.

Every source shares one lifecycle, implemented once in FrameSource:
  start(facing)  -> claim the process-wide camera slot, open the device, spawn
                    the decode loop thread
  stop()         -> stop the loop, join it, release the device before returning
Subclasses only implement _open / _read_payloads / _close.

Modes (scanner.source):
  camera : OpenCV capture + cv2.QRCodeDetector
  mock   : cycles configured payloads every period_s (UI end-to-end tests)
  manual : no hardware; tokens arrive through manual entry only
"""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import cv2

log = logging.getLogger("checkin.camera")

FACING_ENVIRONMENT = "environment"
FACING_USER = "user"

# ---------- errors ----------

class CameraError(Exception):
    NO_DEVICE         = "no_device"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_RUNNING   = "already_running"
    HARDWARE_BUSY     = "hardware_busy"

    KINDS = {NO_DEVICE, PERMISSION_DENIED, ALREADY_RUNNING, HARDWARE_BUSY}

    def __init__(self, kind: str, message: str = ""):
        if kind not in self.KINDS:
            raise ValueError(f"unknown camera error kind: {kind!r}")
        self.kind = kind
        self.message = message or kind.replace("_", " ")
        super().__init__(f"{kind}: {self.message}")

    def as_dict(self) -> Dict[str, str]:
        return {"error": self.kind, "message": self.message}


# ---------- devices ----------

@dataclass(frozen=True)
class DeviceInfo:
    index: int
    label: str = ""
    path: Optional[str] = None


@dataclass(frozen=True)
class DeviceHandle:
    device: DeviceInfo
    facing: str
    opened_at: float = field(default_factory=time.time)


_FACING_HINTS = {
    FACING_ENVIRONMENT: re.compile(r"back|rear|environment|world", re.I),
    FACING_USER: re.compile(r"front|user|face", re.I),
}

SYSFS_VIDEO = Path("/sys/class/video4linux")


def list_video_devices(sysfs_root: Path = SYSFS_VIDEO, max_probe: int = 4) -> List[DeviceInfo]:
    """
    Enumerate video inputs. On Linux the kernel exposes device names under
    /sys/class/video4linux/videoN/name; elsewhere we probe the first
    `max_probe` OpenCV indexes and label them generically.
    """
    devices: List[DeviceInfo] = []
    if sysfs_root.is_dir():
        for entry in sorted(sysfs_root.glob("video*")):
            m = re.fullmatch(r"video(\d+)", entry.name)
            if not m:
                continue
            try:
                label = (entry / "name").read_text(encoding="utf-8").strip()
            except OSError:
                label = ""
            devices.append(DeviceInfo(index=int(m.group(1)), label=label, path=f"/dev/{entry.name}"))
        devices.sort(key=lambda d: d.index)
        return devices

    for idx in range(max(0, int(max_probe))):
        cap = cv2.VideoCapture(idx)
        try:
            if cap.isOpened():
                devices.append(DeviceInfo(index=idx, label=f"camera {idx}"))
        finally:
            cap.release()
    return devices


def pick_device(devices: Sequence[DeviceInfo], preferred_facing: str = FACING_ENVIRONMENT) -> Optional[DeviceInfo]:
    """Prefer a device whose label matches the facing; else the first one."""
    if not devices:
        return None
    hint = _FACING_HINTS.get(preferred_facing)
    if hint is not None:
        for dev in devices:
            if dev.label and hint.search(dev.label):
                return dev
    return devices[0]


# ---------- process-wide camera slot ----------

_OWNER_LOCK = threading.Lock()
_ACTIVE_SOURCE: Optional["FrameSource"] = None


def active_source() -> Optional["FrameSource"]:
    return _ACTIVE_SOURCE


# ---------- base source ----------

DecodeCallback = Callable[[str], None]
ErrorCallback = Callable[[CameraError], None]


class FrameSource:
    name = "base"

    def __init__(self):
        self._lock = threading.RLock()
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._handle: Optional[DeviceHandle] = None
        self._on_decoded: Optional[DecodeCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._status = "idle"
        self.frames_decoded = 0

    # ----- public lifecycle -----
    def start(self, preferred_facing: str = FACING_ENVIRONMENT) -> DeviceHandle:
        global _ACTIVE_SOURCE
        with self._lock:
            if self._handle is not None:
                raise CameraError(CameraError.ALREADY_RUNNING, f"{self.name} source already holds a device")
            with _OWNER_LOCK:
                if _ACTIVE_SOURCE is not None and _ACTIVE_SOURCE is not self:
                    raise CameraError(
                        CameraError.HARDWARE_BUSY,
                        f"camera is owned by another {_ACTIVE_SOURCE.name} source",
                    )
                self._status = "opening"
                try:
                    handle = self._open(preferred_facing)
                except CameraError as err:
                    self._status = f"error: {err.kind}"
                    raise
                _ACTIVE_SOURCE = self
            self._handle = handle
            self._stop.clear()
            self._status = f"open {handle.device.label or handle.device.index}"
            self._t = threading.Thread(target=self._run_loop, name=f"FrameSource[{self.name}]", daemon=True)
            self._t.start()
            log.info("camera_open", extra={"source": self.name, "device": handle.device.label,
                                           "index": handle.device.index, "facing": handle.facing})
            return handle

    def stop(self) -> None:
        global _ACTIVE_SOURCE
        with self._lock:
            if self._handle is None:
                return
            self._stop.set()
            t = self._t
            if t is not None and t.is_alive() and t is not threading.current_thread():
                t.join(timeout=2.0)
            try:
                self._close()
            finally:
                self._handle = None
                self._t = None
                self._status = "stopped"
                with _OWNER_LOCK:
                    if _ACTIVE_SOURCE is self:
                        _ACTIVE_SOURCE = None
            log.info("camera_released", extra={"source": self.name})

    def on_frame_decoded(self, callback: Optional[DecodeCallback]) -> None:
        self._on_decoded = callback

    def on_error(self, callback: Optional[ErrorCallback]) -> None:
        self._on_error = callback

    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[DeviceHandle]:
        return self._handle

    def status(self) -> Dict[str, Any]:
        dev = self._handle.device if self._handle else None
        return {
            "type": self.name,
            "running": self.is_running(),
            "status": self._status,
            "device": {"index": dev.index, "label": dev.label} if dev else None,
            "frames_decoded": self.frames_decoded,
        }

    # ----- decode loop -----
    def _run_loop(self) -> None:
        try:
            while not self._stop.is_set():
                for payload in self._read_payloads():
                    if self._stop.is_set():
                        break
                    self._emit(payload)
        except CameraError as err:
            self._fail(err)
        except Exception as e:
            self._fail(CameraError(CameraError.HARDWARE_BUSY, f"decode loop crashed: {e}"))

    def _emit(self, payload: str) -> None:
        if not payload:
            return
        self.frames_decoded += 1
        cb = self._on_decoded
        if cb is None:
            return
        try:
            cb(payload)
        except Exception:
            log.exception("decode_callback_failed", extra={"source": self.name})

    def _fail(self, err: CameraError) -> None:
        self._status = f"error: {err.kind}"
        log.warning("camera_failed", extra={"source": self.name, "kind": err.kind, "err": err.message})
        cb = self._on_error
        if cb is not None:
            try:
                cb(err)
            except Exception:
                log.exception("error_callback_failed", extra={"source": self.name})

    # ----- subclass hooks -----
    def _open(self, preferred_facing: str) -> DeviceHandle:  # pragma: no cover
        raise NotImplementedError

    def _read_payloads(self) -> List[str]:  # pragma: no cover
        """Block for at most one frame interval; return decoded payloads (may be empty)."""
        raise NotImplementedError

    def _close(self) -> None:
        pass


# ---------- OpenCV camera ----------

@dataclass
class CameraConfig:
    device: Optional[int] = None
    max_probe: int = 4
    target_fps: float = 10.0
    width: int = 1280
    height: int = 720
    max_read_failures: int = 50
    sysfs_root: Path = SYSFS_VIDEO

    @classmethod
    def from_dict(cls, cam: Optional[Dict[str, Any]]) -> "CameraConfig":
        cam = cam or {}
        device = cam.get("device")
        return cls(
            device=int(device) if device is not None else None,
            max_probe=int(cam.get("max_probe", 4)),
            target_fps=max(1.0, float(cam.get("target_fps", 10))),
            width=int(cam.get("width", 1280)),
            height=int(cam.get("height", 720)),
            max_read_failures=max(1, int(cam.get("max_read_failures", 50))),
        )


class CameraFrameSource(FrameSource):
    name = "camera"

    def __init__(self, cfg: Optional[CameraConfig] = None):
        super().__init__()
        self.cfg = cfg or CameraConfig()
        self._cap = None
        self._detector = None
        self._misses = 0
        self._next_frame_at = 0.0

    def _select(self, preferred_facing: str) -> DeviceInfo:
        devices = list_video_devices(self.cfg.sysfs_root, self.cfg.max_probe)
        if self.cfg.device is not None:
            for dev in devices:
                if dev.index == self.cfg.device:
                    return dev
            raise CameraError(CameraError.NO_DEVICE, f"configured camera index {self.cfg.device} not found")
        dev = pick_device(devices, preferred_facing)
        if dev is None:
            raise CameraError(CameraError.NO_DEVICE, "no video input devices found")
        return dev

    def _open(self, preferred_facing: str) -> DeviceHandle:
        dev = self._select(preferred_facing)
        if dev.path and os.path.exists(dev.path) and not os.access(dev.path, os.R_OK | os.W_OK):
            raise CameraError(CameraError.PERMISSION_DENIED, f"no access to {dev.path}; check video group membership")

        cap = cv2.VideoCapture(dev.index)
        if not cap.isOpened():
            cap.release()
            raise CameraError(CameraError.HARDWARE_BUSY, f"could not open camera {dev.index} ({dev.label or 'unnamed'})")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)
        cap.set(cv2.CAP_PROP_FPS, self.cfg.target_fps)

        self._cap = cap
        self._detector = cv2.QRCodeDetector()
        self._misses = 0
        self._next_frame_at = 0.0
        return DeviceHandle(device=dev, facing=preferred_facing)

    def _read_payloads(self) -> List[str]:
        # pace decoding to target_fps; the capture itself may run faster
        delay = self._next_frame_at - time.monotonic()
        if delay > 0:
            self._stop.wait(delay)
        self._next_frame_at = time.monotonic() + 1.0 / self.cfg.target_fps

        ok, frame = self._cap.read()
        if not ok or frame is None:
            self._misses += 1
            if self._misses >= self.cfg.max_read_failures:
                raise CameraError(CameraError.NO_DEVICE, "camera stopped delivering frames")
            return []
        self._misses = 0

        try:
            found, decoded, _points, _ = self._detector.detectAndDecodeMulti(frame)
        except cv2.error as e:
            log.debug("qr_decode_error", extra={"err": str(e)})
            return []
        if not found:
            return []
        return [s for s in decoded if s]

    def _close(self) -> None:
        if self._cap is not None:
            self._cap.release()
        self._cap = None
        self._detector = None


# ---------- mock + manual ----------

class MockFrameSource(FrameSource):
    name = "mock"

    def __init__(self, payloads: Sequence[str] = ("ABC123",), period_s: float = 3.0):
        super().__init__()
        self.payloads = [str(p) for p in payloads if str(p)]
        self.period_s = max(0.05, float(period_s))
        self._i = 0

    def _open(self, preferred_facing: str) -> DeviceHandle:
        self._i = 0
        return DeviceHandle(device=DeviceInfo(index=-1, label="mock"), facing=preferred_facing)

    def _read_payloads(self) -> List[str]:
        if self._stop.wait(self.period_s) or not self.payloads:
            return []
        payload = self.payloads[self._i % len(self.payloads)]
        self._i += 1
        return [payload]


class ManualFrameSource(FrameSource):
    name = "manual"

    def _open(self, preferred_facing: str) -> DeviceHandle:
        return DeviceHandle(device=DeviceInfo(index=-1, label="manual entry"), facing=preferred_facing)

    def _read_payloads(self) -> List[str]:
        self._stop.wait(0.5)
        return []


# ---------- factory ----------

FRAME_SOURCES: Dict[str, Callable[[Dict[str, Any]], FrameSource]] = {
    "camera": lambda sc: CameraFrameSource(CameraConfig.from_dict(sc.get("camera"))),
    "mock":   lambda sc: MockFrameSource(
        (sc.get("mock") or {}).get("payloads") or ("ABC123",),
        float((sc.get("mock") or {}).get("period_s", 3.0)),
    ),
    "manual": lambda sc: ManualFrameSource(),
}


def build_frame_source(scanner_cfg: Optional[Dict[str, Any]]) -> FrameSource:
    sc = scanner_cfg or {}
    source = str(sc.get("source", "camera")).lower()
    factory = FRAME_SOURCES.get(source)
    if factory is None:
        raise ValueError(f"Unknown scanner.source: {source}")
    return factory(sc)
