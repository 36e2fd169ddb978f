from __future__ import annotations

import time
from collections import OrderedDict
from typing import Optional

DEFAULT_COOLDOWN_MS = 2500
DEFAULT_MAX_ENTRIES = 512


def now_ms() -> int:
    """Monotonic milliseconds; only differences are meaningful."""
    return int(time.monotonic() * 1000)


class DedupWindow:
    """
    De-duplicate decoded tokens within a per-token cooldown window.
    Bounded in-memory cache: token -> last_accepted_ms, oldest first.

    A camera reports the same ticket many times per second while it is held
    in front of the lens; only the first report inside the window is processed.
    A different token is never held back by another token's cooldown.
    """
    def __init__(self, cooldown_ms: int = DEFAULT_COOLDOWN_MS, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.cooldown_ms = max(0, int(cooldown_ms))
        self.max_entries = max(1, int(max_entries))
        self._last: "OrderedDict[str, int]" = OrderedDict()

    def should_process(self, token: str, now: Optional[int] = None) -> bool:
        now = now_ms() if now is None else int(now)
        self._prune(now)
        last = self._last.get(token)
        if last is not None and now - last < self.cooldown_ms:
            return False
        self._last[token] = now
        self._last.move_to_end(token)
        while len(self._last) > self.max_entries:
            self._last.popitem(last=False)
        return True

    def _prune(self, now: int) -> None:
        # entries are kept in acceptance order, so expired ones sit at the front
        while self._last:
            token, ts = next(iter(self._last.items()))
            if now - ts < self.cooldown_ms:
                break
            self._last.popitem(last=False)

    def reset(self) -> None:
        self._last.clear()

    def __len__(self) -> int:
        return len(self._last)

    def __contains__(self, token: str) -> bool:
        return token in self._last
