from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 600.0


def parse_api_keys(raw: str | None) -> list[str]:
    """Split a comma/newline separated key list, dropping blanks and duplicates."""
    if not str(raw or "").strip():
        return []
    out: list[str] = []
    seen: set[str] = set()
    for item in re.split(r"[\r\n,]+", str(raw)):
        token = item.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def key_fingerprint(api_key: str) -> str:
    token = api_key.strip()
    if len(token) <= 12:
        return "***"
    return f"{token[:8]}***{token[-4:]}"


def _hour_bucket(timestamp: float) -> str:
    return time.strftime("%Y-%m-%d-%H", time.localtime(timestamp))


@dataclass(slots=True)
class _KeyState:
    last_failure_at: float | None = None
    usage: dict[str, int] = field(default_factory=dict)


class KeyPool:
    """Rotating set of API keys shared across conversions.

    Rotation index, cooldowns and usage counters are process-wide for the
    instance; every mutation happens under one lock.
    """

    def __init__(
        self,
        keys: Iterable[str],
        *,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys = tuple(keys)
        if not self._keys:
            raise ValueError("KeyPool requires at least one API key")
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._current_index = 0
        self._states = [_KeyState() for _ in self._keys]

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def current_index(self) -> int:
        with self._lock:
            return self._current_index

    def current(self) -> tuple[int, str]:
        with self._lock:
            return self._current_index, self._keys[self._current_index]

    def rotate(self) -> int:
        with self._lock:
            return self._rotate_locked()

    def _rotate_locked(self) -> int:
        old = self._current_index
        self._current_index = (old + 1) % len(self._keys)
        logger.warning("Switching API key %s -> %s", old, self._current_index)
        return self._current_index

    def mark_failed(self, index: int) -> None:
        with self._lock:
            self._states[index].last_failure_at = self._clock()

    def is_cooling_down(self, index: int) -> bool:
        with self._lock:
            return self._is_cooling_down_locked(index, self._clock())

    def _is_cooling_down_locked(self, index: int, now: float) -> bool:
        failed_at = self._states[index].last_failure_at
        return failed_at is not None and now - failed_at < self.cooldown_seconds

    def acquire(self) -> tuple[int, str]:
        """Return the current key, first skipping keys that are cooling down.

        At most one pass over the pool is made; when every key is cooling down
        the current one is used anyway.
        """
        with self._lock:
            if len(self._keys) > 1:
                now = self._clock()
                for _ in range(len(self._keys)):
                    if not self._is_cooling_down_locked(self._current_index, now):
                        break
                    logger.debug("Skipping recently failed key %s", self._current_index)
                    self._rotate_locked()
            return self._current_index, self._keys[self._current_index]

    def record_usage(self, index: int) -> int:
        with self._lock:
            bucket = _hour_bucket(self._clock())
            usage = self._states[index].usage
            # Only the current hour is kept, matching an hourly counter with expiry.
            for stale in [name for name in usage if name != bucket]:
                del usage[stale]
            usage[bucket] = usage.get(bucket, 0) + 1
            return usage[bucket]

    def usage(self, index: int) -> int:
        with self._lock:
            return self._states[index].usage.get(_hour_bucket(self._clock()), 0)

    def snapshot(self) -> list[dict[str, object]]:
        with self._lock:
            now = self._clock()
            bucket = _hour_bucket(now)
            return [
                {
                    "index": index,
                    "key": key_fingerprint(key),
                    "current": index == self._current_index,
                    "cooling_down": self._is_cooling_down_locked(index, now),
                    "last_failure_at": state.last_failure_at,
                    "usage_this_hour": state.usage.get(bucket, 0),
                }
                for index, (key, state) in enumerate(zip(self._keys, self._states))
            ]
