"""Health-aware proxy pool shared by all segment workers."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Iterable, List, Optional

Clock = Callable[[], float]


class ProxyState(str, Enum):
    HEALTHY = "healthy"
    SUSPECTED_BLOCKED = "suspected_blocked"
    COOLING_DOWN = "cooling_down"


@dataclass
class ProxyEntry:
    address: str
    state: ProxyState = ProxyState.HEALTHY
    last_used: float | None = None
    blocked_until: float | None = None
    leases: int = 0


@dataclass(frozen=True, slots=True)
class ProxyHandle:
    """Opaque lease returned by :meth:`ProxyPool.acquire`."""

    index: int
    address: str


class ProxyPool:
    """Round-robin proxy provider with cooldown after blocks."""

    def __init__(
        self,
        proxies: Iterable[str] | None = None,
        cooldown_seconds: float = 300.0,
        enabled: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._lock = Lock()
        self._index = 0
        self._entries: List[ProxyEntry] = []
        if proxies:
            self._entries.extend(ProxyEntry(p.strip()) for p in proxies if p.strip())
        self.cooldown_seconds = cooldown_seconds
        self.enabled = enabled
        self._clock = clock or time.monotonic

    @property
    def empty(self) -> bool:
        return not self._entries

    @property
    def active(self) -> bool:
        return self.enabled and not self.empty

    def acquire(self) -> Optional[ProxyHandle]:
        """Return the next healthy proxy, a suspected one, or ``None``."""

        if not self.active:
            return None
        with self._lock:
            now = self._clock()
            self._expire_cooldowns(now)
            for wanted in (ProxyState.HEALTHY, ProxyState.SUSPECTED_BLOCKED):
                picked = self._next_in_state(wanted)
                if picked is not None:
                    entry = self._entries[picked]
                    entry.last_used = now
                    entry.leases += 1
                    return ProxyHandle(picked, entry.address)
            return None

    def mark_blocked(self, handle: ProxyHandle | None) -> None:
        if handle is None:
            return
        with self._lock:
            entry = self._entries[handle.index]
            entry.state = ProxyState.COOLING_DOWN
            entry.blocked_until = self._clock() + self.cooldown_seconds

    def report_failure(self, handle: ProxyHandle | None) -> None:
        if handle is None:
            return
        with self._lock:
            entry = self._entries[handle.index]
            if entry.state is ProxyState.HEALTHY:
                entry.state = ProxyState.SUSPECTED_BLOCKED

    def release(self, handle: ProxyHandle | None, success: bool = True) -> None:
        if handle is None:
            return
        with self._lock:
            entry = self._entries[handle.index]
            entry.leases = max(0, entry.leases - 1)
            if success and entry.state is ProxyState.SUSPECTED_BLOCKED:
                entry.state = ProxyState.HEALTHY

    def available(self) -> int:
        """Number of entries ``acquire`` could hand out right now."""

        if not self.active:
            return 0
        with self._lock:
            self._expire_cooldowns(self._clock())
            return sum(1 for entry in self._entries if entry.state is not ProxyState.COOLING_DOWN)

    def snapshot(self) -> list[dict]:
        with self._lock:
            self._expire_cooldowns(self._clock())
            return [
                {
                    "address": entry.address,
                    "state": entry.state.value,
                    "blocked_until": entry.blocked_until,
                    "leases": entry.leases,
                }
                for entry in self._entries
            ]

    # ------------------------------------------------------------------
    def _expire_cooldowns(self, now: float) -> None:
        for entry in self._entries:
            if (
                entry.state is ProxyState.COOLING_DOWN
                and entry.blocked_until is not None
                and now >= entry.blocked_until
            ):
                entry.state = ProxyState.HEALTHY
                entry.blocked_until = None

    def _next_in_state(self, state: ProxyState) -> Optional[int]:
        total = len(self._entries)
        for offset in range(total):
            candidate = (self._index + offset) % total
            if self._entries[candidate].state is state:
                self._index = candidate + 1
                return candidate
        return None


__all__ = ["ProxyEntry", "ProxyHandle", "ProxyPool", "ProxyState"]
