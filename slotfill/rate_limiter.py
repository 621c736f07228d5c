"""
Per-patient notification rate limiting.

Counts live in a ``RateWindowStore``: rolling windows keyed by
(tenant, patient, window) with an explicit TTL. A successful check reserves a
slot in every window at once; a blocked check writes nothing. Reservations
can be released again when the send they paid for never reached the patient.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from slotfill.config import settings
from slotfill.models import new_id, utcnow

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimitConfig:
    max_per_hour: int = 1
    max_per_day: int = 3
    cooldown: timedelta = timedelta(minutes=60)

    @classmethod
    def from_settings(cls) -> "RateLimitConfig":
        return cls(
            max_per_hour=settings.max_notifications_per_hour,
            max_per_day=settings.max_notifications_per_day,
            cooldown=timedelta(minutes=settings.notification_cooldown_minutes),
        )


@dataclass(frozen=True)
class ReservationToken:
    tenant_id: str
    patient_id: str
    member: str


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    token: Optional[ReservationToken] = None


@dataclass
class _Window:
    expires_at: datetime
    events: dict[str, datetime] = field(default_factory=dict)


class RateWindowStore:
    """
    Rolling-window counters with TTL.

    Each key maps member ids to the instant they were recorded. A key expires
    ``ttl`` after its last write; ``purge_expired`` drops dead keys. Callers
    that need a check and its writes to be one step use ``locked()``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._windows: dict[tuple, _Window] = {}
        self._mutex = threading.Lock()

    @contextmanager
    def locked(self) -> Iterator["RateWindowStore"]:
        with self._mutex:
            yield self

    # The methods below assume the caller holds ``locked()``.

    def _live(self, key: tuple) -> Optional[_Window]:
        window = self._windows.get(key)
        if window is not None and self.clock() >= window.expires_at:
            del self._windows[key]
            return None
        return window

    def count(self, key: tuple, span: timedelta) -> int:
        window = self._live(key)
        if window is None:
            return 0
        now = self.clock()
        return sum(1 for at in window.events.values() if now - at < span)

    def latest(self, key: tuple) -> Optional[datetime]:
        window = self._live(key)
        if window is None or not window.events:
            return None
        return max(window.events.values())

    def add(self, key: tuple, member: str, ttl: timedelta) -> None:
        now = self.clock()
        window = self._live(key)
        if window is None:
            window = self._windows[key] = _Window(expires_at=now + ttl)
        window.events = {m: at for m, at in window.events.items() if now - at < ttl}
        window.events[member] = now
        window.expires_at = now + ttl

    # Self-locking maintenance.

    def remove(self, key: tuple, member: str) -> bool:
        with self._mutex:
            window = self._windows.get(key)
            if window is None:
                return False
            return window.events.pop(member, None) is not None

    def purge_expired(self) -> int:
        with self._mutex:
            now = self.clock()
            dead = [k for k, w in self._windows.items() if now >= w.expires_at]
            for key in dead:
                del self._windows[key]
        return len(dead)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    def __init__(
        self,
        store: Optional[RateWindowStore] = None,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.clock = clock
        self.store = store or RateWindowStore(clock=clock)
        self.config = config or RateLimitConfig.from_settings()

    @staticmethod
    def _keys(tenant_id: str, patient_id: str) -> dict[str, tuple]:
        return {
            "hour": (tenant_id, patient_id, "hour"),
            "day": (tenant_id, patient_id, "day"),
            "last": (tenant_id, patient_id, "last"),
        }

    def check_and_record(self, tenant_id: str, patient_id: str) -> RateLimitDecision:
        """Apply hourly cap, daily cap and cooldown; reserve on success."""
        keys = self._keys(tenant_id, patient_id)
        cfg = self.config

        with self.store.locked() as windows:
            hourly = windows.count(keys["hour"], HOUR)
            if hourly >= cfg.max_per_hour:
                return RateLimitDecision(
                    False, f"Hourly limit exceeded ({hourly}/{cfg.max_per_hour})"
                )

            daily = windows.count(keys["day"], DAY)
            if daily >= cfg.max_per_day:
                return RateLimitDecision(
                    False, f"Daily limit exceeded ({daily}/{cfg.max_per_day})"
                )

            last = windows.latest(keys["last"])
            if last is not None:
                elapsed = self.clock() - last
                if elapsed < cfg.cooldown:
                    minutes = int(elapsed.total_seconds() // 60)
                    limit = int(cfg.cooldown.total_seconds() // 60)
                    return RateLimitDecision(
                        False, f"Cooldown period active ({minutes}/{limit} minutes)"
                    )

            member = new_id()
            windows.add(keys["hour"], member, HOUR)
            windows.add(keys["day"], member, DAY)
            if cfg.cooldown > timedelta(0):
                windows.add(keys["last"], member, cfg.cooldown)

        return RateLimitDecision(True, token=ReservationToken(tenant_id, patient_id, member))

    def release(self, token: ReservationToken) -> None:
        """Give back a reservation whose notification was never delivered."""
        for key in self._keys(token.tenant_id, token.patient_id).values():
            self.store.remove(key, token.member)
        logger.debug("Released rate reservation for patient %s", token.patient_id)
