"""
Admin authority: the gate in front of every privileged ledger mutation.

Security model: allowed network address AND secret token. Every failure looks
like a missing route (404). Repeated bad tokens from the allowed address are
counted; once the threshold is hit that address gets 429 for the cooldown
window whatever token it sends.

The failure counters live in an injected store. ``MemoryFailureStore`` is a
process-local map with expiry (and a swappable clock for tests);
``CacheFailureStore`` keeps them in the Flask-Caching backend so several
workers can share them. A restart of a process-local store simply resets
throttling.
"""

import enum
import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from flask import current_app

MAX_FAILURES = 3
BLOCK_SECONDS = 15 * 60


class AdminDecision(str, enum.Enum):
    AUTHORIZED = "authorized"
    NOT_FOUND = "not_found"
    THROTTLED = "throttled"


@dataclass(frozen=True)
class FailureRecord:
    count: int = 0
    blocked_until: float = 0.0


class FailureStore(Protocol):
    def get(self, key: str) -> FailureRecord | None: ...

    def set(self, key: str, record: FailureRecord, ttl: float) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryFailureStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[str, tuple[FailureRecord, float]] = {}

    def get(self, key: str) -> FailureRecord | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            self._records.pop(key, None)
            return None
        return record

    def set(self, key: str, record: FailureRecord, ttl: float) -> None:
        self._records[key] = (record, self._clock() + ttl)

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def clear(self) -> None:
        self._records.clear()


class CacheFailureStore:
    def __init__(self, cache, prefix: str = "admin-failures:"):
        self._cache = cache
        self._prefix = prefix

    def get(self, key: str) -> FailureRecord | None:
        raw = self._cache.get(self._prefix + key)
        if not raw:
            return None
        return FailureRecord(
            count=int(raw.get("count", 0)),
            blocked_until=float(raw.get("blocked_until", 0.0)),
        )

    def set(self, key: str, record: FailureRecord, ttl: float) -> None:
        self._cache.set(
            self._prefix + key,
            {"count": record.count, "blocked_until": record.blocked_until},
            timeout=int(ttl),
        )

    def delete(self, key: str) -> None:
        self._cache.delete(self._prefix + key)


class AdminAuthority:
    def __init__(
        self,
        allowed_ip: str | None,
        secret_token: str | None,
        store: FailureStore,
        clock: Callable[[], float] = time.time,
        max_failures: int = MAX_FAILURES,
        block_seconds: float = BLOCK_SECONDS,
    ):
        self.allowed_ip = (allowed_ip or "").strip()
        self.secret_token = secret_token or ""
        self.store = store
        self.clock = clock
        self.max_failures = max_failures
        self.block_seconds = block_seconds

    def check(self, ip: str, token: str | None) -> AdminDecision:
        if not self.allowed_ip or not self.secret_token:
            return AdminDecision.NOT_FOUND
        if ip != self.allowed_ip:
            return AdminDecision.NOT_FOUND

        now = self.clock()
        record = self.store.get(ip)
        if record is not None and record.count >= self.max_failures:
            if now < record.blocked_until:
                return AdminDecision.THROTTLED
            # Cooldown over
            self.store.delete(ip)
            record = None

        if not token or not hmac.compare_digest(
            token.encode("utf-8"), self.secret_token.encode("utf-8")
        ):
            count = (record.count if record else 0) + 1
            blocked_until = now + self.block_seconds if count >= self.max_failures else 0.0
            self.store.set(ip, FailureRecord(count, blocked_until), self.block_seconds)
            current_app.logger.warning(
                "[admin] bad token from allowed address (failures=%s)", count
            )
            return AdminDecision.NOT_FOUND

        return AdminDecision.AUTHORIZED


def get_admin_authority() -> AdminAuthority:
    return current_app.extensions["admin_authority"]
