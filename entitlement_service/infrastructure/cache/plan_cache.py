from __future__ import annotations

from datetime import datetime
import logging
from threading import Lock
import time
from typing import Callable

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import UserEntitlement


logger = logging.getLogger(__name__)


class TtlPlanCache(PlanCachePort):
    """Read-through cache of entitlement snapshots, keyed by user id.

    Entries expire ``ttl_seconds`` after they were fetched and are never served
    past that. Snapshots read from a degraded store are returned but not kept.

    Every miss takes a token from the invalidation epoch before it reads the
    store. A snapshot whose load started before the user's last ``invalidate``
    is returned to its caller but not cached. ``refresh`` only replaces an
    entry that is present, so it cannot resurrect an invalidated one either.
    """

    def __init__(
        self,
        *,
        store: EntitlementStorePort,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, UserEntitlement]] = {}
        self._epoch = 0
        self._invalidated: dict[str, int] = {}
        self._inflight: dict[int, int] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, user_id: str) -> tuple[UserEntitlement | None, int | None]:
        if self._ttl_seconds <= 0:
            return None, None
        now = self._clock()
        with self._lock:
            cached = self._entries.get(user_id)
            if cached is not None:
                fetched_at, snapshot = cached
                if now - fetched_at < self._ttl_seconds:
                    return snapshot, None
                self._entries.pop(user_id, None)
            token = self._epoch
            self._inflight[token] = self._inflight.get(token, 0) + 1
            return None, token

    def _store_entry(self, snapshot: UserEntitlement, *, token: int) -> None:
        if snapshot.degraded:
            return
        fetched_at = self._clock()
        with self._lock:
            if self._invalidated.get(snapshot.id, -1) > token:
                logger.debug("plan_cache: stale_load_dropped user_id=%s", snapshot.id)
                return
            cached = self._entries.get(snapshot.id)
            if cached is not None and cached[1].updated_at > snapshot.updated_at:
                return
            self._entries[snapshot.id] = (fetched_at, snapshot)
            self._sweep(fetched_at)

    def _release(self, token: int) -> None:
        with self._lock:
            remaining = self._inflight.get(token, 0) - 1
            if remaining > 0:
                self._inflight[token] = remaining
            else:
                self._inflight.pop(token, None)
            if not self._inflight:
                self._invalidated.clear()
            else:
                oldest = min(self._inflight)
                for user_id in [key for key, epoch in self._invalidated.items() if epoch <= oldest]:
                    del self._invalidated[user_id]

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        if now - self._last_sweep < self._ttl_seconds:
            return
        self._last_sweep = now
        expired = [key for key, (fetched_at, _) in self._entries.items() if now - fetched_at >= self._ttl_seconds]
        for user_id in expired:
            del self._entries[user_id]
        if expired:
            logger.debug("plan_cache: swept expired=%s", len(expired))

    def get(self, *, user_id: str, now: datetime) -> UserEntitlement:
        snapshot, token = self._lookup(user_id)
        if snapshot is not None:
            return snapshot
        logger.debug("plan_cache: miss user_id=%s", user_id)
        if token is None:
            return self._store.load_or_create(user_id=user_id, now=now)
        try:
            snapshot = self._store.load_or_create(user_id=user_id, now=now)
            self._store_entry(snapshot, token=token)
        finally:
            self._release(token)
        return snapshot

    def invalidate(self, *, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._epoch += 1
            if self._inflight:
                self._invalidated[user_id] = self._epoch

    def refresh(self, snapshot: UserEntitlement) -> None:
        if snapshot.degraded:
            self.invalidate(user_id=snapshot.id)
            return
        if self._ttl_seconds <= 0:
            return
        fetched_at = self._clock()
        with self._lock:
            cached = self._entries.get(snapshot.id)
            if cached is None or cached[1].updated_at > snapshot.updated_at:
                return
            self._entries[snapshot.id] = (fetched_at, snapshot)
