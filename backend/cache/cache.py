import time
import json
import asyncio
import hashlib
import logging
from enum import Enum
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def stable_hash(obj: Any) -> str:
    txt = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(txt.encode("utf-8")).hexdigest()


def _namespaced_key(ns: str, key: str) -> str:
    return f"{ns}:{key}"


def fingerprint(
    tenant: str,
    namespace: str,
    kpis: Dict[str, Any],
    entity_key: Optional[str] = None,
    source_version: int = 0,
    ruleset_version: int = 0,
) -> str:
    """Digest of everything that determines an insight; equal inputs share a cache slot."""
    return stable_hash({
        "tenant": tenant,
        "namespace": namespace,
        "kpis": kpis,
        "entity": entity_key,
        "source_version": source_version,
        "ruleset_version": ruleset_version,
    })


class SlotState(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class InsightRecord:
    namespace: str
    fingerprint: str
    value: Any
    produced_at: float
    source_version: int
    state: SlotState
    error_kind: Optional[str] = None

    @property
    def produced_at_iso(self) -> str:
        return datetime.fromtimestamp(self.produced_at, tz=timezone.utc).isoformat()

    def meta(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "fingerprint": self.fingerprint,
            "producedAt": self.produced_at_iso,
            "sourceVersion": self.source_version,
            "state": self.state.value,
            "errorKind": self.error_kind,
        }


@dataclass
class Outcome:
    """What a producer hands back: a value, plus an error kind when the value is a fallback."""
    value: Any
    error_kind: Optional[str] = None


Producer = Callable[[], Awaitable[Outcome]]
Fallback = Callable[[str], Any]


@dataclass
class CacheStats:
    hits: int = 0
    stale_hits: int = 0
    fallback_hits: int = 0
    misses: int = 0
    coalesced: int = 0
    stores: int = 0
    failures: int = 0
    evictions: int = 0
    invalidations: int = 0

    def lookups(self) -> int:
        return self.hits + self.stale_hits + self.fallback_hits + self.misses + self.coalesced

    def hit_rate(self) -> float:
        total = self.lookups()
        if not total:
            return 0.0
        return round((self.hits + self.stale_hits) / total * 100, 1)


class InsightCache:
    """
    Namespaced insight store with TTLs, single-flight computation and invalidation.

    A slot is READY (fresh for ttl_fresh, then stale but servable for ttl_grace),
    PENDING (a producer is running) or FAILED (holding a fallback value). The
    lock only guards map updates; producers always run outside it, in their own
    task, so a caller that goes away never cancels work other callers share.

    The notifier receives namespace_updated / namespace_invalidated /
    system_warning calls after the corresponding map change is visible.
    """

    def __init__(
        self,
        ttl_fresh: float = 1200,
        ttl_grace: float = 600,
        ttl_fail: float = 60,
        max_entries: int = 500,
        notifier: Any = None,
        ttl_overrides: Optional[Dict[str, float]] = None,
        silent_namespaces: Iterable[str] = (),
        backing: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_fresh = ttl_fresh
        self.ttl_grace = ttl_grace
        self.ttl_fail = ttl_fail
        self.max_entries = max_entries
        self.notifier = notifier
        self.ttl_overrides = dict(ttl_overrides or {})
        self.silent_namespaces = set(silent_namespaces)
        self.backing = backing
        self.clock = clock

        self._lock = asyncio.Lock()
        self._slots: "OrderedDict[str, InsightRecord]" = OrderedDict()
        self._pending: Dict[str, asyncio.Future] = {}
        self._failed_at: Dict[str, float] = {}
        self._tasks: set = set()
        self.stats = CacheStats()

    # -- lookups ---------------------------------------------------------------

    def fresh_ttl_for(self, namespace: str) -> float:
        return self.ttl_overrides.get(namespace, self.ttl_fresh)

    def _age(self, record: InsightRecord) -> float:
        return self.clock() - record.produced_at

    def _is_expired(self, record: InsightRecord) -> bool:
        if record.state == SlotState.READY:
            return self._age(record) > self.fresh_ttl_for(record.namespace) + self.ttl_grace
        return False

    def get(self, namespace: str, fp: str) -> Optional[InsightRecord]:
        """Non-blocking lookup; records past fresh+grace read as a miss."""
        record = self._slots.get(_namespaced_key(namespace, fp))
        if record is None or self._is_expired(record):
            return None
        return record

    def is_pending(self, namespace: str, fp: str) -> bool:
        return _namespaced_key(namespace, fp) in self._pending

    async def get_or_compute(
        self,
        namespace: str,
        fp: str,
        producer: Producer,
        source_version: int = 0,
        fallback: Optional[Fallback] = None,
    ) -> InsightRecord:
        """
        Return the slot's record, computing it at most once across concurrent callers.

        fresh READY -> returned as-is
        stale READY -> returned as-is, background refresh scheduled
        FAILED      -> fallback returned; one background retry after the cool-down
        PENDING     -> attach to the running computation
        otherwise   -> start the producer and wait for it
        """
        key = _namespaced_key(namespace, fp)
        async with self._lock:
            record = self._slots.get(key)
            now = self.clock()

            if record is not None and record.state == SlotState.READY:
                age = now - record.produced_at
                fresh = self.fresh_ttl_for(namespace)
                if age <= fresh:
                    self.stats.hits += 1
                    self._slots.move_to_end(key)
                    logger.debug(f"Cache hit {key[:48]}")
                    return record
                if age <= fresh + self.ttl_grace:
                    self.stats.stale_hits += 1
                    self._slots.move_to_end(key)
                    if key not in self._pending:
                        logger.info(f"Cache stale hit for {namespace}; scheduling refresh")
                        self._start_locked(key, namespace, fp, producer, source_version, fallback)
                    return record

            if record is not None and record.state == SlotState.FAILED:
                self._slots.move_to_end(key)
                failed_at = self._failed_at.get(key, record.produced_at)
                if key not in self._pending and now - failed_at >= self.ttl_fail:
                    logger.info(f"Retrying failed insight for {namespace} after cool-down")
                    self._start_locked(key, namespace, fp, producer, source_version, fallback)
                self.stats.fallback_hits += 1
                return record

            fut = self._pending.get(key)
            if fut is not None:
                self.stats.coalesced += 1
                logger.info(f"Cache coalesced waiter attached for {namespace}")
            else:
                self.stats.misses += 1
                logger.info(f"Cache miss for {namespace}; computing")
                fut = self._start_locked(key, namespace, fp, producer, source_version, fallback)

        # Shielded so a disconnecting caller never cancels the shared computation.
        return await asyncio.shield(fut)

    # -- computation -----------------------------------------------------------

    def _start_locked(self, key, namespace, fp, producer, source_version, fallback) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._pending[key] = fut
        if key not in self._slots:
            self._slots[key] = InsightRecord(
                namespace=namespace,
                fingerprint=fp,
                value=None,
                produced_at=self.clock(),
                source_version=source_version,
                state=SlotState.PENDING,
            )
        task = asyncio.create_task(self._run(key, namespace, fp, producer, source_version, fallback, fut))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return fut

    async def _run(self, key, namespace, fp, producer, source_version, fallback, fut) -> None:
        cancelled = False
        try:
            outcome = await producer()
        except asyncio.CancelledError:
            cancelled = True
            outcome = Outcome(fallback("cancelled") if fallback else None, "cancelled")
        except Exception as e:
            logger.error(f"Insight producer for {namespace} raised {type(e).__name__}: {e}")
            kind = type(e).__name__
            outcome = Outcome(fallback(kind) if fallback else None, kind)

        if outcome.error_kind is None:
            await self._store(namespace, fp, outcome.value, source_version, waiter=fut)
        else:
            await self._fail(key, namespace, fp, outcome, source_version, fut)
        if cancelled:
            raise asyncio.CancelledError()

    async def _fail(self, key, namespace, fp, outcome: Outcome, source_version: int, fut) -> InsightRecord:
        now = self.clock()
        record = InsightRecord(
            namespace=namespace,
            fingerprint=fp,
            value=outcome.value,
            produced_at=now,
            source_version=source_version,
            state=SlotState.FAILED,
            error_kind=outcome.error_kind,
        )
        async with self._lock:
            self._pending.pop(key, None)
            self._slots[key] = record
            self._slots.move_to_end(key)
            self._failed_at[key] = now
            self.stats.failures += 1
            self._evict_locked()
        if not fut.done():
            fut.set_result(record)
        logger.warning(f"Insight for {namespace} failed ({outcome.error_kind}); serving fallback")
        if self.notifier is not None:
            self.notifier.system_warning(f"Insights for {namespace} are temporarily unavailable ({outcome.error_kind})")
        return record

    # -- mutation --------------------------------------------------------------

    async def put(self, namespace: str, fp: str, value: Any, source_version: int = 0) -> InsightRecord:
        """Store a READY record and announce it."""
        return await self._store(namespace, fp, value, source_version)

    async def _store(self, namespace, fp, value, source_version, waiter=None, produced_at=None,
                     announce=True, persist=True) -> InsightRecord:
        key = _namespaced_key(namespace, fp)
        record = InsightRecord(
            namespace=namespace,
            fingerprint=fp,
            value=value,
            produced_at=self.clock() if produced_at is None else produced_at,
            source_version=source_version,
            state=SlotState.READY,
        )
        async with self._lock:
            if waiter is not None and self._pending.get(key) is waiter:
                self._pending.pop(key, None)
            self._slots[key] = record
            self._slots.move_to_end(key)
            self._failed_at.pop(key, None)
            self.stats.stores += 1
            self._evict_locked()
        if waiter is not None and not waiter.done():
            waiter.set_result(record)
        logger.info(f"Cache store {namespace} fp={fp[:12]} v{source_version}")

        if persist and self.backing is not None:
            try:
                await asyncio.to_thread(self.backing.save, record)
            except Exception as e:
                logger.error(f"Backing store write failed for {namespace}: {type(e).__name__}: {e}")
        if announce and self.notifier is not None and namespace not in self.silent_namespaces:
            self.notifier.namespace_updated(namespace, {
                "producedAt": record.produced_at_iso,
                "sourceVersion": source_version,
                "fingerprint": fp,
            })
        return record

    def _evict_locked(self) -> None:
        while len(self._slots) > self.max_entries:
            victim = self._pick_victim_locked()
            if victim is None:
                logger.warning(f"Cache over capacity ({len(self._slots)}) with only pending slots")
                return
            self._slots.pop(victim, None)
            self._failed_at.pop(victim, None)
            self.stats.evictions += 1
            logger.info(f"Cache evicted {victim[:48]}")

    def _pick_victim_locked(self) -> Optional[str]:
        lru_ready = None
        for key, record in self._slots.items():
            if key in self._pending or record.state == SlotState.PENDING:
                continue
            if record.state == SlotState.FAILED:
                return key
            if lru_ready is None:
                lru_ready = key
        return lru_ready

    async def invalidate(self, namespace: str) -> int:
        """Drop every settled record in a namespace and announce it. Returns the count removed."""
        prefix = _namespaced_key(namespace, "")
        async with self._lock:
            removed = self._drop_locked(lambda key: key.startswith(prefix))
            self.stats.invalidations += 1
        logger.info(f"Cache invalidated {namespace}: {removed} records")
        await self._forget_persisted(namespace)
        if self.notifier is not None and namespace not in self.silent_namespaces:
            self.notifier.namespace_invalidated(namespace)
        return removed

    async def invalidate_one(self, namespace: str, fp: str) -> bool:
        key = _namespaced_key(namespace, fp)
        async with self._lock:
            removed = self._drop_locked(lambda k: k == key)
            self.stats.invalidations += 1
        logger.info(f"Cache invalidated {namespace} fp={fp[:12]}")
        await self._forget_persisted(namespace, fp)
        if self.notifier is not None and namespace not in self.silent_namespaces:
            self.notifier.namespace_invalidated(namespace)
        return bool(removed)

    def _drop_locked(self, match: Callable[[str], bool]) -> int:
        # PENDING slots stay; their producer will settle them.
        doomed = [
            key for key, record in self._slots.items()
            if match(key) and record.state != SlotState.PENDING
        ]
        for key in doomed:
            self._slots.pop(key, None)
            self._failed_at.pop(key, None)
        return len(doomed)

    async def _forget_persisted(self, namespace: str, fp: Optional[str] = None) -> None:
        if self.backing is None:
            return
        try:
            if fp is None:
                await asyncio.to_thread(self.backing.delete_namespace, namespace)
            else:
                await asyncio.to_thread(self.backing.delete, namespace, fp)
        except Exception as e:
            logger.error(f"Backing store delete failed for {namespace}: {type(e).__name__}: {e}")

    async def clear(self) -> List[str]:
        """Drop every settled record; announces each namespace that held records."""
        async with self._lock:
            namespaces = sorted({
                r.namespace for r in self._slots.values() if r.state != SlotState.PENDING
            })
            self._drop_locked(lambda key: True)
            self.stats.invalidations += len(namespaces)
        logger.info(f"Cache cleared: {len(namespaces)} namespaces")
        for namespace in namespaces:
            await self._forget_persisted(namespace)
            if self.notifier is not None and namespace not in self.silent_namespaces:
                self.notifier.namespace_invalidated(namespace)
        return namespaces

    async def cleanup_expired(self) -> int:
        """Evict READY records past fresh+grace and FAILED records past their cool-down."""
        now = self.clock()
        async with self._lock:
            def expired(key: str) -> bool:
                record = self._slots[key]
                if record.state == SlotState.FAILED:
                    return now - self._failed_at.get(key, record.produced_at) > self.ttl_fail
                return self._is_expired(record)
            removed = self._drop_locked(expired)
            self.stats.evictions += removed
        logger.info(f"Cache cleanup removed {removed} expired records")
        return removed

    def reset_stats(self) -> None:
        self.stats = CacheStats()

    # -- reporting -------------------------------------------------------------

    def size(self) -> int:
        return len(self._slots)

    def namespace_sizes(self) -> Dict[str, int]:
        sizes: Dict[str, int] = {}
        for record in self._slots.values():
            sizes[record.namespace] = sizes.get(record.namespace, 0) + 1
        return dict(sorted(sizes.items()))

    def stats_snapshot(self) -> Dict[str, Any]:
        s = self.stats
        return {
            "hits": s.hits,
            "staleHits": s.stale_hits,
            "fallbackHits": s.fallback_hits,
            "misses": s.misses,
            "coalesced": s.coalesced,
            "stores": s.stores,
            "failures": s.failures,
            "evictions": s.evictions,
            "invalidations": s.invalidations,
            "size": self.size(),
            "pending": len(self._pending),
            "maxEntries": self.max_entries,
            "hitRate": s.hit_rate(),
            "namespaces": self.namespace_sizes(),
        }

    def health(self) -> Dict[str, Any]:
        issues = []
        if self.size() > self.max_entries * 0.8:
            issues.append(f"Cache near capacity ({self.size()}/{self.max_entries})")
        if self.stats.lookups() > 10 and self.stats.hit_rate() < 30:
            issues.append(f"Low hit rate ({self.stats.hit_rate()}%)")
        return {"healthy": not issues, "issues": issues, "stats": self.stats_snapshot()}

    # -- lifecycle -------------------------------------------------------------

    async def warm(self) -> int:
        """Reload persisted READY records that are still servable."""
        if self.backing is None:
            return 0
        try:
            rows: List[Tuple[str, str, Any, float, int]] = await asyncio.to_thread(self.backing.load_all)
        except Exception as e:
            logger.error(f"Backing store load failed: {type(e).__name__}: {e}")
            return 0
        loaded = 0
        now = self.clock()
        for namespace, fp, value, produced_at, source_version in rows:
            if now - produced_at > self.fresh_ttl_for(namespace) + self.ttl_grace:
                continue
            await self._store(namespace, fp, value, source_version, produced_at=produced_at,
                              announce=False, persist=False)
            loaded += 1
        logger.info(f"Cache warmed with {loaded} persisted records")
        return loaded

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Cache closed ({len(tasks)} background tasks cancelled)")
