"""
pool.py – client-side registry of the ledger objects a benchmark run owns
-------------------------------------------------------------------------

• Insertion order is age order: head = oldest, tail = newest.
• One lock for everything; every op is O(1)–O(batch) so contention is
  negligible next to RPC latency.
• Objects handed to a worker are *leased* so that no two submissions race
  on the same object version.  Leases are never held by the pool across an
  RPC call – the worker leases, submits, then writes back and releases.
"""

from __future__ import annotations
import logging, random, threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Set, Tuple

log = logging.getLogger("bloatbench.pool")

RANDOM, OLDEST = "random", "oldest"
POLICIES = (RANDOM, OLDEST)


class NotFound(KeyError):
    """Object id is not tracked (evicted, deleted or never registered)."""


@dataclass(frozen=True)
class TrackedObject:
    id: str
    version: int
    kind: str = "blob"
    size_kb: int = 0                 # size class used for budget/byte estimates
    created_at_iteration: int = 0


def pick_from(objects: Sequence[TrackedObject], n: int, policy: str,
              rng: Optional[random.Random] = None) -> List[TrackedObject]:
    """Up to *n* distinct objects; a short result means "not enough, create"."""
    if n <= 0 or not objects:
        return []
    n = min(n, len(objects))
    if policy == OLDEST:
        return list(objects[:n])
    if policy == RANDOM:
        return (rng or random).sample(list(objects), n)
    raise ValueError(f"unknown pick policy {policy!r}")


@dataclass(frozen=True)
class PoolView:
    """Immutable snapshot handed to strategies (they never see the live pool)."""
    objects: Tuple[TrackedObject, ...] = ()    # free (un-leased) objects, oldest first
    size: int = 0                              # everything tracked, leased included

    def pick(self, n: int, policy: str = RANDOM,
             rng: Optional[random.Random] = None) -> List[TrackedObject]:
        return pick_from(self.objects, n, policy, rng)

    @classmethod
    def of(cls, objects: Iterable[TrackedObject]) -> "PoolView":
        objs = tuple(objects)
        return cls(objs, len(objs))


class ObjectPool:
    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("pool capacity must be >= 1")
        self.capacity = capacity
        self._objs: "OrderedDict[str, TrackedObject]" = OrderedDict()
        self._leased: Set[str] = set()
        self._lock = threading.Lock()
        self.evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._objs)

    def __contains__(self, obj_id: str) -> bool:
        with self._lock:
            return obj_id in self._objs

    def get(self, obj_id: str) -> TrackedObject:
        with self._lock:
            try:
                return self._objs[obj_id]
            except KeyError:
                raise NotFound(obj_id) from None

    # ── mutations ──────────────────────────────────────────────────────
    def register(self, obj: TrackedObject) -> bool:
        """Append at the tail.  Already-known ids are left untouched."""
        with self._lock:
            if obj.id in self._objs:
                return False
            self._objs[obj.id] = obj
            return True

    def register_many(self, objs: Iterable[TrackedObject]) -> int:
        with self._lock:
            added = 0
            for o in objs:
                if o.id not in self._objs:
                    self._objs[o.id] = o
                    added += 1
            return added

    def bump(self, obj_id: str, new_version: int) -> TrackedObject:
        with self._lock:
            cur = self._objs.get(obj_id)
            if cur is None:
                raise NotFound(obj_id)
            self._objs[obj_id] = bumped = replace(cur, version=new_version)
            return bumped

    def remove(self, obj_id: str) -> bool:
        with self._lock:
            self._leased.discard(obj_id)
            return self._objs.pop(obj_id, None) is not None

    def trim(self, max_size: Optional[int] = None) -> List[str]:
        """Evict from the head until len <= max_size (default: capacity);
        returns evicted ids.  ``trim(0)`` empties the pool."""
        max_size = self.capacity if max_size is None else max_size
        if max_size < 0:
            raise ValueError("trim size cannot be negative")
        out: List[str] = []
        with self._lock:
            while len(self._objs) > max_size:
                oid, _ = self._objs.popitem(last=False)
                self._leased.discard(oid)
                out.append(oid)
            self.evicted += len(out)
        if out:
            log.debug("trimmed %d objects (cap %d)", len(out), max_size)
        return out

    # ── reads ──────────────────────────────────────────────────────────
    def pick(self, n: int, policy: str = RANDOM,
             rng: Optional[random.Random] = None) -> List[TrackedObject]:
        with self._lock:
            snap = tuple(self._objs.values())
        return pick_from(snap, n, policy, rng)

    def view(self) -> PoolView:
        with self._lock:
            free = tuple(o for k, o in self._objs.items() if k not in self._leased)
            return PoolView(free, len(self._objs))

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._objs)

    # ── leases ─────────────────────────────────────────────────────────
    def lease(self, ids: Iterable[str]) -> List[TrackedObject]:
        """Lease whatever is still present and free; the rest is skipped."""
        got: List[TrackedObject] = []
        with self._lock:
            for oid in ids:
                obj = self._objs.get(oid)
                if obj is None or oid in self._leased:
                    continue
                self._leased.add(oid)
                got.append(obj)
        return got

    def release(self, ids: Iterable[str]) -> None:
        with self._lock:
            for oid in ids:
                self._leased.discard(oid)

    def leased(self) -> Set[str]:
        with self._lock:
            return set(self._leased)
