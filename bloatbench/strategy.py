"""
strategy.py – what to submit next, with no I/O and no hidden state
-------------------------------------------------------------------

Every strategy is a plain function of (iteration, pool snapshot, config).
Randomness comes from a Random seeded with (config.seed, iteration), so a
decision can be replayed exactly from its inputs.

  blobs         fixed-size create batches
  varied        create batches cycling 0.5x / 1x / 1.5x / 2x base size
  churn         update + delete oldest (pool > 20) + create, one envelope
  mixed         blobs / varied / churn by iteration % 3
  update_heavy  warm the pool up with creates, then update_ratio updates
"""

from __future__ import annotations
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

from .pool import OLDEST, RANDOM, PoolView, TrackedObject

VARIED_MULTIPLIERS = (0.5, 1.0, 1.5, 2.0)
CHURN_DELETE_ABOVE = 20


class OpKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BATCH_MIXED = "batch_mixed"


@dataclass(frozen=True)
class Op:
    kind: OpKind
    size_kb: int = 0
    count: int = 1
    target: Optional[TrackedObject] = None

    @property
    def payload_kb(self) -> int:
        if self.kind is OpKind.DELETE:
            return 0
        return self.size_kb * self.count


@dataclass(frozen=True)
class WorkloadDecision:
    ops: Tuple[Op, ...]
    iteration: int = 0
    label: str = ""

    @property
    def kind(self) -> OpKind:
        kinds = {op.kind for op in self.ops}
        return kinds.pop() if len(kinds) == 1 else OpKind.BATCH_MIXED

    @property
    def count(self) -> int:
        return sum(op.count for op in self.ops)

    @property
    def targets(self) -> Tuple[TrackedObject, ...]:
        return tuple(op.target for op in self.ops if op.target is not None)

    @property
    def size_parameters(self) -> Tuple[int, ...]:
        return tuple(op.size_kb for op in self.ops)

    @property
    def payload_bytes(self) -> int:
        return sum(op.payload_kb for op in self.ops) * 1024

    def of_kind(self, kind: OpKind) -> Tuple[Op, ...]:
        return tuple(op for op in self.ops if op.kind is kind)

    def restrict(self, ids: Iterable[str]) -> "WorkloadDecision":
        """Drop targeted ops whose object was not leased."""
        keep = set(ids)
        ops = tuple(op for op in self.ops
                    if op.target is None or op.target.id in keep)
        return WorkloadDecision(ops, self.iteration, self.label)


# ── helpers ────────────────────────────────────────────────────────────
def _rng(cfg, iteration: int) -> random.Random:
    return random.Random(f"{cfg.seed}:{iteration}")

def _create(iteration: int, cfg, label: str, size_kb: Optional[int] = None,
            count: Optional[int] = None) -> WorkloadDecision:
    op = Op(OpKind.CREATE,
            size_kb=cfg.blob_size_kb if size_kb is None else size_kb,
            count=cfg.batch_size if count is None else count)
    return WorkloadDecision((op,), iteration, label)

def varied_size_kb(base_kb: int, iteration: int) -> int:
    return max(1, int(base_kb * VARIED_MULTIPLIERS[iteration % len(VARIED_MULTIPLIERS)]))

def update_size_kb(cfg, iteration: int) -> int:
    return cfg.blob_size_kb + (iteration % 5) * cfg.update_step_kb

def fallback_create(iteration: int, cfg) -> WorkloadDecision:
    """Used when every object a decision wanted is gone or busy."""
    return _create(iteration, cfg, "fallback")


# ── strategies ─────────────────────────────────────────────────────────
def blobs(iteration: int, view: PoolView, cfg) -> WorkloadDecision:
    return _create(iteration, cfg, "blobs")

def varied(iteration: int, view: PoolView, cfg) -> WorkloadDecision:
    return _create(iteration, cfg, "varied",
                   size_kb=varied_size_kb(cfg.blob_size_kb, iteration))

def churn(iteration: int, view: PoolView, cfg) -> WorkloadDecision:
    oldest = view.pick(1, OLDEST)
    ops = []
    if oldest:
        ops.append(Op(OpKind.UPDATE, size_kb=cfg.blob_size_kb * 2, target=oldest[0]))
        # rewritten then dropped in the same envelope
        if view.size > CHURN_DELETE_ABOVE:
            ops.append(Op(OpKind.DELETE, target=oldest[0]))
    ops.append(Op(OpKind.CREATE, size_kb=cfg.blob_size_kb,
                  count=max(1, cfg.batch_size - 2)))
    return WorkloadDecision(tuple(ops), iteration, "churn")

def update_heavy(iteration: int, view: PoolView, cfg) -> WorkloadDecision:
    if view.size < cfg.target_pool_size:
        return _create(iteration, cfg, "update_heavy:warmup")
    rng = _rng(cfg, iteration)
    if rng.random() < cfg.update_ratio:
        picked = view.pick(cfg.batch_size, RANDOM, rng)
        if picked:
            size = update_size_kb(cfg, iteration)
            ops = tuple(Op(OpKind.UPDATE, size_kb=size, target=o) for o in picked)
            return WorkloadDecision(ops, iteration, "update_heavy:update")
    return _create(iteration, cfg, "update_heavy:create")

_MIXED_ROTATION = (blobs, varied, churn)

def mixed(iteration: int, view: PoolView, cfg) -> WorkloadDecision:
    d = _MIXED_ROTATION[iteration % len(_MIXED_ROTATION)](iteration, view, cfg)
    return WorkloadDecision(d.ops, iteration, "mixed:" + d.label)


class Strategy(str, Enum):
    BLOBS = "blobs"
    VARIED = "varied"
    CHURN = "churn"
    MIXED = "mixed"
    UPDATE_HEAVY = "update_heavy"

    def decide(self, iteration: int, view: PoolView, cfg) -> WorkloadDecision:
        return _DECIDERS[self](iteration, view, cfg)


_DECIDERS: Dict[Strategy, Callable[[int, PoolView, object], WorkloadDecision]] = {
    Strategy.BLOBS:        blobs,
    Strategy.VARIED:       varied,
    Strategy.CHURN:        churn,
    Strategy.MIXED:        mixed,
    Strategy.UPDATE_HEAVY: update_heavy,
}
