"""
submitter.py – turn a WorkloadDecision into one envelope and classify the result
---------------------------------------------------------------------------------

One decision → one envelope, however many ops it bundles: the benchmark is
only as useful as its ops-per-request density.  The resource budget is

    floor + per_kb · payload_kb + per_object · objects      (capped at max)

Nothing here touches the pool or the stats; the worker loop does that with
the returned Outcome.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .config import ConfigError
from .ledger import (BUDGET, CONFLICT, CREATE_BATCH, DELETE_BLOB, MODULE, TRANSIENT,
                     UPDATE_BLOB, Envelope, LedgerClient, MoveCall, ObjectRef)
from .pool import TrackedObject
from .strategy import OpKind, WorkloadDecision

log = logging.getLogger("bloatbench.submitter")

TRANSIENT_EXC = (TimeoutError, ConnectionError, OSError)


class ErrorKind(str, Enum):
    RESOURCE_BUDGET_EXCEEDED = "ResourceBudgetExceeded"
    CONFLICT = "Conflict"
    TRANSIENT = "Transient"
    REJECTED = "Rejected"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


_KIND_OF = {BUDGET: ErrorKind.RESOURCE_BUDGET_EXCEEDED, CONFLICT: ErrorKind.CONFLICT,
            TRANSIENT: ErrorKind.TRANSIENT}


@dataclass(frozen=True)
class SubmitError:
    kind: ErrorKind
    message: str = ""
    object_ids: Tuple[str, ...] = ()


@dataclass
class Outcome:
    decision: WorkloadDecision
    created: List[TrackedObject] = field(default_factory=list)
    updated: List[Tuple[str, int]] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    error: Optional[SubmitError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def bytes_written(self) -> int:
        return self.decision.payload_bytes if self.ok else 0


@dataclass(frozen=True)
class BudgetModel:
    floor: int = 10_000_000
    per_kb: int = 10_000
    per_object: int = 1_000_000
    maximum: int = 50_000_000_000

    def estimate(self, decision: WorkloadDecision) -> int:
        kb = sum(op.payload_kb for op in decision.ops)
        need = self.floor + self.per_kb * kb + self.per_object * decision.count
        return min(need, self.maximum)


class Submitter:
    def __init__(self, client: LedgerClient, package_id: Optional[str],
                 budget: Optional[BudgetModel] = None):
        if not package_id:
            raise ConfigError("no package id: publish the bloat package or set PACKAGE_ID")
        self.client = client
        self.package_id = package_id
        self.budget = budget or BudgetModel()

    def _target(self, fn: str) -> str:
        return f"{self.package_id}::{MODULE}::{fn}"

    def build(self, decision: WorkloadDecision) -> Envelope:
        calls = []
        for op in decision.ops:
            if op.kind is OpKind.CREATE:
                calls.append(MoveCall(self._target(CREATE_BATCH), (op.size_kb, op.count)))
            elif op.kind is OpKind.UPDATE:
                ref = ObjectRef(op.target.id, op.target.version)
                calls.append(MoveCall(self._target(UPDATE_BLOB), (ref, op.size_kb)))
            elif op.kind is OpKind.DELETE:
                ref = ObjectRef(op.target.id, op.target.version)
                calls.append(MoveCall(self._target(DELETE_BLOB), (ref,)))
            else:
                raise ValueError(f"cannot encode op kind {op.kind}")
        return Envelope(tuple(calls), self.budget.estimate(decision), decision.label)

    def submit(self, decision: WorkloadDecision) -> Outcome:
        env = self.build(decision)
        targets = tuple(t.id for t in decision.targets)
        try:
            resp = self.client.submit_envelope(env)
        except TRANSIENT_EXC as e:
            return Outcome(decision, error=SubmitError(ErrorKind.TRANSIENT, str(e), targets))
        except Exception as e:
            log.warning("ledger client raised on %s: %r", env.tag, e)
            return Outcome(decision, error=SubmitError(ErrorKind.REJECTED, repr(e), targets))

        if not resp.success:
            kind = _KIND_OF.get(resp.error_kind, ErrorKind.REJECTED)
            ids = tuple(resp.conflicting) if kind is ErrorKind.CONFLICT and resp.conflicting \
                else targets
            return Outcome(decision, error=SubmitError(kind, resp.error, ids))

        created_sizes = [op.size_kb for op in decision.of_kind(OpKind.CREATE)
                         for _ in range(op.count)]
        created = [TrackedObject(r.id, r.version, "blob",
                                 created_sizes[i] if i < len(created_sizes) else 0,
                                 decision.iteration)
                   for i, r in enumerate(resp.created)]
        return Outcome(decision, created=created,
                       updated=[(r.id, r.version) for r in resp.updated],
                       deleted=list(resp.deleted))
