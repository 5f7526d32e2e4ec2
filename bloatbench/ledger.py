"""
ledger.py – the one external collaborator: a request/response ledger client
----------------------------------------------------------------------------

The harness only needs `submit_envelope(envelope) -> LedgerResponse`.  A real
client (RPC transport, signing) is loaded at run time from a
`module:callable` factory, the same way the bench scripts load a locally
built binding; `sim` selects the in-memory `SimulatedLedger` below, which
is what dry runs and the tests talk to.
"""

from __future__ import annotations
import importlib, itertools, threading, time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

# error kinds a ledger response may carry
BUDGET, CONFLICT, TRANSIENT, REJECTED = "budget", "conflict", "transient", "rejected"

MODULE = "bloat"
CREATE_BATCH, UPDATE_BLOB, DELETE_BLOB = "create_blobs_batch", "update_blob", "delete_blob"


@dataclass(frozen=True)
class ObjectRef:
    id: str
    version: int


@dataclass(frozen=True)
class MoveCall:
    target: str                                      # "<package>::bloat::<function>"
    args: Tuple[Union[ObjectRef, int], ...] = ()

    @property
    def function(self) -> str:
        return self.target.rsplit("::", 1)[-1]

    @property
    def package(self) -> str:
        return self.target.split("::", 1)[0]


@dataclass(frozen=True)
class Envelope:
    calls: Tuple[MoveCall, ...]
    budget: int
    tag: str = ""

    def refs(self) -> List[ObjectRef]:
        return [a for c in self.calls for a in c.args if isinstance(a, ObjectRef)]


@dataclass
class LedgerResponse:
    success: bool
    created: List[ObjectRef] = field(default_factory=list)
    updated: List[ObjectRef] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: str = ""
    conflicting: List[str] = field(default_factory=list)


class LedgerClient(Protocol):
    def submit_envelope(self, envelope: Envelope) -> LedgerResponse: ...


# ── simulated ledger ──────────────────────────────────────────────────────
FaultHook = Callable[[int, Envelope], Optional[Union[LedgerResponse, BaseException]]]


class SimulatedLedger:
    """In-memory object store with Sui-like versioning.

    Every successful envelope gets one new lamport version which is stamped
    on every object it creates or mutates.  Object arguments must carry the
    current version or the whole envelope fails with a conflict.  `fault`
    may return a response (or raise-able exception) to inject failures; it
    receives the 1-based submission number.
    """

    def __init__(self, package_id: str = "0x0", latency: float = 0.0,
                 cost_floor: int = 5_000_000, cost_per_kb: int = 8_000,
                 cost_per_object: int = 500_000, fault: Optional[FaultHook] = None):
        self.package_id = package_id
        self.latency = latency
        self.cost_floor, self.cost_per_kb, self.cost_per_object = \
            cost_floor, cost_per_kb, cost_per_object
        self.fault = fault
        self.objects: Dict[str, Tuple[int, int]] = {}     # id -> (version, size_kb)
        self.submissions: List[float] = []                 # monotonic submit times
        self.bytes_stored = 0
        self._lamport = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def cost(self, envelope: Envelope) -> int:
        kb = objs = 0
        for c in envelope.calls:
            f = c.function
            if f == CREATE_BATCH:
                size, count = c.args
                kb += size * count; objs += count
            elif f == UPDATE_BLOB:
                kb += c.args[1]; objs += 1
            else:
                objs += 1
        return self.cost_floor + self.cost_per_kb * kb + self.cost_per_object * objs

    def submit_envelope(self, envelope: Envelope) -> LedgerResponse:
        with self._lock:
            self.submissions.append(time.monotonic())
            n = len(self.submissions)
        if self.latency:
            time.sleep(self.latency)
        if self.fault is not None:
            injected = self.fault(n, envelope)
            if isinstance(injected, BaseException):
                raise injected
            if injected is not None:
                return injected

        need = self.cost(envelope)
        if need > envelope.budget:
            return LedgerResponse(False, error_kind=BUDGET,
                                  error=f"budget {envelope.budget} < required {need}")
        with self._lock:
            stale = [r.id for r in envelope.refs()
                     if self.objects.get(r.id, (None,))[0] != r.version]
            if stale:
                return LedgerResponse(False, error_kind=CONFLICT, conflicting=stale,
                                      error=f"stale or unknown objects: {stale}")
            for c in envelope.calls:
                if c.package != self.package_id or c.function not in (
                        CREATE_BATCH, UPDATE_BLOB, DELETE_BLOB):
                    return LedgerResponse(False, error_kind=REJECTED,
                                          error=f"no such function {c.target}")
            self._lamport += 1
            v, resp = self._lamport, LedgerResponse(True)
            for c in envelope.calls:
                f = c.function
                if f == CREATE_BATCH:
                    size, count = c.args
                    for _ in range(count):
                        oid = f"0x{next(self._ids):064x}"
                        self.objects[oid] = (v, size)
                        resp.created.append(ObjectRef(oid, v))
                    self.bytes_stored += size * count * 1024
                elif f == UPDATE_BLOB:
                    ref, size = c.args
                    self.objects[ref.id] = (v, size)
                    resp.updated.append(ObjectRef(ref.id, v))
                    self.bytes_stored += size * 1024
                else:
                    (ref,) = c.args
                    del self.objects[ref.id]
                    resp.deleted.append(ref.id)
            return resp


# ── client loading ────────────────────────────────────────────────────────
def load_client(name: str, rpc_url: str, package_id: Optional[str]) -> LedgerClient:
    """`sim` or `package.module:factory`; the factory gets (rpc_url, package_id)."""
    if name == "sim":
        return SimulatedLedger(package_id or "0x0")
    mod_name, _, attr = name.partition(":")
    factory = getattr(importlib.import_module(mod_name), attr or "connect")
    return factory(rpc_url, package_id)
