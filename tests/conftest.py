from __future__ import annotations
import threading
from dataclasses import replace

import pytest

from bloatbench.config import BenchConfig
from bloatbench.ledger import Envelope, LedgerResponse, SimulatedLedger
from bloatbench.pool import ObjectPool, TrackedObject
from bloatbench.stats import FtlReading, StatsCollector


BASE = BenchConfig(workers=1, blob_size_kb=100, batch_size=5, target_pool_size=3,
                   update_ratio=0.8, report_interval=3600, backoff_initial=0.01,
                   backoff_max=0.05, cooldown_seconds=0.05, seed=7)

def make_cfg(**kw) -> BenchConfig:
    return replace(BASE, **kw)

def objs(n: int, start: int = 0, version: int = 1):
    return [TrackedObject(f"0x{i:04x}", version, "blob", 100, i) for i in range(start, start + n)]


class FakeDisk:
    """Monotonic device counter under test control."""
    resets_on_read = False
    device = "fake0"

    def __init__(self, value: int = 0):
        self.value = value

    def write_bytes(self) -> int:
        return self.value


class FakeFtl:
    """Reset-on-read counter: the second read sees zeros."""
    resets_on_read = True

    def __init__(self, host: int, gc: int):
        self.pending = FtlReading(host, gc)
        self.reads = 0

    def read(self) -> FtlReading:
        self.reads += 1
        out, self.pending = self.pending, FtlReading()
        return out


class TrackingLedger(SimulatedLedger):
    """Records peak concurrency and any object referenced by two live envelopes."""

    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.live = 0
        self.peak = 0
        self.busy = set()
        self.overlaps = []
        self._track = threading.Lock()

    def submit_envelope(self, envelope: Envelope) -> LedgerResponse:
        ids = {r.id for r in envelope.refs()}
        with self._track:
            self.live += 1
            self.peak = max(self.peak, self.live)
            if ids & self.busy:
                self.overlaps.append(ids & self.busy)
            self.busy |= ids
        try:
            return super().submit_envelope(envelope)
        finally:
            with self._track:
                self.live -= 1
                self.busy -= ids


@pytest.fixture
def cfg():
    return make_cfg()

@pytest.fixture
def ledger():
    return SimulatedLedger()

@pytest.fixture
def pool():
    return ObjectPool(capacity=50)

@pytest.fixture
def stats():
    s = StatsCollector()
    s.start()
    return s
