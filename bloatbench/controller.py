"""
controller.py – W worker threads, at most M envelopes in flight
----------------------------------------------------------------

Each worker loops  decide → lease → submit → record → write back  until the
deadline, the iteration cap or a stop request.  Shared state is limited to
the ObjectPool and the StatsCollector, both internally locked; nothing is
held across an RPC call except the in-flight semaphore slot.

Failure handling per submission:
  Transient               retried with exponential backoff (interruptible)
  Conflict                targets dropped from the pool, no retry
  ResourceBudgetExceeded  permanent for this decision
  Rejected                permanent for this decision
A failure rate above the threshold over the trailing window pauses every
worker for `cooldown_seconds`.
"""

from __future__ import annotations
import logging, threading, time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, List, Optional

from .config import BenchConfig
from .pool import NotFound, ObjectPool
from .stats import StatsCollector
from .strategy import Strategy, WorkloadDecision, fallback_create
from .submitter import ErrorKind, Outcome, Submitter

log = logging.getLogger("bloatbench.controller")


def backoff_delays(initial: float, ceiling: float, retries: int) -> List[float]:
    return [min(ceiling, initial * (2 ** i)) for i in range(retries)]


class TokenBucket:
    """Global ops/sec limiter shared by all workers."""

    def __init__(self, rate: float, burst: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self.rate, self.burst, self.clock = rate, burst or max(1.0, rate), clock
        self._tokens, self._ts = self.burst, clock()
        self._lock = threading.Lock()

    def acquire(self, stop: threading.Event) -> bool:
        """Take one token; False if `stop` fired while waiting."""
        while True:
            with self._lock:
                now = self.clock()
                self._tokens = min(self.burst, self._tokens + (now - self._ts) * self.rate)
                self._ts = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return True
                wait = (1 - self._tokens) / self.rate
            if stop.wait(wait):
                return False


class FailureWindow:
    """Trailing success/failure record; `record()` says when to cool down."""

    def __init__(self, size: int = 10, threshold: float = 0.5):
        self.size, self.threshold = size, threshold
        self._win: Deque[bool] = deque(maxlen=size)
        self._total = 0
        self._lock = threading.Lock()

    def record(self, ok: bool) -> bool:
        with self._lock:
            self._win.append(ok)
            self._total += 1
            if self._total < self.size or len(self._win) < self.size:
                return False
            if self._win.count(False) / len(self._win) > self.threshold:
                self._win.clear()                # judge the next window on fresh data
                return True
            return False


@dataclass(frozen=True)
class RunReport:
    iterations: int
    ended_by: str             # "deadline" | "iterations" | "stopped"
    elapsed: float

    @property
    def stopped_early(self) -> bool:
        return self.ended_by == "stopped"


class ConcurrencyController:
    def __init__(self, cfg: BenchConfig, strategy: Strategy, submitter: Submitter,
                 pool: ObjectPool, stats: StatsCollector,
                 stop: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg, self.strategy, self.submitter = cfg, strategy, submitter
        self.pool, self.stats, self.clock = pool, stats, clock
        self.stop_event = stop or threading.Event()
        self.slots = threading.BoundedSemaphore(cfg.in_flight)
        self.bucket = TokenBucket(cfg.rate_limit) if cfg.rate_limit > 0 else None
        self.window = FailureWindow(cfg.failure_window, cfg.failure_threshold)
        self.delays = backoff_delays(cfg.backoff_initial, cfg.backoff_max, cfg.max_retries)
        self._lock = threading.Lock()
        self._issued = 0
        self._resume_at = 0.0
        self._cooling = False
        self._deadline_hit = False
        self._cap_hit = False
        self._warm = False

    # ── control ──────────────────────────────────────────────────────
    def stop(self) -> None:
        self.stop_event.set()

    def _expire(self) -> None:
        self._deadline_hit = True
        self.stop_event.set()

    def _next_iteration(self) -> Optional[int]:
        with self._lock:
            if self.cfg.max_iterations and self._issued >= self.cfg.max_iterations:
                self._cap_hit = True
                return None
            i, self._issued = self._issued, self._issued + 1
            return i

    def _cooldown(self) -> None:
        with self._lock:
            self._resume_at = self.clock() + self.cfg.cooldown_seconds
            self._cooling = True
        self.stats.record_cooldown()
        log.warning("failure rate over %.0f%% in the last %d submissions; "
                    "pausing workers for %.1fs", self.cfg.failure_threshold * 100,
                    self.cfg.failure_window, self.cfg.cooldown_seconds)

    def _wait_cooldown(self) -> None:
        while not self.stop_event.is_set():
            with self._lock:
                remaining = self._resume_at - self.clock()
                if remaining <= 0:
                    ended, self._cooling = self._cooling, False
            if remaining <= 0:
                if ended:
                    log.info("cooldown over, resuming submissions")
                return
            self.stop_event.wait(remaining)

    # ── main ─────────────────────────────────────────────────────────
    def run(self) -> RunReport:
        t0 = self.clock()
        timer = None
        if self.cfg.duration_seconds > 0:
            timer = threading.Timer(self.cfg.duration_seconds, self._expire)
            timer.daemon = True
            timer.start()
        thrs = [threading.Thread(target=self._worker, name=f"worker-{i}")
                for i in range(self.cfg.workers)]
        for t in thrs: t.start()
        try:
            for t in thrs: t.join()
        finally:
            if timer is not None:
                timer.cancel()
        if self._deadline_hit:
            ended = "deadline"
        elif self._cap_hit and not self.stop_event.is_set():
            ended = "iterations"
        else:
            ended = "stopped"
        return RunReport(self._issued, ended, self.clock() - t0)

    def _worker(self) -> None:
        while not self.stop_event.is_set():
            self._wait_cooldown()
            if self.stop_event.is_set():
                break
            if self.bucket is not None and not self.bucket.acquire(self.stop_event):
                break
            i = self._next_iteration()
            if i is None:
                break
            self.execute(i)

    # ── one unit of work ─────────────────────────────────────────────
    def execute(self, iteration: int) -> Outcome:
        decision = self.strategy.decide(iteration, self.pool.view(), self.cfg)
        wanted = [t.id for t in decision.targets]
        leased = self.pool.lease(wanted) if wanted else []
        try:
            if wanted:
                decision = self._rebind(decision, leased)
            outcome = self._submit(decision)
            self._apply(outcome)
            return outcome
        finally:
            if leased:
                self.pool.release(o.id for o in leased)

    def _rebind(self, decision: WorkloadDecision, leased) -> WorkloadDecision:
        """Keep only leased targets, at the version the pool holds now."""
        cur = {o.id: o for o in leased}
        ops = tuple(op if op.target is None else replace(op, target=cur[op.target.id])
                    for op in decision.ops
                    if op.target is None or op.target.id in cur)
        if not ops:
            return fallback_create(decision.iteration, self.cfg)
        return WorkloadDecision(ops, decision.iteration, decision.label)

    def _submit(self, decision: WorkloadDecision) -> Outcome:
        self.stats.record_submit()
        attempt, outcome = 0, None
        while True:
            # a cooldown tripped by another worker holds retries too
            self._wait_cooldown()
            if outcome is not None:
                if self.stop_event.is_set():
                    return outcome
                attempt += 1
                self.stats.record_retry()
            with self.slots:
                outcome = self.submitter.submit(decision)
            err = outcome.error
            if err is None or not err.kind.retryable or attempt >= len(self.delays):
                return outcome
            log.debug("transient failure on %s (%s), retry %d in %.1fs",
                      decision.label, err.message, attempt + 1, self.delays[attempt])
            if self.stop_event.wait(self.delays[attempt]):
                return outcome

    def _apply(self, outcome: Outcome) -> None:
        err = outcome.error
        if err is None:
            for oid, version in outcome.updated:
                try:
                    self.pool.bump(oid, version)
                except NotFound:
                    log.warning("lost update: %s v%d is no longer tracked", oid, version)
            for oid in outcome.deleted:
                self.pool.remove(oid)
            if outcome.created:
                self.pool.register_many(outcome.created)
                self.pool.trim()
            self.stats.record_success(outcome.bytes_written, created=len(outcome.created),
                                      updated=len(outcome.updated),
                                      deleted=len(outcome.deleted))
            self._check_warmup()
        else:
            if err.kind is ErrorKind.CONFLICT:
                for oid in err.object_ids:
                    self.pool.remove(oid)
                log.info("conflict on %s; dropped %d stale objects", outcome.decision.label,
                         len(err.object_ids))
            elif err.kind is not ErrorKind.TRANSIENT:
                log.warning("%s failed permanently (%s): %s", outcome.decision.label,
                            err.kind.value, err.message)
            self.stats.record_failure(err.kind.value)
        if self.window.record(err is None):
            self._cooldown()

    def _check_warmup(self) -> None:
        if self._warm or self.strategy is not Strategy.UPDATE_HEAVY:
            return
        n = len(self.pool)
        if n >= self.cfg.target_pool_size:
            self._warm = True
            log.info("warmup complete: %d objects in pool", n)
