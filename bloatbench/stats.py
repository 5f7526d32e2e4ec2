"""
stats.py – app-level counters vs. device-level counters, and the WAF between them
----------------------------------------------------------------------------------

Two independent sources:

• application bytes – summed by the workers on every successful envelope;
• device bytes      – sampled from outside the process:
    DiskSectorCounter  monotonic per-disk write bytes (psutil ⇒ /proc/diskstats),
                       sampled as often as we like, WAF = Δdevice / app;
    FtlStatsCounter    in-device FTL stats from an external command that
                       *resets the device counters when read*; read exactly
                       once, at the end, WAF = 1 + copied / write_io_n.
"""

from __future__ import annotations
import logging, re, shlex, subprocess, threading, time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import psutil

log = logging.getLogger("bloatbench.stats")

SECTOR = 512
F2FS_SYSFS = Path("/sys/fs/f2fs")


# ── helpers ────────────────────────────────────────────────────────────
def run(cmd: str) -> str:
    return subprocess.check_output(shlex.split(cmd), text=True, stderr=subprocess.STDOUT)

def format_bytes(n: float) -> str:
    if n < 1024:
        return f"{n:.0f} B"
    if n < 1 << 20:
        return f"{n / 1024:.1f} KB"
    if n < 1 << 30:
        return f"{n / (1 << 20):.1f} MB"
    return f"{n / (1 << 30):.2f} GB"

def ratio_or_none(num: float, den: float) -> Optional[float]:
    return num / den if den else None


# ── device collaborators ───────────────────────────────────────────────
class DiskSectorCounter:
    """Monotonic bytes written to one block device since boot."""
    resets_on_read = False

    def __init__(self, device: str):
        self.device = device.rsplit("/", 1)[-1]           # /dev/nvme0n1 → nvme0n1

    def write_bytes(self) -> int:
        per_disk = psutil.disk_io_counters(perdisk=True) or {}
        try:
            return per_disk[self.device].write_bytes
        except KeyError:
            raise ValueError(f"no I/O counters for device {self.device!r}") from None

    def sectors_written(self) -> int:
        return self.write_bytes() // SECTOR


@dataclass(frozen=True)
class FtlReading:
    host_writes: int = 0        # pages written by the host (write_io_n)
    gc_copies: int = 0          # pages relocated by device GC (copied)
    block_erased: int = 0

    @property
    def waf(self) -> Optional[float]:
        return 1 + self.gc_copies / self.host_writes if self.host_writes else None


_FTL_KEYS = {"write_io_n": "host_writes", "copied": "gc_copies",
             "block_erased": "block_erased"}
_FTL_RX = re.compile(r"(?:^|[.\s>])(?P<key>write_io_n|copied|block_erased)\b\D*(?P<val>\d+)")

def parse_ftl_stats(text: str) -> FtlReading:
    vals: Dict[str, int] = {}
    for m in _FTL_RX.finditer(text):
        vals.setdefault(_FTL_KEYS[m["key"]], int(m["val"]))
    return FtlReading(**vals)


class FtlStatsCounter:
    """Reset-on-read in-device statistics.  A second read would only see
    what happened since the first one, so it is refused."""
    resets_on_read = True

    def __init__(self, cmd: str, runner: Callable[[str], str] = run):
        self.cmd, self.runner = cmd, runner
        self._lock = threading.Lock()
        self._done = False

    def read(self) -> FtlReading:
        with self._lock:
            if self._done:
                raise RuntimeError("reset-on-read device counters already consumed")
            self._done = True
        return parse_ftl_stats(self.runner(self.cmd))


def f2fs_gc_calls(device: Optional[str]) -> Tuple[int, int]:
    """(background, foreground) f2fs GC calls; 0 when the counter is absent."""
    if not device:
        return 0, 0
    out = []
    for name in ("gc_background_calls", "gc_foreground_calls"):
        try:
            out.append(int((F2FS_SYSFS / device / name).read_text().strip() or 0))
        except (OSError, ValueError):
            out.append(0)
    return out[0], out[1]

def fdp_mode() -> str:
    for p in psutil.disk_partitions(all=True):
        if p.fstype == "f2fs" and "fdp_log_n" in p.opts:
            return "fdp"
    return "nofdp"


# ── run statistics ─────────────────────────────────────────────────────
@dataclass(frozen=True)
class RunStatsView:
    total_submitted: int
    total_succeeded: int
    total_failed: int
    application_bytes_written: int
    start_timestamp: float
    last_activity_timestamp: float
    elapsed: float
    ops: Dict[str, int] = field(default_factory=dict)       # created/updated/deleted objects
    failures: Dict[str, int] = field(default_factory=dict)  # by error kind
    retries: int = 0
    cooldowns: int = 0
    device_byte_baseline: Optional[int] = None
    cumulative_device_bytes: Optional[int] = None
    ftl: Optional[FtlReading] = None
    final: bool = False

    @property
    def app_rate(self) -> float:
        return self.application_bytes_written / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def app_rate_per_min(self) -> float:
        return self.app_rate * 60

    @property
    def device_rate(self) -> Optional[float]:
        if self.cumulative_device_bytes is None or self.elapsed <= 0:
            return None
        return self.cumulative_device_bytes / self.elapsed

    @property
    def waf(self) -> Optional[float]:
        if self.cumulative_device_bytes is None:
            return None
        return ratio_or_none(self.cumulative_device_bytes, self.application_bytes_written)

    @property
    def in_device_waf(self) -> Optional[float]:
        return self.ftl.waf if self.ftl else None

    @property
    def tps(self) -> float:
        return self.total_succeeded / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def update_pct(self) -> float:
        done = self.ops.get("created", 0) + self.ops.get("updated", 0)
        return 100.0 * self.ops.get("updated", 0) / done if done else 0.0


class StatsCollector:
    def __init__(self, disk: Optional[DiskSectorCounter] = None,
                 ftl: Optional[FtlStatsCounter] = None,
                 clock: Callable[[], float] = time.time):
        if disk is not None and getattr(disk, "resets_on_read", False):
            raise ValueError("disk counter must be monotonic; pass reset-on-read ones as ftl")
        self.disk, self.ftl, self.clock = disk, ftl, clock
        self._lock, self._ftl_lock = threading.Lock(), threading.Lock()
        self._submitted = self._succeeded = self._failed = 0
        self._bytes = 0
        self._retries = self._cooldowns = 0
        self._ops: Counter = Counter()
        self._failures: Counter = Counter()
        self._start = self._last = clock()
        self._baseline: Optional[int] = None
        self._ftl_reading: Optional[FtlReading] = None

    def start(self) -> None:
        """Capture the start time and the device baseline (once)."""
        now = self.clock()
        base = self.disk.write_bytes() if self.disk is not None else None
        with self._lock:
            self._start = self._last = now
            self._baseline = base

    # ── worker side ──────────────────────────────────────────────────
    def record_submit(self) -> None:
        with self._lock:
            self._submitted += 1

    def record_success(self, nbytes: int, created: int = 0, updated: int = 0,
                       deleted: int = 0) -> None:
        if nbytes < 0:
            raise ValueError("application bytes only ever grow")
        now = self.clock()
        with self._lock:
            self._succeeded += 1
            self._bytes += nbytes
            self._last = now
            self._ops.update(created=created, updated=updated, deleted=deleted)

    def record_failure(self, kind: Optional[str] = None) -> None:
        now = self.clock()
        with self._lock:
            self._failed += 1
            self._last = now
            self._failures[kind or "unknown"] += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_cooldown(self) -> None:
        with self._lock:
            self._cooldowns += 1

    # ── reader side ──────────────────────────────────────────────────
    def snapshot(self, final: bool = False) -> RunStatsView:
        """Read-only view.  Only a final snapshot consumes reset-on-read
        device counters, and it does so at most once per run."""
        now = self.clock()
        with self._lock:
            sub, ok, bad, nbytes = self._submitted, self._succeeded, self._failed, self._bytes
            start, last, base = self._start, self._last, self._baseline
            ops, fails = dict(self._ops), dict(self._failures)
            retries, cooldowns = self._retries, self._cooldowns

        dev_bytes = None
        if self.disk is not None and base is not None:
            try:
                dev_bytes = max(0, self.disk.write_bytes() - base)
            except (OSError, ValueError) as e:
                log.warning("device counter unavailable: %s", e)

        if final and self.ftl is not None:
            with self._ftl_lock:
                if self._ftl_reading is None:
                    try:
                        self._ftl_reading = self.ftl.read()
                    except (OSError, subprocess.CalledProcessError) as e:
                        log.error("in-device stats unavailable: %s", e)
                        self._ftl_reading = FtlReading()

        return RunStatsView(sub, ok, bad, nbytes, start, last, now - start,
                            ops, fails, retries, cooldowns, base, dev_bytes,
                            self._ftl_reading if final else None, final)


# ── formatting / periodic reporting ────────────────────────────────────
def _fmt_waf(v: Optional[float]) -> str:
    return "N/A" if v is None else f"{v:.2f}x"

def format_line(v: RunStatsView) -> str:
    line = (f"[stats] {v.elapsed:7.1f}s  tx {v.total_succeeded}/{v.total_submitted} "
            f"({v.total_failed} failed)  app {format_bytes(v.application_bytes_written)} "
            f"@ {format_bytes(v.app_rate_per_min)}/min")
    if v.cumulative_device_bytes is not None:
        line += (f"  dev {format_bytes(v.cumulative_device_bytes)} "
                 f"@ {format_bytes((v.device_rate or 0) * 60)}/min  WAF {_fmt_waf(v.waf)}")
    return line

def format_summary(v: RunStatsView, stopped_early: bool = False) -> str:
    rows = [
        ("Elapsed",       f"{v.elapsed:.1f}s"),
        ("Ended by",      "stop signal" if stopped_early else "deadline / iteration cap"),
        ("Transactions",  f"{v.total_succeeded}/{v.total_submitted} ({v.total_failed} failed)"),
        ("TPS",           f"{v.tps:.2f} tx/sec"),
        ("Objects",       f"{v.ops.get('created', 0)} created, {v.ops.get('updated', 0)} updated, "
                          f"{v.ops.get('deleted', 0)} deleted ({v.update_pct:.0f}% updates)"),
        ("Retries",       f"{v.retries}  cooldowns {v.cooldowns}"),
        ("App writes",    f"{format_bytes(v.application_bytes_written)} "
                          f"({format_bytes(v.app_rate_per_min)}/min)"),
    ]
    if v.failures:
        rows.append(("Failures", ", ".join(f"{k}={n}" for k, n in sorted(v.failures.items()))))
    if v.cumulative_device_bytes is not None:
        rows += [("Device writes", f"{format_bytes(v.cumulative_device_bytes)} "
                                   f"({format_bytes((v.device_rate or 0) * 60)}/min)"),
                 ("Write amp",     _fmt_waf(v.waf))]
    if v.ftl is not None:
        rows += [("FTL host/gc",   f"{v.ftl.host_writes} / {v.ftl.gc_copies} pages"),
                 ("In-device WAF", _fmt_waf(v.in_device_waf))]
    bar = "─" * 56
    return "\n".join([bar] + [f"  {k + ':':<15} {val}" for k, val in rows] + [bar])

def reporter(stats: StatsCollector, stop: threading.Event, interval: float,
             emit: Optional[Callable[[str], None]] = None) -> None:
    emit = emit or (lambda s: print(s, flush=True))
    while not stop.wait(interval):
        emit(format_line(stats.snapshot()))
