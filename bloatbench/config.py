"""
config.py – run parameters: defaults ← environment ← command line
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Callable, Dict, Optional

STRATEGIES = ("blobs", "varied", "churn", "mixed", "update_heavy")
PACKAGE_ID_FILE = ".package_id"
SIM_PACKAGE_ID = "0x0"


class ConfigError(Exception):
    """Unrecoverable configuration problem; aborts before any worker starts."""


@dataclass
class BenchConfig:
    # workload
    strategy: str = "mixed"
    blob_size_kb: int = 100
    batch_size: int = 5
    target_pool_size: int = 100
    update_ratio: float = 0.8
    update_step_kb: int = 20
    seed: int = 0
    # execution
    workers: int = 4
    max_in_flight: int = 0              # 0 → workers
    duration_seconds: float = 0         # 0 → until stopped
    max_iterations: int = 0             # 0 → unbounded
    rate_limit: float = 0.0             # ops/sec across all workers, 0 → off
    max_retries: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 5.0
    failure_window: int = 10
    failure_threshold: float = 0.5
    cooldown_seconds: float = 5.0
    # ledger
    client: str = "sim"
    rpc_url: str = "http://127.0.0.1:9000"
    package_id: Optional[str] = None
    budget_floor: int = 10_000_000
    budget_per_kb: int = 10_000
    budget_per_object: int = 1_000_000
    budget_max: int = 50_000_000_000
    # measurement
    device: Optional[str] = None        # e.g. nvme0n1
    ftl_stats_cmd: Optional[str] = None # reset-on-read in-device stats command
    report_interval: float = 10.0
    results_csv: Optional[str] = None

    @property
    def in_flight(self) -> int:
        return self.max_in_flight or self.workers

    @property
    def pool_capacity(self) -> int:
        return max(1, 2 * self.target_pool_size)

    def validate(self) -> "BenchConfig":
        if self.strategy not in STRATEGIES:
            raise ConfigError(f"unknown strategy {self.strategy!r} "
                              f"(expected one of {', '.join(STRATEGIES)})")
        for name in ("blob_size_kb", "batch_size", "workers", "target_pool_size"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if not 0.0 <= self.update_ratio <= 1.0:
            raise ConfigError("update_ratio must be within [0, 1]")
        if not 0.0 < self.failure_threshold <= 1.0:
            raise ConfigError("failure_threshold must be within (0, 1]")
        if self.duration_seconds < 0 or self.max_iterations < 0 or self.max_in_flight < 0:
            raise ConfigError("duration, iteration cap and in-flight cap cannot be negative")
        if self.client != "sim" and not self.package_id:
            raise ConfigError("no package id: set PACKAGE_ID, pass --package-id "
                              f"or write it to {PACKAGE_ID_FILE}")
        return self


# ── environment ─────────────────────────────────────────────────────────
_ENV: Dict[str, tuple] = {
    "STRATEGY":          ("strategy", str),
    "BLOB_SIZE_KB":      ("blob_size_kb", int),
    "BATCH_SIZE":        ("batch_size", int),
    "CONCURRENCY":       ("workers", int),
    "MAX_IN_FLIGHT":     ("max_in_flight", int),
    "DURATION_SECONDS":  ("duration_seconds", float),
    "UPDATE_POOL_SIZE":  ("target_pool_size", int),
    "UPDATE_RATIO":      ("update_ratio", float),
    "PACKAGE_ID":        ("package_id", str),
    "SUI_RPC_URL":       ("rpc_url", str),
    "NVME_DEVICE":       ("device", str),
    "FTL_STATS_CMD":     ("ftl_stats_cmd", str),
    "RESULTS_CSV":       ("results_csv", str),
}

def _ratio(raw: str) -> float:
    v = float(raw)
    # whole numbers above 1 are percentages: UPDATE_RATIO=80 means 0.8
    return v / 100 if v > 1 and raw.strip().isdigit() else v

def from_env(environ=None, base: Optional[BenchConfig] = None,
             cwd: Optional[Path] = None) -> BenchConfig:
    env = os.environ if environ is None else environ
    cfg = base or BenchConfig()
    changes = {}
    for key, (attr, conv) in _ENV.items():
        raw = env.get(key)
        if raw in (None, ""):
            continue
        conv_: Callable = _ratio if attr == "update_ratio" else conv
        try:
            changes[attr] = conv_(raw)
        except ValueError:
            raise ConfigError(f"{key}={raw!r} is not a valid {conv.__name__}") from None
    if "duration_seconds" not in changes and env.get("DURATION_MINUTES"):
        try:
            changes["duration_seconds"] = float(env["DURATION_MINUTES"]) * 60
        except ValueError:
            raise ConfigError(f"DURATION_MINUTES={env['DURATION_MINUTES']!r} is not a number") from None
    cfg = replace(cfg, **changes)
    if not cfg.package_id:
        pid_file = (cwd or Path.cwd()) / PACKAGE_ID_FILE
        if pid_file.exists():
            cfg = replace(cfg, package_id=pid_file.read_text().strip() or None)
    return cfg

def field_names():
    return [f.name for f in fields(BenchConfig)]
