"""
results.py – the run's only durable output: one summary row per run
"""

from __future__ import annotations
import csv, datetime as dt
from pathlib import Path
from typing import Dict, Optional

from .config import BenchConfig
from .controller import RunReport
from .stats import RunStatsView

COLUMNS = [
    "timestamp", "mode", "strategy", "duration_sec", "workers", "tps",
    "submitted", "succeeded", "failed", "creates", "updates", "deletes", "update_pct",
    "app_writes_bytes", "device_writes_bytes", "waf", "rate_mb_min",
    "host_writes", "gc_copies", "in_device_waf", "gc_bg", "gc_fg", "ended_by",
]

def _num(v: Optional[float], digits: int = 3) -> str:
    return "N/A" if v is None else f"{v:.{digits}f}"

def summary_row(cfg: BenchConfig, view: RunStatsView, report: RunReport,
                mode: str = "nofdp", gc: tuple = (0, 0),
                now: Optional[dt.datetime] = None) -> Dict[str, str]:
    dev = view.cumulative_device_bytes
    rate = (dev if dev is not None else view.application_bytes_written) * 60 \
        / view.elapsed / (1 << 20) if view.elapsed > 0 else 0.0
    ftl = view.ftl
    return {
        "timestamp":           (now or dt.datetime.now().astimezone()).isoformat(timespec="seconds"),
        "mode":                mode,
        "strategy":            cfg.strategy,
        "duration_sec":        f"{view.elapsed:.1f}",
        "workers":             str(cfg.workers),
        "tps":                 f"{view.tps:.2f}",
        "submitted":           str(view.total_submitted),
        "succeeded":           str(view.total_succeeded),
        "failed":              str(view.total_failed),
        "creates":             str(view.ops.get("created", 0)),
        "updates":             str(view.ops.get("updated", 0)),
        "deletes":             str(view.ops.get("deleted", 0)),
        "update_pct":          f"{view.update_pct:.0f}",
        "app_writes_bytes":    str(view.application_bytes_written),
        "device_writes_bytes": "N/A" if dev is None else str(dev),
        "waf":                 _num(view.waf, 2),
        "rate_mb_min":         f"{rate:.1f}",
        "host_writes":         "N/A" if ftl is None else str(ftl.host_writes),
        "gc_copies":           "N/A" if ftl is None else str(ftl.gc_copies),
        "in_device_waf":       _num(view.in_device_waf),
        "gc_bg":               str(gc[0]),
        "gc_fg":               str(gc[1]),
        "ended_by":            report.ended_by,
    }

def append_row(path: Path, row: Dict[str, str]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    new = not path.exists() or path.stat().st_size == 0
    with path.open("a", newline="") as fh:
        w = csv.DictWriter(fh, fieldnames=COLUMNS)
        if new:
            w.writeheader()
        w.writerow(row)
    return path
