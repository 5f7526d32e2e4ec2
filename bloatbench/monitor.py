"""
monitor.py – interactive "top"-style view of a validator node's storage bloat

▸ Header shows device writes (total since start + MB/min), mount usage and
  its growth rate, and whether an FDP-enabled f2fs mount is active
▸ Table: PID ▸ name ▸ CPU % ▸ RSS MB ▸ written MB ▸ write MB/min
▸ Keys:  ↑ / ↓   or   Ctrl-K / Ctrl-J   – move highlight
         r – restart the device-write total       q – quit

Example : bloatbench-monitor --device nvme0n1 --mount ~/f2fs_fdp_mount \
                             --proc sui-node --sort write
"""
from __future__ import annotations
import argparse, time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil
from textual.app import App, ComposeResult
from textual.widgets import DataTable, Static

from .stats import DiskSectorCounter, fdp_mode, format_bytes

MB = float(1 << 20)

# ── helpers ────────────────────────────────────────────────────────────
def rate_per_min(cur: float, prev: float, dt: float) -> float:
    return (cur - prev) * 60 / dt if dt > 0 else 0.0

def matching_procs(name: str) -> List[psutil.Process]:
    out = []
    for p in psutil.process_iter(["pid", "name", "cmdline"]):
        cmd = " ".join(p.info["cmdline"] or [])
        if p.info["name"] == name or name in cmd:
            out.append(p)
    return out

def proc_row(p: psutil.Process) -> Optional[Tuple[int, str, float, float, int]]:
    try:
        with p.oneshot():
            io = p.io_counters() if hasattr(p, "io_counters") else None
            return (p.pid, p.name(), p.cpu_percent(None),
                    p.memory_info().rss / MB, io.write_bytes if io else 0)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None

def scroll_row(tbl: DataTable, row: int) -> None:   # support old Textual
    if hasattr(tbl, "scroll_to_row"):
        tbl.scroll_to_row(row)
    elif hasattr(tbl, "scroll_to_cell"):
        tbl.scroll_to_cell(row, 0)

# ── TUI application ────────────────────────────────────────────────────
class BloatTop(App):
    CSS = """
    Screen   { layout: vertical; }
    Static   { height: 2; content-align: center middle; }
    DataTable{ height: 1fr; width: 100%; }
    """
    BINDINGS = [
        ("q", "quit", ""),
        ("up", "row_up", ""),
        ("down", "row_down", ""),
        ("ctrl+k", "row_up", ""),
        ("ctrl+j", "row_down", ""),
        ("r", "reset_baseline", ""),
    ]

    def __init__(self, device: Optional[str], mount: Optional[Path], proc: str,
                 interval: float, sort_key: str):
        super().__init__()
        self.disk = DiskSectorCounter(device) if device else None
        self.mount, self.proc, self.interval = mount, proc, interval
        self.sort_key = sort_key
        self.header: Static
        self.table:  DataTable
        self.row = 0
        self.rows: List[Tuple] = []
        self.sel_pid: int | None = None
        self.proc_cache: Dict[int, psutil.Process] = {}
        self.prev_write: Dict[int, int] = {}
        self.t_prev = time.monotonic()
        self.dev0 = self.dev_prev = self.disk.write_bytes() if self.disk else 0
        self.used_prev = self._mount_used()
        self.mode = fdp_mode()

    def _mount_used(self) -> int:
        return psutil.disk_usage(str(self.mount)).used if self.mount else 0

    # layout
    def compose(self) -> ComposeResult:
        self.header = Static("")
        self.table  = DataTable(zebra_stripes=True, show_header=True, show_cursor=True)
        self.table.add_columns("PID", "Name", "CPU%", "RSS MB", "Written MB", "MB/min")
        yield self.header
        yield self.table

    async def on_mount(self):
        self.set_interval(self.interval, self._update)

    # update loop
    async def _update(self):
        now = time.monotonic()
        dt, self.t_prev = now - self.t_prev, now

        parts = [f"mode {self.mode}"]
        if self.disk:
            dev = self.disk.write_bytes()
            parts.append(f"{self.disk.device}: {format_bytes(dev - self.dev0)} written, "
                         f"{rate_per_min(dev, self.dev_prev, dt) / MB:.1f} MB/min")
            self.dev_prev = dev
        if self.mount:
            used = self._mount_used()
            pct = psutil.disk_usage(str(self.mount)).percent
            parts.append(f"{self.mount}: {format_bytes(used)} ({pct:.0f}%), "
                         f"growth {rate_per_min(used, self.used_prev, dt) / MB:+.1f} MB/min")
            self.used_prev = used
        self.header.update("  │  ".join(parts))

        rows: List[Tuple] = []
        for p in matching_procs(self.proc):
            p = self.proc_cache.setdefault(p.pid, p)
            r = proc_row(p)
            if r is None:
                self.proc_cache.pop(p.pid, None)
                continue
            pid, name, cpu, rss, written = r
            wrate = rate_per_min(written, self.prev_write.get(pid, written), dt) / MB
            self.prev_write[pid] = written
            rows.append((pid, name, cpu, rss, written / MB, wrate))

        # sort
        key_map = {
            "pid"  : lambda r: r[0],
            "cpu"  : lambda r: r[2],
            "rss"  : lambda r: r[3],
            "write": lambda r: r[5],
        }
        rows.sort(key=key_map[self.sort_key], reverse=self.sort_key != "pid")

        # keep highlight on same pid if still present
        if self.sel_pid is not None:
            for idx, r in enumerate(rows):
                if r[0] == self.sel_pid:
                    self.row = idx
                    break
        self.row = min(self.row, max(0, len(rows) - 1))

        # redraw
        self.table.clear()
        for pid, name, cpu, rss, written, wrate in rows:
            self.table.add_row(str(pid), name, f"{cpu:4.1f}", f"{rss:8.1f}",
                               f"{written:10.1f}", f"{wrate:8.1f}")
        if rows:
            self.table.cursor_coordinate = (self.row, 0)
            scroll_row(self.table, self.row)
        self.rows = rows

    # key handlers
    def _move(self, delta: int):
        new = self.row + delta
        if 0 <= new < len(self.rows):
            self.row = new
            self.sel_pid = self.rows[self.row][0]
            self.table.cursor_coordinate = (self.row, 0)
            scroll_row(self.table, self.row)

    def action_row_up(self):
        self._move(-1)

    def action_row_down(self):
        self._move(1)

    def action_reset_baseline(self):
        """Start counting device writes from now (e.g. after warmup)."""
        if self.disk:
            self.dev0 = self.disk.write_bytes()

# CLI
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Interactive validator storage monitor")
    p.add_argument("--device", help="block device, e.g. nvme0n1")
    p.add_argument("--mount", type=Path, help="mount point / data dir to watch")
    p.add_argument("--proc", default="sui-node", help="process name to track")
    p.add_argument("--interval", default=2.0, type=float)
    p.add_argument(
        "--sort", choices=["pid", "cpu", "rss", "write"], default="write",
        help="column to sort by (default write)",
    )
    return p.parse_args(argv)

def main(argv=None):
    a = parse_args(argv)
    BloatTop(a.device, a.mount, a.proc, a.interval, a.sort).run()

if __name__ == "__main__":
    main()
