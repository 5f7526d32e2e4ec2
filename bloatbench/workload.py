"""
workload.py – storage-bloat / write-amplification workload for a validator node
-------------------------------------------------------------------------------

• N worker threads create, update and delete on-chain blobs per --strategy.
• Prints a stats line every --report-interval seconds, a summary at the end.
• With --device, device writes come from the kernel's per-disk counters and
  the summary carries WAF = device bytes / application bytes.
• With --ftl-stats-cmd, the in-device (reset-on-read) FTL counters are read
  once after the workers have joined: WAF = 1 + gc copies / host writes.
• --results-csv appends one row per run.

Typical run
-----------
$ bloatbench --strategy update_heavy --workers 8 --duration 7200 \
             --blob-size-kb 150 --batch-size 10 --pool-size 100 \
             --client my_sui_client:connect --package-id 0xabc… \
             --device nvme0n1 --results-csv results/update_heavy.csv

Dry run against the in-memory ledger:
$ bloatbench --client sim --strategy churn --iterations 200
"""

from __future__ import annotations
import argparse, logging, signal, sys, threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from .config import (SIM_PACKAGE_ID, STRATEGIES, BenchConfig, ConfigError,
                     field_names, from_env)
from .controller import ConcurrencyController, RunReport
from .ledger import LedgerClient, load_client
from .pool import ObjectPool
from .results import append_row, summary_row
from .stats import (DiskSectorCounter, FtlStatsCounter, RunStatsView, StatsCollector,
                    f2fs_gc_calls, fdp_mode, format_summary, reporter)
from .strategy import Strategy
from .submitter import BudgetModel, Submitter

log = logging.getLogger("bloatbench")


@dataclass(frozen=True)
class RunResult:
    stats: RunStatsView
    report: RunReport
    row: Dict[str, str]


# ───────────── run ---------------------------------------------------------
def run(cfg: BenchConfig, client: Optional[LedgerClient] = None,
        disk: Optional[DiskSectorCounter] = None, ftl: Optional[FtlStatsCounter] = None,
        stop: Optional[threading.Event] = None,
        emit: Optional[Callable[[str], None]] = None) -> RunResult:
    emit = emit or (lambda s: print(s, flush=True))
    cfg.validate()
    strategy = Strategy(cfg.strategy)
    package_id = cfg.package_id or (SIM_PACKAGE_ID if cfg.client == "sim" else None)
    if client is None:
        try:
            client = load_client(cfg.client, cfg.rpc_url, package_id)
        except (ImportError, AttributeError) as e:
            raise ConfigError(f"cannot load ledger client {cfg.client!r}: {e}") from None
    submitter = Submitter(client, package_id,
                          BudgetModel(cfg.budget_floor, cfg.budget_per_kb,
                                      cfg.budget_per_object, cfg.budget_max))

    if disk is None and cfg.device:
        disk = DiskSectorCounter(cfg.device)
    if ftl is None and cfg.ftl_stats_cmd:
        ftl = FtlStatsCounter(cfg.ftl_stats_cmd)
    stats = StatsCollector(disk, ftl)
    try:
        stats.start()
    except ValueError as e:
        raise ConfigError(str(e)) from None
    if disk is not None:
        log.info("device %s baseline: %d bytes written", disk.device,
                 stats.snapshot().device_byte_baseline)

    pool = ObjectPool(cfg.pool_capacity)
    ctl = ConcurrencyController(cfg, strategy, submitter, pool, stats, stop=stop)

    rep_stop = threading.Event()
    rep = threading.Thread(target=reporter, args=(stats, rep_stop, cfg.report_interval, emit),
                           daemon=True)
    rep.start()
    try:
        report = ctl.run()
    finally:
        rep_stop.set()

    # workers have joined: only now are the numbers final
    view = stats.snapshot(final=True)
    emit(format_summary(view, report.stopped_early))
    dev_name = disk.device if disk is not None else cfg.device
    row = summary_row(cfg, view, report, mode=fdp_mode(), gc=f2fs_gc_calls(dev_name))
    if cfg.results_csv:
        path = append_row(cfg.results_csv, row)
        log.info("results appended to %s", path)
    return RunResult(view, report, row)


# ───────────── CLI ---------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Storage bloat / WAF benchmark workload")
    p.add_argument("--strategy", choices=STRATEGIES)
    p.add_argument("--workers", type=int)
    p.add_argument("--max-in-flight", dest="max_in_flight", type=int,
                   help="concurrent envelopes (default = workers)")
    p.add_argument("--duration", dest="duration_seconds", type=float,
                   help="seconds to run, 0 = until Ctrl-C")
    p.add_argument("--iterations", dest="max_iterations", type=int,
                   help="stop after this many decisions, 0 = no cap")
    p.add_argument("--blob-size-kb", dest="blob_size_kb", type=int)
    p.add_argument("--batch-size", dest="batch_size", type=int)
    p.add_argument("--pool-size", dest="target_pool_size", type=int,
                   help="update_heavy warmup target; pool capped at 2x")
    p.add_argument("--update-ratio", dest="update_ratio", type=float)
    p.add_argument("--update-step-kb", dest="update_step_kb", type=int)
    p.add_argument("--rate-limit", dest="rate_limit", type=float, help="ops/sec, all workers")
    p.add_argument("--retries", dest="max_retries", type=int)
    p.add_argument("--cooldown", dest="cooldown_seconds", type=float)
    p.add_argument("--seed", type=int)
    p.add_argument("--client", help="'sim' or module:factory returning a ledger client")
    p.add_argument("--rpc-url", dest="rpc_url")
    p.add_argument("--package-id", dest="package_id")
    p.add_argument("--device", help="block device for host-level write accounting")
    p.add_argument("--ftl-stats-cmd", dest="ftl_stats_cmd",
                   help="reset-on-read in-device stats command, run once at the end")
    p.add_argument("--report-interval", dest="report_interval", type=float)
    p.add_argument("--results-csv", dest="results_csv")
    p.add_argument("--log-level", default="INFO")
    return p

def config_from_args(args: argparse.Namespace, environ=None) -> BenchConfig:
    cfg = from_env(environ)
    known = set(field_names())
    return replace(cfg, **{k: v for k, v in vars(args).items()
                           if k in known and v is not None})

def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                        datefmt="%H:%M:%S")
    try:
        cfg = config_from_args(args)
    except ConfigError as e:
        sys.exit(f"ERROR: {e}")

    stop = threading.Event()
    def on_signal(signum, _frame):
        log.info("signal %d: finishing in-flight envelopes…", signum)
        stop.set()
    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    print(f"Strategy {cfg.strategy}  workers {cfg.workers}  in-flight {cfg.in_flight}  "
          f"blob {cfg.blob_size_kb} KB × {cfg.batch_size}  "
          f"duration {cfg.duration_seconds or 'infinite'}s", flush=True)
    try:
        run(cfg, stop=stop)
    except ConfigError as e:
        sys.exit(f"ERROR: {e}")

if __name__ == "__main__":
    main()
