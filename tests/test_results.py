import csv, datetime as dt

import pytest

from bloatbench.config import ConfigError
from bloatbench.controller import RunReport
from bloatbench.results import COLUMNS, append_row, summary_row
from bloatbench.stats import RunStatsView
from bloatbench.workload import run

from conftest import FakeDisk, FakeFtl, make_cfg


def read_csv(path):
    with open(path, newline="") as fh:
        return list(csv.DictReader(fh))


def test_dry_run_appends_one_row_per_run(tmp_path):
    out = tmp_path / "results" / "bench.csv"
    cfg = make_cfg(strategy="churn", max_iterations=8, results_csv=str(out))
    lines = []
    first = run(cfg, emit=lines.append)
    run(cfg, emit=lines.append)

    rows = read_csv(out)
    assert len(rows) == 2
    assert list(rows[0]) == COLUMNS
    assert rows[0]["strategy"] == "churn"
    assert rows[0]["submitted"] == rows[0]["succeeded"] == "8"
    assert rows[0]["ended_by"] == "iterations"
    assert rows[0]["waf"] == "N/A"
    assert first.row == rows[0]
    assert any("Transactions" in line for line in lines)


class GrowingDisk(FakeDisk):
    def write_bytes(self):
        self.value += 512 * 1024
        return self.value


def test_run_with_device_counters():
    cfg = make_cfg(strategy="blobs", max_iterations=2)
    ftl = FakeFtl(100, 50)
    res = run(cfg, disk=GrowingDisk(0), ftl=ftl, emit=lambda s: None)
    assert res.stats.final
    assert res.stats.cumulative_device_bytes > 0
    assert res.row["waf"] != "N/A"
    assert res.row["host_writes"] == "100" and res.row["in_device_waf"] == "1.500"
    assert ftl.reads == 1


def test_real_client_needs_a_package():
    with pytest.raises(ConfigError):
        run(make_cfg(client="my_client:connect"), emit=lambda s: None)


def test_unloadable_client_is_a_config_error():
    cfg = make_cfg(client="no_such_ledger_client:connect", package_id="0xabc")
    with pytest.raises(ConfigError):
        run(cfg, emit=lambda s: None)


def test_missing_device_is_a_config_error():
    class Missing(FakeDisk):
        def write_bytes(self):
            raise ValueError("no I/O counters for device 'fake0'")
    with pytest.raises(ConfigError):
        run(make_cfg(max_iterations=1), disk=Missing(), emit=lambda s: None)


def test_summary_row_formats_missing_values():
    view = RunStatsView(3, 2, 1, 4096, 0.0, 1.0, 2.0, {"created": 5, "updated": 5})
    row = summary_row(make_cfg(), view, RunReport(3, "stopped", 2.0), mode="fdp",
                      gc=(4, 1), now=dt.datetime(2026, 1, 2, 3, 4, 5))
    assert set(row) == set(COLUMNS)
    assert row["timestamp"] == "2026-01-02T03:04:05"
    assert row["mode"] == "fdp"
    assert row["device_writes_bytes"] == row["waf"] == row["in_device_waf"] == "N/A"
    assert row["update_pct"] == "50"
    assert (row["gc_bg"], row["gc_fg"]) == ("4", "1")
    assert row["tps"] == "1.00"


def test_append_row_writes_header_once(tmp_path):
    path = tmp_path / "r.csv"
    row = {c: "x" for c in COLUMNS}
    append_row(path, row)
    append_row(path, row)
    text = path.read_text().splitlines()
    assert text[0] == ",".join(COLUMNS)
    assert len(text) == 3


def test_device_lost_mid_run_still_writes_the_row(tmp_path):
    class Vanishing(FakeDisk):
        reads = 0

        def write_bytes(self):
            self.reads += 1
            if self.reads > 2:
                raise ValueError("no I/O counters for device 'fake0'")
            return self.value

    out = tmp_path / "r.csv"
    cfg = make_cfg(strategy="blobs", max_iterations=3, results_csv=str(out))
    res = run(cfg, disk=Vanishing(), emit=lambda s: None)
    assert res.stats.cumulative_device_bytes is None
    (row,) = read_csv(out)
    assert row["device_writes_bytes"] == row["waf"] == "N/A"
    assert row["succeeded"] == "3"
