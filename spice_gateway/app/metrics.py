"""
Commit metrics for the provenance gateway.

Every submit_batch call produces one CommitMetric, successful or not, with
the store and anchor stages timed separately. Latency figures only count
successful commits; failures are tallied by error code.

export() writes commits.csv and metrics.csv under <results_dir>/<run_id>/.
"""
import csv
import os
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


@dataclass
class CommitMetric:
    ts: str
    batch_id: str
    spice_kind: str
    content_id: Optional[str]
    store_ms: float
    anchor_ms: float
    success: bool
    error: Optional[str] = None

    @property
    def total_ms(self) -> float:
        return self.store_ms + self.anchor_ms

    @property
    def error_code(self) -> Optional[str]:
        # errors are recorded as "<CODE>: <message>"
        return self.error.split(":", 1)[0] if self.error else None


@dataclass
class RunSummary:
    run_id: str
    started_at: str
    ended_at: Optional[str]
    total_submitted: int
    total_success: int
    total_failed: int
    avg_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    avg_store_ms: float
    avg_anchor_ms: float
    throughput_tps: float
    errors_by_code: dict[str, int] = field(default_factory=dict)


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _percentile(sorted_values: list[float], q: float) -> float:
    """Nearest-rank percentile over an already sorted list."""
    if not sorted_values:
        return 0.0
    idx = min(int(len(sorted_values) * q), len(sorted_values) - 1)
    return round(sorted_values[idx], 2)


class MetricsCollector:
    """Thread-safe, in-memory. Nothing touches disk until export()."""

    def __init__(self, results_dir: str = "results"):
        now = datetime.now(timezone.utc)
        self._lock = threading.Lock()
        self._records: list[CommitMetric] = []
        self._started = now
        self._run_id = now.strftime("run_%Y%m%d_%H%M%S")
        self._run_dir = Path(results_dir) / self._run_id

    def record(self, metric: CommitMetric):
        with self._lock:
            self._records.append(metric)

    def _snapshot(self) -> list[CommitMetric]:
        with self._lock:
            return list(self._records)

    def summary(self) -> RunSummary:
        records = self._snapshot()
        ok = [r for r in records if r.success]
        latencies = sorted(r.total_ms for r in ok)
        failures = Counter(r.error_code for r in records if not r.success)

        now = datetime.now(timezone.utc)
        elapsed = (now - self._started).total_seconds()

        return RunSummary(
            run_id=self._run_id,
            started_at=self._started.isoformat(timespec="seconds"),
            ended_at=now.isoformat(timespec="seconds"),
            total_submitted=len(records),
            total_success=len(ok),
            total_failed=len(records) - len(ok),
            avg_latency_ms=_mean(latencies),
            p95_latency_ms=_percentile(latencies, 0.95),
            p99_latency_ms=_percentile(latencies, 0.99),
            avg_store_ms=_mean([r.store_ms for r in ok]),
            avg_anchor_ms=_mean([r.anchor_ms for r in ok]),
            throughput_tps=round(len(ok) / elapsed, 4) if elapsed > 0 else 0.0,
            errors_by_code=dict(failures),
        )

    def export(self) -> str:
        records = self._snapshot()
        self._run_dir.mkdir(parents=True, exist_ok=True)

        columns = [f for f in CommitMetric.__dataclass_fields__] + ["total_ms"]
        with open(self._run_dir / "commits.csv", "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=columns)
            writer.writeheader()
            for r in records:
                writer.writerow({**asdict(r), "total_ms": round(r.total_ms, 2)})

        row = asdict(self.summary())
        row["errors_by_code"] = ";".join(f"{k}={v}" for k, v in sorted(row["errors_by_code"].items()))
        with open(self._run_dir / "metrics.csv", "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=row.keys())
            writer.writeheader()
            writer.writerow(row)

        return str(self._run_dir)

    def recent(self, n: int = 50) -> list[CommitMetric]:
        with self._lock:
            return list(self._records[-n:])

    @property
    def run_id(self) -> str:
        return self._run_id


collector = MetricsCollector(results_dir=os.getenv("RESULTS_DIR", "results"))
