"""Pipeline metrics: cycle latency, gate outcomes, failure taxonomy.

Counters accumulate for the process lifetime and are read by the stats
reporter and the health route. One instance is created in main and injected.
"""

import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock


@dataclass
class CycleMetrics:
    """Metrics for one cycle kind (discovery, sweep or monitor)."""

    runs: int = 0
    skipped: int = 0
    failed: int = 0
    addresses: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        if self.runs == 0:
            return 0.0
        return self.total_latency_ms / self.runs


class PipelineMetrics:
    """Counters for cycles, per-address outcomes and provider failures.

    Outcome names: eligible, skip_too_young, skip_in_flight, inconclusive,
    dispatched, dispatch_failed, ingested, ingest_unknown, vetting_failed,
    expired, worker_error.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._cycles: dict[str, CycleMetrics] = {}
        self._outcomes: Counter[str] = Counter()
        self._provider_errors: dict[str, Counter[str]] = {}
        self._start_time = time.monotonic()

    def _get_cycle(self, kind: str) -> CycleMetrics:
        if kind not in self._cycles:
            self._cycles[kind] = CycleMetrics()
        return self._cycles[kind]

    def record_cycle(
        self, kind: str, latency_ms: float, *, addresses: int = 0, failed: bool = False
    ) -> None:
        with self._lock:
            cm = self._get_cycle(kind)
            cm.runs += 1
            cm.addresses += addresses
            cm.total_latency_ms += latency_ms
            if latency_ms > cm.max_latency_ms:
                cm.max_latency_ms = latency_ms
            if failed:
                cm.failed += 1

    def record_cycle_skipped(self, kind: str) -> None:
        with self._lock:
            self._get_cycle(kind).skipped += 1

    def record_outcome(self, outcome: str, count: int = 1) -> None:
        with self._lock:
            self._outcomes[outcome] += count

    def record_provider_error(self, provider: str, bucket: str) -> None:
        """bucket: 'transient', 'rate_limited' or 'timeout'."""
        with self._lock:
            self._provider_errors.setdefault(provider, Counter())[bucket] += 1

    def outcome(self, name: str) -> int:
        with self._lock:
            return self._outcomes[name]

    def provider_errors(self, provider: str) -> dict[str, int]:
        with self._lock:
            return dict(self._provider_errors.get(provider, {}))

    def cycle(self, kind: str) -> CycleMetrics:
        with self._lock:
            cm = self._get_cycle(kind)
            return CycleMetrics(**vars(cm))

    def get_summary(self) -> dict:
        """Return a snapshot of all metrics."""
        with self._lock:
            return {
                "uptime_sec": round(time.monotonic() - self._start_time),
                "cycles": {
                    kind: {
                        "runs": cm.runs,
                        "skipped": cm.skipped,
                        "failed": cm.failed,
                        "addresses": cm.addresses,
                        "avg_latency_ms": round(cm.avg_latency_ms),
                        "max_latency_ms": round(cm.max_latency_ms),
                    }
                    for kind, cm in self._cycles.items()
                },
                "outcomes": dict(self._outcomes),
                "provider_errors": {
                    name: dict(buckets) for name, buckets in self._provider_errors.items()
                },
            }

    def format_stats_line(self) -> str:
        """One-line summary for the stats reporter."""
        with self._lock:
            runs = " ".join(
                f"{kind}={cm.runs}/{cm.skipped}skip" for kind, cm in sorted(self._cycles.items())
            )
            errors = sum(sum(c.values()) for c in self._provider_errors.values())
            o = self._outcomes
            return (
                f"cycles[{runs or '-'}] "
                f"dispatched={o['dispatched']} failed={o['dispatch_failed']} "
                f"vetted={o['ingested']} young={o['skip_too_young']} "
                f"inconclusive={o['inconclusive']} provider_errors={errors}"
            )
