"""
Aggregate statistics of one concurrency phase.

Percentiles use the floor-index convention: for n sorted samples the p-th
percentile is sorted[floor(n * p / 100)], and the 100th is the maximum.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import numpy as np

from coapbench.latencyBuffer import LatencyBuffer

PERCENTILES = (0, 10, 20, 30, 40, 50, 60, 66, 70, 75, 80, 90, 95, 98, 99, 100)

HEADER = ("Timeouts, Concurrency, Time, Completed, Throughput | "
          + ", ".join(f"{p}%" for p in PERCENTILES) + ", stdev(ms)")


def percentile_index(n, p):
    if p >= 100:
        return n - 1
    return n * p // 100


def latency_summary(samples):
    """Returns (percentiles, mean, population stdev) of the samples, or None if there are none."""
    if isinstance(samples, LatencyBuffer):
        samples = samples.to_array()
    lats = np.sort(np.asarray(samples, dtype=np.int64))
    n = lats.size
    if n == 0:
        return None
    percentiles = {p: int(lats[percentile_index(n, p)]) for p in PERCENTILES}
    return percentiles, float(np.mean(lats)), float(np.std(lats))


@dataclass
class PhaseResult:
    timeouts: int
    concurrency: int
    elapsed_ms: float
    completed: int
    throughput: float
    target: Optional[str] = None
    percentiles: Optional[Dict[int, int]] = None
    mean: Optional[float] = None
    stdev: Optional[float] = None
    bytes_sent: Optional[int] = None
    bytes_recv: Optional[int] = None

    @classmethod
    def from_counts(cls, timeouts, concurrency, elapsed_ms, completed, latencies,
                    target=None, bytes_sent=None, bytes_recv=None):
        throughput = completed * 1000.0 / elapsed_ms if elapsed_ms > 0 else 0.0
        result = cls(timeouts, concurrency, elapsed_ms, completed, throughput, target,
                     bytes_sent=bytes_sent, bytes_recv=bytes_recv)
        summary = latency_summary(latencies)
        if summary is not None:
            result.percentiles, result.mean, result.stdev = summary
        return result

    @property
    def has_latency(self):
        return self.percentiles is not None

    def format_line(self):
        if not self.has_latency:
            return "c=%d, t=%.3f, received=%d, timeouts=%d, throughput=%.2f, uri=%s" % (
                self.concurrency, self.elapsed_ms / 1000, self.completed, self.timeouts,
                self.throughput, self.target)
        values = ", ".join("%d" % self.percentiles[p] for p in PERCENTILES)
        return "%d, %d, %.3f, %d, %.2f | %s, %.1f" % (
            self.timeouts, self.concurrency, self.elapsed_ms / 1000, self.completed,
            self.throughput, values, self.stdev)

    def to_row(self):
        row = {
            "Time": datetime.now(),
            "Timeouts": self.timeouts,
            "Concurrency": self.concurrency,
            "Elapsed": self.elapsed_ms / 1000,
            "Completed": self.completed,
            "Throughput": self.throughput,
        }
        for p in PERCENTILES:
            row[f"p{p}"] = self.percentiles[p] if self.has_latency else None
        row["Mean"] = self.mean
        row["Stdev"] = self.stdev
        row["BytesSent"] = self.bytes_sent
        row["BytesRecv"] = self.bytes_recv
        row["Target"] = self.target
        return row
