"""
Runtime telemetry

Lightweight counters for downloads, model loads and generations. Latencies
are kept in a rolling window so percentiles stay cheap to compute.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class TelemetryStats:
    """Accumulated counters and latency windows"""
    generate_calls: int = 0
    total_tokens: int = 0
    total_generate_time_ms: float = 0.0
    generate_latencies_ms: List[float] = field(default_factory=list)
    downloads: int = 0
    downloaded_bytes: int = 0
    total_download_time_ms: float = 0.0
    loads: int = 0
    load_latencies_ms: List[float] = field(default_factory=list)
    load_tiers: Dict[str, int] = field(default_factory=dict)
    errors: int = 0


class RuntimeTelemetry:
    """
    Telemetry for the model runtime

    Features:
    - Percentile latency tracking (p50, p95, p99) once 10 samples exist
    - Rolling window (1000 samples max)
    - Configurable sampling rate
    """

    def __init__(self, enabled: bool = True, sampling_rate: float = 1.0):
        """
        Args:
            enabled: When False every record_* call is a no-op
            sampling_rate: Fraction of events recorded, clamped to [0.01, 1.0]
        """
        self.enabled = enabled
        self.sampling_rate = max(0.01, min(1.0, sampling_rate))
        self.stats = TelemetryStats()
        self._max_samples = 1000

    def _sampled(self) -> bool:
        if not self.enabled:
            return False
        return self.sampling_rate >= 1.0 or random.random() <= self.sampling_rate

    def _append(self, samples: List[float], value: float) -> None:
        samples.append(value)
        if len(samples) > self._max_samples:
            del samples[: len(samples) - self._max_samples]

    def record_generate(self, duration_ms: float, tokens: int, success: bool = True) -> None:
        """
        Record a generation

        Args:
            duration_ms: Generation time in milliseconds
            tokens: Number of tokens generated
            success: Whether generation succeeded
        """
        if not self._sampled():
            return

        self.stats.generate_calls += 1
        self.stats.total_tokens += tokens
        self.stats.total_generate_time_ms += duration_ms
        self._append(self.stats.generate_latencies_ms, duration_ms)

        if not success:
            self.stats.errors += 1

    def record_download(self, num_bytes: int, duration_ms: float) -> None:
        """Record one completed file download"""
        if not self._sampled():
            return

        self.stats.downloads += 1
        self.stats.downloaded_bytes += num_bytes
        self.stats.total_download_time_ms += duration_ms

    def record_load(self, tier: str, duration_ms: float, success: bool = True) -> None:
        """Record a model load and the fallback tier it ended on"""
        if not self._sampled():
            return

        self.stats.loads += 1
        self._append(self.stats.load_latencies_ms, duration_ms)
        if success:
            self.stats.load_tiers[tier] = self.stats.load_tiers.get(tier, 0) + 1
        else:
            self.stats.errors += 1

    def record_error(self) -> None:
        """Count a failure that did not come through record_generate or record_load"""
        if not self.enabled:
            return
        self.stats.errors += 1

    def get_report(self) -> Dict[str, Any]:
        """
        Nested report of generation, download and load metrics

        Returns:
            {"enabled": False} when disabled, otherwise one block per event kind
        """
        if not self.enabled:
            return {"enabled": False}

        return {
            "enabled": True,
            "sampling_rate": self.sampling_rate,
            "generation": self._get_generation_metrics(),
            "downloads": self._get_download_metrics(),
            "loads": self._get_load_metrics(),
            "errors": {"total": self.stats.errors},
        }

    def _get_generation_metrics(self) -> Dict[str, Any]:
        if self.stats.generate_calls == 0:
            return {"calls": 0, "total_tokens": 0}

        latencies = sorted(self.stats.generate_latencies_ms)
        metrics: Dict[str, Any] = {
            "calls": self.stats.generate_calls,
            "total_tokens": self.stats.total_tokens,
            "avg_tokens_per_call": self.stats.total_tokens / self.stats.generate_calls,
            "latency_ms": self._latency_block(latencies, self.stats.total_generate_time_ms / self.stats.generate_calls),
            "throughput": {
                "tokens_per_second": (
                    (self.stats.total_tokens / (self.stats.total_generate_time_ms / 1000.0))
                    if self.stats.total_generate_time_ms > 0 else 0
                )
            },
        }
        return metrics

    def _get_download_metrics(self) -> Dict[str, Any]:
        seconds = self.stats.total_download_time_ms / 1000.0
        return {
            "files": self.stats.downloads,
            "bytes": self.stats.downloaded_bytes,
            "bytes_per_second": self.stats.downloaded_bytes / seconds if seconds > 0 else 0,
        }

    def _get_load_metrics(self) -> Dict[str, Any]:
        if self.stats.loads == 0:
            return {"count": 0}

        latencies = sorted(self.stats.load_latencies_ms)
        return {
            "count": self.stats.loads,
            "tiers": dict(self.stats.load_tiers),
            "latency_ms": self._latency_block(latencies, sum(latencies) / len(latencies) if latencies else 0),
        }

    def _latency_block(self, latencies: List[float], mean: float) -> Dict[str, float]:
        block = {
            "mean": mean,
            "min": min(latencies) if latencies else 0,
            "max": max(latencies) if latencies else 0,
        }
        if len(latencies) >= 10:
            block["p50"] = self._percentile(latencies, 0.50)
            block["p95"] = self._percentile(latencies, 0.95)
            block["p99"] = self._percentile(latencies, 0.99)
        return block

    @staticmethod
    def _percentile(sorted_values: List[float], percentile: float) -> float:
        """
        Calculate percentile from sorted values

        Args:
            sorted_values: Sorted list of values
            percentile: Percentile to calculate (0.0-1.0)
        """
        if not sorted_values:
            return 0.0

        n = len(sorted_values)
        index = min(int(percentile * n), n - 1)
        return sorted_values[index]

    def reset(self) -> None:
        """Drop every counter and sample"""
        self.stats = TelemetryStats()

    def get_stats_summary(self) -> str:
        """Multi-line text rendering of get_report(), as printed by the CLI"""
        report = self.get_report()

        if not report.get("enabled"):
            return "Telemetry disabled"

        lines = ["lm_runtime telemetry"]

        gen = report["generation"]
        if gen.get("calls", 0) > 0:
            lines.append("\nGeneration:")
            lines.append(f"  Calls: {gen['calls']}")
            lines.append(f"  Total tokens: {gen['total_tokens']}")
            lines.append(f"  Throughput: {gen['throughput']['tokens_per_second']:.1f} tokens/s")
            lat = gen["latency_ms"]
            lines.append(f"  Latency: mean={lat['mean']:.2f}ms, min={lat['min']:.2f}ms, max={lat['max']:.2f}ms")

        dl = report["downloads"]
        if dl["files"] > 0:
            lines.append("\nDownloads:")
            lines.append(f"  Files: {dl['files']}")
            lines.append(f"  Bytes: {dl['bytes']}")

        loads = report["loads"]
        if loads.get("count", 0) > 0:
            lines.append("\nLoads:")
            lines.append(f"  Count: {loads['count']}")
            tiers = ", ".join(f"{k}={v}" for k, v in sorted(loads["tiers"].items()))
            lines.append(f"  Tiers: {tiers or '-'}")

        if report["errors"]["total"] > 0:
            lines.append(f"\nErrors: {report['errors']['total']}")

        return "\n".join(lines)
