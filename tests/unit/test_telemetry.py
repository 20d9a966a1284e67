"""
Unit tests for runtime telemetry and the benchmark-aware logger
"""

import logging

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.telemetry import RuntimeTelemetry


class TestRuntimeTelemetry:
    """Test counters, percentiles and reports"""

    def test_disabled(self):
        telemetry = RuntimeTelemetry(enabled=False)
        telemetry.record_generate(10.0, 5)
        telemetry.record_error()

        assert telemetry.get_report() == {"enabled": False}
        assert telemetry.get_stats_summary() == "Telemetry disabled"
        assert telemetry.stats.generate_calls == 0

    def test_generation_metrics(self):
        telemetry = RuntimeTelemetry()
        for i in range(10):
            telemetry.record_generate(100.0 * (i + 1), 10)

        generation = telemetry.get_report()["generation"]

        assert generation["calls"] == 10
        assert generation["total_tokens"] == 100
        assert generation["latency_ms"]["min"] == 100.0
        assert generation["latency_ms"]["p50"] == 600.0
        assert generation["latency_ms"]["p99"] == 1000.0
        assert round(generation["throughput"]["tokens_per_second"], 3) == round(100 / 5.5, 3)

    def test_percentiles_need_ten_samples(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_generate(5.0, 1)
        assert "p50" not in telemetry.get_report()["generation"]["latency_ms"]

    def test_loads_by_tier(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_load("gpu:q4", 120.0)
        telemetry.record_load("cpu:q4", 80.0)
        telemetry.record_load("none", 10.0, success=False)

        report = telemetry.get_report()

        assert report["loads"]["count"] == 3
        assert report["loads"]["tiers"] == {"gpu:q4": 1, "cpu:q4": 1}
        assert report["errors"]["total"] == 1
        assert "Tiers: cpu:q4=1, gpu:q4=1" in telemetry.get_stats_summary()

    def test_downloads(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_download(2048, 1000.0)

        assert telemetry.get_report()["downloads"] == {"files": 1, "bytes": 2048, "bytes_per_second": 2048.0}

    def test_rolling_window(self):
        telemetry = RuntimeTelemetry()
        for i in range(1005):
            telemetry.record_generate(float(i), 1)
        assert len(telemetry.stats.generate_latencies_ms) == 1000
        assert telemetry.stats.generate_latencies_ms[0] == 5.0

    def test_reset(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_error()
        telemetry.reset()
        assert telemetry.stats.errors == 0


class TestBenchmarkAwareLogger:
    """Test message formatting and benchmark mode"""

    def test_context_rendered(self, caplog):
        logger = BenchmarkAwareLogger("loader")
        with caplog.at_level(logging.INFO, logger="lm_runtime.loader"):
            logger.info("attempt failed", tier="gpu", variant="q4")
        assert caplog.messages == ["[loader] attempt failed (tier=gpu variant=q4)"]

    def test_benchmark_mode_silences_info(self, caplog):
        logger = BenchmarkAwareLogger("generator")
        logger.benchmark_mode = True
        with caplog.at_level(logging.DEBUG, logger="lm_runtime.generator"):
            logger.info("token")
            logger.debug("token")
            logger.warning("slow step")
        assert caplog.messages == ["[generator] slow step"]
