"""
Benchmark utilities - Lightweight logging for hot paths

Benchmark mode (LM_RUNTIME_BENCHMARK_MODE=1) silences info/debug records from
the download loop, the loader and the decode loop so throughput numbers are
not skewed by log formatting. Warnings and errors are always emitted.
"""

import logging
import os
from typing import Any


_BENCHMARK_MODE = os.getenv("LM_RUNTIME_BENCHMARK_MODE", "").strip() == "1"


def is_benchmark_mode() -> bool:
    """
    Check if running in benchmark mode

    Returns:
        True if LM_RUNTIME_BENCHMARK_MODE=1 is set
    """
    return _BENCHMARK_MODE


class BenchmarkAwareLogger:
    """
    Logger that respects benchmark mode

    Context is passed as keyword arguments and rendered after the message:

        logger = BenchmarkAwareLogger("loader")
        logger.info("attempt failed", tier="gpu", variant="q4")
        # [loader] attempt failed (tier=gpu variant=q4)
    """

    def __init__(self, name: str):
        self.name = name
        self.benchmark_mode = _BENCHMARK_MODE
        self._logger = logging.getLogger(f"lm_runtime.{name}")

    def _format_message(self, msg: str, **kwargs: Any) -> str:
        if kwargs:
            ctx = " ".join(f"{k}={v}" for k, v in kwargs.items())
            return f"[{self.name}] {msg} ({ctx})"
        return f"[{self.name}] {msg}"

    def debug(self, msg: str, **kwargs: Any) -> None:
        if not self.benchmark_mode:
            self._logger.debug(self._format_message(msg, **kwargs))

    def info(self, msg: str, **kwargs: Any) -> None:
        if not self.benchmark_mode:
            self._logger.info(self._format_message(msg, **kwargs))

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(msg, **kwargs))

    def error(self, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        self._logger.error(self._format_message(msg, **kwargs), exc_info=exc_info)
