"""
Acquisition & cache manager

Makes every file of a ShardManifest durable in the revision-scoped cache
generation of its model, reporting progress against the total byte size of
the manifest, and verifies the cache before a model is declared ready.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.cache_store import CacheGeneration, ModelCacheStore, blob_relative_path
from lm_runtime.concurrency import SingleFlight
from lm_runtime.config_loader import Config, get_config
from lm_runtime.http_client import HttpClient
from lm_runtime.manifest import ShardManifest
from lm_runtime.telemetry import RuntimeTelemetry

_logger = BenchmarkAwareLogger("acquisition")


@dataclass
class DownloadProgress:
    downloaded_bytes: int = 0
    total_bytes: int = 0
    speed_bytes_per_second: float = 0.0


# (percentage 0-100, stats)
ProgressObserver = Callable[[float, DownloadProgress], None]


def percentage(done_bytes: int, total_bytes: int, file_index: int, file_count: int) -> float:
    """Byte-based progress when the total is known, otherwise file-count based"""
    if total_bytes > 0:
        return min(100.0, done_bytes / total_bytes * 100)
    if file_count == 0:
        return 100.0
    return (file_index + 1) / file_count * 100


class AcquisitionManager:
    """Downloads manifests into the durable cache and verifies them"""

    def __init__(
        self,
        store: ModelCacheStore,
        http: HttpClient,
        config: Optional[Config] = None,
        telemetry: Optional[RuntimeTelemetry] = None,
    ):
        self.store = store
        self.http = http
        self.config = config or get_config()
        self.telemetry = telemetry
        self.observer: Optional[ProgressObserver] = None
        self.stats = DownloadProgress()
        self.progress = 0.0
        self._flights = SingleFlight()

    def _emit(self, pct: float, **stats: float) -> None:
        self.progress = max(0.0, min(100.0, pct))
        if stats:
            self.stats = replace(self.stats, **stats)
        if self.observer is not None:
            self.observer(self.progress, self.stats)

    def report_progress(self, pct: float) -> None:
        """Publish a loading-phase percentage, keeping the last byte counters"""
        self._emit(pct)

    def generation_for(self, model_id: str, revision: str) -> CacheGeneration:
        """
        Open the cache generation for ``model_id`` at ``revision``

        Any generation of the same model id at another revision (or an older
        cache version) is deleted first, so at most one stays on disk.
        """
        name = self.store.generation_name(model_id, revision, self.config.cache_version)
        self.store.evict_stale(model_id, keep=name)
        return self.store.open(model_id, revision, self.config.cache_version)

    async def ensure_cached(self, manifest: ShardManifest) -> None:
        """
        Ensure every file in ``manifest`` is in the cache, downloading what is missing

        Concurrent calls for the same manifest share one run.

        Raises:
            CacheUnavailableError: If the cache cannot be opened
            NetworkError: If a download fails
        """
        key = ("ensure", manifest.model_id, manifest.revision, tuple(manifest.paths))
        await self._flights.do(key, lambda: self._ensure_cached(manifest))

    async def _ensure_cached(self, manifest: ShardManifest) -> None:
        generation = await asyncio.to_thread(self.generation_for, manifest.model_id, manifest.revision)
        files = manifest.files
        total = manifest.total_size

        _logger.info(
            "download plan",
            model=manifest.model_id,
            quantization=manifest.quantization,
            count=len(files),
            total_bytes=total,
            cache=generation.name,
        )
        self.stats = DownloadProgress(total_bytes=total)
        self._emit(0)

        cumulative = 0
        for index, shard in enumerate(files):
            url = manifest.url_for(shard.path)
            entry = await asyncio.to_thread(self._valid_entry, generation, url)
            if entry is not None:
                cumulative += shard.size or entry.size
                self._emit(percentage(cumulative, total, index, len(files)), downloaded_bytes=cumulative)
                continue

            _logger.info("downloading", file=shard.path, expected_bytes=shard.size or "unknown")
            written = await self._flights.do(
                ("file", generation.name, url),
                lambda: self._download(generation, url, cumulative, total, index, len(files)),
            )
            cumulative += shard.size or written
            _logger.info("cached", file=shard.path, downloaded_bytes=cumulative)

        final_bytes = total or cumulative
        self._emit(100, downloaded_bytes=final_bytes, total_bytes=final_bytes)

    def _valid_entry(self, generation: CacheGeneration, url: str):
        entry = generation.match(url)
        if entry is not None and generation.readable(entry, self.config.verify_read_bytes):
            return entry
        if generation.has_record(url):
            # Recorded but truncated or unreadable: drop it and download again
            generation.delete(url)
        return None

    async def _download(
        self,
        generation: CacheGeneration,
        url: str,
        base_bytes: int,
        total: int,
        index: int,
        count: int,
    ) -> int:
        loop = asyncio.get_running_loop()

        def report(loaded: int, _file_total: int, speed: float) -> None:
            done = base_bytes + loaded
            loop.call_soon_threadsafe(
                lambda: self._emit(
                    percentage(done, total, index, count),
                    downloaded_bytes=done,
                    speed_bytes_per_second=speed,
                )
            )

        def fetch() -> int:
            with generation.writer(url) as sink:
                return self.http.download(url, sink, on_progress=report)

        started = time.perf_counter()
        written = await asyncio.to_thread(fetch)
        if self.telemetry is not None:
            self.telemetry.record_download(written, (time.perf_counter() - started) * 1000)
        return written

    async def verify_cached(self, manifest: ShardManifest) -> List[str]:
        """
        Re-check that every file of ``manifest`` is cached and readable

        Returns:
            Repository paths that are missing or unreadable (empty when complete)
        """
        return await asyncio.to_thread(self._verify, manifest)

    def _verify(self, manifest: ShardManifest) -> List[str]:
        name = self.store.generation_name(manifest.model_id, manifest.revision, self.config.cache_version)
        generation = self.store.get(name)
        if generation is None:
            missing = list(manifest.paths)
        else:
            missing = []
            for path in manifest.paths:
                entry = generation.match(manifest.url_for(path))
                if entry is None or not generation.readable(entry, self.config.verify_read_bytes):
                    missing.append(path)

        _logger.info(
            "cache status",
            model=manifest.model_id,
            cache=name,
            required=len(manifest.paths),
            missing=len(missing),
        )
        return missing

    async def prune(self, manifest: ShardManifest) -> List[str]:
        """Delete cached entries of the manifest's generation that the manifest does not use"""
        return await asyncio.to_thread(self._prune, manifest)

    def _prune(self, manifest: ShardManifest) -> List[str]:
        name = self.store.generation_name(manifest.model_id, manifest.revision, self.config.cache_version)
        generation = self.store.get(name)
        if generation is None:
            return []
        keep = {manifest.url_for(p) for p in manifest.paths}
        removed = [url for url in generation.urls() if url not in keep and generation.delete(url)]
        if removed:
            _logger.info("pruned unused variant files", cache=name, removed=len(removed))
        return removed

    def local_path(self, manifest: ShardManifest, path: str) -> Path:
        """Filesystem location of a cached manifest file"""
        name = self.store.generation_name(manifest.model_id, manifest.revision, self.config.cache_version)
        return self.store.root.joinpath(name, *blob_relative_path(manifest.url_for(path)).parts)
