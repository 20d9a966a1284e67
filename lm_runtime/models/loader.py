"""
Backend loader - Builds execution sessions for a model with a fallback ladder

Responsibilities:
- GPU capability preflight (adapter + device)
- Acquire the manifest of each attempted variant into the cache
- Construct sessions along an ordered list of (tier, quantization) attempts,
  committing to the first that succeeds
- Verify the cache after construction so a partial cache never looks ready
- Discard stale work when the load generation advances (switch / dispose)
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from lm_runtime.acquisition import AcquisitionManager
from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.catalog import ModelDefinition
from lm_runtime.config_loader import Config, get_config
from lm_runtime.errors import (
    CacheVerificationError,
    GPUUnavailableError,
    LoadCancelledError,
    ManifestFallbackError,
    ModelLoadError,
)
from lm_runtime.manifest import ManifestResolver, ShardManifest
from lm_runtime.models.backend import ExecutionSession, GpuDevice, OnnxRuntimeBackend, SessionRole
from lm_runtime.telemetry import RuntimeTelemetry

_logger = BenchmarkAwareLogger("loader")

GPU_TIER = "gpu"
CPU_TIER = "cpu"

# Observer percentages once the files are cached
LOAD_PROGRESS_CONSTRUCTING = 0.0
LOAD_PROGRESS_VERIFYING = 90.0


class LoadState(str, Enum):
    UNLOADED = "unloaded"
    PREFLIGHTING = "preflighting"
    DOWNLOADING = "downloading"
    CONSTRUCTING = "constructing"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadAttempt:
    tier: str
    quantization: str

    @property
    def label(self) -> str:
        return f"{self.tier}:{self.quantization}"


@dataclass
class ModelSessions:
    """Execution sessions of one loaded model, owned by the loader"""

    model: ModelDefinition
    attempt: LoadAttempt
    manifest: ShardManifest
    decoder: ExecutionSession
    embed_tokens: Optional[ExecutionSession] = None
    embed_images: Optional[ExecutionSession] = None
    released: bool = field(default=False)

    def all(self) -> List[ExecutionSession]:
        return [s for s in (self.embed_tokens, self.decoder, self.embed_images) if s is not None]

    def release(self) -> None:
        for session in self.all():
            session.release()
        self.released = True


def plan_attempts(model: ModelDefinition, gpu_available: bool) -> List[LoadAttempt]:
    """Ordered ladder: GPU variants (primary first) then one CPU attempt"""
    attempts: List[LoadAttempt] = []
    if gpu_available:
        attempts.extend(LoadAttempt(GPU_TIER, q) for q in model.gpu_variants())
    attempts.append(LoadAttempt(CPU_TIER, model.cpu_quantization))
    return attempts


class BackendLoader:
    """Loads one model at a time; the load generation invalidates in-flight loads"""

    def __init__(
        self,
        resolver: ManifestResolver,
        acquisition: AcquisitionManager,
        backend: Optional[OnnxRuntimeBackend] = None,
        config: Optional[Config] = None,
        telemetry: Optional[RuntimeTelemetry] = None,
    ):
        self.config = config or get_config()
        self.resolver = resolver
        self.acquisition = acquisition
        self.backend = backend or OnnxRuntimeBackend(self.config)
        self.telemetry = telemetry
        self.generation = 0
        self.state = LoadState.UNLOADED
        self.sessions: Optional[ModelSessions] = None

    def _set_state(self, state: LoadState, snapshot: int) -> None:
        # A superseded load must not move the state of the newer target
        if snapshot == self.generation:
            self.state = state

    def invalidate(self) -> int:
        """Advance the load generation; in-flight loads abandon their work at the next checkpoint"""
        self.generation += 1
        self.state = LoadState.UNLOADED
        return self.generation

    def release_sessions(self) -> None:
        if self.sessions is not None:
            self.sessions.release()
            self.sessions = None

    def _checkpoint(self, snapshot: int, model: ModelDefinition, stage: str) -> None:
        if snapshot != self.generation:
            _logger.info("load superseded", model=model.id, stage=stage)
            raise LoadCancelledError(model.id, stage)

    def _preflight(self, model: ModelDefinition) -> Optional[GpuDevice]:
        try:
            adapter = self.backend.request_adapter()
            if adapter is None:
                raise GPUUnavailableError(GPUUnavailableError.GPU_NO_ADAPTER, "no configured GPU provider is available")
            return self.backend.request_device(adapter)
        except GPUUnavailableError as exc:
            exc.model_id = model.id
            if self.config.require_gpu:
                raise
            _logger.warning("gpu preflight failed, continuing with the CPU tier", model=model.id, code=exc.code)
            return None

    async def _acquire(self, model: ModelDefinition, quantization: str, snapshot: int) -> ShardManifest:
        self._set_state(LoadState.DOWNLOADING, snapshot)
        manifest = await self.resolver.resolve(model, quantization)
        await self.acquisition.ensure_cached(manifest)
        return manifest

    async def _acquire_fallback(
        self, model: ModelDefinition, quantization: str, snapshot: int
    ) -> Optional[ShardManifest]:
        """Like _acquire, but a variant absent from the listing is skipped (None) rather than guessed"""
        self._set_state(LoadState.DOWNLOADING, snapshot)
        manifest = await self.resolver.resolve(model, quantization, listed_only=True)
        if manifest is not None:
            await self.acquisition.ensure_cached(manifest)
        return manifest

    def _progress(self, pct: float, snapshot: int) -> None:
        if snapshot == self.generation:
            self.acquisition.report_progress(pct)

    def _construct(
        self,
        model: ModelDefinition,
        attempt: LoadAttempt,
        manifest: ShardManifest,
        device: Optional[GpuDevice],
    ) -> ModelSessions:
        target = self.backend.gpu_target(device) if attempt.tier == GPU_TIER else self.backend.cpu_target()
        stems = model.stems_for(attempt.quantization)
        built: Dict[SessionRole, ExecutionSession] = {}
        try:
            for role, stem in (
                (SessionRole.EMBED_TOKENS, stems.embed_tokens),
                (SessionRole.DECODER, stems.decoder),
                (SessionRole.EMBED_IMAGES, stems.embed_images),
            ):
                if stem is None:
                    continue
                path = self.acquisition.local_path(manifest, manifest.stem(stem).primary.path)
                built[role] = self.backend.create_session(path, role, target)
        except BaseException:
            for session in built.values():
                session.release()
            raise

        return ModelSessions(
            model=model,
            attempt=attempt,
            manifest=manifest,
            decoder=built[SessionRole.DECODER],
            embed_tokens=built.get(SessionRole.EMBED_TOKENS),
            embed_images=built.get(SessionRole.EMBED_IMAGES),
        )

    async def load(self, model: ModelDefinition) -> ModelSessions:
        """
        Load ``model`` and make it the current set of sessions

        Raises:
            GPUUnavailableError: Preflight failed and the GPU is required
            NetworkError / CacheUnavailableError: Acquisition failed
            ModelLoadError: Every attempt of the ladder failed
            CacheVerificationError: Files are missing after construction
            LoadCancelledError: The load generation advanced meanwhile
        """
        snapshot = self.generation
        started = time.perf_counter()
        try:
            sessions = await self._load(model, snapshot)
        except LoadCancelledError:
            raise
        except Exception:
            self._set_state(LoadState.FAILED, snapshot)
            self._progress(0, snapshot)
            if self.telemetry is not None:
                self.telemetry.record_load("none", (time.perf_counter() - started) * 1000, success=False)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        if self.telemetry is not None:
            self.telemetry.record_load(sessions.attempt.label, duration_ms)
        _logger.info(
            "load complete",
            model=model.id,
            tier=sessions.attempt.tier,
            quantization=sessions.attempt.quantization,
            duration_ms=f"{duration_ms:.0f}",
        )
        return sessions

    async def _load(self, model: ModelDefinition, snapshot: int) -> ModelSessions:
        self._set_state(LoadState.PREFLIGHTING, snapshot)
        device = await asyncio.to_thread(self._preflight, model)
        self._checkpoint(snapshot, model, "preflight")

        attempts = plan_attempts(model, device is not None)
        manifests: Dict[str, Optional[ShardManifest]] = {}
        manifests[attempts[0].quantization] = await self._acquire(model, attempts[0].quantization, snapshot)
        self._checkpoint(snapshot, model, "download")

        sessions: Optional[ModelSessions] = None
        failures: List[str] = []
        for attempt in attempts:
            if attempt.quantization in manifests:
                manifest = manifests[attempt.quantization]
            else:
                try:
                    manifest = await self._acquire_fallback(model, attempt.quantization, snapshot)
                except LoadCancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    self._checkpoint(snapshot, model, "download")
                    failures.append(f"{attempt.label} (download)")
                    _logger.warning("fallback download failed", model=model.id, attempt=attempt.label, error=exc)
                    continue
                self._checkpoint(snapshot, model, "download")
                manifests[attempt.quantization] = manifest
            if manifest is None:
                failures.append(f"{attempt.label} (not listed)")
                continue

            self._set_state(LoadState.CONSTRUCTING, snapshot)
            self._progress(LOAD_PROGRESS_CONSTRUCTING, snapshot)
            try:
                sessions = await asyncio.to_thread(self._construct, model, attempt, manifest, device)
            except Exception as exc:  # noqa: BLE001
                failures.append(attempt.label)
                _logger.warning("load attempt failed", model=model.id, attempt=attempt.label, error=exc)
                continue

            _logger.info("load attempt succeeded", model=model.id, attempt=attempt.label)
            break

        if sessions is None:
            raise ModelLoadError(
                model.id,
                f"every backend attempt failed ({', '.join(failures)})",
                tier=attempts[-1].tier,
                attempts=failures,
                stage="construct",
            )

        try:
            self._checkpoint(snapshot, model, "construct")
            self._set_state(LoadState.VERIFYING, snapshot)
            self._progress(LOAD_PROGRESS_VERIFYING, snapshot)
            missing = await self.acquisition.verify_cached(sessions.manifest)
            if missing:
                if not sessions.manifest.from_listing:
                    raise ManifestFallbackError(model.id, missing)
                raise CacheVerificationError(model.id, missing)
            await self.acquisition.prune(sessions.manifest)
            self._checkpoint(snapshot, model, "verify")
        except BaseException:
            sessions.release()
            raise

        self.release_sessions()
        self.sessions = sessions
        self.state = LoadState.READY
        self._progress(100, snapshot)
        return sessions
