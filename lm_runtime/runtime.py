"""
Model runtime - The single owned object behind load / switch / dispose / generate

This runtime is a thin coordinator:
- Delegates file discovery to manifest.py and caching to acquisition.py
- Delegates session construction to models/loader.py
- Delegates prompting and decoding to models/generator.py
- Serializes generation and de-duplicates loads through concurrency.py
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from lm_runtime.acquisition import AcquisitionManager, DownloadProgress, ProgressObserver
from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.cache_store import ModelCacheStore
from lm_runtime.catalog import ModelDefinition, get_model_by_id
from lm_runtime.concurrency import GenerationGate, SingleFlight
from lm_runtime.config_loader import Config, get_config
from lm_runtime.errors import LMRuntimeError, LoadCancelledError, ModelNotLoadedError
from lm_runtime.http_client import HttpClient
from lm_runtime.manifest import FileLister, ManifestResolver
from lm_runtime.models.backend import OnnxRuntimeBackend
from lm_runtime.models.generator import GenerationStream, InferenceEngine, StreamCallbacks, run_with_callbacks
from lm_runtime.models.loader import BackendLoader, LoadState
from lm_runtime.models.tokenizer import ChatMessage, TokenizerAdapter
from lm_runtime.telemetry import RuntimeTelemetry

_logger = BenchmarkAwareLogger("runtime")

_LOADING_STATES = (
    LoadState.PREFLIGHTING,
    LoadState.DOWNLOADING,
    LoadState.CONSTRUCTING,
    LoadState.VERIFYING,
)


class ModelRuntime:
    """On-device model runtime: one active model, one generation at a time"""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        backend: Optional[Any] = None,
        http: Optional[HttpClient] = None,
        lister: Optional[FileLister] = None,
        tokenizer_factory: Optional[Callable[[ModelDefinition], TokenizerAdapter]] = None,
        cache_root: Optional[Path] = None,
    ):
        self.config = config or get_config()
        self.telemetry = RuntimeTelemetry(
            enabled=self.config.telemetry_enabled,
            sampling_rate=self.config.telemetry_sampling_rate,
        )
        self.http = http or HttpClient(self.config)
        self.store = ModelCacheStore(cache_root or self.config.cache_root_dir, self.config.cache_name_prefix)
        self.resolver = ManifestResolver(self.config, lister, size_probe=self.http.content_length)
        self.acquisition = AcquisitionManager(self.store, self.http, self.config, self.telemetry)
        self.loader = BackendLoader(
            self.resolver,
            self.acquisition,
            backend or OnnxRuntimeBackend(self.config),
            self.config,
            self.telemetry,
        )
        self.tokenizer_factory = tokenizer_factory or TokenizerAdapter.from_pretrained

        self.active_model_id: str = get_model_by_id(self.config.default_model_id).id
        self._tokenizers: Dict[str, TokenizerAdapter] = {}
        self._engine: Optional[InferenceEngine] = None
        self._gate = GenerationGate(1)
        self._flights = SingleFlight()

    # State

    @property
    def active_model(self) -> ModelDefinition:
        return get_model_by_id(self.active_model_id)

    @property
    def state(self) -> LoadState:
        return self.loader.state

    @property
    def is_loaded(self) -> bool:
        return (
            self.loader.state is LoadState.READY
            and self._engine is not None
            and self._engine.model.id == self.active_model_id
        )

    @property
    def is_loading(self) -> bool:
        return self.loader.state in _LOADING_STATES

    @property
    def is_downloading(self) -> bool:
        return self.loader.state is LoadState.DOWNLOADING

    @property
    def download_progress(self) -> float:
        return self.acquisition.progress

    @property
    def download_stats(self) -> DownloadProgress:
        return self.acquisition.stats

    def set_progress_observer(self, observer: Optional[ProgressObserver]) -> None:
        """Receive (percentage, DownloadProgress) during acquisition and loading"""
        self.acquisition.observer = observer

    def get_state(self) -> Dict[str, Any]:
        sessions = self.loader.sessions
        return {
            "model_id": self.active_model_id,
            "state": self.loader.state.value,
            "load_generation": self.loader.generation,
            "tier": sessions.attempt.tier if sessions else None,
            "quantization": sessions.attempt.quantization if sessions else None,
            "download_progress": self.acquisition.progress,
            "generation_waiting": self._gate.waiting,
        }

    def get_telemetry_report(self) -> Dict[str, Any]:
        return self.telemetry.get_report()

    # Loading

    async def _tokenizer_for(self, model: ModelDefinition) -> TokenizerAdapter:
        tokenizer = self._tokenizers.get(model.id)
        if tokenizer is None:
            tokenizer = await asyncio.to_thread(self.tokenizer_factory, model)
            self._tokenizers[model.id] = tokenizer
        return tokenizer

    async def load(self, model_id: Optional[str] = None) -> ModelDefinition:
        """
        Load ``model_id`` (default: the active model) and make it ready

        Concurrent calls for the same model and load generation share one load.
        """
        if model_id is not None and model_id != self.active_model_id:
            await self.switch_model(model_id)

        model = self.active_model
        if self.is_loaded:
            return model

        key = ("load", model.id, self.loader.generation)
        await self._flights.do(key, lambda: self._load(model))
        return model

    async def _load(self, model: ModelDefinition) -> None:
        snapshot = self.loader.generation
        try:
            tokenizer = await self._tokenizer_for(model)
            if snapshot != self.loader.generation:
                raise LoadCancelledError(model.id, "tokenize")
            sessions = await self.loader.load(model)
        except LoadCancelledError:
            raise
        except LMRuntimeError as exc:
            self.telemetry.record_error()
            if snapshot == self.loader.generation:
                self.loader.state = LoadState.FAILED
                self.acquisition.report_progress(0)
            _logger.error("load failed", model=model.id, stage=exc.stage, error=exc.message)
            raise

        self._engine = InferenceEngine(sessions, tokenizer)

    async def switch_model(self, model_id: str) -> ModelDefinition:
        """
        Make ``model_id`` the active model without loading it

        Any in-flight load is invalidated and the current sessions are released
        once a running generation has finished with them.
        """
        model = get_model_by_id(model_id)
        self.loader.invalidate()
        self.active_model_id = model.id
        await self._release()
        _logger.info("switched model", model=model.id, load_generation=self.loader.generation)
        return model

    async def dispose(self) -> None:
        """Invalidate any in-flight load and release every session and tokenizer"""
        self.loader.invalidate()
        await self._release()
        self._tokenizers.clear()

    async def _release(self) -> None:
        self._engine = None
        sessions = self.loader.sessions
        self.loader.sessions = None
        if sessions is not None:
            async with self._gate:
                sessions.release()

    # Generation

    def _resolve_max_tokens(self, model: ModelDefinition, max_tokens: Optional[int]) -> int:
        if max_tokens is None:
            return min(model.max_new_tokens, self.config.max_tokens_limit)
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
        return min(max_tokens, self.config.max_tokens_limit)

    async def stream(self, messages: Sequence[ChatMessage], max_tokens: Optional[int] = None) -> GenerationStream:
        """
        Load the active model if needed and return a stream of reply chunks

        The decode starts on first iteration, after any running generation has finished.
        """
        limit = self._resolve_max_tokens(self.active_model, max_tokens)
        await self.load()
        engine = self._engine
        if engine is None:
            raise ModelNotLoadedError(self.active_model_id)
        return engine.stream(messages, limit, gate=self._gate)

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        callbacks: StreamCallbacks,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Run one generation through the streaming callbacks and return the final text"""
        stream = await self.stream(messages, max_tokens)
        started = time.perf_counter()
        try:
            text = await run_with_callbacks(stream, callbacks)
        except Exception:
            self.telemetry.record_generate((time.perf_counter() - started) * 1000, stream.stats.tokens, success=False)
            raise
        self.telemetry.record_generate((time.perf_counter() - started) * 1000, stream.stats.tokens)
        return text

    async def truncate_to_token_limit(self, text: str, max_tokens: Optional[int] = None) -> str:
        """Keep the tail of ``text`` that fits the active model's document budget"""
        model = self.active_model
        tokenizer = await self._tokenizer_for(model)
        limit = model.max_context_tokens_for_doc if max_tokens is None else max_tokens
        return await asyncio.to_thread(tokenizer.truncate_to_token_limit, text, limit)
