"""
Generator module - Greedy autoregressive decoding over execution sessions

Responsibilities:
- Build the prompt (chat template, image tiling, placeholder expansion, embedding merge)
- Run the blocking decode loop in a worker thread with explicit recurrent state
- Bridge tokens into asyncio as a GenerationStream with a stats side channel
- Invoke chunk / tokens-per-second / completion callbacks
"""

import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.catalog import ModelDefinition
from lm_runtime.errors import (
    GenerationError,
    ImageProcessingError,
    LMRuntimeError,
    ModelNotLoadedError,
    VisionEncoderNotLoadedError,
)
from lm_runtime.models.backend import (
    CONV_STATE_PREFIX,
    KV_STATE_PREFIX,
    ExecutionSession,
    SessionSignature,
    TensorSpec,
    past_name_for,
)
from lm_runtime.models.loader import ModelSessions
from lm_runtime.models.tokenizer import ChatMessage, TokenizerAdapter
from lm_runtime.models import vision

_logger = BenchmarkAwareLogger("generator")

CONV_KERNEL = 3


@dataclass
class StreamCallbacks:
    on_chunk: Callable[[str], None]
    # (tokens per second, total tokens, elapsed seconds)
    on_tokens_per_sec: Optional[Callable[[float, int, float], None]] = None
    # (total tokens, elapsed seconds)
    on_complete: Optional[Callable[[int, float], None]] = None


@dataclass
class GenerationStats:
    tokens: int = 0
    elapsed_seconds: float = 0.0
    tokens_per_second: float = 0.0
    input_tokens: int = 0
    finish_reason: Optional[str] = None


@dataclass
class TokenEvent:
    token_id: int
    chunk: str
    tokens: int
    elapsed_seconds: float


@dataclass
class DecodeResult:
    text: str
    tokens: int
    input_tokens: int
    elapsed_seconds: float
    finish_reason: str
    token_ids: List[int] = field(default_factory=list)


@dataclass
class PreparedPrompt:
    input_ids: List[int]
    # [1, seq, hidden] when the decoder consumes embeddings
    embeddings: Optional[np.ndarray] = None


class IncrementalDetokenizer:
    """
    Turns a growing token list into text deltas

    A trailing U+FFFD (an incomplete multi-byte character) is held back until
    the next token completes it.
    """

    def __init__(self, decode: Callable[[Sequence[int]], str]):
        self._decode = decode
        self.ids: List[int] = []
        self.text = ""

    def _delta(self, decoded: str) -> str:
        if not decoded.startswith(self.text):
            return ""
        chunk = decoded[len(self.text):]
        self.text = decoded
        return chunk

    def push(self, token_id: int) -> str:
        self.ids.append(token_id)
        decoded = self._decode(self.ids)
        if decoded.endswith("\ufffd"):
            return ""
        return self._delta(decoded)

    def flush(self) -> str:
        if not self.ids:
            return ""
        return self._delta(self._decode(self.ids))


def _resolve_dim(dim: Any, fallback: Optional[int], name: str) -> int:
    if isinstance(dim, int) and dim > 0:
        return dim
    if fallback is None:
        raise GenerationError(None, f"cannot size state input '{name}': symbolic dim and no catalog value")
    return fallback


def initial_state(signature: SessionSignature, model: ModelDefinition) -> Dict[str, np.ndarray]:
    """
    Zero convolutional state and empty key/value cache for every state input of the decoder

    ``past_conv*`` -> [1, hidden, 3], ``past_key_values.*`` -> [1, kv_heads, 0, head_dim];
    symbolic dims fall back to the catalog entry.
    """
    state: Dict[str, np.ndarray] = {}
    for spec in signature.state_inputs:
        state[spec.name] = _empty_state(spec, model)
    return state


def _empty_state(spec: TensorSpec, model: ModelDefinition) -> np.ndarray:
    shape = list(spec.shape) + [None] * (4 - len(spec.shape))
    if spec.name.startswith(CONV_STATE_PREFIX):
        hidden = _resolve_dim(shape[1], model.hidden_size, spec.name)
        kernel = _resolve_dim(shape[2], CONV_KERNEL, spec.name)
        return np.zeros((1, hidden, kernel), dtype=spec.dtype)
    if spec.name.startswith(KV_STATE_PREFIX):
        heads = _resolve_dim(shape[1], model.num_kv_heads, spec.name)
        head_dim = _resolve_dim(shape[3], model.head_dim, spec.name)
        return np.zeros((1, heads, 0, head_dim), dtype=spec.dtype)
    raise GenerationError(model.id, f"unrecognized state input '{spec.name}'")


class InferenceEngine:
    """Runs prompts through the sessions of one loaded model"""

    def __init__(self, sessions: ModelSessions, tokenizer: TokenizerAdapter):
        self.sessions = sessions
        self.tokenizer = tokenizer
        self.model = sessions.model

    # Prompt preparation

    def _embed_tokens(self, session: ExecutionSession, ids: Sequence[int]) -> np.ndarray:
        feeds = {"input_ids": np.array([list(ids)], dtype=np.int64)}
        return session.run(feeds)[session.first_output]

    def _embed_images(self, messages: Sequence[ChatMessage]) -> List[np.ndarray]:
        session = self.sessions.embed_images
        if session is None:
            raise VisionEncoderNotLoadedError(self.model.id)

        embedded = []
        for message in messages:
            if message.image is None:
                continue
            try:
                inputs = vision.preprocess_image(vision.load_image(message.image))
                feeds = inputs.feeds(session.signature.input_names)
                pixel_spec = session.signature.inputs["pixel_values"]
                feeds["pixel_values"] = feeds["pixel_values"].astype(pixel_spec.dtype)
                rows = session.run(feeds)[session.first_output]
            except ImageProcessingError as exc:
                exc.model_id = self.model.id
                raise
            except Exception as exc:  # noqa: BLE001
                raise ImageProcessingError(self.model.id, f"image embedding failed: {exc}") from exc
            embedded.append(rows.reshape(-1, rows.shape[-1]))
            _logger.debug("image embedded", grid=f"{inputs.grid.rows}x{inputs.grid.cols}", patches=embedded[-1].shape[0])
        return embedded

    def prepare(self, messages: Sequence[ChatMessage]) -> PreparedPrompt:
        """
        Render, expand and embed ``messages``

        Raises:
            VisionEncoderNotLoadedError: An image is attached but no image embedder is loaded
            ImageProcessingError: The image could not be decoded or embedded
        """
        has_image = any(m.image is not None for m in messages)
        if has_image and self.sessions.embed_images is None:
            raise VisionEncoderNotLoadedError(self.model.id)

        ids = self.tokenizer.encode_chat(messages)
        image_rows: List[np.ndarray] = []
        if has_image:
            image_rows = self._embed_images(messages)
            marker_ids = self.tokenizer.image_token_ids()
            ids = vision.expand_image_placeholders(
                ids, marker_ids["image"], marker_ids["start"], marker_ids["end"], [r.shape[0] for r in image_rows]
            )

        if not self.sessions.decoder.signature.takes_embeddings():
            return PreparedPrompt(input_ids=ids)

        if self.sessions.embed_tokens is None:
            raise GenerationError(self.model.id, "decoder consumes embeddings but no token embedder is loaded")
        embeddings = self._embed_tokens(self.sessions.embed_tokens, ids)
        if image_rows:
            positions = vision.placeholder_positions(ids, self.tokenizer.image_token_ids()["image"])
            embeddings = vision.merge_image_embeddings(embeddings, np.concatenate(image_rows), positions)
        return PreparedPrompt(input_ids=ids, embeddings=embeddings)

    # Decode loop

    def decode(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        on_token: Optional[Callable[[TokenEvent], None]] = None,
    ) -> DecodeResult:
        """
        Greedy decode; blocks the calling thread

        Stops on the end-of-sequence id (not counted) or after ``max_tokens`` decoder steps.
        """
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
        if self.sessions.released:
            raise ModelNotLoadedError(self.model.id)

        started = perf_counter()
        prompt = self.prepare(messages)
        decoder = self.sessions.decoder
        signature = decoder.signature
        takes_embeddings = signature.takes_embeddings()
        eos = self.tokenizer.eos_token_id
        detok = IncrementalDetokenizer(self.tokenizer.decode)

        state = initial_state(signature, self.model)
        step_ids: List[int] = prompt.input_ids
        step_embeds = prompt.embeddings
        past_len = 0
        finish_reason = "max_tokens"

        for _ in range(max_tokens):
            step_len = step_embeds.shape[1] if takes_embeddings else len(step_ids)
            total_len = past_len + step_len
            feeds: Dict[str, np.ndarray] = dict(state)
            if takes_embeddings:
                feeds["inputs_embeds"] = step_embeds.astype(signature.inputs["inputs_embeds"].dtype, copy=False)
            else:
                feeds["input_ids"] = np.array([step_ids], dtype=np.int64)
            if "attention_mask" in signature.inputs:
                feeds["attention_mask"] = np.ones((1, total_len), dtype=signature.inputs["attention_mask"].dtype)
            if "position_ids" in signature.inputs:
                feeds["position_ids"] = np.arange(past_len, total_len, dtype=np.int64)[np.newaxis]

            try:
                outputs = decoder.run(feeds)
                logits = outputs["logits"]
            except Exception as exc:  # noqa: BLE001
                raise GenerationError(self.model.id, f"decoder step failed: {exc}") from exc

            token = int(np.argmax(logits[0, -1]))
            if token == eos:
                finish_reason = "eos"
                break

            chunk = detok.push(token)
            if on_token is not None:
                on_token(TokenEvent(token, chunk, len(detok.ids), perf_counter() - started))
            if len(detok.ids) >= max_tokens:
                break

            state = {
                past_name_for(name): value
                for name, value in outputs.items()
                if past_name_for(name) in state
            }
            past_len = total_len
            step_ids = [token]
            if takes_embeddings:
                step_embeds = self._embed_tokens(self.sessions.embed_tokens, step_ids)

        tail = detok.flush()
        if tail and on_token is not None:
            on_token(TokenEvent(-1, tail, len(detok.ids), perf_counter() - started))

        elapsed = perf_counter() - started
        return DecodeResult(
            text=detok.text,
            tokens=len(detok.ids),
            input_tokens=len(prompt.input_ids),
            elapsed_seconds=elapsed,
            finish_reason=finish_reason,
            token_ids=list(detok.ids),
        )

    def stream(self, messages: Sequence[ChatMessage], max_tokens: int, gate: Any = None) -> "GenerationStream":
        return GenerationStream(lambda emit: self.decode(messages, max_tokens, emit), self.model.id, gate=gate)

    async def generate(
        self, messages: Sequence[ChatMessage], callbacks: StreamCallbacks, max_tokens: int, gate: Any = None
    ) -> str:
        return await run_with_callbacks(self.stream(messages, max_tokens, gate), callbacks)


_DONE = object()


class GenerationStream:
    """
    Async iterator of text chunks produced by a decode running in a worker thread

    ``stats`` is updated on the event loop as each token arrives and is final
    once iteration stops. When a ``gate`` is given it is acquired before the
    decode starts and released when the decode finishes, even if the consumer
    stops iterating early.
    """

    def __init__(
        self,
        run: Callable[[Callable[[TokenEvent], None]], DecodeResult],
        model_id: Optional[str] = None,
        gate: Any = None,
    ):
        self._run = run
        self.model_id = model_id
        self._gate = gate
        self.stats = GenerationStats()
        self.text = ""
        self.result: Optional[DecodeResult] = None
        self.token_listeners: List[Callable[[GenerationStats], None]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Future] = None
        self._finished = False

    def __aiter__(self) -> "GenerationStream":
        return self

    async def _start(self) -> None:
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        if self._gate is not None:
            await self._gate.acquire()

        def emit(event: TokenEvent) -> None:
            loop.call_soon_threadsafe(self._on_event, event)

        def producer() -> DecodeResult:
            try:
                return self._run(emit)
            finally:
                loop.call_soon_threadsafe(self._queue.put_nowait, _DONE)

        self._task = asyncio.ensure_future(asyncio.to_thread(producer))
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Future) -> None:
        if self._gate is not None:
            self._gate.release()
        # Retrieved here so an abandoned stream does not log an unretrieved exception
        if not task.cancelled():
            task.exception()

    def _on_event(self, event: TokenEvent) -> None:
        if event.token_id >= 0:
            self.stats.tokens = event.tokens
            self.stats.elapsed_seconds = event.elapsed_seconds
            if event.elapsed_seconds > 0:
                self.stats.tokens_per_second = event.tokens / event.elapsed_seconds
            for listener in self.token_listeners:
                listener(self.stats)
        self._queue.put_nowait(event)

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            await self._start()

        while True:
            item = await self._queue.get()
            if item is _DONE:
                self._finished = True
                await self._finish()
                raise StopAsyncIteration
            if item.chunk:
                self.text += item.chunk
                return item.chunk

    async def _finish(self) -> None:
        try:
            result = await self._task
        except LMRuntimeError:
            raise
        except ValueError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(self.model_id, str(exc)) from exc

        self.result = result
        self.stats.tokens = result.tokens
        self.stats.input_tokens = result.input_tokens
        self.stats.elapsed_seconds = result.elapsed_seconds
        self.stats.finish_reason = result.finish_reason
        if result.elapsed_seconds > 0:
            self.stats.tokens_per_second = result.tokens / result.elapsed_seconds
        _logger.info(
            "generation complete",
            model=self.model_id,
            tokens=result.tokens,
            elapsed_s=f"{result.elapsed_seconds:.2f}",
            tokens_per_s=f"{self.stats.tokens_per_second:.1f}",
            finish=result.finish_reason,
        )

    async def collect(self) -> str:
        """Drain the stream and return the full text"""
        async for _ in self:
            pass
        return self.text

    async def aclose(self) -> None:
        """Wait for the worker thread without consuming the remaining chunks"""
        self._finished = True
        if self._task is not None:
            await asyncio.wait({self._task})


async def run_with_callbacks(stream: GenerationStream, callbacks: StreamCallbacks) -> str:
    """Drive ``stream`` through the streaming callbacks and return the final text"""
    if callbacks.on_tokens_per_sec is not None:
        tps = callbacks.on_tokens_per_sec
        stream.token_listeners.append(lambda s: tps(s.tokens_per_second, s.tokens, s.elapsed_seconds))

    async for chunk in stream:
        callbacks.on_chunk(chunk)

    if callbacks.on_complete is not None:
        callbacks.on_complete(stream.stats.tokens, stream.stats.elapsed_seconds)
    return stream.text
