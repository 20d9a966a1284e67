"""
Pytest configuration for lm_runtime tests

Provides a test configuration (zero retry delays, temporary cache root) and
in-memory fakes for the weight repository, the file lister, the execution
backend and the tokenizer, so no test touches the network or a GPU.
"""

import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pytest

import lm_runtime.config_loader as config_loader
from lm_runtime.catalog import AVAILABLE_MODELS, ModelDefinition, get_model_by_id
from lm_runtime.errors import NetworkError
from lm_runtime.manifest import ShardManifest
from lm_runtime.models.backend import (
    ExecutionSession,
    ExecutionTarget,
    GpuAdapter,
    GpuDevice,
    SessionRole,
    SessionSignature,
    TensorSpec,
)
from lm_runtime.models.loader import LoadAttempt, ModelSessions
from lm_runtime.models.tokenizer import TokenizerAdapter
from lm_runtime.runtime import ModelRuntime

HUB = "https://hub.test"
HIDDEN = 8
VOCAB = 512
EOS = 2

SPECIAL_TOKENS = {
    "<unk>": 0,
    "<|startoftext|>": 1,
    "<|endoftext|>": 2,
    "<|im_start|>": 3,
    "<|im_end|>": 4,
    "<image>": 10,
    "<|image_start|>": 11,
    "<|image_end|>": 12,
}
_SPECIAL_RE = re.compile("(" + "|".join(re.escape(t) for t in SPECIAL_TOKENS) + ")")
_URL_RE = re.compile(r"^(?P<base>https?://[^/]+)/(?P<repo>.+?)/resolve/[^/]+/(?P<path>.+)$")


def char_token(ch: str) -> int:
    return ord(ch) + 100


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_global_config():
    """Reset the process-wide config around every test"""
    config_loader._global_config = None
    yield
    config_loader._global_config = None


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.delenv(config_loader.CONFIG_ENV_VAR, raising=False)
    cfg = config_loader.load_config(environment="test")
    cfg.cache_root_dir = tmp_path / "cache"
    cfg.hub_endpoint = HUB
    cfg.verify_read_bytes = 16
    return cfg


# ---------------------------------------------------------------------------
# Weight repository
# ---------------------------------------------------------------------------


def repo_files(model: ModelDefinition) -> Dict[str, bytes]:
    """Primary file plus one data shard for every stem of every variant of ``model``"""
    files: Dict[str, bytes] = {}
    for quantization in set(model.gpu_variants()) | {model.cpu_quantization}:
        for stem in model.stems_for(quantization).all():
            files[f"onnx/{stem}.onnx"] = f"{stem}-graph".encode()
            files[f"onnx/{stem}.onnx_data"] = f"{stem}-weights".encode() * 8
    return files


class FakeHttp:
    """Serves repository files from memory, ignoring the revision segment"""

    def __init__(self, repos: Dict[str, Dict[str, bytes]]):
        self.repos = repos
        self.downloads: List[str] = []
        self.failures: Dict[str, Exception] = {}

    def _lookup(self, url: str) -> Optional[bytes]:
        match = _URL_RE.match(url)
        if match is None:
            return None
        return self.repos.get(match.group("repo"), {}).get(match.group("path"))

    def content_length(self, url: str) -> int:
        data = self._lookup(url)
        return len(data) if data is not None else 0

    def download(self, url, sink, on_progress=None) -> int:
        if url in self.failures:
            raise self.failures[url]
        data = self._lookup(url)
        if data is None:
            raise NetworkError(url, "HTTP 404 Not Found", status=404)
        self.downloads.append(url)
        half = len(data) // 2
        sink.write(data[:half])
        if on_progress is not None:
            on_progress(half, len(data), 1024.0)
        sink.write(data[half:])
        if on_progress is not None:
            on_progress(len(data), len(data), 1024.0)
        return len(data)


class FakeLister:
    def __init__(self, repos: Dict[str, Dict[str, bytes]], fail: bool = False):
        self.repos = repos
        self.fail = fail
        self.calls: List[str] = []

    def list_files(self, repo_id: str, revision: str) -> List[str]:
        self.calls.append(repo_id)
        if self.fail:
            raise ConnectionError("metadata endpoint unreachable")
        return list(self.repos.get(repo_id, {}))


@pytest.fixture
def repos():
    return {m.hf_id: repo_files(m) for m in AVAILABLE_MODELS}


@pytest.fixture
def http(repos):
    return FakeHttp(repos)


@pytest.fixture
def lister(repos):
    return FakeLister(repos)


# ---------------------------------------------------------------------------
# Execution sessions
# ---------------------------------------------------------------------------


def decoder_signature(takes_embeddings: bool, dtype: str = "tensor(float)") -> SessionSignature:
    first = (
        TensorSpec("inputs_embeds", ("batch", "seq", HIDDEN), dtype)
        if takes_embeddings
        else TensorSpec("input_ids", ("batch", "seq"), "tensor(int64)")
    )
    inputs = {
        first.name: first,
        "attention_mask": TensorSpec("attention_mask", ("batch", "total"), "tensor(int64)"),
        "past_conv.0": TensorSpec("past_conv.0", ("batch", HIDDEN, 3), dtype),
        "past_key_values.0.key": TensorSpec("past_key_values.0.key", ("batch", 2, "past", 4), dtype),
        "past_key_values.0.value": TensorSpec("past_key_values.0.value", ("batch", 2, "past", 4), dtype),
    }
    outputs = ("logits", "present_conv.0", "present.0.key", "present.0.value")
    return SessionSignature(inputs=inputs, outputs=outputs)


class ScriptedDecoder:
    """Emits the scripted token ids, one per step; the last id repeats"""

    def __init__(self, script: Sequence[int]):
        self.script = list(script)
        self.calls: List[Dict[str, np.ndarray]] = []

    def run(self, output_names, feeds):
        self.calls.append(feeds)
        token = self.script[min(len(self.calls) - 1, len(self.script) - 1)]
        step = feeds["inputs_embeds"] if "inputs_embeds" in feeds else feeds["input_ids"]
        seq = step.shape[1]
        logits = np.zeros((1, seq, VOCAB), dtype=np.float32)
        logits[0, -1, token] = 1.0
        past = feeds["past_key_values.0.key"]
        grown = np.zeros((1, past.shape[1], past.shape[2] + seq, past.shape[3]), dtype=past.dtype)
        outputs = {
            "logits": logits,
            "present_conv.0": feeds["past_conv.0"] + 1,
            "present.0.key": grown,
            "present.0.value": grown.copy(),
        }
        return [outputs[name] for name in output_names]


class TokenEmbedder:
    """Embeds token id t as a row filled with t"""

    def run(self, output_names, feeds):
        ids = feeds["input_ids"].astype(np.float32)
        return [np.repeat(ids[..., np.newaxis], HIDDEN, axis=-1)]


class ImageEmbedder:
    """Returns ``patches_per_tile`` rows per tile, filled with 1000 + row index"""

    def __init__(self, patches_per_tile: int = 2):
        self.patches_per_tile = patches_per_tile
        self.calls: List[Dict[str, np.ndarray]] = []

    def run(self, output_names, feeds):
        self.calls.append(feeds)
        count = feeds["pixel_values"].shape[1] * self.patches_per_tile
        rows = np.full((count, HIDDEN), 1000.0, dtype=np.float32) + np.arange(count, dtype=np.float32)[:, None]
        return [rows]


def token_embedder_session(target: ExecutionTarget) -> ExecutionSession:
    sig = SessionSignature(
        inputs={"input_ids": TensorSpec("input_ids", ("batch", "seq"), "tensor(int64)")},
        outputs=("inputs_embeds",),
    )
    return ExecutionSession(SessionRole.EMBED_TOKENS, TokenEmbedder(), sig, target)


def image_embedder_session(target: ExecutionTarget, patches_per_tile: int = 2) -> ExecutionSession:
    sig = SessionSignature(
        inputs={
            "pixel_values": TensorSpec("pixel_values", ("batch", "tiles", 3, 512, 512)),
            "pixel_attention_mask": TensorSpec("pixel_attention_mask", ("batch", "tiles", 512, 512), "tensor(int64)"),
            "spatial_shapes": TensorSpec("spatial_shapes", ("batch", 2), "tensor(int64)"),
        },
        outputs=("image_features",),
    )
    return ExecutionSession(SessionRole.EMBED_IMAGES, ImageEmbedder(patches_per_tile), sig, target)


def decoder_session(target: ExecutionTarget, script: Sequence[int], takes_embeddings: bool) -> ExecutionSession:
    return ExecutionSession(SessionRole.DECODER, ScriptedDecoder(script), decoder_signature(takes_embeddings), target)


CPU_TARGET = ExecutionTarget("cpu", "CPUExecutionProvider")


class FakeBackend:
    """
    Execution backend double

    ``fail(target, path)`` decides which session constructions raise. Decoders
    named ``decoder_*`` consume embeddings; single-file ``model_*`` decoders take ids.
    """

    def __init__(
        self,
        script: Sequence[int] = (EOS,),
        fail: Optional[Callable[[ExecutionTarget, Path], bool]] = None,
        adapter: bool = True,
    ):
        self.script = script
        self.fail = fail or (lambda target, path: False)
        self.adapter = adapter
        self.created: List[tuple] = []
        self.sessions: List[ExecutionSession] = []

    def request_adapter(self):
        return GpuAdapter("FakeGpuExecutionProvider") if self.adapter else None

    def request_device(self, adapter):
        return GpuDevice(adapter.provider)

    def gpu_target(self, device):
        return ExecutionTarget("gpu", device.provider)

    def cpu_target(self):
        return CPU_TARGET

    def create_session(self, path: Path, role: SessionRole, target: ExecutionTarget) -> ExecutionSession:
        assert path.is_file(), f"session built from an uncached file: {path}"
        if self.fail(target, path):
            raise RuntimeError(f"cannot build {path.name} on {target.device}")
        if role is SessionRole.EMBED_TOKENS:
            session = token_embedder_session(target)
        elif role is SessionRole.EMBED_IMAGES:
            session = image_embedder_session(target)
        else:
            session = decoder_session(target, self.script, takes_embeddings=path.name.startswith("decoder"))
        session.signature.validate(role)
        self.created.append((target.device, path.name))
        self.sessions.append(session)
        return session


@pytest.fixture
def backend():
    return FakeBackend(script=(char_token("h"), char_token("i"), EOS))


def make_sessions(
    model_id: str = "lfm25-1.2b-instruct",
    script: Sequence[int] = (EOS,),
    with_images: bool = False,
    patches_per_tile: int = 2,
) -> ModelSessions:
    """Sessions for ``model_id`` built directly, without the loader"""
    model = get_model_by_id(model_id)
    manifest = ShardManifest(model.id, model.hf_id, model.revision, model.quantization, HUB, [])
    multi = model.is_multi_session
    return ModelSessions(
        model=model,
        attempt=LoadAttempt("cpu", model.quantization),
        manifest=manifest,
        decoder=decoder_session(CPU_TARGET, script, takes_embeddings=multi),
        embed_tokens=token_embedder_session(CPU_TARGET) if multi else None,
        embed_images=image_embedder_session(CPU_TARGET, patches_per_tile) if with_images else None,
    )


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


class FakeHFTokenizer:
    """Character-level tokenizer with the special tokens the runtime relies on"""

    eos_token_id = EOS
    unk_token_id = 0
    unk_token = "<unk>"
    chat_template = None

    def encode(self, text: str, add_special_tokens: bool = False) -> List[int]:
        ids: List[int] = []
        for part in _SPECIAL_RE.split(text):
            if part in SPECIAL_TOKENS:
                ids.append(SPECIAL_TOKENS[part])
            else:
                ids.extend(char_token(c) for c in part)
        return ids

    def decode(self, ids, skip_special_tokens: bool = True) -> str:
        return "".join(chr(i - 100) for i in ids if i >= 100)

    def convert_tokens_to_ids(self, token: str) -> int:
        return SPECIAL_TOKENS.get(token, 0)


def fake_tokenizer(model: ModelDefinition) -> TokenizerAdapter:
    return TokenizerAdapter(model.id, FakeHFTokenizer())


@pytest.fixture
def tokenizer():
    return TokenizerAdapter("lfm25-1.2b-instruct", FakeHFTokenizer())


@pytest.fixture
def make_runtime(config, http, lister, backend):
    def factory(**overrides) -> ModelRuntime:
        kwargs = dict(backend=backend, http=http, lister=lister, tokenizer_factory=fake_tokenizer)
        kwargs.update(overrides)
        return ModelRuntime(config, **kwargs)

    return factory
