"""
Model catalog

Static table of the models this runtime can serve. Entries are created once at
import time and never mutated.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from lm_runtime.errors import UnknownModelError

ONNX_DIR = "onnx"


@dataclass(frozen=True)
class SessionFiles:
    """File stems of the sub-networks of a multi-session model"""

    embed_tokens: str
    decoder: str
    embed_images: Optional[str] = None


@dataclass(frozen=True)
class SessionStems:
    """Resolved file stem per session role for one quantization variant"""

    decoder: str
    embed_tokens: Optional[str] = None
    embed_images: Optional[str] = None

    def all(self) -> List[str]:
        """Stems in construction order: token embedder, decoder, image embedder"""
        return [s for s in (self.embed_tokens, self.decoder, self.embed_images) if s]


def quantization_to_stem(quantization: str) -> str:
    if quantization == "fp16":
        return "model_fp16"
    if quantization == "q4f16":
        return "model_q4f16"
    return "model_q4"


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    label: str
    hf_id: str
    quantization: str
    revision: str
    max_new_tokens: int
    max_context_tokens: int
    reserved_tokens: int
    # Only needed to size recurrent state when the decoder reports symbolic dims
    hidden_size: Optional[int] = None
    num_kv_heads: Optional[int] = None
    head_dim: Optional[int] = None
    thinking: bool = False
    vision: bool = False
    session_files: Optional[SessionFiles] = None
    # GPU variants tried, in order, when the primary quantization fails to construct
    fallback_quantizations: Tuple[str, ...] = ("q4f16", "fp16")
    # Variant used for the final non-GPU attempt
    cpu_quantization: str = "q4"

    @property
    def max_context_tokens_for_doc(self) -> int:
        """Tokens available for document context after reserving room for prompt overhead"""
        return self.max_context_tokens - self.reserved_tokens

    @property
    def is_multi_session(self) -> bool:
        return self.session_files is not None

    def stems_for(self, quantization: str) -> SessionStems:
        """
        Resolve session file stems for a quantization variant

        Multi-session models keep their embedder stems fixed and swap the
        decoder to ``decoder_<quantization>``; single-file models map the
        quantization onto ``model_<quantization>``.
        """
        if self.session_files is None:
            return SessionStems(decoder=quantization_to_stem(quantization))

        if quantization == self.quantization:
            decoder = self.session_files.decoder
        else:
            decoder = f"decoder_{quantization}"
        return SessionStems(
            decoder=decoder,
            embed_tokens=self.session_files.embed_tokens,
            embed_images=self.session_files.embed_images,
        )

    def gpu_variants(self) -> List[str]:
        variants = [self.quantization]
        for q in self.fallback_quantizations:
            if q not in variants:
                variants.append(q)
        return variants


AVAILABLE_MODELS: List[ModelDefinition] = [
    ModelDefinition(
        id="lfm25-1.2b-instruct",
        label="LFM2.5 1.2B Instruct",
        hf_id="LiquidAI/LFM2.5-1.2B-Instruct-ONNX",
        quantization="q4",
        revision="main",
        hidden_size=2048,
        num_kv_heads=8,
        head_dim=64,
        max_new_tokens=1024,
        max_context_tokens=32_768,
        reserved_tokens=4096,
    ),
    ModelDefinition(
        id="lfm25-1.2b-thinking",
        label="LFM2.5 1.2B Thinking",
        hf_id="LiquidAI/LFM2.5-1.2B-Thinking-ONNX",
        quantization="q4",
        revision="main",
        hidden_size=2048,
        num_kv_heads=8,
        head_dim=256,
        max_new_tokens=2048,
        max_context_tokens=32_768,
        reserved_tokens=4096,
        thinking=True,
    ),
    ModelDefinition(
        id="lfm25-vl-1.6b",
        label="LFM2.5 VL 1.6B (Vision)",
        hf_id="LiquidAI/LFM2.5-VL-1.6B-ONNX",
        quantization="q4",
        revision="main",
        hidden_size=2048,
        num_kv_heads=8,
        head_dim=64,
        max_new_tokens=1024,
        max_context_tokens=32_768,
        reserved_tokens=4096,
        vision=True,
        session_files=SessionFiles(
            embed_tokens="embed_tokens_fp16",
            embed_images="embed_images_fp16",
            decoder="decoder_q4",
        ),
    ),
]

DEFAULT_MODEL_ID = "lfm25-1.2b-instruct"


def get_model_by_id(model_id: str) -> ModelDefinition:
    for model in AVAILABLE_MODELS:
        if model.id == model_id:
            return model
    raise UnknownModelError(model_id)


def list_model_ids() -> List[str]:
    return [m.id for m in AVAILABLE_MODELS]
