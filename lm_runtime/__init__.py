"""On-device language model runtime: model catalog, cached acquisition, backend loading and decoding."""

from .acquisition import AcquisitionManager, DownloadProgress
from .catalog import AVAILABLE_MODELS, DEFAULT_MODEL_ID, ModelDefinition, get_model_by_id
from .config_loader import Config, get_config, initialize_config, load_config
from .errors import (
    CacheUnavailableError,
    CacheVerificationError,
    GenerationError,
    GPUUnavailableError,
    ImageProcessingError,
    LMRuntimeError,
    LoadCancelledError,
    ManifestFallbackError,
    ModelLoadError,
    ModelNotLoadedError,
    NetworkError,
    TokenizerError,
    UnknownModelError,
    VisionEncoderNotLoadedError,
)
from .manifest import ManifestResolver, ShardManifest
from .models import ChatMessage, GenerationStream, LoadState, StreamCallbacks
from .runtime import ModelRuntime

__version__ = "0.1.0"

__all__ = [
    "AVAILABLE_MODELS",
    "AcquisitionManager",
    "CacheUnavailableError",
    "CacheVerificationError",
    "ChatMessage",
    "Config",
    "DEFAULT_MODEL_ID",
    "DownloadProgress",
    "GPUUnavailableError",
    "GenerationError",
    "GenerationStream",
    "ImageProcessingError",
    "LMRuntimeError",
    "LoadCancelledError",
    "LoadState",
    "ManifestFallbackError",
    "ManifestResolver",
    "ModelDefinition",
    "ModelLoadError",
    "ModelNotLoadedError",
    "ModelRuntime",
    "NetworkError",
    "ShardManifest",
    "StreamCallbacks",
    "TokenizerError",
    "UnknownModelError",
    "VisionEncoderNotLoadedError",
    "get_config",
    "get_model_by_id",
    "initialize_config",
    "load_config",
]
