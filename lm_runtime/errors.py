"""
Custom exception types for the on-device model runtime

Every failure that unwinds to a caller of load()/generate() is one of these.
Each carries the model it concerns and the stage that failed so the caller can
reset any loading state and decide whether a retry makes sense.
"""

from typing import List, Optional, Sequence


class LMRuntimeError(Exception):
    """Base exception for all runtime errors"""

    stage: Optional[str] = None

    def __init__(self, message: str, model_id: Optional[str] = None, stage: Optional[str] = None):
        self.message = message
        self.model_id = model_id
        if stage is not None:
            self.stage = stage
        super().__init__(message)


class UnknownModelError(LMRuntimeError):
    """Raised when a model id is not in the catalog"""

    stage = "catalog"

    def __init__(self, model_id: str):
        super().__init__(f"Unknown model: {model_id}", model_id)


class NetworkError(LMRuntimeError):
    """Raised when the weight repository cannot be reached or answers with an error"""

    stage = "download"

    def __init__(
        self,
        url: str,
        reason: str,
        status: Optional[int] = None,
        transient: bool = False,
        model_id: Optional[str] = None,
    ):
        super().__init__(f"Request failed for {url}: {reason}", model_id)
        self.url = url
        self.reason = reason
        self.status = status
        self.transient = transient


class GPUUnavailableError(LMRuntimeError):
    """Raised when no GPU adapter or device can be acquired"""

    stage = "preflight"

    GPU_UNAVAILABLE = "GPU_UNAVAILABLE"
    GPU_NO_ADAPTER = "GPU_NO_ADAPTER"
    GPU_REQUEST_DEVICE_FAILED = "GPU_REQUEST_DEVICE_FAILED"

    def __init__(self, code: str, detail: str = "", model_id: Optional[str] = None):
        message = f"{code}: {detail}" if detail else code
        super().__init__(message, model_id)
        self.code = code
        self.detail = detail


class CacheUnavailableError(LMRuntimeError):
    """Raised when the durable cache cannot be opened, so the model cannot be persisted"""

    stage = "cache"

    def __init__(self, path: str, reason: str, model_id: Optional[str] = None):
        super().__init__(
            f"Model cache is unavailable at {path}: {reason}. "
            "Check that the cache directory exists and is writable.",
            model_id,
        )
        self.path = path
        self.reason = reason


class CacheVerificationError(LMRuntimeError):
    """Raised when post-load verification finds files missing from the cache"""

    stage = "verify"

    def __init__(self, model_id: str, missing: Sequence[str], used_fallback_manifest: bool = False):
        self.missing: List[str] = list(missing)
        self.used_fallback_manifest = used_fallback_manifest
        super().__init__(
            f"Cache verification failed for {model_id}. "
            f"Missing {len(self.missing)} files: {', '.join(self.missing)}",
            model_id,
        )


class ManifestFallbackError(CacheVerificationError):
    """
    Raised when verification fails after the repository listing was unavailable

    The guessed two-file manifest may be missing shards that exist upstream, so
    this is reported apart from an ordinary corrupt cache.
    """

    def __init__(self, model_id: str, missing: Sequence[str]):
        super().__init__(model_id, missing, used_fallback_manifest=True)
        self.message = (
            f"{self.message}. The repository file listing could not be fetched, "
            "so the shard list was guessed; retry when the network is available."
        )
        self.args = (self.message,)


class ModelLoadError(LMRuntimeError):
    """Raised when model loading fails"""

    stage = "construct"

    def __init__(
        self,
        model_id: str,
        reason: str,
        tier: Optional[str] = None,
        attempts: Optional[Sequence[str]] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(f"Failed to load model {model_id}: {reason}", model_id, stage)
        self.reason = reason
        self.tier = tier
        self.attempts: List[str] = list(attempts or [])


class LoadCancelledError(ModelLoadError):
    """Raised when a load is invalidated by a model switch or dispose"""

    def __init__(self, model_id: str, stage: Optional[str] = None):
        super().__init__(model_id, "superseded by a newer load request", stage=stage)


class ModelNotLoadedError(LMRuntimeError):
    """Raised when attempting to use a model that hasn't been loaded"""

    stage = "generate"

    def __init__(self, model_id: Optional[str] = None):
        super().__init__(f"Model not loaded: {model_id or '<none>'}", model_id)


class TokenizerError(LMRuntimeError):
    """Raised when tokenization/detokenization fails"""

    stage = "tokenize"

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Tokenizer error for {model_id}: {reason}", model_id)
        self.reason = reason


class ImageProcessingError(LMRuntimeError):
    """Raised when an image attachment cannot be preprocessed or embedded"""

    stage = "image"

    def __init__(self, model_id: Optional[str], reason: str):
        super().__init__(
            "Image attachment could not be processed. "
            "Please re-upload a standard PNG/JPEG image.",
            model_id,
        )
        self.reason = reason


class VisionEncoderNotLoadedError(LMRuntimeError):
    """Raised when an image prompt arrives but no image embedder session exists"""

    stage = "image"

    def __init__(self, model_id: Optional[str]):
        super().__init__(
            "Vision encoder is not loaded. Load a vision model and wait for loading to finish.",
            model_id,
        )


class GenerationError(LMRuntimeError):
    """Raised when token generation fails"""

    stage = "generate"

    def __init__(self, model_id: Optional[str], reason: str):
        super().__init__(f"Generation failed for {model_id}: {reason}", model_id)
        self.reason = reason
