"""
Execution backend - Thin wrapper around onnxruntime

Responsibilities:
- Probe for a GPU execution provider (adapter) and claim a device on it
- Construct execution sessions for the GPU tier or the CPU tier
- Capture each session's input/output signature once, at construction, and
  validate it against the role the session plays
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.config_loader import Config, get_config
from lm_runtime.errors import GPUUnavailableError

_logger = BenchmarkAwareLogger("backend")

Dim = Union[int, str, None]

_ELEMENT_TYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(bool)": np.bool_,
}

# Providers that can be asked for a device allocation up front
_DEVICE_TYPES = {
    "CUDAExecutionProvider": "cuda",
    "DmlExecutionProvider": "dml",
}

CONV_STATE_PREFIX = "past_conv"
KV_STATE_PREFIX = "past_key_values."


class SessionRole(str, Enum):
    EMBED_TOKENS = "embed_tokens"
    EMBED_IMAGES = "embed_images"
    DECODER = "decoder"


class SignatureError(ValueError):
    """Raised when a session does not expose the tensors its role requires"""


def present_name_for(past_name: str) -> Optional[str]:
    """Output name carrying the next value of a recurrent state input"""
    if past_name.startswith(CONV_STATE_PREFIX):
        return "present_conv" + past_name[len(CONV_STATE_PREFIX):]
    if past_name.startswith(KV_STATE_PREFIX):
        return "present." + past_name[len(KV_STATE_PREFIX):]
    return None


def past_name_for(present_name: str) -> Optional[str]:
    """Inverse of present_name_for: rename a decoder output to the input it feeds"""
    if present_name.startswith("present_conv"):
        return CONV_STATE_PREFIX + present_name[len("present_conv"):]
    if present_name.startswith("present."):
        return KV_STATE_PREFIX + present_name[len("present."):]
    return None


@dataclass(frozen=True)
class TensorSpec:
    name: str
    shape: Tuple[Dim, ...]
    element_type: str = "tensor(float)"

    @property
    def dtype(self) -> Any:
        return _ELEMENT_TYPES.get(self.element_type, np.float32)


@dataclass(frozen=True)
class SessionSignature:
    """Named tensors a session consumes and produces"""

    inputs: Dict[str, TensorSpec]
    outputs: Tuple[str, ...]

    @property
    def input_names(self) -> List[str]:
        return list(self.inputs)

    @property
    def state_inputs(self) -> List[TensorSpec]:
        return [spec for name, spec in self.inputs.items() if present_name_for(name) is not None]

    def takes_embeddings(self) -> bool:
        return "inputs_embeds" in self.inputs

    def validate(self, role: SessionRole) -> None:
        """
        Check the tensors required by ``role`` are present

        Raises:
            SignatureError: On the first missing tensor
        """
        if not self.outputs:
            raise SignatureError(f"{role.value} session declares no outputs")

        if role is SessionRole.EMBED_TOKENS and "input_ids" not in self.inputs:
            raise SignatureError("token embedder has no 'input_ids' input")

        if role is SessionRole.EMBED_IMAGES and "pixel_values" not in self.inputs:
            raise SignatureError("image embedder has no 'pixel_values' input")

        if role is SessionRole.DECODER:
            if "logits" not in self.outputs:
                raise SignatureError("decoder has no 'logits' output")
            if "input_ids" not in self.inputs and "inputs_embeds" not in self.inputs:
                raise SignatureError("decoder takes neither 'input_ids' nor 'inputs_embeds'")
            for spec in self.state_inputs:
                present = present_name_for(spec.name)
                if present not in self.outputs:
                    raise SignatureError(f"decoder state input '{spec.name}' has no '{present}' output")


@dataclass(frozen=True)
class GpuAdapter:
    provider: str
    available_providers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GpuDevice:
    provider: str
    provider_options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionTarget:
    """Where sessions run: the GPU tier (with a device) or the CPU tier"""

    device: str
    provider: str
    provider_options: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_gpu(self) -> bool:
        return self.device == "gpu"


class ExecutionSession:
    """One execution session for one sub-network"""

    def __init__(self, role: SessionRole, raw: Any, signature: SessionSignature, target: ExecutionTarget):
        self.role = role
        self.raw = raw
        self.signature = signature
        self.target = target

    @property
    def first_output(self) -> str:
        return self.signature.outputs[0]

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        values = self.raw.run(list(self.signature.outputs), feeds)
        return dict(zip(self.signature.outputs, values))

    def release(self) -> None:
        self.raw = None


def signature_of(raw: Any) -> SessionSignature:
    inputs = {
        i.name: TensorSpec(i.name, tuple(i.shape), getattr(i, "type", "tensor(float)"))
        for i in raw.get_inputs()
    }
    outputs = tuple(o.name for o in raw.get_outputs())
    return SessionSignature(inputs=inputs, outputs=outputs)


class OnnxRuntimeBackend:
    """GPU tensor backend collaborator backed by onnxruntime"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def available_providers(self) -> List[str]:
        return list(ort.get_available_providers())

    def request_adapter(self) -> Optional[GpuAdapter]:
        """
        First configured GPU provider that this onnxruntime build offers, or None

        Raises:
            GPUUnavailableError: GPU_UNAVAILABLE when the build ships no provider besides the CPU one
        """
        available = self.available_providers()
        if not [p for p in available if p != self.config.cpu_provider]:
            raise GPUUnavailableError(
                GPUUnavailableError.GPU_UNAVAILABLE, "onnxruntime was built without GPU execution providers"
            )
        for provider in self.config.gpu_providers:
            if provider in available:
                _logger.info("gpu adapter", provider=provider, available=",".join(available))
                return GpuAdapter(provider=provider, available_providers=tuple(available))
        _logger.info("no gpu adapter", available=",".join(available))
        return None

    def request_device(self, adapter: GpuAdapter) -> GpuDevice:
        """
        Claim a device on ``adapter``

        For providers that support it a one-element tensor is allocated on the
        device so a broken driver fails here rather than mid-construction.

        Raises:
            GPUUnavailableError: GPU_REQUEST_DEVICE_FAILED
        """
        options: Dict[str, Any] = {}
        device_type = _DEVICE_TYPES.get(adapter.provider)
        if device_type is not None:
            options["device_id"] = 0
            try:
                ort.OrtValue.ortvalue_from_numpy(np.zeros(1, dtype=np.float32), device_type, 0)
            except Exception as exc:  # noqa: BLE001
                raise GPUUnavailableError(GPUUnavailableError.GPU_REQUEST_DEVICE_FAILED, str(exc)) from exc
        _logger.info("gpu device ok", provider=adapter.provider)
        return GpuDevice(provider=adapter.provider, provider_options=options)

    def gpu_target(self, device: GpuDevice) -> ExecutionTarget:
        return ExecutionTarget("gpu", device.provider, dict(device.provider_options))

    def cpu_target(self) -> ExecutionTarget:
        return ExecutionTarget("cpu", self.config.cpu_provider)

    def _session_options(self) -> "ort.SessionOptions":
        options = ort.SessionOptions()
        options.log_severity_level = self.config.log_severity_level
        if self.config.intra_op_num_threads > 0:
            options.intra_op_num_threads = self.config.intra_op_num_threads
        return options

    def create_session(self, model_path: Path, role: SessionRole, target: ExecutionTarget) -> ExecutionSession:
        """
        Construct a session on ``target`` and validate its signature

        External data shards are resolved by onnxruntime from the directory of
        ``model_path``.

        Raises:
            RuntimeError: If onnxruntime cannot build the session or silently fell back to another provider
            SignatureError: If the session lacks tensors its role requires
        """
        providers: Sequence[Any] = [(target.provider, target.provider_options)]
        raw = ort.InferenceSession(str(model_path), sess_options=self._session_options(), providers=providers)

        active = raw.get_providers()
        if not active or active[0] != target.provider:
            raise RuntimeError(
                f"{target.provider} was not assigned to {model_path.name} (active: {', '.join(active)})"
            )

        signature = signature_of(raw)
        signature.validate(role)
        return ExecutionSession(role, raw, signature, target)
