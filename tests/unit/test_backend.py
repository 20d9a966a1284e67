"""
Unit tests for the onnxruntime execution backend
"""

from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import decoder_signature
import lm_runtime.models.backend as backend_module
from lm_runtime.errors import GPUUnavailableError
from lm_runtime.models.backend import (
    ExecutionSession,
    ExecutionTarget,
    GpuAdapter,
    OnnxRuntimeBackend,
    SessionRole,
    SessionSignature,
    SignatureError,
    TensorSpec,
    past_name_for,
    present_name_for,
    signature_of,
)


def io_spec(name, shape=("batch", "seq"), type_="tensor(float)"):
    return SimpleNamespace(name=name, shape=list(shape), type=type_)


class FakeInferenceSession:
    """Stands in for ort.InferenceSession; reports the provider it was asked for"""

    active_provider = None
    inputs = [io_spec("input_ids", type_="tensor(int64)")]
    outputs = [io_spec("logits")]

    def __init__(self, path, sess_options=None, providers=None):
        self.path = path
        self.providers = providers

    def get_providers(self):
        return [self.active_provider or self.providers[0][0]]

    def get_inputs(self):
        return self.inputs

    def get_outputs(self):
        return self.outputs


class TestStateNames:
    """Test past/present state name mapping"""

    @pytest.mark.parametrize(
        "past,present",
        [
            ("past_conv.0", "present_conv.0"),
            ("past_key_values.3.key", "present.3.key"),
            ("past_key_values.3.value", "present.3.value"),
        ],
    )
    def test_round_trip(self, past, present):
        assert present_name_for(past) == present
        assert past_name_for(present) == past

    def test_non_state_names(self):
        assert present_name_for("input_ids") is None
        assert past_name_for("logits") is None


class TestSignature:
    """Test role validation"""

    def test_decoder_signature_valid(self):
        signature = decoder_signature(takes_embeddings=True)
        signature.validate(SessionRole.DECODER)

        assert signature.takes_embeddings()
        assert [s.name for s in signature.state_inputs] == [
            "past_conv.0",
            "past_key_values.0.key",
            "past_key_values.0.value",
        ]

    def test_decoder_missing_present_output(self):
        signature = decoder_signature(takes_embeddings=False)
        broken = SessionSignature(signature.inputs, tuple(o for o in signature.outputs if o != "present.0.value"))
        with pytest.raises(SignatureError, match="present.0.value"):
            broken.validate(SessionRole.DECODER)

    def test_decoder_without_logits(self):
        signature = SessionSignature({"input_ids": TensorSpec("input_ids", ())}, ("hidden",))
        with pytest.raises(SignatureError, match="logits"):
            signature.validate(SessionRole.DECODER)

    def test_decoder_without_input(self):
        signature = SessionSignature({"attention_mask": TensorSpec("attention_mask", ())}, ("logits",))
        with pytest.raises(SignatureError):
            signature.validate(SessionRole.DECODER)

    def test_embedders(self):
        with pytest.raises(SignatureError, match="input_ids"):
            SessionSignature({}, ("inputs_embeds",)).validate(SessionRole.EMBED_TOKENS)
        with pytest.raises(SignatureError, match="pixel_values"):
            SessionSignature({}, ("image_features",)).validate(SessionRole.EMBED_IMAGES)

    def test_no_outputs(self):
        with pytest.raises(SignatureError):
            SessionSignature({"input_ids": TensorSpec("input_ids", ())}, ()).validate(SessionRole.EMBED_TOKENS)

    def test_dtype_mapping(self):
        assert TensorSpec("x", (), "tensor(float16)").dtype == np.float16
        assert TensorSpec("x", (), "tensor(int64)").dtype == np.int64
        assert TensorSpec("x", (), "tensor(bfloat16)").dtype == np.float32

    def test_signature_of(self):
        raw = SimpleNamespace(
            get_inputs=lambda: [io_spec("input_ids", ("batch", "seq"), "tensor(int64)")],
            get_outputs=lambda: [io_spec("inputs_embeds")],
        )
        signature = signature_of(raw)

        assert signature.input_names == ["input_ids"]
        assert signature.inputs["input_ids"].shape == ("batch", "seq")
        assert signature.outputs == ("inputs_embeds",)


class TestExecutionSession:
    def test_run_maps_outputs_by_name(self):
        raw = SimpleNamespace(run=lambda names, feeds: [np.ones(1), np.zeros(1)])
        signature = SessionSignature({"input_ids": TensorSpec("input_ids", ())}, ("logits", "present_conv.0"))
        session = ExecutionSession(SessionRole.DECODER, raw, signature, ExecutionTarget("cpu", "CPUExecutionProvider"))

        outputs = session.run({"input_ids": np.zeros((1, 1), dtype=np.int64)})

        assert outputs["logits"].tolist() == [1.0]
        assert session.first_output == "logits"

        session.release()
        assert session.raw is None


class TestPreflight:
    """Test GPU adapter and device probing"""

    def test_cpu_only_build(self, config, monkeypatch):
        monkeypatch.setattr(backend_module.ort, "get_available_providers", lambda: ["CPUExecutionProvider"])

        with pytest.raises(GPUUnavailableError) as exc_info:
            OnnxRuntimeBackend(config).request_adapter()

        assert exc_info.value.code == GPUUnavailableError.GPU_UNAVAILABLE

    def test_no_configured_provider(self, config, monkeypatch):
        monkeypatch.setattr(
            backend_module.ort, "get_available_providers", lambda: ["AzureExecutionProvider", "CPUExecutionProvider"]
        )
        assert OnnxRuntimeBackend(config).request_adapter() is None

    def test_first_configured_provider_wins(self, config, monkeypatch):
        monkeypatch.setattr(
            backend_module.ort,
            "get_available_providers",
            lambda: ["DmlExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"],
        )
        adapter = OnnxRuntimeBackend(config).request_adapter()
        assert adapter.provider == "CUDAExecutionProvider"

    def test_device_allocation_failure(self, config, monkeypatch):
        def fail(*args, **kwargs):
            raise RuntimeError("CUDA driver version is insufficient")

        monkeypatch.setattr(backend_module.ort.OrtValue, "ortvalue_from_numpy", fail)

        with pytest.raises(GPUUnavailableError) as exc_info:
            OnnxRuntimeBackend(config).request_device(GpuAdapter("CUDAExecutionProvider"))

        assert exc_info.value.code == GPUUnavailableError.GPU_REQUEST_DEVICE_FAILED

    def test_device_without_probe(self, config):
        device = OnnxRuntimeBackend(config).request_device(GpuAdapter("CoreMLExecutionProvider"))
        assert device.provider == "CoreMLExecutionProvider"
        assert device.provider_options == {}


class TestCreateSession:
    """Test session construction"""

    def test_cpu_session(self, config, monkeypatch):
        monkeypatch.setattr(backend_module.ort, "InferenceSession", FakeInferenceSession)
        backend = OnnxRuntimeBackend(config)

        session = backend.create_session(Path("/models/model_q4.onnx"), SessionRole.EMBED_TOKENS, backend.cpu_target())

        assert session.role is SessionRole.EMBED_TOKENS
        assert session.signature.outputs == ("logits",)
        assert not session.target.is_gpu

    def test_silent_provider_fallback_rejected(self, config, monkeypatch):
        class CpuOnly(FakeInferenceSession):
            active_provider = "CPUExecutionProvider"

        monkeypatch.setattr(backend_module.ort, "InferenceSession", CpuOnly)
        backend = OnnxRuntimeBackend(config)
        target = ExecutionTarget("gpu", "CUDAExecutionProvider", {"device_id": 0})

        with pytest.raises(RuntimeError, match="CUDAExecutionProvider"):
            backend.create_session(Path("/models/model_q4.onnx"), SessionRole.DECODER, target)

    def test_signature_validated(self, config, monkeypatch):
        monkeypatch.setattr(backend_module.ort, "InferenceSession", FakeInferenceSession)
        backend = OnnxRuntimeBackend(config)

        with pytest.raises(SignatureError):
            backend.create_session(Path("/models/embed.onnx"), SessionRole.EMBED_IMAGES, backend.cpu_target())
