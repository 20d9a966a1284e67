"""Execution backend, loader, tokenizer, vision preprocessing and decode loop."""

from .backend import ExecutionSession, OnnxRuntimeBackend, SessionRole, SessionSignature
from .generator import GenerationStats, GenerationStream, InferenceEngine, StreamCallbacks
from .loader import BackendLoader, LoadAttempt, LoadState, ModelSessions
from .tokenizer import ChatMessage, TokenizerAdapter

__all__ = [
    "BackendLoader",
    "ChatMessage",
    "ExecutionSession",
    "GenerationStats",
    "GenerationStream",
    "InferenceEngine",
    "LoadAttempt",
    "LoadState",
    "ModelSessions",
    "OnnxRuntimeBackend",
    "SessionRole",
    "SessionSignature",
    "StreamCallbacks",
    "TokenizerAdapter",
]
