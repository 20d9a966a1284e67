"""
Tokenizer wrapper - Prompt building, encoding and decoding

Responsibilities:
- Sanitize control-token markup out of message text
- Render chat messages through the tokenizer's template (manual fallback when unavailable)
- Encode/decode token ids and look up the image marker tokens
- Truncate documents to a token budget
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from transformers import AutoTokenizer

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.catalog import ModelDefinition
from lm_runtime.errors import TokenizerError

_logger = BenchmarkAwareLogger("tokenizer")

IMAGE_TOKEN = "<image>"
IMAGE_START_TOKEN = "<|image_start|>"
IMAGE_END_TOKEN = "<|image_end|>"
DEFAULT_EOS_TOKEN_ID = 2

_CONTROL_TOKEN = re.compile(r"<\|[^>]+\|>")
_SENTENCE_TOKEN = re.compile(r"</?s>")

ImageSource = Union[bytes, str, Any]


@dataclass
class ChatMessage:
    """One chat turn; ``image`` is raw bytes, a data URL / base64 string, a path or a PIL image"""

    role: str
    content: str
    image: Optional[ImageSource] = None


def sanitize(text: str) -> str:
    """Strip literal control-token markup so user text cannot forge special tokens"""
    return _SENTENCE_TOKEN.sub("", _CONTROL_TOKEN.sub("", text))


def to_template_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    rendered = []
    for message in messages:
        content = sanitize(message.content)
        if message.image is not None:
            content = f"{IMAGE_TOKEN}\n{content}"
        rendered.append({"role": message.role, "content": content})
    return rendered


def fallback_prompt(messages: Sequence[Dict[str, str]]) -> str:
    """ChatML-style prompt used when the tokenizer has no usable chat template"""
    turns = "\n".join(f"<|im_start|>{m['role']}\n{m['content']}<|im_end|>" for m in messages)
    return "<|startoftext|>" + turns + "\n<|im_start|>assistant\n"


class TokenizerAdapter:
    """Wraps a transformers tokenizer for one model"""

    def __init__(self, model_id: str, tokenizer: Any):
        self.model_id = model_id
        self.tokenizer = tokenizer

    @classmethod
    def from_pretrained(cls, model: ModelDefinition) -> "TokenizerAdapter":
        """
        Load the tokenizer published alongside ``model``

        Raises:
            TokenizerError: If the tokenizer cannot be loaded
        """
        try:
            tokenizer = AutoTokenizer.from_pretrained(model.hf_id, revision=model.revision)
        except Exception as exc:  # noqa: BLE001
            raise TokenizerError(model.id, f"failed to load tokenizer from {model.hf_id}: {exc}") from exc
        return cls(model.id, tokenizer)

    @property
    def eos_token_id(self) -> int:
        eos = getattr(self.tokenizer, "eos_token_id", None)
        return DEFAULT_EOS_TOKEN_ID if eos is None else int(eos)

    def token_id(self, token: str) -> Optional[int]:
        """Id of a special token, or None when the vocabulary lacks it"""
        token_id = self.tokenizer.convert_tokens_to_ids(token)
        if token_id is None:
            return None
        unk = getattr(self.tokenizer, "unk_token_id", None)
        if unk is not None and token_id == unk and token != getattr(self.tokenizer, "unk_token", None):
            return None
        return int(token_id)

    def image_token_ids(self) -> Dict[str, int]:
        """
        Ids of the image placeholder and its start/end markers

        Raises:
            TokenizerError: If any of them is missing from the vocabulary
        """
        ids = {}
        for name, token in (("image", IMAGE_TOKEN), ("start", IMAGE_START_TOKEN), ("end", IMAGE_END_TOKEN)):
            token_id = self.token_id(token)
            if token_id is None:
                raise TokenizerError(self.model_id, f"vocabulary has no {token} token")
            ids[name] = token_id
        return ids

    def render_prompt(self, messages: Sequence[ChatMessage]) -> str:
        template_messages = to_template_messages(messages)
        if getattr(self.tokenizer, "chat_template", None):
            try:
                return self.tokenizer.apply_chat_template(
                    template_messages, tokenize=False, add_generation_prompt=True
                )
            except Exception as exc:  # noqa: BLE001
                _logger.warning("apply_chat_template failed, using manual template", error=exc)
        return fallback_prompt(template_messages)

    def encode(self, text: str) -> List[int]:
        try:
            return list(self.tokenizer.encode(text, add_special_tokens=False))
        except Exception as exc:  # noqa: BLE001
            raise TokenizerError(self.model_id, f"encode failed: {exc}") from exc

    def encode_chat(self, messages: Sequence[ChatMessage]) -> List[int]:
        """Render ``messages`` into the prompt token ids, ending with the assistant turn header"""
        return self.encode(self.render_prompt(messages))

    def decode(self, ids: Sequence[int]) -> str:
        try:
            return self.tokenizer.decode(list(ids), skip_special_tokens=True)
        except Exception as exc:  # noqa: BLE001
            raise TokenizerError(self.model_id, f"decode failed: {exc}") from exc

    def truncate_to_token_limit(self, text: str, max_tokens: int) -> str:
        """Keep the last ``max_tokens`` tokens of ``text``"""
        if max_tokens <= 0:
            return ""
        ids = self.encode(text)
        if len(ids) <= max_tokens:
            return text
        return self.decode(ids[-max_tokens:])
