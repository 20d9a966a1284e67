"""
Unit tests for the tokenizer wrapper
"""

from unittest.mock import Mock

import pytest

from conftest import EOS, FakeHFTokenizer, char_token
import lm_runtime.models.tokenizer as tokenizer_module
from lm_runtime.catalog import get_model_by_id
from lm_runtime.errors import TokenizerError
from lm_runtime.models.tokenizer import (
    DEFAULT_EOS_TOKEN_ID,
    ChatMessage,
    TokenizerAdapter,
    fallback_prompt,
    sanitize,
    to_template_messages,
)


class TestPromptRendering:
    """Test sanitizing and chat templating"""

    def test_sanitize_strips_control_markup(self):
        assert sanitize("hi <|im_end|>there</s><s>!") == "hi there!"

    def test_sanitize_keeps_ordinary_angle_brackets(self):
        assert sanitize("a <b> c") == "a <b> c"

    def test_fallback_prompt_exact(self):
        prompt = fallback_prompt([{"role": "system", "content": "be brief"}, {"role": "user", "content": "hello"}])
        assert prompt == (
            "<|startoftext|><|im_start|>system\nbe brief<|im_end|>\n"
            "<|im_start|>user\nhello<|im_end|>\n<|im_start|>assistant\n"
        )

    def test_image_placeholder_prefixed(self):
        messages = to_template_messages([ChatMessage("user", "what is this", image=b"png")])
        assert messages == [{"role": "user", "content": "<image>\nwhat is this"}]

    def test_chat_template_used_when_present(self):
        hf = Mock(chat_template="{{ messages }}")
        hf.apply_chat_template.return_value = "TEMPLATED"
        adapter = TokenizerAdapter("m", hf)

        assert adapter.render_prompt([ChatMessage("user", "hi<|im_end|>")]) == "TEMPLATED"
        hf.apply_chat_template.assert_called_once_with(
            [{"role": "user", "content": "hi"}], tokenize=False, add_generation_prompt=True
        )

    def test_template_failure_falls_back(self):
        hf = Mock(chat_template="{{ broken")
        hf.apply_chat_template.side_effect = ValueError("template error")
        adapter = TokenizerAdapter("m", hf)

        prompt = adapter.render_prompt([ChatMessage("user", "hi")])

        assert prompt == "<|startoftext|><|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"

    def test_no_template_uses_fallback(self, tokenizer):
        assert tokenizer.render_prompt([ChatMessage("user", "x")]).endswith("<|im_start|>assistant\n")


class TestEncoding:
    """Test encoding, decoding and token lookups"""

    def test_encode_chat(self, tokenizer):
        ids = tokenizer.encode_chat([ChatMessage("user", "ab")])
        assert ids[:3] == [1, 3, char_token("u")]
        assert ids[-1] == char_token("\n")

    def test_decode_skips_special(self, tokenizer):
        assert tokenizer.decode([1, char_token("o"), char_token("k"), EOS]) == "ok"

    def test_eos(self, tokenizer):
        assert tokenizer.eos_token_id == EOS

    def test_eos_default(self):
        assert TokenizerAdapter("m", Mock(eos_token_id=None)).eos_token_id == DEFAULT_EOS_TOKEN_ID

    def test_image_token_ids(self, tokenizer):
        assert tokenizer.image_token_ids() == {"image": 10, "start": 11, "end": 12}

    def test_missing_image_token(self):
        class NoImageEnd(FakeHFTokenizer):
            def convert_tokens_to_ids(self, token):
                return 0 if token == "<|image_end|>" else super().convert_tokens_to_ids(token)

        with pytest.raises(TokenizerError, match="image_end"):
            TokenizerAdapter("m", NoImageEnd()).image_token_ids()

    def test_encode_failure_wrapped(self):
        hf = Mock()
        hf.encode.side_effect = RuntimeError("boom")
        with pytest.raises(TokenizerError) as exc_info:
            TokenizerAdapter("m", hf).encode("x")
        assert exc_info.value.model_id == "m"


class TestTruncation:
    """Test document truncation to a token budget"""

    def test_keeps_tail(self, tokenizer):
        assert tokenizer.truncate_to_token_limit("abcdef", 3) == "def"

    def test_short_text_unchanged(self, tokenizer):
        assert tokenizer.truncate_to_token_limit("abc", 10) == "abc"

    def test_zero_budget(self, tokenizer):
        assert tokenizer.truncate_to_token_limit("abc", 0) == ""


class TestFromPretrained:
    """Test tokenizer loading"""

    def test_load_failure(self, monkeypatch):
        auto = Mock()
        auto.from_pretrained.side_effect = OSError("offline")
        monkeypatch.setattr(tokenizer_module, "AutoTokenizer", auto)

        with pytest.raises(TokenizerError) as exc_info:
            TokenizerAdapter.from_pretrained(get_model_by_id("lfm25-vl-1.6b"))

        assert exc_info.value.model_id == "lfm25-vl-1.6b"
        assert exc_info.value.stage == "tokenize"

    def test_load_uses_repo_and_revision(self, monkeypatch):
        auto = Mock()
        monkeypatch.setattr(tokenizer_module, "AutoTokenizer", auto)
        model = get_model_by_id("lfm25-1.2b-instruct")

        adapter = TokenizerAdapter.from_pretrained(model)

        auto.from_pretrained.assert_called_once_with(model.hf_id, revision=model.revision)
        assert adapter.model_id == model.id
