"""Tests for compaction summarizers.

The shared flow (worker thread, empty-response handling) lives in
BaseSummarizer and is tested once via a stub. Provider-specific tests cover
only the SDK client setup and _call_api.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from prwarden_core.providers.base import BaseSummarizer
from prwarden_core.providers.openai import OpenAISummarizer


class _StubSummarizer(BaseSummarizer):
    MODEL = "stub-model"

    def __init__(self, response="- summary", model=None):
        super().__init__(model)
        self.response = response
        self.prompts = []

    def _call_api(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.response


class TestBaseSummarizer:
    @pytest.mark.asyncio
    async def test_summarize_returns_api_text(self):
        summarizer = _StubSummarizer()
        assert await summarizer.summarize("prompt") == "- summary"
        assert summarizer.prompts == ["prompt"]

    @pytest.mark.asyncio
    async def test_none_response_becomes_empty_string(self):
        assert await _StubSummarizer(response=None).summarize("prompt") == ""

    @pytest.mark.asyncio
    async def test_errors_propagate_to_caller(self):
        class _Failing(BaseSummarizer):
            def _call_api(self, prompt: str) -> str:
                raise RuntimeError("overloaded")

        with pytest.raises(RuntimeError, match="overloaded"):
            await _Failing().summarize("prompt")

    def test_model_override(self):
        assert _StubSummarizer().model == "stub-model"
        assert _StubSummarizer(model="other").model == "other"

    def test_temperature_is_deterministic(self):
        assert BaseSummarizer.TEMPERATURE == 0.0


class TestAnthropicSummarizer:
    def test_raises_import_error_without_sdk(self):
        from prwarden_core.providers.anthropic import AnthropicSummarizer

        with patch.dict("sys.modules", {"anthropic": None}):
            with pytest.raises(ImportError, match="prwarden\\[anthropic\\]"):
                AnthropicSummarizer(api_key="key")

    def test_model_is_claude(self):
        from prwarden_core.providers.anthropic import AnthropicSummarizer

        assert "claude" in AnthropicSummarizer.MODEL


class TestOpenAISummarizer:
    def test_raises_import_error_without_sdk(self):
        import prwarden_core.providers.openai as openai_mod

        real_openai = openai_mod._OpenAI
        openai_mod._OpenAI = None
        try:
            with pytest.raises(ImportError):
                OpenAISummarizer(api_key="key")
        finally:
            openai_mod._OpenAI = real_openai

    def test_model_is_gpt(self):
        assert "gpt" in OpenAISummarizer.MODEL

    def test_call_api_reads_first_choice(self, mocker):
        client_cls = mocker.patch("prwarden_core.providers.openai._OpenAI")
        client = client_cls.return_value
        client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="- compacted"))]
        )
        summarizer = OpenAISummarizer(api_key="key")
        assert summarizer._call_api("prompt") == "- compacted"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.0
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_call_api_handles_null_content(self, mocker):
        client_cls = mocker.patch("prwarden_core.providers.openai._OpenAI")
        client_cls.return_value = MagicMock()
        client_cls.return_value.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))]
        )
        assert OpenAISummarizer(api_key="key")._call_api("prompt") == ""
