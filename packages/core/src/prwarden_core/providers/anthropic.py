from __future__ import annotations

from prwarden_core.providers.base import BaseSummarizer


class AnthropicSummarizer(BaseSummarizer):
    MODEL = "claude-3-5-haiku-latest"

    def __init__(self, api_key: str, model: str | None = None):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'prwarden[anthropic]'"
            )
        super().__init__(model)
        self.client = Anthropic(api_key=api_key)

    def _call_api(self, prompt: str) -> str:
        # Imported inside the method because the anthropic package is optional;
        # __init__ already validated it is installed before we reach here.
        from anthropic.types import TextBlock

        response = self.client.messages.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
        )
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        return "".join(text_blocks).strip()
