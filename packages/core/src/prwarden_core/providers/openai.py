from __future__ import annotations

try:
    from openai import OpenAI as _OpenAI
except ImportError:
    _OpenAI = None  # type: ignore[assignment,misc]

from prwarden_core.providers.base import BaseSummarizer


class OpenAISummarizer(BaseSummarizer):
    MODEL = "gpt-4o-mini"

    def __init__(self, api_key: str, model: str | None = None):
        if _OpenAI is None:
            raise ImportError(
                "The 'openai' package is required for this provider. " "Install it with: pip install 'prwarden[openai]'"
            )
        super().__init__(model)
        self.client = _OpenAI(api_key=api_key)

    def _call_api(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
        )
        return response.choices[0].message.content or ""
