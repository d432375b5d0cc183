"""Base summarizer implementing the Template Method pattern.

All providers share the same summarization flow:
    summarize() → worker thread → _call_api()   ← only this differs per provider

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call and return the text response

Retries are not handled here. The compactor wraps summarize() in the shared
retry controller so provider throttling gets the same quota handling as every
other remote call.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

_MAX_TOKENS = 2048


class BaseSummarizer(ABC):
    MODEL: str = ""
    MAX_TOKENS: int = _MAX_TOKENS
    # Summaries should be stable across retries.
    TEMPERATURE: float = 0.0

    def __init__(self, model: str | None = None):
        self.model = model or self.MODEL

    async def summarize(self, prompt: str) -> str:
        """Return the model's summary of ``prompt``.

        SDK clients are synchronous, so the call runs in a worker thread and
        the event loop stays free for the rest of the session.
        """
        text = await asyncio.to_thread(self._call_api, prompt)
        logger.debug("%s returned %d chars of summary.", self.__class__.__name__, len(text or ""))
        return text or ""

    @abstractmethod
    def _call_api(self, prompt: str) -> str:
        """Make a single API call and return the raw text response.

        It should raise on failure; the caller decides whether to retry.
        """
