"""Context compaction for long agent conversations.

Before each model turn the session passes its transcript through
ContextCompactor.transform(). Below 80% of the context window the transcript is
returned untouched. Above it, the newest messages that fit in 30% of the window
are kept and everything older is replaced by two synthesized messages: a
state summary (files touched, comments posted) and a prose summary of the
pruned turns.

Token counts are estimated at four characters per token. It is an occupancy
signal, not a tokenizer.
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any, Sequence

from prwarden_core.models import ContextState, ConversationMessage, SessionCounters
from prwarden_core.retry import with_retries

if TYPE_CHECKING:
    from prwarden_core.providers.base import BaseSummarizer

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TRIGGER_RATIO = 0.8
KEEP_RATIO = 0.3
MAX_RENDERED_CHARS = 2000
DETERMINISTIC_TAIL = 5
FILE_LIST_LIMIT = 8
PLACEHOLDER_SUMMARY = "Earlier context was compacted to fit within model limits."


def _content_chars(content: Any) -> int:
    if isinstance(content, str):
        return len(content)
    if isinstance(content, list):
        chars = 0
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                chars += len(part["text"])
            elif isinstance(part, dict) and isinstance(part.get("thinking"), str):
                chars += len(part["thinking"])
            else:
                chars += len(json.dumps(part if part is not None else "", default=str))
        return chars
    if content:
        return len(json.dumps(content, default=str))
    return 0


def estimate_tokens(messages: Sequence[ConversationMessage]) -> int:
    chars = sum(_content_chars(message.content) for message in messages)
    return math.ceil(chars / CHARS_PER_TOKEN)


def prune_messages(
    messages: Sequence[ConversationMessage], token_budget: int
) -> tuple[list[ConversationMessage], list[ConversationMessage]]:
    """Split into (kept, pruned): the newest suffix fitting ``token_budget`` and the rest."""
    tokens = 0
    cut = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        message_tokens = estimate_tokens([messages[index]])
        if tokens + message_tokens > token_budget:
            break
        tokens += message_tokens
        cut = index
    return list(messages[cut:]), list(messages[:cut])


def message_text(message: ConversationMessage, include_thinking: bool = True) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                pieces.append(part["text"])
            elif include_thinking and isinstance(part.get("thinking"), str):
                pieces.append(part["thinking"])
        return "".join(pieces)
    return json.dumps(content, default=str) if content else ""


def build_compaction_prompt(messages: Sequence[ConversationMessage]) -> str:
    rendered = []
    for message in messages:
        text = message_text(message)
        if len(text) > MAX_RENDERED_CHARS:
            text = text[:MAX_RENDERED_CHARS] + "…"
        rendered.append(f"[{message.role or 'unknown'}] {text}")
    return (
        "Summarize the following conversation context for a code review agent.\n"
        "Focus on: key findings, decisions, outstanding issues, and files discussed.\n"
        "Be concise and bullet-pointed.\n\n" + "\n".join(rendered)
    )


def build_deterministic_summary(messages: Sequence[ConversationMessage]) -> str:
    texts = [message_text(m, include_thinking=False).strip() for m in messages if m.role == "assistant"]
    texts = [t for t in texts if t][-DETERMINISTIC_TAIL:]
    if not texts:
        return PLACEHOLDER_SUMMARY
    return "Recent assistant outputs:\n- " + "\n- ".join(texts)


def format_set(values: set[str], limit: int = FILE_LIST_LIMIT) -> str:
    if not values:
        return "none"
    ordered = sorted(values)
    if len(ordered) <= limit:
        return ", ".join(ordered)
    return f"{', '.join(ordered[:limit])} (+{len(ordered) - limit} more)"


def build_context_summary_message(
    context_state: ContextState, pruned_count: int, counters: SessionCounters
) -> ConversationMessage:
    lines = [
        f"[{pruned_count} earlier messages pruned for context limits]",
        f"Files read: {format_set(context_state.files_read)}",
        f"Files with diffs: {format_set(context_state.files_diffed)}",
        f"Partial reads: {format_set(context_state.partial_reads)}",
        f"Truncated reads: {format_set(context_state.truncated_reads)}",
        f"Inline comments posted: {counters.inline_comments}",
        f"Suggestions posted: {counters.suggestions}",
        f"Summary posted: {'yes' if counters.summary_posted else 'no'}",
    ]
    return ConversationMessage(role="user", content="Context summary:\n" + "\n".join(f"- {line}" for line in lines))


class ContextCompactor:
    """Keeps a session transcript inside the model's context window."""

    def __init__(
        self,
        context_window: int,
        context_state: ContextState,
        counters: SessionCounters,
        summarizer: BaseSummarizer | None = None,
        *,
        trigger_ratio: float = TRIGGER_RATIO,
        keep_ratio: float = KEEP_RATIO,
        attempts: int = 3,
        retry_kwargs: dict[str, Any] | None = None,
    ):
        self.context_window = context_window
        self.context_state = context_state
        self.counters = counters
        self.summarizer = summarizer
        self.trigger_ratio = trigger_ratio
        self.keep_ratio = keep_ratio
        self.attempts = attempts
        self.retry_kwargs = retry_kwargs or {}

    async def transform(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        threshold = int(self.context_window * self.trigger_ratio)
        estimated = estimate_tokens(messages)
        if estimated < threshold:
            return messages

        kept, pruned = prune_messages(messages, int(self.context_window * self.keep_ratio))
        if not pruned:
            return kept

        logger.info(
            "Compacting context: ~%d tokens >= %d; pruning %d message(s), keeping %d.",
            estimated,
            threshold,
            len(pruned),
            len(kept),
        )
        summary = await self._summarize(pruned)
        return [
            build_context_summary_message(self.context_state, len(pruned), self.counters),
            ConversationMessage(role="user", content=f"Compacted context summary:\n{summary}"),
            *kept,
        ]

    async def _summarize(self, pruned: list[ConversationMessage]) -> str:
        if self.summarizer is None:
            return build_deterministic_summary(pruned)
        prompt = build_compaction_prompt(pruned)
        try:
            text = await with_retries(
                lambda: self.summarizer.summarize(prompt),
                self.attempts,
                description="compaction summary",
                **self.retry_kwargs,
            )
        except Exception as e:
            logger.warning("Compaction summary failed; using deterministic summary: %s", e)
            return build_deterministic_summary(pruned)
        text = (text or "").strip()
        if not text or _is_error_payload(text):
            return build_deterministic_summary(pruned)
        return text


def _is_error_payload(text: str) -> bool:
    """True when the model handed back a bare error object instead of a summary."""
    if not text.startswith("{"):
        return False
    try:
        payload = json.loads(text)
    except ValueError:
        return False
    return isinstance(payload, dict) and "error" in payload
