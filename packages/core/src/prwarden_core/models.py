"""Strict entities shared by every reconciliation component.

Provider payloads (PyGithub objects, raw REST dicts) are normalized into these
types at the gateway boundary, so nothing downstream branches on which fields a
provider happened to send.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

Side = Literal["LEFT", "RIGHT"]
SIDES: tuple[str, ...] = ("LEFT", "RIGHT")

# Sort key for comments/threads whose provider timestamp was missing.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChangedFile:
    filename: str
    status: str = "modified"  # added | modified | removed | renamed | copied | changed
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    patch: Optional[str] = None  # None for binary or too-large diffs
    previous_filename: Optional[str] = None


@dataclass(frozen=True)
class ExistingComment:
    """A comment already on the PR when the session started."""

    id: int
    author: str
    body: str
    url: str
    type: Literal["issue", "review"]
    path: Optional[str] = None
    line: Optional[int] = None
    side: Optional[Side] = None
    in_reply_to_id: Optional[int] = None
    updated_at: datetime = EPOCH

    @property
    def root_id(self) -> int:
        return self.in_reply_to_id if self.in_reply_to_id is not None else self.id


@dataclass(frozen=True)
class ReviewThread:
    id: int
    path: str
    line: Optional[int]
    side: Optional[Side]
    is_outdated: bool = False
    resolved: bool = False
    last_updated_at: datetime = EPOCH
    last_actor: str = "unknown"
    root_comment_id: Optional[int] = None
    url: str = ""


MessageContent = Union[str, list[dict[str, Any]]]


@dataclass
class ConversationMessage:
    role: str
    content: MessageContent
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


@dataclass
class ContextState:
    """Files the agent has looked at during the session."""

    files_read: set[str] = field(default_factory=set)
    files_diffed: set[str] = field(default_factory=set)
    truncated_reads: set[str] = field(default_factory=set)
    partial_reads: set[str] = field(default_factory=set)

    def record_read(self, path: str, partial: bool = False) -> None:
        self.files_read.add(path)
        if partial:
            self.partial_reads.add(path)

    def record_diff(self, path: str) -> None:
        self.files_diffed.add(path)

    def record_truncated(self, path: str) -> None:
        self.truncated_reads.add(path)


@dataclass
class Billing:
    input: int = 0
    output: int = 0
    total: int = 0
    cost: float = 0.0

    def add(self, input_tokens: int, output_tokens: int, cost: float = 0.0) -> None:
        self.input += input_tokens
        self.output += output_tokens
        self.total += input_tokens + output_tokens
        self.cost += cost


@dataclass
class SessionCounters:
    """Running totals for one session.

    Written by the reconciler when it posts, read by the compactor when it
    writes the state-summary message.
    """

    inline_comments: int = 0
    suggestions: int = 0
    summary_posted: bool = False
    billing: Billing = field(default_factory=Billing)
