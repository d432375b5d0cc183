"""Thread/comment reconciliation.

Maps an intended comment (path, line, side, body) onto an existing review
thread or a new one, and guarantees each semantically identical comment is
delivered at most once: once per session, and never when the PR already has
it from an earlier run.

All bookkeeping lives in a ReconciliationState owned by the session and built
from the listings fetched at session start. The reconciler assumes calls for a
session are sequential; the summary guard flips its flag before awaiting the
network call so a concurrent "post summary" cannot slip through.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol

from prwarden_core.errors import ValidationError
from prwarden_core.models import SIDES, EPOCH, ExistingComment, ReviewThread, SessionCounters
from prwarden_core.retry import with_retries
from prwarden_core.summary import ensure_summary_footer
from prwarden_core.threads import build_threads_from_review_comments

logger = logging.getLogger(__name__)

DEFAULT_SIDE = "RIGHT"

LocationKey = tuple[str, int, str]


class CommentGateway(Protocol):
    """The comment-creating calls the reconciler issues. Each returns the new comment id."""

    async def create_review_comment(self, path: str, line: int, side: str, body: str) -> int: ...

    async def create_reply(self, comment_id: int, body: str) -> int: ...

    async def create_issue_comment(self, body: str) -> int: ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PostOutcome(str, Enum):
    POSTED = "posted"
    DUPLICATE = "duplicate"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ThreadCandidate:
    thread_id: int
    side: str | None
    resolved: bool
    outdated: bool
    last_updated_at: datetime
    last_actor: str
    root_comment_id: int | None

    @classmethod
    def from_thread(cls, thread: ReviewThread) -> ThreadCandidate:
        return cls(
            thread_id=thread.id,
            side=thread.side,
            resolved=thread.resolved,
            outdated=thread.is_outdated,
            last_updated_at=thread.last_updated_at,
            last_actor=thread.last_actor,
            root_comment_id=thread.root_comment_id,
        )


@dataclass(frozen=True)
class PostResult:
    outcome: PostOutcome
    message: str
    comment_id: int | None = None
    reply_to: int | None = None
    candidates: tuple[ThreadCandidate, ...] = ()

    @property
    def posted(self) -> bool:
        return self.outcome is PostOutcome.POSTED

    def to_text(self) -> str:
        """Render for a tool response shown to the agent."""
        if self.outcome is not PostOutcome.AMBIGUOUS:
            return self.message
        lines = [self.message]
        for c in self.candidates:
            flags = [flag for flag, on in (("resolved", c.resolved), ("outdated", c.outdated)) if on]
            lines.append(
                f"- thread {c.thread_id} side={c.side or 'unknown'}"
                f"{' (' + ', '.join(flags) + ')' if flags else ''}"
                f" last activity {c.last_updated_at.isoformat()} by {c.last_actor}"
            )
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


def normalize_body(body: str) -> str:
    return " ".join(body.split()).lower()


def dedup_key(path: str, line: int, body: str) -> str:
    raw = f"{path}\x00{line}\x00{normalize_body(body)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class ReconciliationState:
    """Everything the reconciler knows about one session. Never shared between sessions."""

    comments: list[ExistingComment] = field(default_factory=list)
    threads: list[ReviewThread] = field(default_factory=list)
    threads_from_api: bool = False
    counters: SessionCounters = field(default_factory=SessionCounters)
    location_index: dict[LocationKey, list[ExistingComment]] = field(default_factory=dict)
    activity_index: dict[int, datetime] = field(default_factory=dict)
    existing_keys: set[str] = field(default_factory=set)
    posted_keys: set[str] = field(default_factory=set)
    comments_by_id: dict[int, ExistingComment] = field(default_factory=dict)

    @classmethod
    def from_listings(
        cls,
        comments: Iterable[ExistingComment],
        threads: Iterable[ReviewThread] = (),
        threads_from_api: bool = False,
        counters: SessionCounters | None = None,
    ) -> ReconciliationState:
        state = cls(
            comments=list(comments),
            threads=list(threads),
            threads_from_api=threads_from_api,
            counters=counters if counters is not None else SessionCounters(),
        )
        state._build_indices()
        return state

    def _build_indices(self) -> None:
        locations: dict[LocationKey, list[ExistingComment]] = defaultdict(list)
        for comment in self.comments:
            if comment.type != "review":
                continue
            self.comments_by_id[comment.id] = comment
            if not comment.path or not comment.line:
                continue
            self.existing_keys.add(dedup_key(comment.path, comment.line, comment.body))
            root_id = comment.root_id
            if comment.updated_at > self.activity_index.get(root_id, EPOCH):
                self.activity_index[root_id] = comment.updated_at
            if comment.in_reply_to_id is None:
                locations[(comment.path, comment.line, comment.side or DEFAULT_SIDE)].append(comment)
        self.location_index = dict(locations)

    def is_duplicate(self, key: str) -> bool:
        return key in self.posted_keys or key in self.existing_keys

    def thread_by_id(self, thread_id: int) -> ReviewThread | None:
        return next((t for t in self.threads if t.id == thread_id), None)

    def threads_at(self, path: str, line: int) -> list[ReviewThread]:
        return [t for t in self.threads if t.path == path and t.line == line]

    def root_sides(self, path: str, line: int) -> tuple[str, ...]:
        return tuple(s for s in SIDES if self.location_index.get((path, line, s)))

    def synthesized_threads_at(self, path: str, line: int) -> list[ReviewThread]:
        """Threads built from the flat review comments rooted at the location."""
        roots = {root.id for s in SIDES for root in self.location_index.get((path, line, s), [])}
        return [t for t in build_threads_from_review_comments(self.comments) if t.id in roots]

    def latest_root(self, path: str, line: int, side: str) -> ExistingComment | None:
        """Root comment on one side of the location with the most recent activity across its replies."""
        roots = self.location_index.get((path, line, side), [])
        if not roots:
            return None
        return max(roots, key=lambda root: self.activity_index.get(root.id, root.updated_at))


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


def wrap_suggestion(suggestion: str, comment: str | None = None) -> str:
    prefix = f"{comment.strip()}\n\n" if comment and comment.strip() else ""
    return f"{prefix}```suggestion\n{suggestion}\n```"


class Reconciler:
    def __init__(
        self,
        state: ReconciliationState,
        gateway: CommentGateway,
        *,
        model_id: str,
        head_sha: str,
        attempts: int = 3,
        retry_kwargs: dict[str, Any] | None = None,
    ):
        self.state = state
        self.gateway = gateway
        self.model_id = model_id
        self.head_sha = head_sha
        self.attempts = attempts
        self.retry_kwargs = retry_kwargs or {}

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    def list_threads(self, path: str | None = None, line: int | None = None, side: str | None = None) -> list[ReviewThread]:
        threads = [
            t
            for t in self.state.threads
            if (path is None or t.path == path)
            and (line is None or t.line == line)
            and (side is None or (t.side or DEFAULT_SIDE) == side)
        ]
        return sorted(threads, key=lambda t: t.last_updated_at, reverse=True)

    # ------------------------------------------------------------------ #
    # Posting                                                              #
    # ------------------------------------------------------------------ #

    async def post_comment(
        self,
        path: str,
        line: int,
        body: str,
        side: str | None = None,
        thread_id: int | None = None,
        allow_new_thread: bool = False,
    ) -> PostResult:
        _validate_location(path, line, side)
        _validate_body(body)
        return await self._post(path, line, body, side, thread_id, allow_new_thread, kind="comment")

    async def post_suggestion(
        self,
        path: str,
        line: int,
        suggestion: str,
        comment: str | None = None,
        side: str | None = None,
        thread_id: int | None = None,
        allow_new_thread: bool = False,
    ) -> PostResult:
        _validate_location(path, line, side)
        if suggestion is None:
            raise ValidationError("suggestion is required")
        body = wrap_suggestion(suggestion, comment)
        return await self._post(path, line, body, side, thread_id, allow_new_thread, kind="suggestion")

    async def reply(self, comment_id: int, body: str) -> PostResult:
        _validate_id(comment_id, "comment_id")
        _validate_body(body)
        parent = self.state.comments_by_id.get(comment_id)
        if parent is not None and parent.path and parent.line:
            key = dedup_key(parent.path, parent.line, body)
        else:
            key = dedup_key(f"comment:{comment_id}", 0, body)
        if self.state.is_duplicate(key):
            return _duplicate()
        new_id = await self._call(lambda: self.gateway.create_reply(comment_id, body), f"reply to comment {comment_id}")
        self.state.posted_keys.add(key)
        return PostResult(PostOutcome.POSTED, f"Reply posted: {new_id}", comment_id=new_id, reply_to=comment_id)

    async def post_summary(self, body: str) -> PostResult:
        _validate_body(body)
        counters = self.state.counters
        if counters.summary_posted:
            return PostResult(PostOutcome.DUPLICATE, "Summary already posted. Skipping duplicate.")
        # Set before awaiting so a second call arriving during the request short-circuits.
        counters.summary_posted = True
        full_body = ensure_summary_footer(body, self.model_id, counters.billing, self.head_sha)
        new_id = await self._call(lambda: self.gateway.create_issue_comment(full_body), "post summary")
        logger.info("Summary posted as comment %s.", new_id)
        return PostResult(PostOutcome.POSTED, f"Summary posted: {new_id}", comment_id=new_id)

    async def _post(
        self,
        path: str,
        line: int,
        body: str,
        side: str | None,
        thread_id: int | None,
        allow_new_thread: bool,
        kind: str,
    ) -> PostResult:
        key = dedup_key(path, line, body)
        if self.state.is_duplicate(key):
            logger.debug("Skipping duplicate %s at %s:%d", kind, path, line)
            return _duplicate()

        if thread_id is not None:
            _validate_id(thread_id, "thread_id")
            thread = self.state.thread_by_id(thread_id)
            if thread is None or thread.root_comment_id is None:
                return PostResult(
                    PostOutcome.NOT_FOUND,
                    f"Thread {thread_id} not found or has no root comment; nothing was posted.",
                )
            return await self._reply_to_root(thread.root_comment_id, body, key, kind)

        if allow_new_thread:
            return await self._create(path, line, side or DEFAULT_SIDE, body, key, kind)

        if self.state.threads_from_api:
            candidates = [t for t in self.state.threads_at(path, line) if t.root_comment_id is not None]
            if side is not None:
                on_side = [t for t in candidates if (t.side or DEFAULT_SIDE) == side]
                if len(on_side) == 1:
                    return await self._reply_to_root(on_side[0].root_comment_id, body, key, kind)
                if len(on_side) > 1:
                    return _ambiguous(path, line, on_side)
            elif len(candidates) == 1:
                return await self._reply_to_root(candidates[0].root_comment_id, body, key, kind)
            elif len(candidates) > 1:
                return _ambiguous(path, line, candidates)

        sides = (side,) if side else self.state.root_sides(path, line)
        if len(sides) > 1:
            return _ambiguous(path, line, self.state.synthesized_threads_at(path, line))
        root = self.state.latest_root(path, line, sides[0]) if sides else None
        if root is not None:
            return await self._reply_to_root(root.id, body, key, kind)
        return await self._create(path, line, side or DEFAULT_SIDE, body, key, kind)

    async def _reply_to_root(self, root_id: int, body: str, key: str, kind: str) -> PostResult:
        new_id = await self._call(lambda: self.gateway.create_reply(root_id, body), f"{kind} reply to {root_id}")
        self._record(key, kind)
        label = "Suggestion reply" if kind == "suggestion" else "Reply"
        return PostResult(PostOutcome.POSTED, f"{label} posted: {new_id}", comment_id=new_id, reply_to=root_id)

    async def _create(self, path: str, line: int, side: str, body: str, key: str, kind: str) -> PostResult:
        new_id = await self._call(
            lambda: self.gateway.create_review_comment(path, line, side, body), f"{kind} on {path}:{line}"
        )
        self._record(key, kind)
        label = "Suggestion" if kind == "suggestion" else "Comment"
        return PostResult(PostOutcome.POSTED, f"{label} posted: {new_id}", comment_id=new_id)

    def _record(self, key: str, kind: str) -> None:
        self.state.posted_keys.add(key)
        if kind == "suggestion":
            self.state.counters.suggestions += 1
        else:
            self.state.counters.inline_comments += 1

    async def _call(self, operation: Callable[[], Awaitable[int]], description: str) -> int:
        return await with_retries(operation, self.attempts, description=description, **self.retry_kwargs)


def _duplicate() -> PostResult:
    return PostResult(PostOutcome.DUPLICATE, "Duplicate comment already exists at this location; nothing was posted.")


def _ambiguous(path: str, line: int, threads: list[ReviewThread]) -> PostResult:
    ordered = sorted(threads, key=lambda t: t.last_updated_at, reverse=True)
    return PostResult(
        PostOutcome.AMBIGUOUS,
        f"{len(ordered)} threads exist at {path}:{line}. Retry with `side` or `thread_id` to pick one, "
        "or set `allow_new_thread` to start a new thread.",
        candidates=tuple(ThreadCandidate.from_thread(t) for t in ordered),
    )


def _validate_location(path: str, line: int, side: str | None) -> None:
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("path must be a non-empty string")
    if isinstance(line, bool) or not isinstance(line, int) or line < 1:
        raise ValidationError(f"line must be a positive integer, got {line!r}")
    if side is not None and side not in SIDES:
        raise ValidationError(f"side must be LEFT or RIGHT, got {side!r}")


def _validate_body(body: str) -> None:
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("body must be a non-empty string")


def _validate_id(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
