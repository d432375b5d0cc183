"""Scope resolution: decide whether a re-run has anything new to review.

The previous session leaves a last-reviewed marker in its summary comment. On
the next run we compare that checkpoint with the current head and review only
the files that changed since, or everything when the comparison can't be
trusted.

The comparison is used only to learn *which filenames* changed. Diff hunks
always come from the pull request's own file listing, because once histories
diverge the compare range can contain unrelated commits from the base branch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from prwarden_core.errors import HistoryNotFoundError
from prwarden_core.models import ChangedFile
from prwarden_core.retry import with_retries

logger = logging.getLogger(__name__)

NOT_FOUND_WARNING = (
    "Previous checkpoint no longer exists (history was rewritten, e.g. force-push or rebase); "
    "reviewing full PR diff."
)
DIVERGED_WARNING = "Base and head have diverged; review scoped to current PR diff."

_MIN_ABBREVIATED_SHA = 7


class ScopeDecision(str, Enum):
    REVIEW = "review"
    SKIP_CONFIDENT = "skip_confident"


class ReasonCode(str, Enum):
    BASE_EQUALS_HEAD_SKIP = "base_equals_head_skip"
    NO_PREVIOUS_CHECKPOINT_REVIEW_FULL = "no_previous_checkpoint_review_full"
    COMPARE_NOT_FOUND_REVIEW_FULL = "compare_not_found_review_full"
    COMPARE_EMPTY_REVIEW_FULL = "compare_empty_review_full"
    SCOPED_REVIEW = "scoped_review"
    DIVERGED_SCOPED_REVIEW = "diverged_scoped_review"

    @property
    def decision(self) -> ScopeDecision:
        return _DECISIONS[self]


# Every reason code maps to exactly one decision.
_DECISIONS: dict[ReasonCode, ScopeDecision] = {
    ReasonCode.BASE_EQUALS_HEAD_SKIP: ScopeDecision.SKIP_CONFIDENT,
    ReasonCode.NO_PREVIOUS_CHECKPOINT_REVIEW_FULL: ScopeDecision.REVIEW,
    ReasonCode.COMPARE_NOT_FOUND_REVIEW_FULL: ScopeDecision.REVIEW,
    ReasonCode.COMPARE_EMPTY_REVIEW_FULL: ScopeDecision.REVIEW,
    ReasonCode.SCOPED_REVIEW: ScopeDecision.REVIEW,
    ReasonCode.DIVERGED_SCOPED_REVIEW: ScopeDecision.REVIEW,
}


@dataclass(frozen=True)
class ReviewScopeDecision:
    reason_code: ReasonCode
    reason: str
    files: tuple[ChangedFile, ...] = ()
    warning: str | None = None

    def __post_init__(self):
        if self.decision is ScopeDecision.SKIP_CONFIDENT and self.files:
            raise ValueError("a skip_confident decision cannot carry files")

    @property
    def decision(self) -> ScopeDecision:
        return self.reason_code.decision

    @property
    def should_review(self) -> bool:
        return self.decision is ScopeDecision.REVIEW


@dataclass(frozen=True)
class Comparison:
    """What a base...head comparison reported."""

    status: str  # ahead | behind | identical | diverged
    files: list[ChangedFile] = field(default_factory=list)

    @property
    def diverged(self) -> bool:
        return self.status == "diverged"


CompareFn = Callable[[str, str], Awaitable[Comparison]]


def same_commit(checkpoint: str, head: str) -> bool:
    """True when both refs name the same commit; markers may hold abbreviated SHAs."""
    a, b = checkpoint.strip().lower(), head.strip().lower()
    if a == b:
        return True
    shorter, longer = sorted((a, b), key=len)
    return len(shorter) >= _MIN_ABBREVIATED_SHA and longer.startswith(shorter)


def scoped_files(fallback_files: Sequence[ChangedFile], compared: Sequence[ChangedFile]) -> list[ChangedFile]:
    """PR files whose names also appear in the comparison, keeping the PR's own entries."""
    compared_names = {f.filename for f in compared}
    return [f for f in fallback_files if f.filename in compared_names]


async def resolve_scope(
    last_checkpoint: str | None,
    head: str,
    fallback_files: Sequence[ChangedFile],
    compare: CompareFn,
    *,
    attempts: int = 3,
    retry_kwargs: dict[str, Any] | None = None,
) -> ReviewScopeDecision:
    fallback = tuple(fallback_files)

    if last_checkpoint and same_commit(last_checkpoint, head):
        return ReviewScopeDecision(
            reason_code=ReasonCode.BASE_EQUALS_HEAD_SKIP,
            reason="No new commits since the last review.",
        )

    if not last_checkpoint:
        return ReviewScopeDecision(
            reason_code=ReasonCode.NO_PREVIOUS_CHECKPOINT_REVIEW_FULL,
            reason="No previous review checkpoint found. Reviewing current PR diff.",
            files=fallback,
        )

    try:
        comparison = await with_retries(
            lambda: compare(last_checkpoint, head),
            attempts,
            description=f"compare {last_checkpoint[:7]}...{head[:7]}",
            **(retry_kwargs or {}),
        )
    except HistoryNotFoundError:
        logger.warning("Checkpoint %s is no longer reachable from %s; reviewing full PR.", last_checkpoint, head)
        return ReviewScopeDecision(
            reason_code=ReasonCode.COMPARE_NOT_FOUND_REVIEW_FULL,
            reason="Previous checkpoint could not be compared with head.",
            files=fallback,
            warning=NOT_FOUND_WARNING,
        )

    if not comparison.files:
        return ReviewScopeDecision(
            reason_code=ReasonCode.COMPARE_EMPTY_REVIEW_FULL,
            reason="Comparison since the checkpoint reported no changed files. Reviewing current PR diff.",
            files=fallback,
        )

    scoped = scoped_files(fallback, comparison.files)

    if comparison.diverged:
        if not scoped:
            # Nothing in common (e.g. upstream reverted every PR file). Review the whole PR
            # rather than nothing, but keep the warning so the agent knows why.
            scoped = list(fallback)
        return ReviewScopeDecision(
            reason_code=ReasonCode.DIVERGED_SCOPED_REVIEW,
            reason=f"History diverged since {last_checkpoint[:7]}; {len(scoped)} PR file(s) in scope.",
            files=tuple(scoped),
            warning=DIVERGED_WARNING,
        )

    return ReviewScopeDecision(
        reason_code=ReasonCode.SCOPED_REVIEW,
        reason=f"{len(scoped)} PR file(s) changed since {last_checkpoint[:7]}.",
        files=tuple(scoped),
    )
