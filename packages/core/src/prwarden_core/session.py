"""Session start and finish around the agent loop.

start_session() gathers everything the reconciliation components need, decides
the review scope, and either stops with a notice on the PR or hands back a
ReviewSession for the agent loop. finish_session() makes sure a failed or
incomplete run still leaves the PR with a summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from prwarden_core.compaction import ContextCompactor
from prwarden_core.config import build_summarizer, is_excluded, retry_policies
from prwarden_core.delegation import iteration_cap
from prwarden_core.errors import QuotaExceededError
from prwarden_core.models import ChangedFile, ContextState, ExistingComment, ReviewThread, SessionCounters
from prwarden_core.reconciler import CommentGateway, ReconciliationState, Reconciler
from prwarden_core.retry import is_quota_error, with_retries
from prwarden_core.scope import CompareFn, ReviewScopeDecision, ScopeDecision, resolve_scope
from prwarden_core.summary import (
    PriorSummary,
    failure_body,
    find_last_reviewed_sha,
    find_last_summary,
    no_new_changes_body,
    too_many_files_body,
)

logger = logging.getLogger(__name__)

STARTED = "review"
SKIPPED = "skipped"
TOO_MANY_FILES = "too_many_files"


class SessionGateway(CommentGateway, Protocol):
    number: int
    head_sha: str
    compare: CompareFn

    async def list_files(self) -> list[ChangedFile]: ...

    async def fetch_existing_comments(self) -> tuple[list[ExistingComment], list[ReviewThread], bool]: ...


@dataclass
class ReviewSession:
    """What the agent loop works with for one run."""

    number: int
    head_sha: str
    model_id: str
    scope: ReviewScopeDecision
    files: list[ChangedFile]
    full_pr_files: list[ChangedFile]
    gateway: SessionGateway
    state: ReconciliationState
    reconciler: Reconciler
    compactor: ContextCompactor
    context_state: ContextState
    last_reviewed_sha: str | None = None
    prior_summary: PriorSummary | None = None
    max_iterations: int = 0
    retry_kwargs: dict[str, Any] = field(default_factory=dict)
    attempts: int = 3

    @property
    def counters(self) -> SessionCounters:
        return self.state.counters


@dataclass(frozen=True)
class SessionStart:
    status: str  # review | skipped | too_many_files
    scope: ReviewScopeDecision
    session: ReviewSession | None = None
    notice_id: int | None = None


async def start_session(
    gateway: SessionGateway,
    config: dict,
    *,
    summarizer=None,
    post_notices: bool = True,
    retry_kwargs: dict[str, Any] | None = None,
) -> SessionStart:
    attempts = config.get("retry_attempts", 3)
    if retry_kwargs is None:
        standard, quota = retry_policies(config)
        retry_kwargs = {"standard": standard, "quota": quota}
    model_id = config.get("model_id") or config.get("model", "")
    exclude = config.get("exclude", [])

    async def _retry(operation, description):
        return await with_retries(operation, attempts, description=description, **retry_kwargs)

    head_sha = gateway.head_sha
    changed_files = await _retry(gateway.list_files, "list PR files")
    comments, threads, threads_from_api = await _retry(gateway.fetch_existing_comments, "list existing comments")

    last_reviewed_sha = find_last_reviewed_sha(comments)
    prior_summary = find_last_summary(comments)
    scope = await resolve_scope(
        last_reviewed_sha,
        head_sha,
        changed_files,
        gateway.compare,
        attempts=attempts,
        retry_kwargs=retry_kwargs,
    )

    filtered = [f for f in scope.files if not is_excluded(f.filename, exclude)]
    full_pr_files = [f for f in changed_files if not is_excluded(f.filename, exclude)]
    _log_scope(gateway.number, last_reviewed_sha, head_sha, scope, filtered, full_pr_files)
    if scope.warning:
        logger.warning("PR #%s: %s", gateway.number, scope.warning)

    if scope.decision is ScopeDecision.SKIP_CONFIDENT or not filtered:
        notice_id = None
        if post_notices:
            reason = None
            if scope.files and not filtered:
                reason = "Every file changed since the last review matches an exclude pattern."
            body = no_new_changes_body(model_id, head_sha, reason)
            notice_id = await _retry(lambda: gateway.create_issue_comment(body), "post no-new-changes notice")
        return SessionStart(status=SKIPPED, scope=scope, notice_id=notice_id)

    max_files = config.get("max_files", 50)
    if len(filtered) > max_files:
        notice_id = None
        if post_notices:
            body = too_many_files_body(model_id, len(filtered), max_files)
            notice_id = await _retry(lambda: gateway.create_issue_comment(body), "post too-many-files notice")
        return SessionStart(status=TOO_MANY_FILES, scope=scope, notice_id=notice_id)

    counters = SessionCounters()
    state = ReconciliationState.from_listings(comments, threads, threads_from_api, counters)
    context_state = ContextState()
    reconciler = Reconciler(
        state, gateway, model_id=model_id, head_sha=head_sha, attempts=attempts, retry_kwargs=retry_kwargs
    )
    compactor = ContextCompactor(
        config.get("context_window", 120000),
        context_state,
        counters,
        summarizer if summarizer is not None else build_summarizer(config),
        attempts=attempts,
        retry_kwargs=retry_kwargs,
    )
    session = ReviewSession(
        number=gateway.number,
        head_sha=head_sha,
        model_id=model_id,
        scope=scope,
        files=filtered,
        full_pr_files=full_pr_files,
        gateway=gateway,
        state=state,
        reconciler=reconciler,
        compactor=compactor,
        context_state=context_state,
        last_reviewed_sha=last_reviewed_sha,
        prior_summary=prior_summary,
        max_iterations=iteration_cap(max_files),
        retry_kwargs=retry_kwargs,
        attempts=attempts,
    )
    return SessionStart(status=STARTED, scope=scope, session=session)


def failure_reason(error: BaseException) -> str:
    if isinstance(error, QuotaExceededError):
        return "GitHub API rate limit exceeded."
    if is_quota_error(error):
        return "LLM quota exceeded or rate-limited; unable to generate a review. Check provider billing/limits."
    return "Agent encountered an error and failed to produce a review summary."


async def finish_session(
    session: ReviewSession,
    error: BaseException | None = None,
    aborted_by_limit: bool = False,
) -> int | None:
    """Post a terminal notice when the run ended without a summary.

    Best effort: a failure to post is logged, never raised over the error that ended the run.
    """
    counters = session.counters
    if counters.summary_posted:
        return None

    if error is not None:
        reason = failure_reason(error)
    elif aborted_by_limit:
        reason = "Agent exceeded iteration limit before posting summary."
    else:
        reason = "Agent failed to produce a review summary."

    counters.summary_posted = True
    body = failure_body(session.model_id, reason, counters.billing, session.head_sha)
    try:
        return await with_retries(
            lambda: session.gateway.create_issue_comment(body),
            session.attempts,
            description="post terminal notice",
            **session.retry_kwargs,
        )
    except Exception as e:
        logger.error("Could not post terminal notice on PR #%s: %s", session.number, e)
        return None


def _log_scope(
    pr_number: int,
    last_reviewed_sha: str | None,
    head_sha: str,
    scope: ReviewScopeDecision,
    filtered: list[ChangedFile],
    full_pr_files: list[ChangedFile],
) -> None:
    mode = "skip" if scope.decision is ScopeDecision.SKIP_CONFIDENT else "review"
    logger.info(
        "[scope-shadow] pr=%s mode=%s decision=%s reason_code=%s has_last_reviewed_sha=%s head_sha=%s "
        "scoped_files_before_ignore=%d scoped_files_after_ignore=%d always_review_files_after_ignore=%d "
        "file_delta_vs_always_review=%d",
        pr_number,
        mode,
        scope.decision.value,
        scope.reason_code.value,
        "true" if last_reviewed_sha else "false",
        head_sha,
        len(scope.files),
        len(filtered),
        len(full_pr_files),
        len(full_pr_files) - len(filtered),
    )
