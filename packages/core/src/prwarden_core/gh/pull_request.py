from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from github import Auth, Github, GithubException, RateLimitExceededException

from prwarden_core.errors import (
    HistoryNotFoundError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
    ValidationError,
)
from prwarden_core.gh import normalize
from prwarden_core.models import ChangedFile, ExistingComment, ReviewThread
from prwarden_core.scope import Comparison
from prwarden_core.threads import build_threads_from_review_comments

logger = logging.getLogger(__name__)

T = TypeVar("T")

_THREADS_PAGE_SIZE = 100


def get_repo(repo_name: str, token: str):
    return Github(auth=Auth.Token(token)).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def translate_github_error(exc: GithubException, not_found: type[ProviderError] | None = None) -> Exception:
    """Map a PyGithub exception onto the error taxonomy."""
    status = exc.status
    headers = getattr(exc, "headers", None) or {}
    data = exc.data if isinstance(exc.data, dict) else None
    message = (data or {}).get("message") or str(exc)
    if status == 404 and not_found is not None:
        return not_found(message, status=status, headers=headers, data=data)
    if (
        isinstance(exc, RateLimitExceededException)
        or status == 429
        or (status == 403 and "rate limit" in message.lower())
    ):
        return QuotaExceededError(message, status=status, headers=headers, data=data)
    if status in (400, 422):
        return ValidationError(f"GitHub rejected the request ({status}): {message}")
    if status is None or status >= 500:
        return TransientProviderError(message, status=status, headers=headers, data=data)
    return ProviderError(message, status=status, headers=headers, data=data)


class PullRequestGateway:
    """Async access to one pull request.

    PyGithub is synchronous; every call runs in a worker thread so listings can
    be fetched concurrently and retry sleeps never block the loop. Results are
    normalized into strict entities before they leave this class.
    """

    def __init__(self, repo, pull):
        self.repo = repo
        self.pull = pull
        self._head_commit = None

    @classmethod
    def connect(cls, repo_name: str, pr_number: int, token: str) -> PullRequestGateway:
        repo = get_repo(repo_name, token=token)
        return cls(repo, get_pull(repo, pr_number))

    @property
    def number(self) -> int:
        return self.pull.number

    @property
    def head_sha(self) -> str:
        return self.pull.head.sha

    async def _run(self, fn: Callable[[], T], not_found: type[ProviderError] | None = None) -> T:
        try:
            return await asyncio.to_thread(fn)
        except GithubException as e:
            raise translate_github_error(e, not_found) from e

    # ------------------------------------------------------------------ #
    # Listings                                                             #
    # ------------------------------------------------------------------ #

    async def list_files(self) -> list[ChangedFile]:
        files = await self._run(lambda: list(self.pull.get_files()))
        return [normalize.changed_file(f) for f in files]

    async def compare(self, base: str, head: str) -> Comparison:
        comparison = await self._run(lambda: self.repo.compare(base, head), not_found=HistoryNotFoundError)
        files = await self._run(lambda: list(comparison.files or []))
        return Comparison(status=comparison.status or "", files=[normalize.changed_file(f) for f in files])

    async def list_issue_comments(self) -> list[ExistingComment]:
        comments = await self._run(lambda: list(self.pull.get_issue_comments()))
        return [normalize.issue_comment(c) for c in comments]

    async def list_review_comments(self) -> list[ExistingComment]:
        comments = await self._run(lambda: list(self.pull.get_review_comments()))
        return [normalize.review_comment(c) for c in comments]

    async def list_review_threads(self) -> list[ReviewThread]:
        """Thread listing, or [] when the endpoint is unavailable for this token/repo."""
        try:
            payloads = await self._run(self._fetch_thread_pages)
        except ProviderError as e:
            if e.status != 404:
                raise
            logger.warning(
                "Unable to list review threads (404) for %s#%s; continuing without threads.",
                self.repo.full_name,
                self.pull.number,
            )
            return []
        return [normalize.review_thread(p) for p in payloads]

    def _fetch_thread_pages(self) -> list[dict]:
        # PyGithub has no wrapper for the thread listing, so page through it with
        # the pull request's own requester.
        results: list[dict] = []
        page = 1
        while True:
            _, data = self.pull._requester.requestJsonAndCheck(
                "GET",
                f"{self.pull.url}/threads",
                parameters={"per_page": _THREADS_PAGE_SIZE, "page": page},
            )
            data = data or []
            results.extend(data)
            if len(data) < _THREADS_PAGE_SIZE:
                return results
            page += 1

    async def fetch_existing_comments(self) -> tuple[list[ExistingComment], list[ReviewThread], bool]:
        """Fetch issue comments, review comments and threads concurrently.

        Returns (comments, threads, threads_from_api). When the thread listing
        is empty, threads are synthesized from the review comments.
        """
        issue, review, threads = await asyncio.gather(
            self.list_issue_comments(),
            self.list_review_comments(),
            self.list_review_threads(),
        )
        comments = [*issue, *review]
        if threads:
            return comments, threads, True
        return comments, build_threads_from_review_comments(comments), False

    # ------------------------------------------------------------------ #
    # Creation                                                             #
    # ------------------------------------------------------------------ #

    async def create_review_comment(self, path: str, line: int, side: str, body: str) -> int:
        def _create() -> Any:
            if self._head_commit is None:
                self._head_commit = self.repo.get_commit(self.head_sha)
            return self.pull.create_review_comment(body, self._head_commit, path, line=line, side=side)

        comment = await self._run(_create)
        return comment.id

    async def create_reply(self, comment_id: int, body: str) -> int:
        comment = await self._run(lambda: self.pull.create_review_comment_reply(comment_id, body))
        return comment.id

    async def create_issue_comment(self, body: str) -> int:
        comment = await self._run(lambda: self.pull.create_issue_comment(body))
        return comment.id
