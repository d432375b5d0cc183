"""Tests for session start and finish."""

import logging

import pytest

from conftest import HEAD, FakeGateway, issue_comment, review_comment
from prwarden_core.config import DEFAULT_CONFIG
from prwarden_core.errors import QuotaExceededError, TransientProviderError
from prwarden_core.models import ChangedFile
from prwarden_core.reconciler import PostOutcome
from prwarden_core.scope import Comparison, ReasonCode
from prwarden_core.session import SKIPPED, STARTED, TOO_MANY_FILES, finish_session, start_session
from prwarden_core.summary import build_summary_markdown, sha_marker

CHECKPOINT = "a" * 40


def _config(**overrides):
    return {**DEFAULT_CONFIG, "exclude": [], "model_id": "claude-test", **overrides}


class TestStartSession:
    @pytest.mark.asyncio
    async def test_first_run_reviews_every_file(self, files, retry_kwargs):
        gateway = FakeGateway(files=files)
        result = await start_session(gateway, _config(), retry_kwargs=retry_kwargs)
        assert result.status == STARTED
        assert result.scope.reason_code is ReasonCode.NO_PREVIOUS_CHECKPOINT_REVIEW_FULL
        session = result.session
        assert session.files == files
        assert session.last_reviewed_sha is None
        assert session.max_iterations == 10 + 5 * 50
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_head_already_reviewed_posts_skip_notice(self, files, retry_kwargs):
        gateway = FakeGateway(files=files, comments=[issue_comment(1, f"done\n{sha_marker(HEAD)}")])
        result = await start_session(gateway, _config(), retry_kwargs=retry_kwargs)
        assert result.status == SKIPPED
        assert result.session is None
        assert result.scope.reason_code is ReasonCode.BASE_EQUALS_HEAD_SKIP
        (notice,) = gateway.created("create_issue_comment")
        assert "**Verdict:** Skipped" in notice[1]
        assert notice[1].endswith(sha_marker(HEAD))
        assert result.notice_id is not None

    @pytest.mark.asyncio
    async def test_skip_without_posting(self, files, retry_kwargs):
        gateway = FakeGateway(files=files, comments=[issue_comment(1, sha_marker(HEAD))])
        result = await start_session(gateway, _config(), post_notices=False, retry_kwargs=retry_kwargs)
        assert result.status == SKIPPED
        assert result.notice_id is None
        assert gateway.created("create_issue_comment") == []

    @pytest.mark.asyncio
    async def test_scoped_review_with_nothing_in_the_pr_skips(self, files, retry_kwargs):
        gateway = FakeGateway(
            files=files,
            comments=[issue_comment(1, sha_marker(CHECKPOINT))],
            comparison=Comparison(status="ahead", files=[ChangedFile("upstream/only.py")]),
        )
        result = await start_session(gateway, _config(), retry_kwargs=retry_kwargs)
        assert result.status == SKIPPED
        assert result.scope.reason_code is ReasonCode.SCOPED_REVIEW
        (notice,) = gateway.created("create_issue_comment")
        assert "No new PR-authored changes" in notice[1]

    @pytest.mark.asyncio
    async def test_scope_fully_excluded_skips_with_reason(self, files, retry_kwargs):
        gateway = FakeGateway(
            files=files,
            comments=[issue_comment(1, sha_marker(CHECKPOINT))],
            comparison=Comparison(status="ahead", files=[ChangedFile("README.md")]),
        )
        result = await start_session(gateway, _config(exclude=["*.md"]), retry_kwargs=retry_kwargs)
        assert result.status == SKIPPED
        (notice,) = gateway.created("create_issue_comment")
        assert "matches an exclude pattern" in notice[1]

    @pytest.mark.asyncio
    async def test_exclude_patterns_filter_scope(self, files, retry_kwargs):
        gateway = FakeGateway(files=files)
        result = await start_session(gateway, _config(exclude=["*.md"]), retry_kwargs=retry_kwargs)
        assert [f.filename for f in result.session.files] == ["src/app.py", "src/util.py"]
        assert len(result.scope.files) == 3

    @pytest.mark.asyncio
    async def test_too_many_files_posts_notice(self, files, retry_kwargs):
        gateway = FakeGateway(files=files)
        result = await start_session(gateway, _config(max_files=2), retry_kwargs=retry_kwargs)
        assert result.status == TOO_MANY_FILES
        assert result.session is None
        (notice,) = gateway.created("create_issue_comment")
        assert "PR has 3 files after filtering; max allowed is 2." in notice[1]

    @pytest.mark.asyncio
    async def test_scoped_rerun_reviews_changed_files_only(self, files, retry_kwargs):
        prior = build_summary_markdown("Request Changes", ["bug"], ["x"], "m", review_sha=CHECKPOINT)
        gateway = FakeGateway(
            files=files,
            comments=[issue_comment(1, prior)],
            comparison=Comparison(status="ahead", files=[ChangedFile("src/util.py")]),
        )
        result = await start_session(gateway, _config(), retry_kwargs=retry_kwargs)
        session = result.session
        assert session.files == [files[1]]
        assert session.full_pr_files == files
        assert session.last_reviewed_sha == CHECKPOINT
        assert session.prior_summary.verdict == "Request Changes"
        assert gateway.calls == [("compare", CHECKPOINT, HEAD)]

    @pytest.mark.asyncio
    async def test_logs_scope_shadow_line(self, files, retry_kwargs, caplog):
        caplog.set_level(logging.INFO, logger="prwarden_core.session")
        await start_session(FakeGateway(files=files), _config(exclude=["*.md"]), retry_kwargs=retry_kwargs)
        line = next(r.getMessage() for r in caplog.records if "[scope-shadow]" in r.getMessage())
        assert "pr=1 mode=review decision=review" in line
        assert "reason_code=no_previous_checkpoint_review_full" in line
        assert "has_last_reviewed_sha=false" in line
        assert "scoped_files_before_ignore=3 scoped_files_after_ignore=2" in line

    @pytest.mark.asyncio
    async def test_reconciler_sees_existing_comments(self, files, retry_kwargs):
        gateway = FakeGateway(files=files, comments=[review_comment(5, body="Null check missing")])
        session = (await start_session(gateway, _config(), retry_kwargs=retry_kwargs)).session
        result = await session.reconciler.post_comment("src/app.py", 10, "Null check missing")
        assert result.outcome is PostOutcome.DUPLICATE
        other = await session.reconciler.post_comment("src/app.py", 10, "Also rename this")
        assert other.reply_to == 5
        assert session.counters.inline_comments == 1
        assert session.compactor.counters is session.counters


class TestFinishSession:
    async def _session(self, files, retry_kwargs, gateway=None):
        gateway = gateway or FakeGateway(files=files)
        return (await start_session(gateway, _config(), retry_kwargs=retry_kwargs)).session, gateway

    @pytest.mark.asyncio
    async def test_nothing_posted_when_summary_exists(self, files, retry_kwargs):
        session, gateway = await self._session(files, retry_kwargs)
        await session.reconciler.post_summary("All good.")
        assert await finish_session(session) is None
        assert len(gateway.created("create_issue_comment")) == 1

    @pytest.mark.asyncio
    async def test_missing_summary_gets_notice(self, files, retry_kwargs):
        session, gateway = await self._session(files, retry_kwargs)
        assert await finish_session(session) is not None
        (notice,) = gateway.created("create_issue_comment")
        assert "Agent failed to produce a review summary." in notice[1]
        assert notice[1].endswith(sha_marker(HEAD))
        assert session.counters.summary_posted

    @pytest.mark.asyncio
    async def test_second_finish_is_a_no_op(self, files, retry_kwargs):
        session, gateway = await self._session(files, retry_kwargs)
        await finish_session(session)
        await finish_session(session, error=RuntimeError("late"))
        assert len(gateway.created("create_issue_comment")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,aborted,reason",
        [
            (QuotaExceededError("API rate limit exceeded", status=403), False, "GitHub API rate limit exceeded."),
            (RuntimeError("429 RESOURCE_EXHAUSTED"), False, "LLM quota exceeded or rate-limited"),
            (RuntimeError("tool crashed"), False, "Agent encountered an error"),
            (None, True, "Agent exceeded iteration limit before posting summary."),
        ],
    )
    async def test_failure_reasons(self, files, retry_kwargs, error, aborted, reason):
        session, gateway = await self._session(files, retry_kwargs)
        await finish_session(session, error=error, aborted_by_limit=aborted)
        (notice,) = gateway.created("create_issue_comment")
        assert reason in notice[1]

    @pytest.mark.asyncio
    async def test_notice_failure_is_logged_not_raised(self, files, retry_kwargs, caplog):
        class _Down(FakeGateway):
            async def create_issue_comment(self, body):
                raise TransientProviderError("503", status=503)

        session, _ = await self._session(files, retry_kwargs, gateway=_Down(files=files))
        assert await finish_session(session, error=RuntimeError("boom")) is None
        assert "Could not post terminal notice" in caplog.text
