"""Tests for the CLI entry point."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

from click.testing import CliRunner

from prwarden_cli.cli import main
from prwarden_core.models import ChangedFile, ReviewThread
from prwarden_core.scope import ReasonCode, ReviewScopeDecision
from prwarden_core.session import SKIPPED, STARTED, SessionStart

HEAD = "c" * 40


def _make_config(github_token="tok"):
    return {
        "github_token": github_token,
        "model": "anthropic",
        "model_id": "claude-test",
        "anthropic_api_key": "ant",
        "openai_api_key": None,
        "exclude": [],
        "max_files": 50,
        "retry_attempts": 3,
        "quota_max_elapsed_seconds": 3600,
        "quota_min_attempts": 12,
        "debug": False,
    }


def _patch_common(mocker, config=None):
    cfg = config or _make_config()
    mocker.patch("prwarden_core.config.load_config", return_value=cfg)
    return cfg


class TestMain:
    def test_debug_flag_passed_as_override(self, mocker):
        load = mocker.patch("prwarden_core.config.load_config", return_value=_make_config())
        CliRunner().invoke(main, ["--config", "custom.yml", "--debug", "threads", "--help"])
        load.assert_called_once_with("custom.yml", cli_overrides={"debug": True})

    def test_lists_commands(self):
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "scope" in result.output
        assert "threads" in result.output


class TestScopeCommand:
    def test_missing_github_token(self, mocker):
        _patch_common(mocker, config=_make_config(github_token=None))
        result = CliRunner().invoke(main, ["scope", "--repo", "owner/repo", "--pr", "1"])
        assert result.exit_code != 0
        assert "GITHUB_TOKEN" in result.output

    def test_prints_decision_for_skip(self, mocker):
        _patch_common(mocker)
        connect = mocker.patch("prwarden_cli.commands.scope.PullRequestGateway.connect")
        decision = ReviewScopeDecision(ReasonCode.BASE_EQUALS_HEAD_SKIP, "No new commits since the last review.")
        start = mocker.patch(
            "prwarden_cli.commands.scope.start_session",
            return_value=SessionStart(status=SKIPPED, scope=decision),
        )

        result = CliRunner().invoke(main, ["scope", "--repo", "owner/repo", "--pr", "42"])

        assert result.exit_code == 0, result.output
        connect.assert_called_once_with("owner/repo", 42, token="tok")
        assert start.call_args.kwargs["post_notices"] is False
        assert "base_equals_head_skip" in result.output
        assert "skip_confident" in result.output

    def test_post_notice_flag_passed_through(self, mocker):
        _patch_common(mocker)
        mocker.patch("prwarden_cli.commands.scope.PullRequestGateway.connect")
        decision = ReviewScopeDecision(ReasonCode.BASE_EQUALS_HEAD_SKIP, "No new commits.")
        start = mocker.patch(
            "prwarden_cli.commands.scope.start_session",
            return_value=SessionStart(status=SKIPPED, scope=decision, notice_id=99),
        )

        result = CliRunner().invoke(main, ["scope", "--repo", "owner/repo", "--pr", "1", "--post-notice"])

        assert start.call_args.kwargs["post_notices"] is True
        assert "99" in result.output

    def test_lists_files_in_scope(self, mocker):
        _patch_common(mocker)
        mocker.patch("prwarden_cli.commands.scope.PullRequestGateway.connect")
        files = (ChangedFile("src/app.py", additions=3, deletions=1),)
        decision = ReviewScopeDecision(ReasonCode.SCOPED_REVIEW, "1 PR file(s) changed since aaaaaaa.", files=files)
        session = MagicMock(files=list(files), last_reviewed_sha="a" * 40, max_iterations=260)
        mocker.patch(
            "prwarden_cli.commands.scope.start_session",
            return_value=SessionStart(status=STARTED, scope=decision, session=session),
        )

        result = CliRunner().invoke(main, ["scope", "--repo", "owner/repo", "--pr", "1"])

        assert result.exit_code == 0, result.output
        assert "scoped_review" in result.output
        assert "src/app.py" in result.output
        assert "260" in result.output


class TestThreadsCommand:
    def _gateway(self, mocker, threads, from_api=True):
        gateway = MagicMock()
        gateway.head_sha = HEAD

        async def fetch():
            return [], threads, from_api

        gateway.fetch_existing_comments = fetch
        mocker.patch("prwarden_cli.commands.threads.PullRequestGateway.connect", return_value=gateway)
        return gateway

    def test_missing_github_token(self, mocker):
        _patch_common(mocker, config=_make_config(github_token=None))
        result = CliRunner().invoke(main, ["threads", "--repo", "owner/repo", "--pr", "1"])
        assert result.exit_code != 0
        assert "GITHUB_TOKEN" in result.output

    def test_no_threads(self, mocker):
        _patch_common(mocker)
        self._gateway(mocker, [])
        result = CliRunner().invoke(main, ["threads", "--repo", "owner/repo", "--pr", "1"])
        assert result.exit_code == 0, result.output
        assert "No review threads found." in result.output

    def test_filters_by_location(self, mocker):
        _patch_common(mocker)
        when = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
        self._gateway(
            mocker,
            [
                ReviewThread(7101, "src/app.py", 10, "RIGHT", resolved=True, last_updated_at=when, last_actor="alice"),
                ReviewThread(8303, "src/other.py", 3, "LEFT", last_updated_at=when, last_actor="bob"),
            ],
        )
        result = CliRunner().invoke(main, ["threads", "--repo", "owner/repo", "--pr", "1", "--path", "src/app.py"])
        assert result.exit_code == 0, result.output
        assert "7101" in result.output
        assert "resolved" in result.output
        assert "8303" not in result.output

    def test_rejects_unknown_side(self, mocker):
        _patch_common(mocker)
        result = CliRunner().invoke(main, ["threads", "--repo", "owner/repo", "--pr", "1", "--side", "UP"])
        assert result.exit_code != 0
