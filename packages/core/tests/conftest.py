"""Shared fakes for the reconciliation tests."""

from datetime import datetime, timedelta, timezone

import pytest

from prwarden_core.models import ChangedFile, ExistingComment, ReviewThread
from prwarden_core.scope import Comparison

HEAD = "c" * 40
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def review_comment(id, path="src/app.py", line=10, side="RIGHT", body="Looks off", in_reply_to_id=None, minutes=0):
    return ExistingComment(
        id=id,
        author="reviewer",
        body=body,
        url=f"https://github.com/o/r/pull/1#discussion_r{id}",
        type="review",
        path=path,
        line=line,
        side=side,
        in_reply_to_id=in_reply_to_id,
        updated_at=at(minutes),
    )


def issue_comment(id, body, minutes=0):
    return ExistingComment(
        id=id,
        author="prwarden[bot]",
        body=body,
        url=f"https://github.com/o/r/pull/1#issuecomment-{id}",
        type="issue",
        updated_at=at(minutes),
    )


def thread(id, path="src/app.py", line=10, side="RIGHT", root_comment_id=None, minutes=0, **kwargs):
    return ReviewThread(
        id=id,
        path=path,
        line=line,
        side=side,
        root_comment_id=id if root_comment_id is None else root_comment_id,
        last_updated_at=at(minutes),
        **kwargs,
    )


class FakeGateway:
    """In-memory stand-in for PullRequestGateway. Records every creation call."""

    def __init__(self, files=None, comments=None, threads=None, threads_from_api=False, comparison=None):
        self.number = 1
        self.head_sha = HEAD
        self.files = list(files or [])
        self.comments = list(comments or [])
        self.threads = list(threads or [])
        self.threads_from_api = threads_from_api
        self.comparison = comparison
        self.compare_error = None
        self.calls = []
        self._next_id = 1000

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    async def list_files(self):
        return list(self.files)

    async def fetch_existing_comments(self):
        return list(self.comments), list(self.threads), self.threads_from_api

    async def compare(self, base, head):
        self.calls.append(("compare", base, head))
        if self.compare_error is not None:
            raise self.compare_error
        return self.comparison or Comparison(status="ahead", files=[])

    async def create_review_comment(self, path, line, side, body):
        self.calls.append(("create_review_comment", path, line, side, body))
        return self._new_id()

    async def create_reply(self, comment_id, body):
        self.calls.append(("create_reply", comment_id, body))
        return self._new_id()

    async def create_issue_comment(self, body):
        self.calls.append(("create_issue_comment", body))
        return self._new_id()

    def created(self, kind):
        return [c for c in self.calls if c[0] == kind]


class FakeSleep:
    """Records requested delays and advances a fake clock instead of sleeping."""

    def __init__(self):
        self.now = 0.0
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        self.now += delay

    def clock(self):
        return self.now


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def retry_kwargs(fake_sleep):
    return {"sleep": fake_sleep, "clock": fake_sleep.clock, "rng": lambda: 0.0}


@pytest.fixture
def files():
    return [
        ChangedFile(filename="src/app.py", additions=3, deletions=1, changes=4, patch="@@ -1 +1 @@"),
        ChangedFile(filename="src/util.py", additions=1, changes=1, patch="@@ -2 +2 @@"),
        ChangedFile(filename="README.md", status="added", additions=10, changes=10),
    ]
