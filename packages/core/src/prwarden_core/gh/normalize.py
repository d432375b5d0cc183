"""Normalize GitHub payloads into strict entities.

Accepts both PyGithub objects (attribute access) and raw REST JSON dicts
(the thread listing has no PyGithub wrapper). Nothing past this module looks at
provider field names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from prwarden_core.models import EPOCH, SIDES, ChangedFile, ExistingComment, ReviewThread


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(name, default)
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def _login(user: Any) -> str:
    return _get(user, "login") or "unknown"


def _side(value: Any) -> str | None:
    return value if value in SIDES else None


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return EPOCH


def _updated_at(obj: Any) -> datetime:
    return parse_timestamp(_get(obj, "updated_at") or _get(obj, "created_at"))


def changed_file(obj: Any) -> ChangedFile:
    return ChangedFile(
        filename=_get(obj, "filename", ""),
        status=_get(obj, "status", "modified"),
        additions=int(_get(obj, "additions", 0)),
        deletions=int(_get(obj, "deletions", 0)),
        changes=int(_get(obj, "changes", 0)),
        patch=_get(obj, "patch"),
        previous_filename=_get(obj, "previous_filename"),
    )


def issue_comment(obj: Any) -> ExistingComment:
    return ExistingComment(
        id=int(_get(obj, "id")),
        author=_login(_get(obj, "user")),
        body=_get(obj, "body", ""),
        url=_get(obj, "html_url", ""),
        type="issue",
        updated_at=_updated_at(obj),
    )


def review_comment(obj: Any) -> ExistingComment:
    return ExistingComment(
        id=int(_get(obj, "id")),
        author=_login(_get(obj, "user")),
        body=_get(obj, "body", ""),
        url=_get(obj, "html_url", ""),
        type="review",
        path=_get(obj, "path"),
        line=_get(obj, "line"),
        side=_side(_get(obj, "side")),
        in_reply_to_id=_get(obj, "in_reply_to_id"),
        updated_at=_updated_at(obj),
    )


def review_thread(payload: Any) -> ReviewThread:
    """Build a thread from the thread listing; the first comment is the root."""
    comments = _get(payload, "comments", []) or []
    first = comments[0] if comments else None
    newest = max(comments, key=_updated_at) if comments else None
    side = _get(payload, "side") or _get(payload, "start_side") or _get(first, "side") or _get(first, "start_side")
    return ReviewThread(
        id=int(_get(payload, "id")),
        path=_get(payload, "path") or _get(first, "path", ""),
        line=_get(payload, "line") or _get(first, "line"),
        side=_side(side),
        is_outdated=bool(_get(payload, "is_outdated", False)),
        resolved=bool(_get(payload, "resolved", False)),
        last_updated_at=_updated_at(newest) if newest is not None else EPOCH,
        last_actor=_login(_get(newest, "user")) if newest is not None else "unknown",
        root_comment_id=_get(first, "id"),
        url=_get(first, "html_url") or _get(newest, "html_url", ""),
    )
