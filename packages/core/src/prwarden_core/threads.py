"""Review threads synthesized from flat review comments.

Used when the provider's thread listing is unavailable for the token or repo.
Comments are grouped by their root (the comment with no reply parent); the
root supplies the location and the newest comment in the group supplies the
activity fields.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from prwarden_core.models import ExistingComment, ReviewThread


def build_threads_from_review_comments(comments: Iterable[ExistingComment]) -> list[ReviewThread]:
    groups: dict[int, list[ExistingComment]] = defaultdict(list)
    for comment in comments:
        if comment.type != "review" or not comment.path or not comment.line:
            continue
        groups[comment.root_id].append(comment)

    threads = []
    for root_id, group in groups.items():
        root = next((c for c in group if c.id == root_id), group[0])
        last = max(group, key=lambda c: c.updated_at)
        threads.append(
            ReviewThread(
                id=root_id,
                path=root.path,
                line=root.line,
                side=root.side,
                last_updated_at=last.updated_at,
                last_actor=last.author or "unknown",
                root_comment_id=root_id,
                url=root.url,
            )
        )
    return threads
