"""Summary comment bodies and the last-reviewed marker.

The summary comment is the only state carried between sessions: its hidden
marker records the head SHA that was reviewed, and the next session's scope
resolver uses it as the checkpoint.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from prwarden_core.models import Billing, ExistingComment

BOT_NAME = "prwarden"
ATTRIBUTION_PREFIX = f"Reviewed by {BOT_NAME}"
SUMMARY_HEADING = "## Review Summary"

_MARKER_PREFIX = f"<!-- {BOT_NAME}:last-reviewed-sha:"
_MARKER_RE = re.compile(rf"<!--\s*{BOT_NAME}:last-reviewed-sha:([a-f0-9]{{7,40}})\s*-->", re.IGNORECASE)
_VERDICT_RE = re.compile(r"\*\*Verdict:\*\*\s*(Request Changes|Approve|Skipped)", re.IGNORECASE)


def sha_marker(sha: str) -> str:
    return f"{_MARKER_PREFIX}{sha} -->"


def billing_line(billing: Billing) -> str:
    return (
        f"*Billing: input {billing.input} • output {billing.output} • total {billing.total} "
        f"• cost ${billing.cost:.6f}*"
    )


def ensure_summary_footer(body: str, model_id: str, billing: Billing, review_sha: str) -> str:
    """Append the attribution, billing and marker lines that ``body`` is missing.

    Agents sometimes copy part of a footer into their own text; only the
    absent pieces are added so the footer never appears twice. Markers already
    in the body are rewritten to ``review_sha`` and collapsed to one.
    """
    marker = sha_marker(review_sha)
    found = 0

    def _current_marker(match: re.Match) -> str:
        nonlocal found
        found += 1
        return marker if found == 1 else ""

    body = _MARKER_RE.sub(_current_marker, body)
    if found > 1:
        body = re.sub(r"\n{3,}", "\n\n", body).rstrip()

    missing = []
    if ATTRIBUTION_PREFIX not in body:
        missing.append(f"*{ATTRIBUTION_PREFIX} • model: {model_id}*")
    if "Billing: input" not in body:
        missing.append(billing_line(billing))
    if not found:
        missing.append(marker)
    if not missing:
        return body
    if ATTRIBUTION_PREFIX not in body:
        return f"{body.strip()}\n\n---\n" + "\n".join(missing)
    return f"{body}\n" + "\n".join(missing)


def build_summary_markdown(
    verdict: str,
    issues: list[str],
    key_findings: list[str],
    model: str,
    multi_file_suggestions: list[str] | None = None,
    review_sha: str | None = None,
    billing: Billing | None = None,
) -> str:
    lines = [
        SUMMARY_HEADING,
        "",
        f"**Verdict:** {verdict}",
        "",
        "### Issues Found",
        "",
        _render_list(issues),
        "",
        "### Key Findings",
        "",
        _render_list(key_findings),
    ]
    suggestions = [s for s in (multi_file_suggestions or []) if s.strip().lower() != "none"]
    if suggestions:
        lines += ["", "### Multi-file Suggestions", "", _render_list(suggestions)]
    lines += ["", "---", f"*{ATTRIBUTION_PREFIX} • model: {model}*"]
    if billing is not None:
        lines.append(billing_line(billing))
    if review_sha:
        lines.append(sha_marker(review_sha))
    return "\n".join(lines)


def _render_list(items: list[str]) -> str:
    if not items:
        return "- None"
    return "\n".join(f"- {item}" for item in items)


# ---------------------------------------------------------------------------
# Reading prior sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriorSummary:
    verdict: str
    url: str
    updated_at: datetime
    body: str


def _newest_issue_comments(comments: Iterable[ExistingComment], needle: str) -> list[ExistingComment]:
    candidates = [c for c in comments if c.type == "issue" and needle in c.body]
    return sorted(candidates, key=lambda c: c.updated_at, reverse=True)


def find_last_reviewed_sha(comments: Iterable[ExistingComment]) -> str | None:
    """Return the SHA from the most recently updated comment carrying our marker."""
    for comment in _newest_issue_comments(comments, _MARKER_PREFIX):
        match = _MARKER_RE.search(comment.body)
        if match:
            return match.group(1)
    return None


def find_last_summary(comments: Iterable[ExistingComment]) -> PriorSummary | None:
    for comment in _newest_issue_comments(comments, SUMMARY_HEADING):
        match = _VERDICT_RE.search(comment.body)
        if match:
            return PriorSummary(verdict=match.group(1), url=comment.url, updated_at=comment.updated_at, body=comment.body)
    return None


# ---------------------------------------------------------------------------
# Terminal notices
# ---------------------------------------------------------------------------


def no_new_changes_body(model: str, review_sha: str, reason: str | None = None) -> str:
    return build_summary_markdown(
        verdict="Skipped",
        issues=[reason or "No new PR-authored changes detected since the last review."],
        key_findings=["Push appears to contain only rebase/merge updates from base branch history."],
        model=model,
        review_sha=review_sha,
    )


def too_many_files_body(model: str, file_count: int, max_files: int) -> str:
    return build_summary_markdown(
        verdict="Skipped",
        issues=[f"PR has {file_count} files after filtering; max allowed is {max_files}."],
        key_findings=["None"],
        model=model,
    )


def failure_body(model: str, reason: str, billing: Billing, review_sha: str) -> str:
    return build_summary_markdown(
        verdict="Skipped",
        issues=[reason],
        key_findings=["None"],
        model=model,
        billing=billing,
        review_sha=review_sha,
    )
