"""scope command: resolve the review scope for a pull request."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from prwarden_core.gh.pull_request import PullRequestGateway
from prwarden_core.session import SKIPPED, TOO_MANY_FILES, start_session

console = Console()

_STATUS_STYLE = {
    "review": "green",
    SKIPPED: "yellow",
    TOO_MANY_FILES: "red",
}


@click.command("scope")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option(
    "--post-notice",
    is_flag=True,
    help="Post the skip notice on the PR when there is nothing to review.",
)
@click.pass_context
def scope_cmd(ctx, repo: str, pr_number: int, post_notice: bool):
    """Show which files a re-run would review, and why.

    Reads the last-reviewed marker from the PR's previous summary, compares it
    with the current head, and prints the decision. Nothing is posted unless
    --post-notice is given.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub personal access token
    """
    config = ctx.obj["config"]
    token = config.get("github_token")
    if not token:
        raise click.UsageError("GITHUB_TOKEN environment variable is not set.")

    gateway = PullRequestGateway.connect(repo, pr_number, token=token)
    result = asyncio.run(start_session(gateway, config, post_notices=post_notice))
    decision = result.scope

    style = _STATUS_STYLE.get(result.status, "white")
    table = Table(title=f"Review scope — {repo}#{pr_number}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Outcome", f"[{style}]{result.status}[/{style}]")
    table.add_row("Decision", decision.decision.value)
    table.add_row("Reason code", decision.reason_code.value)
    table.add_row("Reason", decision.reason)
    if decision.warning:
        table.add_row("Warning", f"[yellow]{decision.warning}[/yellow]")
    if result.session is not None:
        table.add_row("Last reviewed", result.session.last_reviewed_sha or "—")
        table.add_row("Iteration cap", str(result.session.max_iterations))
    table.add_row("Files in scope", str(len(decision.files)))
    if result.notice_id is not None:
        table.add_row("Notice posted", str(result.notice_id))
    console.print(table)

    if result.session is not None:
        for f in result.session.files:
            console.print(f"  [bold]{f.filename}[/bold]  [dim]{f.status} +{f.additions} -{f.deletions}[/dim]")
