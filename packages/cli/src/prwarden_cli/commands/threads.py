"""threads command: list review threads on a pull request."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from prwarden_core.config import retry_policies
from prwarden_core.gh.pull_request import PullRequestGateway
from prwarden_core.reconciler import ReconciliationState, Reconciler
from prwarden_core.retry import with_retries

console = Console()


async def _load_reconciler(gateway: PullRequestGateway, config: dict) -> Reconciler:
    standard, quota = retry_policies(config)
    retry_kwargs = {"standard": standard, "quota": quota}
    attempts = config.get("retry_attempts", 3)
    comments, threads, threads_from_api = await with_retries(
        gateway.fetch_existing_comments, attempts, description="list existing comments", **retry_kwargs
    )
    state = ReconciliationState.from_listings(comments, threads, threads_from_api)
    return Reconciler(
        state,
        gateway,
        model_id=config.get("model_id") or config.get("model", ""),
        head_sha=gateway.head_sha,
        attempts=attempts,
        retry_kwargs=retry_kwargs,
    )


@click.command("threads")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option("--path", default=None, help="Only threads on this file.")
@click.option("--line", type=int, default=None, help="Only threads anchored on this line.")
@click.option("--side", type=click.Choice(["LEFT", "RIGHT"]), default=None, help="Only threads on this diff side.")
@click.pass_context
def threads_cmd(ctx, repo: str, pr_number: int, path: str | None, line: int | None, side: str | None):
    """List review threads, newest activity first."""
    config = ctx.obj["config"]
    token = config.get("github_token")
    if not token:
        raise click.UsageError("GITHUB_TOKEN environment variable is not set.")

    gateway = PullRequestGateway.connect(repo, pr_number, token=token)
    reconciler = asyncio.run(_load_reconciler(gateway, config))
    threads = reconciler.list_threads(path=path, line=line, side=side)

    if not threads:
        console.print("[yellow]No review threads found.[/yellow]")
        return

    title = f"Review threads — {repo}#{pr_number}"
    if not reconciler.state.threads_from_api:
        title += " (from review comments)"
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Thread", style="bold")
    table.add_column("Location", max_width=50)
    table.add_column("Side", width=6)
    table.add_column("Status", width=16)
    table.add_column("Last activity", width=20)
    table.add_column("By")

    for t in threads:
        flags = [name for name, on in (("resolved", t.resolved), ("outdated", t.is_outdated)) if on]
        table.add_row(
            str(t.id),
            f"{t.path}:{t.line}",
            t.side or "—",
            ", ".join(flags) or "open",
            t.last_updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            t.last_actor,
        )

    console.print(table)
