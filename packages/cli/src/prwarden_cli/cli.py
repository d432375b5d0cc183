"""CLI entry point for prwarden.

Commands:
  scope    show what a re-run of the reviewer would look at on a pull request
  threads  list the review threads the reconciler would match comments against
"""

from __future__ import annotations

import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prwarden_cli.commands.scope import scope_cmd
from prwarden_cli.commands.threads import threads_cmd

console = Console(stderr=True)


def setup_logging(debug: bool = False) -> None:
    handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(logging.DEBUG if debug else logging.INFO)

    root = logging.getLogger("prwarden_core")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    # PyGithub logs every request at DEBUG.
    logging.getLogger("github").setLevel(logging.WARNING)


@click.group()
@click.version_option(package_name="prwarden", prog_name="prwarden")
@click.option(
    "--config",
    "config_path",
    default=".prwarden.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRWARDEN_CONFIG",
)
@click.option("--debug", is_flag=True, help="Verbose logging, including every retry decision.")
@click.pass_context
def main(ctx: click.Context, config_path: str, debug: bool):
    """Reconciliation tools for the prwarden pull-request reviewer."""
    from prwarden_core.config import load_config

    ctx.ensure_object(dict)

    config = load_config(config_path, cli_overrides={"debug": True if debug else None})
    setup_logging(bool(config.get("debug")))
    ctx.obj["config"] = config


main.add_command(scope_cmd)
main.add_command(threads_cmd)
