"""CLI entry point for mrlens.

Commands:
  review   review one merge request now (CI job or manual run)
  webhook  feed a GitLab webhook payload through the trigger gate and
           review the MR if the bot was just added as a reviewer
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from mrlens_cli.commands.review import review_cmd
from mrlens_cli.commands.webhook import webhook_cmd

console = Console()

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # python-gitlab and the SDKs log every HTTP request at INFO.
    for noisy in ("urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@click.group()
@click.version_option(
    version=importlib.metadata.version("mrlens"),
    prog_name="mrlens",
)
@click.option(
    "--config",
    "config_path",
    default=".mrlens.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="MRLENS_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging verbosity. Overrides config file.",
)
@click.pass_context
def main(ctx: click.Context, config_path: str, log_level: str | None):
    """AI-powered GitLab merge request reviewer."""
    from mrlens_core.config import load_config

    ctx.ensure_object(dict)

    # Built once here; every command and component receives it explicitly.
    config = load_config(config_path, cli_overrides={"log_level": log_level})
    _configure_logging(config.get("log_level") or "INFO")
    ctx.obj["config"] = config


main.add_command(review_cmd)
main.add_command(webhook_cmd)
