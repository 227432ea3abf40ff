"""webhook command: evaluate a GitLab MR webhook payload and review if triggered.

Lets any transport (a CI trigger, a queue consumer, a thin HTTP shim) hand
the raw body and the X-Gitlab-Token header to the same gate.
"""

from __future__ import annotations

import json

import click
from rich.console import Console

from mrlens_cli.commands.review import execute_review, validate_credentials
from mrlens_core.gl.merge_request import GitLabClient
from mrlens_core.webhook import evaluate_webhook

console = Console()


@click.command("webhook")
@click.argument("payload_file", type=click.File("r"), default="-")
@click.option("--token", default=None, help="Value of the X-Gitlab-Token header.")
@click.option("--dry-run", is_flag=True, help="Only report whether a review would start.")
@click.pass_context
def webhook_cmd(ctx, payload_file, token: str | None, dry_run: bool):
    """Run a merge request webhook payload through the trigger gate.

    Reads the JSON body from PAYLOAD_FILE (stdin by default).
    """
    config = ctx.obj["config"]
    if not config.get("bot_username"):
        raise click.UsageError(
            "bot_username is not configured. Set GITLAB_BOT_USERNAME or bot_username in .mrlens.yml."
        )

    try:
        payload = json.load(payload_file)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON body: {e}[/red]")
        ctx.exit(1)

    decision = evaluate_webhook(payload, token, config)
    if decision.status == "unauthorized":
        console.print("[red]Unauthorized: invalid webhook token.[/red]")
        ctx.exit(1)
    if not decision.triggered:
        console.print(f"[yellow]Event ignored: {decision.reason}.[/yellow]")
        return

    review_input = decision.review_input
    console.print(f"[cyan]Review triggered for !{review_input.mr_iid} ({review_input.title})[/cyan]")
    if dry_run:
        return

    validate_credentials(config)
    client = GitLabClient(config["gitlab_url"], config["gitlab_token"])
    execute_review(ctx, review_input, config, client)
