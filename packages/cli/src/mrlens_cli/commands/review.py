"""review command: run the review pipeline on one merge request."""

from __future__ import annotations

import asyncio

import click
from gitlab.exceptions import GitlabError
from rich.console import Console

from mrlens_core.gl.merge_request import GitLabClient
from mrlens_core.models import ReviewInput, ReviewSummary
from mrlens_core.reviewer import ReviewError, run_review

console = Console()

_REQUIRED_KEYS = {
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
}


def validate_credentials(config: dict) -> None:
    """Raise click.UsageError for any credential the configured run needs."""
    if not config.get("gitlab_token"):
        raise click.UsageError("GITLAB_TOKEN environment variable is not set.")
    required = _REQUIRED_KEYS.get(config["model"])
    if required and not config.get(required[0]):
        raise click.UsageError(f"{required[1]} environment variable is not set.")


def print_summary(summary: ReviewSummary) -> None:
    if summary.status == "no_changes":
        console.print("[yellow]No file changes detected. Nothing to review.[/yellow]")
        return
    if summary.status == "skipped":
        console.print(f"[yellow]Head {summary.head_sha[:7]} was already reviewed. Nothing to do.[/yellow]")
        return
    color = "red" if summary.comments_failed else "green"
    console.print(
        f"\n[{color}]Review posted on !{summary.mr_iid}: "
        f"{summary.comments_posted} comment(s) posted, {summary.comments_failed} failed.[/{color}]"
    )


def execute_review(ctx: click.Context, review_input: ReviewInput, config: dict, client: GitLabClient) -> None:
    """Run the pipeline and map its outcome onto the process exit code."""
    try:
        summary = asyncio.run(run_review(review_input, config, client=client))
    except ReviewError as e:
        console.print(f"[red]Review failed while {e.stage.value}: {e}[/red]")
        ctx.exit(1)

    print_summary(summary)
    if summary.comments_failed > 0:
        ctx.exit(1)


@click.command("review")
@click.option("--project", required=True, help="GitLab project id or path (group/name).")
@click.option("--mr", "mr_iid", type=int, required=True, help="Merge request IID.")
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai", "claude-cli"]),
    default=None,
    help="Assistant provider. Overrides config file.",
)
@click.option(
    "--guidelines",
    "guidelines_path",
    default=None,
    help="Path to a Markdown guidelines file. Overrides config file.",
)
@click.pass_context
def review_cmd(ctx, project: str, mr_iid: int, model: str | None, guidelines_path: str | None):
    """Review a merge request and post the results as MR comments.

    \b
    Required environment variables:
      GITLAB_TOKEN         Token with `api` scope for the bot account
      ANTHROPIC_API_KEY    Required when using --model anthropic
      OPENAI_API_KEY       Required when using --model openai
    """
    config = dict(ctx.obj["config"])
    for key, value in (("model", model), ("guidelines", guidelines_path)):
        if value is not None:
            config[key] = value
    validate_credentials(config)

    project_ref = int(project) if project.isdigit() else project
    client = GitLabClient(config["gitlab_url"], config["gitlab_token"])

    try:
        review_input = asyncio.run(client.get_review_input(project_ref, mr_iid))
    except GitlabError as e:
        raise click.ClickException(f"Could not load MR !{mr_iid} of {project}: {e}")

    console.print(f"[bold]!{review_input.mr_iid}[/bold] {review_input.title}")
    console.print(f"[dim]{review_input.source_branch} → {review_input.target_branch}[/dim]")
    execute_review(ctx, review_input, config, client)
