"""Core MR review orchestration.

One run per triggering event, strictly sequential:

    FETCHING_DIFF → (NO_CHANGES | ACQUIRING_SOURCE) → REVIEWING → POSTING → DONE

Any exception from a stage moves the run to FAILED: the MR gets one
best-effort note with the error message and ReviewError is raised. The
checkout, if one was acquired, is released exactly once on every path.
"""

from __future__ import annotations

import enum
import logging
import time

from mrlens_core.config import load_guidelines
from mrlens_core.gl.merge_request import GitLabClient, head_marker
from mrlens_core.models import DiffFile, DiffVersion, ReviewInput, ReviewResult, ReviewSummary
from mrlens_core.parsing import parse_review
from mrlens_core.posting import post_all
from mrlens_core.providers.anthropic import AnthropicAssistant
from mrlens_core.providers.claude_cli import ClaudeCliAssistant
from mrlens_core.providers.openai import OpenAIAssistant
from mrlens_core.utils.checkout import DEFAULT_CLONE_TIMEOUT, acquire_checkout
from mrlens_core.utils.code import is_code_file, is_excluded

logger = logging.getLogger(__name__)

BOT_TITLE = "🤖 **mrlens review**"
NO_CHANGES_NOTE = f"{BOT_TITLE}: No file changes detected in this MR."
SUMMARY_HEADING = "## 🤖 mrlens code review"

_SEVERITY_ORDER = ("critical", "warning", "info")


class ReviewStage(enum.Enum):
    FETCHING_DIFF = "fetching diff"
    NO_CHANGES = "no changes"
    ACQUIRING_SOURCE = "acquiring source"
    REVIEWING = "reviewing"
    POSTING = "posting"
    DONE = "done"


class ReviewError(RuntimeError):
    """A review run failed. ``stage`` is where it stopped."""

    def __init__(self, stage: ReviewStage, message: str):
        super().__init__(message)
        self.stage = stage


def get_assistant(config: dict):
    model = config["model"]
    guidelines = load_guidelines(config)
    options = {"guidelines": guidelines, "max_tool_rounds": config.get("max_tool_rounds", 25)}
    if model == "anthropic":
        return AnthropicAssistant(api_key=config["anthropic_api_key"], **options)
    if model == "openai":
        return OpenAIAssistant(api_key=config["openai_api_key"], **options)
    if model == "claude-cli":
        return ClaudeCliAssistant(**options)
    raise ValueError(f"Unknown model provider: {model!r}. Choose 'anthropic', 'openai' or 'claude-cli'.")


def _file_status(diff_file: DiffFile) -> str:
    if diff_file.new_file:
        return " (new file)"
    if diff_file.deleted_file:
        return " (deleted)"
    if diff_file.renamed_file:
        return f" (renamed from {diff_file.old_path})"
    return ""


def build_review_prompt(
    review_input: ReviewInput,
    diff_version: DiffVersion,
    max_chars: int = 20000,
    exclude_patterns: list[str] | None = None,
) -> str:
    """Render the MR metadata and per-file diffs into the user prompt.

    Files whose diff GitLab left out (too large/collapsed), files matching an
    exclude pattern and non-code files are named but not inlined.
    """
    exclude_patterns = exclude_patterns or []
    sections = []
    omitted = []
    for diff_file in diff_version.files:
        path = diff_file.new_path
        if diff_file.omitted or is_excluded(path, exclude_patterns) or not is_code_file(path):
            omitted.append(path)
            continue
        diff = diff_file.diff
        if len(diff) > max_chars:
            diff = diff[:max_chars] + "\n... [diff truncated]"
        sections.append(f"### {path}{_file_status(diff_file)}\n```diff\n{diff}\n```")

    omitted_note = ""
    if omitted:
        omitted_note = (
            f"\n\n> **Note**: {len(omitted)} file(s) were omitted from this diff. "
            f"You can read them directly from the repository: {', '.join(omitted)}"
        )

    return f"""# Merge Request: {review_input.title}
**Branch**: `{review_input.source_branch}` → `{review_input.target_branch}`
**URL**: {review_input.web_url}

## Description
{review_input.description or "(no description)"}

## Changed Files ({len(diff_version.files)} file(s))

{chr(10).join(sections) if sections else "(no inline diffs)"}{omitted_note}

---

Review the changes above. Read related source files, imports, tests and
configuration from the repository before producing your review.

When done, output your review as JSON."""


def _build_summary(result: ReviewResult, diff_version: DiffVersion, elapsed_seconds: float) -> str:
    """Build the summary note posted after the inline comments."""
    file_counts: dict[str, dict[str, int]] = {}
    for c in result.comments:
        counts = file_counts.setdefault(c.file, {s: 0 for s in _SEVERITY_ORDER})
        counts[c.severity] += 1

    elapsed_min = elapsed_seconds / 60
    if elapsed_min < 1:
        time_str = f"{int(elapsed_seconds)}s"
    else:
        time_str = f"{elapsed_min:.1f} min"

    lines = [SUMMARY_HEADING, "", result.summary, ""]

    if file_counts:
        lines.append("| File | Critical | Warning | Info | Total |")
        lines.append("|------|:--------:|:-------:|:----:|:-----:|")
        for path in sorted(file_counts, key=lambda p: sum(file_counts[p].values()), reverse=True):
            fc = file_counts[path]
            lines.append(
                f"| `{path}` "
                f"| {fc['critical'] or '—'} "
                f"| {fc['warning'] or '—'} "
                f"| {fc['info'] or '—'} "
                f"| {sum(fc.values())} |"
            )
        lines.append("")

    lines.append("---")
    lines.append(
        f"_{len(result.comments)} inline comment(s) across {len(diff_version.files)} changed file(s) "
        f"· reviewed in {time_str}_"
    )
    lines.append(head_marker(diff_version.head_commit_sha))
    return "\n".join(lines)


async def _notify_failure(client, project_id, mr_iid: int, error: Exception) -> None:
    """Tell the MR the run failed. A failure here is only debug-logged."""
    message = str(error) or error.__class__.__name__
    try:
        await client.post_note(
            project_id,
            mr_iid,
            f"{BOT_TITLE}: Review failed with an error. Check the job log.\n\n```\n{message}\n```",
        )
    except Exception as e:
        logger.debug("Could not post failure note on MR !%d: %s", mr_iid, e)


async def run_review(
    review_input: ReviewInput,
    config: dict,
    client=None,
    assistant=None,
    checkout=acquire_checkout,
) -> ReviewSummary:
    """Run the full MR review pipeline and return a ReviewSummary.

    ``client``, ``assistant`` and ``checkout`` default to the GitLab client,
    the configured assistant and a shallow git clone; callers may inject
    their own. Raises ReviewError if the run failed.
    """
    if client is None:
        client = GitLabClient(config["gitlab_url"], config["gitlab_token"])

    project_id, mr_iid = review_input.project_id, review_input.mr_iid
    stage = ReviewStage.FETCHING_DIFF
    source = None
    review_start = time.monotonic()
    logger.info("Starting review of MR !%d in project %s", mr_iid, project_id)

    try:
        diff_version = await client.get_latest_diff_version(project_id, mr_iid)
        logger.info("Got %d changed file(s), version %d", len(diff_version.files), diff_version.id)

        if not diff_version.files:
            stage = ReviewStage.NO_CHANGES
            await client.post_note(project_id, mr_iid, NO_CHANGES_NOTE)
            logger.info("No diffs to review on MR !%d", mr_iid)
            return ReviewSummary(
                project_id=project_id,
                mr_iid=mr_iid,
                status="no_changes",
                head_sha=diff_version.head_commit_sha,
            )

        if config.get("skip_reviewed_heads"):
            if diff_version.head_commit_sha in await client.get_reviewed_heads(project_id, mr_iid):
                logger.info("Head %s of MR !%d was already reviewed", diff_version.head_commit_sha[:7], mr_iid)
                return ReviewSummary(
                    project_id=project_id,
                    mr_iid=mr_iid,
                    status="skipped",
                    head_sha=diff_version.head_commit_sha,
                )

        stage = ReviewStage.ACQUIRING_SOURCE
        source = await checkout(
            review_input.clone_url,
            review_input.source_branch,
            config.get("gitlab_token") or "",
            timeout=config.get("clone_timeout", DEFAULT_CLONE_TIMEOUT),
        )

        stage = ReviewStage.REVIEWING
        if assistant is None:
            assistant = get_assistant(config)
        prompt = build_review_prompt(
            review_input,
            diff_version,
            max_chars=config.get("max_chars_per_file", 20000),
            exclude_patterns=config.get("exclude", []),
        )
        logger.info("Sending %d file(s) for review (prompt length: %d chars)", len(diff_version.files), len(prompt))
        raw = await assistant.invoke(prompt, source.root)
        result = parse_review(raw)
        logger.info("Review complete: %d comment(s)", len(result.comments))

        stage = ReviewStage.POSTING
        summary_body = _build_summary(result, diff_version, time.monotonic() - review_start)
        outcome = await post_all(
            client,
            project_id,
            mr_iid,
            result.comments,
            diff_version,
            summary_body,
            concurrency=config.get("post_concurrency", 4),
        )
        stage = ReviewStage.DONE
        logger.info("Done: %d comment(s) posted, %d failed", outcome.posted, outcome.failed)

        return ReviewSummary(
            project_id=project_id,
            mr_iid=mr_iid,
            status="completed",
            summary=result.summary,
            comments_posted=outcome.posted,
            comments_failed=outcome.failed,
            head_sha=diff_version.head_commit_sha,
        )
    except Exception as e:
        logger.error("Review of MR !%d failed while %s: %s", mr_iid, stage.value, e)
        await _notify_failure(client, project_id, mr_iid, e)
        raise ReviewError(stage, str(e) or e.__class__.__name__) from e
    finally:
        if source is not None:
            try:
                await source.release()
            except Exception as e:
                logger.warning("Checkout cleanup failed: %s", e)
