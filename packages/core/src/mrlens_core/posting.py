"""Anchor review comments on the diff and post them to the MR.

Inline discussions must carry the exact base/head/start SHAs of the diff
version the comment was made against; stale SHAs make GitLab reject the
discussion or attach it to the wrong line. Comments are only ever anchored on
the new side of the diff.
"""

from __future__ import annotations

import asyncio
import logging

from mrlens_core.models import DiffPosition, DiffVersion, PostingOutcome, ReviewComment

logger = logging.getLogger(__name__)

_SEVERITY_MARKER = {"critical": "🔴", "warning": "🟡", "info": "ℹ️"}


def to_position(comment: ReviewComment, diff_version: DiffVersion) -> DiffPosition | None:
    """Return the inline anchor for comment, or None if its file is not in the diff."""
    diff_file = next(
        (f for f in diff_version.files if comment.file in (f.new_path, f.old_path)),
        None,
    )
    if diff_file is None:
        return None
    return DiffPosition(
        base_sha=diff_version.base_commit_sha,
        head_sha=diff_version.head_commit_sha,
        start_sha=diff_version.start_commit_sha,
        old_path=diff_file.old_path,
        new_path=diff_file.new_path,
        new_line=comment.line,
    )


def format_inline_body(comment: ReviewComment) -> str:
    marker = _SEVERITY_MARKER.get(comment.severity, _SEVERITY_MARKER["info"])
    return f"{marker} **{comment.severity.upper()}**: {comment.body}"


def format_note_body(comment: ReviewComment) -> str:
    return f"**{comment.file}:{comment.line}** – {comment.body}"


async def _post_one(client, project_id, mr_iid: int, comment: ReviewComment, diff_version: DiffVersion) -> bool:
    """Post a single comment. Returns True when it ended up on the MR one way or another."""
    try:
        position = to_position(comment, diff_version)
        if position is None:
            logger.warning("File %r not found in diff, posting as general note", comment.file)
            await client.post_note(project_id, mr_iid, format_note_body(comment))
        else:
            await client.post_inline_discussion(project_id, mr_iid, format_inline_body(comment), position)
        return True
    except Exception as e:
        logger.error("Failed to post comment on %s:%d: %s", comment.file, comment.line, e)

    # Exactly one fallback attempt, then give up on this comment.
    try:
        await client.post_note(project_id, mr_iid, format_note_body(comment))
    except Exception as e:
        logger.error("Fallback note for %s:%d failed too: %s", comment.file, comment.line, e)
        return False
    logger.info("Recovered %s:%d as a general note", comment.file, comment.line)
    return True


async def post_all(
    client,
    project_id,
    mr_iid: int,
    comments: list[ReviewComment],
    diff_version: DiffVersion,
    summary_body: str,
    concurrency: int = 4,
) -> PostingOutcome:
    """Post every comment independently, then the summary note.

    One comment's failure never stops the others. The summary is posted after
    every comment attempt has finished, even when there were no comments or
    all of them failed.
    """
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def _bounded(comment: ReviewComment) -> bool:
        async with semaphore:
            return await _post_one(client, project_id, mr_iid, comment, diff_version)

    results = await asyncio.gather(*(_bounded(c) for c in comments))

    outcome = PostingOutcome()
    for ok in results:
        if ok:
            outcome.posted += 1
        else:
            outcome.failed += 1

    await client.post_note(project_id, mr_iid, summary_body)
    return outcome
