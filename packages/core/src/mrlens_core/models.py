"""Plain data types shared by the gate, the pipeline and the poster.

Every value here lives for one review run at most. Nothing is cached across
runs, so these are dataclasses rather than anything with identity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

SEVERITIES = ("info", "warning", "critical")


@dataclass(frozen=True)
class GitLabUser:
    id: int
    username: str
    name: str = ""


@dataclass(frozen=True)
class ReviewerChange:
    """The ``changes.reviewer_ids`` record of an MR update event."""

    previous: list[int] = field(default_factory=list)
    current: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class MergeRequestEvent:
    object_kind: str
    action: str
    reviewers: list[GitLabUser] = field(default_factory=list)
    # None when the payload carries no reviewer_ids change record at all.
    reviewer_change: ReviewerChange | None = None
    draft: bool = False
    work_in_progress: bool = False
    project_id: int = 0
    project_path: str = ""
    mr_iid: int = 0
    title: str = ""
    description: str = ""
    source_branch: str = ""
    target_branch: str = ""
    url: str = ""
    project_web_url: str = ""
    project_http_url: str = ""


@dataclass(frozen=True)
class DiffFile:
    old_path: str
    new_path: str
    diff: str = ""
    new_file: bool = False
    renamed_file: bool = False
    deleted_file: bool = False
    too_large: bool = False
    collapsed: bool = False

    @property
    def omitted(self) -> bool:
        """True when GitLab left the diff text out of the response."""
        return self.too_large or self.collapsed


@dataclass(frozen=True)
class DiffVersion:
    id: int
    base_commit_sha: str
    head_commit_sha: str
    start_commit_sha: str
    created_at: str = ""
    files: list[DiffFile] = field(default_factory=list)


@dataclass(frozen=True)
class ReviewComment:
    file: str
    line: int
    body: str
    severity: str = "info"


@dataclass
class ReviewResult:
    summary: str
    comments: list[ReviewComment] = field(default_factory=list)


@dataclass(frozen=True)
class DiffPosition:
    base_sha: str
    head_sha: str
    start_sha: str
    old_path: str
    new_path: str
    new_line: int | None = None
    old_line: int | None = None

    def as_payload(self) -> dict:
        """Render the ``position`` object expected by the discussions API."""
        payload = {
            "position_type": "text",
            "base_sha": self.base_sha,
            "head_sha": self.head_sha,
            "start_sha": self.start_sha,
            "old_path": self.old_path,
            "new_path": self.new_path,
        }
        if self.new_line is not None:
            payload["new_line"] = self.new_line
        else:
            payload["old_line"] = self.old_line
        return payload


@dataclass
class PostingOutcome:
    posted: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ReviewInput:
    """Everything the pipeline needs to know about the MR being reviewed."""

    project_id: int | str
    mr_iid: int
    title: str
    source_branch: str
    target_branch: str
    clone_url: str
    web_url: str = ""
    description: str = ""


@dataclass
class ReviewSummary:
    """Result returned by run_review.

    ``status`` is "completed", "no_changes" or "skipped". Failed runs raise
    ReviewError instead of returning a summary.
    """

    project_id: int | str
    mr_iid: int
    status: str
    summary: str = ""
    comments_posted: int = 0
    comments_failed: int = 0
    head_sha: str = ""
    reviewed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
