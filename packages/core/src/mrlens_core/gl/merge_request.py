"""Async facade over python-gitlab for the merge-request calls mrlens makes.

python-gitlab is a blocking SDK, so each call runs in a worker thread via
asyncio.to_thread. The client does not retry; failures surface to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re

import gitlab
from gitlab.exceptions import GitlabError

from mrlens_core.models import DiffFile, DiffPosition, DiffVersion, ReviewInput

logger = logging.getLogger(__name__)

_HEAD_MARKER_RE = re.compile(r"<!-- mrlens-head: ([0-9a-f]{7,64}) -->")


class DiffFetchError(RuntimeError):
    """Listing or loading the MR diff versions failed."""


def head_marker(head_sha: str) -> str:
    return f"<!-- mrlens-head: {head_sha} -->"


def get_gitlab(url: str, token: str):
    return gitlab.Gitlab(url, private_token=token)


def _to_diff_file(raw: dict) -> DiffFile:
    return DiffFile(
        old_path=raw.get("old_path") or raw.get("new_path") or "",
        new_path=raw.get("new_path") or raw.get("old_path") or "",
        diff=raw.get("diff") or "",
        new_file=bool(raw.get("new_file")),
        renamed_file=bool(raw.get("renamed_file")),
        deleted_file=bool(raw.get("deleted_file")),
        too_large=bool(raw.get("too_large")),
        collapsed=bool(raw.get("collapsed")),
    )


def _to_diff_version(attrs: dict) -> DiffVersion:
    return DiffVersion(
        id=attrs["id"],
        base_commit_sha=attrs["base_commit_sha"],
        head_commit_sha=attrs["head_commit_sha"],
        start_commit_sha=attrs["start_commit_sha"],
        created_at=attrs.get("created_at") or "",
        files=[_to_diff_file(d) for d in attrs.get("diffs") or []],
    )


class GitLabClient:
    """The REST operations the review pipeline depends on."""

    def __init__(self, url: str, token: str, gl=None):
        self._gl = gl if gl is not None else get_gitlab(url, token)

    def _mr(self, project_id, mr_iid: int):
        project = self._gl.projects.get(project_id, lazy=True)
        return project.mergerequests.get(mr_iid, lazy=True)

    # ------------------------------------------------------------------ #
    # Diff versions                                                        #
    # ------------------------------------------------------------------ #

    async def list_diff_versions(self, project_id, mr_iid: int) -> list[dict]:
        """Return the metadata of every diff version, newest first."""

        def _list():
            return [v.attributes for v in self._mr(project_id, mr_iid).diffs.list(get_all=True)]

        try:
            versions = await asyncio.to_thread(_list)
        except GitlabError as e:
            raise DiffFetchError(f"Could not list diff versions for MR !{mr_iid}: {e}") from e
        return sorted(versions, key=lambda v: v["id"], reverse=True)

    async def get_diff_version(self, project_id, mr_iid: int, version_id: int) -> DiffVersion:
        def _get():
            return self._mr(project_id, mr_iid).diffs.get(version_id, unidiff=True).attributes

        try:
            attrs = await asyncio.to_thread(_get)
        except GitlabError as e:
            raise DiffFetchError(f"Could not load diff version {version_id} of MR !{mr_iid}: {e}") from e
        return _to_diff_version(attrs)

    async def get_latest_diff_version(self, project_id, mr_iid: int) -> DiffVersion:
        versions = await self.list_diff_versions(project_id, mr_iid)
        if not versions:
            raise DiffFetchError(f"No diff versions found for MR !{mr_iid}")
        return await self.get_diff_version(project_id, mr_iid, versions[0]["id"])

    # ------------------------------------------------------------------ #
    # Notes and discussions                                                #
    # ------------------------------------------------------------------ #

    async def post_note(self, project_id, mr_iid: int, body: str) -> None:
        await asyncio.to_thread(lambda: self._mr(project_id, mr_iid).notes.create({"body": body}))

    async def post_inline_discussion(self, project_id, mr_iid: int, body: str, position: DiffPosition) -> None:
        payload = {"body": body, "position": position.as_payload()}
        await asyncio.to_thread(lambda: self._mr(project_id, mr_iid).discussions.create(payload))

    async def list_note_bodies(self, project_id, mr_iid: int) -> list[str]:
        def _list():
            return [n.body or "" for n in self._mr(project_id, mr_iid).notes.list(get_all=True)]

        return await asyncio.to_thread(_list)

    async def get_reviewed_heads(self, project_id, mr_iid: int) -> set[str]:
        """Head SHAs that already carry an mrlens summary note on this MR."""
        heads = set()
        for body in await self.list_note_bodies(project_id, mr_iid):
            heads.update(_HEAD_MARKER_RE.findall(body))
        return heads

    # ------------------------------------------------------------------ #
    # MR lookup                                                            #
    # ------------------------------------------------------------------ #

    async def get_review_input(self, project_id, mr_iid: int) -> ReviewInput:
        """Resolve everything run_review needs from a project id/path and an MR iid."""

        def _get():
            project = self._gl.projects.get(project_id)
            mr = project.mergerequests.get(mr_iid)
            return project, mr

        project, mr = await asyncio.to_thread(_get)
        return ReviewInput(
            project_id=project.id,
            mr_iid=mr.iid,
            title=mr.title or "",
            description=mr.description or "",
            source_branch=mr.source_branch,
            target_branch=mr.target_branch,
            clone_url=project.http_url_to_repo,
            web_url=mr.web_url or "",
        )
