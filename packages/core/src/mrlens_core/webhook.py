"""GitLab merge-request webhook handling: authenticity, validation, trigger gate.

Nothing in this module performs I/O. ``evaluate_webhook`` can be called from an
HTTP handler, a CI job or the CLI without modification.

A review fires only when the bot account is *newly* added as a reviewer of a
non-draft MR. GitLab reports reviewer changes as ``action: "update"`` and, in
most payload shapes, includes ``changes.reviewer_ids.{previous,current}``.
Comparing the two lists is what stops every later title edit or label change
on an MR that still lists the bot from starting another review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mrlens_core.models import GitLabUser, MergeRequestEvent, ReviewerChange, ReviewInput

logger = logging.getLogger(__name__)

MERGE_REQUEST_KIND = "merge_request"
UPDATE_ACTION = "update"


class InvalidEventError(ValueError):
    """The payload claims to be a merge_request event but does not have its shape."""


@dataclass
class WebhookDecision:
    status: str  # "unauthorized" | "ignored" | "triggered"
    reason: str
    review_input: ReviewInput | None = None

    @property
    def triggered(self) -> bool:
        return self.status == "triggered"


def verify_token(header_token: str | None, secret: str | None) -> bool:
    """Check the ``X-Gitlab-Token`` header against the configured secret.

    GitLab sends the secret as plain text, not an HMAC. With no secret
    configured verification is disabled and every request passes.
    """
    if not secret:
        return True
    return header_token == secret


def _require(mapping: dict, key: str, kind: type):
    value = mapping.get(key)
    # bool is an int subclass; an id of True is a malformed payload.
    if not isinstance(value, kind) or isinstance(value, bool):
        raise InvalidEventError(f"field {key!r} missing or not {kind.__name__}")
    return value


def _id_list(values) -> list[int]:
    if values is None:
        return []
    if not isinstance(values, list) or not all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        raise InvalidEventError("reviewer_ids change must hold lists of integer ids")
    return list(values)


def _parse_user(raw) -> GitLabUser:
    if not isinstance(raw, dict):
        raise InvalidEventError("reviewer entry is not an object")
    return GitLabUser(
        id=_require(raw, "id", int),
        username=_require(raw, "username", str),
        name=raw.get("name") or "",
    )


def parse_event(payload) -> MergeRequestEvent:
    """Convert a decoded webhook body into a MergeRequestEvent.

    Payloads of other kinds (push, note, pipeline...) are returned as a bare
    event carrying only their kind so the gate can reject them. A payload that
    says it is a merge_request but lacks the required fields raises
    InvalidEventError.
    """
    if not isinstance(payload, dict):
        raise InvalidEventError("webhook payload is not a JSON object")

    object_kind = payload.get("object_kind")
    if not isinstance(object_kind, str):
        raise InvalidEventError("field 'object_kind' missing or not str")
    if object_kind != MERGE_REQUEST_KIND:
        return MergeRequestEvent(object_kind=object_kind, action=str(payload.get("action") or ""))

    attrs = payload.get("object_attributes")
    project = payload.get("project")
    if not isinstance(attrs, dict):
        raise InvalidEventError("field 'object_attributes' missing or not an object")
    if not isinstance(project, dict):
        raise InvalidEventError("field 'project' missing or not an object")

    reviewers_raw = payload.get("reviewers") or []
    if not isinstance(reviewers_raw, list):
        raise InvalidEventError("field 'reviewers' is not a list")

    reviewer_change = None
    changes = payload.get("changes") or {}
    if isinstance(changes, dict) and isinstance(changes.get("reviewer_ids"), dict):
        raw_change = changes["reviewer_ids"]
        reviewer_change = ReviewerChange(
            previous=_id_list(raw_change.get("previous")),
            current=_id_list(raw_change.get("current")),
        )

    return MergeRequestEvent(
        object_kind=object_kind,
        action=attrs.get("action") or "",
        reviewers=[_parse_user(r) for r in reviewers_raw],
        reviewer_change=reviewer_change,
        draft=bool(attrs.get("draft")),
        work_in_progress=bool(attrs.get("work_in_progress")),
        project_id=_require(project, "id", int),
        project_path=project.get("path_with_namespace") or "",
        mr_iid=_require(attrs, "iid", int),
        title=attrs.get("title") or "",
        description=attrs.get("description") or "",
        source_branch=_require(attrs, "source_branch", str),
        target_branch=_require(attrs, "target_branch", str),
        url=attrs.get("url") or "",
        project_web_url=project.get("web_url") or "",
        project_http_url=project.get("git_http_url") or project.get("http_url") or "",
    )


def should_trigger(event: MergeRequestEvent, bot_username: str) -> bool:
    """Decide whether this event must start a review."""
    if event.object_kind != MERGE_REQUEST_KIND:
        logger.info("Ignoring non-MR event: %s", event.object_kind)
        return False

    # Reviewer changes arrive as "update"; open/close/merge never trigger.
    if event.action != UPDATE_ACTION:
        logger.info("Ignoring MR action: %s", event.action)
        return False

    if event.draft or event.work_in_progress:
        logger.info("Ignoring draft MR !%d", event.mr_iid)
        return False

    bot = next((r for r in event.reviewers if r.username == bot_username), None)
    if bot is None:
        logger.info("Bot user %s not found in reviewers of !%d", bot_username, event.mr_iid)
        return False

    change = event.reviewer_change
    if change is not None:
        if bot.id in change.previous or bot.id not in change.current:
            logger.info("Bot was not newly added as reviewer of !%d", event.mr_iid)
            return False

    logger.info("Review triggered for MR !%d in %s", event.mr_iid, event.project_path)
    return True


def review_input_from_event(event: MergeRequestEvent) -> ReviewInput:
    url = event.url or (f"{event.project_web_url}/-/merge_requests/{event.mr_iid}" if event.project_web_url else "")
    return ReviewInput(
        project_id=event.project_id,
        mr_iid=event.mr_iid,
        title=event.title,
        description=event.description,
        source_branch=event.source_branch,
        target_branch=event.target_branch,
        clone_url=event.project_http_url,
        web_url=url,
    )


def evaluate_webhook(payload, header_token: str | None, config: dict) -> WebhookDecision:
    """Run the full inbound check: token, shape, then the trigger gate."""
    if not verify_token(header_token, config.get("webhook_secret")):
        logger.warning("Rejected webhook with invalid token")
        return WebhookDecision("unauthorized", "invalid webhook token")

    try:
        event = parse_event(payload)
    except InvalidEventError as e:
        logger.info("Ignoring malformed webhook payload: %s", e)
        return WebhookDecision("ignored", f"invalid payload: {e}")

    if not should_trigger(event, config.get("bot_username") or ""):
        return WebhookDecision("ignored", "review not triggered")

    return WebhookDecision("triggered", "bot added as reviewer", review_input_from_event(event))
