"""Turn the assistant's free-form answer into a ReviewResult.

The assistant is asked for JSON but answers in something natural-language
adjacent: sometimes fenced, sometimes with a preamble, sometimes with fields
of the wrong type. parse_review never raises; the worst case is a result that
carries the raw text as its summary and no inline comments.
"""

from __future__ import annotations

import json
import logging
import re

from mrlens_core.models import SEVERITIES, ReviewComment, ReviewResult

logger = logging.getLogger(__name__)

# One enclosing ``` fence, optionally tagged (```json, ```JSON, ```javascript...).
# Backticks inside string values are left alone.
_FENCE_RE = re.compile(r"\A```[\w+-]*[ \t]*\n?(.*?)\n?```\Z", re.DOTALL)


def strip_fence(raw: str) -> str:
    cleaned = raw.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def _to_comment(candidate) -> ReviewComment | None:
    if not isinstance(candidate, dict):
        return None
    file = candidate.get("file")
    line = candidate.get("line")
    body = candidate.get("body")
    if not isinstance(file, str) or not isinstance(body, str):
        return None
    if isinstance(line, bool):
        return None
    # JSON numbers such as 42.0 decode to float.
    if isinstance(line, float) and line.is_integer():
        line = int(line)
    if not isinstance(line, int):
        return None
    severity = candidate.get("severity")
    if severity not in SEVERITIES:
        severity = "info"
    return ReviewComment(file=file, line=line, body=body, severity=severity)


def parse_review(raw: str) -> ReviewResult:
    text = strip_fence(raw or "")
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        logger.warning("Assistant response is not valid JSON; posting it as the summary: %s", text[:200])
        return ReviewResult(summary=text, comments=[])

    if not isinstance(data, dict) or not isinstance(data.get("summary"), str):
        logger.warning("Assistant response has no string 'summary'; posting it as the summary")
        return ReviewResult(summary=text, comments=[])

    raw_comments = data.get("comments")
    if not isinstance(raw_comments, list):
        raw_comments = []

    comments = []
    for candidate in raw_comments:
        comment = _to_comment(candidate)
        if comment is None:
            logger.debug("Dropping malformed comment: %r", candidate)
            continue
        comments.append(comment)

    return ReviewResult(summary=data["summary"], comments=comments)
