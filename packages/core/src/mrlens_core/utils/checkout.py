"""Shallow clone of the MR source branch into a private temporary directory.

The directory belongs to exactly one review run. acquire_checkout either
returns a Checkout whose release() removes it, or raises CheckoutError after
removing whatever it had created.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_CLONE_TIMEOUT = 120


class CheckoutError(RuntimeError):
    """Clone failed: auth, missing branch, timeout, disk, or git not installed."""


def build_auth_url(http_url: str, token: str) -> str:
    """Embed the token as ``oauth2:<token>`` userinfo for HTTPS clones."""
    parts = urlsplit(http_url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"oauth2:{token}@{host}", parts.path, parts.query, parts.fragment))


def _redact(text: str, token: str) -> str:
    return text.replace(token, "***") if token else text


def _remove_tree(path: str) -> None:
    # Tolerates a path that is already gone.
    shutil.rmtree(path, ignore_errors=True)


class Checkout:
    """A cloned working tree plus the capability to remove it."""

    def __init__(self, root: str):
        self.root = root
        self._released = False

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        logger.info("Cleaning up %s", self.root)
        await asyncio.to_thread(_remove_tree, self.root)


async def acquire_checkout(
    http_url: str,
    branch: str,
    token: str,
    timeout: float = DEFAULT_CLONE_TIMEOUT,
) -> Checkout:
    root = tempfile.mkdtemp(prefix="mrlens-review-")
    auth_url = build_auth_url(http_url, token) if token else http_url
    logger.info("Cloning %s (branch: %s) into %s", http_url, branch, root)

    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "clone",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            branch,
            auth_url,
            root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CheckoutError(f"Failed to clone repository: timed out after {timeout}s")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode != 0:
            message = _redact(stderr.decode("utf-8", errors="replace").strip(), token)
            raise CheckoutError(f"Failed to clone repository: git exited with {proc.returncode}: {message}")
    except (CheckoutError, asyncio.CancelledError):
        _remove_tree(root)
        raise
    except OSError as e:
        # git missing from PATH, disk full, permission denied.
        _remove_tree(root)
        raise CheckoutError(f"Failed to clone repository: {_redact(str(e), token)}") from e

    logger.info("Clone complete: %s", root)
    return Checkout(root)
