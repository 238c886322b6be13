"""Source fetcher: materialize a repository branch as a temporary working tree."""

import asyncio
import logging
import os
import re
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from app.services.errors import (
    EMPTY_REPOSITORY_MESSAGE,
    AuthExpiredError,
    BranchNotFoundError,
    EmptyRepositoryError,
    ScanPipelineError,
    TransientInfraError,
)

logger = logging.getLogger(__name__)

IGNORE_DIRS = frozenset({
    ".git", ".svn", ".hg", "node_modules", "dist", "build", "coverage", ".next",
    "vendor", ".idea", ".vscode", "__pycache__", "target", "bin", "obj",
})

BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".pdf", ".zip", ".tar", ".gz",
    ".mp4", ".mp3", ".mov", ".avi", ".woff", ".woff2", ".ttf", ".eot", ".exe", ".dll",
    ".so", ".dylib", ".class", ".jar", ".psd", ".ai", ".sketch", ".fig", ".sqlite", ".db",
})

# Lines are not counted for files above this size.
MAX_LINE_COUNT_BYTES = 500 * 1024

_CREDENTIALS_IN_URL = re.compile(r"(https?://)[^@/\s]+@")


@dataclass(frozen=True)
class SourceStats:
    file_count: int
    line_count: int
    byte_size: int


@dataclass(frozen=True)
class WorkingTree:
    """A fetched checkout owned by exactly one job execution."""

    path: str
    stats: SourceStats


class SourceFetcher(Protocol):
    async def fetch(self, clone_url: str, branch: str, dest: str) -> SourceStats:
        """
        Populate dest with the branch contents and return its statistics.

        Raises AuthExpiredError, BranchNotFoundError or EmptyRepositoryError for
        conditions retrying will not fix, TransientInfraError otherwise.
        """
        ...


def mask_credentials(text: str) -> str:
    """Replace userinfo in any http(s) URL with ***."""
    return _CREDENTIALS_IN_URL.sub(r"\1***@", text or "")


def _with_token(clone_url: str, token: str | None) -> str:
    if not token:
        return clone_url
    parts = urlsplit(clone_url)
    if parts.scheme not in ("http", "https") or "@" in parts.netloc:
        return clone_url
    netloc = f"x-access-token:{quote(token, safe='')}@{parts.netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def classify_clone_error(stderr: str, branch: str) -> ScanPipelineError:
    """Map git clone stderr to a typed fetch error. stderr must already be masked."""
    lowered = stderr.lower()
    if "remote branch" in lowered and "not found" in lowered:
        return BranchNotFoundError(f"Branch '{branch}' not found in repository.")
    if "couldn't find remote ref" in lowered:
        return BranchNotFoundError(f"Branch '{branch}' not found in repository.")
    if (
        "authentication failed" in lowered
        or "could not read username" in lowered
        or "invalid username or password" in lowered
        or "repository not found" in lowered
        or "403" in lowered
    ):
        return AuthExpiredError(
            "Git host rejected the credentials. Reconnect the integration and try again."
        )
    return TransientInfraError(f"Repository clone failed: {stderr.strip()[-500:]}")


def compute_source_stats(root: str) -> SourceStats:
    """Count scannable text files, lines and bytes; skips VCS/build dirs, dotfiles and binaries."""
    files = lines = size = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORE_DIRS]
        for name in filenames:
            if name.startswith("."):
                continue
            if os.path.splitext(name)[1].lower() in BINARY_EXTENSIONS:
                continue
            full = os.path.join(dirpath, name)
            try:
                file_size = os.path.getsize(full)
                if file_size > MAX_LINE_COUNT_BYTES:
                    files += 1
                    size += file_size
                    continue
                with open(full, "rb") as f:
                    content = f.read()
            except OSError:
                continue
            if b"\0" in content:
                continue
            files += 1
            size += file_size
            lines += content.count(b"\n")
    return SourceStats(file_count=files, line_count=lines, byte_size=size)


class GitSourceFetcher:
    """Shallow single-branch git clone over HTTPS."""

    def __init__(
        self,
        token: str | None = None,
        timeout_sec: float = 300.0,
        git_binary: str = "git",
    ) -> None:
        self._token = token
        self._timeout_sec = timeout_sec
        self._git = git_binary

    async def fetch(self, clone_url: str, branch: str, dest: str) -> SourceStats:
        url = _with_token(clone_url, self._token)
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        logger.info(
            "Cloning repository",
            extra={"clone_url": mask_credentials(clone_url), "branch": branch},
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git, "clone", "--depth", "1", "--single-branch",
                "--branch", branch, url, dest,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise TransientInfraError(f"Could not start git: {e}", cause=e) from e
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_sec)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TransientInfraError(
                f"Repository clone timed out after {int(self._timeout_sec)}s", cause=e
            ) from e

        if proc.returncode != 0:
            message = mask_credentials(stderr.decode("utf-8", errors="replace"))
            raise classify_clone_error(message, branch)

        stats = await asyncio.to_thread(compute_source_stats, dest)
        if stats.file_count == 0:
            raise EmptyRepositoryError(EMPTY_REPOSITORY_MESSAGE)
        return stats


@asynccontextmanager
async def working_tree(
    fetcher: SourceFetcher,
    clone_url: str,
    branch: str,
    parent_dir: str | None = None,
    prefix: str = "scan-",
) -> AsyncIterator[WorkingTree]:
    """Fetch into a fresh temp dir and delete it on every exit path, including cancellation."""
    path = tempfile.mkdtemp(prefix=prefix, dir=parent_dir)
    try:
        stats = await fetcher.fetch(clone_url, branch, path)
        yield WorkingTree(path=path, stats=stats)
    finally:
        await asyncio.to_thread(shutil.rmtree, path, True)
        logger.debug("Removed working tree", extra={"path": path})
