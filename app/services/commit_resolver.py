"""Resolve the head commit of a branch, falling back to a synthetic daily identifier."""

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

import httpx

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

_SHA_LENGTHS = (40, 64)


class CommitResolutionError(Exception):
    """Raised when the Git host cannot resolve a branch head."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


@dataclass(frozen=True)
class ResolvedCommit:
    sha: str
    synthetic: bool = False


class CommitResolver(Protocol):
    async def resolve(self, full_name: str, branch: str) -> ResolvedCommit: ...


def _utc_today() -> date:
    return datetime.now(UTC).date()


def synthetic_commit_id(full_name: str, branch: str, day: date) -> str:
    """
    Deterministic stand-in for a commit sha: same repository, branch and UTC day
    give the same id, so same-day rescans still hit the cache while a new day
    forces a fresh run.
    """
    return hashlib.sha256(f"{full_name}:{branch}:{day.isoformat()}".encode("utf-8")).hexdigest()


class GitHubCommitResolver:
    """GET /repos/{owner}/{repo}/commits/{branch} on the GitHub REST API."""

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: str | None = None,
        timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._token = token
        self._timeout = httpx.Timeout(timeout_sec)
        self._transport = transport
        self._today = today

    @classmethod
    def from_settings(cls, settings: "Settings") -> "GitHubCommitResolver":
        token = settings.GITHUB_TOKEN.get_secret_value() if settings.GITHUB_TOKEN else None
        return cls(
            api_url=settings.GITHUB_API_URL,
            token=token,
            timeout_sec=settings.GITHUB_REQUEST_TIMEOUT_SEC,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def fetch_head_sha(self, full_name: str, branch: str) -> str:
        """Raises CommitResolutionError on transport errors, non-200 responses or bad payloads."""
        url = f"{self._api_url}/repos/{full_name}/commits/{quote(branch, safe='')}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            raise CommitResolutionError("Git host request timed out", cause=e) from e
        except httpx.HTTPError as e:
            raise CommitResolutionError("Git host request failed", cause=e) from e

        if response.status_code != 200:
            raise CommitResolutionError(
                f"Git host returned status {response.status_code} for {full_name}@{branch}"
            )
        try:
            sha = response.json().get("sha")
        except ValueError as e:
            raise CommitResolutionError("Git host returned invalid JSON", cause=e) from e
        if not isinstance(sha, str) or len(sha) not in _SHA_LENGTHS:
            raise CommitResolutionError("Git host response has no commit sha")
        return sha.lower()

    async def resolve(self, full_name: str, branch: str) -> ResolvedCommit:
        """Never raises: an unresolvable head yields the synthetic daily identifier."""
        try:
            sha = await self.fetch_head_sha(full_name, branch)
            return ResolvedCommit(sha=sha, synthetic=False)
        except CommitResolutionError as e:
            synthetic = synthetic_commit_id(full_name, branch, self._today())
            logger.warning(
                "Commit resolution failed, using synthetic commit id: %s",
                e.message,
                extra={"repository": full_name, "branch": branch, "commit_sha": synthetic[:7]},
            )
            return ResolvedCommit(sha=synthetic, synthetic=True)
