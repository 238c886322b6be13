"""Error taxonomy for the scan pipeline.

The worker decides retry vs. terminal failure from the exception class alone:
TransientInfraError is retried with backoff, everything else fails the job.
"""


class ScanPipelineError(Exception):
    """Base class for errors raised while executing a scan job."""

    retryable = False

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class TransientInfraError(ScanPipelineError):
    """Infrastructure hiccup (network, git host, database connection); safe to retry."""

    retryable = True


class PipelineFatalError(ScanPipelineError):
    """Failure that must not be retried because side effects may already have happened."""


class UnificationError(PipelineFatalError):
    """Unified vulnerability or instance upsert failed; job counts would be wrong."""


class SourceFetchError(ScanPipelineError):
    """Source could not be fetched for a reason retrying will not fix."""

    reason = "fetch_failed"


class AuthExpiredError(SourceFetchError):
    """Git host rejected the credentials (expired token or disconnected integration)."""

    reason = "auth_expired"


class BranchNotFoundError(SourceFetchError):
    """Requested branch does not exist in the repository."""

    reason = "branch_not_found"


class EmptyRepositoryError(SourceFetchError):
    """Repository has no files to scan. Surfaced as a failed job, not a crash."""

    reason = "empty_repository"


class JobCancelledError(ScanPipelineError):
    """Job was cancelled or superseded while it was running."""


EMPTY_REPOSITORY_MESSAGE = "Repository is empty. Please add code files and try again."
