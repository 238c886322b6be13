"""
CLI entrypoint for the scan worker pool. Run one or more processes, e.g.:

  python -m app.worker

Stops claiming new jobs on SIGINT/SIGTERM and exits once in-flight scans finish.
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from app.core.config import Settings, get_settings
from app.core.database import SessionLocal
from app.services.commit_resolver import GitHubCommitResolver
from app.services.orchestrator import ScannerOrchestrator
from app.services.pipeline import ScanPipeline
from app.services.scanners import default_adapters
from app.services.source_fetcher import GitSourceFetcher
from app.services.worker_pool import WorkerPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def build_pool(settings: Settings) -> WorkerPool:
    """Wire the production collaborators into a worker pool."""
    token = settings.GITHUB_TOKEN.get_secret_value() if settings.GITHUB_TOKEN else None
    pipeline = ScanPipeline(
        session_factory=SessionLocal,
        source_fetcher=GitSourceFetcher(token=token, timeout_sec=settings.GIT_CLONE_TIMEOUT_SEC),
        orchestrator=ScannerOrchestrator(default_adapters(settings.SCANNER_TIMEOUT_SEC)),
        commit_resolver=GitHubCommitResolver.from_settings(settings),
        settings=settings,
    )
    return WorkerPool(SessionLocal, pipeline, settings)


async def _serve(pool: WorkerPool) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still interrupts.
            pass
    await pool.run()


def main() -> int:
    """Run the worker pool until stopped."""
    load_dotenv()
    settings = get_settings()
    pool = build_pool(settings)
    try:
        asyncio.run(_serve(pool))
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.exception("Worker pool crashed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
