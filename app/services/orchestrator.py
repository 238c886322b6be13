"""Scanner orchestrator: run enabled adapters concurrently and aggregate their results."""

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from app.schemas.findings import SCANNER_KINDS, Finding
from app.services.progress import ProgressTracker
from app.services.scanners import AdapterResult, ScannerAdapter
from app.services.source_fetcher import WorkingTree

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationResult:
    findings: list[Finding] = field(default_factory=list)
    results: list[AdapterResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Enabled kinds with no registered adapter
    missing_kinds: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def succeeded_kinds(self) -> set[str]:
        return {r.kind for r in self.results if r.success}

    @property
    def failed_kinds(self) -> set[str]:
        return {r.kind for r in self.results if not r.success} | set(self.missing_kinds)


class ScannerOrchestrator:
    """
    Runs one adapter per enabled scanner kind against a working tree.

    A failing adapter, whether it reports failure or raises, contributes zero
    findings and a warning; it never fails the orchestration. Results are
    sorted by scanner name so downstream processing is deterministic.
    """

    def __init__(self, adapters: Mapping[str, ScannerAdapter]) -> None:
        self._adapters = dict(adapters)

    def _select(self, enabled_kinds: Iterable[str]) -> tuple[list[ScannerAdapter], list[str]]:
        enabled = set(enabled_kinds)
        selected: list[ScannerAdapter] = []
        missing: list[str] = []
        for kind in SCANNER_KINDS:
            if kind not in enabled:
                continue
            adapter = self._adapters.get(kind)
            if adapter is None:
                missing.append(kind)
            else:
                selected.append(adapter)
        return selected, missing

    async def _run_adapter(
        self,
        adapter: ScannerAdapter,
        tree: WorkingTree,
        progress: ProgressTracker | None,
    ) -> AdapterResult:
        if progress is not None:
            await progress.scanner_started(adapter.name)
        start = time.perf_counter()
        try:
            result = await adapter.run(tree)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Scanner raised: %s",
                e,
                exc_info=True,
                extra={"scanner": adapter.name, "kind": adapter.kind},
            )
            result = AdapterResult(
                scanner=adapter.name,
                kind=adapter.kind,
                success=False,
                errors=[f"{type(e).__name__}: {e}"],
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
        if not result.success:
            # A failed adapter never contributes partial findings.
            result.findings = []
        if progress is not None:
            await progress.scanner_finished(adapter.name)
        logger.info(
            "Scanner completed",
            extra={
                "scanner": result.scanner,
                "success": result.success,
                "findings_count": len(result.findings),
                "error_count": len(result.errors),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def run(
        self,
        tree: WorkingTree,
        enabled_kinds: Iterable[str],
        progress: ProgressTracker | None = None,
    ) -> OrchestrationResult:
        start = time.perf_counter()
        adapters, missing = self._select(enabled_kinds)
        out = OrchestrationResult(missing_kinds=missing)
        for kind in missing:
            out.warnings.append(f"No scanner registered for {kind}; skipped")

        if not adapters:
            logger.warning("No scanners enabled", extra={"path": tree.path})
            return out

        if progress is not None:
            progress.start_scanners(len(adapters))
        results = await asyncio.gather(
            *(self._run_adapter(a, tree, progress) for a in adapters)
        )
        out.results = sorted(results, key=lambda r: r.scanner)

        for result in out.results:
            out.findings.extend(result.findings)
            if not result.success:
                reason = result.errors[0] if result.errors else "unknown error"
                out.warnings.append(f"Scanner {result.scanner} failed: {reason}")
            elif result.errors:
                out.warnings.append(
                    f"Scanner {result.scanner} reported {len(result.errors)} error(s)"
                )
        out.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Scanners finished",
            extra={
                "scanner_count": len(out.results),
                "findings_count": len(out.findings),
                "failed_kinds": sorted(out.failed_kinds),
                "duration_ms": out.duration_ms,
            },
        )
        return out
