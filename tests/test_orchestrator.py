"""Unit tests for app.services.orchestrator: concurrent adapters, failure isolation, ordering."""

import asyncio
import unittest
from unittest.mock import AsyncMock

from app.services.orchestrator import ScannerOrchestrator
from app.services.progress import ProgressTracker
from app.services.scanners import AdapterResult
from app.services.source_fetcher import SourceStats, WorkingTree
from tests.support import sast, secret

TREE = WorkingTree(path="/tmp/scan-1-x", stats=SourceStats(file_count=3, line_count=40, byte_size=900))


class FakeAdapter:
    def __init__(self, name: str, kind: str, result: AdapterResult | None = None, error: Exception | None = None) -> None:
        self.name = name
        self.kind = kind
        self._result = result
        self._error = error
        self.calls = 0

    async def run(self, tree: WorkingTree) -> AdapterResult:
        self.calls += 1
        await asyncio.sleep(0)
        if self._error is not None:
            raise self._error
        return self._result


class TestOrchestrator(unittest.TestCase):
    def test_raising_adapter_does_not_fail_the_others(self) -> None:
        semgrep = FakeAdapter("semgrep", "sast", AdapterResult("semgrep", "sast", True, findings=[sast()]))
        gitleaks = FakeAdapter("gitleaks", "secrets", error=RuntimeError("segfault"))
        orchestrator = ScannerOrchestrator({"sast": semgrep, "secrets": gitleaks})

        result = asyncio.run(orchestrator.run(TREE, ["sast", "secrets"]))
        self.assertEqual(len(result.findings), 1)
        self.assertEqual(result.succeeded_kinds, {"sast"})
        self.assertEqual(result.failed_kinds, {"secrets"})
        self.assertEqual([r.scanner for r in result.results], ["gitleaks", "semgrep"])
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("Scanner gitleaks failed: RuntimeError: segfault"))

    def test_failed_adapter_findings_are_discarded(self) -> None:
        partial = AdapterResult("gitleaks", "secrets", False, findings=[secret()], errors=["exit 2"])
        orchestrator = ScannerOrchestrator({"secrets": FakeAdapter("gitleaks", "secrets", partial)})
        result = asyncio.run(orchestrator.run(TREE, ["secrets"]))
        self.assertEqual(result.findings, [])
        self.assertEqual(result.warnings, ["Scanner gitleaks failed: exit 2"])

    def test_mapping_errors_are_warnings_not_failures(self) -> None:
        ok = AdapterResult("semgrep", "sast", True, findings=[sast()], errors=["Skipped semgrep result 3: bad"])
        orchestrator = ScannerOrchestrator({"sast": FakeAdapter("semgrep", "sast", ok)})
        result = asyncio.run(orchestrator.run(TREE, ["sast"]))
        self.assertEqual(result.succeeded_kinds, {"sast"})
        self.assertEqual(result.warnings, ["Scanner semgrep reported 1 error(s)"])

    def test_only_enabled_kinds_run_and_missing_are_reported(self) -> None:
        semgrep = FakeAdapter("semgrep", "sast", AdapterResult("semgrep", "sast", True))
        osv = FakeAdapter("osv", "sca", AdapterResult("osv", "sca", True))
        orchestrator = ScannerOrchestrator({"sast": semgrep, "sca": osv})

        result = asyncio.run(orchestrator.run(TREE, ["sast", "iac"]))
        self.assertEqual((semgrep.calls, osv.calls), (1, 0))
        self.assertEqual(result.missing_kinds, ["iac"])
        self.assertIn("iac", result.failed_kinds)
        self.assertEqual(result.warnings, ["No scanner registered for iac; skipped"])

    def test_progress_reports_every_scanner(self) -> None:
        adapters = {
            "sast": FakeAdapter("semgrep", "sast", AdapterResult("semgrep", "sast", True)),
            "secrets": FakeAdapter("gitleaks", "secrets", AdapterResult("gitleaks", "secrets", True)),
        }
        progress = ProgressTracker(1, sink=AsyncMock())
        asyncio.run(ScannerOrchestrator(adapters).run(TREE, ["sast", "secrets"], progress))
        stages = [e.stage for e in progress.events]
        self.assertEqual(stages.count("scanner_start"), 2)
        self.assertEqual(stages.count("scanner_end"), 2)
        self.assertEqual(progress.events[-1].progress_percent, 75)


if __name__ == "__main__":
    unittest.main()
