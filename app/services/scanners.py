"""Scanner adapters: one pluggable unit per tool class, each wrapping an external CLI."""

import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.schemas.findings import Finding
from app.services.scanner_mappers import (
    MappingResult,
    map_checkov_report,
    map_gitleaks_report,
    map_osv_report,
    map_semgrep_report,
    map_trivy_report,
)
from app.services.source_fetcher import IGNORE_DIRS, WorkingTree

logger = logging.getLogger(__name__)

# Container definitions trivy is pointed at; searched at most this deep.
CONTAINER_FILES = frozenset({"Dockerfile", "docker-compose.yml", "docker-compose.yaml"})
CONTAINER_SEARCH_DEPTH = 5

# Keep the tail of stderr in adapter errors; tools can be very chatty.
_STDERR_TAIL = 500


@dataclass
class AdapterResult:
    """Outcome of one adapter run. A failed adapter carries zero findings."""

    scanner: str
    kind: str
    success: bool
    findings: list[Finding] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


class ScannerAdapter(Protocol):
    name: str
    kind: str

    async def run(self, tree: WorkingTree) -> AdapterResult: ...


class ScannerToolError(Exception):
    """The tool could not produce a usable report (missing, crashed, timed out, bad output)."""


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class SubprocessScanner:
    """
    Base for adapters that run a CLI inside the working tree and parse a JSON report.

    Subclasses set name, kind and binary, build the argument list and map the
    parsed report. Reports are read from report_path when the tool writes one,
    otherwise from stdout.
    """

    name = ""
    kind = ""
    binary = ""
    ok_exit_codes: tuple[int, ...] = (0,)

    def __init__(self, timeout_sec: float = 300.0) -> None:
        self.timeout_sec = timeout_sec

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        raise NotImplementedError

    def map_report(self, report: Any, tree: WorkingTree) -> MappingResult:
        raise NotImplementedError

    async def run(self, tree: WorkingTree) -> AdapterResult:
        start = time.perf_counter()
        try:
            mapped = await self._scan(tree)
        except ScannerToolError as e:
            logger.warning(
                "Scanner failed: %s",
                e,
                extra={"scanner": self.name, "kind": self.kind},
            )
            return AdapterResult(
                scanner=self.name,
                kind=self.kind,
                success=False,
                errors=[str(e)],
                duration_ms=_elapsed_ms(start),
            )
        return AdapterResult(
            scanner=self.name,
            kind=self.kind,
            success=True,
            findings=mapped.findings,
            errors=mapped.errors,
            duration_ms=_elapsed_ms(start),
        )

    async def _scan(self, tree: WorkingTree) -> MappingResult:
        executable = shutil.which(self.binary)
        if executable is None:
            raise ScannerToolError(f"{self.binary} not installed")
        with tempfile.TemporaryDirectory(prefix=f"{self.name}-") as report_dir:
            report_path = os.path.join(report_dir, "report.json")
            stdout = await self._execute(executable, self.build_args(tree, report_path), tree.path)
            report = self._load_report(stdout, report_path)
        return self.map_report(report, tree)

    async def _execute(self, executable: str, args: list[str], cwd: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ScannerToolError(f"{self.binary} could not be started: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ScannerToolError(f"{self.binary} timed out after {int(self.timeout_sec)}s") from e
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        if proc.returncode not in self.ok_exit_codes:
            tail = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]
            raise ScannerToolError(f"{self.binary} exited with code {proc.returncode}: {tail}")
        return stdout

    def _load_report(self, stdout: bytes, report_path: str) -> Any:
        raw: bytes = stdout
        if os.path.exists(report_path):
            with open(report_path, "rb") as f:
                raw = f.read()
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ScannerToolError(f"{self.binary} produced unparsable output: {e}") from e


class SemgrepScanner(SubprocessScanner):
    name = "semgrep"
    kind = "sast"
    binary = "semgrep"

    def __init__(self, timeout_sec: float = 300.0, config: str = "p/default") -> None:
        super().__init__(timeout_sec)
        self.config = config

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        return [
            "scan", "--config", self.config, "--json", "--quiet",
            "--metrics", "off", "--output", report_path, ".",
        ]

    def map_report(self, report: Any, tree: WorkingTree) -> MappingResult:
        mapped = map_semgrep_report(report if isinstance(report, dict) else {}, tree.path)
        for err in (report.get("errors") or []) if isinstance(report, dict) else []:
            if isinstance(err, dict) and err.get("level") == "error":
                mapped.errors.append(str(err.get("message") or err.get("type"))[:_STDERR_TAIL])
        return mapped


class OsvScanner(SubprocessScanner):
    name = "osv"
    kind = "sca"
    binary = "osv-scanner"
    # 1: vulnerabilities found, 128: no package sources found
    ok_exit_codes = (0, 1, 128)

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        return ["--format", "json", "--output", report_path, "--recursive", "."]

    def map_report(self, report: Any, tree: WorkingTree) -> MappingResult:
        return map_osv_report(report if isinstance(report, dict) else {}, tree.path)


class GitleaksScanner(SubprocessScanner):
    name = "gitleaks"
    kind = "secrets"
    binary = "gitleaks"

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        return [
            "detect", "--source", ".", "--no-git", "--no-banner",
            "--report-format", "json", "--report-path", report_path,
            "--exit-code", "0",
        ]

    def map_report(self, report: Any, tree: WorkingTree) -> MappingResult:
        return map_gitleaks_report(report if isinstance(report, list) else [], tree.path)


class CheckovScanner(SubprocessScanner):
    name = "checkov"
    kind = "iac"
    binary = "checkov"

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        return ["--directory", ".", "--output", "json", "--quiet", "--soft-fail", "--compact"]

    def map_report(self, report: Any, tree: WorkingTree) -> MappingResult:
        return map_checkov_report(report, tree.path)


def find_container_files(root: str, max_depth: int = CONTAINER_SEARCH_DEPTH) -> list[str]:
    """Relative paths of Dockerfiles and compose files, sorted."""
    found: list[str] = []
    root = root.rstrip(os.sep)
    base_depth = root.count(os.sep)
    for dirpath, dirnames, filenames in os.walk(root):
        if dirpath.count(os.sep) - base_depth >= max_depth:
            dirnames[:] = []
        dirnames[:] = [d for d in dirnames if d not in IGNORE_DIRS and not d.startswith(".")]
        for name in filenames:
            if name in CONTAINER_FILES:
                found.append(os.path.relpath(os.path.join(dirpath, name), root).replace(os.sep, "/"))
    return sorted(found)


class TrivyScanner(SubprocessScanner):
    """Filesystem scan of every directory holding a container definition."""

    name = "trivy"
    kind = "container"
    binary = "trivy"

    def build_args(self, tree: WorkingTree, report_path: str) -> list[str]:
        return ["filesystem", "--format", "json", "--quiet", "--output", report_path, "."]

    async def _scan(self, tree: WorkingTree) -> MappingResult:
        executable = shutil.which(self.binary)
        if executable is None:
            raise ScannerToolError(f"{self.binary} not installed")
        out = MappingResult()
        for container_file in await asyncio.to_thread(find_container_files, tree.path):
            target_dir = os.path.join(tree.path, os.path.dirname(container_file))
            with tempfile.TemporaryDirectory(prefix=f"{self.name}-") as report_dir:
                report_path = os.path.join(report_dir, "report.json")
                try:
                    stdout = await self._execute(
                        executable, self.build_args(tree, report_path), target_dir
                    )
                    report = self._load_report(stdout, report_path)
                except ScannerToolError as e:
                    # One unscannable image context does not void the others.
                    out.errors.append(f"{container_file}: {e}")
                    continue
            mapped = map_trivy_report(report if isinstance(report, dict) else {}, container_file)
            out.findings.extend(mapped.findings)
            out.errors.extend(mapped.errors)
        return out


def default_adapters(timeout_sec: float = 300.0) -> dict[str, ScannerAdapter]:
    """One adapter per scanner kind."""
    adapters: list[ScannerAdapter] = [
        SemgrepScanner(timeout_sec),
        OsvScanner(timeout_sec),
        GitleaksScanner(timeout_sec),
        CheckovScanner(timeout_sec),
        TrivyScanner(timeout_sec),
    ]
    return {a.kind: a for a in adapters}
