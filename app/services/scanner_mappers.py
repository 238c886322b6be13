"""Map scanner-specific JSON report shapes to typed Finding variants."""

import logging
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from app.schemas.findings import (
    ContainerFinding,
    Finding,
    IacFinding,
    SastFinding,
    ScaFinding,
    SecretFinding,
)
from app.services.normalize import (
    extract_cve,
    normalize_advisory_id,
    normalize_path,
    normalize_severity,
)

logger = logging.getLogger(__name__)

# Report keys that would leak the detected secret into storage.
_GITLEAKS_REDACTED_KEYS = frozenset({"Secret", "Match", "Line"})

# Textual confidence labels (semgrep metadata) -> 0..1.
_CONFIDENCE_LABELS = {"high": 0.9, "medium": 0.6, "low": 0.3}


class MappingResult:
    """Findings mapped from one report plus per-item mapping errors."""

    def __init__(self) -> None:
        self.findings: list[Finding] = []
        self.errors: list[str] = []

    def add(self, build: Callable[[], Finding], item_ref: str) -> None:
        try:
            self.findings.append(build())
        except (ValidationError, TypeError, ValueError, KeyError) as e:
            self.errors.append(f"Skipped {item_ref}: {e}")


def _str_or_none(value: Any) -> str | None:
    """Return string or None; coerce non-str to str if sensible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return str(value).strip() or None


def _int_or_zero(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _float_or_none(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _confidence(value: Any) -> float | None:
    if isinstance(value, (int, float)):
        return float(value) if 0 <= value <= 1 else None
    label = _str_or_none(value)
    return _CONFIDENCE_LABELS.get(label.lower()) if label else None


def map_semgrep_report(report: dict[str, Any], root: str | None = None) -> MappingResult:
    """Semgrep --json: results[] with check_id, path, start/end and extra.{message,severity,metadata}."""
    out = MappingResult()
    for i, obj in enumerate(report.get("results") or []):
        if not isinstance(obj, dict):
            continue
        extra = obj.get("extra") if isinstance(obj.get("extra"), dict) else {}
        meta = extra.get("metadata") if isinstance(extra.get("metadata"), dict) else {}
        cwe = meta.get("cwe") or []
        if isinstance(cwe, str):
            cwe = [cwe]
        rule_id = _str_or_none(obj.get("check_id")) or "unknown"
        message = _str_or_none(extra.get("message")) or rule_id

        def build(obj=obj, extra=extra, meta=meta, cwe=cwe, rule_id=rule_id, message=message) -> Finding:
            return SastFinding(
                scanner="semgrep",
                severity=normalize_severity(_str_or_none(extra.get("severity"))),
                title=message.splitlines()[0][:255],
                description=message,
                rule_id=rule_id,
                confidence=_confidence(meta.get("confidence")),
                file_path=normalize_path(_str_or_none(obj.get("path")), root),
                line_start=_int_or_zero((obj.get("start") or {}).get("line")),
                line_end=_int_or_zero((obj.get("end") or {}).get("line")) or None,
                cwe=[str(c).split(":")[0].strip() for c in cwe],
                metadata={"owasp": meta.get("owasp"), "category": meta.get("category")},
            )

        out.add(build, f"semgrep result {i}")
    return out


def _osv_severity(vuln: dict[str, Any], group_severity: str | None) -> str:
    db = vuln.get("database_specific") if isinstance(vuln.get("database_specific"), dict) else {}
    label = _str_or_none(db.get("severity"))
    return normalize_severity(label, _float_or_none(group_severity))


def _osv_fixed_version(vuln: dict[str, Any]) -> str | None:
    for affected in vuln.get("affected") or []:
        for rng in (affected or {}).get("ranges") or []:
            for event in (rng or {}).get("events") or []:
                fixed = _str_or_none((event or {}).get("fixed"))
                if fixed:
                    return fixed
    return None


def map_osv_report(report: dict[str, Any], root: str | None = None) -> MappingResult:
    """osv-scanner --format json: results[].packages[].vulnerabilities[] with groups[].max_severity."""
    out = MappingResult()
    for source in report.get("results") or []:
        manifest = normalize_path(_str_or_none((source.get("source") or {}).get("path")), root)
        for pkg_entry in source.get("packages") or []:
            pkg = pkg_entry.get("package") or {}
            group_sev: dict[str, str | None] = {}
            for group in pkg_entry.get("groups") or []:
                for vid in group.get("ids") or []:
                    group_sev[vid] = _str_or_none(group.get("max_severity"))
            for vuln in pkg_entry.get("vulnerabilities") or []:
                vid = _str_or_none(vuln.get("id")) or "unknown"
                # Prefer the CVE alias so the same advisory from different databases unifies.
                aliases = " ".join(str(a) for a in vuln.get("aliases") or [])
                advisory = extract_cve(aliases) or vid
                summary = _str_or_none(vuln.get("summary")) or advisory

                def build(pkg=pkg, vuln=vuln, vid=vid, advisory=advisory, summary=summary) -> Finding:
                    return ScaFinding(
                        scanner="osv",
                        severity=_osv_severity(vuln, group_sev.get(vid)),
                        title=f"{summary} in {pkg.get('name')}"[:255],
                        description=_str_or_none(vuln.get("details")) or summary,
                        rule_id=vid,
                        package_name=pkg["name"],
                        package_version=_str_or_none(pkg.get("version")) or "",
                        ecosystem=_str_or_none(pkg.get("ecosystem")) or "",
                        advisory_id=normalize_advisory_id(advisory),
                        fixed_version=_osv_fixed_version(vuln),
                        manifest_path=manifest or None,
                        metadata={"aliases": vuln.get("aliases") or []},
                    )

                out.add(build, f"osv {pkg.get('name')}/{vid}")
    return out


def map_gitleaks_report(report: list[dict[str, Any]], root: str | None = None) -> MappingResult:
    """Gitleaks --report-format json: flat list with RuleID, File, StartLine. Secret values are dropped."""
    out = MappingResult()
    for i, obj in enumerate(report or []):
        if not isinstance(obj, dict):
            continue
        rule_id = _str_or_none(obj.get("RuleID")) or "generic-secret"
        safe_meta = {k: v for k, v in obj.items() if k not in _GITLEAKS_REDACTED_KEYS}

        def build(obj=obj, rule_id=rule_id, safe_meta=safe_meta) -> Finding:
            return SecretFinding(
                scanner="gitleaks",
                severity="high",
                title=(_str_or_none(obj.get("Description")) or f"Secret detected: {rule_id}")[:255],
                description=_str_or_none(obj.get("Description")) or "",
                rule_id=rule_id,
                file_path=normalize_path(_str_or_none(obj.get("File")), root),
                line_start=_int_or_zero(obj.get("StartLine")),
                line_end=_int_or_zero(obj.get("EndLine")) or None,
                secret_type=rule_id,
                entropy=_float_or_none(obj.get("Entropy")),
                metadata=safe_meta,
            )

        out.add(build, f"gitleaks finding {i}")
    return out


def _checkov_blocks(report: dict[str, Any] | list[Any]) -> Iterable[dict[str, Any]]:
    # Checkov emits a single object for one framework and a list for several.
    if isinstance(report, list):
        return [r for r in report if isinstance(r, dict)]
    return [report] if isinstance(report, dict) else []


def map_checkov_report(report: dict[str, Any] | list[Any], root: str | None = None) -> MappingResult:
    """Checkov -o json: results.failed_checks[] with check_id, file_path, file_line_range, resource."""
    out = MappingResult()
    for block in _checkov_blocks(report):
        check_type = _str_or_none(block.get("check_type"))
        failed = (block.get("results") or {}).get("failed_checks") or []
        for i, obj in enumerate(failed):
            line_range = obj.get("file_line_range") or [0, 0]

            def build(obj=obj, line_range=line_range) -> Finding:
                check_id = _str_or_none(obj.get("check_id")) or "unknown"
                return IacFinding(
                    scanner="checkov",
                    # Checkov only reports severity with a platform key; default to medium.
                    severity=normalize_severity(_str_or_none(obj.get("severity")) or "medium"),
                    title=(_str_or_none(obj.get("check_name")) or check_id)[:255],
                    description=_str_or_none(obj.get("guideline")) or "",
                    rule_id=check_id,
                    file_path=normalize_path(_str_or_none(obj.get("file_path")), root),
                    line_start=_int_or_zero(line_range[0] if line_range else 0),
                    line_end=_int_or_zero(line_range[-1] if line_range else 0) or None,
                    resource=_str_or_none(obj.get("resource")) or "",
                    cloud_provider=check_type,
                    metadata={"check_type": check_type},
                )

            out.add(build, f"checkov {check_type} check {i}")
    return out


def map_trivy_report(report: dict[str, Any], image_name: str | None = None) -> MappingResult:
    """
    Trivy -f json: Results[].Vulnerabilities[] with VulnerabilityID, PkgName, Severity.

    image_name overrides ArtifactName, which for filesystem scans is a temp path.
    """
    out = MappingResult()
    image = image_name or _str_or_none(report.get("ArtifactName")) or "unknown"
    for result in report.get("Results") or []:
        target = _str_or_none(result.get("Target"))
        for obj in result.get("Vulnerabilities") or []:
            vid = _str_or_none(obj.get("VulnerabilityID")) or "unknown"

            def build(obj=obj, vid=vid) -> Finding:
                return ContainerFinding(
                    scanner="trivy",
                    severity=normalize_severity(_str_or_none(obj.get("Severity"))),
                    title=(_str_or_none(obj.get("Title")) or f"{vid} in {obj.get('PkgName')}")[:255],
                    description=_str_or_none(obj.get("Description")) or "",
                    rule_id=vid,
                    image_name=image,
                    package_name=obj["PkgName"],
                    package_version=_str_or_none(obj.get("InstalledVersion")) or "",
                    advisory_id=normalize_advisory_id(vid),
                    fixed_version=_str_or_none(obj.get("FixedVersion")),
                    metadata={"target": target, "primary_url": obj.get("PrimaryURL")},
                )

            out.add(build, f"trivy {vid}")
    return out
