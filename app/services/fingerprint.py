"""Fingerprints (cross-scan identity) and instance keys (per-scan idempotency) for findings.

A fingerprint names one logical vulnerability in a repository and must stay the
same across commits, branches and unrelated line shifts. Which attributes make
up that identity differs per scanner class, so each class registers its own
strategy. Lines are left out; a uniform line shift must not change identity.
Repeated hits of one rule in one file get an occurrence ordinal instead.
"""

import hashlib
from collections.abc import Callable, Sequence

from app.schemas.findings import (
    ContainerFinding,
    Finding,
    IacFinding,
    SastFinding,
    ScaFinding,
    SecretFinding,
    finding_location,
)
from app.services.normalize import normalize_advisory_id, normalize_path, normalize_rule_id

FingerprintStrategy = Callable[[Finding], list[str]]

# Separator that cannot appear in normalized components.
_SEP = "|"


def _sast_parts(finding: SastFinding) -> list[str]:
    return [normalize_rule_id(finding.rule_id), normalize_path(finding.file_path)]


def _secret_parts(finding: SecretFinding) -> list[str]:
    # Gitleaks rule ids are the secret pattern (e.g. aws-access-token).
    return [
        normalize_rule_id(finding.secret_type or finding.rule_id),
        normalize_path(finding.file_path),
    ]


def _iac_parts(finding: IacFinding) -> list[str]:
    return [
        normalize_rule_id(finding.rule_id),
        normalize_path(finding.file_path),
        (finding.resource or "").strip().lower(),
    ]


def _sca_parts(finding: ScaFinding) -> list[str]:
    # Version is excluded: the same advisory on an upgraded-but-still-vulnerable
    # version is the same issue.
    return [
        (finding.ecosystem or "").strip().lower(),
        finding.package_name.strip().lower(),
        normalize_advisory_id(finding.advisory_id),
    ]


def _container_parts(finding: ContainerFinding) -> list[str]:
    return [
        finding.image_name.strip().lower(),
        finding.package_name.strip().lower(),
        normalize_advisory_id(finding.advisory_id),
    ]


FINGERPRINT_STRATEGIES: dict[str, FingerprintStrategy] = {
    "sast": _sast_parts,  # type: ignore[dict-item]
    "secrets": _secret_parts,  # type: ignore[dict-item]
    "iac": _iac_parts,  # type: ignore[dict-item]
    "sca": _sca_parts,  # type: ignore[dict-item]
    "container": _container_parts,  # type: ignore[dict-item]
}

# Kinds reported at a file location; repeated hits of one rule in one file are
# told apart by their occurrence ordinal.
LOCATED_KINDS = frozenset({"sast", "secrets", "iac"})


def register_strategy(kind: str, strategy: FingerprintStrategy) -> None:
    """Replace the fingerprint strategy for a scanner kind."""
    FINGERPRINT_STRATEGIES[kind] = strategy


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def fingerprint_input(finding: Finding, repository_id: int, occurrence: int = 0) -> str:
    """Pre-hash fingerprint key; exposed for diagnostics and golden tests."""
    strategy = FINGERPRINT_STRATEGIES.get(finding.kind)
    if strategy is None:
        raise ValueError(f"No fingerprint strategy registered for kind {finding.kind!r}")
    parts = [str(repository_id), finding.kind, *strategy(finding)]
    if occurrence:
        parts.append(f"#{occurrence}")
    return _SEP.join(p.replace(_SEP, "/") for p in parts)


def compute_fingerprint(finding: Finding, repository_id: int, occurrence: int = 0) -> str:
    """Stable identity of the logical vulnerability behind a finding (64 hex chars)."""
    return _sha256(fingerprint_input(finding, repository_id, occurrence))


def occurrence_ordinals(findings: Sequence[Finding], repository_id: int) -> list[int]:
    """
    Ordinal of each finding among the findings of one scan that share its identity parts.

    Located findings with the same rule and file are ranked by distinct start
    line: the first is 0, the next 1, and so on. A uniform line shift keeps every
    ordinal, while two hits of one rule in one file stay two vulnerabilities.
    Duplicate reports of the same line share an ordinal. Other kinds are always 0.
    """
    by_key: dict[str, list[int]] = {}
    for i, finding in enumerate(findings):
        if finding.kind in LOCATED_KINDS:
            by_key.setdefault(fingerprint_input(finding, repository_id), []).append(i)

    ordinals = [0] * len(findings)
    for indexes in by_key.values():
        lines = sorted({findings[i].line_start for i in indexes})  # type: ignore[union-attr]
        rank = {line: n for n, line in enumerate(lines)}
        for i in indexes:
            ordinals[i] = rank[findings[i].line_start]  # type: ignore[union-attr]
    return ordinals


def compute_fingerprints(findings: Sequence[Finding], repository_id: int) -> list[str]:
    """Fingerprints of one scan's findings, in input order."""
    ordinals = occurrence_ordinals(findings, repository_id)
    return [compute_fingerprint(f, repository_id, n) for f, n in zip(findings, ordinals)]


def compute_instance_key(job_id: int, unified_id: int, finding: Finding) -> str:
    """
    Idempotency key for one occurrence of a finding within one scan job.

    Recomputed (never copied) when results are cloned into another job.
    """
    return _sha256(f"{job_id}{_SEP}{unified_id}{_SEP}{finding_location(finding)}")
