"""Normalization helpers shared by scanner mappers and fingerprint strategies."""

import re

from app.schemas.findings import SeverityLevel

_DEFAULT_SEVERITY: SeverityLevel = "info"

# Severity aliases (case-insensitive) -> canonical level. Includes SARIF-style
# levels (error/warning/note) used by semgrep and checkov.
_SEVERITY_ALIASES: dict[str, SeverityLevel] = {
    "critical": "critical",
    "crit": "critical",
    "high": "high",
    "error": "high",
    "medium": "medium",
    "med": "medium",
    "moderate": "medium",
    "warning": "medium",
    "low": "low",
    "note": "low",
    "style": "low",
    "info": "info",
    "informational": "info",
    "informative": "info",
    "negligible": "info",
    "unknown": "info",
}

# CVSS score bands -> severity (used when severity field is missing or invalid).
_CVSS_TO_SEVERITY: list[tuple[tuple[float, float], SeverityLevel]] = [
    ((9.0, 10.0), "critical"),
    ((7.0, 8.99), "high"),
    ((4.0, 6.99), "medium"),
    ((0.1, 3.99), "low"),
    ((0.0, 0.09), "info"),
]

# CVE: CVE-YEAR-NNNNN+ (4+ digits after second hyphen).
_CVE_PATTERN = re.compile(r"CVE-\d{4}-\d{4,}", re.IGNORECASE)
# GHSA: GHSA-xxxx-xxxx-xxxx (4 alphanumeric groups).
_GHSA_PATTERN = re.compile(r"GHSA-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}", re.IGNORECASE)

# Tool-specific prefixes that vary between rule-pack versions but name the same rule.
_RULE_PREFIXES = re.compile(r"^(semgrep\.|rules\.|p/)", re.IGNORECASE)

MAX_RULE_ID_LENGTH = 512


def normalize_severity(raw_severity: str | None, raw_cvss: float | None = None) -> SeverityLevel:
    """
    Map raw severity string and/or CVSS score to canonical SeverityLevel.
    Tries aliases and numeric first, then CVSS bands when severity is missing or invalid.
    """
    if raw_severity and str(raw_severity).strip():
        normalized = str(raw_severity).strip().lower()
        if normalized in _SEVERITY_ALIASES:
            return _SEVERITY_ALIASES[normalized]
        # Numeric string 1 (critical) .. 4 (low); anything else is info
        if normalized.isdigit():
            n = int(normalized)
            if n <= 0 or n >= 5:
                return "info"
            if n == 1:
                return "critical"
            if n == 2:
                return "high"
            if n == 3:
                return "medium"
            return "low"
    if raw_cvss is not None and 0 <= raw_cvss <= 10:
        for (lo, hi), sev in _CVSS_TO_SEVERITY:
            if lo <= raw_cvss <= hi:
                return sev
    return _DEFAULT_SEVERITY


def extract_cve(text: str | None) -> str | None:
    """Return the first CVE identifier found in text, upper-cased, or None."""
    if not text or not isinstance(text, str):
        return None
    match = _CVE_PATTERN.search(text)
    return match.group(0).upper() if match else None


def extract_ghsa(text: str | None) -> str | None:
    """Return the first GHSA identifier found in text, or None."""
    if not text or not isinstance(text, str):
        return None
    match = _GHSA_PATTERN.search(text)
    return match.group(0) if match else None


def is_advisory_id(value: str | None) -> bool:
    """True if value is exactly a CVE or GHSA id."""
    if not value or not value.strip():
        return False
    v = value.strip()
    return _CVE_PATTERN.fullmatch(v) is not None or _GHSA_PATTERN.fullmatch(v) is not None


def normalize_advisory_id(value: str) -> str:
    """Canonical advisory id: CVE/GHSA ids upper-cased, other ids stripped."""
    v = (value or "").strip()
    return v.upper() if is_advisory_id(v) else v


def normalize_path(file_path: str | None, root: str | None = None) -> str:
    """
    Normalize a file path to a repository-relative, forward-slash form.

    Strips the working tree prefix when present, leading "./" and "/", and
    collapses duplicate separators. Case is preserved: paths are case-sensitive
    on the systems we scan.
    """
    if not file_path or not file_path.strip():
        return ""
    path = file_path.strip().replace("\\", "/")
    if root:
        root_norm = root.strip().replace("\\", "/").rstrip("/")
        if root_norm and path.startswith(root_norm + "/"):
            path = path[len(root_norm) + 1 :]
    while path.startswith("./"):
        path = path[2:]
    path = re.sub(r"/{2,}", "/", path).lstrip("/")
    return path


def normalize_rule_id(rule_id: str | None) -> str:
    """Lower-cased rule id without rule-pack prefixes; 'unknown' when empty."""
    if not rule_id or not rule_id.strip():
        return "unknown"
    value = _RULE_PREFIXES.sub("", rule_id.strip()).lower()
    return value[:MAX_RULE_ID_LENGTH] or "unknown"
