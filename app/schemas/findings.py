"""Pydantic schemas for scanner findings: one closed variant per scanner class with a common envelope."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

# Reusable severity levels for validation and type safety across schemas.
SeverityLevel = Literal["critical", "high", "medium", "low", "info"]

SEVERITY_VALUES: frozenset[str] = frozenset({"critical", "high", "medium", "low", "info"})

# Severity order for choosing the "worst" (higher index = more severe).
SEVERITY_ORDER: tuple[SeverityLevel, ...] = ("info", "low", "medium", "high", "critical")

ScannerKind = Literal["sast", "sca", "secrets", "iac", "container"]

SCANNER_KINDS: tuple[ScannerKind, ...] = ("sast", "sca", "secrets", "iac", "container")


def _validate_severity(value: str) -> str:
    """Ensure severity is one of the allowed values (case-insensitive)."""
    if not value or not value.strip():
        raise ValueError("severity must be non-empty")
    normalized = value.strip().lower()
    if normalized not in SEVERITY_VALUES:
        raise ValueError(
            f"severity must be one of {sorted(SEVERITY_VALUES)}, got {value!r}"
        )
    return normalized


def worst_severity(a: str, b: str) -> SeverityLevel:
    """Return the more severe of two severity levels."""
    order = {s: i for i, s in enumerate(SEVERITY_ORDER)}
    return a if order.get(a, 0) >= order.get(b, 0) else b  # type: ignore[return-value]


class FindingEnvelope(BaseModel):
    """Fields every scanner finding carries, regardless of scanner class."""

    model_config = {"extra": "ignore"}

    scanner: str = Field(
        ...,
        min_length=1,
        description="Name of the tool that produced the finding (e.g. semgrep, gitleaks).",
    )
    severity: SeverityLevel = Field(
        ...,
        description="Severity level: critical, high, medium, low, or info.",
    )
    title: str = Field(
        ...,
        min_length=1,
        description="Short human-readable title.",
    )
    description: str = Field(
        default="",
        description="Longer explanation from the tool.",
    )
    rule_id: str = Field(
        ...,
        min_length=1,
        description="Tool rule or advisory identifier that triggered the finding.",
    )
    confidence: float | None = Field(
        default=None,
        ge=0,
        le=1,
        description="Tool confidence in range 0.0–1.0 when reported.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Original tool payload and extra attributes for traceability.",
    )

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        return _validate_severity(v)


class SastFinding(FindingEnvelope):
    """Static analysis finding at a source location."""

    kind: Literal["sast"] = "sast"
    file_path: str = Field(..., min_length=1)
    line_start: int = Field(default=0, ge=0)
    line_end: int | None = Field(default=None, ge=0)
    cwe: list[str] = Field(default_factory=list)


class ScaFinding(FindingEnvelope):
    """Vulnerable dependency reported against a package advisory."""

    kind: Literal["sca"] = "sca"
    package_name: str = Field(..., min_length=1)
    package_version: str = Field(default="")
    ecosystem: str = Field(default="")
    advisory_id: str = Field(..., min_length=1)
    fixed_version: str | None = None
    manifest_path: str | None = None


class SecretFinding(FindingEnvelope):
    """Hard-coded credential detected in a file."""

    kind: Literal["secrets"] = "secrets"
    file_path: str = Field(..., min_length=1)
    line_start: int = Field(default=0, ge=0)
    line_end: int | None = Field(default=None, ge=0)
    secret_type: str = Field(..., min_length=1)
    entropy: float | None = None


class IacFinding(FindingEnvelope):
    """Infrastructure-as-code misconfiguration."""

    kind: Literal["iac"] = "iac"
    file_path: str = Field(..., min_length=1)
    line_start: int = Field(default=0, ge=0)
    line_end: int | None = Field(default=None, ge=0)
    resource: str = Field(default="")
    cloud_provider: str | None = None


class ContainerFinding(FindingEnvelope):
    """Vulnerable package inside a container image."""

    kind: Literal["container"] = "container"
    image_name: str = Field(..., min_length=1)
    package_name: str = Field(..., min_length=1)
    package_version: str = Field(default="")
    advisory_id: str = Field(..., min_length=1)
    fixed_version: str | None = None


Finding = Annotated[
    Union[SastFinding, ScaFinding, SecretFinding, IacFinding, ContainerFinding],
    Field(discriminator="kind"),
]

finding_adapter: TypeAdapter[Finding] = TypeAdapter(Finding)


def parse_finding(payload: Any) -> Finding:
    """Validate a stored or serialized payload back into its Finding variant. Raises pydantic.ValidationError."""
    return finding_adapter.validate_python(payload)


def finding_location(finding: Finding) -> str:
    """Per-occurrence location: file:line for code findings, [manifest:]package:version for dependency findings."""
    if isinstance(finding, (SastFinding, SecretFinding, IacFinding)):
        return f"{finding.file_path}:{finding.line_start}"
    if isinstance(finding, ContainerFinding):
        return f"{finding.image_name}/{finding.package_name}:{finding.package_version}"
    if finding.manifest_path:
        return f"{finding.manifest_path}:{finding.package_name}:{finding.package_version}"
    return f"{finding.package_name}:{finding.package_version}"
