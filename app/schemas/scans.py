"""Request/response schemas for scan submission and scan job status."""

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.findings import ScannerKind

_COMMIT_SHA = re.compile(r"^[0-9a-fA-F]{7,64}$")
# git check-ref-format, loosely: no spaces, no "..", no control characters.
_INVALID_BRANCH = re.compile(r"(\s|\.\.|[\x00-\x1f~^:?*\[\\])")


class ScanSubmitRequest(BaseModel):
    """Submit a scan of a repository branch."""

    repository_id: int = Field(..., ge=1, description="Repository to scan.")
    branch: str | None = Field(
        default=None,
        max_length=255,
        description="Branch to scan; the repository default branch when omitted.",
    )
    commit_sha: str | None = Field(
        default=None,
        description="Commit to scan; resolved from the branch head when omitted.",
    )
    scan_type: Literal["quick", "full"] = Field(
        default="full",
        description="Scan profile: quick (sast + secrets) or full (all scanners).",
    )
    enabled_scanners: list[ScannerKind] | None = Field(
        default=None,
        min_length=1,
        description="Explicit scanner classes; overrides the profile when given.",
    )
    trigger: Literal["manual", "webhook"] = Field(
        default="manual",
        description="What caused the scan; webhook scans may supersede older ones.",
    )

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        if _INVALID_BRANCH.search(v) or v.startswith("-") or v.endswith("/"):
            raise ValueError(f"invalid branch name: {v!r}")
        return v

    @field_validator("commit_sha")
    @classmethod
    def validate_commit_sha(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        if not _COMMIT_SHA.match(v.strip()):
            raise ValueError("commit_sha must be 7-64 hexadecimal characters")
        return v.strip().lower()


class ScanSubmitResponse(BaseModel):
    job_id: int = Field(..., description="ID of the created scan job.")
    status: str = Field(..., description="Initial job status (pending).")


class ScanJobResponse(BaseModel):
    """Scan job status and, once terminal, its immutable summary."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    repository_id: int
    branch: str
    commit_sha: str | None = None
    commit_is_synthetic: bool = False
    scan_type: str
    enabled_scanners: list[str] = Field(default_factory=list)
    trigger: str
    status: str
    progress_stage: str
    progress_percentage: int
    attempts: int
    is_cached: bool = False
    cached_from_job_id: int | None = None
    vulnerabilities_found: int = 0
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    info_count: int = 0
    security_score: int | None = None
    security_grade: str | None = None
    score_breakdown: dict[str, Any] | None = None
    files_scanned: int = 0
    lines_of_code: int = 0
    duration_seconds: float = 0.0
    error_message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
