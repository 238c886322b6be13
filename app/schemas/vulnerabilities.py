"""Response schemas for unified vulnerabilities."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UnifiedVulnerabilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    repository_id: int
    fingerprint: str
    scanner_type: str
    rule_id: str
    title: str
    description: str
    severity: str
    status: str
    cwe: str | None = None
    file_path: str | None = None
    line_start: int | None = None
    package_name: str | None = None
    confidence: float | None = None
    scanner_metadata: dict[str, Any] | None = None
    first_detected_at: datetime
    last_seen_at: datetime
    resolved_at: datetime | None = None


class VulnerabilityListResponse(BaseModel):
    total: int = Field(..., ge=0, description="Number of matching vulnerabilities.")
    items: list[UnifiedVulnerabilityResponse] = Field(default_factory=list)
