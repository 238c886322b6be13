"""Pydantic request/response schemas."""

from app.schemas.findings import (
    ContainerFinding,
    Finding,
    IacFinding,
    SastFinding,
    ScaFinding,
    ScannerKind,
    SecretFinding,
    SeverityLevel,
    parse_finding,
)
from app.schemas.health import HealthResponse, QueueDepth
from app.schemas.scans import ScanJobResponse, ScanSubmitRequest, ScanSubmitResponse
from app.schemas.vulnerabilities import (
    UnifiedVulnerabilityResponse,
    VulnerabilityListResponse,
)

__all__ = [
    "ContainerFinding",
    "Finding",
    "HealthResponse",
    "IacFinding",
    "QueueDepth",
    "SastFinding",
    "ScaFinding",
    "ScanJobResponse",
    "ScanSubmitRequest",
    "ScanSubmitResponse",
    "ScannerKind",
    "SecretFinding",
    "SeverityLevel",
    "UnifiedVulnerabilityResponse",
    "VulnerabilityListResponse",
    "parse_finding",
]
