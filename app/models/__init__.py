"""SQLAlchemy ORM models."""

from app.models.base import Base
from app.models.repository import Repository
from app.models.scan_job import ScanJob, ScannerRun
from app.models.vulnerability import UnifiedVulnerability, VulnerabilityInstance

__all__ = [
    "Base",
    "Repository",
    "ScanJob",
    "ScannerRun",
    "UnifiedVulnerability",
    "VulnerabilityInstance",
]
