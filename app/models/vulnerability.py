"""ORM models for unified vulnerabilities and their per-scan instances."""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from app.models.base import Base, JsonType, utcnow

VULN_OPEN = "open"
VULN_FIXED = "fixed"
VULN_ACCEPTED = "accepted"
VULN_FALSE_POSITIVE = "false_positive"
VULN_IGNORED = "ignored"

VULN_STATUSES = (VULN_OPEN, VULN_FIXED, VULN_ACCEPTED, VULN_FALSE_POSITIVE, VULN_IGNORED)


class UnifiedVulnerability(Base):
    """
    Durable identity of one logical issue within a workspace.

    Keyed by (workspace_id, fingerprint); outlives the scans that detect it.
    Location fields hold the first location seen; every location lives in
    VulnerabilityInstance.
    """

    __tablename__ = "vulnerabilities_unified"
    __table_args__ = (
        UniqueConstraint("workspace_id", "fingerprint", name="uq_vulnerabilities_unified_fingerprint"),
        Index("ix_vulnerabilities_unified_repo_status", "repository_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, nullable=False)
    repository_id = Column(Integer, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    scanner_type = Column(String(32), nullable=False)
    rule_id = Column(String(512), nullable=False)
    title = Column(String(1024), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=VULN_OPEN)
    assignee_id = Column(Integer, nullable=True)
    cwe = Column(String(64), nullable=True)
    file_path = Column(String(2048), nullable=True)
    line_start = Column(Integer, nullable=True)
    package_name = Column(String(1024), nullable=True)
    scanner_metadata = Column(JsonType, nullable=True)
    confidence = Column(Float, nullable=True)
    first_detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class VulnerabilityInstance(Base):
    """One detection of a UnifiedVulnerability within one scan job. Insert-only."""

    __tablename__ = "vulnerability_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_job_id = Column(Integer, ForeignKey("scan_jobs.id"), nullable=False, index=True)
    vulnerability_id = Column(
        Integer,
        ForeignKey("vulnerabilities_unified.id"),
        nullable=False,
        index=True,
    )
    instance_key = Column(String(64), nullable=False, unique=True)
    scanner = Column(String(64), nullable=False)
    file_path = Column(String(2048), nullable=True)
    line_start = Column(Integer, nullable=True)
    line_end = Column(Integer, nullable=True)
    package_name = Column(String(1024), nullable=True)
    package_version = Column(String(255), nullable=True)
    raw_finding = Column(JsonType, nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
