"""ORM models for scan jobs and per-scanner execution metrics."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from app.models.base import Base, JsonType, utcnow

# Lifecycle states. Terminal: completed, failed, cancelled.
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_RUNNING)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)


class ScanJob(Base):
    """
    One scan of a repository branch at a resolved (or synthetic) commit.

    The row doubles as the durable queue entry: workers claim pending rows
    by compare-and-set and hold a renewable lease while running.
    """

    __tablename__ = "scan_jobs"
    __table_args__ = (
        Index("ix_scan_jobs_queue", "status", "available_at"),
        Index("ix_scan_jobs_cache", "repository_id", "commit_sha", "scanner_set_key", "status"),
        Index("ix_scan_jobs_branch", "repository_id", "branch", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=False)
    branch = Column(String(255), nullable=False)
    commit_sha = Column(String(128), nullable=True)
    commit_is_synthetic = Column(Boolean, nullable=False, default=False)
    scan_type = Column(String(32), nullable=False, default="full")
    enabled_scanners = Column(JsonType, nullable=False, default=list)
    scanner_set_key = Column(String(255), nullable=False)
    trigger = Column(String(32), nullable=False, default="manual")

    status = Column(String(32), nullable=False, default=JOB_PENDING)
    progress_stage = Column(String(255), nullable=False, default="Queued")
    progress_percentage = Column(Integer, nullable=False, default=0)

    # Queue bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    is_cached = Column(Boolean, nullable=False, default=False)
    cached_from_job_id = Column(Integer, nullable=True)

    # Immutable summary written once on completion
    vulnerabilities_found = Column(Integer, nullable=False, default=0)
    critical_count = Column(Integer, nullable=False, default=0)
    high_count = Column(Integer, nullable=False, default=0)
    medium_count = Column(Integer, nullable=False, default=0)
    low_count = Column(Integer, nullable=False, default=0)
    info_count = Column(Integer, nullable=False, default=0)
    security_score = Column(Integer, nullable=True)
    security_grade = Column(String(2), nullable=True)
    score_breakdown = Column(JsonType, nullable=True)
    files_scanned = Column(Integer, nullable=False, default=0)
    lines_of_code = Column(Integer, nullable=False, default=0)
    duration_seconds = Column(Float, nullable=False, default=0.0)

    error_message = Column(Text, nullable=True)
    warnings = Column(JsonType, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class ScannerRun(Base):
    """Outcome and timing of one scanner adapter within a scan job."""

    __tablename__ = "scanner_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_job_id = Column(Integer, ForeignKey("scan_jobs.id"), nullable=False, index=True)
    scanner = Column(String(64), nullable=False)
    kind = Column(String(32), nullable=False)
    success = Column(Boolean, nullable=False)
    findings_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)
    errors = Column(JsonType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
