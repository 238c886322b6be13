"""Scan pipeline tables: repositories, scan jobs, scanner runs, unified vulnerabilities and instances.

Revision ID: 20261018000000
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(length=512), nullable=False),
        sa.Column("default_branch", sa.String(length=255), nullable=False, server_default="main"),
        sa.Column("clone_url", sa.String(length=2048), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_repositories_workspace_id"), "repositories", ["workspace_id"], unique=False)

    op.create_table(
        "scan_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("repository_id", sa.Integer(), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=False),
        sa.Column("commit_sha", sa.String(length=128), nullable=True),
        sa.Column("commit_is_synthetic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scan_type", sa.String(length=32), nullable=False, server_default="full"),
        sa.Column("enabled_scanners", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("scanner_set_key", sa.String(length=255), nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("progress_stage", sa.String(length=255), nullable=False, server_default="Queued"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("lease_owner", sa.String(length=255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_cached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cached_from_job_id", sa.Integer(), nullable=True),
        sa.Column("vulnerabilities_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("critical_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("high_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("medium_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("info_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("security_score", sa.Integer(), nullable=True),
        sa.Column("security_grade", sa.String(length=2), nullable=True),
        sa.Column("score_breakdown", _jsonb(), nullable=True),
        sa.Column("files_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lines_of_code", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warnings", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scan_jobs_workspace_id"), "scan_jobs", ["workspace_id"], unique=False)
    op.create_index("ix_scan_jobs_queue", "scan_jobs", ["status", "available_at"], unique=False)
    op.create_index(
        "ix_scan_jobs_cache",
        "scan_jobs",
        ["repository_id", "commit_sha", "scanner_set_key", "status"],
        unique=False,
    )
    op.create_index("ix_scan_jobs_branch", "scan_jobs", ["repository_id", "branch", "status"], unique=False)

    op.create_table(
        "scanner_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_job_id", sa.Integer(), nullable=False),
        sa.Column("scanner", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("findings_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["scan_job_id"], ["scan_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scanner_runs_scan_job_id"), "scanner_runs", ["scan_job_id"], unique=False)

    op.create_table(
        "vulnerabilities_unified",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("repository_id", sa.Integer(), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("scanner_type", sa.String(length=32), nullable=False),
        sa.Column("rule_id", sa.String(length=512), nullable=False),
        sa.Column("title", sa.String(length=1024), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("assignee_id", sa.Integer(), nullable=True),
        sa.Column("cwe", sa.String(length=64), nullable=True),
        sa.Column("file_path", sa.String(length=2048), nullable=True),
        sa.Column("line_start", sa.Integer(), nullable=True),
        sa.Column("package_name", sa.String(length=1024), nullable=True),
        sa.Column("scanner_metadata", _jsonb(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("first_detected_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "fingerprint", name="uq_vulnerabilities_unified_fingerprint"),
    )
    op.create_index(
        op.f("ix_vulnerabilities_unified_severity"),
        "vulnerabilities_unified",
        ["severity"],
        unique=False,
    )
    op.create_index(
        "ix_vulnerabilities_unified_repo_status",
        "vulnerabilities_unified",
        ["repository_id", "status"],
        unique=False,
    )

    op.create_table(
        "vulnerability_instances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_job_id", sa.Integer(), nullable=False),
        sa.Column("vulnerability_id", sa.Integer(), nullable=False),
        sa.Column("instance_key", sa.String(length=64), nullable=False),
        sa.Column("scanner", sa.String(length=64), nullable=False),
        sa.Column("file_path", sa.String(length=2048), nullable=True),
        sa.Column("line_start", sa.Integer(), nullable=True),
        sa.Column("line_end", sa.Integer(), nullable=True),
        sa.Column("package_name", sa.String(length=1024), nullable=True),
        sa.Column("package_version", sa.String(length=255), nullable=True),
        sa.Column("raw_finding", _jsonb(), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["scan_job_id"], ["scan_jobs.id"]),
        sa.ForeignKeyConstraint(["vulnerability_id"], ["vulnerabilities_unified.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("instance_key"),
    )
    op.create_index(
        op.f("ix_vulnerability_instances_scan_job_id"),
        "vulnerability_instances",
        ["scan_job_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_vulnerability_instances_vulnerability_id"),
        "vulnerability_instances",
        ["vulnerability_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_vulnerability_instances_vulnerability_id"), table_name="vulnerability_instances")
    op.drop_index(op.f("ix_vulnerability_instances_scan_job_id"), table_name="vulnerability_instances")
    op.drop_table("vulnerability_instances")
    op.drop_index("ix_vulnerabilities_unified_repo_status", table_name="vulnerabilities_unified")
    op.drop_index(op.f("ix_vulnerabilities_unified_severity"), table_name="vulnerabilities_unified")
    op.drop_table("vulnerabilities_unified")
    op.drop_index(op.f("ix_scanner_runs_scan_job_id"), table_name="scanner_runs")
    op.drop_table("scanner_runs")
    op.drop_index("ix_scan_jobs_branch", table_name="scan_jobs")
    op.drop_index("ix_scan_jobs_cache", table_name="scan_jobs")
    op.drop_index("ix_scan_jobs_queue", table_name="scan_jobs")
    op.drop_index(op.f("ix_scan_jobs_workspace_id"), table_name="scan_jobs")
    op.drop_table("scan_jobs")
    op.drop_index(op.f("ix_repositories_workspace_id"), table_name="repositories")
    op.drop_table("repositories")
