"""Vulnerabilities endpoint: list unified vulnerabilities of a repository."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models import UnifiedVulnerability
from app.models.vulnerability import VULN_STATUSES
from app.schemas.vulnerabilities import UnifiedVulnerabilityResponse, VulnerabilityListResponse

router = APIRouter()

MAX_PAGE_SIZE = 500


@router.get("", response_model=VulnerabilityListResponse)
def list_vulnerabilities(
    db: Annotated[Session, Depends(get_db)],
    repository_id: Annotated[int, Query(ge=1)],
    status: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> VulnerabilityListResponse:
    """Unified vulnerabilities of a repository, most recently seen first; optionally filtered by status."""
    if status is not None and status not in VULN_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"status must be one of {list(VULN_STATUSES)}",
        )
    conditions = [UnifiedVulnerability.repository_id == repository_id]
    if status is not None:
        conditions.append(UnifiedVulnerability.status == status)

    total = db.execute(
        select(func.count()).select_from(UnifiedVulnerability).where(*conditions)
    ).scalar_one()
    rows = db.execute(
        select(UnifiedVulnerability)
        .where(*conditions)
        .order_by(UnifiedVulnerability.last_seen_at.desc(), UnifiedVulnerability.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return VulnerabilityListResponse(
        total=total,
        items=[UnifiedVulnerabilityResponse.model_validate(r) for r in rows],
    )
