"""Pydantic schemas for health check responses."""

from typing import Literal

from pydantic import BaseModel, Field


class QueueDepth(BaseModel):
    pending: int = Field(default=0, ge=0, description="Scans waiting for a worker")
    running: int = Field(default=0, ge=0, description="Scans currently leased by a worker")


class HealthResponse(BaseModel):
    status: Literal["ok"] = Field(default="ok", description="Service status")
    environment: str = Field(description="Current app environment (dev or prod)")
    database: Literal["connected", "disconnected"] | None = Field(
        default=None,
        description="Database connectivity status when check is performed",
    )
    queue: QueueDepth | None = Field(
        default=None,
        description="Scan queue depth; omitted when the database is unreachable",
    )
