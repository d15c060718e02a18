"""Pydantic schemas for cached dashboard and listing reads."""

from typing import Any

from pydantic import BaseModel, Field


class PageRead(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    total_pages: int = 0


class DashboardRead(BaseModel):
    organization_id: str
    computed_at: str
    degraded: list[str] = Field(default_factory=list)  # sections served from fallback
    properties: PageRead
    clients: PageRead
    activities: PageRead
