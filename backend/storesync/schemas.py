"""Pydantic schemas for API responses.

Internal services return dataclasses and ORM rows; routers convert them into
these models so the OpenAPI contract stays independent of storage.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status", examples=["ok"])


class WebhookAckResponse(BaseModel):
    """Returned to the platform once a delivery is admitted or recognized as a duplicate."""
    message: str
    delivery_id: Optional[str] = None
    duplicate: bool = False


class SyncCursorStatus(BaseModel):
    """Most recent poll attempt for one resource."""
    model_config = ConfigDict(from_attributes=True)

    resource_type: str
    last_outcome: Optional[str] = Field(default=None, description="success, partial or failed")
    watermark: Optional[datetime] = Field(default=None, description="Resume point for the next incremental run")
    consecutive_failures: int = 0
    last_run_at: Optional[datetime] = None
    last_applied_count: int = 0
    last_malformed_count: int = 0
    last_error: Optional[str] = None


class TenantSyncStatusResponse(BaseModel):
    tenant_id: UUID
    shop_domain: str
    is_active: bool
    sync_enabled: bool
    sync_disabled_reason: Optional[str] = None
    resources: List[SyncCursorStatus] = Field(default_factory=list)


class SyncTriggerResponse(BaseModel):
    """Result of an on-demand sync request."""
    tenant_id: UUID
    job_id: Optional[str] = None
    status: str = Field(description="enqueued or skipped_already_running")


class ReplayResponse(BaseModel):
    """Result of replaying a tenant's rejected records."""
    tenant_id: UUID
    replayed: int = Field(description="Records that now merge (applied or stale)")
    still_malformed: int = Field(description="Records that still fail validation")
