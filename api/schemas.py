"""
Pydantic Schemas for API Request/Response Models

Request bodies accepted by the JSON endpoints of the gateway, plus the
system endpoint responses. Multipart endpoints (face search, v1, FRS
proxy) take UploadFile parameters instead and have no model here.

Wire format is snake_case.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================
# Account Schemas
# ============================================================

class SessionRequest(BaseModel):
    """Body of POST /api/auth/session."""
    token: Optional[str] = Field(None, description="Firebase ID token to store in the session cookie")


# ============================================================
# Face Search Schemas
# ============================================================

class StoreResultRequest(BaseModel):
    """Body of POST /api/face-search/store-result."""
    type: Optional[str] = Field(None, description="ONE_TO_ONE, ONE_TO_N or N_TO_N")
    request_data: Optional[Any] = Field(None, description="Description of the submitted inputs")
    result_data: Optional[Any] = Field(None, description="Result payload computed by the client")


class ShareRequest(BaseModel):
    """Body of POST /api/share."""
    request_id: Optional[str] = Field(None, description="Stored face-search request to share")


# ============================================================
# API Key Schemas
# ============================================================

class ApiKeyCreateRequest(BaseModel):
    """Body of POST /api/api-keys."""
    name: Optional[str] = Field(None, description="Display name, at most 100 characters")
    scopes: List[str] = Field(default_factory=list, description="Optional scope labels")
    expiry: Optional[str] = Field(
        None,
        description="30d, 90d, 180d, 365d, never, or a future ISO date (default 90d)",
    )
    expires_at: Optional[str] = Field(None, description="Alias of expiry")


# ============================================================
# Admin Schemas
# ============================================================

class ChangePlanRequest(BaseModel):
    plan_code: Optional[str] = Field(None, description="Target plan code")


class ChangeRoleRequest(BaseModel):
    system_role: Optional[str] = Field(None, description="USER, ADMIN or SUPER_ADMIN")


class ReasonRequest(BaseModel):
    """Body of suspend / ban requests."""
    reason: Optional[str] = Field(None, description="Free-text reason shown to admins")


class ExtendTrialRequest(BaseModel):
    days: int = Field(14, ge=1, description="Days to add to the trial")


# ============================================================
# Payment / Contact Schemas
# ============================================================

class SubscribeRequest(BaseModel):
    plan_code: Optional[str] = Field(None, description="Plan to upgrade to")
    billing: str = Field("monthly", description="monthly or yearly")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Cancellation reason")


class ContactRequest(BaseModel):
    """Body of POST /api/contact."""
    name: Optional[str] = Field(None, description="Sender name")
    email: Optional[str] = Field(None, description="Reply-to address")
    company: Optional[str] = Field(None, description="Sender company")
    message: Optional[str] = Field(None, description="Message body")


# ============================================================
# System Schemas
# ============================================================

class HealthResponse(BaseModel):
    """Response of GET /health."""
    status: str = Field(..., description="ok or degraded")
    service: str = Field("visionera-gateway", description="Service name")
    environment: str = Field(..., description="Configured environment")
    redis: bool = Field(..., description="Whether Redis answered a PING")
    timestamp: str = Field(..., description="Server time (ISO 8601, UTC)")


class DbHealthResponse(BaseModel):
    """Response of GET /db/health."""
    status: str = Field(..., description="ok or error")
    database: str = Field(..., description="connected or unreachable")
    plans: Optional[int] = Field(None, description="Number of seeded plans")
    detail: Optional[Dict[str, Any]] = Field(None, description="Error detail")
