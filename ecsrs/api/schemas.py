"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from ecsrs.models.enums import (
    ReportCategory,
    ReportPriority,
    ReportStatus,
)


# Report schemas
class ReportCreate(BaseModel):
    category: ReportCategory
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    area_id: int
    address: Optional[str] = Field(None, max_length=500)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    media_urls: List[str] = []
    is_anonymous: bool = False


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tracking_code: str
    category: ReportCategory
    title: str
    description: str
    address: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    area_id: Optional[int]
    media_urls: List[str]
    status: ReportStatus
    priority: ReportPriority
    assigned_officer_id: Optional[str]
    assigned_at: Optional[datetime]
    resolution_notes: Optional[str]
    resolution_media_urls: List[str]
    resolved_at: Optional[datetime]
    reporter_id: Optional[str]
    is_anonymous: bool
    created_at: datetime
    updated_at: datetime


class SubmittedReportResponse(ReportResponse):
    """Submission result. evidence_token is only set for anonymous reports."""
    evidence_token: Optional[str] = None


class ReportUpdateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    report_id: int
    previous_status: Optional[ReportStatus]
    new_status: ReportStatus
    notes: Optional[str]
    updated_by: Optional[str]
    created_at: datetime


class TrackingResponse(BaseModel):
    """Public lookup result: the report and its status history, oldest first."""
    report: ReportResponse
    updates: List[ReportUpdateResponse]


# Transition requests
class AssignRequest(BaseModel):
    officer_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class NotesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class ResolveRequest(BaseModel):
    # Emptiness is checked by the lifecycle so the reason is uniform
    notes: Optional[str] = Field(None, max_length=2000)
    media_urls: List[str] = []


class StatusOverrideRequest(BaseModel):
    status: ReportStatus
    notes: Optional[str] = Field(None, max_length=1000)


class PriorityRequest(BaseModel):
    priority: ReportPriority


class EvidenceRequest(BaseModel):
    media_urls: List[str] = Field(..., min_length=1)
    # Required when the caller is an anonymous submitter
    evidence_token: Optional[str] = Field(None, max_length=200)


class AllowedActionsResponse(BaseModel):
    report_id: int
    status: ReportStatus
    actions: List[str]


class OfficerCandidate(BaseModel):
    user_id: str
    display_name: Optional[str]
    assigned_area_id: Optional[int]
    same_area: bool


class AreaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


# Notification preferences
class NotificationPreferenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email_enabled: bool
    sms_enabled: bool
    push_enabled: bool
    email_on_status_change: bool
    email_on_assignment: bool
    email_on_resolution: bool
    sms_on_status_change: bool
    sms_on_assignment: bool
    sms_on_resolution: bool
    push_on_status_change: bool
    push_on_assignment: bool
    push_on_resolution: bool


class NotificationPreferenceUpdate(BaseModel):
    """Switches left out keep their stored (or default) value."""
    model_config = ConfigDict(extra="forbid")

    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    email_on_status_change: Optional[bool] = None
    email_on_assignment: Optional[bool] = None
    email_on_resolution: Optional[bool] = None
    sms_on_status_change: Optional[bool] = None
    sms_on_assignment: Optional[bool] = None
    sms_on_resolution: Optional[bool] = None
    push_on_status_change: Optional[bool] = None
    push_on_assignment: Optional[bool] = None
    push_on_resolution: Optional[bool] = None


# Public statistics
class AreaCountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    area_id: Optional[int]
    name: str
    count: int


class HotspotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    latitude: float
    longitude: float
    count: int
    tracking_codes: List[str]


class ResolvedReportItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tracking_code: str
    title: str
    category: ReportCategory
    area_id: Optional[int]
    resolved_at: datetime


class PublicStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    by_status: Dict[str, int]
    by_category: Dict[str, int]
    by_area: List[AreaCountResponse]
    top_areas: List[AreaCountResponse]
    pending: int
    in_progress: int
    concluded: int
    resolution_rate: float
    average_resolution_hours: Optional[float]
    recently_resolved: List[ResolvedReportItem]
    hotspots: List[HotspotResponse]


# Error response
class ErrorDetail(BaseModel):
    error: str
    message: str


class ErrorResponse(BaseModel):
    """Body of every refused or failed request."""
    detail: ErrorDetail
