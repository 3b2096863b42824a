"""
Pydantic Schemas for Docket API
===============================

Output shapes for assembled entities plus the request/response envelopes of
the HTTP layer. Related collections are always lists (empty, never null).
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import date, datetime


class ApiAccess(str, Enum):
    YES = "yes"
    NO = "no"


# =============================================================================
# NESTED PARTS
# =============================================================================

class RelatedPartyOut(BaseModel):
    """Assignee, calendar subscriber or dashboard owner"""
    email: str
    name: Optional[str] = None


class CategoryOut(BaseModel):
    label: str


class CustomDetails(BaseModel):
    title: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


class RelatedCollections(BaseModel):
    """Collections folded onto every assembled entity"""
    custom_details: CustomDetails = Field(default_factory=CustomDetails)
    assignees: List[RelatedPartyOut] = Field(default_factory=list)
    calendars: List[RelatedPartyOut] = Field(default_factory=list)
    dashboards: List[RelatedPartyOut] = Field(default_factory=list)


# =============================================================================
# ENTITIES
# =============================================================================

class CaseOut(RelatedCollections):
    """Legal matter"""
    id: int
    case_name: str
    jurisdiction: Optional[str] = None
    created_on: Optional[datetime] = None
    case_note: Optional[str] = None
    initiation_date: Optional[date] = None
    case_number: Optional[str] = None
    timezone: Optional[str] = None


class TriggerOut(RelatedCollections):
    """Deadline-producing trigger (import docket)"""
    id: int
    trigger_name: str
    trigger_date: Optional[date] = None
    trigger_time: Optional[str] = None
    meridiem: Optional[str] = None
    service_type: Optional[str] = None
    service_type_description: Optional[str] = None
    jurisdiction: Optional[str] = None
    jurisdiction_description: Optional[str] = None
    created_on: Optional[datetime] = None
    number_of_events: int = 0


class EventOut(RelatedCollections):
    """Event derived from a trigger, with the trigger's fields carried along"""
    id: int
    event_subject: str
    event_date: Optional[datetime] = None
    appointment_length: Optional[int] = None
    event_type: Optional[str] = None
    court_rule: Optional[str] = None
    date_rule: Optional[str] = None
    event_timezone: Optional[str] = None
    color: Optional[int] = None
    case_id: Optional[int] = None
    case_name: Optional[str] = None
    # Denormalized from the producing trigger
    trigger_id: int
    trigger_name: Optional[str] = None
    trigger_date: Optional[date] = None
    trigger_time: Optional[str] = None
    meridiem: Optional[str] = None
    service_type: Optional[str] = None
    service_type_description: Optional[str] = None
    jurisdiction: Optional[str] = None
    created_on: Optional[datetime] = None
    categories: List[CategoryOut] = Field(default_factory=list)


# =============================================================================
# HTTP ENVELOPES
# =============================================================================

class Pagination(BaseModel):
    """Position of a listing page within the full filtered result"""
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def build(cls, total: int, limit: int, offset: int) -> "Pagination":
        return cls(
            total=total,
            page=offset // limit + 1,
            limit=limit,
            total_pages=-(-total // limit),
        )


class CaseResponse(BaseModel):
    status: str = "success"
    message: str
    data: CaseOut


class CaseListResponse(BaseModel):
    status: str = "success"
    message: str
    data: List[CaseOut]
    count: int
    pagination: Optional[Pagination] = None


class TriggerResponse(BaseModel):
    status: str = "success"
    message: str
    data: TriggerOut


class TriggerListResponse(BaseModel):
    status: str = "success"
    message: str
    data: List[TriggerOut]
    count: int
    pagination: Optional[Pagination] = None


class EventResponse(BaseModel):
    status: str = "success"
    message: str
    data: EventOut


class EventListResponse(BaseModel):
    status: str = "success"
    message: str
    data: List[EventOut]
    count: int
    pagination: Optional[Pagination] = None


class ErrorResponse(BaseModel):
    """Error payload; ``error`` is the machine-readable kind"""
    status: str = "error"
    message: str
    error: str


class MessageResponse(BaseModel):
    status: str = "success"
    message: str


class HealthResponse(BaseModel):
    status: str
    version: str
    entities: List[str]
    timestamp: datetime


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    firstname: str = Field(..., min_length=1, max_length=250)
    lastname: str = Field(..., min_length=1, max_length=250)
    username: str = Field(..., min_length=3, max_length=200)
    password: str = Field(..., min_length=6)
    api_access: ApiAccess = ApiAccess.NO


class ApiAccessUpdate(BaseModel):
    user_id: int
    access: ApiAccess


class UserProfile(BaseModel):
    id: int
    username: str
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    email: Optional[str] = None
    api_access: Optional[str] = None


class LoginResponse(BaseModel):
    status: str = "success"
    data: UserProfile
    token: str
    expires_at: datetime
    warning: Optional[str] = None


class UserResponse(BaseModel):
    status: str = "success"
    data: UserProfile
