"""
Docket Calendar API
===================

FastAPI endpoints serving assembled Cases, Triggers and Events.

Endpoints (prefix /api/v1):
- POST /auth/register              - Create a user and issue their first API token
- POST /auth/login                 - Exchange username/password for an API token
- GET  /auth/me                    - Profile of the token's user
- PUT  /auth/api-access            - Grant or withdraw a user's API access (admin)
- GET  /cases                      - List cases (filters: name, jurisdiction, timezone, assignee)
- GET  /cases/{case_id}            - Get case
- GET  /cases/{case_id}/triggers   - Triggers correlated with a case
- GET  /cases/{case_id}/events     - Events correlated with a case
- GET  /triggers                   - List triggers (filter: jurisdiction)
- GET  /triggers/{trigger_id}      - Get trigger
- GET  /triggers/{trigger_id}/events - Events produced by a trigger
- GET  /triggers/{trigger_id}/cases  - Cases correlated with a trigger
- GET  /events                     - List events (filters: type, jurisdiction, date range,
                                     case_id, event_name, trigger_name)
- GET  /events/{event_id}          - Get event
- GET  /health                     - Health check

Run with:
    uvicorn docket_api.api:app --host 0.0.0.0 --port 8000
"""

import logging
import time
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Header, Depends, APIRouter, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .assembler import AssemblyMode, EntityAssembler
from .auth import (
    AuthContext, TokenVerifier,
    authenticate_user, create_api_token, extract_bearer_token, get_password_hash,
    is_password_too_long, MAX_PASSWORD_BYTES,
)
from .config import get_settings
from .db.models import User
from .db.session import get_db, init_db
from .errors import DocketError, Forbidden, InvalidCredential, NotFound
from .middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from .queries import EntityKind, ListFilters
from .schemas import (
    CaseListResponse, CaseResponse,
    TriggerListResponse, TriggerResponse,
    EventListResponse, EventResponse,
    ErrorResponse, HealthResponse, MessageResponse, Pagination,
    ApiAccess, ApiAccessUpdate, LoginRequest, LoginResponse, RegisterRequest, UserProfile, UserResponse,
)
from .token_store import CredentialStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
ADMIN_LEVEL = "admin"

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing, invalid or expired token"},
    403: {"model": ErrorResponse, "description": "Token revoked or caller not permitted"},
    404: {"model": ErrorResponse, "description": "Not found or not owned by the caller"},
    408: {"model": ErrorResponse, "description": "Assembly timed out"},
    500: {"model": ErrorResponse, "description": "Data store unavailable"},
}


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Docket Calendar API",
    description="Cases, triggers and court-rule events for docket calendars",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in raw.split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(get_settings().cors_allow_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)


@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Docket Calendar API v{settings.service_version} ({settings.environment})")
    for warning in settings.validate_auth_config():
        logger.warning(f"Auth config: {warning}")
    init_db()


# =============================================================================
# Dependencies
# =============================================================================

def get_credential_store() -> CredentialStore:
    return CredentialStore()


def get_token_verifier(store: CredentialStore = Depends(get_credential_store)) -> TokenVerifier:
    return TokenVerifier.from_settings(get_settings(), store)


def get_assembler() -> EntityAssembler:
    return EntityAssembler.from_settings(get_settings())


def get_auth_context(
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthContext:
    """
    Resolve the caller from ``Authorization: Bearer <token>``.

    Runs in the threadpool; the revocation check queries the data store.
    """
    token = extract_bearer_token(authorization)
    verified = verifier.verify(token)
    return AuthContext(user_id=verified.user_id, username=verified.username, token=verified)


# =============================================================================
# Error handling
# =============================================================================

@app.exception_handler(DocketError)
async def docket_error_handler(request: Request, exc: DocketError):
    message = exc.message
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        if get_settings().is_production:
            message = "Internal server error"

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=message, error=exc.code).model_dump(),
    )


@app.exception_handler(HTTPException)
async def api_http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=str(exc.detail), error=f"http_{exc.status_code}").model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def api_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return structured validation errors without leaking inputs."""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            message=f"Invalid request parameters: {', '.join(fields)}",
            error="validation_error",
        ).model_dump(),
    )


# =============================================================================
# Health
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    settings = get_settings()
    return {
        "status": "success",
        "message": "DocketCalendar API server is running",
        "version": settings.service_version,
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        entities=[kind.value + "s" for kind in EntityKind],
        timestamp=datetime.now(),
    )


router = APIRouter(prefix=get_settings().api_prefix)


# =============================================================================
# Auth
# =============================================================================

NO_API_ACCESS_WARNING = "Your account does not have API access. Some requests may be denied."


def _issue_token(user: User, store: CredentialStore) -> LoginResponse:
    """Sign a token for ``user`` and make it their only valid credential."""
    settings = get_settings()
    issued = time.time()
    token = create_api_token(user.id, user.username, settings=settings, now=issued)
    store.store_credential(user.id, token)

    return LoginResponse(
        data=UserProfile.model_validate(user, from_attributes=True),
        token=token,
        expires_at=datetime.fromtimestamp(int(issued) + settings.jwt_max_token_age_seconds, tz=timezone.utc),
        warning=None if user.api_access == ApiAccess.YES.value else NO_API_ACCESS_WARNING,
    )


@router.post("/auth/register", response_model=LoginResponse, status_code=201, tags=["Auth"])
def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
):
    """Create a user with a bcrypt-hashed password and issue their first token."""
    if is_password_too_long(request.password):
        raise HTTPException(status_code=400, detail=f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")

    existing = db.execute(select(User.id).where(User.username == request.username)).first()
    if existing:
        raise HTTPException(status_code=400, detail="User already exists")

    user = User(
        firstname=request.firstname,
        lastname=request.lastname,
        username=request.username,
        password_hash=get_password_hash(request.password),
        api_access=request.api_access.value,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="User already exists")
    db.refresh(user)

    logger.info(f"Registered user {user.id} ({user.username})")
    return _issue_token(user, store)


@router.post("/auth/login", response_model=LoginResponse, tags=["Auth"])
def login(
    request: LoginRequest,
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
):
    """
    Login with username and password.

    Issues a new API token and stores it as the user's only valid credential,
    which revokes any token issued before. Users without API access still get
    a token, with a warning attached.
    """
    if is_password_too_long(request.password):
        raise HTTPException(status_code=400, detail=f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")

    user = authenticate_user(db, request.username, request.password)
    if not user:
        raise InvalidCredential("Invalid username or password")

    return _issue_token(user, store)


@router.get("/auth/me", response_model=UserResponse, tags=["Auth"], responses=ERROR_RESPONSES)
def me(auth: AuthContext = Depends(get_auth_context), db: Session = Depends(get_db)):
    user = db.execute(select(User).where(User.id == auth.user_id)).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    return UserResponse(data=UserProfile.model_validate(user, from_attributes=True))


@router.put("/auth/api-access", response_model=MessageResponse, tags=["Auth"], responses=ERROR_RESPONSES)
def update_api_access(
    request: ApiAccessUpdate,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    """Grant or withdraw a user's API access. Administrators only."""
    caller_level = db.execute(select(User.user_level).where(User.id == auth.user_id)).scalar_one_or_none()
    if caller_level != ADMIN_LEVEL:
        logger.warning(f"User {auth.user_id} attempted to change API access of user {request.user_id}")
        raise Forbidden("Only administrators can update API access")

    result = db.execute(update(User).where(User.id == request.user_id).values(api_access=request.access.value))
    if result.rowcount == 0:
        db.rollback()
        raise NotFound("User not found")
    db.commit()

    logger.info(f"API access for user {request.user_id} set to {request.access.value} by {auth.user_id}")
    return MessageResponse(message=f"API access for user {request.user_id} updated to {request.access.value}")


# =============================================================================
# Cases
# =============================================================================

@router.get("/cases", response_model=CaseListResponse, tags=["Cases"], responses=ERROR_RESPONSES)
async def list_cases(
    name: Optional[str] = Query(None, description="Case name contains (case-insensitive)"),
    jurisdiction: Optional[str] = Query(None),
    timezone_name: Optional[str] = Query(None, alias="timezone"),
    assignee: Optional[str] = Query(None, description="Case-level assignee email"),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    filters = ListFilters(name=name, jurisdiction=jurisdiction, timezone=timezone_name, assignee=assignee)
    page = await assembler.assemble_page(
        EntityKind.CASE, auth.user_id, filters=filters, limit=limit, offset=offset
    )
    return CaseListResponse(
        message="Cases retrieved successfully",
        data=page.items,
        count=len(page.items),
        pagination=Pagination.build(page.total, page.limit, page.offset),
    )


@router.get("/cases/{case_id}", response_model=CaseResponse, tags=["Cases"], responses=ERROR_RESPONSES)
async def get_case(
    case_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    case = await assembler.assemble(EntityKind.CASE, AssemblyMode.BY_ID, auth.user_id, case_id)
    return CaseResponse(message="Case retrieved successfully", data=case)


@router.get(
    "/cases/{case_id}/triggers", response_model=TriggerListResponse, tags=["Cases"], responses=ERROR_RESPONSES
)
async def get_case_triggers(
    case_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    """Triggers sharing the case's jurisdiction and at least one assignee."""
    triggers = await assembler.assemble(EntityKind.TRIGGER, AssemblyMode.BY_PARENT_ID, auth.user_id, case_id)
    return TriggerListResponse(
        message="Triggers for case retrieved successfully", data=triggers, count=len(triggers)
    )


@router.get(
    "/cases/{case_id}/events", response_model=EventListResponse, tags=["Cases"], responses=ERROR_RESPONSES
)
async def get_case_events(
    case_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    """Events sharing the case's jurisdiction and at least one assignee."""
    events = await assembler.correlate(EntityKind.CASE, case_id, EntityKind.EVENT, auth.user_id)
    return EventListResponse(message="Events for case retrieved successfully", data=events, count=len(events))


# =============================================================================
# Triggers
# =============================================================================

@router.get("/triggers", response_model=TriggerListResponse, tags=["Triggers"], responses=ERROR_RESPONSES)
async def list_triggers(
    jurisdiction: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    page = await assembler.assemble_page(
        EntityKind.TRIGGER, auth.user_id,
        filters=ListFilters(jurisdiction=jurisdiction), limit=limit, offset=offset,
    )
    return TriggerListResponse(
        message="Triggers retrieved successfully",
        data=page.items,
        count=len(page.items),
        pagination=Pagination.build(page.total, page.limit, page.offset),
    )


@router.get(
    "/triggers/{trigger_id}", response_model=TriggerResponse, tags=["Triggers"], responses=ERROR_RESPONSES
)
async def get_trigger(
    trigger_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    trigger = await assembler.assemble(EntityKind.TRIGGER, AssemblyMode.BY_ID, auth.user_id, trigger_id)
    return TriggerResponse(message="Trigger retrieved successfully", data=trigger)


@router.get(
    "/triggers/{trigger_id}/events", response_model=EventListResponse, tags=["Triggers"],
    responses=ERROR_RESPONSES,
)
async def get_trigger_events(
    trigger_id: int,
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    events = await assembler.assemble(
        EntityKind.EVENT, AssemblyMode.BY_PARENT_ID, auth.user_id, trigger_id, limit=limit, offset=offset
    )
    return EventListResponse(message="Events for trigger retrieved successfully", data=events, count=len(events))


@router.get(
    "/triggers/{trigger_id}/cases", response_model=CaseListResponse, tags=["Triggers"],
    responses=ERROR_RESPONSES,
)
async def get_trigger_cases(
    trigger_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    """Cases sharing the trigger's jurisdiction and at least one assignee."""
    cases = await assembler.correlate(EntityKind.TRIGGER, trigger_id, EntityKind.CASE, auth.user_id)
    return CaseListResponse(message="Cases for trigger retrieved successfully", data=cases, count=len(cases))


# =============================================================================
# Events
# =============================================================================

@router.get("/events", response_model=EventListResponse, tags=["Events"], responses=ERROR_RESPONSES)
async def list_events(
    event_type: Optional[str] = Query(None, alias="type"),
    jurisdiction: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    case_id: Optional[int] = Query(None),
    event_name: Optional[str] = Query(None, description="Event name or subject contains"),
    trigger_name: Optional[str] = Query(None, description="Producing trigger name contains"),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")

    filters = ListFilters(
        event_type=event_type, jurisdiction=jurisdiction, date_from=date_from, date_to=date_to,
        case_id=case_id, event_name=event_name, trigger_name=trigger_name,
    )
    page = await assembler.assemble_page(
        EntityKind.EVENT, auth.user_id, filters=filters, limit=limit, offset=offset
    )
    return EventListResponse(
        message="Events retrieved successfully",
        data=page.items,
        count=len(page.items),
        pagination=Pagination.build(page.total, page.limit, page.offset),
    )


@router.get("/events/{event_id}", response_model=EventResponse, tags=["Events"], responses=ERROR_RESPONSES)
async def get_event(
    event_id: int,
    auth: AuthContext = Depends(get_auth_context),
    assembler: EntityAssembler = Depends(get_assembler),
):
    event = await assembler.assemble(EntityKind.EVENT, AssemblyMode.BY_ID, auth.user_id, event_id)
    return EventResponse(message="Event retrieved successfully", data=event)


app.include_router(router)
