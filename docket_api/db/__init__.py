"""
Database Package - PostgreSQL with SQLAlchemy
==============================================

Docket schema and session handling.
"""

from .models import (
    Base,
    Level,
    User,
    DocketCase, Trigger, CaseEvent, ImportEvent, CustomText,
    Assignee, CalendarSubscriber, DashboardOwner, Contact, EventCategory,
)
from .session import get_db, init_db, get_engine, get_session_factory, session_scope, run_db_call

__all__ = [
    # Base
    "Base", "Level",
    # Users
    "User",
    # Docket entities
    "DocketCase", "Trigger", "CaseEvent", "ImportEvent", "CustomText",
    # Related parties
    "Assignee", "CalendarSubscriber", "DashboardOwner", "Contact", "EventCategory",
    # Session
    "get_db", "init_db", "get_engine", "get_session_factory", "session_scope", "run_db_call",
]
