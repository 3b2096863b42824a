"""
SQLAlchemy Models for Database
==============================

Docket calendar schema:
- Users and their currently valid API credential
- Cases, Triggers (import dockets) and Events (case events)
- Event -> Trigger link rows
- Related parties (assignees, calendars, dashboard owners) attached at
  case, trigger or event level
- Contact directory used to resolve party display names
- Per-user event categories

Table and column names follow the legacy docket database so the service can
be pointed at existing data. Supports both PostgreSQL and SQLite.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, Date, DateTime, ForeignKey,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship, declarative_base, declared_attr

Base = declarative_base()


# =============================================================================
# ENUMS
# =============================================================================

class Level(str, enum.Enum):
    """Hierarchy level a related-party row applies to"""
    CASE = "case"
    TRIGGER = "trigger"
    EVENT = "event"

    @property
    def flag_column(self) -> str:
        return f"{self.value}level"

    @property
    def parent_column(self) -> str:
        return {
            Level.CASE: "case_id",
            Level.TRIGGER: "import_docket_id",
            Level.EVENT: "case_event_id",
        }[self]


# =============================================================================
# USERS
# =============================================================================

class User(Base):
    """API user; owns every case, trigger and event row"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False, unique=True)
    password_hash = Column("userpassword", String(255), nullable=True)
    firstname = Column(String(255), nullable=True)
    lastname = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    # 'yes' / 'no'; login still succeeds without access but carries a warning
    api_access = Column(String(3), nullable=False, default="no")
    user_level = Column(String(50), nullable=False, default="user")
    # The one token currently honoured for this user; NULL/blank = revoked
    api_access_token = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    cases = relationship("DocketCase", back_populates="user", cascade="all, delete-orphan")
    triggers = relationship("Trigger", back_populates="user", cascade="all, delete-orphan")
    events = relationship("CaseEvent", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# CASES / TRIGGERS / EVENTS
# =============================================================================

class DocketCase(Base):
    """Legal matter"""
    __tablename__ = "docket_cases"

    id = Column("case_id", Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    case_matter = Column(String(500), nullable=False)
    case_jurisdiction = Column(String(255), nullable=True)
    created_on = Column(DateTime, default=datetime.utcnow)
    case_note = Column(Text, nullable=True)
    initiation_date = Column(Date, nullable=True)
    case_number = Column(String(255), nullable=True)
    timezone = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_docket_cases_user_jurisdiction", "user_id", "case_jurisdiction"),
    )

    user = relationship("User", back_populates="cases")
    events = relationship("CaseEvent", back_populates="case")


class Trigger(Base):
    """
    Deadline-producing item ("import docket").

    Deliberately has no case foreign key; triggers are related to cases by
    correlation (jurisdiction + overlapping assignees).
    """
    __tablename__ = "import_docket_calculator"

    id = Column("import_docket_id", Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    trigger_item = Column("triggerItem", String(500), nullable=False)
    trigger_date = Column(Date, nullable=True)
    trigger_time = Column(String(20), nullable=True)
    meridiem = Column(String(2), nullable=True)
    service_type = Column(String(50), nullable=True)
    service_type_description = Column("serviceType", String(255), nullable=True)
    jurisdiction = Column(String(255), nullable=True)
    jurisdiction_description = Column("jurisdesc", String(500), nullable=True)
    created_on = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_import_docket_user_jurisdiction", "user_id", "jurisdiction"),
    )

    user = relationship("User", back_populates="triggers")
    event_links = relationship("ImportEvent", back_populates="trigger", cascade="all, delete-orphan")


class CaseEvent(Base):
    """Concrete task/appointment generated from a trigger"""
    __tablename__ = "case_events"

    id = Column("case_event_id", Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    case_id = Column(Integer, ForeignKey("docket_cases.case_id", ondelete="SET NULL"), nullable=True)
    event_name = Column("eventName", String(500), nullable=False)
    event_date = Column(DateTime, nullable=True)
    appointment_length = Column("appointmentlength", Integer, nullable=True)  # minutes
    event_type = Column("eventtype", String(100), nullable=True)
    court_rule = Column("courtRule", Text, nullable=True)
    date_rule = Column("dateRule", Text, nullable=True)
    event_timezone = Column("eventTimezone", String(100), nullable=True)
    color = Column("eventColor", Integer, nullable=True)  # 0-11 palette id
    # Custom details
    event_subject = Column("eventSubject", String(500), nullable=True)
    event_location = Column("eventLocation", String(500), nullable=True)
    event_comment = Column("eventComment", Text, nullable=True)
    created_on = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="events")
    case = relationship("DocketCase", back_populates="events")
    trigger_link = relationship("ImportEvent", back_populates="event", uselist=False, cascade="all, delete-orphan")


class ImportEvent(Base):
    """Link row: which trigger produced an event"""
    __tablename__ = "import_events"

    id = Column("import_event_id", Integer, primary_key=True, autoincrement=True)
    import_docket_id = Column(
        Integer, ForeignKey("import_docket_calculator.import_docket_id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    case_event_id = Column(
        Integer, ForeignKey("case_events.case_event_id", ondelete="CASCADE"),
        nullable=False, unique=True
    )

    trigger = relationship("Trigger", back_populates="event_links")
    event = relationship("CaseEvent", back_populates="trigger_link")


class CustomText(Base):
    """Title / location / description for a case or a trigger"""
    __tablename__ = "docket_customtext"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("docket_cases.case_id", ondelete="CASCADE"), nullable=True, unique=True)
    import_docket_id = Column(
        Integer, ForeignKey("import_docket_calculator.import_docket_id", ondelete="CASCADE"),
        nullable=True, unique=True
    )
    case_subjecttext = Column(String(500), nullable=True)
    location = Column(String(500), nullable=True)
    trigger_customtext = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(case_id IS NULL) <> (import_docket_id IS NULL)",
            name="ck_customtext_single_owner",
        ),
    )


# =============================================================================
# RELATED PARTIES
# =============================================================================

class RelatedPartyMixin:
    """
    Shared layout of assignee, calendar and dashboard-owner rows.

    A row hangs off exactly one case, trigger or event; the matching level
    flag says which, and exactly one flag is set.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, nullable=True)
    import_docket_id = Column(Integer, nullable=True)
    case_event_id = Column(Integer, nullable=True)
    caselevel = Column(Boolean, nullable=False, default=False)
    triggerlevel = Column(Boolean, nullable=False, default=False)
    eventlevel = Column(Boolean, nullable=False, default=False)

    @declared_attr
    def __table_args__(cls):
        return (
            CheckConstraint(
                "(CASE WHEN caselevel THEN 1 ELSE 0 END)"
                " + (CASE WHEN triggerlevel THEN 1 ELSE 0 END)"
                " + (CASE WHEN eventlevel THEN 1 ELSE 0 END) = 1",
                name=f"ck_{cls.__tablename__}_one_level",
            ),
            Index(f"ix_{cls.__tablename__}_case", "case_id"),
            Index(f"ix_{cls.__tablename__}_trigger", "import_docket_id"),
            Index(f"ix_{cls.__tablename__}_event", "case_event_id"),
        )

    @classmethod
    def for_level(cls, level: Level, parent_id: int, email: str, **kwargs):
        """Build a row attached to ``parent_id`` at ``level``"""
        values = {level.parent_column: parent_id, level.flag_column: True}
        values.update(kwargs)
        return cls(email=email, **values)


class Assignee(RelatedPartyMixin, Base):
    __tablename__ = "docket_cases_attendees"

    email = Column("attendee", String(255), nullable=False)


class CalendarSubscriber(RelatedPartyMixin, Base):
    __tablename__ = "docket_calendars"

    email = Column("calendar_email", String(255), nullable=False)


class DashboardOwner(RelatedPartyMixin, Base):
    """Dashboard owner rows are kept per viewing user"""
    __tablename__ = "owners"

    email = Column("ownerdata", String(255), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


class Contact(Base):
    """Contact directory entry; resolves a party email to a display name"""
    __tablename__ = "usercontactupdate"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email = Column("userContactEmail", String(255), nullable=False)
    name = Column("userContactName", String(255), nullable=True)

    __table_args__ = (
        Index("ix_usercontact_user_email", "user_id", "userContactEmail"),
    )


class EventCategory(Base):
    """Free-text label a user put on an event"""
    __tablename__ = "event_categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_event_id = Column(Integer, ForeignKey("case_events.case_event_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint("case_event_id", "user_id", "label", name="uq_event_category_label"),
        Index("ix_event_categories_event", "case_event_id"),
    )
