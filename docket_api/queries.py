"""
Row queries for the three entity kinds.

Each builder returns a SELECT of flat, labeled columns scoped to one owning
user, in the listing's default order. Callers narrow it further (by id, by
parent, by correlation) and paginate; the assembler folds the rows into
output models.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import Select, and_, exists, func, or_, select

from .db.models import Assignee, CaseEvent, CustomText, DocketCase, ImportEvent, Level, Trigger
from .dedup import normalize_text


class EntityKind(str, Enum):
    CASE = "case"
    TRIGGER = "trigger"
    EVENT = "event"

    @property
    def level(self) -> Level:
        """Level at which this kind's own related parties are attached"""
        return Level(self.value)


ENTITY_MODELS = {
    EntityKind.CASE: DocketCase,
    EntityKind.TRIGGER: Trigger,
    EntityKind.EVENT: CaseEvent,
}


@dataclass
class ListFilters:
    """Optional narrowing for ``all`` listings; unset fields are ignored."""
    name: Optional[str] = None
    jurisdiction: Optional[str] = None
    timezone: Optional[str] = None
    # Case-level assignee email, compared trimmed and case-insensitive
    assignee: Optional[str] = None
    event_type: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    case_id: Optional[int] = None
    event_name: Optional[str] = None
    trigger_name: Optional[str] = None


def case_rows(user_id: int, filters: Optional[ListFilters] = None) -> Select:
    stmt = (
        select(
            DocketCase.id.label("id"),
            DocketCase.case_matter.label("case_name"),
            DocketCase.case_jurisdiction.label("jurisdiction"),
            DocketCase.created_on.label("created_on"),
            DocketCase.case_note.label("case_note"),
            DocketCase.initiation_date.label("initiation_date"),
            DocketCase.case_number.label("case_number"),
            DocketCase.timezone.label("timezone"),
            CustomText.case_subjecttext.label("custom_title"),
            CustomText.location.label("custom_location"),
            CustomText.trigger_customtext.label("custom_description"),
        )
        .select_from(DocketCase)
        .outerjoin(CustomText, CustomText.case_id == DocketCase.id)
        .where(DocketCase.user_id == user_id)
        .order_by(DocketCase.id)
    )

    if filters:
        if filters.name:
            stmt = stmt.where(DocketCase.case_matter.icontains(filters.name.strip(), autoescape=True))
        if filters.jurisdiction:
            stmt = stmt.where(DocketCase.case_jurisdiction == filters.jurisdiction)
        if filters.timezone:
            stmt = stmt.where(DocketCase.timezone == filters.timezone)
        if filters.assignee and normalize_text(filters.assignee):
            stmt = stmt.where(
                exists().where(
                    Assignee.case_id == DocketCase.id,
                    Assignee.caselevel.is_(True),
                    func.lower(func.trim(Assignee.email)) == normalize_text(filters.assignee),
                )
            )

    return stmt


def trigger_rows(user_id: int, filters: Optional[ListFilters] = None) -> Select:
    event_count = (
        select(func.count(ImportEvent.id))
        .where(ImportEvent.import_docket_id == Trigger.id)
        .correlate(Trigger)
        .scalar_subquery()
    )

    stmt = (
        select(
            Trigger.id.label("id"),
            Trigger.trigger_item.label("trigger_name"),
            Trigger.trigger_date.label("trigger_date"),
            Trigger.trigger_time.label("trigger_time"),
            Trigger.meridiem.label("meridiem"),
            Trigger.service_type.label("service_type"),
            Trigger.service_type_description.label("service_type_description"),
            Trigger.jurisdiction.label("jurisdiction"),
            Trigger.jurisdiction_description.label("jurisdiction_description"),
            Trigger.created_on.label("created_on"),
            event_count.label("number_of_events"),
            CustomText.case_subjecttext.label("custom_title"),
            CustomText.location.label("custom_location"),
            CustomText.trigger_customtext.label("custom_description"),
        )
        .select_from(Trigger)
        .outerjoin(CustomText, CustomText.import_docket_id == Trigger.id)
        .where(Trigger.user_id == user_id)
        .order_by(Trigger.trigger_date.desc(), Trigger.id.desc())
    )

    if filters and filters.jurisdiction:
        stmt = stmt.where(Trigger.jurisdiction == filters.jurisdiction)

    return stmt


def event_rows(user_id: int, filters: Optional[ListFilters] = None) -> Select:
    """
    Events joined with the trigger that produced them.

    Only events with a link row are listed; an event's trigger must belong to
    the same user.
    """
    stmt = (
        select(
            CaseEvent.id.label("id"),
            CaseEvent.event_name.label("event_subject"),
            CaseEvent.event_date.label("event_date"),
            CaseEvent.appointment_length.label("appointment_length"),
            CaseEvent.event_type.label("event_type"),
            CaseEvent.court_rule.label("court_rule"),
            CaseEvent.date_rule.label("date_rule"),
            CaseEvent.event_timezone.label("event_timezone"),
            CaseEvent.color.label("color"),
            CaseEvent.case_id.label("case_id"),
            DocketCase.case_matter.label("case_name"),
            Trigger.id.label("trigger_id"),
            Trigger.trigger_item.label("trigger_name"),
            Trigger.trigger_date.label("trigger_date"),
            Trigger.trigger_time.label("trigger_time"),
            Trigger.meridiem.label("meridiem"),
            Trigger.service_type.label("service_type"),
            Trigger.service_type_description.label("service_type_description"),
            Trigger.jurisdiction.label("jurisdiction"),
            CaseEvent.created_on.label("created_on"),
            CaseEvent.event_subject.label("custom_title"),
            CaseEvent.event_location.label("custom_location"),
            CaseEvent.event_comment.label("custom_description"),
        )
        .select_from(CaseEvent)
        .join(ImportEvent, ImportEvent.case_event_id == CaseEvent.id)
        .join(Trigger, and_(Trigger.id == ImportEvent.import_docket_id, Trigger.user_id == user_id))
        .outerjoin(DocketCase, and_(DocketCase.id == CaseEvent.case_id, DocketCase.user_id == user_id))
        .where(CaseEvent.user_id == user_id)
        .order_by(CaseEvent.event_date.desc(), CaseEvent.id.desc())
    )

    if filters:
        if filters.event_type:
            stmt = stmt.where(CaseEvent.event_type == filters.event_type)
        if filters.jurisdiction:
            stmt = stmt.where(Trigger.jurisdiction == filters.jurisdiction)
        if filters.case_id is not None:
            stmt = stmt.where(CaseEvent.case_id == filters.case_id)
        if filters.event_name:
            needle = filters.event_name.strip()
            stmt = stmt.where(
                or_(
                    CaseEvent.event_name.icontains(needle, autoescape=True),
                    CaseEvent.event_subject.icontains(needle, autoescape=True),
                )
            )
        if filters.trigger_name:
            stmt = stmt.where(Trigger.trigger_item.icontains(filters.trigger_name.strip(), autoescape=True))
        if filters.date_from:
            stmt = stmt.where(CaseEvent.event_date >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            # date_to is inclusive of the whole day
            stmt = stmt.where(
                CaseEvent.event_date < datetime.combine(filters.date_to + timedelta(days=1), time.min)
            )

    return stmt


ROW_QUERIES = {
    EntityKind.CASE: case_rows,
    EntityKind.TRIGGER: trigger_rows,
    EntityKind.EVENT: event_rows,
}

# Column compared when correlating entities across levels
JURISDICTION_COLUMNS = {
    EntityKind.CASE: DocketCase.case_jurisdiction,
    EntityKind.TRIGGER: Trigger.jurisdiction,
    EntityKind.EVENT: Trigger.jurisdiction,
}


def count_rows(stmt: Select) -> Select:
    """Total number of rows ``stmt`` would return, ignoring order and paging"""
    return select(func.count()).select_from(stmt.order_by(None).subquery())


def paginate(stmt: Select, limit: Optional[int], offset: int = 0) -> Select:
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt
