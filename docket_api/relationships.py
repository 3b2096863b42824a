"""
Batch Relationship Resolver
===========================

Fetches the related collections (assignees, calendars, dashboard owners,
categories) of a whole set of parent entities with one query per
relationship kind, then partitions the rows per parent in memory.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, sessionmaker

from .db.models import (
    Level, Assignee, CalendarSubscriber, DashboardOwner, Contact, EventCategory,
)
from .db.session import get_session_factory, run_db_call
from .dedup import dedupe_labels, dedupe_parties
from .schemas import CategoryOut, RelatedPartyOut

logger = logging.getLogger(__name__)

RelatedItem = Union[RelatedPartyOut, CategoryOut]


class PartyType(str, Enum):
    """Relationship flavors folded onto assembled entities"""
    ASSIGNEES = "assignees"
    CALENDARS = "calendars"
    DASHBOARDS = "dashboards"
    CATEGORIES = "categories"


PARTY_MODELS = {
    PartyType.ASSIGNEES: Assignee,
    PartyType.CALENDARS: CalendarSubscriber,
    PartyType.DASHBOARDS: DashboardOwner,
}


@dataclass(frozen=True)
class RelationshipKind:
    """A relationship flavor scoped to one hierarchy level"""
    party: PartyType
    level: Level

    def __post_init__(self):
        if self.party == PartyType.CATEGORIES and self.level != Level.EVENT:
            raise ValueError("Categories only exist on events")

    def __str__(self) -> str:
        return f"{self.level.value}-{self.party.value}"


class BatchRelationshipResolver:
    """
    Resolves one relationship kind for many parents at once.

    ``resolve_batch`` runs inside a caller-provided session; ``fetch`` is the
    async entry point used by the assembler and owns its session, retry and
    error translation.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        retries: int = 1,
        backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.retries = retries
        self.backoff_seconds = backoff_seconds

    def resolve_batch(
        self,
        db: Session,
        parent_ids: Iterable[int],
        kind: RelationshipKind,
        scope_user_id: int,
    ) -> Dict[int, List[RelatedItem]]:
        """
        Map every id in ``parent_ids`` to its deduplicated related items.

        The result has exactly the requested keys; parents without rows map
        to an empty list. An empty id set returns {} without querying.
        """
        ids = list(dict.fromkeys(parent_ids))
        if not ids:
            return {}

        if kind.party == PartyType.CATEGORIES:
            stmt = self._category_statement(ids, scope_user_id)
        else:
            stmt = self._party_statement(ids, kind, scope_user_id)

        rows = db.execute(stmt).all()

        raw = defaultdict(list)
        for row in rows:
            raw[row.parent_id].append(row)

        grouped: Dict[int, List[RelatedItem]] = {}
        for parent_id in ids:
            parent_rows = raw.get(parent_id, [])
            if kind.party == PartyType.CATEGORIES:
                grouped[parent_id] = dedupe_labels(r.label for r in parent_rows)
            else:
                grouped[parent_id] = dedupe_parties((r.email, r.name) for r in parent_rows)

        logger.debug(f"Resolved {kind} for {len(ids)} parent(s) from {len(rows)} row(s)")
        return grouped

    async def fetch(
        self,
        parent_ids: Iterable[int],
        kind: RelationshipKind,
        scope_user_id: int,
    ) -> Dict[int, List[RelatedItem]]:
        """Async ``resolve_batch`` in a worker thread with its own session."""
        ids = list(dict.fromkeys(parent_ids))
        if not ids:
            return {}

        return await run_db_call(
            self.session_factory or get_session_factory(),
            self.resolve_batch,
            ids,
            kind,
            scope_user_id,
            retries=self.retries,
            backoff_seconds=self.backoff_seconds,
        )

    def assignee_emails(self, db: Session, entity_id: int, level: Level, scope_user_id: int) -> List[str]:
        """Assignee emails of a single entity, as used for correlation"""
        kind = RelationshipKind(PartyType.ASSIGNEES, level)
        parties = self.resolve_batch(db, [entity_id], kind, scope_user_id)[entity_id]
        return [p.email for p in parties]

    @staticmethod
    def _party_statement(ids: List[int], kind: RelationshipKind, scope_user_id: int):
        model = PARTY_MODELS[kind.party]
        parent_column = getattr(model, kind.level.parent_column)
        level_flag = getattr(model, kind.level.flag_column)

        stmt = (
            select(parent_column.label("parent_id"), model.email.label("email"), Contact.name.label("name"))
            .select_from(model)
            # Directory names are per user; never resolve through someone else's contacts
            .outerjoin(
                Contact,
                and_(
                    func.lower(func.trim(Contact.email)) == func.lower(func.trim(model.email)),
                    Contact.user_id == scope_user_id,
                ),
            )
            .where(parent_column.in_(ids), level_flag.is_(True))
            .order_by(model.id, Contact.id)
        )

        if hasattr(model, "user_id"):
            stmt = stmt.where(model.user_id == scope_user_id)

        return stmt

    @staticmethod
    def _category_statement(ids: List[int], scope_user_id: int):
        return (
            select(EventCategory.case_event_id.label("parent_id"), EventCategory.label)
            .where(EventCategory.case_event_id.in_(ids), EventCategory.user_id == scope_user_id)
            .order_by(EventCategory.id)
        )
