"""
Correlation Resolver
====================

Relates entities across levels where the schema has no foreign key, most
importantly Case -> Trigger. Two entities are considered related when they
share the exact jurisdiction and at least one assignee email (compared
trimmed and case-insensitive).

Results are "likely related", not authoritative: when the source has no
assignees the match falls back to jurisdiction alone, and every candidate
set is capped at the relationship page size.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.engine import Row
from sqlalchemy.orm import Session

from .db.models import Assignee, DocketCase
from .dedup import normalize_text
from .errors import NotFound
from .queries import ENTITY_MODELS, JURISDICTION_COLUMNS, ROW_QUERIES, EntityKind
from .relationships import BatchRelationshipResolver

logger = logging.getLogger(__name__)

SUPPORTED_PAIRS = {
    (EntityKind.CASE, EntityKind.TRIGGER),
    (EntityKind.CASE, EntityKind.EVENT),
    (EntityKind.TRIGGER, EntityKind.CASE),
}


@dataclass(frozen=True)
class CorrelationSource:
    """The entity being correlated from"""
    kind: EntityKind
    id: int
    user_id: int
    jurisdiction: Optional[str]
    assignee_emails: Tuple[str, ...] = ()


class CorrelationResolver:
    def __init__(self, resolver: Optional[BatchRelationshipResolver] = None, page_size: int = 50):
        self.resolver = resolver or BatchRelationshipResolver()
        self.page_size = page_size

    def source_for(self, db: Session, kind: EntityKind, entity_id: int, scope_user_id: int) -> CorrelationSource:
        """Load jurisdiction and assignees of an owned entity; NotFound otherwise."""
        model = ENTITY_MODELS[kind]
        if kind == EntityKind.EVENT:
            raise ValueError("Events cannot be a correlation source")

        row = db.execute(
            select(model.id, JURISDICTION_COLUMNS[kind].label("jurisdiction"))
            .where(model.id == entity_id, model.user_id == scope_user_id)
        ).first()
        if row is None:
            raise NotFound.entity(kind.value)

        emails = self.resolver.assignee_emails(db, entity_id, kind.level, scope_user_id)
        return CorrelationSource(
            kind=kind,
            id=entity_id,
            user_id=scope_user_id,
            jurisdiction=row.jurisdiction,
            assignee_emails=tuple(emails),
        )

    def correlate(self, db: Session, source: CorrelationSource, target_kind: EntityKind) -> List[Row]:
        """
        Rows of ``target_kind`` likely related to ``source``, newest first.

        Rows have the same columns as the target's regular listing.
        """
        if (source.kind, target_kind) not in SUPPORTED_PAIRS:
            raise ValueError(f"Unsupported correlation: {source.kind.value} -> {target_kind.value}")

        # A missing jurisdiction never equals anything
        if not source.jurisdiction:
            logger.debug(f"{source.kind.value} {source.id} has no jurisdiction; nothing to correlate")
            return []

        stmt = ROW_QUERIES[target_kind](source.user_id)
        stmt = stmt.where(JURISDICTION_COLUMNS[target_kind] == source.jurisdiction)

        emails = sorted({normalize_text(e) for e in source.assignee_emails} - {""})
        if emails:
            stmt = stmt.where(self._shares_assignee(target_kind, emails))
        else:
            logger.info(
                f"{source.kind.value} {source.id} has no assignees; "
                f"correlating {target_kind.value}s by jurisdiction only"
            )

        if target_kind == EntityKind.CASE:
            stmt = stmt.order_by(None).order_by(DocketCase.initiation_date.desc(), DocketCase.id.desc())

        rows = db.execute(stmt.limit(self.page_size)).all()
        logger.debug(
            f"Correlated {source.kind.value} {source.id} -> {len(rows)} {target_kind.value}(s)"
        )
        return rows

    def related(self, db: Session, source_kind: EntityKind, source_id: int,
                target_kind: EntityKind, scope_user_id: int) -> List[Row]:
        if (source_kind, target_kind) not in SUPPORTED_PAIRS:
            raise ValueError(f"Unsupported correlation: {source_kind.value} -> {target_kind.value}")
        source = self.source_for(db, source_kind, source_id, scope_user_id)
        return self.correlate(db, source, target_kind)

    @staticmethod
    def _shares_assignee(target_kind: EntityKind, emails: List[str]):
        """EXISTS: the target has a level-appropriate assignee in ``emails``"""
        level = target_kind.level
        target_id = ENTITY_MODELS[target_kind].id
        return (
            select(Assignee.id)
            .where(
                getattr(Assignee, level.parent_column) == target_id,
                getattr(Assignee, level.flag_column).is_(True),
                func.lower(func.trim(Assignee.email)).in_(emails),
            )
            .exists()
        )
