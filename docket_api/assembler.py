"""
Entity Assembler
================

Builds client-ready Case, Trigger and Event objects:

1. Load the owned parent rows (listing, single id, or children of a parent)
2. Resolve every relationship kind for all parent ids at once, concurrently
3. Fold the groups onto each row and validate into the output models

The whole assembly runs under one deadline; when it expires the in-flight
relationship fetches are cancelled and AssemblyTimeout is raised. Any failed
fetch cancels its siblings and fails the assembly.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.engine import Row
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .correlation import SUPPORTED_PAIRS, CorrelationResolver
from .db.models import ImportEvent, Level, Trigger
from .db.session import get_session_factory, run_db_call
from .errors import AssemblyTimeout, NotFound
from .queries import ENTITY_MODELS, ROW_QUERIES, EntityKind, ListFilters, count_rows, paginate
from .relationships import BatchRelationshipResolver, PartyType, RelationshipKind
from .schemas import CaseOut, CustomDetails, EventOut, TriggerOut

logger = logging.getLogger(__name__)

Entity = Union[CaseOut, TriggerOut, EventOut]

OUTPUT_MODELS = {
    EntityKind.CASE: CaseOut,
    EntityKind.TRIGGER: TriggerOut,
    EntityKind.EVENT: EventOut,
}

PARTY_TYPES = (PartyType.ASSIGNEES, PartyType.CALENDARS, PartyType.DASHBOARDS)


class AssemblyMode(str, Enum):
    ALL = "all"
    BY_ID = "by_id"
    BY_PARENT_ID = "by_parent_id"


@dataclass
class Page:
    """One page of an ``all`` listing plus the size of the whole filtered set"""
    items: List[Entity]
    total: int
    limit: int
    offset: int


class EntityAssembler:
    """
    Assembles entities for one scope user per call.

    Instances hold no per-request state and are safe to share.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        resolver: Optional[BatchRelationshipResolver] = None,
        correlator: Optional[CorrelationResolver] = None,
        timeout_seconds: float = 30.0,
        page_size: int = 50,
        retries: int = 1,
        backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.resolver = resolver or BatchRelationshipResolver(session_factory, retries, backoff_seconds)
        self.correlator = correlator or CorrelationResolver(self.resolver, page_size)
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      session_factory: Optional[sessionmaker] = None) -> "EntityAssembler":
        settings = settings or get_settings()
        return cls(
            session_factory=session_factory,
            timeout_seconds=settings.assembly_timeout_seconds,
            page_size=settings.relationship_page_size,
            backoff_seconds=settings.db_retry_backoff_seconds,
        )

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def assemble(
        self,
        kind: Union[EntityKind, str],
        mode: Union[AssemblyMode, str],
        scope_user_id: int,
        entity_id: Optional[int] = None,
        *,
        filters: Optional[ListFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Union[Entity, List[Entity]]:
        """
        Assemble entities of ``kind`` owned by ``scope_user_id``.

        ``all`` returns a list (paginated, optionally filtered); ``by_id``
        returns one entity or raises NotFound, whether the row is absent or
        owned by someone else; ``by_parent_id`` returns the triggers
        correlated with a case, or the events produced by a trigger.
        """
        kind = EntityKind(kind)
        mode = AssemblyMode(mode)

        if mode != AssemblyMode.ALL and entity_id is None:
            raise ValueError(f"{mode.value} requires an entity id")
        if mode == AssemblyMode.BY_PARENT_ID and kind == EntityKind.CASE:
            raise ValueError("Cases have no parent entity")

        return await self._bounded(
            self._assemble(kind, mode, scope_user_id, entity_id, filters, limit, offset),
            f"{mode.value} {kind.value}",
        )

    async def assemble_page(
        self,
        kind: Union[EntityKind, str],
        scope_user_id: int,
        *,
        filters: Optional[ListFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Page:
        """``all`` listing that also counts the filtered rows across every page."""
        kind = EntityKind(kind)
        page_limit = limit if limit is not None else self.page_size

        async def run():
            rows, total = await self._run(
                self._load_page, kind, scope_user_id, filters, page_limit, offset
            )
            items = await self._fold(kind, rows, scope_user_id)
            return Page(items=items, total=total, limit=page_limit, offset=offset)

        return await self._bounded(run(), f"page {kind.value}")

    async def correlate(
        self,
        source_kind: Union[EntityKind, str],
        source_id: int,
        target_kind: Union[EntityKind, str],
        scope_user_id: int,
    ) -> List[Entity]:
        """Likely-related entities of another level, fully assembled."""
        source_kind = EntityKind(source_kind)
        target_kind = EntityKind(target_kind)
        if (source_kind, target_kind) not in SUPPORTED_PAIRS:
            raise ValueError(f"Unsupported correlation: {source_kind.value} -> {target_kind.value}")

        async def run():
            rows = await self._run(
                self.correlator.related, source_kind, source_id, target_kind, scope_user_id
            )
            return await self._fold(target_kind, rows, scope_user_id)

        return await self._bounded(run(), f"correlate {source_kind.value} -> {target_kind.value}")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _assemble(self, kind, mode, scope_user_id, entity_id, filters, limit, offset):
        rows = await self._run(
            self._load_rows, kind, mode, scope_user_id, entity_id, filters, limit, offset
        )

        if mode == AssemblyMode.BY_ID:
            if not rows:
                raise NotFound.entity(kind.value)
            entities = await self._fold(kind, rows[:1], scope_user_id)
            return entities[0]

        return await self._fold(kind, rows, scope_user_id)

    def _load_rows(
        self,
        db: Session,
        kind: EntityKind,
        mode: AssemblyMode,
        scope_user_id: int,
        entity_id: Optional[int],
        filters: Optional[ListFilters],
        limit: Optional[int],
        offset: int,
    ) -> List[Row]:
        page = limit if limit is not None else self.page_size

        if mode == AssemblyMode.ALL:
            stmt = paginate(ROW_QUERIES[kind](scope_user_id, filters), page, offset)
        elif mode == AssemblyMode.BY_ID:
            stmt = ROW_QUERIES[kind](scope_user_id).where(ENTITY_MODELS[kind].id == entity_id)
        elif kind == EntityKind.TRIGGER:
            # Triggers have no case foreign key
            return self.correlator.related(
                db, EntityKind.CASE, entity_id, EntityKind.TRIGGER, scope_user_id
            )
        else:
            owned = db.execute(
                select(Trigger.id).where(Trigger.id == entity_id, Trigger.user_id == scope_user_id)
            ).first()
            if owned is None:
                raise NotFound.entity("trigger")
            stmt = paginate(
                ROW_QUERIES[kind](scope_user_id).where(ImportEvent.import_docket_id == entity_id),
                page,
                offset,
            )

        return db.execute(stmt).all()

    @staticmethod
    def _load_page(
        db: Session,
        kind: EntityKind,
        scope_user_id: int,
        filters: Optional[ListFilters],
        limit: int,
        offset: int,
    ) -> Tuple[List[Row], int]:
        stmt = ROW_QUERIES[kind](scope_user_id, filters)
        rows = db.execute(paginate(stmt, limit, offset)).all()
        total = db.execute(count_rows(stmt)).scalar_one()
        return rows, total

    async def _fold(self, kind: EntityKind, rows: List[Row], scope_user_id: int) -> List[Entity]:
        if not rows:
            return []

        parent_ids = [row.id for row in rows]
        kinds = [RelationshipKind(party, kind.level) for party in PARTY_TYPES]
        if kind == EntityKind.EVENT:
            kinds.append(RelationshipKind(PartyType.CATEGORIES, Level.EVENT))

        groups = await self._gather(
            [self.resolver.fetch(parent_ids, rel_kind, scope_user_id) for rel_kind in kinds]
        )

        model = OUTPUT_MODELS[kind]
        entities = []
        for row in rows:
            data = dict(row._mapping)
            data["custom_details"] = CustomDetails(
                title=data.pop("custom_title", None),
                location=data.pop("custom_location", None),
                description=data.pop("custom_description", None),
            )
            for rel_kind, grouped in zip(kinds, groups):
                data[rel_kind.party.value] = grouped[row.id]
            if kind == EntityKind.TRIGGER:
                data["number_of_events"] = data.get("number_of_events") or 0
            entities.append(model(**data))

        return entities

    @staticmethod
    async def _gather(coros: List[Awaitable[Any]]) -> List[Any]:
        """gather() that cancels the remaining fetches when one fails."""
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _bounded(self, coro: Awaitable[Any], label: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Assembly timed out after {self.timeout_seconds}s: {label}")
            raise AssemblyTimeout()

    async def _run(self, fn: Callable[..., Any], *args):
        return await run_db_call(
            self.session_factory or get_session_factory(),
            fn,
            *args,
            retries=self.retries,
            backoff_seconds=self.backoff_seconds,
        )
