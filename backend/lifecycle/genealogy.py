"""
Genealogy Tracker: Parent/child lineage across batches.

Two edge sets describe lineage:
  - Batch.parent_batch_id: the single-parent lineage field that drives
    ``generation`` (parent.generation + 1, roots are 0);
  - BatchRelationship rows: explicit split/merge/clone/propagation links,
    possibly many-to-many.

The union of both must stay a DAG. Writers (record_relationship, split, merge)
run the ancestor check and the insert under the per-site genealogy lock
(shared by every tracker in the process) and the site row write lock, so two
concurrent inserts cannot each pass the check and jointly close a cycle.

Traversals load the site's adjacency into memory and walk it iteratively:
  - descendants: breadth-first over a children index, returned ordered by
    (generation, created_at) so the view is stable regardless of insert order;
  - ancestor_path: follows parent_batch_id to generation 0. A cycle in stored
    data is corruption and raises IntegrityViolation; it is never truncated.
"""

import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.errors import ConcurrencyConflict, ErrorCode, IntegrityViolation, Outcome
from core.locks import SiteLocks, acquire_advisory_lock, lock_site_row
from db.models import Batch, BatchRelationship, BatchSourceType, BatchStatus, RelationshipType
from db.session import AsyncSessionLocal, unit_of_work
from events.outbox import record_batch_event
from lifecycle.machine import MAX_BATCH_CODE_LENGTH, append_note, place_new_batch
from lifecycle.stages import StageGraph

logger = structlog.get_logger()

MAX_CODE_SUFFIX = 99


@dataclass
class SplitResult:
    original: Batch
    child: Batch
    relationship: BatchRelationship


@dataclass
class MergeResult:
    merged: Batch
    sources: list[Batch]
    relationships: list[BatchRelationship] = field(default_factory=list)


@dataclass
class LineageFault:
    """A lineage invariant broken in stored data. Reported, never repaired."""

    batch_id: uuid.UUID
    kind: str  # missing_parent, generation_mismatch, parent_cycle, relationship_cycle
    detail: str


async def _lineage_index(db: AsyncSession, site_id: uuid.UUID) -> dict[uuid.UUID, tuple[uuid.UUID | None, int]]:
    """batch_id -> (parent_batch_id, generation) for every batch in the site."""
    result = await db.execute(
        select(Batch.batch_id, Batch.parent_batch_id, Batch.generation).where(Batch.site_id == site_id)
    )
    return {row.batch_id: (row.parent_batch_id, row.generation) for row in result.all()}


async def _relationship_parents(db: AsyncSession, site_id: uuid.UUID) -> dict[uuid.UUID, set[uuid.UUID]]:
    result = await db.execute(
        select(BatchRelationship.parent_batch_id, BatchRelationship.child_batch_id).where(
            BatchRelationship.site_id == site_id
        )
    )
    parents: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
    for row in result.all():
        parents[row.child_batch_id].add(row.parent_batch_id)
    return parents


class GenealogyTracker:
    """Lineage queries and the serialized writers that extend lineage."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        locks: SiteLocks | None = None,
        lock_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or SiteLocks("genealogy")
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else get_settings().genealogy_lock_timeout_seconds
        )

    # ── Queries ────────────────────────────────────────────────────────────

    async def descendants(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> list[Batch]:
        """All batches reachable downward via parent_batch_id, ordered by (generation, created_at)."""
        async with unit_of_work(self.session_factory) as db:
            index = await _lineage_index(db, site_id)
            if batch_id not in index:
                return []

            children: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
            for child_id, (parent_id, _) in index.items():
                if parent_id is not None:
                    children[parent_id].append(child_id)

            seen = {batch_id}
            queue = deque([batch_id])
            found: list[uuid.UUID] = []
            while queue:
                for child_id in children.get(queue.popleft(), []):
                    if child_id in seen:
                        continue
                    seen.add(child_id)
                    found.append(child_id)
                    queue.append(child_id)

            if not found:
                return []
            result = await db.execute(
                select(Batch)
                .where(Batch.site_id == site_id, Batch.batch_id.in_(found))
                .order_by(Batch.generation, Batch.created_at, Batch.batch_code)
            )
            return list(result.scalars().all())

    async def ancestor_path(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> list[Batch]:
        """The batch followed by its parents up to generation 0 (nearest first).

        Raises IntegrityViolation when the stored parent chain loops or points
        outside the site.
        """
        async with unit_of_work(self.session_factory) as db:
            index = await _lineage_index(db, site_id)
            if batch_id not in index:
                return []

            path = [batch_id]
            seen = {batch_id}
            parent_id = index[batch_id][0]
            while parent_id is not None:
                if parent_id in seen:
                    logger.error(
                        "genealogy.parent_cycle",
                        site_id=str(site_id),
                        batch_id=str(batch_id),
                        repeated_batch_id=str(parent_id),
                    )
                    raise IntegrityViolation(
                        f"Parent chain of batch {batch_id} loops back to {parent_id}",
                        batch_id=str(batch_id),
                        repeated_batch_id=str(parent_id),
                    )
                if parent_id not in index:
                    logger.error(
                        "genealogy.missing_parent",
                        site_id=str(site_id),
                        batch_id=str(path[-1]),
                        parent_batch_id=str(parent_id),
                    )
                    raise IntegrityViolation(
                        f"Batch {path[-1]} references parent {parent_id} outside site {site_id}",
                        batch_id=str(path[-1]),
                        parent_batch_id=str(parent_id),
                    )
                seen.add(parent_id)
                path.append(parent_id)
                parent_id = index[parent_id][0]

            result = await db.execute(select(Batch).where(Batch.site_id == site_id, Batch.batch_id.in_(path)))
            by_id = {batch.batch_id: batch for batch in result.scalars().all()}
            return [by_id[item] for item in path]

    async def relationships(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> list[BatchRelationship]:
        async with unit_of_work(self.session_factory) as db:
            result = await db.execute(
                select(BatchRelationship)
                .where(
                    BatchRelationship.site_id == site_id,
                    (BatchRelationship.parent_batch_id == batch_id) | (BatchRelationship.child_batch_id == batch_id),
                )
                .order_by(BatchRelationship.transfer_date, BatchRelationship.created_at)
            )
            return list(result.scalars().all())

    async def audit_lineage(self, site_id: uuid.UUID) -> list[LineageFault]:
        """Scan the site for broken lineage. Faults are logged, not repaired."""
        async with unit_of_work(self.session_factory) as db:
            index = await _lineage_index(db, site_id)
            rel_parents = await _relationship_parents(db, site_id)

        faults: list[LineageFault] = []
        for batch_id, (parent_id, generation) in index.items():
            if parent_id is None:
                if generation != 0:
                    faults.append(
                        LineageFault(batch_id, "generation_mismatch", f"root batch has generation {generation}")
                    )
                continue
            if parent_id not in index:
                faults.append(LineageFault(batch_id, "missing_parent", f"parent {parent_id} not in site"))
                continue
            expected = index[parent_id][1] + 1
            if generation != expected:
                faults.append(
                    LineageFault(batch_id, "generation_mismatch", f"generation {generation}, expected {expected}")
                )

        # Parent-chain cycles: a walk that revisits a node on its own path.
        cleared: set[uuid.UUID] = set()
        for start in index:
            path: list[uuid.UUID] = []
            on_path: set[uuid.UUID] = set()
            node = start
            while node is not None and node in index and node not in cleared:
                if node in on_path:
                    faults.append(LineageFault(node, "parent_cycle", "parent chain loops"))
                    break
                on_path.add(node)
                path.append(node)
                node = index[node][0]
            cleared.update(path)

        # Relationship cycles: whatever survives Kahn's peeling sits on or behind a cycle.
        nodes = set(rel_parents)
        for parents in rel_parents.values():
            nodes.update(parents)
        indegree = {node: len(rel_parents.get(node, ())) for node in nodes}
        children: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for child, parents in rel_parents.items():
            for parent in parents:
                children[parent].append(child)
        ready = deque(node for node, degree in indegree.items() if degree == 0)
        while ready:
            node = ready.popleft()
            for child in children.get(node, []):
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
        for node, degree in indegree.items():
            if degree > 0:
                faults.append(LineageFault(node, "relationship_cycle", "relationship graph is not acyclic"))

        for fault in faults:
            logger.error(
                "genealogy.integrity_fault",
                site_id=str(site_id),
                batch_id=str(fault.batch_id),
                kind=fault.kind,
                detail=fault.detail,
            )
        return faults

    # ── Writers ────────────────────────────────────────────────────────────

    async def record_relationship(
        self,
        site_id: uuid.UUID,
        parent_batch_id: uuid.UUID,
        child_batch_id: uuid.UUID,
        relationship_type: RelationshipType,
        user_id: uuid.UUID,
        plant_count_transferred: int | None = None,
        notes: str | None = None,
        transfer_date: date | None = None,
    ) -> Outcome[BatchRelationship]:
        if plant_count_transferred is not None and plant_count_transferred < 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Transferred plant count cannot be negative")
        if parent_batch_id == child_batch_id:
            return Outcome.failure(ErrorCode.CYCLE_DETECTED, "A batch cannot be its own parent")

        async def _record(db: AsyncSession) -> Outcome[BatchRelationship]:
            index = await _lineage_index(db, site_id)
            for batch_id in (parent_batch_id, child_batch_id):
                if batch_id not in index:
                    return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found", batch_id=str(batch_id))

            if await self._is_ancestor(db, site_id, index, candidate=child_batch_id, of=parent_batch_id):
                logger.info(
                    "genealogy.cycle_rejected",
                    site_id=str(site_id),
                    parent_batch_id=str(parent_batch_id),
                    child_batch_id=str(child_batch_id),
                )
                return Outcome.failure(
                    ErrorCode.CYCLE_DETECTED,
                    "Child batch is already an ancestor of the parent batch",
                    parent_batch_id=str(parent_batch_id),
                    child_batch_id=str(child_batch_id),
                )

            existing = await db.execute(
                select(BatchRelationship.relationship_id).where(
                    BatchRelationship.parent_batch_id == parent_batch_id,
                    BatchRelationship.child_batch_id == child_batch_id,
                    BatchRelationship.relationship_type == relationship_type,
                )
            )
            if existing.scalar_one_or_none() is not None:
                return Outcome.failure(ErrorCode.DUPLICATE_KEY, "Relationship already recorded")

            relationship = self._link(
                db,
                site_id,
                parent_batch_id,
                child_batch_id,
                relationship_type,
                user_id,
                plant_count_transferred,
                notes,
                transfer_date,
            )
            await db.flush()
            logger.info(
                "genealogy.relationship_recorded",
                site_id=str(site_id),
                relationship_id=str(relationship.relationship_id),
                relationship_type=relationship_type.value,
            )
            return Outcome.success(relationship)

        return await self._serialized(site_id, _record)

    async def split_batch(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        plant_count: int,
        user_id: uuid.UUID,
        new_batch_name: str | None = None,
        notes: str | None = None,
    ) -> Outcome[SplitResult]:
        """Move ``plant_count`` plants into a new child batch coded ``{code}-Snn``."""

        async def _split(db: AsyncSession) -> Outcome[SplitResult]:
            original = await self._site_batch(db, site_id, batch_id)
            if original is None:
                return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")
            if original.status != BatchStatus.ACTIVE:
                return Outcome.failure(
                    ErrorCode.INVALID_STATE, f"Cannot split a batch with status {original.status.value}"
                )
            if plant_count < 1 or plant_count >= original.plant_count:
                return Outcome.failure(
                    ErrorCode.VALIDATION_FAILED,
                    "Split count must be at least 1 and less than the batch plant count",
                    plant_count=original.plant_count,
                )
            rejection = await self._terminal_rejection(db, site_id, [original])
            if rejection is not None:
                return rejection

            code = await self._free_code(db, site_id, original.batch_code, "S")
            if code is None:
                return Outcome.failure(ErrorCode.DUPLICATE_KEY, "Could not generate a unique split batch code")

            child = await place_new_batch(
                db,
                site_id=site_id,
                strain_id=original.strain_id,
                batch_code=code,
                batch_name=new_batch_name or f"{original.batch_name} (Split)",
                batch_type=original.batch_type,
                source_type=BatchSourceType.SPLIT,
                plant_count=plant_count,
                stage_id=original.current_stage_id,
                user_id=user_id,
                parent=original,
                location_id=original.location_id,
                room_id=original.room_id,
                zone_id=original.zone_id,
                expected_harvest_date=original.expected_harvest_date,
                notes=notes,
            )
            original.plant_count -= plant_count
            original.notes = append_note(original.notes, f"Split {plant_count} plants into {code}")
            original.updated_at = datetime.utcnow()
            original.updated_by = user_id
            record_batch_event(
                db,
                site_id=site_id,
                batch_id=original.batch_id,
                event_type="batch.split",
                performed_by=user_id,
                payload={"child_batch_id": str(child.batch_id), "child_batch_code": code, "plant_count": plant_count},
            )
            relationship = self._link(
                db, site_id, original.batch_id, child.batch_id, RelationshipType.SPLIT, user_id, plant_count, notes
            )
            await db.flush()

            logger.info(
                "genealogy.batch_split",
                site_id=str(site_id),
                batch_id=str(batch_id),
                child_batch_id=str(child.batch_id),
                plant_count=plant_count,
            )
            return Outcome.success(SplitResult(original=original, child=child, relationship=relationship))

        return await self._serialized(site_id, _split)

    async def merge_batches(
        self,
        site_id: uuid.UUID,
        batch_ids: list[uuid.UUID],
        user_id: uuid.UUID,
        new_batch_name: str | None = None,
        notes: str | None = None,
    ) -> Outcome[MergeResult]:
        """Combine active batches of one strain and stage into a new ``{first}-Mnn`` batch."""
        ordered_ids = list(dict.fromkeys(batch_ids))
        if len(ordered_ids) < 2:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "At least two distinct batches are required to merge")

        async def _merge(db: AsyncSession) -> Outcome[MergeResult]:
            sources: list[Batch] = []
            for source_id in ordered_ids:
                batch = await self._site_batch(db, site_id, source_id)
                if batch is None:
                    return Outcome.failure(
                        ErrorCode.NOT_FOUND, f"Batch {source_id} not found", batch_id=str(source_id)
                    )
                if batch.status != BatchStatus.ACTIVE:
                    return Outcome.failure(
                        ErrorCode.INVALID_STATE,
                        f"Batch {batch.batch_code} has status {batch.status.value}",
                        batch_id=str(source_id),
                    )
                sources.append(batch)

            first = sources[0]
            if any(batch.strain_id != first.strain_id for batch in sources):
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, "All batches must be the same strain")
            if any(batch.current_stage_id != first.current_stage_id for batch in sources):
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, "All batches must be in the same stage")
            rejection = await self._terminal_rejection(db, site_id, [first])
            if rejection is not None:
                return rejection

            code = await self._free_code(db, site_id, first.batch_code, "M")
            if code is None:
                return Outcome.failure(ErrorCode.DUPLICATE_KEY, "Could not generate a unique merge batch code")

            # Lineage parent is the deepest source so generation stays monotone.
            lineage_parent = max(sources, key=lambda batch: batch.generation)
            transferred = {batch.batch_id: batch.plant_count for batch in sources}
            merged = await place_new_batch(
                db,
                site_id=site_id,
                strain_id=first.strain_id,
                batch_code=code,
                batch_name=new_batch_name or f"{first.batch_name} (Merged)",
                batch_type=first.batch_type,
                source_type=BatchSourceType.MERGE,
                plant_count=sum(transferred.values()),
                stage_id=first.current_stage_id,
                user_id=user_id,
                parent=lineage_parent,
                location_id=first.location_id,
                room_id=first.room_id,
                zone_id=first.zone_id,
                expected_harvest_date=first.expected_harvest_date,
                notes=notes,
                metadata={"merged_from": [str(batch.batch_id) for batch in sources]},
            )

            now = datetime.utcnow()
            relationships = []
            for batch in sources:
                batch.plant_count = 0
                batch.status = BatchStatus.COMPLETED
                batch.notes = append_note(batch.notes, f"Merged into {code}", now)
                batch.updated_at = now
                batch.updated_by = user_id
                record_batch_event(
                    db,
                    site_id=site_id,
                    batch_id=batch.batch_id,
                    event_type="batch.merged",
                    performed_by=user_id,
                    payload={"merged_batch_id": str(merged.batch_id), "merged_batch_code": code},
                )
                relationships.append(
                    self._link(
                        db,
                        site_id,
                        batch.batch_id,
                        merged.batch_id,
                        RelationshipType.MERGE,
                        user_id,
                        transferred[batch.batch_id],
                        notes,
                    )
                )
            await db.flush()

            logger.info(
                "genealogy.batches_merged",
                site_id=str(site_id),
                merged_batch_id=str(merged.batch_id),
                source_count=len(sources),
                plant_count=merged.plant_count,
            )
            return Outcome.success(MergeResult(merged=merged, sources=sources, relationships=relationships))

        return await self._serialized(site_id, _merge)

    # ── Internals ──────────────────────────────────────────────────────────

    async def _serialized(self, site_id: uuid.UUID, operation) -> Outcome:
        try:
            async with self.locks.hold(site_id, self.lock_timeout):
                async with unit_of_work(self.session_factory) as db:
                    await acquire_advisory_lock(db, self.locks.key(site_id))
                    await lock_site_row(db, site_id)
                    return await operation(db)
        except ConcurrencyConflict as exc:
            return Outcome.failure(ErrorCode.CONCURRENCY_CONFLICT, exc.message)

    async def _is_ancestor(
        self,
        db: AsyncSession,
        site_id: uuid.UUID,
        index: dict[uuid.UUID, tuple[uuid.UUID | None, int]],
        *,
        candidate: uuid.UUID,
        of: uuid.UUID,
    ) -> bool:
        """True when ``candidate`` is reachable upward from ``of`` over either edge set."""
        rel_parents = await _relationship_parents(db, site_id)
        seen = {of}
        queue = deque([of])
        while queue:
            node = queue.popleft()
            parents = set(rel_parents.get(node, ()))
            lineage_parent = index.get(node, (None, 0))[0]
            if lineage_parent is not None:
                parents.add(lineage_parent)
            for parent in parents:
                if parent == candidate:
                    return True
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)
        return False

    async def _site_batch(self, db: AsyncSession, site_id: uuid.UUID, batch_id: uuid.UUID) -> Batch | None:
        result = await db.execute(select(Batch).where(Batch.site_id == site_id, Batch.batch_id == batch_id))
        return result.scalar_one_or_none()

    async def _terminal_rejection(self, db: AsyncSession, site_id: uuid.UUID, batches: list[Batch]) -> Outcome | None:
        graph = StageGraph(db)
        for batch in batches:
            stage = await graph.get_stage(site_id, batch.current_stage_id)
            if stage is None:
                raise IntegrityViolation(
                    f"Batch {batch.batch_id} references stage {batch.current_stage_id} outside site {site_id}",
                    batch_id=str(batch.batch_id),
                )
            if stage.is_terminal:
                return Outcome.failure(
                    ErrorCode.TERMINAL_STAGE_VIOLATION, f"Batch {batch.batch_code} is in terminal stage '{stage.stage_key}'"
                )
        return None

    async def _free_code(self, db: AsyncSession, site_id: uuid.UUID, base_code: str, marker: str) -> str | None:
        result = await db.execute(
            select(Batch.batch_code).where(Batch.site_id == site_id, Batch.batch_code.like(f"{base_code}-{marker}%"))
        )
        taken = set(result.scalars().all())
        for suffix in range(1, MAX_CODE_SUFFIX + 1):
            code = f"{base_code}-{marker}{suffix:02d}"
            if code not in taken and len(code) <= MAX_BATCH_CODE_LENGTH:
                return code
        return None

    def _link(
        self,
        db: AsyncSession,
        site_id: uuid.UUID,
        parent_batch_id: uuid.UUID,
        child_batch_id: uuid.UUID,
        relationship_type: RelationshipType,
        user_id: uuid.UUID,
        plant_count_transferred: int | None = None,
        notes: str | None = None,
        transfer_date: date | None = None,
    ) -> BatchRelationship:
        relationship = BatchRelationship(
            relationship_id=uuid.uuid4(),
            site_id=site_id,
            parent_batch_id=parent_batch_id,
            child_batch_id=child_batch_id,
            relationship_type=relationship_type,
            plant_count_transferred=plant_count_transferred,
            transfer_date=transfer_date or datetime.utcnow().date(),
            notes=notes,
            created_by=user_id,
        )
        db.add(relationship)
        return relationship
