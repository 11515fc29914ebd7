"""
Batch Lifecycle Machine: Validates and applies stage transitions.

States are the site's stages; transitions are StageGraph edges. Every applied
transition mutates the batch and appends exactly one StageHistory row (plus an
outbox event) inside the caller's unit of work, so the batch row and its
history commit together or not at all.

advance() order of checks:
  1. batch exists in the acting site          → NOT_FOUND
  2. current stage is not terminal            → TERMINAL_STAGE_VIOLATION
     batch status is active                   → INVALID_STATE
  3. edge (current → target) exists           → INVALID_TRANSITION
  4. edge approval role matches caller role   → APPROVAL_REQUIRED
  5. target harvest metrics are present       → PRECONDITION_FAILED
  6. apply (batch update + history + event)
  7. follow a single unambiguous auto-advance edge from the new stage,
     bounded by the site's stage count and a visited set
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import ErrorCode, IntegrityViolation, Outcome
from db.models import (
    Batch,
    BatchSourceType,
    BatchStatus,
    BatchType,
    Stage,
    StageHistory,
    StageTransition,
)
from events.outbox import record_batch_event
from lifecycle.code_rules import MAX_BATCH_CODE_LENGTH, BatchCodeRules
from lifecycle.stages import StageGraph

logger = structlog.get_logger()

MAX_BATCH_NAME_LENGTH = 200

# Default for update_batch fields where None is a meaningful value
UNCHANGED: Any = object()

# Allowed operational status moves. completed/destroyed are terminal.
STATUS_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.ACTIVE: {BatchStatus.QUARANTINE, BatchStatus.HOLD, BatchStatus.DESTROYED},
    BatchStatus.QUARANTINE: {BatchStatus.ACTIVE, BatchStatus.DESTROYED},
    BatchStatus.HOLD: {BatchStatus.ACTIVE, BatchStatus.DESTROYED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.DESTROYED: set(),
}


@dataclass
class TransitionReceipt:
    """Result of a successful advance(), including any chained auto-advances."""

    batch: Batch
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID
    history: list[StageHistory] = field(default_factory=list)

    @property
    def auto_advanced(self) -> bool:
        return len(self.history) > 1


def append_note(existing: str | None, note: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.utcnow()).strftime("%Y-%m-%d %H:%M")
    entry = f"[{stamp} UTC] {note.strip()}"
    return f"{existing}\n\n{entry}" if existing else entry


async def place_new_batch(
    db: AsyncSession,
    *,
    site_id: uuid.UUID,
    strain_id: uuid.UUID,
    batch_code: str,
    batch_name: str,
    batch_type: BatchType,
    source_type: BatchSourceType,
    plant_count: int,
    stage_id: uuid.UUID,
    user_id: uuid.UUID,
    parent: Batch | None = None,
    target_plant_count: int | None = None,
    location_id: uuid.UUID | None = None,
    room_id: uuid.UUID | None = None,
    zone_id: uuid.UUID | None = None,
    expected_harvest_date: date | None = None,
    metadata: dict[str, Any] | None = None,
    notes: str | None = None,
) -> Batch:
    """Add a new batch with its placement history row and creation event.

    Callers have already validated inputs; generation is derived from ``parent``.
    """
    now = datetime.utcnow()
    batch = Batch(
        batch_id=uuid.uuid4(),
        site_id=site_id,
        strain_id=strain_id,
        batch_code=batch_code,
        batch_name=batch_name,
        batch_type=batch_type,
        source_type=source_type,
        parent_batch_id=parent.batch_id if parent is not None else None,
        generation=parent.generation + 1 if parent is not None else 0,
        plant_count=plant_count,
        target_plant_count=target_plant_count if target_plant_count is not None else plant_count,
        current_stage_id=stage_id,
        stage_started_at=now,
        expected_harvest_date=expected_harvest_date,
        harvest_metrics={},
        location_id=location_id,
        room_id=room_id,
        zone_id=zone_id,
        status=BatchStatus.ACTIVE,
        notes=notes,
        metadata_=metadata or {},
        created_at=now,
        created_by=user_id,
        updated_at=now,
        updated_by=user_id,
    )
    db.add(batch)
    # No ORM relationships, so the batch row must exist before rows that reference it
    await db.flush()
    db.add(
        StageHistory(
            site_id=site_id,
            batch_id=batch.batch_id,
            from_stage_id=None,
            to_stage_id=stage_id,
            changed_by=user_id,
            changed_at=now,
            notes="Initial stage placement",
        )
    )
    record_batch_event(
        db,
        site_id=site_id,
        batch_id=batch.batch_id,
        event_type="batch.created",
        performed_by=user_id,
        payload={
            "batch_code": batch_code,
            "stage_id": str(stage_id),
            "plant_count": plant_count,
            "generation": batch.generation,
            "parent_batch_id": str(batch.parent_batch_id) if batch.parent_batch_id else None,
            "source_type": source_type.value,
        },
    )
    return batch


class BatchLifecycleMachine:
    """Stage transitions and lifecycle mutations for batch instances."""

    def __init__(self, db: AsyncSession, graph: StageGraph | None = None):
        self.db = db
        self.graph = graph or StageGraph(db)
        self.required_harvest_metrics = list(get_settings().harvest_required_metrics)

    async def get_batch(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> Batch | None:
        result = await self.db.execute(
            select(Batch).where(Batch.site_id == site_id, Batch.batch_id == batch_id)
        )
        return result.scalar_one_or_none()

    async def get_batch_by_code(self, site_id: uuid.UUID, batch_code: str) -> Batch | None:
        result = await self.db.execute(
            select(Batch).where(Batch.site_id == site_id, Batch.batch_code == batch_code)
        )
        return result.scalar_one_or_none()

    async def stage_history(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> list[StageHistory]:
        result = await self.db.execute(
            select(StageHistory)
            .where(StageHistory.site_id == site_id, StageHistory.batch_id == batch_id)
            .order_by(StageHistory.changed_at, StageHistory.auto_advanced)
        )
        return list(result.scalars().all())

    # ── Creation ───────────────────────────────────────────────────────────

    async def create_batch(
        self,
        site_id: uuid.UUID,
        *,
        strain_id: uuid.UUID,
        batch_code: str,
        batch_name: str,
        batch_type: BatchType,
        source_type: BatchSourceType,
        plant_count: int,
        stage_id: uuid.UUID,
        user_id: uuid.UUID,
        parent_batch_id: uuid.UUID | None = None,
        target_plant_count: int | None = None,
        location_id: uuid.UUID | None = None,
        room_id: uuid.UUID | None = None,
        zone_id: uuid.UUID | None = None,
        expected_harvest_date: date | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Outcome[Batch]:
        if not batch_code or not batch_code.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Batch code is required")
        if len(batch_code) > MAX_BATCH_CODE_LENGTH:
            return Outcome.failure(
                ErrorCode.VALIDATION_FAILED, f"Batch code cannot exceed {MAX_BATCH_CODE_LENGTH} characters"
            )
        if not batch_name or not batch_name.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Batch name is required")
        if len(batch_name) > MAX_BATCH_NAME_LENGTH:
            return Outcome.failure(
                ErrorCode.VALIDATION_FAILED, f"Batch name cannot exceed {MAX_BATCH_NAME_LENGTH} characters"
            )
        if plant_count < 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Plant count cannot be negative")
        if target_plant_count is not None and target_plant_count < 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Target plant count cannot be negative")

        if await self.graph.get_stage(site_id, stage_id) is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Stage {stage_id} not found", stage_id=str(stage_id))

        batch_code = batch_code.strip()
        if await self.get_batch_by_code(site_id, batch_code) is not None:
            return Outcome.failure(
                ErrorCode.DUPLICATE_KEY,
                f"Batch code '{batch_code}' already exists for this site",
                batch_code=batch_code,
            )
        verdict = await BatchCodeRules(self.db).validate_batch_code(site_id, batch_code)
        if not verdict.valid:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, verdict.reason, batch_code=batch_code)

        parent = None
        if parent_batch_id is not None:
            parent = await self.get_batch(site_id, parent_batch_id)
            if parent is None:
                return Outcome.failure(
                    ErrorCode.NOT_FOUND,
                    f"Parent batch {parent_batch_id} not found",
                    parent_batch_id=str(parent_batch_id),
                )

        batch = await place_new_batch(
            self.db,
            site_id=site_id,
            strain_id=strain_id,
            batch_code=batch_code,
            batch_name=batch_name.strip(),
            batch_type=batch_type,
            source_type=source_type,
            plant_count=plant_count,
            stage_id=stage_id,
            user_id=user_id,
            parent=parent,
            target_plant_count=target_plant_count,
            location_id=location_id,
            room_id=room_id,
            zone_id=zone_id,
            expected_harvest_date=expected_harvest_date,
            metadata=metadata,
        )
        await self.db.flush()

        logger.info(
            "batch.created",
            site_id=str(site_id),
            batch_id=str(batch.batch_id),
            batch_code=batch_code,
            generation=batch.generation,
        )
        return Outcome.success(batch)

    # ── Stage transitions ──────────────────────────────────────────────────

    async def advance(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        to_stage_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        acting_role: str | None = None,
        notes: str | None = None,
    ) -> Outcome[TransitionReceipt]:
        batch = await self.get_batch(site_id, batch_id)
        if batch is None:
            return self._reject(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found", batch_id)

        current = await self._require_stage(site_id, batch.current_stage_id, batch)
        if current.is_terminal:
            return self._reject(
                ErrorCode.TERMINAL_STAGE_VIOLATION,
                f"Batch is in terminal stage '{current.stage_key}'",
                batch_id,
                stage_key=current.stage_key,
            )
        if batch.status != BatchStatus.ACTIVE:
            return self._reject(
                ErrorCode.INVALID_STATE,
                f"Cannot change stage of a batch with status {batch.status.value}",
                batch_id,
                status=batch.status.value,
            )

        edge = await self.graph.validate_edge(site_id, current.stage_id, to_stage_id)
        if edge is None:
            return self._reject(
                ErrorCode.INVALID_TRANSITION,
                "No transition defined between these stages",
                batch_id,
                from_stage_id=str(current.stage_id),
                to_stage_id=str(to_stage_id),
            )

        target = await self._require_stage(site_id, edge.to_stage_id, batch)
        guard = self._guard(edge, target, batch, acting_role)
        if guard is not None:
            return self._reject(guard[0], guard[1], batch_id, to_stage_id=str(to_stage_id))

        started = datetime.utcnow()
        history = [self._apply(batch, current, target, acting_user_id, notes, started, auto_advanced=False)]

        # Chained auto-advance
        max_hops = await self.graph.count_stages(site_id)
        visited = {current.stage_id, target.stage_id}
        stage = target
        while len(history) < max_hops and not stage.is_terminal:
            candidates = [t for t in await self.graph.outgoing(site_id, stage.stage_id) if t.auto_advance]
            if len(candidates) != 1:
                if candidates:
                    logger.warning(
                        "batch.auto_advance_ambiguous",
                        batch_id=str(batch_id),
                        stage_key=stage.stage_key,
                        candidates=len(candidates),
                    )
                break
            next_edge = candidates[0]
            if next_edge.to_stage_id in visited:
                logger.warning("batch.auto_advance_cycle", batch_id=str(batch_id), stage_key=stage.stage_key)
                break
            next_stage = await self._require_stage(site_id, next_edge.to_stage_id, batch)
            blocked = self._guard(next_edge, next_stage, batch, acting_role)
            if blocked is not None:
                logger.info(
                    "batch.auto_advance_blocked",
                    batch_id=str(batch_id),
                    stage_key=next_stage.stage_key,
                    code=blocked[0].value,
                )
                break
            history.append(
                self._apply(
                    batch,
                    stage,
                    next_stage,
                    acting_user_id,
                    f"Auto-advanced from '{stage.stage_key}'",
                    started + timedelta(microseconds=len(history)),
                    auto_advanced=True,
                )
            )
            visited.add(next_stage.stage_id)
            stage = next_stage

        await self.db.flush()

        logger.info(
            "batch.advanced",
            site_id=str(site_id),
            batch_id=str(batch_id),
            from_stage=current.stage_key,
            to_stage=stage.stage_key,
            hops=len(history),
        )
        return Outcome.success(
            TransitionReceipt(
                batch=batch,
                from_stage_id=current.stage_id,
                to_stage_id=stage.stage_id,
                history=history,
            )
        )

    def _guard(
        self,
        edge: StageTransition,
        target: Stage,
        batch: Batch,
        acting_role: str | None,
    ) -> tuple[ErrorCode, str] | None:
        if edge.requires_approval and acting_role != edge.approval_role:
            return ErrorCode.APPROVAL_REQUIRED, f"Transition to '{target.stage_key}' requires role '{edge.approval_role}'"
        if target.requires_harvest_metrics:
            metrics = batch.harvest_metrics or {}
            missing = [name for name in self.required_harvest_metrics if metrics.get(name) is None]
            if missing:
                return ErrorCode.PRECONDITION_FAILED, f"Missing harvest metrics: {', '.join(missing)}"
        return None

    def _apply(
        self,
        batch: Batch,
        source: Stage,
        target: Stage,
        user_id: uuid.UUID,
        notes: str | None,
        when: datetime,
        *,
        auto_advanced: bool,
    ) -> StageHistory:
        batch.current_stage_id = target.stage_id
        batch.stage_started_at = when
        batch.updated_at = when
        batch.updated_by = user_id

        entry = StageHistory(
            site_id=batch.site_id,
            batch_id=batch.batch_id,
            from_stage_id=source.stage_id,
            to_stage_id=target.stage_id,
            changed_by=user_id,
            changed_at=when,
            auto_advanced=auto_advanced,
            notes=notes,
        )
        self.db.add(entry)
        record_batch_event(
            self.db,
            site_id=batch.site_id,
            batch_id=batch.batch_id,
            event_type="batch.stage_changed",
            performed_by=user_id,
            payload={
                "from_stage_id": str(source.stage_id),
                "from_stage_key": source.stage_key,
                "to_stage_id": str(target.stage_id),
                "to_stage_key": target.stage_key,
                "auto_advanced": auto_advanced,
                "terminal": target.is_terminal,
            },
        )
        return entry

    async def _require_stage(self, site_id: uuid.UUID, stage_id: uuid.UUID, batch: Batch) -> Stage:
        stage = await self.graph.get_stage(site_id, stage_id)
        if stage is None:
            logger.error(
                "batch.dangling_stage",
                site_id=str(site_id),
                batch_id=str(batch.batch_id),
                stage_id=str(stage_id),
            )
            raise IntegrityViolation(
                f"Batch {batch.batch_id} references stage {stage_id} outside site {site_id}",
                batch_id=str(batch.batch_id),
                stage_id=str(stage_id),
            )
        return stage

    def _reject(self, code: ErrorCode, message: str, batch_id: uuid.UUID, **details) -> Outcome:
        logger.info("batch.transition_rejected", batch_id=str(batch_id), code=code.value, reason=message)
        return Outcome.failure(code, message, **details)

    # ── Other lifecycle mutations ──────────────────────────────────────────

    async def _open_batch(self, site_id: uuid.UUID, batch_id: uuid.UUID) -> Outcome[Batch]:
        """Load a batch that may still be edited: present and outside any terminal stage."""
        batch = await self.get_batch(site_id, batch_id)
        if batch is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")
        stage = await self._require_stage(site_id, batch.current_stage_id, batch)
        if stage.is_terminal:
            return Outcome.failure(
                ErrorCode.TERMINAL_STAGE_VIOLATION,
                f"Batch is in terminal stage '{stage.stage_key}'",
                stage_key=stage.stage_key,
            )
        return Outcome.success(batch)

    async def update_plant_count(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        new_count: int,
        reason: str,
        user_id: uuid.UUID,
    ) -> Outcome[Batch]:
        if new_count < 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Plant count cannot be negative")
        if not reason or not reason.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Reason is required for plant count changes")

        loaded = await self._open_batch(site_id, batch_id)
        if not loaded.ok:
            return loaded
        batch = loaded.value

        previous = batch.plant_count
        batch.plant_count = new_count
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        record_batch_event(
            self.db,
            site_id=site_id,
            batch_id=batch_id,
            event_type="batch.plant_count_changed",
            performed_by=user_id,
            payload={"previous": previous, "current": new_count, "reason": reason.strip()},
        )
        await self.db.flush()

        logger.info("batch.plant_count_changed", batch_id=str(batch_id), previous=previous, current=new_count)
        return Outcome.success(batch)

    async def update_batch(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        batch_name: str | None = None,
        target_plant_count: int | None = None,
        location_id: Any = UNCHANGED,
        room_id: Any = UNCHANGED,
        zone_id: Any = UNCHANGED,
        expected_harvest_date: Any = UNCHANGED,
        metadata: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> Outcome[Batch]:
        """
        Edit descriptive attributes of a batch.

        ``None`` leaves name, target, metadata and notes untouched. Location
        fields and the expected harvest date default to UNCHANGED so that an
        explicit ``None`` clears them. Location fields move together: passing
        any of them replaces all three.
        """
        if batch_name is not None:
            if not batch_name.strip():
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Batch name cannot be empty")
            if len(batch_name) > MAX_BATCH_NAME_LENGTH:
                return Outcome.failure(
                    ErrorCode.VALIDATION_FAILED, f"Batch name cannot exceed {MAX_BATCH_NAME_LENGTH} characters"
                )
        if target_plant_count is not None and target_plant_count < 1:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Target plant count must be at least 1")

        loaded = await self._open_batch(site_id, batch_id)
        if not loaded.ok:
            return loaded
        batch = loaded.value

        changed: list[str] = []
        if batch_name is not None and batch_name.strip() != batch.batch_name:
            batch.batch_name = batch_name.strip()
            changed.append("batch_name")
        if target_plant_count is not None and target_plant_count != batch.target_plant_count:
            batch.target_plant_count = target_plant_count
            changed.append("target_plant_count")
        if expected_harvest_date is not UNCHANGED and expected_harvest_date != batch.expected_harvest_date:
            batch.expected_harvest_date = expected_harvest_date
            changed.append("expected_harvest_date")
        if metadata is not None:
            batch.metadata_ = dict(metadata)
            changed.append("metadata")
        if notes is not None and notes.strip():
            batch.notes = append_note(batch.notes, notes)
            changed.append("notes")

        moved = any(value is not UNCHANGED for value in (location_id, room_id, zone_id))
        previous_location = _location_of(batch)
        if moved:
            batch.location_id = None if location_id is UNCHANGED else location_id
            batch.room_id = None if room_id is UNCHANGED else room_id
            batch.zone_id = None if zone_id is UNCHANGED else zone_id
            moved = _location_of(batch) != previous_location

        if not changed and not moved:
            return Outcome.success(batch)

        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        if changed:
            record_batch_event(
                self.db,
                site_id=site_id,
                batch_id=batch_id,
                event_type="batch.updated",
                performed_by=user_id,
                payload={"fields": changed},
            )
        if moved:
            record_batch_event(
                self.db,
                site_id=site_id,
                batch_id=batch_id,
                event_type="batch.location_changed",
                performed_by=user_id,
                payload={"previous": previous_location, "current": _location_of(batch)},
            )
        await self.db.flush()

        logger.info("batch.updated", batch_id=str(batch_id), fields=changed, moved=moved)
        return Outcome.success(batch)

    async def record_harvest(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        harvest_date: date,
        metrics: dict[str, Any],
        user_id: uuid.UUID,
    ) -> Outcome[Batch]:
        """Merge harvest metrics into the batch. Allowed in terminal stages."""
        if not metrics:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "At least one harvest metric is required")
        batch = await self.get_batch(site_id, batch_id)
        if batch is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")

        # Reassign so the JSON column registers the change
        batch.harvest_metrics = {**(batch.harvest_metrics or {}), **metrics}
        batch.actual_harvest_date = harvest_date
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        record_batch_event(
            self.db,
            site_id=site_id,
            batch_id=batch_id,
            event_type="batch.harvest_recorded",
            performed_by=user_id,
            payload={"harvest_date": harvest_date.isoformat(), "metrics": metrics},
        )
        await self.db.flush()
        return Outcome.success(batch)

    async def complete_batch(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        user_id: uuid.UUID,
        actual_harvest_date: date | None = None,
    ) -> Outcome[Batch]:
        """
        Close out an active batch as completed.

        Allowed in terminal stages. An optional harvest date is stamped first.
        """
        batch = await self.get_batch(site_id, batch_id)
        if batch is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")
        if batch.status != BatchStatus.ACTIVE:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Only active batches can be completed (status is {batch.status.value})",
                status=batch.status.value,
            )

        if actual_harvest_date is not None:
            batch.actual_harvest_date = actual_harvest_date
        batch.status = BatchStatus.COMPLETED
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        record_batch_event(
            self.db,
            site_id=site_id,
            batch_id=batch_id,
            event_type="batch.completed",
            performed_by=user_id,
            payload={
                "actual_harvest_date": (
                    batch.actual_harvest_date.isoformat() if batch.actual_harvest_date else None
                ),
            },
        )
        await self.db.flush()

        logger.info("batch.completed", batch_id=str(batch_id))
        return Outcome.success(batch)

    async def terminate_batch(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        reason: str,
        user_id: uuid.UUID,
    ) -> Outcome[Batch]:
        """Destroy a batch outside the stage graph, e.g. for crop failure or compliance."""
        if not reason or not reason.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Reason is required to terminate a batch")
        loaded = await self._open_batch(site_id, batch_id)
        if not loaded.ok:
            return loaded
        batch = loaded.value
        if BatchStatus.DESTROYED not in STATUS_TRANSITIONS[batch.status]:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Cannot terminate a {batch.status.value} batch",
                status=batch.status.value,
            )

        previous = batch.status
        batch.status = BatchStatus.DESTROYED
        batch.notes = append_note(batch.notes, f"Terminated: {reason.strip()}")
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        record_batch_event(
            self.db,
            site_id=site_id,
            batch_id=batch_id,
            event_type="batch.terminated",
            performed_by=user_id,
            payload={"previous": previous.value, "reason": reason.strip()},
        )
        await self.db.flush()

        logger.info("batch.terminated", batch_id=str(batch_id), previous=previous.value)
        return Outcome.success(batch)

    async def change_status(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        status: BatchStatus,
        reason: str,
        user_id: uuid.UUID,
    ) -> Outcome[Batch]:
        if not reason or not reason.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Reason is required for status changes")
        loaded = await self._open_batch(site_id, batch_id)
        if not loaded.ok:
            return loaded
        batch = loaded.value
        if status not in STATUS_TRANSITIONS[batch.status]:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Cannot move batch from {batch.status.value} to {status.value}",
                status=batch.status.value,
            )

        previous = batch.status
        batch.status = status
        batch.notes = append_note(batch.notes, f"Status {previous.value} → {status.value}: {reason}")
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        record_batch_event(
            self.db,
            site_id=site_id,
            batch_id=batch_id,
            event_type="batch.status_changed",
            performed_by=user_id,
            payload={"previous": previous.value, "current": status.value, "reason": reason.strip()},
        )
        await self.db.flush()
        logger.info("batch.status_changed", batch_id=str(batch_id), previous=previous.value, current=status.value)
        return Outcome.success(batch)

    async def add_note(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        note: str,
        user_id: uuid.UUID,
    ) -> Outcome[Batch]:
        if not note or not note.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Note cannot be empty")
        loaded = await self._open_batch(site_id, batch_id)
        if not loaded.ok:
            return loaded
        batch = loaded.value
        batch.notes = append_note(batch.notes, note)
        batch.updated_at = datetime.utcnow()
        batch.updated_by = user_id
        await self.db.flush()
        return Outcome.success(batch)


def _location_of(batch: Batch) -> dict[str, str | None]:
    return {
        "location_id": str(batch.location_id) if batch.location_id else None,
        "room_id": str(batch.room_id) if batch.room_id else None,
        "zone_id": str(batch.zone_id) if batch.zone_id else None,
    }
