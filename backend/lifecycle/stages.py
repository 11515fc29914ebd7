"""
Stage Graph: Per-site stage definitions and the directed edges between them.

Stages are graph nodes keyed by a case-sensitive ``stage_key`` unique per site.
Transitions are directed edges, at most one per (from, to) pair per site.
``validate_edge`` answers "is this move allowed?" with the edge or ``None``;
a missing edge is an expected negative result, not an error.

Stages stay in place while anything references them (transitions, batches,
history rows), so history always resolves.
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ErrorCode, Outcome
from db.models import Batch, Stage, StageHistory, StageTransition

logger = structlog.get_logger()

MAX_STAGE_KEY_LENGTH = 50


def _stage_key_problem(stage_key: str | None) -> str | None:
    if not stage_key or not stage_key.strip():
        return "Stage key is required"
    if len(stage_key) > MAX_STAGE_KEY_LENGTH:
        return f"Stage key cannot exceed {MAX_STAGE_KEY_LENGTH} characters"
    if any(ch.isspace() for ch in stage_key):
        return "Stage key cannot contain whitespace"
    return None


class StageGraph:
    """Stage and transition configuration for a site."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Queries ────────────────────────────────────────────────────────────

    async def get_stage(self, site_id: uuid.UUID, stage_id: uuid.UUID) -> Stage | None:
        result = await self.db.execute(
            select(Stage).where(Stage.site_id == site_id, Stage.stage_id == stage_id)
        )
        return result.scalar_one_or_none()

    async def get_stage_by_key(self, site_id: uuid.UUID, stage_key: str) -> Stage | None:
        result = await self.db.execute(
            select(Stage).where(Stage.site_id == site_id, Stage.stage_key == stage_key)
        )
        return result.scalar_one_or_none()

    async def list_stages(self, site_id: uuid.UUID) -> list[Stage]:
        result = await self.db.execute(
            select(Stage).where(Stage.site_id == site_id).order_by(Stage.sequence_order, Stage.stage_key)
        )
        return list(result.scalars().all())

    async def count_stages(self, site_id: uuid.UUID) -> int:
        result = await self.db.execute(select(func.count(Stage.stage_id)).where(Stage.site_id == site_id))
        return int(result.scalar() or 0)

    async def get_transition(self, site_id: uuid.UUID, transition_id: uuid.UUID) -> StageTransition | None:
        result = await self.db.execute(
            select(StageTransition).where(
                StageTransition.site_id == site_id,
                StageTransition.transition_id == transition_id,
            )
        )
        return result.scalar_one_or_none()

    async def outgoing(self, site_id: uuid.UUID, stage_id: uuid.UUID) -> list[StageTransition]:
        result = await self.db.execute(
            select(StageTransition)
            .where(StageTransition.site_id == site_id, StageTransition.from_stage_id == stage_id)
            .order_by(StageTransition.created_at)
        )
        return list(result.scalars().all())

    async def validate_edge(
        self,
        site_id: uuid.UUID,
        from_stage_id: uuid.UUID,
        to_stage_id: uuid.UUID,
    ) -> StageTransition | None:
        """Return the transition for (from → to) in this site, or None when no edge exists."""
        result = await self.db.execute(
            select(StageTransition).where(
                StageTransition.site_id == site_id,
                StageTransition.from_stage_id == from_stage_id,
                StageTransition.to_stage_id == to_stage_id,
            )
        )
        return result.scalar_one_or_none()

    # ── Stage configuration ────────────────────────────────────────────────

    async def create_stage(
        self,
        site_id: uuid.UUID,
        stage_key: str,
        display_name: str,
        sequence_order: int,
        user_id: uuid.UUID,
        *,
        is_terminal: bool = False,
        requires_harvest_metrics: bool = False,
        description: str | None = None,
    ) -> Outcome[Stage]:
        problem = _stage_key_problem(stage_key)
        if problem:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)
        if not display_name or not display_name.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Display name is required")

        if await self.get_stage_by_key(site_id, stage_key) is not None:
            return Outcome.failure(
                ErrorCode.DUPLICATE_KEY,
                f"Stage key '{stage_key}' already exists for this site",
                stage_key=stage_key,
            )

        stage = Stage(
            site_id=site_id,
            stage_key=stage_key,
            display_name=display_name.strip(),
            description=description,
            sequence_order=sequence_order,
            is_terminal=is_terminal,
            requires_harvest_metrics=requires_harvest_metrics,
            created_by=user_id,
            updated_by=user_id,
        )
        self.db.add(stage)
        await self.db.flush()

        logger.info("stage.created", site_id=str(site_id), stage_id=str(stage.stage_id), stage_key=stage_key)
        return Outcome.success(stage)

    async def update_stage(
        self,
        site_id: uuid.UUID,
        stage_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        display_name: str | None = None,
        description: str | None = None,
        sequence_order: int | None = None,
        is_terminal: bool | None = None,
        requires_harvest_metrics: bool | None = None,
    ) -> Outcome[Stage]:
        stage = await self.get_stage(site_id, stage_id)
        if stage is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Stage {stage_id} not found")

        if display_name is not None:
            if not display_name.strip():
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Display name is required")
            stage.display_name = display_name.strip()
        if description is not None:
            stage.description = description
        if sequence_order is not None:
            stage.sequence_order = sequence_order
        if is_terminal is not None:
            stage.is_terminal = is_terminal
        if requires_harvest_metrics is not None:
            stage.requires_harvest_metrics = requires_harvest_metrics
        stage.updated_by = user_id
        stage.updated_at = datetime.utcnow()
        await self.db.flush()
        return Outcome.success(stage)

    async def reorder_stages(
        self,
        site_id: uuid.UUID,
        orders: dict[uuid.UUID, int],
        user_id: uuid.UUID,
    ) -> list[Stage]:
        """Apply new sequence orders. Unknown stage ids are skipped."""
        stages = {stage.stage_id: stage for stage in await self.list_stages(site_id)}
        updated = []
        for stage_id, order in orders.items():
            stage = stages.get(stage_id)
            if stage is None:
                logger.warning("stage.reorder_missing", site_id=str(site_id), stage_id=str(stage_id))
                continue
            stage.sequence_order = order
            stage.updated_by = user_id
            stage.updated_at = datetime.utcnow()
            updated.append(stage)
        await self.db.flush()
        return updated

    async def delete_stage(self, site_id: uuid.UUID, stage_id: uuid.UUID) -> Outcome[None]:
        stage = await self.get_stage(site_id, stage_id)
        if stage is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Stage {stage_id} not found")

        edges = await self.db.execute(
            select(func.count(StageTransition.transition_id)).where(
                StageTransition.site_id == site_id,
                or_(StageTransition.from_stage_id == stage_id, StageTransition.to_stage_id == stage_id),
            )
        )
        if edges.scalar():
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                "Cannot delete a stage that is referenced by transitions; delete those transitions first",
            )

        batches = await self.db.execute(
            select(func.count(Batch.batch_id)).where(Batch.current_stage_id == stage_id)
        )
        history = await self.db.execute(
            select(func.count(StageHistory.history_id)).where(
                or_(StageHistory.from_stage_id == stage_id, StageHistory.to_stage_id == stage_id)
            )
        )
        if batches.scalar() or history.scalar():
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                "Cannot delete a stage referenced by batches or stage history",
            )

        await self.db.delete(stage)
        await self.db.flush()
        logger.info("stage.deleted", site_id=str(site_id), stage_id=str(stage_id))
        return Outcome.success(None)

    # ── Transition configuration ───────────────────────────────────────────

    async def create_transition(
        self,
        site_id: uuid.UUID,
        from_stage_id: uuid.UUID,
        to_stage_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        auto_advance: bool = False,
        requires_approval: bool = False,
        approval_role: str | None = None,
    ) -> Outcome[StageTransition]:
        if from_stage_id == to_stage_id:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "A stage cannot transition to itself")
        if requires_approval and not (approval_role and approval_role.strip()):
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Approval role is required when approval is required")

        for stage_id in (from_stage_id, to_stage_id):
            if await self.get_stage(site_id, stage_id) is None:
                return Outcome.failure(ErrorCode.NOT_FOUND, f"Stage {stage_id} not found", stage_id=str(stage_id))

        if await self.validate_edge(site_id, from_stage_id, to_stage_id) is not None:
            return Outcome.failure(
                ErrorCode.DUPLICATE_KEY,
                "Transition between these stages already exists",
                from_stage_id=str(from_stage_id),
                to_stage_id=str(to_stage_id),
            )

        transition = StageTransition(
            site_id=site_id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            auto_advance=auto_advance,
            requires_approval=requires_approval,
            approval_role=approval_role if requires_approval else None,
            created_by=user_id,
            updated_by=user_id,
        )
        self.db.add(transition)
        await self.db.flush()

        logger.info(
            "stage_transition.created",
            site_id=str(site_id),
            transition_id=str(transition.transition_id),
            from_stage_id=str(from_stage_id),
            to_stage_id=str(to_stage_id),
        )
        return Outcome.success(transition)

    async def update_transition(
        self,
        site_id: uuid.UUID,
        transition_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        auto_advance: bool,
        requires_approval: bool,
        approval_role: str | None = None,
    ) -> Outcome[StageTransition]:
        transition = await self.get_transition(site_id, transition_id)
        if transition is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Transition {transition_id} not found")
        if requires_approval and not (approval_role and approval_role.strip()):
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Approval role is required when approval is required")

        transition.auto_advance = auto_advance
        transition.requires_approval = requires_approval
        transition.approval_role = approval_role if requires_approval else None
        transition.updated_by = user_id
        transition.updated_at = datetime.utcnow()
        await self.db.flush()
        return Outcome.success(transition)

    async def delete_transition(self, site_id: uuid.UUID, transition_id: uuid.UUID) -> Outcome[None]:
        transition = await self.get_transition(site_id, transition_id)
        if transition is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Transition {transition_id} not found")
        await self.db.delete(transition)
        await self.db.flush()
        logger.info("stage_transition.deleted", site_id=str(site_id), transition_id=str(transition_id))
        return Outcome.success(None)
