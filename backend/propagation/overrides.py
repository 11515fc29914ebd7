"""
Override Workflow: Approval for propagating past configured caps.

States: pending → approved | rejected | expired (all terminal).

The workflow only authorizes; executing an approved override is a separate
governor call with bypass_limits=True (see propagation.desk). Resolution is a
conditional UPDATE on status = 'pending', so of two concurrent resolvers
exactly one wins and the other gets INVALID_STATE.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import ErrorCode, Outcome
from db.models import Batch, MotherPlant, OverrideStatus, PropagationOverrideRequest
from propagation.mothers import load_policy

logger = structlog.get_logger()


class OverrideDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


_DECISION_STATUS = {
    OverrideDecision.APPROVE: OverrideStatus.APPROVED,
    OverrideDecision.REJECT: OverrideStatus.REJECTED,
}


class OverrideWorkflow:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, site_id: uuid.UUID, override_id: uuid.UUID) -> PropagationOverrideRequest | None:
        result = await self.db.execute(
            select(PropagationOverrideRequest).where(
                PropagationOverrideRequest.site_id == site_id,
                PropagationOverrideRequest.override_id == override_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_requests(
        self,
        site_id: uuid.UUID,
        status: OverrideStatus | None = None,
    ) -> list[PropagationOverrideRequest]:
        query = select(PropagationOverrideRequest).where(PropagationOverrideRequest.site_id == site_id)
        if status is not None:
            query = query.where(PropagationOverrideRequest.status == status)
        result = await self.db.execute(query.order_by(PropagationOverrideRequest.requested_on.desc()))
        return list(result.scalars().all())

    async def request(
        self,
        site_id: uuid.UUID,
        requester_id: uuid.UUID,
        quantity: int,
        reason: str,
        mother_plant_id: uuid.UUID | None = None,
        batch_id: uuid.UUID | None = None,
    ) -> Outcome[PropagationOverrideRequest]:
        if quantity is None or quantity <= 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Requested quantity must be greater than zero")
        if not reason or not reason.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Reason is required")

        if mother_plant_id is not None:
            mother = await self.db.execute(
                select(MotherPlant.mother_plant_id).where(
                    MotherPlant.site_id == site_id, MotherPlant.mother_plant_id == mother_plant_id
                )
            )
            if mother.scalar_one_or_none() is None:
                return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        if batch_id is not None:
            batch = await self.db.execute(
                select(Batch.batch_id).where(Batch.site_id == site_id, Batch.batch_id == batch_id)
            )
            if batch.scalar_one_or_none() is None:
                return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")

        override = PropagationOverrideRequest(
            site_id=site_id,
            requested_by=requester_id,
            mother_plant_id=mother_plant_id,
            batch_id=batch_id,
            requested_quantity=quantity,
            reason=reason.strip(),
            status=OverrideStatus.PENDING,
            requested_on=datetime.utcnow(),
        )
        self.db.add(override)
        await self.db.flush()

        logger.info(
            "override.requested",
            site_id=str(site_id),
            override_id=str(override.override_id),
            quantity=quantity,
        )
        return Outcome.success(override)

    async def resolve(
        self,
        site_id: uuid.UUID,
        override_id: uuid.UUID,
        approver_id: uuid.UUID,
        decision: OverrideDecision,
        approver_role: str | None = None,
        notes: str | None = None,
    ) -> Outcome[PropagationOverrideRequest]:
        override = await self.get(site_id, override_id)
        if override is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Override request {override_id} not found")
        if override.status != OverrideStatus.PENDING:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Override request is already {override.status.value}",
                status=override.status.value,
            )
        if override.requested_by == approver_id:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Requesters cannot resolve their own override")

        policy = await load_policy(self.db, site_id)
        if policy.approver_role is not None and approver_role != policy.approver_role:
            return Outcome.failure(
                ErrorCode.APPROVAL_REQUIRED,
                f"Resolving overrides requires role '{policy.approver_role}'",
                approver_role=policy.approver_role,
            )

        status = _DECISION_STATUS[OverrideDecision(decision)]
        resolved_on = datetime.utcnow()
        result = await self.db.execute(
            update(PropagationOverrideRequest)
            .where(
                PropagationOverrideRequest.override_id == override_id,
                PropagationOverrideRequest.status == OverrideStatus.PENDING,
            )
            .values(
                status=status,
                approved_by=approver_id,
                resolved_on=resolved_on,
                decision_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(override)
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Override request is already {override.status.value}",
                status=override.status.value,
            )

        await self.db.refresh(override)
        logger.info(
            "override.resolved",
            site_id=str(site_id),
            override_id=str(override_id),
            status=status.value,
        )
        return Outcome.success(override)

    async def expire_stale(
        self,
        site_id: uuid.UUID | None = None,
        now: datetime | None = None,
        max_age_hours: int | None = None,
    ) -> int:
        """Move pending requests older than the expiry window to expired. Returns the count."""
        now = now or datetime.utcnow()
        hours = max_age_hours if max_age_hours is not None else get_settings().override_expiry_hours
        cutoff = now - timedelta(hours=hours)

        statement = update(PropagationOverrideRequest).where(
            PropagationOverrideRequest.status == OverrideStatus.PENDING,
            PropagationOverrideRequest.requested_on < cutoff,
        )
        if site_id is not None:
            statement = statement.where(PropagationOverrideRequest.site_id == site_id)
        result = await self.db.execute(
            statement.values(
                status=OverrideStatus.EXPIRED,
                resolved_on=now,
                decision_notes="Expired without a decision",
            ).execution_options(synchronize_session=False)
        )
        expired = result.rowcount or 0
        if expired:
            logger.info("override.expired", site_id=str(site_id) if site_id else None, count=expired)
        return expired
