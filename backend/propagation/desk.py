"""Routes propagation requests between the quota governor and the override workflow."""

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.errors import ErrorCode, Outcome
from db.models import OverrideStatus, PropagationOverrideRequest
from db.session import AsyncSessionLocal, unit_of_work
from propagation.governor import PropagationQuotaGovernor, PropagationReceipt
from propagation.overrides import OverrideWorkflow

logger = structlog.get_logger()


@dataclass
class DeskResult:
    outcome: Outcome[PropagationReceipt]
    override: PropagationOverrideRequest | None = None

    @property
    def diverted(self) -> bool:
        return self.override is not None


class PropagationDesk:
    def __init__(
        self,
        governor: PropagationQuotaGovernor,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ):
        self.governor = governor
        self.session_factory = session_factory

    async def submit(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        count: int,
        user_id: uuid.UUID,
        notes: str | None = None,
    ) -> DeskResult:
        """
        Commit within limits, or open a pending override when the site
        requires approval to exceed them.
        """
        outcome = await self.governor.commit_propagation(site_id, mother_plant_id, count, user_id, notes=notes)
        if outcome.code != ErrorCode.LIMIT_EXCEEDED:
            return DeskResult(outcome=outcome)
        if not outcome.rejection.details.get("requires_override_approval"):
            return DeskResult(outcome=outcome)

        reason = notes or f"Propagation of {count} exceeds the {outcome.rejection.scope.value} limit"
        async with unit_of_work(self.session_factory) as db:
            requested = await OverrideWorkflow(db).request(
                site_id,
                user_id,
                count,
                reason,
                mother_plant_id=mother_plant_id,
            )
        if not requested.ok:
            return DeskResult(outcome=outcome)

        override = requested.value
        outcome.rejection.details["override_id"] = str(override.override_id)
        logger.info(
            "propagation.diverted_to_override",
            site_id=str(site_id),
            override_id=str(override.override_id),
            scope=outcome.rejection.scope.value,
        )
        return DeskResult(outcome=outcome, override=override)

    async def execute_override(
        self,
        site_id: uuid.UUID,
        override_id: uuid.UUID,
        user_id: uuid.UUID,
        count: int | None = None,
        notes: str | None = None,
    ) -> Outcome[PropagationReceipt]:
        """Propagate an approved override's quantity (or less) past the caps."""
        async with unit_of_work(self.session_factory) as db:
            override = await OverrideWorkflow(db).get(site_id, override_id)
        if override is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Override request {override_id} not found")
        if override.status != OverrideStatus.APPROVED:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Override request is {override.status.value}, not approved",
                status=override.status.value,
            )
        if override.mother_plant_id is None:
            return Outcome.failure(
                ErrorCode.VALIDATION_FAILED, "Override request does not name a mother plant to propagate from"
            )

        return await self.governor.commit_propagation(
            site_id,
            override.mother_plant_id,
            count if count is not None else override.requested_quantity,
            user_id,
            notes=notes or f"Override {override_id}",
            bypass_limits=True,
            override_id=override_id,
        )
