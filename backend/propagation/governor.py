"""
Propagation Quota Governor: Serialized check-then-commit against site caps.

Each commit runs in its own short unit of work while holding the site's
propagation lock (process-wide asyncio lock, PostgreSQL advisory xact lock,
then the site row's write lock, all taken before the first read):

  1. daily_sum    = Σ propagated_count where recorded_on = today
  2. weekly_sum   = Σ propagated_count where recorded_on in [today-6, today]
  3. mother_total = mother.propagation_count
  4. unless bypass_limits:
        daily      → LimitExceeded(daily)
        weekly     → LimitExceeded(weekly)
        per-mother → LimitExceeded(per_mother)   (site limit and plant cap)
  5. UPDATE mother SET propagation_count = propagation_count + n,
     append one PropagationEvent; commit.

Nothing but the site row lock is written before step 5, so a rejection
leaves the ledger untouched. Lock timeouts and retryable database contention
are retried with linear backoff; once retries run out the caller gets
CONCURRENCY_CONFLICT.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from core.config import get_settings
from core.errors import ConcurrencyConflict, ErrorCode, LimitScope, Outcome
from core.locks import SiteLocks, acquire_advisory_lock, is_retryable_db_error, lock_site_row
from db.models import (
    MotherPlant,
    MotherPlantStatus,
    OverrideStatus,
    PropagationEvent,
    PropagationOverrideRequest,
)
from db.session import AsyncSessionLocal, unit_of_work
from events.publisher import EventPublisher, LifecycleEvent
from propagation.mothers import PropagationPolicy, load_policy

logger = structlog.get_logger()

WEEK_WINDOW_DAYS = 7


@dataclass
class PropagationReceipt:
    event_id: uuid.UUID
    mother_plant_id: uuid.UUID
    propagated_count: int
    propagation_count: int  # mother's cumulative total after this commit
    daily_total: int
    weekly_total: int
    recorded_on: date
    bypassed_limits: bool = False
    override_id: uuid.UUID | None = None


def effective_mother_limit(policy: PropagationPolicy, mother_cap: int | None) -> int | None:
    limits = [limit for limit in (policy.mother_propagation_limit, mother_cap) if limit is not None]
    return min(limits) if limits else None


def check_limits(
    policy: PropagationPolicy,
    *,
    requested: int,
    daily_sum: int,
    weekly_sum: int,
    mother_total: int,
    mother_cap: int | None = None,
) -> tuple[LimitScope, int, int] | None:
    """First breached cap as (scope, limit, current), or None when the request fits."""
    if policy.daily_limit is not None and daily_sum + requested > policy.daily_limit:
        return LimitScope.DAILY, policy.daily_limit, daily_sum
    if policy.weekly_limit is not None and weekly_sum + requested > policy.weekly_limit:
        return LimitScope.WEEKLY, policy.weekly_limit, weekly_sum
    mother_limit = effective_mother_limit(policy, mother_cap)
    if mother_limit is not None and mother_total + requested > mother_limit:
        return LimitScope.PER_MOTHER, mother_limit, mother_total
    return None


def _is_contention(exc: BaseException) -> bool:
    if isinstance(exc, ConcurrencyConflict):
        return True
    return isinstance(exc, DBAPIError) and is_retryable_db_error(exc)


def _describe(exc: BaseException | None) -> str:
    if isinstance(exc, ConcurrencyConflict):
        return exc.message
    if isinstance(exc, DBAPIError):
        return str(exc.orig)
    return str(exc)


class PropagationQuotaGovernor:
    """Atomic propagation commits against daily/weekly/per-mother caps."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        *,
        locks: SiteLocks | None = None,
        publisher: EventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
        lock_timeout: float | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.locks = locks or SiteLocks("propagation")
        self.publisher = publisher
        self.clock = clock or datetime.utcnow
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.propagation_lock_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.propagation_max_retries
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.propagation_retry_backoff_seconds
        )

    async def commit_propagation(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        requested_count: int,
        acting_user_id: uuid.UUID,
        notes: str | None = None,
        bypass_limits: bool = False,
        override_id: uuid.UUID | None = None,
    ) -> Outcome[PropagationReceipt]:
        if requested_count <= 0:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Requested count must be greater than zero")

        attempts = max(1, self.max_retries + 1)

        def _log_attempt(retry_state: RetryCallState) -> None:
            logger.warning(
                "propagation.retry",
                site_id=str(site_id),
                mother_plant_id=str(mother_plant_id),
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
                error=_describe(retry_state.outcome.exception()),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_contention),
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
            after=_log_attempt,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self.locks.hold(site_id, self.lock_timeout):
                        async with unit_of_work(self.session_factory) as db:
                            await acquire_advisory_lock(db, self.locks.key(site_id))
                            await lock_site_row(db, site_id)
                            outcome = await self._check_and_commit(
                                db,
                                site_id,
                                mother_plant_id,
                                requested_count,
                                acting_user_id,
                                notes,
                                bypass_limits,
                                override_id,
                            )
        except RetryError as exc:
            logger.error(
                "propagation.conflict_exhausted",
                site_id=str(site_id),
                mother_plant_id=str(mother_plant_id),
                attempts=attempts,
            )
            return Outcome.failure(
                ErrorCode.CONCURRENCY_CONFLICT,
                f"Propagation ledger busy after {attempts} attempts: {_describe(exc.last_attempt.exception())}",
                attempts=attempts,
            )

        await self._announce(site_id, mother_plant_id, requested_count, outcome)
        return outcome

    async def window_totals(self, site_id: uuid.UUID) -> tuple[int, int]:
        """(daily_sum, weekly_sum) as of the governor's clock."""
        async with unit_of_work(self.session_factory) as db:
            return await self._window_sums(db, site_id, self.clock().date())

    async def _window_sums(self, db: AsyncSession, site_id: uuid.UUID, today: date) -> tuple[int, int]:
        week_start = today - timedelta(days=WEEK_WINDOW_DAYS - 1)
        result = await db.execute(
            select(PropagationEvent.recorded_on, func.sum(PropagationEvent.propagated_count))
            .where(
                PropagationEvent.site_id == site_id,
                PropagationEvent.recorded_on >= week_start,
                PropagationEvent.recorded_on <= today,
            )
            .group_by(PropagationEvent.recorded_on)
        )
        daily_sum = 0
        weekly_sum = 0
        for recorded_on, total in result.all():
            weekly_sum += int(total or 0)
            if recorded_on == today:
                daily_sum += int(total or 0)
        return daily_sum, weekly_sum

    async def _check_and_commit(
        self,
        db: AsyncSession,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        requested_count: int,
        acting_user_id: uuid.UUID,
        notes: str | None,
        bypass_limits: bool,
        override_id: uuid.UUID | None,
    ) -> Outcome[PropagationReceipt]:
        result = await db.execute(
            select(MotherPlant).where(
                MotherPlant.site_id == site_id,
                MotherPlant.mother_plant_id == mother_plant_id,
            )
        )
        mother = result.scalar_one_or_none()
        if mother is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        if mother.status != MotherPlantStatus.ACTIVE:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Mother plant is {mother.status.value} and cannot be propagated",
                status=mother.status.value,
            )

        override = None
        if override_id is not None:
            override = await db.get(PropagationOverrideRequest, override_id)
            problem = self._override_problem(override, site_id, mother_plant_id, requested_count)
            if problem:
                return Outcome.failure(ErrorCode.INVALID_STATE, problem, override_id=str(override_id))

        now = self.clock()
        today = now.date()
        daily_sum, weekly_sum = await self._window_sums(db, site_id, today)
        mother_total = mother.propagation_count
        policy = await load_policy(db, site_id)

        if not bypass_limits:
            breach = check_limits(
                policy,
                requested=requested_count,
                daily_sum=daily_sum,
                weekly_sum=weekly_sum,
                mother_total=mother_total,
                mother_cap=mother.max_propagation_count,
            )
            if breach is not None:
                scope, limit, current = breach
                logger.info(
                    "propagation.limit_exceeded",
                    site_id=str(site_id),
                    mother_plant_id=str(mother_plant_id),
                    scope=scope.value,
                    limit=limit,
                    current=current,
                    requested=requested_count,
                )
                return Outcome.failure(
                    ErrorCode.LIMIT_EXCEEDED,
                    f"Propagation would exceed the {scope.value} limit ({current} + {requested_count} > {limit})",
                    scope=scope,
                    limit=limit,
                    current=current,
                    requested=requested_count,
                    requires_override_approval=policy.requires_override_approval,
                    approver_role=policy.approver_role,
                )

        await db.execute(
            update(MotherPlant)
            .where(MotherPlant.mother_plant_id == mother_plant_id)
            .values(
                propagation_count=MotherPlant.propagation_count + requested_count,
                last_propagation_date=today,
                updated_at=now,
                updated_by=acting_user_id,
            )
            .execution_options(synchronize_session=False)
        )
        await db.refresh(mother)

        event = PropagationEvent(
            event_id=uuid.uuid4(),
            site_id=site_id,
            mother_plant_id=mother_plant_id,
            propagated_count=requested_count,
            recorded_on=today,
            override_id=override_id,
            bypassed_limits=bypass_limits,
            notes=notes,
            created_at=now,
            created_by=acting_user_id,
        )
        db.add(event)
        if override is not None:
            override.executed_at = now
            override.executed_event_id = event.event_id
        await db.flush()

        logger.info(
            "propagation.committed",
            site_id=str(site_id),
            mother_plant_id=str(mother_plant_id),
            event_id=str(event.event_id),
            count=requested_count,
            bypassed_limits=bypass_limits,
        )
        return Outcome.success(
            PropagationReceipt(
                event_id=event.event_id,
                mother_plant_id=mother_plant_id,
                propagated_count=requested_count,
                propagation_count=mother.propagation_count,
                daily_total=daily_sum + requested_count,
                weekly_total=weekly_sum + requested_count,
                recorded_on=today,
                bypassed_limits=bypass_limits,
                override_id=override_id,
            )
        )

    @staticmethod
    def _override_problem(
        override: PropagationOverrideRequest | None,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        requested_count: int,
    ) -> str | None:
        if override is None or override.site_id != site_id:
            return "Override request not found for this site"
        if override.status != OverrideStatus.APPROVED:
            return f"Override request is {override.status.value}, not approved"
        if override.executed_at is not None:
            return "Override request has already been used"
        if override.mother_plant_id is not None and override.mother_plant_id != mother_plant_id:
            return "Override request was approved for a different mother plant"
        if requested_count > override.requested_quantity:
            return "Requested count exceeds the approved override quantity"
        return None

    async def _announce(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        requested_count: int,
        outcome: Outcome[PropagationReceipt],
    ) -> None:
        if self.publisher is None:
            return
        if outcome.ok:
            receipt = outcome.value
            await self.publisher.notify(
                LifecycleEvent(
                    event_type="propagation.committed",
                    site_id=site_id,
                    payload={
                        "event_id": str(receipt.event_id),
                        "mother_plant_id": str(mother_plant_id),
                        "count": receipt.propagated_count,
                        "daily_total": receipt.daily_total,
                        "bypassed_limits": receipt.bypassed_limits,
                    },
                )
            )
        elif outcome.code == ErrorCode.LIMIT_EXCEEDED:
            await self.publisher.notify(
                LifecycleEvent(
                    event_type="propagation.limit_exceeded",
                    site_id=site_id,
                    payload={
                        "mother_plant_id": str(mother_plant_id),
                        "requested": requested_count,
                        "scope": outcome.rejection.scope.value,
                        "limit": outcome.rejection.details.get("limit"),
                        "current": outcome.rejection.details.get("current"),
                    },
                )
            )
