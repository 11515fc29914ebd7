"""
Mother plant registry and per-site propagation settings.

Mother status machine:
    active ⇄ quarantine
    active | quarantine → retired   (terminal)
    active | quarantine → culled    (terminal)

propagation_count is only ever raised by the quota governor; nothing here
decrements it.

Health logs are append-only dated assessments. A mother is overdue for a
check when it has never been assessed, or its latest assessment is older
than ``mother_health_check_days``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from urllib.parse import urlparse

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import ErrorCode, Outcome
from db.models import (
    Batch,
    HealthStatus,
    MotherHealthLog,
    MotherPlant,
    MotherPlantStatus,
    PressureLevel,
    PropagationSettings,
)

logger = structlog.get_logger()

TERMINAL_MOTHER_STATUSES = {MotherPlantStatus.RETIRED, MotherPlantStatus.CULLED}
RECENT_HEALTH_LOGS = 5

_ALLOWED_MOVES: dict[MotherPlantStatus, set[MotherPlantStatus]] = {
    MotherPlantStatus.ACTIVE: {MotherPlantStatus.QUARANTINE, MotherPlantStatus.RETIRED, MotherPlantStatus.CULLED},
    MotherPlantStatus.QUARANTINE: {MotherPlantStatus.ACTIVE, MotherPlantStatus.RETIRED, MotherPlantStatus.CULLED},
    MotherPlantStatus.RETIRED: set(),
    MotherPlantStatus.CULLED: set(),
}


@dataclass(frozen=True)
class PropagationPolicy:
    """Effective limits for a site. ``None`` means unlimited."""

    daily_limit: int | None = None
    weekly_limit: int | None = None
    mother_propagation_limit: int | None = None
    requires_override_approval: bool = True
    approver_role: str | None = None

    @classmethod
    def from_row(cls, row: PropagationSettings | None) -> "PropagationPolicy":
        if row is None:
            return cls()
        return cls(
            daily_limit=row.daily_limit,
            weekly_limit=row.weekly_limit,
            mother_propagation_limit=row.mother_propagation_limit,
            requires_override_approval=row.requires_override_approval,
            approver_role=row.approver_role,
        )


async def load_policy(db: AsyncSession, site_id: uuid.UUID) -> PropagationPolicy:
    return PropagationPolicy.from_row(await db.get(PropagationSettings, site_id))


def _limit_problem(name: str, value: int | None) -> str | None:
    if value is not None and value < 1:
        return f"{name} must be at least 1 when set"
    return None


def _usable_photo_urls(urls: list[str] | None, mother_plant_id: uuid.UUID) -> list[str]:
    kept = []
    for url in urls or []:
        candidate = url.strip() if isinstance(url, str) else ""
        parsed = urlparse(candidate)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            kept.append(candidate)
        else:
            logger.warning("mother_plant.photo_url_skipped", mother_plant_id=str(mother_plant_id), url=url)
    return kept


@dataclass(frozen=True)
class HealthSummary:
    mother: MotherPlant
    latest: MotherHealthLog | None
    is_overdue: bool
    next_check_due: date
    days_since_check: int | None = None
    recent: list[MotherHealthLog] = field(default_factory=list)


class MotherPlantRegistry:
    def __init__(self, db: AsyncSession, health_check_days: int | None = None):
        self.db = db
        self.health_check_days = (
            health_check_days if health_check_days is not None else get_settings().mother_health_check_days
        )

    async def get(self, site_id: uuid.UUID, mother_plant_id: uuid.UUID) -> MotherPlant | None:
        result = await self.db.execute(
            select(MotherPlant).where(
                MotherPlant.site_id == site_id,
                MotherPlant.mother_plant_id == mother_plant_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_mothers(
        self,
        site_id: uuid.UUID,
        status: MotherPlantStatus | None = None,
    ) -> list[MotherPlant]:
        query = select(MotherPlant).where(MotherPlant.site_id == site_id)
        if status is not None:
            query = query.where(MotherPlant.status == status)
        result = await self.db.execute(query.order_by(MotherPlant.plant_tag))
        return list(result.scalars().all())

    async def designate(
        self,
        site_id: uuid.UUID,
        batch_id: uuid.UUID,
        plant_tag: str,
        user_id: uuid.UUID,
        max_propagation_count: int | None = None,
        date_established: date | None = None,
    ) -> Outcome[MotherPlant]:
        """Register a plant from ``batch_id`` as a mother."""
        if not plant_tag or not plant_tag.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Plant tag is required")
        problem = _limit_problem("Max propagation count", max_propagation_count)
        if problem:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)

        batch_result = await self.db.execute(
            select(Batch).where(Batch.site_id == site_id, Batch.batch_id == batch_id)
        )
        batch = batch_result.scalar_one_or_none()
        if batch is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Batch {batch_id} not found")

        plant_tag = plant_tag.strip()
        existing = await self.db.execute(
            select(MotherPlant.mother_plant_id).where(
                MotherPlant.site_id == site_id, MotherPlant.plant_tag == plant_tag
            )
        )
        if existing.scalar_one_or_none() is not None:
            return Outcome.failure(ErrorCode.DUPLICATE_KEY, f"Plant tag '{plant_tag}' already exists for this site")

        mother = MotherPlant(
            site_id=site_id,
            batch_id=batch_id,
            strain_id=batch.strain_id,
            plant_tag=plant_tag,
            status=MotherPlantStatus.ACTIVE,
            date_established=date_established or datetime.utcnow().date(),
            propagation_count=0,
            max_propagation_count=max_propagation_count,
            created_by=user_id,
            updated_by=user_id,
        )
        self.db.add(mother)
        await self.db.flush()

        logger.info("mother_plant.designated", site_id=str(site_id), mother_plant_id=str(mother.mother_plant_id))
        return Outcome.success(mother)

    async def retire(self, site_id, mother_plant_id, reason: str, user_id) -> Outcome[MotherPlant]:
        return await self._move(site_id, mother_plant_id, MotherPlantStatus.RETIRED, reason, user_id)

    async def cull(self, site_id, mother_plant_id, reason: str, user_id) -> Outcome[MotherPlant]:
        return await self._move(site_id, mother_plant_id, MotherPlantStatus.CULLED, reason, user_id)

    async def quarantine(self, site_id, mother_plant_id, reason: str, user_id) -> Outcome[MotherPlant]:
        return await self._move(site_id, mother_plant_id, MotherPlantStatus.QUARANTINE, reason, user_id)

    async def release_quarantine(self, site_id, mother_plant_id, user_id) -> Outcome[MotherPlant]:
        mother = await self.get(site_id, mother_plant_id)
        if mother is not None and mother.status != MotherPlantStatus.QUARANTINE:
            return Outcome.failure(ErrorCode.INVALID_STATE, "Only quarantined mother plants can be released")
        return await self._move(site_id, mother_plant_id, MotherPlantStatus.ACTIVE, "Released from quarantine", user_id)

    async def update_propagation_limit(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        max_propagation_count: int | None,
        user_id: uuid.UUID,
    ) -> Outcome[MotherPlant]:
        problem = _limit_problem("Max propagation count", max_propagation_count)
        if problem:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)
        mother = await self.get(site_id, mother_plant_id)
        if mother is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        mother.max_propagation_count = max_propagation_count
        mother.updated_by = user_id
        mother.updated_at = datetime.utcnow()
        await self.db.flush()
        return Outcome.success(mother)

    async def _move(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        target: MotherPlantStatus,
        reason: str,
        user_id: uuid.UUID,
    ) -> Outcome[MotherPlant]:
        if not reason or not reason.strip():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Reason is required")
        mother = await self.get(site_id, mother_plant_id)
        if mother is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        if target not in _ALLOWED_MOVES[mother.status]:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Cannot move mother plant from {mother.status.value} to {target.value}",
                status=mother.status.value,
            )

        previous = mother.status
        mother.status = target
        mother.status_reason = reason.strip()
        mother.updated_by = user_id
        mother.updated_at = datetime.utcnow()
        await self.db.flush()

        logger.info(
            "mother_plant.status_changed",
            mother_plant_id=str(mother_plant_id),
            previous=previous.value,
            current=target.value,
        )
        return Outcome.success(mother)

    # ── Health logs ────────────────────────────────────────────────────────

    async def record_health_log(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        health_status: HealthStatus | str,
        pest_pressure: PressureLevel | str = PressureLevel.NONE,
        disease_pressure: PressureLevel | str = PressureLevel.NONE,
        nutrient_deficiencies: list[str] | None = None,
        observations: str | None = None,
        treatments_applied: str | None = None,
        environmental_notes: str | None = None,
        photo_urls: list[str] | None = None,
        log_date: date | None = None,
    ) -> Outcome[MotherHealthLog]:
        """Append a dated health assessment. Retired and culled mothers take no new logs."""
        try:
            health_status = HealthStatus(health_status)
            pest_pressure = PressureLevel(pest_pressure)
            disease_pressure = PressureLevel(disease_pressure)
        except ValueError as exc:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, str(exc))
        log_date = log_date or datetime.utcnow().date()
        if log_date > datetime.utcnow().date():
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Health log date cannot be in the future")

        mother = await self.get(site_id, mother_plant_id)
        if mother is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        if mother.status in TERMINAL_MOTHER_STATUSES:
            return Outcome.failure(
                ErrorCode.INVALID_STATE,
                f"Cannot log health for a {mother.status.value} mother plant",
                status=mother.status.value,
            )

        entry = MotherHealthLog(
            site_id=site_id,
            mother_plant_id=mother_plant_id,
            log_date=log_date,
            health_status=health_status,
            pest_pressure=pest_pressure,
            disease_pressure=disease_pressure,
            nutrient_deficiencies=[item.strip() for item in nutrient_deficiencies or [] if item and item.strip()],
            observations=observations,
            treatments_applied=treatments_applied,
            environmental_notes=environmental_notes,
            photo_urls=_usable_photo_urls(photo_urls, mother_plant_id),
            logged_by=user_id,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "mother_plant.health_logged",
            mother_plant_id=str(mother_plant_id),
            health_status=health_status.value,
            log_date=log_date.isoformat(),
        )
        return Outcome.success(entry)

    async def health_logs(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        limit: int | None = None,
    ) -> list[MotherHealthLog]:
        """Newest first."""
        query = (
            select(MotherHealthLog)
            .where(MotherHealthLog.site_id == site_id, MotherHealthLog.mother_plant_id == mother_plant_id)
            .order_by(MotherHealthLog.log_date.desc(), MotherHealthLog.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def latest_health_assessment(
        self, site_id: uuid.UUID, mother_plant_id: uuid.UUID
    ) -> MotherHealthLog | None:
        logs = await self.health_logs(site_id, mother_plant_id, limit=1)
        return logs[0] if logs else None

    def _check_due(self, mother: MotherPlant, latest: MotherHealthLog | None) -> date:
        anchor = latest.log_date if latest is not None else mother.date_established
        return anchor + timedelta(days=self.health_check_days)

    async def health_summary(
        self,
        site_id: uuid.UUID,
        mother_plant_id: uuid.UUID,
        today: date | None = None,
    ) -> Outcome[HealthSummary]:
        mother = await self.get(site_id, mother_plant_id)
        if mother is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Mother plant {mother_plant_id} not found")
        today = today or datetime.utcnow().date()
        recent = await self.health_logs(site_id, mother_plant_id, limit=RECENT_HEALTH_LOGS)
        latest = recent[0] if recent else None
        return Outcome.success(
            HealthSummary(
                mother=mother,
                latest=latest,
                recent=recent,
                # Never assessed counts as overdue straight away
                is_overdue=latest is None or (today - latest.log_date).days > self.health_check_days,
                next_check_due=self._check_due(mother, latest),
                days_since_check=(today - latest.log_date).days if latest is not None else None,
            )
        )

    async def overdue_for_health_check(self, site_id: uuid.UUID, today: date | None = None) -> list[MotherPlant]:
        """Active and quarantined mothers with no assessment inside the check window."""
        today = today or datetime.utcnow().date()
        cutoff = today - timedelta(days=self.health_check_days)
        last_log = (
            select(
                MotherHealthLog.mother_plant_id,
                func.max(MotherHealthLog.log_date).label("last_log_date"),
            )
            .where(MotherHealthLog.site_id == site_id)
            .group_by(MotherHealthLog.mother_plant_id)
            .subquery()
        )
        result = await self.db.execute(
            select(MotherPlant)
            .outerjoin(last_log, last_log.c.mother_plant_id == MotherPlant.mother_plant_id)
            .where(
                MotherPlant.site_id == site_id,
                MotherPlant.status.notin_(sorted(TERMINAL_MOTHER_STATUSES)),
                or_(last_log.c.last_log_date.is_(None), last_log.c.last_log_date < cutoff),
            )
            .order_by(MotherPlant.plant_tag)
        )
        return list(result.scalars().all())

    # ── Settings ───────────────────────────────────────────────────────────

    async def get_settings(self, site_id: uuid.UUID) -> PropagationPolicy:
        return await load_policy(self.db, site_id)

    async def update_settings(
        self,
        site_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        daily_limit: int | None,
        weekly_limit: int | None,
        mother_propagation_limit: int | None,
        requires_override_approval: bool,
        approver_role: str | None = None,
    ) -> Outcome[PropagationPolicy]:
        for name, value in (
            ("Daily limit", daily_limit),
            ("Weekly limit", weekly_limit),
            ("Mother propagation limit", mother_propagation_limit),
        ):
            problem = _limit_problem(name, value)
            if problem:
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)
        if daily_limit is not None and weekly_limit is not None and weekly_limit < daily_limit:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, "Weekly limit cannot be lower than the daily limit")

        row = await self.db.get(PropagationSettings, site_id)
        if row is None:
            row = PropagationSettings(site_id=site_id)
            self.db.add(row)
        row.daily_limit = daily_limit
        row.weekly_limit = weekly_limit
        row.mother_propagation_limit = mother_propagation_limit
        row.requires_override_approval = requires_override_approval
        row.approver_role = approver_role.strip() if approver_role and approver_role.strip() else None
        row.updated_by = user_id
        row.updated_at = datetime.utcnow()
        await self.db.flush()

        logger.info(
            "propagation_settings.updated",
            site_id=str(site_id),
            daily_limit=daily_limit,
            weekly_limit=weekly_limit,
            mother_propagation_limit=mother_propagation_limit,
        )
        return Outcome.success(PropagationPolicy.from_row(row))
