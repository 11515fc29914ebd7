"""
Maintenance tasks for the cultivation core.

  - relay_batch_events:     publish outbox rows written by lifecycle changes
  - expire_stale_overrides: pending override requests past their window → expired
  - audit_genealogy:        nightly lineage scan, faults logged for investigation

Each task builds its own engine and session factory for the run and disposes
it afterwards; the async bodies are plain coroutines so they can be awaited
directly against any session factory.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def relay_events_once(session_factory: async_sessionmaker, publisher) -> int:
    from db.session import unit_of_work
    from events.outbox import relay_pending_events

    async with unit_of_work(session_factory) as db:
        return await relay_pending_events(db, publisher)


async def expire_overrides_once(session_factory: async_sessionmaker, now: datetime | None = None) -> int:
    from db.session import unit_of_work
    from propagation.overrides import OverrideWorkflow

    async with unit_of_work(session_factory) as db:
        return await OverrideWorkflow(db).expire_stale(now=now)


async def audit_genealogy_once(session_factory: async_sessionmaker) -> dict[str, int]:
    from db.models import Site
    from db.session import unit_of_work
    from lifecycle.genealogy import GenealogyTracker

    async with unit_of_work(session_factory) as db:
        site_ids = [row for row in (await db.execute(select(Site.site_id).order_by(Site.created_at))).scalars()]

    tracker = GenealogyTracker(session_factory)
    faults_by_site: dict[str, int] = {}
    for site_id in site_ids:
        faults = await tracker.audit_lineage(site_id)
        faults_by_site[str(site_id)] = len(faults)
    return faults_by_site


def _run_with_engine(body):
    from core.config import get_settings

    async def _run():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            return await body(session_factory)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


@celery_app.task(
    name="workers.maintenance.relay_batch_events",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def relay_batch_events(self):
    """Publish unpublished batch events to subscribers."""
    from events.publisher import EventPublisher

    run_id = self.request.id or "manual"
    try:
        relayed = _run_with_engine(lambda factory: relay_events_once(factory, EventPublisher()))
    except Exception as exc:  # noqa: BLE001
        logger.error("maintenance.relay_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    summary = {
        "status": "success",
        "relayed_count": relayed,
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info("maintenance.relay_complete", **summary)
    return summary


@celery_app.task(
    name="workers.maintenance.expire_stale_overrides",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def expire_stale_overrides(self):
    run_id = self.request.id or "manual"
    try:
        expired = _run_with_engine(expire_overrides_once)
    except Exception as exc:  # noqa: BLE001
        logger.error("maintenance.expire_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    summary = {
        "status": "success",
        "expired_count": expired,
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info("maintenance.expire_complete", **summary)
    return summary


@celery_app.task(
    name="workers.maintenance.audit_genealogy",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def audit_genealogy(self, site_id: str | None = None):
    """
    Scan lineage for cycles, dangling parents and generation drift.

    Faults are reported only; repairing lineage is a manual decision.
    """
    run_id = self.request.id or "manual"

    async def _audit(factory):
        if site_id is None:
            return await audit_genealogy_once(factory)
        from lifecycle.genealogy import GenealogyTracker

        faults = await GenealogyTracker(factory).audit_lineage(uuid.UUID(site_id))
        return {site_id: len(faults)}

    try:
        faults_by_site = _run_with_engine(_audit)
    except Exception as exc:  # noqa: BLE001
        logger.error("maintenance.audit_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    summary = {
        "status": "faults_found" if any(faults_by_site.values()) else "clean",
        "site_count": len(faults_by_site),
        "fault_count": sum(faults_by_site.values()),
        "faults_by_site": faults_by_site,
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info("maintenance.audit_complete", **summary)
    return summary
