import asyncio
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import OTHER_SITE_ID, TEST_SITE_ID, USER_ID
from db.models import BatchSourceType, BatchType, OverrideStatus, PropagationOverrideRequest, Site, Stage
from db.session import Base, unit_of_work
from events.publisher import EventPublisher
from lifecycle.machine import place_new_batch
from workers.maintenance import (
    audit_genealogy,
    audit_genealogy_once,
    expire_overrides_once,
    expire_stale_overrides,
    relay_batch_events,
    relay_events_once,
)


@pytest.mark.asyncio
async def test_relay_body_drains_outbox(make_batch, session_factory, publisher):
    await make_batch("W-1")
    await make_batch("W-2")

    assert await relay_events_once(session_factory, publisher) == 2
    assert await relay_events_once(session_factory, publisher) == 0


@pytest.mark.asyncio
async def test_expire_body_uses_configured_window(graph_site, session_factory):
    async with unit_of_work(session_factory) as db:
        db.add(
            PropagationOverrideRequest(
                site_id=TEST_SITE_ID,
                requested_by=USER_ID,
                requested_quantity=10,
                reason="Old",
                status=OverrideStatus.PENDING,
                requested_on=datetime(2026, 10, 1, 8, 0, 0),
            )
        )

    assert await expire_overrides_once(session_factory, now=datetime(2026, 10, 3, 8, 0, 0)) == 0
    assert await expire_overrides_once(session_factory, now=datetime(2026, 10, 4, 8, 0, 1)) == 1


@pytest.mark.asyncio
async def test_audit_body_reports_every_site(make_batch, session_factory):
    await make_batch("W-A")
    faults = await audit_genealogy_once(session_factory)
    assert faults == {str(TEST_SITE_ID): 0, str(OTHER_SITE_ID): 0}


def _file_database(tmp_path, seed):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'maintenance.db'}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _setup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            await seed(db)
            await db.commit()
        await engine.dispose()

    asyncio.run(_setup())
    return db_url, engine, session_factory


def test_expire_task_runs_against_configured_database(tmp_path, monkeypatch):
    stale_id = uuid.uuid4()
    fresh_id = uuid.uuid4()

    async def _seed(db):
        db.add(Site(site_id=TEST_SITE_ID, name="Task Grow"))
        db.add_all(
            [
                PropagationOverrideRequest(
                    override_id=stale_id,
                    site_id=TEST_SITE_ID,
                    requested_by=USER_ID,
                    requested_quantity=5,
                    reason="Stale",
                    status=OverrideStatus.PENDING,
                    requested_on=datetime.utcnow() - timedelta(hours=100),
                ),
                PropagationOverrideRequest(
                    override_id=fresh_id,
                    site_id=TEST_SITE_ID,
                    requested_by=USER_ID,
                    requested_quantity=5,
                    reason="Fresh",
                    status=OverrideStatus.PENDING,
                    requested_on=datetime.utcnow(),
                ),
            ]
        )

    db_url, engine, session_factory = _file_database(tmp_path, _seed)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    result = expire_stale_overrides.run()
    assert result["status"] == "success"
    assert result["expired_count"] == 1
    assert result["run_id"] == "manual"

    async def _statuses():
        async with session_factory() as db:
            rows = await db.execute(select(PropagationOverrideRequest.override_id, PropagationOverrideRequest.status))
            found = dict(rows.all())
        await engine.dispose()
        return found

    statuses = asyncio.run(_statuses())
    assert statuses == {stale_id: OverrideStatus.EXPIRED, fresh_id: OverrideStatus.PENDING}


def test_relay_task_publishes_through_redis_client(tmp_path, monkeypatch):
    async def _seed(db):
        db.add(Site(site_id=TEST_SITE_ID, name="Task Grow"))
        stage = Stage(
            site_id=TEST_SITE_ID,
            stage_key="clone",
            display_name="Clone",
            sequence_order=1,
            created_by=USER_ID,
            updated_by=USER_ID,
        )
        db.add(stage)
        await db.flush()
        await place_new_batch(
            db,
            site_id=TEST_SITE_ID,
            strain_id=uuid.uuid4(),
            batch_code="T-1",
            batch_name="Task batch",
            batch_type=BatchType.CLONE,
            source_type=BatchSourceType.CLONE,
            plant_count=3,
            stage_id=stage.stage_id,
            user_id=USER_ID,
        )

    db_url, engine, _ = _file_database(tmp_path, _seed)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    sent: list[tuple[str, str]] = []

    async def _capture(self, messages):
        sent.extend(messages)
        return len(messages)

    monkeypatch.setattr(EventPublisher, "_send_all", _capture)

    result = relay_batch_events.run()
    assert result["status"] == "success"
    assert result["relayed_count"] == 1
    assert [channel for channel, _ in sent] == [f"cultivation:{TEST_SITE_ID}"]
    asyncio.run(engine.dispose())


def test_audit_task_scoped_to_one_site(tmp_path, monkeypatch):
    async def _seed(db):
        db.add(Site(site_id=TEST_SITE_ID, name="Task Grow"))

    db_url, engine, _ = _file_database(tmp_path, _seed)
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    result = audit_genealogy.run(site_id=str(TEST_SITE_ID))
    assert result["status"] == "clean"
    assert result["faults_by_site"] == {str(TEST_SITE_ID): 0}
    asyncio.run(engine.dispose())
