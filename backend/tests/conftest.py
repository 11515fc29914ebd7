"""
Test Configuration: Fixtures for async DB, a seeded stage graph, and mother plants.

Each test gets its own SQLite file under tmp_path so components that open
their own units of work (genealogy tracker, quota governor) see the same
committed data as the test's session.
"""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import BatchSourceType, BatchType, Site
from db.session import Base, unit_of_work
from events.publisher import EventPublisher
from lifecycle.machine import BatchLifecycleMachine
from lifecycle.stages import StageGraph
from propagation.mothers import MotherPlantRegistry

TEST_SITE_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_SITE_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
MANAGER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a2")
STRAIN_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b1")

# (key, order, terminal, needs harvest metrics)
GRAPH_STAGES = [
    ("clone", 10, False, False),
    ("veg", 20, False, False),
    ("flower", 30, False, False),
    ("harvest", 40, True, True),
    ("destroy", 90, True, False),
]

# (from, to, approval role)
GRAPH_TRANSITIONS = [
    ("clone", "veg", None),
    ("veg", "flower", "Manager"),
    ("flower", "harvest", None),
    ("flower", "destroy", None),
]


class RecordingPublisher(EventPublisher):
    """Publisher that keeps (channel, message) pairs instead of talking to Redis."""

    def __init__(self, enabled: bool = True):
        super().__init__(redis_url="redis://localhost:6379/15", channel_prefix="cultivation", enabled=enabled)
        self.messages: list[tuple[str, str]] = []

    async def _send_all(self, messages):
        self.messages.extend(messages)
        return len(messages)


@pytest.fixture
async def test_engine(tmp_path):
    """Create a file-backed test database and build all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'canopy-test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    """A session whose uncommitted work is rolled back after the test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
async def graph_site(session_factory):
    """Two sites; the test site carries clone → veg → flower → harvest|destroy."""
    async with session_factory() as db:
        db.add_all(
            [
                Site(site_id=TEST_SITE_ID, name="Test Grow"),
                Site(site_id=OTHER_SITE_ID, name="Other Grow"),
            ]
        )
        await db.flush()

        graph = StageGraph(db)
        stages = {}
        for key, order, terminal, needs_metrics in GRAPH_STAGES:
            outcome = await graph.create_stage(
                TEST_SITE_ID,
                key,
                key.title(),
                order,
                USER_ID,
                is_terminal=terminal,
                requires_harvest_metrics=needs_metrics,
            )
            stages[key] = outcome.value.stage_id

        transitions = {}
        for source, target, role in GRAPH_TRANSITIONS:
            outcome = await graph.create_transition(
                TEST_SITE_ID,
                stages[source],
                stages[target],
                USER_ID,
                requires_approval=role is not None,
                approval_role=role,
            )
            transitions[(source, target)] = outcome.value.transition_id

        await db.commit()

    return {"site_id": TEST_SITE_ID, "stages": stages, "transitions": transitions}


@pytest.fixture
def make_batch(session_factory, graph_site):
    """Create and commit a batch in the test site."""

    async def _make(
        code: str,
        stage: str = "clone",
        parent_batch_id: uuid.UUID | None = None,
        plant_count: int = 10,
        strain_id: uuid.UUID = STRAIN_ID,
        batch_type: BatchType = BatchType.CLONE,
    ):
        async with unit_of_work(session_factory) as db:
            outcome = await BatchLifecycleMachine(db).create_batch(
                TEST_SITE_ID,
                strain_id=strain_id,
                batch_code=code,
                batch_name=f"Batch {code}",
                batch_type=batch_type,
                source_type=BatchSourceType.CLONE,
                plant_count=plant_count,
                stage_id=graph_site["stages"][stage],
                user_id=USER_ID,
                parent_batch_id=parent_batch_id,
            )
        assert outcome.ok, outcome.rejection
        return outcome.value

    return _make


@pytest.fixture
async def mother_plant(make_batch, session_factory):
    """An active mother plant with no propagations yet."""
    batch = await make_batch("MOM-001", stage="veg", plant_count=1, batch_type=BatchType.MOTHER_PLANT)
    async with unit_of_work(session_factory) as db:
        outcome = await MotherPlantRegistry(db).designate(TEST_SITE_ID, batch.batch_id, "MOM-001-A", USER_ID)
    assert outcome.ok, outcome.rejection
    return outcome.value


@pytest.fixture
def set_limits(session_factory, graph_site):
    """Write the test site's propagation settings."""

    async def _set(
        daily: int | None = None,
        weekly: int | None = None,
        mother: int | None = None,
        requires_override_approval: bool = True,
        approver_role: str | None = None,
    ):
        async with unit_of_work(session_factory) as db:
            outcome = await MotherPlantRegistry(db).update_settings(
                TEST_SITE_ID,
                USER_ID,
                daily_limit=daily,
                weekly_limit=weekly,
                mother_propagation_limit=mother,
                requires_override_approval=requires_override_approval,
                approver_role=approver_role,
            )
        assert outcome.ok, outcome.rejection
        return outcome.value

    return _set
