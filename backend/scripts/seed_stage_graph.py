"""
Seed Stage Graph: Creates a demo site with a standard cultivation graph.

    clone → veg → flower → harvest (terminal, needs harvest metrics)
                  flower → destroy (terminal)
    veg → flower requires the Manager role.

Also registers one mother plant and site propagation limits.

Run: python scripts/seed_stage_graph.py
"""

import asyncio
import uuid

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from db.models import BatchSourceType, BatchType, Site
from core.config import get_settings
from lifecycle.machine import BatchLifecycleMachine
from lifecycle.stages import StageGraph
from propagation.mothers import MotherPlantRegistry

SEED_USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000aa")
DEMO_SITE_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
DEMO_STRAIN_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b1")

# (key, display name, order, terminal, needs harvest metrics)
STAGES = [
    ("clone", "Clone", 10, False, False),
    ("veg", "Vegetative", 20, False, False),
    ("flower", "Flowering", 30, False, False),
    ("harvest", "Harvest", 40, True, True),
    ("destroy", "Destroyed", 90, True, False),
]

# (from, to, approval role)
TRANSITIONS = [
    ("clone", "veg", None),
    ("veg", "flower", "Manager"),
    ("flower", "harvest", None),
    ("flower", "destroy", None),
]


async def seed_demo_site(db: AsyncSession, site_id: uuid.UUID = DEMO_SITE_ID) -> dict:
    """Create the demo site, graph, mother plant and limits. Returns created ids."""
    db.add(Site(site_id=site_id, name="Demo Grow Facility"))
    await db.flush()

    graph = StageGraph(db)
    stages = {}
    for key, name, order, terminal, needs_metrics in STAGES:
        outcome = await graph.create_stage(
            site_id,
            key,
            name,
            order,
            SEED_USER_ID,
            is_terminal=terminal,
            requires_harvest_metrics=needs_metrics,
        )
        stages[key] = outcome.value

    for source, target, role in TRANSITIONS:
        await graph.create_transition(
            site_id,
            stages[source].stage_id,
            stages[target].stage_id,
            SEED_USER_ID,
            requires_approval=role is not None,
            approval_role=role,
        )

    machine = BatchLifecycleMachine(db, graph)
    mother_batch = await machine.create_batch(
        site_id,
        strain_id=DEMO_STRAIN_ID,
        batch_code="MOM-001",
        batch_name="Blue Dream Mothers",
        batch_type=BatchType.MOTHER_PLANT,
        source_type=BatchSourceType.CLONE,
        plant_count=4,
        stage_id=stages["veg"].stage_id,
        user_id=SEED_USER_ID,
    )

    registry = MotherPlantRegistry(db)
    mother = await registry.designate(site_id, mother_batch.value.batch_id, "MOM-001-A", SEED_USER_ID)
    await registry.update_settings(
        site_id,
        SEED_USER_ID,
        daily_limit=100,
        weekly_limit=500,
        mother_propagation_limit=200,
        requires_override_approval=True,
        approver_role="Manager",
    )

    return {
        "site_id": site_id,
        "stages": {key: stage.stage_id for key, stage in stages.items()},
        "mother_batch_id": mother_batch.value.batch_id,
        "mother_plant_id": mother.value.mother_plant_id,
    }


async def main():
    settings = get_settings()
    engine = create_async_engine(settings.database_url)
    SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with SessionLocal() as db:
            created = await seed_demo_site(db)
            await db.commit()
        print(f"Seeded site {created['site_id']}: {len(created['stages'])} stages, 1 mother plant")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
