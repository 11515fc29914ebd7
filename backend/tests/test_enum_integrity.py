"""
Closed enums: unknown stored values are corruption, never a default member.
"""

import pytest
from sqlalchemy import text

from conftest import TEST_SITE_ID
from core.errors import IntegrityViolation
from db.models import BatchType, MotherPlantStatus, OverrideStatus, decode_enum
from db.session import unit_of_work
from lifecycle.machine import BatchLifecycleMachine


def test_decode_known_values():
    assert decode_enum(BatchType, "mother_plant") is BatchType.MOTHER_PLANT
    assert decode_enum(OverrideStatus, OverrideStatus.EXPIRED) is OverrideStatus.EXPIRED
    assert decode_enum(MotherPlantStatus, None) is None


def test_decode_unknown_value_raises():
    with pytest.raises(IntegrityViolation) as excinfo:
        decode_enum(BatchType, "hybrid", column="batch_type")
    assert excinfo.value.context == {"column": "batch_type", "value": "hybrid"}


def test_values_are_case_sensitive():
    with pytest.raises(IntegrityViolation):
        decode_enum(BatchType, "CLONE")


@pytest.mark.asyncio
async def test_corrupt_stored_batch_type_fails_on_load(make_batch, session_factory):
    batch = await make_batch("ENUM-1")
    async with unit_of_work(session_factory) as db:
        await db.execute(text("UPDATE batches SET batch_type = 'hybrid' WHERE batch_code = 'ENUM-1'"))

    async with session_factory() as db:
        with pytest.raises(IntegrityViolation):
            await BatchLifecycleMachine(db).get_batch(TEST_SITE_ID, batch.batch_id)


@pytest.mark.asyncio
async def test_writing_unknown_value_is_refused(make_batch, session_factory):
    batch = await make_batch("ENUM-2")
    async with session_factory() as db:
        loaded = await BatchLifecycleMachine(db).get_batch(TEST_SITE_ID, batch.batch_id)
        loaded.batch_type = "hybrid"
        # Bind errors may arrive wrapped in a StatementError
        with pytest.raises(Exception, match="Unknown BatchType value .hybrid."):
            await db.flush()
        await db.rollback()
