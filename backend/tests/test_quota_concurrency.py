"""
Concurrency tests for the quota governor.

Covers:
  - N concurrent commits against one cap never overshoot it
  - Ledger total always equals the sum of accepted requests
  - Independently built governors serialize through the process-wide registry
  - Without any in-process lock, the site row lock still serializes commits
  - Cancelled commits leave neither a ledger row nor a counter bump
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

import pytest
from sqlalchemy import func, select

from conftest import TEST_SITE_ID, USER_ID
from core.errors import ErrorCode
from core.locks import SiteLocks
from db.models import MotherPlant, PropagationEvent
from db.session import unit_of_work
from propagation.governor import PropagationQuotaGovernor

NOW = datetime(2026, 10, 19, 9, 0, 0)


def _governor(session_factory, locks=None):
    return PropagationQuotaGovernor(
        session_factory,
        locks=locks,
        clock=lambda: NOW,
        lock_timeout=10.0,
        max_retries=3,
        retry_backoff=0,
    )


async def _totals(session_factory, mother_plant_id):
    async with unit_of_work(session_factory) as db:
        ledger = await db.execute(select(func.coalesce(func.sum(PropagationEvent.propagated_count), 0)))
        mother = await db.get(MotherPlant, mother_plant_id)
        return int(ledger.scalar()), mother.propagation_count


@pytest.mark.asyncio
class TestConcurrentCommits:
    async def test_three_requests_of_forty_against_one_hundred(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=100)
        governor = _governor(session_factory)

        results = await asyncio.gather(
            *(governor.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 40, USER_ID) for _ in range(3))
        )

        accepted = [outcome for outcome in results if outcome.ok]
        rejected = [outcome for outcome in results if not outcome.ok]
        assert len(accepted) == 2
        assert [outcome.code for outcome in rejected] == [ErrorCode.LIMIT_EXCEEDED]
        assert rejected[0].rejection.details["current"] == 80
        assert await _totals(session_factory, mother_plant.mother_plant_id) == (80, 80)

    async def test_mixed_sizes_never_overshoot(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=60)
        governor = _governor(session_factory)
        sizes = [7, 13, 25, 31, 9, 18, 40, 22, 1, 5]

        results = await asyncio.gather(
            *(governor.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, n, USER_ID) for n in sizes)
        )

        accepted = sum(n for n, outcome in zip(sizes, results) if outcome.ok)
        ledger, mother_count = await _totals(session_factory, mother_plant.mother_plant_id)
        assert ledger == mother_count == accepted
        assert accepted <= 60
        for n, outcome in zip(sizes, results):
            if not outcome.ok:
                assert outcome.code == ErrorCode.LIMIT_EXCEEDED
                assert outcome.rejection.details["current"] + n > 60

    async def test_per_mother_cap_under_contention(self, session_factory, mother_plant, set_limits):
        await set_limits(mother=50)
        governor = _governor(session_factory)

        results = await asyncio.gather(
            *(governor.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 10, USER_ID) for _ in range(8))
        )

        assert sum(1 for outcome in results if outcome.ok) == 5
        assert await _totals(session_factory, mother_plant.mother_plant_id) == (50, 50)

    async def test_governors_sharing_locks_serialize(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=100)
        shared = SiteLocks("propagation")
        first = _governor(session_factory, locks=shared)
        second = _governor(session_factory, locks=shared)

        results = await asyncio.gather(
            first.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 60, USER_ID),
            second.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 60, USER_ID),
        )

        assert sorted(outcome.ok for outcome in results) == [False, True]
        assert await _totals(session_factory, mother_plant.mother_plant_id) == (60, 60)

    async def test_independent_governors_share_the_site_lock(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=100)
        governors = [_governor(session_factory) for _ in range(3)]

        results = await asyncio.gather(
            *(g.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 40, USER_ID) for g in governors)
        )

        assert sorted(outcome.ok for outcome in results) == [False, True, True]
        assert await _totals(session_factory, mother_plant.mother_plant_id) == (80, 80)


class _UnsharedLocks(SiteLocks):
    """Lock handle that never blocks, as if every caller ran in its own process."""

    @asynccontextmanager
    async def hold(self, site_id, timeout):
        yield


@pytest.mark.asyncio
async def test_site_row_lock_serializes_across_processes(session_factory, mother_plant, set_limits):
    await set_limits(daily=100)
    governors = [_governor(session_factory, locks=_UnsharedLocks("propagation")) for _ in range(3)]

    results = await asyncio.gather(
        *(g.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 40, USER_ID) for g in governors)
    )

    accepted = [outcome for outcome in results if outcome.ok]
    assert len(accepted) == 2
    assert sorted(outcome.value.propagation_count for outcome in accepted) == [40, 80]
    assert await _totals(session_factory, mother_plant.mother_plant_id) == (80, 80)


class _StallingGovernor(PropagationQuotaGovernor):
    """Governor that parks inside its unit of work once the ledger row is written."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.written = asyncio.Event()

    async def _check_and_commit(self, db, *args):
        outcome = await super()._check_and_commit(db, *args)
        await db.flush()
        self.written.set()
        await asyncio.Event().wait()
        return outcome


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_while_queued_for_the_site_lock(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=100)
        governor = _governor(session_factory)

        async with governor.locks.hold(TEST_SITE_ID, 1.0):
            task = asyncio.create_task(
                governor.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 40, USER_ID)
            )
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert await _totals(session_factory, mother_plant.mother_plant_id) == (0, 0)

    async def test_cancel_inside_the_unit_rolls_back(self, session_factory, mother_plant, set_limits):
        await set_limits(daily=100)
        stalled = _StallingGovernor(session_factory, clock=lambda: NOW, lock_timeout=10.0, retry_backoff=0)

        task = asyncio.create_task(
            stalled.commit_propagation(TEST_SITE_ID, mother_plant.mother_plant_id, 40, USER_ID)
        )
        await asyncio.wait_for(stalled.written.wait(), timeout=5.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await _totals(session_factory, mother_plant.mother_plant_id) == (0, 0)

        # Lock and transaction were both released
        follow_up = await _governor(session_factory).commit_propagation(
            TEST_SITE_ID, mother_plant.mother_plant_id, 10, USER_ID
        )
        assert follow_up.ok
        assert await _totals(session_factory, mother_plant.mother_plant_id) == (10, 10)
