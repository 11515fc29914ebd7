"""
Tests for the batch event outbox and the Redis publisher.

Covers:
  - Lifecycle changes write outbox rows in the same transaction
  - relay_pending_events() publishes in order and stamps rows once
  - A Redis failure during relay leaves rows unpublished
  - notify() swallows Redis errors
"""

import json
import uuid
from datetime import datetime

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from conftest import TEST_SITE_ID, USER_ID, RecordingPublisher
from db.models import BatchEvent, BatchSourceType, BatchType
from db.session import unit_of_work
from events.outbox import relay_pending_events
from events.publisher import EventPublisher, LifecycleEvent
from lifecycle.machine import BatchLifecycleMachine


class BrokenPublisher(EventPublisher):
    def __init__(self):
        super().__init__(redis_url="redis://localhost:6379/15", channel_prefix="cultivation", enabled=True)

    async def _send_all(self, messages):
        raise RedisConnectionError("connection refused")


async def _unpublished(session_factory) -> list[BatchEvent]:
    async with unit_of_work(session_factory) as db:
        result = await db.execute(select(BatchEvent).where(BatchEvent.published_at.is_(None)))
        return list(result.scalars().all())


def test_message_shape():
    event = LifecycleEvent(
        event_type="batch.created",
        site_id=TEST_SITE_ID,
        payload={"batch_code": "B-1"},
        occurred_at=datetime(2026, 10, 19, 8, 0, 0),
    )
    assert json.loads(event.to_message()) == {
        "type": "batch.created",
        "site_id": str(TEST_SITE_ID),
        "occurred_at": "2026-10-19T08:00:00",
        "payload": {"batch_code": "B-1"},
    }


def test_channel_is_per_site():
    publisher = RecordingPublisher()
    assert publisher.channel(TEST_SITE_ID) == f"cultivation:{TEST_SITE_ID}"


@pytest.mark.asyncio
class TestRelay:
    async def test_relay_publishes_in_order_and_stamps(self, make_batch, graph_site, session_factory, publisher):
        batch = await make_batch("EV-1")
        async with unit_of_work(session_factory) as db:
            await BatchLifecycleMachine(db).advance(TEST_SITE_ID, batch.batch_id, graph_site["stages"]["veg"], USER_ID)

        async with unit_of_work(session_factory) as db:
            relayed = await relay_pending_events(db, publisher)

        assert relayed == 2
        types = [json.loads(message)["type"] for _, message in publisher.messages]
        assert types == ["batch.created", "batch.stage_changed"]
        payload = json.loads(publisher.messages[1][1])["payload"]
        assert payload["batch_id"] == str(batch.batch_id)
        assert payload["to_stage_key"] == "veg"
        assert await _unpublished(session_factory) == []

        async with unit_of_work(session_factory) as db:
            assert await relay_pending_events(db, publisher) == 0
        assert len(publisher.messages) == 2

    async def test_rolled_back_change_leaves_no_event(self, test_db, graph_site, session_factory):
        await BatchLifecycleMachine(test_db).create_batch(
            TEST_SITE_ID,
            strain_id=uuid.uuid4(),
            batch_code="EV-GONE",
            batch_name="Gone",
            batch_type=BatchType.CLONE,
            source_type=BatchSourceType.CLONE,
            plant_count=1,
            stage_id=graph_site["stages"]["clone"],
            user_id=USER_ID,
        )
        await test_db.rollback()
        assert await _unpublished(session_factory) == []

    async def test_limit_caps_one_relay_pass(self, make_batch, session_factory, publisher):
        for index in range(3):
            await make_batch(f"EV-L{index}")

        async with unit_of_work(session_factory) as db:
            assert await relay_pending_events(db, publisher, limit=2) == 2
        assert len(await _unpublished(session_factory)) == 1

    async def test_redis_failure_keeps_rows_pending(self, make_batch, session_factory):
        await make_batch("EV-ERR")

        with pytest.raises(RedisConnectionError):
            async with unit_of_work(session_factory) as db:
                await relay_pending_events(db, BrokenPublisher())

        assert len(await _unpublished(session_factory)) == 1

    async def test_disabled_publisher_sends_nothing(self, make_batch, session_factory):
        await make_batch("EV-OFF")
        quiet = RecordingPublisher(enabled=False)

        async with unit_of_work(session_factory) as db:
            await relay_pending_events(db, quiet)

        assert quiet.messages == []


@pytest.mark.asyncio
async def test_notify_swallows_redis_errors():
    sent = await BrokenPublisher().notify(LifecycleEvent(event_type="propagation.committed", site_id=TEST_SITE_ID))
    assert sent == 0
