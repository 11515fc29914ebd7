"""
Tests for the propagation override workflow.

Covers:
  - request() validation
  - resolve(): approve/reject, one-shot resolution, self-approval, approver role
  - Lost resolve race reports INVALID_STATE instead of overwriting
  - expire_stale() window
"""

import uuid
from datetime import datetime, timedelta

import pytest

from conftest import MANAGER_ID, OTHER_SITE_ID, TEST_SITE_ID, USER_ID
from core.errors import ErrorCode
from db.models import OverrideStatus
from db.session import unit_of_work
from propagation.overrides import OverrideDecision, OverrideWorkflow

QA_LEAD_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a3")


@pytest.fixture
def open_request(session_factory, mother_plant):
    async def _open(quantity: int = 25, reason: str = "Customer order"):
        async with unit_of_work(session_factory) as db:
            outcome = await OverrideWorkflow(db).request(
                TEST_SITE_ID, USER_ID, quantity, reason, mother_plant_id=mother_plant.mother_plant_id
            )
        assert outcome.ok, outcome.rejection
        return outcome.value

    return _open


async def _resolve(session_factory, override_id, approver_id, decision, role=None):
    async with unit_of_work(session_factory) as db:
        return await OverrideWorkflow(db).resolve(
            TEST_SITE_ID, override_id, approver_id, decision, approver_role=role, notes="Reviewed"
        )


@pytest.mark.asyncio
class TestRequest:
    async def test_request_opens_pending(self, open_request):
        override = await open_request()
        assert override.status == OverrideStatus.PENDING
        assert override.requested_quantity == 25
        assert override.approved_by is None

    @pytest.mark.parametrize("quantity,reason", [(0, "x"), (-3, "x"), (5, ""), (5, "   ")])
    async def test_invalid_input(self, test_db, graph_site, quantity, reason):
        outcome = await OverrideWorkflow(test_db).request(TEST_SITE_ID, USER_ID, quantity, reason)
        assert outcome.code == ErrorCode.VALIDATION_FAILED

    async def test_unknown_mother_or_batch(self, test_db, graph_site):
        workflow = OverrideWorkflow(test_db)
        no_mother = await workflow.request(TEST_SITE_ID, USER_ID, 5, "x", mother_plant_id=uuid.uuid4())
        no_batch = await workflow.request(TEST_SITE_ID, USER_ID, 5, "x", batch_id=uuid.uuid4())
        assert no_mother.code == ErrorCode.NOT_FOUND
        assert no_batch.code == ErrorCode.NOT_FOUND

    async def test_mother_from_other_site_is_not_found(self, test_db, mother_plant):
        outcome = await OverrideWorkflow(test_db).request(
            OTHER_SITE_ID, USER_ID, 5, "x", mother_plant_id=mother_plant.mother_plant_id
        )
        assert outcome.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
class TestResolve:
    async def test_approve(self, open_request, session_factory):
        override = await open_request()

        outcome = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE)

        assert outcome.ok
        assert outcome.value.status == OverrideStatus.APPROVED
        assert outcome.value.approved_by == MANAGER_ID
        assert outcome.value.resolved_on is not None
        assert outcome.value.decision_notes == "Reviewed"

    async def test_reject(self, open_request, session_factory):
        override = await open_request()
        outcome = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.REJECT)
        assert outcome.value.status == OverrideStatus.REJECTED

    async def test_resolution_is_final(self, open_request, session_factory):
        override = await open_request()
        await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE)

        again = await _resolve(session_factory, override.override_id, QA_LEAD_ID, OverrideDecision.REJECT)

        assert again.code == ErrorCode.INVALID_STATE
        assert again.rejection.details["status"] == "approved"

    async def test_requester_cannot_approve_own_request(self, open_request, session_factory):
        override = await open_request()
        outcome = await _resolve(session_factory, override.override_id, USER_ID, OverrideDecision.APPROVE)
        assert outcome.code == ErrorCode.VALIDATION_FAILED

    async def test_approver_role_is_enforced(self, open_request, session_factory, set_limits):
        await set_limits(daily=10, approver_role="Manager")
        override = await open_request()

        denied = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE, "Operator")
        assert denied.code == ErrorCode.APPROVAL_REQUIRED
        assert denied.rejection.details["approver_role"] == "Manager"

        allowed = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE, "Manager")
        assert allowed.ok

    async def test_unknown_or_foreign_request_is_not_found(self, open_request, session_factory):
        override = await open_request()
        async with unit_of_work(session_factory) as db:
            foreign = await OverrideWorkflow(db).resolve(
                OTHER_SITE_ID, override.override_id, MANAGER_ID, OverrideDecision.APPROVE
            )
            missing = await OverrideWorkflow(db).resolve(
                TEST_SITE_ID, uuid.uuid4(), MANAGER_ID, OverrideDecision.APPROVE
            )
        assert foreign.code == ErrorCode.NOT_FOUND
        assert missing.code == ErrorCode.NOT_FOUND

    async def test_lost_race_does_not_overwrite(self, open_request, session_factory):
        override = await open_request()

        async with session_factory() as slow:
            workflow = OverrideWorkflow(slow)
            # The slow resolver has already seen the request as pending.
            stale = await workflow.get(TEST_SITE_ID, override.override_id)
            assert stale.status == OverrideStatus.PENDING

            winner = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE)
            assert winner.ok

            loser = await workflow.resolve(TEST_SITE_ID, override.override_id, QA_LEAD_ID, OverrideDecision.REJECT)
            await slow.commit()

        assert loser.code == ErrorCode.INVALID_STATE
        async with unit_of_work(session_factory) as db:
            final = await OverrideWorkflow(db).get(TEST_SITE_ID, override.override_id)
        assert final.status == OverrideStatus.APPROVED
        assert final.approved_by == MANAGER_ID


@pytest.mark.asyncio
class TestExpiry:
    async def test_stale_pending_requests_expire(self, open_request, session_factory):
        override = await open_request()

        async with unit_of_work(session_factory) as db:
            expired = await OverrideWorkflow(db).expire_stale(now=datetime.utcnow() + timedelta(hours=73))

        assert expired == 1
        outcome = await _resolve(session_factory, override.override_id, MANAGER_ID, OverrideDecision.APPROVE)
        assert outcome.code == ErrorCode.INVALID_STATE
        assert outcome.rejection.details["status"] == "expired"

    async def test_recent_and_resolved_requests_stay(self, open_request, session_factory):
        recent = await open_request()
        resolved = await open_request()
        await _resolve(session_factory, resolved.override_id, MANAGER_ID, OverrideDecision.REJECT)

        async with unit_of_work(session_factory) as db:
            workflow = OverrideWorkflow(db)
            assert await workflow.expire_stale(now=datetime.utcnow() + timedelta(hours=1)) == 0
            assert await workflow.expire_stale(TEST_SITE_ID, now=datetime.utcnow() + timedelta(hours=2), max_age_hours=1) == 1
            statuses = {item.override_id: item.status for item in await workflow.list_requests(TEST_SITE_ID)}

        assert statuses == {recent.override_id: OverrideStatus.EXPIRED, resolved.override_id: OverrideStatus.REJECTED}

    async def test_expiry_scoped_to_site(self, open_request, session_factory):
        await open_request()
        async with unit_of_work(session_factory) as db:
            expired = await OverrideWorkflow(db).expire_stale(
                OTHER_SITE_ID, now=datetime.utcnow() + timedelta(days=30)
            )
        assert expired == 0
