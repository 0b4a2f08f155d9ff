"""
Tests for the approval gate: pending listing, single-writer review, expiry
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from agentic_ai.db.models import Approval as ApprovalRow
from agentic_ai.errors import AlreadyReviewedError, InvalidStateError, NotFoundError
from agentic_ai.schemas import ApprovalActionType, ApprovalStatus, RiskLevel


async def _request(service, thread, **overrides):
    params = dict(
        thread_id=thread.id,
        user_id=thread.user_id,
        agent_slug=thread.agent_slug,
        action_type=ApprovalActionType.SEND_EMAIL,
        risk_level=RiskLevel.MEDIUM,
        description="Send the newsletter",
        details={"recipients": 120},
        checkpoint_state={"kind": "tool", "tool_name": "validate_workflow", "parameters": {"flow_id": "flow-1"}},
    )
    params.update(overrides)
    return await service.approvals.request_approval(**params)


async def _lapse(session_maker, approval_id):
    async with session_maker.begin() as session:
        await session.execute(
            update(ApprovalRow)
            .where(ApprovalRow.id == approval_id)
            .values(expires_at=datetime.utcnow() - timedelta(minutes=1))
        )


async def _stored_status(session_maker, approval_id):
    async with session_maker() as session:
        row = await session.get(ApprovalRow, approval_id)
        return row.status


class TestRequestAndList:

    @pytest.mark.asyncio
    async def test_request_creates_pending(self, service, thread):
        approval = await _request(service, thread)

        assert approval.status == ApprovalStatus.PENDING
        assert approval.details == {"recipients": 120}
        assert approval.expires_at > approval.created_at

        fetched = await service.get_approval(approval.id)
        assert fetched.id == approval.id
        assert fetched.action_type == ApprovalActionType.SEND_EMAIL

    @pytest.mark.asyncio
    async def test_pending_newest_first_and_per_user(self, service, thread):
        first = await _request(service, thread)
        second = await _request(service, thread)
        other_thread = await service.create_thread("u2", "general")
        await _request(service, other_thread)

        pending = await service.list_pending_approvals("u1")
        assert [a.id for a in pending] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_lapsed_approval_excluded_before_sweep(self, service, thread, session_maker):
        live = await _request(service, thread)
        lapsed = await _request(service, thread)
        await _lapse(session_maker, lapsed.id)

        pending = await service.list_pending_approvals("u1")
        assert [a.id for a in pending] == [live.id]

        # Still stored as pending, but reported as expired
        assert await _stored_status(session_maker, lapsed.id) == "pending"
        assert (await service.get_approval(lapsed.id)).status == ApprovalStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_get_missing(self, service):
        assert await service.get_approval("missing") is None


class TestReview:

    @pytest.mark.asyncio
    async def test_approve(self, service, thread, deps):
        approval = await _request(service, thread)

        result = await service.review_approval(approval.id, True, "reviewer-1", notes="looks fine")

        assert result.approval.status == ApprovalStatus.APPROVED
        assert result.approval.reviewed_by == "reviewer-1"
        assert result.approval.review_notes == "looks fine"
        assert result.approval.reviewed_at is not None
        assert "approval.approved" in deps.audit_actions()
        assert await service.list_pending_approvals("u1") == []

    @pytest.mark.asyncio
    async def test_second_review_fails_and_first_decision_stands(self, service, thread):
        approval = await _request(service, thread)
        await service.review_approval(approval.id, False, "reviewer-1")

        with pytest.raises(AlreadyReviewedError) as exc:
            await service.review_approval(approval.id, True, "reviewer-2")

        assert isinstance(exc.value, InvalidStateError)
        assert exc.value.status == "rejected"
        final = await service.get_approval(approval.id)
        assert final.status == ApprovalStatus.REJECTED
        assert final.reviewed_by == "reviewer-1"

    @pytest.mark.asyncio
    async def test_concurrent_reviews_single_winner(self, service, thread):
        approval = await _request(service, thread)

        results = await asyncio.gather(
            service.approvals.review(approval.id, True, "reviewer-a"),
            service.approvals.review(approval.id, False, "reviewer-b"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], AlreadyReviewedError)

        final = await service.get_approval(approval.id)
        assert final.status == winners[0].status
        assert final.reviewed_by == winners[0].reviewed_by

    @pytest.mark.asyncio
    async def test_review_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.review_approval("missing", True, "reviewer-1")

    @pytest.mark.asyncio
    async def test_review_lapsed_expires_it(self, service, thread, session_maker, deps):
        approval = await _request(service, thread)
        await _lapse(session_maker, approval.id)

        with pytest.raises(InvalidStateError) as exc:
            await service.review_approval(approval.id, True, "reviewer-1")

        assert not isinstance(exc.value, AlreadyReviewedError)
        assert exc.value.details["status"] == "expired"
        assert await _stored_status(session_maker, approval.id) == "expired"
        assert "approval.expired" in deps.audit_actions()

        with pytest.raises(AlreadyReviewedError):
            await service.review_approval(approval.id, True, "reviewer-1")


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_sweep_uses_same_cutoff(self, service, thread, session_maker):
        live = await _request(service, thread)
        lapsed = await _request(service, thread)
        await _lapse(session_maker, lapsed.id)

        expired = await service.expire_stale_approvals()

        assert [a.id for a in expired] == [lapsed.id]
        assert expired[0].status == ApprovalStatus.EXPIRED
        assert await _stored_status(session_maker, lapsed.id) == "expired"
        assert await _stored_status(session_maker, live.id) == "pending"

        # Idempotent
        assert await service.expire_stale_approvals() == []

    @pytest.mark.asyncio
    async def test_sweep_notifies_handler(self, service, thread, session_maker):
        seen = []

        async def on_expired(approval):
            seen.append(approval.id)

        service.approvals.on_expired = on_expired
        lapsed = await _request(service, thread)
        await _lapse(session_maker, lapsed.id)

        await service.expire_stale_approvals()
        assert seen == [lapsed.id]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_sweep(self, service, thread, session_maker):
        async def on_expired(approval):
            raise RuntimeError("boom")

        service.approvals.on_expired = on_expired
        lapsed = await _request(service, thread)
        await _lapse(session_maker, lapsed.id)

        expired = await service.expire_stale_approvals()
        assert [a.id for a in expired] == [lapsed.id]
