"""
Approval Service — human-in-the-loop gate for risky tool invocations.

State machine (every target state is terminal):

    pending ──reviewer──▶ approved | rejected
    pending ──expires_at──▶ expired

Every transition is a conditional UPDATE keyed on ``status='pending'`` and
``expires_at > now`` so exactly one writer wins. Read paths apply the same
cutoff, so a stored ``pending`` row past its expiry is never reported as
pending even before the sweep gets to it.

Each approval is created together with a checkpoint (see ThreadService)
holding what is needed to resume the suspended step later.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.db.models import Approval as ApprovalRow
from agentic_ai.errors import AlreadyReviewedError, InvalidStateError, NotFoundError
from agentic_ai.ports import audit_safely, resolve_logger
from agentic_ai.schemas import Approval, ApprovalActionType, ApprovalStatus, RiskLevel
from agentic_ai.services.thread_service import ThreadService
from agentic_ai.structured_logging import Subsystem

ExpiryHandler = Callable[[Approval], Awaitable[None]]


def approval_to_schema(row: ApprovalRow, now: Optional[datetime] = None) -> Approval:
    """Convert a row, reporting a lapsed ``pending`` row as ``expired``."""
    now = now or datetime.utcnow()
    status = ApprovalStatus(row.status)
    if status == ApprovalStatus.PENDING and row.expires_at <= now:
        status = ApprovalStatus.EXPIRED
    return Approval(
        id=row.id,
        thread_id=row.thread_id,
        user_id=row.user_id,
        agent_slug=row.agent_slug,
        action_type=ApprovalActionType(row.action_type),
        risk_level=RiskLevel(row.risk_level),
        description=row.description,
        details=json.loads(row.details_json) if row.details_json else {},
        status=status,
        expires_at=row.expires_at,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        review_notes=row.review_notes,
        created_at=row.created_at,
    )


class ApprovalService:
    """Persists approvals and applies their one-shot status transitions."""

    def __init__(
        self,
        deps: Any,
        threads: ThreadService,
        settings: Optional[Settings] = None,
        on_expired: Optional[ExpiryHandler] = None,
    ):
        self.deps = deps
        self.db = deps.db
        self.threads = threads
        self.settings = settings or default_settings
        self.on_expired = on_expired
        self.logger = resolve_logger(deps, Subsystem.APPROVAL)

    async def request_approval(
        self,
        thread_id: str,
        user_id: str,
        agent_slug: str,
        action_type: ApprovalActionType,
        risk_level: RiskLevel,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        checkpoint_state: Optional[Dict[str, Any]] = None,
        expires_in_minutes: Optional[int] = None,
        session: Optional[AsyncSession] = None,
        approval_id: Optional[str] = None,
    ) -> Approval:
        """
        Create a pending approval and its checkpoint in one transaction.

        Pass ``session`` to join the caller's transaction instead of opening one,
        and ``approval_id`` when the id was handed out before the row exists.
        """
        minutes = expires_in_minutes or self.settings.approval_expiry_minutes
        now = datetime.utcnow()
        row = ApprovalRow(
            id=approval_id or str(uuid.uuid4()),
            thread_id=thread_id,
            user_id=user_id,
            agent_slug=agent_slug,
            action_type=ApprovalActionType(action_type).value,
            risk_level=RiskLevel(risk_level).value,
            description=description,
            details_json=json.dumps(details, default=str) if details else None,
            status=ApprovalStatus.PENDING.value,
            expires_at=now + timedelta(minutes=minutes),
            created_at=now,
        )

        async def _persist(s: AsyncSession) -> None:
            s.add(row)
            await s.flush()
            await self.threads.save_checkpoint(s, thread_id, row.id, checkpoint_state or {})

        if session is not None:
            await _persist(session)
        else:
            async with self.db.begin() as own_session:
                await _persist(own_session)

        self.logger.info(
            f"[APPROVAL] Requested {row.id} ({row.action_type}, risk={row.risk_level}) "
            f"on thread {thread_id}, expires {row.expires_at.isoformat()}"
        )
        return approval_to_schema(row, now)

    async def list_pending_approvals(self, user_id: str) -> List[Approval]:
        """Pending, unexpired approvals for ``user_id``, newest first."""
        now = datetime.utcnow()
        async with self.db() as session:
            result = await session.execute(
                select(ApprovalRow)
                .where(and_(
                    ApprovalRow.user_id == user_id,
                    ApprovalRow.status == ApprovalStatus.PENDING.value,
                    ApprovalRow.expires_at > now,
                ))
                .order_by(ApprovalRow.created_at.desc())
            )
            return [approval_to_schema(row, now) for row in result.scalars().all()]

    async def get_approval(self, approval_id: str) -> Optional[Approval]:
        async with self.db() as session:
            row = await session.get(ApprovalRow, approval_id)
            return approval_to_schema(row) if row else None

    async def review(
        self,
        approval_id: str,
        approved: bool,
        reviewed_by: str,
        notes: Optional[str] = None,
    ) -> Approval:
        """
        Move a pending approval to ``approved`` or ``rejected``.

        Raises:
            NotFoundError: no such approval
            AlreadyReviewedError: another decision already won
            InvalidStateError: the approval lapsed; it is now ``expired``
        """
        now = datetime.utcnow()
        target = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        lapsed = False
        expired_row = None

        async with self.db.begin() as session:
            result = await session.execute(
                update(ApprovalRow)
                .where(and_(
                    ApprovalRow.id == approval_id,
                    ApprovalRow.status == ApprovalStatus.PENDING.value,
                    ApprovalRow.expires_at > now,
                ))
                .values(
                    status=target.value,
                    reviewed_by=reviewed_by,
                    reviewed_at=now,
                    review_notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1
            row = await session.get(ApprovalRow, approval_id, populate_existing=True)

            if row is None:
                raise NotFoundError("approval", approval_id)
            if not won and row.status != ApprovalStatus.PENDING.value:
                raise AlreadyReviewedError(approval_id, row.status)
            if not won:
                # Still stored as pending, so it must have lapsed
                lapsed = True
                expired_row = await self._expire_row(session, approval_id, now)

        if lapsed:
            if expired_row is not None:
                await self._notify_expired(approval_to_schema(expired_row, now))
            raise InvalidStateError(
                f"Approval '{approval_id}' has expired",
                details={"approval_id": approval_id, "status": ApprovalStatus.EXPIRED.value},
            )

        approval = approval_to_schema(row, now)
        self.logger.info(f"[APPROVAL] {approval_id} {target.value} by {reviewed_by}")
        await audit_safely(
            self.deps, approval.user_id, f"approval.{target.value}", f"approval:{approval_id}",
            {"reviewed_by": reviewed_by, "notes": notes, "action_type": approval.action_type.value},
        )
        return approval

    async def expire_stale_approvals(self, now: Optional[datetime] = None) -> List[Approval]:
        """
        Sweep: transition every lapsed pending approval to ``expired``.
        Uses the same ``expires_at <= now`` cutoff as the read paths.
        """
        now = now or datetime.utcnow()
        async with self.db() as session:
            result = await session.execute(
                select(ApprovalRow.id).where(and_(
                    ApprovalRow.status == ApprovalStatus.PENDING.value,
                    ApprovalRow.expires_at <= now,
                ))
            )
            candidate_ids = list(result.scalars().all())

        expired: List[Approval] = []
        for approval_id in candidate_ids:
            async with self.db.begin() as session:
                row = await self._expire_row(session, approval_id, now)
            if row is not None:
                expired.append(approval_to_schema(row, now))

        for approval in expired:
            await self._notify_expired(approval)

        if expired:
            self.logger.info(f"[APPROVAL] Expired {len(expired)} stale approval(s)")
        return expired

    async def _expire_row(self, session: AsyncSession, approval_id: str, now: datetime) -> Optional[ApprovalRow]:
        result = await session.execute(
            update(ApprovalRow)
            .where(and_(
                ApprovalRow.id == approval_id,
                ApprovalRow.status == ApprovalStatus.PENDING.value,
                ApprovalRow.expires_at <= now,
            ))
            .values(status=ApprovalStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await session.get(ApprovalRow, approval_id, populate_existing=True)

    async def _notify_expired(self, approval: Approval) -> None:
        await audit_safely(
            self.deps, approval.user_id, "approval.expired", f"approval:{approval.id}",
            {"thread_id": approval.thread_id, "action_type": approval.action_type.value},
        )
        if self.on_expired is None:
            return
        try:
            await self.on_expired(approval)
        except Exception as e:
            self.logger.warning(f"[APPROVAL] Expiry follow-up failed for {approval.id}: {e}")
