"""
Thread Service — persisted conversations and their append-only message log.

Owns the ``agent_threads`` / ``agent_messages`` tables plus the checkpoints
that let a suspended orchestration step survive a restart.

Usage:
    threads = ThreadService(deps)
    thread = await threads.create_thread("u1", "general")
    history = await threads.get_thread_history(thread.id, limit=20)
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.db.models import (
    Approval as ApprovalRow,
    Checkpoint as CheckpointRow,
    Memory as MemoryRow,
    Message as MessageRow,
    Thread as ThreadRow,
)
from agentic_ai.errors import ConcurrentModificationError, InvalidStateError, NotFoundError
from agentic_ai.ports import audit_safely, resolve_logger
from agentic_ai.schemas import Message, MessageRole, Thread, ThreadScope
from agentic_ai.structured_logging import Subsystem

# (role, content, metadata)
TurnMessage = Tuple[MessageRole, str, Optional[Dict[str, Any]]]


def _loads(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


def thread_to_schema(row: ThreadRow) -> Thread:
    return Thread(
        id=row.id,
        user_id=row.user_id,
        agent_slug=row.agent_slug,
        scope=ThreadScope(row.scope),
        project_id=row.project_id,
        title=row.title,
        metadata=_loads(row.metadata_json),
        message_count=row.message_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def message_to_schema(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        thread_id=row.thread_id,
        role=MessageRole(row.role),
        content=row.content,
        metadata=_loads(row.metadata_json),
        created_at=row.created_at,
    )


class ThreadService:
    """Create, list, fetch and delete threads; append and read their history."""

    def __init__(self, deps: Any, settings: Optional[Settings] = None):
        self.deps = deps
        self.db = deps.db
        self.settings = settings or default_settings
        self.logger = resolve_logger(deps, Subsystem.THREAD)

    # ── Threads ──────────────────────────────────────────────

    async def create_thread(
        self,
        user_id: str,
        agent_slug: str,
        scope: ThreadScope = ThreadScope.GLOBAL,
        project_id: Optional[str] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Thread:
        scope = ThreadScope(scope)
        if scope == ThreadScope.PROJECT and not project_id:
            raise InvalidStateError("A project-scoped thread requires a project_id")

        now = datetime.utcnow()
        row = ThreadRow(
            user_id=user_id,
            agent_slug=agent_slug,
            scope=scope.value,
            project_id=project_id,
            title=title,
            metadata_json=json.dumps(metadata) if metadata else None,
            message_count=0,
            version=0,
            created_at=now,
            updated_at=now,
        )
        async with self.db.begin() as session:
            session.add(row)

        self.logger.info(f"[THREAD] Created {row.id} for user={user_id} agent={agent_slug}")
        return thread_to_schema(row)

    async def list_threads(
        self,
        user_id: str,
        limit: Optional[int] = None,
        scope: Optional[ThreadScope] = None,
        project_id: Optional[str] = None,
    ) -> List[Thread]:
        """Threads owned by ``user_id``, most recently updated first."""
        limit = limit or self.settings.default_thread_list_limit
        query = select(ThreadRow).where(ThreadRow.user_id == user_id)
        if scope is not None:
            query = query.where(ThreadRow.scope == ThreadScope(scope).value)
        if project_id is not None:
            query = query.where(ThreadRow.project_id == project_id)
        query = query.order_by(ThreadRow.updated_at.desc(), ThreadRow.created_at.desc()).limit(limit)

        async with self.db() as session:
            result = await session.execute(query)
            return [thread_to_schema(row) for row in result.scalars().all()]

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        async with self.db() as session:
            row = await session.get(ThreadRow, thread_id)
            return thread_to_schema(row) if row else None

    async def require_thread(self, thread_id: str) -> Thread:
        thread = await self.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("thread", thread_id)
        return thread

    async def delete_thread(self, thread_id: str) -> None:
        """
        Delete a thread together with its messages, memories, approvals and
        checkpoints. Either everything goes or nothing does.
        """
        async with self.db.begin() as session:
            row = await session.get(ThreadRow, thread_id)
            if row is None:
                raise NotFoundError("thread", thread_id)
            user_id = row.user_id

            counts = {}
            for name, model in (
                ("messages", MessageRow),
                ("memories", MemoryRow),
                ("approvals", ApprovalRow),
                ("checkpoints", CheckpointRow),
            ):
                result = await session.execute(delete(model).where(model.thread_id == thread_id))
                counts[name] = result.rowcount or 0

            await session.execute(delete(ThreadRow).where(ThreadRow.id == thread_id))

        self.logger.info(f"[THREAD] Deleted {thread_id} ({counts})")
        await audit_safely(self.deps, user_id, "thread.deleted", f"thread:{thread_id}", counts)

    # ── History ──────────────────────────────────────────────

    async def get_thread_history(self, thread_id: str, limit: Optional[int] = None) -> List[Message]:
        """The most recent ``limit`` messages, oldest first."""
        limit = limit or self.settings.default_history_limit
        async with self.db() as session:
            if await session.get(ThreadRow, thread_id) is None:
                raise NotFoundError("thread", thread_id)

            result = await session.execute(
                select(MessageRow)
                .where(MessageRow.thread_id == thread_id)
                .order_by(MessageRow.sequence.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())

        rows.reverse()
        return [message_to_schema(row) for row in rows]

    async def append_turn(
        self,
        session: AsyncSession,
        thread_id: str,
        messages: Sequence[TurnMessage],
        expected_version: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Message]:
        """
        Append ``messages`` inside the caller's transaction.

        Sequence numbers continue from the thread's ``message_count``; the
        thread row is bumped with a conditional UPDATE on ``version`` so two
        writers can never both succeed from the same starting point.
        """
        thread = await session.get(ThreadRow, thread_id)
        if thread is None:
            raise NotFoundError("thread", thread_id)

        version = thread.version if expected_version is None else expected_version
        if thread.version != version:
            raise ConcurrentModificationError(
                f"Thread '{thread_id}' changed (expected version {version}, found {thread.version})",
                details={"thread_id": thread_id, "expected": version, "found": thread.version},
            )

        merged = _loads(thread.metadata_json)
        if metadata:
            merged.update(metadata)

        now = datetime.utcnow()
        next_sequence = thread.message_count + 1
        result = await session.execute(
            update(ThreadRow)
            .where(ThreadRow.id == thread_id, ThreadRow.version == version)
            .values(
                message_count=ThreadRow.message_count + len(messages),
                version=ThreadRow.version + 1,
                updated_at=now,
                metadata_json=json.dumps(merged) if merged else None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Thread '{thread_id}' was modified concurrently",
                details={"thread_id": thread_id, "expected": version},
            )

        rows = []
        for offset, (role, content, msg_metadata) in enumerate(messages):
            row = MessageRow(
                thread_id=thread_id,
                sequence=next_sequence + offset,
                role=MessageRole(role).value,
                content=content,
                metadata_json=json.dumps(msg_metadata, default=str) if msg_metadata else None,
                # Strictly increasing timestamps within one turn
                created_at=now + timedelta(microseconds=offset),
            )
            session.add(row)
            rows.append(row)
        await session.flush()

        self.logger.debug(f"[THREAD] Appended {len(rows)} message(s) to {thread_id} at seq {next_sequence}")
        return [message_to_schema(row) for row in rows]

    async def thread_version(self, thread_id: str) -> int:
        async with self.db() as session:
            row = await session.get(ThreadRow, thread_id)
            if row is None:
                raise NotFoundError("thread", thread_id)
            return row.version

    # ── Checkpoints ──────────────────────────────────────────

    async def save_checkpoint(
        self,
        session: AsyncSession,
        thread_id: str,
        approval_id: str,
        state: Dict[str, Any],
        stage: str = "awaiting_approval",
    ) -> CheckpointRow:
        row = CheckpointRow(
            thread_id=thread_id,
            approval_id=approval_id,
            stage=stage,
            state_json=json.dumps(state, default=str),
            status="suspended",
        )
        session.add(row)
        await session.flush()
        self.logger.info(f"[THREAD] Checkpoint {row.id} saved for approval {approval_id}")
        return row

    async def get_checkpoint_for_approval(
        self, approval_id: str, session: Optional[AsyncSession] = None
    ) -> Optional[Tuple[CheckpointRow, Dict[str, Any]]]:
        query = select(CheckpointRow).where(CheckpointRow.approval_id == approval_id)
        if session is not None:
            row = (await session.execute(query)).scalar_one_or_none()
        else:
            async with self.db() as own_session:
                row = (await own_session.execute(query)).scalar_one_or_none()
        if row is None:
            return None
        return row, json.loads(row.state_json)

    async def claim_checkpoint(self, checkpoint_id: str) -> bool:
        """Flip a suspended checkpoint to ``resuming``; only one caller can win."""
        async with self.db.begin() as session:
            result = await session.execute(
                update(CheckpointRow)
                .where(CheckpointRow.id == checkpoint_id, CheckpointRow.status == "suspended")
                .values(status="resuming", updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def list_unclaimed_decided_checkpoints(self) -> List[str]:
        """Approval ids that were decided while their checkpoint stayed ``suspended``."""
        async with self.db() as session:
            result = await session.execute(
                select(CheckpointRow.approval_id)
                .join(ApprovalRow, ApprovalRow.id == CheckpointRow.approval_id)
                .where(
                    CheckpointRow.status == "suspended",
                    ApprovalRow.status.in_(["approved", "rejected", "expired"]),
                )
                .order_by(CheckpointRow.created_at)
            )
            return list(result.scalars().all())

    async def fail_stale_checkpoints(self, before: datetime) -> List[Tuple[Optional[str], Dict[str, Any]]]:
        """
        Mark ``resuming`` checkpoints untouched since ``before`` as ``failed``.

        Returns ``(approval_id, state)`` for each checkpoint this call moved.
        """
        async with self.db() as session:
            result = await session.execute(
                select(CheckpointRow.id)
                .where(CheckpointRow.status == "resuming", CheckpointRow.updated_at <= before)
            )
            candidate_ids = list(result.scalars().all())

        failed = []
        for checkpoint_id in candidate_ids:
            async with self.db.begin() as session:
                result = await session.execute(
                    update(CheckpointRow)
                    .where(
                        CheckpointRow.id == checkpoint_id,
                        CheckpointRow.status == "resuming",
                        CheckpointRow.updated_at <= before,
                    )
                    .values(status="failed", updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                row = await session.get(CheckpointRow, checkpoint_id, populate_existing=True)
                failed.append((row.approval_id, json.loads(row.state_json)))
            self.logger.warning(f"[THREAD] Checkpoint {checkpoint_id} was left resuming; marked failed")
        return failed

    async def mark_checkpoint(
        self,
        session: AsyncSession,
        checkpoint_id: str,
        status: str,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status, "updated_at": datetime.utcnow()}
        if state is not None:
            values["state_json"] = json.dumps(state, default=str)
        await session.execute(
            update(CheckpointRow)
            .where(CheckpointRow.id == checkpoint_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
