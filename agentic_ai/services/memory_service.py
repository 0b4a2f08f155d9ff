"""Memory service: create, list and semantically search durable memories"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, select

from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.db.models import Memory as MemoryRow, Thread as ThreadRow
from agentic_ai.errors import NotFoundError, ProviderError
from agentic_ai.ports import resolve_logger
from agentic_ai.schemas import Memory, MemoryType, MemoryWithScore
from agentic_ai.services.embedding_service import EmbeddingService
from agentic_ai.structured_logging import Subsystem


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def memory_to_schema(row: MemoryRow, include_embedding: bool = False) -> Memory:
    return Memory(
        id=row.id,
        thread_id=row.thread_id,
        user_id=row.user_id,
        agent_slug=row.agent_slug,
        type=MemoryType(row.memory_type),
        content=row.content,
        context=row.context,
        confidence=row.confidence,
        importance=row.importance,
        embedding=EmbeddingService.embedding_from_json(row.embedding_json) if include_embedding else None,
        metadata=json.loads(row.metadata_json) if row.metadata_json else {},
        created_at=row.created_at,
    )


def _type_values(types: Optional[Sequence[MemoryType]]) -> List[str]:
    return [MemoryType(t).value for t in types] if types else []


class MemoryService:
    """Service for memory creation and retrieval"""

    def __init__(self, deps: Any, settings: Optional[Settings] = None):
        self.db = deps.db
        self.settings = settings or default_settings
        self.embedding_service = EmbeddingService(deps)
        self.logger = resolve_logger(deps, Subsystem.MEMORY)

    async def create_memory(
        self,
        thread_id: str,
        user_id: str,
        agent_slug: str,
        type: MemoryType,
        content: str,
        context: Optional[str] = None,
        confidence: Optional[float] = None,
        importance: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        """
        Create a memory with its embedding.

        Confidence and importance default to neutral values. If the embedding
        port fails the memory is still stored, just without a vector, so it
        shows up in listings but not in semantic search.
        """
        async with self.db() as session:
            if await session.get(ThreadRow, thread_id) is None:
                raise NotFoundError("thread", thread_id)

        embedding_json = None
        try:
            embedding_json = await self.embedding_service.embed_to_json(content)
        except Exception as e:
            self.logger.warning(f"[MEMORY] Embedding failed, storing without vector: {e}")

        row = MemoryRow(
            thread_id=thread_id,
            user_id=user_id,
            agent_slug=agent_slug,
            memory_type=MemoryType(type).value,
            content=content,
            context=context,
            confidence=_clamp(self.settings.default_memory_confidence if confidence is None else confidence),
            importance=_clamp(self.settings.default_memory_importance if importance is None else importance),
            embedding_json=embedding_json,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
            created_at=datetime.utcnow(),
        )
        async with self.db.begin() as session:
            session.add(row)

        self.logger.debug(f"[MEMORY] Stored {row.memory_type} memory {row.id} for user={user_id}")
        return memory_to_schema(row)

    async def list_memories(
        self,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        agent_slug: Optional[str] = None,
        types: Optional[Sequence[MemoryType]] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """
        List memories matching every provided filter, ordered by importance
        (highest first), then most recent.
        """
        conditions = []
        if thread_id:
            conditions.append(MemoryRow.thread_id == thread_id)
        if user_id:
            conditions.append(MemoryRow.user_id == user_id)
        if agent_slug:
            conditions.append(MemoryRow.agent_slug == agent_slug)
        if types:
            conditions.append(MemoryRow.memory_type.in_(_type_values(types)))

        query = select(MemoryRow)
        if conditions:
            query = query.where(and_(*conditions))
        query = (
            query.order_by(MemoryRow.importance.desc(), MemoryRow.created_at.desc())
            .limit(limit or self.settings.default_memory_limit)
        )

        async with self.db() as session:
            result = await session.execute(query)
            return [memory_to_schema(row) for row in result.scalars().all()]

    async def search_memories(
        self,
        query: str,
        user_id: Optional[str] = None,
        agent_slug: Optional[str] = None,
        types: Optional[Sequence[MemoryType]] = None,
        thread_id: Optional[str] = None,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> List[MemoryWithScore]:
        """
        Semantic search: embed ``query`` through the RAG port and rank
        candidate memories by cosine similarity (best first).

        Raises:
            ProviderError: the embedding port failed
        """
        limit = limit or self.settings.default_memory_limit
        threshold = self.settings.memory_min_similarity if min_similarity is None else min_similarity

        try:
            query_embedding = await self.embedding_service.embed(query)
        except Exception as e:
            raise ProviderError("rag", "Failed to embed memory search query", e) from e

        conditions = [MemoryRow.embedding_json.isnot(None)]
        if user_id:
            conditions.append(MemoryRow.user_id == user_id)
        if agent_slug:
            conditions.append(MemoryRow.agent_slug == agent_slug)
        if thread_id:
            conditions.append(MemoryRow.thread_id == thread_id)
        if types:
            conditions.append(MemoryRow.memory_type.in_(_type_values(types)))

        async with self.db() as session:
            result = await session.execute(select(MemoryRow).where(and_(*conditions)))
            rows = {row.id: row for row in result.scalars().all()}

        candidates = [
            (row_id, EmbeddingService.embedding_from_json(row.embedding_json))
            for row_id, row in rows.items()
        ]
        ranked = self.embedding_service.search_similar(
            query_embedding,
            candidates,
            top_k=limit,
            min_similarity=threshold,
        )

        self.logger.debug(f"[MEMORY] Search '{query[:40]}' → {len(ranked)}/{len(candidates)} candidates")
        return [
            MemoryWithScore(**memory_to_schema(rows[row_id]).model_dump(), similarity_score=score)
            for row_id, score in ranked
        ]
