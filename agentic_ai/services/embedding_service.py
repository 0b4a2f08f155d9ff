"""Embedding service: vectors come from the RAG port, similarity is computed locally"""

import json
from typing import Any, List, Optional, Tuple
import numpy as np


class EmbeddingService:
    """Generates text embeddings through the host's embedding-capable RAG port"""

    def __init__(self, rag_port: Any):
        self._port = rag_port

    async def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        embedding = await self._port.embed(text)
        return [float(x) for x in embedding]

    async def embed_to_json(self, text: str) -> str:
        """Generate embedding and return as JSON string (for text-column storage)"""
        embedding = await self.embed(text)
        return json.dumps(embedding)

    @staticmethod
    def embedding_from_json(json_str: Optional[str]) -> Optional[List[float]]:
        """Parse embedding from JSON string"""
        if not json_str:
            return None
        return json.loads(json_str)

    @staticmethod
    def cosine_similarity(embedding1: List[float], embedding2: List[float]) -> float:
        """Calculate cosine similarity between two embeddings (0.0 for zero or mismatched vectors)."""
        a = np.array(embedding1, dtype=float)
        b = np.array(embedding2, dtype=float)
        if a.shape != b.shape:
            return 0.0
        denom = np.linalg.norm(a) * np.linalg.norm(b)
        if denom == 0:
            return 0.0
        return float(np.dot(a, b) / denom)

    def search_similar(
        self,
        query_embedding: List[float],
        candidate_embeddings: List[Tuple[str, List[float]]],
        top_k: int = 10,
        min_similarity: float = 0.0
    ) -> List[Tuple[str, float]]:
        """
        In-memory similarity search.
        Returns list of (id, similarity_score) tuples, best first.
        """
        results = []

        for item_id, embedding in candidate_embeddings:
            similarity = self.cosine_similarity(query_embedding, embedding)
            if similarity >= min_similarity:
                results.append((item_id, similarity))

        # Sort by similarity descending
        results.sort(key=lambda x: x[1], reverse=True)
        return results[:top_k]
