from agentic_ai.services.embedding_service import EmbeddingService
from agentic_ai.services.llm_service import LLMService, LLMResponse, ToolCall
from agentic_ai.services.memory_extractor import MemoryExtractor, ExtractedMemory
from agentic_ai.services.memory_service import MemoryService
from agentic_ai.services.thread_service import ThreadService
from agentic_ai.services.approval_service import ApprovalService

__all__ = [
    "EmbeddingService",
    "LLMService",
    "LLMResponse",
    "ToolCall",
    "MemoryExtractor",
    "ExtractedMemory",
    "MemoryService",
    "ThreadService",
    "ApprovalService",
]
