"""
Memory extraction service - distils durable memories from one exchange.
LLM JSON extraction first; rule-based pattern matching as the fallback.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agentic_ai.schemas import MemoryType
from agentic_ai.services.llm_service import LLMService, parse_json_content

logger = logging.getLogger(__name__)


@dataclass
class ExtractedMemory:
    """Represents an extracted memory from text"""
    content: str
    memory_type: MemoryType
    importance: float
    confidence: float
    context: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


EXTRACTION_PROMPT = """You extract durable memories from one exchange between a user and the "{agent_slug}" agent.

USER MESSAGE:
{user_message}

ASSISTANT RESPONSE:
{assistant_response}

Extract only information worth remembering across future conversations:
- decision: choices that were made ("we will use PostgreSQL")
- action_item: concrete follow-ups someone committed to
- preference: how the user likes things done
- fact: stable facts about the user, their business or project
- insight: conclusions or learnings reached in the exchange
- research: findings backed by sources
- feedback: the user's evaluation of prior work or answers

Rules:
1. Each memory is one complete, standalone sentence.
2. Skip greetings, filler, questions and fragments shorter than five words.
3. importance (0-1) is how much this matters later; confidence (0-1) is how sure you are it was actually stated. They are independent.

Return at most {max_memories} memories as JSON:
{{"memories": [{{"content": "...", "type": "decision", "importance": 0.7, "confidence": 0.8, "context": "short quote"}}]}}

If nothing is worth remembering return {{"memories": []}}."""


class MemoryExtractor:
    """
    Extracts structured memories from a conversation turn.
    Rule-based extraction uses pattern matching per memory type.
    """

    DECISION_PATTERNS = [
        r"\b(?:we|I)\s+(?:decided|agreed|chose|will go with|are going with|settled on)\s+(?:to\s+)?(.+?)(?:\.|$)",
        r"(?:the|our)\s+decision\s+is\s+(?:to\s+)?(.+?)(?:\.|$)",
        r"(?:let's|lets)\s+go\s+with\s+(.+?)(?:\.|$)",
    ]

    ACTION_ITEM_PATTERNS = [
        r"\b(?:I|we)\s+(?:need to|have to|must|should|will)\s+(.+?)(?:\.|$)",
        r"(?:remind me to|don't forget to|todo:|action item:|next step:)\s*(.+?)(?:\.|$)",
        r"(?:by|before)\s+(?:monday|tuesday|wednesday|thursday|friday|tomorrow|next week),?\s+(.+?)(?:\.|$)",
    ]

    PREFERENCE_PATTERNS = [
        r"\bI\s+(?:like|love|enjoy|prefer|hate|dislike|don't like)\s+(.+?)(?:\.|$|,)",
        r"(?:my|our)\s+(?:favorite|preferred)\s+(.+?)\s+is\s+(.+?)(?:\.|$)",
        r"\bI\s+(?:always|never|usually)\s+(.+?)(?:\.|$)",
    ]

    FACT_PATTERNS = [
        r"\bI\s+(?:am|work as|work at|work for|run|own|live in)\s+(.+?)(?:\.|$)",
        r"(?:my|our)\s+(?:company|business|product|team|project|website|budget)\s+(?:is|has|uses)\s+(.+?)(?:\.|$)",
    ]

    INSIGHT_PATTERNS = [
        r"(?:the key (?:insight|takeaway) is|it turns out|I realized|we learned)\s+(?:that\s+)?(.+?)(?:\.|$)",
        r"(?:in summary|in conclusion|overall),?\s+(.+?)(?:\.|$)",
    ]

    RESEARCH_PATTERNS = [
        r"(?:according to|research shows|studies show|data shows|the report says)\s+(.+?)(?:\.|$)",
    ]

    FEEDBACK_PATTERNS = [
        r"(?:this|that|your)\s+(?:answer|draft|design|copy|code|plan)\s+(?:is|was|looks)\s+(.+?)(?:\.|$)",
        r"(?:great|good|bad|wrong|perfect)\s+(?:job|work|answer)[,.!]?\s*(.*?)(?:\.|$)",
    ]

    # (patterns, type, label, importance, user_only)
    RULES = [
        ("DECISION_PATTERNS", MemoryType.DECISION, "Decision", 0.8, False),
        ("ACTION_ITEM_PATTERNS", MemoryType.ACTION_ITEM, "Action item", 0.7, False),
        ("PREFERENCE_PATTERNS", MemoryType.PREFERENCE, "User prefers", 0.6, True),
        ("FACT_PATTERNS", MemoryType.FACT, "Fact", 0.6, True),
        ("INSIGHT_PATTERNS", MemoryType.INSIGHT, "Insight", 0.5, False),
        ("RESEARCH_PATTERNS", MemoryType.RESEARCH, "Research", 0.5, False),
        ("FEEDBACK_PATTERNS", MemoryType.FEEDBACK, "Feedback", 0.5, True),
    ]

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm

    def extract_memories(
        self,
        user_message: str,
        assistant_response: str,
        max_memories: int = 10
    ) -> List[ExtractedMemory]:
        """
        Extract memories from a conversation turn with pattern rules.
        Returns a list of structured memories.
        """
        memories = []
        combined_text = f"{user_message}\n{assistant_response}"

        for attr, memory_type, label, importance, user_only in self.RULES:
            source = user_message if user_only else combined_text
            for pattern in getattr(self, attr):
                matches = re.findall(pattern, source, re.IGNORECASE | re.MULTILINE)
                for match in matches[:2]:  # Limit per pattern
                    content = match if isinstance(match, str) else " ".join(match)
                    if not self._is_quality_content(content):
                        continue
                    memories.append(ExtractedMemory(
                        content=f"{label}: {content.strip()}",
                        memory_type=memory_type,
                        importance=importance,
                        confidence=0.6,
                        context=content.strip()[:200],
                        metadata={"extracted_by": "rules"},
                    ))

        return self._deduplicate_memories(memories)[:max_memories]

    @staticmethod
    def _is_quality_content(content: str) -> bool:
        """Check if extracted content meets minimum quality bar."""
        text = content.strip() if isinstance(content, str) else " ".join(content).strip()
        # Too short
        if len(text) < 5:
            return False
        # Fewer than 2 words
        if text.count(" ") < 1:
            return False
        # Just a question
        if text.endswith("?"):
            return False
        garbage = {"it", "that", "this", "yes", "no", "ok", "sure", "thanks",
                   "hi", "hello", "hey", "can you", "please", "the"}
        if text.lower().strip().rstrip(".!,") in garbage:
            return False
        return True

    def _deduplicate_memories(self, memories: List[ExtractedMemory]) -> List[ExtractedMemory]:
        """Remove duplicate or very similar memories"""
        seen_content = set()
        unique = []

        for memory in memories:
            normalized = memory.content.lower().strip()[:100]
            if normalized not in seen_content:
                seen_content.add(normalized)
                unique.append(memory)

        return unique

    async def extract_memories_with_llm(
        self,
        user_message: str,
        assistant_response: str,
        agent_slug: str = "general",
        max_memories: int = 10
    ) -> List[ExtractedMemory]:
        """
        Extract memories using the LLM for more sophisticated understanding.
        Falls back to rule-based extraction on failure or without an LLM.
        """
        if self.llm is None:
            return self.extract_memories(user_message, assistant_response, max_memories)

        prompt = EXTRACTION_PROMPT.format(
            agent_slug=agent_slug,
            user_message=user_message,
            assistant_response=assistant_response,
            max_memories=max_memories,
        )

        try:
            response = await self.llm.complete_with_json(
                messages=[{"role": "user", "content": prompt}],
                temperature=0.2,
                max_tokens=1500,
            )
            result = parse_json_content(response.content)
            items = result.get("memories", []) if isinstance(result, dict) else result

            memories = []
            for mem_data in items[:max_memories]:
                content = str(mem_data.get("content", "")).strip()

                # Quality filters
                if not content or len(content) < 15:
                    continue
                if content.count(" ") < 3:
                    continue
                if content.endswith("?"):
                    continue

                memories.append(ExtractedMemory(
                    content=content,
                    memory_type=self._string_to_memory_type(str(mem_data.get("type", "fact"))),
                    importance=float(mem_data.get("importance", 0.5)),
                    confidence=float(mem_data.get("confidence", 0.7)),
                    context=mem_data.get("context"),
                    metadata={"extracted_by": "llm"},
                ))

            return self._deduplicate_memories(memories)

        except Exception as e:
            logger.warning(f"[MEMORY] LLM extraction failed, falling back to rules: {e}")
            return self.extract_memories(user_message, assistant_response, max_memories)

    @staticmethod
    def _string_to_memory_type(type_str: str) -> MemoryType:
        """Convert string to MemoryType enum."""
        normalized = type_str.lower().strip().replace(" ", "_").replace("-", "_")
        aliases = {
            "task": MemoryType.ACTION_ITEM,
            "todo": MemoryType.ACTION_ITEM,
            "learning": MemoryType.INSIGHT,
            "finding": MemoryType.RESEARCH,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return MemoryType(normalized)
        except ValueError:
            return MemoryType.FACT
