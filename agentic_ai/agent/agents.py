"""
Agent Roster — the specialized agents as configuration records.

Agents are data, not subclasses: each ``AgentConfig`` carries its prompt,
model settings, expertise keywords and the tools it may call. Everything
that differs between agents is looked up here by slug.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from agentic_ai.errors import NotFoundError


@dataclass(frozen=True)
class AgentConfig:
    """A named agent configuration."""
    slug: str
    name: str
    description: str
    system_prompt: str
    temperature: float = 0.7
    max_tokens: int = 2048
    model: Optional[str] = None  # None → settings.default_model
    capabilities: List[str] = field(default_factory=list)
    expertise: List[str] = field(default_factory=list)  # Keywords used by the planner
    tools: List[str] = field(default_factory=list)
    credits_per_message: Optional[float] = None  # None → settings.credits_per_message

    def to_dict(self) -> Dict[str, object]:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "expertise": list(self.expertise),
            "tools": list(self.tools),
        }


_BASE_TOOLS = ["search_knowledge", "search_memories"]
_WORKFLOW_TOOLS = ["validate_workflow", "estimate_workflow_cost", "execute_workflow"]


DEFAULT_AGENTS: List[AgentConfig] = [
    AgentConfig(
        slug="general",
        name="General Assistant",
        description="Coordinates requests and answers general questions",
        system_prompt=(
            "You are a helpful general assistant. Answer clearly and concisely. "
            "Use the knowledge base and the user's memories when they are relevant, "
            "and say so when you are unsure."
        ),
        capabilities=["question_answering", "coordination", "summarization"],
        expertise=["help", "question", "explain", "summary", "summarize", "overview", "plan"],
        tools=_BASE_TOOLS + _WORKFLOW_TOOLS,
    ),
    AgentConfig(
        slug="researcher",
        name="Researcher",
        description="Finds, compares and cites information",
        system_prompt=(
            "You are a meticulous research analyst. Ground every claim in the provided "
            "sources, cite them by name, compare alternatives and flag gaps in the evidence."
        ),
        temperature=0.3,
        capabilities=["research", "analysis", "fact_checking"],
        expertise=["research", "analyze", "analysis", "compare", "competitor", "market",
                   "study", "data", "statistics", "trend", "source", "evidence"],
        tools=_BASE_TOOLS,
    ),
    AgentConfig(
        slug="marketer",
        name="Marketing Strategist",
        description="Positioning, campaigns and growth strategy",
        system_prompt=(
            "You are a pragmatic marketing strategist. Focus on audience, positioning, "
            "channels and measurable outcomes. Keep recommendations actionable."
        ),
        capabilities=["strategy", "campaigns", "copywriting"],
        expertise=["marketing", "campaign", "audience", "brand", "positioning", "launch",
                   "growth", "funnel", "conversion", "social", "ads", "email"],
        tools=_BASE_TOOLS + _WORKFLOW_TOOLS,
    ),
    AgentConfig(
        slug="developer",
        name="Software Developer",
        description="Architecture, code and technical troubleshooting",
        system_prompt=(
            "You are a senior software engineer. Give precise, production-quality answers, "
            "include code where it helps, and call out trade-offs and risks."
        ),
        temperature=0.2,
        capabilities=["coding", "architecture", "debugging", "automation"],
        expertise=["code", "bug", "api", "database", "deploy", "architecture", "python",
                   "javascript", "typescript", "function", "error", "integration", "workflow"],
        tools=_BASE_TOOLS + _WORKFLOW_TOOLS,
    ),
    AgentConfig(
        slug="seo_writer",
        name="SEO Writer",
        description="Search-optimized long-form content",
        system_prompt=(
            "You are an SEO content writer. Write clear, well-structured content that "
            "targets the right keywords without keyword stuffing, with headings and meta descriptions."
        ),
        capabilities=["writing", "seo", "content_strategy"],
        expertise=["seo", "keyword", "blog", "article", "content", "ranking", "serp",
                   "meta", "headline", "write", "post"],
        tools=_BASE_TOOLS,
    ),
    AgentConfig(
        slug="designer",
        name="Designer",
        description="UX, visual design and brand identity",
        system_prompt=(
            "You are a product designer. Reason about users, layout, hierarchy, accessibility "
            "and brand consistency, and describe designs concretely."
        ),
        temperature=0.8,
        capabilities=["ux", "ui", "branding"],
        expertise=["design", "ui", "ux", "logo", "layout", "color", "typography",
                   "wireframe", "mockup", "accessibility", "visual"],
        tools=_BASE_TOOLS,
    ),
]


class AgentRegistry:
    """Lookup table of agent configurations, keyed by slug."""

    def __init__(self, agents: Optional[List[AgentConfig]] = None):
        self._agents: Dict[str, AgentConfig] = {}
        for agent in agents if agents is not None else DEFAULT_AGENTS:
            self.register(agent)

    def register(self, agent: AgentConfig) -> None:
        self._agents[agent.slug] = agent

    def get(self, slug: str) -> Optional[AgentConfig]:
        return self._agents.get(slug)

    def require(self, slug: str) -> AgentConfig:
        agent = self._agents.get(slug)
        if agent is None:
            raise NotFoundError("agent", slug)
        return agent

    def list(self) -> List[AgentConfig]:
        return list(self._agents.values())

    def __contains__(self, slug: str) -> bool:
        return slug in self._agents
