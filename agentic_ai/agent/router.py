"""
Delegation Planner — decide which agents handle a message.

The thread's bound agent always leads. Other agents join when the message
hits their expertise keywords (keyword mode) or when an LLM classifier picks
them (llm mode, falling back to keywords on any failure).
"""

import re
from typing import List, Optional, Tuple

from agentic_ai.agent.agents import AgentConfig, AgentRegistry
from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.schemas import DelegationPlan
from agentic_ai.services.llm_service import LLMService, parse_json_content
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger

logger = get_subsystem_logger(Subsystem.ORCHESTRATOR)


CLASSIFIER_PROMPT = """Pick which specialist agents should answer the user's message.

Agents:
{roster}

The "{primary}" agent owns this conversation and is always included.
Add other agents only if their expertise is clearly needed. At most {max_agents} agents in total.

Return JSON: {{"agents": ["slug", ...], "reasoning": "one sentence"}}"""


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9_]+", text.lower())


class DelegationPlanner:
    """
    Routes a message to the best-matching agents.

    Priority:
      1. LLM classifier (if planner_mode == "llm")
      2. Expertise keyword scoring
      3. The thread's own agent alone
    """

    def __init__(
        self,
        registry: AgentRegistry,
        llm: Optional[LLMService] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.llm = llm
        self.settings = settings or default_settings

    def score_agents(self, message: str) -> List[Tuple[AgentConfig, int, List[str]]]:
        """Score every agent by expertise keyword hits, best first."""
        words = set(_words(message))
        text = message.lower()
        scored = []
        for agent in self.registry.list():
            hits = []
            for kw in agent.expertise:
                kw_lower = kw.lower()
                # Multi-word keywords match as substrings, single words as tokens
                if (" " in kw_lower and kw_lower in text) or kw_lower in words:
                    hits.append(kw)
            if hits:
                scored.append((agent, len(hits), hits))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored

    def plan_by_keywords(self, message: str, primary_slug: str) -> DelegationPlan:
        max_agents = max(1, self.settings.max_delegates)
        agents = [primary_slug]
        reasons = [f"'{primary_slug}' owns the thread"]

        for agent, score, hits in self.score_agents(message):
            if len(agents) >= max_agents:
                break
            if agent.slug in agents:
                continue
            agents.append(agent.slug)
            reasons.append(f"'{agent.slug}' matched {', '.join(hits[:3])}")

        return DelegationPlan(
            agents=agents,
            reasoning="; ".join(reasons),
            parallel=len(agents) > 1 and self.settings.parallel_delegation,
        )

    async def plan_with_llm(self, message: str, primary_slug: str) -> DelegationPlan:
        roster = "\n".join(
            f"- {agent.slug}: {agent.description} (expertise: {', '.join(agent.expertise[:6])})"
            for agent in self.registry.list()
        )
        prompt = CLASSIFIER_PROMPT.format(
            roster=roster, primary=primary_slug, max_agents=self.settings.max_delegates
        )
        response = await self.llm.complete_with_json(
            messages=[
                {"role": "system", "content": prompt},
                {"role": "user", "content": message},
            ],
            temperature=0.0,
            max_tokens=300,
        )
        data = parse_json_content(response.content)

        agents = [primary_slug]
        for slug in data.get("agents", []):
            if slug in self.registry and slug not in agents:
                agents.append(slug)
        agents = agents[:max(1, self.settings.max_delegates)]

        return DelegationPlan(
            agents=agents,
            reasoning=str(data.get("reasoning") or "LLM classification"),
            parallel=len(agents) > 1 and self.settings.parallel_delegation,
        )

    async def plan(self, message: str, primary_slug: str) -> DelegationPlan:
        if self.settings.planner_mode == "llm" and self.llm is not None:
            try:
                plan = await self.plan_with_llm(message, primary_slug)
                logger.debug(f"[ORCH] LLM plan: {plan.agents}")
                return plan
            except Exception as e:
                logger.warning(f"[ORCH] LLM planner failed, using keywords: {e}")

        plan = self.plan_by_keywords(message, primary_slug)
        logger.debug(f"[ORCH] Keyword plan: {plan.agents} ({plan.reasoning})")
        return plan
