"""
Shared fixtures: a temporary SQLite database per test and in-memory fakes
for every dependency port.
"""

import asyncio
import hashlib
import json
import re
from collections import defaultdict, deque
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from agentic_ai.agent.agents import DEFAULT_AGENTS
from agentic_ai.agent.orchestrator import SYNTHESIS_PROMPT
from agentic_ai.config import Settings
from agentic_ai.db import create_engine_for_url, create_session_maker, init_db
from agentic_ai.errors import InsufficientCreditsError
from agentic_ai.schemas import RAGResult, User, WorkflowResult
from agentic_ai.service import create_agentic_ai_service


# ============ Fake LLM client ============

def tool_call(name: str, arguments: Dict[str, Any], call_id: Optional[str] = None) -> SimpleNamespace:
    """A scripted model turn that calls one tool."""
    return SimpleNamespace(
        id=call_id or f"call_{name}",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


class FakeCompletions:
    def __init__(self, client: "FakeLLMClient"):
        self.client = client

    async def create(self, **params):
        return await self.client.handle(params)


class FakeLLMClient:
    """
    OpenAI-shaped client that answers from per-caller scripts.

    Callers are told apart by their system prompt: each agent slug,
    "synthesis", "extraction" and "planner". Unscripted calls get a default
    answer that echoes the last user message.
    """

    def __init__(self):
        self.chat = SimpleNamespace(completions=FakeCompletions(self))
        self.scripts: Dict[str, deque] = defaultdict(deque)
        self.calls: List[Dict[str, Any]] = []
        self.fail_agents: set = set()
        self.fail_synthesis = False
        self.stream_fail_after: Optional[int] = None
        self.delay = 0.0

    def script(self, caller: str, *responses: Any) -> None:
        self.scripts[caller].extend(responses)

    def calls_for(self, caller: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if self.caller_of(c) == caller]

    @staticmethod
    def caller_of(params: Dict[str, Any]) -> str:
        messages = params["messages"]
        first = messages[0]["content"] or ""
        if first == SYNTHESIS_PROMPT:
            return "synthesis"
        if first.startswith("Pick which specialist agents"):
            return "planner"
        if "extract durable memories" in first:
            return "extraction"
        for agent in DEFAULT_AGENTS:
            if first.startswith(agent.system_prompt):
                return agent.slug
        return "unknown"

    @staticmethod
    def _last_user(params: Dict[str, Any]) -> str:
        for message in reversed(params["messages"]):
            if message["role"] == "user":
                return message["content"]
        return ""

    def _default(self, caller: str, params: Dict[str, Any]) -> Any:
        if caller == "synthesis":
            return "Synthesized answer"
        if caller == "extraction":
            return '{"memories": []}'
        if caller == "planner":
            return '{"agents": [], "reasoning": "no extra agents"}'
        return f"[{caller}] answer to: {self._last_user(params)}"

    async def handle(self, params: Dict[str, Any]):
        self.calls.append(params)
        caller = self.caller_of(params)
        if self.delay:
            await asyncio.sleep(self.delay)

        if caller in self.fail_agents:
            raise RuntimeError(f"{caller} model unavailable")
        if caller == "synthesis" and self.fail_synthesis:
            raise RuntimeError("synthesis model unavailable")

        response = self.scripts[caller].popleft() if self.scripts[caller] else self._default(caller, params)
        if isinstance(response, Exception):
            raise response

        if params.get("stream"):
            return self._stream(str(response))

        if isinstance(response, list):
            message = SimpleNamespace(content="", tool_calls=response)
        else:
            message = SimpleNamespace(content=str(response), tool_calls=None)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message, finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            model=params["model"],
        )

    async def _stream(self, text: str):
        pieces = re.findall(r"\S+\s*", text)
        for index, piece in enumerate(pieces):
            if self.stream_fail_after is not None and index >= self.stream_fail_after:
                raise RuntimeError("stream dropped")
            yield SimpleNamespace(choices=[SimpleNamespace(
                delta=SimpleNamespace(content=piece), finish_reason=None,
            )])
        yield SimpleNamespace(choices=[SimpleNamespace(
            delta=SimpleNamespace(content=None), finish_reason="stop",
        )])


# ============ Fake host ports ============

def fake_embedding(text: str, dims: int = 64) -> List[float]:
    """Deterministic bag-of-words vector."""
    vector = [0.0] * dims
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        index = int(hashlib.md5(word.encode()).hexdigest(), 16) % dims
        vector[index] += 1.0
    return vector


class FakeDeps:
    """Every dependency port, backed by in-memory state."""

    def __init__(self, db, llm_client):
        self.db = db
        self.llm_client = llm_client
        self.users = {
            "u1": User(id="u1", email="u1@example.com", name="User One"),
            "u2": User(id="u2", email="u2@example.com", name="User Two"),
        }
        self.denied_actions: set = set()
        self.balances: Dict[str, float] = defaultdict(lambda: 1000.0)
        self.charges: List[tuple] = []
        self.charge_error: Optional[Exception] = None
        self.audit_events: List[Any] = []
        self.fail_audit = False
        self.rag_results: List[RAGResult] = []
        self.fail_rag = False
        self.fail_embed = False
        self.embed_calls = 0
        self.workflow_runs: List[tuple] = []
        self.workflow_error: Optional[str] = None
        self.valid_flows = {"flow-1"}

    # Auth
    async def get_user_by_id(self, user_id):
        return self.users.get(user_id)

    async def check_permission(self, user_id, action):
        return action not in self.denied_actions

    # Credits
    async def charge_credits(self, user_id, amount, reason):
        if self.charge_error is not None:
            raise self.charge_error
        if self.balances[user_id] < amount:
            raise InsufficientCreditsError(amount, self.balances[user_id])
        self.balances[user_id] -= amount
        self.charges.append((user_id, amount, reason))

    async def get_credits_balance(self, user_id):
        return self.balances[user_id]

    # RAG
    async def rag_search(self, query, options):
        if self.fail_rag:
            raise RuntimeError("rag service down")
        return list(self.rag_results)

    async def embed(self, text):
        self.embed_calls += 1
        if self.fail_embed:
            raise RuntimeError("embedding service down")
        return fake_embedding(text)

    # Workflow
    async def execute_workflow(self, flow_id, input):
        self.workflow_runs.append((flow_id, input))
        if self.workflow_error:
            return WorkflowResult(success=False, error=self.workflow_error)
        return WorkflowResult(
            success=True,
            execution_id=f"exec-{len(self.workflow_runs)}",
            output={"flow_id": flow_id, "ok": True},
        )

    async def validate_workflow(self, flow_id):
        return flow_id in self.valid_flows

    # Audit
    async def log_audit_event(self, event):
        if self.fail_audit:
            raise RuntimeError("audit sink down")
        self.audit_events.append(event)

    def audit_actions(self) -> List[str]:
        return [e.action for e in self.audit_events]


# ============ Fixtures ============

def make_settings(**overrides) -> Settings:
    values = dict(
        auto_extract_memories=False,
        llm_max_retries=1,
        llm_retry_delay=0.0,
        planner_mode="keyword",
        stream_chunk_chars=8,
    )
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'agentic.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def llm():
    return FakeLLMClient()


@pytest.fixture
def deps(session_maker, llm):
    return FakeDeps(session_maker, llm)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def service(deps, settings):
    service = await create_agentic_ai_service(deps, settings)
    yield service
    await service.close()


@pytest_asyncio.fixture
async def make_service(deps):
    """Build extra services over the same database, e.g. with other settings."""
    created = []

    async def _make(**overrides):
        service = await create_agentic_ai_service(deps, make_settings(**overrides))
        created.append(service)
        return service

    yield _make
    for service in created:
        await service.close()


@pytest_asyncio.fixture
async def thread(service):
    return await service.create_thread("u1", "general", title="Test thread")
