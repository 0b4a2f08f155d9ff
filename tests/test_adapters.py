"""
Tests for the FastAPI host adapter and the approval expiry scheduler
"""

import math
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from openai import AsyncOpenAI
from sqlalchemy import update

from agentic_ai.adapters import FastAPIAdapterServices, create_adapter_from_env, create_fastapi_adapter
from agentic_ai.db.models import Approval as ApprovalRow
from agentic_ai.errors import ProviderError
from agentic_ai.schemas import AuditEvent, RAGOptions, User, WorkflowResult
from agentic_ai.scripts import scheduled_tasks
from agentic_ai.service import create_agentic_ai_service

from tests.conftest import fake_embedding, make_settings


class HostAgents:
    async def get_user_by_id(self, user_id):
        if user_id == "u1":
            return {"id": "u1", "email": "u1@example.com", "plan": "pro"}
        return None

    async def check_permission(self, user_id, action):
        return True


class HostContext:
    def __init__(self):
        self.queries = []

    async def search_context(self, query, options):
        self.queries.append((query, options))
        return [{"content": "Hours are 9-5", "source": "hours.md", "source_type": "document", "relevance_score": 0.7}]


class HostEmbeddings:
    def __init__(self):
        self.inputs = []

    async def create(self, model, input):
        self.inputs.append((model, input))
        return SimpleNamespace(data=[SimpleNamespace(embedding=fake_embedding(input))])


class HostWorkflows:
    def __init__(self):
        self.runs = []

    async def execute_workflow(self, flow_id, input):
        self.runs.append(flow_id)
        return {"success": True, "execution_id": "wf-1"}

    async def validate_workflow(self, flow_id):
        return True

    async def estimate_workflow_cost(self, flow_id):
        return 3.0


@pytest.fixture
def host_llm(llm):
    llm.embeddings = HostEmbeddings()
    return llm


@pytest.fixture
def minimal_services(host_llm):
    return FastAPIAdapterServices(
        agent_service=HostAgents(),
        context_service=HostContext(),
        llm_client=host_llm,
    )


class TestFastAPIAdapter:

    @pytest.mark.asyncio
    async def test_missing_optional_services_degrade(self, session_maker, minimal_services):
        adapter = create_fastapi_adapter(session_maker, minimal_services, make_settings())

        assert await adapter.get_credits_balance("u1") == math.inf
        await adapter.charge_credits("u1", 2.0, "test")
        assert await adapter.validate_workflow("flow-1") is False
        with pytest.raises(ProviderError) as exc:
            await adapter.execute_workflow("flow-1", {})
        assert exc.value.provider == "workflow"
        await adapter.log_audit_event(AuditEvent(user_id="u1", action="x", resource="y"))
        assert not hasattr(adapter, "estimate_workflow_cost")

    @pytest.mark.asyncio
    async def test_converts_host_payloads(self, session_maker, minimal_services):
        adapter = create_fastapi_adapter(session_maker, minimal_services, make_settings())

        user = await adapter.get_user_by_id("u1")
        assert isinstance(user, User)
        assert user.email == "u1@example.com"
        assert await adapter.get_user_by_id("nobody") is None

        results = await adapter.rag_search("opening hours", RAGOptions(limit=3))
        assert results[0].source == "hours.md"

    @pytest.mark.asyncio
    async def test_embed_falls_back_to_llm_client(self, session_maker, minimal_services, host_llm):
        adapter = create_fastapi_adapter(session_maker, minimal_services, make_settings(embedding_model="emb-small"))

        vector = await adapter.embed("hello world")

        assert vector == fake_embedding("hello world")
        assert host_llm.embeddings.inputs == [("emb-small", "hello world")]

    @pytest.mark.asyncio
    async def test_workflow_service_and_estimator(self, session_maker, minimal_services):
        minimal_services.workflow_service = HostWorkflows()
        adapter = create_fastapi_adapter(session_maker, minimal_services, make_settings())

        result = await adapter.execute_workflow("flow-1", {})
        assert isinstance(result, WorkflowResult)
        assert result.execution_id == "wf-1"
        assert await adapter.estimate_workflow_cost("flow-1") == 3.0

    def test_session_maker_from_app_state(self, session_maker, minimal_services):
        app = FastAPI()
        app.state.session_maker = session_maker
        adapter = create_fastapi_adapter(app, minimal_services)
        assert adapter.db is session_maker

        with pytest.raises(ValueError):
            create_fastapi_adapter(FastAPI(), minimal_services)

    def test_llm_client_required(self, session_maker):
        with pytest.raises(ValueError):
            create_fastapi_adapter(session_maker, FastAPIAdapterServices(
                agent_service=HostAgents(), context_service=HostContext(),
            ))

    @pytest.mark.asyncio
    async def test_service_runs_over_adapter(self, session_maker, minimal_services):
        adapter = create_fastapi_adapter(session_maker, minimal_services, make_settings())
        service = await create_agentic_ai_service(adapter, make_settings())
        try:
            thread = await service.create_thread("u1", "general")
            response = await service.send_message(thread.id, "When are you open?", "u1")

            assert response.answer == "[general] answer to: When are you open?"
            assert [s.source for s in response.sources] == ["hours.md"]
            query, options = minimal_services.context_service.queries[0]
            assert options.agent_slug == "general"
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_adapter_from_env_builds_client_and_engine(self, tmp_path):
        settings = make_settings(
            openai_api_key="sk-test",
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'env.db'}",
        )
        services = FastAPIAdapterServices(agent_service=HostAgents(), context_service=HostContext())

        adapter = create_adapter_from_env(services, settings)
        try:
            assert isinstance(services.llm_client, AsyncOpenAI)
            assert adapter.db.kw["bind"].url.database.endswith("env.db")
        finally:
            await adapter.db.kw["bind"].dispose()


class TestScheduler:

    @pytest.mark.asyncio
    async def test_sweep_counts_expired(self, service, thread, session_maker):
        result = await service.execute_tool(thread.id, "execute_workflow", {"flow_id": "flow-1"})
        async with session_maker.begin() as session:
            await session.execute(
                update(ApprovalRow)
                .where(ApprovalRow.id == result.approval_id)
                .values(expires_at=datetime.utcnow() - timedelta(seconds=1))
            )

        assert await scheduled_tasks.run_approval_expiry(service) == 1
        assert await scheduled_tasks.run_approval_expiry(service) == 0

    @pytest.mark.asyncio
    async def test_sweep_failure_is_logged(self, service, monkeypatch):
        async def broken():
            raise RuntimeError("db down")

        monkeypatch.setattr(service, "expire_stale_approvals", broken)
        assert await scheduled_tasks.run_approval_expiry(service) == 0

    @pytest.mark.asyncio
    async def test_setup_registers_job(self, service):
        scheduler = scheduled_tasks.setup_scheduler(service, sweep_interval_minutes=7)
        try:
            job = scheduler.get_job("approval_expiry")
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=7)
            recovery = scheduler.get_job("checkpoint_recovery")
            assert recovery.trigger.interval == timedelta(minutes=7)
        finally:
            scheduled_tasks.stop_scheduler()

    @pytest.mark.asyncio
    async def test_disabled_scheduler_does_not_start(self, service):
        assert service.settings.enable_scheduler is False
        assert scheduled_tasks.start_scheduler(service) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_service):
        svc = await make_service(enable_scheduler=True)
        scheduler = scheduled_tasks.start_scheduler(svc)
        try:
            assert scheduler.running
        finally:
            scheduled_tasks.stop_scheduler()
        assert scheduled_tasks.scheduler is None

    @pytest.mark.asyncio
    async def test_recovery_job_settles_unresumed_approval(self, service, thread, deps):
        result = await service.execute_tool(thread.id, "execute_workflow", {"flow_id": "flow-1"})
        await service.approvals.review(result.approval_id, True, "u1")

        assert await scheduled_tasks.run_checkpoint_recovery(service) == 1
        assert deps.workflow_runs == [("flow-1", {})]
        assert await scheduled_tasks.run_checkpoint_recovery(service) == 0

    @pytest.mark.asyncio
    async def test_recovery_failure_is_logged(self, service, monkeypatch):
        async def broken():
            raise RuntimeError("db down")

        monkeypatch.setattr(service, "recover_checkpoints", broken)
        assert await scheduled_tasks.run_checkpoint_recovery(service) == 0
