"""Pydantic schemas for the orchestration core's public data model"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class ThreadScope(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryType(str, Enum):
    """Kinds of durable memories distilled from conversations"""
    INSIGHT = "insight"
    DECISION = "decision"
    FACT = "fact"
    ACTION_ITEM = "action_item"
    RESEARCH = "research"
    PREFERENCE = "preference"
    FEEDBACK = "feedback"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalActionType(str, Enum):
    WORKFLOW_EXECUTE = "workflow_execute"
    EXTERNAL_API_CALL = "external_api_call"
    DATA_MODIFICATION = "data_modification"
    PAYMENT_PROCESS = "payment_process"
    SEND_EMAIL = "send_email"
    CREATE_RESOURCE = "create_resource"
    DELETE_RESOURCE = "delete_resource"
    GRANT_PERMISSION = "grant_permission"
    INTEGRATION_CONNECT = "integration_connect"
    CUSTOM = "custom"


class ApprovalStatus(str, Enum):
    """pending → approved | rejected | expired (all terminal)"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# ============ Port payloads ============

class User(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: Optional[str] = None

    class Config:
        extra = "allow"


class RAGOptions(BaseModel):
    collection: Optional[str] = None
    limit: Optional[int] = None
    min_score: Optional[float] = None
    source_types: Optional[List[str]] = None
    project_id: Optional[str] = None
    agent_slug: Optional[str] = None


class RAGResult(BaseModel):
    content: str
    source: str
    source_type: str
    relevance_score: float
    metadata: Optional[Dict[str, Any]] = None
    collection: Optional[str] = None


class WorkflowResult(BaseModel):
    success: bool
    execution_id: Optional[str] = None
    output: Any = None
    error: Optional[str] = None
    credits_used: Optional[float] = None


class AuditEvent(BaseModel):
    user_id: str
    action: str
    resource: str
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# ============ Threads & Messages ============

class Thread(BaseModel):
    id: str
    user_id: str
    agent_slug: str
    scope: ThreadScope = ThreadScope.GLOBAL
    project_id: Optional[str] = None
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    message_count: int = 0
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: str
    thread_id: str
    role: MessageRole
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MessageResponse(BaseModel):
    success: bool
    answer: str
    sources: Optional[List[RAGResult]] = None
    memories: Optional[List["Memory"]] = None
    metadata: Optional[Dict[str, Any]] = None


class StreamChunk(BaseModel):
    """One element of a streamed answer; exactly one chunk has ``done=True``."""
    content: str
    done: bool = False
    metadata: Optional[Dict[str, Any]] = None


# ============ Memory ============

class Memory(BaseModel):
    id: str
    thread_id: str
    user_id: str
    agent_slug: str
    type: MemoryType
    content: str
    context: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    importance: float = Field(ge=0.0, le=1.0)
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MemoryWithScore(Memory):
    similarity_score: float


# ============ Approvals ============

class Approval(BaseModel):
    id: str
    thread_id: str
    user_id: str
    agent_slug: str
    action_type: ApprovalActionType
    risk_level: RiskLevel
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)
    status: ApprovalStatus
    expires_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    created_at: datetime


class ApprovalReviewResult(BaseModel):
    """Outcome of resuming the suspended execution after a review."""
    approval: Approval
    resumed: bool = False
    tool_result: Optional["ToolExecutionResult"] = None
    answer: Optional[str] = None


# ============ Tools ============

class ToolDefinition(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any]  # JSON Schema
    requires_approval: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    credits_required: Optional[float] = None
    action_type: ApprovalActionType = ApprovalActionType.CUSTOM

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolExecutionResult(BaseModel):
    success: bool
    result: Any = None
    error: Optional[str] = None
    credits_used: Optional[float] = None
    requires_approval: bool = False
    approval_id: Optional[str] = None


# ============ Orchestration (transient) ============

class DelegationPlan(BaseModel):
    agents: List[str]
    reasoning: str
    parallel: bool = False


class AgentResponse(BaseModel):
    agent_slug: str
    response: str
    confidence: float = 0.5
    sources: List[RAGResult] = Field(default_factory=list)
    tools_used: List[str] = Field(default_factory=list)
    credits_used: float = 0.0
    pending_approval_id: Optional[str] = None


class OrchestratedResponse(BaseModel):
    answer: str
    responses: List[AgentResponse]
    delegation_plan: DelegationPlan
    synthesis_reasoning: str
    failed_agents: List[str] = Field(default_factory=list)


MessageResponse.model_rebuild()
ApprovalReviewResult.model_rebuild()


# ============ API requests ============

class CreateThreadRequest(BaseModel):
    agent_slug: str = "general"
    scope: ThreadScope = ThreadScope.GLOBAL
    project_id: Optional[str] = None
    title: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SendMessageRequest(BaseModel):
    message: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class MemorySearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    agent_slug: Optional[str] = None
    thread_id: Optional[str] = None
    types: Optional[List[MemoryType]] = None
    limit: int = Field(default=10, ge=1, le=100)


class ReviewApprovalRequest(BaseModel):
    approved: bool
    notes: Optional[str] = None


class ExecuteToolRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)
