"""
Tool definitions for the orchestration core.

Each tool is a ``ToolDefinition``: name, description, JSON Schema for its
parameters, and the approval/risk/credit policy that applies when it runs.
The registry is process-wide static configuration.
"""

from typing import Dict, List, Optional

from agentic_ai.schemas import ApprovalActionType, RiskLevel, ToolDefinition

EXECUTE_WORKFLOW_CREDITS = 5.0


def get_agent_tools() -> List[ToolDefinition]:
    """Return all tool definitions available to agents."""
    return [
        ToolDefinition(
            name="search_knowledge",
            description=(
                "Search the knowledge base (documents, pages, project files) for passages "
                "relevant to a query. Returns ranked passages with their sources."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "What to search for."},
                    "limit": {"type": "integer", "description": "Maximum results (default 5)."},
                    "collection": {"type": "string", "description": "Optional collection to search."},
                },
                "required": ["query"],
            },
        ),
        ToolDefinition(
            name="search_memories",
            description=(
                "Search memories from the user's earlier conversations (decisions, facts, "
                "preferences, action items) by meaning."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "What to recall."},
                    "limit": {"type": "integer", "description": "Maximum results (default 5)."},
                    "types": {
                        "type": "array",
                        "items": {
                            "type": "string",
                            "enum": ["insight", "decision", "fact", "action_item",
                                     "research", "preference", "feedback"],
                        },
                        "description": "Only return these memory types.",
                    },
                },
                "required": ["query"],
            },
        ),
        ToolDefinition(
            name="validate_workflow",
            description="Check that a workflow exists and can be executed. Has no side effects.",
            parameters={
                "type": "object",
                "properties": {
                    "flow_id": {"type": "string", "description": "Workflow identifier."},
                },
                "required": ["flow_id"],
            },
        ),
        ToolDefinition(
            name="estimate_workflow_cost",
            description="Estimate how many credits running a workflow would cost. Has no side effects.",
            parameters={
                "type": "object",
                "properties": {
                    "flow_id": {"type": "string", "description": "Workflow identifier."},
                },
                "required": ["flow_id"],
            },
        ),
        ToolDefinition(
            name="execute_workflow",
            description=(
                "Run an automation workflow with the given input. This has real side effects "
                "and costs credits, so a human must approve it before it runs."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "flow_id": {"type": "string", "description": "Workflow identifier."},
                    "input": {"type": "object", "description": "Input payload for the workflow."},
                },
                "required": ["flow_id"],
            },
            requires_approval=True,
            risk_level=RiskLevel.HIGH,
            credits_required=EXECUTE_WORKFLOW_CREDITS,
            action_type=ApprovalActionType.WORKFLOW_EXECUTE,
        ),
    ]


_TOOLS_BY_NAME: Dict[str, ToolDefinition] = {tool.name: tool for tool in get_agent_tools()}


def get_tool(name: str) -> Optional[ToolDefinition]:
    return _TOOLS_BY_NAME.get(name)


def get_tools_for_agent(tool_names: List[str]) -> List[ToolDefinition]:
    """The subset of the registry an agent may call, in registry order."""
    allowed = set(tool_names)
    return [tool for tool in _TOOLS_BY_NAME.values() if tool.name in allowed]
