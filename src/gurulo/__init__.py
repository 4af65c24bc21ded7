"""Gurulo: agentic query routing and confirmed tool execution."""

__version__ = "0.3.0"

from gurulo.query_router import QueryRouter, RoutingDecision, RoutingPolicy, ModelTier, get_query_router
from gurulo.context_assembler import ContextAssembler, AssembledContext, ContextChunk, format_context_for_prompt
from gurulo.model_client import ModelClient, OfflineModelClient, ConversationTurn, Completion, create_model_client
from gurulo.tool_calls import ToolCall, ToolName, extract_tool_call, validate_tool_call, require_valid
from gurulo.safety_gate import SafetyGate, ActionConfirmation, ConfirmationState, ConfirmationDecision
from gurulo.executor import ActionExecutor, ExecutionResult
from gurulo.audit_log import AuditLog, AuditEntry
from gurulo.result_chainer import ResultChainer, ChainedResponse
from gurulo.orchestrator import Orchestrator, ProcessResult
from gurulo.events import EventCollector

__all__ = [
    "QueryRouter",
    "RoutingDecision",
    "RoutingPolicy",
    "ModelTier",
    "get_query_router",
    "ContextAssembler",
    "AssembledContext",
    "ContextChunk",
    "format_context_for_prompt",
    "ModelClient",
    "OfflineModelClient",
    "ConversationTurn",
    "Completion",
    "create_model_client",
    "ToolCall",
    "ToolName",
    "extract_tool_call",
    "validate_tool_call",
    "require_valid",
    "SafetyGate",
    "ActionConfirmation",
    "ConfirmationState",
    "ConfirmationDecision",
    "ActionExecutor",
    "ExecutionResult",
    "AuditLog",
    "AuditEntry",
    "ResultChainer",
    "ChainedResponse",
    "Orchestrator",
    "ProcessResult",
    "EventCollector",
]
