"""Second model turn: turn an execution outcome into a user-facing reply."""

import logging
from dataclasses import dataclass
from typing import Sequence

from gurulo.executor import ExecutionResult
from gurulo.model_client import CompletionBackend, ConversationTurn
from gurulo.query_router import ModelTier
from gurulo.tool_calls import ToolCall

logger = logging.getLogger(__name__)

FALLBACK_LABEL = "Template"
MAX_RESULT_CHARS = 2000


@dataclass
class ChainedResponse:
    content: str
    model_label: str
    fallback_used: bool = False


def template_response(result: ExecutionResult, tool_call: ToolCall) -> str:
    """Deterministic reply used when the chaining call fails."""
    if result.success:
        return f"✅ {tool_call.tool_name} completed successfully: {result.result or 'done'}"
    return f"❌ {tool_call.tool_name} failed: {result.error or 'unknown error'}"


def build_outcome_message(result: ExecutionResult, tool_call: ToolCall) -> str:
    lines = [
        "Tool execution finished.",
        f"Tool: {tool_call.tool_name}",
        f"Success: {'yes' if result.success else 'no'}",
    ]
    if result.success:
        lines.append(f"Result: {(result.result or '')[:MAX_RESULT_CHARS]}")
    else:
        lines.append(f"Error: {(result.error or '')[:MAX_RESULT_CHARS]}")
    lines.append(f"Duration: {result.duration_ms}ms")
    lines.append("")
    lines.append(
        "Explain this outcome to the user in a short, friendly reply, "
        "in the same language the user wrote in. Do not request another tool call."
    )
    return "\n".join(lines)


class ResultChainer:
    """Feeds the execution outcome back to the model."""

    def __init__(self, model_client: CompletionBackend):
        self.model_client = model_client

    async def chain(
        self,
        execution_result: ExecutionResult,
        tool_call: ToolCall,
        history: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
    ) -> ChainedResponse:
        messages = [
            *history,
            ConversationTurn(role="assistant", content=f"Executing {tool_call.tool_name}..."),
            ConversationTurn(role="user", content=build_outcome_message(execution_result, tool_call)),
        ]
        try:
            completion = await self.model_client.complete_with_fallback(
                messages, tier, request_id=request_id
            )
        except Exception as e:
            logger.warning(f"[{request_id}] Result chaining failed, using template: {e}")
            return ChainedResponse(
                content=template_response(execution_result, tool_call),
                model_label=FALLBACK_LABEL,
                fallback_used=True,
            )
        content = completion.content.strip()
        if not content:
            return ChainedResponse(
                content=template_response(execution_result, tool_call),
                model_label=FALLBACK_LABEL,
                fallback_used=True,
            )
        return ChainedResponse(content=content, model_label=completion.model_label)
