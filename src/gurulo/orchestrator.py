"""Request lifecycle: route, gather context, answer, and act.

    message -> QueryRouter -> ContextAssembler -> model (turn 1)
            -> tool call? -> validate -> SafetyGate -> ActionExecutor
            -> ResultChainer (turn 2) -> final response

Greetings short-circuit with a canned reply and no model call.
process_message() never raises and never returns an empty response.
"""

import logging
import random
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from gurulo.audit_log import AuditLog
from gurulo.config import GURULO_DB, GuruloConfig
from gurulo.context_assembler import ContextAssembler, format_context_for_prompt
from gurulo.errors import (
    ModelAuthError,
    ModelResponseError,
    ModelTransientError,
    ToolValidationError,
)
from gurulo.events import EVENT_ERROR, EventCollector
from gurulo.executor import ActionExecutor
from gurulo.file_search import LocalFileSearch
from gurulo.fs_watcher import FileSystemWatcher
from gurulo.knowledge_index import JsonKnowledgeIndex, NullKnowledgeIndex
from gurulo.model_client import (
    CompletionBackend,
    ConversationTurn,
    ROLES,
    create_model_client,
)
from gurulo.query_router import ModelTier, QueryRouter, RoutingPolicy
from gurulo.result_chainer import ResultChainer
from gurulo.safety_gate import ConfirmationProvider, ConfirmationState, SafetyGate
from gurulo.tool_calls import (
    ToolCall,
    describe_action,
    extract_tool_call,
    tool_call_from_native,
    validate_tool_call,
)

logger = logging.getLogger(__name__)

GEORGIAN_CHARS = re.compile(r"[ა-ჰ]")

GREETINGS = {
    "ka": [
        "გამარჯობა! 👋 როგორ შემიძლია დაგეხმარო?",
        "სალამი! რით დაგეხმარო დღეს?",
        "გაუმარჯოს! რაზე ვიმუშაოთ?",
    ],
    "en": [
        "Hello! 👋 How can I help?",
        "Hi! What are we working on today?",
        "Hey! What can I do for you?",
    ],
}

MESSAGES = {
    "not_understood": {
        "en": "I could not understand the requested action, so nothing was executed.",
        "ka": "მოთხოვნილი მოქმედება ვერ გავიგე, ამიტომ არაფერი შესრულებულა.",
    },
    "not_performed": {
        "en": "The action was not performed ({reason}).",
        "ka": "მოქმედება არ შესრულებულა ({reason}).",
    },
    "unavailable": {
        "en": "The AI service is temporarily unavailable. Please try again shortly.",
        "ka": "AI სერვისი დროებით მიუწვდომელია. გთხოვ, სცადე ცოტა ხანში.",
    },
    "auth": {
        "en": "The AI service is not configured correctly (authentication failed).",
        "ka": "AI სერვისი არასწორადაა კონფიგურირებული (ავტორიზაცია ვერ მოხერხდა).",
    },
    "bad_reply": {
        "en": "The AI service returned a reply I could not use. Please try again.",
        "ka": "AI სერვისმა გამოუსადეგარი პასუხი დააბრუნა. გთხოვ, სცადე თავიდან.",
    },
    "internal": {
        "en": "Something went wrong while processing your message.",
        "ka": "შეტყობინების დამუშავებისას შეცდომა მოხდა.",
    },
}

NOT_PERFORMED_REASONS = {
    ConfirmationState.DENIED: {"en": "it was declined", "ka": "უარყოფილია"},
    ConfirmationState.TIMED_OUT: {"en": "confirmation timed out", "ka": "დადასტურების დრო ამოიწურა"},
}

SYSTEM_PROMPT = (
    "You are Gurulo, a developer assistant working inside a software project. "
    "Answer in the user's language. To act on the project, reply with exactly one "
    "```json block of the form "
    '{"tool_name": "writeFile|installPackage|executeCommand", "parameters": {...}}. '
    "writeFile takes filePath and content, installPackage takes packageName, "
    "executeCommand takes command and args."
)


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def _lang(message: Any) -> str:
    return "ka" if isinstance(message, str) and GEORGIAN_CHARS.search(message) else "en"


def normalize_history(history: Sequence[Any] | None) -> list[ConversationTurn]:
    """ConversationTurns from turns or {"role", "content"} dicts; others dropped."""
    turns = []
    for item in history or []:
        if isinstance(item, ConversationTurn):
            turns.append(item)
        elif isinstance(item, dict) and item.get("role") in ROLES and isinstance(item.get("content"), str):
            turns.append(ConversationTurn.from_dict(item))
    return turns


@dataclass
class ToolExecutionSummary:
    tool: str
    success: bool
    duration_ms: int = 0
    state: str = ConfirmationState.CONFIRMED.value
    action_id: str | None = None
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "success": self.success, "duration": self.duration_ms}


@dataclass
class ProcessResult:
    """Outcome of one process_message call."""
    success: bool
    response: str
    policy: str
    model: str
    model_label: str = ""
    request_id: str = ""
    duration_ms: int = 0
    tool_executed: ToolExecutionSummary | None = None
    fallback_used: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "policy": self.policy,
            "model": self.model,
            "modelLabel": self.model_label,
            "requestId": self.request_id,
            "durationMs": self.duration_ms,
        }
        if self.tool_executed is not None:
            data["toolExecuted"] = self.tool_executed.to_dict()
        return data


class Orchestrator:
    """Composes routing, context, model, gate, executor and chaining."""

    def __init__(
        self,
        router: QueryRouter,
        assembler: ContextAssembler,
        model_client: CompletionBackend,
        gate: SafetyGate,
        executor: ActionExecutor,
        chainer: ResultChainer | None = None,
        events: EventCollector | None = None,
        watcher: FileSystemWatcher | None = None,
        rng: random.Random | None = None,
    ):
        self.router = router
        self.assembler = assembler
        self.model_client = model_client
        self.gate = gate
        self.executor = executor
        self.chainer = chainer or ResultChainer(model_client)
        self.events = events or gate.events
        self.watcher = watcher
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls,
        config: GuruloConfig,
        confirmation_provider: ConfirmationProvider | None = None,
        db_path: Path | None = None,
    ) -> "Orchestrator":
        """Wire default collaborators, choosing degraded ones where needed."""
        root = config.project_root
        events = EventCollector()

        kb_path = config.context.knowledge_base_path
        if kb_path and Path(kb_path).expanduser().is_file():
            knowledge = JsonKnowledgeIndex(Path(kb_path).expanduser())
        else:
            if kb_path:
                logger.warning(f"Knowledge base {kb_path} not found; continuing without it")
            knowledge = NullKnowledgeIndex()

        watcher = FileSystemWatcher(root)
        assembler = ContextAssembler(
            file_search=LocalFileSearch(root, cache_ttl=config.context.cache_ttl_seconds),
            knowledge_index=knowledge,
            change_feed=watcher,
            config=config.context,
        )
        audit_db = None
        if config.executor.persist_audit:
            audit_db = db_path or GURULO_DB
        audit = AuditLog(capacity=config.executor.audit_capacity, db_path=audit_db)

        return cls(
            router=QueryRouter(config.router),
            assembler=assembler,
            model_client=create_model_client(config.models),
            gate=SafetyGate(config.safety, provider=confirmation_provider, events=events),
            executor=ActionExecutor(root, config.executor, audit_log=audit, events=events),
            events=events,
            watcher=watcher,
        )

    async def start(self) -> None:
        """Start background collaborators (the file watcher)."""
        if self.watcher is not None:
            await self.watcher.start()

    async def aclose(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        close = getattr(self.model_client, "aclose", None)
        if close is not None:
            await close()

    async def process_message(
        self,
        message: str,
        history: Sequence[Any] | None,
        user_id: str,
        model_override: str | None = None,
        request_id: str | None = None,
        conversation_id: str = "default",
    ) -> ProcessResult:
        """Run one request end to end. Never raises."""
        request_id = request_id or new_request_id()
        start = time.monotonic()
        try:
            result = await self._process(
                message, history, user_id, model_override, request_id, conversation_id
            )
        except Exception as e:
            logger.error(f"[{request_id}] Unhandled pipeline error: {e}", exc_info=True)
            self.events.emit(EVENT_ERROR, f"Pipeline error: {e}", request_id=request_id)
            result = ProcessResult(
                success=False,
                response=MESSAGES["internal"][_lang(message)],
                policy=RoutingPolicy.SIMPLE_QA.value,
                model=ModelTier.SMALL.value,
            )
        if not result.response.strip():
            result.response = MESSAGES["internal"][_lang(message)]
            result.success = False
        result.request_id = request_id
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"[{request_id}] {result.policy}/{result.model} success={result.success} "
            f"in {result.duration_ms}ms"
        )
        return result

    async def _process(
        self,
        message: str,
        history: Sequence[Any] | None,
        user_id: str,
        model_override: str | None,
        request_id: str,
        conversation_id: str,
    ) -> ProcessResult:
        lang = _lang(message)
        decision = self.router.route(message, model_override)
        policy = decision.policy.value
        tier = decision.model_tier
        logger.info(f"[{request_id}] Routed to {policy}/{tier.value}: {decision.reason}")

        if tier == ModelTier.NONE:
            return ProcessResult(
                success=True,
                response=self._rng.choice(GREETINGS[lang]),
                policy=policy,
                model=tier.value,
                model_label="static",
            )

        message = message if isinstance(message, str) else ""
        turns = normalize_history(history)
        context = await self.assembler.build(message, turns)
        user_content = format_context_for_prompt(context, message) + "\n\n" + message
        messages = [
            ConversationTurn(role="system", content=SYSTEM_PROMPT),
            *turns,
            ConversationTurn(role="user", content=user_content),
        ]

        def failure(key: str) -> ProcessResult:
            return ProcessResult(
                success=False, response=MESSAGES[key][lang], policy=policy, model=tier.value
            )

        try:
            completion = await self.model_client.complete_with_fallback(
                messages, tier, request_id=request_id
            )
        except ModelAuthError as e:
            logger.error(f"[{request_id}] Model authentication failed: {e}")
            self.events.emit(EVENT_ERROR, "Model authentication failed", request_id=request_id)
            return failure("auth")
        except ModelTransientError as e:
            logger.error(f"[{request_id}] Model unavailable: {e}")
            self.events.emit(EVENT_ERROR, f"Model unavailable: {e}", request_id=request_id)
            return failure("unavailable")
        except ModelResponseError as e:
            logger.error(f"[{request_id}] Unusable model reply: {e}")
            return failure("bad_reply")

        model = ModelTier.SMALL.value if completion.is_fallback else tier.value

        def answer(text: str, success: bool = True, tool: ToolExecutionSummary | None = None) -> ProcessResult:
            return ProcessResult(
                success=success,
                response=text,
                policy=policy,
                model=model,
                model_label=completion.model_label,
                tool_executed=tool,
                fallback_used=completion.is_fallback,
            )

        try:
            tool_call = tool_call_from_native(completion.native_calls) or extract_tool_call(completion.content)
        except ToolValidationError as e:
            logger.warning(f"[{request_id}] Rejected tool calls: {e}")
            return answer(MESSAGES["not_understood"][lang])

        if tool_call is None:
            return answer(completion.content)

        return await self._handle_tool_call(
            tool_call, completion.content, turns, message, tier, lang,
            request_id, user_id, conversation_id, answer,
        )

    async def _handle_tool_call(
        self,
        tool_call: ToolCall,
        turn_one: str,
        turns: list[ConversationTurn],
        message: str,
        tier: ModelTier,
        lang: str,
        request_id: str,
        user_id: str,
        conversation_id: str,
        answer,
    ) -> ProcessResult:
        validation = validate_tool_call(tool_call)
        if not validation.ok:
            logger.warning(f"[{request_id}] Invalid tool call {tool_call.tool_name}: {validation.error}")
            return answer(MESSAGES["not_understood"][lang])

        logger.info(f"[{request_id}] Tool call: {describe_action(validation.action)}")
        confirmation = await self.gate.request_confirmation(
            tool_call, validation.action, request_id, user_id, conversation_id
        )
        if not confirmation.is_confirmed:
            reason = NOT_PERFORMED_REASONS.get(confirmation.state, NOT_PERFORMED_REASONS[ConfirmationState.DENIED])
            return answer(
                MESSAGES["not_performed"][lang].format(reason=reason[lang]),
                tool=ToolExecutionSummary(
                    tool=tool_call.tool_name,
                    success=False,
                    state=confirmation.state.value,
                    action_id=confirmation.action_id,
                ),
            )

        result = await self.executor.execute(confirmation, request_id)
        chain_history = [
            *turns,
            ConversationTurn(role="user", content=message),
            ConversationTurn(role="assistant", content=turn_one or f"{tool_call.tool_name} requested"),
        ]
        chained = await self.chainer.chain(result, tool_call, chain_history, tier, request_id=request_id)
        response = answer(
            chained.content,
            tool=ToolExecutionSummary(
                tool=tool_call.tool_name,
                success=result.success,
                duration_ms=result.duration_ms,
                action_id=confirmation.action_id,
                replayed=bool(result.metadata.get("replayed")),
            ),
        )
        response.model_label = chained.model_label
        return response
