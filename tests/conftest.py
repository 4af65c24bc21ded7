"""Shared test fixtures for the Gurulo test suite."""

import asyncio
import json

import pytest

from gurulo.audit_log import AuditLog
from gurulo.config import ContextConfig, ExecutorConfig, SafetyConfig
from gurulo.context_assembler import ContextAssembler
from gurulo.errors import ModelError
from gurulo.events import EventCollector
from gurulo.executor import ActionExecutor
from gurulo.file_search import LocalFileSearch
from gurulo.model_client import Completion
from gurulo.orchestrator import Orchestrator
from gurulo.query_router import ModelTier, QueryRouter
from gurulo.safety_gate import ConfirmationDecision, SafetyGate


class ScriptedBackend:
    """Completion backend that replays queued replies or raises queued errors."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def complete(self, messages, tier, request_id=None, stream=False):
        return await self.complete_with_fallback(messages, tier, request_id=request_id, stream=stream)

    async def complete_with_fallback(self, messages, tier, request_id=None, stream=False):
        self.calls.append({"messages": list(messages), "tier": tier, "request_id": request_id})
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, (ModelError, Exception)):
            raise reply
        if isinstance(reply, Completion):
            return reply
        label = "Large" if tier == ModelTier.LARGE else "Small"
        return Completion(content=reply, model_label=label, tier=tier, model=tier.value)


class StaticProvider:
    """Confirmation provider that always gives the same answer."""

    def __init__(self, confirmed=True, by="tester"):
        self.confirmed = confirmed
        self.by = by
        self.seen = []

    async def request_confirmation(self, confirmation):
        self.seen.append(confirmation)
        return ConfirmationDecision(confirmed=self.confirmed, confirmed_by=self.by)


class SilentProvider:
    """Never answers; the gate has to time out."""

    async def request_confirmation(self, confirmation):
        await asyncio.Event().wait()


@pytest.fixture
def project_path(tmp_path):
    """Provide a temporary project directory with basic structure."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "src").mkdir()
    (project / "src" / "App.tsx").write_text(
        "import React from 'react';\n"
        "export function App() {\n"
        "  const user = undefined;\n"
        "  return user.name; // TypeError at runtime\n"
        "}\n"
    )
    (project / "src" / "utils.py").write_text("def helper():\n    return 42\n")
    (project / "README.md").write_text("# Demo project\n\nRun npm start.\n")
    (project / ".env").write_text("SECRET_TOKEN=hunter2\n")
    (project / "node_modules").mkdir()
    (project / "node_modules" / "lib.js").write_text("export function App() {}\n")
    return project


@pytest.fixture
def events():
    return EventCollector()


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def audit_log():
    return AuditLog(capacity=50)


@pytest.fixture
def executor(project_path, audit_log, events):
    return ActionExecutor(project_path, ExecutorConfig(command_timeout=10.0), audit_log=audit_log, events=events)


@pytest.fixture
def make_orchestrator(project_path, backend, events, audit_log):
    """Build an Orchestrator over the temp project with a given provider."""

    def _make(provider=None, confirmation_timeout=5.0, **kwargs):
        gate = SafetyGate(
            SafetyConfig(confirmation_timeout=confirmation_timeout),
            provider=provider,
            events=events,
        )
        assembler = ContextAssembler(
            file_search=LocalFileSearch(project_path),
            config=ContextConfig(token_budget=600),
        )
        executor = ActionExecutor(
            project_path, ExecutorConfig(command_timeout=10.0), audit_log=audit_log, events=events
        )
        return Orchestrator(
            router=QueryRouter(),
            assembler=assembler,
            model_client=kwargs.pop("model_client", backend),
            gate=gate,
            executor=executor,
            events=events,
            **kwargs,
        )

    return _make


def tool_json(tool_name, **parameters):
    """A fenced tool-call block as a model would write it."""
    return "```json\n" + json.dumps({"tool_name": tool_name, "parameters": parameters}) + "\n```"
