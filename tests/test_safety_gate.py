"""Tests for gurulo.safety_gate: confirmation state machine."""

import asyncio

import pytest

from conftest import SilentProvider, StaticProvider
from gurulo.config import SafetyConfig
from gurulo.errors import UnconfirmedActionError
from gurulo.events import (
    EVENT_ACTION_CONFIRMED,
    EVENT_ACTION_DENIED,
    EVENT_ACTION_TIMEOUT,
    EVENT_APPROVAL_NEEDED,
)
from gurulo.safety_gate import (
    ActionConfirmation,
    ConfirmationState,
    ConfirmationStore,
    SafetyGate,
    Severity,
    classify_severity,
)
from gurulo.tool_calls import (
    ExecuteCommandAction,
    InstallPackageAction,
    ToolCall,
    WriteFileAction,
)

CALL = ToolCall("executeCommand", {"command": "ls"})
ACTION = ExecuteCommandAction(command="ls")


def _confirmation(**kwargs):
    return ActionConfirmation(tool_call=CALL, action=ACTION, request_id="req_1", user_id="u1", **kwargs)


class TestSeverity:
    @pytest.mark.parametrize("action,expected", [
        (WriteFileAction(".env", "x"), Severity.CRITICAL),
        (WriteFileAction("package.json", "{}"), Severity.HIGH),
        (WriteFileAction("src/App.tsx", "x"), Severity.LOW),
        (WriteFileAction("Makefile", "x"), Severity.MEDIUM),
        (InstallPackageAction("sudo-helper"), Severity.CRITICAL),
        (InstallPackageAction("lodash"), Severity.MEDIUM),
        (ExecuteCommandAction("ls"), Severity.LOW),
        (ExecuteCommandAction("npm", ("install",)), Severity.HIGH),
        (ExecuteCommandAction("git", ("push",)), Severity.HIGH),
        (ExecuteCommandAction("git", ("status",)), Severity.MEDIUM),
    ])
    def test_classification(self, action, expected):
        assert classify_severity(action) == expected


class TestActionConfirmation:
    def test_consume_requires_confirmed(self):
        confirmation = _confirmation()
        with pytest.raises(UnconfirmedActionError):
            confirmation.consume()

    def test_consume_only_once(self):
        confirmation = _confirmation(state=ConfirmationState.CONFIRMED)
        confirmation.consume()
        assert confirmation.consumed
        with pytest.raises(UnconfirmedActionError):
            confirmation.consume()

    def test_action_ids_are_unique(self):
        assert _confirmation().action_id != _confirmation().action_id
        assert _confirmation().action_id.startswith("act_")

    def test_to_dict(self):
        data = _confirmation().to_dict()
        assert data["description"] == "Run: ls"
        assert data["state"] == "pending"


class TestConfirmationStore:
    def test_session_keying(self):
        store = ConfirmationStore()
        first = _confirmation(conversation_id="c1")
        second = _confirmation(conversation_id="c2")
        store.add(first)
        store.add(second)
        assert store.for_session("u1", "c1") == [first]
        assert len(store.pending("u1")) == 2
        assert store.pending("someone-else") == []
        assert store.remove(first.action_id) is first
        assert store.get(first.action_id) is None
        assert len(store) == 1

    def test_ttl_expiry(self):
        now = [1000.0]
        store = ConfirmationStore(ttl_seconds=60, clock=lambda: now[0])
        old = _confirmation(created_at=900.0)
        fresh = _confirmation(created_at=990.0)
        store.add(old)
        store.add(fresh)
        assert store.purge_expired() == [old]
        assert store.get(fresh.action_id) is fresh


class TestSafetyGate:
    @pytest.mark.asyncio
    async def test_provider_confirms(self, events):
        provider = StaticProvider(confirmed=True, by="alice")
        gate = SafetyGate(provider=provider, events=events)
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.CONFIRMED
        assert confirmation.confirmed_by == "alice"
        assert confirmation.confirmed_at is not None
        assert provider.seen == [confirmation]
        types = [e["event_type"] for e in events.recent()]
        assert types == [EVENT_APPROVAL_NEEDED, EVENT_ACTION_CONFIRMED]
        assert len(gate.store) == 0

    @pytest.mark.asyncio
    async def test_provider_denies(self, events):
        gate = SafetyGate(provider=StaticProvider(confirmed=False), events=events)
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.DENIED
        assert not confirmation.is_confirmed
        assert events.recent(EVENT_ACTION_DENIED)

    @pytest.mark.asyncio
    async def test_timeout(self, events):
        gate = SafetyGate(SafetyConfig(confirmation_timeout=0.05), provider=SilentProvider(), events=events)
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.TIMED_OUT
        assert confirmation.confirmed_by is None
        assert events.recent(EVENT_ACTION_TIMEOUT)
        assert gate.get_status()["resolved"]["timed_out"] == 1

    @pytest.mark.asyncio
    async def test_no_provider_times_out(self):
        gate = SafetyGate(SafetyConfig(confirmation_timeout=0.05))
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_failing_provider_denies(self):
        class Broken:
            async def request_confirmation(self, confirmation):
                raise RuntimeError("UI crashed")

        gate = SafetyGate(provider=Broken())
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.DENIED
        assert confirmation.confirmed_by == "system"

    @pytest.mark.asyncio
    async def test_external_confirm(self, events):
        gate = SafetyGate(SafetyConfig(confirmation_timeout=5), events=events)

        def approve(event):
            if event["event_type"] == EVENT_APPROVAL_NEEDED:
                asyncio.get_running_loop().call_soon(gate.confirm, event["action_id"], "bob")

        events.add_listener(approve)
        confirmation = await gate.request_confirmation(CALL, ACTION, "req_1", "u1")
        assert confirmation.state == ConfirmationState.CONFIRMED
        assert confirmation.confirmed_by == "bob"

    @pytest.mark.asyncio
    async def test_pending_actions_visible_while_waiting(self):
        gate = SafetyGate(SafetyConfig(confirmation_timeout=5))
        task = asyncio.create_task(gate.request_confirmation(CALL, ACTION, "req_1", "u1"))
        await asyncio.sleep(0)
        pending = gate.pending_actions("u1")
        assert len(pending) == 1
        assert gate.deny(pending[0]["action_id"], "u1", "no thanks") is True
        confirmation = await task
        assert confirmation.state == ConfirmationState.DENIED
        assert confirmation.reason == "no thanks"
        assert gate.confirm(confirmation.action_id) is False

    @pytest.mark.asyncio
    async def test_injected_empty_store_is_used(self):
        store = ConfirmationStore(ttl_seconds=30)
        gate = SafetyGate(SafetyConfig(confirmation_timeout=5), store=store)
        assert gate.store is store
        task = asyncio.create_task(gate.request_confirmation(CALL, ACTION, "req_1", "u1"))
        await asyncio.sleep(0)
        assert len(store) == 1
        gate.deny(store.pending("u1")[0].action_id, "u1")
        await task
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_max_pending_denies_new_requests(self):
        gate = SafetyGate(SafetyConfig(confirmation_timeout=5, max_pending_actions=1))
        first = asyncio.create_task(gate.request_confirmation(CALL, ACTION, "req_1", "u1"))
        await asyncio.sleep(0)
        second = await gate.request_confirmation(CALL, ACTION, "req_2", "u1")
        assert second.state == ConfirmationState.DENIED
        assert second.reason == "Too many pending actions"
        gate.deny(gate.pending_actions()[0]["action_id"])
        assert (await first).state == ConfirmationState.DENIED

    def test_unknown_action_id(self):
        gate = SafetyGate()
        assert gate.confirm("act_missing") is False
        assert gate.deny("act_missing") is False
