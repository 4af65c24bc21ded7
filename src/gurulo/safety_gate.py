"""Safety gate: human confirmation before any side effect.

Every validated action moves through one state machine:

    PENDING -> CONFIRMED | DENIED | TIMED_OUT

Pending confirmations live in a ConfirmationStore keyed by
(user_id, conversation_id) and expire after a TTL. The waiting request
is released by confirm()/deny(), by a ConfirmationProvider answer, or by
the confirmation timeout. A provider that raises counts as a denial.

Severity is informational. No severity lets an action skip confirmation.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Protocol, assert_never

from gurulo.config import SafetyConfig
from gurulo.errors import UnconfirmedActionError
from gurulo.events import (
    EVENT_ACTION_CONFIRMED,
    EVENT_ACTION_DENIED,
    EVENT_ACTION_TIMEOUT,
    EVENT_APPROVAL_NEEDED,
    EventCollector,
)
from gurulo.tool_calls import (
    Action,
    ExecuteCommandAction,
    InstallPackageAction,
    ToolCall,
    WriteFileAction,
    describe_action,
)

logger = logging.getLogger(__name__)


class ConfirmationState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


CRITICAL_PATH_MARKERS = (".env", "passwd", "shadow", ".ssh", "id_rsa")
HIGH_PATH_NAMES = {
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "dockerfile", "docker-compose.yml", "docker-compose.yaml", "pyproject.toml",
}
CODE_EXTENSIONS = {
    ".js", ".jsx", ".ts", ".tsx", ".py", ".java", ".c", ".cpp", ".php", ".rb",
    ".go", ".rs", ".swift", ".kt", ".vue", ".html", ".css", ".scss", ".md",
    ".txt", ".json", ".yml", ".yaml",
}
SUSPICIOUS_PACKAGE_WORDS = ("sudo", "admin", "exploit", "hack")
MUTATING_COMMANDS = {"npm": {"install", "ci", "update", "add", "remove", "uninstall", "publish"}}
READ_ONLY_COMMANDS = {"ls", "pwd", "echo", "wc", "head", "tail", "cat"}


def classify_severity(action: Action) -> Severity:
    """Risk label shown alongside the confirmation prompt."""
    match action:
        case WriteFileAction(file_path=path):
            lowered = path.lower()
            if any(marker in lowered for marker in CRITICAL_PATH_MARKERS):
                return Severity.CRITICAL
            name = PurePosixPath(lowered).name
            if name in HIGH_PATH_NAMES:
                return Severity.HIGH
            if PurePosixPath(lowered).suffix in CODE_EXTENSIONS:
                return Severity.LOW
            return Severity.MEDIUM
        case InstallPackageAction(package_name=name):
            if any(word in name.lower() for word in SUSPICIOUS_PACKAGE_WORDS):
                return Severity.CRITICAL
            return Severity.MEDIUM
        case ExecuteCommandAction(command=command, args=args):
            if command in READ_ONLY_COMMANDS:
                return Severity.LOW
            if args and args[0] in MUTATING_COMMANDS.get(command, ()):
                return Severity.HIGH
            if command == "git" and args and args[0] in ("push", "reset", "clean", "rebase"):
                return Severity.HIGH
            return Severity.MEDIUM
        case _:
            assert_never(action)


@dataclass
class ActionConfirmation:
    """One action awaiting (or past) a human decision."""
    tool_call: ToolCall
    action: Action
    request_id: str
    user_id: str
    conversation_id: str = "default"
    severity: Severity = Severity.MEDIUM
    action_id: str = field(default_factory=lambda: f"act_{uuid.uuid4().hex[:12]}")
    state: ConfirmationState = ConfirmationState.PENDING
    created_at: float = field(default_factory=time.time)
    confirmed_by: str | None = None
    confirmed_at: float | None = None
    reason: str | None = None
    _consumed: bool = field(default=False, repr=False)

    @property
    def is_confirmed(self) -> bool:
        return self.state == ConfirmationState.CONFIRMED

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        """Claim this confirmation for execution. Allowed once, only when confirmed."""
        if self.state != ConfirmationState.CONFIRMED:
            raise UnconfirmedActionError(
                f"Action {self.action_id} is {self.state.value}, not confirmed"
            )
        if self._consumed:
            raise UnconfirmedActionError(f"Action {self.action_id} was already executed")
        self._consumed = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "tool_name": self.tool_call.tool_name,
            "description": describe_action(self.action),
            "severity": self.severity.value,
            "state": self.state.value,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "created_at": self.created_at,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": self.confirmed_at,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ConfirmationDecision:
    confirmed: bool
    confirmed_by: str | None = None
    reason: str | None = None


class ConfirmationProvider(Protocol):
    async def request_confirmation(self, confirmation: ActionConfirmation) -> ConfirmationDecision: ...


class ConfirmationStore:
    """Pending confirmations keyed by (user_id, conversation_id), with TTL."""

    def __init__(self, ttl_seconds: float = 600.0, clock=time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], dict[str, ActionConfirmation]] = {}
        self._index: dict[str, tuple[str, str]] = {}

    def add(self, confirmation: ActionConfirmation) -> None:
        key = (confirmation.user_id, confirmation.conversation_id)
        self._entries.setdefault(key, {})[confirmation.action_id] = confirmation
        self._index[confirmation.action_id] = key

    def get(self, action_id: str) -> ActionConfirmation | None:
        key = self._index.get(action_id)
        if key is None:
            return None
        return self._entries.get(key, {}).get(action_id)

    def remove(self, action_id: str) -> ActionConfirmation | None:
        key = self._index.pop(action_id, None)
        if key is None:
            return None
        bucket = self._entries.get(key, {})
        confirmation = bucket.pop(action_id, None)
        if not bucket:
            self._entries.pop(key, None)
        return confirmation

    def for_session(self, user_id: str, conversation_id: str) -> list[ActionConfirmation]:
        return list(self._entries.get((user_id, conversation_id), {}).values())

    def pending(self, user_id: str | None = None) -> list[ActionConfirmation]:
        result = []
        for (owner, _), bucket in self._entries.items():
            if user_id is not None and owner != user_id:
                continue
            result.extend(c for c in bucket.values() if c.state == ConfirmationState.PENDING)
        return sorted(result, key=lambda c: c.created_at)

    def purge_expired(self) -> list[ActionConfirmation]:
        """Drop entries older than the TTL and return them."""
        cutoff = self._clock() - self.ttl_seconds
        expired = [
            c for bucket in self._entries.values() for c in bucket.values()
            if c.created_at < cutoff
        ]
        for confirmation in expired:
            self.remove(confirmation.action_id)
        return expired

    def __len__(self) -> int:
        return len(self._index)


class SafetyGate:
    """Requests and awaits confirmation for validated actions."""

    def __init__(
        self,
        config: SafetyConfig | None = None,
        provider: ConfirmationProvider | None = None,
        events: EventCollector | None = None,
        store: ConfirmationStore | None = None,
    ):
        self.config = config or SafetyConfig()
        self.provider = provider
        self.events = events if events is not None else EventCollector()
        self.store = store if store is not None else ConfirmationStore(
            ttl_seconds=self.config.pending_ttl_seconds
        )
        self._waiters: dict[str, asyncio.Future] = {}
        self._stats = {state.value: 0 for state in ConfirmationState if state != ConfirmationState.PENDING}

    async def request_confirmation(
        self,
        tool_call: ToolCall,
        action: Action,
        request_id: str,
        user_id: str,
        conversation_id: str = "default",
    ) -> ActionConfirmation:
        """Register the action and wait until it is resolved.

        Always returns a resolved ActionConfirmation (never PENDING).
        """
        confirmation = ActionConfirmation(
            tool_call=tool_call,
            action=action,
            request_id=request_id,
            user_id=user_id,
            conversation_id=conversation_id,
            severity=classify_severity(action),
        )

        self.purge_expired()
        if len(self.store.pending()) >= self.config.max_pending_actions:
            logger.warning(
                f"[{request_id}] Too many pending actions ({self.config.max_pending_actions}); "
                f"denying {confirmation.action_id}"
            )
            self._finish(confirmation, ConfirmationState.DENIED, "system", "Too many pending actions")
            return confirmation

        self.store.add(confirmation)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[confirmation.action_id] = waiter
        self.events.emit(
            EVENT_APPROVAL_NEEDED,
            f"{describe_action(action)} ({confirmation.severity.value})",
            request_id=request_id,
            action_id=confirmation.action_id,
            metadata=confirmation.to_dict(),
        )
        logger.info(
            f"[{request_id}] Awaiting confirmation for {confirmation.action_id}: "
            f"{describe_action(action)} [{confirmation.severity.value}]"
        )

        provider_task = None
        if self.provider is not None:
            provider_task = asyncio.create_task(self._ask_provider(confirmation))

        try:
            await asyncio.wait_for(waiter, timeout=self.config.confirmation_timeout)
        except asyncio.TimeoutError:
            self._finish(
                confirmation,
                ConfirmationState.TIMED_OUT,
                None,
                f"No decision within {self.config.confirmation_timeout:.0f}s",
            )
        finally:
            if provider_task is not None and not provider_task.done():
                provider_task.cancel()
            self._waiters.pop(confirmation.action_id, None)
            self.store.remove(confirmation.action_id)

        return confirmation

    async def _ask_provider(self, confirmation: ActionConfirmation) -> None:
        try:
            decision = await self.provider.request_confirmation(confirmation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Confirmation provider failed for {confirmation.action_id}: {e}")
            self.deny(confirmation.action_id, "system", f"Confirmation provider failed: {e}")
            return
        if decision.confirmed:
            self.confirm(confirmation.action_id, decision.confirmed_by or "user")
        else:
            self.deny(confirmation.action_id, decision.confirmed_by or "user", decision.reason or "Declined")

    def confirm(self, action_id: str, confirmed_by: str = "user") -> bool:
        """Approve a pending action. False if unknown or already resolved."""
        confirmation = self.store.get(action_id)
        if confirmation is None or confirmation.state != ConfirmationState.PENDING:
            return False
        self._finish(confirmation, ConfirmationState.CONFIRMED, confirmed_by, None)
        return True

    def deny(self, action_id: str, denied_by: str = "user", reason: str | None = None) -> bool:
        """Reject a pending action. False if unknown or already resolved."""
        confirmation = self.store.get(action_id)
        if confirmation is None or confirmation.state != ConfirmationState.PENDING:
            return False
        self._finish(confirmation, ConfirmationState.DENIED, denied_by, reason or "Denied")
        return True

    def _finish(
        self,
        confirmation: ActionConfirmation,
        state: ConfirmationState,
        actor: str | None,
        reason: str | None,
    ) -> None:
        confirmation.state = state
        confirmation.confirmed_by = actor
        confirmation.confirmed_at = time.time()
        confirmation.reason = reason
        self._stats[state.value] += 1

        waiter = self._waiters.get(confirmation.action_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(state)

        event_type = {
            ConfirmationState.CONFIRMED: EVENT_ACTION_CONFIRMED,
            ConfirmationState.DENIED: EVENT_ACTION_DENIED,
            ConfirmationState.TIMED_OUT: EVENT_ACTION_TIMEOUT,
        }[state]
        self.events.emit(
            event_type,
            f"{confirmation.tool_call.tool_name} {state.value}" + (f": {reason}" if reason else ""),
            request_id=confirmation.request_id,
            action_id=confirmation.action_id,
            metadata={"actor": actor, "severity": confirmation.severity.value},
        )
        logger.info(f"[{confirmation.request_id}] Action {confirmation.action_id} {state.value}")

    def pending_actions(self, user_id: str | None = None) -> list[dict[str, Any]]:
        """Pending confirmations for front ends, oldest first."""
        return [c.to_dict() for c in self.store.pending(user_id)]

    def purge_expired(self) -> int:
        """Time out and drop confirmations older than the store TTL."""
        expired = self.store.purge_expired()
        for confirmation in expired:
            if confirmation.state == ConfirmationState.PENDING:
                self._finish(confirmation, ConfirmationState.TIMED_OUT, None, "Expired")
        return len(expired)

    def get_status(self) -> dict[str, Any]:
        """Gate status summary."""
        return {
            "pending": len(self.store.pending()),
            "max_pending_actions": self.config.max_pending_actions,
            "confirmation_timeout": self.config.confirmation_timeout,
            "resolved": dict(self._stats),
        }
