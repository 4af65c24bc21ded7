"""Tool-call recovery and validation.

A model reply may carry at most one action request, shaped as
``{"tool_name": ..., "parameters": {...}}``. Native function-call
payloads are used when the backend returns them. Otherwise the reply
text is searched, fenced ```json blocks first and bare JSON objects
second. The bare-object path also picks up JSON quoted in ordinary prose
when it has the right shape; that trade-off is accepted and tested.
Partial or malformed objects mean "no action".

Validated calls become one of three frozen action types:
WriteFileAction | InstallPackageAction | ExecuteCommandAction.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union, assert_never

from gurulo.errors import MultipleToolCallsError, ToolValidationError

logger = logging.getLogger(__name__)


class ToolName(Enum):
    WRITE_FILE = "writeFile"
    INSTALL_PACKAGE = "installPackage"
    EXECUTE_COMMAND = "executeCommand"


TOOL_ALIASES = {
    "executeShellCommand": ToolName.EXECUTE_COMMAND,
    "executeTerminalCommand": ToolName.EXECUTE_COMMAND,
}

PLACEHOLDER_PATHS = {"<path>", "<file>", "<filepath>", "path/to/file", "filename", "file.ext"}

FENCED_BLOCK = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.DOTALL | re.IGNORECASE)

_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class ToolCall:
    """An action request recovered from model output, not yet validated."""
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None

    @property
    def kind(self) -> ToolName | None:
        return resolve_tool_name(self.tool_name)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tool_name": self.tool_name, "parameters": dict(self.parameters)}
        if self.idempotency_key:
            data["idempotency_key"] = self.idempotency_key
        return data


@dataclass(frozen=True)
class WriteFileAction:
    kind: ClassVar[ToolName] = ToolName.WRITE_FILE
    file_path: str
    content: str


@dataclass(frozen=True)
class InstallPackageAction:
    kind: ClassVar[ToolName] = ToolName.INSTALL_PACKAGE
    package_name: str


@dataclass(frozen=True)
class ExecuteCommandAction:
    kind: ClassVar[ToolName] = ToolName.EXECUTE_COMMAND
    command: str
    args: tuple[str, ...] = ()


Action = Union[WriteFileAction, InstallPackageAction, ExecuteCommandAction]


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    error: str | None = None
    action: Action | None = None


def resolve_tool_name(name: Any) -> ToolName | None:
    """Map a tool name (or accepted alias) to ToolName; None if not allowed."""
    if not isinstance(name, str):
        return None
    if name in TOOL_ALIASES:
        return TOOL_ALIASES[name]
    try:
        return ToolName(name)
    except ValueError:
        return None


def _as_tool_call(obj: Any) -> ToolCall | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("tool_name")
    params = obj.get("parameters")
    if not isinstance(name, str) or not name.strip() or not isinstance(params, dict):
        return None
    key = obj.get("idempotency_key") or obj.get("idempotencyKey")
    return ToolCall(
        tool_name=name.strip(),
        parameters=params,
        idempotency_key=key if isinstance(key, str) and key else None,
    )


def _scan_objects(text: str) -> list[Any]:
    """Every decodable JSON object in `text`, outermost first."""
    found = []
    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            break
        try:
            obj, end = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pos = start + 1
            continue
        if _as_tool_call(obj) is not None:
            found.append(obj)
            pos = end
        else:
            pos = start + 1
    return found


def _unique(calls: list[ToolCall]) -> list[ToolCall]:
    seen = set()
    unique = []
    for call in calls:
        key = json.dumps(call.to_dict(), sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            unique.append(call)
    return unique


def _single(calls: list[ToolCall]) -> ToolCall | None:
    calls = _unique(calls)
    if len(calls) > 1:
        names = ", ".join(c.tool_name for c in calls)
        raise MultipleToolCallsError(
            f"Only one action per turn is supported; found {len(calls)} ({names})"
        )
    return calls[0] if calls else None


def extract_tool_call(text: Any) -> ToolCall | None:
    """Recover the single tool call in a model reply, if any.

    Raises MultipleToolCallsError when two or more distinct calls appear.
    """
    if not isinstance(text, str) or "tool_name" not in text:
        return None

    calls: list[ToolCall] = []
    remainder = text
    for block in FENCED_BLOCK.findall(text):
        try:
            data = json.loads(block.strip())
        except json.JSONDecodeError:
            continue
        items = data if isinstance(data, list) else [data]
        parsed = [c for c in (_as_tool_call(item) for item in items) if c is not None]
        if parsed:
            calls.extend(parsed)
            remainder = remainder.replace(block, " ")

    calls.extend(_as_tool_call(obj) for obj in _scan_objects(remainder))
    call = _single(calls)
    if call is not None:
        logger.debug(f"Extracted tool call: {call.tool_name}")
    return call


def tool_call_from_native(native_calls: list[dict[str, Any]]) -> ToolCall | None:
    """Build a ToolCall from backend function-call payloads."""
    calls = []
    for native in native_calls or []:
        function = native.get("function") if isinstance(native, dict) else None
        if not isinstance(function, dict):
            continue
        arguments = function.get("arguments") or "{}"
        try:
            params = json.loads(arguments) if isinstance(arguments, str) else arguments
        except json.JSONDecodeError:
            logger.debug(f"Ignoring native call with malformed arguments: {arguments[:80]}")
            continue
        call = _as_tool_call({"tool_name": function.get("name"), "parameters": params})
        if call is not None:
            calls.append(call)
    return _single(calls)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_placeholder_path(path: str) -> bool:
    stripped = path.strip()
    if "..." in stripped or "…" in stripped:
        return True
    if stripped.startswith("<") and stripped.endswith(">"):
        return True
    lowered = stripped.lower()
    return lowered in PLACEHOLDER_PATHS or lowered.startswith("path/to/")


def _fail(message: str) -> ValidationResult:
    return ValidationResult(ok=False, error=message)


def validate_tool_call(call: ToolCall) -> ValidationResult:
    """Check the tool name, then that tool's parameters."""
    kind = resolve_tool_name(call.tool_name)
    if kind is None:
        allowed = ", ".join(t.value for t in ToolName)
        return _fail(f"Unknown tool '{call.tool_name}'. Allowed: {allowed}")

    params = call.parameters if isinstance(call.parameters, dict) else {}
    match kind:
        case ToolName.WRITE_FILE:
            file_path = params.get("filePath")
            content = params.get("content")
            if not _non_empty_str(file_path):
                return _fail("writeFile requires a non-empty 'filePath'")
            if _is_placeholder_path(file_path):
                return _fail(f"writeFile 'filePath' looks like a placeholder: {file_path}")
            if not _non_empty_str(content):
                return _fail("writeFile requires non-empty 'content'")
            return ValidationResult(ok=True, action=WriteFileAction(file_path=file_path.strip(), content=content))
        case ToolName.INSTALL_PACKAGE:
            package_name = params.get("packageName")
            if not _non_empty_str(package_name):
                return _fail("installPackage requires a non-empty 'packageName'")
            return ValidationResult(ok=True, action=InstallPackageAction(package_name=package_name.strip()))
        case ToolName.EXECUTE_COMMAND:
            command = params.get("command")
            args = params.get("args", [])
            if not _non_empty_str(command):
                return _fail("executeCommand requires a non-empty 'command'")
            if args is None:
                args = []
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                return _fail("executeCommand 'args' must be a list of strings")
            return ValidationResult(
                ok=True,
                action=ExecuteCommandAction(command=command.strip(), args=tuple(args)),
            )
        case _:
            assert_never(kind)


def require_valid(call: ToolCall) -> Action:
    """Validated action for `call`, or ToolValidationError."""
    result = validate_tool_call(call)
    if not result.ok or result.action is None:
        raise ToolValidationError(result.error or "Invalid tool call", tool_name=call.tool_name)
    return result.action


def describe_action(action: Action) -> str:
    """One-line human description, used in confirmation prompts."""
    match action:
        case WriteFileAction(file_path=path, content=content):
            return f"Write {len(content.encode('utf-8'))} bytes to {path}"
        case InstallPackageAction(package_name=name):
            return f"Install package {name}"
        case ExecuteCommandAction(command=command, args=args):
            return f"Run: {' '.join((command, *args))}"
        case _:
            assert_never(action)
