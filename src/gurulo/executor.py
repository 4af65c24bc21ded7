"""Sandboxed execution of confirmed actions.

Three action kinds only:
  writeFile       - write inside the project root (symlinks resolved first)
  installPackage  - `<package manager> install <name>` with a strict name pattern
  executeCommand  - an allow-listed program with vetted arguments

Processes are spawned directly (never through a shell) with a hard
timeout that kills the child. Every attempt lands in the audit log.
Safety violations and runtime failures both come back as
ExecutionResult(success=False); only a missing or reused confirmation
raises.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, assert_never

from gurulo.audit_log import AuditEntry, AuditLog, tool_call_fingerprint
from gurulo.config import ExecutorConfig
from gurulo.errors import ActionBlockedError, UnconfirmedActionError
from gurulo.events import EVENT_TOOL_EXECUTED, EventCollector
from gurulo.safety_gate import ActionConfirmation
from gurulo.tool_calls import (
    Action,
    ExecuteCommandAction,
    InstallPackageAction,
    WriteFileAction,
)

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = {"ls", "pwd", "echo", "wc", "head", "tail", "cat", "git"}

BLOCKED_COMMANDS = {
    "rm", "rmdir", "mv", "cp", "sudo", "su", "chmod", "chown", "curl", "wget",
    "ssh", "scp", "rsync", "dd", "fdisk", "mkfs", "mount", "umount",
    "kill", "killall", "pkill", "systemctl", "shutdown", "reboot",
    "python", "python3", "pip", "pip3", "docker", "bash", "sh", "zsh",
    "vi", "vim", "nano", "emacs", "find", "grep", "xargs", "env", "eval",
    "node", "npm", "npx", "pnpm", "yarn",
}

# First argument must name one of these; global options never reach git.
READ_ONLY_SUBCOMMANDS = {
    "git": {"status", "log", "diff", "show", "branch", "rev-parse", "ls-files", "blame"},
}

BLOCKED_OPTIONS = {
    "git": {
        "-d", "-D", "-m", "-M", "-c", "-C", "-f", "--delete", "--move", "--copy",
        "--force", "--set-upstream-to", "--unset-upstream", "--edit-description",
        "--output", "--ext-diff", "--textconv",
    },
}

# Subcommands whose positional arguments would create or modify refs.
FLAGS_ONLY_SUBCOMMANDS = {"git": {"branch"}}

SHELL_METACHARACTERS = set(";|&><`$(){}\n\r")

SENSITIVE_MARKERS = (".env", "passwd", "shadow", ".ssh", "id_rsa", "id_ed25519")

UNSAFE_ROOTS = ("/etc", "/usr", "/bin", "/sbin", "/sys", "/proc", "/dev", "/boot", "/root")

DENIED_PATH_PARTS = {"node_modules", ".git", ".venv", "venv", "__pycache__", ".ssh"}

PACKAGE_NAME_PATTERN = re.compile(
    r"^(@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*(@[\w.^~<>=-]+)?$", re.IGNORECASE
)
MAX_PACKAGE_NAME_LENGTH = 214

PACKAGE_MANAGERS = {
    "npm": ["npm", "install"],
    "pnpm": ["pnpm", "add"],
    "yarn": ["yarn", "add"],
    "pip": ["pip", "install"],
}

TRUNCATION_MARKER = "... (truncated)"


@dataclass
class ExecutionResult:
    """Outcome of one action."""
    success: bool
    result: str | None = None
    error: str | None = None
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def truncate_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def check_write_path(project_root: Path, file_path: str) -> Path:
    """Resolved target for a write, or ActionBlockedError.

    Symlinks in the parent chain (and the target itself) are resolved
    before the containment check.
    """
    if not file_path or "\x00" in file_path:
        raise ActionBlockedError("Empty or invalid file path")

    root = Path(os.path.realpath(project_root))
    raw = Path(file_path).expanduser()
    if raw.is_absolute() and any(
        str(raw) == prefix or str(raw).startswith(prefix + "/") for prefix in UNSAFE_ROOTS
    ):
        raise ActionBlockedError(f"System path is not writable: {file_path}")

    candidate = raw if raw.is_absolute() else root / raw
    resolved = Path(os.path.realpath(candidate))
    if not _is_within(resolved, root) or resolved == root:
        raise ActionBlockedError(f"Path escapes the project root: {file_path}")

    relative = resolved.relative_to(root)
    for part in relative.parts:
        if part in DENIED_PATH_PARTS:
            raise ActionBlockedError(f"Writes into '{part}' are not allowed: {file_path}")
    name = relative.name.lower()
    if name.startswith(".env") or any(marker in name for marker in ("passwd", "shadow", "id_rsa")):
        raise ActionBlockedError(f"Sensitive file is not writable: {file_path}")
    return resolved


def check_package_name(name: str) -> str:
    """The package name if it is safe to pass to a package manager."""
    name = (name or "").strip()
    if not name:
        raise ActionBlockedError("Empty package name")
    if len(name) > MAX_PACKAGE_NAME_LENGTH:
        raise ActionBlockedError(f"Package name longer than {MAX_PACKAGE_NAME_LENGTH} characters")
    if any(ch in SHELL_METACHARACTERS for ch in name) or any(ch.isspace() for ch in name):
        raise ActionBlockedError(f"Package name contains forbidden characters: {name}")
    if not PACKAGE_NAME_PATTERN.match(name):
        raise ActionBlockedError(f"Invalid package name: {name}")
    return name


def check_command(command: str, args: tuple[str, ...] | list[str] = ()) -> list[str]:
    """Argv for an allowed command, or ActionBlockedError. Deny-list wins."""
    parts = (command or "").split()
    if not parts:
        raise ActionBlockedError("Empty command")
    program, argv = parts[0], [*parts[1:], *args]

    if any(ch in SHELL_METACHARACTERS for ch in program) or "/" in program:
        raise ActionBlockedError(f"Invalid command: {program}")
    if program in BLOCKED_COMMANDS:
        raise ActionBlockedError(f"Command '{program}' is blocked")
    if program not in ALLOWED_COMMANDS:
        raise ActionBlockedError(f"Command '{program}' is not in the allow-list")

    for arg in argv:
        if any(ch in SHELL_METACHARACTERS for ch in arg):
            raise ActionBlockedError(f"Argument contains shell metacharacters: {arg}")
        if arg.startswith("/") or arg.startswith("~"):
            raise ActionBlockedError(f"Absolute paths are not allowed: {arg}")
        if ".." in arg:
            raise ActionBlockedError(f"Parent directory references are not allowed: {arg}")
        if any(marker in arg.lower() for marker in SENSITIVE_MARKERS):
            raise ActionBlockedError(f"Sensitive path in arguments: {arg}")
    _check_read_only(program, argv)
    return [program, *argv]


def _check_read_only(program: str, argv: list[str]) -> None:
    """Restrict multi-purpose tools to their inspection subcommands."""
    allowed = READ_ONLY_SUBCOMMANDS.get(program)
    if allowed is None:
        return
    if not argv or argv[0] not in allowed:
        raise ActionBlockedError(
            f"'{program}' is limited to: {', '.join(sorted(allowed))}"
        )
    subcommand, options = argv[0], argv[1:]
    blocked = BLOCKED_OPTIONS.get(program, set())
    for arg in options:
        if arg.split("=", 1)[0] in blocked:
            raise ActionBlockedError(f"'{program} {subcommand}' option is blocked: {arg}")
    if subcommand in FLAGS_ONLY_SUBCOMMANDS.get(program, set()) and any(
        not arg.startswith("-") for arg in options
    ):
        raise ActionBlockedError(f"'{program} {subcommand}' only accepts listing options")


class ActionExecutor:
    """Runs confirmed actions inside the project root."""

    def __init__(
        self,
        project_root: str | Path,
        config: ExecutorConfig | None = None,
        audit_log: AuditLog | None = None,
        events: EventCollector | None = None,
    ):
        self.project_root = Path(os.path.realpath(project_root))
        self.config = config or ExecutorConfig()
        if audit_log is None:
            audit_log = AuditLog(capacity=self.config.audit_capacity)
        self.audit_log = audit_log
        self.events = events if events is not None else EventCollector()

    async def execute(
        self, confirmation: ActionConfirmation, request_id: str | None = None
    ) -> ExecutionResult:
        """Execute a confirmed action exactly once.

        Raises UnconfirmedActionError for anything that is not a confirmed,
        unconsumed confirmation. Everything else is an ExecutionResult.
        """
        if not isinstance(confirmation, ActionConfirmation):
            raise UnconfirmedActionError("execute() requires an ActionConfirmation")
        confirmation.consume()
        request_id = request_id or confirmation.request_id
        tool_call = confirmation.tool_call

        fingerprint = tool_call_fingerprint(tool_call.tool_name, dict(tool_call.parameters))
        recorded = self.audit_log.find_by_idempotency_key(tool_call.idempotency_key, fingerprint)
        if recorded is None and self.audit_log.find_by_idempotency_key(tool_call.idempotency_key):
            logger.info(
                f"[{request_id}] Idempotency key {tool_call.idempotency_key} was used for a "
                f"different call; running {tool_call.tool_name} as a new action"
            )
        if recorded is not None:
            logger.info(
                f"[{request_id}] Replaying {tool_call.tool_name} for idempotency key "
                f"{tool_call.idempotency_key}"
            )
            return ExecutionResult(
                success=recorded.success,
                result=recorded.result,
                error=recorded.error,
                duration_ms=recorded.duration_ms,
                metadata={**recorded.metadata, "replayed": True, "original_action_id": recorded.action_id},
            )

        start = time.monotonic()
        try:
            result = await self._dispatch(confirmation.action)
        except ActionBlockedError as e:
            logger.warning(f"[{request_id}] Blocked {tool_call.tool_name}: {e}")
            result = ExecutionResult(success=False, error=f"Blocked: {e}", metadata={"blocked": True})
        except asyncio.TimeoutError:
            logger.warning(f"[{request_id}] {tool_call.tool_name} timed out")
            result = ExecutionResult(
                success=False, error=f"{tool_call.tool_name} timed out", metadata={"timeout": True}
            )
        except Exception as e:
            logger.error(f"[{request_id}] {tool_call.tool_name} failed: {e}")
            result = ExecutionResult(success=False, error=str(e) or e.__class__.__name__)
        result.duration_ms = int((time.monotonic() - start) * 1000)

        await self.audit_log.append(AuditEntry(
            request_id=request_id,
            action_id=confirmation.action_id,
            tool_name=tool_call.tool_name,
            parameters=self._audit_parameters(tool_call.parameters),
            success=result.success,
            result=result.result,
            error=result.error,
            duration_ms=result.duration_ms,
            idempotency_key=tool_call.idempotency_key,
            fingerprint=fingerprint,
            user_id=confirmation.user_id,
            metadata=result.metadata,
        ))
        self.events.emit(
            EVENT_TOOL_EXECUTED,
            f"{tool_call.tool_name} {'succeeded' if result.success else 'failed'}",
            request_id=request_id,
            action_id=confirmation.action_id,
            metadata={"success": result.success, "duration_ms": result.duration_ms},
        )
        logger.info(
            f"[{request_id}] {tool_call.tool_name} "
            f"{'succeeded' if result.success else 'failed'} in {result.duration_ms}ms"
        )
        return result

    def _audit_parameters(self, parameters: dict[str, Any]) -> dict[str, Any]:
        limit = self.config.max_audit_param_chars
        return {
            key: truncate_output(value, limit) if isinstance(value, str) else value
            for key, value in parameters.items()
        }

    async def _dispatch(self, action: Action) -> ExecutionResult:
        match action:
            case WriteFileAction():
                return await self._write_file(action.file_path, action.content)
            case InstallPackageAction():
                return await self._install_package(action.package_name)
            case ExecuteCommandAction():
                return await self._execute_command(action.command, action.args)
            case _:
                assert_never(action)

    async def _write_file(self, file_path: str, content: str) -> ExecutionResult:
        target = check_write_path(self.project_root, file_path)

        def _write() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode("utf-8")
            target.write_bytes(data)
            return len(data)

        written = await asyncio.wait_for(asyncio.to_thread(_write), timeout=self.config.write_timeout)
        relative = target.relative_to(self.project_root).as_posix()
        return ExecutionResult(
            success=True,
            result=f"Wrote {written} bytes to {relative}",
            metadata={"path": relative, "bytes": written},
        )

    async def _install_package(self, package_name: str) -> ExecutionResult:
        name = check_package_name(package_name)
        manager = PACKAGE_MANAGERS.get(self.config.package_manager)
        if manager is None:
            raise ActionBlockedError(f"Unsupported package manager: {self.config.package_manager}")
        outcome = await self._run([*manager, name], self.config.install_timeout)
        return self._from_process(outcome, f"Installed {name}")

    async def _execute_command(self, command: str, args: tuple[str, ...] = ()) -> ExecutionResult:
        argv = check_command(command, args)
        outcome = await self._run(argv, self.config.command_timeout)
        return self._from_process(outcome, None)

    async def _run(self, argv: list[str], timeout: float) -> dict[str, Any]:
        """Spawn argv in the project root with a hard timeout."""
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.project_root,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Killed '{argv[0]}' after {timeout:.0f}s timeout")
            raise
        return {
            "argv": argv,
            "exit_code": proc.returncode,
            "stdout": stdout.decode("utf-8", errors="replace").strip(),
            "stderr": stderr.decode("utf-8", errors="replace").strip(),
        }

    def _from_process(self, outcome: dict[str, Any], success_text: str | None) -> ExecutionResult:
        stdout = truncate_output(outcome["stdout"], self.config.max_stdout_chars)
        stderr = truncate_output(outcome["stderr"], self.config.max_stderr_chars)
        metadata = {"command": " ".join(outcome["argv"]), "exit_code": outcome["exit_code"]}
        if stderr:
            metadata["stderr"] = stderr
        if outcome["exit_code"] != 0:
            return ExecutionResult(
                success=False,
                result=stdout or None,
                error=stderr or f"Exited with code {outcome['exit_code']}",
                metadata=metadata,
            )
        return ExecutionResult(success=True, result=stdout or success_text or "(no output)", metadata=metadata)
