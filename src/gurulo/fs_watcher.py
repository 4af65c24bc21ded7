"""File system watcher feeding "recently changed files" into context.

Uses a polling-based approach (cross-platform) with configurable
debounce to coalesce rapid saves. Changes are kept newest-first in a
bounded list; before any change has been observed the feed falls back
to the most recently modified files on disk.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Default debounce window in seconds to coalesce rapid changes
DEBOUNCE_SECONDS = 2.0

MAX_CHANGE_RECORDS = 200

# File extensions to monitor
WATCHED_EXTENSIONS = {
    ".py", ".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs", ".go", ".java",
    ".rb", ".php", ".c", ".cpp", ".h",
    ".json", ".yaml", ".yml", ".toml",
    ".html", ".css", ".scss", ".md",
    ".sql", ".sh",
}

# Directories to ignore
IGNORED_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    "dist", "build", ".next", "coverage",
}


@dataclass(frozen=True)
class ChangeRecord:
    """A file that changed, relative to the project root."""
    path: str
    timestamp: float
    change_type: str = "modified"


def _should_watch(path: Path) -> bool:
    """Check if a file should be watched."""
    if path.suffix not in WATCHED_EXTENSIONS:
        return False
    if path.name.startswith(".env"):
        return False
    for part in path.parts:
        if part in IGNORED_DIRS:
            return False
    return True


class FileSystemWatcher:
    """Watches a project directory and records recent file changes.

    Uses polling rather than OS-specific APIs for portability.
    """

    def __init__(
        self,
        project_path: str | Path,
        poll_interval: float = 5.0,
        debounce: float = DEBOUNCE_SECONDS,
    ):
        self.project_path = Path(project_path)
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._snapshots: dict[str, float] = {}
        self._pending_changes: dict[str, tuple[float, str]] = {}
        self._changes: list[ChangeRecord] = []
        self._running = False
        self._task: asyncio.Task | None = None
        self._change_callbacks: list = []

    def _scan_files(self) -> dict[str, float]:
        """Scan project directory and map relative path -> mtime."""
        snapshots: dict[str, float] = {}
        try:
            for root, dirs, files in os.walk(self.project_path):
                dirs[:] = [d for d in dirs if d not in IGNORED_DIRS]
                for name in files:
                    path = Path(root) / name
                    if not _should_watch(path):
                        continue
                    try:
                        key = path.relative_to(self.project_path).as_posix()
                        snapshots[key] = path.stat().st_mtime
                    except (OSError, ValueError):
                        continue
        except OSError as e:
            logger.warning(f"File watcher scan failed: {e}")
        return snapshots

    def _detect_changes(self, new_snapshots: dict[str, float]) -> dict[str, str]:
        """Compare snapshots: {relative_path: 'created' | 'modified' | 'deleted'}."""
        changes: dict[str, str] = {}
        old_keys = set(self._snapshots)
        new_keys = set(new_snapshots)

        for key in old_keys - new_keys:
            changes[key] = "deleted"
        for key in new_keys - old_keys:
            changes[key] = "created"
        for key in old_keys & new_keys:
            if new_snapshots[key] != self._snapshots[key]:
                changes[key] = "modified"
        return changes

    def _record(self, path: str, change_type: str, timestamp: float) -> None:
        self._changes = [c for c in self._changes if c.path != path]
        self._changes.insert(0, ChangeRecord(path=path, timestamp=timestamp, change_type=change_type))
        del self._changes[MAX_CHANGE_RECORDS:]

    def poll_once(self, now: float | None = None) -> list[str]:
        """Run one scan and flush debounced changes. Returns flushed paths."""
        now = time.time() if now is None else now
        new_snapshots = self._scan_files()
        for path, change_type in self._detect_changes(new_snapshots).items():
            if path not in self._pending_changes:
                self._pending_changes[path] = (now, change_type)
                logger.debug(f"File {change_type}: {path}")
        self._snapshots = new_snapshots

        ready: list[str] = []
        still_pending = {}
        for path, (first_seen, change_type) in self._pending_changes.items():
            if now - first_seen >= self.debounce:
                self._record(path, change_type, first_seen)
                ready.append(path)
            else:
                still_pending[path] = (first_seen, change_type)
        self._pending_changes = still_pending

        if ready:
            for callback in self._change_callbacks:
                try:
                    callback(ready)
                except Exception as e:
                    logger.warning(f"File change callback error: {e}")
        return ready

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        self._snapshots = self._scan_files()
        logger.info(
            f"File watcher started for {self.project_path} "
            f"({len(self._snapshots)} files tracked)"
        )
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"File watcher error: {e}")

    async def start(self) -> None:
        """Start the file system watcher."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop the file system watcher."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    def recent_changes(self, limit: int = 10) -> list[ChangeRecord]:
        """Most recently changed files, newest first.

        Deleted files are skipped. When fewer than `limit` changes have
        been observed, the remainder is filled by on-disk mtime order.
        """
        records = [c for c in self._changes if c.change_type != "deleted"][:limit]
        if len(records) >= limit:
            return records

        seen = {c.path for c in records}
        snapshots = self._snapshots or self._scan_files()
        by_mtime = sorted(snapshots.items(), key=lambda item: item[1], reverse=True)
        for path, mtime in by_mtime:
            if len(records) >= limit:
                break
            if path not in seen:
                records.append(ChangeRecord(path=path, timestamp=mtime))
        return records

    def add_change_callback(self, callback) -> None:
        """Register a callback for file changes. callback(changed_files: list[str])"""
        if callback not in self._change_callbacks:
            self._change_callbacks.append(callback)

    def get_stats(self) -> dict[str, Any]:
        """Get watcher statistics."""
        return {
            "project_path": str(self.project_path),
            "files_tracked": len(self._snapshots),
            "pending_changes": len(self._pending_changes),
            "recorded_changes": len(self._changes),
            "running": self._running,
            "poll_interval": self.poll_interval,
        }
