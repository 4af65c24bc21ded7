"""Append-only audit log of executed actions.

Capacity-bounded: the oldest entries are evicted first. Appends are
serialized by an asyncio.Lock, so entries are ordered by completion time.
With a db_path the log is mirrored to SQLite, which keeps the same cap.
Each entry carries a fingerprint of the tool call it ran, so an
idempotency key only replays the call it was recorded for.
"""

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One execution attempt."""
    request_id: str
    action_id: str
    tool_name: str
    parameters: dict[str, Any]
    success: bool
    result: str | None = None
    error: str | None = None
    duration_ms: int = 0
    idempotency_key: str | None = None
    fingerprint: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def tool_call_fingerprint(tool_name: str, parameters: dict[str, Any]) -> str:
    """Stable hash of a tool call's name and parameters."""
    canonical = json.dumps(
        {"tool": tool_name, "parameters": parameters}, sort_keys=True, ensure_ascii=False, default=str
    )
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class AuditLog:
    """In-memory audit log with optional SQLite persistence."""

    def __init__(self, capacity: int = 100, db_path: Path | None = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.db_path = db_path
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        if self.db_path is not None:
            self._init_db()
            self._entries = self._load()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                request_id TEXT,
                action_id TEXT,
                user_id TEXT,
                tool_name TEXT NOT NULL,
                parameters TEXT,
                success INTEGER NOT NULL,
                result TEXT,
                error TEXT,
                duration_ms INTEGER DEFAULT 0,
                idempotency_key TEXT,
                fingerprint TEXT,
                metadata TEXT
            )
        """)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(audit_log)")}
        if "fingerprint" not in columns:
            conn.execute("ALTER TABLE audit_log ADD COLUMN fingerprint TEXT")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_idempotency ON audit_log(idempotency_key)"
        )
        conn.commit()
        conn.close()

    def _load(self) -> list[AuditEntry]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (self.capacity,)
        ).fetchall()
        conn.close()
        entries = []
        for row in reversed(rows):
            entries.append(AuditEntry(
                request_id=row["request_id"],
                action_id=row["action_id"],
                tool_name=row["tool_name"],
                parameters=json.loads(row["parameters"] or "{}"),
                success=bool(row["success"]),
                result=row["result"],
                error=row["error"],
                duration_ms=row["duration_ms"],
                idempotency_key=row["idempotency_key"],
                fingerprint=row["fingerprint"],
                user_id=row["user_id"],
                metadata=json.loads(row["metadata"] or "{}"),
                timestamp=row["timestamp"],
            ))
        return entries

    def _persist(self, entry: AuditEntry) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """INSERT INTO audit_log
               (timestamp, request_id, action_id, user_id, tool_name, parameters,
                success, result, error, duration_ms, idempotency_key, fingerprint, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.timestamp, entry.request_id, entry.action_id, entry.user_id,
                entry.tool_name, json.dumps(entry.parameters, default=str),
                int(entry.success), entry.result, entry.error, entry.duration_ms,
                entry.idempotency_key, entry.fingerprint, json.dumps(entry.metadata, default=str),
            ),
        )
        conn.execute(
            """DELETE FROM audit_log WHERE id NOT IN
               (SELECT id FROM audit_log ORDER BY id DESC LIMIT ?)""",
            (self.capacity,),
        )
        conn.commit()
        conn.close()

    async def append(self, entry: AuditEntry) -> None:
        """Record an entry, evicting the oldest beyond capacity."""
        async with self._lock:
            self._entries.append(entry)
            overflow = len(self._entries) - self.capacity
            if overflow > 0:
                del self._entries[:overflow]
            if self.db_path is not None:
                try:
                    await asyncio.to_thread(self._persist, entry)
                except sqlite3.Error as e:
                    logger.error(f"Failed to persist audit entry {entry.action_id}: {e}")

    def recent(self, limit: int = 20) -> list[AuditEntry]:
        """Newest entries first."""
        return list(reversed(self._entries[-limit:])) if limit > 0 else []

    def find_by_idempotency_key(
        self, key: str | None, fingerprint: str | None = None
    ) -> AuditEntry | None:
        """Latest successful entry recorded under `key`.

        With a fingerprint, only an entry for that same tool call matches.
        """
        if not key:
            return None
        for entry in reversed(self._entries):
            if entry.idempotency_key != key or not entry.success:
                continue
            if fingerprint is not None and entry.fingerprint != fingerprint:
                continue
            return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)
