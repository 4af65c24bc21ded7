"""Tests for gurulo.audit_log: bounded, ordered, optionally persisted."""

import asyncio
import sqlite3

import pytest

from gurulo.audit_log import AuditEntry, AuditLog, tool_call_fingerprint


def _entry(n, success=True, key=None, fingerprint=None):
    return AuditEntry(
        request_id=f"req_{n}",
        action_id=f"act_{n}",
        tool_name="executeCommand",
        parameters={"command": "echo", "args": [str(n)]},
        success=success,
        result=str(n) if success else None,
        error=None if success else "failed",
        idempotency_key=key,
        fingerprint=fingerprint,
    )


class TestAuditLog:
    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            AuditLog(capacity=0)

    @pytest.mark.asyncio
    async def test_evicts_oldest(self):
        log = AuditLog(capacity=3)
        for n in range(5):
            await log.append(_entry(n))
        assert len(log) == 3
        assert [e.request_id for e in log.recent()] == ["req_4", "req_3", "req_2"]

    @pytest.mark.asyncio
    async def test_recent_limit(self):
        log = AuditLog()
        for n in range(3):
            await log.append(_entry(n))
        assert [e.request_id for e in log.recent(2)] == ["req_2", "req_1"]
        assert log.recent(0) == []

    @pytest.mark.asyncio
    async def test_idempotency_lookup_ignores_failures(self):
        log = AuditLog()
        await log.append(_entry(1, success=False, key="k"))
        assert log.find_by_idempotency_key("k") is None
        await log.append(_entry(2, success=True, key="k"))
        assert log.find_by_idempotency_key("k").request_id == "req_2"
        assert log.find_by_idempotency_key(None) is None

    @pytest.mark.asyncio
    async def test_idempotency_lookup_matches_fingerprint(self):
        log = AuditLog()
        await log.append(_entry(1, key="1", fingerprint="aaaa"))
        assert log.find_by_idempotency_key("1", "aaaa").request_id == "req_1"
        assert log.find_by_idempotency_key("1", "bbbb") is None

    def test_fingerprint_is_order_independent(self):
        first = tool_call_fingerprint("writeFile", {"filePath": "a.txt", "content": "x"})
        second = tool_call_fingerprint("writeFile", {"content": "x", "filePath": "a.txt"})
        assert first == second
        assert first != tool_call_fingerprint("writeFile", {"filePath": "b.txt", "content": "x"})

    @pytest.mark.asyncio
    async def test_concurrent_appends(self):
        log = AuditLog(capacity=100)
        await asyncio.gather(*(log.append(_entry(n)) for n in range(50)))
        assert len(log) == 50
        assert len({e.action_id for e in log.recent(50)}) == 50


class TestAuditPersistence:
    @pytest.mark.asyncio
    async def test_round_trip_through_sqlite(self, tmp_path):
        db = tmp_path / "audit" / "gurulo.db"
        log = AuditLog(capacity=10, db_path=db)
        await log.append(_entry(1, key="k1"))
        await log.append(_entry(2, success=False))

        reloaded = AuditLog(capacity=10, db_path=db)
        entries = reloaded.recent()
        assert [e.request_id for e in entries] == ["req_2", "req_1"]
        assert entries[1].parameters == {"command": "echo", "args": ["1"]}
        assert entries[1].success is True
        assert entries[0].error == "failed"
        assert reloaded.find_by_idempotency_key("k1").action_id == "act_1"

    @pytest.mark.asyncio
    async def test_database_keeps_the_cap(self, tmp_path):
        db = tmp_path / "gurulo.db"
        log = AuditLog(capacity=2, db_path=db)
        for n in range(4):
            await log.append(_entry(n))
        conn = sqlite3.connect(db)
        count = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
        conn.close()
        assert count == 2
        assert [e.request_id for e in AuditLog(capacity=5, db_path=db).recent()] == ["req_3", "req_2"]

    @pytest.mark.asyncio
    async def test_fingerprint_survives_reload(self, tmp_path):
        db = tmp_path / "gurulo.db"
        log = AuditLog(capacity=5, db_path=db)
        fingerprint = tool_call_fingerprint("executeCommand", {"command": "echo", "args": ["1"]})
        await log.append(_entry(1, key="k", fingerprint=fingerprint))
        reloaded = AuditLog(capacity=5, db_path=db)
        assert reloaded.find_by_idempotency_key("k", fingerprint).action_id == "act_1"

    def test_adds_fingerprint_column_to_older_databases(self, tmp_path):
        db = tmp_path / "gurulo.db"
        conn = sqlite3.connect(db)
        conn.execute("""
            CREATE TABLE audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT, timestamp REAL NOT NULL,
                request_id TEXT, action_id TEXT, user_id TEXT, tool_name TEXT NOT NULL,
                parameters TEXT, success INTEGER NOT NULL, result TEXT, error TEXT,
                duration_ms INTEGER DEFAULT 0, idempotency_key TEXT, metadata TEXT
            )
        """)
        conn.execute(
            "INSERT INTO audit_log (timestamp, action_id, tool_name, success) VALUES (1.0, 'act_old', 'writeFile', 1)"
        )
        conn.commit()
        conn.close()
        entries = AuditLog(capacity=5, db_path=db).recent()
        assert entries[0].action_id == "act_old"
        assert entries[0].fingerprint is None
