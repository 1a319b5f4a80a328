"""
SQLite store implementation
"""

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import aiosqlite

from .collaborators import Account, AccountRepository
from .errors import StoreError
from .records import (
    AdminSession, AlertType, EventFilter, EventType, IPWhitelistRule,
    RateLimitRecord, SecurityAlert, SecurityEvent, Severity, utcnow,
)
from .store import GateStore

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        key TEXT PRIMARY KEY,
        window_start REAL NOT NULL,
        attempts INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        user_id TEXT,
        ip TEXT NOT NULL,
        user_agent TEXT NOT NULL DEFAULT '',
        timestamp REAL NOT NULL,
        details TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_security_events_timestamp ON security_events (timestamp)",
    "CREATE INDEX IF NOT EXISTS ix_security_events_ip ON security_events (ip, timestamp)",
    "CREATE INDEX IF NOT EXISTS ix_security_events_user ON security_events (user_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS admin_sessions (
        session_token TEXT PRIMARY KEY,
        id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        user_agent TEXT NOT NULL,
        created_at REAL NOT NULL,
        expires_at REAL NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_admin_sessions_user ON admin_sessions (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS ip_whitelist (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        cidr TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_alerts (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        user_id TEXT,
        ip TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}',
        timestamp REAL NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        user_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        mfa_enabled INTEGER NOT NULL DEFAULT 0,
        email TEXT NOT NULL DEFAULT ''
    )
    """,
]


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteStore(GateStore, AccountRepository):
    """SQLite-based gatekeeper store"""

    def __init__(self, db_path: str = "gatekeeper.db"):
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None
        self.lock = asyncio.Lock()

    async def initialize(self):
        """Open the connection and create tables"""
        try:
            self.db = await aiosqlite.connect(self.db_path)
            await self.db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await self.db.execute(statement)
            await self.db.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open SQLite store {self.db_path}: {e}") from e

    async def close(self):
        """Close database connection"""
        if self.db:
            await self.db.close()
            self.db = None

    @asynccontextmanager
    async def _transaction(self, immediate: bool = False):
        """Serialize connection use and commit or roll back as one unit"""
        if self.db is None:
            raise StoreError("SQLite store is not initialized")

        async with self.lock:
            try:
                if immediate:
                    await self.db.execute("BEGIN IMMEDIATE")
                yield self.db
                await self.db.commit()
            except sqlite3.Error as e:
                try:
                    await self.db.rollback()
                except sqlite3.Error:
                    pass
                raise StoreError(str(e)) from e

    # Counters

    async def get_counter(self, key: str) -> Optional[RateLimitRecord]:
        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT window_start, attempts FROM rate_limits WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return RateLimitRecord(key=key, window_start=_dt(row[0]), attempts=row[1])

    async def increment(self, key: str, window: timedelta, now: datetime) -> RateLimitRecord:
        """Single UPSERT so concurrent writers never lose an increment"""
        now_ts = _ts(now)
        window_s = window.total_seconds()
        async with self._transaction(immediate=True) as db:
            await db.execute(
                """
                INSERT INTO rate_limits (key, window_start, attempts) VALUES (?, ?, 1)
                ON CONFLICT(key) DO UPDATE SET
                    attempts = CASE WHEN ? - rate_limits.window_start > ?
                                    THEN 1 ELSE rate_limits.attempts + 1 END,
                    window_start = CASE WHEN ? - rate_limits.window_start > ?
                                        THEN ? ELSE rate_limits.window_start END
                """,
                (key, now_ts, now_ts, window_s, now_ts, window_s, now_ts),
            )
            cursor = await db.execute(
                "SELECT window_start, attempts FROM rate_limits WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        return RateLimitRecord(key=key, window_start=_dt(row[0]), attempts=row[1])

    async def delete_counter(self, key: str) -> None:
        async with self._transaction() as db:
            await db.execute("DELETE FROM rate_limits WHERE key = ?", (key,))

    async def prune_counters(self, older_than: datetime) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                "DELETE FROM rate_limits WHERE window_start < ?", (_ts(older_than),)
            )
            return cursor.rowcount

    # Events

    async def append_event(self, event: SecurityEvent) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO security_events (id, type, user_id, ip, user_agent, timestamp, details) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id, event.type.value, event.user_id, event.ip, event.user_agent,
                    _ts(event.timestamp), json.dumps(event.details, default=str),
                ),
            )

    async def query_events(self, flt: EventFilter) -> List[SecurityEvent]:
        clauses, params = [], []
        if flt.types:
            clauses.append(f"type IN ({', '.join('?' for _ in flt.types)})")
            params.extend(EventType(t).value for t in flt.types)
        if flt.since is not None:
            clauses.append("timestamp >= ?")
            params.append(_ts(flt.since))
        if flt.until is not None:
            clauses.append("timestamp <= ?")
            params.append(_ts(flt.until))

        identity, identity_params = [], []
        if flt.ip is not None:
            identity.append("ip = ?")
            identity_params.append(flt.ip)
        if flt.user_id is not None:
            identity.append("user_id = ?")
            identity_params.append(flt.user_id)
        if identity:
            joiner = " OR " if flt.match_any else " AND "
            clauses.append(f"({joiner.join(identity)})")
            params.extend(identity_params)

        sql = "SELECT id, type, user_id, ip, user_agent, timestamp, details FROM security_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        if flt.limit is not None:
            sql += " ORDER BY timestamp DESC, seq DESC LIMIT ?"
            params.append(max(flt.limit, 0))
        else:
            sql += " ORDER BY timestamp, seq"

        async with self._transaction() as db:
            cursor = await db.execute(sql, params)
            rows = list(await cursor.fetchall())

        # Newest N were fetched, return them oldest first
        if flt.limit is not None:
            rows.reverse()

        return [
            SecurityEvent(
                id=row[0],
                type=EventType(row[1]),
                user_id=row[2],
                ip=row[3],
                user_agent=row[4],
                timestamp=_dt(row[5]),
                details=json.loads(row[6] or "{}"),
            )
            for row in rows
        ]

    # Admin sessions

    def _session_from_row(self, row) -> AdminSession:
        return AdminSession(
            session_token=row[0],
            id=row[1],
            user_id=row[2],
            ip_address=row[3],
            user_agent=row[4],
            created_at=_dt(row[5]),
            expires_at=_dt(row[6]),
            is_active=bool(row[7]),
        )

    _SESSION_COLUMNS = (
        "session_token, id, user_id, ip_address, user_agent, created_at, expires_at, is_active"
    )

    async def create_session(self, session: AdminSession, max_concurrent: int,
                             now: datetime) -> List[AdminSession]:
        async with self._transaction(immediate=True) as db:
            cursor = await db.execute(
                f"SELECT {self._SESSION_COLUMNS} FROM admin_sessions "
                "WHERE user_id = ? AND is_active = 1 AND expires_at > ? ORDER BY created_at",
                (session.user_id, _ts(now)),
            )
            active = [self._session_from_row(row) for row in await cursor.fetchall()]

            evicted = []
            while max_concurrent > 0 and len(active) >= max_concurrent:
                oldest = active.pop(0)
                await db.execute(
                    "UPDATE admin_sessions SET is_active = 0 WHERE session_token = ?",
                    (oldest.session_token,),
                )
                oldest.is_active = False
                evicted.append(oldest)

            await db.execute(
                f"INSERT INTO admin_sessions ({self._SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.session_token, session.id, session.user_id, session.ip_address,
                    session.user_agent, _ts(session.created_at), _ts(session.expires_at),
                    int(session.is_active),
                ),
            )
        return evicted

    async def get_session(self, token: str) -> Optional[AdminSession]:
        async with self._transaction() as db:
            cursor = await db.execute(
                f"SELECT {self._SESSION_COLUMNS} FROM admin_sessions WHERE session_token = ?",
                (token,),
            )
            row = await cursor.fetchone()
        return self._session_from_row(row) if row else None

    async def deactivate_session(self, token: str) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE admin_sessions SET is_active = 0 WHERE session_token = ? AND is_active = 1",
                (token,),
            )
            return cursor.rowcount > 0

    async def deactivate_user_sessions(self, user_id: str) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE admin_sessions SET is_active = 0 WHERE user_id = ? AND is_active = 1",
                (user_id,),
            )
            return cursor.rowcount

    async def list_sessions(self, user_id: str, active_only: bool = True,
                            now: Optional[datetime] = None) -> List[AdminSession]:
        sql = f"SELECT {self._SESSION_COLUMNS} FROM admin_sessions WHERE user_id = ?"
        params: list = [user_id]
        if active_only:
            sql += " AND is_active = 1 AND expires_at > ?"
            params.append(_ts(now or utcnow()))
        sql += " ORDER BY created_at"
        async with self._transaction() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._session_from_row(row) for row in rows]

    async def prune_sessions(self, now: datetime) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                "DELETE FROM admin_sessions WHERE is_active = 0 OR expires_at <= ?", (_ts(now),)
            )
            return cursor.rowcount

    # Whitelist rules

    async def list_rules(self, active_only: bool = True) -> List[IPWhitelistRule]:
        sql = "SELECT id, name, cidr, description, is_active, created_at, updated_at FROM ip_whitelist"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY created_at"
        async with self._transaction() as db:
            cursor = await db.execute(sql)
            rows = await cursor.fetchall()
        return [
            IPWhitelistRule(
                id=row[0], name=row[1], cidr=row[2], description=row[3],
                is_active=bool(row[4]), created_at=_dt(row[5]), updated_at=_dt(row[6]),
            )
            for row in rows
        ]

    async def add_rule(self, rule: IPWhitelistRule) -> IPWhitelistRule:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO ip_whitelist "
                "(id, name, cidr, description, is_active, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    rule.id, rule.name, rule.cidr, rule.description, int(rule.is_active),
                    _ts(rule.created_at), _ts(rule.updated_at),
                ),
            )
        return rule

    async def remove_rule(self, rule_id: str) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute("DELETE FROM ip_whitelist WHERE id = ?", (rule_id,))
            return cursor.rowcount > 0

    # Alerts

    def _alert_from_row(self, row) -> SecurityAlert:
        return SecurityAlert(
            id=row[0],
            type=AlertType(row[1]),
            severity=Severity(row[2]),
            user_id=row[3],
            ip=row[4],
            details=json.loads(row[5] or "{}"),
            timestamp=_dt(row[6]),
            resolved=bool(row[7]),
        )

    async def add_alert(self, alert: SecurityAlert) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO security_alerts (id, type, severity, user_id, ip, details, timestamp, resolved) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    alert.id, alert.type.value, alert.severity.value, alert.user_id, alert.ip,
                    json.dumps(alert.details, default=str), _ts(alert.timestamp), int(alert.resolved),
                ),
            )

    async def find_unresolved(self, user_id: Optional[str] = None,
                              ip: Optional[str] = None) -> List[SecurityAlert]:
        identity, params = [], []
        if user_id is not None:
            identity.append("user_id = ?")
            params.append(user_id)
        if ip is not None:
            identity.append("ip = ?")
            params.append(ip)
        if not identity:
            return []

        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT id, type, severity, user_id, ip, details, timestamp, resolved "
                f"FROM security_alerts WHERE resolved = 0 AND ({' OR '.join(identity)}) "
                "ORDER BY timestamp",
                params,
            )
            rows = await cursor.fetchall()
        return [self._alert_from_row(row) for row in rows]

    async def resolve_alert(self, alert_id: str) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE security_alerts SET resolved = 1 WHERE id = ?", (alert_id,)
            )
            return cursor.rowcount > 0

    async def list_alerts(self, include_resolved: bool = False) -> List[SecurityAlert]:
        sql = "SELECT id, type, severity, user_id, ip, details, timestamp, resolved FROM security_alerts"
        if not include_resolved:
            sql += " WHERE resolved = 0"
        sql += " ORDER BY timestamp"
        async with self._transaction() as db:
            cursor = await db.execute(sql)
            rows = await cursor.fetchall()
        return [self._alert_from_row(row) for row in rows]

    # Accounts

    async def get_account(self, user_id: str) -> Optional[Account]:
        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT user_id, role, is_active, mfa_enabled, email FROM accounts WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return Account(
            user_id=row[0], role=row[1], is_active=bool(row[2]),
            mfa_enabled=bool(row[3]), email=row[4],
        )

    async def upsert_account(self, account: Account) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO accounts (user_id, role, is_active, mfa_enabled, email) "
                "VALUES (?, ?, ?, ?, ?)",
                (account.user_id, account.role, int(account.is_active),
                 int(account.mfa_enabled), account.email),
            )
