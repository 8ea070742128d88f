from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from app.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_CASES
from app.timestamps import to_iso

try:  # Optional: only required when DATABASE_URL is set (Cloud SQL / Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)

# (adapter, connection, owning task) of the transaction open in this context.
_current_transaction: ContextVar[tuple[DatabaseAdapter, Any, asyncio.Task | None] | None] = ContextVar(
    "current_transaction", default=None,
)


class DatabaseAdapter:
    """Async database access shared by every request.

    Outside ``transaction()`` each statement commits on its own. Statements
    issued inside ``async with db.transaction():`` by the same task (including
    code it calls, such as the audit sink) commit together when the block
    exits, or are rolled back if it raises.
    """

    engine: str

    def _transaction_conn(self):
        current = _current_transaction.get()
        # Tasks spawned inside a transaction inherit the context but not the transaction.
        if current is not None and current[0] is self and current[2] is asyncio.current_task():
            return current[1]
        return None

    def in_transaction(self) -> bool:
        return self._transaction_conn() is not None

    def transaction(self):  # pragma: no cover - interface
        raise NotImplementedError

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of affected rows."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"
    # One connection serves every request, so a transaction owns it for writes
    # until it commits or rolls back.
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteAdapter]:
        if self.in_transaction():
            yield self
            return
        async with self._write_lock:
            token = _current_transaction.set((self, self.conn, asyncio.current_task()))
            try:
                yield self
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()
            finally:
                _current_transaction.reset(token)

    async def _wait_for_writer(self) -> None:
        # Reads from other tasks must not see a transaction's uncommitted rows.
        if self._write_lock.locked() and not self.in_transaction():
            async with self._write_lock:
                pass

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        if self.in_transaction():
            cursor = await self.conn.execute(query, params or ())
            return cursor.rowcount
        async with self._write_lock:
            cursor = await self.conn.execute(query, params or ())
            rowcount = cursor.rowcount
            await self.conn.commit()
        return rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        if self.in_transaction():
            await self.conn.executemany(query, seq_params)
            return
        async with self._write_lock:
            await self.conn.executemany(query, seq_params)
            await self.conn.commit()

    async def fetch_one(self, query: str, params: Sequence | None = None):
        await self._wait_for_writer()
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        await self._wait_for_writer()
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        async with self._write_lock:
            await self.conn.executescript(script)


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 1" or "INSERT 0 1"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except (AttributeError, ValueError):
            return 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresAdapter]:
        if self.in_transaction():
            yield self
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = _current_transaction.set((self, conn, asyncio.current_task()))
                try:
                    yield self
                finally:
                    _current_transaction.reset(token)

    @asynccontextmanager
    async def _connection(self):
        conn = self._transaction_conn()
        if conn is not None:
            yield conn
        else:
            # Outside a transaction asyncpg autocommits each statement.
            async with self.pool.acquire() as conn:
                yield conn

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query)
        async with self._connection() as conn:
            status = await conn.execute(q, *(params or ()))
        return self._rowcount(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self._connection() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self._connection() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self._connection() as conn:
            return await conn.fetch(q, *(params or ()))

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL:
            if DATABASE_URL.startswith("sqlite"):
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
                conn = await aiosqlite.connect(sqlite_path)
                conn.row_factory = aiosqlite.Row
                _db = SQLiteAdapter(conn)
                logger.info("Connected to SQLite database at %s", sqlite_path)
            else:
                if asyncpg is None:
                    raise RuntimeError(
                        "DATABASE_URL is set but asyncpg is not installed. "
                        "Install asyncpg or unset DATABASE_URL."
                    )
                pool = await asyncpg.create_pool(
                    dsn=DATABASE_URL,
                    min_size=1,
                    max_size=DATABASE_MAX_CONNECTIONS,
                )
                _db = PostgresAdapter(pool)
                logger.info("Connected to Postgres database")
        else:
            conn = await aiosqlite.connect(DATABASE_PATH)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return path
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


# Timestamps are stored as UTC ISO 8601 text in both engines so that range
# filters compare lexicographically and values round-trip unchanged.
_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS surgical_cases (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        patient_name TEXT NOT NULL,
        primary_surgeon_id TEXT NOT NULL,
        primary_surgeon_name TEXT NOT NULL DEFAULT '',
        procedure_name TEXT NOT NULL,
        side TEXT,
        urgency TEXT NOT NULL DEFAULT 'ELECTIVE',
        status TEXT NOT NULL DEFAULT 'SCHEDULED',
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS theater_bookings (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        theater_id TEXT NOT NULL,
        theater_name TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'CONFIRMED'
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS surgical_checklist_phases (
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        phase TEXT NOT NULL,
        items TEXT NOT NULL DEFAULT '[]',
        completed_at TEXT,
        completed_by_user_id TEXT,
        completed_by_role TEXT,
        updated_at TEXT,
        PRIMARY KEY (case_id, phase)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS procedure_timelines (
        case_id TEXT PRIMARY KEY REFERENCES surgical_cases(id),
        wheels_in TEXT,
        anesthesia_start TEXT,
        incision_time TEXT,
        closure_time TEXT,
        anesthesia_end TEXT,
        wheels_out TEXT,
        updated_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS case_plans (
        case_id TEXT PRIMARY KEY REFERENCES surgical_cases(id),
        ready_for_surgery INTEGER NOT NULL DEFAULT 0,
        procedure_plan TEXT,
        risk_factors TEXT,
        planned_anesthesia TEXT,
        pre_op_photo_count INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS case_consents (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        title TEXT NOT NULL DEFAULT '',
        signed_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS clinical_forms (
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        template_key TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        data_json TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT,
        PRIMARY KEY (case_id, template_key)
    );
    """,
]

_SQLITE_AUDIT_TABLE = """
    CREATE TABLE IF NOT EXISTS case_transition_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        previous_status TEXT NOT NULL,
        new_status TEXT NOT NULL,
        actor_user_id TEXT NOT NULL,
        actor_role TEXT NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL
    );
"""

_POSTGRES_AUDIT_TABLE = """
    CREATE TABLE IF NOT EXISTS case_transition_audit (
        id BIGSERIAL PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES surgical_cases(id),
        previous_status TEXT NOT NULL,
        new_status TEXT NOT NULL,
        actor_user_id TEXT NOT NULL,
        actor_role TEXT NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL
    );
"""

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_bookings_start ON theater_bookings (start_time)",
    "CREATE INDEX IF NOT EXISTS idx_audit_case ON case_transition_audit (case_id)",
    "CREATE INDEX IF NOT EXISTS idx_consents_case ON case_consents (case_id)",
]

SQLITE_SCHEMA = "".join(_TABLES) + _SQLITE_AUDIT_TABLE + "".join(f"{s};\n" for s in _INDEXES)
POSTGRES_SCHEMA = [*_TABLES, _POSTGRES_AUDIT_TABLE, *_INDEXES]


async def init_db() -> None:
    db = await get_db()

    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)

    if SEED_DEMO_CASES:
        await _seed_demo_cases(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_cases(db: DatabaseAdapter) -> None:
    """Seed a demo theatre list for today so the dayboard has something to show."""
    now = datetime.now(UTC)
    day = now.replace(hour=8, minute=0, second=0, microsecond=0)

    demo_cases = [
        # id, patient, surgeon, procedure, side, urgency, status, theatre, start offset (h)
        ("demo-knee", "pat-001", "Grace Mwangi", "doc-01", "Dr. Otieno", "Total knee arthroplasty",
         "LEFT", "ELECTIVE", "SCHEDULED", "th-1", "Theatre 1", 0),
        ("demo-hernia", "pat-002", "Samuel Kariuki", "doc-02", "Dr. Achieng", "Inguinal hernia repair",
         "RIGHT", "ELECTIVE", "IN_PREP", "th-1", "Theatre 1", 3),
        ("demo-appendix", "pat-003", "Amina Hassan", "doc-02", "Dr. Achieng", "Laparoscopic appendicectomy",
         None, "URGENT", "IN_THEATER", "th-2", "Theatre 2", 1),
    ]

    existing_rows = await db.fetch_all(
        "SELECT id FROM surgical_cases WHERE id IN ('demo-knee', 'demo-hernia', 'demo-appendix')"
    )
    existing = {row["id"] for row in existing_rows}
    demo_cases = [case for case in demo_cases if case[0] not in existing]
    if not demo_cases:
        return

    created = to_iso(now)
    async with db.transaction():
        for (case_id, patient_id, patient_name, surgeon_id, surgeon_name, procedure,
             side, urgency, status, theater_id, theater_name, offset) in demo_cases:
            start = day + timedelta(hours=offset)
            await db.execute(
                """INSERT INTO surgical_cases (
                    id, patient_id, patient_name, primary_surgeon_id, primary_surgeon_name,
                    procedure_name, side, urgency, status, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (case_id, patient_id, patient_name, surgeon_id, surgeon_name,
                 procedure, side, urgency, status, created, created),
            )
            await db.execute(
                """INSERT INTO theater_bookings (id, case_id, theater_id, theater_name, start_time, end_time, status)
                VALUES (?, ?, ?, ?, ?, ?, 'CONFIRMED')""",
                (f"bk-{case_id}", case_id, theater_id, theater_name,
                 to_iso(start), to_iso(start + timedelta(hours=2))),
            )
            await db.execute(
                """INSERT INTO case_plans (
                    case_id, ready_for_surgery, procedure_plan, risk_factors, planned_anesthesia, pre_op_photo_count
                ) VALUES (?, 1, ?, ?, ?, 1)""",
                (case_id, f"{procedure} per protocol", "ASA II", "General"),
            )
            await db.execute(
                "INSERT INTO case_consents (id, case_id, title, signed_at) VALUES (?, ?, ?, ?)",
                (f"consent-{case_id}", case_id, "Surgical consent", created),
            )
            if status != "SCHEDULED":
                await db.execute(
                    "INSERT INTO clinical_forms (case_id, template_key, status, data_json, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (case_id, "NURSE_PREOP_WARD_CHECKLIST", "FINAL", json.dumps({}), created),
                )
    logger.info("Seeded %d demo surgical cases", len(demo_cases))
