"""
Budgetflow Database

Single source of truth for project members, approval policy versions,
purchase orders and invoices, the budget ledger, and document timelines.

Every business operation runs inside one `transaction()`: the document row,
the sub-account rows it moves, the ledger journal and the audit event are
written together or not at all. Documents and sub-accounts carry a version
column; versioned updates that match no row raise ConcurrencyConflict.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from budgetflow.services.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BudgetflowDB:
    def __init__(self, db_path: str = "budgetflow.db", busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._initialized = False

    def _sqlite_connection(self):
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self):
        conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction holding SQLite's reserved lock from the first statement.

        Concurrent writers queue on the lock (up to busy_timeout) instead of
        interleaving their read-modify-write cycles.
        """
        self.initialize()
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Reuse the caller's transaction, or open a short-lived connection."""
        if conn is not None:
            yield conn
            return
        self.initialize()
        with self.connect() as own:
            yield own

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()
            # WAL lets readers proceed while a writer holds the lock
            cur.execute("PRAGMA journal_mode = WAL")

            cur.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    project_id TEXT NOT NULL,
                    member_id TEXT NOT NULL,
                    name TEXT,
                    email TEXT,
                    role TEXT,
                    department TEXT,
                    position TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (project_id, member_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_policy_versions (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    steps_json TEXT NOT NULL,
                    updated_by TEXT,
                    created_at TEXT,
                    UNIQUE(project_id, kind, version)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    number TEXT,
                    status TEXT NOT NULL,
                    po_id TEXT,
                    payload TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS document_counters (
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    last_number INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (project_id, kind)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    code TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT,
                    UNIQUE(project_id, code)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS subaccounts (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    account_id TEXT NOT NULL REFERENCES accounts(id),
                    code TEXT NOT NULL,
                    description TEXT,
                    budgeted REAL NOT NULL DEFAULT 0,
                    committed REAL NOT NULL DEFAULT 0,
                    actual REAL NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(project_id, code)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    sub_account_id TEXT NOT NULL,
                    document_id TEXT,
                    reason TEXT NOT NULL,
                    committed_delta REAL NOT NULL DEFAULT 0,
                    actual_delta REAL NOT NULL DEFAULT 0,
                    committed_clamped REAL NOT NULL DEFAULT 0,
                    actual_clamped REAL NOT NULL DEFAULT 0,
                    committed_after REAL,
                    actual_after REAL,
                    available_after REAL,
                    actor_id TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    document_id TEXT NOT NULL,
                    document_kind TEXT,
                    event_type TEXT NOT NULL,
                    actor_id TEXT,
                    actor_name TEXT,
                    summary TEXT,
                    payload_json TEXT,
                    idempotency_key TEXT,
                    ts TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_documents_project_kind ON documents(project_id, kind, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_documents_po ON documents(po_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_subaccounts_account ON subaccounts(account_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_ledger_sub ON ledger_entries(sub_account_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_ledger_document ON ledger_entries(document_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_document ON audit_events(document_id)")
            cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_audit_idempotency ON audit_events(idempotency_key)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_policy_versions ON approval_policy_versions(project_id, kind, version)")


        self._initialized = True

    @staticmethod
    def _decode_json(raw: Any, default: Any) -> Any:
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return default
        return raw if raw is not None else default

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def replace_members(
        self,
        project_id: str,
        members: Iterable[Dict[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Dict[str, Any]]:
        """Replace the project's membership directory."""
        if conn is None:
            with self.transaction() as own:
                return self.replace_members(project_id, members, conn=own)
        now = _now()
        conn.execute("DELETE FROM members WHERE project_id = ?", (project_id,))
        for member in members:
            conn.execute(
                """
                INSERT INTO members
                (project_id, member_id, name, email, role, department, position, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    member["member_id"],
                    member.get("name"),
                    member.get("email"),
                    member.get("role"),
                    member.get("department"),
                    member.get("position"),
                    now,
                ),
            )
        return self.list_members(project_id, conn=conn)

    def list_members(self, project_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM members WHERE project_id = ? ORDER BY member_id", (project_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Approval policies
    # ------------------------------------------------------------------

    def _deserialize_policy(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row["steps"] = self._decode_json(row.pop("steps_json", None), [])
        return row

    def get_policy(
        self,
        project_id: str,
        kind: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM approval_policy_versions WHERE project_id = ? AND kind = ? "
                "ORDER BY version DESC LIMIT 1",
                (project_id, kind),
            ).fetchone()
        return self._deserialize_policy(dict(row)) if row else None

    def list_policy_versions(self, project_id: str, kind: str, limit: int = 50) -> List[Dict[str, Any]]:
        safe_limit = max(1, min(int(limit or 50), 500))
        with self._use() as c:
            rows = c.execute(
                "SELECT * FROM approval_policy_versions WHERE project_id = ? AND kind = ? "
                "ORDER BY version DESC LIMIT ?",
                (project_id, kind, safe_limit),
            ).fetchall()
        return [self._deserialize_policy(dict(row)) for row in rows]

    def insert_policy_version(
        self,
        project_id: str,
        kind: str,
        steps: List[Dict[str, Any]],
        updated_by: str = "system",
    ) -> Dict[str, Any]:
        """Append a new policy version; previous versions are kept."""
        with self.transaction() as conn:
            current = conn.execute(
                "SELECT MAX(version) AS v FROM approval_policy_versions WHERE project_id = ? AND kind = ?",
                (project_id, kind),
            ).fetchone()
            version = int(current["v"] or 0) + 1
            conn.execute(
                """
                INSERT INTO approval_policy_versions
                (id, project_id, kind, version, steps_json, updated_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    f"POL-{uuid.uuid4().hex}",
                    project_id,
                    kind,
                    version,
                    json.dumps(steps),
                    updated_by,
                    _now(),
                ),
            )
            return self.get_policy(project_id, kind, conn=conn) or {}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def next_document_number(self, conn: sqlite3.Connection, project_id: str, kind: str) -> str:
        """Sequential per project and kind, zero-padded: 0001, 0002, ..."""
        conn.execute(
            "INSERT OR IGNORE INTO document_counters (project_id, kind, last_number) VALUES (?, ?, 0)",
            (project_id, kind),
        )
        conn.execute(
            "UPDATE document_counters SET last_number = last_number + 1 WHERE project_id = ? AND kind = ?",
            (project_id, kind),
        )
        row = conn.execute(
            "SELECT last_number FROM document_counters WHERE project_id = ? AND kind = ?",
            (project_id, kind),
        ).fetchone()
        return str(int(row["last_number"])).zfill(4)

    def _deserialize_document(self, row: sqlite3.Row) -> Dict[str, Any]:
        payload = self._decode_json(row["payload"], {})
        # Row columns win over the payload copy
        payload["version"] = int(row["version"])
        payload["status"] = row["status"]
        return payload

    def insert_document(self, conn: sqlite3.Connection, payload: Dict[str, Any]) -> int:
        now = _now()
        conn.execute(
            """
            INSERT INTO documents
            (id, project_id, kind, number, status, po_id, payload, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                payload["document_id"],
                payload["project_id"],
                payload["kind"],
                payload.get("number"),
                payload["status"],
                payload.get("po_id"),
                json.dumps({**payload, "version": 1}),
                payload.get("created_at") or now,
                now,
            ),
        )
        return 1

    def update_document(self, conn: sqlite3.Connection, payload: Dict[str, Any], expected_version: int) -> int:
        """Versioned write; returns the new version."""
        new_version = expected_version + 1
        cur = conn.execute(
            """
            UPDATE documents
            SET number = ?, status = ?, po_id = ?, payload = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                payload.get("number"),
                payload["status"],
                payload.get("po_id"),
                json.dumps({**payload, "version": new_version}),
                new_version,
                _now(),
                payload["document_id"],
                expected_version,
            ),
        )
        if cur.rowcount == 0:
            raise ConcurrencyConflict("document", payload["document_id"])
        return new_version

    def get_document(
        self,
        document_id: str,
        kind: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM documents WHERE id = ?"
        params: List[Any] = [document_id]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        with self._use(conn) as c:
            row = c.execute(sql, params).fetchone()
        return self._deserialize_document(row) if row else None

    def list_documents(
        self,
        project_id: str,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        po_id: Optional[str] = None,
        limit: int = 1000,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM documents WHERE project_id = ?"
        params: List[Any] = [project_id]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        if status:
            sql += " AND status = ?"
            params.append(status)
        if po_id:
            sql += " AND po_id = ?"
            params.append(po_id)
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(max(1, min(int(limit or 1000), 10000)))
        with self._use(conn) as c:
            rows = c.execute(sql, params).fetchall()
        return [self._deserialize_document(row) for row in rows]

    # ------------------------------------------------------------------
    # Accounts and sub-accounts
    # ------------------------------------------------------------------

    def create_account(self, project_id: str, code: str, description: str = "") -> Dict[str, Any]:
        account_id = f"ACC-{uuid.uuid4().hex[:12]}"
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO accounts (id, project_id, code, description, created_at) VALUES (?, ?, ?, ?, ?)",
                (account_id, project_id, code, description, _now()),
            )
        return self.get_account(account_id) or {}

    def get_account(self, account_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return dict(row) if row else None

    def list_accounts(self, project_id: str) -> List[Dict[str, Any]]:
        with self._use() as c:
            rows = c.execute(
                "SELECT * FROM accounts WHERE project_id = ? ORDER BY code", (project_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def create_sub_account(
        self,
        project_id: str,
        account_id: str,
        code: str,
        description: str = "",
        budgeted: float = 0.0,
    ) -> Dict[str, Any]:
        sub_account_id = f"SUB-{uuid.uuid4().hex[:12]}"
        now = _now()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO subaccounts
                (id, project_id, account_id, code, description, budgeted, committed, actual, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0, 1, ?, ?)
                """,
                (sub_account_id, project_id, account_id, code, description, float(budgeted), now, now),
            )
        return self.get_sub_account(sub_account_id) or {}

    def get_sub_account(self, sub_account_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM subaccounts WHERE id = ?", (sub_account_id,)).fetchone()
        return dict(row) if row else None

    def get_sub_accounts(
        self,
        sub_account_ids: Iterable[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Dict[str, Any]]:
        ids = list(dict.fromkeys(sub_account_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._use(conn) as c:
            rows = c.execute(f"SELECT * FROM subaccounts WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: dict(row) for row in rows}

    def list_sub_accounts(self, project_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM subaccounts WHERE project_id = ? ORDER BY code", (project_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def update_sub_account_figures(
        self,
        conn: sqlite3.Connection,
        sub_account_id: str,
        committed: float,
        actual: float,
        expected_version: int,
    ) -> int:
        new_version = expected_version + 1
        cur = conn.execute(
            """
            UPDATE subaccounts SET committed = ?, actual = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (committed, actual, new_version, _now(), sub_account_id, expected_version),
        )
        if cur.rowcount == 0:
            raise ConcurrencyConflict("subaccount", sub_account_id)
        return new_version

    # ------------------------------------------------------------------
    # Ledger journal (append-only)
    # ------------------------------------------------------------------

    def append_ledger_entry(self, conn: sqlite3.Connection, entry: Dict[str, Any]) -> str:
        entry_id = f"LED-{uuid.uuid4().hex}"
        conn.execute(
            """
            INSERT INTO ledger_entries
            (id, project_id, sub_account_id, document_id, reason, committed_delta, actual_delta,
             committed_clamped, actual_clamped, committed_after, actual_after, available_after,
             actor_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry_id,
                entry["project_id"],
                entry["sub_account_id"],
                entry.get("document_id"),
                entry["reason"],
                entry.get("committed_delta", 0.0),
                entry.get("actual_delta", 0.0),
                entry.get("committed_clamped", 0.0),
                entry.get("actual_clamped", 0.0),
                entry.get("committed_after"),
                entry.get("actual_after"),
                entry.get("available_after"),
                entry.get("actor_id"),
                _now(),
            ),
        )
        return entry_id

    def list_ledger_entries(
        self,
        project_id: str,
        sub_account_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM ledger_entries WHERE project_id = ?"
        params: List[Any] = [project_id]
        if sub_account_id:
            sql += " AND sub_account_id = ?"
            params.append(sub_account_id)
        if document_id:
            sql += " AND document_id = ?"
            params.append(document_id)
        sql += " ORDER BY rowid ASC"
        with self._use() as c:
            rows = c.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def _deserialize_audit_event(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row["payload"] = self._decode_json(row.pop("payload_json", None), {})
        return row

    def get_audit_event_by_key(
        self,
        idempotency_key: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        if not idempotency_key:
            return None
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM audit_events WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return self._deserialize_audit_event(dict(row)) if row else None

    def append_audit_event(
        self,
        payload: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Any]:
        """Insert an event; an event with the same idempotency key is returned instead.

        A returned existing row carries ``replayed: True``.
        """
        existing = self.get_audit_event_by_key(payload.get("idempotency_key"), conn=conn)
        if existing:
            existing["replayed"] = True
            return existing

        event_id = payload.get("id") or f"EVT-{uuid.uuid4().hex}"
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO audit_events
                (id, project_id, document_id, document_kind, event_type, actor_id, actor_name,
                 summary, payload_json, idempotency_key, ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    payload.get("project_id"),
                    payload["document_id"],
                    payload.get("document_kind"),
                    payload["event_type"],
                    payload.get("actor_id"),
                    payload.get("actor_name"),
                    payload.get("summary"),
                    json.dumps(payload.get("payload") or {}),
                    payload.get("idempotency_key"),
                    payload.get("ts") or _now(),
                ),
            )
            row = c.execute("SELECT * FROM audit_events WHERE id = ?", (event_id,)).fetchone()
        return self._deserialize_audit_event(dict(row))

    def list_audit_events(self, document_id: str) -> List[Dict[str, Any]]:
        with self._use() as c:
            rows = c.execute(
                "SELECT * FROM audit_events WHERE document_id = ? ORDER BY ts ASC, rowid ASC",
                (document_id,),
            ).fetchall()
        return [self._deserialize_audit_event(dict(row)) for row in rows]


_DB_INSTANCE: Optional[BudgetflowDB] = None


def get_db() -> BudgetflowDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = BudgetflowDB(db_path=os.getenv("BUDGETFLOW_DB_PATH", "budgetflow.db"))
    return _DB_INSTANCE
