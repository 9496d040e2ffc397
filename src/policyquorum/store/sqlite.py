"""SQLite policy store.

Design notes:
- WAL mode is set once per database file (thread-safe, cached)
- every mutation runs inside ``session()``, which holds BEGIN IMMEDIATE for the
  whole read-check-write sequence so writers serialize across processes
- approval/rejection tallies are computed from policy_decisions on every read
- audit entries are chained inside the same transaction as the state change
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from ..audit import load_entry, seal_entry, verify_chain
from ..errors import StoreError, sanitize_exception
from ..signing import SigningKey, VerifyKey
from ..types import (
    AuditLogEntry,
    CommittedPolicy,
    PendingPolicy,
    PolicyDecision,
    PolicyStatus,
    format_timestamp,
    parse_timestamp,
)
from .common import BUSY_TIMEOUT_SECONDS, clamp_page, validate_nonempty_str, validate_status

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pending_policies (
        id TEXT PRIMARY KEY,
        role_id TEXT NOT NULL,
        status TEXT NOT NULL,
        threshold INTEGER NOT NULL CHECK (threshold >= 1),
        requested_by TEXT NOT NULL,
        requested_by_email TEXT,
        policy_request_data BLOB NOT NULL,
        contract_type TEXT NOT NULL,
        approval_type TEXT NOT NULL,
        execution_type TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pending_policies_status
    ON pending_policies (status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS policy_decisions (
        policy_request_id TEXT NOT NULL
            REFERENCES pending_policies (id) ON DELETE CASCADE,
        voter_id TEXT NOT NULL,
        voter_email TEXT,
        decision INTEGER NOT NULL CHECK (decision IN (0, 1)),
        timestamp TEXT NOT NULL,
        PRIMARY KEY (policy_request_id, voter_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS committed_policies (
        role_id TEXT PRIMARY KEY,
        policy_data BLOB,
        contract_type TEXT NOT NULL,
        approval_type TEXT NOT NULL,
        execution_type TEXT NOT NULL,
        threshold INTEGER NOT NULL,
        source_policy_id TEXT,
        committed_by TEXT,
        committed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        policy_id TEXT NOT NULL,
        event TEXT NOT NULL,
        entry_json TEXT NOT NULL,
        entry_hash TEXT NOT NULL,
        prev_entry_hash TEXT,
        entry_signature TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_policy
    ON audit_log (policy_id, id)
    """,
)

_PENDING_COLUMNS = """
    p.id, p.role_id, p.status, p.threshold, p.requested_by, p.requested_by_email,
    p.policy_request_data, p.contract_type, p.approval_type, p.execution_type,
    p.created_at, p.updated_at,
    COALESCE(t.approvals, 0) AS approval_count,
    COALESCE(t.rejections, 0) AS rejection_count
"""

_TALLY_JOIN = """
    LEFT JOIN (
        SELECT policy_request_id,
               SUM(CASE WHEN decision = 1 THEN 1 ELSE 0 END) AS approvals,
               SUM(CASE WHEN decision = 0 THEN 1 ELSE 0 END) AS rejections
        FROM policy_decisions
        GROUP BY policy_request_id
    ) t ON t.policy_request_id = p.id
"""

_WAL_INITIALIZED: dict[Path, bool] = {}
_WAL_LOCK = threading.Lock()


def _ensure_wal_mode(path: Path) -> None:
    """Ensure WAL mode is set exactly once per database file. Thread-safe."""
    with _WAL_LOCK:
        if path in _WAL_INITIALIZED:
            return
        conn = sqlite3.connect(path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            _WAL_INITIALIZED[path] = True
        finally:
            conn.close()


def _pending_from_row(row: sqlite3.Row) -> PendingPolicy:
    return PendingPolicy(
        id=row["id"],
        role_id=row["role_id"],
        status=PolicyStatus(row["status"]),
        threshold=row["threshold"],
        requested_by=row["requested_by"],
        requested_by_email=row["requested_by_email"],
        policy_request_data=bytes(row["policy_request_data"]),
        contract_type=row["contract_type"],
        approval_type=row["approval_type"],
        execution_type=row["execution_type"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        approval_count=row["approval_count"],
        rejection_count=row["rejection_count"],
    )


def _decision_from_row(row: sqlite3.Row) -> PolicyDecision:
    return PolicyDecision(
        policy_request_id=row["policy_request_id"],
        voter_id=row["voter_id"],
        voter_email=row["voter_email"],
        approved=bool(row["decision"]),
        timestamp=parse_timestamp(row["timestamp"]),
    )


def _committed_from_row(row: sqlite3.Row) -> CommittedPolicy:
    data = row["policy_data"]
    return CommittedPolicy(
        role_id=row["role_id"],
        policy_data=bytes(data) if data is not None else None,
        contract_type=row["contract_type"],
        approval_type=row["approval_type"],
        execution_type=row["execution_type"],
        threshold=row["threshold"],
        source_policy_id=row["source_policy_id"],
        committed_by=row["committed_by"],
        committed_at=parse_timestamp(row["committed_at"]),
    )


def _select_pending(conn: sqlite3.Connection, policy_id: str) -> PendingPolicy | None:
    row = conn.execute(
        f"SELECT {_PENDING_COLUMNS} FROM pending_policies p {_TALLY_JOIN} WHERE p.id = ?",
        (policy_id,),
    ).fetchone()
    return _pending_from_row(row) if row is not None else None


def _select_committed(conn: sqlite3.Connection, role_id: str) -> CommittedPolicy | None:
    row = conn.execute(
        """
        SELECT role_id, policy_data, contract_type, approval_type, execution_type,
               threshold, source_policy_id, committed_by, committed_at
        FROM committed_policies WHERE role_id = ?
        """,
        (role_id,),
    ).fetchone()
    return _committed_from_row(row) if row is not None else None


class SQLiteSession:
    """StoreSession bound to one connection inside BEGIN IMMEDIATE."""

    def __init__(self, conn: sqlite3.Connection, signing_key: SigningKey | None = None) -> None:
        self._conn = conn
        self._signing_key = signing_key

    def get_pending(self, policy_id: str) -> PendingPolicy | None:
        return _select_pending(self._conn, policy_id)

    def insert_pending(self, policy: PendingPolicy) -> None:
        self._conn.execute(
            """
            INSERT INTO pending_policies
            (id, role_id, status, threshold, requested_by, requested_by_email,
             policy_request_data, contract_type, approval_type, execution_type,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                policy.id,
                policy.role_id,
                policy.status.value,
                policy.threshold,
                policy.requested_by,
                policy.requested_by_email,
                policy.policy_request_data,
                policy.contract_type,
                policy.approval_type,
                policy.execution_type,
                format_timestamp(policy.created_at),
                format_timestamp(policy.updated_at),
            ),
        )

    def set_request_data(self, policy_id: str, data: bytes, now: datetime) -> None:
        self._update_one(
            "UPDATE pending_policies SET policy_request_data = ?, updated_at = ? WHERE id = ?",
            (data, format_timestamp(now), policy_id),
        )

    def set_status(self, policy_id: str, status: PolicyStatus, now: datetime) -> None:
        validate_status(status.value)
        self._update_one(
            "UPDATE pending_policies SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, format_timestamp(now), policy_id),
        )

    def get_decision(self, policy_id: str, voter_id: str) -> PolicyDecision | None:
        row = self._conn.execute(
            """
            SELECT policy_request_id, voter_id, voter_email, decision, timestamp
            FROM policy_decisions WHERE policy_request_id = ? AND voter_id = ?
            """,
            (policy_id, voter_id),
        ).fetchone()
        return _decision_from_row(row) if row is not None else None

    def insert_decision(self, decision: PolicyDecision) -> None:
        self._conn.execute(
            """
            INSERT INTO policy_decisions
            (policy_request_id, voter_id, voter_email, decision, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                decision.policy_request_id,
                decision.voter_id,
                decision.voter_email,
                1 if decision.approved else 0,
                format_timestamp(decision.timestamp),
            ),
        )

    def delete_decision(self, policy_id: str, voter_id: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM policy_decisions WHERE policy_request_id = ? AND voter_id = ?",
            (policy_id, voter_id),
        )
        return cursor.rowcount > 0

    def tally(self, policy_id: str) -> tuple[int, int]:
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN decision = 1 THEN 1 ELSE 0 END), 0),
                   COALESCE(SUM(CASE WHEN decision = 0 THEN 1 ELSE 0 END), 0)
            FROM policy_decisions WHERE policy_request_id = ?
            """,
            (policy_id,),
        ).fetchone()
        return int(row[0]), int(row[1])

    def upsert_committed(self, committed: CommittedPolicy) -> None:
        self._conn.execute(
            """
            INSERT INTO committed_policies
            (role_id, policy_data, contract_type, approval_type, execution_type,
             threshold, source_policy_id, committed_by, committed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(role_id) DO UPDATE SET
                policy_data=excluded.policy_data,
                contract_type=excluded.contract_type,
                approval_type=excluded.approval_type,
                execution_type=excluded.execution_type,
                threshold=excluded.threshold,
                source_policy_id=excluded.source_policy_id,
                committed_by=excluded.committed_by,
                committed_at=excluded.committed_at
            """,
            (
                committed.role_id,
                committed.policy_data,
                committed.contract_type,
                committed.approval_type,
                committed.execution_type,
                committed.threshold,
                committed.source_policy_id,
                committed.committed_by,
                format_timestamp(committed.committed_at),
            ),
        )

    def get_committed(self, role_id: str) -> CommittedPolicy | None:
        return _select_committed(self._conn, role_id)

    def append_audit(self, entry: AuditLogEntry) -> str:
        row = self._conn.execute(
            "SELECT entry_hash FROM audit_log ORDER BY id DESC LIMIT 1"
        ).fetchone()
        prev_hash = row[0] if row is not None else None
        entry_json, entry_hash, signature = seal_entry(entry, prev_hash, self._signing_key)
        self._conn.execute(
            """
            INSERT INTO audit_log
            (policy_id, event, entry_json, entry_hash, prev_entry_hash, entry_signature)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entry.policy_id, entry.event.value, entry_json, entry_hash, prev_hash, signature),
        )
        return entry_hash

    def _update_one(self, sql: str, params: tuple[object, ...]) -> None:
        cursor = self._conn.execute(sql, params)
        if cursor.rowcount != 1:
            raise StoreError("pending policy not found for update")


@dataclass
class SQLitePolicyStore:
    """SQLite-backed policy store.

    Features:
    - pending_policies / policy_decisions / committed_policies / audit_log tables
    - exclusive write sessions (BEGIN IMMEDIATE) spanning read-check-write
    - optional Ed25519 signing of audit entries
    """

    path: Path
    signing_key: SigningKey | None = field(default=None, repr=False)
    busy_timeout: float = BUSY_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(sanitize_exception(exc)) from exc
        _ensure_wal_mode(self.path)
        try:
            with self._connect() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except sqlite3.Error as exc:
            raise StoreError(sanitize_exception(exc)) from exc

    @contextmanager
    def session(self) -> Iterator[SQLiteSession]:
        """Open an exclusive write transaction. Commits on success, rolls back on error."""
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreError(sanitize_exception(exc)) from exc
            try:
                yield SQLiteSession(conn, signing_key=self.signing_key)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                conn.execute("ROLLBACK")
                raise StoreError(sanitize_exception(exc)) from exc
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def get_pending(self, policy_id: str) -> PendingPolicy | None:
        validate_nonempty_str("policy_id", policy_id)
        with self._reading() as conn:
            return _select_pending(conn, policy_id)

    def list_pending(self, statuses: Iterable[PolicyStatus] | None = None) -> list[PendingPolicy]:
        """List policies newest first, optionally filtered by status."""
        sql = f"SELECT {_PENDING_COLUMNS} FROM pending_policies p {_TALLY_JOIN}"
        params: list[str] = []
        if statuses is not None:
            wanted = [PolicyStatus(status).value for status in statuses]
            if not wanted:
                return []
            sql += f" WHERE p.status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        sql += " ORDER BY p.created_at DESC, p.id ASC"
        with self._reading() as conn:
            return [_pending_from_row(row) for row in conn.execute(sql, params).fetchall()]

    def list_decisions(self, policy_id: str) -> list[PolicyDecision]:
        validate_nonempty_str("policy_id", policy_id)
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT policy_request_id, voter_id, voter_email, decision, timestamp
                FROM policy_decisions WHERE policy_request_id = ?
                ORDER BY timestamp ASC, voter_id ASC
                """,
                (policy_id,),
            ).fetchall()
            return [_decision_from_row(row) for row in rows]

    def get_committed(self, role_id: str) -> CommittedPolicy | None:
        validate_nonempty_str("role_id", role_id)
        with self._reading() as conn:
            return _select_committed(conn, role_id)

    def list_audit(self, *, limit: int | None = None, offset: int | None = None) -> list[AuditLogEntry]:
        """Return a page of audit entries, newest first."""
        limit, offset = clamp_page(limit, offset)
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT id, entry_json, entry_signature FROM audit_log
                ORDER BY id DESC LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ).fetchall()
            return [
                load_entry(row["entry_json"], sequence=row["id"], signature=row["entry_signature"])
                for row in rows
            ]

    def iter_audit(self) -> Iterator[AuditLogEntry]:
        """Yield every audit entry oldest first."""
        with self._reading() as conn:
            cursor = conn.execute(
                "SELECT id, entry_json, entry_signature FROM audit_log ORDER BY id ASC"
            )
            for row in cursor:
                yield load_entry(row["entry_json"], sequence=row["id"], signature=row["entry_signature"])

    def verify_audit(self, *, public_key: VerifyKey | None = None) -> int:
        """Verify the audit chain and return the number of entries checked."""
        with self._reading() as conn:
            cursor = conn.execute(
                """
                SELECT entry_json, entry_hash, prev_entry_hash, entry_signature
                FROM audit_log ORDER BY id ASC
                """
            )
            return verify_chain(
                ((row[0], row[1], row[2], row[3]) for row in cursor), public_key=public_key
            )

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._connect() as conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(sanitize_exception(exc)) from exc

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; transactions are explicit. Always closes."""
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

