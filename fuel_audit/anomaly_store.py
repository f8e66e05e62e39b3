from __future__ import annotations

import sqlite3
from collections.abc import Collection, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from schemas.voucher_schema import Anomaly, AnomalyCandidate

_ANOMALY_COLUMNS = (
    "id, voucher_id, type, severity, risk_score, details, status, comment, "
    "created_at, updated_at"
)


class AnomalyNotFoundError(LookupError):
    pass


def _row_to_anomaly(row: sqlite3.Row) -> Anomaly:
    return Anomaly.model_validate(dict(row))


class SqliteAnomalyStore:
    """Anomaly rows unique per (voucher_id, type).

    Upserts rely on the unique constraint, so concurrent evaluations of the
    same voucher converge on one row per type.
    """

    def __init__(self, db_path: str | Path = "data/fleet.db") -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS anomalies (
                    id TEXT PRIMARY KEY,
                    voucher_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    risk_score REAL NOT NULL,
                    details TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'a_verifier',
                    comment TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (voucher_id, type)
                )
                """
            )

    def _upsert(self, conn: sqlite3.Connection, candidate: AnomalyCandidate, now: str) -> None:
        conn.execute(
            f"""
            INSERT INTO anomalies ({_ANOMALY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, 'a_verifier', NULL, ?, ?)
            ON CONFLICT(voucher_id, type) DO UPDATE SET
                severity = excluded.severity,
                risk_score = excluded.risk_score,
                details = excluded.details,
                updated_at = excluded.updated_at
            """,
            (
                uuid4().hex,
                candidate.voucher_id,
                candidate.type,
                candidate.severity,
                candidate.risk_score,
                candidate.details,
                now,
                now,
            ),
        )

    def _fetch(self, conn: sqlite3.Connection, voucher_id: str, anomaly_type: str) -> Anomaly | None:
        row = conn.execute(
            f"SELECT {_ANOMALY_COLUMNS} FROM anomalies WHERE voucher_id = ? AND type = ?",
            (voucher_id, anomaly_type),
        ).fetchone()
        return _row_to_anomaly(row) if row else None

    def upsert_anomaly(self, candidate: AnomalyCandidate) -> Anomaly:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._upsert(conn, candidate, now)
                stored = self._fetch(conn, candidate.voucher_id, candidate.type)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        assert stored is not None
        return stored

    def delete_anomalies(self, voucher_id: str, types: Collection[str]) -> int:
        if not types:
            return 0
        placeholders = ", ".join("?" for _ in types)
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM anomalies WHERE voucher_id = ? AND type IN ({placeholders})",
                (voucher_id, *types),
            )
            return cursor.rowcount

    def replace_findings(
        self,
        voucher_id: str,
        managed_types: Collection[str],
        findings: Iterable[AnomalyCandidate],
    ) -> dict[str, int]:
        current = [f for f in findings if f.type in managed_types]
        if any(f.voucher_id != voucher_id for f in current):
            raise ValueError("findings must all belong to the reconciled voucher")
        stale = [t for t in managed_types if t not in {f.type for f in current}]
        now = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                removed = 0
                if stale:
                    placeholders = ", ".join("?" for _ in stale)
                    cursor = conn.execute(
                        f"DELETE FROM anomalies WHERE voucher_id = ? AND type IN ({placeholders})",
                        (voucher_id, *stale),
                    )
                    removed = cursor.rowcount
                for candidate in current:
                    self._upsert(conn, candidate, now)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return {"upserted": len(current), "removed": removed}

    def get_anomaly(self, voucher_id: str, anomaly_type: str) -> Anomaly | None:
        with self._connect() as conn:
            return self._fetch(conn, voucher_id, anomaly_type)

    def get_anomaly_by_id(self, anomaly_id: str) -> Anomaly | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ANOMALY_COLUMNS} FROM anomalies WHERE id = ?",
                (anomaly_id,),
            ).fetchone()
        return _row_to_anomaly(row) if row else None

    def list_anomalies(
        self,
        *,
        voucher_id: str | None = None,
        status: str | None = None,
    ) -> list[Anomaly]:
        clauses: list[str] = []
        params: list[str] = []
        if voucher_id is not None:
            clauses.append("voucher_id = ?")
            params.append(voucher_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ANOMALY_COLUMNS} FROM anomalies {where} "
                "ORDER BY risk_score DESC, created_at DESC",
                tuple(params),
            ).fetchall()
        return [_row_to_anomaly(row) for row in rows]

    def update_review(self, anomaly_id: str, status: str, comment: str | None) -> Anomaly:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE anomalies
                SET status = ?, comment = COALESCE(?, comment), updated_at = ?
                WHERE id = ?
                """,
                (status, comment, now, anomaly_id),
            )
            if cursor.rowcount == 0:
                raise AnomalyNotFoundError(f"Unknown anomaly: {anomaly_id}")
        stored = self.get_anomaly_by_id(anomaly_id)
        assert stored is not None
        return stored
