from __future__ import annotations

import re
from collections.abc import Collection, Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fuel_audit.config import Settings
from schemas.voucher_schema import Anomaly, AnomalyCandidate


class StorageError(RuntimeError):
    pass


_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COLUMNS = (
    "id",
    "voucher_id",
    "type",
    "severity",
    "risk_score",
    "details",
    "status",
    "comment",
    "created_at",
    "updated_at",
)


def _row_to_anomaly(row: tuple[Any, ...]) -> Anomaly:
    return Anomaly.model_validate(dict(zip(_COLUMNS, row)))


class PostgresAnomalyStore:
    """Anomaly store backed by Postgres.

    The (voucher_id, type) pair carries a unique constraint and every upsert
    goes through ``ON CONFLICT``; replace runs in one transaction.
    """

    def __init__(self, dsn: str, table_name: str = "anomalies") -> None:
        if not _TABLE_NAME_RE.match(table_name):
            raise StorageError(f"Invalid table name: {table_name}")
        self._dsn = dsn
        self._table = table_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresAnomalyStore":
        if not settings.postgres_dsn:
            raise StorageError("POSTGRES_DSN is required for Postgres anomaly storage.")
        return cls(dsn=settings.postgres_dsn, table_name=settings.postgres_anomaly_table)

    def _connect(self) -> Any:
        try:
            import psycopg
        except ImportError as exc:
            raise RuntimeError("psycopg is required for Postgres anomaly storage") from exc
        return psycopg.connect(self._dsn)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        id TEXT PRIMARY KEY,
                        voucher_id TEXT NOT NULL,
                        type TEXT NOT NULL,
                        severity TEXT NOT NULL,
                        risk_score DOUBLE PRECISION NOT NULL,
                        details TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'a_verifier',
                        comment TEXT,
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL,
                        UNIQUE (voucher_id, type)
                    )
                    """
                )
            conn.commit()

    def _upsert(self, cur: Any, candidate: AnomalyCandidate, now: datetime) -> tuple[Any, ...] | None:
        cur.execute(
            f"""
            INSERT INTO {self._table} ({", ".join(_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s, 'a_verifier', NULL, %s, %s)
            ON CONFLICT (voucher_id, type) DO UPDATE SET
                severity = EXCLUDED.severity,
                risk_score = EXCLUDED.risk_score,
                details = EXCLUDED.details,
                updated_at = EXCLUDED.updated_at
            RETURNING {", ".join(_COLUMNS)}
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
        return cur.fetchone()

    def upsert_anomaly(self, candidate: AnomalyCandidate) -> Anomaly:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            with conn.cursor() as cur:
                row = self._upsert(cur, candidate, now)
            conn.commit()
        if row is None:
            raise StorageError(f"Upsert returned no row for {candidate.key}")
        return _row_to_anomaly(row)

    def delete_anomalies(self, voucher_id: str, types: Collection[str]) -> int:
        if not types:
            return 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self._table} WHERE voucher_id = %s AND type = ANY(%s)",
                    (voucher_id, list(types)),
                )
                removed = cur.rowcount
            conn.commit()
        return removed

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
        now = datetime.now(timezone.utc)

        # psycopg rolls the transaction back when the block raises before commit.
        with self._connect() as conn:
            with conn.cursor() as cur:
                removed = 0
                if stale:
                    cur.execute(
                        f"DELETE FROM {self._table} WHERE voucher_id = %s AND type = ANY(%s)",
                        (voucher_id, stale),
                    )
                    removed = cur.rowcount
                for candidate in current:
                    self._upsert(cur, candidate, now)
            conn.commit()
        return {"upserted": len(current), "removed": removed}

    def get_anomaly(self, voucher_id: str, anomaly_type: str) -> Anomaly | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM {self._table} "
                    "WHERE voucher_id = %s AND type = %s",
                    (voucher_id, anomaly_type),
                )
                row = cur.fetchone()
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
            clauses.append("voucher_id = %s")
            params.append(voucher_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM {self._table} {where} "
                    "ORDER BY risk_score DESC, created_at DESC",
                    tuple(params),
                )
                rows = cur.fetchall()
        return [_row_to_anomaly(row) for row in rows]

    def get_anomaly_by_id(self, anomaly_id: str) -> Anomaly | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM {self._table} WHERE id = %s",
                    (anomaly_id,),
                )
                row = cur.fetchone()
        return _row_to_anomaly(row) if row else None

    def update_review(self, anomaly_id: str, status: str, comment: str | None) -> Anomaly:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._table}
                    SET status = %s, comment = COALESCE(%s, comment), updated_at = %s
                    WHERE id = %s
                    RETURNING {", ".join(_COLUMNS)}
                    """,
                    (status, comment, datetime.now(timezone.utc), anomaly_id),
                )
                row = cur.fetchone()
            conn.commit()
        if row is None:
            raise LookupError(f"Unknown anomaly: {anomaly_id}")
        return _row_to_anomaly(row)
