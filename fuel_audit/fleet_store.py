from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from schemas.voucher_schema import Driver, FuelPrice, Vehicle, Voucher

_VOUCHER_COLUMNS = (
    "id, number, issued_at, fuel_type, amount, driver_id, vehicle_id, "
    "odometer_start, odometer_end, distance, notes, created_at, updated_at"
)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _row_to_voucher(row: sqlite3.Row) -> Voucher:
    return Voucher.model_validate(dict(row))


class SqliteFleetStore:
    """Vouchers, vehicles, drivers and fuel prices in one SQLite file.

    Implements the voucher store, voucher history query and fuel price lookup
    used by the evaluation pipeline.
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
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS vouchers (
                    id TEXT PRIMARY KEY,
                    number TEXT NOT NULL,
                    issued_at TEXT NOT NULL,
                    fuel_type TEXT NOT NULL,
                    amount REAL NOT NULL,
                    driver_id TEXT NOT NULL,
                    vehicle_id TEXT NOT NULL,
                    odometer_start REAL,
                    odometer_end REAL,
                    distance REAL,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_vouchers_vehicle
                    ON vouchers (vehicle_id, issued_at, number);
                CREATE INDEX IF NOT EXISTS idx_vouchers_driver ON vouchers (driver_id);
                CREATE INDEX IF NOT EXISTS idx_vouchers_number ON vouchers (number);
                CREATE TABLE IF NOT EXISTS vehicles (
                    id TEXT PRIMARY KEY,
                    registration TEXT NOT NULL DEFAULT '',
                    default_fuel_type TEXT,
                    cost_per_km_reference REAL,
                    status TEXT NOT NULL DEFAULT 'en_service'
                );
                CREATE TABLE IF NOT EXISTS drivers (
                    id TEXT PRIMARY KEY,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    employee_id TEXT,
                    status TEXT NOT NULL DEFAULT 'actif'
                );
                CREATE TABLE IF NOT EXISTS fuel_prices (
                    fuel_type TEXT PRIMARY KEY,
                    unit_price REAL NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def save_voucher(self, voucher: Voucher) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO vouchers ({_VOUCHER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    number = excluded.number,
                    issued_at = excluded.issued_at,
                    fuel_type = excluded.fuel_type,
                    amount = excluded.amount,
                    driver_id = excluded.driver_id,
                    vehicle_id = excluded.vehicle_id,
                    odometer_start = excluded.odometer_start,
                    odometer_end = excluded.odometer_end,
                    distance = excluded.distance,
                    notes = excluded.notes,
                    updated_at = excluded.updated_at
                """,
                (
                    voucher.id,
                    voucher.number,
                    _iso(voucher.issued_at),
                    voucher.fuel_type,
                    voucher.amount,
                    voucher.driver_id,
                    voucher.vehicle_id,
                    voucher.odometer_start,
                    voucher.odometer_end,
                    voucher.distance,
                    voucher.notes,
                    _iso(voucher.created_at),
                    _iso(voucher.updated_at),
                ),
            )

    def save_vehicle(self, vehicle: Vehicle) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO vehicles
                (id, registration, default_fuel_type, cost_per_km_reference, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    vehicle.id,
                    vehicle.registration,
                    vehicle.default_fuel_type,
                    vehicle.cost_per_km_reference,
                    vehicle.status,
                ),
            )

    def save_driver(self, driver: Driver) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO drivers
                (id, first_name, last_name, employee_id, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (driver.id, driver.first_name, driver.last_name, driver.employee_id, driver.status),
            )

    def set_fuel_price(self, price: FuelPrice) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO fuel_prices (fuel_type, unit_price, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(fuel_type) DO UPDATE SET
                    unit_price = excluded.unit_price,
                    updated_at = excluded.updated_at
                """,
                (price.fuel_type, price.unit_price, _iso(price.updated_at)),
            )

    def get_voucher(self, voucher_id: str) -> Voucher | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_VOUCHER_COLUMNS} FROM vouchers WHERE id = ?",
                (voucher_id,),
            ).fetchone()
        return _row_to_voucher(row) if row else None

    def _select_vouchers(self, where: str, params: tuple[Any, ...]) -> list[Voucher]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_VOUCHER_COLUMNS} FROM vouchers WHERE {where} "
                "ORDER BY issued_at DESC, number DESC",
                params,
            ).fetchall()
        return [_row_to_voucher(row) for row in rows]

    def list_vehicle_vouchers(self, vehicle_id: str) -> list[Voucher]:
        return self._select_vouchers("vehicle_id = ?", (vehicle_id,))

    def list_driver_vouchers(self, driver_id: str) -> list[Voucher]:
        return self._select_vouchers("driver_id = ?", (driver_id,))

    def find_vouchers_by_number(self, number: str) -> list[Voucher]:
        return self._select_vouchers("TRIM(number) = ?", (number.strip(),))

    def fetch_closed_history(
        self,
        vehicle_id: str,
        exclude_voucher_id: str | None,
        *,
        limit: int,
        min_distance: float,
    ) -> list[Voucher]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_VOUCHER_COLUMNS} FROM vouchers
                WHERE vehicle_id = ?
                  AND (? IS NULL OR id != ?)
                  AND odometer_start IS NOT NULL
                  AND odometer_end IS NOT NULL
                  AND COALESCE(distance, odometer_end - odometer_start) >= ?
                  AND amount > 0
                ORDER BY issued_at DESC, number DESC
                LIMIT ?
                """,
                (vehicle_id, exclude_voucher_id, exclude_voucher_id, min_distance, limit),
            ).fetchall()
        return [_row_to_voucher(row) for row in rows]

    def price_on(self, fuel_type: str, on: datetime) -> float | None:
        # Only the current price is recorded; `on` is accepted for a dated lookup.
        with self._connect() as conn:
            row = conn.execute(
                "SELECT unit_price FROM fuel_prices WHERE fuel_type = ?",
                (fuel_type,),
            ).fetchone()
        return float(row["unit_price"]) if row else None

    def current_prices(self) -> dict[str, float]:
        with self._connect() as conn:
            rows = conn.execute("SELECT fuel_type, unit_price FROM fuel_prices").fetchall()
        return {row["fuel_type"]: float(row["unit_price"]) for row in rows}

    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vehicles WHERE id = ?", (vehicle_id,)).fetchone()
        return Vehicle.model_validate(dict(row)) if row else None

    def get_driver(self, driver_id: str) -> Driver | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM drivers WHERE id = ?", (driver_id,)).fetchone()
        return Driver.model_validate(dict(row)) if row else None
