from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _parse_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


@dataclass(frozen=True)
class DetectionThresholds:
    window_size: int = 20
    min_samples: int = 5
    min_distance_km: float = 10.0
    medium_z: float = 3.0
    high_z: float = 4.5
    robust_epsilon: float = 1e-6
    max_trip_distance_km: float = 1000.0
    frequency_window_hours: float = 24.0
    frequency_max_vouchers: int = 5
    amount_deviation_pct: float = 50.0

    def __post_init__(self) -> None:
        if self.medium_z >= self.high_z:
            raise ValueError("OUTLIER_MEDIUM_Z must be lower than OUTLIER_HIGH_Z")
        if self.min_samples > self.window_size:
            raise ValueError("CONSUMPTION_MIN_SAMPLES cannot exceed CONSUMPTION_WINDOW_SIZE")


@dataclass(frozen=True)
class Settings:
    anomaly_backend: str = "sqlite"
    database_path: str = "data/fleet.db"
    postgres_dsn: str | None = None
    postgres_anomaly_table: str = "anomalies"
    log_level: str = "INFO"
    dead_letter_path: str = "logs/evaluation_dead_letter.jsonl"
    metrics_path: str = "logs/metrics.jsonl"
    previous_voucher_wait_seconds: float = 2.0
    previous_voucher_poll_seconds: float = 0.1
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)

    @classmethod
    def from_env(cls) -> "Settings":
        backend = os.getenv("ANOMALY_BACKEND", "sqlite").strip().lower()
        if backend not in {"sqlite", "postgres"}:
            raise ValueError("ANOMALY_BACKEND must be one of: sqlite, postgres")

        postgres_dsn = os.getenv("POSTGRES_DSN")
        if backend == "postgres" and (not postgres_dsn or not postgres_dsn.strip()):
            raise ValueError("POSTGRES_DSN is required when ANOMALY_BACKEND=postgres")

        thresholds = DetectionThresholds(
            window_size=_parse_int("CONSUMPTION_WINDOW_SIZE", 20),
            min_samples=_parse_int("CONSUMPTION_MIN_SAMPLES", 5),
            min_distance_km=_parse_float("CONSUMPTION_MIN_DISTANCE_KM", 10.0),
            medium_z=_parse_float("OUTLIER_MEDIUM_Z", 3.0),
            high_z=_parse_float("OUTLIER_HIGH_Z", 4.5),
            max_trip_distance_km=_parse_float("MAX_TRIP_DISTANCE_KM", 1000.0),
            frequency_window_hours=_parse_float("FREQUENCY_WINDOW_HOURS", 24.0),
            frequency_max_vouchers=_parse_int("FREQUENCY_MAX_VOUCHERS", 5),
        )

        return cls(
            anomaly_backend=backend,
            database_path=os.getenv("DATABASE_PATH", "data/fleet.db"),
            postgres_dsn=postgres_dsn,
            postgres_anomaly_table=os.getenv("POSTGRES_ANOMALY_TABLE", "anomalies"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            dead_letter_path=os.getenv("DEAD_LETTER_PATH", "logs/evaluation_dead_letter.jsonl"),
            metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
            previous_voucher_wait_seconds=_parse_float("PREVIOUS_VOUCHER_WAIT_SECONDS", 2.0),
            previous_voucher_poll_seconds=_parse_float(
                "PREVIOUS_VOUCHER_POLL_SECONDS", 0.1, minimum=0.001
            ),
            thresholds=thresholds,
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)
