from __future__ import annotations

from datetime import datetime, timezone
from typing import Final, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

FuelType = Literal["gasoil", "essence", "gasoil50"]
Severity = Literal["faible", "moyenne", "elevee", "critique"]
ReviewStatus = Literal["a_verifier", "en_cours", "justifiee", "fraude"]
AnomalyType = Literal[
    "doublon_numero",
    "recul_kilometrique",
    "distance_incoherente",
    "montant_incoherent",
    "carburant_incoherent",
    "frequence_anormale",
    "distance_invalide",
    "km_invalide",
    "conso_outlier_high",
    "conso_outlier_med",
]

SEVERITY_RANK: Final[dict[str, int]] = {
    "faible": 1,
    "moyenne": 2,
    "elevee": 3,
    "critique": 4,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Voucher(BaseModel):
    id: str = Field(min_length=1)
    number: str = Field(min_length=1)
    issued_at: datetime
    fuel_type: FuelType
    amount: float
    driver_id: str = Field(min_length=1)
    vehicle_id: str = Field(min_length=1)
    odometer_start: float | None = None
    odometer_end: float | None = None
    distance: float | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("issued_at", "created_at", "updated_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _odometer_end_requires_start(self) -> "Voucher":
        if self.odometer_end is not None and self.odometer_start is None:
            raise ValueError("odometer_end requires odometer_start")
        return self


class Vehicle(BaseModel):
    id: str = Field(min_length=1)
    registration: str = ""
    default_fuel_type: FuelType | None = None
    cost_per_km_reference: float | None = Field(default=None, gt=0)
    status: Literal["en_service", "hors_service"] = "en_service"


class Driver(BaseModel):
    id: str = Field(min_length=1)
    first_name: str = ""
    last_name: str = ""
    employee_id: str | None = None
    status: Literal["actif", "inactif"] = "actif"

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.id


class FuelPrice(BaseModel):
    fuel_type: FuelType
    unit_price: float = Field(gt=0)
    updated_at: datetime = Field(default_factory=_utcnow)


class AnomalyCandidate(BaseModel):
    voucher_id: str = Field(min_length=1)
    type: AnomalyType
    severity: Severity
    risk_score: float = Field(ge=0, le=100)
    details: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.voucher_id, self.type)


class Anomaly(AnomalyCandidate):
    id: str = Field(default_factory=lambda: uuid4().hex)
    status: ReviewStatus = "a_verifier"
    comment: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
