from __future__ import annotations

from typing import Final

DUPLICATE_NUMBER: Final[str] = "doublon_numero"
ODOMETER_REGRESSION: Final[str] = "recul_kilometrique"
EXCESSIVE_DISTANCE: Final[str] = "distance_incoherente"
AMOUNT_MISMATCH: Final[str] = "montant_incoherent"
FUEL_TYPE_MISMATCH: Final[str] = "carburant_incoherent"
ABNORMAL_FREQUENCY: Final[str] = "frequence_anormale"
INVALID_DISTANCE: Final[str] = "distance_invalide"
INVALID_ODOMETER: Final[str] = "km_invalide"
CONSUMPTION_OUTLIER_HIGH: Final[str] = "conso_outlier_high"
CONSUMPTION_OUTLIER_MEDIUM: Final[str] = "conso_outlier_med"

# Re-derived on every evaluation of a closed voucher; stale rows are removed.
STATISTICAL_TYPES: Final[frozenset[str]] = frozenset(
    {
        CONSUMPTION_OUTLIER_HIGH,
        CONSUMPTION_OUTLIER_MEDIUM,
        INVALID_DISTANCE,
        INVALID_ODOMETER,
    }
)

RULE_TYPES: Final[frozenset[str]] = frozenset(
    {
        DUPLICATE_NUMBER,
        ODOMETER_REGRESSION,
        EXCESSIVE_DISTANCE,
        AMOUNT_MISMATCH,
        FUEL_TYPE_MISMATCH,
        ABNORMAL_FREQUENCY,
    }
)

LABELS: Final[dict[str, str]] = {
    DUPLICATE_NUMBER: "Doublon numéro",
    ODOMETER_REGRESSION: "Recul kilométrique",
    EXCESSIVE_DISTANCE: "Distance incohérente",
    AMOUNT_MISMATCH: "Montant incohérent",
    FUEL_TYPE_MISMATCH: "Carburant incohérent",
    ABNORMAL_FREQUENCY: "Fréquence anormale",
    INVALID_DISTANCE: "Distance invalide",
    INVALID_ODOMETER: "Kilométrage invalide",
    CONSUMPTION_OUTLIER_HIGH: "Consommation très anormale",
    CONSUMPTION_OUTLIER_MEDIUM: "Consommation anormale",
}


def label_for(anomaly_type: str) -> str:
    return LABELS.get(anomaly_type, anomaly_type)
