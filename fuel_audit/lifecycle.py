from __future__ import annotations

from typing import Final

from schemas.voucher_schema import Voucher


class InvalidTransitionError(ValueError):
    pass


ISSUED: Final[str] = "ISSUED"
IN_USE: Final[str] = "IN_USE"
CLOSED: Final[str] = "CLOSED"

ALLOWED_TRANSITIONS: Final[dict[str, set[str]]] = {
    ISSUED: {ISSUED, IN_USE, CLOSED},
    IN_USE: {IN_USE, CLOSED},
    CLOSED: {CLOSED},
}


def classify_phase(voucher: Voucher) -> str:
    if voucher.odometer_start is None:
        return ISSUED
    if voucher.odometer_end is None:
        return IN_USE
    return CLOSED


def effective_distance(voucher: Voucher) -> float | None:
    """Stored distance, or the odometer difference when the voucher is closed without one."""
    if voucher.distance is not None:
        return voucher.distance
    if voucher.odometer_start is not None and voucher.odometer_end is not None:
        return voucher.odometer_end - voucher.odometer_start
    return None


def can_transition(from_phase: str, to_phase: str) -> bool:
    from_norm = from_phase.strip().upper()
    to_norm = to_phase.strip().upper()
    return to_norm in ALLOWED_TRANSITIONS.get(from_norm, set())


def transition_phase(from_phase: str, to_phase: str) -> str:
    from_norm = from_phase.strip().upper()
    to_norm = to_phase.strip().upper()

    if from_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown phase: {from_phase}")
    if to_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown phase: {to_phase}")
    if to_norm not in ALLOWED_TRANSITIONS[from_norm]:
        raise InvalidTransitionError(f"Invalid transition: {from_norm} -> {to_norm}")
    return to_norm


def check_voucher_update(before: Voucher, after: Voucher) -> str:
    """Validate the phase move implied by an edit and return the new phase."""
    return transition_phase(classify_phase(before), classify_phase(after))
