from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from fuel_audit.config import DetectionThresholds

MAD_CONSISTENCY = 0.6745

NONE = "none"
MEDIUM = "medium"
HIGH = "high"


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def mad(values: Sequence[float], center: float) -> float:
    if not values:
        return 0.0
    return median([abs(x - center) for x in values])


def robust_z(x: float, center: float, scale: float, eps: float = 1e-6) -> float:
    return MAD_CONSISTENCY * (x - center) / max(scale, eps)


@dataclass(frozen=True)
class OutlierScore:
    classification: str
    value: float
    median: float
    mad: float
    z: float
    sample_size: int

    @property
    def is_outlier(self) -> bool:
        return self.classification != NONE


def score_consumption(
    value: float,
    baseline: Sequence[float],
    thresholds: DetectionThresholds | None = None,
) -> OutlierScore:
    """Classify a consumption figure against a vehicle baseline.

    Median and MAD are taken over the baseline only. A baseline shorter than
    ``min_samples`` never yields an outlier.
    """
    active = thresholds or DetectionThresholds()
    n = len(baseline)
    if n < active.min_samples:
        return OutlierScore(
            classification=NONE,
            value=value,
            median=median(baseline),
            mad=0.0,
            z=0.0,
            sample_size=n,
        )

    center = median(baseline)
    scale = mad(baseline, center)
    z = robust_z(value, center, scale, active.robust_epsilon)
    if abs(z) >= active.high_z:
        classification = HIGH
    elif abs(z) >= active.medium_z:
        classification = MEDIUM
    else:
        classification = NONE
    return OutlierScore(
        classification=classification,
        value=value,
        median=center,
        mad=scale,
        z=z,
        sample_size=n,
    )
