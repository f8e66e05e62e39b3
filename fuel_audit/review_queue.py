from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final, Protocol

from schemas.voucher_schema import SEVERITY_RANK, Anomaly, AnomalyCandidate


class InvalidReviewTransitionError(ValueError):
    pass


class ReviewableStore(Protocol):
    def get_anomaly_by_id(self, anomaly_id: str) -> Anomaly | None:
        ...

    def update_review(self, anomaly_id: str, status: str, comment: str | None) -> Anomaly:
        ...


REVIEW_TRANSITIONS: Final[dict[str, set[str]]] = {
    "a_verifier": {"en_cours", "justifiee", "fraude"},
    "en_cours": {"a_verifier", "justifiee", "fraude"},
    "justifiee": {"a_verifier"},
    "fraude": {"a_verifier"},
}


@dataclass(frozen=True)
class ReviewDecision:
    status: str
    reason_codes: tuple[str, ...]
    max_severity: str | None = None
    max_risk_score: float = 0.0


def decide_review_status(findings: Sequence[AnomalyCandidate]) -> ReviewDecision:
    if not findings:
        return ReviewDecision(status="CLEAR", reason_codes=tuple())
    worst = max(findings, key=lambda f: (SEVERITY_RANK[f.severity], f.risk_score))
    return ReviewDecision(
        status="REVIEW_REQUIRED",
        reason_codes=tuple(sorted({f.type for f in findings})),
        max_severity=worst.severity,
        max_risk_score=max(f.risk_score for f in findings),
    )


def apply_review(
    store: ReviewableStore,
    anomaly_id: str,
    status: str,
    *,
    comment: str | None = None,
) -> Anomaly:
    current = store.get_anomaly_by_id(anomaly_id)
    if current is None:
        raise LookupError(f"Unknown anomaly: {anomaly_id}")
    target = status.strip().lower()
    if target not in REVIEW_TRANSITIONS:
        raise InvalidReviewTransitionError(f"Unknown review status: {status}")
    if target != current.status and target not in REVIEW_TRANSITIONS[current.status]:
        raise InvalidReviewTransitionError(
            f"Invalid review transition: {current.status} -> {target}"
        )
    return store.update_review(anomaly_id, target, comment)
