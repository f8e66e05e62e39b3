from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from fuel_audit.anomaly_store import AnomalyNotFoundError, SqliteAnomalyStore
from schemas.voucher_schema import AnomalyCandidate


def _candidate(anomaly_type: str = "conso_outlier_high", risk: float = 90, **kw: str) -> AnomalyCandidate:
    return AnomalyCandidate(
        voucher_id=kw.get("voucher_id", "b-1"),
        type=anomaly_type,
        severity=kw.get("severity", "elevee"),
        risk_score=risk,
        details=kw.get("details", "Conso 9.5 L/100km"),
    )


def test_upsert_updates_in_place(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    first = store.upsert_anomaly(_candidate())
    second = store.upsert_anomaly(_candidate(details="Conso 10.1 L/100km"))

    assert first.id == second.id
    assert second.details == "Conso 10.1 L/100km"
    assert second.status == "a_verifier"
    assert len(store.list_anomalies()) == 1


def test_concurrent_upserts_converge_on_one_row(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")

    def _upsert(i: int) -> str:
        return store.upsert_anomaly(_candidate(risk=80 + i)).id

    with ThreadPoolExecutor(max_workers=6) as pool:
        ids = list(pool.map(_upsert, range(6)))

    assert len(set(ids)) == 1
    assert len(store.list_anomalies(voucher_id="b-1")) == 1


def test_replace_findings_removes_stale_and_keeps_other_types(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    store.upsert_anomaly(_candidate("conso_outlier_high"))
    store.upsert_anomaly(_candidate("doublon_numero", severity="critique"))

    summary = store.replace_findings(
        "b-1",
        {"conso_outlier_high", "conso_outlier_med"},
        [_candidate("conso_outlier_med", risk=70, severity="moyenne")],
    )

    assert summary == {"upserted": 1, "removed": 1}
    assert {a.type for a in store.list_anomalies(voucher_id="b-1")} == {
        "conso_outlier_med",
        "doublon_numero",
    }


def test_replace_findings_rejects_other_voucher(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    with pytest.raises(ValueError):
        store.replace_findings("b-1", {"conso_outlier_high"}, [_candidate(voucher_id="b-2")])


def test_delete_anomalies_by_type(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    store.upsert_anomaly(_candidate("km_invalide"))
    assert store.delete_anomalies("b-1", []) == 0
    assert store.delete_anomalies("b-1", ["km_invalide"]) == 1
    assert store.get_anomaly("b-1", "km_invalide") is None


def test_list_is_ordered_by_risk_and_filtered_by_status(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    low = store.upsert_anomaly(_candidate("carburant_incoherent", risk=30, severity="faible"))
    store.upsert_anomaly(_candidate("doublon_numero", risk=90, severity="critique"))
    store.update_review(low.id, "justifiee", "plein autorise")

    ordered = store.list_anomalies()
    assert [a.risk_score for a in ordered] == [90, 30]
    assert [a.type for a in store.list_anomalies(status="justifiee")] == ["carburant_incoherent"]


def test_update_review_keeps_comment_when_omitted(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    stored = store.upsert_anomaly(_candidate())
    store.update_review(stored.id, "en_cours", "verification en cours")
    updated = store.update_review(stored.id, "fraude", None)

    assert updated.status == "fraude"
    assert updated.comment == "verification en cours"


def test_update_review_unknown_id(tmp_path: Path) -> None:
    store = SqliteAnomalyStore(db_path=tmp_path / "fleet.db")
    with pytest.raises(AnomalyNotFoundError):
        store.update_review("missing", "en_cours", None)
