"""Tests for the SII document matcher."""

import random
from dataclasses import replace
from datetime import date, timedelta
from uuid import UUID, uuid4

import pytest

from src.models import Direction, DocumentType
from src.services.documents import DocumentRecord, SqlDocumentStore, candidate_pool
from src.services.matching import (
    ConfigError,
    MatchReason,
    MatcherConfig,
    MatchingError,
    load_matcher_config,
    match_transaction,
    name_similarity,
    rank_candidates,
    score_amount,
    score_date,
    score_document,
)
from tests.factories import AccountingDocumentFactory, BankTransactionFactory, MatchPatternFactory

RUT = "76086428-5"
CONFIG = MatcherConfig()


def _txn(**overrides):
    values = {
        "fecha": date(2024, 3, 12),
        "monto": -150_000,
        "descripcion": "TRANSF A DISTRIBUIDORA LOS ANDES 76.086.428-5 FACT 4521",
        "rut_contraparte": RUT,
        "numero_documento": "4521",
    }
    values.update(overrides)
    return BankTransactionFactory.build(**values)


def _doc(**overrides) -> DocumentRecord:
    values = {
        "id": uuid4(),
        "document_type": DocumentType.FACTURA,
        "folio": 4521,
        "fecha_emision": date(2024, 3, 10),
        "rut_emisor": "76.086.428-5",
        "razon_social": "Distribuidora Los Andes SpA",
        "monto_total": 150_000,
        "currency": "CLP",
    }
    values.update(overrides)
    return DocumentRecord(**values)


class TestSignals:
    def test_amount_bands(self) -> None:
        assert score_amount(-150_000, 150_000, CONFIG) == (0.45, MatchReason.EXACT_AMOUNT)

        near, reason = score_amount(-5_100, 5_000, CONFIG)
        assert reason is MatchReason.NEAR_AMOUNT
        assert near == pytest.approx(0.45 * 0.78)

        close, reason = score_amount(-104_000, 100_000, CONFIG)
        assert reason is MatchReason.CLOSE_AMOUNT
        assert close == pytest.approx(0.45 * 0.44)

        assert score_amount(-106_000, 100_000, CONFIG) == (0.0, None)

    def test_date_grace_and_decay(self) -> None:
        assert score_date(-3, CONFIG) == (0.25, MatchReason.SAME_DAY)
        assert score_date(30, CONFIG) == (0.0, None)

        near, reason = score_date(10, CONFIG)
        far, _ = score_date(20, CONFIG)
        assert reason is MatchReason.DATE_WITHIN_WINDOW
        assert 0 < far < near < 0.25

    def test_name_similarity_ignores_legal_suffix(self) -> None:
        assert name_similarity("PAGO DISTRIBUIDORA LOS ANDES", "Distribuidora Los Andes S.A.") == 1.0
        assert name_similarity("PAGO", None) == 0.0
        assert name_similarity("COMPRA FERRETERIA", "Distribuidora Los Andes SpA") < 0.6


class TestScoreDocument:
    def test_clean_match_scores_high_with_reasons(self) -> None:
        candidate = score_document(_txn(), _doc(), CONFIG)

        assert candidate is not None
        assert candidate.score >= 0.9
        assert MatchReason.EXACT_AMOUNT in candidate.reasons
        assert MatchReason.SAME_ISSUER_RUT in candidate.reasons
        assert MatchReason.FOLIO_REFERENCE in candidate.reasons
        assert candidate.amount_diff == 0
        assert candidate.day_diff == -2

    def test_rut_taken_from_description(self) -> None:
        candidate = score_document(_txn(rut_contraparte=None), _doc(), CONFIG)
        assert MatchReason.SAME_ISSUER_RUT in candidate.reasons

    def test_type_mismatch_is_capped(self) -> None:
        candidate = score_document(_txn(), _doc(document_type=DocumentType.NOTA_CREDITO), CONFIG)

        assert candidate.score <= CONFIG.type_mismatch_cap
        assert MatchReason.DOCUMENT_TYPE_MISMATCH in candidate.reasons

    def test_currency_mismatch_is_never_a_candidate(self) -> None:
        assert score_document(_txn(), _doc(currency="USD"), CONFIG) is None

    def test_below_floor_is_dropped(self) -> None:
        unrelated = _txn(descripcion="COMPRA VARIOS", rut_contraparte=None, numero_documento=None)
        assert score_document(unrelated, _doc(monto_total=990_000, razon_social=None), CONFIG) is None

    def test_malformed_document_raises(self) -> None:
        with pytest.raises(MatchingError):
            score_document(_txn(), _doc(monto_total=0), CONFIG)

    def test_learned_pattern_boost(self) -> None:
        txn = _txn(
            descripcion="TRANSFERENCIA DISTRIBUIDORA SUR",
            rut_contraparte=None,
            numero_documento=None,
            fecha=date(2024, 3, 10),
        )
        doc = _doc(monto_total=151_000, razon_social=None, folio=999)
        pattern = MatchPatternFactory.build(keywords="transferencia distribuidora", rut_emisor=RUT)

        plain = score_document(txn, doc, CONFIG)
        boosted = score_document(txn, doc, CONFIG, [pattern])

        assert boosted.score == pytest.approx(plain.score + CONFIG.learned_pattern_boost)
        assert MatchReason.LEARNED_PATTERN in boosted.reasons
        assert MatchReason.LEARNED_PATTERN not in plain.reasons


class TestMatchTransaction:
    def test_unrelated_documents_give_empty_list(self) -> None:
        txn = _txn(descripcion="GIRO CAJERO", rut_contraparte=None, numero_documento=None)
        documents = [
            _doc(monto_total=999_000, fecha_emision=date(2024, 1, 1), rut_emisor="12.345.678-5"),
            _doc(monto_total=20_000, fecha_emision=date(2023, 11, 5), rut_emisor="96.505.760-9"),
        ]
        assert match_transaction(txn, documents, CONFIG) == []

    def test_ranking_is_deterministic(self) -> None:
        txn = _txn()
        documents = [
            _doc(id=UUID(int=i), folio=5000 + i, fecha_emision=date(2024, 3, 1) + timedelta(days=i))
            for i in range(8)
        ]
        expected = match_transaction(txn, documents, CONFIG)

        shuffled = documents[:]
        random.Random(7).shuffle(shuffled)
        assert match_transaction(txn, shuffled, CONFIG) == expected
        assert len(expected) == CONFIG.top_k
        assert all(0.0 <= candidate.score <= 1.0 for candidate in expected)
        assert [c.score for c in expected] == sorted((c.score for c in expected), reverse=True)

    def test_ties_break_on_amount_then_date_then_id(self) -> None:
        txn = _txn(descripcion="PAGO", rut_contraparte=None, numero_documento=None)
        same = _doc(id=UUID(int=2), razon_social=None, folio=1, fecha_emision=date(2024, 3, 12))
        twin = _doc(id=UUID(int=1), razon_social=None, folio=2, fecha_emision=date(2024, 3, 12))
        ranked = match_transaction(txn, [same, twin], CONFIG)

        assert [c.documento_id for c in ranked] == [UUID(int=1), UUID(int=2)]

    def test_bad_document_is_skipped(self) -> None:
        good = _doc()
        ranked = match_transaction(_txn(), [_doc(monto_total=0), good, good], CONFIG)
        assert [c.documento_id for c in ranked] == [good.id]

    def test_rank_candidates_truncates(self) -> None:
        candidates = [score_document(_txn(), _doc(), CONFIG) for _ in range(3)]
        assert len(rank_candidates(candidates, 2)) == 2

    def test_same_issuer_exact_amount_next_day_ranks_first(self) -> None:
        """
        GIVEN a 50.000 CLP payment on 2026-01-15 and a same-issuer document of
              50.000 CLP dated 2026-01-14 without a folio reference
        WHEN matching
        THEN that document is the top candidate with score >= 0.9
        """
        txn = _txn(
            fecha=date(2026, 1, 15),
            monto=-50_000,
            descripcion="TRANSFERENCIA PROVEEDOR 76.086.428-5",
            numero_documento=None,
        )
        document = _doc(fecha_emision=date(2026, 1, 14), monto_total=50_000, folio=17, razon_social=None)
        other_issuer = _doc(
            fecha_emision=date(2026, 1, 15), monto_total=50_000, folio=18, rut_emisor="96.505.760-9"
        )

        ranked = match_transaction(txn, [other_issuer, document], CONFIG)

        top = ranked[0]
        assert top.documento_id == document.id
        assert top.score >= 0.9
        assert MatchReason.EXACT_AMOUNT in top.reasons
        assert MatchReason.SAME_ISSUER_RUT in top.reasons
        assert MatchReason.SAME_DAY in top.reasons
        assert MatchReason.FOLIO_REFERENCE not in top.reasons
        assert top.day_diff == -1


class TestMatcherConfig:
    def test_bundled_defaults(self) -> None:
        config = load_matcher_config(env={})

        assert config == replace(MatcherConfig(), compatibility=config.compatibility)
        assert config.auto_accept_threshold is None
        assert not config.auto_accept_enabled
        assert config.is_compatible(Direction.CARGO, DocumentType.GUIA_DESPACHO)
        assert not config.is_compatible(Direction.ABONO, DocumentType.NOTA_DEBITO)

    def test_yaml_and_env_overrides(self, tmp_path) -> None:
        path = tmp_path / "matcher.yaml"
        path.write_text(
            "scoring:\n"
            "  weights: {amount: 0.5}\n"
            "  thresholds: {auto_accept: off, partial: 0.6}\n"
            "  top_k: 3\n"
            "compatibility:\n"
            "  abono: [factura]\n",
            encoding="utf-8",
        )
        config = load_matcher_config(
            path,
            env={"RECONCILIATION_AUTO_ACCEPT_THRESHOLD": "0.85", "RECONCILIATION_MIN_SCORE": "0.4"},
        )

        assert config.weight_amount == 0.5
        assert config.partial_threshold == 0.6
        assert config.top_k == 3
        assert config.auto_accept_threshold == 0.85
        assert config.min_score == 0.4
        assert not config.is_compatible(Direction.ABONO, DocumentType.BOLETA)

    def test_auto_accept_can_be_disabled_from_env(self, tmp_path) -> None:
        path = tmp_path / "matcher.yaml"
        path.write_text("scoring:\n  thresholds: {auto_accept: 0.9}\n", encoding="utf-8")

        assert load_matcher_config(path, env={}).auto_accept_threshold == 0.9
        assert load_matcher_config(path, env={"RECONCILIATION_AUTO_ACCEPT_THRESHOLD": "none"}).auto_accept_threshold is None

    @pytest.mark.parametrize(
        "content",
        [
            "scoring:\n  weights: {amount: -1}\n",
            "scoring:\n  thresholds: {min_score: 2}\n",
            "scoring:\n  tolerances: {date_window_days: 2, date_grace_days: 3}\n",
            "scoring:\n  top_k: many\n",
            "scoring: [unclosed\n",
        ],
    )
    def test_invalid_files(self, tmp_path, content) -> None:
        path = tmp_path / "matcher.yaml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigError):
            load_matcher_config(path, env={})

    def test_missing_explicit_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            load_matcher_config(tmp_path / "absent.yaml", env={})

    def test_invalid_env_value(self) -> None:
        with pytest.raises(ConfigError):
            load_matcher_config(env={"RECONCILIATION_MIN_SCORE": "abc"})


@pytest.mark.asyncio
async def test_candidate_pool_window_and_same_issuer(db, client_id) -> None:
    in_window = await AccountingDocumentFactory.create_async(
        db, client_id=client_id, fecha_emision=date(2024, 3, 1), rut_emisor="12.345.678-5"
    )
    old_same_issuer = await AccountingDocumentFactory.create_async(
        db, client_id=client_id, fecha_emision=date(2023, 12, 1), monto_total=152_000
    )
    await AccountingDocumentFactory.create_async(
        db, client_id=client_id, fecha_emision=date(2023, 12, 1), monto_total=400_000
    )
    await AccountingDocumentFactory.create_async(db, client_id=uuid4(), fecha_emision=date(2024, 3, 12))

    pool = await candidate_pool(SqlDocumentStore(db), client_id, _txn(client_id=client_id), CONFIG)

    assert {doc.id for doc in pool} == {in_window.id, old_same_issuer.id}
