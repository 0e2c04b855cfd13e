"""Tests for match confirmation, rejection and undo."""

from datetime import date
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from src.models import BankTransaction, MatchPattern, TransactionStatus
from src.services.review import (
    ConfirmationError,
    DocumentNotFoundError,
    TransactionNotFoundError,
    confirm_match,
    get_candidates,
    list_transactions,
    pattern_keywords,
    period_bounds,
    reject_match,
    set_status,
    undo_match,
)
from tests.factories import (
    AccountingDocumentFactory,
    BankTransactionFactory,
    MatchCandidateFactory,
)


def test_period_bounds() -> None:
    assert period_bounds(2024, 3) == (date(2024, 3, 1), date(2024, 4, 1))
    assert period_bounds(2024, 12) == (date(2024, 12, 1), date(2025, 1, 1))
    assert period_bounds(2024) == (date(2024, 1, 1), date(2025, 1, 1))
    with pytest.raises(ValueError):
        period_bounds(2024, 0)


def test_set_status_keeps_link_consistent() -> None:
    txn = BankTransactionFactory.build()
    document_id = uuid4()

    set_status(txn, TransactionStatus.MATCHED, document_id)
    assert txn.documento_id == document_id

    set_status(txn, TransactionStatus.PARTIAL, document_id)
    assert txn.documento_id is None

    with pytest.raises(ValueError):
        set_status(txn, TransactionStatus.MANUAL)


def test_pattern_keywords_skip_short_words() -> None:
    assert pattern_keywords("TRANSFERENCIA A DISTRIBUIDORA LOS ANDES") == "transferencia distribuidora los"


@pytest_asyncio.fixture
async def candidate_setup(db, client_id):
    document = await AccountingDocumentFactory.create_async(db, client_id=client_id)
    other = await AccountingDocumentFactory.create_async(
        db, client_id=client_id, monto_total=99_000, fecha_emision=date(2024, 3, 20)
    )
    txn = await BankTransactionFactory.create_async(
        db,
        client_id=client_id,
        descripcion="TRANSFERENCIA A DISTRIBUIDORA LOS ANDES",
        status=TransactionStatus.PARTIAL,
        match_score=0.95,
    )
    await MatchCandidateFactory.create_async(
        db, transaction_id=txn.id, documento_id=document.id, score=0.95
    )
    return txn, document, other


@pytest.mark.asyncio
class TestConfirmMatch:
    async def test_confirming_a_candidate_matches_and_learns(self, db, client_id, candidate_setup) -> None:
        """
        GIVEN a partial transaction with one persisted candidate
        WHEN the candidate is confirmed
        THEN the transaction is matched and a pattern is learned for the issuer
        """
        txn, document, _ = candidate_setup

        confirmed = await confirm_match(db, txn.id, document.id, client_id=client_id, notes="ok")

        assert confirmed.status == TransactionStatus.MATCHED
        assert confirmed.documento_id == document.id
        assert confirmed.match_score == 0.95
        assert confirmed.notas[-1]["action"] == "confirm"
        assert confirmed.notas[-1]["note"] == "ok"

        pattern = await db.scalar(select(MatchPattern).where(MatchPattern.client_id == client_id))
        assert pattern.rut_emisor == "76086428-5"
        assert pattern.keywords == "transferencia distribuidora los"
        assert pattern.times_confirmed == 1

    async def test_confirming_another_document_is_manual(self, db, client_id, candidate_setup) -> None:
        txn, _, other = candidate_setup

        confirmed = await confirm_match(db, txn.id, other.id, client_id=client_id)

        assert confirmed.status == TransactionStatus.MANUAL
        assert confirmed.documento_id == other.id
        assert confirmed.match_score is None

    async def test_repeat_confirmation_is_idempotent(self, db, client_id, candidate_setup) -> None:
        txn, document, other = candidate_setup

        await confirm_match(db, txn.id, document.id, client_id=client_id)
        again = await confirm_match(db, txn.id, document.id, client_id=client_id)

        assert again.status == TransactionStatus.MATCHED
        assert len(again.notas) == 1
        with pytest.raises(ConfirmationError):
            await confirm_match(db, txn.id, other.id, client_id=client_id)

    async def test_unknown_ids(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup

        with pytest.raises(DocumentNotFoundError):
            await confirm_match(db, txn.id, uuid4(), client_id=client_id)
        with pytest.raises(TransactionNotFoundError):
            await confirm_match(db, txn.id, document.id, client_id=uuid4())

    async def test_second_confirmation_strengthens_pattern(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup
        twin = await BankTransactionFactory.create_async(
            db,
            client_id=client_id,
            descripcion="TRANSFERENCIA A DISTRIBUIDORA LOS ANDES",
            fecha=date(2024, 4, 12),
        )
        second_document = await AccountingDocumentFactory.create_async(db, client_id=client_id)

        await confirm_match(db, txn.id, document.id, client_id=client_id)
        await confirm_match(db, twin.id, second_document.id, client_id=client_id)

        patterns = list((await db.execute(select(MatchPattern))).scalars())
        assert len(patterns) == 1
        assert patterns[0].times_confirmed == 2

    async def test_document_already_linked_elsewhere_is_rejected(self, db, client_id, candidate_setup) -> None:
        """
        GIVEN a document confirmed for one transaction
        WHEN the same document is confirmed for a second transaction
        THEN the second confirmation fails and leaves that transaction unlinked
        """
        txn, document, _ = candidate_setup
        twin = await BankTransactionFactory.create_async(
            db, client_id=client_id, descripcion="TRANSFERENCIA A DISTRIBUIDORA LOS ANDES"
        )

        await confirm_match(db, txn.id, document.id, client_id=client_id)
        with pytest.raises(ConfirmationError, match="already linked to transaction"):
            await confirm_match(db, twin.id, document.id, client_id=client_id)

        await db.refresh(twin)
        assert twin.documento_id is None
        assert twin.status == TransactionStatus.PENDING
        assert not twin.notas

    async def test_document_is_free_again_after_undo(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup
        twin = await BankTransactionFactory.create_async(db, client_id=client_id)

        await confirm_match(db, txn.id, document.id, client_id=client_id)
        await undo_match(db, txn.id, client_id=client_id)
        relinked = await confirm_match(db, twin.id, document.id, client_id=client_id)

        assert relinked.documento_id == document.id
        assert relinked.status == TransactionStatus.MANUAL


@pytest.mark.asyncio
class TestRejectAndUndo:
    async def test_reject_records_note_only(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup

        rejected = await reject_match(db, txn.id, document.id, client_id=client_id, notes="otro proveedor")

        assert rejected.status == TransactionStatus.PARTIAL
        assert rejected.documento_id is None
        assert rejected.notas[-1]["action"] == "reject"
        assert rejected.notas[-1]["documento_id"] == str(document.id)

    async def test_rejecting_the_linked_document_fails(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup
        await confirm_match(db, txn.id, document.id, client_id=client_id)

        with pytest.raises(ConfirmationError):
            await reject_match(db, txn.id, document.id, client_id=client_id)

    async def test_undo_returns_to_pending(self, db, client_id, candidate_setup) -> None:
        txn, document, _ = candidate_setup
        await confirm_match(db, txn.id, document.id, client_id=client_id)

        undone = await undo_match(db, txn.id, client_id=client_id)

        assert undone.status == TransactionStatus.PENDING
        assert undone.documento_id is None
        assert [note["action"] for note in undone.notas] == ["confirm", "undo"]
        with pytest.raises(ConfirmationError):
            await undo_match(db, txn.id, client_id=client_id)


@pytest.mark.asyncio
async def test_database_rejects_matched_status_without_link(db, client_id) -> None:
    txn = await BankTransactionFactory.create_async(db, client_id=client_id)

    with pytest.raises(IntegrityError):
        await db.execute(
            update(BankTransaction)
            .where(BankTransaction.id == txn.id)
            .values(status=TransactionStatus.MATCHED)
        )


@pytest.mark.asyncio
async def test_candidates_and_listing(db, client_id, candidate_setup) -> None:
    txn, document, _ = candidate_setup
    await BankTransactionFactory.create_async(db, client_id=client_id, fecha=date(2024, 4, 2))
    await BankTransactionFactory.create_async(db, client_id=uuid4())

    candidates = await get_candidates(db, txn.id, client_id=client_id)
    assert [candidate.documento_id for candidate in candidates] == [document.id]

    march, total = await list_transactions(db, client_id=client_id, year=2024, month=3)
    assert [t.id for t in march] == [txn.id]
    assert total == 1

    partial, _ = await list_transactions(db, client_id=client_id, status=TransactionStatus.PARTIAL)
    assert [t.id for t in partial] == [txn.id]
