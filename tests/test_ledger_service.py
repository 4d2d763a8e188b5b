import pytest
from sqlalchemy import BigInteger

from models import TicketAccount, TicketTransaction, TransactionType
from services.account_service import get_or_create_account
from services.exceptions import (
    NotFoundError,
    InsufficientBalanceError,
    DuplicateDebitError,
    DuplicateRefundError,
    InvalidRequestError,
)
from services.ledger_service import (
    apply_debit,
    apply_credit,
    refund_lesson_debit,
    verify_account_ledger,
)

from conftest import create_student


def _transactions(db, account_id):
    return (
        db.query(TicketTransaction)
        .filter(TicketTransaction.account_id == account_id)
        .order_by(TicketTransaction.id)
        .all()
    )


def test_credit_records_balance_before_and_after(db, student):
    account = get_or_create_account(db, student.id)
    tx = apply_credit(db, account.id, 10)
    db.commit()

    assert tx.type == TransactionType.CREDIT
    assert (tx.balance_before, tx.balance_after) == (0, 10)
    assert account.balance == 10


def test_debit_lesson_from_fifty(db, funded_account):
    tx = apply_debit(db, funded_account.id, 10, lesson_id=101, description="Physics, 2 hours")
    db.commit()

    db.refresh(funded_account)
    assert funded_account.balance == 40
    assert tx.type == TransactionType.DEBIT
    assert tx.amount == 10
    assert (tx.balance_before, tx.balance_after) == (50, 40)
    assert tx.lesson_id == 101
    assert tx.description == "Physics, 2 hours"


def test_debit_keeps_large_lesson_id(db, funded_account):
    lesson_id = 5_000_000_000
    tx = apply_debit(db, funded_account.id, 1, lesson_id=lesson_id)
    db.commit()
    db.expire_all()

    assert isinstance(TicketTransaction.__table__.c.lesson_id.type, BigInteger)
    assert db.get(TicketTransaction, tx.id).lesson_id == lesson_id
    with pytest.raises(DuplicateDebitError):
        apply_debit(db, funded_account.id, 1, lesson_id=lesson_id)


def test_debit_default_description(db, funded_account):
    tx = apply_debit(db, funded_account.id, 1, lesson_id=7)

    assert tx.description == "Lesson #7 debit"


def test_debit_entire_balance(db, funded_account):
    tx = apply_debit(db, funded_account.id, 50, lesson_id=1)
    db.commit()

    assert tx.balance_after == 0
    assert funded_account.balance == 0


def test_insufficient_balance_writes_nothing(db, funded_account):
    with pytest.raises(InsufficientBalanceError) as exc_info:
        apply_debit(db, funded_account.id, 51, lesson_id=1)
    db.rollback()

    assert exc_info.value.balance == 50
    assert exc_info.value.requested == 51
    db.refresh(funded_account)
    assert funded_account.balance == 50
    assert len(_transactions(db, funded_account.id)) == 1


def test_debit_on_empty_account(db, student):
    account = get_or_create_account(db, student.id)
    db.commit()

    with pytest.raises(InsufficientBalanceError):
        apply_debit(db, account.id, 1, lesson_id=1)


@pytest.mark.parametrize("amount", [0, -5, 1.5, True])
def test_invalid_amounts_rejected(db, funded_account, amount):
    with pytest.raises(InvalidRequestError):
        apply_debit(db, funded_account.id, amount, lesson_id=1)
    with pytest.raises(ValueError):
        apply_credit(db, funded_account.id, amount)


def test_unknown_account(db):
    with pytest.raises(NotFoundError):
        apply_credit(db, 12345, 1)


def test_duplicate_lesson_debit_rejected(db, funded_account):
    apply_debit(db, funded_account.id, 2, lesson_id=42)
    db.commit()

    with pytest.raises(DuplicateDebitError) as exc_info:
        apply_debit(db, funded_account.id, 2, lesson_id=42)
    db.rollback()

    assert exc_info.value.lesson_id == 42
    db.refresh(funded_account)
    assert funded_account.balance == 48


def test_same_lesson_can_be_debited_on_other_account(db, funded_account):
    other = create_student(db, email="classmate@example.com")
    other_account = get_or_create_account(db, other.id)
    apply_credit(db, other_account.id, 5)
    apply_debit(db, funded_account.id, 1, lesson_id=9)
    apply_debit(db, other_account.id, 1, lesson_id=9)
    db.commit()

    assert other_account.balance == 4
    assert funded_account.balance == 49


def test_debit_without_lesson_is_not_deduplicated(db, funded_account):
    apply_debit(db, funded_account.id, 1, lesson_id=None)
    apply_debit(db, funded_account.id, 1, lesson_id=None)
    db.commit()

    assert funded_account.balance == 48


def test_chain_links_consecutive_transactions(db, funded_account):
    apply_debit(db, funded_account.id, 5, lesson_id=1)
    apply_credit(db, funded_account.id, 3)
    apply_debit(db, funded_account.id, 8, lesson_id=2)
    db.commit()

    rows = _transactions(db, funded_account.id)
    assert rows[0].balance_before == 0
    for previous, current in zip(rows, rows[1:]):
        assert current.balance_before == previous.balance_after
    assert rows[-1].balance_after == funded_account.balance == 40
    assert sum(r.signed_amount for r in rows) == 40


def test_refund_lesson_by_lesson_id(db, funded_account):
    apply_debit(db, funded_account.id, 3, lesson_id=55)
    db.commit()

    tx = refund_lesson_debit(db, funded_account.id, lesson_id=55, reason="Tutor cancelled")
    db.commit()

    assert tx.type == TransactionType.CREDIT
    assert tx.amount == 3
    assert tx.lesson_id == 55
    assert tx.description == "Lesson #55 refund (Tutor cancelled)"
    assert funded_account.balance == 50


def test_refund_lesson_by_debit_uuid(db, funded_account):
    debit = apply_debit(db, funded_account.id, 2, lesson_id=56)
    db.commit()

    tx = refund_lesson_debit(db, funded_account.id, debit_transaction_uuid=debit.uuid)
    db.commit()

    assert tx.lesson_id == 56
    assert funded_account.balance == 50


def test_refund_twice_rejected(db, funded_account):
    apply_debit(db, funded_account.id, 2, lesson_id=57)
    refund_lesson_debit(db, funded_account.id, lesson_id=57)
    db.commit()

    with pytest.raises(DuplicateRefundError):
        refund_lesson_debit(db, funded_account.id, lesson_id=57)
    db.rollback()

    db.refresh(funded_account)
    assert funded_account.balance == 50


def test_refund_unknown_lesson(db, funded_account):
    with pytest.raises(NotFoundError):
        refund_lesson_debit(db, funded_account.id, lesson_id=404)


def test_refund_requires_reference(db, funded_account):
    with pytest.raises(InvalidRequestError):
        refund_lesson_debit(db, funded_account.id)


def test_refunded_lesson_cannot_be_debited_again(db, funded_account):
    apply_debit(db, funded_account.id, 1, lesson_id=58)
    refund_lesson_debit(db, funded_account.id, lesson_id=58)
    db.commit()

    with pytest.raises(DuplicateDebitError):
        apply_debit(db, funded_account.id, 1, lesson_id=58)


def test_verify_passes_after_activity(db, funded_account):
    apply_debit(db, funded_account.id, 10, lesson_id=1)
    refund_lesson_debit(db, funded_account.id, lesson_id=1)
    apply_debit(db, funded_account.id, 4, lesson_id=2)
    db.commit()

    assert verify_account_ledger(db, funded_account.id) == (True, "Ledger verification passed", 4)


def test_verify_empty_ledger(db, student):
    account = get_or_create_account(db, student.id)
    db.commit()

    assert verify_account_ledger(db, account.id) == (True, "Ledger is empty (no transactions)", 0)


def test_verify_unknown_account(db):
    assert verify_account_ledger(db, 999) == (False, "Ticket account not found", 0)


def test_verify_detects_tampered_balance(db, funded_account):
    db.query(TicketAccount).filter(TicketAccount.id == funded_account.id).update({"balance": 49})
    db.commit()

    valid, message, checked = verify_account_ledger(db, funded_account.id)

    assert valid is False
    assert message == "Balance mismatch: stored=49, ledger=50"
    assert checked == 1


def test_verify_detects_broken_chain(db, funded_account):
    tx = apply_debit(db, funded_account.id, 5, lesson_id=1)
    db.commit()
    db.query(TicketTransaction).filter(TicketTransaction.id == tx.id).update({"balance_before": 60})
    db.commit()

    valid, message, checked = verify_account_ledger(db, funded_account.id)

    assert valid is False
    assert message.startswith("Chain broken")
    assert checked == 1


def test_ledger_writes_queue_notifications(db, funded_account, sent_notifications):
    sent_notifications.clear()
    tx = apply_debit(db, funded_account.id, 1, lesson_id=3)

    assert sent_notifications == []
    db.commit()

    assert len(sent_notifications) == 1
    payload = sent_notifications[0]
    assert payload["type"] == "TICKET_BALANCE_UPDATED"
    assert payload["student_id"] == funded_account.student_id
    assert payload["metadata"]["transaction_uuid"] == tx.uuid
    assert payload["metadata"]["balance_after"] == 49
