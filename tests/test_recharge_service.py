import json
from datetime import timedelta
from decimal import Decimal

import pytest

from models import TicketRecharge, RechargeStatus, TransactionType, utcnow
from services.account_service import get_account_by_student, get_or_create_account
from services.exceptions import (
    NotFoundError,
    ConflictError,
    InsufficientBalanceError,
    InvalidPayloadError,
    InvalidRequestError,
)
from services.ledger_service import apply_debit, verify_account_ledger
from services.recharge_service import (
    initiate,
    reconcile,
    parse_provider_event,
    get_recharge,
    find_stale_pending_recharges,
)

from conftest import provider_event


@pytest.fixture
def recharge(db, student):
    recharge = initiate(db, student.id, "1500.00", "PHP", 10, payment_method="CARD")
    db.commit()
    return recharge


def _succeed(db, recharge, provider_id="chk-0001"):
    body = provider_event(recharge, provider_id=provider_id)
    result = reconcile(db, provider_id, RechargeStatus.SUCCESS, body)
    db.commit()
    return result


def test_initiate_creates_pending_recharge(db, recharge, student):
    assert recharge.status == RechargeStatus.PENDING
    assert recharge.student_id == student.id
    assert recharge.amount == Decimal("1500.00")
    assert recharge.tickets_credited == 10
    assert recharge.reference == f"RCH-{recharge.uuid}"
    assert recharge.external_transaction_id is None
    assert get_account_by_student(db, student.id) is None


@pytest.mark.parametrize("amount, currency, tickets", [
    ("0", "PHP", 10),
    ("-1", "PHP", 10),
    ("abc", "PHP", 10),
    ("100", "php", 10),
    ("100", "PESO", 10),
    ("100", "PHP", 0),
    ("100", "PHP", 2.5),
])
def test_initiate_rejects_invalid_requests(db, student, amount, currency, tickets):
    with pytest.raises(InvalidRequestError):
        initiate(db, student.id, amount, currency, tickets)


def test_initiate_unknown_student(db):
    with pytest.raises(NotFoundError):
        initiate(db, 999, "100", "PHP", 1)


def test_get_recharge(db, recharge):
    assert get_recharge(db, recharge.uuid).id == recharge.id
    with pytest.raises(NotFoundError):
        get_recharge(db, "00000000-0000-0000-0000-000000000000")


def test_success_credits_tickets_once(db, recharge, student):
    recharge, applied = _succeed(db, recharge)

    account = get_account_by_student(db, student.id)
    assert applied is True
    assert recharge.status == RechargeStatus.SUCCESS
    assert recharge.external_transaction_id == "chk-0001"
    assert recharge.paid_at is not None
    assert json.loads(recharge.raw_payload)["event"] == "CHECKOUT.SUCCESS"
    assert account.balance == 10
    credit = recharge.credit_transaction
    assert credit.type == TransactionType.CREDIT
    assert credit.amount == 10
    assert credit.account_id == account.id


def test_redelivered_success_is_a_no_op(db, recharge, student, sent_notifications):
    _succeed(db, recharge)
    sent_notifications.clear()

    again, applied = _succeed(db, recharge)

    assert applied is False
    assert again.id == recharge.id
    assert get_account_by_student(db, student.id).balance == 10
    assert len(again.transactions) == 1
    assert sent_notifications == []


def test_success_credits_existing_balance(db, recharge, student):
    account = get_or_create_account(db, student.id)
    db.commit()

    _succeed(db, recharge)

    assert account.balance == 10
    assert verify_account_ledger(db, account.id)[0] is True


def test_failed_recharge_credits_nothing(db, recharge, student):
    body = provider_event(recharge, event="CHECKOUT.FAILURE", provider_id="chk-0002")
    recharge, applied = reconcile(db, "chk-0002", "FAILED", body)
    db.commit()

    assert applied is True
    assert recharge.status == RechargeStatus.FAILED
    assert recharge.paid_at is None
    assert recharge.transactions == []
    account = get_account_by_student(db, student.id)
    assert account is None or account.balance == 0


def test_success_after_failure_is_ignored(db, recharge, student):
    reconcile(db, "chk-0003", "FAILED", provider_event(recharge, event="CHECKOUT.FAILURE", provider_id="chk-0003"))
    db.commit()

    recharge, applied = _succeed(db, recharge, provider_id="chk-0003")

    assert applied is False
    assert recharge.status == RechargeStatus.FAILED
    assert recharge.transactions == []


def test_refund_of_pending_recharge(db, recharge):
    body = provider_event(recharge, event="REFUND_SUCCESS", provider_id="chk-0004")
    recharge, applied = reconcile(db, "chk-0004", RechargeStatus.REFUNDED, body)
    db.commit()

    assert applied is True
    assert recharge.status == RechargeStatus.REFUNDED
    assert recharge.transactions == []


def test_refund_after_success_reverses_credit(db, recharge, student):
    _succeed(db, recharge)
    body = provider_event(recharge, event="PAYMENT.REFUNDED", provider_id="chk-0001")

    recharge, applied = reconcile(db, "chk-0001", RechargeStatus.REFUNDED, body)
    db.commit()

    account = get_account_by_student(db, student.id)
    assert applied is True
    assert recharge.status == RechargeStatus.REFUNDED
    assert account.balance == 0
    reversal = recharge.reversal_transaction
    assert reversal.type == TransactionType.DEBIT
    assert reversal.amount == 10
    assert json.loads(recharge.raw_payload)["event"] == "PAYMENT.REFUNDED"
    assert verify_account_ledger(db, account.id) == (True, "Ledger verification passed", 2)

    _, applied_again = reconcile(db, "chk-0001", RechargeStatus.REFUNDED, body)
    assert applied_again is False


def test_refund_after_tickets_spent_is_rejected(db, recharge, student):
    _succeed(db, recharge)
    account = get_account_by_student(db, student.id)
    apply_debit(db, account.id, 4, lesson_id=1)
    db.commit()

    body = provider_event(recharge, event="PAYMENT.REFUNDED", provider_id="chk-0001")
    with pytest.raises(InsufficientBalanceError):
        reconcile(db, "chk-0001", RechargeStatus.REFUNDED, body)

    recharge = get_recharge(db, recharge.uuid)
    assert recharge.status == RechargeStatus.SUCCESS
    assert recharge.reversal_transaction is None
    assert get_account_by_student(db, student.id).balance == 6


def test_unknown_reference(db, recharge):
    body = json.dumps({
        "event": "CHECKOUT.SUCCESS",
        "data": {"id": "chk-9", "requestReferenceNumber": "RCH-00000000-0000-0000-0000-000000000000"},
    })
    with pytest.raises(NotFoundError):
        reconcile(db, "chk-9", "SUCCESS", body)


def test_provider_id_bound_to_other_recharge_conflicts(db, recharge, student):
    _succeed(db, recharge, provider_id="chk-0001")
    other = initiate(db, student.id, "300.00", "PHP", 2)
    db.commit()

    with pytest.raises(ConflictError):
        reconcile(db, "chk-0001", "SUCCESS", provider_event(other, provider_id="chk-0001"))
    db.rollback()

    other = get_recharge(db, other.uuid)
    assert other.status == RechargeStatus.PENDING
    assert other.external_transaction_id is None
    assert other.credit_transaction is None
    assert get_account_by_student(db, student.id).balance == 10


@pytest.mark.parametrize("body", [
    "not json",
    "[1, 2, 3]",
    json.dumps({"event": "CHECKOUT.SUCCESS", "data": {"id": "chk-9"}}),
    json.dumps({"event": "CHECKOUT.SUCCESS", "data": {"id": "chk-9", "requestReferenceNumber": "INV-12"}}),
    json.dumps({"event": "CHECKOUT.SUCCESS", "data": {"id": "chk-9", "requestReferenceNumber": "RCH-nope"}}),
])
def test_invalid_payload_writes_nothing(db, recharge, body):
    with pytest.raises(InvalidPayloadError):
        reconcile(db, "chk-9", "SUCCESS", body)

    assert get_recharge(db, recharge.uuid).status == RechargeStatus.PENDING


@pytest.mark.parametrize("outcome", ["PENDING", "PAID", ""])
def test_non_final_outcome_rejected(db, recharge, outcome):
    with pytest.raises(InvalidPayloadError):
        reconcile(db, "chk-9", outcome, provider_event(recharge, provider_id="chk-9"))


def test_missing_provider_id_rejected(db, recharge):
    with pytest.raises(InvalidPayloadError):
        reconcile(db, "  ", "SUCCESS", provider_event(recharge))


def test_parse_checkout_event(recharge):
    body = provider_event(recharge, event="CHECKOUT.SUCCESS", provider_id="chk-0042")

    assert parse_provider_event(body) == ("chk-0042", RechargeStatus.SUCCESS)
    assert parse_provider_event(body.encode("utf-8")) == ("chk-0042", RechargeStatus.SUCCESS)


@pytest.mark.parametrize("status, expected", [
    ("PAYMENT_SUCCESS", RechargeStatus.SUCCESS),
    ("PAYMENT_FAILED", RechargeStatus.FAILED),
    ("PAYMENT_EXPIRED", RechargeStatus.FAILED),
    ("REFUND_SUCCESS", RechargeStatus.REFUNDED),
])
def test_parse_payment_status_event(recharge, status, expected):
    body = json.dumps({"id": "pay-77", "status": status, "requestReferenceNumber": recharge.reference})

    assert parse_provider_event(body) == ("pay-77", expected)


def test_parse_payment_status_event_then_reconcile(db, recharge, student):
    body = json.dumps({"id": "pay-78", "status": "PAYMENT_SUCCESS", "requestReferenceNumber": recharge.reference})

    external_id, outcome = parse_provider_event(body)
    _, applied = reconcile(db, external_id, outcome, body)
    db.commit()

    assert applied is True
    assert get_account_by_student(db, student.id).balance == 10


@pytest.mark.parametrize("body", [
    json.dumps({"event": "CHECKOUT.PENDING", "data": {"id": "chk-1"}}),
    json.dumps({"event": "CHECKOUT.SUCCESS", "data": {}}),
    json.dumps({"data": {"id": "chk-1"}}),
    "{oops",
])
def test_parse_rejects_unusable_events(body):
    with pytest.raises(InvalidPayloadError):
        parse_provider_event(body)


def test_find_stale_pending_recharges(db, student):
    old = initiate(db, student.id, "100", "PHP", 1)
    fresh = initiate(db, student.id, "100", "PHP", 1)
    done = initiate(db, student.id, "100", "PHP", 1)
    old.created_at = utcnow() - timedelta(hours=2)
    done.created_at = utcnow() - timedelta(hours=3)
    done.status = RechargeStatus.FAILED
    db.commit()

    stale = find_stale_pending_recharges(db, timedelta(hours=1))

    assert [r.id for r in stale] == [old.id]
    assert fresh not in stale
    assert db.query(TicketRecharge).count() == 3
