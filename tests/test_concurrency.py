import threading

import pytest

from database import build_engine, build_session_factory
from models import Base, TicketAccount
from services.account_service import get_or_create_account
from services.exceptions import InsufficientBalanceError
from services.ledger_service import apply_credit, apply_debit, verify_account_ledger

from conftest import create_student


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file database so each thread gets its own connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


def test_concurrent_debits_never_overdraw(file_session_factory):
    setup = file_session_factory()
    student = create_student(setup)
    account = get_or_create_account(setup, student.id)
    apply_credit(setup, account.id, 50)
    setup.commit()
    account_id = account.id
    setup.close()

    barrier = threading.Barrier(2)
    results = []
    errors = []

    def debit(lesson_id):
        session = file_session_factory()
        try:
            barrier.wait()
            apply_debit(session, account_id, 30, lesson_id=lesson_id)
            session.commit()
            results.append(lesson_id)
        except InsufficientBalanceError as exc:
            session.rollback()
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=debit, args=(lesson_id,)) for lesson_id in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) == 1
    assert len(errors) == 1
    assert errors[0].balance == 20

    check = file_session_factory()
    try:
        stored = check.query(TicketAccount).filter(TicketAccount.id == account_id).one()
        assert stored.balance == 20
        assert verify_account_ledger(check, account_id) == (True, "Ledger verification passed", 2)
    finally:
        check.close()


def test_concurrent_duplicate_lesson_debits(file_session_factory):
    setup = file_session_factory()
    student = create_student(setup)
    account = get_or_create_account(setup, student.id)
    apply_credit(setup, account.id, 10)
    setup.commit()
    account_id = account.id
    setup.close()

    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def debit():
        session = file_session_factory()
        try:
            barrier.wait()
            apply_debit(session, account_id, 1, lesson_id=77)
            session.commit()
            outcome = "debited"
        except Exception as exc:
            session.rollback()
            outcome = type(exc).__name__
        finally:
            session.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=debit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["DuplicateDebitError"] * 3 + ["debited"]

    check = file_session_factory()
    try:
        assert check.query(TicketAccount).filter(TicketAccount.id == account_id).one().balance == 9
    finally:
        check.close()
