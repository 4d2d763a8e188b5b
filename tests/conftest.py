import json

import pytest
from sqlalchemy.pool import StaticPool

from database import build_engine, build_session_factory
from models import Base, User, Role, Student
from services import notification_service
from services.account_service import get_or_create_account
from services.ledger_service import apply_credit


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    """Capture balance notifications instead of calling the gateway."""
    sent = []
    monkeypatch.setattr(notification_service, "dispatcher", sent.append)
    return sent


def create_student(db, email="student@example.com"):
    user = User(email=email, first_name="Ana", last_name="Reyes", role=Role.STUDENT)
    student = Student(user=user, school_level="Grade 10")
    db.add_all([user, student])
    db.commit()
    return student


@pytest.fixture
def student(db):
    return create_student(db)


@pytest.fixture
def funded_account(db, student):
    """Account of `student` holding 50 tickets."""
    account = get_or_create_account(db, student.id)
    apply_credit(db, account.id, 50, description="Opening balance")
    db.commit()
    return account


def provider_event(recharge, event="CHECKOUT.SUCCESS", provider_id="chk-0001"):
    """PayMaya checkout webhook body for a recharge."""
    return json.dumps({
        "event": event,
        "data": {
            "id": provider_id,
            "requestReferenceNumber": recharge.reference,
            "totalAmount": {"value": float(recharge.amount), "currency": recharge.currency},
        },
    })
