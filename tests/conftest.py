import os

# Must be set before fib_payments.database is imported.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fib_payments.auth import verify_token
from fib_payments.config import FibSettings
from fib_payments.database import Base, get_db
from fib_payments.fib_service import FibPaymentClient
from fib_payments.main import app as fastapi_app
from fib_payments.models import Payment, User
from fib_payments.routes import get_fib_client

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

USER_ID = 1
OTHER_USER_ID = 2


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    db.add_all([
        User(id=USER_ID, email="owner@example.com"),
        User(id=OTHER_USER_ID, email="other@example.com"),
    ])
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def fib(mocker):
    """Stand-in for the FIB client used by the routes."""
    client = mocker.Mock(spec=FibPaymentClient)
    client.settings = FibSettings()
    return client


@pytest.fixture
def add_payment(db):
    def _add(**fields):
        values = {
            "user_id": USER_ID,
            "payment_id": "P-1",
            "amount": Decimal("10.50"),
            "currency": "IQD",
            "status": "UNPAID",
        }
        values.update(fields)
        payment = Payment(**values)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _add


def _override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(fib):
    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[verify_token] = lambda: USER_ID
    fastapi_app.dependency_overrides[get_fib_client] = lambda: fib
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
