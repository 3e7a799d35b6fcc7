import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="restaurant-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'restaurant.db')}"

import datetime as dt

import pytest
import requests

from restaurant_common.database import SessionLocal, engine
from restaurant_common.models import Base, IngredientRetry, Order, OrderStatus, PantryStock


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_order():
    def _make(ingredients, status=OrderStatus.PENDING.value):
        session = SessionLocal()
        try:
            order = Order(required_ingredients=dict(ingredients), status=status)
            session.add(order)
            session.commit()
            return order.id
        finally:
            session.close()

    return _make


@pytest.fixture
def stock():
    """Set quantities directly; call with no arguments to read them all back."""

    def _stock(**quantities):
        session = SessionLocal()
        try:
            for ingredient, quantity in quantities.items():
                session.add(PantryStock(ingredient=ingredient, quantity=quantity))
            session.commit()
            return {s.ingredient: s.quantity for s in session.query(PantryStock).all()}
        finally:
            session.close()

    return _stock


@pytest.fixture
def order_status():
    def _status(order_id):
        session = SessionLocal()
        try:
            return session.query(Order).filter(Order.id == order_id).one().status
        finally:
            session.close()

    return _status


@pytest.fixture
def retry_row():
    def _row(order_id):
        session = SessionLocal()
        try:
            return session.query(IngredientRetry).filter(IngredientRetry.order_id == order_id).first()
        finally:
            session.close()

    return _row


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeMarket:
    """Stands in for the `requests` module inside MarketGateway.

    Answers are queued per ingredient; an Exception instance is raised instead
    of answered. An exhausted queue sells nothing.
    """

    Response = FakeResponse

    def __init__(self, **answers):
        self.answers = {k: list(v) for k, v in answers.items()}
        self.calls = []

    def get(self, url, params=None, timeout=None):
        ingredient = params["ingredient"]
        self.calls.append((ingredient, timeout))
        queue = self.answers.get(ingredient) or []
        answer = queue.pop(0) if queue else 0
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse({"quantitySold": answer})


@pytest.fixture
def fake_market():
    return FakeMarket


@pytest.fixture
def fixed_clock():
    now = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.timezone.utc)
    return lambda: now
