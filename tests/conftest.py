import base64
import os
import uuid
from datetime import timedelta
from decimal import Decimal

# Settings are read at import time; configure before importing staydesk.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///./staydesk-test.db")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET_B64", base64.b64encode(b"webhook-shared-secret").decode())
os.environ.setdefault("GATEWAY_SANDBOX", "false")

import pytest
from fastapi.testclient import TestClient

from staydesk.api.deps import get_gateway, get_optional_gateway
from staydesk.core.security import hash_password
from staydesk.db.session import Database
from staydesk.main import create_app
from staydesk.models.room import Room
from staydesk.models.user import User
from staydesk.services import email_service
from staydesk.services.booking_state import hotel_today

from helpers import FakeGateway


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'staydesk.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    s = database.session()
    yield s
    s.close()


@pytest.fixture
def make_user(session):
    def _make(role="GUEST", email=None, active=True, password="password123"):
        u = User(
            id=str(uuid.uuid4()),
            email=email or f"{role.lower()}-{uuid.uuid4().hex[:6]}@hotel.local",
            full_name=role.title(),
            role=role,
            password_hash=hash_password(password),
            is_active=active,
        )
        session.add(u)
        session.commit()
        return u
    return _make


@pytest.fixture
def guest(make_user):
    return make_user("GUEST", email="guest@hotel.local")


@pytest.fixture
def other_guest(make_user):
    return make_user("GUEST", email="other@hotel.local")


@pytest.fixture
def staff(make_user):
    return make_user("STAFF", email="staff@hotel.local")


@pytest.fixture
def admin(make_user):
    return make_user("ADMIN", email="admin@hotel.local")


@pytest.fixture
def make_room(session):
    def _make(code="R-101", price="50000.00", capacity=2, room_type="DOUBLE", active=True):
        r = Room(
            id=str(uuid.uuid4()),
            code=code,
            name=f"Room {code}",
            type=room_type,
            price_per_night=Decimal(price),
            capacity=capacity,
            is_active=active,
        )
        session.add(r)
        session.commit()
        return r
    return _make


@pytest.fixture
def room(make_room):
    return make_room()


@pytest.fixture
def stay():
    """(check_in, check_out) a month ahead, two nights."""
    check_in = hotel_today() + timedelta(days=30)
    return check_in, check_in + timedelta(days=2)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(database, gateway):
    app = create_app(database=database)
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_optional_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Emails that would have been sent, as (to, subject, body)."""
    sent = []
    monkeypatch.setattr(email_service, "send_email", lambda to, subject, body: sent.append((to, subject, body)))
    return sent
