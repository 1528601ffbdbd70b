import pytest
from fastapi.testclient import TestClient

from auth import SessionStore
from booking_service import BookingService
from config import Settings
from errors import SettlementError
from kv_store import USER_PREFIX, KVStore
from main import create_app
from notifications import MemoryEmailSender
from settlement import SettlementService, SimulatedProcessor
from utils import utc_now_iso


class CountingProcessor(SimulatedProcessor):
    def __init__(self):
        super().__init__()
        self.calls = []

    def capture(self, **kwargs):
        self.calls.append(kwargs)
        return super().capture(**kwargs)


class DecliningProcessor:
    def __init__(self):
        self.calls = 0

    def capture(self, **kwargs):
        self.calls += 1
        raise SettlementError("Payment processing failed: card declined")


class Seeder:
    def __init__(self, store: KVStore):
        self.store = store
        self.sessions = SessionStore(store)

    def user(self, user_id, name=None, stripe=True, admin=False, verified=True, with_profile=True):
        name = name or user_id.title()
        email = f"{user_id}@example.com"
        if with_profile:
            self.store.set(USER_PREFIX + user_id, {
                "id": user_id,
                "email": email,
                "name": name,
                "stripeConnected": stripe,
                "stripeAccountId": f"acct_{user_id}" if stripe else None,
                "isAdmin": admin,
                "createdAt": utc_now_iso(),
            })
        return self.sessions.issue(user_id, email, name, email_verified=verified)

    def klass(self, class_id="class:sourdough", host_id="host", max_students=1, price=50.0, auto=True, **extra):
        record = {
            "id": class_id,
            "title": "Sourdough Basics",
            "description": "",
            "maxStudents": max_students,
            "pricePerPerson": price,
            "autoApproveBookings": auto,
            "photos": [],
            "instructorId": host_id,
            "instructorName": host_id.title(),
            "createdAt": utc_now_iso(),
            **extra,
        }
        self.store.set(class_id, record)
        return record


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=tmp_path / "herd.db", fee_rate=0.05)


@pytest.fixture
def store(settings):
    s = KVStore(settings.db_path)
    s.init_db()
    return s


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def processor():
    return CountingProcessor()


@pytest.fixture
def service(store, processor, settings):
    return BookingService(store, SettlementService(store, processor), settings)


@pytest.fixture
def mailbox():
    return MemoryEmailSender()


@pytest.fixture
def app(settings, processor, mailbox):
    return create_app(settings, processor=processor, sender=mailbox)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
