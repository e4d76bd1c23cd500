import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pilgrim_pay import models  # noqa: E402
from pilgrim_pay.collaborators import Principal, hash_token  # noqa: E402
from pilgrim_pay.config import Settings  # noqa: E402
from pilgrim_pay.contracts.contracts import GatewayInitializeData, GatewayTransactionData  # noqa: E402
from pilgrim_pay.errors import UpstreamFailure  # noqa: E402
from pilgrim_pay.security import compute_signature  # noqa: E402

GATEWAY_SECRET = "sk_test_gateway_secret"
ADMIN_TOKEN = "admin-token"
STAFF_TOKEN = "staff-token"


class FakeGateway:
    def __init__(self):
        self.initialized = []
        self.transactions = {}

    async def initialize_transaction(self, request):
        self.initialized.append(request)
        return GatewayInitializeData(
            authorization_url=f"https://checkout.test/{request.reference}",
            access_code="access",
            reference=request.reference,
        )

    async def verify_transaction(self, reference):
        if reference not in self.transactions:
            raise UpstreamFailure("unknown reference")
        return GatewayTransactionData(**self.transactions[reference])

    async def aclose(self):
        return None


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, html):
        if self.fail:
            raise UpstreamFailure("mail provider unreachable")
        self.sent.append({"to": [t for t in to if t], "subject": subject, "html": html})


class FakeActivity:
    def __init__(self):
        self.events = []

    def record_event(self, user_id, event_type, payload):
        self.events.append((user_id, event_type, payload))


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'test.db'}",
        gateway_secret_key=GATEWAY_SECRET,
        gateway_base_url="http://gateway.test",
        mail_base_url="http://mailer.test",
        mail_api_key=None,
        max_retries=2,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def session_factory(test_settings):
    engine = create_engine(test_settings.db_url, connect_args={"check_same_thread": False})
    models.Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def activity():
    return FakeActivity()


@pytest.fixture
def seed(db):
    """
    A package (2,500,000 with 500,000 deposit), a 5% agent, an admin, a staff user and two bookings.
    """
    package = models.Package(
        id=1,
        name="Umrah Premium",
        price=Decimal("2500000.00"),
        agent_discount=Decimal("100000.00"),
        deposit_allowed=True,
        minimum_deposit=Decimal("500000.00"),
    )
    agent = models.Agent(
        id=1,
        user_id="agent-user",
        full_name="Amina Travel",
        email="agent@example.com",
        commission_rate=Decimal("5"),
        commission_type="percentage",
    )
    admin = models.StaffUser(id="admin-1", email="admin@example.com", role="admin", token_hash=hash_token(ADMIN_TOKEN))
    staff = models.StaffUser(id="staff-1", email="staff@example.com", role="staff", token_hash=hash_token(STAFF_TOKEN))
    direct = models.Booking(
        id=1, reference="RT-0001", user_id="pilgrim-1", package_id=1, contact_email="pilgrim@example.com", status="pending"
    )
    via_agent = models.Booking(
        id=2, reference="RT-0002", user_id="pilgrim-2", package_id=1, agent_id=1, status="pending"
    )
    db.add_all([package, agent, admin, staff, direct, via_agent])
    db.commit()
    return {"package_id": 1, "agent_id": 1, "direct_booking_id": 1, "agent_booking_id": 2}


@pytest.fixture
def admin_principal():
    return Principal(user_id="admin-1", email="admin@example.com")


def signed_event(booking_id, amount_minor, reference="ref-1", event="charge.success", secret=GATEWAY_SECRET):
    body = json.dumps(
        {
            "event": event,
            "data": {
                "reference": reference,
                "amount": amount_minor,
                "status": "success",
                "metadata": {"booking_id": booking_id},
            },
        }
    ).encode()
    return body, compute_signature(body, secret)


@pytest.fixture
def client(session_factory, test_settings, gateway, notifier, seed):
    from pilgrim_pay import dependencies
    from pilgrim_pay.database import get_db
    from pilgrim_pay.main import app

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[dependencies.get_settings] = lambda: test_settings
    app.dependency_overrides[dependencies.get_gateway_client] = lambda: gateway
    app.dependency_overrides[dependencies.get_notifier] = lambda: notifier
    # No context manager: the lifespan would create tables on the default database.
    yield TestClient(app)
    app.dependency_overrides.clear()
