from __future__ import annotations

import re
import sys
from pathlib import Path

import pytest
from flask import g

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app
from app.core.config import Config
from app.core.extensions import db
from app.core.models import (
    Membership,
    Organization,
    Sale,
    SaleStatus,
    User,
    seed_demo_data,
)
from app.signatures.delivery import DeliveryChannel, DeliveryResult


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    LOG_FILE = ""
    DELIVERY_CHANNEL = "log"
    WORKFLOW_FALLBACK = "allow_all"
    REQUIRE_OTP_FOR_SIGNATURE = True
    PUBLIC_SIGNATURE_BASE_URL = "http://testserver/firma"


class FailingDeliveryChannel(DeliveryChannel):
    name = "failing"

    def __init__(self) -> None:
        self.attempts = 0

    def send_message(self, destination, payload):
        self.attempts += 1
        return DeliveryResult(success=False, error="provider down")


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def public_client(app):
    return app.test_client()


def _login(client, email: str, password: str):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture
def login_admin(client):
    return lambda: _login(client, "admin@prepaga.local", "admin123")


@pytest.fixture
def login_vendedor(client):
    return lambda: _login(client, "vendedor@prepaga.local", "vendedor123")


@pytest.fixture
def login_auditor(client):
    return lambda: _login(client, "auditor@prepaga.local", "auditor123")


@pytest.fixture
def demo_org(app):
    return Organization.query.filter_by(code="DEMO").first()


@pytest.fixture
def demo_sale(app, demo_org):
    return Sale.query.filter_by(org_id=demo_org.id, contract_number="C-0001").first()


@pytest.fixture
def org_context(app, demo_org):
    with app.test_request_context("/"):
        g.org = demo_org
        yield demo_org


@pytest.fixture
def outbox(app):
    return app.extensions["delivery_channel"].outbox


@pytest.fixture
def failing_delivery(app):
    original = app.extensions["delivery_channel"]
    channel = FailingDeliveryChannel()
    app.extensions["delivery_channel"] = channel
    yield channel
    app.extensions["delivery_channel"] = original


@pytest.fixture
def signing_sale(org_context, demo_sale):
    from app.signatures.links import create_links_for_sale

    demo_sale.status = SaleStatus.LISTO_PARA_ENVIAR
    db.session.commit()
    links = create_links_for_sale(demo_sale.id)
    return demo_sale, links


@pytest.fixture
def second_org_sale(app):
    org2 = Organization(name="Prepaga Dos", code="ORG2")
    user2 = User(email="org2@example.com", full_name="User Org2", password_hash="x")
    db.session.add_all([org2, user2])
    db.session.flush()
    db.session.add(Membership(user_id=user2.id, org_id=org2.id, role="admin"))
    sale = Sale(org_id=org2.id, status=SaleStatus.BORRADOR, contract_number="X-1")
    db.session.add(sale)
    db.session.commit()
    return sale.id


@pytest.fixture
def read_otp(outbox):
    def _read() -> str:
        body = outbox[-1]["body"]
        return re.search(r"verificación es (\d+)", body).group(1)

    return _read
