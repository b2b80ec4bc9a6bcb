import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_marketplace.db")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import marketplace.auth
import marketplace.routes
from marketplace.config import Settings, get_settings
from marketplace.couriers import Booking, Tracking, normalise_tracking_status
from marketplace.database import Base
from marketplace.errors import ExternalServiceError
from marketplace.gateway import GatewayRefund
from marketplace.main import app as fastapi_app
from marketplace.models import (
    BankingDetails, Book, DeliveryStatus, Order, OrderStatus, PaymentTransaction,
    PayoutStatus, Profile, TransactionStatus,
)

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_marketplace.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


class FakeGateway:
    def __init__(self):
        self.refunds = []
        self.recipients = []
        self.bank_accounts = []
        self.fail_with = None
        self.refund_status = TransactionStatus.SUCCESS

    def close(self):
        pass

    def refund(self, payment_reference, amount, reason, idempotency_key):
        if self.fail_with:
            raise self.fail_with
        self.refunds.append((payment_reference, amount, reason, idempotency_key))
        return GatewayRefund(reference=f"re_{len(self.refunds)}", status=self.refund_status,
                             raw={"amount": amount})

    def create_recipient(self, seller_id, name, email, bank_code=None, account_number=None):
        self.recipients.append(seller_id)
        self.bank_accounts.append((bank_code, account_number))
        return f"acct_{seller_id}"


class FakeProvider:
    def __init__(self, name, error=None, label_url=None, events=()):
        self.name = name
        self.error = error
        self.label_url = label_url
        self.events = list(events)
        self.parcels = []
        self.tracked = []
        self.closed = False

    def close(self):
        self.closed = True

    def book(self, parcel):
        self.parcels.append(parcel)
        if self.error:
            raise self.error
        return Booking(provider=self.name, tracking_number=f"{self.name.upper()}-001",
                       pickup_date="2026-10-19", pickup_time_window="09:00 - 17:00",
                       label_url=self.label_url)

    def track(self, tracking_number):
        self.tracked.append(tracking_number)
        if self.error:
            raise self.error
        return Tracking(provider=self.name, tracking_number=tracking_number,
                        status=normalise_tracking_status(self.events), events=self.events)


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def close(self):
        pass

    def send(self, to, template, data):
        if self.fail:
            raise ExternalServiceError("mail service down", service="notifications")
        self.sent.append((to, template, data))


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        environment="test",
        webhook_secret="whsec_test",
        paystack_secret_key="sk_test_paystack",
        paystack_base_url="https://api.paystack.test",
        stripe_secret_key="sk_test",
        jwt_secret="jwt_test",
        courier_guy_api_key="cg_key",
        fastway_api_key="fw_key",
        label_storage_dir=str(tmp_path / "order-documents"),
        label_public_base_url="https://files.test/order-documents",
        minimum_payout=0,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_seller(db):
    def _make(seller_id="seller-1", banking=True):
        if db.get(Profile, seller_id) is None:
            db.add(Profile(id=seller_id, name="Sipho Seller", email=f"{seller_id}@example.com",
                           phone="0820000000",
                           pickup_address={"street": "1 Long St", "city": "Cape Town",
                                           "province": "WC", "postal_code": "8001"}))
        if banking and db.get(BankingDetails, seller_id) is None:
            db.add(BankingDetails(seller_id=seller_id, business_name="Sipho Books",
                                  email=f"{seller_id}@example.com", bank_code="051",
                                  account_number="62000000001", active=True))
        db.commit()
        return seller_id
    return _make


@pytest.fixture
def make_book(db, make_seller):
    def _make(seller_id="seller-1", price=20000, sold=False, **fields):
        make_seller(seller_id, banking=False)
        book = Book(seller_id=seller_id, title="Intro to Calculus", price=price, sold=sold, **fields)
        db.add(book)
        db.commit()
        return book
    return _make


@pytest.fixture
def make_order(db, make_seller):
    def _make(status=OrderStatus.PENDING_COMMIT, delivery_status=DeliveryStatus.NONE,
              book_price=20000, delivery_fee=2500, seller_id="seller-1", buyer_id="buyer-1",
              payout_status=PayoutStatus.PENDING, **fields):
        make_seller(seller_id, banking=False)
        if db.get(Profile, buyer_id) is None:
            db.add(Profile(id=buyer_id, name="Bongi Buyer", email=f"{buyer_id}@example.com"))
        book = Book(seller_id=seller_id, title="Intro to Calculus", price=book_price,
                    sold=True, buyer_id=buyer_id)
        reference = f"ref_{uuid.uuid4().hex[:10]}"
        db.add_all([book, PaymentTransaction(reference=reference, status=TransactionStatus.SUCCESS)])
        db.flush()
        order = Order(
            buyer_id=buyer_id, seller_id=seller_id, book_id=book.id,
            book_price=book_price, delivery_fee=delivery_fee, amount=book_price + delivery_fee,
            status=status, delivery_status=delivery_status, payout_status=payout_status,
            payment_reference=reference,
            shipping_address={"street": "9 Main Rd", "city": "Durban", "postal_code": "4001"},
            **fields,
        )
        db.add(order)
        db.commit()
        return order
    return _make


@pytest.fixture
def client(monkeypatch, settings, gateway, notifier):
    monkeypatch.setattr(marketplace.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("marketplace.main.SessionLocal", TestingSessionLocal)

    providers = [FakeProvider("courier-guy"), FakeProvider("fastway")]
    fastapi_app.dependency_overrides[marketplace.auth.verify_token] = lambda: {"sub": "admin"}
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    fastapi_app.dependency_overrides[marketplace.routes.get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[marketplace.routes.get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[marketplace.routes.get_courier_providers] = lambda: providers

    with TestClient(fastapi_app) as c:
        c.providers = providers
        yield c

    fastapi_app.dependency_overrides.clear()
