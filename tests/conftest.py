"""
Shared fixtures: an app on in-memory SQLite and a fake Stripe.

FakeStripe replaces the Stripe resource methods the gateway calls with an
in-memory processor, so tests can assert on exactly which money movements
were requested and make any of them fail on demand.
"""
import itertools
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from app import create_app
from models import db
from models.service import Service
from models.slot import TimeSlot
from models.user import User, Role
from security.password import hash_password
from security.session import create_session
from services import otp

TEST_CODE = "123456"


class FakeStripe:
    def __init__(self):
        self._ids = itertools.count(1)
        self.intents = {}
        self.refunds = []
        self.voids = []
        self.transfers = []
        self.idempotent_answers = {}
        self.accounts = {}
        self.customers = []
        self.payment_methods = {}
        self.calls = []
        self._failures = {}
        self.decline_next = False

    def _next_id(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    def fail(self, operation, exc):
        """The next call to operation raises exc."""
        self._failures[operation] = exc

    def _call(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        exc = self._failures.pop(operation, None)
        if exc is not None:
            raise exc

    def operations(self):
        return [op for op, _ in self.calls]

    # ---------- PaymentIntent ----------
    def pi_create(self, **kwargs):
        self._call("PaymentIntent.create", **kwargs)
        if self.decline_next:
            self.decline_next = False
            raise stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
        manual = kwargs.get("capture_method") == "manual"
        intent = SimpleNamespace(
            id=self._next_id("pi"),
            amount=kwargs["amount"],
            amount_received=0 if manual else kwargs["amount"],
            status="requires_capture" if manual else "succeeded",
            metadata=kwargs.get("metadata") or {},
        )
        self.intents[intent.id] = intent
        return intent

    def pi_retrieve(self, intent_id):
        self._call("PaymentIntent.retrieve", id=intent_id)
        return self.intents[intent_id]

    def pi_capture(self, intent_id):
        self._call("PaymentIntent.capture", id=intent_id)
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        intent.amount_received = intent.amount
        return intent

    def pi_cancel(self, intent_id):
        self._call("PaymentIntent.cancel", id=intent_id)
        intent = self.intents[intent_id]
        intent.status = "canceled"
        self.voids.append(intent_id)
        return intent

    # ---------- Refund / Transfer ----------
    def refund_create(self, **kwargs):
        self._call("Refund.create", **kwargs)
        intent = self.intents[kwargs["payment_intent"]]
        already = sum(r.amount for r in self.refunds if r.payment_intent == intent.id)
        refund = SimpleNamespace(
            id=self._next_id("re"),
            payment_intent=intent.id,
            amount=kwargs.get("amount", intent.amount_received - already),
        )
        self.refunds.append(refund)
        return refund

    def transfer_create(self, **kwargs):
        """Replays the first answer stored under an idempotency key, errors included."""
        key = kwargs.get("idempotency_key")
        params = (kwargs["amount"], kwargs["destination"])
        if key in self.idempotent_answers:
            self.calls.append(("Transfer.create", kwargs))
            first_params, answer = self.idempotent_answers[key]
            if first_params != params:
                raise stripe.IdempotencyError("Keys for idempotent requests can only be used with the same parameters",
                                              http_status=400)
            if isinstance(answer, Exception):
                raise answer
            return answer

        try:
            self._call("Transfer.create", **kwargs)
        except stripe.StripeError as exc:
            # connection errors never reached the processor, so nothing is stored
            if key and exc.http_status:
                self.idempotent_answers[key] = (params, exc)
            raise
        transfer = SimpleNamespace(
            id=self._next_id("tr"),
            amount=kwargs["amount"],
            destination=kwargs["destination"],
            idempotency_key=key,
        )
        self.transfers.append(transfer)
        if key:
            self.idempotent_answers[key] = (params, transfer)
        return transfer

    # ---------- Connect accounts ----------
    def add_account(self, account_id, charges_enabled=True, details_submitted=True):
        self.accounts[account_id] = {"charges_enabled": charges_enabled, "details_submitted": details_submitted}

    def account_retrieve(self, account_id):
        self._call("Account.retrieve", id=account_id)
        state = self.accounts[account_id]
        return SimpleNamespace(
            id=account_id,
            charges_enabled=state["charges_enabled"],
            details_submitted=state["details_submitted"],
            requirements=SimpleNamespace(currently_due=[] if state["charges_enabled"] else ["external_account"]),
        )

    def account_create(self, **kwargs):
        self._call("Account.create", **kwargs)
        account_id = self._next_id("acct")
        self.add_account(account_id, charges_enabled=False, details_submitted=False)
        return SimpleNamespace(id=account_id)

    def account_link_create(self, **kwargs):
        self._call("AccountLink.create", **kwargs)
        return SimpleNamespace(url=f"https://connect.example.test/onboard/{kwargs['account']}")

    # ---------- Customers / cards ----------
    def customer_create(self, **kwargs):
        self._call("Customer.create", **kwargs)
        customer = SimpleNamespace(id=self._next_id("cus"), email=kwargs.get("email"))
        self.customers.append(customer)
        return customer

    def customer_modify(self, customer_id, **kwargs):
        self._call("Customer.modify", id=customer_id, **kwargs)
        return SimpleNamespace(id=customer_id, **kwargs)

    def pm_attach(self, pm_id, customer=None):
        self._call("PaymentMethod.attach", id=pm_id, customer=customer)
        self.payment_methods.setdefault(customer, []).append(pm_id)
        return SimpleNamespace(id=pm_id, customer=customer)

    def pm_list(self, customer=None, type=None):
        self._call("PaymentMethod.list", customer=customer, type=type)
        return SimpleNamespace(data=[
            SimpleNamespace(id=pm_id, card=SimpleNamespace(brand="visa", last4="4242"))
            for pm_id in self.payment_methods.get(customer, [])
        ])

    def pm_detach(self, pm_id):
        self._call("PaymentMethod.detach", id=pm_id)
        for methods in self.payment_methods.values():
            if pm_id in methods:
                methods.remove(pm_id)
        return SimpleNamespace(id=pm_id, customer=None)


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake.pi_create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake.pi_retrieve)
    monkeypatch.setattr(stripe.PaymentIntent, "capture", fake.pi_capture)
    monkeypatch.setattr(stripe.PaymentIntent, "cancel", fake.pi_cancel)
    monkeypatch.setattr(stripe.Refund, "create", fake.refund_create)
    monkeypatch.setattr(stripe.Transfer, "create", fake.transfer_create)
    monkeypatch.setattr(stripe.Account, "retrieve", fake.account_retrieve)
    monkeypatch.setattr(stripe.Account, "create", fake.account_create)
    monkeypatch.setattr(stripe.AccountLink, "create", fake.account_link_create)
    monkeypatch.setattr(stripe.Customer, "create", fake.customer_create)
    monkeypatch.setattr(stripe.Customer, "modify", fake.customer_modify)
    monkeypatch.setattr(stripe.PaymentMethod, "attach", fake.pm_attach)
    monkeypatch.setattr(stripe.PaymentMethod, "list", fake.pm_list)
    monkeypatch.setattr(stripe.PaymentMethod, "detach", fake.pm_detach)
    return fake


@pytest.fixture
def app(fake_stripe, monkeypatch):
    monkeypatch.setattr(otp, "generate_code", lambda: TEST_CODE)
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "CREATE_TABLES_ON_STARTUP": True,
        "SECRET_KEY": "test-secret",
        "STRIPE_SECRET_KEY": "sk_test_dummy",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "BCRYPT_ROUNDS": 4,
        "SMTP_HOST": None,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(email, role_name, **fields):
    user = User(email=email, password_hash=hash_password("password123", rounds=4), **fields)
    user.roles.append(Role.query.filter_by(name=role_name).one())
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def buyer(app):
    return make_user("buyer@example.com", "BUYER", full_name="Bea Buyer", customer_id="cus_buyer")


@pytest.fixture
def seller(app, fake_stripe):
    fake_stripe.add_account("acct_seller")
    return make_user("seller@example.com", "SELLER", full_name="Sam Seller",
                     account_id="acct_seller", onboarding_complete=True)


@pytest.fixture
def admin(app):
    return make_user("admin@example.com", "ADMIN")


@pytest.fixture
def service(seller):
    svc = Service(owner_user_id=seller.id, title="Five-a-side pitch", price=Decimal("50.00"))
    db.session.add(svc)
    db.session.commit()
    db.session.add_all([
        TimeSlot(service_id=svc.id, label="10:00"),
        TimeSlot(service_id=svc.id, label="11:00"),
    ])
    db.session.commit()
    return svc


def auth_headers(user):
    return {"Authorization": f"Bearer {create_session(user.id)}"}
