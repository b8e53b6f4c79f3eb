"""
Pytest fixtures for ToolUnity backend tests.

Provides an in-memory database, recording fakes for the Stripe and email
collaborators, member/tool/rental factories and an authenticated test client.
"""

from datetime import date

import bcrypt
import pytest

from toolunity import create_app
from toolunity.errors import ExternalServiceFailure
from toolunity.extensions import db
from toolunity.models import Tool, User
from toolunity.notifications import Mailer
from toolunity.payments import CheckoutSession, ConnectAccountStatus, PaymentGateway, SubscriptionStatus
from toolunity.services import rental_service


PASSWORD = "Password123!"
PASSWORD_HASH = bcrypt.hashpw(PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")

START = date(2099, 1, 1)
END = date(2099, 1, 5)


class FakePayments(PaymentGateway):
    """Records every Stripe call instead of making it. Flip fail_* to simulate outages."""

    def __init__(self):
        super().__init__()
        self.checkouts = []
        self.refunds = []
        self.transfers = []
        self.expired_checkouts = []
        self.connect_accounts = []
        self.account_links = []
        self.portal_sessions = []
        self.fail_refund = False
        self.fail_transfer = False
        self.fail_expire = False
        self.account_status = ConnectAccountStatus(details_submitted=False, charges_enabled=False, payouts_enabled=False)
        self.subscription = SubscriptionStatus(status="none", tier="none")

    def create_checkout(self, **kwargs):
        self.checkouts.append(kwargs)
        n = len(self.checkouts)
        return CheckoutSession(session_id=f"cs_test_{n}", url=f"https://checkout.stripe.test/cs_test_{n}")

    def refund(self, payment_reference, *, reason, amount_cents=None, metadata=None, idempotency_key=None):
        if self.fail_refund:
            raise ExternalServiceFailure("card_declined", service="stripe")
        self.refunds.append({
            "payment_reference": payment_reference,
            "reason": reason,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        })
        return f"re_test_{len(self.refunds)}"

    def transfer(self, amount_cents, destination_account, source_reference, *, idempotency_key=None):
        if self.fail_transfer:
            raise ExternalServiceFailure("insufficient_funds", service="stripe")
        self.transfers.append({
            "amount_cents": amount_cents,
            "destination": destination_account,
            "source_reference": source_reference,
            "idempotency_key": idempotency_key,
        })
        return f"tr_test_{len(self.transfers)}"

    def expire_checkout(self, session_id):
        if self.fail_expire:
            raise ExternalServiceFailure("checkout_already_complete", service="stripe")
        self.expired_checkouts.append(session_id)

    def create_connect_account(self, email):
        self.connect_accounts.append(email)
        return f"acct_test_{len(self.connect_accounts)}"

    def create_account_link(self, account_id, *, refresh_url, return_url):
        self.account_links.append({"account": account_id, "refresh_url": refresh_url, "return_url": return_url})
        return f"https://connect.stripe.test/{account_id}"

    def retrieve_account_status(self, account_id):
        return self.account_status

    def create_portal_session(self, customer_id, return_url):
        self.portal_sessions.append({"customer": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/{customer_id}"

    def retrieve_subscription_status(self, customer_id):
        return self.subscription


class FakeMailer(Mailer):
    """Renders templates (so missing context keys fail tests) and keeps the result."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, template, to, **context):
        subject, html = self.render(template, **context)
        self.sent.append({"template": template, "to": to, "subject": subject, "html": html, "context": context})
        return f"email_{len(self.sent)}"

    def templates_to(self, address):
        return [m["template"] for m in self.sent if m["to"] == address]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'RATE_LIMIT_ENABLED': False,
        'BCRYPT_ROUNDS': 4,
        'APP_URL': 'http://localhost:3000',
        'CRON_SECRET': 'cron-test-secret',
        'STRIPE_WEBHOOK_SECRET': '',
        'ALLOW_UNSIGNED_WEBHOOKS': True,
        'STRIPE_PRICE_BASIC': 'price_basic',
        'STRIPE_PRICE_STANDARD': 'price_standard',
        'STRIPE_PRICE_PRO': 'price_pro',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data for each test."""
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def payments(app):
    fake = FakePayments()
    original = app.extensions["payments"]
    fake.init_app(app)
    yield fake
    app.extensions["payments"] = original


@pytest.fixture(scope='function')
def mailer(app):
    fake = FakeMailer()
    original = app.extensions["mailer"]
    fake.init_app(app)
    yield fake
    app.extensions["mailer"] = original


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def make_user(db_session):
    counter = {"n": 0}

    def _make_user(
        username=None,
        *,
        tier="none",
        granted_by="none",
        paid_tier="none",
        verified=True,
        payout_account=None,
        is_admin=False,
    ):
        counter["n"] += 1
        username = username or f"member{counter['n']}"
        user = User(
            email=f"{username}@example.com",
            username=username,
            password_hash=PASSWORD_HASH,
            email_verified=verified,
            subscription_tier=tier,
            tier_granted_by=granted_by,
            paid_tier=paid_tier,
            stripe_connect_account_id=payout_account,
            is_admin=is_admin,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture(scope='function')
def make_tool(db_session):
    def _make_tool(owner, *, name="Cordless drill", daily_rate_cents=500, tool_value_cents=10_000, available=True):
        tool = Tool(
            owner_id=owner.id,
            name=name,
            description="18V drill with two batteries",
            category="power-tools",
            condition="good",
            daily_rate_cents=daily_rate_cents,
            tool_value_cents=tool_value_cents,
            images=[],
            available=available,
        )
        db_session.add(tool)
        db_session.commit()
        return tool

    return _make_tool


@pytest.fixture(scope='function')
def owner(make_user):
    return make_user("owner", payout_account="acct_owner")


@pytest.fixture(scope='function')
def renter(make_user):
    return make_user("renter", tier="pro", granted_by="payment", paid_tier="pro")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user("admin", is_admin=True)


@pytest.fixture(scope='function')
def tool(owner, make_tool):
    return make_tool(owner)


@pytest.fixture(scope='function')
def paid_rental(renter, tool, payments, mailer):
    """A rental in pending_approval with its deposit held."""
    rental = rental_service.create_rental(renter, tool.id, START, END)
    rental, _ = rental_service.mark_payment_completed(rental.id, "pi_test_1")
    return rental


@pytest.fixture(scope='function')
def active_rental(paid_rental, owner):
    return rental_service.accept_rental(owner, paid_rental.id)


def login(client, user, password=PASSWORD):
    """Log in through the API. Returns headers carrying the bearer token and CSRF token."""
    csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]
    headers = {"X-CSRF-Token": csrf}
    response = client.post(
        "/api/auth/login",
        json={"identifier": user.username, "password": password},
        headers=headers,
    )
    assert response.status_code == 200, response.get_json()
    headers["Authorization"] = f"Bearer {response.get_json()['token']}"
    return headers


@pytest.fixture(scope='function')
def auth_headers(client):
    def _auth_headers(user):
        return login(client, user)

    return _auth_headers
