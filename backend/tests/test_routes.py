"""
HTTP-level tests: authentication, CSRF, rate limiting, ownership checks
and the scheduler endpoints, exercised through the Flask test client.
"""

from datetime import timedelta

import pytest

from toolunity.extensions import db
from toolunity.models import RentalTransaction, User
from toolunity.payments import ConnectAccountStatus
from toolunity.services import rental_service
from toolunity.time_utils import utcnow

from conftest import END, PASSWORD, START, login


CRON_HEADERS = {"Authorization": "Bearer cron-test-secret"}


@pytest.fixture
def limiter(app):
    """Switch the rate limiter on for one test."""
    limiter = app.extensions["rate_limiter"]
    limiter.reset()
    limiter.enabled = True
    yield limiter
    limiter.enabled = False
    limiter.reset()


# =============================================================================
# CSRF
# =============================================================================


class TestCsrf:
    def test_post_without_token_rejected(self, client, renter):
        resp = client.post("/api/auth/login", json={"identifier": "renter", "password": PASSWORD})

        assert resp.status_code == 403
        assert resp.get_json()["reason"] == "csrf_failed"

    def test_header_must_match_cookie(self, client, renter):
        client.get("/api/auth/csrf")

        resp = client.post(
            "/api/auth/login",
            json={"identifier": "renter", "password": PASSWORD},
            headers={"X-CSRF-Token": "forged"},
        )

        assert resp.status_code == 403

    def test_get_needs_no_token(self, client, renter):
        headers = login(client, renter)
        del headers["X-CSRF-Token"]

        assert client.get("/api/auth/me", headers=headers).status_code == 200

    def test_authenticated_post_still_needs_token(self, client, renter, tool):
        headers = login(client, renter)
        del headers["X-CSRF-Token"]

        resp = client.post(
            "/api/rentals",
            json={"tool_id": tool.id, "start_date": "2099-01-01", "end_date": "2099-01-05"},
            headers=headers,
        )

        assert resp.status_code == 403
        assert db.session.query(RentalTransaction).count() == 0


# =============================================================================
# AUTHENTICATION
# =============================================================================


class TestAuth:
    def test_signup_then_verify_email(self, client, db_session, mailer):
        csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]
        headers = {"X-CSRF-Token": csrf}

        resp = client.post(
            "/api/auth/signup",
            json={"email": "Sam@Example.com", "username": "sam_b", "password": PASSWORD},
            headers=headers,
        )
        assert resp.status_code == 201
        user = resp.get_json()["user"]
        assert user["email"] == "sam@example.com"
        assert user["email_verified"] is False
        assert user["subscription_tier"] == "none"

        link = mailer.sent[-1]["context"]["link"]
        token = link.split("token=", 1)[1]
        resp = client.post("/api/auth/verify-email", json={"token": token}, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["user"]["email_verified"] is True

    def test_signup_weak_password(self, client, db_session, mailer):
        csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]

        resp = client.post(
            "/api/auth/signup",
            json={"email": "weak@example.com", "username": "weakling", "password": "password"},
            headers={"X-CSRF-Token": csrf},
        )

        assert resp.status_code == 400

    def test_signup_duplicate(self, client, renter, mailer):
        csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]

        resp = client.post(
            "/api/auth/signup",
            json={"email": renter.email, "username": "someone_else", "password": PASSWORD},
            headers={"X-CSRF-Token": csrf},
        )

        assert resp.status_code == 409

    def test_login_wrong_password(self, client, renter):
        csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]

        resp = client.post(
            "/api/auth/login",
            json={"identifier": renter.email, "password": "Wrong123!"},
            headers={"X-CSRF-Token": csrf},
        )

        assert resp.status_code == 401

    def test_me_requires_auth(self, client, db_session):
        assert client.get("/api/auth/me").status_code == 401
        assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_me_reports_tier(self, client, renter):
        resp = client.get("/api/auth/me", headers=login(client, renter))

        assert resp.status_code == 200
        tier = resp.get_json()["tier"]
        assert tier["tier"] == "pro"
        assert tier["limits"]["max_borrows"] == 5
        assert tier["can_borrow"] is True

    def test_logout_revokes_token(self, client, renter):
        headers = login(client, renter)

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_password_reset_flow(self, client, renter, mailer):
        old_headers = login(client, renter)
        csrf = {"X-CSRF-Token": old_headers["X-CSRF-Token"]}

        resp = client.post("/api/auth/reset-password", json={"email": renter.email}, headers=csrf)
        assert resp.status_code == 200
        assert mailer.sent[-1]["template"] == "password_reset"
        token = mailer.sent[-1]["context"]["link"].split("token=", 1)[1]

        resp = client.put(
            "/api/auth/reset-password", json={"token": token, "password": "NewPassword456!"}, headers=csrf
        )
        assert resp.status_code == 200

        # Old sessions die, the old password stops working and the link is single use
        assert client.get("/api/auth/me", headers=old_headers).status_code == 401
        resp = client.post("/api/auth/login", json={"identifier": renter.username, "password": PASSWORD}, headers=csrf)
        assert resp.status_code == 401
        login(client, renter, password="NewPassword456!")
        resp = client.put(
            "/api/auth/reset-password", json={"token": token, "password": "Another789!"}, headers=csrf
        )
        assert resp.status_code == 400

    def test_password_reset_hides_unknown_email(self, client, renter, mailer):
        csrf = {"X-CSRF-Token": client.get("/api/auth/csrf").get_json()["csrf_token"]}

        known = client.post("/api/auth/reset-password", json={"email": renter.email}, headers=csrf)
        unknown = client.post("/api/auth/reset-password", json={"email": "ghost@example.com"}, headers=csrf)

        assert known.status_code == unknown.status_code == 200
        assert known.get_json() == unknown.get_json()
        assert [m["to"] for m in mailer.sent] == [renter.email]

    def test_password_reset_link_expires(self, client, renter, mailer):
        csrf = {"X-CSRF-Token": client.get("/api/auth/csrf").get_json()["csrf_token"]}
        client.post("/api/auth/reset-password", json={"email": renter.email}, headers=csrf)
        token = mailer.sent[-1]["context"]["link"].split("token=", 1)[1]
        user = db.session.get(User, renter.id)
        user.password_reset_expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

        resp = client.put(
            "/api/auth/reset-password", json={"token": token, "password": "NewPassword456!"}, headers=csrf
        )

        assert resp.status_code == 400


# =============================================================================
# RATE LIMITING
# =============================================================================


class TestRateLimiting:
    def test_login_limited_per_ip(self, client, renter, limiter):
        csrf = client.get("/api/auth/csrf").get_json()["csrf_token"]
        body = {"identifier": renter.username, "password": "Wrong123!"}

        statuses = [
            client.post("/api/auth/login", json=body, headers={"X-CSRF-Token": csrf}).status_code
            for _ in range(5)
        ]
        resp = client.post("/api/auth/login", json=body, headers={"X-CSRF-Token": csrf})

        assert statuses == [401] * 5
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        assert resp.get_json()["retry_after"] >= 1


# =============================================================================
# TOOLS
# =============================================================================


class TestToolsApi:
    TOOL = {
        "name": "Hedge trimmer",
        "description": "Petrol hedge trimmer, 60cm blade",
        "category": "garden",
        "daily_rate_cents": 800,
    }

    def test_listing_a_tool_grants_basic(self, client, make_user):
        member = make_user("lister")

        resp = client.post("/api/tools", json=self.TOOL, headers=login(client, member))

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["tool"]["tool_value_cents"] == 24_000
        assert body["tier"]["effective_tier"] == "basic"
        assert body["tier"]["granted_by"] == "tool_waiver"

    def test_unverified_member_cannot_list(self, client, make_user):
        member = make_user("unverified", verified=False)

        resp = client.post("/api/tools", json=self.TOOL, headers=login(client, member))

        assert resp.status_code == 403

    def test_missing_fields(self, client, make_user):
        member = make_user("lister")

        resp = client.post("/api/tools", json={"name": "Saw"}, headers=login(client, member))

        assert resp.status_code == 400

    def test_only_owner_can_edit(self, client, tool, renter):
        resp = client.patch(f"/api/tools/{tool.id}", json={"daily_rate_cents": 100}, headers=login(client, renter))

        assert resp.status_code == 403

    def test_public_listing(self, client, tool):
        resp = client.get("/api/tools")

        assert resp.status_code == 200
        assert [t["id"] for t in resp.get_json()["tools"]] == [tool.id]


# =============================================================================
# RENTALS
# =============================================================================


class TestRentalsApi:
    BODY = {"start_date": "2099-01-01", "end_date": "2099-01-05", "notes": "Evening pickup"}

    def test_create_and_checkout(self, client, renter, tool, payments):
        headers = login(client, renter)

        resp = client.post("/api/rentals", json={"tool_id": tool.id, **self.BODY}, headers=headers)
        assert resp.status_code == 201
        rental = resp.get_json()["rental"]
        assert rental["status"] == "pending_payment"
        assert rental["total_cost_cents"] == rental["rental_cost_cents"] + rental["deposit_amount_cents"]

        resp = client.post(f"/api/rentals/{rental['id']}/checkout", headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["url"].startswith("https://checkout.stripe.test/")

    def test_tool_id_must_be_integer(self, client, renter, tool):
        resp = client.post("/api/rentals", json={"tool_id": str(tool.id), **self.BODY}, headers=login(client, renter))

        assert resp.status_code == 400

    def test_none_tier_forbidden(self, client, make_user, tool):
        member = make_user("freeloader")

        resp = client.post("/api/rentals", json={"tool_id": tool.id, **self.BODY}, headers=login(client, member))

        assert resp.status_code == 403

    def test_date_conflict(self, client, renter, make_user, tool):
        client.post("/api/rentals", json={"tool_id": tool.id, **self.BODY}, headers=login(client, renter))
        other = make_user("second", tier="pro", granted_by="payment", paid_tier="pro")

        resp = client.post("/api/rentals", json={"tool_id": tool.id, **self.BODY}, headers=login(client, other))

        assert resp.status_code == 409
        assert resp.get_json()["reason"] == "date_conflict"

    def test_owner_accepts_renter_cannot(self, client, paid_rental, owner, renter, payments, mailer):
        resp = client.post(f"/api/rentals/{paid_rental.id}/accept", headers=login(client, renter))
        assert resp.status_code == 403

        resp = client.post(f"/api/rentals/{paid_rental.id}/accept", headers=login(client, owner))
        assert resp.status_code == 200
        assert resp.get_json()["rental"]["status"] == "active"

        resp = client.post(
            f"/api/rentals/{paid_rental.id}/reject", json={"reason": "Too late"}, headers=login(client, owner)
        )
        assert resp.status_code == 409

    def test_reject_with_stripe_down_returns_502(self, client, paid_rental, owner, payments):
        payments.fail_refund = True

        resp = client.post(
            f"/api/rentals/{paid_rental.id}/reject", json={"reason": "Broken"}, headers=login(client, owner)
        )

        assert resp.status_code == 502
        assert resp.get_json()["service"] == "stripe"

    def test_owner_requests_and_my_rentals(self, client, paid_rental, owner, renter):
        owner_view = client.get("/api/rentals/owner-requests", headers=login(client, owner)).get_json()
        renter_view = client.get("/api/rentals/mine", headers=login(client, renter)).get_json()

        assert [r["id"] for r in owner_view["rentals"]] == [paid_rental.id]
        assert [r["id"] for r in renter_view["rentals"]] == [paid_rental.id]

    def test_stranger_cannot_read_rental(self, client, paid_rental, make_user):
        resp = client.get(f"/api/rentals/{paid_rental.id}", headers=login(client, make_user("nosy")))

        assert resp.status_code == 403

    def test_return_then_claim(self, client, active_rental, owner, renter, mailer):
        resp = client.post(f"/api/rentals/{active_rental.id}/return", headers=login(client, renter))
        assert resp.status_code == 200
        assert resp.get_json()["rental"]["deposit_status"] == "pending_release"

        resp = client.post(
            "/api/deposits/claim",
            json={"rental_id": active_rental.id, "reason": "Blade snapped on first cut"},
            headers=login(client, owner),
        )
        assert resp.status_code == 200
        assert resp.get_json()["rental"]["deposit_status"] == "claimed"

    def test_renter_cancels_unpaid_rental(self, client, renter, owner, tool, payments):
        headers = login(client, renter)
        rental_id = client.post("/api/rentals", json={"tool_id": tool.id, **self.BODY}, headers=headers).get_json()["rental"]["id"]

        resp = client.post(f"/api/rentals/{rental_id}/cancel", headers=login(client, owner))
        assert resp.status_code == 403

        resp = client.post(f"/api/rentals/{rental_id}/cancel", headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["rental"]["status"] == "cancelled"

        resp = client.post(f"/api/rentals/{rental_id}/cancel", headers=headers)
        assert resp.status_code == 409


# =============================================================================
# TOOL REQUEST BOARD
# =============================================================================


class TestToolRequestsApi:
    def test_create_upvote_and_list(self, client, renter, make_user):
        author_headers = login(client, make_user("author"))
        resp = client.post(
            "/api/tool-requests",
            json={"tool_name": "Cement mixer", "category": "building", "postcode": "m1 1ae"},
            headers=author_headers,
        )
        assert resp.status_code == 201
        request_id = resp.get_json()["request"]["id"]

        headers = login(client, renter)
        resp = client.post(f"/api/tool-requests/{request_id}/upvote", headers=headers)
        assert resp.get_json() == {"action": "added", "upvote_count": 1}

        listing = client.get("/api/tool-requests", headers=headers).get_json()
        assert listing["upvoted_ids"] == [request_id]
        assert listing["requests"][0]["upvote_count"] == 1

        anonymous = client.get("/api/tool-requests").get_json()
        assert anonymous["upvoted_ids"] == []

    def test_invalid_postcode(self, client, renter):
        resp = client.post(
            "/api/tool-requests",
            json={"tool_name": "Cement mixer", "category": "building", "postcode": "nowhere"},
            headers=login(client, renter),
        )

        assert resp.status_code == 400


# =============================================================================
# PAYOUT ACCOUNTS AND BILLING
# =============================================================================


class TestPayoutsAndBilling:
    def test_onboarding_creates_account_once(self, client, make_user, payments):
        member = make_user("new_owner")
        headers = login(client, member)

        first = client.post("/api/connect/onboarding", headers=headers)
        second = client.post("/api/connect/onboarding", headers=headers)

        assert first.status_code == second.status_code == 200
        assert first.get_json() == {"account_id": "acct_test_1", "url": "https://connect.stripe.test/acct_test_1"}
        assert second.get_json()["account_id"] == "acct_test_1"
        assert payments.connect_accounts == ["new_owner@example.com"]
        assert payments.account_links[0]["return_url"] == "http://localhost:3000/dashboard?connect=success"
        assert db.session.get(User, member.id).stripe_connect_account_id == "acct_test_1"

    def test_onboarded_owner_can_accept(self, client, make_user, make_tool, renter, payments, mailer):
        new_owner = make_user("new_owner")
        rental = rental_service.create_rental(renter, make_tool(new_owner).id, START, END)
        rental_service.mark_payment_completed(rental.id, "pi_onboard")
        headers = login(client, new_owner)

        assert client.post(f"/api/rentals/{rental.id}/accept", headers=headers).status_code == 409
        client.post("/api/connect/onboarding", headers=headers)
        resp = client.post(f"/api/rentals/{rental.id}/accept", headers=headers)

        assert resp.status_code == 200
        assert payments.transfers[0]["destination"] == "acct_test_1"

    def test_onboarding_requires_verified_email(self, client, make_user, payments):
        resp = client.post("/api/connect/onboarding", headers=login(client, make_user("unverified", verified=False)))

        assert resp.status_code == 403
        assert payments.connect_accounts == []

    def test_connect_status(self, client, owner, make_user, payments):
        payments.account_status = ConnectAccountStatus(details_submitted=True, charges_enabled=False, payouts_enabled=True)

        fresh = client.get("/api/connect/status", headers=login(client, make_user("fresh"))).get_json()
        connected = client.get("/api/connect/status", headers=login(client, owner)).get_json()

        assert fresh["connected"] is False
        assert connected == {
            "connected": True,
            "details_submitted": True,
            "charges_enabled": False,
            "payouts_enabled": True,
        }

    def test_billing_portal(self, client, renter, make_user, payments):
        renter.stripe_customer_id = "cus_renter"
        db.session.commit()

        resp = client.post("/api/subscriptions/portal", headers=login(client, renter))
        assert resp.status_code == 200
        assert resp.get_json()["url"] == "https://billing.stripe.test/cus_renter"
        assert payments.portal_sessions[0]["return_url"] == "http://localhost:3000/profile"

        resp = client.post("/api/subscriptions/portal", headers=login(client, make_user("never_paid")))
        assert resp.status_code == 404


# =============================================================================
# SCHEDULER
# =============================================================================


class TestCron:
    @pytest.mark.parametrize("path", ["/api/cron/auto-decline", "/api/cron/auto-release", "/api/cron/expire-checkouts"])
    def test_requires_secret(self, client, db_session, path):
        assert client.post(path).status_code == 401
        assert client.post(path, headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_auto_decline(self, client, db_session, payments):
        resp = client.post("/api/cron/auto-decline", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.get_json() == {"processed": 0, "declined": [], "errors": []}

    def test_auto_release(self, client, db_session, payments):
        resp = client.post("/api/cron/auto-release", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.get_json() == {"processed": 0, "released": [], "errors": []}

    def test_expire_checkouts(self, client, renter, tool, payments):
        rental = rental_service.create_rental(renter, tool.id, START, END)
        rental.created_at = utcnow() - timedelta(hours=3)
        db.session.commit()

        resp = client.post("/api/cron/expire-checkouts", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.get_json() == {"processed": 1, "expired": [rental.id]}


def test_health(client, db_session):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"]["status"] == "healthy"


def test_unknown_route_returns_json_404(client, db_session):
    resp = client.get("/api/nowhere")

    assert resp.status_code == 404
    assert resp.get_json()["error"]
