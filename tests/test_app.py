import re
from datetime import date, timedelta

import pytest

import app as app_module
from app import (
    AccountDeletion,
    AuditLog,
    BillingSettings,
    CommunicationLog,
    DDMandate,
    DirectDebitStatusDetails,
    FunctionsClient,
    FunctionsError,
    Invoice,
    InstallationBooking,
    InstallationSlot,
    Order,
    PaymentAttempt,
    PaymentRequest,
    Profile,
    Receipt,
    Service,
    SupportTicket,
    TicketMessageBroker,
    UserRole,
    add_months,
    book_installation,
    calculate_bundle_discount,
    calculate_next_invoice_date,
    classify_search_query,
    create_app,
    create_customer,
    create_invoice,
    create_service,
    db,
    describe_template,
    generate_invoices,
    normalize_communication_status,
    normalize_postcode,
    parse_communication_details,
    process_late_fees,
    save_billing_settings,
    send_installation_reminders,
    send_invoice,
    send_payment_reminders,
    update_booking,
    utcnow,
)


CUSTOMER_EMAIL = "jane@example.com"
CUSTOMER_PASSWORD = "CustomerPass123!"
TEST_ADMIN_EMAIL = "admin@occta.test"
TEST_ADMIN_PASSWORD = "SecurePass123!"
CRON_SECRET = "cron-secret"
ADMIN_INBOX = "ops@occta.test"

DD_FORM = {
    "account_holder_name": "Jane Smith",
    "sort_code": "12-34-56",
    "account_number": "12345678",
    "signature_name": "Jane Smith",
    "billing_address": "1 Test Street, Huddersfield",
    "consent": True,
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def app(tmp_path, outbox):
    test_db_path = tmp_path / "test.db"

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "SITE_URL": "https://occta.test",
            "ADMIN_NOTIFY_EMAIL": ADMIN_INBOX,
            "CRON_JOB_SECRET": CRON_SECRET,
            "FUNCTIONS_BASE_URL": "https://functions.occta.test",
            "FUNCTIONS_API_KEY": "service-role-key",
            "TICKET_STREAM_TIMEOUT": 0.05,
            "EMAIL_SENDER": lambda recipient, subject, body: outbox.append(
                (recipient, subject, body)
            )
            or True,
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def create_customer_record(app, email=CUSTOMER_EMAIL, full_name="Jane Smith", **fields):
    with app.app_context():
        profile = create_customer(
            {"email": email, "full_name": full_name, **fields},
            password=CUSTOMER_PASSWORD,
            audit=False,
        )
        return profile.id


def create_admin_record(app, email=TEST_ADMIN_EMAIL):
    with app.app_context():
        profile = create_customer(
            {"email": email, "full_name": "Ops Admin"}, password=TEST_ADMIN_PASSWORD, audit=False
        )
        db.session.add(UserRole(user_id=profile.id, role="admin"))
        db.session.commit()
        return profile.id


def create_sent_invoice(app, customer_id, unit_price=20):
    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        invoice = create_invoice(
            profile, {"lines": [{"description": "Broadband - Superfast", "unit_price": unit_price}]}
        )
        send_invoice(invoice)
        return invoice.id


def login(client, email=CUSTOMER_EMAIL, password=CUSTOMER_PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def login_admin(client):
    return login(client, TEST_ADMIN_EMAIL, TEST_ADMIN_PASSWORD)


def subjects_for(outbox, recipient):
    return [subject for to, subject, _ in outbox if to == recipient]


@pytest.mark.parametrize(
    "query, expected",
    [
        ("occ1234", ("account_number", "OCC1234")),
        ("  OCC00012345 ", ("account_number", "OCC00012345")),
        ("occ@example.com", ("account_number", "OCC@EXAMPLE.COM")),
        ("jane@x.com", ("email", "jane@x.com")),
        ("1234@x.com", ("email", "1234@x.com")),
        ("0161 496 0000", ("phone", "01614960000")),
        ("+44 7700-900123", ("phone", "447700900123")),
        ("hd3 3wu", ("postcode_or_name", "hd3 3wu")),
        ("Jane Smith", ("postcode_or_name", "Jane Smith")),
        ("Al", ("name", "Al")),
        ("a", None),
        ("", None),
        ("   ", None),
        (None, None),
    ],
)
def test_classify_search_query(query, expected):
    assert classify_search_query(query) == expected


def test_normalize_postcode_strips_whitespace_and_uppercases():
    assert normalize_postcode("hd3 3wu") == "HD33WU"
    assert normalize_postcode(" ls1\t4ap ") == "LS14AP"
    assert normalize_postcode(None) == ""


def test_bundle_discount_tiers():
    broadband = {"service_type": "broadband", "price_num": 24.99}
    sim = {"service_type": "sim", "price_num": 8.99}
    landline = {"service_type": "landline", "price_num": 12.99}

    single = calculate_bundle_discount([broadband])
    assert single["discount_percentage"] == 0
    assert single["savings"] == 0
    assert single["discounted_total"] == pytest.approx(24.99)

    pair = calculate_bundle_discount([broadband, sim])
    assert pair["discount_percentage"] == 10
    assert pair["original_total"] == pytest.approx(33.98)
    assert pair["savings"] == pytest.approx(3.398)
    assert pair["discounted_total"] == pytest.approx(30.572)

    triple = calculate_bundle_discount([broadband, sim, landline])
    assert triple["discount_percentage"] == 15

    assert calculate_bundle_discount([])["original_total"] == 0


@pytest.mark.parametrize(
    "prices",
    [(22.99,), (26.99, 7.99), (38.99, 17.99, 12.99), (52.99, 27.99, 26.99), (0.01, 0.02)],
)
def test_bundle_discount_savings_add_back_to_original(prices):
    plans = [
        {"service_type": service_type, "price_num": price}
        for service_type, price in zip(["broadband", "sim", "landline"], prices)
    ]
    result = calculate_bundle_discount(plans)
    assert result["discounted_total"] + result["savings"] == pytest.approx(
        result["original_total"]
    )


def test_fixed_day_billing_date():
    assert calculate_next_invoice_date("fixed_day", 15, date(2024, 5, 20)) == date(2024, 6, 15)
    assert calculate_next_invoice_date("fixed_day", 15, date(2024, 5, 10)) == date(2024, 5, 15)
    assert calculate_next_invoice_date("fixed_day", 15, date(2024, 5, 15)) == date(2024, 6, 15)
    assert calculate_next_invoice_date("fixed_day", 15, date(2024, 12, 20)) == date(2025, 1, 15)
    assert calculate_next_invoice_date("fixed_day", 31, date(2024, 2, 1)) == date(2024, 2, 28)


def test_anniversary_billing_date_is_one_calendar_month_ahead():
    assert calculate_next_invoice_date("anniversary", None, date(2024, 3, 10)) == date(2024, 4, 10)
    assert calculate_next_invoice_date("anniversary", None, date(2024, 1, 31)) == date(2024, 2, 29)
    assert calculate_next_invoice_date("anniversary", None, date(2023, 1, 31)) == date(2023, 2, 28)
    assert calculate_next_invoice_date("anniversary", 15, date(2024, 12, 5)) == date(2025, 1, 5)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)


def test_communication_details_variants():
    mandate = parse_communication_details(
        "dd_status_active",
        {"mandate_reference": "DD-OCC1-ABC", "old_status": "verified", "new_status": "active"},
    )
    assert isinstance(mandate, DirectDebitStatusDetails)
    assert mandate.to_dict() == {
        "kind": "dd_status",
        "details": ["Mandate: DD-OCC1-ABC", "verified → active"],
    }

    invoice = parse_communication_details(
        "invoice_sent", {"invoice_number": "INV-000001", "amount": 24}
    )
    assert invoice.to_dict() == {
        "kind": "invoice",
        "details": ["Invoice: INV-000001", "Amount: £24.00"],
    }

    status = parse_communication_details("status_update", {"new_status": "confirmed"})
    assert status.to_dict() == {"kind": "status_update", "details": ["Now confirmed"]}


def test_unknown_communication_templates_fall_back_to_generic_details():
    unknown = parse_communication_details(
        "welcome_pack", {"router_model": "Hub 2", "nested": {"a": 1}, "express": True}
    )
    assert unknown.to_dict() == {"kind": "generic", "details": ["router model: Hub 2"]}
    assert parse_communication_details(None, None).to_dict() == {"kind": "generic", "details": []}
    assert parse_communication_details("welcome_pack", ["not", "a", "dict"]).details() == []
    assert describe_template("welcome_pack") == "welcome pack"
    assert describe_template("dd_status_active") == "DD Active"
    assert describe_template(None) == "Email"
    assert normalize_communication_status("bounced") == "pending"
    assert normalize_communication_status("opened") == "opened"


def test_ticket_broker_delivers_every_publish():
    broker = TicketMessageBroker()

    with broker.subscribe(7) as first:
        second = broker.subscribe(7)
        other = broker.subscribe(8)

        assert broker.publish(7, {"id": 1}) == 2
        assert broker.publish(7, {"id": 1}) == 2
        assert first.drain() == [{"id": 1}, {"id": 1}]
        assert second.get(timeout=0.01) == {"id": 1}
        assert other.drain() == []

        second.unsubscribe()
        second.unsubscribe()
        assert broker.subscriber_count(7) == 1

    assert broker.subscriber_count(7) == 0
    assert broker.publish(7, {"id": 2}) == 0
    assert first.get(timeout=0.01) is None


def test_functions_client_requires_configuration():
    with pytest.raises(FunctionsError):
        FunctionsClient("", "key")
    with pytest.raises(FunctionsError):
        FunctionsClient("https://functions.example", "")


def test_functions_client_wraps_network_errors(monkeypatch):
    def offline(*args, **kwargs):
        raise app_module.requests.ConnectionError("offline")

    monkeypatch.setattr(app_module.requests, "post", offline)
    functions = FunctionsClient("https://functions.example", "key")

    with pytest.raises(FunctionsError, match="Could not reach worldpay-payment"):
        functions.worldpay("get-checkout-config")


def test_functions_client_rejects_unsuccessful_payloads(monkeypatch):
    monkeypatch.setattr(
        app_module.requests,
        "post",
        lambda *args, **kwargs: FakeResponse({"error": "Service unavailable"}, 503),
    )
    functions = FunctionsClient("https://functions.example", "key")

    with pytest.raises(FunctionsError, match="Service unavailable"):
        functions.invoke("admin-notify", {})


def test_signup_login_and_logout(client):
    response = client.post(
        "/auth/signup",
        json={"email": "New@Example.com", "full_name": "New Customer", "password": "short"},
    )
    assert response.status_code == 400

    response = client.post(
        "/auth/signup",
        json={"email": "New@Example.com", "full_name": "New Customer", "password": "LongEnough1"},
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["roles"] == ["user"]
    assert payload["user"]["email"] == "new@example.com"
    assert re.match(r"^OCC\d{8}$", payload["user"]["account_number"])

    me = client.get("/api/me")
    assert me.status_code == 200
    assert me.get_json()["is_admin"] is False

    client.post("/auth/logout")
    assert client.get("/api/me").status_code == 401

    response = login(client, "new@example.com", "wrong-password")
    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid email or password."

    assert login(client, "new@example.com", "LongEnough1").status_code == 200


def test_catalogue_and_bundle_quote(client):
    response = client.get("/api/plans", query_string={"service_type": "sim"})
    assert response.status_code == 200
    assert {plan["service_type"] for plan in response.get_json()["plans"]} == {"sim"}

    assert client.get("/api/plans", query_string={"service_type": "tv"}).status_code == 400
    assert client.get("/api/plans/does-not-exist").status_code == 404

    response = client.post(
        "/api/bundle/quote", json={"plan_ids": ["broadband-superfast", "sim-starter"]}
    )
    assert response.status_code == 200
    quote = response.get_json()
    assert quote["discount_percentage"] == 10
    assert quote["savings"] == pytest.approx((26.99 + 7.99) * 0.1)

    response = client.post(
        "/api/bundle/quote", json={"plan_ids": ["broadband-superfast", "broadband-gigabit"]}
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Choose at most one plan per service type"


def test_guest_order_requires_consent_and_can_be_looked_up(client, outbox):
    order = {
        "full_name": "Guest Buyer",
        "email": "Guest@Example.com",
        "phone": "01484 000000",
        "address_line1": "2 Mill Lane",
        "city": "Huddersfield",
        "postcode": "hd1 2aa",
        "plan_ids": ["broadband-essential", "landline-payg"],
    }

    response = client.post("/api/guest-orders", json=order)
    assert response.status_code == 400
    assert "privacy policy" in response.get_json()["error"]

    response = client.post("/api/guest-orders", json={**order, "gdpr_consent": True})
    assert response.status_code == 201
    orders = response.get_json()["orders"]
    assert len(orders) == 2
    assert all(re.match(r"^ORD-[0-9A-F]{8}$", item["order_number"]) for item in orders)
    assert orders[0]["postcode"] == "HD1 2AA"

    assert len(subjects_for(outbox, "guest@example.com")) == 2
    assert "[OCCTA admin] New guest order" in subjects_for(outbox, ADMIN_INBOX)

    response = client.post(
        "/api/guest-orders/lookup",
        json={"order_number": orders[0]["order_number"].lower(), "email": "GUEST@example.com"},
    )
    assert response.status_code == 200
    assert response.get_json()["order"]["plan_name"] == "ESSENTIAL"

    response = client.post(
        "/api/guest-orders/lookup",
        json={"order_number": orders[0]["order_number"], "email": "someone@example.com"},
    )
    assert response.status_code == 404


def test_admin_create_customer_function_returns_account_number(app, client):
    create_admin_record(app)

    response = client.post(
        "/functions/admin-create-customer",
        json={"email": "fresh@example.com", "full_name": "Fresh Customer"},
    )
    assert response.status_code == 401

    login_admin(client)
    response = client.post(
        "/functions/admin-create-customer",
        json={"email": "fresh@example.com", "full_name": "Fresh Customer"},
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["success"] is True
    assert re.match(r"^OCC\d{8}$", payload["account_number"])
    assert payload["profile"]["email"] == "fresh@example.com"
    assert payload["profile"]["full_name"] == "Fresh Customer"
    assert payload["profile"]["account_number"] == payload["account_number"]

    response = client.post(
        "/functions/admin-create-customer", json={"full_name": "Missing Email"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Email and full name are required"

    with app.app_context():
        entry = AuditLog.query.filter_by(entity="customer", action="create").one()
        assert entry.entity_id == str(payload["user_id"])
        assert entry.event_metadata["account_number"] == payload["account_number"]
        assert UserRole.query.filter_by(user_id=payload["user_id"], role="user").count() == 1


def test_admin_routes_reject_customers(app, client):
    create_customer_record(app)
    login(client)

    assert client.get("/api/admin/overview").status_code == 403
    response = client.post(
        "/functions/admin-create-customer",
        json={"email": "fresh@example.com", "full_name": "Fresh Customer"},
    )
    assert response.status_code == 403


def test_admin_search_classifies_and_matches(app, client):
    create_admin_record(app)
    jane_id = create_customer_record(app, phone="0161 496 0000", postcode="hd3 3wu")
    sam_id = create_customer_record(
        app, email="sam@example.org", full_name="Sam Patel", phone="07700 900123"
    )
    with app.app_context():
        jane_account = db.session.get(Profile, jane_id).account_number

    login_admin(client)

    def search(query):
        response = client.get("/api/admin/search", query_string={"q": query})
        assert response.status_code == 200
        payload = response.get_json()
        return payload["mode"], [row["id"] for row in payload["results"]]

    assert search(jane_account.lower()) == ("account_number", [jane_id])
    assert search("0161 496 0000") == ("phone", [jane_id])
    assert search("900123") == ("phone", [sam_id])
    assert search("@example.org") == ("email", [sam_id])
    assert search("hd33wu") == ("postcode_or_name", [jane_id])
    assert search("Jane Smith") == ("postcode_or_name", [jane_id])
    assert search("j") == (None, [])

    with app.app_context():
        db.session.add(
            Order(
                user_id=jane_id,
                service_type="broadband",
                plan_name="SUPERFAST",
                plan_price=26.99,
                postcode="LS1 4AP",
            )
        )
        db.session.commit()

    assert search("ls1 4ap") == ("postcode_or_name", [jane_id])
    assert search("hd3 3wu") == ("postcode_or_name", [])


def test_admin_search_caps_results_at_ten(app, client):
    create_admin_record(app)
    for index in range(12):
        create_customer_record(app, email=f"jane{index}@example.com", full_name=f"Jane {index}")
    login_admin(client)

    response = client.get("/api/admin/search", query_string={"q": "Jane", "limit": 500})
    assert response.status_code == 200
    results = response.get_json()["results"]
    assert len(results) == 10
    assert results[0]["full_name"] == "Jane 11"

    response = client.get("/api/admin/search", query_string={"q": "Jane", "limit": 3})
    assert len(response.get_json()["results"]) == 3


def test_phone_search_ignores_any_separator(app, client):
    create_admin_record(app)
    slashed_id = create_customer_record(app, phone="0161/496 0000")
    other_id = create_customer_record(app, email="sam@example.org", full_name="Sam Patel")
    login_admin(client)

    def phone_matches(query):
        response = client.get("/api/admin/search", query_string={"q": query})
        return [row["id"] for row in response.get_json()["results"]]

    assert phone_matches("01614960000") == [slashed_id]
    assert phone_matches("0113 496 0999") == []

    response = client.patch(
        f"/api/admin/customers/{other_id}", json={"phone": "[0113] 496#0999"}
    )
    assert response.status_code == 200
    assert phone_matches("0113 496 0999") == [other_id]

    with app.app_context():
        assert db.session.get(Profile, other_id).phone_digits == "01134960999"


def test_advanced_search_combines_filters(app, client):
    create_admin_record(app)
    jane_id = create_customer_record(app, postcode="HD3 3WU", date_of_birth="1990-04-01")
    create_customer_record(
        app, email="janet@example.com", full_name="Janet Brown", postcode="M1 1AE"
    )
    login_admin(client)

    response = client.get(
        "/api/admin/search/advanced", query_string={"name": "jane", "postcode": "hd3"}
    )
    assert [row["id"] for row in response.get_json()["results"]] == [jane_id]

    response = client.get(
        "/api/admin/search/advanced",
        query_string={"name": "janet", "dob": "1990-04-01", "match": "any"},
    )
    assert len(response.get_json()["results"]) == 2

    assert client.get("/api/admin/search/advanced").status_code == 400
    response = client.get("/api/admin/search/advanced", query_string={"dob": "01/04/1990"})
    assert response.status_code == 400


def test_last_admin_role_cannot_be_revoked(app, client):
    admin_id = create_admin_record(app)
    customer_id = create_customer_record(app)
    login_admin(client)

    response = client.post(
        "/api/admin/roles", json={"user_id": admin_id, "role": "admin", "action": "revoke"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "At least one administrator must remain."

    response = client.post("/api/admin/roles", json={"user_id": customer_id, "role": "moderator"})
    assert response.status_code == 200
    assert response.get_json()["roles"] == ["moderator", "user"]


def test_order_status_updates_notify_customer(app, client, outbox):
    create_admin_record(app)
    create_customer_record(app, postcode="HD3 3WU")
    login(client)

    response = client.post(
        "/api/dashboard/orders", json={"plan_ids": ["broadband-superfast", "sim-starter"]}
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["pricing"]["discount_percentage"] == 10
    order_ids = [order["id"] for order in payload["orders"]]
    assert all(order["postcode"] == "HD3 3WU" for order in payload["orders"])
    assert len(subjects_for(outbox, CUSTOMER_EMAIL)) == 2

    client.post("/auth/logout")
    login_admin(client)

    response = client.patch(
        f"/api/admin/orders/orders/{order_ids[0]}", json={"status": "confirmed"}
    )
    assert response.status_code == 200
    assert response.get_json()["status_changed"] is True
    recipient, subject, body = outbox[-1]
    assert recipient == CUSTOMER_EMAIL
    assert "Your order has been confirmed!" in body

    response = client.post(
        "/api/admin/orders/orders/bulk-status", json={"ids": order_ids, "status": "active"}
    )
    assert response.get_json()["updated"] == 2

    response = client.patch(f"/api/admin/orders/orders/{order_ids[0]}", json={"status": "lost"})
    assert response.status_code == 400
    assert client.get("/api/admin/orders", query_string={"kind": "parcels"}).status_code == 404

    with app.app_context():
        assert {order.status for order in Order.query.all()} == {"active"}
        assert AuditLog.query.filter_by(entity="order", action="update").count() == 3


def test_ticket_conversation_is_published_and_closed_tickets_reject_replies(app, client, outbox):
    create_admin_record(app)
    create_customer_record(app)
    login(client)

    response = client.post("/api/dashboard/tickets", json={"subject": "No sync light"})
    assert response.status_code == 400
    assert (
        response.get_json()["error"]
        == "Please provide both a subject and description for your ticket."
    )

    response = client.post(
        "/api/dashboard/tickets",
        json={"subject": "No sync light", "description": "Router shows red", "priority": "high"},
    )
    assert response.status_code == 201
    ticket_id = response.get_json()["ticket"]["id"]
    assert "[OCCTA admin] New support ticket" in subjects_for(outbox, ADMIN_INBOX)

    subscription = app.extensions["ticket_messages"].subscribe(ticket_id)

    client.post("/auth/logout")
    login_admin(client)
    response = client.post(
        f"/api/admin/tickets/{ticket_id}/reply",
        json={"message": "An engineer is on the way.", "status": "in_progress"},
    )
    assert response.status_code == 201

    published = subscription.get(timeout=1)
    assert published["message"] == "An engineer is on the way."
    assert published["is_staff_reply"] is True
    assert "Re: No sync light" in subjects_for(outbox, CUSTOMER_EMAIL)

    response = client.patch(f"/api/admin/tickets/{ticket_id}", json={"status": "closed"})
    assert response.status_code == 200
    assert "Update on No sync light" in subjects_for(outbox, CUSTOMER_EMAIL)

    client.post("/auth/logout")
    login(client)
    response = client.post(
        f"/api/dashboard/tickets/{ticket_id}/messages", json={"message": "Still broken"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "This ticket is closed. Please open a new ticket."
    assert subscription.drain() == []

    subscription.unsubscribe()
    assert app.extensions["ticket_messages"].subscriber_count(ticket_id) == 0

    with app.app_context():
        actions = [
            entry.action
            for entry in AuditLog.query.filter_by(entity="support_ticket").order_by(AuditLog.id)
        ]
        assert actions == ["reply", "close"]


def test_ticket_stream_sends_ready_event_and_unsubscribes(app, client):
    create_customer_record(app)
    create_customer_record(app, email="other@example.com", full_name="Other Person")
    login(client)
    ticket_id = client.post(
        "/api/dashboard/tickets", json={"subject": "Slow speeds", "description": "Evenings only"}
    ).get_json()["ticket"]["id"]

    response = client.get(f"/api/tickets/{ticket_id}/stream", query_string={"once": "1"})
    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    body = response.get_data(as_text=True)
    assert body.startswith("event: ready")
    assert ": keep-alive" in body
    assert app.extensions["ticket_messages"].subscriber_count(ticket_id) == 0

    client.post("/auth/logout")
    login(client, "other@example.com")
    assert client.get(f"/api/tickets/{ticket_id}/stream").status_code == 403


def test_unread_ticket_stream_holds_no_subscription(app, client):
    create_customer_record(app)
    login(client)
    ticket_id = client.post(
        "/api/dashboard/tickets", json={"subject": "Dropouts", "description": "Every hour"}
    ).get_json()["ticket"]["id"]
    broker = app.extensions["ticket_messages"]

    for _ in range(3):
        response = client.head(f"/api/tickets/{ticket_id}/stream")
        assert response.status_code == 200
        response.close()

    assert broker.subscriber_count(ticket_id) == 0
    assert broker.publish(ticket_id, {"id": 1}) == 0


def test_dashboard_dd_mandate_workflow(app, client, outbox):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    login(client)

    response = client.post("/api/dashboard/dd-mandates", json={**DD_FORM, "sort_code": "1234"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Sort code must be 6 digits"

    response = client.post("/api/dashboard/dd-mandates", json=DD_FORM)
    assert response.status_code == 201
    mandate = response.get_json()["mandate"]
    assert mandate["status"] == "pending"
    assert mandate["sort_code_masked"] == "**-**-56"
    assert mandate["account_number_masked"] == "****5678"
    assert mandate["mandate_reference"].startswith("DD-OCC")
    assert "Direct Debit update: received and awaiting verification" in subjects_for(
        outbox, CUSTOMER_EMAIL
    )

    client.post("/auth/logout")
    login_admin(client)
    workflow_url = f"/api/admin/dd-mandates/{mandate['id']}/workflow"

    response = client.post(workflow_url, json={"action": "submit_to_provider"})
    assert response.status_code == 400

    response = client.post(workflow_url, json={"action": "verify"})
    assert response.status_code == 200
    result = response.get_json()
    assert result["previous_status"] == "pending"
    assert result["email_sent"] is True

    response = client.post(
        workflow_url,
        json={
            "action": "submit_to_provider",
            "provider": "gocardless",
            "provider_reference": "MD000123",
        },
    )
    assert response.get_json()["mandate"]["provider"] == "gocardless"

    response = client.post(workflow_url, json={"action": "mark_active"})
    assert response.get_json()["mandate"]["status"] == "active"

    response = client.post(workflow_url, json={"action": "explode"})
    assert response.status_code == 400

    response = client.post(
        "/functions/payment-request",
        json={"action": "verify-dd-mandate", "mandate_id": 999, "status": "verified"},
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "Mandate not found"

    with app.app_context():
        stored = db.session.get(DDMandate, mandate["id"])
        assert stored.bank_last4 == "5678"
        assert stored.sort_code == "12-34-56"
        assert stored.consent_ip == "127.0.0.1"
        actions = [
            entry.action
            for entry in AuditLog.query.filter_by(entity="dd_mandate").order_by(AuditLog.id)
        ]
        assert actions == ["create", "update", "update", "activate"]

    response = client.get(f"/api/admin/customers/{customer_id}/communications")
    timeline = {entry["template_name"]: entry for entry in response.get_json()["communications"]}
    verified = timeline["dd_status_verified"]
    assert verified["kind"] == "dd_status"
    assert verified["status"] == "sent"
    assert verified["details"] == [
        f"Mandate: {mandate['mandate_reference']}",
        "pending → verified",
    ]
    assert timeline["dd_status_active"]["label"] == "DD Active"


def test_dd_setup_link_flow(app, client, outbox):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    login_admin(client)

    response = client.post(
        f"/api/admin/customers/{customer_id}/payment-requests", json={"type": "dd_setup"}
    )
    assert response.status_code == 201

    body = next(
        body for _, subject, body in outbox if subject == "Set up your Direct Debit with OCCTA"
    )
    token = re.search(r"https://occta\.test/pay/([\w-]+)", body).group(1)
    client.post("/auth/logout")

    response = client.post("/api/payment-requests/validate", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Missing token"

    response = client.post("/api/payment-requests/validate", json={"token": "not-a-token"})
    assert response.status_code == 404
    assert response.get_json()["error"] == "Invalid request"

    response = client.post("/api/payment-requests/validate", json={"token": token})
    assert response.status_code == 200
    assert response.get_json()["request"]["status"] == "opened"
    assert response.get_json()["request"]["type"] == "dd_setup"

    response = client.post(
        "/api/payment-requests/dd-mandate", json={"token": token, "mandate": DD_FORM}
    )
    assert response.status_code == 201
    reference = response.get_json()["mandate_reference"]

    with app.app_context():
        mandate = DDMandate.query.filter_by(mandate_reference=reference).one()
        mandate_id = mandate.id
        assert mandate.user_id == customer_id

    login_admin(client)
    response = client.post(
        "/functions/payment-request",
        json={"action": "verify-dd-mandate", "mandate_id": mandate_id, "status": "verified"},
    )
    assert response.status_code == 200

    with app.app_context():
        payment_request = PaymentRequest.query.one()
        assert payment_request.status == "completed"
        assert payment_request.provider_reference == reference
        assert [event.event_type for event in payment_request.events] == [
            "created",
            "opened",
            "dd_submitted",
            "completed",
        ]

    response = client.post("/api/payment-requests/validate", json={"token": token})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Request not active"


def test_payment_request_function_rejects_unknown_actions(client):
    response = client.post("/functions/payment-request", json={"action": "teleport"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Unknown action: teleport"

    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": 1, "amount": 10},
    )
    assert response.status_code == 401


def test_billing_settings_and_recalculation(app, client):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    login_admin(client)
    url = f"/api/admin/customers/{customer_id}/billing-settings"

    response = client.get(url)
    assert response.get_json()["billing_mode"] == "anniversary"

    response = client.put(url, json={"billing_mode": "fixed_day", "billing_day": 31})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Billing day must be between 1 and 28"

    response = client.put(url, json={"billing_mode": "fixed_day", "billing_day": 15})
    assert response.status_code == 200
    assert response.get_json()["billing_settings"]["billing_day"] == 15

    response = client.post(f"{url}/recalculate")
    assert response.status_code == 200
    expected = calculate_next_invoice_date("fixed_day", 15, date.today())
    assert response.get_json()["next_invoice_date"] == expected.isoformat()

    with app.app_context():
        entries = AuditLog.query.filter_by(entity="billing_settings").order_by(AuditLog.id).all()
        assert len(entries) == 2
        assert entries[-1].event_metadata["recalculated_next_invoice_date"] == expected.isoformat()
        settings = BillingSettings.query.filter_by(user_id=customer_id).one()
        assert settings.next_invoice_date == expected


def test_phone_payment_marks_invoice_paid(app, client, outbox):
    admin_id = create_admin_record(app)
    create_customer_record(app)
    login_admin(client)

    with app.app_context():
        customer_id = Profile.query.filter_by(email=CUSTOMER_EMAIL).one().id

    response = client.post(
        "/api/admin/invoices",
        json={
            "customer_id": customer_id,
            "lines": [{"description": "Broadband - Superfast", "qty": 1, "unit_price": 20}],
            "send": True,
        },
    )
    assert response.status_code == 201
    invoice = response.get_json()["invoice"]
    assert invoice["status"] == "sent"
    assert invoice["total"] == pytest.approx(24.0)
    assert f"Invoice {invoice['invoice_number']} from OCCTA" in subjects_for(
        outbox, CUSTOMER_EMAIL
    )

    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": invoice["id"]},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Missing required data"

    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": 9999, "amount": 24},
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "Invoice not found"

    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": invoice["id"], "amount": 24},
    )
    assert response.status_code == 200
    assert response.get_json()["reference"].startswith("TEL-")
    assert f"Payment received for {invoice['invoice_number']}" in subjects_for(
        outbox, CUSTOMER_EMAIL
    )

    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": invoice["id"], "amount": 24},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invoice already paid"

    with app.app_context():
        assert db.session.get(Invoice, invoice["id"]).status == "paid"
        receipt = Receipt.query.filter_by(invoice_id=invoice["id"]).one()
        assert receipt.method == "phone"
        entry = AuditLog.query.filter_by(action="payment_received").one()
        assert entry.actor_user_id == admin_id
        assert entry.event_metadata["receipt_id"] == receipt.id

    client.post("/auth/logout")
    login(client)
    response = client.post(
        "/functions/payment-request",
        json={"action": "record-phone-payment", "invoice_id": invoice["id"], "amount": 24},
    )
    assert response.status_code == 403


def test_invoice_document_escapes_content(app, client):
    customer_id = create_customer_record(app, address_line1="1 <b>Test</b> Street")
    create_customer_record(app, email="other@example.com", full_name="Other Person")
    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        invoice = create_invoice(
            profile,
            {"lines": [{"description": "<script>alert(1)</script>", "unit_price": 10}]},
        )
        invoice.status = "sent"
        invoice.due_date = None
        db.session.commit()
        invoice_id = invoice.id

    login(client)
    response = client.get(f"/api/dashboard/invoices/{invoice_id}/document")
    assert response.status_code == 200
    assert response.mimetype == "text/html"
    html = response.get_data(as_text=True)
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "<script>alert" not in html
    assert "1 &lt;b&gt;Test&lt;/b&gt; Street" in html
    assert "On Receipt" in html
    assert "£12.00" in html
    assert "window.print()" in html

    client.post("/auth/logout")
    login(client, "other@example.com")
    assert client.get(f"/api/dashboard/invoices/{invoice_id}/document").status_code == 404


def test_draft_invoices_are_hidden_from_customers(app, client):
    customer_id = create_customer_record(app)
    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        invoice_id = create_invoice(
            profile, {"lines": [{"description": "Draft line", "unit_price": 5}]}
        ).id

    login(client)
    assert client.get("/api/dashboard/invoices").get_json()["invoices"] == []
    assert client.get(f"/api/dashboard/invoices/{invoice_id}/document").status_code == 404


def test_worldpay_card_payment_success(app, client, monkeypatch):
    customer_id = create_customer_record(app)
    invoice_id = create_sent_invoice(app, customer_id)
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers))
        return FakeResponse({"success": True, "paymentRef": "WP-123"})

    monkeypatch.setattr(app_module.requests, "post", fake_post)
    login(client)

    response = client.post(
        "/api/payments/process",
        json={"invoice_id": invoice_id, "card_session_href": "https://try.access.worldpay.com/s/1"},
    )
    assert response.status_code == 200
    assert response.get_json()["paymentRef"] == "WP-123"

    url, body, headers = calls[0]
    assert url == "https://functions.occta.test/functions/v1/worldpay-payment"
    assert body["action"] == "process-payment"
    assert body["invoiceId"] == invoice_id
    assert body["amount"] == pytest.approx(24.0)
    assert headers["authorization"] == "Bearer service-role-key"

    with app.app_context():
        assert db.session.get(Invoice, invoice_id).status == "paid"
        receipt = Receipt.query.filter_by(invoice_id=invoice_id).one()
        assert receipt.method == "worldpay_card"
        assert receipt.reference == "WP-123"
        attempt = PaymentAttempt.query.filter_by(invoice_id=invoice_id).one()
        assert attempt.status == "success"

    response = client.post(
        "/api/payments/process",
        json={"invoice_id": invoice_id, "card_session_href": "https://try.access.worldpay.com/s/2"},
    )
    assert response.status_code == 400
    assert len(calls) == 1


def test_worldpay_card_payment_failure_is_recorded(app, client, monkeypatch):
    customer_id = create_customer_record(app)
    invoice_id = create_sent_invoice(app, customer_id)
    monkeypatch.setattr(
        app_module.requests,
        "post",
        lambda *args, **kwargs: FakeResponse({"success": False, "error": "Card declined"}),
    )
    login(client)

    response = client.post("/api/payments/process", json={"invoice_id": invoice_id})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Missing card session"

    response = client.post(
        "/api/payments/process",
        json={"invoice_id": invoice_id, "card_session_href": "https://try.access.worldpay.com/s/1"},
    )
    assert response.status_code == 502
    assert response.get_json()["error"] == "Card declined"

    with app.app_context():
        assert db.session.get(Invoice, invoice_id).status == "sent"
        attempt = PaymentAttempt.query.filter_by(invoice_id=invoice_id).one()
        assert attempt.status == "failed"
        assert attempt.provider == "worldpay"
        assert attempt.reason == "Card declined"
        assert Receipt.query.count() == 0


def test_checkout_config_passes_through_remote_settings(app, client, monkeypatch):
    create_customer_record(app)
    monkeypatch.setattr(
        app_module.requests,
        "post",
        lambda *args, **kwargs: FakeResponse(
            {"success": True, "checkoutId": "chk-1", "entityId": "ent-1", "isTryMode": True}
        ),
    )
    login(client)

    response = client.get("/api/payments/checkout-config")
    assert response.status_code == 200
    assert response.get_json() == {"checkout_id": "chk-1", "entity_id": "ent-1", "try_mode": True}


def test_scheduled_jobs_require_cron_secret(client):
    assert client.post("/functions/process-late-fees").status_code == 401
    response = client.post("/functions/generate-invoices", headers={"X-Cron-Secret": "guess"})
    assert response.status_code == 401

    response = client.post("/functions/process-late-fees", headers={"X-Cron-Secret": CRON_SECRET})
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["statusUpdates"] == 0
    assert payload["message"].startswith("Processed: 0 status updates")

    response = client.post(
        "/functions/installation-reminders", headers={"X-Cron-Secret": CRON_SECRET}
    )
    assert response.get_json()["processed"] == 0


def test_scheduled_jobs_refused_without_configured_secret(app, client):
    app.config["CRON_JOB_SECRET"] = None

    for path in (
        "/functions/process-late-fees",
        "/functions/installation-reminders",
        "/functions/payment-reminders",
        "/functions/generate-invoices",
    ):
        response = client.post(path)
        assert response.status_code == 503
        assert response.get_json()["error"] == "Scheduled jobs are not configured"
        assert client.post(path, headers={"X-Cron-Secret": ""}).status_code == 503


def test_late_fee_run_leaves_draft_invoices_alone(app):
    customer_id = create_customer_record(app)
    today = date(2024, 6, 30)

    with app.app_context():
        draft = Invoice(
            user_id=customer_id,
            invoice_number="INV-300001",
            status="draft",
            due_date=today - timedelta(days=45),
            total=30.0,
        )
        db.session.add(draft)
        db.session.commit()

        results = process_late_fees(today)

        assert results["statusUpdates"] == 0
        assert results["lateFeesApplied"] == 0
        stored = db.session.get(Invoice, draft.id)
        assert stored.status == "draft"
        assert stored.total == pytest.approx(30.0)
        assert stored.late_fee_amount in (None, 0)


def test_payment_reminders_cover_invoices_due_within_window(app, outbox):
    customer_id = create_customer_record(app)
    today = date(2024, 6, 10)

    with app.app_context():
        specs = [
            ("INV-200001", "sent", 0),
            ("INV-200002", "overdue", 2),
            ("INV-200003", "sent", 3),
            ("INV-200004", "sent", 5),
            ("INV-200005", "sent", -1),
            ("INV-200006", "draft", 1),
            ("INV-200007", "paid", 1),
        ]
        invoices = {}
        for number, status, offset in specs:
            invoice = Invoice(
                user_id=customer_id,
                invoice_number=number,
                status=status,
                due_date=today + timedelta(days=offset),
                total=30.0,
            )
            db.session.add(invoice)
            invoices[number] = invoice
        db.session.commit()
        due_today_id = invoices["INV-200001"].id

        results = send_payment_reminders(today)

        assert results["total"] == 3
        assert results["sent"] == 3
        assert results["failed"] == 0
        assert results["errors"] == []
        assert results["message"] == "Processed 3 invoices: 3 sent, 0 failed"
        assert [(entry["invoiceNumber"], entry["daysUntilDue"]) for entry in results["results"]] == [
            ("INV-200001", 0),
            ("INV-200002", 2),
            ("INV-200003", 3),
        ]
        assert {entry["status"] for entry in results["results"]} == {"sent"}

        logged = CommunicationLog.query.filter_by(template_name="due_today").one()
        assert logged.invoice_id == due_today_id
        assert CommunicationLog.query.filter_by(template_name="due_soon").count() == 2

        narrow = send_payment_reminders(today, days_before=0)
        assert [entry["invoiceNumber"] for entry in narrow["results"]] == ["INV-200001"]

    subjects = subjects_for(outbox, CUSTOMER_EMAIL)
    assert "Invoice INV-200001 is due today" in subjects
    assert "Invoice INV-200002 is due in 2 days" in subjects
    assert "Invoice INV-200003 is due in 3 days" in subjects
    assert not any("INV-200004" in subject for subject in subjects)
    assert not any("INV-200006" in subject for subject in subjects)


def test_payment_reminders_endpoint(app, client, outbox):
    customer_id = create_customer_record(app)
    with app.app_context():
        db.session.add(
            Invoice(
                user_id=customer_id,
                invoice_number="INV-400001",
                status="sent",
                due_date=date.today() + timedelta(days=1),
                total=24.0,
            )
        )
        db.session.commit()
    headers = {"X-Cron-Secret": CRON_SECRET}

    assert client.post("/functions/payment-reminders").status_code == 401

    response = client.post("/functions/payment-reminders", headers=headers, json={"days_before": 45})
    assert response.status_code == 400

    response = client.post("/functions/payment-reminders", headers=headers)
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["sent"] == 1
    assert payload["results"][0]["daysUntilDue"] == 1
    assert outbox[-1][1] == "Invoice INV-400001 is due tomorrow"

    create_admin_record(app)
    login_admin(client)
    response = client.get(f"/api/admin/customers/{customer_id}/communications")
    entry = response.get_json()["communications"][0]
    assert entry["label"] == "Due Soon Reminder"
    assert entry["kind"] == "invoice"
    assert entry["details"] == ["Invoice: INV-400001", "Amount: £24.00"]


def test_process_late_fees_runs_all_passes(app, outbox):
    customer_id = create_customer_record(app)
    today = date(2024, 6, 30)

    with app.app_context():
        service = Service(
            user_id=customer_id, service_type="broadband", status="active", price_monthly=26.99
        )
        db.session.add(service)
        db.session.flush()
        notified = utcnow() - timedelta(days=10)
        invoices = {
            "recent": Invoice(
                user_id=customer_id,
                invoice_number="INV-100001",
                status="sent",
                due_date=today - timedelta(days=3),
                total=30.0,
            ),
            "grace_over": Invoice(
                user_id=customer_id,
                invoice_number="INV-100002",
                status="sent",
                due_date=today - timedelta(days=10),
                total=30.0,
            ),
            "warn": Invoice(
                user_id=customer_id,
                invoice_number="INV-100003",
                status="overdue",
                due_date=today - timedelta(days=25),
                total=35.0,
                late_fee_amount=5.0,
                late_fee_applied_at=notified,
            ),
            "suspend": Invoice(
                user_id=customer_id,
                invoice_number="INV-100004",
                status="overdue",
                due_date=today - timedelta(days=35),
                total=35.0,
                service_id=service.id,
                late_fee_amount=5.0,
                late_fee_applied_at=notified,
                overdue_notified_at=notified,
            ),
            "draft": Invoice(
                user_id=customer_id,
                invoice_number="INV-100005",
                status="draft",
                due_date=today - timedelta(days=40),
                total=30.0,
            ),
        }
        db.session.add_all(invoices.values())
        db.session.commit()
        ids = {key: invoice.id for key, invoice in invoices.items()}
        service_id = service.id

        results = process_late_fees(today)

        assert results["statusUpdates"] == 2
        assert results["lateFeesApplied"] == 1
        assert results["suspensionWarnings"] == 1
        assert results["servicesSuspended"] == 1
        assert results["errors"] == []

        recent = db.session.get(Invoice, ids["recent"])
        assert recent.status == "overdue"
        assert recent.late_fee_applied_at is None

        grace_over = db.session.get(Invoice, ids["grace_over"])
        assert grace_over.late_fee_amount == 5.0
        assert grace_over.total == pytest.approx(35.0)

        assert db.session.get(Invoice, ids["warn"]).overdue_notified_at is not None
        assert db.session.get(Invoice, ids["draft"]).status == "draft"

        suspended = db.session.get(Service, service_id)
        assert suspended.status == "suspended"
        assert suspended.suspension_reason == "Non-payment: Invoice INV-100004"

        assert AuditLog.query.filter_by(action="late_fee_applied").count() == 1
        assert AuditLog.query.filter_by(action="service_suspended").count() == 1

        again = process_late_fees(today)
        assert again["lateFeesApplied"] == 0
        assert again["suspensionWarnings"] == 0
        assert again["servicesSuspended"] == 0

    subjects = subjects_for(outbox, CUSTOMER_EMAIL)
    assert "Late fee added to invoice INV-100002" in subjects
    assert "Action needed: invoice INV-100003 is overdue" in subjects
    assert "Your broadband service has been suspended" in subjects


def test_installation_reminders_sent_once(app, outbox):
    customer_id = create_customer_record(
        app, phone="07700 900123", address_line1="1 Test Street", city="Huddersfield"
    )
    today = date(2024, 6, 30)

    with app.app_context():
        slot = InstallationSlot(slot_date=today + timedelta(days=1), slot_time="09:00-12:00")
        later_slot = InstallationSlot(slot_date=today + timedelta(days=2), slot_time="09:00-12:00")
        orders = [
            Order(
                user_id=customer_id,
                service_type="broadband",
                plan_name="SUPERFAST",
                plan_price=26.99,
                postcode="HD3 3WU",
                address_line1="1 Test Street",
                city="Huddersfield",
            ),
            Order(
                user_id=customer_id,
                service_type="landline",
                plan_name="Anytime",
                plan_price=17.99,
                postcode="HD3 3WU",
            ),
            Order(
                user_id=customer_id,
                service_type="sim",
                plan_name="Plus",
                plan_price=17.99,
                postcode="HD3 3WU",
            ),
        ]
        db.session.add_all([slot, later_slot, *orders])
        db.session.commit()

        bookings = [
            book_installation({"slot_id": slot.id, "order_id": orders[0].id}, admin=True),
            book_installation({"slot_id": slot.id, "order_id": orders[1].id}, admin=True),
            book_installation({"slot_id": later_slot.id, "order_id": orders[2].id}, admin=True),
        ]
        update_booking(bookings[1], {"status": "cancelled"})

        results = send_installation_reminders(today)
        assert results["date"] == "2024-07-01"
        assert results["processed"] == 1
        assert results["results"] == [
            {"bookingId": bookings[0].id, "email": CUSTOMER_EMAIL, "status": "sent"}
        ]
        assert db.session.get(InstallationBooking, bookings[0].id).reminder_sent is True
        assert db.session.get(InstallationSlot, slot.id).booked_count == 1

        assert send_installation_reminders(today)["processed"] == 0

    reminders = [
        body for _, subject, body in outbox if subject == "Your OCCTA installation is tomorrow"
    ]
    assert len(reminders) == 1
    assert "SUPERFAST" in reminders[0]
    assert "1 Test Street, Huddersfield, HD3 3WU" in reminders[0]


def test_generate_invoices_for_due_accounts(app, outbox):
    customer_id = create_customer_record(app)
    today = date(2024, 3, 10)

    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        create_service(
            profile,
            {
                "service_type": "broadband",
                "status": "active",
                "plan_name": "SUPERFAST",
                "price_monthly": 20,
            },
        )
        create_service(profile, {"service_type": "sim", "status": "pending", "price_monthly": 10})
        save_billing_settings(
            profile, {"billing_mode": "anniversary", "next_invoice_date": today.isoformat()}
        )

        results = generate_invoices(today)
        assert results["generated"] == 1
        assert results["skipped"] == 0

        invoice = Invoice.query.filter_by(user_id=customer_id).one()
        assert invoice.invoice_number == results["invoices"][0]
        assert invoice.status == "sent"
        assert invoice.total == pytest.approx(24.0)
        assert invoice.billing_period_start == today
        assert invoice.billing_period_end == date(2024, 4, 9)
        assert invoice.due_date == date(2024, 3, 17)
        assert len(invoice.lines) == 1

        settings = BillingSettings.query.filter_by(user_id=customer_id).one()
        assert settings.next_invoice_date == date(2024, 4, 10)
        assert AuditLog.query.filter_by(action="auto_generate").count() == 1
        assert PaymentRequest.query.filter_by(invoice_id=invoice.id).count() == 1

        assert generate_invoices(today) == {
            "generated": 0,
            "skipped": 0,
            "invoices": [],
            "errors": [],
        }

        settings.next_invoice_date = today
        db.session.commit()
        duplicate = generate_invoices(today)
        assert duplicate["generated"] == 0
        assert duplicate["skipped"] == 1
        assert Invoice.query.count() == 1
        assert settings.next_invoice_date == date(2024, 4, 10)

        logged = CommunicationLog.query.filter_by(template_name="invoice_sent").one()
        assert logged.invoice_id == invoice.id

    assert any(subject.startswith("Invoice INV-") for subject in subjects_for(outbox, CUSTOMER_EMAIL))


def test_installation_slot_capacity_is_enforced(app, client):
    create_admin_record(app)
    login_admin(client)
    slot_date = (date.today() + timedelta(days=3)).isoformat()

    response = client.post(
        "/api/admin/installation-slots",
        json={"slot_date": slot_date, "slot_time": "12:00-15:00", "capacity": 1},
    )
    assert response.status_code == 201
    slot_id = response.get_json()["slot"]["id"]

    response = client.post(
        "/api/admin/installation-slots",
        json={"slot_date": slot_date, "slot_time": "12:00-15:00"},
    )
    assert response.status_code == 409
    client.post("/auth/logout")

    guest = {
        "full_name": "Guest Buyer",
        "phone": "01484 000000",
        "address_line1": "2 Mill Lane",
        "city": "Huddersfield",
        "postcode": "HD1 2AA",
        "plan_ids": ["broadband-essential"],
        "gdpr_consent": True,
    }
    first = client.post("/api/guest-orders", json={**guest, "email": "first@example.com"})
    second = client.post("/api/guest-orders", json={**guest, "email": "second@example.com"})
    first_id = first.get_json()["orders"][0]["id"]
    second_id = second.get_json()["orders"][0]["id"]

    response = client.post(
        "/api/installation-bookings",
        json={
            "slot_id": slot_id,
            "order_id": first_id,
            "order_type": "guest_order",
            "customer_email": "second@example.com",
        },
    )
    assert response.status_code == 404

    response = client.post(
        "/api/installation-bookings",
        json={
            "slot_id": slot_id,
            "order_id": first_id,
            "order_type": "guest_order",
            "customer_email": "first@example.com",
        },
    )
    assert response.status_code == 201
    booking_id = response.get_json()["booking"]["id"]

    response = client.post(
        "/api/installation-bookings",
        json={
            "slot_id": slot_id,
            "order_id": second_id,
            "order_type": "guest_order",
            "customer_email": "second@example.com",
        },
    )
    assert response.status_code == 409
    assert response.get_json()["error"] == "That installation slot is fully booked"

    available = client.get("/api/installation-slots").get_json()["slots"]
    assert slot_id not in [slot["id"] for slot in available]

    login_admin(client)
    response = client.patch(
        f"/api/admin/installation-bookings/{booking_id}", json={"status": "cancelled"}
    )
    assert response.status_code == 200

    with app.app_context():
        assert db.session.get(InstallationSlot, slot_id).booked_count == 0


def test_account_deletion_preconditions(app, client):
    customer_id = create_customer_record(app)
    login(client)

    response = client.post(
        "/functions/delete-account",
        json={"confirmEmail": "wrong@example.com", "password": CUSTOMER_PASSWORD},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Email confirmation does not match your account email"

    response = client.post("/functions/delete-account", json={"confirmEmail": CUSTOMER_EMAIL})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Password is required to confirm account deletion"

    response = client.post(
        "/functions/delete-account",
        json={"confirmEmail": CUSTOMER_EMAIL, "password": "not-my-password"},
    )
    assert response.status_code == 401

    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        create_service(profile, {"service_type": "broadband", "status": "active"})

    response = client.post(
        "/functions/delete-account",
        json={"confirmEmail": CUSTOMER_EMAIL, "password": CUSTOMER_PASSWORD},
    )
    assert response.status_code == 400
    assert response.get_json()["activeServices"] == ["broadband"]

    with app.app_context():
        Service.query.filter_by(user_id=customer_id).update({"status": "cancelled"})
        db.session.commit()
    invoice_id = create_sent_invoice(app, customer_id)
    with app.app_context():
        invoice_number = db.session.get(Invoice, invoice_id).invoice_number

    response = client.post(
        "/api/dashboard/delete-account",
        json={"confirm_email": CUSTOMER_EMAIL, "password": CUSTOMER_PASSWORD},
    )
    assert response.status_code == 400
    assert response.get_json()["unpaidInvoices"] == [
        {"number": invoice_number, "amount": pytest.approx(24.0)}
    ]

    response = client.post(
        "/functions/delete-account",
        json={"confirmEmail": CUSTOMER_EMAIL, "password": CUSTOMER_PASSWORD},
    )
    assert response.status_code == 429

    with app.app_context():
        assert db.session.get(Profile, customer_id) is not None
        assert db.session.get(Invoice, invoice_id).status == "sent"


def test_account_deletion_removes_customer_data(app, client, outbox):
    customer_id = create_customer_record(app)
    login(client)
    client.post(
        "/api/dashboard/tickets", json={"subject": "Leaving", "description": "Moving abroad"}
    )
    with app.app_context():
        profile = db.session.get(Profile, customer_id)
        account_number = profile.account_number
        create_invoice(profile, {"lines": [{"description": "Draft", "unit_price": 5}]})

    response = client.post(
        "/functions/delete-account",
        json={
            "confirmEmail": CUSTOMER_EMAIL.upper(),
            "password": CUSTOMER_PASSWORD,
            "reason": "Moving abroad",
        },
    )
    assert response.status_code == 200
    assert response.get_json()["success"] is True
    assert client.get("/api/me").status_code == 401

    with app.app_context():
        assert db.session.get(Profile, customer_id) is None
        assert UserRole.query.filter_by(user_id=customer_id).count() == 0
        assert SupportTicket.query.count() == 0
        assert Invoice.query.count() == 0
        record = AccountDeletion.query.one()
        assert record.original_user_id == customer_id
        assert record.account_number == account_number
        assert record.reason == "Moving abroad"

    assert "Your OCCTA account has been deleted" in subjects_for(outbox, CUSTOMER_EMAIL)


def test_admin_overview_counts(app, client):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    invoice_id = create_sent_invoice(app, customer_id)
    with app.app_context():
        db.session.get(Invoice, invoice_id).due_date = date.today() - timedelta(days=2)
        db.session.commit()
    login_admin(client)

    response = client.get("/api/admin/overview")
    assert response.status_code == 200
    overview = response.get_json()
    assert overview["counts"]["customers"] == 2
    assert overview["counts"]["overdue_invoices"] == 1
    assert overview["overdue_invoices"][0]["customer_name"] == "Jane Smith"
    assert overview["due_soon_invoices"] == []
    assert any(entry["action"] == "send" for entry in overview["recent_activity"])


def test_send_email_function_logs_to_timeline(app, client, outbox):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    login_admin(client)

    response = client.post(
        "/functions/send-email",
        json={"type": "carrier_pigeon", "to": CUSTOMER_EMAIL, "data": {}},
    )
    assert response.status_code == 400

    response = client.post(
        "/functions/send-email",
        json={
            "type": "dd_status_cancelled",
            "to": CUSTOMER_EMAIL,
            "data": {
                "full_name": "Jane Smith",
                "mandate_reference": "DD-X",
                "status_label": "cancelled",
            },
        },
    )
    assert response.status_code == 200
    assert outbox[-1][1] == "Direct Debit update: cancelled"

    response = client.post(
        "/functions/admin-send-email",
        json={"user_id": customer_id, "subject": "Planned works", "message": "Tuesday 2am"},
    )
    assert response.get_json()["success"] is True
    assert outbox[-1][1] == "Planned works"

    response = client.get(f"/api/admin/customers/{customer_id}/communications")
    entries = response.get_json()["communications"]
    assert [entry["template_name"] for entry in entries] == [
        "admin_message",
        "dd_status_cancelled",
    ]
    assert entries[0]["kind"] == "generic"
    assert entries[0]["details"] == ["subject: Planned works"]
    assert entries[1]["details"] == ["Mandate: DD-X"]


def test_admin_notify_function_reaches_configured_inbox(app, client, outbox):
    create_customer_record(app)
    login(client)

    response = client.post("/functions/admin-notify", json={"title": "Callback"})
    assert response.status_code == 400

    response = client.post(
        "/functions/admin-notify", json={"title": "Callback", "message": "Please ring me"}
    )
    assert response.get_json() == {"success": True, "delivered": 1}
    recipient, subject, body = outbox[-1]
    assert recipient == ADMIN_INBOX
    assert subject == "[OCCTA admin] Callback"
    assert body.startswith("Please ring me")


def test_link_order_attaches_guest_order_to_account(app, client):
    guest = {
        "full_name": "Jane Smith",
        "email": "jane.home@example.com",
        "phone": "01484 000000",
        "address_line1": "2 Mill Lane",
        "city": "Huddersfield",
        "postcode": "HD1 2AA",
        "plan_ids": ["broadband-essential"],
        "gdpr_consent": True,
    }
    order = client.post("/api/guest-orders", json=guest).get_json()["orders"][0]
    order_number = order["order_number"]

    link = {"orderNumber": order_number.lower(), "email": "Jane.Home@example.com"}
    assert client.post("/functions/link-order", json=link).status_code == 401

    customer_id = create_customer_record(app)
    login(client)

    response = client.post("/functions/link-order", json={**link, "orderNumber": "ORD"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid order number"

    response = client.post("/functions/link-order", json={**link, "email": "not-an-email"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid email"

    response = client.post("/functions/link-order", json={**link, "orderNumber": "ORD-00000000"})
    assert response.status_code == 404

    response = client.post("/functions/link-order", json={**link, "email": "someone@example.com"})
    assert response.status_code == 403
    assert response.get_json()["error"] == "Email does not match order"

    response = client.post("/functions/link-order", json=link)
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["message"] == "Order linked successfully"
    assert payload["order"]["linked_at"] is not None

    response = client.post("/functions/link-order", json=link)
    assert response.status_code == 400
    assert response.get_json()["error"] == "Order already linked to an account"

    guest_orders = client.get("/api/dashboard/orders").get_json()["guest_orders"]
    assert [entry["order_number"] for entry in guest_orders] == [order_number]

    with app.app_context():
        entry = AuditLog.query.filter_by(entity="guest_order", action="link").one()
        assert entry.actor_user_id == customer_id
        assert entry.entity_id == str(order["id"])


def test_receipt_document_escapes_reference(app, client):
    create_admin_record(app)
    customer_id = create_customer_record(app)
    invoice_id = create_sent_invoice(app, customer_id)
    login_admin(client)

    response = client.post(
        "/functions/payment-request",
        json={
            "action": "record-phone-payment",
            "invoice_id": invoice_id,
            "amount": 24,
            "reference": "CALL<1>",
        },
    )
    receipt_id = response.get_json()["receipt_id"]

    client.post("/auth/logout")
    login(client)
    response = client.get(f"/api/dashboard/receipts/{receipt_id}/document")
    assert response.status_code == 200
    assert response.mimetype == "text/html"
    html = response.get_data(as_text=True)
    assert "RECEIPT" in html
    assert "CALL&lt;1&gt;" in html
    assert "CALL<1>" not in html
    assert "£24.00" in html
    assert "Phone" in html
    assert "Account: OCC" in html
    assert "window.print()" in html
