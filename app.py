import calendar
import hashlib
import json
import os
import queue
import re
import secrets
import smtplib
import ssl
import string
import threading
import time
from collections import defaultdict
from datetime import UTC, date, datetime, timedelta
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from pathlib import Path

import requests
from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    render_template,
    request,
    session,
    stream_with_context,
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import and_, event, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

load_dotenv()

db = SQLAlchemy()

SESSION_USER_KEY = "user_id"

COMPANY_DEFAULTS = {
    "COMPANY_NAME": "OCCTA Limited",
    "COMPANY_NUMBER": "13828933",
    "COMPANY_ADDRESS": "22 Pavilion View, Huddersfield, HD3 3WU",
    "COMPANY_PHONE": "0800 260 6627",
    "COMPANY_SUPPORT_EMAIL": "support@occta.co.uk",
    "COMPANY_BILLING_EMAIL": "billing@occta.co.uk",
}

SERVICE_TYPES = ["broadband", "sim", "landline"]
ORDER_STATUS_OPTIONS = ["pending", "confirmed", "active", "cancelled"]
SERVICE_STATUS_OPTIONS = ["pending", "active", "suspended", "cancelled"]
INVOICE_STATUS_OPTIONS = ["draft", "sent", "paid", "overdue", "void"]
UNPAID_INVOICE_STATUSES = ("sent", "overdue")
TICKET_STATUS_OPTIONS = ["open", "in_progress", "resolved", "closed"]
TICKET_CLOSED_STATUSES = {"resolved", "closed"}
TICKET_PRIORITY_OPTIONS = ["low", "medium", "high", "urgent"]
ROLE_OPTIONS = ["admin", "moderator", "user"]
BOOKING_STATUS_OPTIONS = ["pending", "confirmed", "completed", "cancelled"]

DD_MANDATE_STATUSES = [
    "pending",
    "verified",
    "submitted_to_provider",
    "active",
    "failed",
    "cancelled",
]
DD_PROVIDERS = ["gocardless", "bacs", "stripe", "bottomline", "smart_debit", "other"]
DD_WORKFLOW_ACTIONS = {
    "verify": "verified",
    "submit_to_provider": "submitted_to_provider",
    "mark_active": "active",
    "mark_failed": "failed",
    "cancel": "cancelled",
}

BILLING_MODES = ["anniversary", "fixed_day"]
BILLING_SETTINGS_DEFAULTS = {
    "billing_mode": "anniversary",
    "billing_day": None,
    "vat_enabled_default": True,
    "vat_rate_default": 20.0,
    "payment_terms_days": 7,
    "next_invoice_date": None,
    "auto_pay_enabled": False,
    "preferred_payment_method": None,
}

LATE_FEE_AMOUNT = 5.00
GRACE_PERIOD_DAYS = 7
OVERDUE_DAYS = 1
SUSPENSION_WARNING_DAYS = 21
SUSPENSION_DAYS = 30
PAYMENT_REMINDER_DAYS = 3

PAYMENT_REQUEST_TYPES = ["card_payment", "dd_setup"]
PAYMENT_REQUEST_ACTIVE_STATUSES = ("sent", "opened")
PAYMENT_REQUEST_EXPIRY_DAYS = 14

SLOT_TIME_LABELS = {
    "09:00-12:00": "Morning (9am - 12pm)",
    "12:00-15:00": "Afternoon (12pm - 3pm)",
    "15:00-18:00": "Evening (3pm - 6pm)",
}

SEARCH_RESULT_LIMIT = 10
SEARCH_MIN_QUERY_LENGTH = 2
ACCOUNT_NUMBER_PATTERN = re.compile(r"^OCC\d{8}$")
ACCOUNT_SEARCH_PATTERN = re.compile(r"^OCC", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

COMMUNICATION_STATUSES = {"sent", "delivered", "opened", "pending", "failed"}
COMMUNICATION_TIMELINE_LIMIT = 50
RECENT_AUDIT_LOG_LIMIT = 20

TEMPLATE_LABELS = {
    "dd_status_pending": "DD Received",
    "dd_status_verified": "DD Verified",
    "dd_status_submitted_to_provider": "DD Submitted",
    "dd_status_active": "DD Active",
    "dd_status_failed": "DD Failed",
    "dd_status_cancelled": "DD Cancelled",
    "due_soon": "Due Soon Reminder",
    "due_today": "Due Today Reminder",
    "invoice_sent": "Invoice Sent",
    "invoice_paid": "Payment Received",
    "payment_link": "Payment Link",
    "dd_setup_link": "DD Setup Link",
    "order_confirmation": "Order Confirmation",
    "status_update": "Status Update",
    "ticket_reply": "Ticket Reply",
    "late_fee_applied": "Late Fee Applied",
    "suspension_warning": "Suspension Warning",
    "service_suspended": "Service Suspended",
    "installation_reminder": "Installation Reminder",
    "account_deleted": "Account Deleted",
    "admin_notification": "Admin Notification",
    "admin_message": "Admin Message",
}

ORDER_STATUS_MESSAGES = {
    "pending": "Your order is being processed",
    "confirmed": "Your order has been confirmed!",
    "active": "Your service is now active!",
    "cancelled": "Your order has been cancelled",
}

TICKET_STATUS_MESSAGES = {
    "open": "Your ticket has been received",
    "in_progress": "Support is working on your ticket",
    "resolved": "Your ticket has been resolved",
    "closed": "Your ticket has been closed",
}

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


PLAN_CATALOGUE: list[dict] = [
    {
        "id": "broadband-essential",
        "service_type": "broadband",
        "name": "ESSENTIAL",
        "speed": "36",
        "price_num": 22.99,
        "description": "Reliable fibre for browsing, email and HD streaming",
        "features": ["Up to 36Mbps download", "Unlimited usage", "Free router"],
        "popular": False,
    },
    {
        "id": "broadband-superfast",
        "service_type": "broadband",
        "name": "SUPERFAST",
        "speed": "150",
        "price_num": 26.99,
        "description": "Room for the whole household to stream at once",
        "features": ["Up to 150Mbps download", "Unlimited usage", "Premium router"],
        "popular": True,
    },
    {
        "id": "broadband-ultrafast",
        "service_type": "broadband",
        "name": "ULTRAFAST",
        "speed": "500",
        "price_num": 38.99,
        "description": "Built for home working, gaming and 4K streaming",
        "features": ["Up to 500Mbps download", "WiFi 6 router", "Free static IP"],
        "popular": False,
    },
    {
        "id": "broadband-gigabit",
        "service_type": "broadband",
        "name": "GIGABIT",
        "speed": "900",
        "price_num": 52.99,
        "description": "Full fibre at close to a gigabit",
        "features": ["Up to 900Mbps download", "Mesh WiFi system", "Dedicated support"],
        "popular": False,
    },
    {
        "id": "sim-starter",
        "service_type": "sim",
        "name": "Starter",
        "data": "5GB",
        "price_num": 7.99,
        "description": "Light use and second phones",
        "features": ["5GB data", "Unlimited UK calls and texts", "5G ready"],
        "popular": False,
    },
    {
        "id": "sim-essential",
        "service_type": "sim",
        "name": "Essential",
        "data": "15GB",
        "price_num": 11.99,
        "description": "Everyday data with rollover",
        "features": ["15GB data", "Unlimited UK calls and texts", "Data rollover"],
        "popular": False,
    },
    {
        "id": "sim-plus",
        "service_type": "sim",
        "name": "Plus",
        "data": "50GB",
        "price_num": 17.99,
        "description": "Plenty of data for social and streaming",
        "features": ["50GB data", "Unlimited UK calls and texts", "EU roaming"],
        "popular": True,
    },
    {
        "id": "sim-unlimited",
        "service_type": "sim",
        "name": "Unlimited",
        "data": "Unlimited",
        "price_num": 27.99,
        "description": "No data caps at all",
        "features": ["Unlimited data", "Unlimited UK calls and texts", "Hotspot included"],
        "popular": False,
    },
    {
        "id": "landline-payg",
        "service_type": "landline",
        "name": "Pay As You Go",
        "call_rate": "8p/min",
        "price_num": 7.99,
        "description": "Line rental for occasional callers",
        "features": ["Digital voice line", "Calls at 8p/min", "Caller display"],
        "popular": False,
    },
    {
        "id": "landline-evenings",
        "service_type": "landline",
        "name": "Evening & Weekend",
        "call_rate": "Free evenings",
        "price_num": 12.99,
        "description": "Free UK calls outside office hours",
        "features": ["Free evening and weekend calls", "Caller display", "Voicemail"],
        "popular": False,
    },
    {
        "id": "landline-anytime",
        "service_type": "landline",
        "name": "Anytime",
        "call_rate": "Always free",
        "price_num": 17.99,
        "description": "Unlimited UK calls at any time",
        "features": ["Unlimited UK calls", "Caller display", "Voicemail"],
        "popular": True,
    },
    {
        "id": "landline-international",
        "service_type": "landline",
        "name": "International",
        "call_rate": "Worldwide",
        "price_num": 26.99,
        "description": "Inclusive minutes to family abroad",
        "features": ["Unlimited UK calls", "International minutes", "Voicemail"],
        "popular": False,
    },
]

ADDON_CATALOGUE: list[dict] = [
    {"id": "addon-wifi-extender", "service_type": "broadband", "name": "WiFi Extender", "price": 3.99},
    {"id": "addon-mesh-node", "service_type": "broadband", "name": "Mesh WiFi Node", "price": 5.99},
    {"id": "addon-static-ip", "service_type": "broadband", "name": "Static IP Address", "price": 4.99},
    {"id": "addon-security-suite", "service_type": "broadband", "name": "Security Suite", "price": 2.99},
    {"id": "addon-parental-controls", "service_type": "broadband", "name": "Parental Controls", "price": 1.99},
    {"id": "addon-esim", "service_type": "sim", "name": "eSIM", "price": 0.0},
    {"id": "addon-physical-sim", "service_type": "sim", "name": "Physical SIM", "price": 0.0},
    {"id": "addon-international-calls", "service_type": "sim", "name": "International Calls Pack", "price": 5.99},
    {"id": "addon-roaming-pass", "service_type": "sim", "name": "Global Roaming Pass", "price": 7.99},
    {"id": "addon-data-boost", "service_type": "sim", "name": "Data Boost 10GB", "price": 4.99},
    {"id": "addon-insurance", "service_type": "sim", "name": "Device Insurance", "price": 8.99},
    {"id": "addon-intl-calls-100", "service_type": "landline", "name": "International 100", "price": 4.99},
    {"id": "addon-intl-calls-300", "service_type": "landline", "name": "International 300", "price": 8.99},
    {"id": "addon-call-barring", "service_type": "landline", "name": "Premium Call Barring", "price": 0.0},
    {"id": "addon-call-divert", "service_type": "landline", "name": "Call Divert", "price": 1.99},
    {"id": "addon-1571-plus", "service_type": "landline", "name": "1571 Plus Voicemail", "price": 1.49},
    {"id": "addon-caller-display", "service_type": "landline", "name": "Caller Display", "price": 0.0},
]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def _coerce_int(value: object | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError):
                return None
    return None


def _coerce_float(value: object | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().lstrip("£")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if number != number:  # NaN check
        return None
    return number


def parse_iso_date(value: object | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned[:10])
    except ValueError:
        return None


def _clean_text(value: object | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _base36(number: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(alphabet[remainder])
    return "".join(reversed(digits))


def timestamp_reference(prefix: str) -> str:
    return f"{prefix}-{_base36(int(time.time() * 1000)).upper()}"


def generate_portal_password() -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(16))


def generate_order_number() -> str:
    return f"ORD-{secrets.token_hex(4).upper()}"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def format_money(value: float | int | None) -> str:
    amount = float(value or 0)
    return f"£{amount:,.2f}"


def format_long_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d %B %Y")


def add_months(value: date, months: int) -> date:
    """Shift ``value`` by whole calendar months, clamping to the month end."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# ---------------------------------------------------------------------------
# Account numbers
# ---------------------------------------------------------------------------


def normalize_account_number(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().upper()


def is_account_number_valid(value: str | None) -> bool:
    if not value:
        return False
    return bool(ACCOUNT_NUMBER_PATTERN.match(normalize_account_number(value)))


def generate_account_number() -> str:
    return "OCC" + "".join(secrets.choice(string.digits) for _ in range(8))


# ---------------------------------------------------------------------------
# Catalogue and bundle pricing
# ---------------------------------------------------------------------------


def get_plan_by_id(plan_id: str | None) -> dict | None:
    for plan in PLAN_CATALOGUE:
        if plan["id"] == plan_id:
            return plan
    return None


def get_plans_by_service(service_type: str) -> list[dict]:
    return [plan for plan in PLAN_CATALOGUE if plan["service_type"] == service_type]


def get_addons_by_service(service_type: str) -> list[dict]:
    return [addon for addon in ADDON_CATALOGUE if addon["service_type"] == service_type]


def get_addon_by_id(addon_id: str | None) -> dict | None:
    for addon in ADDON_CATALOGUE:
        if addon["id"] == addon_id:
            return addon
    return None


def calculate_bundle_discount(plans: list[dict]) -> dict[str, float]:
    """Price a bundle of plans.

    Two distinct service types earn 10% off and all three earn 15%. Amounts
    stay in floating point pounds; rounding happens only when displayed.
    """

    original_total = sum(float(plan["price_num"]) for plan in plans)
    service_types = {plan["service_type"] for plan in plans}

    if len(service_types) >= 3:
        discount_percentage = 15
    elif len(service_types) == 2:
        discount_percentage = 10
    else:
        discount_percentage = 0

    savings = original_total * discount_percentage / 100
    return {
        "original_total": original_total,
        "discount_percentage": discount_percentage,
        "savings": savings,
        "discounted_total": original_total - savings,
    }


# ---------------------------------------------------------------------------
# Billing cycle
# ---------------------------------------------------------------------------


def calculate_next_invoice_date(
    billing_mode: str | None, billing_day: int | None, today: date | None = None
) -> date:
    today = today or date.today()
    if billing_mode == "fixed_day" and billing_day:
        day = min(max(int(billing_day), 1), 28)
        candidate = today.replace(day=day)
        if candidate <= today:
            candidate = add_months(candidate, 1)
        return candidate
    return add_months(today, 1)


def calculate_billing_period_end(period_start: date) -> date:
    return add_months(period_start, 1) - timedelta(days=1)


def advance_next_invoice_date(
    billing_mode: str | None, billing_day: int | None, current: date
) -> date:
    following = add_months(current, 1)
    if billing_mode == "fixed_day" and billing_day:
        return following.replace(day=min(max(int(billing_day), 1), 28))
    return following


# ---------------------------------------------------------------------------
# Customer search
# ---------------------------------------------------------------------------

SEARCH_MODE_ACCOUNT = "account_number"
SEARCH_MODE_EMAIL = "email"
SEARCH_MODE_PHONE = "phone"
SEARCH_MODE_POSTCODE = "postcode_or_name"
SEARCH_MODE_NAME = "name"


def normalize_postcode(value: str | None) -> str:
    return re.sub(r"\s+", "", value or "").upper()


def classify_search_query(query: str | None) -> tuple[str, str] | None:
    """Map a free-text customer query to ``(mode, term)``.

    The first matching rule wins: account number prefix, email, phone digits,
    postcode (with a name fallback) and finally plain name. ``None`` means the
    query is too short to search.
    """

    if not query or not query.strip() or len(query) < SEARCH_MIN_QUERY_LENGTH:
        return None

    term = query.strip()
    if ACCOUNT_SEARCH_PATTERN.match(term):
        return SEARCH_MODE_ACCOUNT, term.upper()
    if "@" in term:
        return SEARCH_MODE_EMAIL, term

    digits = re.sub(r"\D", "", term)
    if len(digits) >= 4:
        return SEARCH_MODE_PHONE, digits

    if len(normalize_postcode(term)) >= 3:
        return SEARCH_MODE_POSTCODE, term
    return SEARCH_MODE_NAME, term


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_customer_search_filter(view, mode: str, term: str):
    pattern = f"%{_escape_like(term)}%"
    if mode == SEARCH_MODE_ACCOUNT:
        return view.c.account_number.ilike(f"{_escape_like(term.upper())}%", escape="\\")
    if mode == SEARCH_MODE_EMAIL:
        return view.c.email.ilike(pattern, escape="\\")
    if mode == SEARCH_MODE_PHONE:
        return view.c.phone_digits.like(pattern, escape="\\")
    if mode == SEARCH_MODE_POSTCODE:
        postcode_pattern = f"%{_escape_like(normalize_postcode(term))}%"
        return or_(
            view.c.latest_postcode_normalized.ilike(postcode_pattern, escape="\\"),
            view.c.full_name.ilike(pattern, escape="\\"),
        )
    return view.c.full_name.ilike(pattern, escape="\\")


# ---------------------------------------------------------------------------
# Communications timeline metadata
# ---------------------------------------------------------------------------


def describe_template(template_name: str | None) -> str:
    if not template_name:
        return "Email"
    return TEMPLATE_LABELS.get(template_name, template_name.replace("_", " "))


def normalize_communication_status(status: str | None) -> str:
    if status in COMMUNICATION_STATUSES:
        return status
    return "pending"


class CommunicationDetails:
    """Fallback rendering for templates without a dedicated shape."""

    kind = "generic"

    def __init__(self, metadata: dict | None):
        self.metadata = metadata if isinstance(metadata, dict) else {}

    def details(self) -> list[str]:
        lines = []
        for key, value in self.metadata.items():
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                lines.append(f"{key.replace('_', ' ')}: {value}")
        return lines

    def to_dict(self) -> dict:
        return {"kind": self.kind, "details": self.details()}


class DirectDebitStatusDetails(CommunicationDetails):
    kind = "dd_status"

    def __init__(self, metadata: dict | None):
        super().__init__(metadata)
        self.mandate_reference = self.metadata.get("mandate_reference")
        self.old_status = self.metadata.get("old_status")
        self.new_status = self.metadata.get("new_status")

    def details(self) -> list[str]:
        lines = []
        if self.mandate_reference:
            lines.append(f"Mandate: {self.mandate_reference}")
        if self.old_status and self.new_status:
            lines.append(f"{self.old_status} → {self.new_status}")
        return lines


class InvoiceCommunicationDetails(CommunicationDetails):
    kind = "invoice"

    def __init__(self, metadata: dict | None):
        super().__init__(metadata)
        self.invoice_number = self.metadata.get("invoice_number")
        self.amount = _coerce_float(self.metadata.get("amount"))

    def details(self) -> list[str]:
        lines = []
        if self.invoice_number:
            lines.append(f"Invoice: {self.invoice_number}")
        if self.amount is not None:
            lines.append(f"Amount: {format_money(self.amount)}")
        return lines


class StatusUpdateDetails(CommunicationDetails):
    kind = "status_update"

    def __init__(self, metadata: dict | None):
        super().__init__(metadata)
        self.old_status = self.metadata.get("old_status")
        self.new_status = self.metadata.get("new_status")

    def details(self) -> list[str]:
        if self.old_status and self.new_status:
            return [f"{self.old_status} → {self.new_status}"]
        if self.new_status:
            return [f"Now {self.new_status}"]
        return []


INVOICE_TEMPLATES = {
    "due_soon",
    "due_today",
    "invoice_sent",
    "invoice_paid",
    "payment_link",
    "late_fee_applied",
    "suspension_warning",
    "service_suspended",
}


def parse_communication_details(
    template_name: str | None, metadata: dict | None
) -> CommunicationDetails:
    name = template_name or ""
    if name.startswith("dd_status_") or name == "dd_setup_link":
        return DirectDebitStatusDetails(metadata)
    if name in INVOICE_TEMPLATES:
        return InvoiceCommunicationDetails(metadata)
    if name == "status_update":
        return StatusUpdateDetails(metadata)
    return CommunicationDetails(metadata)


# ---------------------------------------------------------------------------
# Ticket message subscriptions
# ---------------------------------------------------------------------------


def ticket_channel_name(ticket_id: int) -> str:
    return f"ticket-messages-{ticket_id}"


class TicketMessageSubscription:
    """A cancellable feed of messages posted to one ticket channel.

    Every publish is delivered as-is; duplicates are not filtered.
    """

    def __init__(self, broker: "TicketMessageBroker", channel: str):
        self._broker = broker
        self.channel = channel
        self._queue: queue.Queue = queue.Queue()
        self.active = True

    def deliver(self, message: dict) -> None:
        if self.active:
            self._queue.put(message)

    def get(self, timeout: float | None = None) -> dict | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict]:
        messages = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                return messages

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._broker.remove(self)

    def __enter__(self) -> "TicketMessageSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class TicketMessageBroker:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[TicketMessageSubscription]] = defaultdict(list)

    def subscribe(self, ticket_id: int) -> TicketMessageSubscription:
        subscription = TicketMessageSubscription(self, ticket_channel_name(ticket_id))
        with self._lock:
            self._subscribers[subscription.channel].append(subscription)
        return subscription

    def remove(self, subscription: TicketMessageSubscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.channel, [])
            if subscription in listeners:
                listeners.remove(subscription)
            if not listeners:
                self._subscribers.pop(subscription.channel, None)

    def publish(self, ticket_id: int, message: dict) -> int:
        with self._lock:
            listeners = list(self._subscribers.get(ticket_channel_name(ticket_id), []))
        for subscription in listeners:
            subscription.deliver(message)
        return len(listeners)

    def subscriber_count(self, ticket_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(ticket_channel_name(ticket_id), []))


def get_ticket_broker(app: Flask | None = None) -> TicketMessageBroker:
    target_app = app or current_app
    return target_app.extensions["ticket_messages"]


# ---------------------------------------------------------------------------
# Remote functions
# ---------------------------------------------------------------------------


class FunctionsError(RuntimeError):
    """Raised when a remote function call fails or reports an error."""


class FunctionsClient:
    def __init__(self, base_url: str, api_key: str, *, timeout: float = 15.0):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout

        if not self.base_url or not self.api_key:
            raise FunctionsError("Functions base URL and API key are required.")

    def invoke(self, name: str, payload: dict) -> dict:
        endpoint = f"{self.base_url}/functions/v1/{name}"
        headers = {
            "accept": "application/json",
            "authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
        }
        try:
            response = requests.post(
                endpoint, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise FunctionsError(f"Could not reach {name}: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise FunctionsError(f"{name} returned an invalid JSON payload.") from exc

        if not isinstance(body, dict):
            raise FunctionsError(f"Unexpected {name} response structure.")

        if response.status_code >= 400 or body.get("success") is False:
            message = body.get("error") or f"{name} responded with HTTP {response.status_code}"
            raise FunctionsError(str(message))
        return body

    def worldpay(self, action: str, **data) -> dict:
        return self.invoke("worldpay-payment", {"action": action, **data})


def build_functions_client(app: Flask | None = None) -> FunctionsClient:
    target_app = app or current_app
    return FunctionsClient(
        target_app.config.get("FUNCTIONS_BASE_URL") or "",
        target_app.config.get("FUNCTIONS_API_KEY") or "",
        timeout=float(target_app.config.get("FUNCTIONS_TIMEOUT") or 15.0),
    )


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255))
    full_name = db.Column(db.String(255))
    phone = db.Column(db.String(40))
    phone_digits = db.Column(db.String(40), index=True)
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(120))
    postcode = db.Column(db.String(16))
    date_of_birth = db.Column(db.Date)
    account_number = db.Column(db.String(11), unique=True, index=True)
    admin_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    roles = db.relationship("UserRole", back_populates="user")
    orders = db.relationship("Order", back_populates="user", order_by="Order.created_at.desc()")
    services = db.relationship("Service", back_populates="user")
    invoices = db.relationship(
        "Invoice", back_populates="user", order_by="Invoice.issue_date.desc()"
    )
    tickets = db.relationship(
        "SupportTicket",
        back_populates="user",
        foreign_keys="SupportTicket.user_id",
        order_by="SupportTicket.created_at.desc()",
    )
    dd_mandates = db.relationship("DDMandate", back_populates="user")
    billing_settings = db.relationship("BillingSettings", back_populates="user", uselist=False)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def role_names(self) -> list[str]:
        return sorted(role.role for role in self.roles)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "postcode": self.postcode,
            "date_of_birth": _iso(self.date_of_birth),
            "account_number": self.account_number,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Profile {self.account_number or self.id}>"


def _sync_profile_phone_digits(mapper, connection, target):  # noqa: ARG001
    target.phone_digits = re.sub(r"\D", "", target.phone or "") or None


for event_name in ("before_insert", "before_update"):
    event.listen(Profile, event_name, _sync_profile_phone_digits)


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (db.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    user = db.relationship("Profile", back_populates="roles")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<UserRole {self.role} user={self.user_id}>"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    service_type = db.Column(db.String(20), nullable=False)
    plan_name = db.Column(db.String(120), nullable=False)
    plan_price = db.Column(db.Float, nullable=False)
    selected_addons = db.Column(db.JSON)
    postcode = db.Column(db.String(16), nullable=False)
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(120))
    notes = db.Column(db.Text)
    admin_notes = db.Column(db.Text)
    installation_date = db.Column(db.Date)
    status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="orders")

    @property
    def reference(self) -> str:
        return f"ORD-{self.id:06d}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_type": "order",
            "reference": self.reference,
            "user_id": self.user_id,
            "service_type": self.service_type,
            "plan_name": self.plan_name,
            "plan_price": self.plan_price,
            "selected_addons": self.selected_addons or [],
            "postcode": self.postcode,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "notes": self.notes,
            "admin_notes": self.admin_notes,
            "installation_date": _iso(self.installation_date),
            "status": self.status,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Order {self.id} user={self.user_id}>"


class GuestOrder(db.Model):
    __tablename__ = "guest_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(20), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), index=True)
    account_number = db.Column(db.String(11))
    email = db.Column(db.String(255), nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(40), nullable=False)
    date_of_birth = db.Column(db.Date)
    address_line1 = db.Column(db.String(255), nullable=False)
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(120), nullable=False)
    postcode = db.Column(db.String(16), nullable=False)
    service_type = db.Column(db.String(20), nullable=False)
    plan_name = db.Column(db.String(120), nullable=False)
    plan_price = db.Column(db.Float, nullable=False)
    selected_addons = db.Column(db.JSON)
    current_provider = db.Column(db.String(120))
    in_contract = db.Column(db.Boolean)
    contract_end_date = db.Column(db.Date)
    preferred_switch_date = db.Column(db.Date)
    gdpr_consent = db.Column(db.Boolean, nullable=False, default=False)
    marketing_consent = db.Column(db.Boolean, default=False)
    additional_notes = db.Column(db.Text)
    admin_notes = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="pending")
    linked_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def reference(self) -> str:
        return self.order_number

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_type": "guest_order",
            "order_number": self.order_number,
            "reference": self.order_number,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "postcode": self.postcode,
            "service_type": self.service_type,
            "plan_name": self.plan_name,
            "plan_price": self.plan_price,
            "selected_addons": self.selected_addons or [],
            "current_provider": self.current_provider,
            "preferred_switch_date": _iso(self.preferred_switch_date),
            "admin_notes": self.admin_notes,
            "status": self.status,
            "linked_at": _iso(self.linked_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<GuestOrder {self.order_number}>"


class Service(db.Model):
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    service_type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    plan_name = db.Column(db.String(120))
    price_monthly = db.Column(db.Float, nullable=False, default=0.0)
    identifiers = db.Column(db.JSON)
    supplier_reference = db.Column(db.String(120))
    suspension_reason = db.Column(db.String(255))
    activation_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="services")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "service_type": self.service_type,
            "status": self.status,
            "plan_name": self.plan_name,
            "price_monthly": self.price_monthly,
            "identifiers": self.identifiers or {},
            "supplier_reference": self.supplier_reference,
            "suspension_reason": self.suspension_reason,
            "activation_date": _iso(self.activation_date),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Service {self.id} {self.service_type} user={self.user_id}>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"))
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"))
    invoice_number = db.Column(db.String(40), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    currency = db.Column(db.String(3), nullable=False, default="GBP")
    issue_date = db.Column(db.Date, nullable=False, default=date.today)
    due_date = db.Column(db.Date)
    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    vat_total = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)
    vat_enabled = db.Column(db.Boolean, nullable=False, default=True)
    vat_rate = db.Column(db.Float, nullable=False, default=20.0)
    notes = db.Column(db.Text)
    late_fee_amount = db.Column(db.Float)
    late_fee_applied_at = db.Column(db.DateTime(timezone=True))
    overdue_notified_at = db.Column(db.DateTime(timezone=True))
    billing_period_start = db.Column(db.Date)
    billing_period_end = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="invoices")
    service = db.relationship("Service")
    lines = db.relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.id",
    )
    receipts = db.relationship("Receipt", back_populates="invoice")

    def to_dict(self, include_lines: bool = False) -> dict:
        payload = {
            "id": self.id,
            "user_id": self.user_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "currency": self.currency,
            "issue_date": _iso(self.issue_date),
            "due_date": _iso(self.due_date),
            "subtotal": self.subtotal,
            "vat_total": self.vat_total,
            "total": self.total,
            "vat_enabled": self.vat_enabled,
            "vat_rate": self.vat_rate,
            "notes": self.notes,
            "late_fee_amount": self.late_fee_amount,
            "service_id": self.service_id,
        }
        if include_lines:
            payload["lines"] = [line.to_dict() for line in self.lines]
        return payload

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.invoice_number}>"


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    qty = db.Column(db.Float, nullable=False, default=1.0)
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    line_total = db.Column(db.Float, nullable=False, default=0.0)
    vat_rate = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "qty": self.qty,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "vat_rate": self.vat_rate,
        }


class CreditNote(db.Model):
    __tablename__ = "credit_notes"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Receipt(db.Model):
    __tablename__ = "receipts"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(40))
    reference = db.Column(db.String(120))
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="receipts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "method": self.method,
            "reference": self.reference,
            "paid_at": _iso(self.paid_at),
        }


class PaymentAttempt(db.Model):
    __tablename__ = "payment_attempts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"))
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), nullable=False)
    provider = db.Column(db.String(40))
    provider_ref = db.Column(db.String(120))
    reason = db.Column(db.String(255))
    attempted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentRequest(db.Model):
    __tablename__ = "payment_requests"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="sent")
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"))
    customer_email = db.Column(db.String(255), nullable=False)
    customer_name = db.Column(db.String(255), nullable=False)
    account_number = db.Column(db.String(11))
    amount = db.Column(db.Float)
    currency = db.Column(db.String(3), nullable=False, default="GBP")
    due_date = db.Column(db.Date)
    expires_at = db.Column(db.DateTime(timezone=True))
    token_hash = db.Column(db.String(64), unique=True)
    provider = db.Column(db.String(40))
    provider_reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"))
    last_opened_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    events = db.relationship(
        "PaymentRequestEvent",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="PaymentRequestEvent.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "account_number": self.account_number,
            "amount": self.amount,
            "currency": self.currency,
            "invoice_id": self.invoice_id,
            "due_date": _iso(self.due_date),
            "expires_at": _iso(self.expires_at),
        }


class PaymentRequestEvent(db.Model):
    __tablename__ = "payment_request_events"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("payment_requests.id"), nullable=False, index=True
    )
    event_type = db.Column(db.String(40), nullable=False)
    event_metadata = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    request = db.relationship("PaymentRequest", back_populates="events")


class DDMandate(db.Model):
    __tablename__ = "dd_mandates"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    status = db.Column(db.String(30), nullable=False, default="pending")
    mandate_reference = db.Column(db.String(80), unique=True)
    provider = db.Column(db.String(40))
    provider_reference = db.Column(db.String(120))
    account_holder_name = db.Column(db.String(255))
    sort_code = db.Column(db.String(8))
    bank_last4 = db.Column(db.String(4))
    billing_address = db.Column(db.String(255))
    signature_name = db.Column(db.String(255))
    consent_timestamp = db.Column(db.DateTime(timezone=True))
    consent_ip = db.Column(db.String(64))
    consent_user_agent = db.Column(db.String(255))
    payment_request_id = db.Column(db.Integer, db.ForeignKey("payment_requests.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="dd_mandates")
    payment_request = db.relationship("PaymentRequest")

    @property
    def sort_code_masked(self) -> str | None:
        if not self.sort_code:
            return None
        digits = re.sub(r"\D", "", self.sort_code)
        return f"**-**-{digits[-2:]}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "mandate_reference": self.mandate_reference,
            "provider": self.provider,
            "provider_reference": self.provider_reference,
            "account_holder_name": self.account_holder_name,
            "sort_code_masked": self.sort_code_masked,
            "account_number_masked": f"****{self.bank_last4}" if self.bank_last4 else None,
            "consent_timestamp": _iso(self.consent_timestamp),
            "payment_request_id": self.payment_request_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<DDMandate {self.mandate_reference} {self.status}>"


class BillingSettings(db.Model):
    __tablename__ = "billing_settings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, unique=True)
    billing_mode = db.Column(db.String(20), nullable=False, default="anniversary")
    billing_day = db.Column(db.Integer)
    vat_enabled_default = db.Column(db.Boolean, nullable=False, default=True)
    vat_rate_default = db.Column(db.Float, nullable=False, default=20.0)
    payment_terms_days = db.Column(db.Integer, nullable=False, default=7)
    next_invoice_date = db.Column(db.Date)
    auto_pay_enabled = db.Column(db.Boolean, nullable=False, default=False)
    preferred_payment_method = db.Column(db.String(40))
    late_fee_grace_days = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="billing_settings")

    def to_dict(self) -> dict:
        return {
            "billing_mode": self.billing_mode,
            "billing_day": self.billing_day,
            "vat_enabled_default": self.vat_enabled_default,
            "vat_rate_default": self.vat_rate_default,
            "payment_terms_days": self.payment_terms_days,
            "next_invoice_date": _iso(self.next_invoice_date),
            "auto_pay_enabled": self.auto_pay_enabled,
            "preferred_payment_method": self.preferred_payment_method,
        }


class SupportTicket(db.Model):
    __tablename__ = "support_tickets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(40))
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    assigned_to = db.Column(db.Integer, db.ForeignKey("profiles.id"))
    internal_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("Profile", back_populates="tickets", foreign_keys=[user_id])
    assignee = db.relationship("Profile", foreign_keys=[assigned_to])
    messages = db.relationship(
        "TicketMessage",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketMessage.id",
    )

    @property
    def accepts_replies(self) -> bool:
        return self.status not in TICKET_CLOSED_STATUSES

    def to_dict(self, include_internal: bool = False) -> dict:
        payload = {
            "id": self.id,
            "user_id": self.user_id,
            "subject": self.subject,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_internal:
            payload["assigned_to"] = self.assigned_to
            payload["internal_notes"] = self.internal_notes
        return payload

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SupportTicket {self.id} user={self.user_id}>"


class TicketMessage(db.Model):
    __tablename__ = "ticket_messages"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("support_tickets.id"), nullable=False, index=True
    )
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_staff_reply = db.Column(db.Boolean, nullable=False, default=False)
    sender_role = db.Column(db.String(20))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    ticket = db.relationship("SupportTicket", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "user_id": self.user_id,
            "message": self.message,
            "is_staff_reply": self.is_staff_reply,
            "sender_role": self.sender_role,
            "created_at": _iso(self.created_at),
        }


class InstallationSlot(db.Model):
    __tablename__ = "installation_slots"
    __table_args__ = (
        db.UniqueConstraint("slot_date", "slot_time", name="uq_installation_slot_window"),
    )

    id = db.Column(db.Integer, primary_key=True)
    slot_date = db.Column(db.Date, nullable=False, index=True)
    slot_time = db.Column(db.String(20), nullable=False)
    capacity = db.Column(db.Integer, nullable=False, default=3)
    booked_count = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    bookings = db.relationship("InstallationBooking", back_populates="slot")

    @property
    def is_available(self) -> bool:
        return bool(self.is_active) and self.booked_count < self.capacity

    @property
    def label(self) -> str:
        return SLOT_TIME_LABELS.get(self.slot_time, self.slot_time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slot_date": _iso(self.slot_date),
            "slot_time": self.slot_time,
            "label": self.label,
            "capacity": self.capacity,
            "booked_count": self.booked_count,
            "is_active": self.is_active,
            "available": self.is_available,
        }


class Technician(db.Model):
    __tablename__ = "technicians"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(40), nullable=False)
    specializations = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    bookings = db.relationship("InstallationBooking", back_populates="technician")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "specializations": self.specializations or [],
            "is_active": self.is_active,
            "notes": self.notes,
        }


class InstallationBooking(db.Model):
    __tablename__ = "installation_bookings"

    id = db.Column(db.Integer, primary_key=True)
    slot_id = db.Column(
        db.Integer, db.ForeignKey("installation_slots.id"), nullable=False, index=True
    )
    order_id = db.Column(db.Integer, nullable=False)
    order_type = db.Column(db.String(20), nullable=False, default="order")
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40), nullable=False)
    notes = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="confirmed")
    technician_id = db.Column(db.Integer, db.ForeignKey("technicians.id"))
    reminder_sent = db.Column(db.Boolean, nullable=False, default=False)
    reminder_sent_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    slot = db.relationship("InstallationSlot", back_populates="bookings")
    technician = db.relationship("Technician", back_populates="bookings")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slot_id": self.slot_id,
            "slot_date": _iso(self.slot.slot_date) if self.slot else None,
            "slot_time": self.slot.slot_time if self.slot else None,
            "order_id": self.order_id,
            "order_type": self.order_type,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "notes": self.notes,
            "status": self.status,
            "technician_id": self.technician_id,
            "reminder_sent": self.reminder_sent,
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"))
    action = db.Column(db.String(40), nullable=False)
    entity = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(64))
    event_metadata = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "metadata": self.event_metadata or {},
            "created_at": _iso(self.created_at),
        }


class CommunicationLog(db.Model):
    __tablename__ = "communications_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, index=True)
    recipient_email = db.Column(db.String(255), nullable=False)
    template_name = db.Column(db.String(60), nullable=False)
    subject = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="pending")
    sent_at = db.Column(db.DateTime(timezone=True))
    delivered_at = db.Column(db.DateTime(timezone=True))
    opened_at = db.Column(db.DateTime(timezone=True))
    error_message = db.Column(db.Text)
    event_metadata = db.Column("metadata", db.JSON)
    invoice_id = db.Column(db.Integer)
    payment_request_id = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_timeline_entry(self) -> dict:
        details = parse_communication_details(self.template_name, self.event_metadata)
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "template_name": self.template_name,
            "label": describe_template(self.template_name),
            "subject": self.subject,
            "status": normalize_communication_status(self.status),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "opened_at": _iso(self.opened_at),
            "error_message": self.error_message,
            "invoice_id": self.invoice_id,
            "payment_request_id": self.payment_request_id,
            "created_at": _iso(self.created_at),
            **details.to_dict(),
        }


class AccountDeletion(db.Model):
    __tablename__ = "account_deletions"

    id = db.Column(db.Integer, primary_key=True)
    original_user_id = db.Column(db.Integer, nullable=False)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    account_number = db.Column(db.String(11))
    reason = db.Column(db.String(255))
    deleted_by = db.Column(db.String(40), nullable=False, default="user_request")
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class RateLimit(db.Model):
    __tablename__ = "rate_limits"
    __table_args__ = (
        db.UniqueConstraint("identifier", "action", name="uq_rate_limit_identifier_action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(255), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    request_count = db.Column(db.Integer, nullable=False, default=0)
    window_start = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class OperationError(ValueError):
    """Raised when a request is rejected; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400, details: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


def error_response(error: OperationError):
    payload = {"success": False, "error": str(error)}
    payload.update(error.details)
    return jsonify(payload), error.status_code


# ---------------------------------------------------------------------------
# Email delivery
# ---------------------------------------------------------------------------


class _TemplateContext(dict):
    def __missing__(self, key: str) -> str:
        return ""


EMAIL_TEMPLATES: dict[str, tuple[str, str]] = {
    "order_confirmation": (
        "Your OCCTA order {reference}",
        "Hi {full_name},\n\nThanks for ordering {plan_name} at {price} a month. "
        "Your order reference is {reference}. We'll be in touch about the next steps.",
    ),
    "status_update": (
        "Update on {reference}",
        "Hi {full_name},\n\n{reference}: {message}",
    ),
    "ticket_reply": (
        "Re: {ticket_subject}",
        "Hi {full_name},\n\nOur support team replied to your ticket "
        "\"{ticket_subject}\":\n\n{message}",
    ),
    "invoice_sent": (
        "Invoice {invoice_number} from OCCTA",
        "Hi {full_name},\n\nInvoice {invoice_number} for {amount} is now available "
        "and due {due_date}.\n\nPay online: {link}",
    ),
    "invoice_paid": (
        "Payment received for {invoice_number}",
        "Hi {full_name},\n\nWe've received your payment of {amount} for invoice "
        "{invoice_number}. Payment reference: {reference}.",
    ),
    "payment_link": (
        "Pay invoice {invoice_number}",
        "Hi {full_name},\n\nYou can pay {amount} securely using this link: {link}\n"
        "The link expires on {expires}.",
    ),
    "dd_setup_link": (
        "Set up your Direct Debit with OCCTA",
        "Hi {full_name},\n\nSet up your Direct Debit using this secure link: {link}\n"
        "The link expires on {expires}.",
    ),
    "dd_status": (
        "Direct Debit update: {status_label}",
        "Hi {full_name},\n\nYour Direct Debit mandate {mandate_reference} is now "
        "{status_label}.",
    ),
    "payment_reminder": (
        "Invoice {invoice_number} is due {due_phrase}",
        "Hi {full_name},\n\nA reminder that invoice {invoice_number} for {amount} is due "
        "{due_phrase} ({due_date}).\n\nPay from your dashboard: {link}",
    ),
    "late_fee_applied": (
        "Late fee added to invoice {invoice_number}",
        "Hi {full_name},\n\nInvoice {invoice_number} is {days_overdue} days overdue, "
        "so a late fee of {fee} has been added. The balance is now {amount}.",
    ),
    "suspension_warning": (
        "Action needed: invoice {invoice_number} is overdue",
        "Hi {full_name},\n\nInvoice {invoice_number} for {amount} is {days_overdue} days "
        "overdue. Your service will be suspended in {days_until_suspension} days "
        "unless it is paid.",
    ),
    "service_suspended": (
        "Your {service_type} service has been suspended",
        "Hi {full_name},\n\nYour {service_type} service has been suspended because "
        "invoice {invoice_number} ({amount}) is unpaid. Pay the balance to restore it.",
    ),
    "installation_reminder": (
        "Your OCCTA installation is tomorrow",
        "Hi {full_name},\n\nA reminder that your {plan_name} installation is booked for "
        "{slot_date}, {slot_label}, at {address}.",
    ),
    "account_deleted": (
        "Your OCCTA account has been deleted",
        "Hi {full_name},\n\nYour account {account_number} and its data have been deleted "
        "as requested.",
    ),
    "admin_notification": (
        "[OCCTA admin] {title}",
        "{message}",
    ),
    "admin_message": (
        "{subject}",
        "Hi {full_name},\n\n{message}",
    ),
}


def render_email(template_key: str, **context) -> tuple[str, str]:
    subject_template, body_template = EMAIL_TEMPLATES[template_key]
    values = _TemplateContext(context)
    if not values.get("full_name"):
        values["full_name"] = "there"
    config = current_app.config
    signature = (
        f"\n\n{config.get('COMPANY_NAME')}\n"
        f"{config.get('COMPANY_PHONE')} | {config.get('COMPANY_SUPPORT_EMAIL')}"
    )
    return subject_template.format_map(values), body_template.format_map(values) + signature


def send_email_via_smtp(
    app: Flask, recipient: str, subject: str, body: str
) -> tuple[bool, str | None]:
    host = (app.config.get("SMTP_HOST") or "").strip()
    if not host:
        return False, "SMTP is not configured"

    port = _coerce_int(app.config.get("SMTP_PORT")) or 587
    username = (app.config.get("SMTP_USERNAME") or "").strip()
    password = app.config.get("SMTP_PASSWORD") or ""
    from_email = (app.config.get("MAIL_FROM_EMAIL") or username).strip()
    from_name = (app.config.get("MAIL_FROM_NAME") or app.config.get("COMPANY_NAME") or "").strip()
    if not from_email:
        return False, "No sender address configured"

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((from_name, from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(datetime.now(UTC))
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    reply_to = (app.config.get("COMPANY_SUPPORT_EMAIL") or "").strip()
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if is_truthy(app.config.get("SMTP_USE_TLS")):
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external service dependency
        app.logger.warning("SMTP email delivery to %s failed: %s", recipient, exc)
        return False, str(exc)


def send_email(
    recipient: str | None,
    template_name: str,
    subject: str,
    body: str,
    *,
    user_id: int | None = None,
    metadata: dict | None = None,
    invoice_id: int | None = None,
    payment_request_id: int | None = None,
) -> bool:
    """Deliver a plain-text email and record it in the communications log.

    The log row joins the caller's session; the caller commits it.
    """

    app = current_app
    if not recipient:
        app.logger.warning("Skipping %s email without a recipient", template_name)
        return False

    error_message = None
    sender = app.config.get("EMAIL_SENDER")
    if callable(sender):
        try:
            delivered = bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom sender failure
            app.logger.warning("Custom email sender failed: %s", exc)
            delivered, error_message = False, str(exc)
    else:
        delivered, error_message = send_email_via_smtp(app, recipient, subject, body)

    if not delivered:
        app.logger.warning("Email %s to %s was not delivered", template_name, recipient)

    db.session.add(
        CommunicationLog(
            user_id=user_id,
            recipient_email=recipient,
            template_name=template_name,
            subject=subject,
            status="sent" if delivered else "failed",
            sent_at=utcnow() if delivered else None,
            error_message=None if delivered else (error_message or "Delivery failed"),
            event_metadata=metadata or {},
            invoice_id=invoice_id,
            payment_request_id=payment_request_id,
        )
    )
    return delivered


def send_template_email(
    recipient: str | None,
    template_name: str,
    *,
    template_key: str | None = None,
    context: dict | None = None,
    **log_fields,
) -> bool:
    subject, body = render_email(template_key or template_name, **(context or {}))
    return send_email(recipient, template_name, subject, body, **log_fields)


def notify_admins(title: str, message: str, metadata: dict | None = None) -> int:
    recipients: list[str] = []
    configured = (current_app.config.get("ADMIN_NOTIFY_EMAIL") or "").strip()
    if configured:
        recipients.append(configured)
    else:
        admins = (
            Profile.query.join(UserRole, UserRole.user_id == Profile.id)
            .filter(UserRole.role == "admin")
            .order_by(Profile.id)
            .all()
        )
        recipients.extend(admin.email for admin in admins if admin.email)

    delivered = 0
    for recipient in recipients:
        if send_template_email(
            recipient,
            "admin_notification",
            context={"title": title, "message": message},
            metadata=metadata,
        ):
            delivered += 1
    return delivered


# ---------------------------------------------------------------------------
# Audit log and roles
# ---------------------------------------------------------------------------


def current_actor_id() -> int | None:
    user = g.get("current_user")
    return user.id if user is not None else None


def record_audit(
    action: str,
    entity: str,
    entity_id: object | None = None,
    metadata: dict | None = None,
    *,
    actor_id: int | None = None,
) -> AuditLog:
    entry = AuditLog(
        actor_user_id=actor_id if actor_id is not None else current_actor_id(),
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        event_metadata=metadata or {},
    )
    db.session.add(entry)
    return entry


def fetch_recent_audit_logs(
    limit: int = RECENT_AUDIT_LOG_LIMIT, entity: str | None = None
) -> list[AuditLog]:
    query = AuditLog.query
    if entity:
        query = query.filter(AuditLog.entity == entity)
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()


def has_role(user_id: int | None, role: str) -> bool:
    if not user_id:
        return False
    return UserRole.query.filter_by(user_id=user_id, role=role).first() is not None


def grant_role(user: Profile, role: str) -> bool:
    if role not in ROLE_OPTIONS:
        raise OperationError(f"Unknown role '{role}'.")
    if has_role(user.id, role):
        return False
    db.session.add(UserRole(user_id=user.id, role=role))
    record_audit("assign", "user_role", user.id, {"role": role})
    db.session.commit()
    return True


def revoke_role(user: Profile, role: str) -> bool:
    existing = UserRole.query.filter_by(user_id=user.id, role=role).first()
    if existing is None:
        return False
    if role == "admin" and UserRole.query.filter_by(role="admin").count() <= 1:
        raise OperationError("At least one administrator must remain.")
    db.session.delete(existing)
    record_audit("unassign", "user_role", user.id, {"role": role})
    db.session.commit()
    return True


def check_rate_limit(
    identifier: str, action: str, limit: int, window: timedelta = timedelta(hours=1)
) -> bool:
    now = utcnow()
    record = RateLimit.query.filter_by(identifier=identifier, action=action).first()
    if record is None:
        record = RateLimit(identifier=identifier, action=action, request_count=0, window_start=now)
        db.session.add(record)
    elif as_utc(record.window_start) <= now - window:
        record.window_start = now
        record.request_count = 0

    if record.request_count >= limit:
        db.session.commit()
        return False
    record.request_count += 1
    db.session.commit()
    return True


# ---------------------------------------------------------------------------
# Customers and search
# ---------------------------------------------------------------------------


def customer_search_view():
    """Profiles joined to the postcode of their newest order."""

    latest_order_postcode = (
        select(Order.postcode)
        .where(Order.user_id == Profile.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(1)
        .correlate(Profile)
        .scalar_subquery()
    )
    latest_postcode = func.coalesce(latest_order_postcode, Profile.postcode)
    return select(
        Profile.id.label("id"),
        Profile.full_name.label("full_name"),
        Profile.email.label("email"),
        Profile.phone.label("phone"),
        Profile.phone_digits.label("phone_digits"),
        Profile.account_number.label("account_number"),
        Profile.date_of_birth.label("date_of_birth"),
        Profile.created_at.label("created_at"),
        latest_postcode.label("latest_postcode"),
        func.upper(func.replace(latest_postcode, " ", "")).label("latest_postcode_normalized"),
    ).subquery("admin_customer_search_view")


def _search_row(row) -> dict:
    return {
        "id": row["id"],
        "full_name": row["full_name"],
        "email": row["email"],
        "phone": row["phone"],
        "account_number": row["account_number"],
        "date_of_birth": _iso(row["date_of_birth"]),
        "latest_postcode": row["latest_postcode"],
    }


def search_customers(query: str | None, limit: int = SEARCH_RESULT_LIMIT) -> list[dict]:
    classification = classify_search_query(query)
    if classification is None:
        return []

    view = customer_search_view()
    statement = (
        select(view)
        .where(build_customer_search_filter(view, *classification))
        .order_by(view.c.created_at.desc(), view.c.id.desc())
        .limit(min(limit, SEARCH_RESULT_LIMIT))
    )
    return [_search_row(row) for row in db.session.execute(statement).mappings()]


def advanced_customer_search(
    name: str | None = None,
    postcode: str | None = None,
    dob: date | None = None,
    match_mode: str = "all",
    limit: int = 50,
) -> list[dict]:
    view = customer_search_view()
    conditions = []
    if name and name.strip():
        conditions.append(
            view.c.full_name.ilike(f"%{_escape_like(name.strip())}%", escape="\\")
        )
    normalized = normalize_postcode(postcode)
    if normalized:
        conditions.append(
            view.c.latest_postcode_normalized.ilike(f"%{_escape_like(normalized)}%", escape="\\")
        )
    if dob is not None:
        conditions.append(view.c.date_of_birth == dob)

    if not conditions:
        raise OperationError("Provide a name, postcode or date of birth to search.")

    combined = or_(*conditions) if match_mode == "any" else and_(*conditions)
    statement = (
        select(view).where(combined).order_by(view.c.created_at.desc(), view.c.id.desc()).limit(limit)
    )
    return [_search_row(row) for row in db.session.execute(statement).mappings()]


def list_customers(
    search: str | None = None,
    filter_name: str | None = None,
    page: int = 1,
    per_page: int = 25,
):
    query = Profile.query
    if search and search.strip():
        pattern = f"%{_escape_like(search.strip())}%"
        query = query.filter(
            or_(
                Profile.full_name.ilike(pattern, escape="\\"),
                Profile.email.ilike(pattern, escape="\\"),
                Profile.phone.ilike(pattern, escape="\\"),
                Profile.account_number.ilike(pattern, escape="\\"),
            )
        )
    if filter_name == "open_tickets":
        open_ticket_users = select(SupportTicket.user_id).where(
            SupportTicket.status.in_(("open", "in_progress"))
        )
        query = query.filter(Profile.id.in_(open_ticket_users))
    return query.order_by(Profile.created_at.desc(), Profile.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )


def allocate_account_number() -> str:
    while True:
        candidate = generate_account_number()
        if Profile.query.filter_by(account_number=candidate).first() is None:
            return candidate


def create_customer(
    payload: dict, *, password: str | None = None, audit: bool = True
) -> Profile:
    email = (payload.get("email") or "").strip().lower()
    full_name = (payload.get("full_name") or "").strip()
    if not email or not full_name:
        raise OperationError("Email and full name are required")
    if not EMAIL_PATTERN.match(email):
        raise OperationError("Enter a valid email address")
    if Profile.query.filter_by(email=email).first() is not None:
        raise OperationError("A customer with that email already exists")

    date_of_birth = None
    if payload.get("date_of_birth"):
        date_of_birth = parse_iso_date(payload.get("date_of_birth"))
        if date_of_birth is None:
            raise OperationError("Date of birth must be in YYYY-MM-DD format")

    postcode = _clean_text(payload.get("postcode"))
    profile = Profile(
        email=email,
        full_name=full_name,
        phone=_clean_text(payload.get("phone")),
        address_line1=_clean_text(payload.get("address_line1")),
        address_line2=_clean_text(payload.get("address_line2")),
        city=_clean_text(payload.get("city")),
        postcode=postcode.upper() if postcode else None,
        date_of_birth=date_of_birth,
        admin_notes=_clean_text(payload.get("admin_notes")),
        account_number=allocate_account_number(),
    )
    # Managed accounts get a random password the customer never sees.
    profile.set_password(password or generate_portal_password())
    db.session.add(profile)
    db.session.flush()
    db.session.add(UserRole(user_id=profile.id, role="user"))

    if audit:
        record_audit(
            "create",
            "customer",
            profile.id,
            {"account_number": profile.account_number, "email": profile.email},
        )

    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create customer %s", email)
        raise OperationError("A customer with that email already exists") from exc
    return profile


def update_customer_profile(profile: Profile, payload: dict, *, admin: bool = False) -> Profile:
    editable = ["full_name", "phone", "address_line1", "address_line2", "city", "postcode"]
    if admin:
        editable.append("admin_notes")

    changed: list[str] = []
    for field in editable:
        if field not in payload:
            continue
        value = _clean_text(payload.get(field))
        if field == "postcode" and value:
            value = value.upper()
        if field == "full_name" and not value:
            raise OperationError("Full name cannot be empty")
        if getattr(profile, field) != value:
            setattr(profile, field, value)
            changed.append(field)

    if "date_of_birth" in payload:
        raw = payload.get("date_of_birth")
        value = parse_iso_date(raw) if raw else None
        if raw and value is None:
            raise OperationError("Date of birth must be in YYYY-MM-DD format")
        if profile.date_of_birth != value:
            profile.date_of_birth = value
            changed.append("date_of_birth")

    if changed:
        record_audit("update", "profile", profile.id, {"fields": changed})
        db.session.commit()
    return profile


def build_customer_detail(profile: Profile) -> dict:
    guest_orders = (
        GuestOrder.query.filter(
            or_(GuestOrder.user_id == profile.id, func.lower(GuestOrder.email) == profile.email)
        )
        .order_by(GuestOrder.created_at.desc())
        .all()
    )
    receipts = (
        Receipt.query.filter_by(user_id=profile.id).order_by(Receipt.paid_at.desc()).all()
    )
    return {
        "profile": {**profile.to_dict(), "admin_notes": profile.admin_notes},
        "roles": profile.role_names,
        "orders": [order.to_dict() for order in profile.orders],
        "guest_orders": [order.to_dict() for order in guest_orders],
        "services": [service.to_dict() for service in profile.services],
        "invoices": [invoice.to_dict() for invoice in profile.invoices],
        "receipts": [receipt.to_dict() for receipt in receipts],
        "tickets": [ticket.to_dict(include_internal=True) for ticket in profile.tickets],
        "dd_mandates": [mandate.to_dict() for mandate in profile.dd_mandates],
        "billing_settings": get_billing_settings_payload(profile),
    }


def send_admin_message(profile: Profile, subject: str, message: str) -> bool:
    subject = (subject or "").strip()
    message = (message or "").strip()
    if not subject or not message:
        raise OperationError("Missing required fields: subject, message")
    delivered = send_template_email(
        profile.email,
        "admin_message",
        context={"full_name": profile.full_name, "subject": subject, "message": message},
        user_id=profile.id,
        metadata={"subject": subject},
    )
    record_audit("send", "profile", profile.id, {"subject": subject, "delivered": delivered})
    db.session.commit()
    return delivered


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def resolve_plans(plan_ids: list | None) -> list[dict]:
    if not plan_ids:
        raise OperationError("Select at least one plan")

    plans: list[dict] = []
    seen_types: set[str] = set()
    for plan_id in plan_ids:
        plan = get_plan_by_id(plan_id)
        if plan is None:
            raise OperationError(f"Unknown plan '{plan_id}'")
        if plan["service_type"] in seen_types:
            raise OperationError("Choose at most one plan per service type")
        seen_types.add(plan["service_type"])
        plans.append(plan)
    return plans


def _addons_for(plan: dict, addon_ids: list | None) -> list[dict]:
    addons = []
    for addon_id in addon_ids or []:
        addon = get_addon_by_id(addon_id)
        if addon is None:
            raise OperationError(f"Unknown add-on '{addon_id}'")
        if addon["service_type"] == plan["service_type"]:
            addons.append({"id": addon["id"], "name": addon["name"], "price": addon["price"]})
    return addons


def _plan_ids_from(payload: dict) -> list:
    plan_ids = payload.get("plan_ids")
    if plan_ids is None and payload.get("plan_id"):
        plan_ids = [payload.get("plan_id")]
    if plan_ids is not None and not isinstance(plan_ids, list):
        raise OperationError("plan_ids must be a list")
    return plan_ids or []


def place_order(user: Profile, payload: dict) -> list[Order]:
    plans = resolve_plans(_plan_ids_from(payload))
    postcode = _clean_text(payload.get("postcode")) or user.postcode
    if not postcode:
        raise OperationError("A postcode is required")

    orders = []
    for plan in plans:
        order = Order(
            user_id=user.id,
            service_type=plan["service_type"],
            plan_name=plan["name"],
            plan_price=plan["price_num"],
            selected_addons=_addons_for(plan, payload.get("addon_ids")),
            postcode=postcode.upper(),
            address_line1=_clean_text(payload.get("address_line1")) or user.address_line1,
            address_line2=_clean_text(payload.get("address_line2")) or user.address_line2,
            city=_clean_text(payload.get("city")) or user.city,
            notes=_clean_text(payload.get("notes")),
            status="pending",
        )
        db.session.add(order)
        orders.append(order)
    db.session.commit()

    for order in orders:
        send_template_email(
            user.email,
            "order_confirmation",
            context={
                "full_name": user.full_name,
                "plan_name": order.plan_name,
                "price": format_money(order.plan_price),
                "reference": order.reference,
            },
            user_id=user.id,
            metadata={"order_id": order.id, "plan_name": order.plan_name},
        )
    notify_admins(
        "New order",
        f"{user.full_name or user.email} ({user.account_number}) ordered "
        + ", ".join(order.plan_name for order in orders),
        {"order_ids": [order.id for order in orders]},
    )
    db.session.commit()
    return orders


def place_guest_order(payload: dict) -> list[GuestOrder]:
    required = {
        "full_name": "Full name",
        "email": "Email",
        "phone": "Phone",
        "address_line1": "Address",
        "city": "City",
        "postcode": "Postcode",
    }
    values = {field: _clean_text(payload.get(field)) for field in required}
    missing = [label for field, label in required.items() if not values[field]]
    if missing:
        raise OperationError(f"Missing required fields: {', '.join(missing)}")

    email = values["email"].lower()
    if not EMAIL_PATTERN.match(email):
        raise OperationError("Enter a valid email address")
    if not is_truthy(payload.get("gdpr_consent")):
        raise OperationError("You must accept the privacy policy to place an order")

    plans = resolve_plans(_plan_ids_from(payload))
    date_of_birth = parse_iso_date(payload.get("date_of_birth"))
    existing_profile = Profile.query.filter_by(email=email).first()

    orders = []
    for plan in plans:
        order_number = generate_order_number()
        while GuestOrder.query.filter_by(order_number=order_number).first() is not None:
            order_number = generate_order_number()
        order = GuestOrder(
            order_number=order_number,
            user_id=existing_profile.id if existing_profile else None,
            account_number=existing_profile.account_number if existing_profile else None,
            email=email,
            full_name=values["full_name"],
            phone=values["phone"],
            date_of_birth=date_of_birth,
            address_line1=values["address_line1"],
            address_line2=_clean_text(payload.get("address_line2")),
            city=values["city"],
            postcode=values["postcode"].upper(),
            service_type=plan["service_type"],
            plan_name=plan["name"],
            plan_price=plan["price_num"],
            selected_addons=_addons_for(plan, payload.get("addon_ids")),
            current_provider=_clean_text(payload.get("current_provider")),
            in_contract=is_truthy(payload.get("in_contract")),
            contract_end_date=parse_iso_date(payload.get("contract_end_date")),
            preferred_switch_date=parse_iso_date(payload.get("preferred_switch_date")),
            gdpr_consent=True,
            marketing_consent=is_truthy(payload.get("marketing_consent")),
            additional_notes=_clean_text(payload.get("additional_notes")),
        )
        db.session.add(order)
        orders.append(order)
    db.session.commit()

    for order in orders:
        send_template_email(
            order.email,
            "order_confirmation",
            context={
                "full_name": order.full_name,
                "plan_name": order.plan_name,
                "price": format_money(order.plan_price),
                "reference": order.order_number,
            },
            metadata={"order_number": order.order_number},
        )
    notify_admins(
        "New guest order",
        f"{values['full_name']} ({email}) ordered "
        + ", ".join(f"{order.plan_name} [{order.order_number}]" for order in orders),
        {"order_numbers": [order.order_number for order in orders]},
    )
    db.session.commit()
    return orders


def lookup_guest_order(order_number: str | None, email: str | None) -> GuestOrder | None:
    number = (order_number or "").strip().upper()
    address = (email or "").strip().lower()
    if not number or not address:
        return None
    return GuestOrder.query.filter(
        GuestOrder.order_number == number, func.lower(GuestOrder.email) == address
    ).first()


def link_guest_order(user: Profile, order_number: str | None, email: str | None) -> GuestOrder:
    """Attach an unlinked guest order to ``user`` when the order email matches."""

    number = (order_number or "").strip().upper()
    address = (email or "").strip().lower()
    if not 5 <= len(number) <= 50:
        raise OperationError("Invalid order number")
    if not EMAIL_PATTERN.match(address):
        raise OperationError("Invalid email")

    order = GuestOrder.query.filter_by(order_number=number).first()
    if order is None:
        raise OperationError("Order not found", 404)
    if order.email.lower() != address:
        current_app.logger.warning("Email mismatch linking guest order %s", number)
        raise OperationError("Email does not match order", 403)
    if order.user_id is not None:
        raise OperationError("Order already linked to an account")

    order.user_id = user.id
    order.account_number = user.account_number
    order.linked_at = utcnow()
    record_audit("link", "guest_order", order.id, {"order_number": number}, actor_id=user.id)
    db.session.commit()
    current_app.logger.info("Linked guest order %s to user %s", number, user.id)
    return order


ORDER_KINDS = {"orders": Order, "guest-orders": GuestOrder}


def describe_order_status(status: str) -> str:
    return ORDER_STATUS_MESSAGES.get(status, f"Your order status updated to {status}")


def _order_recipient(order: Order | GuestOrder) -> tuple[str | None, str | None, int | None]:
    if isinstance(order, GuestOrder):
        return order.email, order.full_name, order.user_id
    return order.user.email, order.user.full_name, order.user_id


def update_order(
    order: Order | GuestOrder,
    *,
    status: str | None = None,
    admin_notes: str | None = None,
    notify: bool = True,
) -> bool:
    entity = "guest_order" if isinstance(order, GuestOrder) else "order"
    previous_status = order.status
    if status is not None:
        if status not in ORDER_STATUS_OPTIONS:
            raise OperationError(f"Unknown order status '{status}'")
        order.status = status
    if admin_notes is not None:
        order.admin_notes = admin_notes.strip() or None

    status_changed = order.status != previous_status
    record_audit(
        "update",
        entity,
        order.id,
        {"old_status": previous_status, "new_status": order.status, "reference": order.reference},
    )
    db.session.commit()

    if status_changed and notify:
        recipient, full_name, user_id = _order_recipient(order)
        send_template_email(
            recipient,
            "status_update",
            context={
                "full_name": full_name,
                "reference": f"Order #{order.reference}",
                "message": describe_order_status(order.status),
            },
            user_id=user_id,
            metadata={"old_status": previous_status, "new_status": order.status},
        )
        db.session.commit()
    return status_changed


def bulk_update_order_status(model, order_ids: list, status: str) -> int:
    if status not in ORDER_STATUS_OPTIONS:
        raise OperationError(f"Unknown order status '{status}'")
    ids = [value for value in (_coerce_int(item) for item in order_ids or []) if value]
    if not ids:
        raise OperationError("Select at least one order")

    updated = 0
    for order in model.query.filter(model.id.in_(ids)).all():
        if update_order(order, status=status):
            updated += 1
    return updated


# ---------------------------------------------------------------------------
# Support tickets
# ---------------------------------------------------------------------------


def describe_ticket_status(status: str) -> str:
    return TICKET_STATUS_MESSAGES.get(status, f"Your ticket status updated to {status}")


def create_ticket(user: Profile, payload: dict) -> SupportTicket:
    subject = (payload.get("subject") or "").strip()
    description = (payload.get("description") or "").strip()
    if not subject or not description:
        raise OperationError("Please provide both a subject and description for your ticket.")

    priority = (payload.get("priority") or "medium").strip().lower()
    if priority not in TICKET_PRIORITY_OPTIONS:
        priority = "medium"

    ticket = SupportTicket(
        user_id=user.id,
        subject=subject,
        description=description,
        category=_clean_text(payload.get("category")),
        priority=priority,
    )
    db.session.add(ticket)
    db.session.commit()

    notify_admins(
        "New support ticket",
        f"{user.full_name or user.email} opened ticket #{ticket.id}: {subject} ({priority})",
        {"ticket_id": ticket.id},
    )
    db.session.commit()
    return ticket


def _publish_ticket_message(message: TicketMessage) -> None:
    get_ticket_broker().publish(message.ticket_id, message.to_dict())


def post_customer_message(ticket: SupportTicket, user: Profile, text: str) -> TicketMessage:
    text = (text or "").strip()
    if not text:
        raise OperationError("Message cannot be empty")
    if not ticket.accepts_replies:
        raise OperationError("This ticket is closed. Please open a new ticket.")

    message = TicketMessage(
        ticket_id=ticket.id,
        user_id=user.id,
        message=text,
        is_staff_reply=False,
        sender_role="customer",
    )
    db.session.add(message)
    ticket.updated_at = utcnow()
    db.session.commit()
    _publish_ticket_message(message)
    return message


def post_staff_reply(
    ticket: SupportTicket, staff: Profile, text: str, status: str | None = None
) -> TicketMessage:
    text = (text or "").strip()
    if not text:
        raise OperationError("Reply cannot be empty")
    if status is not None and status not in TICKET_STATUS_OPTIONS:
        raise OperationError(f"Unknown ticket status '{status}'")

    previous_status = ticket.status
    if status:
        ticket.status = status

    message = TicketMessage(
        ticket_id=ticket.id,
        user_id=staff.id,
        message=text,
        is_staff_reply=True,
        sender_role="admin",
    )
    db.session.add(message)
    ticket.updated_at = utcnow()
    record_audit(
        "reply",
        "support_ticket",
        ticket.id,
        {"old_status": previous_status, "new_status": ticket.status},
    )
    db.session.commit()
    _publish_ticket_message(message)

    send_template_email(
        ticket.user.email,
        "ticket_reply",
        context={
            "full_name": ticket.user.full_name,
            "ticket_subject": ticket.subject,
            "message": text,
        },
        user_id=ticket.user_id,
        metadata={"ticket_id": ticket.id, "old_status": previous_status, "new_status": ticket.status},
    )
    db.session.commit()
    return message


def update_ticket(ticket: SupportTicket, payload: dict) -> SupportTicket:
    previous_status = ticket.status
    previous_assignee = ticket.assigned_to

    if "status" in payload:
        status = payload.get("status")
        if status not in TICKET_STATUS_OPTIONS:
            raise OperationError(f"Unknown ticket status '{status}'")
        ticket.status = status

    if "assigned_to" in payload:
        assignee_id = _coerce_int(payload.get("assigned_to"))
        if assignee_id is not None and not (
            has_role(assignee_id, "admin") or has_role(assignee_id, "moderator")
        ):
            raise OperationError("Tickets can only be assigned to staff members")
        ticket.assigned_to = assignee_id

    if "internal_notes" in payload:
        ticket.internal_notes = _clean_text(payload.get("internal_notes"))

    if ticket.status != previous_status:
        if ticket.status == "closed":
            action = "close"
        elif previous_status in TICKET_CLOSED_STATUSES and ticket.accepts_replies:
            action = "reopen"
        else:
            action = "update"
        record_audit(
            action,
            "support_ticket",
            ticket.id,
            {"old_status": previous_status, "new_status": ticket.status},
        )
    if ticket.assigned_to != previous_assignee:
        record_audit(
            "assign" if ticket.assigned_to else "unassign",
            "support_ticket",
            ticket.id,
            {"assigned_to": ticket.assigned_to, "previous_assignee": previous_assignee},
        )
    if "internal_notes" in payload:
        record_audit("update", "support_ticket", ticket.id, {"fields": ["internal_notes"]})
    db.session.commit()

    if ticket.status != previous_status:
        send_template_email(
            ticket.user.email,
            "status_update",
            context={
                "full_name": ticket.user.full_name,
                "reference": ticket.subject,
                "message": describe_ticket_status(ticket.status),
            },
            user_id=ticket.user_id,
            metadata={"old_status": previous_status, "new_status": ticket.status},
        )
        db.session.commit()
    return ticket


# ---------------------------------------------------------------------------
# Billing settings
# ---------------------------------------------------------------------------


def get_billing_settings_payload(user: Profile) -> dict:
    if user.billing_settings is not None:
        return user.billing_settings.to_dict()
    return dict(BILLING_SETTINGS_DEFAULTS)


def _ensure_billing_settings(user: Profile) -> BillingSettings:
    settings = user.billing_settings
    if settings is None:
        settings = BillingSettings(
            user_id=user.id,
            billing_mode=BILLING_SETTINGS_DEFAULTS["billing_mode"],
            vat_enabled_default=BILLING_SETTINGS_DEFAULTS["vat_enabled_default"],
            vat_rate_default=BILLING_SETTINGS_DEFAULTS["vat_rate_default"],
            payment_terms_days=BILLING_SETTINGS_DEFAULTS["payment_terms_days"],
            auto_pay_enabled=BILLING_SETTINGS_DEFAULTS["auto_pay_enabled"],
        )
        db.session.add(settings)
        user.billing_settings = settings
    return settings


def save_billing_settings(user: Profile, payload: dict) -> BillingSettings:
    billing_mode = payload.get("billing_mode", "anniversary")
    if billing_mode not in BILLING_MODES:
        raise OperationError("Billing mode must be 'anniversary' or 'fixed_day'")

    billing_day = None
    if billing_mode == "fixed_day":
        billing_day = _coerce_int(payload.get("billing_day"))
        if billing_day is None or not 1 <= billing_day <= 28:
            raise OperationError("Billing day must be between 1 and 28")

    vat_rate = _coerce_float(payload.get("vat_rate_default", 20))
    if vat_rate is None or not 0 <= vat_rate <= 100:
        raise OperationError("VAT rate must be between 0 and 100")

    payment_terms = _coerce_int(payload.get("payment_terms_days", 7))
    if payment_terms is None or payment_terms < 0:
        raise OperationError("Payment terms must be zero or more days")

    settings = _ensure_billing_settings(user)
    settings.billing_mode = billing_mode
    settings.billing_day = billing_day
    settings.vat_enabled_default = is_truthy(payload.get("vat_enabled_default", True))
    settings.vat_rate_default = vat_rate
    settings.payment_terms_days = payment_terms
    settings.auto_pay_enabled = is_truthy(payload.get("auto_pay_enabled", False))
    settings.preferred_payment_method = _clean_text(payload.get("preferred_payment_method"))
    if "next_invoice_date" in payload:
        settings.next_invoice_date = parse_iso_date(payload.get("next_invoice_date"))

    record_audit(
        "update",
        "billing_settings",
        user.id,
        {
            "account_number": user.account_number,
            "billing_mode": billing_mode,
            "vat_enabled": settings.vat_enabled_default,
        },
    )
    db.session.commit()
    return settings


def recalculate_next_invoice_date(user: Profile, today: date | None = None) -> date:
    settings = _ensure_billing_settings(user)
    next_date = calculate_next_invoice_date(settings.billing_mode, settings.billing_day, today)
    settings.next_invoice_date = next_date
    record_audit(
        "update",
        "billing_settings",
        user.id,
        {
            "account_number": user.account_number,
            "recalculated_next_invoice_date": next_date.isoformat(),
        },
    )
    db.session.commit()
    return next_date


# ---------------------------------------------------------------------------
# Invoices, payment requests and payments
# ---------------------------------------------------------------------------


def next_invoice_number() -> str:
    sequence = (db.session.query(func.max(Invoice.id)).scalar() or 0) + 1
    candidate = f"INV-{sequence:06d}"
    while Invoice.query.filter_by(invoice_number=candidate).first() is not None:
        sequence += 1
        candidate = f"INV-{sequence:06d}"
    return candidate


def calculate_invoice_totals(lines: list[dict], vat_enabled: bool, vat_rate: float) -> dict:
    subtotal = sum(float(line["line_total"]) for line in lines)
    vat_total = subtotal * vat_rate / 100 if vat_enabled else 0.0
    return {"subtotal": subtotal, "vat_total": vat_total, "total": subtotal + vat_total}


def _parse_invoice_lines(raw_lines: list | None) -> list[dict]:
    if not raw_lines or not isinstance(raw_lines, list):
        raise OperationError("Add at least one invoice line")

    lines = []
    for index, raw in enumerate(raw_lines, start=1):
        if not isinstance(raw, dict):
            raise OperationError(f"Line {index} is invalid")
        description = (raw.get("description") or "").strip()
        qty = _coerce_float(raw.get("qty", 1))
        unit_price = _coerce_float(raw.get("unit_price"))
        if not description:
            raise OperationError(f"Line {index} needs a description")
        if qty is None or qty <= 0:
            raise OperationError(f"Line {index} needs a positive quantity")
        if unit_price is None:
            raise OperationError(f"Line {index} needs a unit price")
        lines.append(
            {
                "description": description,
                "qty": qty,
                "unit_price": unit_price,
                "line_total": qty * unit_price,
            }
        )
    return lines


def create_invoice(user: Profile, payload: dict) -> Invoice:
    settings = get_billing_settings_payload(user)
    lines = _parse_invoice_lines(payload.get("lines"))
    vat_enabled = is_truthy(payload.get("vat_enabled", settings["vat_enabled_default"]))
    vat_rate = _coerce_float(payload.get("vat_rate", settings["vat_rate_default"]))
    if vat_rate is None or not 0 <= vat_rate <= 100:
        raise OperationError("VAT rate must be between 0 and 100")

    issue_date = parse_iso_date(payload.get("issue_date")) or date.today()
    if payload.get("due_date"):
        due_date = parse_iso_date(payload.get("due_date"))
        if due_date is None:
            raise OperationError("Due date must be in YYYY-MM-DD format")
    else:
        due_date = issue_date + timedelta(days=int(settings["payment_terms_days"]))

    service_id = _coerce_int(payload.get("service_id"))
    if service_id is not None:
        service = db.session.get(Service, service_id)
        if service is None or service.user_id != user.id:
            raise OperationError("That service does not belong to this customer")

    totals = calculate_invoice_totals(lines, vat_enabled, vat_rate)
    invoice = Invoice(
        user_id=user.id,
        service_id=service_id,
        invoice_number=next_invoice_number(),
        status="draft",
        issue_date=issue_date,
        due_date=due_date,
        vat_enabled=vat_enabled,
        vat_rate=vat_rate,
        notes=_clean_text(payload.get("notes")),
        **totals,
    )
    for line in lines:
        invoice.lines.append(InvoiceLine(vat_rate=vat_rate if vat_enabled else 0.0, **line))
    db.session.add(invoice)
    db.session.flush()
    record_audit(
        "create",
        "invoice",
        invoice.id,
        {"invoice_number": invoice.invoice_number, "total": invoice.total},
    )
    db.session.commit()
    return invoice


def payment_request_link(token: str) -> str:
    base = (current_app.config.get("SITE_URL") or "").rstrip("/")
    return f"{base}/pay/{token}"


def create_payment_request(
    user: Profile,
    request_type: str,
    *,
    invoice: Invoice | None = None,
    amount: float | None = None,
    notes: str | None = None,
) -> tuple[PaymentRequest, str]:
    if request_type not in PAYMENT_REQUEST_TYPES:
        raise OperationError(f"Unknown payment request type '{request_type}'")
    if request_type == "card_payment" and invoice is None and amount is None:
        raise OperationError("Card payment requests need an invoice or an amount")

    token = secrets.token_urlsafe(32)
    payment_request = PaymentRequest(
        type=request_type,
        status="sent",
        user_id=user.id,
        invoice_id=invoice.id if invoice else None,
        customer_email=user.email,
        customer_name=user.full_name or "Customer",
        account_number=user.account_number,
        amount=amount if amount is not None else (invoice.total if invoice else None),
        due_date=invoice.due_date if invoice else None,
        expires_at=utcnow() + timedelta(days=PAYMENT_REQUEST_EXPIRY_DAYS),
        token_hash=hash_token(token),
        notes=notes or (f"Payment for invoice {invoice.invoice_number}" if invoice else None),
        created_by=current_actor_id(),
    )
    payment_request.events.append(PaymentRequestEvent(event_type="created"))
    db.session.add(payment_request)
    db.session.flush()
    return payment_request, token


def send_payment_request(
    user: Profile, request_type: str, *, invoice: Invoice | None = None, amount: float | None = None
) -> PaymentRequest:
    payment_request, token = create_payment_request(
        user, request_type, invoice=invoice, amount=amount
    )
    record_audit(
        "send",
        "payment_request",
        payment_request.id,
        {"type": request_type, "invoice_id": payment_request.invoice_id},
    )
    db.session.commit()

    template_name = "payment_link" if request_type == "card_payment" else "dd_setup_link"
    send_template_email(
        user.email,
        template_name,
        context={
            "full_name": user.full_name,
            "invoice_number": invoice.invoice_number if invoice else "",
            "amount": format_money(payment_request.amount),
            "link": payment_request_link(token),
            "expires": format_long_date(as_utc(payment_request.expires_at)),
        },
        user_id=user.id,
        metadata={"invoice_number": invoice.invoice_number if invoice else None},
        invoice_id=payment_request.invoice_id,
        payment_request_id=payment_request.id,
    )
    db.session.commit()
    return payment_request


def send_invoice(invoice: Invoice) -> Invoice:
    if invoice.status not in ("draft", "sent", "overdue"):
        raise OperationError(f"Invoices that are {invoice.status} cannot be sent")

    invoice.status = "sent" if invoice.status == "draft" else invoice.status
    payment_request, token = create_payment_request(invoice.user, "card_payment", invoice=invoice)
    record_audit("send", "invoice", invoice.id, {"invoice_number": invoice.invoice_number})
    db.session.commit()

    send_template_email(
        invoice.user.email,
        "invoice_sent",
        context={
            "full_name": invoice.user.full_name,
            "invoice_number": invoice.invoice_number,
            "amount": format_money(invoice.total),
            "due_date": format_long_date(invoice.due_date) if invoice.due_date else "on receipt",
            "link": payment_request_link(token),
        },
        user_id=invoice.user_id,
        metadata={"invoice_number": invoice.invoice_number, "amount": invoice.total},
        invoice_id=invoice.id,
        payment_request_id=payment_request.id,
    )
    db.session.commit()
    return invoice


def void_invoice(invoice: Invoice, reason: str | None = None) -> Invoice:
    if invoice.status == "paid":
        raise OperationError("Paid invoices cannot be voided")
    previous_status = invoice.status
    invoice.status = "void"
    record_audit(
        "void",
        "invoice",
        invoice.id,
        {"invoice_number": invoice.invoice_number, "previous_status": previous_status, "reason": reason},
    )
    db.session.commit()
    return invoice


def add_credit_note(invoice: Invoice, amount: object, reason: str | None = None) -> CreditNote:
    value = _coerce_float(amount)
    if value is None or value <= 0:
        raise OperationError("Credit amount must be greater than zero")
    if value > invoice.total:
        raise OperationError("Credit cannot exceed the invoice total")

    credit_note = CreditNote(
        invoice_id=invoice.id, user_id=invoice.user_id, amount=value, reason=_clean_text(reason)
    )
    db.session.add(credit_note)
    db.session.flush()
    record_audit(
        "create",
        "credit_note",
        credit_note.id,
        {"invoice_number": invoice.invoice_number, "amount": value},
    )
    db.session.commit()
    return credit_note


def mark_invoice_paid(
    invoice: Invoice,
    amount: float,
    *,
    method: str,
    reference: str,
    provider: str,
    reason: str | None = None,
) -> Receipt:
    """Record a successful payment; the caller commits and sends the receipt email."""

    receipt = Receipt(
        invoice_id=invoice.id,
        user_id=invoice.user_id,
        amount=amount,
        method=method,
        reference=reference,
        paid_at=utcnow(),
    )
    db.session.add(receipt)
    invoice.status = "paid"
    db.session.add(
        PaymentAttempt(
            user_id=invoice.user_id,
            invoice_id=invoice.id,
            amount=amount,
            status="success",
            provider=provider,
            provider_ref=reference,
            reason=reason,
        )
    )
    db.session.flush()
    return receipt


def _send_payment_receipt(invoice: Invoice, receipt: Receipt) -> None:
    send_template_email(
        invoice.user.email,
        "invoice_paid",
        context={
            "full_name": invoice.user.full_name,
            "invoice_number": invoice.invoice_number,
            "amount": format_money(receipt.amount),
            "reference": receipt.reference,
        },
        user_id=invoice.user_id,
        metadata={"invoice_number": invoice.invoice_number, "amount": receipt.amount},
        invoice_id=invoice.id,
    )
    db.session.commit()


def record_phone_payment(
    invoice_id: object,
    amount: object,
    admin_user_id: object,
    reference: str | None = None,
    notes: str | None = None,
) -> Receipt:
    invoice_key = _coerce_int(invoice_id)
    value = _coerce_float(amount)
    admin_id = _coerce_int(admin_user_id)
    if not invoice_key or not value or not admin_id:
        raise OperationError("Missing required data")
    if value < 0:
        raise OperationError("Amount must be positive")

    invoice = db.session.get(Invoice, invoice_key)
    if invoice is None:
        raise OperationError("Invoice not found", 404)
    if invoice.status == "paid":
        raise OperationError("Invoice already paid")
    if invoice.status == "void":
        raise OperationError("Invoice has been voided")

    reference = _clean_text(reference) or timestamp_reference("TEL")
    receipt = mark_invoice_paid(
        invoice,
        value,
        method="phone",
        reference=reference,
        provider="phone",
        reason=_clean_text(notes) or "Phone payment recorded by admin",
    )
    record_audit(
        "payment_received",
        "invoice",
        invoice.id,
        {
            "amount": value,
            "reference": reference,
            "method": "phone",
            "receipt_id": receipt.id,
            "invoice_number": invoice.invoice_number,
        },
        actor_id=admin_id,
    )
    db.session.commit()
    _send_payment_receipt(invoice, receipt)
    return receipt


def resolve_payment_request(token: str | None) -> PaymentRequest:
    if not token:
        raise OperationError("Missing token")
    payment_request = PaymentRequest.query.filter_by(token_hash=hash_token(token)).first()
    if payment_request is None:
        raise OperationError("Invalid request", 404)
    if payment_request.status not in PAYMENT_REQUEST_ACTIVE_STATUSES:
        raise OperationError("Request not active")
    expires_at = as_utc(payment_request.expires_at)
    if expires_at is not None and expires_at < utcnow():
        payment_request.status = "expired"
        payment_request.events.append(PaymentRequestEvent(event_type="expired"))
        db.session.commit()
        raise OperationError("Request expired")
    return payment_request


def validate_payment_token(token: str | None) -> dict:
    payment_request = resolve_payment_request(token)
    payment_request.last_opened_at = utcnow()
    if payment_request.status == "sent":
        payment_request.status = "opened"
    payment_request.events.append(PaymentRequestEvent(event_type="opened"))
    db.session.commit()

    payload = payment_request.to_dict()
    if payment_request.invoice_id:
        invoice = db.session.get(Invoice, payment_request.invoice_id)
        if invoice is not None:
            payload["invoice"] = invoice.to_dict(include_lines=True)
    return payload


# ---------------------------------------------------------------------------
# Direct Debit
# ---------------------------------------------------------------------------


def _mandate_reference(account_number: str | None) -> str:
    reference = timestamp_reference(f"DD-{account_number or 'OCC'}")
    while DDMandate.query.filter_by(mandate_reference=reference).first() is not None:
        reference = f"{reference}-{secrets.token_hex(2).upper()}"
    return reference


def submit_dd_mandate(
    user: Profile,
    data: dict,
    *,
    payment_request: PaymentRequest | None = None,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> DDMandate:
    holder = _clean_text(data.get("account_holder_name"))
    sort_code = re.sub(r"\D", "", str(data.get("sort_code") or ""))
    account_number = re.sub(r"\D", "", str(data.get("account_number") or ""))
    signature = _clean_text(data.get("signature_name"))

    if not holder or not signature:
        raise OperationError("Account holder and signature are required")
    if len(sort_code) != 6:
        raise OperationError("Sort code must be 6 digits")
    if len(account_number) != 8:
        raise OperationError("Account number must be 8 digits")
    if not is_truthy(data.get("consent")):
        raise OperationError("You must authorise the Direct Debit to continue")

    reference = _mandate_reference(user.account_number)
    mandate = DDMandate(
        user_id=user.id,
        status="pending",
        mandate_reference=reference,
        account_holder_name=holder,
        sort_code=f"{sort_code[:2]}-{sort_code[2:4]}-{sort_code[4:]}",
        bank_last4=account_number[-4:],
        billing_address=_clean_text(data.get("billing_address")),
        signature_name=signature,
        consent_timestamp=utcnow(),
        consent_ip=client_ip,
        consent_user_agent=(user_agent or "")[:255] or None,
        payment_request_id=payment_request.id if payment_request else None,
    )
    db.session.add(mandate)
    db.session.flush()

    if payment_request is not None:
        payment_request.status = "opened"
        payment_request.provider = "direct_debit"
        payment_request.provider_reference = reference
        payment_request.events.append(
            PaymentRequestEvent(
                event_type="dd_submitted",
                event_metadata={
                    "mandate_id": mandate.id,
                    "mandate_reference": reference,
                    "awaiting_verification": True,
                },
            )
        )

    record_audit(
        "create",
        "dd_mandate",
        mandate.id,
        {
            "mandate_reference": reference,
            "payment_request_id": mandate.payment_request_id,
            "status": "pending",
        },
        actor_id=user.id,
    )
    db.session.commit()

    send_template_email(
        user.email,
        "dd_status_pending",
        template_key="dd_status",
        context={
            "full_name": user.full_name,
            "mandate_reference": reference,
            "status_label": "received and awaiting verification",
        },
        user_id=user.id,
        metadata={"mandate_reference": reference, "new_status": "pending"},
        payment_request_id=mandate.payment_request_id,
    )
    notify_admins(
        "Direct Debit submitted",
        f"{user.full_name or user.email} ({user.account_number}) submitted mandate {reference}.",
        {"mandate_id": mandate.id},
    )
    db.session.commit()
    return mandate


def verify_dd_mandate(
    mandate_id: object,
    status: str | None,
    *,
    provider: str | None = None,
    provider_reference: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> dict:
    mandate_key = _coerce_int(mandate_id)
    if not mandate_key or not status:
        raise OperationError("Missing required data")
    if status not in DD_WORKFLOW_ACTIONS.values():
        raise OperationError("Invalid status")

    provider = _clean_text(provider)
    provider_reference = _clean_text(provider_reference)
    if status == "submitted_to_provider" and (not provider or not provider_reference):
        raise OperationError(
            "Provider and provider reference required for submitted_to_provider status"
        )
    if provider and provider not in DD_PROVIDERS:
        raise OperationError(f"Unknown provider '{provider}'")

    mandate = db.session.get(DDMandate, mandate_key)
    if mandate is None:
        raise OperationError("Mandate not found", 404)

    previous_status = mandate.status
    mandate.status = status
    if provider:
        mandate.provider = provider
    if provider_reference:
        mandate.provider_reference = provider_reference

    payment_request = mandate.payment_request
    if status in ("verified", "active") and payment_request is not None:
        if payment_request.status != "completed":
            payment_request.status = "completed"
            payment_request.completed_at = utcnow()
            payment_request.events.append(
                PaymentRequestEvent(
                    event_type="completed",
                    event_metadata={"mandate_id": mandate.id, "status": status},
                )
            )

    if status == "cancelled":
        audit_action = "cancel"
    elif status == "active":
        audit_action = "activate"
    else:
        audit_action = "update"
    record_audit(
        audit_action,
        "dd_mandate",
        mandate.id,
        {
            "previous_status": previous_status,
            "new_status": status,
            "mandate_reference": mandate.mandate_reference,
            "provider": mandate.provider,
            "notes": _clean_text(notes),
        },
        actor_id=actor_id,
    )
    db.session.commit()

    email_sent = False
    if previous_status != status:
        recipient = payment_request.customer_email if payment_request else None
        full_name = payment_request.customer_name if payment_request else None
        if not recipient and mandate.user is not None:
            recipient = mandate.user.email
            full_name = mandate.user.full_name
        email_sent = send_template_email(
            recipient,
            f"dd_status_{status}",
            template_key="dd_status",
            context={
                "full_name": full_name,
                "mandate_reference": mandate.mandate_reference,
                "status_label": status.replace("_", " "),
            },
            user_id=mandate.user_id,
            metadata={
                "mandate_reference": mandate.mandate_reference,
                "old_status": previous_status,
                "new_status": status,
            },
            payment_request_id=mandate.payment_request_id,
        )
        db.session.commit()

    return {
        "success": True,
        "mandate": mandate.to_dict(),
        "previous_status": previous_status,
        "email_sent": email_sent,
    }


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


def process_late_fees(today: date | None = None) -> dict:
    """Run the four overdue passes: status, late fee, warning, suspension."""

    today = today or date.today()
    logger = current_app.logger
    results = {
        "statusUpdates": 0,
        "lateFeesApplied": 0,
        "suspensionWarnings": 0,
        "servicesSuspended": 0,
        "errors": [],
    }

    overdue_threshold = today - timedelta(days=OVERDUE_DAYS)
    try:
        newly_overdue = Invoice.query.filter(
            Invoice.status == "sent", Invoice.due_date < overdue_threshold
        ).all()
        for invoice in newly_overdue:
            invoice.status = "overdue"
        db.session.commit()
        results["statusUpdates"] = len(newly_overdue)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to update overdue invoice statuses")
        results["errors"].append("Failed to update overdue statuses")

    late_fee_threshold = today - timedelta(days=GRACE_PERIOD_DAYS)
    late_fee_invoices = Invoice.query.filter(
        Invoice.status == "overdue",
        Invoice.due_date < late_fee_threshold,
        Invoice.late_fee_applied_at.is_(None),
    ).all()
    for invoice in late_fee_invoices:
        try:
            days_overdue = (today - invoice.due_date).days
            invoice.late_fee_amount = LATE_FEE_AMOUNT
            invoice.late_fee_applied_at = utcnow()
            invoice.total = invoice.total + LATE_FEE_AMOUNT
            record_audit(
                "late_fee_applied",
                "invoice",
                invoice.id,
                {"amount": LATE_FEE_AMOUNT, "days_overdue": days_overdue},
            )
            db.session.commit()
            send_template_email(
                invoice.user.email,
                "late_fee_applied",
                context={
                    "full_name": invoice.user.full_name,
                    "invoice_number": invoice.invoice_number,
                    "days_overdue": days_overdue,
                    "fee": format_money(LATE_FEE_AMOUNT),
                    "amount": format_money(invoice.total),
                },
                user_id=invoice.user_id,
                metadata={"invoice_number": invoice.invoice_number, "amount": invoice.total},
                invoice_id=invoice.id,
            )
            db.session.commit()
            results["lateFeesApplied"] += 1
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Late fee processing failed for %s", invoice.invoice_number)
            results["errors"].append(f"Failed to process {invoice.invoice_number}")

    warning_threshold = today - timedelta(days=SUSPENSION_WARNING_DAYS)
    warning_invoices = Invoice.query.filter(
        Invoice.status == "overdue",
        Invoice.overdue_notified_at.is_(None),
        Invoice.due_date <= warning_threshold,
    ).all()
    for invoice in warning_invoices:
        days_overdue = (today - invoice.due_date).days
        days_until_suspension = SUSPENSION_DAYS - days_overdue
        if not invoice.user.email or days_until_suspension <= 0:
            continue
        try:
            send_template_email(
                invoice.user.email,
                "suspension_warning",
                context={
                    "full_name": invoice.user.full_name,
                    "invoice_number": invoice.invoice_number,
                    "amount": format_money(invoice.total),
                    "days_overdue": days_overdue,
                    "days_until_suspension": days_until_suspension,
                },
                user_id=invoice.user_id,
                metadata={"invoice_number": invoice.invoice_number, "amount": invoice.total},
                invoice_id=invoice.id,
            )
            invoice.overdue_notified_at = utcnow()
            db.session.commit()
            results["suspensionWarnings"] += 1
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Suspension warning failed for %s", invoice.invoice_number)
            results["errors"].append(f"Failed to warn {invoice.invoice_number}")

    suspension_threshold = today - timedelta(days=SUSPENSION_DAYS)
    suspension_invoices = Invoice.query.filter(
        Invoice.status == "overdue",
        Invoice.overdue_notified_at.isnot(None),
        Invoice.due_date < suspension_threshold,
        Invoice.service_id.isnot(None),
    ).all()
    for invoice in suspension_invoices:
        service = invoice.service
        if service is None or service.status == "suspended":
            continue
        try:
            service.status = "suspended"
            service.suspension_reason = f"Non-payment: Invoice {invoice.invoice_number}"
            record_audit(
                "service_suspended",
                "service",
                service.id,
                {"reason": "non_payment", "invoice_id": invoice.id},
            )
            db.session.commit()
            send_template_email(
                invoice.user.email,
                "service_suspended",
                context={
                    "full_name": invoice.user.full_name,
                    "service_type": service.service_type,
                    "invoice_number": invoice.invoice_number,
                    "amount": format_money(invoice.total),
                },
                user_id=invoice.user_id,
                metadata={"invoice_number": invoice.invoice_number, "amount": invoice.total},
                invoice_id=invoice.id,
            )
            db.session.commit()
            results["servicesSuspended"] += 1
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Suspension failed for %s", invoice.invoice_number)
            results["errors"].append(f"Failed to suspend service for {invoice.invoice_number}")

    results["message"] = (
        f"Processed: {results['statusUpdates']} status updates, "
        f"{results['lateFeesApplied']} late fees, "
        f"{results['suspensionWarnings']} warnings, "
        f"{results['servicesSuspended']} suspensions"
    )
    logger.info(results["message"])
    return results


def _due_phrase(days_until_due: int) -> str:
    if days_until_due <= 0:
        return "today"
    if days_until_due == 1:
        return "tomorrow"
    return f"in {days_until_due} days"


def send_payment_reminders(
    today: date | None = None, days_before: int = PAYMENT_REMINDER_DAYS
) -> dict:
    today = today or date.today()
    window_end = today + timedelta(days=days_before)
    invoices = (
        Invoice.query.filter(
            Invoice.status.in_(UNPAID_INVOICE_STATUSES),
            Invoice.due_date >= today,
            Invoice.due_date <= window_end,
        )
        .order_by(Invoice.due_date, Invoice.id)
        .all()
    )
    dashboard_link = f"{current_app.config.get('SITE_URL', '').rstrip('/')}/dashboard"

    results = []
    errors = []
    for invoice in invoices:
        days_until_due = (invoice.due_date - today).days
        entry = {
            "invoiceId": invoice.id,
            "invoiceNumber": invoice.invoice_number,
            "daysUntilDue": days_until_due,
        }
        profile = invoice.user
        if profile is None or not profile.email:
            entry["status"] = "failed"
            errors.append(f"Invoice {invoice.invoice_number}: No email address")
            results.append(entry)
            continue

        delivered = send_template_email(
            profile.email,
            "due_today" if days_until_due == 0 else "due_soon",
            template_key="payment_reminder",
            context={
                "full_name": profile.full_name,
                "invoice_number": invoice.invoice_number,
                "amount": format_money(invoice.total),
                "due_date": format_long_date(invoice.due_date),
                "due_phrase": _due_phrase(days_until_due),
                "link": dashboard_link,
            },
            user_id=profile.id,
            invoice_id=invoice.id,
            metadata={
                "invoice_number": invoice.invoice_number,
                "amount": invoice.total,
                "days_until_due": days_until_due,
            },
        )
        entry["status"] = "sent" if delivered else "failed"
        if not delivered:
            errors.append(f"Invoice {invoice.invoice_number}: Delivery failed")
        results.append(entry)
    db.session.commit()

    sent = sum(1 for entry in results if entry["status"] == "sent")
    failed = len(results) - sent
    message = f"Processed {len(results)} invoices: {sent} sent, {failed} failed"
    current_app.logger.info("Payment reminders: %s", message)
    return {
        "message": message,
        "total": len(results),
        "sent": sent,
        "failed": failed,
        "errors": errors,
        "results": results,
    }


def _booking_address(booking: InstallationBooking) -> tuple[str, str]:
    if booking.order_type == "guest_order":
        order = db.session.get(GuestOrder, booking.order_id)
    else:
        order = db.session.get(Order, booking.order_id)
    if order is None:
        return "", "your service"
    parts = [order.address_line1, order.city, order.postcode]
    return ", ".join(part for part in parts if part), order.plan_name


def send_installation_reminders(today: date | None = None) -> dict:
    tomorrow = (today or date.today()) + timedelta(days=1)
    bookings = (
        InstallationBooking.query.join(InstallationSlot)
        .filter(
            InstallationSlot.slot_date == tomorrow,
            InstallationBooking.reminder_sent.is_(False),
            InstallationBooking.status == "confirmed",
        )
        .order_by(InstallationBooking.id)
        .all()
    )

    results = []
    for booking in bookings:
        address, plan_name = _booking_address(booking)
        delivered = send_template_email(
            booking.customer_email,
            "installation_reminder",
            context={
                "full_name": booking.customer_name,
                "plan_name": plan_name,
                "slot_date": format_long_date(booking.slot.slot_date),
                "slot_label": booking.slot.label,
                "address": address or "the address on your order",
            },
            metadata={"booking_id": booking.id, "slot_date": booking.slot.slot_date.isoformat()},
        )
        entry = {"bookingId": booking.id, "email": booking.customer_email}
        if delivered:
            booking.reminder_sent = True
            booking.reminder_sent_at = utcnow()
            entry["status"] = "sent"
        else:
            entry.update({"status": "failed", "error": "Delivery failed"})
        results.append(entry)
    db.session.commit()

    current_app.logger.info(
        "Installation reminders for %s: %s processed", tomorrow.isoformat(), len(results)
    )
    return {"date": tomorrow.isoformat(), "processed": len(results), "results": results}


def _generate_invoice_for(settings: BillingSettings, today: date) -> Invoice | None:
    user = settings.user
    period_start = settings.next_invoice_date
    services = [
        service
        for service in user.services
        if service.status == "active" and (service.price_monthly or 0) > 0
    ]
    if not services:
        return None

    duplicate = Invoice.query.filter_by(
        user_id=user.id, billing_period_start=period_start
    ).first()
    if duplicate is not None:
        settings.next_invoice_date = advance_next_invoice_date(
            settings.billing_mode, settings.billing_day, period_start
        )
        db.session.commit()
        return None

    period_end = calculate_billing_period_end(period_start)
    period_label = f"{period_start.strftime('%d %b')} - {period_end.strftime('%d %b %Y')}"
    lines = [
        {
            "description": f"{service.service_type.title()} - {service.plan_name or 'Monthly service'} ({period_label})",
            "qty": 1.0,
            "unit_price": service.price_monthly,
            "line_total": service.price_monthly,
        }
        for service in services
    ]
    vat_rate = settings.vat_rate_default if settings.vat_enabled_default else 0.0
    invoice = Invoice(
        user_id=user.id,
        service_id=services[0].id if len(services) == 1 else None,
        invoice_number=next_invoice_number(),
        status="sent",
        issue_date=today,
        due_date=today + timedelta(days=settings.payment_terms_days),
        vat_enabled=settings.vat_enabled_default,
        vat_rate=settings.vat_rate_default,
        billing_period_start=period_start,
        billing_period_end=period_end,
        **calculate_invoice_totals(lines, settings.vat_enabled_default, settings.vat_rate_default),
    )
    for line in lines:
        invoice.lines.append(InvoiceLine(vat_rate=vat_rate, **line))
    db.session.add(invoice)
    db.session.flush()

    payment_request, token = create_payment_request(user, "card_payment", invoice=invoice)
    record_audit(
        "auto_generate",
        "invoice",
        invoice.id,
        {
            "invoice_number": invoice.invoice_number,
            "billing_period_start": period_start.isoformat(),
            "billing_period_end": period_end.isoformat(),
            "total": invoice.total,
        },
    )
    settings.next_invoice_date = advance_next_invoice_date(
        settings.billing_mode, settings.billing_day, period_start
    )
    db.session.commit()

    send_template_email(
        user.email,
        "invoice_sent",
        context={
            "full_name": user.full_name,
            "invoice_number": invoice.invoice_number,
            "amount": format_money(invoice.total),
            "due_date": format_long_date(invoice.due_date),
            "link": payment_request_link(token),
        },
        user_id=user.id,
        metadata={"invoice_number": invoice.invoice_number, "amount": invoice.total},
        invoice_id=invoice.id,
        payment_request_id=payment_request.id,
    )
    db.session.commit()
    return invoice


def generate_invoices(today: date | None = None) -> dict:
    today = today or date.today()
    due_settings = (
        BillingSettings.query.filter(
            BillingSettings.next_invoice_date.isnot(None),
            BillingSettings.next_invoice_date <= today,
        )
        .order_by(BillingSettings.id)
        .all()
    )

    results = {"generated": 0, "skipped": 0, "invoices": [], "errors": []}
    for settings in due_settings:
        account_number = settings.user.account_number
        try:
            invoice = _generate_invoice_for(settings, today)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Invoice generation failed for %s", account_number)
            results["errors"].append(f"Failed to generate invoice for {account_number}")
            continue
        if invoice is None:
            results["skipped"] += 1
            continue
        results["generated"] += 1
        results["invoices"].append(invoice.invoice_number)

    current_app.logger.info(
        "Generated %s invoices (%s skipped)", results["generated"], results["skipped"]
    )
    return results


# ---------------------------------------------------------------------------
# Installation schedule
# ---------------------------------------------------------------------------


def list_available_slots(start: date | None = None, days: int = 28) -> list[InstallationSlot]:
    first_day = start or date.today() + timedelta(days=1)
    return (
        InstallationSlot.query.filter(
            InstallationSlot.slot_date >= first_day,
            InstallationSlot.slot_date < first_day + timedelta(days=days),
            InstallationSlot.is_active.is_(True),
            InstallationSlot.booked_count < InstallationSlot.capacity,
        )
        .order_by(InstallationSlot.slot_date, InstallationSlot.slot_time)
        .all()
    )


def create_slot(payload: dict) -> InstallationSlot:
    slot_date = parse_iso_date(payload.get("slot_date"))
    slot_time = payload.get("slot_time")
    capacity = _coerce_int(payload.get("capacity", 3))
    if slot_date is None:
        raise OperationError("Slot date must be in YYYY-MM-DD format")
    if slot_time not in SLOT_TIME_LABELS:
        raise OperationError(f"Slot time must be one of {', '.join(SLOT_TIME_LABELS)}")
    if capacity is None or capacity < 1:
        raise OperationError("Capacity must be at least 1")

    slot = InstallationSlot(slot_date=slot_date, slot_time=slot_time, capacity=capacity)
    db.session.add(slot)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise OperationError("A slot already exists for that window", 409) from exc
    record_audit(
        "create",
        "installation_slot",
        slot.id,
        {"slot_date": slot_date.isoformat(), "slot_time": slot_time, "capacity": capacity},
    )
    db.session.commit()
    return slot


def update_slot(slot: InstallationSlot, payload: dict) -> InstallationSlot:
    if "capacity" in payload:
        capacity = _coerce_int(payload.get("capacity"))
        if capacity is None or capacity < slot.booked_count or capacity < 1:
            raise OperationError("Capacity cannot be lower than the bookings already taken")
        slot.capacity = capacity
    if "is_active" in payload:
        slot.is_active = is_truthy(payload.get("is_active"))
    record_audit(
        "update",
        "installation_slot",
        slot.id,
        {"capacity": slot.capacity, "is_active": slot.is_active},
    )
    db.session.commit()
    return slot


def book_installation(
    payload: dict, user: Profile | None = None, *, admin: bool = False
) -> InstallationBooking:
    slot_id = _coerce_int(payload.get("slot_id"))
    order_id = _coerce_int(payload.get("order_id"))
    order_type = payload.get("order_type") or "order"
    if not slot_id or not order_id:
        raise OperationError("A slot and an order are required")
    if order_type not in ("order", "guest_order"):
        raise OperationError("Order type must be 'order' or 'guest_order'")

    if order_type == "order":
        order = db.session.get(Order, order_id)
        if order is None or (not admin and (user is None or order.user_id != user.id)):
            raise OperationError("Order not found", 404)
        default_name, default_email = order.user.full_name, order.user.email
        default_phone = order.user.phone
    else:
        order = db.session.get(GuestOrder, order_id)
        if user is not None:
            expected_email = user.email
        else:
            expected_email = (payload.get("customer_email") or "").strip().lower()
        if order is None or (not admin and order.email != expected_email):
            raise OperationError("Order not found", 404)
        default_name, default_email, default_phone = order.full_name, order.email, order.phone

    customer_name = _clean_text(payload.get("customer_name")) or default_name
    customer_email = _clean_text(payload.get("customer_email")) or default_email
    customer_phone = _clean_text(payload.get("customer_phone")) or default_phone
    if not customer_name or not customer_email or not customer_phone:
        raise OperationError("Customer name, email and phone are required")

    slot = db.session.get(InstallationSlot, slot_id)
    if slot is None:
        raise OperationError("Installation slot not found", 404)

    reserved = InstallationSlot.query.filter(
        InstallationSlot.id == slot.id,
        InstallationSlot.is_active.is_(True),
        InstallationSlot.booked_count < InstallationSlot.capacity,
    ).update(
        {InstallationSlot.booked_count: InstallationSlot.booked_count + 1},
        synchronize_session=False,
    )
    if not reserved:
        db.session.rollback()
        raise OperationError("That installation slot is fully booked", 409)

    booking = InstallationBooking(
        slot_id=slot.id,
        order_id=order.id,
        order_type=order_type,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        notes=_clean_text(payload.get("notes")),
        status="confirmed",
    )
    db.session.add(booking)
    if order_type == "order":
        order.installation_date = slot.slot_date
    db.session.commit()
    db.session.refresh(slot)
    return booking


def update_booking(booking: InstallationBooking, payload: dict) -> InstallationBooking:
    previous_status = booking.status
    if "status" in payload:
        status = payload.get("status")
        if status not in BOOKING_STATUS_OPTIONS:
            raise OperationError(f"Unknown booking status '{status}'")
        booking.status = status
        if status == "cancelled" and previous_status != "cancelled":
            booking.slot.booked_count = max(booking.slot.booked_count - 1, 0)
        elif previous_status == "cancelled" and status != "cancelled":
            if not booking.slot.is_available:
                raise OperationError("That installation slot is fully booked", 409)
            booking.slot.booked_count += 1

    if "technician_id" in payload:
        technician_id = _coerce_int(payload.get("technician_id"))
        if technician_id is not None:
            technician = db.session.get(Technician, technician_id)
            if technician is None or not technician.is_active:
                raise OperationError("Technician not found or inactive")
        booking.technician_id = technician_id

    if "notes" in payload:
        booking.notes = _clean_text(payload.get("notes"))

    record_audit(
        "update",
        "installation_booking",
        booking.id,
        {
            "old_status": previous_status,
            "new_status": booking.status,
            "technician_id": booking.technician_id,
        },
    )
    db.session.commit()
    return booking


def create_technician(payload: dict) -> Technician:
    full_name = _clean_text(payload.get("full_name"))
    email = (payload.get("email") or "").strip().lower()
    phone = _clean_text(payload.get("phone"))
    if not full_name or not email or not phone:
        raise OperationError("Name, email and phone are required")
    if not EMAIL_PATTERN.match(email):
        raise OperationError("Enter a valid email address")
    if Technician.query.filter_by(email=email).first() is not None:
        raise OperationError("A technician with that email already exists")

    specializations = payload.get("specializations") or []
    if isinstance(specializations, str):
        specializations = [item.strip() for item in specializations.split(",") if item.strip()]
    technician = Technician(
        full_name=full_name,
        email=email,
        phone=phone,
        specializations=specializations,
        is_active=is_truthy(payload.get("is_active", True)),
        notes=_clean_text(payload.get("notes")),
    )
    db.session.add(technician)
    db.session.flush()
    record_audit("create", "technician", technician.id, {"email": email})
    db.session.commit()
    return technician


# ---------------------------------------------------------------------------
# Account deletion
# ---------------------------------------------------------------------------


def delete_account(
    user: Profile,
    confirm_email: str | None,
    password: str | None,
    reason: str | None = None,
) -> dict:
    limit = _coerce_int(current_app.config.get("DELETE_ACCOUNT_RATE_LIMIT")) or 5
    if not check_rate_limit(str(user.id), "account_deletion", limit):
        current_app.logger.warning("Account deletion rate limit hit for user %s", user.id)
        raise OperationError(
            "Too many deletion attempts. Please wait an hour before trying again.", 429
        )
    if (confirm_email or "").strip().lower() != (user.email or "").lower():
        raise OperationError("Email confirmation does not match your account email")
    if not password:
        raise OperationError("Password is required to confirm account deletion")
    if not user.check_password(password):
        current_app.logger.warning("Invalid password on account deletion for user %s", user.id)
        raise OperationError(
            "Invalid password. Please enter your current password to confirm deletion.", 401
        )

    active_services = Service.query.filter_by(user_id=user.id, status="active").all()
    if active_services:
        raise OperationError(
            "You have active services. Please cancel all services before deleting your account.",
            details={"activeServices": [service.service_type for service in active_services]},
        )
    unpaid = Invoice.query.filter(
        Invoice.user_id == user.id, Invoice.status.in_(UNPAID_INVOICE_STATUSES)
    ).all()
    if unpaid:
        raise OperationError(
            "You have unpaid invoices. Please settle all outstanding balances "
            "before deleting your account.",
            details={
                "unpaidInvoices": [
                    {"number": invoice.invoice_number, "amount": invoice.total}
                    for invoice in unpaid
                ]
            },
        )

    user_id = user.id
    email = user.email
    full_name = user.full_name
    account_number = user.account_number

    try:
        db.session.add(
            AccountDeletion(
                original_user_id=user_id,
                email=email,
                full_name=full_name,
                account_number=account_number,
                reason=_clean_text(reason) or "User requested account deletion",
                deleted_by="user_request",
            )
        )
        ticket_ids = select(SupportTicket.id).where(SupportTicket.user_id == user_id)
        invoice_ids = select(Invoice.id).where(Invoice.user_id == user_id)
        request_ids = select(PaymentRequest.id).where(PaymentRequest.user_id == user_id)

        TicketMessage.query.filter(
            or_(TicketMessage.ticket_id.in_(ticket_ids), TicketMessage.user_id == user_id)
        ).delete(synchronize_session=False)
        SupportTicket.query.filter(SupportTicket.user_id == user_id).delete(
            synchronize_session=False
        )
        SupportTicket.query.filter(SupportTicket.assigned_to == user_id).update(
            {SupportTicket.assigned_to: None}, synchronize_session=False
        )
        DDMandate.query.filter(DDMandate.user_id == user_id).delete(synchronize_session=False)
        BillingSettings.query.filter(BillingSettings.user_id == user_id).delete(
            synchronize_session=False
        )
        Receipt.query.filter(Receipt.user_id == user_id).delete(synchronize_session=False)
        PaymentAttempt.query.filter(PaymentAttempt.user_id == user_id).delete(
            synchronize_session=False
        )
        CreditNote.query.filter(CreditNote.invoice_id.in_(invoice_ids)).delete(
            synchronize_session=False
        )
        InvoiceLine.query.filter(InvoiceLine.invoice_id.in_(invoice_ids)).delete(
            synchronize_session=False
        )
        PaymentRequestEvent.query.filter(PaymentRequestEvent.request_id.in_(request_ids)).delete(
            synchronize_session=False
        )
        PaymentRequest.query.filter(PaymentRequest.user_id == user_id).delete(
            synchronize_session=False
        )
        PaymentRequest.query.filter(PaymentRequest.created_by == user_id).update(
            {PaymentRequest.created_by: None}, synchronize_session=False
        )
        Invoice.query.filter(Invoice.user_id == user_id).delete(synchronize_session=False)
        Service.query.filter(Service.user_id == user_id).delete(synchronize_session=False)
        Order.query.filter(Order.user_id == user_id).delete(synchronize_session=False)
        GuestOrder.query.filter(GuestOrder.user_id == user_id).update(
            {GuestOrder.user_id: None}, synchronize_session=False
        )
        AuditLog.query.filter(AuditLog.actor_user_id == user_id).update(
            {AuditLog.actor_user_id: None}, synchronize_session=False
        )
        UserRole.query.filter(UserRole.user_id == user_id).delete(synchronize_session=False)
        db.session.expire_all()
        Profile.query.filter(Profile.id == user_id).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Account deletion failed for user %s", user_id)
        raise OperationError("Failed to delete account", 500) from exc

    current_app.logger.info("Deleted account %s (%s)", account_number, user_id)
    send_template_email(
        email,
        "account_deleted",
        context={"full_name": full_name, "account_number": account_number},
        metadata={"account_number": account_number},
    )
    db.session.commit()
    return {"success": True, "message": "Account deleted successfully"}


# ---------------------------------------------------------------------------
# Admin overview and printable documents
# ---------------------------------------------------------------------------


def build_admin_overview(today: date | None = None) -> dict:
    today = today or date.today()
    overdue = (
        Invoice.query.filter(
            or_(
                Invoice.status == "overdue",
                and_(Invoice.status == "sent", Invoice.due_date < today),
            )
        )
        .order_by(Invoice.due_date.asc())
        .all()
    )
    due_soon = (
        Invoice.query.filter(
            Invoice.status == "sent",
            Invoice.due_date >= today,
            Invoice.due_date <= today + timedelta(days=7),
        )
        .order_by(Invoice.due_date.asc())
        .all()
    )

    def _queue_entry(invoice: Invoice) -> dict:
        return {
            **invoice.to_dict(),
            "customer_name": invoice.user.full_name,
            "account_number": invoice.user.account_number,
        }

    return {
        "counts": {
            "pending_orders": Order.query.filter_by(status="pending").count(),
            "pending_guest_orders": GuestOrder.query.filter_by(status="pending").count(),
            "open_tickets": SupportTicket.query.filter(
                SupportTicket.status.in_(("open", "in_progress"))
            ).count(),
            "overdue_invoices": len(overdue),
            "pending_dd_mandates": DDMandate.query.filter_by(status="pending").count(),
            "customers": Profile.query.count(),
        },
        "overdue_invoices": [_queue_entry(invoice) for invoice in overdue],
        "due_soon_invoices": [_queue_entry(invoice) for invoice in due_soon],
        "recent_activity": [entry.to_dict() for entry in fetch_recent_audit_logs()],
    }


def _customer_lines(profile: Profile | None) -> list[str]:
    if profile is None:
        return []
    address = [profile.address_line1, profile.address_line2, profile.city, profile.postcode]
    return [profile.full_name or profile.email, *[part for part in address if part]]


def render_invoice_html(invoice: Invoice, payment_url: str | None = None) -> str:
    return render_template(
        "invoice.html",
        invoice=invoice,
        payment_url=payment_url,
        customer_lines=_customer_lines(invoice.user),
        account_number=invoice.user.account_number if invoice.user else None,
    )


def render_receipt_html(receipt: Receipt) -> str:
    profile = receipt.invoice.user if receipt.invoice else None
    return render_template(
        "receipt.html",
        receipt=receipt,
        paid_at=as_utc(receipt.paid_at),
        customer_lines=_customer_lines(profile),
        account_number=profile.account_number if profile else None,
    )


# ---------------------------------------------------------------------------
# Card payments through the remote Worldpay function
# ---------------------------------------------------------------------------


def process_card_payment(
    invoice: Invoice,
    payload: dict,
    *,
    client: FunctionsClient | None = None,
    payment_request: PaymentRequest | None = None,
) -> Receipt:
    if invoice.status == "paid":
        raise OperationError("Invoice already paid")
    if invoice.status == "void":
        raise OperationError("Invoice has been voided")
    card_session = _clean_text(payload.get("card_session_href"))
    if not card_session:
        raise OperationError("Missing card session")

    client = client or build_functions_client()
    try:
        result = client.worldpay(
            "process-payment",
            cardSessionHref=card_session,
            cvvSessionHref=_clean_text(payload.get("cvv_session_href")),
            invoiceId=invoice.id,
            invoiceNumber=invoice.invoice_number,
            amount=invoice.total,
            currency=invoice.currency,
            customerEmail=invoice.user.email,
            customerName=invoice.user.full_name,
            userId=invoice.user_id,
        )
    except FunctionsError as exc:
        db.session.add(
            PaymentAttempt(
                user_id=invoice.user_id,
                invoice_id=invoice.id,
                amount=invoice.total,
                status="failed",
                provider="worldpay",
                reason=str(exc)[:255],
            )
        )
        if payment_request is not None:
            payment_request.events.append(
                PaymentRequestEvent(event_type="payment_failed", event_metadata={"error": str(exc)})
            )
        db.session.commit()
        current_app.logger.warning(
            "Card payment for %s failed: %s", invoice.invoice_number, exc
        )
        raise

    reference = _clean_text(result.get("paymentRef")) or timestamp_reference("WP")
    receipt = mark_invoice_paid(
        invoice, invoice.total, method="worldpay_card", reference=reference, provider="worldpay"
    )
    if payment_request is not None:
        payment_request.status = "completed"
        payment_request.completed_at = utcnow()
        payment_request.provider = "worldpay"
        payment_request.provider_reference = reference
        payment_request.events.append(
            PaymentRequestEvent(event_type="completed", event_metadata={"receipt_id": receipt.id})
        )
    record_audit(
        "payment_received",
        "invoice",
        invoice.id,
        {
            "amount": receipt.amount,
            "reference": reference,
            "method": "worldpay_card",
            "receipt_id": receipt.id,
            "invoice_number": invoice.invoice_number,
        },
        actor_id=current_actor_id() or invoice.user_id,
    )
    db.session.commit()
    _send_payment_receipt(invoice, receipt)
    return receipt


def pay_payment_request(token: str | None, payload: dict) -> Receipt:
    payment_request = resolve_payment_request(token)
    if payment_request.type != "card_payment" or not payment_request.invoice_id:
        raise OperationError("This link is not for a card payment")
    invoice = db.session.get(Invoice, payment_request.invoice_id)
    if invoice is None:
        raise OperationError("Invoice not found", 404)
    return process_card_payment(invoice, payload, payment_request=payment_request)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    app.jinja_env.filters.setdefault("money", format_money)
    app.jinja_env.filters.setdefault("long_date", format_long_date)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "occta.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    smtp_port_env = os.environ.get("SMTP_PORT")
    try:
        smtp_port = int(smtp_port_env) if smtp_port_env else 587
    except ValueError:
        smtp_port = 587

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL", f"sqlite:///{db_path}"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SITE_URL": os.environ.get("SITE_URL", "https://occta.co.uk"),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": smtp_port,
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_USE_TLS": os.environ.get("SMTP_USE_TLS", "true"),
        "MAIL_FROM_EMAIL": os.environ.get("MAIL_FROM_EMAIL"),
        "MAIL_FROM_NAME": os.environ.get("MAIL_FROM_NAME"),
        "EMAIL_SENDER": None,
        "ADMIN_NOTIFY_EMAIL": os.environ.get("ADMIN_NOTIFY_EMAIL"),
        "CRON_JOB_SECRET": os.environ.get("CRON_JOB_SECRET"),
        "FUNCTIONS_BASE_URL": os.environ.get("FUNCTIONS_BASE_URL"),
        "FUNCTIONS_API_KEY": os.environ.get("FUNCTIONS_API_KEY"),
        "FUNCTIONS_TIMEOUT": float(os.environ.get("FUNCTIONS_TIMEOUT", "15")),
        "DELETE_ACCOUNT_RATE_LIMIT": int(os.environ.get("DELETE_ACCOUNT_RATE_LIMIT", "5")),
        "TICKET_STREAM_TIMEOUT": float(os.environ.get("TICKET_STREAM_TIMEOUT", "25")),
    }
    for key, fallback in COMPANY_DEFAULTS.items():
        default_config[key] = os.environ.get(key, fallback)

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    app.extensions["ticket_messages"] = TicketMessageBroker()
    db.init_app(app)

    register_routes(app)

    with app.app_context():
        db.create_all()

    return app


def load_current_user() -> Profile | None:
    user_id = session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    user = db.session.get(Profile, user_id)
    if user is None:
        session.pop(SESSION_USER_KEY, None)
    return user


def login_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        user = load_current_user()
        if user is None:
            return jsonify({"error": "Login required."}), 401
        g.current_user = user
        return func(user, *args, **kwargs)

    return wrapper


def admin_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        user = load_current_user()
        if user is None:
            return jsonify({"error": "Administrator login required."}), 401
        if not has_role(user.id, "admin"):
            current_app.logger.warning("User %s denied admin access to %s", user.id, request.path)
            return jsonify({"error": "Administrator access required."}), 403
        g.current_user = user
        return func(user, *args, **kwargs)

    return wrapper


def cron_secret_required(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("CRON_JOB_SECRET")
        provided = request.headers.get("X-Cron-Secret")
        if not expected:
            current_app.logger.warning("CRON_JOB_SECRET is not set; refusing %s", request.path)
            return jsonify({"error": "Scheduled jobs are not configured"}), 503
        if not secrets.compare_digest(provided or "", expected):
            current_app.logger.warning("Rejected scheduled job call to %s", request.path)
            return jsonify({"error": "Unauthorized"}), 401
        return func(*args, **kwargs)

    return wrapper


def client_ip_address() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


# ---------------------------------------------------------------------------
# Services and communications
# ---------------------------------------------------------------------------


def create_service(user: Profile, payload: dict) -> Service:
    service_type = payload.get("service_type")
    if service_type not in SERVICE_TYPES:
        raise OperationError(f"Service type must be one of {', '.join(SERVICE_TYPES)}")
    status = payload.get("status") or "pending"
    if status not in SERVICE_STATUS_OPTIONS:
        raise OperationError(f"Unknown service status '{status}'")
    price = _coerce_float(payload.get("price_monthly", 0))
    if price is None or price < 0:
        raise OperationError("Monthly price must be zero or more")
    identifiers = payload.get("identifiers") or {}
    if not isinstance(identifiers, dict):
        raise OperationError("Identifiers must be an object")

    service = Service(
        user_id=user.id,
        service_type=service_type,
        status=status,
        plan_name=_clean_text(payload.get("plan_name")),
        price_monthly=price,
        identifiers=identifiers,
        supplier_reference=_clean_text(payload.get("supplier_reference")),
        activation_date=parse_iso_date(payload.get("activation_date"))
        or (date.today() if status == "active" else None),
    )
    db.session.add(service)
    db.session.flush()
    record_audit(
        "create",
        "service",
        service.id,
        {"service_type": service_type, "status": status, "account_number": user.account_number},
    )
    db.session.commit()
    return service


def update_service(service: Service, payload: dict) -> Service:
    previous_status = service.status
    if "status" in payload:
        status = payload.get("status")
        if status not in SERVICE_STATUS_OPTIONS:
            raise OperationError(f"Unknown service status '{status}'")
        service.status = status
        if status == "active":
            service.suspension_reason = None
            service.activation_date = service.activation_date or date.today()
        elif status == "suspended":
            service.suspension_reason = _clean_text(payload.get("suspension_reason")) or (
                service.suspension_reason or "Suspended by admin"
            )
    if "price_monthly" in payload:
        price = _coerce_float(payload.get("price_monthly"))
        if price is None or price < 0:
            raise OperationError("Monthly price must be zero or more")
        service.price_monthly = price
    if "plan_name" in payload:
        service.plan_name = _clean_text(payload.get("plan_name"))
    if "identifiers" in payload:
        identifiers = payload.get("identifiers") or {}
        if not isinstance(identifiers, dict):
            raise OperationError("Identifiers must be an object")
        service.identifiers = identifiers
    if "supplier_reference" in payload:
        service.supplier_reference = _clean_text(payload.get("supplier_reference"))

    record_audit(
        "update",
        "service",
        service.id,
        {"old_status": previous_status, "new_status": service.status},
    )
    db.session.commit()
    return service


def fetch_communications_timeline(
    user: Profile, limit: int = COMMUNICATION_TIMELINE_LIMIT
) -> list[dict]:
    entries = (
        CommunicationLog.query.filter(
            or_(
                CommunicationLog.user_id == user.id,
                func.lower(CommunicationLog.recipient_email) == user.email.lower(),
            )
        )
        .order_by(CommunicationLog.created_at.desc(), CommunicationLog.id.desc())
        .limit(limit)
        .all()
    )
    return [entry.to_timeline_entry() for entry in entries]


def register_routes(app: Flask) -> None:
    def _payload() -> dict:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise OperationError("Request body must be a JSON object")
        return payload

    def _int_arg(name: str, default: int) -> int:
        value = _coerce_int(request.args.get(name))
        return value if value and value > 0 else default

    def _functions_client() -> FunctionsClient:
        return build_functions_client(app)

    def _owned_invoice(user: Profile, invoice_id: int) -> Invoice:
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is None or invoice.user_id != user.id:
            raise OperationError("Invoice not found", 404)
        return invoice

    def _owned_ticket(user: Profile, ticket_id: int) -> SupportTicket:
        ticket = db.session.get(SupportTicket, ticket_id)
        if ticket is None or ticket.user_id != user.id:
            raise OperationError("Ticket not found", 404)
        return ticket

    def _require_admin_session() -> Profile:
        user = load_current_user()
        if user is None:
            raise OperationError("Administrator login required.", 401)
        if not has_role(user.id, "admin"):
            raise OperationError("Administrator access required.", 403)
        g.current_user = user
        return user

    @app.errorhandler(OperationError)
    def handle_operation_error(error: OperationError):
        db.session.rollback()
        if error.status_code >= 500:
            current_app.logger.error("Request to %s failed: %s", request.path, error)
        return error_response(error)

    @app.errorhandler(FunctionsError)
    def handle_functions_error(error: FunctionsError):
        current_app.logger.warning("Remote function call from %s failed: %s", request.path, error)
        return jsonify({"success": False, "error": str(error)}), 502

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error: SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("Database error while handling %s", request.path)
        return jsonify({"success": False, "error": "Something went wrong. Please try again."}), 500

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({"success": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({"success": False, "error": "Method not allowed"}), 405

    # -- Authentication -----------------------------------------------------

    @app.post("/auth/signup")
    def signup():
        payload = _payload()
        password = payload.get("password") or ""
        if len(password) < 8:
            raise OperationError("Password must be at least 8 characters long")
        profile = create_customer(payload, password=password, audit=False)
        session[SESSION_USER_KEY] = profile.id
        app.logger.info("New customer signed up: %s", profile.account_number)
        return jsonify({"user": profile.to_dict(), "roles": profile.role_names}), 201

    @app.post("/auth/login")
    def login():
        payload = _payload()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        profile = Profile.query.filter_by(email=email).first() if email else None
        if profile is None or not profile.check_password(password):
            app.logger.warning("Failed login attempt for %s", email or "<blank>")
            return jsonify({"error": "Invalid email or password."}), 401
        session.clear()
        session[SESSION_USER_KEY] = profile.id
        return jsonify({"user": profile.to_dict(), "roles": profile.role_names})

    @app.post("/auth/logout")
    def logout():
        session.pop(SESSION_USER_KEY, None)
        return jsonify({"success": True})

    @app.get("/api/me")
    @login_required
    def current_profile(user: Profile):
        return jsonify(
            {
                "user": user.to_dict(),
                "roles": user.role_names,
                "is_admin": has_role(user.id, "admin"),
            }
        )

    # -- Storefront ---------------------------------------------------------

    @app.get("/api/company")
    def company_details():
        return jsonify({key.lower(): app.config.get(key) for key in COMPANY_DEFAULTS})

    @app.get("/api/plans")
    def list_plans():
        service_type = request.args.get("service_type")
        if service_type:
            if service_type not in SERVICE_TYPES:
                raise OperationError(f"Unknown service type '{service_type}'")
            plans = get_plans_by_service(service_type)
        else:
            plans = PLAN_CATALOGUE
        return jsonify({"plans": plans})

    @app.get("/api/plans/<plan_id>")
    def plan_detail(plan_id: str):
        plan = get_plan_by_id(plan_id)
        if plan is None:
            raise OperationError("Plan not found", 404)
        return jsonify({"plan": plan, "addons": get_addons_by_service(plan["service_type"])})

    @app.get("/api/addons")
    def list_addons():
        service_type = request.args.get("service_type")
        addons = get_addons_by_service(service_type) if service_type else ADDON_CATALOGUE
        return jsonify({"addons": addons})

    @app.post("/api/bundle/quote")
    def bundle_quote():
        payload = _payload()
        plans = resolve_plans(_plan_ids_from(payload))
        return jsonify({"plans": plans, **calculate_bundle_discount(plans)})

    @app.post("/api/guest-orders")
    def create_guest_order():
        orders = place_guest_order(_payload())
        return jsonify({"success": True, "orders": [order.to_dict() for order in orders]}), 201

    @app.post("/api/guest-orders/lookup")
    def guest_order_lookup():
        payload = _payload()
        order = lookup_guest_order(payload.get("order_number"), payload.get("email"))
        if order is None:
            raise OperationError("We couldn't find an order with those details.", 404)
        return jsonify({"order": order.to_dict()})

    @app.get("/api/installation-slots")
    def available_installation_slots():
        start = parse_iso_date(request.args.get("start"))
        slots = list_available_slots(start, _int_arg("days", 28))
        return jsonify({"slots": [slot.to_dict() for slot in slots]})

    @app.post("/api/installation-bookings")
    def create_installation_booking():
        booking = book_installation(_payload(), load_current_user())
        return jsonify({"success": True, "booking": booking.to_dict()}), 201

    # -- Customer dashboard -------------------------------------------------

    @app.get("/api/dashboard/profile")
    @login_required
    def dashboard_profile(user: Profile):
        return jsonify(
            {
                "profile": user.to_dict(),
                "billing_settings": get_billing_settings_payload(user),
            }
        )

    @app.patch("/api/dashboard/profile")
    @login_required
    def update_dashboard_profile(user: Profile):
        profile = update_customer_profile(user, _payload())
        return jsonify({"profile": profile.to_dict()})

    @app.get("/api/dashboard/orders")
    @login_required
    def dashboard_orders(user: Profile):
        guest_orders = (
            GuestOrder.query.filter(
                or_(GuestOrder.user_id == user.id, func.lower(GuestOrder.email) == user.email)
            )
            .order_by(GuestOrder.created_at.desc())
            .all()
        )
        return jsonify(
            {
                "orders": [order.to_dict() for order in user.orders],
                "guest_orders": [order.to_dict() for order in guest_orders],
            }
        )

    @app.post("/api/dashboard/orders")
    @login_required
    def dashboard_place_order(user: Profile):
        payload = _payload()
        orders = place_order(user, payload)
        plans = resolve_plans(_plan_ids_from(payload))
        return (
            jsonify(
                {
                    "success": True,
                    "orders": [order.to_dict() for order in orders],
                    "pricing": calculate_bundle_discount(plans),
                }
            ),
            201,
        )

    @app.get("/api/dashboard/services")
    @login_required
    def dashboard_services(user: Profile):
        return jsonify({"services": [service.to_dict() for service in user.services]})

    @app.get("/api/dashboard/invoices")
    @login_required
    def dashboard_invoices(user: Profile):
        invoices = [invoice for invoice in user.invoices if invoice.status != "draft"]
        receipts = (
            Receipt.query.filter_by(user_id=user.id).order_by(Receipt.paid_at.desc()).all()
        )
        return jsonify(
            {
                "invoices": [invoice.to_dict(include_lines=True) for invoice in invoices],
                "receipts": [receipt.to_dict() for receipt in receipts],
            }
        )

    @app.get("/api/dashboard/invoices/<int:invoice_id>/document")
    @login_required
    def dashboard_invoice_document(user: Profile, invoice_id: int):
        invoice = _owned_invoice(user, invoice_id)
        if invoice.status == "draft":
            raise OperationError("Invoice not found", 404)
        return Response(render_invoice_html(invoice), mimetype="text/html")

    @app.get("/api/dashboard/receipts/<int:receipt_id>/document")
    @login_required
    def dashboard_receipt_document(user: Profile, receipt_id: int):
        receipt = db.session.get(Receipt, receipt_id)
        if receipt is None or receipt.user_id != user.id:
            raise OperationError("Receipt not found", 404)
        return Response(render_receipt_html(receipt), mimetype="text/html")

    @app.get("/api/dashboard/communications")
    @login_required
    def dashboard_communications(user: Profile):
        return jsonify({"communications": fetch_communications_timeline(user)})

    @app.get("/api/dashboard/tickets")
    @login_required
    def dashboard_tickets(user: Profile):
        return jsonify({"tickets": [ticket.to_dict() for ticket in user.tickets]})

    @app.post("/api/dashboard/tickets")
    @login_required
    def dashboard_create_ticket(user: Profile):
        ticket = create_ticket(user, _payload())
        return jsonify({"success": True, "ticket": ticket.to_dict()}), 201

    @app.get("/api/dashboard/tickets/<int:ticket_id>")
    @login_required
    def dashboard_ticket_detail(user: Profile, ticket_id: int):
        ticket = _owned_ticket(user, ticket_id)
        return jsonify(
            {
                "ticket": ticket.to_dict(),
                "messages": [message.to_dict() for message in ticket.messages],
            }
        )

    @app.post("/api/dashboard/tickets/<int:ticket_id>/messages")
    @login_required
    def dashboard_ticket_message(user: Profile, ticket_id: int):
        ticket = _owned_ticket(user, ticket_id)
        message = post_customer_message(ticket, user, _payload().get("message"))
        return jsonify({"success": True, "message": message.to_dict()}), 201

    @app.get("/api/tickets/<int:ticket_id>/stream")
    @login_required
    def ticket_message_stream(user: Profile, ticket_id: int):
        ticket = db.session.get(SupportTicket, ticket_id)
        if ticket is None:
            raise OperationError("Ticket not found", 404)
        if ticket.user_id != user.id and not has_role(user.id, "admin"):
            raise OperationError("You do not have access to this ticket.", 403)

        broker = get_ticket_broker(app)
        timeout = float(app.config.get("TICKET_STREAM_TIMEOUT") or 25)
        single = is_truthy(request.args.get("once"))

        def generate():
            subscription = broker.subscribe(ticket_id)
            try:
                yield f"event: ready\ndata: {json.dumps({'ticket_id': ticket_id})}\n\n"
                while True:
                    message = subscription.get(timeout=timeout)
                    if message is None:
                        yield ": keep-alive\n\n"
                    else:
                        yield f"event: message\ndata: {json.dumps(message)}\n\n"
                    if single:
                        break
            finally:
                subscription.unsubscribe()

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/dashboard/dd-mandates")
    @login_required
    def dashboard_dd_mandates(user: Profile):
        return jsonify({"mandates": [mandate.to_dict() for mandate in user.dd_mandates]})

    @app.post("/api/dashboard/dd-mandates")
    @login_required
    def dashboard_submit_dd_mandate(user: Profile):
        mandate = submit_dd_mandate(
            user,
            _payload(),
            client_ip=client_ip_address(),
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"success": True, "mandate": mandate.to_dict()}), 201

    @app.post("/api/dashboard/delete-account")
    @login_required
    def dashboard_delete_account(user: Profile):
        payload = _payload()
        result = delete_account(
            user, payload.get("confirm_email"), payload.get("password"), payload.get("reason")
        )
        session.pop(SESSION_USER_KEY, None)
        return jsonify(result)

    # -- Card payments ------------------------------------------------------

    @app.get("/api/payments/checkout-config")
    @login_required
    def payment_checkout_config(user: Profile):
        result = _functions_client().worldpay("get-checkout-config")
        return jsonify(
            {
                "checkout_id": result.get("checkoutId"),
                "entity_id": result.get("entityId"),
                "try_mode": bool(result.get("isTryMode")),
            }
        )

    @app.post("/api/payments/session")
    @login_required
    def payment_session(user: Profile):
        invoice = _owned_invoice(user, _coerce_int(_payload().get("invoice_id")) or 0)
        if invoice.status in ("paid", "void"):
            raise OperationError(f"Invoice is {invoice.status}")
        result = _functions_client().worldpay(
            "create-payment-session",
            invoiceId=invoice.id,
            invoiceNumber=invoice.invoice_number,
            amount=invoice.total,
            currency=invoice.currency,
        )
        return jsonify({"success": True, "session": result})

    @app.post("/api/payments/process")
    @login_required
    def payment_process(user: Profile):
        payload = _payload()
        invoice = _owned_invoice(user, _coerce_int(payload.get("invoice_id")) or 0)
        receipt = process_card_payment(invoice, payload, client=_functions_client())
        return jsonify(
            {
                "success": True,
                "paymentRef": receipt.reference,
                "receipt": receipt.to_dict(),
                "message": "Payment processed successfully",
            }
        )

    @app.post("/api/payments/verify")
    @login_required
    def payment_verify(user: Profile):
        payload = _payload()
        reference = _clean_text(payload.get("payment_ref"))
        if not reference:
            raise OperationError("Missing payment reference")
        result = _functions_client().worldpay("verify-payment", paymentRef=reference)
        receipt = Receipt.query.filter_by(user_id=user.id, reference=reference).first()
        return jsonify(
            {
                "success": True,
                "verification": result,
                "receipt": receipt.to_dict() if receipt else None,
            }
        )

    # -- Payment request links ----------------------------------------------

    @app.post("/api/payment-requests/validate")
    def payment_request_validate():
        return jsonify({"success": True, "request": validate_payment_token(_payload().get("token"))})

    @app.post("/api/payment-requests/pay")
    def payment_request_pay():
        payload = _payload()
        receipt = pay_payment_request(payload.get("token"), payload)
        return jsonify({"success": True, "receipt": receipt.to_dict()})

    @app.post("/api/payment-requests/dd-mandate")
    def payment_request_dd_mandate():
        payload = _payload()
        if not check_rate_limit(client_ip_address(), "payment_request_submit", 10):
            raise OperationError("Too many attempts. Please try again later.", 429)
        mandate = _submit_mandate_from_token(payload.get("token"), payload.get("mandate") or payload)
        return jsonify({"success": True, "mandate_reference": mandate.mandate_reference}), 201

    def _submit_mandate_from_token(token: str | None, data: dict) -> DDMandate:
        payment_request = resolve_payment_request(token)
        if payment_request.type != "dd_setup":
            raise OperationError("This link is not for a Direct Debit setup")
        profile = db.session.get(Profile, payment_request.user_id) if payment_request.user_id else None
        if profile is None:
            raise OperationError("Customer not found", 404)
        return submit_dd_mandate(
            profile,
            data,
            payment_request=payment_request,
            client_ip=client_ip_address(),
            user_agent=request.headers.get("User-Agent"),
        )

    # -- Admin: overview, search and customers ------------------------------

    @app.get("/api/admin/overview")
    @admin_required
    def admin_overview(admin: Profile):
        return jsonify(build_admin_overview())

    @app.get("/api/admin/search")
    @admin_required
    def admin_search(admin: Profile):
        query = request.args.get("q", "")
        classification = classify_search_query(query)
        results = search_customers(query, _int_arg("limit", SEARCH_RESULT_LIMIT))
        return jsonify(
            {
                "mode": classification[0] if classification else None,
                "results": results,
            }
        )

    @app.get("/api/admin/search/advanced")
    @admin_required
    def admin_advanced_search(admin: Profile):
        raw_dob = request.args.get("dob")
        dob = parse_iso_date(raw_dob)
        if raw_dob and dob is None:
            raise OperationError("Date of birth must be in YYYY-MM-DD format")
        results = advanced_customer_search(
            name=request.args.get("name"),
            postcode=request.args.get("postcode"),
            dob=dob,
            match_mode=request.args.get("match", "all"),
        )
        return jsonify({"results": results})

    @app.get("/api/admin/customers")
    @admin_required
    def admin_customers(admin: Profile):
        page = list_customers(
            search=request.args.get("search"),
            filter_name=request.args.get("filter"),
            page=_int_arg("page", 1),
            per_page=min(_int_arg("per_page", 25), 100),
        )
        return jsonify(
            {
                "customers": [profile.to_dict() for profile in page.items],
                "page": page.page,
                "pages": page.pages,
                "total": page.total,
            }
        )

    @app.post("/api/admin/customers")
    @admin_required
    def admin_create_customer_route(admin: Profile):
        profile = create_customer(_payload())
        return jsonify({"success": True, "customer": profile.to_dict()}), 201

    def _customer_or_404(customer_id: int) -> Profile:
        profile = db.session.get(Profile, customer_id)
        if profile is None:
            raise OperationError("Customer not found", 404)
        return profile

    @app.get("/api/admin/customers/<int:customer_id>")
    @admin_required
    def admin_customer_detail(admin: Profile, customer_id: int):
        return jsonify(build_customer_detail(_customer_or_404(customer_id)))

    @app.patch("/api/admin/customers/<int:customer_id>")
    @admin_required
    def admin_update_customer(admin: Profile, customer_id: int):
        profile = update_customer_profile(_customer_or_404(customer_id), _payload(), admin=True)
        return jsonify({"customer": {**profile.to_dict(), "admin_notes": profile.admin_notes}})

    @app.post("/api/admin/customers/<int:customer_id>/email")
    @admin_required
    def admin_email_customer(admin: Profile, customer_id: int):
        payload = _payload()
        delivered = send_admin_message(
            _customer_or_404(customer_id), payload.get("subject"), payload.get("message")
        )
        return jsonify({"success": delivered})

    @app.get("/api/admin/customers/<int:customer_id>/billing-settings")
    @admin_required
    def admin_billing_settings(admin: Profile, customer_id: int):
        return jsonify(get_billing_settings_payload(_customer_or_404(customer_id)))

    @app.put("/api/admin/customers/<int:customer_id>/billing-settings")
    @admin_required
    def admin_save_billing_settings(admin: Profile, customer_id: int):
        settings = save_billing_settings(_customer_or_404(customer_id), _payload())
        return jsonify({"success": True, "billing_settings": settings.to_dict()})

    @app.post("/api/admin/customers/<int:customer_id>/billing-settings/recalculate")
    @admin_required
    def admin_recalculate_billing_date(admin: Profile, customer_id: int):
        next_date = recalculate_next_invoice_date(_customer_or_404(customer_id))
        return jsonify({"success": True, "next_invoice_date": next_date.isoformat()})

    @app.get("/api/admin/customers/<int:customer_id>/communications")
    @admin_required
    def admin_customer_communications(admin: Profile, customer_id: int):
        profile = _customer_or_404(customer_id)
        limit = min(_int_arg("limit", COMMUNICATION_TIMELINE_LIMIT), 200)
        return jsonify({"communications": fetch_communications_timeline(profile, limit)})

    @app.post("/api/admin/customers/<int:customer_id>/services")
    @admin_required
    def admin_create_service(admin: Profile, customer_id: int):
        service = create_service(_customer_or_404(customer_id), _payload())
        return jsonify({"success": True, "service": service.to_dict()}), 201

    @app.patch("/api/admin/services/<int:service_id>")
    @admin_required
    def admin_update_service(admin: Profile, service_id: int):
        service = db.session.get(Service, service_id)
        if service is None:
            raise OperationError("Service not found", 404)
        return jsonify({"success": True, "service": update_service(service, _payload()).to_dict()})

    @app.post("/api/admin/customers/<int:customer_id>/payment-requests")
    @admin_required
    def admin_send_payment_request(admin: Profile, customer_id: int):
        profile = _customer_or_404(customer_id)
        payload = _payload()
        invoice = None
        invoice_id = _coerce_int(payload.get("invoice_id"))
        if invoice_id:
            invoice = db.session.get(Invoice, invoice_id)
            if invoice is None or invoice.user_id != profile.id:
                raise OperationError("Invoice not found", 404)
        payment_request = send_payment_request(
            profile,
            payload.get("type") or "card_payment",
            invoice=invoice,
            amount=_coerce_float(payload.get("amount")),
        )
        return jsonify({"success": True, "request": payment_request.to_dict()}), 201

    @app.get("/api/admin/audit-logs")
    @admin_required
    def admin_audit_logs(admin: Profile):
        entries = fetch_recent_audit_logs(
            min(_int_arg("limit", RECENT_AUDIT_LOG_LIMIT), 200), request.args.get("entity")
        )
        return jsonify({"entries": [entry.to_dict() for entry in entries]})

    @app.post("/api/admin/roles")
    @admin_required
    def admin_update_role(admin: Profile):
        payload = _payload()
        profile = _customer_or_404(_coerce_int(payload.get("user_id")) or 0)
        role = payload.get("role")
        if payload.get("action") == "revoke":
            changed = revoke_role(profile, role)
        else:
            changed = grant_role(profile, role)
        return jsonify({"success": True, "changed": changed, "roles": profile.role_names})

    # -- Admin: orders and tickets ------------------------------------------

    def _order_model(kind: str):
        model = ORDER_KINDS.get(kind)
        if model is None:
            raise OperationError(f"Unknown order kind '{kind}'", 404)
        return model

    @app.get("/api/admin/orders")
    @admin_required
    def admin_orders(admin: Profile):
        model = _order_model(request.args.get("kind", "orders"))
        query = model.query
        status = request.args.get("status")
        if status:
            query = query.filter(model.status == status)
        orders = query.order_by(model.created_at.desc()).limit(_int_arg("limit", 200)).all()
        return jsonify({"orders": [order.to_dict() for order in orders]})

    @app.patch("/api/admin/orders/<kind>/<int:order_id>")
    @admin_required
    def admin_update_order(admin: Profile, kind: str, order_id: int):
        model = _order_model(kind)
        order = db.session.get(model, order_id)
        if order is None:
            raise OperationError("Order not found", 404)
        payload = _payload()
        changed = update_order(
            order,
            status=payload.get("status"),
            admin_notes=payload.get("admin_notes"),
            notify=is_truthy(payload.get("notify", True)),
        )
        return jsonify({"success": True, "status_changed": changed, "order": order.to_dict()})

    @app.post("/api/admin/orders/<kind>/bulk-status")
    @admin_required
    def admin_bulk_order_status(admin: Profile, kind: str):
        payload = _payload()
        updated = bulk_update_order_status(
            _order_model(kind), payload.get("ids") or [], payload.get("status")
        )
        return jsonify({"success": True, "updated": updated})

    @app.get("/api/admin/tickets")
    @admin_required
    def admin_tickets(admin: Profile):
        query = SupportTicket.query
        status = request.args.get("status")
        if status:
            query = query.filter(SupportTicket.status == status)
        tickets = query.order_by(SupportTicket.updated_at.desc()).limit(_int_arg("limit", 200)).all()
        return jsonify(
            {
                "tickets": [
                    {
                        **ticket.to_dict(include_internal=True),
                        "customer_name": ticket.user.full_name,
                        "account_number": ticket.user.account_number,
                    }
                    for ticket in tickets
                ]
            }
        )

    def _ticket_or_404(ticket_id: int) -> SupportTicket:
        ticket = db.session.get(SupportTicket, ticket_id)
        if ticket is None:
            raise OperationError("Ticket not found", 404)
        return ticket

    @app.get("/api/admin/tickets/<int:ticket_id>")
    @admin_required
    def admin_ticket_detail(admin: Profile, ticket_id: int):
        ticket = _ticket_or_404(ticket_id)
        return jsonify(
            {
                "ticket": ticket.to_dict(include_internal=True),
                "messages": [message.to_dict() for message in ticket.messages],
            }
        )

    @app.patch("/api/admin/tickets/<int:ticket_id>")
    @admin_required
    def admin_update_ticket(admin: Profile, ticket_id: int):
        ticket = update_ticket(_ticket_or_404(ticket_id), _payload())
        return jsonify({"success": True, "ticket": ticket.to_dict(include_internal=True)})

    @app.post("/api/admin/tickets/<int:ticket_id>/reply")
    @admin_required
    def admin_reply_ticket(admin: Profile, ticket_id: int):
        payload = _payload()
        message = post_staff_reply(
            _ticket_or_404(ticket_id), admin, payload.get("message"), payload.get("status")
        )
        return jsonify({"success": True, "message": message.to_dict()}), 201

    # -- Admin: billing -----------------------------------------------------

    def _invoice_or_404(invoice_id: int) -> Invoice:
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is None:
            raise OperationError("Invoice not found", 404)
        return invoice

    @app.get("/api/admin/invoices")
    @admin_required
    def admin_invoices(admin: Profile):
        query = Invoice.query
        status = request.args.get("status")
        if status:
            query = query.filter(Invoice.status == status)
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(Invoice.user_id == customer_id)
        invoices = query.order_by(Invoice.issue_date.desc(), Invoice.id.desc()).limit(
            _int_arg("limit", 200)
        )
        return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]})

    @app.post("/api/admin/invoices")
    @admin_required
    def admin_create_invoice(admin: Profile):
        payload = _payload()
        profile = _customer_or_404(_coerce_int(payload.get("customer_id")) or 0)
        invoice = create_invoice(profile, payload)
        if is_truthy(payload.get("send")):
            invoice = send_invoice(invoice)
        return jsonify({"success": True, "invoice": invoice.to_dict(include_lines=True)}), 201

    @app.post("/api/admin/invoices/<int:invoice_id>/send")
    @admin_required
    def admin_send_invoice(admin: Profile, invoice_id: int):
        invoice = send_invoice(_invoice_or_404(invoice_id))
        return jsonify({"success": True, "invoice": invoice.to_dict()})

    @app.post("/api/admin/invoices/<int:invoice_id>/void")
    @admin_required
    def admin_void_invoice(admin: Profile, invoice_id: int):
        invoice = void_invoice(_invoice_or_404(invoice_id), _payload().get("reason"))
        return jsonify({"success": True, "invoice": invoice.to_dict()})

    @app.post("/api/admin/invoices/<int:invoice_id>/credit-notes")
    @admin_required
    def admin_credit_note(admin: Profile, invoice_id: int):
        payload = _payload()
        credit_note = add_credit_note(
            _invoice_or_404(invoice_id), payload.get("amount"), payload.get("reason")
        )
        return jsonify({"success": True, "credit_note_id": credit_note.id}), 201

    @app.post("/api/admin/invoices/<int:invoice_id>/phone-payment")
    @admin_required
    def admin_phone_payment(admin: Profile, invoice_id: int):
        payload = _payload()
        receipt = record_phone_payment(
            invoice_id,
            payload.get("amount"),
            admin.id,
            payload.get("reference"),
            payload.get("notes"),
        )
        return jsonify({"success": True, "receipt": receipt.to_dict()})

    @app.get("/api/admin/invoices/<int:invoice_id>/document")
    @admin_required
    def admin_invoice_document(admin: Profile, invoice_id: int):
        return Response(render_invoice_html(_invoice_or_404(invoice_id)), mimetype="text/html")

    @app.get("/api/admin/receipts/<int:receipt_id>/document")
    @admin_required
    def admin_receipt_document(admin: Profile, receipt_id: int):
        receipt = db.session.get(Receipt, receipt_id)
        if receipt is None:
            raise OperationError("Receipt not found", 404)
        return Response(render_receipt_html(receipt), mimetype="text/html")

    @app.get("/api/admin/dd-mandates")
    @admin_required
    def admin_dd_mandates(admin: Profile):
        query = DDMandate.query
        status = request.args.get("status")
        if status:
            query = query.filter(DDMandate.status == status)
        mandates = query.order_by(DDMandate.created_at.desc()).all()
        return jsonify(
            {
                "mandates": [
                    {
                        **mandate.to_dict(),
                        "customer_name": mandate.user.full_name,
                        "account_number": mandate.user.account_number,
                    }
                    for mandate in mandates
                ]
            }
        )

    @app.post("/api/admin/dd-mandates/<int:mandate_id>/workflow")
    @admin_required
    def admin_dd_workflow(admin: Profile, mandate_id: int):
        payload = _payload()
        action = payload.get("action")
        status = DD_WORKFLOW_ACTIONS.get(action)
        if status is None:
            raise OperationError(f"Unknown workflow action '{action}'")
        result = verify_dd_mandate(
            mandate_id,
            status,
            provider=payload.get("provider"),
            provider_reference=payload.get("provider_reference"),
            notes=payload.get("notes"),
            actor_id=admin.id,
        )
        return jsonify(result)

    # -- Admin: installation schedule ---------------------------------------

    @app.get("/api/admin/installation-slots")
    @admin_required
    def admin_installation_slots(admin: Profile):
        start = parse_iso_date(request.args.get("start")) or date.today()
        slots = (
            InstallationSlot.query.filter(
                InstallationSlot.slot_date >= start,
                InstallationSlot.slot_date < start + timedelta(days=_int_arg("days", 28)),
            )
            .order_by(InstallationSlot.slot_date, InstallationSlot.slot_time)
            .all()
        )
        return jsonify({"slots": [slot.to_dict() for slot in slots]})

    @app.post("/api/admin/installation-slots")
    @admin_required
    def admin_create_slot(admin: Profile):
        return jsonify({"success": True, "slot": create_slot(_payload()).to_dict()}), 201

    @app.patch("/api/admin/installation-slots/<int:slot_id>")
    @admin_required
    def admin_update_slot(admin: Profile, slot_id: int):
        slot = db.session.get(InstallationSlot, slot_id)
        if slot is None:
            raise OperationError("Installation slot not found", 404)
        return jsonify({"success": True, "slot": update_slot(slot, _payload()).to_dict()})

    @app.get("/api/admin/installation-bookings")
    @admin_required
    def admin_installation_bookings(admin: Profile):
        query = InstallationBooking.query.join(InstallationSlot)
        status = request.args.get("status")
        if status:
            query = query.filter(InstallationBooking.status == status)
        bookings = query.order_by(InstallationSlot.slot_date, InstallationSlot.slot_time).all()
        return jsonify({"bookings": [booking.to_dict() for booking in bookings]})

    @app.post("/api/admin/installation-bookings")
    @admin_required
    def admin_create_booking(admin: Profile):
        booking = book_installation(_payload(), admin=True)
        return jsonify({"success": True, "booking": booking.to_dict()}), 201

    @app.patch("/api/admin/installation-bookings/<int:booking_id>")
    @admin_required
    def admin_update_booking(admin: Profile, booking_id: int):
        booking = db.session.get(InstallationBooking, booking_id)
        if booking is None:
            raise OperationError("Booking not found", 404)
        return jsonify({"success": True, "booking": update_booking(booking, _payload()).to_dict()})

    @app.get("/api/admin/technicians")
    @admin_required
    def admin_technicians(admin: Profile):
        technicians = Technician.query.order_by(Technician.full_name).all()
        return jsonify({"technicians": [technician.to_dict() for technician in technicians]})

    @app.post("/api/admin/technicians")
    @admin_required
    def admin_create_technician(admin: Profile):
        technician = create_technician(_payload())
        return jsonify({"success": True, "technician": technician.to_dict()}), 201

    # -- Named functions ----------------------------------------------------

    @app.post("/functions/admin-create-customer")
    @admin_required
    def function_admin_create_customer(admin: Profile):
        profile = create_customer(_payload())
        app.logger.info("Admin %s created customer %s", admin.id, profile.account_number)
        return (
            jsonify(
                {
                    "success": True,
                    "user_id": profile.id,
                    "account_number": profile.account_number,
                    "profile": profile.to_dict(),
                }
            ),
            201,
        )

    @app.post("/functions/payment-request")
    def function_payment_request():
        payload = _payload()
        action = payload.get("action")

        if action == "validate-token":
            return jsonify({"success": True, "request": validate_payment_token(payload.get("token"))})

        if action == "submit-dd-mandate":
            if not check_rate_limit(client_ip_address(), "payment_request_submit", 10):
                raise OperationError("Too many attempts. Please try again later.", 429)
            mandate = _submit_mandate_from_token(payload.get("token"), payload.get("mandate") or {})
            return jsonify({"success": True, "mandate_reference": mandate.mandate_reference})

        if action == "verify-dd-mandate":
            admin = _require_admin_session()
            result = verify_dd_mandate(
                payload.get("mandate_id"),
                payload.get("status"),
                provider=payload.get("provider"),
                provider_reference=payload.get("provider_reference"),
                notes=payload.get("notes"),
                actor_id=admin.id,
            )
            return jsonify(result)

        if action == "record-phone-payment":
            admin = _require_admin_session()
            receipt = record_phone_payment(
                payload.get("invoice_id"),
                payload.get("amount"),
                admin.id,
                payload.get("reference"),
                payload.get("notes"),
            )
            return jsonify({"success": True, "receipt_id": receipt.id, "reference": receipt.reference})

        raise OperationError(f"Unknown action: {action}")

    @app.post("/functions/delete-account")
    @login_required
    def function_delete_account(user: Profile):
        payload = _payload()
        result = delete_account(
            user,
            payload.get("confirmEmail") or payload.get("confirm_email"),
            payload.get("password"),
            payload.get("reason"),
        )
        session.pop(SESSION_USER_KEY, None)
        return jsonify(result)

    @app.post("/functions/send-email")
    @admin_required
    def function_send_email(admin: Profile):
        payload = _payload()
        template_name = payload.get("type") or ""
        recipient = _clean_text(payload.get("to"))
        data = payload.get("data") or {}
        template_key = "dd_status" if template_name.startswith("dd_status_") else template_name
        if template_key not in EMAIL_TEMPLATES:
            raise OperationError(f"Unknown email type '{template_name}'")
        if not recipient or not isinstance(data, dict):
            raise OperationError("Missing recipient or data")
        profile = Profile.query.filter_by(email=recipient.lower()).first()
        delivered = send_template_email(
            recipient,
            template_name,
            template_key=template_key,
            context=data,
            user_id=profile.id if profile else None,
            metadata={key: value for key, value in data.items() if key != "link"},
        )
        db.session.commit()
        return jsonify({"success": delivered})

    @app.post("/functions/admin-notify")
    @login_required
    def function_admin_notify(user: Profile):
        payload = _payload()
        title = _clean_text(payload.get("title"))
        message = _clean_text(payload.get("message"))
        if not title or not message:
            raise OperationError("Missing required fields: title, message")
        delivered = notify_admins(title, message, payload.get("metadata") or {"user_id": user.id})
        db.session.commit()
        return jsonify({"success": True, "delivered": delivered})

    @app.post("/functions/admin-send-email")
    @admin_required
    def function_admin_send_email(admin: Profile):
        payload = _payload()
        profile = _customer_or_404(_coerce_int(payload.get("user_id")) or 0)
        delivered = send_admin_message(profile, payload.get("subject"), payload.get("message"))
        return jsonify({"success": delivered})

    @app.post("/functions/link-order")
    @login_required
    def function_link_order(user: Profile):
        payload = _payload()
        order = link_guest_order(
            user,
            payload.get("orderNumber") or payload.get("order_number"),
            payload.get("email"),
        )
        return jsonify(
            {"success": True, "message": "Order linked successfully", "order": order.to_dict()}
        )

    @app.post("/functions/installation-reminders")
    @cron_secret_required
    def function_installation_reminders():
        return jsonify({"success": True, **send_installation_reminders()})

    @app.post("/functions/payment-reminders")
    @cron_secret_required
    def function_payment_reminders():
        days_before = _coerce_int(_payload().get("days_before"))
        if days_before is None:
            days_before = PAYMENT_REMINDER_DAYS
        if not 0 <= days_before <= 30:
            raise OperationError("days_before must be between 0 and 30")
        return jsonify({"success": True, **send_payment_reminders(days_before=days_before)})

    @app.post("/functions/process-late-fees")
    @cron_secret_required
    def function_process_late_fees():
        return jsonify({"success": True, **process_late_fees()})

    @app.post("/functions/generate-invoices")
    @cron_secret_required
    def function_generate_invoices():
        return jsonify({"success": True, **generate_invoices()})


app = create_app()


if __name__ == "__main__":
    port_env = os.environ.get("PORT")
    try:
        port = int(port_env) if port_env else 5000
    except ValueError:
        port = 5000
    app.run(host="0.0.0.0", port=port, debug=is_truthy(os.environ.get("FLASK_DEBUG")))
