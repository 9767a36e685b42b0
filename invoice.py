import os
from datetime import datetime
from typing import Optional

from babel.dates import format_date, format_datetime
from babel.numbers import format_decimal
from jinja2 import Environment, FileSystemLoader, select_autoescape

from database import as_utc, now_utc

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATE_DIR = os.path.join(BASE_DIR, "templates")

LOCALE = "en_IN"
CURRENCY_GLYPH = "₹"

env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

BRAND = {
    "company": "ESTATE",
    "tagline": "House Rental System",
    "primary": "#1e3a8a",
    "accent": "#3b82f6",
    "text": "#374151",
    "muted": "#9ca3af",
    "thanks": "Thank you for choosing Estate - Your Trusted Partner for House Rentals",
}


def format_currency(amount: float) -> str:
    return f"{CURRENCY_GLYPH}{format_decimal(amount or 0, locale=LOCALE)}"


def format_day(value: Optional[datetime]) -> str:
    if value is None:
        return "N/A"
    return format_date(as_utc(value), format="d/M/yyyy", locale=LOCALE)


def invoice_number(booking: dict) -> str:
    """Booking reference, or the last 8 characters of the record id."""
    return booking.get("booking_reference") or str(booking["_id"])[-8:].upper()


def build_context(
    booking: dict,
    prop: dict,
    renter: dict,
    landlord: dict,
    issued_at: Optional[datetime] = None,
) -> dict:
    issued_at = issued_at or now_utc()
    monthly_rent = booking["monthly_rent"]
    duration = booking["duration"]
    security_deposit = booking.get("security_deposit")
    if security_deposit is None:
        security_deposit = monthly_rent * 2

    return {
        "brand": BRAND,
        "invoice_number": invoice_number(booking),
        "issue_date": format_day(issued_at),
        "generated_on": format_datetime(as_utc(issued_at), "d/M/yyyy, h:mm:ss a", locale=LOCALE),
        "status": booking["booking_status"].upper(),
        "bill_to": {
            "name": renter.get("name", ""),
            "email": renter.get("email", ""),
            "phone": renter.get("phone") or "N/A",
        },
        "landlord": {
            "name": landlord.get("name", ""),
            "email": landlord.get("email", ""),
            "phone": landlord.get("phone") or "N/A",
        },
        "property": {
            "name": prop.get("name", ""),
            "location": prop.get("location", ""),
            "type": prop.get("type") or "Residential",
        },
        "line_items": [
            ("Check-in Date", format_day(booking.get("check_in_date"))),
            ("Check-out Date", format_day(booking.get("check_out_date"))),
            ("Duration", f"{duration} months"),
            ("Number of Occupants", str(booking.get("number_of_occupants", 1))),
            ("Monthly Rent", format_currency(monthly_rent)),
        ],
        "summary": {
            "rent_total": format_currency(monthly_rent * duration),
            "security_deposit": format_currency(security_deposit),
            "total": format_currency(booking["total_amount"]),
            "paid": format_currency(booking.get("paid_amount", 0)),
            "payment_status": booking.get("payment_status", "pending").upper(),
        },
        "special_requests": booking.get("special_requests") or "",
    }


def render_invoice_html(
    booking: dict,
    prop: dict,
    renter: dict,
    landlord: dict,
    issued_at: Optional[datetime] = None,
) -> str:
    template = env.get_template("invoice.html")
    return template.render(**build_context(booking, prop, renter, landlord, issued_at))


def render_invoice(
    booking: dict,
    prop: dict,
    renter: dict,
    landlord: dict,
    issued_at: Optional[datetime] = None,
) -> bytes:
    """Render a populated booking as PDF bytes. Pure: no database or network access."""
    # weasyprint loads native libraries at import time
    from weasyprint import HTML

    html = render_invoice_html(booking, prop, renter, landlord, issued_at)
    return HTML(string=html, base_url=BASE_DIR).write_pdf()
