"""
Public lead capture (quote requests and the contact form) and the one-time
first administrator setup.
"""

import re
from html import escape
from typing import Any, Dict, Optional
import structlog
from .errors import ApiError, Forbidden, NotFound
from .models import QuoteRequest, ContactSubmission, ROLE_ADMIN
from .utils import is_valid_email, format_currency, utcnow_iso

logger = structlog.get_logger()

MIN_QUOTE_QUANTITY = 50
DEFAULT_UNIT_PRICE = 5.00

# Indicative FOB unit prices in USD
BASE_UNIT_PRICES = {
    't-shirt': 3.50,
    't-shirts': 3.50,
    'hoodie': 12.00,
    'hoodies': 12.00,
    'sweatshirt': 10.00,
    'sweatshirts': 10.00,
    'polo': 5.50,
    'polo-shirt': 5.50,
    'joggers': 9.00,
    'activewear': 8.00,
    'leggings': 7.50,
    'uniform': 6.50,
    'uniforms': 6.50,
}

def base_unit_price(product_type: str) -> float:
    normalized = re.sub(r'[^a-z-]', '', product_type.lower())
    return BASE_UNIT_PRICES.get(normalized, DEFAULT_UNIT_PRICE)

def estimated_delivery_days(product_type: str, quantity: int) -> int:
    """Lead time estimate: product complexity sets the base, large runs add days."""
    normalized = product_type.lower()
    days = 20
    if 'hoodie' in normalized or 'sweatshirt' in normalized:
        days = 22
    elif 'activewear' in normalized or 'leggings' in normalized:
        days = 25
    elif 'uniform' in normalized:
        days = 18

    if quantity > 1000:
        days += 5
    elif quantity > 500:
        days += 3
    return days

def _html_paragraphs(text: str) -> str:
    return escape(text).replace('\n', '<br>')

def _check_text_fields(payload: Dict[str, Any], fields) -> None:
    """Free-text form fields must be strings when present."""
    for field_name in fields:
        value = payload.get(field_name)
        if value is not None and not isinstance(value, str):
            raise ApiError(f"{field_name} must be a string")

QUOTE_TEXT_FIELDS = (
    'customer_name', 'customer_email', 'product_type', 'phone_number', 'company',
    'fabric_type', 'additional_requirements', 'country', 'source',
)
CONTACT_TEXT_FIELDS = ('name', 'email', 'message', 'phone', 'company', 'source')

class LeadService:
    """Stores website leads and sends the matching notifications."""

    def __init__(self, repo, mailer=None):
        self.repo = repo
        self.mailer = mailer

    def _send(self, to: Optional[str], subject: str, html: str, reply_to: Optional[str] = None) -> None:
        """Best-effort delivery; a lead is never rejected because email failed."""
        if self.mailer is None:
            logger.warning(f"Email not configured, skipping '{subject}'")
            return
        if to is None:
            ok, detail = self.mailer.notify_admin(subject, html, reply_to=reply_to)
        else:
            ok, detail = self.mailer.send(to, subject, html)
        if not ok:
            logger.error(f"Failed to send '{subject}': {detail}")

    def submit_quote_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if (not payload.get('customer_name') or not payload.get('customer_email')
                or not payload.get('product_type') or not payload.get('quantity')):
            raise ApiError("Name, email, product type, and quantity are required")
        _check_text_fields(payload, QUOTE_TEXT_FIELDS)
        if not is_valid_email(payload['customer_email']):
            raise ApiError("Invalid email format")

        quantity = payload['quantity']
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            raise ApiError("quantity must be a number")
        if quantity < MIN_QUOTE_QUANTITY:
            raise ApiError(f"Minimum order quantity is {MIN_QUOTE_QUANTITY} units")

        request = QuoteRequest(
            customer_name=payload['customer_name'],
            customer_email=payload['customer_email'],
            product_type=payload['product_type'],
            quantity=int(quantity),
            phone_number=payload.get('phone_number'),
            company=payload.get('company'),
            fabric_type=payload.get('fabric_type'),
            additional_requirements=payload.get('additional_requirements'),
            country=payload.get('country'),
            source=payload.get('source') or 'website',
        )

        unit_price = base_unit_price(request.product_type)
        estimated_price = unit_price * request.quantity
        delivery_days = estimated_delivery_days(request.product_type, request.quantity)

        requirements = request.additional_requirements or ''
        if request.company:
            requirements = f"Company: {request.company}\n{requirements}"

        quote = self.repo.create_quote({
            "customer_name": request.customer_name,
            "customer_email": request.customer_email,
            "phone_number": request.phone_number,
            "product_type": request.product_type,
            "quantity": request.quantity,
            "fabric_type": request.fabric_type,
            "additional_requirements": requirements,
            "country": request.country,
            "total_price": estimated_price,
            "estimated_delivery_days": delivery_days,
            "status": 'draft',
            "lead_status": 'new',
            "quote_data": {
                "base_price_per_unit": unit_price,
                "estimated_total": estimated_price,
                "delivery_days": delivery_days,
                "source": request.source,
                "company": request.company,
            },
        })
        logger.info("Quote request stored", quote_id=quote.get('id'), customer_email=request.customer_email)

        self._send(None, f"New Quote Request - {request.product_type} ({request.quantity} units)",
                   self._quote_admin_html(request, estimated_price, delivery_days, quote.get('id')),
                   reply_to=request.customer_email)
        self._send(request.customer_email, "Quote Request Received - Sleek Apparels",
                   self._quote_customer_html(request, unit_price, estimated_price, delivery_days, quote.get('id')))

        return {
            "id": quote.get('id'),
            "estimated_price": estimated_price,
            "estimated_delivery_days": delivery_days,
            "price_per_unit": unit_price,
        }

    @staticmethod
    def _quote_admin_html(request: QuoteRequest, estimated_price: float, delivery_days: int,
                          quote_id: Optional[str]) -> str:
        optional = [
            ("Phone", request.phone_number),
            ("Company", request.company),
            ("Country", request.country),
        ]
        details = ''.join(f"<p><strong>{label}:</strong> {escape(str(value))}</p>"
                          for label, value in optional if value)
        extras = ''
        if request.fabric_type:
            extras += f"<p><strong>Fabric:</strong> {escape(request.fabric_type)}</p>"
        if request.additional_requirements:
            extras += f"<p><strong>Requirements:</strong> {_html_paragraphs(request.additional_requirements)}</p>"
        return (
            "<h2>New Quote Request</h2>"
            f"<p><strong>Customer:</strong> {escape(request.customer_name)}</p>"
            f"<p><strong>Email:</strong> {escape(request.customer_email)}</p>"
            f"{details}<hr>"
            f"<p><strong>Product:</strong> {escape(request.product_type)}</p>"
            f"<p><strong>Quantity:</strong> {request.quantity} units</p>"
            f"{extras}<hr>"
            f"<p><strong>Estimated Price:</strong> {format_currency(estimated_price)}</p>"
            f"<p><strong>Estimated Delivery:</strong> {delivery_days} days</p>"
            f"<p><strong>Quote ID:</strong> {quote_id}</p>"
        )

    @staticmethod
    def _quote_customer_html(request: QuoteRequest, unit_price: float, estimated_price: float,
                             delivery_days: int, quote_id: Optional[str]) -> str:
        return (
            "<h2>Thank you for your quote request!</h2>"
            f"<p>Hi {escape(request.customer_name)},</p>"
            f"<p>We have received your quote request for <strong>{request.quantity} units of "
            f"{escape(request.product_type)}</strong>.</p>"
            "<p><strong>Preliminary Estimate:</strong></p><ul>"
            f"<li>Estimated Price: {format_currency(estimated_price)} ({format_currency(unit_price)} per unit)</li>"
            f"<li>Estimated Delivery: {delivery_days} days</li></ul>"
            "<p>Our team will review your requirements and send you a detailed quote within 2 business hours.</p>"
            f"<p><strong>Quote Reference:</strong> {quote_id}</p>"
            "<p>Best regards,<br>Sleek Apparels Team</p>"
        )

    def submit_contact_form(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get('name') or not payload.get('email') or not payload.get('message'):
            raise ApiError("Name, email, and message are required")
        _check_text_fields(payload, CONTACT_TEXT_FIELDS)
        if not is_valid_email(payload['email']):
            raise ApiError("Invalid email format")

        submission = ContactSubmission(
            name=payload['name'],
            email=payload['email'],
            message=payload['message'],
            phone=payload.get('phone'),
            company=payload.get('company'),
            source=payload.get('source') or 'website',
        )

        notes = ''
        if submission.company:
            notes += f"Company: {submission.company}\n"
        if submission.phone:
            notes += f"Phone: {submission.phone}\n"
        notes += f"Message: {submission.message}"

        row = self.repo.create_contact_submission({
            "name": submission.name,
            "email": submission.email,
            "notes": notes,
            "source": submission.source,
            "status": 'pending',
        })
        logger.info("Contact form stored", submission_id=row.get('id'), email=submission.email)

        message_html = _html_paragraphs(submission.message)
        self._send(None, f"New Contact Form Submission from {submission.name}",
                   "<h2>New Contact Form Submission</h2>"
                   f"<p><strong>Name:</strong> {escape(submission.name)}</p>"
                   f"<p><strong>Email:</strong> {escape(submission.email)}</p>"
                   + (f"<p><strong>Phone:</strong> {escape(submission.phone)}</p>" if submission.phone else "")
                   + (f"<p><strong>Company:</strong> {escape(submission.company)}</p>" if submission.company else "")
                   + f"<p><strong>Message:</strong></p><p>{message_html}</p>"
                   f"<p><strong>Source:</strong> {escape(submission.source)}</p>",
                   reply_to=submission.email)
        self._send(submission.email, "We received your message - Sleek Apparels",
                   "<h2>Thank you for contacting Sleek Apparels!</h2>"
                   f"<p>Hi {escape(submission.name)},</p>"
                   "<p>We have received your message and will get back to you within 2 business hours.</p>"
                   f"<p><strong>Your message:</strong></p><p>{message_html}</p>"
                   "<p>Best regards,<br>Sleek Apparels Team</p>")

        return {"id": row.get('id')}

    def setup_first_admin(self, email: Optional[str]) -> str:
        """Grant the admin role to an existing user, allowed only while no admin exists."""
        if not email or not isinstance(email, str):
            raise ApiError("Email is required")

        if self.repo.role_exists(ROLE_ADMIN):
            raise Forbidden("Admin already exists. This function can only be used for initial setup.")

        user = self.repo.find_auth_user_by_email(email)
        if not user:
            raise NotFound("User not found. Please ensure the user exists.")

        self.repo.assign_role(user.id, ROLE_ADMIN)
        self.repo.log_admin_audit(user.id, 'FIRST_ADMIN_SETUP', 'user_roles', user.id, {
            "email": email,
            "setup_method": 'setup-first-admin',
            "timestamp": utcnow_iso(),
        })
        logger.info("First admin created", email=email)
        return user.id
