"""
Inbound webhooks from Stripe (payment events) and Resend (email delivery).
"""

import os
import json
from flask import Blueprint, request, jsonify
import structlog
from . import api
from .errors import ApiError, Unauthorized
from .mailer import DELIVERY_EVENT_STATUSES, verify_svix_signature
from .payments import PaymentService, verify_stripe_signature

logger = structlog.get_logger()

webhooks_bp = Blueprint('webhooks', __name__)
webhooks_bp.register_error_handler(Exception, api.handle_api_error)

def _parse_event(payload: bytes) -> dict:
    try:
        event = json.loads(payload)
    except ValueError:
        raise ApiError("Invalid JSON payload")
    if not isinstance(event, dict):
        raise ApiError("Invalid JSON payload")
    return event

@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    """Apply payment intent events to orders."""
    secret = os.getenv('STRIPE_WEBHOOK_SECRET')
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise ApiError("Webhook secret not configured", 500)

    signature = request.headers.get('Stripe-Signature')
    if not signature:
        raise ApiError("Missing stripe-signature header")

    payload = request.get_data()
    if not verify_stripe_signature(payload, signature, secret):
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise ApiError("Invalid signature")

    event = _parse_event(payload)
    logger.info(f"Stripe webhook event: {event.get('type')}", event_id=event.get('id'))

    PaymentService(api.get_supabase_repo(), None).handle_event(event)
    return jsonify({"success": True, "received": True})

@webhooks_bp.route('/resend', methods=['POST'])
def resend_webhook():
    """Track delivery, bounce and delay events for sent emails."""
    secret = os.getenv('RESEND_WEBHOOK_SECRET')
    if not secret:
        logger.error("RESEND_WEBHOOK_SECRET not configured")
        raise ApiError("Webhook secret not configured", 500)

    svix_id = request.headers.get('svix-id')
    svix_timestamp = request.headers.get('svix-timestamp')
    svix_signature = request.headers.get('svix-signature')
    if not svix_id or not svix_timestamp or not svix_signature:
        raise ApiError("Missing webhook headers")

    payload = request.get_data()
    if not verify_svix_signature(secret, svix_id, svix_timestamp, svix_signature, payload):
        logger.warning("Rejected Resend webhook with invalid signature")
        raise Unauthorized("Invalid signature")

    event = _parse_event(payload)
    event_type = event.get('type')
    data = event.get('data') or {}
    logger.info(f"Resend webhook event: {event_type}")

    status = DELIVERY_EVENT_STATUSES.get(event_type)
    email_id = data.get('email_id')
    if status and email_id:
        values = {"delivery_status": status, "delivery_error": None}
        if status != 'delivered':
            values["delivery_error"] = json.dumps(data)
        api.get_supabase_repo().update_email_delivery(email_id, values)
    elif not status:
        logger.info(f"Unhandled Resend event type: {event_type}")

    return jsonify({"received": True})
