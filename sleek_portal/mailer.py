"""
Outgoing email through Resend, plus verification of Resend's (Svix-signed)
delivery webhooks.
"""

import os
import time
import hmac
import base64
import hashlib
from typing import Dict, List, Optional, Tuple, Union
import resend
import structlog
from .payments import SIGNATURE_TOLERANCE_SECONDS
from .utils import sanitize_email

logger = structlog.get_logger()

DEFAULT_SENDER = "Sleek Apparels <noreply@sleekapparels.com>"

# Resend delivery events and the delivery_status each maps to
DELIVERY_EVENT_STATUSES = {
    'email.delivered': 'delivered',
    'email.bounced': 'bounced',
    'email.delivery_delayed': 'delayed',
}

class Mailer:
    """Thin wrapper over the Resend SDK; sending never raises."""

    def __init__(self, repo=None):
        api_key = (os.getenv('RESEND_API_KEY') or "").strip()
        if not api_key:
            raise ValueError("RESEND_API_KEY environment variable is required")
        resend.api_key = api_key

        self.sender = os.getenv('NOTIFICATION_FROM', DEFAULT_SENDER)
        self.admin_email = os.getenv('ADMIN_NOTIFICATION_EMAIL')
        self.repo = repo

    def send(self, to: Union[str, List[str]], subject: str, html: str,
             reply_to: Optional[str] = None) -> Tuple[bool, Optional[str]]:
        """
        Send one email.

        Returns:
            (True, resend_email_id) on success, (False, error message) otherwise.
        """
        recipients = [to] if isinstance(to, str) else list(to)
        payload: Dict[str, object] = {
            "from": self.sender,
            "to": recipients,
            "subject": subject,
            "html": html,
        }
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            response = resend.Emails.send(payload)
        except Exception as e:
            logger.error(f"Resend send failed: {e}", recipient_email=recipients[0] if recipients else None)
            return False, str(e)

        if not isinstance(response, dict) or not response.get("id"):
            logger.error(f"Unexpected Resend response: {response}")
            return False, str(response)

        email_id = response["id"]
        logger.info("Email sent", email_id=email_id, recipient_email=recipients[0])
        self._record_delivery(email_id, recipients[0], subject)
        return True, email_id

    def notify_admin(self, subject: str, html: str, reply_to: Optional[str] = None) -> Tuple[bool, Optional[str]]:
        if not self.admin_email:
            logger.warning("ADMIN_NOTIFICATION_EMAIL not set, skipping admin notification")
            return False, "ADMIN_NOTIFICATION_EMAIL is not configured"
        return self.send(self.admin_email, subject, html, reply_to=reply_to)

    def _record_delivery(self, email_id: str, recipient: str, subject: str) -> None:
        if self.repo is None:
            return
        try:
            self.repo.record_email_delivery(email_id, recipient, subject)
        except Exception as e:
            # Tracking only; the email itself has gone out
            logger.warning(f"Could not record email delivery for {sanitize_email(recipient)}: {e}")

def _signing_key(secret: str) -> bytes:
    """Svix secrets are 'whsec_' followed by the base64 key."""
    if secret.startswith('whsec_'):
        return base64.b64decode(secret[len('whsec_'):])
    return secret.encode('utf-8')

def verify_svix_signature(secret: str, svix_id: str, svix_timestamp: str,
                          svix_signature: str, body: bytes,
                          tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
                          now: Optional[float] = None) -> bool:
    """
    Check a Resend webhook signature.

    The signature header holds space separated 'v1,<base64>' entries; any one
    matching HMAC-SHA256 over '<id>.<timestamp>.<body>' is accepted.
    Timestamps more than `tolerance` seconds away from now are rejected.
    """
    try:
        signed_at = int(svix_timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if tolerance and abs(current - signed_at) > tolerance:
        return False

    signed_content = f"{svix_id}.{svix_timestamp}.".encode('utf-8') + body
    expected = base64.b64encode(
        hmac.new(_signing_key(secret), signed_content, hashlib.sha256).digest()
    ).decode('ascii')

    for candidate in svix_signature.split(' '):
        version, _, signature = candidate.partition(',')
        if version == 'v1' and hmac.compare_digest(signature, expected):
            return True
    return False
