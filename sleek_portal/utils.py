"""
Utility functions for the Sleek Apparels order portal.
"""

import re
import time
import random
import string
import functools
from datetime import datetime, timezone
from typing import Callable, Any, Optional
import structlog

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

def exponential_backoff(max_retries: int = 3, base_delay: float = 1.0,
                        retry_on: tuple = (Exception,)):
    """
    Decorator that implements exponential backoff for function retries.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds (will be multiplied exponentially)
        retry_on: Exception types that trigger a retry; anything else propagates immediately
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        logger.error(f"Function {func.__name__} failed after {max_retries} retries: {e}")
                        raise

                    delay = base_delay * (2 ** attempt) + random.uniform(0, 1)
                    logger.warning(f"Function {func.__name__} failed on attempt {attempt + 1}, retrying in {delay:.2f}s: {e}")
                    time.sleep(delay)

        return wrapper
    return decorator

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string, the format the database stores."""
    return utcnow().isoformat()

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp string returned by PostgREST.

    Naive values are treated as UTC; a trailing 'Z' is accepted.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def generate_order_number(prefix: str = "ORD") -> str:
    """Build a reference like ORD-1718000000000-k3j9x0a2b."""
    millis = int(time.time() * 1000)
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{millis}-{suffix}"

def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))

def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers, returning default if denominator is zero."""
    return numerator / denominator if denominator != 0 else default

def format_currency(amount: float) -> str:
    """Format a number as currency string."""
    return f"${amount:,.2f}"

def to_cents(amount: float) -> int:
    """Convert a dollar amount to integer cents."""
    return int(round(float(amount) * 100))

# PII sanitization

def sanitize_email(email: Any) -> str:
    """john.doe@example.com -> joh***@example.com"""
    if not isinstance(email, str) or not email:
        return '[invalid-email]'
    parts = email.split('@')
    if len(parts) != 2:
        return '[invalid-email]'
    local, domain = parts
    masked = local[:3] + '***' if len(local) > 3 else '***'
    return f"{masked}@{domain}"

def sanitize_phone(phone: Any) -> str:
    """+8801234567890 -> +880****90"""
    if not isinstance(phone, str) or not phone:
        return '[invalid-phone]'
    cleaned = re.sub(r'[^\d+]', '', phone)
    if len(cleaned) < 6:
        return '***'
    return f"{cleaned[:4]}****{cleaned[-2:]}"

def sanitize_order_id(order_id: Any) -> str:
    """550e8400-e29b-41d4-a716-446655440000 -> 550e8400-****"""
    if not isinstance(order_id, str) or not order_id:
        return '[invalid-id]'
    return order_id[:8] + '-****' if len(order_id) > 8 else order_id

_SECRET_MARKERS = ('password', 'token', 'secret')

def sanitize_pii(logger_, method_name: str, event_dict: dict) -> dict:
    """structlog processor that masks PII in structured log fields."""
    for key, value in list(event_dict.items()):
        if key == 'event':
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = '[REDACTED]'
        elif not isinstance(value, str):
            continue
        elif 'email' in lowered:
            event_dict[key] = sanitize_email(value)
        elif 'phone' in lowered:
            event_dict[key] = sanitize_phone(value)
        elif 'orderid' in lowered or 'order_id' in lowered:
            event_dict[key] = sanitize_order_id(value)
    return event_dict
