"""
Contact Form Route

POST /api/contact relays a public contact-form submission to the sales
inbox. No authentication; the IP-level rate limit applies.
"""

import logging
import smtplib

from fastapi import APIRouter, Request

from api.dependencies import get_client_ip
from api.schemas import ContactRequest
from core.errors import GatewayError
from core.mailer import send_contact_message
from core.rate_limits import RateLimitPolicy, enforce_rate_limits
from core.redis_client import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["contact"])


@router.post("/contact")
def contact(body: ContactRequest, request: Request):
    # Runs in the threadpool; the SMTP relay blocks
    enforce_rate_limits(get_redis(), get_client_ip(request), RateLimitPolicy.from_config())

    if not body.name or not body.email or not body.message:
        raise GatewayError(400, "VALIDATION_ERROR", "Name, email, and message are required")

    try:
        send_contact_message(body.name, body.email, body.message, body.company)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Contact form relay failed: {e}")
        raise GatewayError(500, "INTERNAL_ERROR", "Failed to send message")

    return {"success": True}
