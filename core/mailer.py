"""
Contact form mailer.

Relays contact-form submissions to the sales inbox over SMTP (STARTTLS).
"""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from core.config import get_smtp_config

logger = logging.getLogger(__name__)


def build_contact_message(
    name: str,
    email: str,
    message: str,
    company: Optional[str] = None,
    sender: str = "noreply@visionera.live",
    recipient: str = "info@visionera.live",
) -> MIMEMultipart:
    """Build the HTML notification mail for one submission."""
    company_label = company or "N/A"

    msg = MIMEMultipart()
    msg["From"] = f'"VisionEra Contact Form" <{sender}>'
    msg["To"] = recipient
    msg["Reply-To"] = email
    msg["Subject"] = f"[VisionEra Contact] {name} from {company_label}"

    body_html = (
        "<h2>New Contact Form Submission</h2>"
        '<table style="border-collapse: collapse; width: 100%;">'
        f'<tr><td style="padding: 8px; font-weight: bold;">Name:</td>'
        f'<td style="padding: 8px;">{html.escape(name)}</td></tr>'
        f'<tr><td style="padding: 8px; font-weight: bold;">Email:</td>'
        f'<td style="padding: 8px;">{html.escape(email)}</td></tr>'
        f'<tr><td style="padding: 8px; font-weight: bold;">Company:</td>'
        f'<td style="padding: 8px;">{html.escape(company_label)}</td></tr>'
        "</table>"
        "<h3>Message:</h3>"
        f'<p style="white-space: pre-wrap;">{html.escape(message)}</p>'
    )
    msg.attach(MIMEText(body_html, "html"))
    return msg


def send_contact_message(name: str, email: str, message: str, company: Optional[str] = None) -> None:
    """
    Send a contact-form submission.

    Raises:
        smtplib.SMTPException, OSError: When the SMTP relay fails.
    """
    smtp_config = get_smtp_config()
    user = smtp_config.get("user") or ""
    msg = build_contact_message(
        name=name,
        email=email,
        message=message,
        company=company,
        sender=user or "noreply@visionera.live",
        recipient=smtp_config.get("recipient", "info@visionera.live"),
    )

    with smtplib.SMTP(
        smtp_config.get("host", "smtp.gmail.com"),
        smtp_config.get("port", 587),
        timeout=smtp_config.get("timeout_sec", 10),
    ) as server:
        server.starttls()
        if user:
            server.login(user, smtp_config.get("password") or "")
        server.send_message(msg)

    logger.info(f"Contact form submission from {email} relayed")
