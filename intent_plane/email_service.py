"""
Intent Plane Email Service
==========================

Seller and buyer notifications for completed flows: new orders, purchase
receipts and enquiries.

Uses SMTP for delivery with Jinja2 for template rendering. Sending is
blocking, so async callers hand it to a worker thread. A failed email is
logged and never fails the flow that triggered it.
"""

import logging
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Optional

import jinja2

from .config import SMTPConfig

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates" / "emails"

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}


def format_amount(amount: int, currency: str = "INR") -> str:
    """Render minor units as a display price, e.g. 50000 INR -> ₹500.00."""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    major, minor = divmod(amount, 100)
    return f"{symbol}{major:,}.{minor:02d}"


class EmailService:
    """Renders notification templates and delivers them over SMTP."""

    def __init__(self, config: Optional[SMTPConfig] = None):
        self.config = config or SMTPConfig()
        self.smtp_configured = self.config.is_configured
        if self.smtp_configured:
            logger.info(f"Notifications via {self.config.host}:{self.config.port}")
        else:
            logger.warning("SMTP_USER/SMTP_PASSWORD not set, notifications are disabled")

        self.templates = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=jinja2.select_autoescape(["html"]),
        )
        self.templates.filters["money"] = format_amount

    def render(self, template_name: str, **context: Any) -> str:
        return self.templates.get_template(template_name).render(**context)

    def _deliver(self, to_email: str, subject: str, html: str) -> bool:
        if not self.smtp_configured:
            logger.info(f"Skipping '{subject}' to {to_email}: SMTP disabled")
            return False

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.from_email
        message["To"] = to_email
        message["Reply-To"] = self.config.reply_to
        message.set_content(f"{subject}\n\nOpen this message in an HTML mail client for details.")
        message.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as server:
                if self.config.use_tls:
                    server.starttls(context=ssl.create_default_context())
                server.login(self.config.user, self.config.password)
                server.sendmail(self.config.from_email, to_email, message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Could not deliver '{subject}' to {to_email}: {e}")
            return False

        logger.info(f"Delivered '{subject}' to {to_email}")
        return True

    # ==========================================
    # SELLER NOTIFICATIONS
    # ==========================================

    def send_order_notification(
        self,
        to_email: str,
        seller_name: str,
        product_title: str,
        amount: int,
        currency: str,
        order_id: str,
        buyer: str,
    ) -> bool:
        """Tell the seller a purchase was confirmed."""
        html = self.render(
            "order_notification.html",
            seller_name=seller_name,
            product_title=product_title,
            amount=amount,
            currency=currency,
            order_id=order_id,
            buyer=buyer,
        )
        subject = f"New order: {product_title} ({format_amount(amount, currency)})"
        return self._deliver(to_email, subject, html)

    def send_enquiry_notification(
        self,
        to_email: str,
        seller_name: str,
        name: str,
        contact_email: Optional[str],
        phone: Optional[str],
        message: str,
        subject_title: str = "",
    ) -> bool:
        """Forward a new enquiry to the seller."""
        html = self.render(
            "enquiry_notification.html",
            seller_name=seller_name,
            name=name,
            contact_email=contact_email,
            phone=phone,
            message=message,
            subject_title=subject_title,
        )
        return self._deliver(to_email, f"New enquiry from {name}", html)

    # ==========================================
    # BUYER RECEIPT
    # ==========================================

    def send_purchase_receipt(
        self,
        to_email: str,
        seller_name: str,
        product_title: str,
        amount: int,
        currency: str,
        order_id: str,
    ) -> bool:
        html = self.render(
            "purchase_receipt.html",
            seller_name=seller_name,
            product_title=product_title,
            amount=amount,
            currency=currency,
            order_id=order_id,
        )
        return self._deliver(to_email, f"Your receipt from {seller_name}", html)
