"""Email notification service using Resend API."""
import logging
from decimal import Decimal

import resend
from app.config import settings
from app.models.user import User

logger = logging.getLogger(__name__)

# Configure Resend API
resend.api_key = settings.RESEND_API_KEY

# Brand colors
BRAND_PRIMARY = "#6366f1"  # Indigo
BRAND_SUCCESS = "#10b981"  # Green
BRAND_WARNING = "#f59e0b"  # Amber
BRAND_DANGER = "#ef4444"   # Red
BRAND_DARK = "#1f2937"     # Dark gray
BRAND_LIGHT = "#f9fafb"    # Light gray


# Minor-unit exponents that differ from the usual two decimals
CURRENCY_EXPONENTS = {
    "JPY": 0, "KRW": 0, "VND": 0, "CLP": 0, "ISK": 0, "UGX": 0,
    "BHD": 3, "KWD": 3, "OMR": 3, "JOD": 3, "TND": 3,
}


def format_amount(amount: int, currency: str) -> str:
    """Render minor units as a display amount, e.g. 80050 USD -> "800.50 USD"."""
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), 2)
    value = Decimal(amount).scaleb(-exponent)
    return f"{value:,.{exponent}f} {currency}"


def get_email_template(title: str, content: str, cta_text: str = None, cta_url: str = None, cta_color: str = BRAND_PRIMARY) -> str:
    """
    Generate a branded email template.

    Args:
        title: Email title/heading
        content: HTML content for the email body
        cta_text: Optional call-to-action button text
        cta_url: Optional call-to-action button URL
        cta_color: Button background color

    Returns:
        Complete HTML email template
    """
    cta_button = ""
    if cta_text and cta_url:
        cta_button = f"""
        <div style="text-align: center; margin: 30px 0;">
            <a href="{cta_url}" style="display: inline-block; background-color: {cta_color}; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; font-weight: 600; font-size: 16px;">
                {cta_text}
            </a>
        </div>
        """

    return f"""
    <!DOCTYPE html>
    <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f3f4f6;">
            <table width="100%" cellpadding="0" cellspacing="0" style="background-color: #f3f4f6; padding: 40px 20px;">
                <tr>
                    <td align="center">
                        <table width="600" cellpadding="0" cellspacing="0" style="background-color: white; border-radius: 12px; overflow: hidden;">
                            <tr>
                                <td style="background-color: {BRAND_PRIMARY}; padding: 32px 40px; text-align: center;">
                                    <h2 style="margin: 0; color: white; font-size: 22px; font-weight: 600;">{title}</h2>
                                </td>
                            </tr>
                            <tr>
                                <td style="padding: 40px;">
                                    {content}
                                    {cta_button}
                                </td>
                            </tr>
                            <tr>
                                <td style="background-color: {BRAND_LIGHT}; padding: 24px 40px; border-top: 1px solid #e5e7eb;">
                                    <p style="margin: 0; color: #9ca3af; font-size: 12px; line-height: 1.5;">
                                        You are receiving this because you earn referral commissions on {settings.FRONTEND_URL.replace('http://', '').replace('https://', '').split('/')[0]}.
                                    </p>
                                </td>
                            </tr>
                        </table>
                    </td>
                </tr>
            </table>
        </body>
    </html>
    """


def _paragraph(text: str) -> str:
    return f'<p style="margin: 0 0 20px 0; color: {BRAND_DARK}; font-size: 16px; line-height: 1.6;">{text}</p>'


def _summary_box(rows: list[tuple[str, str]], accent: str) -> str:
    cells = "".join(
        f"""
        <tr>
            <td style="padding: 6px 0; color: #6b7280; font-size: 14px;">{label}:</td>
            <td style="padding: 6px 0; color: {BRAND_DARK}; font-size: 14px; font-weight: 600; text-align: right;">{value}</td>
        </tr>
        """
        for label, value in rows
    )
    return f"""
    <div style="background-color: {BRAND_LIGHT}; padding: 20px; border-radius: 8px; margin: 25px 0; border-left: 4px solid {accent};">
        <table width="100%" cellpadding="0" cellspacing="0">{cells}</table>
    </div>
    """


class EmailService:
    """Service for sending ledger notifications via Resend."""

    @staticmethod
    def _send(user: User, subject: str, title: str, content: str, cta_text: str, cta_path: str, color: str) -> bool:
        try:
            if not settings.RESEND_API_KEY:
                logger.warning("RESEND_API_KEY not configured, skipping email")
                return False

            html_content = get_email_template(
                title=title,
                content=_paragraph(f"Hi <strong>{user.name}</strong>,") + content,
                cta_text=cta_text,
                cta_url=f"{settings.FRONTEND_URL}{cta_path}",
                cta_color=color,
            )

            resend.Emails.send({
                "from": settings.EMAIL_FROM,
                "to": user.email,
                "subject": subject,
                "html": html_content
            })

            logger.info(f"Email '{subject}' sent to {user.email}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email '{subject}' to {user.email}: {e}")
            return False

    @staticmethod
    def send_earning_created_email(user: User, payload: dict) -> bool:
        """
        Tell a beneficiary a new commission was recorded and is on hold.

        Args:
            user: Beneficiary
            payload: ``earning.created`` event payload

        Returns:
            True if email sent successfully, False otherwise
        """
        amount = format_amount(payload["amount"], payload["currency"])
        content = _paragraph(f"You earned a new referral commission of <strong>{amount}</strong>.")
        content += _summary_box([
            ("Plan", payload.get("plan", "")),
            ("Tier", str(payload.get("tier_level", 1))),
            ("Available from", payload.get("eligible_for_payout_at") or "now"),
        ], BRAND_PRIMARY)
        return EmailService._send(
            user, f"New commission: {amount}", "New Commission Recorded",
            content, "View Earnings", "/dashboard/earnings", BRAND_PRIMARY,
        )

    @staticmethod
    def send_earnings_approved_email(user: User, payload: dict) -> bool:
        """Tell a beneficiary that held commissions matured and can be paid out."""
        total = format_amount(payload["total"], payload["currency"])
        content = _paragraph(
            f"{payload['count']} commission(s) totalling <strong>{total}</strong> finished their hold period "
            f"and are now available for payout."
        )
        return EmailService._send(
            user, f"{total} ready for payout", "Earnings Available",
            content, "Request Payout", "/dashboard/earnings", BRAND_SUCCESS,
        )

    @staticmethod
    def send_earning_reversed_email(user: User, payload: dict, disputed: bool) -> bool:
        amount = format_amount(payload["amount"], payload["currency"])
        verb = "placed under dispute" if disputed else "cancelled"
        content = _paragraph(f"A commission of <strong>{amount}</strong> was {verb}.")
        content += _summary_box([("Reason", payload.get("reason", ""))], BRAND_WARNING)
        return EmailService._send(
            user, f"Commission {verb}: {amount}", "Commission Update",
            content, "View Earnings", "/dashboard/earnings", BRAND_WARNING,
        )

    @staticmethod
    def send_payout_email(user: User, event_type: str, payload: dict) -> bool:
        """
        Notify a beneficiary about a payout state change.

        Args:
            user: Beneficiary
            event_type: One of payout.requested, payout.paid, payout.failed,
                payout.cancelled, payout.returned
            payload: Event payload with payout_id, amount, net_amount, currency

        Returns:
            True if email sent successfully, False otherwise
        """
        net = format_amount(payload["net_amount"], payload["currency"])
        headline = {
            "payout.requested": ("Payout Requested", f"Your payout of <strong>{net}</strong> has been requested.", BRAND_PRIMARY),
            "payout.paid": ("Payout Sent", f"Your payout of <strong>{net}</strong> has been paid.", BRAND_SUCCESS),
            "payout.failed": ("Payout Failed", f"Your payout of <strong>{net}</strong> failed. The earnings are available again.", BRAND_DANGER),
            "payout.cancelled": ("Payout Cancelled", f"Your payout of <strong>{net}</strong> was cancelled. The earnings are available again.", BRAND_WARNING),
            "payout.returned": ("Payout Returned", f"Your payout of <strong>{net}</strong> was returned by your bank. The earnings are available again.", BRAND_DANGER),
        }
        title, text, color = headline[event_type]
        rows = [("Payout ID", f"{payload['payout_id'][:8]}..."), ("Net amount", net)]
        if payload.get("message"):
            rows.append(("Details", payload["message"]))
        content = _paragraph(text) + _summary_box(rows, color)
        return EmailService._send(
            user, f"{title}: {net}", title,
            content, "View Payouts", "/dashboard/payouts", color,
        )

    @staticmethod
    def send_ledger_event_email(user: User, event_type: str, payload: dict) -> bool:
        """Route an outbox event to its template."""
        if event_type == "earning.created":
            return EmailService.send_earning_created_email(user, payload)
        if event_type == "earnings.approved":
            return EmailService.send_earnings_approved_email(user, payload)
        if event_type in ("earning.cancelled", "earning.disputed"):
            return EmailService.send_earning_reversed_email(user, payload, disputed=event_type == "earning.disputed")
        if event_type.startswith("payout."):
            return EmailService.send_payout_email(user, event_type, payload)
        logger.warning(f"No email template for event type {event_type}")
        return False
