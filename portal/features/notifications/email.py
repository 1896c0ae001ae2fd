"""
Transactional email through the Resend HTTP API.

Callers treat delivery as best effort: a NotificationError is caught at the
call site and recorded in the health check log.
"""
import html
import logging
from datetime import datetime
from typing import Optional

import httpx

from portal.core.config import settings

logger = logging.getLogger("portal.notifications")

RESEND_API_URL = "https://api.resend.com/emails"


class NotificationError(Exception):
    pass


class ResendMailer:
    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL
        self._http = http

    def send(self, to: str, subject: str, html_body: str) -> None:
        if not self.api_key:
            raise NotificationError("RESEND_API_KEY not configured")

        client = self._http or httpx.Client(timeout=10.0)
        try:
            response = client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.from_email, "to": [to], "subject": subject, "html": html_body},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Email delivery failed: {e}") from e
        finally:
            if self._http is None:
                client.close()

        if response.status_code >= 300:
            raise NotificationError(f"Email delivery failed: {response.status_code} {response.text[:200]}")
        logger.info("email.sent", extra={"subject": subject})


def _dashboard_url() -> str:
    return f"{settings.BASE_URL.rstrip('/')}/dashboard"


def team_invite_email(owner_email: str, token: str, expires_at: datetime) -> tuple[str, str]:
    link = f"{settings.BASE_URL.rstrip('/')}/team/accept-invite?token={token}"
    subject = f"{owner_email} invited you to join their Hopsworks team"
    body = (
        f"<p>{html.escape(owner_email)} has invited you to join their team on Hopsworks.</p>"
        f'<p><a href="{html.escape(link)}">Accept invitation</a></p>'
        f"<p>This invitation expires on {expires_at:%B %d, %Y}.</p>"
    )
    return subject, body


def downgrade_notice_email(project_count: int, deadline: datetime) -> tuple[str, str]:
    excess = project_count - 1
    subject = f"Action Required: Delete {excess} project(s) to continue on Free plan"
    body = (
        "<p>Your Hopsworks account has been switched to the <strong>Free plan</strong>.</p>"
        f"<p>The Free plan includes 1 project. You currently have {project_count} projects. "
        f"Please delete {excess} project(s) by <strong>{deadline:%A, %B %d, %Y}</strong>.</p>"
        f'<p>Alternatively, <a href="{_dashboard_url()}">add a payment method</a> to return to Pay-as-you-go.</p>'
    )
    return subject, body


def payment_failed_email(amount_due: Optional[float], currency: str = "usd") -> tuple[str, str]:
    amount = f"{amount_due:.2f} {currency.upper()}" if amount_due is not None else "your latest invoice"
    subject = "Payment failed for your Hopsworks subscription"
    body = (
        f"<p>We could not charge your payment method for {amount}.</p>"
        f'<p>Please update your payment details in the <a href="{_dashboard_url()}?tab=billing">billing page</a>. '
        "We will retry the charge automatically.</p>"
    )
    return subject, body


def spending_alert_email(threshold: int, monthly_total: float, spending_cap: float) -> tuple[str, str]:
    subject = f"You have used {threshold}% of your Hopsworks spending cap"
    body = (
        f"<p>Your usage this month is ${monthly_total:.2f}, which is {threshold}% of your "
        f"${spending_cap:.2f} spending cap.</p>"
        f'<p>You can adjust the cap in the <a href="{_dashboard_url()}?tab=billing">billing page</a>.</p>'
    )
    return subject, body
