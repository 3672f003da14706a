"""
EmailManager module for the Family Finance API.

- Provides the EmailManager class, which sends HTML emails through an ordered list of
providers (an HTTP transactional-email API, or the console in development).
- Every ``send_*`` method returns True on the first provider that succeeds and False when
all providers fail; callers decide whether a failure is fatal.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.error_handling import UpstreamFailure

logger = get_logger(prefix="[EmailManager]")

PRIORITY_LABELS = {"LOW": "Low", "MEDIUM": "Medium", "HIGH": "High", "URGENT": "Urgent"}


def format_currency(amount: Any, currency: Optional[str] = None) -> str:
    """Render an amount the way the UI does, e.g. ``$ 1.250.000 COP``."""
    currency = currency or settings.DEFAULT_CURRENCY
    value = Decimal(str(amount)).quantize(Decimal("1"))
    return f"$ {value:,} {currency}".replace(",", ".")


class EmailManager:
    """
    Handles sending emails using multiple providers.
    Supports invitation, reminder, welcome and password-reset messages.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.logger = logger
        self._http_client = http_client
        if settings.EMAIL_PROVIDER == "http":
            self.providers = [self._send_via_http]
        else:
            self.providers = [self._send_via_console]
        self.logger.debug("Initialized with providers: %s", [p.__name__ for p in self.providers])

    async def send_html_email(
        self, to_email: str, subject: str, html_content: str, username: Optional[str] = None
    ) -> bool:
        """
        Send an HTML email with custom subject and content.
        Returns True if sent successfully, False otherwise.
        """
        self.logger.info("Attempting to send '%s' to %s (username=%s)", subject, to_email, username)
        for provider in self.providers:
            try:
                await provider(to_email, subject, html_content)
                self.logger.info("Email sent to %s using provider %s", to_email, provider.__name__)
                return True
            except (UpstreamFailure, httpx.HTTPError) as e:
                self.logger.warning("Email provider %s failed for %s: %s", provider.__name__, to_email, e)
        self.logger.error("All email providers failed to send '%s' to %s", subject, to_email)
        return False

    async def send_welcome_email(self, to_email: str, name: Optional[str] = None) -> bool:
        subject = "Welcome to Family Finance"
        html_content = f"""
        <html>
        <body>
            <h2>Welcome{f' {name}' if name else ''}!</h2>
            <p>Your account is ready. A family has been set up for you so you can start tracking
            budgets, reminders and transactions right away.</p>
            <a href='{settings.BASE_URL}/dashboard'>Open your dashboard</a>
        </body>
        </html>
        """
        return await self.send_html_email(to_email, subject, html_content, name)

    async def send_family_invitation_email(
        self,
        to_email: str,
        inviter_name: str,
        family_name: str,
        invite_url: str,
        role: str,
        expires_at: Optional[str] = None,
    ) -> bool:
        """
        Send a family invitation email to the specified address.
        Returns True if sent successfully, False otherwise.
        """
        subject = f"{inviter_name} invited you to join {family_name}"
        html_content = f"""
        <html>
        <body>
            <h2>Family Invitation</h2>
            <p>{inviter_name} invited you to join <strong>{family_name}</strong> as {role.lower()}.</p>
            <p>
                <a href='{invite_url}' style='background-color: #4CAF50; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px;'>Accept Invitation</a>
            </p>
            {f'<p>This invitation will expire on {expires_at}.</p>' if expires_at else ''}
            <p>If you did not expect this invitation, you can safely ignore this email.</p>
        </body>
        </html>
        """
        return await self.send_html_email(to_email, subject, html_content)

    async def send_reminder_email(
        self, to_email: str, name: Optional[str], reminder: Dict[str, Any], family_name: str
    ) -> bool:
        """Payment reminder for one family member."""
        days = reminder.get("days_until_due", 0)
        if days < 0:
            when = f"was due {abs(days)} day(s) ago"
        elif days == 0:
            when = "is due today"
        else:
            when = f"is due in {days} day(s)"
        amount = reminder.get("amount")
        due_date = reminder.get("due_date")
        if isinstance(due_date, datetime):
            due_date = due_date.strftime("%Y-%m-%d")
        subject = f"Reminder: {reminder.get('title')} {when}"
        html_content = f"""
        <html>
        <body>
            <h2>Hi{f' {name}' if name else ''},</h2>
            <p><strong>{reminder.get('title')}</strong> for {family_name} {when}.</p>
            <ul>
                <li>Due date: {due_date}</li>
                {f'<li>Amount: {format_currency(amount)}</li>' if amount is not None else ''}
                <li>Priority: {PRIORITY_LABELS.get(reminder.get('priority'), reminder.get('priority'))}</li>
            </ul>
            <a href='{settings.BASE_URL}/reminders'>View reminders</a>
        </body>
        </html>
        """
        return await self.send_html_email(to_email, subject, html_content, name)

    async def send_password_reset_email(self, to_email: str, reset_link: str, name: Optional[str] = None) -> bool:
        subject = "Reset your password"
        html_content = f"""
        <html>
        <body>
            <h2>Password reset</h2>
            <p>Click the link below to choose a new password. The link expires in
            {settings.PASSWORD_RESET_EXPIRY_HOURS} hour(s).</p>
            <a href='{reset_link}'>Reset password</a>
            <p>If you did not request this, you can ignore this email.</p>
        </body>
        </html>
        """
        return await self.send_html_email(to_email, subject, html_content, name)

    async def _send_via_http(self, to_email: str, subject: str, html_content: str) -> None:
        """POST the message to the transactional email API."""
        api_key = settings.EMAIL_API_KEY.get_secret_value() if settings.EMAIL_API_KEY else ""
        payload = {"from": settings.EMAIL_FROM, "to": [to_email], "subject": subject, "html": html_content}
        headers = {"Authorization": f"Bearer {api_key}"}
        if self._http_client is not None:
            response = await self._http_client.post(settings.EMAIL_API_URL, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.EMAIL_TIMEOUT_SECONDS) as client:
                response = await client.post(settings.EMAIL_API_URL, json=payload, headers=headers)
        if response.status_code >= 300:
            raise UpstreamFailure(
                f"Email API returned {response.status_code}",
                "EMAIL_PROVIDER_ERROR",
                {"status_code": response.status_code, "body": response.text[:500]},
            )

    async def _send_via_console(self, to_email: str, subject: str, html_content: str) -> None:
        """
        For development: log the email instead of sending.
        """
        self.logger.info("[DEV EMAIL] To: %s\nSubject: %s\nHTML:\n%s", to_email, subject, html_content)


# Singleton instance
email_manager = EmailManager()
