"""Email service - transactional email via Resend"""
import logging
from urllib.parse import quote

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"
    if not settings.APP_URL:
        return False, "APP_URL is not set in environment variables"
    return True, ""


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Send an email through the Resend API.

    Returns:
        bool: True on success, False on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns a dict with 'id' (older SDKs return an object)
        email_id = None
        if isinstance(response, dict):
            email_id = response.get('id')
        elif hasattr(response, 'id'):
            email_id = response.id

        if email_id:
            logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True
        logger.error(f"Email send returned invalid response: {response}")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def build_reset_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/auth/reset-password?token={quote(token)}"


def send_password_reset_email(email: str, token: str) -> bool:
    """
    Send a password reset link.

    Args:
        email: Recipient email address
        token: Reset token stored on the user row

    Returns:
        bool: True on success, False on failure
    """
    reset_url = build_reset_url(token)
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h1>TweetWiseAI</h1>
      <h2>Reset Your Password</h2>
      <p>We received a request to reset the password for your TweetWiseAI account.
      If you didn't make this request, you can safely ignore this email.</p>
      <p><a href="{reset_url}">Reset Password</a></p>
      <p>Or copy and paste this link into your browser:</p>
      <p style="word-break: break-all;">{reset_url}</p>
      <p><strong>This link will expire in 1 hour.</strong></p>
    </div>
    """
    return _send_email(email, "Reset your TweetWiseAI password", html)
