"""Notification email delivery through Resend."""

import html
import logging
from typing import Any, Dict, Optional

import resend

from homebase import config

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    pass


def render_notification_email(title: str, body: str, action_url: str) -> str:
    safe_title = html.escape(title)
    safe_body = html.escape(body)
    safe_url = html.escape(action_url, quote=True)
    return f"""<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{safe_title}</title></head>
  <body style="margin:0;padding:0;font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif;background-color:#f3f4f6;">
    <table role="presentation" style="max-width:600px;margin:0 auto;background-color:#ffffff;border-radius:16px;">
      <tr><td style="padding:32px;text-align:center;"><h1 style="margin:0;font-size:24px;">{safe_title}</h1></td></tr>
      <tr><td style="padding:0 32px 24px;color:#4b5563;font-size:16px;line-height:1.6;white-space:pre-wrap;">{safe_body}</td></tr>
      <tr><td style="padding:0 32px 32px;text-align:center;">
        <a href="{safe_url}" style="display:inline-block;padding:14px 32px;border-radius:8px;background:#667eea;color:#ffffff;text-decoration:none;font-weight:600;">View Details</a>
      </td></tr>
      <tr><td style="padding:24px 32px;border-top:1px solid #e5e7eb;color:#9ca3af;font-size:12px;text-align:center;">
        You're receiving this because you're a HomeBase user.
      </td></tr>
    </table>
  </body>
</html>
"""


class EmailSender:
    def __init__(
        self,
        api_key: Optional[str] = None,
        from_address: Optional[str] = None,
        app_url: Optional[str] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else config.RESEND_API_KEY
        self.from_address = from_address or config.EMAIL_FROM_ADDRESS
        self.app_url = (app_url or config.APP_URL).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def absolute_url(self, action_url: Optional[str]) -> str:
        if not action_url:
            return f"{self.app_url}/notifications"
        if action_url.startswith(("http://", "https://")):
            return action_url
        return f"{self.app_url}{action_url if action_url.startswith('/') else '/' + action_url}"

    def send_notification(self, to: str, title: str, body: str, action_url: Optional[str] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise EmailDeliveryError("RESEND_API_KEY not configured")
        if not to:
            raise EmailDeliveryError("No email address for user")

        resend.api_key = self.api_key
        email_data = {
            "from": self.from_address,
            "to": [to],
            "subject": title,
            "html": render_notification_email(title, body, self.absolute_url(action_url)),
        }
        try:
            logger.info("Sending notification email via Resend to %s", to)
            response = resend.Emails.send(email_data)
        except Exception as exc:
            raise EmailDeliveryError(f"Resend API: {exc}") from exc
        return dict(response) if isinstance(response, dict) else {"response": str(response)}


email_sender = EmailSender()
