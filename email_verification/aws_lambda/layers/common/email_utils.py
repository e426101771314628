import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from email_verification.aws_lambda.layers.common.common_utils import (
    DEFAULT_SENDGRID_TIMEOUT_SECONDS,
    EmailDeliveryError,
    EXPIRY_WINDOW,
    VERIFICATION_EMAIL_SUBJECT,
)
from email_verification.aws_lambda.layers.common.token_utils import describe_window

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

SENDGRID_MAIL_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

VERIFICATION_EMAIL_TEMPLATE = """
<p>Thank you for signing up! Please verify your email address by clicking the link below:</p>
<p><a href="{link}">Verify Email</a></p>
<p>This link will expire in {window}.</p>
"""


@dataclass(frozen=True)
class EmailMessage:
    to: str
    sender: str
    subject: str
    html: str

    def to_sendgrid_payload(self) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": self.to}]}],
            "from": {"email": self.sender},
            "subject": self.subject,
            "content": [{"type": "text/html", "value": self.html}],
        }


def render_verification_email(link: str) -> str:
    return VERIFICATION_EMAIL_TEMPLATE.format(link=link, window=describe_window(EXPIRY_WINDOW))


class EmailClient:
    """Thin client for the SendGrid v3 Mail Send API, reused across invocations."""

    def __init__(
            self,
            api_key: str,
            from_email: str,
            timeout: int = DEFAULT_SENDGRID_TIMEOUT_SECONDS,
            session: Optional[requests.Session] = None
    ):
        if not api_key:
            raise EmailDeliveryError("SendGrid API key is required")
        if not from_email:
            raise EmailDeliveryError("Sender email address is required")

        self.from_email = from_email
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def build_verification_message(self, to: str, link: str) -> EmailMessage:
        return EmailMessage(
            to=to,
            sender=self.from_email,
            subject=VERIFICATION_EMAIL_SUBJECT,
            html=render_verification_email(link),
        )

    def send_verification_email(self, to: str, link: str) -> None:
        self.send(self.build_verification_message(to, link))

    def send(self, message: EmailMessage) -> None:
        logger.debug(f"Sending '{message.subject}' email to {message.to}")

        try:
            response = self.session.post(
                SENDGRID_MAIL_SEND_URL,
                json=message.to_sendgrid_payload(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise EmailDeliveryError(f"Timeout sending email to {message.to} (timeout: {self.timeout}s)")
        except requests.exceptions.ConnectionError as e:
            raise EmailDeliveryError(f"Connection error sending email to {message.to}: {str(e)}")
        except requests.exceptions.RequestException as e:
            raise EmailDeliveryError(f"Request error sending email to {message.to}: {str(e)}")

        if not 200 <= response.status_code < 300:
            raise EmailDeliveryError(
                f"Failed to send verification email to {message.to}, "
                f"HTTP status: {response.status_code}, response: {response.text}"
            )

        logger.info(f"Verification email accepted for delivery to {message.to}")

    def close(self) -> None:
        self.session.close()
