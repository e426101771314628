import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import quote

from email_verification.aws_lambda.layers.common.common_utils import (
    ConfigurationError,
    DEFAULT_TOKEN_BYTES,
    EXPIRY_WINDOW,
    MIN_TOKEN_BYTES,
)

logger = logging.getLogger(__name__)

VERIFY_PATH = "/verify"
# Characters encodeURIComponent leaves alone beyond the unreserved set quote() already keeps.
EMAIL_SAFE_CHARACTERS = "!~*'()"


@dataclass(frozen=True)
class VerificationLink:
    email: str
    token: str
    expiry_time: datetime
    link: str


def generate_token(token_bytes: int = DEFAULT_TOKEN_BYTES) -> str:
    if token_bytes < MIN_TOKEN_BYTES:
        raise ConfigurationError(f"Token length must be at least {MIN_TOKEN_BYTES} bytes, got {token_bytes}")
    return secrets.token_hex(token_bytes)


def build_verification_link(domain_name: str, email: str, token: str) -> str:
    """
    Build the link the user follows to confirm their address, e.g.
    http://example.org/verify?email=user%40example.com&token=<hex>
    """
    if not domain_name or not domain_name.strip():
        raise ConfigurationError("Domain name is required to build a verification link")

    encoded_email = quote(email, safe=EMAIL_SAFE_CHARACTERS)
    return f"http://{domain_name.strip()}{VERIFY_PATH}?email={encoded_email}&token={token}"


def calculate_expiry_time(created_at: datetime, window: timedelta = EXPIRY_WINDOW) -> datetime:
    return created_at + window


def generate_verification_link(
        email: str,
        domain_name: str,
        now: Callable[[], datetime],
        token_bytes: int = DEFAULT_TOKEN_BYTES
) -> VerificationLink:
    token = generate_token(token_bytes)
    expiry_time = calculate_expiry_time(now())
    link = build_verification_link(domain_name, email, token)

    logger.debug(f"Generated verification link for {email}, expires at {expiry_time.isoformat()}")
    return VerificationLink(email=email, token=token, expiry_time=expiry_time, link=link)


def describe_window(window: timedelta = EXPIRY_WINDOW) -> str:
    total_seconds = int(window.total_seconds())
    if total_seconds % 60 == 0:
        minutes = total_seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{total_seconds} seconds"
