import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Mapping, NoReturn, Optional

from email_verification.aws_lambda.layers.common.common_utils import (
    ConfigurationError,
    DEFAULT_DB_PORT,
    DEFAULT_SENDGRID_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_BYTES,
    MIN_TOKEN_BYTES,
)
from email_verification.aws_lambda.layers.common.secrets_manager_utils import get_secret_value

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = [
    'DB_HOST',
    'DOMAIN_NAME',
    'SENDGRID_FROM_EMAIL',
]

# Each credential may be given directly or as a Secrets Manager reference.
SECRET_BACKED_ENV_VARS = {
    'db_username': ('DB_USERNAME', 'DB_USERNAME_SECRET'),
    'db_password': ('DB_PASSWORD', 'DB_PASSWORD_SECRET'),
    'sendgrid_api_key': ('SENDGRID_API_KEY', 'SENDGRID_API_KEY_SECRET'),
}


@dataclass(frozen=True)
class VerificationSettings:
    db_host: str
    db_name: str
    domain_name: str
    sendgrid_from_email: str
    db_port: int = DEFAULT_DB_PORT
    db_schema: Optional[str] = None
    db_username: Optional[str] = None
    db_username_secret: Optional[str] = None
    db_password: Optional[str] = None
    db_password_secret: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    sendgrid_api_key_secret: Optional[str] = None
    region: Optional[str] = None
    token_bytes: int = DEFAULT_TOKEN_BYTES
    sendgrid_timeout_seconds: int = DEFAULT_SENDGRID_TIMEOUT_SECONDS

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "VerificationSettings":
        """
        Build settings from environment variables, failing fast with a single
        ConfigurationError that names every missing variable.
        """
        environ = os.environ if environ is None else environ
        env_vars = {var: environ.get(var, '').strip() for var in REQUIRED_ENV_VARS}

        missing = [var for var, val in env_vars.items() if not val]

        db_name = _first_present(environ, 'DB_NAME', 'DB_DATABASE')
        if not db_name:
            missing.append('DB_NAME (or DB_DATABASE)')

        credentials: Dict[str, Optional[str]] = {}
        for field_name, (plain_var, secret_var) in SECRET_BACKED_ENV_VARS.items():
            plain_value = environ.get(plain_var, '').strip() or None
            secret_name = environ.get(secret_var, '').strip() or None
            if not plain_value and not secret_name:
                missing.append(f"{plain_var} (or {secret_var})")
            credentials[field_name] = plain_value
            credentials[f"{field_name}_secret"] = secret_name

        if missing:
            _fail(f"Missing required environment variables: {', '.join(missing)}")

        token_bytes = _parse_int(environ, 'TOKEN_BYTES', DEFAULT_TOKEN_BYTES)
        if token_bytes < MIN_TOKEN_BYTES:
            _fail(f"TOKEN_BYTES must be at least {MIN_TOKEN_BYTES}, got {token_bytes}")

        timeout = _parse_int(environ, 'SENDGRID_TIMEOUT_SECONDS', DEFAULT_SENDGRID_TIMEOUT_SECONDS)
        if timeout <= 0:
            _fail(f"SENDGRID_TIMEOUT_SECONDS must be positive, got {timeout}")

        return cls(
            db_host=env_vars['DB_HOST'],
            db_name=db_name,
            domain_name=env_vars['DOMAIN_NAME'],
            sendgrid_from_email=env_vars['SENDGRID_FROM_EMAIL'],
            db_port=_parse_int(environ, 'DB_PORT', DEFAULT_DB_PORT),
            db_schema=environ.get('DB_SCHEMA', '').strip() or None,
            region=_first_present(environ, 'REGION', 'AWS_REGION'),
            token_bytes=token_bytes,
            sendgrid_timeout_seconds=timeout,
            **credentials,
        )

    def with_resolved_secrets(
            self,
            fetch_secret: Callable[[str, Optional[str]], str] = get_secret_value
    ) -> "VerificationSettings":
        """Return a copy where every secret reference has been replaced by its value."""
        resolved = {}
        for field_name in SECRET_BACKED_ENV_VARS:
            if getattr(self, field_name):
                continue
            secret_name = getattr(self, f"{field_name}_secret")
            logger.debug(f"Resolving {field_name} from Secrets Manager")
            resolved[field_name] = fetch_secret(secret_name, self.region)

        return replace(self, **resolved) if resolved else self

    def unresolved_secrets(self) -> List[str]:
        return [field_name for field_name in SECRET_BACKED_ENV_VARS if not getattr(self, field_name)]


def _first_present(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name, '').strip()
        if value:
            return value
    return None


def _parse_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _fail(f"{name} must be an integer, got '{raw}'")


def _fail(error_msg: str) -> NoReturn:
    logger.error(error_msg)
    raise ConfigurationError(error_msg)
