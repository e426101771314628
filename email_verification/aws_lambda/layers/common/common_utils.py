from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

EXPIRY_WINDOW = timedelta(minutes=2)
DEFAULT_TOKEN_BYTES = 16
MIN_TOKEN_BYTES = 16
DEFAULT_DB_PORT = 5432
DEFAULT_SENDGRID_TIMEOUT_SECONDS = 15

EMAIL_TRACKING_TABLE_NAME = "EmailTrackings"
VERIFICATION_EMAIL_SUBJECT = "Verify Your Email"


@dataclass
class VerificationException(Exception):
    message: str
    stage: Optional[str] = None

    def __str__(self) -> str:
        return self.message


class MalformedEventError(VerificationException):
    pass


class ConfigurationError(VerificationException):
    pass


class SecretRetrievalError(VerificationException):
    pass


class EmailDeliveryError(VerificationException):
    pass


class PersistenceError(VerificationException):
    pass


class ProcessingStage(str, Enum):
    INITIALISATION = "initialisation"
    ENVELOPE = "envelope"
    MESSAGE = "message"
    CREDENTIALS = "credentials"
    EMAIL = "email"
    PERSISTENCE = "persistence"


@dataclass
class VerificationProcessError(Exception):
    message: str
    stage: str = ProcessingStage.INITIALISATION.value

    def __str__(self) -> str:
        return f"{self.message} (stage: {self.stage})"


class InitialisationState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
