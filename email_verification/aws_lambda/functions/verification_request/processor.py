"""
Core verification request flow.

Turns one SNS (or SQS) delivered signup message into a verification email and
an EmailTrackings row. The email is sent before the row is written; a
persistence failure after a successful send leaves the email delivered with
no tracking record.
"""
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterator, Optional

from email_verification.aws_lambda.functions.verification_request.context import VerificationContext
from email_verification.aws_lambda.layers.common.common_utils import (
    ConfigurationError,
    MalformedEventError,
    ProcessingStage,
    VerificationException,
)
from email_verification.aws_lambda.layers.common.db_utils import VerificationAttempt
from email_verification.aws_lambda.layers.common.logging_utils import CorrelationLogger
from email_verification.aws_lambda.layers.common.token_utils import generate_verification_link

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationRequest:
    email: str
    message_id: Optional[str] = None


def extract_first_record(event: Any) -> Dict[str, Any]:
    if not isinstance(event, dict):
        raise MalformedEventError("Invalid event structure: event must be an object")

    records = event.get("Records")
    if not isinstance(records, list) or not records:
        raise MalformedEventError("Invalid event structure: No Records found")

    record = records[0]
    if not isinstance(record, dict):
        raise MalformedEventError("Invalid event structure: record must be an object")

    return record


def parse_verification_message(record: Dict[str, Any]) -> VerificationRequest:
    """
    Reads the message body from an SNS record (Sns.Message) or, failing that,
    an SQS record (body), and returns the email it carries.
    """
    sns = record.get("Sns")
    if isinstance(sns, dict) and "Message" in sns:
        body = sns.get("Message")
        message_id = sns.get("MessageId")
    elif "body" in record:
        body = record.get("body")
        message_id = record.get("messageId")
    else:
        raise MalformedEventError("Invalid event structure: record has no message body")

    if not isinstance(body, str):
        raise MalformedEventError("Invalid message: body must be a JSON string")

    try:
        message = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedEventError(f"Invalid message: body is not valid JSON ({e.msg})")

    if not isinstance(message, dict):
        raise MalformedEventError("Invalid message: body must be a JSON object")

    email = message.get("email")
    if not isinstance(email, str) or not email.strip():
        raise MalformedEventError("Invalid message: Missing email field")

    return VerificationRequest(email=email.strip(), message_id=message_id)


class VerificationRequestProcessor:

    def __init__(self, context: VerificationContext, now: Optional[Callable[[], datetime]] = None):
        self.context = context
        self.now = now or (lambda: datetime.now(UTC))

    def process(self, event: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        log = CorrelationLogger(logger, correlation_id)

        if not self.context.is_ready:
            raise ConfigurationError(
                f"Verification context is not ready (state: {self.context.state.value})",
                stage=ProcessingStage.INITIALISATION.value
            )

        with self._stage(ProcessingStage.ENVELOPE, log):
            record = extract_first_record(event)

        with self._stage(ProcessingStage.MESSAGE, log):
            request = parse_verification_message(record)

        log = log.for_message(request.message_id)
        log.info(f"Processing verification request for {request.email}")

        settings = self.context.settings
        with self._stage(ProcessingStage.CREDENTIALS, log):
            verification = generate_verification_link(
                email=request.email,
                domain_name=settings.domain_name,
                now=self.now,
                token_bytes=settings.token_bytes,
            )

        with self._stage(ProcessingStage.EMAIL, log):
            self.context.email_client.send_verification_email(verification.email, verification.link)

        with self._stage(ProcessingStage.PERSISTENCE, log):
            self.context.repository.save(VerificationAttempt(
                email=verification.email,
                token=verification.token,
                expiry_time=verification.expiry_time,
            ))

        log.info(f"Verification request for {request.email} completed, "
                 f"link expires at {verification.expiry_time.isoformat()}")

    @staticmethod
    @contextmanager
    def _stage(stage: ProcessingStage, log: CorrelationLogger) -> Iterator[None]:
        try:
            yield
        except VerificationException as e:
            if e.stage is None:
                e.stage = stage.value
            if stage == ProcessingStage.PERSISTENCE:
                log.stage_failed(e, f"Verification email was sent but the tracking record was not saved: {e.message}")
            else:
                log.stage_failed(e)
            raise
