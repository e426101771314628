import json
import logging
import os
from datetime import datetime, UTC
from typing import Optional

from email_verification.aws_lambda.layers.common.common_utils import VerificationException

# Attributes every LogRecord carries; anything else arrived through `extra`.
RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, stamped with the Lambda function name when running in AWS."""

    def __init__(self, function_name: Optional[str] = None):
        super().__init__()
        self.function_name = function_name or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, UTC).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if self.function_name:
            log_data['function'] = self.function_name

        log_data.update({k: v for k, v in vars(record).items() if k not in RECORD_ATTRIBUTES})

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class CorrelationLogger:
    """
    Stamps log lines with the Lambda request id and, once the record has been
    parsed, the SNS/SQS message id of the signup being verified.
    """

    def __init__(self, base_logger: logging.Logger, correlation_id: Optional[str] = None,
                 message_id: Optional[str] = None):
        self.base_logger = base_logger
        self.correlation_id = correlation_id
        self.message_id = message_id

    def for_message(self, message_id: Optional[str]) -> "CorrelationLogger":
        return CorrelationLogger(self.base_logger, self.correlation_id, message_id)

    def _fields(self) -> dict:
        fields = {}
        if self.correlation_id:
            fields['correlationId'] = self.correlation_id
        if self.message_id:
            fields['messageId'] = self.message_id
        return fields

    def _log(self, level: int, message: str, stage: Optional[str] = None, **kwargs):
        extra = {**(kwargs.get('extra') or {}), **self._fields()}
        if stage:
            extra['stage'] = stage
        kwargs['extra'] = extra
        self.base_logger.log(level, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def stage_failed(self, error: VerificationException, message: Optional[str] = None):
        """Log a failed processing stage with the error type and the stage it was tagged with."""
        self.error(message or f"Verification failed at {error.stage} stage: {error.message}",
                   stage=error.stage, extra={'errorType': type(error).__name__})


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger()
    logger.setLevel(level.upper())

    for noisy in ('boto3', 'botocore', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    # The Lambda runtime installs its own handler; reformat it rather than adding a second one.
    if not logger.handlers:
        logger.addHandler(logging.StreamHandler())
    for handler in logger.handlers:
        handler.setFormatter(JsonFormatter())

    return logger
