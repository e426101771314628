"""
AWS Lambda entrypoint for email verification requests.
Wraps processor.VerificationRequestProcessor.
"""
import logging
import os
from typing import Any, Dict, Optional

from aws_lambda_context import LambdaContext
from dotenv import load_dotenv

from email_verification.aws_lambda.functions.verification_request.context import VerificationContext
from email_verification.aws_lambda.functions.verification_request.processor import VerificationRequestProcessor
from email_verification.aws_lambda.layers.common.common_utils import (
    ProcessingStage,
    VerificationException,
    VerificationProcessError,
)
from email_verification.aws_lambda.layers.common.logging_utils import CorrelationLogger, setup_logging

load_dotenv()
setup_logging(os.environ.get("LOG_LEVEL", "INFO"))

logger = logging.getLogger(__name__)

# Built on the first invocation and reused while the container stays warm.
_processor: Optional[VerificationRequestProcessor] = None


def get_processor() -> VerificationRequestProcessor:
    global _processor

    if _processor is None:
        context = VerificationContext.from_environment().initialise()
        _processor = VerificationRequestProcessor(context)

    return _processor


def handler(event: Dict[str, Any], context: LambdaContext) -> None:
    """
    AWS Lambda handler for verification requests.

    Expected event format (only the first record is read):
    {
        "Records": [
            {"Sns": {"MessageId": "...", "Message": "{\"email\": \"user@example.com\"}"}}
        ]
    }

    Any failure is raised as VerificationProcessError so that the invoking
    service applies its own redelivery or dead-letter policy.
    """
    request_id = getattr(context, "aws_request_id", None)
    log = CorrelationLogger(logger, request_id)

    try:
        log.info("Starting verification request Lambda execution")
        get_processor().process(event, correlation_id=request_id)
        log.info("Verification request Lambda execution completed successfully")

    except VerificationException as e:
        stage = e.stage or ProcessingStage.INITIALISATION.value
        raise VerificationProcessError("Verification process failed", stage=stage) from e
    except Exception as e:
        log.error(f"Unexpected error in Lambda handler: {str(e)}", exc_info=True)
        raise VerificationProcessError("Verification process failed", stage="unknown") from e
