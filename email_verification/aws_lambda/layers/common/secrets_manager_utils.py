import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from email_verification.aws_lambda.layers.common.common_utils import SecretRetrievalError

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))


def get_secret_value(secret_name: str, region: Optional[str] = None) -> str:
    if not secret_name:
        raise SecretRetrievalError("Secret name is required")

    logger.debug(f"Fetching secret: {secret_name}")

    try:
        client = boto3.client("secretsmanager", region_name=region)
        response = client.get_secret_value(SecretId=secret_name)
    except ClientError as e:
        raise SecretRetrievalError(f"Failed to retrieve secret '{secret_name}': {e}")
    except BotoCoreError as e:
        raise SecretRetrievalError(f"Failed to reach Secrets Manager for secret '{secret_name}': {e}")

    secret_string = response.get("SecretString")
    if not secret_string:
        raise SecretRetrievalError(f"Secret '{secret_name}' has no SecretString value")

    return secret_string
