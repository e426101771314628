from datetime import datetime, UTC
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

from email_verification.aws_lambda.functions.verification_request.context import VerificationContext
from email_verification.aws_lambda.layers.common.db_utils import EmailTrackingRepository
from email_verification.aws_lambda.layers.common.email_utils import EmailClient
from email_verification.aws_lambda.layers.common.env_utils import VerificationSettings

FIXED_NOW = datetime(2025, 1, 15, 10, 30, 0, tzinfo=UTC)

VALID_ENVIRONMENT = {
    "DB_HOST": "db.example.internal",
    "DB_PORT": "5432",
    "DB_NAME": "verification",
    "DB_USERNAME": "verifier",
    "DB_PASSWORD": "s3cret",
    "DOMAIN_NAME": "example.org",
    "SENDGRID_API_KEY": "SG.test-key",
    "SENDGRID_FROM_EMAIL": "no-reply@example.org",
    "REGION": "eu-west-2",
}


@pytest.fixture
def valid_environment():
    return dict(VALID_ENVIRONMENT)


@pytest.fixture
def settings(valid_environment):
    return VerificationSettings.from_environment(valid_environment)


@pytest.fixture
def sqlite_engine():
    engine = create_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def repository(sqlite_engine):
    repo = EmailTrackingRepository(sqlite_engine)
    repo.ensure_schema()
    return repo


@pytest.fixture
def mock_email_client():
    return MagicMock(spec=EmailClient)


@pytest.fixture
def mock_repository():
    return MagicMock(spec=EmailTrackingRepository)


@pytest.fixture
def ready_context(settings, mock_email_client, mock_repository):
    context = VerificationContext(settings, email_client=mock_email_client, repository=mock_repository)
    return context.initialise()


def sns_event(message: str, message_id: str = "95df01b4-ee98-5cb9-9903-4c221d41eb5e") -> dict:
    return {
        "Records": [{
            "EventSource": "aws:sns",
            "Sns": {
                "MessageId": message_id,
                "Message": message,
            }
        }]
    }
