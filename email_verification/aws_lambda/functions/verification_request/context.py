"""
Collaborators shared by every invocation handled by one Lambda container.

The context is built once, initialised explicitly, and then handed to the
processor by reference. Processing is refused until initialisation succeeds.
"""
import logging
from typing import Callable, Mapping, Optional

from sqlalchemy import Engine

from email_verification.aws_lambda.layers.common.common_utils import (
    InitialisationState,
    ProcessingStage,
    VerificationException,
)
from email_verification.aws_lambda.layers.common.db_utils import EmailTrackingRepository, create_db_engine
from email_verification.aws_lambda.layers.common.email_utils import EmailClient
from email_verification.aws_lambda.layers.common.env_utils import VerificationSettings
from email_verification.aws_lambda.layers.common.secrets_manager_utils import get_secret_value

logger = logging.getLogger(__name__)


class VerificationContext:

    def __init__(
            self,
            settings: VerificationSettings,
            email_client: Optional[EmailClient] = None,
            repository: Optional[EmailTrackingRepository] = None,
            fetch_secret: Callable[[str, Optional[str]], str] = get_secret_value,
            engine_factory: Callable[[VerificationSettings], Engine] = create_db_engine
    ):
        self.settings = settings
        self.email_client = email_client
        self.repository = repository
        self.state = InitialisationState.PENDING
        self._fetch_secret = fetch_secret
        self._engine_factory = engine_factory

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None, **kwargs) -> "VerificationContext":
        return cls(VerificationSettings.from_environment(environ), **kwargs)

    @property
    def is_ready(self) -> bool:
        return self.state == InitialisationState.READY

    def initialise(self) -> "VerificationContext":
        """
        Resolve secrets, connect to the database, make sure the tracking table
        exists and open the email client. Raises the underlying error and moves
        to FAILED if any of these steps fail.
        """
        if self.is_ready:
            return self

        logger.info("Initialising verification context")

        built_repository: Optional[EmailTrackingRepository] = None

        try:
            settings = self.settings.with_resolved_secrets(self._fetch_secret)

            repository = self.repository
            if repository is None:
                repository = built_repository = EmailTrackingRepository(
                    self._engine_factory(settings), settings.db_schema)
            repository.ensure_schema()

            email_client = self.email_client
            if email_client is None:
                email_client = EmailClient(
                    api_key=settings.sendgrid_api_key,
                    from_email=settings.sendgrid_from_email,
                    timeout=settings.sendgrid_timeout_seconds,
                )
        except VerificationException as e:
            self.state = InitialisationState.FAILED
            # Engine built by this attempt; a retry builds its own.
            if built_repository is not None:
                built_repository.dispose()
            if e.stage is None:
                e.stage = ProcessingStage.INITIALISATION.value
            logger.error(f"Verification context initialisation failed: {e.message}",
                         extra={'stage': ProcessingStage.INITIALISATION.value})
            raise

        self.settings = settings
        self.repository = repository
        self.email_client = email_client
        self.state = InitialisationState.READY
        logger.info("Verification context ready")
        return self

    def close(self) -> None:
        if self.email_client is not None:
            self.email_client.close()
        if self.repository is not None:
            self.repository.dispose()
        self.state = InitialisationState.PENDING
