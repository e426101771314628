import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import Column, DateTime, Engine, Integer, MetaData, String, Table, create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from email_verification.aws_lambda.layers.common.common_utils import EMAIL_TRACKING_TABLE_NAME, PersistenceError
from email_verification.aws_lambda.layers.common.env_utils import VerificationSettings

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))


@dataclass(frozen=True)
class VerificationAttempt:
    email: str
    token: str
    expiry_time: datetime


def is_valid_email(email: Union[str, None]) -> bool:
    if email is None or not isinstance(email, str):
        return False
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def build_email_tracking_table(metadata: MetaData, schema: Optional[str] = None) -> Table:
    return Table(
        EMAIL_TRACKING_TABLE_NAME,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("email", String(255), nullable=False),
        Column("token", String(255), nullable=False),
        Column("expiryTime", DateTime(timezone=True), nullable=False),
        schema=schema,
    )


def build_db_url(settings: VerificationSettings) -> URL:
    if settings.unresolved_secrets():
        raise PersistenceError(
            f"Database credentials have not been resolved: {', '.join(settings.unresolved_secrets())}")

    return URL.create(
        drivername="postgresql+psycopg2",
        username=settings.db_username,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_name,
    )


def create_db_engine(settings: VerificationSettings) -> Engine:
    """Creates a SQLAlchemy engine and checks the database is reachable."""
    url = build_db_url(settings)
    logger.debug(f"Connecting to database {settings.db_host}:{settings.db_port}/{settings.db_name}")

    try:
        engine = create_engine(url, pool_pre_ping=True)
        # Force connection to catch errors early
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return engine
    except SQLAlchemyError as e:
        raise PersistenceError(f"Database connection failed: {str(e)}")


class EmailTrackingRepository:
    def __init__(self, engine: Engine, schema: Optional[str] = None):
        self.engine = engine
        self.metadata = MetaData()
        self.table = build_email_tracking_table(self.metadata, schema)

    def ensure_schema(self) -> None:
        """Create the tracking table if it does not exist yet."""
        try:
            self.metadata.create_all(self.engine, checkfirst=True)
            logger.debug(f"Ensured table {self.table.fullname} exists")
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create table {self.table.fullname}: {str(e)}")

    def save(self, attempt: VerificationAttempt) -> int:
        if not attempt.email or not attempt.token or attempt.expiry_time is None:
            raise PersistenceError("email, token, and expiry_time are required")

        if not is_valid_email(attempt.email):
            raise PersistenceError(f"Invalid email address: '{attempt.email}'")

        logger.debug(f"Saving verification attempt for {attempt.email}")

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.table.insert().values(
                        email=attempt.email,
                        token=attempt.token,
                        expiryTime=attempt.expiry_time,
                    )
                )
                record_id = result.inserted_primary_key[0]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save verification attempt for {attempt.email}: {str(e)}")

        logger.info(f"Saved verification attempt {record_id} for {attempt.email}")
        return record_id

    def dispose(self) -> None:
        self.engine.dispose()
