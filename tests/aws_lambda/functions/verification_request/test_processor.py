import json
import re
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import FIXED_NOW, sns_event
from email_verification.aws_lambda.functions.verification_request.context import VerificationContext
from email_verification.aws_lambda.functions.verification_request.processor import (
    VerificationRequestProcessor,
    extract_first_record,
    parse_verification_message,
)
from email_verification.aws_lambda.layers.common.common_utils import (
    ConfigurationError,
    EmailDeliveryError,
    MalformedEventError,
    PersistenceError,
)
from email_verification.aws_lambda.layers.common.db_utils import VerificationAttempt
from email_verification.aws_lambda.layers.common.env_utils import VerificationSettings

VALID_EVENT = {"Records": [{"Sns": {"Message": "{\"email\":\"user@example.com\"}"}}]}


@pytest.fixture
def processor(ready_context):
    return VerificationRequestProcessor(ready_context, now=lambda: FIXED_NOW)


def saved_attempt(mock_repository) -> VerificationAttempt:
    mock_repository.save.assert_called_once()
    return mock_repository.save.call_args[0][0]


def sent_link(mock_email_client) -> str:
    mock_email_client.send_verification_email.assert_called_once()
    return mock_email_client.send_verification_email.call_args[0][1]


def test_process_sends_email_and_persists_record(processor, mock_email_client, mock_repository):
    processor.process(VALID_EVENT)

    link = sent_link(mock_email_client)
    attempt = saved_attempt(mock_repository)

    assert mock_email_client.send_verification_email.call_args[0][0] == "user@example.com"
    assert re.fullmatch(r"http://example\.org/verify\?email=user%40example\.com&token=[0-9a-f]{32}", link)
    assert attempt.email == "user@example.com"
    assert link.endswith(f"&token={attempt.token}")
    assert attempt.expiry_time == FIXED_NOW + timedelta(seconds=120)


def test_process_sends_email_before_persisting(processor, mock_email_client, mock_repository):
    calls = []
    mock_email_client.send_verification_email.side_effect = lambda *args: calls.append("email")
    mock_repository.save.side_effect = lambda *args: calls.append("persist")

    processor.process(VALID_EVENT)

    assert calls == ["email", "persist"]


@pytest.mark.parametrize("token_bytes,hex_length", [(16, 32), (20, 40)])
def test_process_uses_configured_token_length(token_bytes, hex_length, valid_environment,
                                              mock_email_client, mock_repository):
    valid_environment["TOKEN_BYTES"] = str(token_bytes)
    context = VerificationContext(VerificationSettings.from_environment(valid_environment),
                                  email_client=mock_email_client, repository=mock_repository).initialise()

    VerificationRequestProcessor(context, now=lambda: FIXED_NOW).process(VALID_EVENT)

    assert re.fullmatch(f"[0-9a-f]{{{hex_length}}}", saved_attempt(mock_repository).token)


def test_process_generates_fresh_token_per_event(processor, mock_repository):
    processor.process(VALID_EVENT)
    processor.process(VALID_EVENT)

    tokens = {call[0][0].token for call in mock_repository.save.call_args_list}
    assert len(tokens) == 2


def test_process_accepts_sqs_records(processor, mock_email_client):
    processor.process({"Records": [{"messageId": "m-1", "body": json.dumps({"email": "sqs@example.com"})}]})

    assert mock_email_client.send_verification_email.call_args[0][0] == "sqs@example.com"


def test_process_only_reads_first_record(processor, mock_email_client, mock_repository):
    event = {"Records": [
        {"Sns": {"Message": json.dumps({"email": "first@example.com"})}},
        {"Sns": {"Message": json.dumps({"email": "second@example.com"})}},
    ]}

    processor.process(event)

    assert mock_email_client.send_verification_email.call_count == 1
    assert saved_attempt(mock_repository).email == "first@example.com"


def test_process_ignores_extra_message_fields(processor, mock_repository):
    processor.process(sns_event(json.dumps({"email": " user@example.com ", "source": "signup"})))

    assert saved_attempt(mock_repository).email == "user@example.com"


def test_process_trims_whitespace_around_email(processor, mock_email_client, mock_repository):
    processor.process(sns_event(json.dumps({"email": "\tuser@example.com\n"})))

    sent_to, sent_link = mock_email_client.send_verification_email.call_args[0]
    assert sent_to == "user@example.com"
    assert "email=user%40example.com&" in sent_link
    assert saved_attempt(mock_repository).email == "user@example.com"


@pytest.mark.parametrize("event", [
    {},
    {"Records": []},
    {"Records": None},
    {"Records": "not-a-list"},
    {"Records": ["not-an-object"]},
    [],
    None,
])
def test_process_rejects_invalid_envelope(event, processor, mock_email_client, mock_repository):
    with pytest.raises(MalformedEventError) as exc_info:
        processor.process(event)

    assert exc_info.value.stage == "envelope"
    mock_email_client.send_verification_email.assert_not_called()
    mock_repository.save.assert_not_called()


@pytest.mark.parametrize("record", [
    {"Sns": {"Message": "not json"}},
    {"Sns": {"Message": "[\"user@example.com\"]"}},
    {"Sns": {"Message": "{}"}},
    {"Sns": {"Message": "{\"email\": \"\"}"}},
    {"Sns": {"Message": "{\"email\": null}"}},
    {"Sns": {"Message": "{\"email\": 42}"}},
    {"Sns": {"Message": None}},
    {"Sns": {}},
    {"EventSource": "aws:sns"},
])
def test_process_rejects_invalid_message(record, processor, mock_email_client, mock_repository):
    with pytest.raises(MalformedEventError) as exc_info:
        processor.process({"Records": [record]})

    assert exc_info.value.stage == "message"
    mock_email_client.send_verification_email.assert_not_called()
    mock_repository.save.assert_not_called()


def test_process_does_not_persist_when_email_fails(processor, mock_email_client, mock_repository):
    mock_email_client.send_verification_email.side_effect = EmailDeliveryError("HTTP status: 401")

    with pytest.raises(EmailDeliveryError) as exc_info:
        processor.process(VALID_EVENT)

    assert exc_info.value.stage == "email"
    mock_repository.save.assert_not_called()


def test_process_fails_when_persistence_fails_after_send(processor, mock_email_client, mock_repository):
    mock_repository.save.side_effect = PersistenceError("connection reset")

    with pytest.raises(PersistenceError) as exc_info:
        processor.process(VALID_EVENT)

    assert exc_info.value.stage == "persistence"
    mock_email_client.send_verification_email.assert_called_once()


def test_process_refuses_when_context_not_ready(settings, mock_email_client, mock_repository):
    context = VerificationContext(settings, email_client=mock_email_client, repository=mock_repository)
    processor = VerificationRequestProcessor(context)

    with pytest.raises(ConfigurationError) as exc_info:
        processor.process(VALID_EVENT)

    assert exc_info.value.stage == "initialisation"
    mock_email_client.send_verification_email.assert_not_called()


def test_process_defaults_to_utc_clock(ready_context, mock_repository):
    VerificationRequestProcessor(ready_context).process(VALID_EVENT)

    expiry = saved_attempt(mock_repository).expiry_time
    assert expiry.utcoffset() == timedelta(0)


def test_extract_first_record_returns_first_record():
    assert extract_first_record(VALID_EVENT) == VALID_EVENT["Records"][0]


def test_parse_verification_message_reads_sns_message_id():
    request = parse_verification_message(sns_event("{\"email\": \"user@example.com\"}", "msg-1")["Records"][0])

    assert request.email == "user@example.com"
    assert request.message_id == "msg-1"


def test_process_logs_failed_stage(processor, mock_email_client):
    mock_email_client.send_verification_email.side_effect = EmailDeliveryError("HTTP status: 500")
    logger = MagicMock()
    processor_module_logger = "email_verification.aws_lambda.functions.verification_request.processor.logger"

    with patch(processor_module_logger, logger), pytest.raises(EmailDeliveryError):
        processor.process(sns_event("{\"email\": \"user@example.com\"}", "msg-7"), correlation_id="req-7")

    error_calls = [c for c in logger.log.call_args_list if c.kwargs["extra"].get("stage") == "email"]
    assert len(error_calls) == 1
    extra = error_calls[0].kwargs["extra"]
    assert extra["correlationId"] == "req-7"
    assert extra["messageId"] == "msg-7"
    assert extra["errorType"] == "EmailDeliveryError"
