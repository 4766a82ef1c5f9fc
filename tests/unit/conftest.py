"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import os
import uuid
from unittest.mock import MagicMock

import pytest

from sqs_offline.config import AppConfig
from sqs_offline.schemas import parse_manifest


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables the config layer reads.
    """
    original = os.environ.copy()
    os.environ.setdefault("SQS_OFFLINE_SERVICE_NAME", "sqs-offline-test")
    os.environ.setdefault("LOG_LEVEL", "INFO")
    yield
    os.environ.clear()
    os.environ.update(original)


@pytest.fixture
def app_config() -> AppConfig:
    """A config with tiny delays so loops and backoffs finish quickly."""
    return AppConfig(
        service_name="sqs-offline-test",
        region="eu-west-1",
        endpoint_url="http://localhost:9324",
        access_key_id="local",
        secret_access_key="local",
        account_id="000000000000",
        wait_time_seconds=0,
        idle_delay_seconds=0.01,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        delete_max_attempts=3,
        location=".",
        log_level="INFO",
    )


@pytest.fixture
def raw_manifest() -> dict:
    """A resolved service description with a queue, its DLQ and two functions."""
    return {
        "service": {"name": "orders"},
        "provider": {"name": "aws", "region": "eu-west-1"},
        "custom": {},
        "functions": {
            "processOrders": {
                "handler": "handlers/orders.process",
                "timeout": 10,
                "events": [
                    {"http": {"path": "/orders", "method": "post"}},
                    {
                        "sqs": {
                            "arn": {"Fn::GetAtt": ["OrdersQueue", "Arn"]},
                            "batchSize": 5,
                        }
                    },
                ],
            },
            "auditOrders": {
                "handler": "handlers/audit.main",
                "events": [
                    {"sqs": "arn:aws:sqs:eu-west-1:000000000000:audit-queue"},
                ],
            },
            "noQueues": {"handler": "handlers/other.main", "events": []},
        },
        "resources": {
            "Resources": {
                "OrdersQueue": {
                    "Type": "AWS::SQS::Queue",
                    "Properties": {
                        "QueueName": "orders-queue",
                        "VisibilityTimeout": 30,
                        "RedrivePolicy": {
                            "maxReceiveCount": 5,
                            "deadLetterTargetArn": {
                                "Fn::GetAtt": ["OrdersDeadLetterQueue", "Arn"]
                            },
                        },
                    },
                },
                "OrdersDeadLetterQueue": {
                    "Type": "AWS::SQS::Queue",
                    "Properties": {"QueueName": "orders-dlq"},
                },
                "OrdersTable": {
                    "Type": "AWS::DynamoDB::Table",
                    "Properties": {"TableName": "orders"},
                },
            }
        },
    }


@pytest.fixture
def manifest(raw_manifest):
    return parse_manifest(raw_manifest)


def make_message(body: str = "hello", message_id: str | None = None) -> dict:
    """A message as ReceiveMessage returns it."""
    message_id = message_id or str(uuid.uuid4())
    return {
        "MessageId": message_id,
        "ReceiptHandle": f"receipt-{message_id}",
        "Body": body,
        "Attributes": {"ApproximateReceiveCount": "1"},
        "MessageAttributes": {},
        "MD5OfBody": "5d41402abc4b2a76b9719d911017c592",
    }


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def mock_sqs_client() -> MagicMock:
    """A MagicMock standing in for our SqsClient wrapper."""
    client = MagicMock()
    client.get_queue_url.side_effect = (
        lambda name: f"http://localhost:9324/000000000000/{name}"
    )
    client.create_queue.side_effect = (
        lambda name, attributes, tags=None: f"http://localhost:9324/000000000000/{name}"
    )
    client.receive_messages.return_value = []
    return client
