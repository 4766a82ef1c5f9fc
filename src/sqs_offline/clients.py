# src/sqs_offline/clients.py

"""
Client wrapper for the queue backend (SQS or an SQS-compatible emulator).

The SqsClient class provides a small, typed interface over a raw boto3 SQS
client, exposing exactly the four operations the event source needs and
translating botocore failures into the service's exception hierarchy.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, NoReturn, Sequence

import boto3
from botocore.client import Config as BotocoreConfig
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .config import AppConfig
from .exceptions import (
    DeleteError,
    ProvisionError,
    QueueDoesNotExistError,
    ReceiveError,
    SqsAccessDeniedError,
    SqsConnectionError,
    SqsError,
    SqsThrottlingError,
)
from .schemas import SqsMessage

if TYPE_CHECKING:
    from mypy_boto3_sqs.client import SQSClient as SQSClientType

logger = logging.getLogger(__name__)

# SQS never returns more than ten messages per receive call.
MAX_RECEIVE_BATCH = 10

_NON_EXISTENT_QUEUE_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
}
_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestThrottled",
    "RequestLimitExceeded",
}
_ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
}


def create_boto3_sqs_client(config: AppConfig) -> "SQSClientType":
    """
    Builds the boto3 SQS client for the configured endpoint. The read timeout
    is longer than the long-poll wait so receives are never cut short.
    """
    client_config = BotocoreConfig(
        read_timeout=config.read_timeout_seconds,
        connect_timeout=5,
        retries={"max_attempts": 2},
    )
    session = boto3.Session(
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        region_name=config.region,
    )
    return session.client("sqs", endpoint_url=config.endpoint_url, config=client_config)


class SqsClient:
    """
    A wrapper for the SQS operations used by the provisioner and the pollers.
    Safe to share between poller threads.
    """

    def __init__(self, sqs_client: "SQSClientType", endpoint_url: str | None = None):
        """
        Initializes the SqsClient.

        Args:
            sqs_client: A boto3 SQS client.
            endpoint_url: The endpoint the client talks to, used in error context.
        """
        self._client = sqs_client
        self._endpoint_url = endpoint_url

    @classmethod
    def from_config(cls, config: AppConfig) -> "SqsClient":
        return cls(create_boto3_sqs_client(config), endpoint_url=config.endpoint_url)

    def _raise_translated(
        self,
        error: Exception,
        operation: str,
        fallback: Callable[[str], SqsError],
        queue: str,
    ) -> NoReturn:
        """Maps a botocore failure onto our exception types."""
        if isinstance(error, (EndpointConnectionError, ReadTimeoutError)):
            raise SqsConnectionError(
                operation,
                endpoint_url=self._endpoint_url,
                context={"queue": queue, "connection_error": str(error)},
            ) from error

        if not isinstance(error, ClientError):
            raise fallback(str(error)) from error

        error_code = error.response.get("Error", {}).get("Code", "")
        error_message = error.response.get("Error", {}).get("Message", "")
        aws_context = {
            "queue": queue,
            "aws_error_code": error_code,
            "aws_error_message": error_message,
        }

        # Map boto3 error codes to our specific exception types
        if error_code in _NON_EXISTENT_QUEUE_CODES:
            raise QueueDoesNotExistError(queue, context=aws_context) from error
        elif error_code in _THROTTLING_CODES:
            raise SqsThrottlingError(operation, context=aws_context) from error
        elif error_code in _ACCESS_DENIED_CODES:
            raise SqsAccessDeniedError(operation, context=aws_context) from error
        else:
            raise fallback(error_message or error_code) from error

    def create_queue(
        self,
        queue_name: str,
        attributes: dict[str, str],
        tags: dict[str, str] | None = None,
    ) -> str:
        """Creates (or finds) the named queue and returns its URL."""
        params: dict[str, Any] = {"QueueName": queue_name, "Attributes": attributes}
        if tags:
            params["tags"] = tags
        try:
            response = self._client.create_queue(**params)
        except Exception as e:
            self._raise_translated(
                e,
                "CreateQueue",
                lambda reason: ProvisionError(queue_name, reason),
                queue_name,
            )
        logger.debug(
            "Queue created", extra={"queue_name": queue_name, "queue_url": response["QueueUrl"]}
        )
        return response["QueueUrl"]

    def get_queue_url(self, queue_name: str) -> str:
        try:
            response = self._client.get_queue_url(QueueName=queue_name)
        except Exception as e:
            self._raise_translated(
                e,
                "GetQueueUrl",
                lambda reason: ReceiveError(queue_name, reason),
                queue_name,
            )
        return response["QueueUrl"]

    def receive_messages(
        self, queue_url: str, max_messages: int, wait_seconds: int
    ) -> list[SqsMessage]:
        """
        Long-polls the queue for up to *max_messages* messages (capped at ten),
        including all system and message attributes.
        """
        try:
            response = self._client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, MAX_RECEIVE_BATCH)),
                WaitTimeSeconds=wait_seconds,
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
            )
        except Exception as e:
            self._raise_translated(
                e,
                "ReceiveMessage",
                lambda reason: ReceiveError(queue_url, reason),
                queue_url,
            )
        return response.get("Messages", [])

    def delete_message_batch(
        self, queue_url: str, messages: Sequence[SqsMessage]
    ) -> None:
        """
        Deletes every message in *messages* by id/receipt-handle pair. Raises
        DeleteError when the backend reports any entry as failed.
        """
        if not messages:
            return
        entries = [
            {"Id": message["MessageId"], "ReceiptHandle": message["ReceiptHandle"]}
            for message in messages
        ]
        try:
            response = self._client.delete_message_batch(
                QueueUrl=queue_url, Entries=entries
            )
        except Exception as e:
            self._raise_translated(
                e,
                "DeleteMessageBatch",
                lambda reason: DeleteError(
                    queue_url,
                    [entry["Id"] for entry in entries],
                    context={"reason": reason},
                ),
                queue_url,
            )

        failed = response.get("Failed") or []
        if failed:
            raise DeleteError(
                queue_url,
                [entry["Id"] for entry in failed],
                context={"failures": failed},
            )

    def list_queues(self) -> list[str]:
        """Lists queue URLs; used as a connectivity check."""
        try:
            response = self._client.list_queues()
        except Exception as e:
            self._raise_translated(
                e,
                "ListQueues",
                lambda reason: ReceiveError(str(self._endpoint_url), reason),
                str(self._endpoint_url),
            )
        return response.get("QueueUrls", [])
