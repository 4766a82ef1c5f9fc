"""Translation of received SQS messages into the Lambda SQS event shape."""

import base64
from typing import Any, Mapping, Sequence

from .schemas import SqsEvent, SqsEventRecord, SqsMessage

EVENT_SOURCE = "aws:sqs"


def queue_arn(queue_name: str, region: str, account_id: str) -> str:
    return f"arn:aws:sqs:{region}:{account_id}:{queue_name}"


def _encode_binary(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    return value


def _lambda_message_attributes(
    attributes: Mapping[str, Mapping[str, Any]],
) -> dict[str, dict[str, Any]]:
    """
    Converts ReceiveMessage attribute values (`StringValue`, `DataType`, ...)
    into the lower-camel-case form Lambda puts in SQS records.
    """
    converted: dict[str, dict[str, Any]] = {}
    for name, value in attributes.items():
        entry: dict[str, Any] = {
            "stringListValues": list(value.get("StringListValues", [])),
            "binaryListValues": [
                _encode_binary(item) for item in value.get("BinaryListValues", [])
            ],
            "dataType": value.get("DataType", "String"),
        }
        if "StringValue" in value:
            entry["stringValue"] = value["StringValue"]
        if "BinaryValue" in value:
            entry["binaryValue"] = _encode_binary(value["BinaryValue"])
        converted[name] = entry
    return converted


def build_event(
    messages: Sequence[SqsMessage],
    *,
    event_source_arn: str,
    region: str,
) -> SqsEvent:
    """
    Maps a received batch onto an event with one record per message, in the
    order the backend returned them.
    """
    records: list[SqsEventRecord] = [
        {
            "messageId": message["MessageId"],
            "receiptHandle": message["ReceiptHandle"],
            "body": message.get("Body", ""),
            "attributes": dict(message.get("Attributes", {})),
            "messageAttributes": _lambda_message_attributes(
                message.get("MessageAttributes", {})
            ),
            "md5OfBody": message.get("MD5OfBody", ""),
            "eventSource": EVENT_SOURCE,
            "eventSourceARN": event_source_arn,
            "awsRegion": region,
        }
        for message in messages
    ]
    return {"Records": records}
