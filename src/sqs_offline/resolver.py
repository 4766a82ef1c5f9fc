"""
Resolution of the queue a trigger declaration points at.

A trigger can name its queue as a bare ARN string, as an object with an `arn`
string, as an object with a literal `queueName`, or as an object whose `arn`
is a `Fn::GetAtt` reference to a queue resource declared in the same manifest.
"""

from typing import Any, Mapping

import pydantic

from .exceptions import ManifestError, QueueNameNotFoundError
from .schemas import QueueTrigger, ResourceDefinition

GET_ATT = "Fn::GetAtt"
REF = "Ref"


def extract_queue_name_from_arn(arn: str) -> str | None:
    """Returns the sixth colon-delimited field of an SQS ARN, if present."""
    parts = arn.split(":")
    if len(parts) < 6 or not parts[5]:
        return None
    return parts[5]


def parse_get_att(value: Any) -> tuple[str, str | None] | None:
    """
    Returns (resource_name, attribute) for a `Fn::GetAtt` mapping in either
    list or dotted-string form, or None when *value* is not one.
    """
    if not isinstance(value, Mapping) or GET_ATT not in value:
        return None
    target = value[GET_ATT]
    if isinstance(target, str):
        name, _, attribute = target.partition(".")
        return name, attribute or None
    if isinstance(target, (list, tuple)) and target and isinstance(target[0], str):
        attribute = target[1] if len(target) > 1 else None
        return target[0], attribute
    return None


def resolve_queue_name(
    trigger: QueueTrigger | str | Mapping[str, Any],
    resources: Mapping[str, ResourceDefinition],
) -> str:
    """
    Derives the queue name for *trigger*, given as a model or as the raw
    manifest value.

    Raises ManifestError for a malformed raw trigger and QueueNameNotFoundError
    when no declaration shape matches.
    """
    if not isinstance(trigger, QueueTrigger):
        try:
            trigger = QueueTrigger.model_validate(trigger)
        except pydantic.ValidationError as e:
            raise ManifestError(
                f"Invalid sqs trigger: {trigger!r}",
                context={"validation_errors": e.errors(include_url=False)},
            ) from e

    if isinstance(trigger.arn, str):
        queue_name = extract_queue_name_from_arn(trigger.arn)
        if queue_name:
            return queue_name

    if isinstance(trigger.queue_name, str):
        return trigger.queue_name

    reference = parse_get_att(trigger.arn)
    if reference is not None:
        resource = resources.get(reference[0])
        if resource is not None and isinstance(
            resource.properties.get("QueueName"), str
        ):
            return resource.properties["QueueName"]

    raise QueueNameNotFoundError(trigger.model_dump(by_alias=True))
