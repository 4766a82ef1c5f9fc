# src/sqs_offline/provisioner.py

"""
Creation of the queues declared as `AWS::SQS::Queue` resources.

CloudFormation queue properties are turned into CreateQueue attributes: every
attribute value is sent as a string, nested structures such as RedrivePolicy
are serialized to JSON after their intrinsic references have been resolved.

Queues that reference other queues (typically a dead-letter queue) are
created in dependency order: each wave only contains queues whose referenced
queues have already been attempted. Queues within a wave are created
concurrently.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Mapping

from .clients import SqsClient
from .events import queue_arn
from .exceptions import ProvisionError, SqsError
from .resolver import REF, parse_get_att
from .schemas import ResourceDefinition

logger = logging.getLogger(__name__)

_IDENTITY_PROPERTY = "QueueName"
_TAGS_PROPERTY = "Tags"


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of one create-queue attempt."""

    resource_name: str
    queue_name: str | None
    queue_url: str | None = None
    error: SqsError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _reference_target(value: Any) -> tuple[str, str | None] | None:
    reference = parse_get_att(value)
    if reference is not None:
        return reference
    if isinstance(value, Mapping) and isinstance(value.get(REF), str):
        return value[REF], None
    return None


def resolve_reference(
    reference: tuple[str, str | None],
    resources: Mapping[str, ResourceDefinition],
    *,
    region: str,
    account_id: str,
) -> str:
    """
    Resolves `Fn::GetAtt`/`Ref` targets. Queue ARNs and names are computed for
    queues declared in the manifest; anything else resolves to the referenced
    logical name.
    """
    name, attribute = reference
    resource = resources.get(name)
    if resource is not None and resource.is_queue:
        queue_name = resource.properties.get(_IDENTITY_PROPERTY)
        if isinstance(queue_name, str):
            if attribute == "Arn":
                return queue_arn(queue_name, region, account_id)
            if attribute == "QueueName":
                return queue_name
    return name


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _normalize_leaves(
    value: Any,
    resources: Mapping[str, ResourceDefinition],
    region: str,
    account_id: str,
) -> Any:
    reference = _reference_target(value)
    if reference is not None:
        return resolve_reference(
            reference, resources, region=region, account_id=account_id
        )
    if isinstance(value, Mapping):
        return {
            key: _normalize_leaves(item, resources, region, account_id)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_normalize_leaves(item, resources, region, account_id) for item in value]
    if value is None:
        return None
    return _stringify(value)


def normalize_attributes(
    properties: Mapping[str, Any],
    resources: Mapping[str, ResourceDefinition],
    *,
    region: str,
    account_id: str,
) -> dict[str, str]:
    """
    Converts queue resource properties into CreateQueue attributes. `QueueName`
    and `Tags` are not attributes and are skipped, as are null values.
    """
    attributes: dict[str, str] = {}
    for name, value in properties.items():
        if name in (_IDENTITY_PROPERTY, _TAGS_PROPERTY) or value is None:
            continue
        if isinstance(value, (str, int, float)):
            attributes[name] = _stringify(value)
            continue
        resolved = _normalize_leaves(value, resources, region, account_id)
        if isinstance(resolved, str):
            # A top-level intrinsic reference resolves straight to a string.
            attributes[name] = resolved
        else:
            attributes[name] = json.dumps(resolved, separators=(",", ":"))
    return attributes


def extract_tags(properties: Mapping[str, Any]) -> dict[str, str]:
    """Converts CloudFormation `[{Key, Value}]` tags into a CreateQueue tag map."""
    tags = properties.get(_TAGS_PROPERTY) or []
    if isinstance(tags, Mapping):
        return {str(k): _stringify(v) for k, v in tags.items()}
    return {
        str(tag["Key"]): _stringify(tag.get("Value", ""))
        for tag in tags
        if isinstance(tag, Mapping) and "Key" in tag
    }


def queue_dependencies(
    properties: Mapping[str, Any], queue_resources: Mapping[str, ResourceDefinition]
) -> set[str]:
    """Names of the queue resources referenced anywhere in *properties*."""
    found: set[str] = set()

    def _walk(value: Any) -> None:
        reference = _reference_target(value)
        if reference is not None:
            if reference[0] in queue_resources:
                found.add(reference[0])
            return
        if isinstance(value, Mapping):
            for item in value.values():
                _walk(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                _walk(item)

    _walk(properties)
    return found


def provision_queue(
    resource_name: str,
    definition: ResourceDefinition,
    client: SqsClient,
    resources: Mapping[str, ResourceDefinition],
    *,
    region: str,
    account_id: str,
) -> ProvisionResult:
    """
    Creates one queue. Backend failures are returned in the result rather than
    raised; creating an existing queue is a no-op on the backend.
    """
    queue_name = definition.properties.get(_IDENTITY_PROPERTY)
    if not isinstance(queue_name, str) or not queue_name:
        return ProvisionResult(
            resource_name=resource_name,
            queue_name=None,
            error=ProvisionError(resource_name, "resource has no QueueName property"),
        )

    attributes = normalize_attributes(
        definition.properties, resources, region=region, account_id=account_id
    )
    tags = extract_tags(definition.properties)
    logger.debug(
        "Creating queue",
        extra={
            "resource_name": resource_name,
            "queue_name": queue_name,
            "attributes": attributes,
        },
    )
    try:
        queue_url = client.create_queue(queue_name, attributes, tags=tags)
    except SqsError as e:
        return ProvisionResult(resource_name=resource_name, queue_name=queue_name, error=e)
    return ProvisionResult(
        resource_name=resource_name, queue_name=queue_name, queue_url=queue_url
    )


def creation_waves(
    queue_resources: Mapping[str, ResourceDefinition],
) -> list[list[str]]:
    """
    Groups queue resources so every queue comes after the queues it references.
    Queues caught in a reference cycle are placed together in a final wave.
    """
    pending = {
        name: queue_dependencies(resource.properties, queue_resources) - {name}
        for name, resource in queue_resources.items()
    }
    waves: list[list[str]] = []
    done: set[str] = set()
    while pending:
        ready = [name for name, deps in pending.items() if deps <= done]
        if not ready:
            logger.warning(
                "Queue resources reference each other in a cycle; creating them together",
                extra={"resources": sorted(pending)},
            )
            ready = list(pending)
        for name in ready:
            del pending[name]
        done.update(ready)
        waves.append(ready)
    return waves


def provision_queues(
    client: SqsClient,
    resources: Mapping[str, ResourceDefinition],
    *,
    region: str,
    account_id: str,
    max_workers: int = 8,
) -> list[ProvisionResult]:
    """
    Creates every queue resource in *resources*, wave by wave, and returns one
    result per queue. A failed queue never stops the others.
    """
    queue_resources = {
        name: resource for name, resource in resources.items() if resource.is_queue
    }
    results: list[ProvisionResult] = []
    if not queue_resources:
        return results

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        for wave in creation_waves(queue_resources):
            futures = [
                executor.submit(
                    provision_queue,
                    name,
                    queue_resources[name],
                    client,
                    resources,
                    region=region,
                    account_id=account_id,
                )
                for name in wave
            ]
            # Collect in submission order so results are deterministic.
            results.extend(future.result() for future in futures)
    return results
