# In src/sqs_offline/schemas.py

from typing import Any, TypedDict

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ManifestError

QUEUE_RESOURCE_TYPE = "AWS::SQS::Queue"

# --- Static Type Hinting (for mypy and IDEs) ---


class SqsMessage(TypedDict, total=False):
    """A message as returned by the backend's ReceiveMessage call."""

    MessageId: str
    ReceiptHandle: str
    Body: str
    Attributes: dict[str, str]
    MessageAttributes: dict[str, Any]
    MD5OfBody: str


class SqsEventRecord(TypedDict):
    """
    A single record of the SQS invocation event, exactly as Lambda delivers it.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: dict[str, str]
    messageAttributes: dict[str, Any]
    md5OfBody: str
    eventSource: str
    eventSourceARN: str
    awsRegion: str


class SqsEvent(TypedDict):
    Records: list[SqsEventRecord]


# --- Runtime Validation (using Pydantic) ---


class QueueTrigger(BaseModel):
    """
    An `sqs` event declaration of a function. A bare string is shorthand for
    `{"arn": <string>}`.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    arn: str | dict[str, Any] | None = None
    queue_name: str | None = Field(None, alias="queueName")
    batch_size: int = Field(10, alias="batchSize", ge=1)
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def expand_string_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"arn": data}
        return data


class FunctionDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Image-based functions declare no handler.
    handler: str | None = None
    timeout: int = Field(6, ge=1)
    memory_size: int = Field(1024, alias="memorySize", ge=1)
    events: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def null_events_mean_none(cls, value: Any) -> Any:
        return [] if value is None else value

    def sqs_triggers(self) -> list[QueueTrigger]:
        """Returns the queue triggers of this function, in declaration order."""
        return [
            QueueTrigger.model_validate(event["sqs"])
            for event in self.events
            if isinstance(event, dict) and "sqs" in event
        ]


class ResourceDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., alias="Type")
    properties: dict[str, Any] = Field(default_factory=dict, alias="Properties")

    @property
    def is_queue(self) -> bool:
        return self.type == QUEUE_RESOURCE_TYPE


class ResourcesSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resources: dict[str, ResourceDefinition] = Field(
        default_factory=dict, alias="Resources"
    )


class Manifest(BaseModel):
    """
    Pydantic model for the resolved service description the emulator runs from.
    Unknown keys are ignored.
    """

    service: str | dict[str, Any] | None = None
    provider: dict[str, Any] = Field(default_factory=dict)
    custom: dict[str, Any] = Field(default_factory=dict)
    functions: dict[str, FunctionDefinition] = Field(default_factory=dict)
    resources: ResourcesSection = Field(default_factory=ResourcesSection)

    @model_validator(mode="before")
    @classmethod
    def drop_null_sections(cls, data: Any) -> Any:
        # YAML-derived manifests often carry `functions: null` and the like.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    @property
    def service_name(self) -> str | None:
        if isinstance(self.service, dict):
            return self.service.get("name")
        return self.service

    def resource_catalog(self) -> dict[str, ResourceDefinition]:
        return self.resources.resources

    def queue_resources(self) -> dict[str, ResourceDefinition]:
        return {
            name: resource
            for name, resource in self.resources.resources.items()
            if resource.is_queue
        }


def parse_manifest(raw: Any) -> Manifest:
    """Validates a raw manifest mapping, raising ManifestError on bad input."""
    try:
        return Manifest.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ManifestError(
            "Manifest failed validation",
            context={"validation_errors": e.errors(include_url=False)},
        ) from e
