# tests/unit/test_schemas.py

import pydantic
import pytest

from sqs_offline.exceptions import ManifestError
from sqs_offline.schemas import FunctionDefinition, QueueTrigger, parse_manifest


class TestQueueTrigger:
    """Test suite for the QueueTrigger Pydantic model."""

    def test_string_shorthand_becomes_arn(self):
        trigger = QueueTrigger.model_validate("arn:aws:sqs:us-west-2:123:jobs")
        assert trigger.arn == "arn:aws:sqs:us-west-2:123:jobs"
        assert trigger.queue_name is None
        assert trigger.batch_size == 10
        assert trigger.enabled is True

    def test_aliases_are_accepted(self):
        trigger = QueueTrigger.model_validate(
            {"queueName": "jobs", "batchSize": 3, "enabled": False}
        )
        assert trigger.queue_name == "jobs"
        assert trigger.batch_size == 3
        assert trigger.enabled is False

    def test_batch_size_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            QueueTrigger.model_validate({"queueName": "jobs", "batchSize": 0})

    def test_trigger_is_immutable(self):
        trigger = QueueTrigger.model_validate({"queueName": "jobs"})
        with pytest.raises(pydantic.ValidationError):
            trigger.batch_size = 2


class TestFunctionDefinition:
    def test_sqs_triggers_keep_declaration_order_and_skip_other_events(self):
        definition = FunctionDefinition.model_validate(
            {
                "handler": "handler.main",
                "events": [
                    {"sqs": {"queueName": "first"}},
                    {"schedule": "rate(1 minute)"},
                    {"sqs": "arn:aws:sqs:us-west-2:123:second"},
                ],
            }
        )

        triggers = definition.sqs_triggers()

        assert [t.queue_name for t in triggers] == ["first", None]
        assert triggers[1].arn == "arn:aws:sqs:us-west-2:123:second"

    def test_defaults(self):
        definition = FunctionDefinition.model_validate({"handler": "handler.main"})
        assert definition.timeout == 6
        assert definition.memory_size == 1024
        assert definition.sqs_triggers() == []

    def test_image_function_and_null_events_are_accepted(self, raw_manifest):
        raw_manifest["functions"]["imageFn"] = {"image": "orders-worker:latest"}
        raw_manifest["functions"]["noEvents"] = {"handler": "h.main", "events": None}

        manifest = parse_manifest(raw_manifest)

        assert manifest.functions["imageFn"].handler is None
        assert manifest.functions["noEvents"].sqs_triggers() == []
        assert manifest.functions["processOrders"].sqs_triggers()


class TestManifest:
    def test_queue_resources_filters_by_type(self, manifest):
        assert set(manifest.queue_resources()) == {"OrdersQueue", "OrdersDeadLetterQueue"}
        assert "OrdersTable" in manifest.resource_catalog()

    def test_service_name_from_mapping_or_string(self, manifest):
        assert manifest.service_name == "orders"
        assert parse_manifest({"service": "billing"}).service_name == "billing"

    def test_null_sections_are_tolerated(self):
        manifest = parse_manifest({"functions": None, "resources": None})
        assert manifest.functions == {}
        assert manifest.queue_resources() == {}

    def test_invalid_manifest_raises_manifest_error(self):
        with pytest.raises(ManifestError) as exc_info:
            parse_manifest({"functions": {"broken": {"handler": "h.main", "timeout": 0}}})

        assert exc_info.value.error_code == "INVALID_MANIFEST"
        assert exc_info.value.context["validation_errors"]
