"""
Tests for resource models.

Covers construction from partial data, validation messages per missing
field, canonical serialization and shape errors.
"""

import json

import pytest

from conftest import collection_data, lab_test_data, processing_data
from herbtrace.core.resources import (
    CollectionEvent,
    ProcessingStep,
    QualityTest,
    ResourceKind,
    ResourceShapeError,
    construct_resource,
)


class TestConstruction:
    """Tests for construct_resource and variant from_dict."""

    def test_routes_on_kind(self):
        """Verify each kind builds its own variant."""
        assert isinstance(construct_resource(collection_data()), CollectionEvent)
        assert isinstance(construct_resource(processing_data()), ProcessingStep)
        assert isinstance(construct_resource(lab_test_data()), QualityTest)

    def test_generates_prefixed_id(self):
        """Verify ids are generated per kind when absent."""
        resource = construct_resource({"kind": "processing"})

        assert resource.id.startswith("processing-")
        assert resource.kind == ResourceKind.PROCESSING

    def test_keeps_given_id(self):
        resource = construct_resource(collection_data(id="collection-fixed"))
        assert resource.id == "collection-fixed"

    def test_fills_typed_defaults(self):
        """Verify partial data gets defaults for every field."""
        resource = construct_resource({"kind": "test"})

        assert resource.test_name == "Moisture Content"
        assert resource.result_value is None
        assert resource.quantity.unit == "g"
        assert resource.performer_role == "laboratory"
        assert resource.documentation.photos == []

    def test_accepts_snake_case_keys(self):
        resource = construct_resource(
            {"kind": "collection", "botanical_name": "Ocimum sanctum", "performer_id": "F-9"}
        )
        assert resource.botanical_name == "Ocimum sanctum"
        assert resource.performer_id == "F-9"

    def test_collection_time_defaults_to_recorded_time(self):
        resource = construct_resource({"kind": "collection"})
        assert resource.performed_at == resource.recorded_at

    def test_unknown_kind_raises(self):
        with pytest.raises(ResourceShapeError, match="Unknown resource kind"):
            construct_resource({"kind": "shipment"})

    def test_non_mapping_raises(self):
        with pytest.raises(ResourceShapeError):
            construct_resource(["collection"])

    def test_non_numeric_quantity_raises(self):
        with pytest.raises(ResourceShapeError):
            construct_resource(collection_data(quantity={"value": "lots"}))

    @pytest.mark.parametrize(
        "documentation",
        ["photo.jpg", ["photo.jpg"], {"photos": [1, 2]}, {"notes": ["see report"]}],
    )
    def test_malformed_documentation_raises(self, documentation):
        with pytest.raises(ResourceShapeError):
            construct_resource(collection_data(documentation=documentation))

    def test_single_documentation_reference_is_kept_whole(self):
        resource = construct_resource(
            collection_data(documentation={"photos": "field.jpg", "certificates": ("organic.pdf",)})
        )

        assert resource.documentation.photos == ["field.jpg"]
        assert resource.documentation.certificates == ["organic.pdf"]

    def test_bad_timestamp_raises(self):
        with pytest.raises(ResourceShapeError):
            construct_resource(processing_data(performedAt="yesterday"))


class TestValidation:
    """Tests for validate()."""

    def test_complete_collection_is_valid(self, collection):
        result = collection.validate()

        assert result.is_valid
        assert result.errors == []

    def test_collection_missing_everything(self):
        """Verify one message per missing field class."""
        result = CollectionEvent().validate()

        assert not result.is_valid
        assert result.errors == [
            "Botanical name is required",
            "Collector identifier is required",
            "GPS coordinates are required",
            "Collection quantity must be greater than 0",
        ]

    def test_collection_missing_only_gps(self):
        result = construct_resource(collection_data(latitude=None, longitude=None)).validate()
        assert result.errors == ["GPS coordinates are required"]

    def test_processing_missing_fields(self):
        result = ProcessingStep().validate()

        assert result.errors == [
            "Input reference is required",
            "Processor identifier is required",
            "Input quantity must be greater than 0",
            "Processing start time is required",
        ]

    def test_test_missing_result(self, processing):
        result = construct_resource(
            lab_test_data(priorResourceRef=processing.id, resultValue=None)
        ).validate()
        assert result.errors == ["Test result value is required"]

    def test_zero_result_is_a_result(self, processing):
        result = construct_resource(
            lab_test_data(priorResourceRef=processing.id, resultValue=0)
        ).validate()
        assert result.is_valid

    def test_validation_never_raises(self):
        assert QualityTest().validate().is_valid is False

    def test_validation_result_to_dict(self):
        data = ProcessingStep().validate().to_dict()
        assert data["isValid"] is False
        assert len(data["errors"]) == 4


class TestSerialization:
    """Tests for to_dict and serialize."""

    def test_to_dict_uses_camel_case(self, collection):
        data = collection.to_dict()

        assert data["kind"] == "collection"
        assert data["botanicalName"] == "Withania somnifera"
        assert data["quantity"] == {"value": 5.0, "unit": "kg"}
        assert data["performedAt"].startswith("2025-03-01T08:00:00")

    def test_serialize_is_canonical(self, collection):
        """Verify sorted keys and compact separators."""
        text = collection.serialize()

        assert ", " not in text
        assert text == json.dumps(json.loads(text), sort_keys=True, separators=(",", ":"))

    def test_dict_round_trip(self, quality_test):
        rebuilt = construct_resource(quality_test.to_dict())
        assert rebuilt == quality_test

    def test_place_prefers_village_and_district(self, collection):
        assert collection.place == "Chomu, Jaipur"
