"""
Supply-chain resource records for herb batches.

Each activity in the chain is captured as one immutable resource:
- CollectionEvent: wild or farm harvest, geo-tagged at the source
- ProcessingStep: drying, grinding, extraction and similar operations
- QualityTest: laboratory analysis of a sample

Resources are tagged variants sharing a common base. Every variant fills
unspecified fields with typed defaults, validates its own mandatory fields
and serializes to canonical JSON (stable key order) for transmission.

Usage:
    from herbtrace.core.resources import CollectionEvent, construct_resource

    collection = construct_resource({
        "kind": "collection",
        "botanical_name": "Withania somnifera",
        "performer_id": "FARMER-001",
        "latitude": 26.9, "longitude": 75.8,
        "quantity": {"value": 5, "unit": "kg"},
    })
    result = collection.validate()
    if not result.is_valid:
        print(result.errors)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type
import json
import uuid


class ResourceShapeError(ValueError):
    """Raised when incoming data cannot be shaped into a resource at all."""


class ResourceKind(str, Enum):
    """Kinds of supply-chain activity."""

    COLLECTION = "collection"
    PROCESSING = "processing"
    TEST = "test"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse an ISO 8601 string (or datetime) into an aware UTC datetime.

    Args:
        value: ISO string, datetime, or None
        default: Returned when value is empty

    Returns:
        Aware datetime or default

    Raises:
        ResourceShapeError: If value is not a recognizable timestamp
    """
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ResourceShapeError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ResourceShapeError(f"Invalid timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _as_float(value: Any, name: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ResourceShapeError(f"Field {name} must be numeric, got {value!r}") from e


def _as_str_list(value: Any, name: str) -> List[str]:
    """A single reference becomes a one-item list."""
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ResourceShapeError(f"Field {name} must be a list of references, got {value!r}")
    return list(value)


@dataclass
class Quantity:
    """Measured amount of material."""

    value: float = 0.0
    unit: str = "kg"

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: Any, default_unit: str = "kg") -> "Quantity":
        if data is None:
            return cls(unit=default_unit)
        if isinstance(data, (int, float, str)):
            return cls(value=_as_float(data, "quantity"), unit=default_unit)
        if not isinstance(data, dict):
            raise ResourceShapeError(f"Quantity must be a mapping, got {type(data).__name__}")
        return cls(
            value=_as_float(data.get("value"), "quantity.value"),
            unit=data.get("unit") or default_unit,
        )


@dataclass
class Documentation:
    """Supporting evidence attached to a resource."""

    # Sub-fields examined by the transparency score
    FIELDS: ClassVar[tuple] = ("photos", "certificates", "reports", "notes")

    photos: List[str] = field(default_factory=list)
    certificates: List[str] = field(default_factory=list)
    reports: List[str] = field(default_factory=list)
    notes: str = ""

    def filled_count(self) -> int:
        """Number of documentation sub-fields that are non-empty."""
        return sum(1 for name in self.FIELDS if getattr(self, name))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "photos": list(self.photos),
            "certificates": list(self.certificates),
            "reports": list(self.reports),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Documentation":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ResourceShapeError(
                f"Documentation must be a mapping, got {type(data).__name__}"
            )
        notes = data.get("notes") or ""
        if not isinstance(notes, str):
            raise ResourceShapeError(
                f"documentation.notes must be text, got {type(notes).__name__}"
            )
        return cls(
            photos=_as_str_list(data.get("photos"), "documentation.photos"),
            certificates=_as_str_list(data.get("certificates"), "documentation.certificates"),
            reports=_as_str_list(data.get("reports"), "documentation.reports"),
            notes=notes,
        )


@dataclass
class ValidationResult:
    """Outcome of resource validation. Never raised, always returned."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "errors": list(self.errors)}


@dataclass(frozen=True)
class Resource:
    """Base supply-chain resource.

    Resources are created once by the acting role and never mutated;
    status changes happen on the parent batch.
    """

    kind: ClassVar[ResourceKind]
    id_prefix: ClassVar[str] = "resource"
    default_role: ClassVar[str] = ""

    id: str = ""
    status: str = "completed"
    performer_role: str = ""
    performer_id: str = ""
    performer_name: str = ""
    performed_at: Optional[datetime] = None
    recorded_at: datetime = field(default_factory=utc_now)
    location_ref: str = ""
    quantity: Quantity = field(default_factory=Quantity)
    documentation: Documentation = field(default_factory=Documentation)
    prior_resource_ref: str = ""
    batch_ref: str = ""

    def validate(self) -> ValidationResult:
        """Enumerate every missing or invalid mandatory field."""
        errors = self._check_required()
        return ValidationResult(is_valid=not errors, errors=errors)

    def _check_required(self) -> List[str]:
        raise NotImplementedError

    def _variant_fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status,
            "performerRole": self.performer_role,
            "performerId": self.performer_id,
            "performerName": self.performer_name,
            "performedAt": format_timestamp(self.performed_at),
            "recordedAt": format_timestamp(self.recorded_at),
            "locationRef": self.location_ref,
            "quantity": self.quantity.to_dict(),
            "documentation": self.documentation.to_dict(),
            "priorResourceRef": self.prior_resource_ref,
            "batchRef": self.batch_ref,
        }
        data.update(self._variant_fields())
        return data

    def serialize(self) -> str:
        """Canonical JSON with a stable key order."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def generate_id(cls) -> str:
        return f"{cls.id_prefix}-{uuid.uuid4().hex[:16]}"

    @classmethod
    def _base_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        return {
            "id": data.get("id") or cls.generate_id(),
            "status": data.get("status") or "completed",
            "performer_role": _pick(data, "performer_role", "performerRole") or cls.default_role,
            "performer_id": _pick(data, "performer_id", "performerId") or "",
            "performer_name": _pick(data, "performer_name", "performerName") or "",
            "performed_at": parse_timestamp(_pick(data, "performed_at", "performedAt")),
            "recorded_at": parse_timestamp(_pick(data, "recorded_at", "recordedAt"), now),
            "location_ref": _pick(data, "location_ref", "locationRef") or "",
            "quantity": Quantity.from_dict(data.get("quantity")),
            "documentation": Documentation.from_dict(data.get("documentation")),
            "prior_resource_ref": _pick(data, "prior_resource_ref", "priorResourceRef") or "",
            "batch_ref": _pick(data, "batch_ref", "batchRef") or "",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        raise NotImplementedError


def _pick(data: Dict[str, Any], *names: str) -> Any:
    """Return the first present value among snake_case/camelCase aliases."""
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class CollectionEvent(Resource):
    """Harvest of a medicinal plant at a geo-tagged location."""

    kind: ClassVar[ResourceKind] = ResourceKind.COLLECTION
    id_prefix: ClassVar[str] = "collection"
    default_role: ClassVar[str] = "collector"

    botanical_name: str = ""
    common_name: str = ""
    part_used: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    village: str = ""
    district: str = ""
    state: str = ""

    def _check_required(self) -> List[str]:
        errors = []
        if not self.botanical_name:
            errors.append("Botanical name is required")
        if not self.performer_id:
            errors.append("Collector identifier is required")
        if not self.latitude or not self.longitude:
            errors.append("GPS coordinates are required")
        if self.quantity.value <= 0:
            errors.append("Collection quantity must be greater than 0")
        return errors

    @property
    def place(self) -> str:
        parts = [p for p in (self.village, self.district) if p]
        return ", ".join(parts) or self.location_ref or "unknown location"

    def _variant_fields(self) -> Dict[str, Any]:
        return {
            "botanicalName": self.botanical_name,
            "commonName": self.common_name,
            "partUsed": self.part_used,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "village": self.village,
            "district": self.district,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionEvent":
        kwargs = cls._base_kwargs(data)
        # Collection time defaults to the moment it was recorded
        if kwargs["performed_at"] is None:
            kwargs["performed_at"] = kwargs["recorded_at"]
        return cls(
            botanical_name=_pick(data, "botanical_name", "botanicalName") or "",
            common_name=_pick(data, "common_name", "commonName") or "",
            part_used=_pick(data, "part_used", "partUsed") or "",
            latitude=_as_float(data.get("latitude"), "latitude"),
            longitude=_as_float(data.get("longitude"), "longitude"),
            village=data.get("village") or "",
            district=data.get("district") or "",
            state=data.get("state") or "",
            **kwargs,
        )


@dataclass(frozen=True)
class ProcessingStep(Resource):
    """Transformation of collected (or previously processed) material."""

    kind: ClassVar[ResourceKind] = ResourceKind.PROCESSING
    id_prefix: ClassVar[str] = "processing"
    default_role: ClassVar[str] = "processor"

    process_type: str = "Drying"
    output_quantity: Quantity = field(default_factory=Quantity)
    yield_percent: float = 0.0

    def _check_required(self) -> List[str]:
        errors = []
        if not self.prior_resource_ref:
            errors.append("Input reference is required")
        if not self.performer_id:
            errors.append("Processor identifier is required")
        if self.quantity.value <= 0:
            errors.append("Input quantity must be greater than 0")
        if self.performed_at is None:
            errors.append("Processing start time is required")
        return errors

    def _variant_fields(self) -> Dict[str, Any]:
        return {
            "processType": self.process_type,
            "outputQuantity": self.output_quantity.to_dict(),
            "yieldPercent": self.yield_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingStep":
        kwargs = cls._base_kwargs(data)
        return cls(
            process_type=_pick(data, "process_type", "processType") or "Drying",
            output_quantity=Quantity.from_dict(_pick(data, "output_quantity", "outputQuantity")),
            yield_percent=_as_float(_pick(data, "yield_percent", "yieldPercent"), "yield_percent"),
            **kwargs,
        )


@dataclass(frozen=True)
class QualityTest(Resource):
    """Laboratory analysis of a sample drawn from the batch."""

    kind: ClassVar[ResourceKind] = ResourceKind.TEST
    id_prefix: ClassVar[str] = "test"
    default_role: ClassVar[str] = "laboratory"

    test_name: str = "Moisture Content"
    result_value: Optional[float] = None
    result_unit: str = ""
    interpretation: str = "normal"

    def _check_required(self) -> List[str]:
        errors = []
        if not self.prior_resource_ref:
            errors.append("Sample reference is required")
        if not self.performer_id:
            errors.append("Laboratory identifier is required")
        if self.performed_at is None:
            errors.append("Test date is required")
        if self.result_value is None:
            errors.append("Test result value is required")
        return errors

    def _variant_fields(self) -> Dict[str, Any]:
        return {
            "testName": self.test_name,
            "resultValue": self.result_value,
            "resultUnit": self.result_unit,
            "interpretation": self.interpretation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityTest":
        kwargs = cls._base_kwargs(data)
        kwargs["quantity"] = Quantity.from_dict(data.get("quantity"), default_unit="g")
        raw_result = _pick(data, "result_value", "resultValue")
        return cls(
            test_name=_pick(data, "test_name", "testName") or "Moisture Content",
            result_value=None if raw_result in (None, "") else _as_float(raw_result, "result_value"),
            result_unit=_pick(data, "result_unit", "resultUnit") or "",
            interpretation=data.get("interpretation") or "normal",
            **kwargs,
        )


# Registry mapping kind strings to resource classes
RESOURCE_REGISTRY: Dict[str, Type[Resource]] = {
    ResourceKind.COLLECTION.value: CollectionEvent,
    ResourceKind.PROCESSING.value: ProcessingStep,
    ResourceKind.TEST.value: QualityTest,
}


def construct_resource(data: Dict[str, Any]) -> Resource:
    """Build a resource from partial data, routing on its ``kind`` tag.

    Args:
        data: Partial resource fields (snake_case or camelCase keys)

    Returns:
        Fully defaulted resource variant

    Raises:
        ResourceShapeError: If data is not a mapping or kind is unknown
    """
    if not isinstance(data, dict):
        raise ResourceShapeError(f"Resource data must be a mapping, got {type(data).__name__}")

    kind = data.get("kind")
    resource_class = RESOURCE_REGISTRY.get(kind)
    if resource_class is None:
        raise ResourceShapeError(f"Unknown resource kind: {kind!r}")
    return resource_class.from_dict(data)


__all__ = [
    "ResourceShapeError",
    "ResourceKind",
    "Quantity",
    "Documentation",
    "ValidationResult",
    "Resource",
    "CollectionEvent",
    "ProcessingStep",
    "QualityTest",
    "RESOURCE_REGISTRY",
    "construct_resource",
    "parse_timestamp",
    "format_timestamp",
    "utc_now",
]
