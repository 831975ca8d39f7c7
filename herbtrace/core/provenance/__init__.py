"""
Provenance aggregation and traceability scoring.

Merges every resource recorded against one batch into a time-ordered event
timeline and derives the composite traceability score shown to consumers.

Scores (each 0-100):
- completeness: required resource kinds present
- accuracy: resources passing their own validation
- timeliness: mean recording delay in hours (lower is better)
- transparency: documentation sub-fields filled in
- verifiability: resources whose chain link resolves inside the bundle
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional
import logging

from herbtrace.core.resources import (
    CollectionEvent,
    Documentation,
    ProcessingStep,
    QualityTest,
    Resource,
    ResourceKind,
    format_timestamp,
)

logger = logging.getLogger(__name__)

REQUIRED_KINDS: FrozenSet[ResourceKind] = frozenset(
    {ResourceKind.COLLECTION, ResourceKind.PROCESSING, ResourceKind.TEST}
)

SCORE_WEIGHTS: Dict[str, float] = {
    "completeness": 0.30,
    "accuracy": 0.25,
    "timeliness": 0.20,
    "transparency": 0.15,
    "verifiability": 0.10,
}

# Delay (hours) at which timeliness saturates
MAX_TIMELINESS_HOURS = 100.0


@dataclass
class TraceabilityScores:
    """Component scores for one provenance bundle."""

    completeness: float = 0.0
    accuracy: float = 0.0
    timeliness: float = 0.0
    transparency: float = 0.0
    verifiability: float = 0.0

    def composite(self) -> float:
        """Weighted traceability score; timeliness is inverted."""
        return (
            self.completeness * SCORE_WEIGHTS["completeness"]
            + self.accuracy * SCORE_WEIGHTS["accuracy"]
            + (100 - self.timeliness) * SCORE_WEIGHTS["timeliness"]
            + self.transparency * SCORE_WEIGHTS["transparency"]
            + self.verifiability * SCORE_WEIGHTS["verifiability"]
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "completeness": round(self.completeness, 2),
            "accuracy": round(self.accuracy, 2),
            "timeliness": round(self.timeliness, 2),
            "transparency": round(self.transparency, 2),
            "verifiability": round(self.verifiability, 2),
            "overall": round(self.composite(), 2),
        }


@dataclass(frozen=True)
class ProvenanceEvent:
    """Timeline entry summarizing one resource."""

    resource_id: str
    kind: ResourceKind
    performed_at: datetime
    sequence: int
    summary: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.resource_id,
            "type": self.kind.value,
            "timestamp": format_timestamp(self.performed_at),
            "sequence": self.sequence,
            "reference": self.resource_id,
            "summary": self.summary,
        }


@dataclass
class OccurredPeriod:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"start": format_timestamp(self.start), "end": format_timestamp(self.end)}


def _format_number(value: float) -> str:
    return f"{value:g}"


def summarize(resource: Resource) -> str:
    """One-line human summary for a resource, per kind."""
    if isinstance(resource, CollectionEvent):
        species = resource.botanical_name or resource.common_name or "unknown species"
        return (
            f"Collected {_format_number(resource.quantity.value)}{resource.quantity.unit} "
            f"of {species} from {resource.place}"
        )
    if isinstance(resource, ProcessingStep):
        return (
            f"{resource.process_type} processing completed with "
            f"{_format_number(resource.yield_percent)}% yield"
        )
    if isinstance(resource, QualityTest):
        value = "pending" if resource.result_value is None else _format_number(resource.result_value)
        return f"{resource.test_name} test completed with result: {value} {resource.result_unit}".rstrip()
    raise TypeError(f"Unsupported resource type: {type(resource).__name__}")


class ProvenanceBundle:
    """
    Aggregated, time-ordered record of all resources for one batch.

    Events are sorted by ``performed_at`` with ties broken by insertion
    sequence, so equal timestamps keep their arrival order.
    """

    def __init__(self, qr_code: str, target_ref: str = ""):
        """Initialize an empty bundle.

        Args:
            qr_code: External identifier of the batch
            target_ref: Reference to the final product (defaults to the QR code)
        """
        self.qr_code = qr_code
        self.target_ref = target_ref or qr_code
        self.events: List[ProvenanceEvent] = []
        self.occurred_period = OccurredPeriod()
        self._resources: Dict[str, Resource] = {}
        self._sequence = 0

    @property
    def resources(self) -> List[Resource]:
        return list(self._resources.values())

    def add_event(self, resource: Resource) -> ProvenanceEvent:
        """Insert a summary of ``resource`` and keep the timeline ordered.

        Re-adding a resource with an id already in the bundle is a no-op.
        """
        if resource.id in self._resources:
            return next(e for e in self.events if e.resource_id == resource.id)

        self._sequence += 1
        performed_at = resource.performed_at or resource.recorded_at
        event = ProvenanceEvent(
            resource_id=resource.id,
            kind=resource.kind,
            performed_at=performed_at,
            sequence=self._sequence,
            summary=summarize(resource),
        )
        self._resources[resource.id] = resource
        self.events.append(event)
        self.events.sort(key=lambda e: (e.performed_at, e.sequence))

        self.occurred_period = OccurredPeriod(
            start=min(e.performed_at for e in self.events),
            end=max(e.performed_at for e in self.events),
        )

        logger.debug(f"Provenance {self.qr_code}: added {resource.kind.value} {resource.id}")
        return event

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------
    def completeness(self) -> float:
        present = {r.kind for r in self._resources.values()} & REQUIRED_KINDS
        return len(present) / len(REQUIRED_KINDS) * 100

    def accuracy(self) -> float:
        if not self._resources:
            return 0.0
        valid = sum(1 for r in self._resources.values() if r.validate().is_valid)
        return valid / len(self._resources) * 100

    def timeliness(self) -> float:
        """Mean delay in hours between performing and recording, clamped."""
        if not self._resources:
            return 0.0
        delays = []
        for r in self._resources.values():
            performed = r.performed_at or r.recorded_at
            hours = (r.recorded_at - performed).total_seconds() / 3600
            delays.append(max(0.0, hours))
        return min(MAX_TIMELINESS_HOURS, sum(delays) / len(delays))

    def transparency(self) -> float:
        if not self._resources:
            return 0.0
        examined = len(self._resources) * len(Documentation.FIELDS)
        filled = sum(r.documentation.filled_count() for r in self._resources.values())
        return filled / examined * 100

    def verifiability(self) -> float:
        if not self._resources:
            return 0.0
        linked = 0
        for r in self._resources.values():
            if r.prior_resource_ref:
                if r.prior_resource_ref in self._resources:
                    linked += 1
            elif r.kind == ResourceKind.COLLECTION:
                linked += 1
        return linked / len(self._resources) * 100

    def compute_scores(self) -> TraceabilityScores:
        return TraceabilityScores(
            completeness=self.completeness(),
            accuracy=self.accuracy(),
            timeliness=self.timeliness(),
            transparency=self.transparency(),
            verifiability=self.verifiability(),
        )

    @property
    def scores(self) -> TraceabilityScores:
        return self.compute_scores()

    def score(self) -> float:
        """Composite traceability score (0-100)."""
        return self.compute_scores().composite()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qrCode": self.qr_code,
            "targetRef": self.target_ref,
            "events": [e.to_dict() for e in self.events],
            "occurredPeriod": self.occurred_period.to_dict(),
            "scores": self.compute_scores().to_dict(),
        }


def build_bundle(qr_code: str, resources: List[Resource], target_ref: str = "") -> ProvenanceBundle:
    """Build a bundle from resources in their recorded order."""
    bundle = ProvenanceBundle(qr_code, target_ref=target_ref)
    for resource in resources:
        bundle.add_event(resource)
    return bundle


__all__ = [
    "REQUIRED_KINDS",
    "SCORE_WEIGHTS",
    "TraceabilityScores",
    "ProvenanceEvent",
    "OccurredPeriod",
    "ProvenanceBundle",
    "summarize",
    "build_bundle",
]
