"""Outbound submission payloads for the authoritative store."""

from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from herbtrace.core.resources import (
    CollectionEvent,
    ProcessingStep,
    QualityTest,
    Resource,
    format_timestamp,
)

DECISION_ITEM_TYPE = "decision"


def build_submission_payload(
    qr_code: str,
    resource: Resource,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Shape a resource submission for transmission.

    Collection events use the farmer/herb/location layout the store expects
    for new batches; processing and test resources are sent whole.

    Args:
        qr_code: Batch QR code
        resource: Validated resource
        details: Extra batch fields (farmer phone, GPS accuracy, notes)

    Returns:
        JSON-serializable payload without transmission metadata
    """
    details = details or {}
    timestamp = format_timestamp(resource.performed_at or resource.recorded_at)

    if isinstance(resource, CollectionEvent):
        return {
            "qrCode": qr_code,
            "collectionId": details.get("collectionId") or resource.id,
            "farmer": {
                "name": resource.performer_name or details.get("farmerName", ""),
                "phone": details.get("farmerPhone", ""),
                "farmerId": resource.performer_id,
                "village": resource.village,
                "district": resource.district,
                "state": resource.state,
            },
            "herb": {
                "botanicalName": resource.botanical_name,
                "commonName": resource.common_name,
                "partUsed": resource.part_used,
                "quantity": resource.quantity.value,
                "unit": resource.quantity.unit,
                "notes": resource.documentation.notes,
            },
            "location": {
                "latitude": resource.latitude,
                "longitude": resource.longitude,
                "accuracy": details.get("accuracy", 0),
                "timestamp": timestamp,
            },
            "timestamp": timestamp,
        }
    if isinstance(resource, (ProcessingStep, QualityTest)):
        return {
            "qrCode": qr_code,
            "resourceType": resource.kind.value,
            "resource": resource.to_dict(),
            "timestamp": timestamp,
        }
    raise TypeError(f"Unsupported resource type: {type(resource).__name__}")


def build_decision_payload(
    qr_code: str, decision: str, notes: str = "", actor: str = "regulator"
) -> Dict[str, Any]:
    """Payload for a regulatory approve/reject decision."""
    return {
        "qrCode": qr_code,
        "decision": decision,
        "comments": notes,
        "actorRole": actor,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def get_device_info() -> Dict[str, Any]:
    """Describe the submitting client for transmission metadata."""
    return {
        "platform": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "hostname": platform.node(),
    }
