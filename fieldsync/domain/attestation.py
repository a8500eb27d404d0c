from __future__ import annotations

from fieldsync.domain.models import EventPayload, MaterialLine


def build_attestation_fields(payload: EventPayload, *, record_id: int) -> dict[str, object]:
    """Flatten a payload into proof schema fields; the ledger record id anchors the proof."""
    location = payload.location
    manufacturing = payload.manufacturing
    return {
        "ledger_record_id": record_id,
        "action_id": payload.action_id,
        "action_name": payload.action_name,
        "company_id": payload.company_id,
        "event_timestamp": payload.event_date.isoformat(),
        "event_location": f"{location.latitude},{location.longitude}" if location else "",
        "collector_id": payload.collector_id or "",
        "incoming_materials": _material_fields(payload.incoming_materials, payload.collector_id),
        "outgoing_materials": _material_fields(payload.outgoing_materials, payload.collector_id),
        "manufactured_product_id": manufacturing.product_id if manufacturing else None,
        "batch_quantity": manufacturing.quantity if manufacturing else None,
        "weight_per_item_kg": manufacturing.weight_per_item_kg if manufacturing else None,
    }


def _material_fields(lines: list[MaterialLine], collector_id: str | None) -> list[dict[str, object]]:
    return [
        {
            "material_id": line.material_id,
            "code": collector_id or line.code or "",
            "weight_kg": line.weight_kg or 0,
        }
        for line in lines
    ]
