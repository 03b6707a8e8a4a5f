from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from rental_marketplace.errors import NotFoundError, QueryError, ValidationError
from rental_marketplace.gateway.client import CancellationToken, GatewayClient, parse_rows
from rental_marketplace.schemas.records import Equipment
from rental_marketplace.schemas.requests import EquipmentUpsert

EQUIPMENT_LOGGER = logging.getLogger("rental_marketplace.equipment")

EQUIPMENT_STATUSES = {"available", "maintenance", "rented"}
STATUS_ALIASES = {
    "unavailable": "rented",
}
TOGGLE_TARGETS = {
    "available": "maintenance",
    "maintenance": "available",
}
DEFAULT_STATUS = "available"


def normalize_status(raw_status: str | None) -> Optional[str]:
    status = (raw_status or "").strip().lower()
    status = STATUS_ALIASES.get(status, status)
    if status in EQUIPMENT_STATUSES:
        return status
    return None


def can_toggle(status: str | None) -> bool:
    return normalize_status(status) in TOGGLE_TARGETS


def next_toggle_status(current_status: str | None) -> str:
    status = normalize_status(current_status)
    if status not in TOGGLE_TARGETS:
        raise ValidationError(f"Status {current_status!r} cannot be toggled.")
    return TOGGLE_TARGETS[status]


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.id,
        "ownerID": equipment.owner_id,
        "title": equipment.title,
        "type": equipment.type,
        "description": equipment.description,
        "location": equipment.location,
        "rate": equipment.rate,
        "status": normalize_status(equipment.status) or equipment.status,
        "canToggleStatus": can_toggle(equipment.status),
        "imageUrl": equipment.image_url,
        "createdDate": equipment.created_at,
        "updatedDate": equipment.updated_at,
    }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _listing_patch(payload: EquipmentUpsert) -> dict:
    patch = {
        "title": payload.title,
        "type": payload.type,
        "description": payload.description,
        "location": payload.location,
        "rate": payload.rate,
        "image_url": payload.imageUrl,
    }
    if payload.status is not None:
        status = normalize_status(payload.status)
        if status is None:
            raise ValidationError(f"Unknown equipment status: {payload.status}")
        patch["status"] = status
    return {key: value for key, value in patch.items() if value is not None}


async def fetch_owner_equipment(
    gateway: GatewayClient,
    owner_id: str,
    cancel: CancellationToken | None = None,
) -> list[Equipment]:
    rows = await gateway.select(
        "equipment",
        filters={"owner_id": owner_id},
        order="created_at.desc",
        cancel=cancel,
    )
    return parse_rows(Equipment, rows, "equipment")


async def fetch_public_equipment(
    gateway: GatewayClient,
    equipment_type: str | None = None,
    cancel: CancellationToken | None = None,
) -> list[Equipment]:
    filters = {"type": equipment_type} if equipment_type else None
    rows = await gateway.select(
        "equipment",
        filters=filters,
        order="created_at.desc",
        cancel=cancel,
    )
    return parse_rows(Equipment, rows, "equipment")


async def fetch_equipment(gateway: GatewayClient, equipment_id: str) -> Equipment | None:
    rows = await gateway.select("equipment", filters={"id": equipment_id}, limit=1)
    if not rows:
        return None
    return parse_rows(Equipment, rows[:1], "equipment")[0]


async def toggle_equipment_status(
    gateway: GatewayClient,
    equipment_id: str,
    current_status: str | None,
    cancel: CancellationToken | None = None,
) -> str:
    target = next_toggle_status(current_status)
    rows = await gateway.update(
        "equipment",
        {"status": target, "updated_at": _utc_now_iso()},
        filters={"id": equipment_id},
        cancel=cancel,
    )
    if not rows:
        raise NotFoundError(f"Equipment {equipment_id} was not updated.")
    EQUIPMENT_LOGGER.info("Equipment status toggled equipment_id=%s status=%s", equipment_id, target)
    return target


async def create_listing(gateway: GatewayClient, owner_id: str, payload: EquipmentUpsert) -> Equipment:
    if not (payload.title or "").strip():
        raise ValidationError("title is required.")
    if payload.rate is None:
        raise ValidationError("rate is required.")

    row = _listing_patch(payload)
    row.setdefault("status", DEFAULT_STATUS)
    now = _utc_now_iso()
    row.update({"owner_id": owner_id, "created_at": now, "updated_at": now})
    rows = await gateway.insert("equipment", [row])
    if not rows:
        raise QueryError("Equipment insert returned no rows.")
    equipment = parse_rows(Equipment, rows[:1], "equipment")[0]
    EQUIPMENT_LOGGER.info("Equipment listed equipment_id=%s owner_id=%s", equipment.id, owner_id)
    return equipment


async def update_listing(
    gateway: GatewayClient,
    owner_id: str,
    equipment_id: str,
    payload: EquipmentUpsert,
) -> Equipment | None:
    patch = _listing_patch(payload)
    if not patch:
        raise ValidationError("No listing fields to update.")
    patch["updated_at"] = _utc_now_iso()
    rows = await gateway.update(
        "equipment",
        patch,
        filters={"id": equipment_id, "owner_id": owner_id},
    )
    if not rows:
        return None
    return parse_rows(Equipment, rows[:1], "equipment")[0]
