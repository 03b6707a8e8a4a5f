from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Iterable

from rental_marketplace.errors import QueryError, ValidationError
from rental_marketplace.gateway.client import CancellationToken, GatewayClient, parse_rows
from rental_marketplace.schemas.records import Booking, Equipment
from rental_marketplace.services.equipment_service import normalize_status

BOOKINGS_LOGGER = logging.getLogger("rental_marketplace.bookings")

BOOKING_STATES = {"pending", "active", "rejected", "completed"}
INITIAL_STATE = "pending"
TERMINAL_STATES = {"rejected", "completed"}
STATE_TRANSITIONS = {
    "pending": {"active", "rejected"},
    "active": {"completed"},
    "rejected": set(),
    "completed": set(),
}
# Decisions an owner may issue; completion is driven outside this client.
DECISION_TARGETS = {
    "approve": "active",
    "reject": "rejected",
}

OWNER_BOOKING_COLUMNS = "*,equipment:equipment_id!inner(*),profiles:user_id(email)"
RENTER_BOOKING_COLUMNS = "*,equipment:equipment_id(title,rate)"
SECONDS_PER_DAY = 24 * 60 * 60


def can_transition(current: str | None, target: str) -> bool:
    return target in STATE_TRANSITIONS.get(current or "", set())


def available_actions(booking: Booking) -> list[str]:
    return [
        decision
        for decision, target in DECISION_TARGETS.items()
        if can_transition(booking.status, target)
    ]


def rental_days(start: date | datetime, end: date | datetime) -> int:
    if isinstance(start, datetime) != isinstance(end, datetime):
        start = start.date() if isinstance(start, datetime) else start
        end = end.date() if isinstance(end, datetime) else end
    delta = end - start
    days = math.ceil(delta.total_seconds() / SECONDS_PER_DAY)
    return max(days, 0)


def compute_rental_total(rate: float | None, start: date | datetime, end: date | datetime) -> float:
    return float(rate or 0) * rental_days(start, end)


def display_total(booking: Booking) -> float | None:
    if booking.status == "completed":
        return booking.total_amount
    if booking.equipment is not None and booking.equipment.rate is not None:
        return compute_rental_total(booking.equipment.rate, booking.start_date, booking.end_date)
    return booking.total_amount


def summarize_bookings(bookings: Iterable[Booking]) -> dict[str, Any]:
    rows = list(bookings)
    return {
        "activeBookings": sum(1 for row in rows if row.status == "active"),
        "pendingBookings": sum(1 for row in rows if row.status == "pending"),
        "totalBookings": len(rows),
        "totalEarnings": sum(float(row.total_amount or 0) for row in rows if row.status == "completed"),
    }


def serialize_booking(booking: Booking) -> dict:
    equipment = booking.equipment
    return {
        "bookingID": booking.id,
        "equipmentID": booking.equipment_id,
        "renterID": booking.user_id,
        "renterEmail": booking.renter_email,
        "startDate": booking.start_date,
        "endDate": booking.end_date,
        "status": booking.status,
        "rentalDays": rental_days(booking.start_date, booking.end_date),
        "totalAmount": booking.total_amount,
        "displayTotal": display_total(booking),
        "actions": available_actions(booking),
        "createdDate": booking.created_at,
        "updatedDate": booking.updated_at,
        "equipment": {
            "equipmentID": equipment.id,
            "title": equipment.title,
            "type": equipment.type,
            "rate": equipment.rate,
        } if equipment else None,
    }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def fetch_owner_bookings(
    gateway: GatewayClient,
    owner_id: str,
    cancel: CancellationToken | None = None,
) -> list[Booking]:
    rows = await gateway.select(
        "bookings",
        columns=OWNER_BOOKING_COLUMNS,
        filters={"equipment.owner_id": owner_id},
        order="created_at.desc",
        cancel=cancel,
    )
    return parse_rows(Booking, rows, "bookings")


async def fetch_renter_bookings(
    gateway: GatewayClient,
    renter_id: str,
    cancel: CancellationToken | None = None,
) -> list[Booking]:
    rows = await gateway.select(
        "bookings",
        columns=RENTER_BOOKING_COLUMNS,
        filters={"user_id": renter_id},
        order="created_at.desc",
        cancel=cancel,
    )
    return parse_rows(Booking, rows, "bookings")


async def decide_booking(
    gateway: GatewayClient,
    booking: Booking,
    decision: str,
    cancel: CancellationToken | None = None,
) -> bool:
    target = DECISION_TARGETS.get(decision)
    if target is None:
        raise ValidationError(f"Unknown booking decision: {decision}")
    if not can_transition(booking.status, target):
        BOOKINGS_LOGGER.info(
            "Booking decision skipped booking_id=%s status=%s decision=%s",
            booking.id,
            booking.status,
            decision,
        )
        return False

    rows = await gateway.update(
        "bookings",
        {"status": target, "updated_at": _utc_now_iso()},
        filters={"id": booking.id, "status": INITIAL_STATE},
        cancel=cancel,
    )
    changed = bool(rows)
    if changed:
        BOOKINGS_LOGGER.info("Booking %s booking_id=%s status=%s", decision, booking.id, target)
    else:
        BOOKINGS_LOGGER.warning("Booking no longer pending booking_id=%s decision=%s", booking.id, decision)
    return changed


async def approve_booking(gateway: GatewayClient, booking: Booking, cancel: CancellationToken | None = None) -> bool:
    return await decide_booking(gateway, booking, "approve", cancel=cancel)


async def reject_booking(gateway: GatewayClient, booking: Booking, cancel: CancellationToken | None = None) -> bool:
    return await decide_booking(gateway, booking, "reject", cancel=cancel)


async def request_booking(
    gateway: GatewayClient,
    renter_id: str,
    equipment: Equipment,
    start_date: date,
    end_date: date,
) -> Booking:
    if end_date < start_date:
        raise ValidationError("endDate must not be before startDate.")
    if normalize_status(equipment.status) != "available":
        raise ValidationError("Equipment is not available for booking.")

    now = _utc_now_iso()
    rows = await gateway.insert(
        "bookings",
        [
            {
                "equipment_id": equipment.id,
                "user_id": renter_id,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "status": INITIAL_STATE,
                "total_amount": compute_rental_total(equipment.rate, start_date, end_date),
                "created_at": now,
                "updated_at": now,
            }
        ],
    )
    if not rows:
        raise QueryError("Booking insert returned no rows.")
    booking = parse_rows(Booking, rows[:1], "bookings")[0]
    BOOKINGS_LOGGER.info("Booking requested booking_id=%s equipment_id=%s", booking.id, equipment.id)
    return booking
