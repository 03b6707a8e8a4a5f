from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from rental_marketplace.errors import NotFoundError, QueryError, RequestCancelledError, ValidationError
from rental_marketplace.gateway.client import CancellationToken, GatewayClient
from rental_marketplace.schemas.records import Booking, Equipment, Identity
from rental_marketplace.services.booking_service import (
    available_actions,
    decide_booking,
    fetch_owner_bookings,
    fetch_renter_bookings,
    serialize_booking,
    summarize_bookings,
)
from rental_marketplace.services.equipment_service import (
    can_toggle,
    fetch_owner_equipment,
    serialize_equipment,
    toggle_equipment_status,
)
from rental_marketplace.services.session_store import SessionStore

DASHBOARD_LOGGER = logging.getLogger("rental_marketplace.dashboard")

T = TypeVar("T")


class DashboardView:
    """Base for role dashboards.

    Every fetch runs as a tracked task under the view's cancellation token.
    ``close()`` cancels both, and state is only written while the view is
    open. Fetch failures keep the previous state and are listed in
    ``warnings`` until the next load; actions that depend on a failed fetch
    raise QueryError instead of acting on stale rows.
    """

    role = ""

    def __init__(self, gateway: GatewayClient, identity: Identity):
        self._gateway = gateway
        self.identity = identity
        self.cancel_token = CancellationToken()
        self.closed = False
        self.warnings: list[str] = []
        self.failed_fetches: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self):
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True
        self.cancel_token.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, awaitable: Awaitable[T]) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _best_effort(self, label: str, awaitable: Awaitable[T]) -> T | None:
        try:
            return await awaitable
        except QueryError as exc:
            DASHBOARD_LOGGER.warning(
                "Dashboard fetch failed role=%s fetch=%s user_id=%s reason=%s",
                self.role,
                label,
                self.identity.id,
                exc,
            )
            self.warnings.append(f"Could not load {label}.")
            self.failed_fetches.add(label)
            return None
        except RequestCancelledError:
            DASHBOARD_LOGGER.debug("Dashboard fetch cancelled role=%s fetch=%s", self.role, label)
            return None

    def _require_loaded(self, label: str) -> None:
        if label in self.failed_fetches:
            raise QueryError(f"Could not load {label}; action aborted.")

    async def load(self) -> None:
        raise NotImplementedError

    def snapshot(self) -> dict[str, Any]:
        raise NotImplementedError


class OwnerDashboard(DashboardView):
    role = "owner"

    def __init__(self, gateway: GatewayClient, identity: Identity):
        super().__init__(gateway, identity)
        self.equipment: list[Equipment] = []
        self.bookings: list[Booking] = []
        self.stats: dict[str, Any] = self._derive_stats()

    def _derive_stats(self) -> dict[str, Any]:
        booking_stats = summarize_bookings(self.bookings)
        return {
            "totalEquipment": len(self.equipment),
            "activeBookings": booking_stats["activeBookings"],
            "pendingBookings": booking_stats["pendingBookings"],
            "totalEarnings": booking_stats["totalEarnings"],
        }

    async def load(self) -> None:
        if self.closed:
            return
        self.warnings = []
        self.failed_fetches = set()
        equipment, bookings = await asyncio.gather(
            self._spawn(self._best_effort("equipment", fetch_owner_equipment(self._gateway, self.identity.id, self.cancel_token))),
            self._spawn(self._best_effort("bookings", fetch_owner_bookings(self._gateway, self.identity.id, self.cancel_token))),
        )
        if self.closed:
            return
        if equipment is not None:
            self.equipment = equipment
        if bookings is not None:
            self.bookings = bookings
        self.stats = self._derive_stats()

    def find_equipment(self, equipment_id: str) -> Equipment | None:
        return next((item for item in self.equipment if item.id == equipment_id), None)

    def find_booking(self, booking_id: str) -> Booking | None:
        return next((item for item in self.bookings if item.id == booking_id), None)

    async def toggle_equipment_status(self, equipment_id: str) -> str:
        self._require_loaded("equipment")
        item = self.find_equipment(equipment_id)
        if item is None:
            raise NotFoundError(f"Equipment {equipment_id} is not part of this dashboard.")
        if not can_toggle(item.status):
            raise ValidationError(f"Status toggle is not offered for status {item.status!r}.")
        new_status = await toggle_equipment_status(self._gateway, equipment_id, item.status, cancel=self.cancel_token)
        await self.load()
        return new_status

    async def decide_booking(self, booking_id: str, decision: str) -> bool:
        self._require_loaded("bookings")
        booking = self.find_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} is not part of this dashboard.")
        if decision not in available_actions(booking):
            DASHBOARD_LOGGER.info(
                "Booking action not offered booking_id=%s decision=%s status=%s",
                booking_id,
                decision,
                booking.status,
            )
            return False
        changed = await decide_booking(self._gateway, booking, decision, cancel=self.cancel_token)
        await self.load()
        return changed

    def snapshot(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "stats": dict(self.stats),
            "equipment": [serialize_equipment(item) for item in self.equipment],
            "bookings": [serialize_booking(item) for item in self.bookings],
            "warnings": list(self.warnings),
        }


class RenterDashboard(DashboardView):
    role = "renter"

    def __init__(self, gateway: GatewayClient, identity: Identity):
        super().__init__(gateway, identity)
        self.bookings: list[Booking] = []
        self.stats: dict[str, Any] = self._derive_stats()

    def _derive_stats(self) -> dict[str, Any]:
        booking_stats = summarize_bookings(self.bookings)
        return {
            "activeBookings": booking_stats["activeBookings"],
            "pendingBookings": booking_stats["pendingBookings"],
            "totalBookings": booking_stats["totalBookings"],
        }

    async def load(self) -> None:
        if self.closed:
            return
        self.warnings = []
        self.failed_fetches = set()
        bookings = await self._spawn(
            self._best_effort("bookings", fetch_renter_bookings(self._gateway, self.identity.id, self.cancel_token))
        )
        if self.closed:
            return
        if bookings is not None:
            self.bookings = bookings
        self.stats = self._derive_stats()

    def snapshot(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "stats": dict(self.stats),
            "bookings": [serialize_booking(item) for item in self.bookings],
            "warnings": list(self.warnings),
        }


DASHBOARDS = {
    "owner": OwnerDashboard,
    "renter": RenterDashboard,
}


class DashboardSwitcher:
    """Chooses which role dashboard is mounted for the signed-in identity."""

    def __init__(self, store: SessionStore):
        self._store = store
        self._active_role: str | None = None

    @property
    def active_role(self) -> str | None:
        roles = self._store.roles
        if self._active_role in roles:
            return self._active_role
        return roles[0] if roles else None

    def switch(self, role: str) -> str:
        if role not in self._store.roles:
            raise ValidationError(f"Role {role!r} is not granted to this account.")
        self._active_role = role
        DASHBOARD_LOGGER.info("Dashboard role switched role=%s", role)
        return role

    def mount(self, gateway: GatewayClient, role: str | None = None) -> DashboardView:
        identity = self._store.identity
        if identity is None:
            raise ValidationError("No signed-in identity.")
        target = role or self.active_role
        if target is None or target not in self._store.roles:
            raise ValidationError("No dashboard role available.")
        return DASHBOARDS[target](gateway, identity)
