import unittest

from rental_marketplace.errors import NotFoundError, QueryError, ValidationError
from rental_marketplace.schemas.records import Equipment
from rental_marketplace.schemas.requests import EquipmentUpsert
from rental_marketplace.services.equipment_service import (
    can_toggle,
    create_listing,
    fetch_equipment,
    fetch_owner_equipment,
    fetch_public_equipment,
    next_toggle_status,
    normalize_status,
    serialize_equipment,
    toggle_equipment_status,
    update_listing,
)
from rental_marketplace.tests.fakes import FakeGateway, equipment_row


class EquipmentStatusTests(unittest.TestCase):
    def test_toggle_flips_between_available_and_maintenance(self):
        self.assertEqual(next_toggle_status("available"), "maintenance")
        self.assertEqual(next_toggle_status("maintenance"), "available")

    def test_rented_is_not_toggleable(self):
        self.assertFalse(can_toggle("rented"))
        self.assertFalse(can_toggle("unavailable"))
        with self.assertRaises(ValidationError):
            next_toggle_status("rented")

    def test_unavailable_is_read_as_rented(self):
        self.assertEqual(normalize_status("unavailable"), "rented")
        self.assertEqual(normalize_status(" Available "), "available")
        self.assertIsNone(normalize_status("broken"))

    def test_serialize_equipment(self):
        payload = serialize_equipment(Equipment.model_validate(equipment_row("eq-1", "owner-1", status="unavailable")))
        self.assertEqual(payload["status"], "rented")
        self.assertFalse(payload["canToggleStatus"])
        self.assertEqual(payload["ownerID"], "owner-1")


class EquipmentGatewayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = FakeGateway(
            {
                "equipment": [
                    equipment_row("eq-1", "owner-1", created_at="2024-01-01T00:00:00+00:00"),
                    equipment_row("eq-2", "owner-1", status="maintenance", created_at="2024-02-01T00:00:00+00:00"),
                    equipment_row("eq-3", "owner-2", status="rented", type="crane"),
                ]
            }
        )

    async def test_owner_listing_is_scoped_and_newest_first(self):
        items = await fetch_owner_equipment(self.gateway, "owner-1")
        self.assertEqual([item.id for item in items], ["eq-2", "eq-1"])

    async def test_public_listing_is_unscoped(self):
        items = await fetch_public_equipment(self.gateway)
        self.assertEqual(len(items), 3)
        cranes = await fetch_public_equipment(self.gateway, "crane")
        self.assertEqual([item.id for item in cranes], ["eq-3"])

    async def test_fetch_missing_equipment_returns_none(self):
        self.assertIsNone(await fetch_equipment(self.gateway, "missing"))

    async def test_toggle_writes_next_status(self):
        self.assertEqual(await toggle_equipment_status(self.gateway, "eq-1", "available"), "maintenance")
        self.assertEqual(await toggle_equipment_status(self.gateway, "eq-2", "maintenance"), "available")
        statuses = {row["id"]: row["status"] for row in self.gateway.rows("equipment")}
        self.assertEqual(statuses["eq-1"], "maintenance")
        self.assertEqual(statuses["eq-2"], "available")

    async def test_toggle_rented_issues_no_write(self):
        with self.assertRaises(ValidationError):
            await toggle_equipment_status(self.gateway, "eq-3", "rented")
        self.assertEqual(self.gateway.calls, [])

    async def test_toggle_that_matches_no_row_is_not_found(self):
        with self.assertRaises(NotFoundError):
            await toggle_equipment_status(self.gateway, "gone", "available")
        self.assertEqual(self.gateway.calls, [("update", "equipment", {"id": "gone"})])

    async def test_malformed_row_raises_query_error(self):
        self.gateway.rows("equipment")[0]["rate"] = "not-a-number"
        with self.assertRaises(QueryError):
            await fetch_owner_equipment(self.gateway, "owner-1")

    async def test_create_listing_defaults_to_available(self):
        item = await create_listing(
            self.gateway,
            "owner-1",
            EquipmentUpsert(title="Mini digger", type="excavator", rate=80),
        )
        self.assertEqual(item.status, "available")
        self.assertEqual(item.owner_id, "owner-1")
        self.assertEqual(item.rate, 80)

    async def test_create_listing_requires_title_and_rate(self):
        with self.assertRaises(ValidationError):
            await create_listing(self.gateway, "owner-1", EquipmentUpsert(rate=80))
        with self.assertRaises(ValidationError):
            await create_listing(self.gateway, "owner-1", EquipmentUpsert(title="Mini digger"))

    async def test_update_listing_is_scoped_to_owner(self):
        updated = await update_listing(self.gateway, "owner-1", "eq-1", EquipmentUpsert(rate=120))
        self.assertEqual(updated.rate, 120)
        foreign = await update_listing(self.gateway, "owner-1", "eq-3", EquipmentUpsert(rate=1))
        self.assertIsNone(foreign)
        eq3 = next(row for row in self.gateway.rows("equipment") if row["id"] == "eq-3")
        self.assertEqual(eq3["rate"], 100.0)

    async def test_update_listing_rejects_unknown_status(self):
        with self.assertRaises(ValidationError):
            await update_listing(self.gateway, "owner-1", "eq-1", EquipmentUpsert(status="broken"))


if __name__ == "__main__":
    unittest.main()
