#!/usr/bin/env python3
"""Gateway overview and integrity checks for the rental marketplace."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from typing import Any, Iterable

from rental_marketplace.config import GatewaySettings
from rental_marketplace.errors import QueryError
from rental_marketplace.gateway.client import GatewayClient
from rental_marketplace.services.booking_service import BOOKING_STATES
from rental_marketplace.services.equipment_service import normalize_status
from rental_marketplace.services.session_store import ROLES


EXPECTED_TABLES = [
    "equipment",
    "bookings",
    "user_roles",
    "user_profiles",
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _count_result(name: str, count: int) -> CheckResult:
    return CheckResult(name, count == 0, f"count={count}")


def run_integrity_checks(tables: dict[str, list[dict[str, Any]]]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    equipment = tables.get("equipment")
    bookings = tables.get("bookings")
    roles = tables.get("user_roles")

    if equipment is not None:
        unknown_status = sum(1 for row in equipment if normalize_status(row.get("status")) is None)
        checks.append(_count_result("equipment:unknown_status", unknown_status))
        negative_rate = sum(1 for row in equipment if float(row.get("rate") or 0) < 0)
        checks.append(_count_result("equipment:negative_rate", negative_rate))

    if bookings is not None:
        unknown_status = sum(1 for row in bookings if row.get("status") not in BOOKING_STATES)
        checks.append(_count_result("bookings:unknown_status", unknown_status))
        # ISO dates compare correctly as strings.
        reversed_dates = sum(
            1
            for row in bookings
            if row.get("start_date") and row.get("end_date") and str(row["end_date"]) < str(row["start_date"])
        )
        checks.append(_count_result("bookings:end_before_start", reversed_dates))
        missing_total = sum(
            1 for row in bookings if row.get("status") == "completed" and row.get("total_amount") is None
        )
        checks.append(_count_result("bookings:completed_without_total", missing_total))

    if bookings is not None and equipment is not None:
        known_ids = {row.get("id") for row in equipment}
        orphans = sum(1 for row in bookings if row.get("equipment_id") not in known_ids)
        checks.append(_count_result("bookings:orphan_equipment_id", orphans))

    if roles is not None:
        unknown_roles = sum(1 for row in roles if row.get("role") not in ROLES)
        checks.append(_count_result("user_roles:unknown_role", unknown_roles))

    return checks


async def _load_tables(client: GatewayClient) -> tuple[dict[str, list[dict[str, Any]]], list[CheckResult]]:
    tables: dict[str, list[dict[str, Any]]] = {}
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        try:
            tables[table] = await client.select(table)
        except QueryError as exc:
            results.append(CheckResult(f"table:{table}", False, f"unreachable ({exc})"))
            continue
        results.append(CheckResult(f"table:{table}", True, "reachable"))
    return tables, results


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(tables: dict[str, list[dict[str, Any]]]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: unreachable")
            continue
        print(f"{table}: {len(tables[table])}")


def _print_status_breakdown(tables: dict[str, list[dict[str, Any]]]) -> None:
    _print_section("Status Breakdown")
    for table in ("equipment", "bookings"):
        rows = tables.get(table)
        if rows is None:
            continue
        counts: dict[str, int] = {}
        for row in rows:
            key = str(row.get("status") or "<none>")
            counts[key] = counts.get(key, 0) + 1
        print(f"{table}:")
        for status, count in sorted(counts.items()):
            print(f"  - {status}: {count}")


async def _run(settings: GatewaySettings) -> int:
    client = GatewayClient(settings)
    try:
        tables, reachability = await _load_tables(client)
    finally:
        await client.aclose()

    _print_results("Table Reachability", reachability)
    _print_results("Integrity Checks", run_integrity_checks(tables))
    _print_row_counts(tables)
    _print_status_breakdown(tables)
    return 0 if all(result.ok for result in reachability) else 3


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental marketplace gateway overview")
    parser.add_argument("--url", default=os.environ.get("GATEWAY_URL", ""))
    parser.add_argument(
        "--key",
        default=os.environ.get("GATEWAY_SERVICE_KEY") or os.environ.get("GATEWAY_ANON_KEY", ""),
        help="API key; the service key sees rows hidden by row-level security.",
    )
    args = parser.parse_args()

    url = (args.url or "").strip().rstrip("/")
    key = (args.key or "").strip()
    if not url or not key:
        print("GATEWAY_URL and a gateway key are required. Provide --url/--key or export env first.")
        return 2

    return asyncio.run(_run(GatewaySettings(url=url, anon_key=key)))


if __name__ == "__main__":
    sys.exit(main())
