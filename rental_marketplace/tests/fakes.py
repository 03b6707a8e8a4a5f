import copy
from typing import Any

from rental_marketplace.errors import AuthError, QueryError
from rental_marketplace.gateway.client import AuthSubscription
from rental_marketplace.schemas.records import AuthSession, Identity


def _lookup(row: dict, column: str) -> Any:
    value: Any = row
    for part in column.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(row: dict, filters: dict | None) -> bool:
    for column, expected in (filters or {}).items():
        if isinstance(expected, tuple):
            expected = expected[1]
        if str(_lookup(row, column)) != str(expected):
            return False
    return True


class FakeAuth:
    def __init__(self):
        self.users: dict[str, Identity] = {}
        self.passwords: dict[str, str] = {}
        self.session: AuthSession | None = None
        self.listeners = []
        self.calls: list[str] = []
        self.fail_sign_up = False
        self.fail_sign_out = False
        self.fail_delete = False
        self._next_id = 1

    @property
    def current_session(self):
        return self.session

    def add_user(self, email: str, password: str, user_id: str | None = None) -> Identity:
        identity = Identity(id=user_id or f"user-{self._next_id}", email=email)
        self._next_id += 1
        self.users[identity.id] = identity
        self.passwords[email] = password
        return identity

    def on_auth_state_change(self, listener):
        self.listeners.append(listener)
        return AuthSubscription(self, listener)

    def _remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def emit(self, event: str, session):
        for listener in list(self.listeners):
            await listener(event, session)

    async def sign_in_with_password(self, email, password):
        self.calls.append("sign_in")
        user = next((item for item in self.users.values() if item.email == email), None)
        if user is None or self.passwords.get(email) != password:
            raise AuthError("Invalid login credentials")
        self.session = AuthSession(access_token=f"token-{user.id}", user=user)
        await self.emit("SIGNED_IN", self.session)
        return self.session

    async def sign_up(self, email, password):
        self.calls.append("sign_up")
        if self.fail_sign_up:
            raise AuthError("User already registered")
        identity = self.add_user(email, password)
        self.session = AuthSession(access_token=f"token-{identity.id}", user=identity)
        await self.emit("SIGNED_IN", self.session)
        return identity

    async def sign_out(self):
        self.calls.append("sign_out")
        try:
            if self.fail_sign_out:
                raise AuthError("network down")
        finally:
            await self.discard_session()

    async def discard_session(self):
        if self.session is None:
            return
        self.session = None
        await self.emit("SIGNED_OUT", None)

    async def get_session(self):
        self.calls.append("get_session")
        return self.session

    async def admin_delete_user(self, user_id):
        self.calls.append("admin_delete_user")
        if self.fail_delete:
            raise AuthError("service key rejected")
        identity = self.users.pop(user_id, None)
        if identity is not None:
            self.passwords.pop(identity.email, None)


class FakeGateway:
    """In-memory stand-in for GatewayClient.

    ``failures`` holds ``(operation, table)`` pairs that raise QueryError;
    ``calls`` records every table operation in order.
    """

    def __init__(self, tables: dict[str, list[dict]] | None = None):
        self.auth = FakeAuth()
        self.tables: dict[str, list[dict]] = copy.deepcopy(tables or {})
        self.calls: list[tuple] = []
        self.failures: set[tuple[str, str]] = set()
        self._next_id = 1

    def _check(self, operation: str, table: str, cancel) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.calls.append((operation, table))
        if (operation, table) in self.failures:
            raise QueryError(f"{operation} on {table} failed", status=500)

    async def select(self, table, *, columns="*", filters=None, order=None, limit=None, cancel=None):
        self._check("select", table, cancel)
        rows = [row for row in self.tables.get(table, []) if _matches(row, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda row: str(row.get(column) or ""), reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table, rows, *, cancel=None):
        self._check("insert", table, cancel)
        created = []
        for row in rows:
            record = dict(row)
            if "id" not in record:
                record["id"] = f"{table}-{self._next_id}"
                self._next_id += 1
            self.tables.setdefault(table, []).append(record)
            created.append(copy.deepcopy(record))
        return created

    async def update(self, table, patch, *, filters, cancel=None):
        self._check("update", table, cancel)
        self.calls[-1] = ("update", table, dict(filters))
        changed = []
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                row.update(patch)
                changed.append(copy.deepcopy(row))
        return changed

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])


def equipment_row(equipment_id, owner_id, status="available", rate=100.0, created_at="2024-01-01T00:00:00+00:00", **extra):
    row = {
        "id": equipment_id,
        "owner_id": owner_id,
        "title": f"Equipment {equipment_id}",
        "type": "excavator",
        "rate": rate,
        "status": status,
        "image_url": None,
        "created_at": created_at,
        "updated_at": created_at,
    }
    row.update(extra)
    return row


def booking_row(booking_id, equipment, renter_id, status="pending", total_amount=None,
                start_date="2023-01-01", end_date="2023-01-04", created_at="2024-01-02T00:00:00+00:00"):
    return {
        "id": booking_id,
        "equipment_id": equipment["id"],
        "user_id": renter_id,
        "start_date": start_date,
        "end_date": end_date,
        "status": status,
        "total_amount": total_amount,
        "created_at": created_at,
        "updated_at": created_at,
        "equipment": dict(equipment),
        "profiles": {"email": f"{renter_id}@example.com"},
    }
