from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from rental_marketplace.errors import (
    AuthError,
    CompensationFailedError,
    QueryError,
    SignupError,
    ValidationError,
)
from rental_marketplace.gateway.client import AuthSubscription, GatewayClient, parse_rows
from rental_marketplace.schemas.records import AuthSession, Identity, Profile

SESSION_LOGGER = logging.getLogger("rental_marketplace.session")

ROLES = ("owner", "renter")


def normalize_roles(raw_roles: Iterable[str] | None) -> list[str]:
    roles: list[str] = []
    for raw in raw_roles or []:
        role = str(raw or "").strip().lower()
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {raw}")
        if role not in roles:
            roles.append(role)
    return roles


class SessionStore:
    """Authenticated identity and granted roles for one client.

    Owned by the application root and handed to the views that need it.
    Explicit operations set ``loading`` while they run; auth notifications
    that arrive meanwhile are left to the running operation.
    """

    def __init__(self, gateway: GatewayClient):
        self._gateway = gateway
        self.identity: Identity | None = None
        self.roles: list[str] = []
        self.loading = False
        self._subscription: AuthSubscription | None = None

    def set_identity(self, identity: Identity | None) -> None:
        self.identity = identity

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def snapshot(self) -> dict[str, Any]:
        return {
            "user": {"id": self.identity.id, "email": self.identity.email} if self.identity else None,
            "roles": list(self.roles),
            "isLoading": self.loading,
        }

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._gateway.auth.on_auth_state_change(self._on_auth_state_change)
        session = await self._gateway.auth.get_session()
        self.set_identity(session.user if session else None)
        if session:
            await self.fetch_roles(session.user.id)
        else:
            self.roles = []

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _on_auth_state_change(self, event: str, session: AuthSession | None) -> None:
        if self.loading:
            return
        identity = session.user if session else None
        self.set_identity(identity)
        if identity is None:
            self.roles = []
            return
        await self.fetch_roles(identity.id)

    async def fetch_roles(self, identity_id: str) -> list[str]:
        try:
            rows = await self._gateway.select(
                "user_roles",
                columns="role",
                filters={"user_id": identity_id},
                order="created_at.asc",
            )
        except QueryError as exc:
            SESSION_LOGGER.warning("Role fetch failed user_id=%s reason=%s", identity_id, exc)
            self.roles = []
            return []
        roles: list[str] = []
        for row in rows:
            role = str(row.get("role") or "").strip().lower()
            if role in ROLES and role not in roles:
                roles.append(role)
        self.roles = roles
        return list(roles)

    async def sign_in(self, email: str, password: str) -> Identity:
        email = (email or "").strip()
        if not email or not password:
            raise ValidationError("Email and password are required.")

        self.loading = True
        try:
            session = await self._gateway.auth.sign_in_with_password(email, password)
            self.set_identity(session.user)
            await self.fetch_roles(session.user.id)
            SESSION_LOGGER.info("Sign in success user_id=%s roles=%s", session.user.id, ",".join(self.roles))
            return session.user
        except AuthError as exc:
            SESSION_LOGGER.warning("Sign in failed email=%s reason=%s", email, exc)
            raise
        finally:
            self.loading = False

    async def sign_up(self, email: str, password: str, roles: Iterable[str]) -> Identity:
        email = (email or "").strip()
        selected = normalize_roles(roles)
        if not selected:
            raise ValidationError("Please select at least one role.")
        if not email or not password:
            raise ValidationError("Email and password are required.")

        self.loading = True
        try:
            identity = await self._gateway.auth.sign_up(email, password)
            try:
                await self._create_account_records(identity, email, selected)
            except QueryError as exc:
                SESSION_LOGGER.warning("Sign up failed after identity creation user_id=%s reason=%s", identity.id, exc)
                await self._compensate_signup(identity, exc)
                raise SignupError(f"Sign up failed: {exc}") from exc

            self.set_identity(identity)
            self.roles = list(selected)
            SESSION_LOGGER.info("Sign up success user_id=%s roles=%s", identity.id, ",".join(selected))
            return identity
        finally:
            self.loading = False

    async def _create_account_records(self, identity: Identity, email: str, roles: list[str]) -> None:
        await self._gateway.insert(
            "user_profiles",
            [{"user_id": identity.id, "email": email, "created_at": _utc_now_iso()}],
        )
        # One insert per role keeps created_at ordered as granted.
        for role in roles:
            await self._gateway.insert(
                "user_roles",
                [{"user_id": identity.id, "role": role, "created_at": _utc_now_iso()}],
            )

    async def _compensate_signup(self, identity: Identity, original_error: Exception) -> None:
        try:
            await self._gateway.auth.admin_delete_user(identity.id)
        except (AuthError, QueryError) as exc:
            SESSION_LOGGER.error(
                "Sign up compensation failed user_id=%s reason=%s",
                identity.id,
                exc,
            )
            raise CompensationFailedError(
                f"Sign up failed and account {identity.id} could not be removed: {exc}",
                identity_id=identity.id,
                original_error=original_error,
            ) from exc
        finally:
            await self._gateway.auth.discard_session()

    async def sign_out(self) -> None:
        self.loading = True
        try:
            await self._gateway.auth.sign_out()
        except AuthError as exc:
            SESSION_LOGGER.warning("Remote sign out failed reason=%s", exc)
            raise
        finally:
            self.set_identity(None)
            self.roles = []
            self.loading = False


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def fetch_profile(gateway: GatewayClient, identity_id: str) -> Profile | None:
    rows = await gateway.select("user_profiles", filters={"user_id": identity_id}, limit=1)
    if not rows:
        return None
    return parse_rows(Profile, rows[:1], "user_profiles")[0]
