from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from rental_marketplace.config import GatewaySettings
from rental_marketplace.errors import AuthError, QueryError, RequestCancelledError
from rental_marketplace.schemas.records import AuthSession, Identity

GATEWAY_LOGGER = logging.getLogger("rental_marketplace.gateway")

AUTH_PATH = "/auth/v1"
REST_PATH = "/rest/v1"

ModelT = TypeVar("ModelT", bound=BaseModel)

AuthListener = Callable[[str, "AuthSession | None"], Awaitable[None]]


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelledError("Request cancelled.")


class AuthSubscription:
    def __init__(self, auth: "GatewayAuth", listener: AuthListener):
        self._auth = auth
        self.listener = listener

    def unsubscribe(self) -> None:
        self._auth._remove_listener(self.listener)


def encode_filter_value(value: Any) -> str:
    if isinstance(value, tuple):
        operator, operand = value
        return f"{operator}.{operand}"
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    if isinstance(value, (list, set, frozenset)):
        return "in.(" + ",".join(str(item) for item in value) + ")"
    return f"eq.{value}"


def encode_filters(filters: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    if not filters:
        return []
    return [(column, encode_filter_value(value)) for column, value in filters.items()]


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "msg", "error_description", "error"):
            value = payload.get(key)
            if value:
                return str(value)
    text = (response.text or "").strip()
    return text or f"HTTP {response.status_code}"


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("code") is not None:
        return str(payload.get("code"))
    return None


def _json_rows(response: httpx.Response) -> list[dict[str, Any]]:
    if response.status_code == 204 or not response.content:
        return []
    try:
        payload = response.json()
    except ValueError as exc:
        raise QueryError("Gateway returned invalid JSON", status=response.status_code) from exc
    if isinstance(payload, dict):
        return [payload]
    if not isinstance(payload, list):
        raise QueryError("Gateway payload is not a list", status=response.status_code)
    return [row for row in payload if isinstance(row, dict)]


def parse_rows(model: type[ModelT], rows: list[dict[str, Any]], table: str) -> list[ModelT]:
    try:
        return [model.model_validate(row) for row in rows]
    except PydanticValidationError as exc:
        GATEWAY_LOGGER.warning("Malformed row table=%s errors=%s", table, exc.error_count())
        raise QueryError(f"Gateway returned a malformed {table} row") from exc


class GatewayAuth:
    """Password auth against the hosted identity service.

    The current session lives in memory only. Listeners registered with
    ``on_auth_state_change`` are awaited in registration order with
    ``(event, session)`` where event is one of SIGNED_IN, SIGNED_OUT,
    TOKEN_REFRESHED or USER_UPDATED.
    """

    def __init__(self, client: "GatewayClient"):
        self._client = client
        self._session: AuthSession | None = None
        self._listeners: list[AuthListener] = []

    @property
    def current_session(self) -> AuthSession | None:
        return self._session

    def on_auth_state_change(self, listener: AuthListener) -> AuthSubscription:
        self._listeners.append(listener)
        return AuthSubscription(self, listener)

    def _remove_listener(self, listener: AuthListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: str, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, session)
            except Exception:
                GATEWAY_LOGGER.exception("Auth listener failed event=%s", event)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.http.request(method, f"{AUTH_PATH}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise AuthError(f"Auth service connection error: {exc}") from exc
        if response.status_code >= 400:
            raise AuthError(_error_message(response))
        return response

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        response = await self._send(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers=self._client.headers(),
        )
        try:
            session = AuthSession.model_validate(response.json())
        except ValueError as exc:
            raise AuthError("Sign in failed: malformed session payload") from exc
        self._session = session
        await self._emit("SIGNED_IN", session)
        return session

    async def sign_up(self, email: str, password: str) -> Identity:
        response = await self._send(
            "POST",
            "/signup",
            json={"email": email, "password": password},
            headers=self._client.headers(),
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Signup failed: malformed payload") from exc
        if not isinstance(payload, dict):
            raise AuthError("Signup failed")

        # Auto-confirmed projects answer with a session, others with the bare user.
        if payload.get("access_token"):
            try:
                session = AuthSession.model_validate(payload)
            except ValueError as exc:
                raise AuthError("Signup failed: malformed session payload") from exc
            self._session = session
            await self._emit("SIGNED_IN", session)
            return session.user
        raw_user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        if not raw_user.get("id"):
            raise AuthError("Signup failed")
        try:
            return Identity.model_validate(raw_user)
        except ValueError as exc:
            raise AuthError("Signup failed: malformed user payload") from exc

    async def sign_out(self) -> None:
        session = self._session
        try:
            if session is not None:
                await self._send(
                    "POST",
                    "/logout",
                    headers=self._client.headers(access_token=session.access_token),
                )
        finally:
            await self.discard_session()

    async def discard_session(self) -> None:
        if self._session is None:
            return
        self._session = None
        await self._emit("SIGNED_OUT", None)

    async def get_session(self) -> AuthSession | None:
        session = self._session
        if session is None:
            return None
        try:
            response = await self._send(
                "GET",
                "/user",
                headers=self._client.headers(access_token=session.access_token),
            )
            try:
                user = Identity.model_validate(response.json())
            except ValueError as exc:
                raise AuthError("Session check failed: malformed user payload") from exc
        except AuthError as exc:
            GATEWAY_LOGGER.warning("Stored session rejected reason=%s", exc)
            await self.discard_session()
            return None
        if user != session.user:
            session = session.model_copy(update={"user": user})
            self._session = session
            await self._emit("USER_UPDATED", session)
        return session

    async def admin_delete_user(self, user_id: str) -> None:
        service_key = self._client.settings.service_key
        if not service_key:
            raise AuthError("GATEWAY_SERVICE_KEY is not configured; cannot delete users.")
        await self._send(
            "DELETE",
            f"/admin/users/{user_id}",
            headers={"apikey": service_key, "Authorization": f"Bearer {service_key}"},
        )
        GATEWAY_LOGGER.info("Deleted identity user_id=%s", user_id)


class GatewayClient:
    def __init__(self, settings: GatewaySettings, *, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.http = httpx.AsyncClient(
            base_url=settings.url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )
        self.auth = GatewayAuth(self)

    async def aclose(self) -> None:
        await self.http.aclose()

    def headers(self, access_token: str | None = None) -> dict[str, str]:
        token = access_token
        if token is None and self.auth.current_session is not None:
            token = self.auth.current_session.access_token
        return {
            "apikey": self.settings.anon_key,
            "Authorization": f"Bearer {token or self.settings.anon_key}",
        }

    async def _rest(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        json: Any = None,
        prefer: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[dict[str, Any]]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        headers = self.headers()
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self.http.request(
                method,
                f"{REST_PATH}/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise QueryError(f"Gateway connection error: {exc}") from exc
        if cancel is not None:
            cancel.raise_if_cancelled()
        if response.status_code >= 400:
            message = _error_message(response)
            GATEWAY_LOGGER.warning(
                "Gateway %s failed table=%s status=%s message=%s",
                method,
                table,
                response.status_code,
                message,
            )
            raise QueryError(message, status=response.status_code, code=_error_code(response))
        return _json_rows(response)

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[dict[str, Any]]:
        params = [("select", columns)] + encode_filters(filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        return await self._rest("GET", table, params=params, cancel=cancel)

    async def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        *,
        cancel: CancellationToken | None = None,
    ) -> list[dict[str, Any]]:
        return await self._rest(
            "POST",
            table,
            params=[],
            json=rows,
            prefer="return=representation",
            cancel=cancel,
        )

    async def update(
        self,
        table: str,
        patch: dict[str, Any],
        *,
        filters: Mapping[str, Any],
        cancel: CancellationToken | None = None,
    ) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("update requires at least one filter")
        return await self._rest(
            "PATCH",
            table,
            params=encode_filters(filters),
            json=patch,
            prefer="return=representation",
            cancel=cancel,
        )
