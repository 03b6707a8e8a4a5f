import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError

from rental_marketplace.config import (
    DEFAULT_CORS_ORIGINS,
    configure_logging,
    load_gateway_settings,
    parse_csv_env,
)
from rental_marketplace.errors import (
    AuthError,
    CompensationFailedError,
    NotFoundError,
    QueryError,
    SignupError,
    ValidationError,
)
from rental_marketplace.gateway.client import GatewayClient
from rental_marketplace.schemas.requests import (
    BookingDecisionRequest,
    CreateBookingRequest,
    EquipmentUpsert,
    RoleSwitchRequest,
    SignInRequest,
    SignUpRequest,
)
from rental_marketplace.services.booking_service import request_booking, serialize_booking
from rental_marketplace.services.dashboard_service import DashboardSwitcher, OwnerDashboard
from rental_marketplace.services.equipment_service import (
    create_listing,
    fetch_equipment,
    fetch_public_equipment,
    serialize_equipment,
    update_listing,
)
from rental_marketplace.services.session_store import SessionStore, fetch_profile

APP_LOGGER = logging.getLogger("rental_marketplace.app")


def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_switcher(request: Request) -> DashboardSwitcher:
    return request.app.state.dashboard_switcher


def _gateway_error(exc: QueryError) -> HTTPException:
    return HTTPException(status_code=502, detail=f"Gateway request failed: {exc}")


def _require_identity_or_401(store: SessionStore):
    if store.identity is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return store.identity


def _require_role_or_403(store: SessionStore, role: str):
    identity = _require_identity_or_401(store)
    if not store.has_role(role):
        raise HTTPException(status_code=403, detail=f"{role.capitalize()} role required.")
    return identity


def _parse_or_400(model, payload: dict):
    try:
        return model.model_validate(payload)
    except PydanticValidationError:
        raise HTTPException(status_code=400, detail="Invalid request.")


def create_app(gateway: GatewayClient | None = None) -> FastAPI:
    """Build the shell application.

    The gateway is created from the environment at startup unless one is
    passed in; the session store and dashboard switcher are owned by the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_gateway = gateway is None
        client = gateway if gateway is not None else GatewayClient(load_gateway_settings())
        store = SessionStore(client)
        app.state.gateway = client
        app.state.session_store = store
        app.state.dashboard_switcher = DashboardSwitcher(store)
        await store.start()
        try:
            yield
        finally:
            store.close()
            if owns_gateway:
                await client.aclose()

    app = FastAPI(title="Equipment Rental Marketplace", lifespan=lifespan)

    cors_origins = parse_csv_env("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ORIGINS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthcheck():
        return {"status": "ok"}

    @app.post("/api/auth/login")
    async def auth_login(payload: dict, store: SessionStore = Depends(get_session_store)):
        parsed = _parse_or_400(SignInRequest, payload)
        try:
            await store.sign_in(parsed.email, parsed.password)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except AuthError:
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        return store.snapshot()

    @app.post("/api/auth/signup")
    async def auth_signup(payload: dict, store: SessionStore = Depends(get_session_store)):
        parsed = _parse_or_400(SignUpRequest, payload)
        try:
            await store.sign_up(parsed.email, parsed.password, parsed.roles)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except AuthError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except CompensationFailedError as exc:
            APP_LOGGER.error("Orphaned account after failed signup user_id=%s", exc.identity_id)
            raise HTTPException(status_code=500, detail="Sign up failed; please contact support.")
        except SignupError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return store.snapshot()

    @app.post("/api/auth/logout")
    async def auth_logout(store: SessionStore = Depends(get_session_store)):
        try:
            await store.sign_out()
        except AuthError as exc:
            raise HTTPException(status_code=502, detail=f"Signed out locally; remote sign out failed: {exc}")
        return {"ok": True}

    @app.get("/api/auth/me")
    def auth_me(
        store: SessionStore = Depends(get_session_store),
        switcher: DashboardSwitcher = Depends(get_switcher),
    ):
        _require_identity_or_401(store)
        payload = store.snapshot()
        payload["activeRole"] = switcher.active_role
        return payload

    @app.get("/api/profile")
    async def profile(
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_identity_or_401(store)
        try:
            record = await fetch_profile(gateway, identity.id)
        except QueryError as exc:
            raise _gateway_error(exc)
        return {
            "userID": identity.id,
            "email": (record.email if record else None) or identity.email,
            "createdDate": record.created_at if record else None,
            "roles": list(store.roles),
        }

    @app.get("/api/equipment")
    async def list_equipment(
        equipment_type: str | None = Query(None, alias="type"),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        try:
            items = await fetch_public_equipment(gateway, equipment_type)
        except QueryError as exc:
            raise _gateway_error(exc)
        return [serialize_equipment(item) for item in items]

    @app.get("/api/equipment/{equipment_id}")
    async def get_equipment(equipment_id: str, gateway: GatewayClient = Depends(get_gateway)):
        try:
            item = await fetch_equipment(gateway, equipment_id)
        except QueryError as exc:
            raise _gateway_error(exc)
        if item is None:
            raise HTTPException(status_code=404, detail="Equipment not found")
        return serialize_equipment(item)

    @app.post("/api/equipment")
    async def create_equipment(
        payload: dict,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_role_or_403(store, "owner")
        parsed = _parse_or_400(EquipmentUpsert, payload)
        try:
            item = await create_listing(gateway, identity.id, parsed)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except QueryError as exc:
            raise _gateway_error(exc)
        return serialize_equipment(item)

    @app.patch("/api/equipment/{equipment_id}")
    async def edit_equipment(
        equipment_id: str,
        payload: dict,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_role_or_403(store, "owner")
        parsed = _parse_or_400(EquipmentUpsert, payload)
        try:
            item = await update_listing(gateway, identity.id, equipment_id, parsed)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except QueryError as exc:
            raise _gateway_error(exc)
        if item is None:
            raise HTTPException(status_code=404, detail="Equipment not found")
        return serialize_equipment(item)

    @app.post("/api/equipment/{equipment_id}/toggle-status")
    async def toggle_status(
        equipment_id: str,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_role_or_403(store, "owner")
        async with OwnerDashboard(gateway, identity) as dashboard:
            try:
                status = await dashboard.toggle_equipment_status(equipment_id)
            except NotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc))
            except ValidationError as exc:
                raise HTTPException(status_code=409, detail=str(exc))
            except QueryError as exc:
                raise _gateway_error(exc)
            return {"status": status, "dashboard": dashboard.snapshot()}

    @app.post("/api/bookings")
    async def create_booking(
        payload: dict,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_role_or_403(store, "renter")
        parsed = _parse_or_400(CreateBookingRequest, payload)
        try:
            equipment = await fetch_equipment(gateway, parsed.equipmentID)
            if equipment is None:
                raise HTTPException(status_code=404, detail="Equipment not found")
            booking = await request_booking(gateway, identity.id, equipment, parsed.startDate, parsed.endDate)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except QueryError as exc:
            raise _gateway_error(exc)
        return serialize_booking(booking)

    @app.post("/api/bookings/{booking_id}/decision")
    async def booking_decision(
        booking_id: str,
        payload: dict,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
    ):
        identity = _require_role_or_403(store, "owner")
        parsed = _parse_or_400(BookingDecisionRequest, payload)
        async with OwnerDashboard(gateway, identity) as dashboard:
            try:
                changed = await dashboard.decide_booking(booking_id, parsed.decision)
            except NotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc))
            except QueryError as exc:
                raise _gateway_error(exc)
            if not changed:
                raise HTTPException(status_code=409, detail="Booking is not pending.")
            return {"changed": True, "dashboard": dashboard.snapshot()}

    @app.get("/api/dashboard")
    async def dashboard(
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
        switcher: DashboardSwitcher = Depends(get_switcher),
    ):
        _require_identity_or_401(store)
        try:
            view = switcher.mount(gateway)
        except ValidationError as exc:
            raise HTTPException(status_code=403, detail=str(exc))
        async with view:
            payload = view.snapshot()
        payload["availableRoles"] = list(store.roles)
        return payload

    @app.post("/api/dashboard/role")
    async def switch_dashboard_role(
        payload: dict,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
        switcher: DashboardSwitcher = Depends(get_switcher),
    ):
        _require_identity_or_401(store)
        parsed = _parse_or_400(RoleSwitchRequest, payload)
        try:
            role = switcher.switch(parsed.role)
        except ValidationError as exc:
            raise HTTPException(status_code=403, detail=str(exc))
        async with switcher.mount(gateway, role) as view:
            result = view.snapshot()
        result["availableRoles"] = list(store.roles)
        return result

    @app.get("/api/dashboard/{role}")
    async def role_dashboard(
        role: str,
        store: SessionStore = Depends(get_session_store),
        gateway: GatewayClient = Depends(get_gateway),
        switcher: DashboardSwitcher = Depends(get_switcher),
    ):
        if role not in ("owner", "renter"):
            raise HTTPException(status_code=404, detail="Dashboard not found")
        _require_role_or_403(store, role)
        async with switcher.mount(gateway, role) as view:
            return view.snapshot()

    return app


configure_logging()
app = create_app()
