from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()


DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_CORS_ORIGINS = "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173"


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    anon_key: str
    service_key: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def load_gateway_settings() -> GatewaySettings:
    raw_timeout = (os.environ.get("GATEWAY_TIMEOUT_SECONDS") or "").strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_SECONDS
    except ValueError as exc:
        raise RuntimeError(f"GATEWAY_TIMEOUT_SECONDS must be a number, got {raw_timeout!r}") from exc
    return GatewaySettings(
        url=_require_env("GATEWAY_URL").rstrip("/"),
        anon_key=_require_env("GATEWAY_ANON_KEY"),
        service_key=(os.environ.get("GATEWAY_SERVICE_KEY") or "").strip() or None,
        timeout_seconds=timeout,
    )


def configure_logging() -> None:
    level_name = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
