"""FastAPI application serving patient records and health timelines."""
from __future__ import annotations

import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import database
from .auth import hash_password, require_current_user
from .routes import (
    appointments_router,
    audit_router,
    auth_router,
    config_router,
    dashboard_router,
    history_router,
    patients_router,
    preferences_router,
)
from .settings import get_settings
from .version import get_app_version

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _resolve_allowed_origins() -> list[str]:
    settings = get_settings()
    origins = {value.rstrip("/") for value in (settings.frontend_url, settings.backend_url) if value}
    return list(origins)


def _build_cors_config() -> dict[str, object]:
    origins = _resolve_allowed_origins()
    if origins:
        return {"allow_origins": origins, "allow_origin_regex": None}
    return {"allow_origins": [], "allow_origin_regex": r"https?://.*"}


def _prepare_database() -> None:
    logger.info("Initializing database at %s", database.DB_PATH)
    database.init_db()
    database.seed_default_admin_user(hash_password(get_settings().default_admin_password))


def create_app(*, initialize_database: bool = True) -> FastAPI:
    """Return a configured FastAPI app (useful for testing)."""
    _configure_logging()
    if initialize_database:
        _prepare_database()
    api = FastAPI(title="MediTrack API", version=get_app_version())
    api.include_router(config_router)
    api.include_router(auth_router)
    auth_dependency = [Depends(require_current_user)]
    for protected_router in (
        patients_router,
        appointments_router,
        history_router,
        preferences_router,
        dashboard_router,
        audit_router,
    ):
        api.include_router(protected_router, dependencies=auth_dependency)
    cors_config = _build_cors_config()
    api.add_middleware(
        CORSMiddleware,
        allow_origins=cors_config["allow_origins"],
        allow_origin_regex=cors_config["allow_origin_regex"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    return api


app = create_app(initialize_database=False)


@app.on_event("startup")
def startup_event() -> None:
    _prepare_database()
