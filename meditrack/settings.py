"""Environment-aware settings loader for the MediTrack clinic backend."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

if ENV_PATH.exists():
    load_dotenv(ENV_PATH)


class Settings(BaseModel):
    backend_url: Optional[str] = os.getenv("BACKEND_URL")
    frontend_url: Optional[str] = os.getenv("FRONTEND_URL")
    secret_key: str = os.getenv("APP_SECRET_KEY", "change-me")
    default_admin_password: str = os.getenv("DEFAULT_ADMIN_PASSWORD", "changeme")
    clinic_timezone: str = os.getenv("CLINIC_TIMEZONE", "Europe/London")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Theme preferences
    default_theme: str = os.getenv("DEFAULT_THEME", "light")
    theme_storage_key: str = os.getenv("THEME_STORAGE_KEY", "meditrack-theme")


@lru_cache
def get_settings() -> Settings:
    return Settings()
