"""Per-user light/dark theme preference."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, get_args

from . import database
from .models import Theme, ThemeState
from .settings import get_settings

logger = logging.getLogger(__name__)

THEMES: tuple[str, ...] = get_args(Theme)


class ThemeStore(Protocol):
    def load(self, user_id: int, key: str) -> Optional[str]:
        ...

    def save(self, user_id: int, key: str, value: str) -> None:
        ...


class DatabaseThemeStore:
    """Keeps theme choices in the ``user_preferences`` table."""

    def load(self, user_id: int, key: str) -> Optional[str]:
        return database.get_preference(user_id, key)

    def save(self, user_id: int, key: str, value: str) -> None:
        database.set_preference(user_id, key, value)


def coerce_theme(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text if text in THEMES else None


class ThemeContext:
    """Theme lifecycle for one request: load, apply to the document root, persist."""

    def __init__(self, store: ThemeStore, default: str = "light", storage_key: str = "meditrack-theme") -> None:
        self.store = store
        self.storage_key = storage_key
        self.default = coerce_theme(default) or "light"

    def init(self, user_id: int) -> str:
        """Return the stored theme, or the default when missing or unreadable."""
        stored = self.store.load(user_id, self.storage_key)
        theme = coerce_theme(stored)
        if stored is not None and theme is None:
            logger.warning("Ignoring invalid stored theme %r for user %s", stored, user_id)
        return theme or self.default

    def apply(self, theme: str) -> Dict[str, str]:
        chosen = coerce_theme(theme) or self.default
        return {"class": chosen, "data-theme": chosen}

    def persist(self, user_id: int, theme: str) -> str:
        chosen = coerce_theme(theme)
        if chosen is None:
            raise ValueError(f"Theme must be one of: {', '.join(THEMES)}")
        self.store.save(user_id, self.storage_key, chosen)
        return chosen

    def state(self, theme: str) -> ThemeState:
        return ThemeState(theme=theme, storage_key=self.storage_key, attributes=self.apply(theme))


def get_theme_context() -> ThemeContext:
    settings = get_settings()
    return ThemeContext(
        DatabaseThemeStore(),
        default=settings.default_theme,
        storage_key=settings.theme_storage_key,
    )
