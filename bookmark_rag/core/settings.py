from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bookmark_rag.core.storage import DB


DEFAULT_API_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    openai_api_key: str
    api_base_url: str
    chat_model: str
    embedding_model: str
    fetch_timeout: float
    fetch_backend: str
    api_content_max_chars: int
    sync_debounce_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "./_local/data/bookmarks.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            api_base_url=os.getenv("API_BASE_URL", DEFAULT_API_BASE_URL).strip(),
            chat_model=os.getenv("CHAT_MODEL", "gpt-4o-mini").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small").strip(),
            fetch_timeout=_f("FETCH_TIMEOUT", "30"),
            fetch_backend=os.getenv("FETCH_BACKEND", "httpx").strip().lower(),
            api_content_max_chars=_i("API_CONTENT_MAX_CHARS", "15000"),
            sync_debounce_seconds=_f("SYNC_DEBOUNCE_SECONDS", "5"),
        )


def _b(value: str | None) -> bool:
    return (value or "").strip() in ("1", "true", "True", "yes", "YES")


# app_settings keys for the WebDAV sync configuration
SYNC_SETTING_KEYS = {
    "webdav_enabled": "webdavEnabled",
    "webdav_url": "webdavUrl",
    "webdav_username": "webdavUsername",
    "webdav_password": "webdavPassword",
    "webdav_path": "webdavPath",
    "webdav_sync_interval": "webdavSyncInterval",
    "webdav_last_sync_time": "webdavLastSyncTime",
    "webdav_last_sync_error": "webdavLastSyncError",
}


@dataclass
class SyncSettings:
    """WebDAV sync configuration persisted in the app_settings table."""

    webdav_enabled: bool = False
    webdav_url: str = ""
    webdav_username: str = ""
    webdav_password: str = ""
    webdav_path: str = "/bookmarks"
    webdav_sync_interval: int = 15
    webdav_last_sync_time: str = ""
    webdav_last_sync_error: str = ""

    @property
    def is_configured(self) -> bool:
        return self.webdav_enabled and bool(self.webdav_url.strip())

    @classmethod
    def load(cls, db: DB) -> SyncSettings:
        defaults = cls()
        raw = {field: db.get_setting(key) for field, key in SYNC_SETTING_KEYS.items()}
        interval = raw["webdav_sync_interval"]
        return cls(
            webdav_enabled=_b(raw["webdav_enabled"]),
            webdav_url=raw["webdav_url"] or "",
            webdav_username=raw["webdav_username"] or "",
            webdav_password=raw["webdav_password"] or "",
            webdav_path=raw["webdav_path"] if raw["webdav_path"] is not None else defaults.webdav_path,
            webdav_sync_interval=int(interval) if interval else defaults.webdav_sync_interval,
            webdav_last_sync_time=raw["webdav_last_sync_time"] or "",
            webdav_last_sync_error=raw["webdav_last_sync_error"] or "",
        )

    def save(self, db: DB) -> None:
        for field, value in asdict(self).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            db.set_setting(SYNC_SETTING_KEYS[field], str(value))

    def apply(self, updates: dict[str, Any]) -> SyncSettings:
        """Return a copy with camelCase or snake_case keys from `updates` applied."""
        by_wire_name = {wire: field for field, wire in SYNC_SETTING_KEYS.items()}
        current = asdict(self)
        for key, value in updates.items():
            field = by_wire_name.get(key, key)
            if field not in current:
                raise ValueError(f"Unknown sync setting: {key}")
            if field == "webdav_enabled":
                value = value if isinstance(value, bool) else _b(str(value))
            elif field == "webdav_sync_interval":
                value = int(value)
            else:
                value = "" if value is None else str(value)
            current[field] = value
        return SyncSettings(**current)

    def to_dict(self, include_password: bool = False) -> dict[str, Any]:
        data = {SYNC_SETTING_KEYS[k]: v for k, v in asdict(self).items()}
        if not include_password:
            data["webdavPassword"] = "********" if self.webdav_password else ""
        return data
