"""Request/response message router.

Each message is a dict with a `type` key. A handler receives the message
and returns a JSON-serializable dict; the router turns unknown types and
handler exceptions into `{"success": False, "error": ...}` responses.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    SAVE_FROM_PAGE = "save_from_page"
    CREATE_FROM_URL_LIST = "create_from_url_list"
    SYNC_TRIGGER = "sync:trigger"
    SYNC_STATUS = "query:sync_status"
    SYNC_UPDATE_SETTINGS = "sync:update_settings"
    SYNC_TEST_CONNECTION = "sync:test_connection"
    BOOKMARK_RETRY = "bookmark:retry"


Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class MessageError(Exception):
    """A handler rejected the request; the message becomes the response error."""


class MessageRouter:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, message_type: MessageType | str, handler: Handler) -> None:
        key = message_type.value if isinstance(message_type, MessageType) else message_type
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {key}")
        self._handlers[key] = handler

    @property
    def message_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, message: Any) -> dict[str, Any]:
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            return {"success": False, "error": "Message must be an object with a string 'type'"}

        message_type = message["type"]
        handler = self._handlers.get(message_type)
        if handler is None:
            return {"success": False, "error": f"Unknown message type: {message_type}"}

        try:
            return await handler(message)
        except MessageError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception(f"Handler for {message_type} failed")
            return {"success": False, "error": str(e) or type(e).__name__}


def require_str(message: dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = message.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise MessageError(f"'{key}' is required")
    return value
