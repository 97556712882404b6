"""Request dependencies: the shared chat service and the caller identity."""
import threading
from typing import Optional

from fastapi import Request

from askmandi.services.pipeline import MandiChatService
from askmandi.services.runtime import set_client_id
from askmandi.services.settings import ServiceConfig

_SERVICE: Optional[MandiChatService] = None
_SERVICE_LOCK = threading.Lock()


def get_service() -> MandiChatService:
    """Build the service on first use; ConfigError propagates when settings are missing."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = MandiChatService.from_config(ServiceConfig.from_env())
        return _SERVICE


def reset_service() -> None:
    global _SERVICE
    with _SERVICE_LOCK:
        _SERVICE = None


def get_client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    identity = forwarded.split(",")[0].strip()
    if not identity and request.client is not None:
        identity = request.client.host
    return set_client_id(identity)
