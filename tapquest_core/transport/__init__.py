# tapquest_core/transport/__init__.py
from typing import Optional
from tapquest_core.config import Settings
from tapquest_core.transport.transport_base import BaseTransport
from tapquest_core.transport.transport_local import LocalAdapter
from tapquest_core.transport.transport_http import HTTPAdapter


def transport_factory(settings: Optional[Settings] = None) -> BaseTransport:
    """
    TAPQUEST_TRANSPORT:
      - "local" → in-process server (default)
      - "http"  → quest server at TAPQUEST_API_URL
    """
    settings = settings or Settings.from_env()

    if settings.transport == "http":
        return HTTPAdapter(settings.api_url, timeout=settings.http_timeout)

    return LocalAdapter()


__all__ = ["BaseTransport", "LocalAdapter", "HTTPAdapter", "transport_factory"]
