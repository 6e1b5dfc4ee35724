"""Registry client construction from settings."""

from __future__ import annotations

from typing import Any

import requests

from app.config import Settings, get_settings
from app.services.civitai_api import CivitaiClient, GenericIntegrationClient, TensorArtClient
from app.services.huggingface_api import HuggingFaceClient
from app.services.registry import RegistryClient
from app.services.seaart_api import SeaArtClient


def build_registry_clients(
    settings: Settings | None = None,
    session: requests.Session | None = None,
) -> dict[str, RegistryClient]:
    """
    Build every configured registry client, keyed by platform id.

    Order is the default fan-out order: built-in registries first, then
    enabled custom integrations in configuration order.
    """
    settings = settings or get_settings()
    session = session or requests.Session()
    common: dict[str, Any] = {
        "timeout": settings.request_timeout,
        "preview_width": settings.preview_width,
        "search_limit": settings.search_result_limit,
        "session": session,
    }

    clients: list[RegistryClient] = [
        CivitaiClient(base_url=settings.civitai_base_url, api_key=settings.civitai_api_key, **common),
        TensorArtClient(base_url=settings.tensorart_base_url, **common),
        HuggingFaceClient(base_url=settings.huggingface_base_url, api_key=settings.huggingface_api_key, **common),
        SeaArtClient(base_url=settings.seaart_base_url, **common),
    ]
    for integration in settings.custom_integrations:
        if integration.enabled:
            clients.append(GenericIntegrationClient(name=integration.name, base_url=integration.base_url, **common))

    registry: dict[str, RegistryClient] = {}
    for client in clients:
        registry.setdefault(client.platform, client)
    return registry


def describe_clients(clients: dict[str, RegistryClient]) -> list[dict[str, Any]]:
    return [
        {
            "platform": platform,
            "name": client.display_name,
            "base_url": client.base_url,
            "supports_fingerprint": client.supports_fingerprint,
            "supports_name": client.supports_name,
        }
        for platform, client in clients.items()
    ]
