"""Asset identification API endpoints."""

from functools import lru_cache
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from app.config import get_settings
from app.services.errors import UnknownProvider, UnreadableFile
from app.services.fusion import local_fields
from app.services.hasher import HasherService
from app.services.pipeline import AssetPipeline
from app.services.providers import build_registry_clients, describe_clients
from app.services.registry import RegistryClient

router = APIRouter()


@lru_cache
def get_registry_clients() -> dict[str, RegistryClient]:
    """Registry clients shared across requests."""
    return build_registry_clients(get_settings())


class PathRequest(BaseModel):
    path: str


class IdentifyRequest(BaseModel):
    path: str
    providers: list[str] | None = None


class ProviderInfo(BaseModel):
    platform: str
    name: str
    base_url: str
    supports_fingerprint: bool
    supports_name: bool


def _existing_file(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"File not found: {raw}")
    return path


@router.get("/providers", response_model=list[ProviderInfo])
async def list_providers(clients: dict[str, RegistryClient] = Depends(get_registry_clients)):
    """List configured registries and what they can look up."""
    return describe_clients(clients)


@router.post("/fingerprint")
async def fingerprint_file(request: PathRequest):
    path = _existing_file(request.path)
    result = await HasherService().get_fingerprint(path)
    return {"path": str(path), **result.to_dict()}


@router.post("/inspect")
async def inspect_file(request: PathRequest):
    """Local metadata only; no registry calls."""
    path = _existing_file(request.path)
    pipeline = AssetPipeline(path, clients={})
    header, image = await pipeline.extract_local()
    settings = pipeline.settings

    payload = {
        "path": str(path),
        "filename": path.name,
        "has_header": header is not None,
        "header_bytes": header.byte_length if header else None,
        "image": None,
        "local_fields": local_fields(
            header if header is not None else image,
            settings.metadata_value_max_chars,
        ),
    }
    if image is not None:
        payload["image"] = {
            "source": image.source.value,
            "raw_text": image.raw_text,
            "text_chunks": dict(image.text_chunks),
            "structured": dict(image.structured),
        }
    return payload


@router.post("/identify")
async def identify_file(
    request: IdentifyRequest,
    clients: dict[str, RegistryClient] = Depends(get_registry_clients),
):
    """
    Fingerprint, parse and resolve a file against the registries, then fuse.

    Preview bytes are not returned; each resolution reports the preview URL,
    content type and size.
    """
    pipeline = AssetPipeline(request.path, clients=clients)
    try:
        report = await pipeline.run(request.providers)
    except UnreadableFile as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except UnknownProvider as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return report.to_dict()
