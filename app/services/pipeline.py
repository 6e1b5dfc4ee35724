"""Per-file identification pipeline: fingerprint, parse, resolve, fuse."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Sequence

from app.config import Settings, get_settings
from app.services.errors import (
    FingerprintUnusable,
    NotFound,
    RegistryError,
    UnknownProvider,
    UnreadableFile,
)
from app.services.fusion import fuse, local_fields
from app.services.hasher import HasherService
from app.services.models import (
    AssetReport,
    ContainerHeader,
    ImageMetadataRecord,
    ProviderOutcome,
    Resolution,
)
from app.services.png_metadata import extract_image_metadata
from app.services.providers import build_registry_clients
from app.services.registry import RegistryClient
from app.services.safetensors import read_safetensors_header

logger = logging.getLogger(__name__)

SAFETENSORS_SUFFIXES = {".safetensors"}
IMAGE_SUFFIXES = {".png"}


class AssetPipeline:
    """
    Identification pipeline for a single file.

    Fingerprinting and local parsing run concurrently; registry lookups wait
    for both and then fan out, one task per provider. Results are kept in
    request order so fusion is deterministic regardless of which provider
    answers first.
    """

    def __init__(
        self,
        path: Path | str,
        clients: dict[str, RegistryClient] | None = None,
        settings: Settings | None = None,
        hasher: HasherService | None = None,
    ) -> None:
        self.path = Path(path)
        self.settings = settings or get_settings()
        self.clients = clients if clients is not None else build_registry_clients(self.settings)
        self.hasher = hasher or HasherService(self.settings)
        self._inflight: dict[str, asyncio.Task] = {}

    def _select_clients(self, providers: Sequence[str] | None) -> list[RegistryClient]:
        if providers is None:
            return list(self.clients.values())
        selected = []
        for name in providers:
            client = self.clients.get(name)
            if client is None:
                raise UnknownProvider(f"Unknown provider: {name}")
            if client not in selected:
                selected.append(client)
        return selected

    async def extract_local(self) -> tuple[ContainerHeader | None, ImageMetadataRecord | None]:
        """Parse embedded metadata by extension. Never raises."""
        suffix = self.path.suffix.lower()
        if suffix in SAFETENSORS_SUFFIXES:
            header = await asyncio.to_thread(
                read_safetensors_header, self.path, self.settings.max_header_bytes
            )
            return header, None
        if suffix in IMAGE_SUFFIXES:
            return None, await extract_image_metadata(self.path, self.settings.max_text_chunk_bytes)
        return None, None

    def cancel(self, platform: str | None = None) -> int:
        """
        Abort in-flight registry lookups (all of them, or one platform's).

        A cancelled lookup contributes no match. Returns how many were cancelled.
        """
        cancelled = 0
        for name, task in list(self._inflight.items()):
            if platform is not None and name != platform:
                continue
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def _resolve(self, client: RegistryClient, report: AssetReport) -> Resolution:
        return await asyncio.to_thread(
            client.resolve, self.path.name, report.fingerprint, report.local_fields
        )

    def _record(self, outcome: ProviderOutcome, result: object) -> Resolution | None:
        if isinstance(result, Resolution):
            outcome.status = "matched"
            if result.preview_error:
                outcome.message = result.preview_error
            return result

        if isinstance(result, asyncio.CancelledError):
            outcome.status = "cancelled"
            return None

        outcome.error_kind = type(result).__name__
        outcome.message = str(result)
        if isinstance(result, NotFound):
            outcome.status = "not_found"
            logger.info("%s: no match on %s", self.path.name, outcome.platform)
        elif isinstance(result, FingerprintUnusable):
            outcome.status = "skipped"
            logger.info("%s: skipped %s (%s)", self.path.name, outcome.platform, result)
        elif isinstance(result, RegistryError):
            outcome.status = "error"
            logger.warning("%s: %s lookup failed: %s", self.path.name, outcome.platform, result)
        else:
            outcome.status = "error"
            logger.error(
                "%s: unexpected %s failure", self.path.name, outcome.platform, exc_info=result
            )
        return None

    async def run(self, providers: Sequence[str] | None = None) -> AssetReport:
        """
        Identify the file against the given providers (all configured ones when None).

        Raises UnreadableFile if the path cannot be stat'ed and UnknownProvider
        for an unconfigured provider name; registry failures are reported per
        provider in the returned report.
        """
        try:
            stat = self.path.stat()
        except OSError as exc:
            raise UnreadableFile(f"Cannot read {self.path}: {exc}") from exc
        if not self.path.is_file():
            raise UnreadableFile(f"Not a file: {self.path}")

        selected = self._select_clients(providers)

        fingerprint, (header, image) = await asyncio.gather(
            self.hasher.get_fingerprint(self.path),
            self.extract_local(),
        )
        local = header if header is not None else image
        report = AssetReport(
            path=self.path,
            size=stat.st_size,
            fingerprint=fingerprint,
            header=header,
            image=image,
            local_fields=local_fields(local, self.settings.metadata_value_max_chars),
        )

        report.outcomes = [ProviderOutcome(platform=client.platform) for client in selected]
        tasks = []
        for client in selected:
            task = asyncio.create_task(self._resolve(client, report))
            self._inflight[client.platform] = task
            tasks.append(task)

        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._inflight.clear()

        for outcome, result in zip(report.outcomes, results):
            resolution = self._record(outcome, result)
            if resolution is not None:
                report.resolutions.append(resolution)

        report.fused = fuse(
            local,
            [r.match for r in report.resolutions],
            self.settings.metadata_value_max_chars,
        )
        return report


async def identify(
    path: Path | str,
    providers: Sequence[str] | None = None,
    clients: dict[str, RegistryClient] | None = None,
    settings: Settings | None = None,
) -> AssetReport:
    return await AssetPipeline(path, clients=clients, settings=settings).run(providers)


async def identify_many(
    paths: Iterable[Path | str],
    providers: Sequence[str] | None = None,
    clients: dict[str, RegistryClient] | None = None,
    settings: Settings | None = None,
) -> list[AssetReport]:
    """
    Run independent pipelines concurrently.

    Reports are appended as pipelines finish, so their order follows
    completion, not input. Unreadable files are logged and left out. Provider
    names are checked before any pipeline starts.
    """
    settings = settings or get_settings()
    clients = clients if clients is not None else build_registry_clients(settings)
    unknown = [name for name in providers or () if name not in clients]
    if unknown:
        raise UnknownProvider(f"Unknown provider: {', '.join(unknown)}")
    pipelines = [AssetPipeline(p, clients=clients, settings=settings) for p in paths]

    reports: list[AssetReport] = []
    for next_done in asyncio.as_completed([p.run(providers) for p in pipelines]):
        try:
            reports.append(await next_done)
        except UnreadableFile as exc:
            logger.warning("Skipping unreadable file: %s", exc)
    return reports
