"""Resolve requests for recordings and their derived artifacts."""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .cache_keys import ResourceIdentity, ResourceKind
from .config import Settings
from .derivation_cache import DerivationCache
from .errors import SourceNotFoundError, SourceReadError
from .riff_info import extract_info
from .spectrogram import SoxSpectrogramRenderer, SpectrogramRenderer

SOURCE_EXTENSION = ".wav"

InfoReader = Callable[[Path], dict[str, str]]


def _is_safe_relative_path(value: str) -> bool:
    if value.startswith(("/", "\\")):
        return False
    return ".." not in Path(value).parts


def encode_metadata(info: dict[str, str]) -> bytes:
    return json.dumps(info, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class ListingEntry:
    name: str
    is_dir: bool

    @property
    def stem(self) -> str:
        return self.name[: -len(SOURCE_EXTENSION)] if not self.is_dir else self.name


class ArtifactService:
    """Serve recordings, spectrograms and INFO metadata for a data directory."""

    def __init__(
        self,
        settings: Settings,
        *,
        cache: DerivationCache | None = None,
        renderer: SpectrogramRenderer | None = None,
        info_reader: InfoReader = extract_info,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._data_dir = Path(settings.data_dir)
        self._cache = cache or DerivationCache(settings.cache_dir)
        self._renderer = renderer or SoxSpectrogramRenderer(
            command=settings.sox_command,
            options=settings.sox_options,
            timeout=settings.transform_timeout,
        )
        self._info_reader = info_reader
        self._logger = logger or logging.getLogger("wavcache")

    @property
    def cache(self) -> DerivationCache:
        return self._cache

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _resolve_under_data_dir(self, logical_path: str) -> Path:
        if not _is_safe_relative_path(logical_path):
            raise SourceNotFoundError(f"refusing path outside the data directory: {logical_path!r}")
        return self._data_dir / logical_path

    def source_path(self, logical_path: str) -> Path:
        """Return ``<data_dir>/<logical_path>.wav`` without checking it exists."""

        return self._resolve_under_data_dir(f"{logical_path}{SOURCE_EXTENSION}")

    def cache_path(self, identity: ResourceIdentity) -> Path:
        return self._cache.entry_path(identity.cache_key(), identity.kind)

    def _existing_source(self, logical_path: str) -> Path:
        source = self.source_path(logical_path)
        if not source.is_file():
            raise SourceNotFoundError(f"source recording not found: {source}")
        return source

    def audio_path(self, identity: ResourceIdentity) -> Path:
        return self._existing_source(identity.logical_path)

    def metadata(self, identity: ResourceIdentity) -> bytes:
        source = self.source_path(identity.logical_path)

        def produce() -> bytes:
            return encode_metadata(self._info_reader(source))

        return self._cache.fetch_or_produce(identity.cache_key(), ResourceKind.METADATA, produce)

    def spectrogram(self, identity: ResourceIdentity) -> bytes:
        source = self.source_path(identity.logical_path)

        def produce() -> bytes:
            if not source.is_file():
                raise SourceNotFoundError(f"source recording not found: {source}")
            with tempfile.TemporaryDirectory(prefix="wavcache-render-") as workdir:
                destination = Path(workdir) / f"spectrogram.{ResourceKind.IMAGE.extension}"
                self._renderer.render(source, destination)
                return destination.read_bytes()

        return self._cache.fetch_or_produce(identity.cache_key(), ResourceKind.IMAGE, produce)

    def derive(self, identity: ResourceIdentity) -> bytes:
        """Return the artifact bytes for a derived kind."""

        if identity.kind is ResourceKind.METADATA:
            return self.metadata(identity)
        if identity.kind is ResourceKind.IMAGE:
            return self.spectrogram(identity)
        raise ValueError(f"{identity.kind.name.lower()} resources are served from the data directory")

    def list_directory(self, logical_dir: str) -> list[ListingEntry]:
        """List sub-directories and WAV recordings below ``logical_dir``."""

        cleaned = logical_dir.strip("/")
        directory = self._resolve_under_data_dir(cleaned) if cleaned else self._data_dir
        try:
            children = sorted(directory.iterdir(), key=lambda child: child.name)
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise SourceNotFoundError(f"directory not found: {directory}") from exc
        except OSError as exc:
            raise SourceReadError(f"unable to list directory {directory}: {exc}") from exc

        entries: list[ListingEntry] = []
        for child in children:
            if child.is_dir():
                entries.append(ListingEntry(child.name, True))
            elif child.suffix == SOURCE_EXTENSION and child.is_file():
                entries.append(ListingEntry(child.name, False))
        return entries
