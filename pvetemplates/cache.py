"""Local cache of downloaded cloud images."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from pvetemplates.constants import DOWNLOAD_RETRIES
from pvetemplates.exceptions import DownloadFailed
from pvetemplates.models import CacheEntry, TemplateSpec
from pvetemplates.utils import download_file_with_retry, ensure_directory, human_size, log


class ImageCache:
    """One file per image under ``cache_dir``, keyed by the registry filename."""

    def __init__(self, cache_dir: Path, retries: int = DOWNLOAD_RETRIES, backoff: float = 5.0) -> None:
        self.cache_dir = cache_dir
        self.retries = retries
        self.backoff = backoff

    def path_for(self, spec: TemplateSpec) -> Path:
        return self.cache_dir / spec.filename

    def ensure(
        self,
        spec: TemplateSpec,
        use_cached: Optional[Callable[[Path], bool]] = None,
    ) -> CacheEntry:
        """Return a complete local copy of ``spec.url``, downloading if needed."""
        target = self.path_for(spec)
        try:
            ensure_directory(self.cache_dir)
            size = target.stat().st_size if target.is_file() else 0
        except OSError as exc:
            raise DownloadFailed(f"Image cache {self.cache_dir} is not usable: {exc}") from exc
        if size > 0:
            if use_cached is None or use_cached(target):
                log("INFO", f"Using cached image {target} ({human_size(size)})")
                return CacheEntry(source_url=spec.url, local_path=target, size_bytes=size)
            log("INFO", f"Discarding cached image {target}")
            try:
                target.unlink()
            except OSError as exc:
                raise DownloadFailed(f"Cannot discard cached image {target}: {exc}") from exc

        download_file_with_retry(
            spec.url,
            target,
            label=f"Downloading {spec.name}",
            retries=self.retries,
            backoff=self.backoff,
        )
        try:
            size = target.stat().st_size
        except OSError as exc:
            raise DownloadFailed(f"Download of {spec.url} did not produce {target}: {exc}") from exc
        return CacheEntry(source_url=spec.url, local_path=target, size_bytes=size)
