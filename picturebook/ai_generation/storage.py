"""
Object storage for generated illustrations.

Provider URLs expire, so generated images are copied into storage we control.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from pathlib import Path

import requests

logger = logging.getLogger(__name__)


class LocalObjectStore:
    """
    Filesystem-backed object store addressed by ``<job_id>/<name>`` keys.

    Parameters
    ----------
    root_dir:
        Directory that holds stored objects. Falls back to ``PICTUREBOOK_STORAGE_DIR``
        and then ``./storage``.
    public_base_url:
        Optional URL prefix under which ``root_dir`` is served. Without it, stored
        objects are referenced by ``file://`` URLs.
    request_timeout:
        Seconds allowed for downloading one image.
    """

    def __init__(
        self,
        root_dir: str | Path | None = None,
        *,
        public_base_url: str | None = None,
        request_timeout: float = 30.0,
    ) -> None:
        self._root = Path(root_dir or os.getenv("PICTUREBOOK_STORAGE_DIR") or "storage").expanduser()
        self._public_base_url = (public_base_url or os.getenv("PICTUREBOOK_STORAGE_URL") or "").rstrip("/")
        self.request_timeout = request_timeout

    def url_for(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return (self._root / key).resolve().as_uri()

    def put_bytes(self, key: str, data: bytes) -> str:
        target = self._root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(target.name + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(target)
        return self.url_for(key)

    def persist_remote_image(
        self,
        source_url: str,
        *,
        key_stem: str,
        timeout: float | None = None,
    ) -> str:
        """
        Copy ``source_url`` into storage and return the stored URL.

        A failed copy keeps the provider URL so the generated image is never lost.
        """
        timeout = self.request_timeout if timeout is None else min(timeout, self.request_timeout)
        try:
            response = requests.get(source_url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Keeping provider URL; storage copy of %s failed: %s", source_url, exc)
            return source_url

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        extension = mimetypes.guess_extension(content_type) if content_type else None
        if not extension:
            extension = Path(source_url.split("?", 1)[0]).suffix or ".webp"

        try:
            return self.put_bytes(f"{key_stem}{extension}", response.content)
        except OSError as exc:
            logger.warning("Keeping provider URL; writing %s failed: %s", key_stem, exc)
            return source_url
