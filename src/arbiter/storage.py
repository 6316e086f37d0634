# Copyright (c) Syntropy Systems
"""Local filesystem blob store for datasets, features, artifacts and outputs."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path

from arbiter.errors import NotFoundError, ValidationError

URL_SCHEME = "blob://"


class BlobStore:
    """Stores opaque bytes under ``base_path`` and addresses them by URL.

    URLs have the form ``blob://<relative/path>``. Writes go through a
    temporary file and an atomic rename, so readers never observe a
    partially written blob.
    """

    base_path: Path

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, url: str) -> Path:
        if not url.startswith(URL_SCHEME):
            msg = f"Unsupported blob URL: {url}"
            raise ValidationError(msg)
        relative = url[len(URL_SCHEME):]
        path = (self.base_path / relative).resolve()
        if self.base_path.resolve() not in path.parents:
            msg = f"Blob URL escapes the store: {url}"
            raise ValidationError(msg)
        return path

    def url_for(self, key: str) -> str:
        """Return the URL a blob stored under ``key`` will have."""
        return f"{URL_SCHEME}{key.lstrip('/')}"

    def upload(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` (overwriting) and return its URL."""
        url = self.url_for(key)
        path = self._resolve(url)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                _ = f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return url

    def download(self, url: str) -> bytes:
        """Read a blob. Side-effect free."""
        path = self._resolve(url)
        if not path.is_file():
            raise NotFoundError("Blob", url)
        return path.read_bytes()

    def delete(self, url: str) -> None:
        """Delete a blob."""
        path = self._resolve(url)
        if not path.is_file():
            raise NotFoundError("Blob", url)
        path.unlink()

    def exists(self, url: str) -> bool:
        """Check whether a blob exists."""
        return self._resolve(url).is_file()
