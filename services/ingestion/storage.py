from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)


class RefKind(str, Enum):
    URL = "url"
    BYTES = "bytes"


@dataclass(frozen=True)
class ImageRef:
    """What the vision call receives for one image: a fetchable URL or the raw bytes."""

    kind: RefKind
    value: object  # str for URL, bytes for BYTES
    content_type: str = "image/jpeg"

    @classmethod
    def url(cls, url: str, content_type: str = "image/jpeg") -> "ImageRef":
        return cls(kind=RefKind.URL, value=url, content_type=content_type)

    @classmethod
    def raw(cls, blob: bytes, content_type: str = "image/jpeg") -> "ImageRef":
        return cls(kind=RefKind.BYTES, value=blob, content_type=content_type)


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int


class StorageError(RuntimeError):
    pass


class ImageStore(Protocol):
    def put(self, blob: bytes, key: str) -> StoredObject: ...
    def get_bytes(self, key: str) -> bytes: ...
    def resolve_reference(self, key: str, *, content_type: str = "image/jpeg") -> ImageRef: ...
    def delete(self, key: str) -> None: ...
    def copy(self, src_key: str, dst_key: str) -> StoredObject: ...


class LocalImageStore:
    """
    Disk-backed image store. Keys are relative POSIX paths under root_dir.
    With public_base_url set, references resolve to URLs under that base
    (files served by a reverse proxy/CDN); otherwise to the bytes themselves.
    """

    def __init__(self, root_dir: str, *, public_base_url: Optional[str] = None) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or "").rstrip("/") or None

    def _path(self, key: str) -> Path:
        rel = PurePosixPath(key)
        if not key or rel.is_absolute() or ".." in rel.parts:
            raise StorageError(f"invalid storage key: {key!r}")
        return self.root.joinpath(*rel.parts)

    def put(self, blob: bytes, key: str) -> StoredObject:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_bytes(blob)
        tmp.replace(p)  # atomic on same filesystem

        return StoredObject(key=key, size=len(blob))

    def get_bytes(self, key: str) -> bytes:
        p = self._path(key)
        try:
            return p.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"no such object: {key}") from e

    def resolve_reference(self, key: str, *, content_type: str = "image/jpeg") -> ImageRef:
        if self.public_base_url:
            if not self._path(key).exists():
                raise StorageError(f"no such object: {key}")
            return ImageRef.url(f"{self.public_base_url}/{quote(key)}", content_type)
        return ImageRef.raw(self.get_bytes(key), content_type)

    def delete(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink()
        except FileNotFoundError:
            logger.warning("Delete of missing object ignored: %s", key)

    def copy(self, src_key: str, dst_key: str) -> StoredObject:
        src = self._path(src_key)
        dst = self._path(dst_key)
        if not src.exists():
            raise StorageError(f"no such object: {src_key}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        return StoredObject(key=dst_key, size=dst.stat().st_size)
