"""Stable cache identities for derived artifacts."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass

# Neither a URL path nor a raw query string can carry a literal NUL.
KEY_SEPARATOR = "\x00"


class ResourceKind(enum.Enum):
    AUDIO = "wav"
    IMAGE = "png"
    METADATA = "json"

    @property
    def extension(self) -> str:
        return self.value


def derive_cache_key(logical_path: str, query: str) -> str:
    """Return the lowercase hex SHA-1 identifying ``(logical_path, query)``.

    The resource kind is not part of the digest; it becomes the cache file
    extension instead.
    """

    material = f"{logical_path}{KEY_SEPARATOR}{query}".encode("utf-8", "surrogatepass")
    return hashlib.sha1(material).hexdigest()


@dataclass(frozen=True)
class ResourceIdentity:
    """What a caller asked for, independent of where it is stored."""

    logical_path: str
    query: str
    kind: ResourceKind

    def cache_key(self) -> str:
        return derive_cache_key(self.logical_path, self.query)

    def cache_file_name(self) -> str:
        return f"{self.cache_key()}.{self.kind.extension}"
