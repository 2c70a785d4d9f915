"""Layer objects: lazily digested local layers and descriptors of remote ones."""

import hashlib
import io
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, Optional

from ..exceptions import ManifestError
from ..reference import Repository
from ..tar.archive import PathLike, build_archive
from ..utils.digest import READ_CHUNK_SIZE, validate_digest
from .models import DOCKER_LAYER, check_descriptor

logger = logging.getLogger(__name__)

Opener = Callable[[], BinaryIO]

# wbits=31 selects the gzip container; zlib writes a zero mtime so equal
# input always compresses to equal bytes.
_GZIP_WBITS = 31


class Layer:
    """A layer built from local content.

    ``opener`` must return a fresh binary stream of the uncompressed tar on
    every call. Digests are computed on first access and cached; every read
    (digest pass, upload pass) opens its own stream.
    """

    def __init__(
        self,
        opener: Opener,
        media_type: str = DOCKER_LAYER,
        compression_level: int = zlib.Z_DEFAULT_COMPRESSION,
    ) -> None:
        self._opener = opener
        self.media_type = media_type
        self.compression_level = compression_level
        self._digest: Optional[str] = None
        self._diff_id: Optional[str] = None
        self._size: Optional[int] = None

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str = DOCKER_LAYER) -> "Layer":
        """Layer over an in-memory tar archive."""
        return cls(lambda: io.BytesIO(data), media_type=media_type)

    def with_media_type(self, media_type: str) -> "Layer":
        """Same content, different media type."""
        if media_type == self.media_type:
            return self
        layer = Layer(self._opener, media_type, self.compression_level)
        layer._digest, layer._diff_id, layer._size = self._digest, self._diff_id, self._size
        return layer

    def uncompressed(self) -> BinaryIO:
        """Open a fresh stream of the uncompressed tar."""
        return self._opener()

    def compressed_chunks(self) -> Iterator[bytes]:
        """Yield the gzip-compressed layer bytes from a fresh stream."""
        compressor = zlib.compressobj(self.compression_level, zlib.DEFLATED, _GZIP_WBITS)
        with self._opener() as stream:
            while True:
                chunk = stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                out = compressor.compress(chunk)
                if out:
                    yield out
        yield compressor.flush()

    def _compute(self) -> None:
        diff_hasher = hashlib.sha256()
        blob_hasher = hashlib.sha256()
        size = 0
        compressor = zlib.compressobj(self.compression_level, zlib.DEFLATED, _GZIP_WBITS)
        with self._opener() as stream:
            while True:
                chunk = stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                diff_hasher.update(chunk)
                out = compressor.compress(chunk)
                blob_hasher.update(out)
                size += len(out)
        tail = compressor.flush()
        blob_hasher.update(tail)
        size += len(tail)

        self._diff_id = f"sha256:{diff_hasher.hexdigest()}"
        self._digest = f"sha256:{blob_hasher.hexdigest()}"
        self._size = size
        logger.debug("Computed layer %s (diff_id %s, %d bytes)", self._digest, self._diff_id, size)

    @property
    def digest(self) -> str:
        """Digest of the compressed bytes."""
        if self._digest is None:
            self._compute()
        return self._digest  # type: ignore[return-value]

    @property
    def diff_id(self) -> str:
        """Digest of the uncompressed tar."""
        if self._diff_id is None:
            self._compute()
        return self._diff_id  # type: ignore[return-value]

    @property
    def size(self) -> int:
        """Length of the compressed bytes."""
        if self._size is None:
            self._compute()
        return self._size  # type: ignore[return-value]

    def descriptor(self) -> Dict[str, Any]:
        return {"mediaType": self.media_type, "size": self.size, "digest": self.digest}

    def __repr__(self) -> str:
        digest = self._digest or "<not computed>"
        return f"Layer(digest={digest}, media_type={self.media_type})"


def layer_from_paths(paths: Iterable[PathLike], media_type: str = DOCKER_LAYER) -> Layer:
    """Archive ``paths`` and wrap the result as a layer."""
    return Layer.from_bytes(build_archive(paths), media_type=media_type)


@dataclass(frozen=True)
class RemoteLayer:
    """A layer that lives in a registry repository.

    Only the descriptor is known; the bytes are fetched from ``source`` if a
    push ever has to upload them.
    """

    digest: str
    size: int
    media_type: str
    diff_id: str
    source: Repository
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_descriptor(
        cls, descriptor: Dict[str, Any], diff_id: str, source: Repository
    ) -> "RemoteLayer":
        """Build a layer from a manifest descriptor.

        Raises:
            ManifestError: If the descriptor or diff_id is malformed
        """
        check_descriptor(descriptor, "Layer")
        if not validate_digest(diff_id):
            raise ManifestError(f"Invalid diff_id {diff_id!r} for layer {descriptor['digest']}")
        extra = {
            key: value
            for key, value in descriptor.items()
            if key not in ("digest", "size", "mediaType")
        }
        return cls(
            digest=descriptor["digest"],
            size=descriptor.get("size", 0),
            media_type=descriptor.get("mediaType", DOCKER_LAYER),
            diff_id=diff_id,
            source=source,
            extra=extra,
        )

    def descriptor(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "mediaType": self.media_type,
            "size": self.size,
            "digest": self.digest,
        }
