"""Image value types."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

from ..core.types import Platform
from ..exceptions import ManifestError
from ..utils.digest import calculate_digest, validate_digest

DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"

IMAGE_MANIFEST_TYPES = (DOCKER_MANIFEST_SCHEMA2, OCI_MANIFEST)
INDEX_TYPES = (DOCKER_MANIFEST_LIST, OCI_INDEX)


class LayerLike(Protocol):
    """What an image needs to know about each of its layers."""

    @property
    def digest(self) -> str: ...

    @property
    def diff_id(self) -> str: ...

    @property
    def size(self) -> int: ...

    @property
    def media_type(self) -> str: ...

    def descriptor(self) -> Dict[str, Any]: ...


def canonical_json(document: Dict[str, Any]) -> bytes:
    """Serialize a manifest or config so equal documents hash equally."""
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def layer_media_type_for(manifest_media_type: str) -> str:
    """Layer media type matching a manifest flavour."""
    if manifest_media_type == OCI_MANIFEST:
        return OCI_LAYER
    return DOCKER_LAYER


def check_descriptor(descriptor: Any, what: str) -> Dict[str, Any]:
    """Return ``descriptor`` if it is an object with a valid digest and size.

    Raises:
        ManifestError: If the descriptor is malformed
    """
    if not isinstance(descriptor, dict):
        raise ManifestError(f"{what} descriptor must be a JSON object")
    digest = descriptor.get("digest")
    if not validate_digest(digest):
        raise ManifestError(f"{what} descriptor has invalid digest {digest!r}")
    size = descriptor.get("size", 0)
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise ManifestError(f"{what} descriptor has invalid size {size!r}")
    return descriptor


def config_media_type_for(manifest_media_type: str) -> str:
    if manifest_media_type == OCI_MANIFEST:
        return OCI_CONFIG
    return DOCKER_CONFIG


@dataclass(frozen=True)
class Image:
    """An immutable image: manifest, config blob and ordered layers.

    Base images keep the exact bytes they were fetched with, so their digest
    matches the registry. Derived images are produced with :meth:`compose`,
    never by editing an existing value.
    """

    raw_manifest: bytes
    raw_config: bytes
    layers: Tuple[LayerLike, ...] = ()
    # Content-Type the registry served the manifest with, for manifests
    # that omit their own mediaType field.
    content_type: Optional[str] = None

    @property
    def digest(self) -> str:
        return calculate_digest(self.raw_manifest)

    @property
    def config_digest(self) -> str:
        return calculate_digest(self.raw_config)

    @property
    def media_type(self) -> str:
        return (
            self.manifest().get("mediaType")
            or self.content_type
            or DOCKER_MANIFEST_SCHEMA2
        )

    def manifest(self) -> Dict[str, Any]:
        """Return a fresh copy of the parsed manifest."""
        try:
            manifest = json.loads(self.raw_manifest)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestError(f"Invalid manifest JSON: {e}") from e
        if not isinstance(manifest, dict):
            raise ManifestError("Manifest must be a JSON object")
        return manifest

    def config_file(self) -> Dict[str, Any]:
        """Return a fresh copy of the parsed config blob.

        Raises:
            ManifestError: If the config is not a JSON object
        """
        try:
            config = json.loads(self.raw_config)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestError(f"Invalid config JSON: {e}") from e
        if not isinstance(config, dict):
            raise ManifestError("Config must be a JSON object")
        return config

    def layer(self, digest: str) -> Optional[LayerLike]:
        for layer in self.layers:
            if layer.digest == digest:
                return layer
        return None

    @classmethod
    def compose(
        cls,
        manifest: Dict[str, Any],
        config: Dict[str, Any],
        layers: Iterable[LayerLike],
        media_type: Optional[str] = None,
    ) -> "Image":
        """Build a new image whose manifest references ``config`` and ``layers``.

        Every field of ``manifest`` other than ``config`` and ``layers`` is
        carried over unchanged.
        """
        layers = tuple(layers)
        raw_config = canonical_json(config)
        media_type = media_type or manifest.get("mediaType") or DOCKER_MANIFEST_SCHEMA2

        document = dict(manifest)
        document["schemaVersion"] = 2
        document["mediaType"] = media_type
        document["config"] = {
            **manifest.get("config", {}),
            "mediaType": manifest.get("config", {}).get(
                "mediaType", config_media_type_for(media_type)
            ),
            "size": len(raw_config),
            "digest": calculate_digest(raw_config),
        }
        document["layers"] = [layer.descriptor() for layer in layers]
        return cls(raw_manifest=canonical_json(document), raw_config=raw_config, layers=layers)


def empty_image(platform: Optional[Platform] = None) -> Image:
    """An image with no layers, the equivalent of ``FROM scratch``."""
    platform = platform or Platform()
    config: Dict[str, Any] = {
        "architecture": platform.architecture,
        "os": platform.os,
        "config": {},
        "rootfs": {"type": "layers", "diff_ids": []},
        "history": [],
    }
    if platform.variant:
        config["variant"] = platform.variant
    manifest = {"schemaVersion": 2, "mediaType": DOCKER_MANIFEST_SCHEMA2}
    return Image.compose(manifest, config, ())
