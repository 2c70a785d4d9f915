"""Fetching base images from and pushing composed images to registries."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.auth import Keychain
from ..core.registry_client import ProgressCallback, RegistryClient
from ..core.transport import Transport
from ..core.types import Credentials, Platform, RegistryConfig
from ..exceptions import (
    AuthenticationError,
    DigestMismatchError,
    ImageAppendError,
    ManifestError,
    wrap_error,
)
from ..reference import Reference, Repository, parse_reference
from ..utils.digest import calculate_digest
from .layer import Layer, RemoteLayer
from .models import IMAGE_MANIFEST_TYPES, INDEX_TYPES, Image, LayerLike, check_descriptor

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = (*IMAGE_MANIFEST_TYPES, *INDEX_TYPES)


def resolve(url: str, config: Optional[RegistryConfig] = None) -> Reference:
    """Parse an image URL into a reference.

    Raises:
        InvalidReferenceError: If the URL is malformed
    """
    config = config or RegistryConfig()
    try:
        return parse_reference(url, config.insecure_registries)
    except ImageAppendError as e:
        raise wrap_error(e, f"parsing url ({url})") from e


async def _credentials(keychain: Keychain, ref: Reference) -> Credentials:
    try:
        return await keychain.resolve(ref.registry)
    except AuthenticationError as e:
        raise wrap_error(e, f"authenticating ({ref.registry})") from e


def _parse_json(raw: bytes, what: str) -> Dict[str, Any]:
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(f"Invalid {what} JSON: {e}") from e
    if not isinstance(document, dict):
        raise ManifestError(f"{what} must be a JSON object")
    return document


def _verify(raw: bytes, expected: str, what: str) -> None:
    actual = calculate_digest(raw, expected.split(":", 1)[0])
    if actual != expected:
        raise DigestMismatchError(f"{what} has digest {actual}, expected {expected}")


def select_platform(index: Dict[str, Any], platform: Platform) -> Dict[str, Any]:
    """Pick the manifest descriptor for ``platform`` out of a manifest list."""
    manifests = index.get("manifests") or []
    if not isinstance(manifests, list):
        raise ManifestError("Manifest list has a malformed 'manifests' section")
    for descriptor in manifests:
        check_descriptor(descriptor, "Manifest list entry")
        spec = descriptor.get("platform")
        if isinstance(spec, dict) and platform.matches(spec):
            return descriptor
    raise ManifestError(f"No image for platform {platform} in manifest list")


async def fetch_image(
    ref: Reference,
    keychain: Keychain,
    transport: Transport,
    config: Optional[RegistryConfig] = None,
) -> Tuple[Image, Repository]:
    """Fetch the manifest and config of ``ref``.

    Layer bytes are not downloaded; layers are returned as
    :class:`RemoteLayer` descriptors tied to the source repository.

    Returns:
        The image and the repository it came from

    Raises:
        AuthenticationError: If credentials cannot be resolved or are refused
        RegistryError: If the manifest or config cannot be fetched or verified
    """
    config = config or RegistryConfig()
    credentials = await _credentials(keychain, ref)
    client = RegistryClient(ref.context, transport, credentials, config)

    raw_manifest, content_type = await client.get_manifest(ref.identifier, MANIFEST_ACCEPT)
    if ref.digest:
        _verify(raw_manifest, ref.digest, f"Manifest {ref}")
    manifest = _parse_json(raw_manifest, "manifest")
    media_type = manifest.get("mediaType") or content_type

    if media_type in INDEX_TYPES:
        descriptor = select_platform(manifest, config.platform)
        logger.info("Selected %s for platform %s", descriptor["digest"], config.platform)
        raw_manifest, content_type = await client.get_manifest(
            descriptor["digest"], MANIFEST_ACCEPT
        )
        _verify(raw_manifest, descriptor["digest"], f"Manifest {ref}")
        manifest = _parse_json(raw_manifest, "manifest")
        media_type = manifest.get("mediaType") or content_type

    if media_type not in IMAGE_MANIFEST_TYPES:
        raise ManifestError(f"Unsupported manifest type {media_type!r} for {ref}")

    if "config" not in manifest:
        raise ManifestError(f"Manifest for {ref} has no config descriptor")
    config_descriptor = check_descriptor(manifest["config"], "Config")
    raw_config = await client.get_blob(config_descriptor["digest"])
    config_file = _parse_json(raw_config, "config")

    descriptors = manifest.get("layers") or []
    if not isinstance(descriptors, list):
        raise ManifestError(f"Manifest for {ref} has a malformed 'layers' section")
    rootfs = config_file.get("rootfs") or {}
    diff_ids = (rootfs.get("diff_ids") or []) if isinstance(rootfs, dict) else None
    if not isinstance(diff_ids, list):
        raise ManifestError(f"Config for {ref} has a malformed 'rootfs' section")
    if len(descriptors) != len(diff_ids):
        raise ManifestError(
            f"Manifest for {ref} lists {len(descriptors)} layers "
            f"but config has {len(diff_ids)} diff_ids"
        )
    layers = tuple(
        RemoteLayer.from_descriptor(descriptor, diff_id, ref.context)
        for descriptor, diff_id in zip(descriptors, diff_ids)
    )

    image = Image(raw_manifest, raw_config, layers, content_type=media_type)
    logger.debug("Fetched %s (%s, %d layers)", ref, image.digest, len(layers))
    return image, ref.context


class _Pusher:
    """Uploads one image to one destination repository."""

    def __init__(
        self,
        dest: Reference,
        client: RegistryClient,
        mount_sources: List[Repository],
        keychain: Keychain,
        transport: Transport,
        config: RegistryConfig,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        self.dest = dest
        self.client = client
        self.mount_sources = mount_sources
        self.keychain = keychain
        self.transport = transport
        self.config = config
        self.progress_callback = progress_callback
        self._source_clients: Dict[Repository, RegistryClient] = {}

    async def _source_client(self, source: Repository) -> RegistryClient:
        if source not in self._source_clients:
            try:
                credentials = await self.keychain.resolve(source.registry)
            except AuthenticationError as e:
                raise wrap_error(e, f"authenticating ({source.registry})") from e
            self._source_clients[source] = RegistryClient(
                source, self.transport, credentials, self.config
            )
        return self._source_clients[source]

    def _mount_candidates(self, layer: LayerLike) -> List[Repository]:
        candidates = list(self.mount_sources)
        if isinstance(layer, RemoteLayer) and layer.source in candidates:
            candidates.remove(layer.source)
            candidates.insert(0, layer.source)
        return candidates

    async def push_layer(self, layer: LayerLike) -> None:
        digest = layer.digest
        if await self.client.check_blob_exists(digest):
            logger.debug("Blob %s already exists in %s", digest, self.dest.context)
            return

        # A refused mount opens an upload session; only the last one is kept.
        upload_url = None
        for source in self._mount_candidates(layer):
            if upload_url is not None:
                await self.client.cancel_upload(upload_url)
            upload_url = await self.client.mount_blob(digest, source)
            if upload_url is None:
                logger.debug("Mounted blob %s from %s", digest, source)
                return
            logger.debug("Mount of %s from %s refused", digest, source)

        if isinstance(layer, Layer):
            data: Any = layer.compressed_chunks()
        elif isinstance(layer, RemoteLayer):
            source_client = await self._source_client(layer.source)
            data = await source_client.get_blob(digest)
        else:
            raise TypeError(f"Unsupported layer type {type(layer).__name__}")

        await self.client.upload_blob(
            digest,
            data,
            self.progress_callback,
            upload_url=upload_url,
            total_size=layer.size,
        )
        logger.debug("Uploaded blob %s to %s", digest, self.dest.context)

    async def push(self, image: Image) -> str:
        if self.dest.digest and self.dest.digest != image.digest:
            raise DigestMismatchError(
                f"Destination digest {self.dest.digest} does not match image {image.digest}"
            )

        for layer in image.layers:
            await self.push_layer(layer)

        config_digest = image.config_digest
        if not await self.client.check_blob_exists(config_digest):
            await self.client.upload_blob(config_digest, image.raw_config)

        # The manifest goes last so every blob it references already exists.
        echoed = await self.client.upload_manifest(
            self.dest.identifier, image.raw_manifest, image.media_type
        )
        if echoed and echoed != image.digest:
            raise DigestMismatchError(
                f"Registry stored manifest as {echoed}, expected {image.digest}"
            )
        logger.info("Pushed %s@%s", self.dest.context, image.digest)
        return image.digest


async def push_image(
    image: Image,
    mount_sources: Iterable[Repository],
    dest: Reference,
    keychain: Keychain,
    transport: Transport,
    config: Optional[RegistryConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> str:
    """Push ``image`` to ``dest``, reusing blobs wherever possible.

    Each layer is skipped if the destination already has it, mounted from
    a source repository on the same registry if possible, and uploaded in
    full otherwise. The config blob follows, the manifest is always last.

    Returns:
        Manifest digest

    Raises:
        AuthenticationError: If credentials cannot be resolved or are refused
        RegistryError: If any upload fails or a digest does not match
    """
    config = config or RegistryConfig()
    credentials = await _credentials(keychain, dest)

    sources = [
        source
        for source in dict.fromkeys(mount_sources)
        if source.registry.host == dest.registry.host and source.path != dest.context.path
    ]
    scopes = [dest.context.scope("pull,push")] + [source.scope("pull") for source in sources]
    client = RegistryClient(dest.context, transport, credentials, config, scopes)

    pusher = _Pusher(dest, client, sources, keychain, transport, config, progress_callback)
    return await pusher.push(image)
