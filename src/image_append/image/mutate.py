"""Value-returning image transformations.

None of these functions touch the image they are given; each returns a new
:class:`Image` whose manifest and config are recomputed, so a base image can
be reused safely across builds.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from ..exceptions import ArchiveError, ImageAppendError, ManifestError, ValidationError, wrap_error
from ..tar.archive import PathLike
from .layer import Layer, layer_from_paths
from .models import Image, LayerLike, layer_media_type_for

logger = logging.getLogger(__name__)

CREATED_BY = "image-append"


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 timestamp in UTC, as image configs store them."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_env(entries: Iterable[str]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` strings into an ordered mapping.

    A repeated key keeps the position of its first occurrence and the value
    of its last.

    Raises:
        ValidationError: If an entry has no ``=`` or an empty key
    """
    env: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise ValidationError(f"Invalid environment entry {entry!r}, expected KEY=VALUE")
        env[key] = value
    return env


def _container_config(config: Dict[str, Any]) -> Dict[str, Any]:
    container = config.get("config")
    if container is None:
        return {}
    if not isinstance(container, dict):
        raise ManifestError("Image config has a malformed 'config' section")
    return dict(container)


def apply_config(
    image: Image,
    env: Mapping[str, str],
    cmd: str,
    created: Optional[datetime] = None,
) -> Image:
    """Replace the environment and command and stamp a creation time.

    ``env`` replaces the base environment entirely. ``cmd`` becomes a
    single-element ``Cmd`` array; it is not split into words.

    Raises:
        ManifestError: If the base config cannot be parsed
    """
    config = image.config_file()
    container = _container_config(config)
    container["Env"] = [f"{key}={value}" for key, value in env.items()]
    container["Cmd"] = [cmd]
    config["config"] = container
    config["created"] = format_timestamp(created or datetime.now(timezone.utc))

    return Image.compose(image.manifest(), config, image.layers, media_type=image.media_type)


def append_layer(
    image: Image,
    layer: LayerLike,
    created_by: str = CREATED_BY,
) -> Image:
    """Add ``layer`` after every existing layer.

    The layer's diff-id is appended to ``rootfs.diff_ids`` together with a
    history entry, and local layers take the layer media type matching the
    manifest flavour.

    Raises:
        ManifestError: If the base config has no usable ``rootfs`` section
    """
    media_type = image.media_type
    config = image.config_file()

    rootfs = config.get("rootfs") or {"type": "layers", "diff_ids": []}
    if not isinstance(rootfs, dict) or not isinstance(rootfs.get("diff_ids", []), list):
        raise ManifestError("Image config has a malformed 'rootfs' section")
    history = config.get("history") or []
    if not isinstance(history, list):
        raise ManifestError("Image config has a malformed 'history' section")

    if isinstance(layer, Layer):
        layer = layer.with_media_type(layer_media_type_for(media_type))

    config["rootfs"] = {
        **rootfs,
        "type": rootfs.get("type", "layers"),
        "diff_ids": [*rootfs.get("diff_ids", []), layer.diff_id],
    }
    entry: Dict[str, Any] = {"created_by": created_by}
    if config.get("created"):
        entry["created"] = config["created"]
    config["history"] = [*history, entry]

    return Image.compose(
        image.manifest(), config, (*image.layers, layer), media_type=media_type
    )


def build(
    base: Image,
    paths: Iterable[PathLike],
    env: Mapping[str, str],
    cmd: str,
    created: Optional[datetime] = None,
) -> Image:
    """Apply the config overrides, then append one layer holding ``paths``.

    Raises:
        ImageAppendError: Wrapped with "applying config" or "adding layer"
    """
    try:
        image = apply_config(base, env, cmd, created)
    except ImageAppendError as e:
        raise wrap_error(e, "applying config") from e

    try:
        try:
            layer = layer_from_paths(paths)
        except ArchiveError as e:
            raise wrap_error(e, "creating tar archive") from e
        image = append_layer(image, layer)
    except ImageAppendError as e:
        raise wrap_error(e, "adding layer") from e

    logger.info("Built image %s with %d layers", image.digest, len(image.layers))
    return image
