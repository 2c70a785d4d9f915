"""image-append - add a layer to a registry image without a container daemon."""

__version__ = "0.1.0"

from .core.auth import DockerConfigKeychain, StaticKeychain
from .core.transport import AiohttpTransport
from .core.types import Credentials, Platform, RegistryConfig
from .exceptions import (
    ArchiveError,
    AuthenticationError,
    BlobUploadError,
    DigestMismatchError,
    ImageAppendError,
    InvalidReferenceError,
    ManifestError,
    RegistryConnectionError,
    RegistryError,
    ValidationError,
)
from .image import (
    Image,
    Layer,
    append_layer,
    apply_config,
    build,
    empty_image,
    fetch_image,
    push_image,
    resolve,
)
from .pipeline import BuildRequest, BuildResult, Pipeline, Stage, run_build
from .reference import Reference, Registry, Repository, parse_reference
from .tar import build_archive

__all__ = [
    "AiohttpTransport",
    "ArchiveError",
    "AuthenticationError",
    "BlobUploadError",
    "BuildRequest",
    "BuildResult",
    "Credentials",
    "DigestMismatchError",
    "DockerConfigKeychain",
    "Image",
    "ImageAppendError",
    "InvalidReferenceError",
    "Layer",
    "ManifestError",
    "Pipeline",
    "Platform",
    "Reference",
    "Registry",
    "RegistryConfig",
    "RegistryConnectionError",
    "RegistryError",
    "Repository",
    "Stage",
    "StaticKeychain",
    "ValidationError",
    "append_layer",
    "apply_config",
    "build",
    "build_archive",
    "empty_image",
    "fetch_image",
    "parse_reference",
    "push_image",
    "resolve",
    "run_build",
]
