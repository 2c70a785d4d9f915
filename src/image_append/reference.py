"""Image reference parsing.

Parsing is deliberately weak: anything that splits cleanly into a registry
host, a repository path and a tag or digest is accepted, without enforcing
the strict distribution name grammar.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .exceptions import InvalidReferenceError
from .utils.digest import validate_digest

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

_DOCKER_HUB_ALIASES = {"docker.io", "registry-1.docker.io", DEFAULT_REGISTRY}


@dataclass(frozen=True)
class Registry:
    """A registry host, optionally with a port."""

    host: str
    insecure: bool = False

    @property
    def scheme(self) -> str:
        if self.insecure or _is_local_host(self.host):
            return "http"
        return "https"

    @property
    def url(self) -> str:
        # Docker Hub serves the API from a different host than its name.
        host = "registry-1.docker.io" if self.host == DEFAULT_REGISTRY else self.host
        return f"{self.scheme}://{host}"

    def __str__(self) -> str:
        return self.host


@dataclass(frozen=True)
class Repository:
    """A repository scope inside a registry."""

    registry: Registry
    path: str

    def scope(self, actions: str) -> str:
        """Token scope string for this repository."""
        return f"repository:{self.path}:{actions}"

    def __str__(self) -> str:
        return f"{self.registry.host}/{self.path}"


@dataclass(frozen=True)
class Reference:
    """A repository plus exactly one of tag or digest."""

    context: Repository
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def registry(self) -> Registry:
        return self.context.registry

    @property
    def identifier(self) -> str:
        """Tag or digest, as used in ``/v2/<name>/manifests/<identifier>``."""
        return self.digest or self.tag or DEFAULT_TAG

    def __str__(self) -> str:
        if self.digest:
            return f"{self.context}@{self.digest}"
        return f"{self.context}:{self.identifier}"


def _is_local_host(host: str) -> bool:
    hostname = host.rsplit(":", 1)[0] if not host.startswith("[") else host
    return (
        hostname == "localhost"
        or hostname.startswith("127.")
        or hostname == "[::1]"
        or hostname.endswith(".local")
    )


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(value: str, insecure_registries: Iterable[str] = ()) -> Reference:
    """Parse an image URL such as ``gcr.io/project/app:v1``.

    Args:
        value: Reference string. Tag defaults to ``latest``; a missing host
            means Docker Hub.
        insecure_registries: Hosts that must be reached over plain HTTP.

    Returns:
        Reference

    Raises:
        InvalidReferenceError: If the string cannot be split into a host,
            repository and tag/digest.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidReferenceError("empty image reference")
    if value != value.strip() or any(ch.isspace() for ch in value):
        raise InvalidReferenceError(f"image reference contains whitespace: {value!r}")
    if "://" in value:
        raise InvalidReferenceError(
            f"image reference must not include a scheme: {value!r}"
        )

    remainder = value
    digest = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not validate_digest(digest):
            raise InvalidReferenceError(f"invalid digest in reference: {value!r}")

    tag = None
    slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > slash:
        remainder, tag = remainder[:colon], remainder[colon + 1 :]
        if not tag:
            raise InvalidReferenceError(f"empty tag in reference: {value!r}")

    parts = remainder.split("/")
    if len(parts) > 1 and _looks_like_registry(parts[0]):
        host, path_parts = parts[0], parts[1:]
    else:
        host, path_parts = DEFAULT_REGISTRY, parts

    if not path_parts or any(not part for part in path_parts):
        raise InvalidReferenceError(f"invalid repository in reference: {value!r}")

    if host in _DOCKER_HUB_ALIASES:
        host = DEFAULT_REGISTRY
        if len(path_parts) == 1:
            path_parts = ["library", *path_parts]

    if digest is None and tag is None:
        tag = DEFAULT_TAG

    registry = Registry(host=host, insecure=host in set(insecure_registries))
    return Reference(
        context=Repository(registry=registry, path="/".join(path_parts)),
        tag=tag,
        digest=digest,
    )
