"""Docker Registry API v2 async client for a single repository."""

import asyncio
import hashlib
import json
import logging
from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

from ..exceptions import (
    AuthenticationError,
    BlobUploadError,
    DigestMismatchError,
    ManifestError,
    RegistryError,
)
from ..reference import Repository
from ..utils.digest import calculate_digest, validate_digest
from .auth import Authenticator
from .transport import Transport
from .types import ANONYMOUS, Credentials, RegistryConfig, RequestResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], object]


def _error_detail(result: RequestResult) -> Tuple[str, Sequence[str]]:
    """Human readable message and error codes from a registry error body."""
    try:
        payload = json.loads(result.data) if result.data else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        return result.data[:200].decode("utf-8", "replace"), ()
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if not isinstance(errors, list):
        return "", ()
    codes = [str(error.get("code", "")) for error in errors if isinstance(error, dict)]
    messages = [
        f"{error.get('code', '')}: {error.get('message', '')}"
        for error in errors
        if isinstance(error, dict)
    ]
    return "; ".join(messages), codes


def _check(
    result: RequestResult,
    expected: Iterable[int],
    error_cls: type,
    action: str,
) -> None:
    if result.status_code in tuple(expected):
        return
    detail, codes = _error_detail(result)
    message = f"{action}: HTTP {result.status_code}"
    if detail:
        message = f"{message}: {detail}"
    if result.status_code in (401, 403):
        raise AuthenticationError(message)
    if "DIGEST_INVALID" in codes:
        raise DigestMismatchError(message)
    raise error_cls(message)


def _rechunk(chunks: Iterable[bytes], size: int) -> Iterator[bytes]:
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= size:
            yield bytes(buffer[:size])
            del buffer[:size]
    if buffer:
        yield bytes(buffer)


class RegistryClient:
    """Registry API v2 calls scoped to one repository.

    All calls go through an :class:`Authenticator`, which answers the
    registry's auth challenge on first use.
    """

    def __init__(
        self,
        repository: Repository,
        transport: Transport,
        credentials: Credentials = ANONYMOUS,
        config: Optional[RegistryConfig] = None,
        scopes: Iterable[str] = (),
    ) -> None:
        """Initialize the registry client.

        Args:
            repository: Repository every call is made against
            transport: HTTP transport
            credentials: Credentials for the repository's registry
            config: Registry settings
            scopes: Token scopes to request; defaults to pull on the repository
        """
        self.repository = repository
        self.config = config or RegistryConfig()
        self.registry_url = repository.registry.url
        scopes = list(scopes) or [repository.scope("pull")]
        self.auth = Authenticator(
            transport, repository.registry, credentials, scopes, self.config
        )

    def _url(self, suffix: str) -> str:
        return f"{self.registry_url}/v2/{self.repository.path}/{suffix}"

    def _absolute(self, location: str) -> str:
        if not location.startswith("http"):
            return urljoin(self.registry_url, location)
        return location

    async def get_manifest(self, reference: str, accept: Sequence[str]) -> Tuple[bytes, str]:
        """Retrieve a manifest.

        Args:
            reference: Tag or digest reference
            accept: Accepted media types

        Returns:
            Raw manifest bytes and the Content-Type they were served with

        Raises:
            ManifestError: If retrieval fails
        """
        result = await self.auth.request(
            "GET", self._url(f"manifests/{reference}"), headers={"Accept": ", ".join(accept)}
        )
        _check(result, (200,), ManifestError, f"Failed to get manifest {self.repository}:{reference}")
        content_type = result.header("Content-Type").split(";", 1)[0].strip()
        return result.data, content_type

    async def check_blob_exists(self, digest: str) -> bool:
        """Check if a blob exists in the repository.

        Args:
            digest: Blob digest

        Returns:
            True if blob exists
        """
        result = await self.auth.request("HEAD", self._url(f"blobs/{digest}"))
        if result.status_code == 404:
            return False
        _check(result, (200,), RegistryError, f"Failed to check blob {digest}")
        return True

    async def get_blob(self, digest: str) -> bytes:
        """Download a blob and verify it hashes to ``digest``.

        Raises:
            RegistryError: If the download fails
            DigestMismatchError: If the content does not match
        """
        result = await self.auth.request("GET", self._url(f"blobs/{digest}"))
        _check(result, (200,), RegistryError, f"Failed to fetch blob {digest}")
        algorithm = digest.split(":", 1)[0]
        actual = calculate_digest(result.data, algorithm)
        if actual != digest:
            raise DigestMismatchError(
                f"Blob from {self.repository} has digest {actual}, expected {digest}"
            )
        return result.data

    async def mount_blob(self, digest: str, source: Repository) -> Optional[str]:
        """Ask the registry to mount ``digest`` from another repository.

        Returns:
            None if the blob was mounted. Otherwise the URL of the upload
            session the registry opened instead.

        Raises:
            BlobUploadError: If the registry refuses the request
        """
        url = self._url(f"blobs/uploads/?mount={digest}&from={source.path}")
        result = await self.auth.request("POST", url, headers={"Content-Length": "0"})
        _check(result, (201, 202), BlobUploadError, f"Failed to mount blob {digest}")
        if result.status_code == 201:
            return None
        return self._absolute(result.header("Location"))

    async def start_upload(self) -> str:
        """Open an upload session and return its URL."""
        result = await self.auth.request(
            "POST", self._url("blobs/uploads/"), headers={"Content-Length": "0"}
        )
        _check(result, (202,), BlobUploadError, "Failed to start blob upload")
        location = result.header("Location")
        if not location:
            raise BlobUploadError("Registry did not return an upload location")
        return self._absolute(location)

    async def cancel_upload(self, upload_url: str) -> None:
        """Abandon an upload session that will not be used."""
        result = await self.auth.request("DELETE", upload_url)
        if result.status_code not in (202, 204, 404):
            logger.warning(
                "Failed to cancel upload %s: HTTP %d", upload_url, result.status_code
            )

    async def upload_blob(
        self,
        digest: str,
        data: Union[bytes, Iterable[bytes]],
        progress_callback: Optional[ProgressCallback] = None,
        upload_url: Optional[str] = None,
        total_size: int = 0,
    ) -> str:
        """Upload a blob to the repository.

        The content is hashed while it is sent; if it does not match
        ``digest`` the upload is never committed.

        Args:
            digest: Expected blob digest
            data: Blob data (bytes or iterable of chunks)
            progress_callback: Optional ``(uploaded, total, message)`` callback
            upload_url: Upload session to reuse, e.g. from a failed mount
            total_size: Size reported to the progress callback

        Returns:
            Blob digest

        Raises:
            BlobUploadError: If upload fails or ``digest`` is malformed
            DigestMismatchError: If the content does not hash to ``digest``
        """
        # Validate digest format
        if not validate_digest(digest):
            raise BlobUploadError(f"Invalid digest format: {digest}")

        if isinstance(data, (bytes, bytearray)):
            total_size = len(data)
            chunks: Iterable[bytes] = _rechunk([bytes(data)], self.config.chunk_size)
        else:
            chunks = _rechunk(data, self.config.chunk_size)

        if upload_url is None:
            upload_url = await self.start_upload()

        hasher = hashlib.new(digest.split(":", 1)[0])
        uploaded_bytes = 0
        for chunk in chunks:
            hasher.update(chunk)
            end = uploaded_bytes + len(chunk) - 1
            result = await self.auth.request(
                "PATCH",
                upload_url,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(len(chunk)),
                    "Content-Range": f"{uploaded_bytes}-{end}",
                },
                data=chunk,
            )
            _check(result, (202,), BlobUploadError, f"Failed to upload blob {digest}")
            upload_url = self._absolute(result.header("Location") or upload_url)

            uploaded_bytes += len(chunk)
            if progress_callback:
                message = f"Uploading {digest[:19]}..."
                if asyncio.iscoroutinefunction(progress_callback):
                    await progress_callback(uploaded_bytes, total_size, message)
                else:
                    progress_callback(uploaded_bytes, total_size, message)

        actual = f"{hasher.name}:{hasher.hexdigest()}"
        if actual != digest:
            raise DigestMismatchError(
                f"Uploaded content hashes to {actual}, expected {digest}"
            )

        # Finalize upload
        final_url = (
            f"{upload_url}&digest={digest}"
            if "?" in upload_url
            else f"{upload_url}?digest={digest}"
        )
        result = await self.auth.request("PUT", final_url, headers={"Content-Length": "0"})
        _check(result, (201,), BlobUploadError, f"Failed to commit blob {digest}")
        logger.debug("Uploaded blob %s (%d bytes) to %s", digest, uploaded_bytes, self.repository)
        return digest

    async def upload_manifest(self, reference: str, manifest: bytes, media_type: str) -> str:
        """Upload a manifest to the repository.

        Args:
            reference: Tag or digest reference
            manifest: Raw manifest bytes, sent unchanged
            media_type: Manifest media type

        Returns:
            Manifest digest reported by the registry, or an empty string

        Raises:
            ManifestError: If upload fails
        """
        result = await self.auth.request(
            "PUT",
            self._url(f"manifests/{reference}"),
            headers={"Content-Type": media_type, "Content-Length": str(len(manifest))},
            data=manifest,
        )
        _check(result, (200, 201, 202), ManifestError, f"Failed to upload manifest {reference}")
        return result.header("Docker-Content-Digest")
