"""Custom exceptions for image-append."""


class ImageAppendError(Exception):
    """Base exception for all image-append errors."""

    pass


class ValidationError(ImageAppendError):
    """Raised when user supplied input is malformed."""

    pass


class InvalidReferenceError(ValidationError):
    """Raised when an image reference cannot be parsed."""

    pass


class AuthenticationError(ImageAppendError):
    """Raised when credentials cannot be resolved or are rejected."""

    pass


class ArchiveError(ImageAppendError):
    """Raised when local files cannot be archived into a layer."""

    pass


class RegistryError(ImageAppendError):
    """Base exception for all registry-related errors."""

    pass


class RegistryConnectionError(RegistryError):
    """Raised when unable to connect to the registry."""

    pass


class BlobUploadError(RegistryError):
    """Raised when blob upload fails."""

    pass


class ManifestError(RegistryError):
    """Raised when manifest or config operations fail."""

    pass


class DigestMismatchError(RegistryError):
    """Raised when content does not hash to the digest it claims."""

    pass


def wrap_error(error: Exception, context: str) -> ImageAppendError:
    """Prefix an error message with the stage that produced it.

    The returned exception keeps the class of ``error`` when it belongs to
    this package, so callers can still catch by category. Foreign errors
    become a plain :class:`ImageAppendError`. Callers should chain with
    ``raise wrap_error(e, "stage") from e``.
    """
    if isinstance(error, ImageAppendError):
        return type(error)(f"{context}: {error}")
    return ImageAppendError(f"{context}: {error}")
