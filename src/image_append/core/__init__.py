"""Registry access: transport, authentication and API calls."""

from .auth import Authenticator, DockerConfigKeychain, Keychain, StaticKeychain
from .registry_client import RegistryClient
from .transport import AiohttpTransport, Transport
from .types import ANONYMOUS, Credentials, Platform, RegistryConfig, RequestResult

__all__ = [
    "ANONYMOUS",
    "AiohttpTransport",
    "Authenticator",
    "Credentials",
    "DockerConfigKeychain",
    "Keychain",
    "Platform",
    "RegistryClient",
    "RegistryConfig",
    "RequestResult",
    "StaticKeychain",
    "Transport",
]
