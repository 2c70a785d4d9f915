"""Core data types shared by the registry layer."""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

DEFAULT_TIMEOUT = 300
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5MB
DEFAULT_USER_AGENT = "image-append/0.1.0"


@dataclass(frozen=True)
class Platform:
    """Target platform used to pick an image out of a manifest list."""

    os: str = "linux"
    architecture: str = "amd64"
    variant: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Parse ``os/arch[/variant]``."""
        parts = value.strip().split("/")
        if len(parts) < 2 or len(parts) > 3 or not all(parts):
            raise ValueError(f"Invalid platform: {value!r}")
        variant = parts[2] if len(parts) == 3 else None
        return cls(os=parts[0], architecture=parts[1], variant=variant)

    def matches(self, spec: Mapping[str, str]) -> bool:
        if spec.get("os") != self.os or spec.get("architecture") != self.architecture:
            return False
        return self.variant is None or spec.get("variant") == self.variant

    def __str__(self) -> str:
        parts = [self.os, self.architecture]
        if self.variant:
            parts.append(self.variant)
        return "/".join(parts)


@dataclass(frozen=True)
class RegistryConfig:
    """Settings for talking to registries."""

    timeout: int = DEFAULT_TIMEOUT
    insecure_registries: tuple[str, ...] = ()
    platform: Platform = field(default_factory=Platform)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RegistryConfig":
        """Build a configuration from ``IMAGE_APPEND_*`` environment variables."""
        env = os.environ if environ is None else environ
        timeout = int(env.get("IMAGE_APPEND_TIMEOUT", DEFAULT_TIMEOUT))
        insecure = tuple(
            host.strip()
            for host in env.get("IMAGE_APPEND_INSECURE_REGISTRIES", "").split(",")
            if host.strip()
        )
        platform_value = env.get("IMAGE_APPEND_PLATFORM")
        platform = Platform.parse(platform_value) if platform_value else Platform()
        return cls(timeout=timeout, insecure_registries=insecure, platform=platform)


@dataclass
class RequestResult:
    """Result of a single HTTP request to a registry."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    data: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class Credentials:
    """Authentication material for one registry."""

    username: Optional[str] = None
    password: Optional[str] = None
    identity_token: Optional[str] = None
    registry_token: Optional[str] = None

    @property
    def anonymous(self) -> bool:
        return not (
            (self.username and self.password)
            or self.identity_token
            or self.registry_token
        )


ANONYMOUS = Credentials()
