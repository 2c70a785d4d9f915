"""Credential resolution and the registry token handshake."""

import base64
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlencode, urlparse

import aiofiles

from ..exceptions import AuthenticationError
from ..reference import DEFAULT_REGISTRY, Registry
from .transport import Transport
from .types import ANONYMOUS, Credentials, RegistryConfig, RequestResult

logger = logging.getLogger(__name__)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_DOCKER_HUB_KEYS = ("https://index.docker.io/v1/", "index.docker.io", "docker.io")


class Keychain(Protocol):
    """Resolves authentication material for a registry host."""

    async def resolve(self, registry: Registry) -> Credentials: ...


class StaticKeychain:
    """Keychain over a fixed host -> credentials mapping."""

    def __init__(
        self,
        credentials: Optional[Mapping[str, Credentials]] = None,
        default: Credentials = ANONYMOUS,
    ) -> None:
        self.credentials = dict(credentials or {})
        self.default = default

    async def resolve(self, registry: Registry) -> Credentials:
        return self.credentials.get(registry.host, self.default)


def _normalize_host(key: str) -> str:
    if "://" in key:
        key = urlparse(key).netloc
    return key.split("/", 1)[0]


def _credentials_from_entry(entry: Mapping[str, str]) -> Credentials:
    if entry.get("auth"):
        try:
            decoded = base64.b64decode(entry["auth"]).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise AuthenticationError(f"Invalid auth entry in docker config: {e}") from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise AuthenticationError("Invalid auth entry in docker config: missing ':'")
        return Credentials(
            username=username,
            password=password,
            identity_token=entry.get("identitytoken") or None,
        )
    return Credentials(
        username=entry.get("username") or None,
        password=entry.get("password") or None,
        identity_token=entry.get("identitytoken") or None,
        registry_token=entry.get("registrytoken") or None,
    )


class DockerConfigKeychain:
    """Reads the ``auths`` section of the Docker CLI config file.

    A missing file or a registry without an entry resolves to anonymous
    access.
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        if config_path is None:
            config_dir = os.environ.get("DOCKER_CONFIG")
            base = Path(config_dir) if config_dir else Path.home() / ".docker"
            config_path = base / "config.json"
        self.config_path = Path(config_path)

    async def _load(self) -> Dict:
        try:
            async with aiofiles.open(self.config_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise AuthenticationError(f"Cannot read {self.config_path}: {e}") from e

        try:
            document = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise AuthenticationError(f"Invalid JSON in {self.config_path}: {e}") from e
        if not isinstance(document, dict):
            raise AuthenticationError(f"Invalid docker config {self.config_path}")
        return document

    async def resolve(self, registry: Registry) -> Credentials:
        document = await self._load()
        auths = document.get("auths") or {}
        by_host = {_normalize_host(key): value for key, value in auths.items()}

        keys: Iterable[str] = (registry.host,)
        if registry.host == DEFAULT_REGISTRY:
            keys = (*_DOCKER_HUB_KEYS, registry.host)

        for key in keys:
            entry = auths.get(key) or by_host.get(_normalize_host(key))
            if entry:
                credentials = _credentials_from_entry(entry)
                if not credentials.anonymous:
                    logger.debug("Using docker config credentials for %s", registry)
                    return credentials

        if document.get("credsStore") or registry.host in (document.get("credHelpers") or {}):
            logger.debug("Credential helpers are not consulted; %s is anonymous", registry)
        return ANONYMOUS


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into scheme and parameters."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def _basic_header(credentials: Credentials) -> str:
    raw = f"{credentials.username}:{credentials.password}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


class Authenticator:
    """Sends requests for one registry, answering auth challenges.

    The first ``401`` triggers the handshake: ``Basic`` challenges get the
    resolved username/password, ``Bearer`` challenges get a token from the
    advertised realm for ``scopes``. The resulting header is reused for
    every later request.
    """

    def __init__(
        self,
        transport: Transport,
        registry: Registry,
        credentials: Credentials = ANONYMOUS,
        scopes: Iterable[str] = (),
        config: Optional[RegistryConfig] = None,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.credentials = credentials
        self.scopes: List[str] = list(dict.fromkeys(scopes))
        self.config = config or RegistryConfig()
        self._authorization: Optional[str] = None

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> RequestResult:
        """Send a request, authenticating and resending once on ``401``."""
        request_headers = {"User-Agent": self.config.user_agent, **(headers or {})}
        if self._authorization:
            request_headers["Authorization"] = self._authorization

        result = await self.transport.request(method, url, headers=request_headers, data=data)
        if result.status_code != 401:
            return result

        await self._authenticate(result)
        request_headers["Authorization"] = self._authorization  # type: ignore[assignment]
        result = await self.transport.request(method, url, headers=request_headers, data=data)
        if result.status_code == 401:
            raise AuthenticationError(f"Registry {self.registry} rejected credentials")
        return result

    async def _authenticate(self, challenge_result: RequestResult) -> None:
        header = challenge_result.header("WWW-Authenticate")
        if not header:
            raise AuthenticationError(
                f"Registry {self.registry} requires authentication but sent no challenge"
            )

        scheme, params = parse_challenge(header)
        if scheme == "basic":
            if not (self.credentials.username and self.credentials.password):
                raise AuthenticationError(f"Registry {self.registry} requires credentials")
            self._authorization = _basic_header(self.credentials)
            return

        if scheme != "bearer" or "realm" not in params:
            raise AuthenticationError(f"Unsupported auth challenge from {self.registry}: {header}")

        if self.credentials.registry_token:
            self._authorization = f"Bearer {self.credentials.registry_token}"
            return

        scopes = list(self.scopes)
        if params.get("scope") and params["scope"] not in scopes:
            scopes.append(params["scope"])
        token = await self._fetch_token(params["realm"], params.get("service", ""), scopes)
        self._authorization = f"Bearer {token}"

    async def _fetch_token(self, realm: str, service: str, scopes: List[str]) -> str:
        headers = {"User-Agent": self.config.user_agent}
        if self.credentials.identity_token:
            form = {
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.identity_token,
                "service": service,
                "scope": " ".join(scopes),
                "client_id": "image-append",
            }
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            result = await self.transport.request(
                "POST", realm, headers=headers, data=urlencode(form).encode("utf-8")
            )
        else:
            query = [("service", service)] + [("scope", scope) for scope in scopes]
            if self.credentials.username and self.credentials.password:
                headers["Authorization"] = _basic_header(self.credentials)
            separator = "&" if "?" in realm else "?"
            result = await self.transport.request(
                "GET", f"{realm}{separator}{urlencode(query)}", headers=headers
            )

        if not result.ok:
            raise AuthenticationError(
                f"Token request to {realm} failed with HTTP {result.status_code}"
            )
        try:
            payload = json.loads(result.data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AuthenticationError(f"Invalid token response from {realm}: {e}") from e
        token = None
        if isinstance(payload, dict):
            token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthenticationError(f"Token response from {realm} contained no token")
        logger.debug("Obtained registry token for %s scopes=%s", self.registry, scopes)
        return token
