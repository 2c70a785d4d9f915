"""Test helpers: an in-memory registry speaking the v2 API."""

import base64
import gzip
import hashlib
import io
import json
import re
import tarfile
import uuid
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from image_append.core.types import ANONYMOUS, RequestResult
from image_append.exceptions import AuthenticationError

DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"

_PATH = re.compile(r"^/v2/(?P<name>.+?)/(?P<kind>blobs|manifests)/(?P<rest>.*)$")


def sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def make_tar(files: Mapping[str, bytes]) -> bytes:
    """Create an uncompressed tar holding ``files``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def read_tar(data: bytes) -> List[Tuple[str, bytes]]:
    """Return ``(name, content)`` for every member of a tar, in order."""
    members = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        for member in tar.getmembers():
            content = b""
            if member.isfile():
                content = tar.extractfile(member).read()
            members.append((member.name, content))
    return members


def _error(status: int, code: str, message: str = "") -> RequestResult:
    body = json.dumps({"errors": [{"code": code, "message": message}]}).encode("utf-8")
    return RequestResult(status_code=status, headers={"Content-Type": "application/json"}, data=body)


class FakeRegistry:
    """A registry:2 lookalike implementing the ``Transport`` protocol.

    Every request is recorded in ``calls`` as ``(method, path, query)``.
    Set ``credentials`` to require a bearer token obtained with basic auth
    from ``https://auth.test/token``.
    """

    def __init__(self, host: str = "registry.test") -> None:
        self.host = host
        self.blobs: Dict[str, Dict[str, bytes]] = {}
        self.manifests: Dict[str, Dict[str, Tuple[bytes, str]]] = {}
        self.uploads: Dict[str, Tuple[str, bytearray]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.token_requests: List[str] = []
        self.credentials: Optional[Tuple[str, str]] = None
        self.token = "secret-token"
        self.closed = False

    # -- seeding -----------------------------------------------------------

    def put_blob(self, repo: str, data: bytes) -> str:
        digest = sha256(data)
        self.blobs.setdefault(repo, {})[digest] = data
        return digest

    def seed_image(
        self,
        repo: str,
        tag: str = "latest",
        layers: Optional[List[Mapping[str, bytes]]] = None,
        env: Optional[List[str]] = None,
        cmd: Optional[List[str]] = None,
        media_type: str = DOCKER_MANIFEST,
    ) -> str:
        """Store an image built from ``layers`` and return its digest."""
        layers = layers if layers is not None else [{"bin/sh": b"#!shell"}]
        descriptors, diff_ids = [], []
        for files in layers:
            tar = make_tar(files)
            blob = gzip.compress(tar, mtime=0)
            diff_ids.append(sha256(tar))
            descriptors.append(
                {"mediaType": DOCKER_LAYER, "size": len(blob), "digest": self.put_blob(repo, blob)}
            )
        config = {
            "architecture": "amd64",
            "os": "linux",
            "created": "2020-01-01T00:00:00Z",
            "config": {"Env": env or ["A=1"], "Cmd": cmd or ["/bin/sh"], "WorkingDir": "/"},
            "rootfs": {"type": "layers", "diff_ids": diff_ids},
            "history": [{"created_by": "seed"} for _ in layers],
        }
        raw_config = json.dumps(config).encode("utf-8")
        manifest = {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {
                "mediaType": DOCKER_CONFIG,
                "size": len(raw_config),
                "digest": self.put_blob(repo, raw_config),
            },
            "layers": descriptors,
        }
        raw_manifest = json.dumps(manifest, indent=3).encode("utf-8")
        return self.put_manifest(repo, tag, raw_manifest, media_type)

    def put_manifest(self, repo: str, tag: str, raw: bytes, media_type: str) -> str:
        digest = sha256(raw)
        store = self.manifests.setdefault(repo, {})
        store[tag] = (raw, media_type)
        store[digest] = (raw, media_type)
        return digest

    # -- inspection --------------------------------------------------------

    def count(self, method: str, fragment: str = "") -> int:
        return sum(
            1
            for call_method, path, query in self.calls
            if call_method == method and fragment in f"{path}?{query}"
        )

    def manifest(self, repo: str, reference: str) -> dict:
        return json.loads(self.manifests[repo][reference][0])

    def config(self, repo: str, reference: str) -> dict:
        digest = self.manifest(repo, reference)["config"]["digest"]
        return json.loads(self.blobs[repo][digest])

    # -- transport ---------------------------------------------------------

    async def close(self) -> None:
        self.closed = True

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> RequestResult:
        headers = dict(headers or {})
        parts = urlsplit(url)
        self.calls.append((method, parts.path, parts.query))

        if parts.netloc == "auth.test":
            return self._token(headers, parts.query)
        if parts.netloc != self.host and not (
            self.host == "index.docker.io" and parts.netloc == "registry-1.docker.io"
        ):
            return RequestResult(status_code=404)

        if self.credentials and headers.get("Authorization") != f"Bearer {self.token}":
            return RequestResult(
                status_code=401,
                headers={
                    "WWW-Authenticate": (
                        'Bearer realm="https://auth.test/token",service="registry.test"'
                    )
                },
            )

        match = _PATH.match(parts.path)
        if not match:
            return RequestResult(status_code=404)
        name, kind, rest = match.group("name"), match.group("kind"), match.group("rest")
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        if kind == "manifests":
            return self._manifests(method, name, rest, headers, data or b"")
        return self._blobs(method, name, rest, query, data or b"")

    def _token(self, headers: Mapping[str, str], query: str) -> RequestResult:
        self.token_requests.append(query)
        expected = "Basic " + base64.b64encode(
            ":".join(self.credentials or ("", "")).encode("utf-8")
        ).decode("ascii")
        if headers.get("Authorization") != expected:
            return RequestResult(status_code=401)
        return RequestResult(status_code=200, data=json.dumps({"token": self.token}).encode())

    def _manifests(
        self, method: str, name: str, reference: str, headers: Mapping[str, str], data: bytes
    ) -> RequestResult:
        if method == "GET":
            stored = self.manifests.get(name, {}).get(reference)
            if stored is None:
                return _error(404, "MANIFEST_UNKNOWN")
            raw, media_type = stored
            return RequestResult(
                status_code=200,
                headers={"Content-Type": media_type, "Docker-Content-Digest": sha256(raw)},
                data=raw,
            )
        if method == "PUT":
            manifest = json.loads(data)
            blobs = self.blobs.get(name, {})
            referenced = [manifest["config"]["digest"]] + [
                layer["digest"] for layer in manifest["layers"]
            ]
            missing = [digest for digest in referenced if digest not in blobs]
            if missing:
                return _error(400, "MANIFEST_BLOB_UNKNOWN", ", ".join(missing))
            digest = self.put_manifest(name, reference, data, headers.get("Content-Type", ""))
            return RequestResult(status_code=201, headers={"Docker-Content-Digest": digest})
        return _error(405, "UNSUPPORTED")

    def _blobs(
        self, method: str, name: str, rest: str, query: Mapping[str, str], data: bytes
    ) -> RequestResult:
        if rest.startswith("uploads/"):
            session = rest[len("uploads/") :]
            if method == "POST" and not session:
                source = query.get("from")
                digest = query.get("mount")
                if source and digest and digest in self.blobs.get(source, {}):
                    self.blobs.setdefault(name, {})[digest] = self.blobs[source][digest]
                    return RequestResult(status_code=201, headers={"Location": f"/v2/{name}/blobs/{digest}"})
                upload_id = uuid.uuid4().hex
                self.uploads[upload_id] = (name, bytearray())
                return RequestResult(
                    status_code=202, headers={"Location": f"/v2/{name}/blobs/uploads/{upload_id}"}
                )
            if session not in self.uploads:
                return _error(404, "BLOB_UPLOAD_UNKNOWN")
            repo, buffer = self.uploads[session]
            if method == "DELETE":
                del self.uploads[session]
                return RequestResult(status_code=204)
            if method == "PATCH":
                buffer.extend(data)
                return RequestResult(
                    status_code=202, headers={"Location": f"/v2/{name}/blobs/uploads/{session}"}
                )
            if method == "PUT":
                buffer.extend(data)
                digest = query.get("digest", "")
                if sha256(bytes(buffer)) != digest:
                    return _error(400, "DIGEST_INVALID")
                del self.uploads[session]
                self.blobs.setdefault(repo, {})[digest] = bytes(buffer)
                return RequestResult(status_code=201, headers={"Docker-Content-Digest": digest})
            return _error(405, "UNSUPPORTED")

        blob = self.blobs.get(name, {}).get(rest)
        if method == "HEAD":
            return RequestResult(status_code=200 if blob is not None else 404)
        if method == "GET":
            if blob is None:
                return _error(404, "BLOB_UNKNOWN")
            return RequestResult(status_code=200, data=blob)
        return _error(405, "UNSUPPORTED")


class StubKeychain:
    """Keychain returning anonymous credentials and recording lookups."""

    def __init__(self, fail_for: Tuple[str, ...] = ()) -> None:
        self.fail_for = fail_for
        self.resolved: List[str] = []

    async def resolve(self, registry):
        self.resolved.append(registry.host)
        if registry.host in self.fail_for:
            raise AuthenticationError(f"no credentials for {registry.host}")
        return ANONYMOUS
