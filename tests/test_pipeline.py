"""Tests for the build-and-push pipeline."""

import json

import pytest

from image_append.exceptions import (
    ArchiveError,
    AuthenticationError,
    InvalidReferenceError,
    ManifestError,
    ValidationError,
)
from image_append.pipeline import BuildRequest, Pipeline, Stage
from tests.helpers import StubKeychain, read_tar


@pytest.fixture
def app_file(tmp_path):
    path = tmp_path / "app"
    path.write_bytes(b"binary")
    return str(path)


def _request(app_file, **overrides):
    values = dict(
        base="registry.test/library/base:latest",
        target="registry.test/team/app:v1",
        paths=(app_file,),
        env=("PORT=8080",),
        cmd="/app --serve",
    )
    values.update(overrides)
    return BuildRequest(**values)


@pytest.mark.asyncio
async def test_pipeline_builds_and_pushes(registry, keychain, app_file):
    """Test the full scenario against an in-memory registry."""
    stages = []
    pipeline = Pipeline(keychain, registry, on_stage=lambda stage, message: stages.append(stage))

    result = await pipeline.run(_request(app_file))

    assert pipeline.stage is Stage.DONE
    assert stages == [Stage.FETCHING, Stage.MUTATING, Stage.PUSHING, Stage.DONE]
    assert result.digest == result.image.digest
    assert str(result.reference) == "registry.test/team/app:v1"

    config = registry.config("team/app", "v1")
    assert config["config"]["Env"] == ["PORT=8080"]
    assert config["config"]["Cmd"] == ["/app --serve"]
    assert config["config"]["WorkingDir"] == "/"

    base_layers = registry.manifest("library/base", "latest")["layers"]
    layers = registry.manifest("team/app", "v1")["layers"]
    assert layers[:-1] == base_layers
    assert len(layers) == len(base_layers) + 1

    new_layer = result.image.layers[-1]
    with new_layer.uncompressed() as stream:
        assert read_tar(stream.read()) == [("app", b"binary")]


@pytest.mark.asyncio
async def test_pipeline_stage_messages(registry, keychain, app_file):
    """Test the progress messages of each stage."""
    messages = []

    async def on_stage(stage, message):
        messages.append(message)

    await Pipeline(keychain, registry, on_stage=on_stage).run(_request(app_file))

    assert messages == ["Checking base image...", "Building new image...", "Pushing...", "Done."]


@pytest.mark.asyncio
async def test_pipeline_empty_cmd(registry, keychain):
    """Test that an omitted command becomes a single empty argument."""
    await Pipeline(keychain, registry).run(_request("", paths=(), cmd=""))
    assert registry.config("team/app", "v1")["config"]["Cmd"] == [""]


@pytest.mark.asyncio
async def test_pipeline_runs_once(registry, keychain, app_file):
    """Test that a pipeline cannot be reused."""
    pipeline = Pipeline(keychain, registry)
    await pipeline.run(_request(app_file))

    with pytest.raises(RuntimeError):
        await pipeline.run(_request(app_file))


@pytest.mark.asyncio
async def test_pipeline_missing_base_fails_in_fetch(registry, keychain, app_file):
    """Test that fetch errors carry the fetching stage."""
    pipeline = Pipeline(keychain, registry)

    with pytest.raises(ManifestError, match="^fetching base image: "):
        await pipeline.run(_request(app_file, base="registry.test/library/nope"))

    assert pipeline.stage is Stage.FAILED
    assert "team/app" not in registry.manifests


@pytest.mark.asyncio
async def test_pipeline_invalid_base_url(registry, keychain, app_file):
    """Test that an unparseable base URL fails before any request."""
    with pytest.raises(InvalidReferenceError, match=r"^fetching base image: parsing url"):
        await Pipeline(keychain, registry).run(_request(app_file, base="not a url"))
    assert registry.calls == []


@pytest.mark.asyncio
async def test_pipeline_bad_env_fails_in_build(registry, keychain, app_file):
    """Test that malformed env entries fail the build stage."""
    with pytest.raises(ValidationError, match="^building image: "):
        await Pipeline(keychain, registry).run(_request(app_file, env=("NOVALUE",)))


@pytest.mark.asyncio
async def test_pipeline_missing_file_fails_in_build(registry, keychain, tmp_path):
    """Test that archive errors name both stage and step."""
    pipeline = Pipeline(keychain, registry)

    with pytest.raises(ArchiveError, match="^building image: adding layer: creating tar archive"):
        await pipeline.run(_request(str(tmp_path / "missing")))

    assert pipeline.stage is Stage.FAILED
    assert registry.count("POST") == 0


@pytest.mark.asyncio
async def test_pipeline_invalid_target_fails_in_push(registry, keychain, app_file):
    """Test that the target is only parsed once the push starts."""
    stages = []
    pipeline = Pipeline(keychain, registry, on_stage=lambda stage, message: stages.append(stage))

    with pytest.raises(InvalidReferenceError, match="^pushing image: parsing url"):
        await pipeline.run(_request(app_file, target="registry.test/team/app:"))

    assert stages == [Stage.FETCHING, Stage.MUTATING, Stage.PUSHING]


@pytest.mark.asyncio
async def test_pipeline_auth_failure(registry, app_file):
    """Test that credential failures stop the pipeline in the fetch stage."""
    keychain = StubKeychain(fail_for=("registry.test",))

    with pytest.raises(AuthenticationError, match="^fetching base image: authenticating"):
        await Pipeline(keychain, registry).run(_request(app_file))


@pytest.mark.asyncio
async def test_pipeline_malformed_base_manifest_fails_in_fetch(registry, keychain, app_file):
    """Test that a base manifest with a broken layer descriptor fails cleanly."""
    manifest = registry.manifest("library/base", "latest")
    del manifest["layers"][0]["digest"]
    registry.put_manifest(
        "library/base", "broken", json.dumps(manifest).encode(), manifest["mediaType"]
    )
    pipeline = Pipeline(keychain, registry)

    with pytest.raises(ManifestError, match="^fetching base image: "):
        await pipeline.run(_request(app_file, base="registry.test/library/base:broken"))

    assert pipeline.stage is Stage.FAILED
    assert "team/app" not in registry.manifests
