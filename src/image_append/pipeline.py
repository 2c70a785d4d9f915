"""Build-and-push orchestration: fetch, mutate, push."""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

from .core.auth import DockerConfigKeychain, Keychain
from .core.registry_client import ProgressCallback
from .core.transport import AiohttpTransport, Transport
from .core.types import RegistryConfig
from .exceptions import ImageAppendError, wrap_error
from .image.models import Image
from .image.mutate import build, parse_env
from .image.remote import fetch_image, push_image, resolve
from .reference import Reference

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Pipeline states. Each value names the stage in error messages."""

    IDLE = "idle"
    FETCHING = "fetching base image"
    MUTATING = "building image"
    PUSHING = "pushing image"
    DONE = "done"
    FAILED = "failed"


StageCallback = Callable[[Stage, str], object]


@dataclass(frozen=True)
class BuildRequest:
    """Already-parsed command line input."""

    base: str
    target: str
    paths: Tuple[str, ...] = ()
    env: Tuple[str, ...] = ()
    cmd: str = ""


@dataclass(frozen=True)
class BuildResult:
    digest: str
    reference: Reference
    image: Image = field(repr=False)


class Pipeline:
    """One-shot pipeline: ``IDLE -> FETCHING -> MUTATING -> PUSHING -> DONE``.

    Any failure moves the pipeline to ``FAILED`` and is re-raised with the
    name of the stage it happened in. Nothing is retried.
    """

    def __init__(
        self,
        keychain: Keychain,
        transport: Transport,
        config: Optional[RegistryConfig] = None,
        on_stage: Optional[StageCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.keychain = keychain
        self.transport = transport
        self.config = config or RegistryConfig()
        self.on_stage = on_stage
        self.progress_callback = progress_callback
        self.stage = Stage.IDLE

    async def _enter(self, stage: Stage, message: str) -> None:
        self.stage = stage
        logger.info(message)
        if self.on_stage:
            if asyncio.iscoroutinefunction(self.on_stage):
                await self.on_stage(stage, message)
            else:
                self.on_stage(stage, message)

    async def run(self, request: BuildRequest) -> BuildResult:
        """Fetch the base image, build the new one and push it.

        Raises:
            ImageAppendError: Prefixed with the failing stage
            RuntimeError: If the pipeline has already been run
        """
        if self.stage is not Stage.IDLE:
            raise RuntimeError(f"Pipeline already ran (stage: {self.stage.name})")

        try:
            await self._enter(Stage.FETCHING, "Checking base image...")
            base_ref = resolve(request.base, self.config)
            base, source = await fetch_image(base_ref, self.keychain, self.transport, self.config)

            await self._enter(Stage.MUTATING, "Building new image...")
            env = parse_env(request.env)
            # Archiving is blocking file I/O
            image = await asyncio.get_running_loop().run_in_executor(
                None, functools.partial(build, base, request.paths, env, request.cmd)
            )

            await self._enter(Stage.PUSHING, "Pushing...")
            dest = resolve(request.target, self.config)
            digest = await push_image(
                image,
                [source],
                dest,
                self.keychain,
                self.transport,
                self.config,
                self.progress_callback,
            )
        except ImageAppendError as e:
            failed = self.stage
            self.stage = Stage.FAILED
            raise wrap_error(e, failed.value) from e

        await self._enter(Stage.DONE, "Done.")
        return BuildResult(digest=digest, reference=dest, image=image)


async def run_build(
    request: BuildRequest,
    keychain: Optional[Keychain] = None,
    config: Optional[RegistryConfig] = None,
    on_stage: Optional[StageCallback] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> BuildResult:
    """Run a pipeline with the default aiohttp transport and docker keychain."""
    config = config or RegistryConfig.from_env()
    async with AiohttpTransport(config) as transport:
        pipeline = Pipeline(
            keychain or DockerConfigKeychain(),
            transport,
            config,
            on_stage=on_stage,
            progress_callback=progress_callback,
        )
        return await pipeline.run(request)
