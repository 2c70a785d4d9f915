"""Example usage of the async image-append API."""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, "src")

from image_append import (
    AiohttpTransport,
    BuildRequest,
    ImageAppendError,
    Layer,
    StaticKeychain,
    append_layer,
    apply_config,
    empty_image,
    push_image,
    resolve,
    run_build,
)
from image_append.tar import build_archive

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

REGISTRY = "localhost:15000"


async def seed_base_image(keychain):
    """Push a tiny base image so the example has something to build on."""
    base = apply_config(empty_image(), {"PATH": "/bin"}, "/bin/sh")
    with tempfile.TemporaryDirectory() as tmp:
        (Path(tmp) / "hello.txt").write_text("hello\n")
        base = append_layer(base, Layer.from_bytes(build_archive([Path(tmp) / "hello.txt"])))

    async with AiohttpTransport() as transport:
        digest = await push_image(
            base, [], resolve(f"{REGISTRY}/examples/base:latest"), keychain, transport
        )
    logger.info(f"Seeded base image {digest}")


def report(done, total, message):
    logger.info(f"  {message} {done}/{total} bytes")


async def main():
    """Append a directory to the base image and push the result."""
    keychain = StaticKeychain()

    try:
        await seed_base_image(keychain)

        with tempfile.TemporaryDirectory() as tmp:
            site = Path(tmp) / "site"
            site.mkdir()
            (site / "index.html").write_text("<h1>hi</h1>\n")

            result = await run_build(
                BuildRequest(
                    base=f"{REGISTRY}/examples/base:latest",
                    target=f"{REGISTRY}/examples/site:v1",
                    paths=(str(site),),
                    env=("PORT=8080",),
                    cmd="/bin/httpd -f -p 8080",
                ),
                keychain=keychain,
                on_stage=lambda stage, message: logger.info(message),
                progress_callback=report,
            )

        logger.info(f"✓ Pushed {result.reference.context}@{result.digest}")
        logger.info(f"  Layers: {len(result.image.layers)}")

    except ImageAppendError as e:
        logger.error(f"Build failed: {e}")


if __name__ == "__main__":
    asyncio.run(main())
