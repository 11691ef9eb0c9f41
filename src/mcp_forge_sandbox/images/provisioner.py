"""Sandbox image provisioning: inspect, and build when missing."""

import asyncio
import re
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional

import docker
from docker.errors import DockerException

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.engine import call, image_exists
from mcp_forge_sandbox.errors import ConfigurationError, DockerUnavailableError, ImageBuildError
from mcp_forge_sandbox.images.descriptor import locate_build_descriptor
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import BuildDescriptor, ImageState, ImageStatus, SandboxImage

logger = get_logger(__name__)

OUTPUT_TAIL_LINES = 40
STREAM_LIMIT = 1024 * 1024

# Layer download/extract progress and BuildKit transfer counters
NOISE_PATTERNS = [
    re.compile(r"^[0-9a-f]{12}: (Waiting|Downloading|Extracting|Verifying Checksum|Pulling fs layer)"),
    re.compile(r"^#\d+ sha256:[0-9a-f]+ [\d.]+[kMG]?B / [\d.]+[kMG]?B"),
    re.compile(r"^#\d+ (extracting|transferring) .* [\d.]+s$"),
    re.compile(r"^\s*[\d.]+[kMG]?B/[\d.]+[kMG]?B\s*$"),
]

LineSink = Callable[[str], None]


def is_noise(line: str) -> bool:
    return any(pattern.search(line) for pattern in NOISE_PATTERNS)


def build_command(tag: str, descriptor: BuildDescriptor) -> List[str]:
    return ["docker", "build", "-f", str(descriptor.dockerfile), "-t", tag, str(descriptor.context)]


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def run_build(
    argv: List[str], cwd: Path, on_line: Optional[LineSink] = None
) -> tuple[int, List[str]]:
    """Run a build subprocess, streaming combined output line by line.

    Returns (returncode, tail of output lines). A line longer than
    STREAM_LIMIT aborts the build and yields a nonzero returncode. The child
    is killed and reaped on every exit path, cancellation included.
    """
    logger.debug({"event": "image_build_exec", "cmd": " ".join(argv), "cwd": str(cwd)})
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError as e:
        raise DockerUnavailableError(
            "Docker CLI not found. Please install Docker and ensure `docker` is on PATH."
        ) from e

    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    assert process.stdout is not None
    try:
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError:
                # readline reports LimitOverrunError as ValueError
                tail.append(f"Build output line exceeded {STREAM_LIMIT} bytes; build aborted")
                logger.error({"event": "image_build_output_overrun", "limit": STREAM_LIMIT})
                _kill(process)
                await process.stdout.read()
                break
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            if on_line is not None and not is_noise(line):
                on_line(line)

        returncode = await process.wait()
    finally:
        if process.returncode is None:
            _kill(process)
            await process.communicate()
    return returncode, list(tail)


class ImageProvisioner:
    """Ensures the sandbox image exists.

    One instance is shared per process. Its lock serializes the build path so
    concurrent runs that all find the image missing trigger a single build.
    """

    def __init__(self, client: docker.DockerClient, settings: SandboxSettings):
        self.client = client
        self.settings = settings
        self._lock = asyncio.Lock()
        self._images: Dict[str, SandboxImage] = {}

    def image(self, tag: str) -> SandboxImage:
        return self._images.setdefault(tag, SandboxImage(tag=tag))

    async def _exists(self, tag: str) -> bool:
        try:
            return await image_exists(self.client, tag)
        except (DockerException, OSError) as e:
            raise DockerUnavailableError(str(e)) from e

    async def ensure_image(self, tag: Optional[str] = None, on_line: Optional[LineSink] = None) -> ImageStatus:
        tag = tag or self.settings.image
        image = self.image(tag)

        if await self._exists(tag):
            if image.state == ImageState.UNKNOWN:
                image.state = ImageState.PRESENT
            logger.info({"event": "image_present", "tag": tag})
            return ImageStatus.ALREADY_PRESENT

        async with self._lock:
            # another run may have built it while we waited
            if await self._exists(tag):
                image.state = ImageState.PRESENT
                return ImageStatus.ALREADY_PRESENT

            if not self.settings.auto_build:
                raise ConfigurationError(
                    f"Sandbox image {tag} not found and FOUNDRY_MCP_AUTO_BUILD is disabled",
                    details={"tag": tag},
                )

            descriptor = locate_build_descriptor(
                self.settings.dockerfile_name,
                self.settings.compose_file_name,
                explicit=self.settings.build_context,
            )
            image.build_context = descriptor.context
            image.dockerfile = descriptor.dockerfile
            image.compose_file = descriptor.compose_file

            logger.info({"event": "image_build_start", "tag": tag, "context": str(descriptor.context)})
            returncode, tail = await run_build(build_command(tag, descriptor), descriptor.context, on_line)
            if returncode != 0:
                logger.error({"event": "image_build_failed", "tag": tag, "returncode": returncode})
                raise ImageBuildError(tag, returncode, "\n".join(tail))

            image.state = ImageState.BUILT
            logger.info({"event": "image_built", "tag": tag})
            return ImageStatus.BUILT_NOW

    async def remove_image(self, tag: str) -> None:
        """Best-effort removal of an image; forgets its confirmed state."""
        self._images.pop(tag, None)
        try:
            await call(self.client.images.remove, tag, force=True)
            logger.info({"event": "image_removed", "tag": tag})
        except (DockerException, OSError) as e:
            logger.warning({"event": "image_remove_failed", "tag": tag, "error": str(e)})
