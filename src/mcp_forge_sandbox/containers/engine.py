"""Docker engine connection and liveness probe."""

import asyncio
from typing import Any, Callable, TypeVar

import docker
from docker.errors import DockerException

from mcp_forge_sandbox.errors import DockerUnavailableError
from mcp_forge_sandbox.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CLIENT_TIMEOUT = 60


def connect_engine() -> docker.DockerClient:
    """Create a client from DOCKER_HOST and friends."""
    try:
        return docker.from_env(timeout=CLIENT_TIMEOUT)
    except DockerException as e:
        raise DockerUnavailableError(str(e)) from e


async def call(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking SDK call without stalling the event loop."""
    return await asyncio.to_thread(fn, *args, **kwargs)


async def ensure_engine_available(client: docker.DockerClient) -> None:
    """Ping the daemon; raise DockerUnavailableError when it does not answer."""
    try:
        await call(client.ping)
    except (DockerException, OSError) as e:
        logger.error({"event": "docker_ping_failed", "error": str(e)})
        raise DockerUnavailableError(str(e)) from e


async def image_exists(client: docker.DockerClient, tag: str) -> bool:
    try:
        await call(client.images.get, tag)
    except docker.errors.ImageNotFound:
        return False
    return True
