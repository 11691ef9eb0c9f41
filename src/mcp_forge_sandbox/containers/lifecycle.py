"""Container lifecycle: create, start, inspect and remove sandbox containers."""

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from fuuid import b58_fuuid

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.engine import call, ensure_engine_available
from mcp_forge_sandbox.errors import (
    ConfigurationError,
    ContainerLifecycleError,
    ContainerStartError,
)
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import ContainerState, ExecutionContext

logger = get_logger(__name__)

SANDBOX_LABEL = "mcp-forge-sandbox"
NAME_PREFIX = "forge-sandbox"
KEEPALIVE_COMMAND = ["sleep", "infinity"]
# writable home for npm, yarn and forge caches when not running as root
HOST_USER_HOME = "/tmp"


def generate_container_name() -> str:
    """Unique per run: monotonic clock reading plus a random suffix."""
    return f"{NAME_PREFIX}-{time.monotonic_ns()}-{b58_fuuid()[-8:]}"


def host_user() -> Optional[str]:
    """uid:gid of this process, or None where the platform has no such ids."""
    if not hasattr(os, "getuid"):
        return None
    return f"{os.getuid()}:{os.getgid()}"


class ContainerManager:
    """Owns creation and removal of sandbox containers."""

    def __init__(self, client: docker.DockerClient, settings: SandboxSettings):
        self.client = client
        self.settings = settings

    async def create(
        self, image: str, host_dir: Path, workdir: Optional[str] = None
    ) -> ExecutionContext:
        """Create and start a keep-alive container with host_dir bound at workdir."""
        workdir = workdir or self.settings.workdir

        await ensure_engine_available(self.client)
        try:
            await call(self.client.images.get, image)
        except ImageNotFound as e:
            raise ConfigurationError(
                f"Sandbox image {image} is not present; it must be provisioned first",
                details={"image": image},
            ) from e
        if not host_dir.is_dir():
            raise ConfigurationError(
                f"Host directory not found: {host_dir}", details={"host_dir": str(host_dir)}
            )

        context = ExecutionContext(
            name=generate_container_name(),
            image=image,
            host_dir=host_dir,
            workdir=workdir,
        )
        user = host_user() if self.settings.run_as_host_user else None
        options: Dict[str, Any] = {"environment": self.settings.container_env()}
        if user is not None:
            # files the run writes into the bind mount stay owned by the caller
            options["user"] = user
            options["environment"]["HOME"] = HOST_USER_HOME
        logger.info(
            {
                "event": "container_create",
                "name": context.name,
                "image": image,
                "host_dir": str(host_dir),
                "workdir": workdir,
                "user": user,
            }
        )

        try:
            container = await call(
                self.client.containers.create,
                image,
                command=KEEPALIVE_COMMAND,
                name=context.name,
                volumes={str(host_dir): {"bind": workdir, "mode": "rw"}},
                working_dir=workdir,
                labels={SANDBOX_LABEL: "1"},
                auto_remove=False,
                **options,
            )
            context.container_id = container.id
            await call(container.start)
        except DockerException as e:
            await self.remove(context)
            raise ContainerLifecycleError(
                f"Failed to create container {context.name}: {e}",
                details={"name": context.name, "image": image},
            ) from e

        context.state = ContainerState.RUNNING
        await asyncio.sleep(self.settings.start_wait)

        status = await self.inspect_status(context)
        if status != "running":
            await self.remove(context)
            raise ContainerStartError(context.name, status)

        logger.info({"event": "container_running", "name": context.name, "id": context.container_id})
        return context

    async def inspect_status(self, context: ExecutionContext) -> str:
        """Engine-reported status of the container, or "missing"."""
        try:
            container = await call(self.client.containers.get, context.name)
        except NotFound:
            return "missing"
        except DockerException as e:
            logger.warning({"event": "container_inspect_failed", "name": context.name, "error": str(e)})
            return "unknown"
        return container.status

    async def remove(self, context: Optional[ExecutionContext]) -> None:
        """Stop and force-remove a container. Never raises; always marks it removed."""
        if context is None or context.state == ContainerState.REMOVED:
            return

        try:
            try:
                container = await call(self.client.containers.get, context.name)
            except NotFound:
                logger.debug({"event": "container_already_gone", "name": context.name})
                return

            if container.status == "running":
                await call(container.stop, timeout=int(self.settings.stop_grace))
                context.state = ContainerState.STOPPED
            await call(container.remove, force=True)
            logger.info({"event": "container_removed", "name": context.name})
        except NotFound:
            logger.debug({"event": "container_already_gone", "name": context.name})
        except (DockerException, OSError) as e:
            logger.warning(
                {"event": "container_remove_failed", "name": context.name, "error": str(e)}
            )
        finally:
            context.state = ContainerState.REMOVED

    async def list_live(self) -> List[str]:
        """Names of sandbox containers the engine still knows about."""
        containers = await call(
            self.client.containers.list, all=True, filters={"label": SANDBOX_LABEL}
        )
        return [c.name for c in containers]

    async def prune(self) -> Dict[str, Any]:
        """Best-effort equivalent of `docker system prune -f`."""
        steps = {
            "containers": lambda: self.client.containers.prune(),
            "networks": lambda: self.client.networks.prune(),
            "images": lambda: self.client.images.prune(filters={"dangling": True}),
            "build_cache": lambda: self.client.api.prune_builds(),
        }
        results: Dict[str, Any] = {}
        for name, step in steps.items():
            try:
                results[name] = await call(step)
            except (DockerException, OSError) as e:
                logger.warning({"event": "prune_failed", "target": name, "error": str(e)})
                results[name] = {"error": str(e)}
        logger.info({"event": "prune_complete", "targets": list(results)})
        return results


class ContainerSlot:
    """The single container owned by one run.

    empty -> occupied (open) -> released. A slot is never reopened; each run
    creates its own.
    """

    def __init__(self, manager: ContainerManager):
        self._manager = manager
        self._context: Optional[ExecutionContext] = None
        self._opened = False

    @property
    def context(self) -> Optional[ExecutionContext]:
        return self._context

    async def open(self, image: str, host_dir: Path, workdir: Optional[str] = None) -> ExecutionContext:
        if self._opened:
            raise RuntimeError("Container slot already used for this run")
        self._opened = True
        self._context = await self._manager.create(image, host_dir, workdir)
        return self._context

    async def release(self) -> None:
        context, self._context = self._context, None
        await self._manager.remove(context)

    async def __aenter__(self) -> "ContainerSlot":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
