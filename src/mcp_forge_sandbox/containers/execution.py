"""Command execution inside a running sandbox container.

Output travels through an :class:`OutputChannel`: a reader thread pulls the
demultiplexed exec stream from the engine and publishes each chunk to every
subscriber queue. Two consumers subscribe independently, the
:class:`OutputBuffer` that accumulates stdout and stderr, and an optional
live forwarder. The exit code is read with an exec inspect once the stream
has ended.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional

import docker
from docker.errors import DockerException

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.engine import call
from mcp_forge_sandbox.errors import CommandTimeoutError, ContainerLifecycleError
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import (
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    OutputChunk,
    StreamKind,
)

logger = get_logger(__name__)

OutputCallback = Callable[[OutputChunk], Optional[Awaitable[None]]]

INSPECT_FAILED_EXIT_CODE = -1

_END = object()


class OutputChannel:
    """Fan-out of output chunks from a worker thread to event-loop consumers."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._subscribers: List[asyncio.Queue] = []
        self.error: Optional[BaseException] = None

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def _put(self, item: Any) -> None:
        for queue in self._subscribers:
            queue.put_nowait(item)

    def publish(self, chunk: OutputChunk) -> None:
        """Thread-safe; may be called from the reader thread."""
        self._loop.call_soon_threadsafe(self._put, chunk)

    def close(self, error: Optional[BaseException] = None) -> None:
        """Thread-safe; signals end of stream to every subscriber."""
        self.error = error
        self._loop.call_soon_threadsafe(self._put, _END)


async def iter_chunks(queue: asyncio.Queue):
    while True:
        item = await queue.get()
        if item is _END:
            return
        yield item


class OutputBuffer:
    """Accumulates each stream's bytes in arrival order."""

    def __init__(self):
        self._chunks: Dict[StreamKind, List[bytes]] = {kind: [] for kind in StreamKind}

    def write(self, chunk: OutputChunk) -> None:
        self._chunks[chunk.stream].append(chunk.data)

    async def consume(self, queue: asyncio.Queue) -> None:
        async for chunk in iter_chunks(queue):
            self.write(chunk)

    def text(self, kind: StreamKind) -> str:
        return b"".join(self._chunks[kind]).decode("utf-8", errors="replace")


async def forward_output(queue: asyncio.Queue, callback: OutputCallback) -> None:
    """Hand every chunk to callback as soon as it arrives."""
    async for chunk in iter_chunks(queue):
        result = callback(chunk)
        if inspect.isawaitable(result):
            await result


def pump_stream(stream: Any, channel: OutputChannel) -> None:
    """Reader thread body: split (stdout, stderr) frames into chunks."""
    error: Optional[BaseException] = None
    try:
        for stdout, stderr in stream:
            if stdout:
                channel.publish(OutputChunk(StreamKind.STDOUT, stdout))
            if stderr:
                channel.publish(OutputChunk(StreamKind.STDERR, stderr))
    except (DockerException, OSError, ValueError, AttributeError) as e:
        # a torn-down socket surfaces here as one of these
        error = e
    finally:
        channel.close(error)


def close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except (DockerException, OSError) as e:
        logger.warning({"event": "exec_stream_close_failed", "error": str(e)})


class CommandExecutor:
    """Runs commands in a container with streaming output and a timeout."""

    def __init__(self, client: docker.DockerClient, settings: SandboxSettings):
        self.client = client
        self.settings = settings

    async def exec(
        self,
        context: ExecutionContext,
        request: ExecutionRequest,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecutionResult:
        api = self.client.api
        logger.debug(
            {"event": "exec_start", "container": context.name, "cmd": request.display()}
        )

        try:
            created = await call(
                api.exec_create,
                context.name,
                request.argv,
                stdout=True,
                stderr=True,
                workdir=context.workdir,
                environment=self.settings.container_env(),
            )
            exec_id = created["Id"]
            stream = await call(api.exec_start, exec_id, stream=True, demux=True)
        except DockerException as e:
            raise ContainerLifecycleError(
                f"Failed to start command in {context.name}: {e}",
                details={"container": context.name, "cmd": request.display()},
            ) from e

        channel = OutputChannel()
        buffer = OutputBuffer()
        consumers = [asyncio.create_task(buffer.consume(channel.subscribe()))]
        if on_output is not None:
            consumers.append(asyncio.create_task(forward_output(channel.subscribe(), on_output)))
        pump = asyncio.create_task(asyncio.to_thread(pump_stream, stream, channel))

        try:
            await asyncio.wait_for(asyncio.shield(pump), timeout=request.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                {
                    "event": "exec_timeout",
                    "container": context.name,
                    "cmd": request.display(),
                    "timeout": request.timeout,
                }
            )
            close_stream(stream)
            await self._settle(pump, consumers, raise_errors=False)
            raise CommandTimeoutError(request.display(), request.timeout)

        await self._settle(pump, consumers)
        close_stream(stream)

        if channel.error is not None:
            raise ContainerLifecycleError(
                f"Stream error: {channel.error}",
                details={"container": context.name, "cmd": request.display()},
            )

        exit_code = await self._exit_code(exec_id)
        result = ExecutionResult(
            stdout=buffer.text(StreamKind.STDOUT),
            stderr=buffer.text(StreamKind.STDERR),
            exit_code=exit_code,
        )
        logger.debug(
            {"event": "exec_complete", "container": context.name, "cmd": request.display(), "exit_code": exit_code}
        )
        return result

    async def _settle(
        self, pump: asyncio.Task, consumers: List[asyncio.Task], raise_errors: bool = True
    ) -> None:
        """Give the reader and both sinks the flush grace period to finish.

        A consumer error is re-raised unless the stream was torn down by a
        timeout, which takes precedence.
        """
        _, pending = await asyncio.wait([pump, *consumers], timeout=self.settings.flush_grace)
        for task in pending:
            if task is pump:
                logger.warning({"event": "exec_reader_still_running"})
                continue
            task.cancel()
        for task in consumers:
            if not task.done() or task.cancelled() or task.exception() is None:
                continue
            if raise_errors:
                raise task.exception()
            logger.warning({"event": "exec_consumer_failed", "error": str(task.exception())})

    async def _exit_code(self, exec_id: str) -> int:
        try:
            info = await call(self.client.api.exec_inspect, exec_id)
        except DockerException as e:
            logger.warning({"event": "exec_inspect_failed", "exec_id": exec_id, "error": str(e)})
            return INSPECT_FAILED_EXIT_CODE
        exit_code = info.get("ExitCode")
        return INSPECT_FAILED_EXIT_CODE if exit_code is None else int(exit_code)
