"""Buffer manager: request-scoped device memory with completion tracking.

Every handle remembers the completion of the last device operation that
touched it. Releasing a handle whose operation is still outstanding is a
caller error; the scope exit path (release_all) instead waits for those
operations first, so buffers are freed on every exit path, including
failures and task cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from mesh_runtime.backend import AccessMode, Backend, Completion, DeviceBuffer, Kernel
from mesh_runtime.errors import ResourceInUseError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class BufferHandle:
    """A live device buffer owned by one BufferManager."""
    name: str
    buffer: DeviceBuffer = field(repr=False)
    pending: Completion | None = field(default=None, repr=False)
    released: bool = False

    @property
    def size_bytes(self) -> int:
        return self.buffer.size_bytes

    @property
    def access(self) -> AccessMode:
        return self.buffer.access

    @property
    def busy(self) -> bool:
        return self.pending is not None and not self.pending.done


class BufferManager:
    """Allocates, transfers and releases device buffers for one request.

    Usable as an async context manager; leaving the context releases every
    buffer still alive.
    """

    def __init__(self, backend: Backend):
        self._backend = backend
        self._live: list[BufferHandle] = []

    @property
    def live(self) -> list[BufferHandle]:
        return list(self._live)

    def allocate(self, name: str, size_bytes: int, access: AccessMode) -> BufferHandle:
        buffer = self._backend.allocate(size_bytes, access)
        handle = BufferHandle(name=name, buffer=buffer)
        self._live.append(handle)
        logger.debug("Allocated %s: %d bytes (%s)", name, size_bytes, access.value)
        return handle

    def write(self, handle: BufferHandle, data: bytes) -> Completion:
        self._check_live(handle, "write")
        if handle.busy:
            raise ResourceInUseError(f"Cannot write {handle.name}: an operation is still outstanding")
        handle.pending = self._backend.write(handle.buffer, data)
        return handle.pending

    def read(self, handle: BufferHandle) -> Completion:
        """Enqueue a device-to-host copy; the completion resolves to the bytes."""
        self._check_live(handle, "read")
        handle.pending = self._backend.read(handle.buffer)
        return handle.pending

    def launch(self, kernel: Kernel, grid: Sequence[int], args: Sequence[BufferHandle | int]) -> Completion:
        """Launch a kernel; buffer arguments stay pending until it completes."""
        handles = [a for a in args if isinstance(a, BufferHandle)]
        for handle in handles:
            self._check_live(handle, f"launch {kernel.name}")
        native_args = [a.buffer if isinstance(a, BufferHandle) else a for a in args]
        completion = self._backend.launch(kernel, grid, native_args)
        for handle in handles:
            handle.pending = completion
        return completion

    def release(self, handle: BufferHandle) -> None:
        self._check_live(handle, "release")
        if handle.busy:
            raise ResourceInUseError(f"Cannot release {handle.name}: an operation is still outstanding")
        self._backend.release(handle.buffer)
        handle.released = True
        self._live.remove(handle)
        logger.debug("Released %s", handle.name)

    async def release_all(self) -> None:
        """Wait for outstanding operations, then release every live buffer.

        Every handle is released even if waiting on it fails or the task is
        cancelled mid-cleanup; a cancellation is re-raised once all buffers
        are gone. Other wait errors are logged so the exception that ended
        the request is the one the caller sees.
        """
        cancelled: asyncio.CancelledError | None = None
        for handle in list(self._live):
            try:
                if handle.busy and cancelled is None:
                    await handle.pending.wait()
            except asyncio.CancelledError as e:
                cancelled = e
                logger.warning("Cleanup cancelled while waiting on %s", handle.name)
            except Exception as e:
                logger.warning("Outstanding operation on %s failed during cleanup: %s", handle.name, e)
            finally:
                self._discard(handle)
        if cancelled is not None:
            raise cancelled

    async def __aenter__(self) -> BufferManager:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release_all()

    def _discard(self, handle: BufferHandle) -> None:
        if handle.busy:
            logger.warning("Releasing %s with an operation still outstanding", handle.name)
        try:
            self._backend.release(handle.buffer)
        except Exception as e:
            logger.error("Release of %s failed: %s", handle.name, e)
        handle.released = True
        self._live.remove(handle)

    def _check_live(self, handle: BufferHandle, op: str) -> None:
        if handle.released or handle not in self._live:
            raise ResourceInUseError(f"Cannot {op} {handle.name}: buffer already released")
