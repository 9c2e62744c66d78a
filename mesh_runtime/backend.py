"""Abstract backend interfaces for the mesh runtime."""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from mesh_compiler.codegen import KernelSource


class AccessMode(Enum):
    """How the device uses a buffer."""
    READ_ONLY = "read_only"  # host -> device
    WRITE_ONLY = "write_only"  # device -> host
    READ_WRITE = "read_write"  # device-internal scratch


class BuildStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class BuildReport:
    """Compile outcome of one source on one device."""
    device: str
    status: BuildStatus
    log: str = ""

    @property
    def ok(self) -> bool:
        return self.status is BuildStatus.SUCCESS


@dataclass(eq=False)
class Program:
    """A compiled source with its per-device build reports.

    native holds the backend objects (e.g. one MTLLibrary per device).
    """
    source: KernelSource
    reports: list[BuildReport]
    native: Any = None
    released: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.reports) and all(r.ok for r in self.reports)


@dataclass(eq=False)
class Kernel:
    """An entry point of a program, ready to launch."""
    name: str
    program: Program
    native: Any = None
    released: bool = False


class Completion:
    """Completion signal of an asynchronous device operation.

    wait_fn blocks until the device finished the operation and raises on
    device errors; result_fn produces the operation's value afterwards
    (e.g. host bytes of a read). The async wait() runs the blocking wait
    in a worker thread so the event loop is never blocked on the device.
    """

    def __init__(
        self,
        label: str,
        wait_fn: Callable[[], None] | None = None,
        result_fn: Callable[[], Any] | None = None,
    ):
        self.label = label
        self._wait_fn = wait_fn
        self._result_fn = result_fn
        self._lock = threading.Lock()
        self._done = wait_fn is None
        self._error: BaseException | None = None
        self._result: Any = None
        self._resolved = False

    @staticmethod
    def completed(label: str, result: Any = None) -> Completion:
        return Completion(label, result_fn=lambda: result)

    @property
    def done(self) -> bool:
        return self._done

    def wait_blocking(self) -> Any:
        with self._lock:
            if not self._resolved:
                try:
                    if self._wait_fn is not None:
                        self._wait_fn()
                    self._result = self._result_fn() if self._result_fn is not None else None
                except BaseException as e:
                    self._error = e
                finally:
                    self._resolved = True
                    self._done = True
        if self._error is not None:
            raise self._error
        return self._result

    async def wait(self) -> Any:
        if self._resolved:
            return self.wait_blocking()
        return await asyncio.to_thread(self.wait_blocking)


class DeviceBuffer(ABC):
    """Abstract device memory region."""

    @property
    @abstractmethod
    def size_bytes(self) -> int:
        ...

    @property
    @abstractmethod
    def access(self) -> AccessMode:
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native buffer object (e.g. MTLBuffer for Metal)."""
        ...


@dataclass(eq=False)
class BufferBase(DeviceBuffer):
    """Plain DeviceBuffer implementation shared by the concrete backends."""
    _size_bytes: int
    _access: AccessMode
    _native: Any = field(default=None, repr=False)

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def access(self) -> AccessMode:
        return self._access

    @property
    def native_handle(self) -> Any:
        return self._native


KernelArg = DeviceBuffer | int


class Backend(ABC):
    """Abstract compute backend.

    One backend instance owns a device context and a single in-order queue;
    operations enqueued on it execute in submission order.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def devices(self) -> list[str]:
        """Names of every device programs are built for."""
        ...

    @abstractmethod
    def compile(self, source: KernelSource) -> Program:
        """Compile source on every device. Never raises on compile errors:
        failures are reported in Program.reports."""
        ...

    @abstractmethod
    def release_program(self, program: Program) -> None:
        ...

    @abstractmethod
    def allocate(self, size_bytes: int, access: AccessMode) -> DeviceBuffer:
        ...

    @abstractmethod
    def write(self, buffer: DeviceBuffer, data: bytes) -> Completion:
        ...

    @abstractmethod
    def read(self, buffer: DeviceBuffer) -> Completion:
        """Copy the buffer to the host; the completion resolves to bytes."""
        ...

    @abstractmethod
    def release(self, buffer: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def create_kernel(self, program: Program, entry_point: str) -> Kernel:
        ...

    @abstractmethod
    def launch(self, kernel: Kernel, grid: Sequence[int], args: Sequence[KernelArg]) -> Completion:
        """Enqueue kernel over an N-dimensional grid.

        args are bound in order: DeviceBuffers by handle, ints as uint32 scalars.
        """
        ...

    @abstractmethod
    def release_kernel(self, kernel: Kernel) -> None:
        ...

    @abstractmethod
    def synchronize(self):
        ...
