"""CUDA backend: CuPy-based Backend and DeviceBuffer implementations.

Kernel sources are compiled with NVRTC through cupy.RawModule, once per
visible device so every device gets its own build report. Launches and
transfers go to one non-blocking stream on the selected device; completion
signals are CUDA events recorded on that stream.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from mesh_compiler.codegen import KernelSource
from mesh_compiler.target_config import CUDA_GPU, TargetConfig
from mesh_runtime.backend import (
    AccessMode,
    Backend,
    BufferBase,
    BuildReport,
    BuildStatus,
    Completion,
    DeviceBuffer,
    Kernel,
    KernelArg,
    Program,
)
from mesh_runtime.dispatch import DispatchStrategy, TiledDispatchStrategy
from mesh_runtime.errors import DeviceOperationFailure

try:
    import cupy as cp

    HAS_CUPY = True
except ImportError:
    cp = None
    HAS_CUPY = False

logger = logging.getLogger(__name__)


class CUDABuffer(BufferBase):
    """CUDA device region backed by a flat uint8 cupy.ndarray."""


def _device_name(device_id: int) -> str:
    props = cp.cuda.runtime.getDeviceProperties(device_id)
    name = props["name"]
    if isinstance(name, bytes):
        name = name.decode(errors="replace")
    return f"{name} (cuda:{device_id})"


def _cuda_errors() -> tuple[type[BaseException], ...]:
    return (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError)


class CUDABackend(Backend):
    """CUDA GPU execution backend using CuPy."""

    def __init__(self, config: TargetConfig | None = None,
                 dispatch_strategy: DispatchStrategy | None = None):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is not installed. Install with: pip install '.[cuda]'")
        self._config = config or CUDA_GPU
        count = cp.cuda.runtime.getDeviceCount()
        if count == 0:
            raise RuntimeError("No CUDA device found")
        if not 0 <= self._config.device_index < count:
            raise RuntimeError(
                f"CUDA device index {self._config.device_index} out of range ({count} device(s) found)"
            )
        self._device_ids = list(range(count))
        self._device_names = [_device_name(i) for i in self._device_ids]
        self._cp_device = cp.cuda.Device(self._config.device_index)
        with self._cp_device:
            self._stream = cp.cuda.Stream(non_blocking=True)
        self._dispatch_strategy = dispatch_strategy or TiledDispatchStrategy(self._config)
        logger.info("CUDA device selected: %s", self._device_names[self._config.device_index])

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def devices(self) -> list[str]:
        return list(self._device_names)

    @property
    def device(self):
        """Return CuPy device object."""
        return self._cp_device

    def compile(self, source: KernelSource) -> Program:
        modules = []
        reports = []
        for device_id, device_name in zip(self._device_ids, self._device_names):
            with cp.cuda.Device(device_id):
                module = cp.RawModule(code=source.code, options=tuple(self._config.compile_options))
                try:
                    module.compile()
                except cp.cuda.compiler.CompileException as e:
                    modules.append(None)
                    reports.append(BuildReport(device=device_name, status=BuildStatus.FAILURE, log=str(e)))
                    continue
            modules.append(module)
            reports.append(BuildReport(device=device_name, status=BuildStatus.SUCCESS))
        return Program(source=source, reports=reports, native=modules)

    def release_program(self, program: Program) -> None:
        program.native = None
        program.released = True

    def allocate(self, size_bytes: int, access: AccessMode) -> CUDABuffer:
        try:
            with self._cp_device:
                data = cp.empty(max(size_bytes, 1), dtype=cp.uint8)
        except cp.cuda.memory.OutOfMemoryError as e:
            raise DeviceOperationFailure("allocate", str(e)) from e
        return CUDABuffer(size_bytes, access, data)

    def write(self, buffer: DeviceBuffer, data: bytes) -> Completion:
        if len(data) > buffer.size_bytes:
            raise DeviceOperationFailure("write", f"{len(data)} bytes do not fit a {buffer.size_bytes}-byte buffer")
        host = np.frombuffer(data, dtype=np.uint8)
        try:
            with self._cp_device:
                buffer.native_handle[: host.size].set(host, stream=self._stream)
                event = self._stream.record()
        except _cuda_errors() as e:
            raise DeviceOperationFailure("write", str(e)) from e
        return Completion("write", wait_fn=lambda: _sync(event, "write"))

    def read(self, buffer: DeviceBuffer) -> Completion:
        nbytes = buffer.size_bytes
        host = np.empty(nbytes, dtype=np.uint8)
        try:
            with self._cp_device:
                if nbytes:
                    buffer.native_handle[:nbytes].get(stream=self._stream, out=host)
                event = self._stream.record()
        except _cuda_errors() as e:
            raise DeviceOperationFailure("read", str(e)) from e
        return Completion("read", wait_fn=lambda: _sync(event, "read"), result_fn=host.tobytes)

    def release(self, buffer: DeviceBuffer) -> None:
        # Memory returns to CuPy's pool once the last reference is dropped.
        buffer._native = None

    def create_kernel(self, program: Program, entry_point: str) -> Kernel:
        module = program.native[self._config.device_index]
        try:
            with self._cp_device:
                function = module.get_function(entry_point)
        except _cuda_errors() as e:
            raise DeviceOperationFailure(f"create_kernel {entry_point}", str(e)) from e
        return Kernel(name=entry_point, program=program, native=function)

    def launch(self, kernel: Kernel, grid: Sequence[int], args: Sequence[KernelArg]) -> Completion:
        label = f"launch {kernel.name}"
        groups, block = self._dispatch_strategy.compute_dispatch(grid)
        kernel_args = tuple(
            a.native_handle if isinstance(a, DeviceBuffer) else np.uint32(a) for a in args
        )
        try:
            with self._cp_device:
                kernel.native(groups, block, kernel_args, stream=self._stream)
                event = self._stream.record()
        except _cuda_errors() as e:
            raise DeviceOperationFailure(label, str(e)) from e
        return Completion(label, wait_fn=lambda: _sync(event, label))

    def release_kernel(self, kernel: Kernel) -> None:
        kernel.native = None
        kernel.released = True

    def synchronize(self):
        """Synchronize the backend stream."""
        self._stream.synchronize()


def _sync(event, label: str) -> None:
    try:
        event.synchronize()
    except _cuda_errors() as e:
        raise DeviceOperationFailure(label, str(e)) from e
