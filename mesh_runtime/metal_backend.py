"""Metal GPU backend implementation.

Buffers use shared storage, so host transfers are plain memory copies. Reads
are ordered behind earlier queue work by committing an empty command buffer
and copying once it completes; writes copy immediately and therefore must not
target a buffer an in-flight kernel still uses (the BufferManager enforces it).
"""

from __future__ import annotations

import logging
import struct
from typing import Sequence

from mesh_compiler.codegen import KernelSource
from mesh_compiler.target_config import METAL_GPU, TargetConfig
from mesh_runtime.backend import (
    AccessMode,
    Backend,
    BufferBase,
    Completion,
    DeviceBuffer,
    Kernel,
    KernelArg,
    Program,
)
from mesh_runtime.device import Device, enumerate_devices
from mesh_runtime.dispatch import DispatchStrategy, TiledDispatchStrategy
from mesh_runtime.errors import DeviceOperationFailure

logger = logging.getLogger(__name__)

_COMMAND_BUFFER_STATUS_ERROR = 5  # MTLCommandBufferStatusError
_PURGEABLE_STATE_EMPTY = 4  # MTLPurgeableStateEmpty


class MetalBuffer(BufferBase):
    """MTLBuffer in shared storage."""


class MetalBackend(Backend):
    """Backend implementation using Apple Metal GPUs."""

    def __init__(self, config: TargetConfig | None = None,
                 dispatch_strategy: DispatchStrategy | None = None):
        self._config = config or METAL_GPU
        self._devices = [Device(d) for d in enumerate_devices()]
        if not self._devices:
            raise RuntimeError("No Metal device found")
        if not 0 <= self._config.device_index < len(self._devices):
            raise RuntimeError(
                f"Metal device index {self._config.device_index} out of range "
                f"({len(self._devices)} device(s) found)"
            )
        self._primary = self._devices[self._config.device_index]
        self._dispatch_strategy = dispatch_strategy or TiledDispatchStrategy(self._config)
        logger.info("Metal device selected: %s", self._primary.name)

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def devices(self) -> list[str]:
        return [d.name for d in self._devices]

    @property
    def device(self) -> Device:
        return self._primary

    def compile(self, source: KernelSource) -> Program:
        libraries = []
        reports = []
        for device in self._devices:
            library, report = device.compile_source(source.code)
            libraries.append(library)
            reports.append(report)
        return Program(source=source, reports=reports, native=libraries)

    def release_program(self, program: Program) -> None:
        program.native = None
        program.released = True

    def allocate(self, size_bytes: int, access: AccessMode) -> MetalBuffer:
        mtl_buffer = self._primary.new_buffer(size_bytes)
        if mtl_buffer is None:
            raise DeviceOperationFailure("allocate", f"Failed to allocate Metal buffer ({size_bytes} bytes)")
        return MetalBuffer(size_bytes, access, mtl_buffer)

    def write(self, buffer: DeviceBuffer, data: bytes) -> Completion:
        if len(data) > buffer.size_bytes:
            raise DeviceOperationFailure("write", f"{len(data)} bytes do not fit a {buffer.size_bytes}-byte buffer")
        if data:
            view = buffer.native_handle.contents().as_buffer(len(data))
            view[:] = data
        return Completion.completed("write")

    def read(self, buffer: DeviceBuffer) -> Completion:
        cmd_buf = self._primary.new_command_buffer()
        cmd_buf.commit()
        nbytes = buffer.size_bytes
        handle = buffer.native_handle

        def copy_out() -> bytes:
            if nbytes == 0:
                return b""
            return bytes(handle.contents().as_buffer(nbytes))

        return Completion("read", wait_fn=lambda: _wait(cmd_buf, "read"), result_fn=copy_out)

    def release(self, buffer: DeviceBuffer) -> None:
        handle = buffer.native_handle
        if handle is not None:
            handle.setPurgeableState_(_PURGEABLE_STATE_EMPTY)
        buffer._native = None

    def create_kernel(self, program: Program, entry_point: str) -> Kernel:
        library = program.native[self._config.device_index]
        try:
            pipeline = self._primary.get_pipeline(library, entry_point)
        except RuntimeError as e:
            raise DeviceOperationFailure(f"create_kernel {entry_point}", str(e)) from e
        return Kernel(name=entry_point, program=program, native=pipeline)

    def launch(self, kernel: Kernel, grid: Sequence[int], args: Sequence[KernelArg]) -> Completion:
        label = f"launch {kernel.name}"
        cmd_buf = self._primary.new_command_buffer()
        encoder = cmd_buf.computeCommandEncoder()
        encoder.setComputePipelineState_(kernel.native)
        for idx, arg in enumerate(args):
            if isinstance(arg, DeviceBuffer):
                encoder.setBuffer_offset_atIndex_(arg.native_handle, 0, idx)
            else:
                data = struct.pack("<I", arg)
                encoder.setBytes_length_atIndex_(data, len(data), idx)
        groups, tpg = self._dispatch_strategy.compute_dispatch(grid)
        encoder.dispatchThreadgroups_threadsPerThreadgroup_(groups, tpg)
        encoder.endEncoding()
        cmd_buf.commit()
        return Completion(label, wait_fn=lambda: _wait(cmd_buf, label))

    def release_kernel(self, kernel: Kernel) -> None:
        kernel.native = None
        kernel.released = True

    def synchronize(self):
        cmd_buf = self._primary.new_command_buffer()
        cmd_buf.commit()
        cmd_buf.waitUntilCompleted()


def _wait(cmd_buf, label: str) -> None:
    cmd_buf.waitUntilCompleted()
    if cmd_buf.status() == _COMMAND_BUFFER_STATUS_ERROR:
        error = cmd_buf.error()
        detail = str(error.localizedDescription()) if error is not None else "command buffer failed"
        raise DeviceOperationFailure(label, detail)
