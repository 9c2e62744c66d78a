"""Metal device management: enumeration, queue, source compilation with diagnostics."""

from __future__ import annotations

import Metal  # pyobjc-framework-Metal

from mesh_runtime.backend import BuildReport, BuildStatus

_STORAGE_MODE_SHARED = 0  # MTLResourceStorageModeShared


def _describe(error) -> str:
    if error is None:
        return ""
    return str(error.localizedDescription())


def enumerate_devices() -> list:
    """All Metal devices of this machine, system default first."""
    default = Metal.MTLCreateSystemDefaultDevice()
    devices = [default] if default is not None else []
    copy_all = getattr(Metal, "MTLCopyAllDevices", None)
    if copy_all is not None:
        for dev in copy_all() or []:
            if default is None or dev.registryID() != default.registryID():
                devices.append(dev)
    return devices


class Device:
    """Wraps a Metal device and its command queue."""

    def __init__(self, mtl_device=None):
        self._device = mtl_device or Metal.MTLCreateSystemDefaultDevice()
        if self._device is None:
            raise RuntimeError("No Metal device found")
        self._command_queue = self._device.newCommandQueue()

    @property
    def name(self) -> str:
        return str(self._device.name())

    @property
    def mtl_device(self):
        return self._device

    @property
    def command_queue(self):
        return self._command_queue

    def compile_source(self, source: str, options=None):
        """Compile Metal source on this device.

        Returns:
            (library or None, BuildReport). Compiler warnings on a successful
            build are kept in the report log.
        """
        library, error = self._device.newLibraryWithSource_options_error_(source, options, None)
        status = BuildStatus.SUCCESS if library is not None else BuildStatus.FAILURE
        return library, BuildReport(device=self.name, status=status, log=_describe(error))

    def get_pipeline(self, library, function_name: str):
        """Get a compute pipeline for a function of a compiled library."""
        function = library.newFunctionWithName_(function_name)
        if function is None:
            raise RuntimeError(f"Function '{function_name}' not found")

        pipeline, error = self._device.newComputePipelineStateWithFunction_error_(function, None)
        if pipeline is None:
            raise RuntimeError(f"Pipeline creation failed: {_describe(error)}")
        return pipeline

    def new_buffer(self, size_bytes: int):
        # MTLResourceStorageModeShared: host and device access the same memory.
        # Metal cannot allocate 0-byte buffers; use 1-byte placeholder.
        return self._device.newBufferWithLength_options_(max(size_bytes, 1), _STORAGE_MODE_SHARED)

    def new_command_buffer(self):
        return self._command_queue.commandBuffer()

