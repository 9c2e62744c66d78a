from mesh_runtime.backend import AccessMode, Backend, BuildReport, BuildStatus, Completion, DeviceBuffer
from mesh_runtime.buffer import BufferHandle, BufferManager
from mesh_runtime.build import ProgramBuildManager
from mesh_runtime.context import ComputeContext, create_context
from mesh_runtime.cuda_backend import CUDABackend
from mesh_runtime.errors import BuildFailure, DeviceOperationFailure, MeshError, RequestError, ResourceInUseError
from mesh_runtime.pipeline import Geometry, PipelineRun, PipelineState, SurfacePipeline, generate_geometry

__all__ = [
    "AccessMode",
    "Backend",
    "BuildReport",
    "BuildStatus",
    "Completion",
    "DeviceBuffer",
    "BufferHandle",
    "BufferManager",
    "ProgramBuildManager",
    "ComputeContext",
    "create_context",
    "CUDABackend",
    "BuildFailure",
    "DeviceOperationFailure",
    "MeshError",
    "RequestError",
    "ResourceInUseError",
    "Geometry",
    "PipelineRun",
    "PipelineState",
    "SurfacePipeline",
    "generate_geometry",
]

try:
    from mesh_runtime.metal_backend import MetalBackend

    __all__ += ["MetalBackend"]
except ImportError:
    pass
